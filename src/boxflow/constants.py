"""Physical constants used by the fluid system, material laws and numerics"""

from contextvars import ContextVar
import typing

import attrs


__all__ = ["Constant", "Constants", "c", "ConstantsContext", "get_constant"]


@attrs.frozen(slots=True)
class Constant:
    """
    A constant value with optional description and metadata.
    """

    value: typing.Any
    """The actual value of the constant."""

    description: typing.Optional[str] = None
    """Optional description of what this constant represents."""

    unit: typing.Optional[str] = None
    """Optional unit of measurement for this constant."""

    def __str__(self) -> str:
        """Return a human-readable string representation of the `Constant`."""
        return f"{self.value}{self.unit or ''}"

    def __repr__(self) -> str:
        """Return a string representation of the `Constant`."""
        parts = [f"value={self.value}"]
        if self.description:
            parts.append(f"description='{self.description}'")
        if self.unit:
            parts.append(f"unit='{self.unit}'")
        return f"Constant({', '.join(parts)})"


DEFAULT_CONSTANTS: typing.Dict[str, typing.Union[typing.Any, Constant]] = {
    # Universal
    "ACCELERATION_DUE_TO_GRAVITY": Constant(
        value=9.81, description="Standard gravitational acceleration", unit="m/s²"
    ),
    "UNIVERSAL_GAS_CONSTANT": Constant(
        value=8.314462618, description="Universal (molar) gas constant", unit="J/(mol·K)"
    ),
    "STANDARD_PRESSURE": Constant(
        value=101325.0, description="Standard atmospheric pressure", unit="Pa"
    ),
    "ZERO_CELSIUS": Constant(
        value=273.15, description="Zero degrees Celsius", unit="K"
    ),
    # Molar masses
    "MOLAR_MASS_WATER": Constant(
        value=18.01528e-3, description="Molar mass of water", unit="kg/mol"
    ),
    "MOLAR_MASS_N2": Constant(
        value=28.0134e-3, description="Molar mass of nitrogen", unit="kg/mol"
    ),
    # Water
    "WATER_ISOTHERMAL_COMPRESSIBILITY": Constant(
        value=4.6e-10,
        description="Isothermal compressibility of water at 15.6°C",
        unit="1/Pa",
    ),
    "WATER_REFERENCE_DENSITY": Constant(
        value=1000.0, description="Density of pure water at 4°C", unit="kg/m³"
    ),
    "WATER_SPECIFIC_HEAT_CAPACITY": Constant(
        value=4180.0, description="Specific heat capacity of liquid water", unit="J/(kg·K)"
    ),
    "WATER_VAPOR_SPECIFIC_HEAT_CAPACITY": Constant(
        value=1870.0, description="Specific heat capacity of water vapor", unit="J/(kg·K)"
    ),
    "WATER_LATENT_HEAT_OF_VAPORIZATION": Constant(
        value=2.501e6,
        description="Latent heat of vaporization of water at 0°C",
        unit="J/kg",
    ),
    "WATER_THERMAL_CONDUCTIVITY": Constant(
        value=0.6, description="Thermal conductivity of liquid water", unit="W/(m·K)"
    ),
    # Nitrogen
    "N2_SPECIFIC_HEAT_CAPACITY": Constant(
        value=1040.0, description="Isobaric specific heat capacity of nitrogen", unit="J/(kg·K)"
    ),
    "N2_HENRY_COEFFICIENT": Constant(
        value=8.77e9,
        description="Henry coefficient of nitrogen in water at 25°C (p = H·x)",
        unit="Pa",
    ),
    "N2_HENRY_TEMPERATURE_COEFFICIENT": Constant(
        value=1300.0,
        description="van 't Hoff temperature coefficient of nitrogen solubility in water",
        unit="K",
    ),
    "N2_LIQUID_DIFFUSION_COEFFICIENT": Constant(
        value=2.0e-9,
        description="Binary diffusion coefficient of nitrogen in liquid water",
        unit="m²/s",
    ),
    "H2O_N2_GAS_DIFFUSION_COEFFICIENT": Constant(
        value=2.2e-5,
        description="Binary diffusion coefficient of water vapor in nitrogen at 0°C, 1 atm",
        unit="m²/s",
    ),
    # Rock
    "GRANITE_DENSITY": Constant(
        value=2700.0, description="Density of granite", unit="kg/m³"
    ),
    "GRANITE_SPECIFIC_HEAT_CAPACITY": Constant(
        value=790.0, description="Specific heat capacity of granite", unit="J/(kg·K)"
    ),
    "GRANITE_THERMAL_CONDUCTIVITY": Constant(
        value=2.8, description="Thermal conductivity of granite", unit="W/(m·K)"
    ),
    # Numerics
    "SATURATION_EPSILON": Constant(
        value=1e-5,
        description="Saturation below which a phase gets a reduced weight in integration point densities",
        unit="fraction",
    ),
}


class Constants:
    """
    Physical constants and conversion factors used in simulations.

    All constants are stored in an internal dictionary and can be accessed via dot notation.
    Constants can be modified at runtime if needed. Use __getattr__ for value access and
    __getitem__ for `Constant` object access.
    """

    __slots__ = ("_store",)

    def __new__(cls) -> "Constants":
        instance = super().__new__(cls)
        instance._store = {}
        return instance

    def __init__(self) -> None:
        """Initialize the constants store with default values."""
        for name, value in DEFAULT_CONSTANTS.items():
            if isinstance(value, Constant):
                self._store[name] = value
            else:
                self._store[name] = Constant(value=value)

    def __getattr__(self, name: str) -> typing.Any:
        """Get a constant's value using dot notation.

        :param name: Name of the constant
        :return: Value of the constant (unwrapped from Constant object)
        :raises AttributeError: If the constant does not exist
        """
        if name.startswith("_"):
            return object.__getattribute__(self, name)

        try:
            constant = self._store[name]
            return constant.value if isinstance(constant, Constant) else constant
        except KeyError:
            raise AttributeError(
                f"'{type(self).__name__}' object has no attribute '{name}'"
            ) from None

    def __getitem__(self, name: str) -> Constant:
        """Get the Constant object (with metadata) using bracket notation.

        :param name: Name of the constant
        :return: Constant object with value, description, and unit
        :raises KeyError: If the constant does not exist
        """
        return self._store[name]

    def __setattr__(self, name: str, value: typing.Union[typing.Any, Constant]) -> None:
        """Set a constant value using dot notation.

        Accepts either a raw value (which will be wrapped in a Constant) or a Constant object.
        """
        if name.startswith("_"):
            object.__setattr__(self, name, value)
        elif isinstance(value, Constant):
            self._store[name] = value
        else:
            self._store[name] = Constant(value=value)

    def __setitem__(self, name: str, value: typing.Union[typing.Any, Constant]) -> None:
        """Set a constant using bracket notation."""
        if isinstance(value, Constant):
            self._store[name] = value
        else:
            self._store[name] = Constant(value=value)

    def __contains__(self, name: str) -> bool:
        """Check if a constant exists."""
        return name in self._store

    def keys(self) -> typing.KeysView[str]:
        """Get all constant names."""
        return self._store.keys()

    def get(self, name: str, default: typing.Any = None) -> typing.Any:
        """Get a constant's value with a default fallback.

        :param name: Name of the constant
        :param default: Default value if constant doesn't exist
        :return: Value of the constant or default
        """
        constant = self._store.get(name)
        if constant is None:
            return default
        return constant.value if isinstance(constant, Constant) else constant

    def get_constant(
        self, name: str, default: typing.Optional[Constant] = None
    ) -> typing.Optional[Constant]:
        """Get a `Constant` object with a default fallback."""
        return self._store.get(name, default)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(constants={len(self._store)})"

    def __len__(self) -> int:
        return len(self._store)

    def __call__(self) -> "ConstantsContext":
        """
        Create a context manager that temporarily makes this instance the one
        accessed through the global constants proxy `boxflow.c`.

        :return: `ConstantsContext` for temporary overrides
        """
        return ConstantsContext(self)


_constants_context: ContextVar[Constants] = ContextVar(
    "constants_context", default=Constants()
)


class ConstantsContext:
    """
    Context manager for temporary global `Constants` overrides.
    """

    def __init__(self, constants: Constants) -> None:
        self._new_constants = constants
        self._token = None

    def __enter__(self) -> Constants:
        self._token = _constants_context.set(self._new_constants)
        return self._new_constants

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        if self._token is not None:
            _constants_context.reset(self._token)


class _ConstantsProxy:
    """
    Proxy class to access the current context's `Constants` instance.

    Override the current `Constants` instance using the `ConstantsContext` context manager.
    """

    @property
    def _constants(self) -> Constants:
        return _constants_context.get()

    def __getattr__(self, name: str) -> typing.Any:
        """Get a constant's value from the current context's `Constants` instance."""
        return getattr(self._constants, name)

    def __getitem__(self, name: str) -> Constant:
        """Get a Constant object from the current context's `Constants` instance."""
        return self._constants[name]


c = _ConstantsProxy()
"""Global proxy to access physical constants."""


def get_constant(name: str) -> typing.Optional[Constant]:
    """Get a `Constant` object by name from the global constants.

    :param name: Name of the constant
    :return: `Constant` object or None if not found
    """
    return c._constants.get_constant(name)
