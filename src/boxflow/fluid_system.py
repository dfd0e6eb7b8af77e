"""
Fluid systems: thermodynamic relations of the liquid and gas phase of the
water (H2O) / nitrogen (N2) system and the equilibrium flash which completes a
fluid state from the primary variables of a vertex.
"""

import logging
import math
import typing

import attrs
import numba
import numpy as np

from boxflow._validation import checked
from boxflow.constants import c
from boxflow.errors import NumericalFailure, ValidationError
from boxflow.types import Component, Phase, PhasePresence


logger = logging.getLogger(__name__)

__all__ = [
    "FluidState",
    "FluidSystem",
    "WaterNitrogenFluidSystem",
    "ConstantFluidSystem",
    "flash",
    "compute_water_vapor_pressure",
    "compute_henry_coefficient",
    "compute_water_density",
    "compute_water_viscosity",
    "compute_nitrogen_viscosity",
    "compute_gas_diffusion_coefficient",
]

NUM_PHASES = 2
NUM_COMPONENTS = 2


##################################################
# CORRELATIONS                                   #
##################################################

# IAPWS-IF97 region 4 coefficients
_IAPWS_N = (
    0.11670521452767e4,
    -0.72421316703206e6,
    -0.17073846940092e2,
    0.12020824702470e5,
    -0.32325550322333e7,
    0.14915108613530e2,
    -0.48232657361591e4,
    0.40511340542057e6,
    -0.23855557567849,
    0.65017534844798e3,
)


@numba.njit(cache=True)
def compute_water_vapor_pressure(temperature: float) -> float:
    """
    Saturation vapor pressure of water (IAPWS-IF97, region 4).

    :param temperature: Temperature (K).
    :return: Vapor pressure (Pa).
    """
    n = _IAPWS_N
    theta = temperature + n[8] / (temperature - n[9])
    a = theta * theta + n[0] * theta + n[1]
    b = n[2] * theta * theta + n[3] * theta + n[4]
    c_ = n[5] * theta * theta + n[6] * theta + n[7]
    value = 2.0 * c_ / (-b + math.sqrt(b * b - 4.0 * a * c_))
    return value**4 * 1e6


@numba.njit(cache=True)
def compute_henry_coefficient(
    temperature: float, reference_coefficient: float, temperature_coefficient: float
) -> float:
    """
    Henry coefficient H of a gas dissolved in water (p_i = H * x_i).

        H = H_298 * exp(-C * (1/T - 1/298.15))
    """
    return reference_coefficient * math.exp(
        -temperature_coefficient * (1.0 / temperature - 1.0 / 298.15)
    )


@numba.njit(cache=True)
def compute_water_density(
    pressure: float,
    temperature: float,
    reference_density: float,
    compressibility: float,
) -> float:
    """
    Mass density of pure liquid water (kg/m³).

        ρ = ρ_ref * (1 - (T - 277.13)² * 6.8e-6) * (1 + c_w * (p - 1e5))
    """
    return (
        reference_density
        * (1.0 - (temperature - 277.13) ** 2 * 6.8e-6)
        * (1.0 + compressibility * (pressure - 1e5))
    )


@numba.njit(cache=True)
def compute_water_viscosity(temperature: float) -> float:
    """Dynamic viscosity of liquid water after Vogel (Pa·s)."""
    return 2.414e-5 * 10.0 ** (247.8 / (temperature - 140.0))


@numba.njit(cache=True)
def compute_nitrogen_viscosity(temperature: float) -> float:
    """Dynamic viscosity of nitrogen gas after Sutherland (Pa·s)."""
    return 1.663e-5 * (temperature / 273.0) ** 1.5 * (380.0 / (temperature + 107.0))


@numba.njit(cache=True)
def compute_gas_diffusion_coefficient(
    pressure: float,
    temperature: float,
    reference_coefficient: float,
    reference_pressure: float,
    reference_temperature: float,
) -> float:
    """
    Binary diffusion coefficient in the gas phase (m²/s).

        D = D_ref * (T / T_ref)^1.75 * (p_ref / p)
    """
    return (
        reference_coefficient
        * (temperature / reference_temperature) ** 1.75
        * (reference_pressure / pressure)
    )


@numba.njit(cache=True)
def compute_ideal_gas_density(
    pressure: float, temperature: float, molar_mass: float, gas_constant: float
) -> float:
    return pressure * molar_mass / (gas_constant * temperature)


##################################################
# FLUID STATE                                    #
##################################################


def _is_present(presence: PhasePresence, phase: Phase) -> bool:
    return bool(int(presence) & (1 << int(phase)))


def _phase_array() -> np.ndarray:
    return np.zeros(NUM_PHASES)


def _fraction_array() -> np.ndarray:
    return np.zeros((NUM_PHASES, NUM_COMPONENTS))


@attrs.define
class FluidState:
    """
    Thermodynamic state of the fluid inside a sub-control volume.

    Arrays are indexed by `Phase` and, for fractions, by `(Phase, Component)`.
    """

    temperature: float = 0.0
    pressure: np.ndarray = attrs.field(factory=_phase_array)
    saturation: np.ndarray = attrs.field(factory=_phase_array)
    mole_fraction: np.ndarray = attrs.field(factory=_fraction_array)
    mass_fraction: np.ndarray = attrs.field(factory=_fraction_array)
    average_molar_mass: np.ndarray = attrs.field(factory=_phase_array)
    density: np.ndarray = attrs.field(factory=_phase_array)
    """Mass density (kg/m³)."""
    molar_density: np.ndarray = attrs.field(factory=_phase_array)
    """Molar density (mol/m³)."""
    viscosity: np.ndarray = attrs.field(factory=_phase_array)
    enthalpy: np.ndarray = attrs.field(factory=_phase_array)
    """Specific enthalpy (J/kg)."""
    internal_energy: np.ndarray = attrs.field(factory=_phase_array)
    """Specific internal energy (J/kg)."""
    diffusion_coefficient: np.ndarray = attrs.field(factory=_phase_array)
    """Binary diffusion coefficient of H2O and N2 in each phase (m²/s)."""

    def update_mass_fractions(
        self, molar_masses: np.ndarray, presence: PhasePresence = PhasePresence.BOTH
    ) -> None:
        """
        Derive mass fractions and mean molar masses from the mole fractions.

        Present phases use their mole fractions as they are, so that slightly
        negative values of the switch variable keep a smooth storage term. The
        fictitious composition of an absent phase is clipped and normalized.

        :param molar_masses: Molar masses of the components (kg/mol).
        :param presence: Phase presence the mole fractions were computed for.
        """
        for phase in Phase:
            fractions = self.mole_fraction[phase]
            if not _is_present(presence, phase):
                fractions = np.clip(fractions, 0.0, None)
                total = fractions.sum()
                if total <= 0.0:
                    raise NumericalFailure(
                        f"Mole fractions of the {phase.name.lower()} phase vanish: {self.mole_fraction[phase]}"
                    )
                fractions = fractions / total
            masses = fractions * molar_masses
            average_molar_mass = masses.sum()
            if not average_molar_mass > 0.0:
                raise NumericalFailure(
                    f"Mean molar mass of the {phase.name.lower()} phase is not positive: {self.mole_fraction[phase]}"
                )
            self.average_molar_mass[phase] = average_molar_mass
            self.mass_fraction[phase] = masses / average_molar_mass


@typing.runtime_checkable
class FluidSystem(typing.Protocol):
    """Equilibrium property oracle of a two-phase, two-component system."""

    def molar_mass(self, component: int) -> float: ...

    def vapor_pressure(self, temperature: float) -> float:
        """Vapor pressure of H2O (Pa)."""
        ...

    def henry_coefficient(self, temperature: float) -> float:
        """Henry coefficient of N2 in the liquid phase (Pa)."""
        ...

    def density(self, phase: int, fluid_state: FluidState) -> float: ...

    def viscosity(self, phase: int, fluid_state: FluidState) -> float: ...

    def enthalpy(self, phase: int, fluid_state: FluidState) -> float: ...

    def binary_diffusion_coefficient(self, phase: int, fluid_state: FluidState) -> float: ...


@attrs.frozen
class WaterNitrogenFluidSystem:
    """
    Liquid water with dissolved nitrogen and an ideal gas mixture of water
    vapor and nitrogen.

    Liquid density is the molar density of pure water times the mean molar
    mass of the liquid, the gas is ideal. The gas viscosity is the viscosity of
    nitrogen.
    """

    def molar_mass(self, component: int) -> float:
        if component == Component.H2O:
            return c.MOLAR_MASS_WATER
        return c.MOLAR_MASS_N2

    def vapor_pressure(self, temperature: float) -> float:
        return compute_water_vapor_pressure(temperature)

    def henry_coefficient(self, temperature: float) -> float:
        return compute_henry_coefficient(
            temperature, c.N2_HENRY_COEFFICIENT, c.N2_HENRY_TEMPERATURE_COEFFICIENT
        )

    def density(self, phase: int, fluid_state: FluidState) -> float:
        temperature = fluid_state.temperature
        pressure = fluid_state.pressure[phase]
        if phase == Phase.LIQUID:
            water_density = compute_water_density(
                pressure,
                temperature,
                c.WATER_REFERENCE_DENSITY,
                c.WATER_ISOTHERMAL_COMPRESSIBILITY,
            )
            molar_density = water_density / c.MOLAR_MASS_WATER
            return molar_density * fluid_state.average_molar_mass[phase]
        return compute_ideal_gas_density(
            pressure,
            temperature,
            fluid_state.average_molar_mass[phase],
            c.UNIVERSAL_GAS_CONSTANT,
        )

    def viscosity(self, phase: int, fluid_state: FluidState) -> float:
        if phase == Phase.LIQUID:
            return compute_water_viscosity(fluid_state.temperature)
        return compute_nitrogen_viscosity(fluid_state.temperature)

    def enthalpy(self, phase: int, fluid_state: FluidState) -> float:
        celsius = fluid_state.temperature - c.ZERO_CELSIUS
        if phase == Phase.LIQUID:
            return c.WATER_SPECIFIC_HEAT_CAPACITY * celsius
        vapor = c.WATER_LATENT_HEAT_OF_VAPORIZATION + c.WATER_VAPOR_SPECIFIC_HEAT_CAPACITY * celsius
        nitrogen = c.N2_SPECIFIC_HEAT_CAPACITY * celsius
        mass_fraction = fluid_state.mass_fraction[phase]
        return mass_fraction[Component.H2O] * vapor + mass_fraction[Component.N2] * nitrogen

    def binary_diffusion_coefficient(self, phase: int, fluid_state: FluidState) -> float:
        if phase == Phase.LIQUID:
            return c.N2_LIQUID_DIFFUSION_COEFFICIENT
        return compute_gas_diffusion_coefficient(
            fluid_state.pressure[phase],
            fluid_state.temperature,
            c.H2O_N2_GAS_DIFFUSION_COEFFICIENT,
            c.STANDARD_PRESSURE,
            c.ZERO_CELSIUS,
        )


@attrs.frozen
class ConstantFluidSystem:
    """
    Fluid system with constant phase properties.

    Mainly useful for verification against analytical solutions, e.g. steady
    single-phase Darcy flow.
    """

    liquid_density: float = attrs.field(
        default=1000.0, validator=checked(attrs.validators.gt(0))
    )
    gas_density: float = attrs.field(
        default=1.2, validator=checked(attrs.validators.gt(0))
    )
    liquid_viscosity: float = attrs.field(
        default=1e-3, validator=checked(attrs.validators.gt(0))
    )
    gas_viscosity: float = attrs.field(
        default=1.8e-5, validator=checked(attrs.validators.gt(0))
    )
    liquid_diffusion_coefficient: float = attrs.field(
        default=2e-9, validator=checked(attrs.validators.ge(0))
    )
    gas_diffusion_coefficient: float = attrs.field(
        default=2.6e-5, validator=checked(attrs.validators.ge(0))
    )
    constant_vapor_pressure: float = attrs.field(
        default=2.3e3, validator=checked(attrs.validators.gt(0))
    )
    constant_henry_coefficient: float = attrs.field(
        default=8.77e9, validator=checked(attrs.validators.gt(0))
    )
    liquid_heat_capacity: float = 4180.0
    gas_heat_capacity: float = 1040.0

    def molar_mass(self, component: int) -> float:
        if component == Component.H2O:
            return c.MOLAR_MASS_WATER
        return c.MOLAR_MASS_N2

    def vapor_pressure(self, temperature: float) -> float:
        return self.constant_vapor_pressure

    def henry_coefficient(self, temperature: float) -> float:
        return self.constant_henry_coefficient

    def density(self, phase: int, fluid_state: FluidState) -> float:
        return self.liquid_density if phase == Phase.LIQUID else self.gas_density

    def viscosity(self, phase: int, fluid_state: FluidState) -> float:
        return self.liquid_viscosity if phase == Phase.LIQUID else self.gas_viscosity

    def enthalpy(self, phase: int, fluid_state: FluidState) -> float:
        capacity = self.liquid_heat_capacity if phase == Phase.LIQUID else self.gas_heat_capacity
        return capacity * (fluid_state.temperature - c.ZERO_CELSIUS)

    def binary_diffusion_coefficient(self, phase: int, fluid_state: FluidState) -> float:
        if phase == Phase.LIQUID:
            return self.liquid_diffusion_coefficient
        return self.gas_diffusion_coefficient


##################################################
# FLASH                                          #
##################################################


def flash(
    fluid_system: FluidSystem,
    fluid_state: FluidState,
    presence: PhasePresence,
    switch_value: float,
) -> FluidState:
    """
    Complete a fluid state whose temperature, phase pressures and saturations
    are already set.

    Mole fractions follow from the switch primary variable and the phase
    equilibrium (Raoult's law for water, Henry's law for nitrogen). For an
    absent phase, the fictitious composition in equilibrium with the present
    phase is stored; its mole fractions do not have to sum up to one and are
    used to detect phase appearance.

    :param fluid_system: Property oracle.
    :param fluid_state: State with `temperature`, `pressure` and `saturation` set. Modified in place.
    :param presence: Phase presence of the vertex.
    :param switch_value: Value of the switch primary variable.
    :return: The completed fluid state.
    :raises NumericalFailure: If a phase pressure is non-positive or any property is non-finite.
    """
    try:
        presence = PhasePresence(presence)
    except ValueError as exc:
        raise ValidationError(f"Invalid phase presence {presence!r}") from exc

    temperature = fluid_state.temperature
    gas_pressure = fluid_state.pressure[Phase.GAS]
    if not (np.all(np.isfinite(fluid_state.pressure)) and math.isfinite(temperature)):
        raise NumericalFailure(
            f"Non-finite state: pressures {fluid_state.pressure}, temperature {temperature}"
        )
    if np.any(fluid_state.pressure <= 0.0) or temperature <= 0.0:
        logger.debug(
            f"Flash rejected state with presence {presence.name}: "
            f"pressures {fluid_state.pressure}, temperature {temperature}"
        )
        raise NumericalFailure(
            f"Non-physical state: pressures {fluid_state.pressure}, temperature {temperature}"
        )

    vapor_pressure = fluid_system.vapor_pressure(temperature)
    henry = fluid_system.henry_coefficient(temperature)
    x = fluid_state.mole_fraction
    if presence == PhasePresence.BOTH:
        x[Phase.GAS, Component.H2O] = vapor_pressure / gas_pressure
        x[Phase.GAS, Component.N2] = 1.0 - x[Phase.GAS, Component.H2O]
        x[Phase.LIQUID, Component.N2] = (gas_pressure - vapor_pressure) / henry
        x[Phase.LIQUID, Component.H2O] = 1.0 - x[Phase.LIQUID, Component.N2]
    elif presence == PhasePresence.LIQUID_ONLY:
        x[Phase.LIQUID, Component.N2] = switch_value
        x[Phase.LIQUID, Component.H2O] = 1.0 - switch_value
        x[Phase.GAS, Component.H2O] = x[Phase.LIQUID, Component.H2O] * vapor_pressure / gas_pressure
        x[Phase.GAS, Component.N2] = x[Phase.LIQUID, Component.N2] * henry / gas_pressure
    else:
        x[Phase.GAS, Component.H2O] = switch_value
        x[Phase.GAS, Component.N2] = 1.0 - switch_value
        x[Phase.LIQUID, Component.H2O] = x[Phase.GAS, Component.H2O] * gas_pressure / vapor_pressure
        x[Phase.LIQUID, Component.N2] = x[Phase.GAS, Component.N2] * gas_pressure / henry

    fluid_state.update_mass_fractions(
        np.array([fluid_system.molar_mass(component) for component in Component]), presence
    )
    for phase in Phase:
        fluid_state.density[phase] = fluid_system.density(phase, fluid_state)
        fluid_state.molar_density[phase] = (
            fluid_state.density[phase] / fluid_state.average_molar_mass[phase]
        )
        fluid_state.viscosity[phase] = fluid_system.viscosity(phase, fluid_state)
        fluid_state.enthalpy[phase] = fluid_system.enthalpy(phase, fluid_state)
        fluid_state.internal_energy[phase] = (
            fluid_state.enthalpy[phase]
            - fluid_state.pressure[phase] / fluid_state.density[phase]
        )
        fluid_state.diffusion_coefficient[phase] = fluid_system.binary_diffusion_coefficient(
            phase, fluid_state
        )

    for name in ("mole_fraction", "density", "viscosity", "enthalpy", "diffusion_coefficient"):
        values = getattr(fluid_state, name)
        if not np.all(np.isfinite(values)):
            raise NumericalFailure(f"Non-finite {name.replace('_', ' ')} in flash: {values}")
    if np.any(fluid_state.density <= 0.0) or np.any(fluid_state.viscosity <= 0.0):
        raise NumericalFailure(
            f"Non-physical fluid properties: densities {fluid_state.density}, viscosities {fluid_state.viscosity}"
        )
    return fluid_state
