"""Primary variables, the global solution vector and per sub-control volume secondary variables."""

import typing

import attrs
import numpy as np

from boxflow._precision import get_dtype
from boxflow._validation import enum_converter
from boxflow.errors import NumericalFailure, ValidationError
from boxflow.fluid_system import FluidState, FluidSystem, flash
from boxflow.grid import Element
from boxflow.material_laws import MaterialLaw
from boxflow.spatial_parameters import to_tensor
from boxflow.types import Indices, Phase, PhasePresence, Tensor

if typing.TYPE_CHECKING:
    from boxflow.problem import Problem


__all__ = [
    "PrimaryVariables",
    "SolutionVector",
    "VolumeVariables",
    "ElementVolumeVariables",
    "compute_volume_variables",
]


@attrs.frozen(slots=True)
class PrimaryVariables:
    """
    Unknowns of a single vertex together with the phase presence that defines
    the meaning of the switch variable.
    """

    values: np.ndarray = attrs.field(converter=lambda v: np.array(v, dtype=get_dtype()))
    """Liquid pressure, switch variable and (non-isothermal) temperature."""
    presence: PhasePresence = attrs.field(converter=enum_converter(PhasePresence))


@attrs.define
class SolutionVector:
    """
    Global solution: one primary variable tuple and one phase presence per vertex.

    This is the only state persisted between time steps.
    """

    values: np.ndarray
    """Primary variable values, shape (num_dofs, num_equations)."""
    presence: np.ndarray
    """Phase presence per vertex, shape (num_dofs,)."""

    def __attrs_post_init__(self) -> None:
        self.values = np.asarray(self.values, dtype=get_dtype())
        self.presence = np.asarray(self.presence, dtype=np.int8)
        if self.values.ndim != 2:
            raise ValidationError("Solution values must be a (num_dofs, num_equations) array.")
        if self.presence.shape != (self.values.shape[0],):
            raise ValidationError(
                f"Expected {self.values.shape[0]} phase presence entries, got {self.presence.shape}"
            )
        valid = {int(p) for p in PhasePresence}
        if not set(np.unique(self.presence).tolist()) <= valid:
            raise ValidationError(f"Invalid phase presence values in {np.unique(self.presence)}")

    @classmethod
    def from_primary_variables(
        cls, primary_variables: typing.Sequence[PrimaryVariables]
    ) -> "SolutionVector":
        return cls(
            values=np.stack([pv.values for pv in primary_variables]),
            presence=np.array([int(pv.presence) for pv in primary_variables]),
        )

    @property
    def num_dofs(self) -> int:
        return self.values.shape[0]

    @property
    def num_equations(self) -> int:
        return self.values.shape[1]

    def __len__(self) -> int:
        return self.num_dofs

    def __getitem__(self, dof: int) -> PrimaryVariables:
        return PrimaryVariables(self.values[dof], PhasePresence(int(self.presence[dof])))

    def __setitem__(self, dof: int, primary_variables: PrimaryVariables) -> None:
        self.values[dof] = primary_variables.values
        self.presence[dof] = int(primary_variables.presence)

    def copy(self) -> "SolutionVector":
        return SolutionVector(self.values.copy(), self.presence.copy())

    def flat(self) -> np.ndarray:
        """Values as a flat vector in (dof, equation) order."""
        return self.values.reshape(-1)


@attrs.define(slots=True)
class VolumeVariables:
    """
    Secondary variables of one sub-control volume.

    Ephemeral: recomputed for every residual evaluation and never persisted.
    """

    primary_variables: np.ndarray
    presence: PhasePresence
    temperature: float
    porosity: float
    permeability: Tensor
    """Intrinsic permeability tensor (m²)."""
    fluid_state: FluidState
    capillary_pressure: float
    relative_permeability: np.ndarray
    mobility: np.ndarray
    """Relative permeability over viscosity per phase (1/(Pa·s))."""
    heat_capacity: float = 0.0
    """Volumetric heat capacity of the solid matrix (J/(K·m³))."""

    @property
    def saturation(self) -> np.ndarray:
        return self.fluid_state.saturation

    @property
    def pressure(self) -> np.ndarray:
        return self.fluid_state.pressure

    @property
    def density(self) -> np.ndarray:
        return self.fluid_state.density

    @property
    def molar_density(self) -> np.ndarray:
        return self.fluid_state.molar_density

    @property
    def viscosity(self) -> np.ndarray:
        return self.fluid_state.viscosity

    @property
    def mole_fraction(self) -> np.ndarray:
        return self.fluid_state.mole_fraction

    @property
    def mass_fraction(self) -> np.ndarray:
        return self.fluid_state.mass_fraction

    @property
    def enthalpy(self) -> np.ndarray:
        return self.fluid_state.enthalpy

    @property
    def internal_energy(self) -> np.ndarray:
        return self.fluid_state.internal_energy

    @property
    def diffusion_coefficient(self) -> np.ndarray:
        return self.fluid_state.diffusion_coefficient

    @classmethod
    def from_primary_variables(
        cls,
        values: np.ndarray,
        presence: PhasePresence,
        *,
        indices: Indices,
        material_law: MaterialLaw,
        porosity: float,
        permeability: Tensor,
        fluid_system: FluidSystem,
        temperature: float,
        heat_capacity: float = 0.0,
    ) -> "VolumeVariables":
        """
        Evaluate secondary variables of a sub-control volume.

        :param values: Primary variable values.
        :param presence: Phase presence that defines the meaning of the switch variable.
        :param indices: Primary variable indices.
        :param material_law: Capillary pressure / relative permeability closure.
        :param porosity: Porosity.
        :param permeability: Intrinsic permeability tensor (m²).
        :param fluid_system: Fluid property oracle.
        :param temperature: Temperature used if the model is isothermal (K).
        :param heat_capacity: Volumetric heat capacity of the solid (J/(K·m³)).
        :raises NumericalFailure: If the state is non-finite or non-physical.
        """
        if not np.all(np.isfinite(values)):
            raise NumericalFailure(f"Non-finite primary variables {values}")

        presence = PhasePresence(int(presence))
        switch_value = float(values[indices.switch_index])
        if indices.non_isothermal:
            temperature = float(values[indices.temperature_index])

        fluid_state = FluidState(temperature=temperature)
        if presence == PhasePresence.BOTH:
            fluid_state.saturation[Phase.GAS] = switch_value
            fluid_state.saturation[Phase.LIQUID] = 1.0 - switch_value
        elif presence == PhasePresence.LIQUID_ONLY:
            fluid_state.saturation[Phase.LIQUID] = 1.0
            fluid_state.saturation[Phase.GAS] = 0.0
        else:
            fluid_state.saturation[Phase.LIQUID] = 0.0
            fluid_state.saturation[Phase.GAS] = 1.0

        liquid_saturation = fluid_state.saturation[Phase.LIQUID]
        capillary_pressure = material_law.capillary_pressure(liquid_saturation)
        fluid_state.pressure[Phase.LIQUID] = values[indices.pressure_index]
        fluid_state.pressure[Phase.GAS] = values[indices.pressure_index] + capillary_pressure

        flash(fluid_system, fluid_state, presence, switch_value)

        relative_permeability = np.array(material_law.relative_permeabilities(liquid_saturation))
        mobility = relative_permeability / fluid_state.viscosity
        if not (np.isfinite(capillary_pressure) and np.all(np.isfinite(mobility))):
            raise NumericalFailure(
                f"Non-finite material law evaluation at liquid saturation {liquid_saturation}"
            )
        return cls(
            primary_variables=np.array(values, dtype=get_dtype()),
            presence=presence,
            temperature=temperature,
            porosity=porosity,
            permeability=permeability,
            fluid_state=fluid_state,
            capillary_pressure=capillary_pressure,
            relative_permeability=relative_permeability,
            mobility=mobility,
            heat_capacity=heat_capacity,
        )


def compute_volume_variables(
    problem: "Problem",
    element: Element,
    scv_index: int,
    values: np.ndarray,
    presence: PhasePresence,
    indices: Indices,
) -> VolumeVariables:
    """Evaluate the secondary variables of one sub-control volume of `element`."""
    spatial_parameters = problem.spatial_parameters
    position = element.geometry.scvs[scv_index].position
    return VolumeVariables.from_primary_variables(
        values,
        presence,
        indices=indices,
        material_law=spatial_parameters.material_law_params(element, scv_index),
        porosity=spatial_parameters.porosity(element, scv_index),
        permeability=to_tensor(
            spatial_parameters.intrinsic_permeability(element, scv_index),
            problem.dimension,
        ),
        fluid_system=problem.fluid_system,
        temperature=problem.temperature_at_pos(position),
        heat_capacity=(
            spatial_parameters.heat_capacity_solid(element, scv_index)
            if indices.non_isothermal
            else 0.0
        ),
    )


@attrs.define
class ElementVolumeVariables:
    """Volume variables of all sub-control volumes of an element, in local vertex order."""

    volume_variables: typing.List[VolumeVariables]

    @classmethod
    def compute(
        cls,
        problem: "Problem",
        element: Element,
        solution: SolutionVector,
        indices: Indices,
    ) -> "ElementVolumeVariables":
        return cls(
            [
                compute_volume_variables(
                    problem,
                    element,
                    local,
                    solution.values[dof],
                    PhasePresence(int(solution.presence[dof])),
                    indices,
                )
                for local, dof in enumerate(element.vertex_indices)
            ]
        )

    def with_replaced(self, scv_index: int, volume_variables: VolumeVariables) -> "ElementVolumeVariables":
        """Copy with the volume variables of one sub-control volume replaced."""
        replaced = list(self.volume_variables)
        replaced[scv_index] = volume_variables
        return ElementVolumeVariables(replaced)

    def __getitem__(self, scv_index: int) -> VolumeVariables:
        return self.volume_variables[scv_index]

    def __len__(self) -> int:
        return len(self.volume_variables)

    def __iter__(self) -> typing.Iterator[VolumeVariables]:
        return iter(self.volume_variables)
