"""Problem definitions: boundary conditions, sources, initial values and the water-air reference problem."""

import typing

import attrs
import numpy as np

from boxflow.constants import c
from boxflow.errors import ValidationError
from boxflow.fluid_system import FluidSystem, WaterNitrogenFluidSystem
from boxflow.grid import BoundaryFace, Element, Grid, StructuredGrid
from boxflow.material_laws import BrooksCorey
from boxflow.spatial_parameters import SpatialParameters, two_zone_spatial_parameters
from boxflow.types import BoundaryConditionType, Component, Indices, PhasePresence, Vector
from boxflow.volume_variables import PrimaryVariables


__all__ = ["BoundaryTypes", "Problem", "WaterAirProblem"]


@attrs.define
class BoundaryTypes:
    """
    Boundary condition type of every equation at a boundary vertex.

    For Dirichlet conditions the equation index equals the index of the
    primary variable that is fixed.
    """

    num_equations: int
    types: typing.List[BoundaryConditionType] = attrs.field(init=False)

    def __attrs_post_init__(self) -> None:
        self.types = [BoundaryConditionType.NEUMANN] * self.num_equations

    def set_all_neumann(self) -> "BoundaryTypes":
        self.types = [BoundaryConditionType.NEUMANN] * self.num_equations
        return self

    def set_all_dirichlet(self) -> "BoundaryTypes":
        self.types = [BoundaryConditionType.DIRICHLET] * self.num_equations
        return self

    def set_all_outflow(self) -> "BoundaryTypes":
        self.types = [BoundaryConditionType.OUTFLOW] * self.num_equations
        return self

    def set_neumann(self, equation: int) -> "BoundaryTypes":
        self.types[equation] = BoundaryConditionType.NEUMANN
        return self

    def set_dirichlet(self, equation: int) -> "BoundaryTypes":
        self.types[equation] = BoundaryConditionType.DIRICHLET
        return self

    def set_outflow(self, equation: int) -> "BoundaryTypes":
        self.types[equation] = BoundaryConditionType.OUTFLOW
        return self

    def is_neumann(self, equation: int) -> bool:
        return self.types[equation] == BoundaryConditionType.NEUMANN

    def is_dirichlet(self, equation: int) -> bool:
        return self.types[equation] == BoundaryConditionType.DIRICHLET

    def is_outflow(self, equation: int) -> bool:
        return self.types[equation] == BoundaryConditionType.OUTFLOW

    @property
    def has_dirichlet(self) -> bool:
        return BoundaryConditionType.DIRICHLET in self.types

    @property
    def has_neumann(self) -> bool:
        return BoundaryConditionType.NEUMANN in self.types

    @property
    def has_outflow(self) -> bool:
        return BoundaryConditionType.OUTFLOW in self.types


class Problem:
    """
    Base class of problems solved with the box model.

    A problem owns the grid, the spatial parameters and the fluid system and
    answers position or element indexed queries for boundary conditions,
    sources and initial values. Subclasses override `initial_at_pos` and,
    as needed, the boundary and source hooks.
    """

    name: str = "problem"

    def __init__(
        self,
        grid: Grid,
        spatial_parameters: SpatialParameters,
        fluid_system: FluidSystem,
        *,
        non_isothermal: bool = False,
        temperature: float = 283.15,
    ) -> None:
        """
        :param grid: The mesh.
        :param spatial_parameters: Soil properties.
        :param fluid_system: Fluid property oracle.
        :param non_isothermal: Whether an energy balance is solved for.
        :param temperature: Temperature of isothermal problems (K).
        """
        if temperature <= 0.0:
            raise ValidationError("Temperature must be positive (K).")
        self.grid = grid
        self.spatial_parameters = spatial_parameters
        self.fluid_system = fluid_system
        self.indices = Indices(non_isothermal=non_isothermal)
        self._temperature = temperature

    @property
    def dimension(self) -> int:
        return self.grid.dimension

    @property
    def num_equations(self) -> int:
        return self.indices.num_equations

    def gravity(self) -> Vector:
        """Gravity vector, pointing in negative direction of the last coordinate axis."""
        gravity = np.zeros(self.dimension)
        gravity[-1] = -c.ACCELERATION_DUE_TO_GRAVITY
        return gravity

    def temperature_at_pos(self, position: Vector) -> float:
        """Temperature of isothermal problems (K)."""
        return self._temperature

    def boundary_types_at_pos(self, position: Vector) -> BoundaryTypes:
        """Boundary condition types at a boundary vertex. No-flow everywhere by default."""
        return BoundaryTypes(self.num_equations)

    def dirichlet_at_pos(self, position: Vector) -> PrimaryVariables:
        """Dirichlet values (and phase presence) at a boundary vertex. Initial values by default."""
        return self.initial_at_pos(position)

    def neumann(self, element: Element, boundary_face: BoundaryFace) -> np.ndarray:
        """
        Neumann fluxes per equation at a boundary face.

        Mass fluxes in kg/(m²·s), energy fluxes in W/m², positive out of the
        domain (negative values mean injection).
        """
        return np.zeros(self.num_equations)

    def source(self, element: Element, scv_index: int) -> np.ndarray:
        """Source terms per equation and unit volume (kg/(m³·s), W/m³)."""
        return np.zeros(self.num_equations)

    def initial_at_pos(self, position: Vector) -> PrimaryVariables:
        raise NotImplementedError


class WaterAirProblem(Problem):
    """
    Non-isothermal nitrogen injection into a water saturated domain.

    The domain is 40 m x 40 m. Nitrogen enters through the bottom boundary
    between 15 m and 25 m, rises by buoyancy and passes a hot region (380 K)
    spanning x in (20 m, 30 m) below 30 m. The left and right boundaries carry
    hydrostatic pressure, no gas and a geothermal temperature gradient of
    0.03 K/m as Dirichlet values, top and bottom are no-flow for mass.
    Temperature is fixed on all boundaries.
    """

    name = "waterair"

    def __init__(
        self,
        grid: typing.Optional[Grid] = None,
        spatial_parameters: typing.Optional[SpatialParameters] = None,
        fluid_system: typing.Optional[FluidSystem] = None,
        *,
        non_isothermal: bool = True,
        injection_rate: float = 1e-3,
        max_depth: float = 1000.0,
    ) -> None:
        """
        :param grid: Mesh of the 40 m x 40 m domain. Defaults to 20 x 20 cells.
        :param spatial_parameters: Defaults to a coarse domain with a fine block.
        :param fluid_system: Defaults to `WaterNitrogenFluidSystem`.
        :param non_isothermal: Whether an energy balance is solved for.
        :param injection_rate: Nitrogen mass injection rate at the bottom (kg/(m²·s)).
        :param max_depth: Depth of the domain bottom below surface (m).
        """
        grid = grid if grid is not None else StructuredGrid(
            lower=(0.0, 0.0), upper=(40.0, 40.0), cells=(20, 20)
        )
        spatial_parameters = (
            spatial_parameters
            if spatial_parameters is not None
            else two_zone_spatial_parameters(
                material_law=BrooksCorey(
                    residual_wetting_saturation=0.2,
                    entry_pressure=1e4,
                    lambda_=2.0,
                )
            )
        )
        fluid_system = fluid_system if fluid_system is not None else WaterNitrogenFluidSystem()
        super().__init__(
            grid,
            spatial_parameters,
            fluid_system,
            non_isothermal=non_isothermal,
            temperature=283.15,
        )
        self.injection_rate = injection_rate
        self.max_depth = max_depth
        self.eps = 1e-6

    def boundary_types_at_pos(self, position: Vector) -> BoundaryTypes:
        types = BoundaryTypes(self.num_equations)
        if position[0] > 40.0 - self.eps or position[0] < self.eps:
            types.set_all_dirichlet()
        if self.indices.non_isothermal:
            types.set_dirichlet(self.indices.energy_equation_index)
        return types

    def neumann(self, element: Element, boundary_face: BoundaryFace) -> np.ndarray:
        values = np.zeros(self.num_equations)
        x, y = boundary_face.ip_position[0], boundary_face.ip_position[-1]
        if 15.0 < x < 25.0 and y < self.eps:
            values[self.indices.component_equation_index(Component.N2)] = -self.injection_rate
        return values

    def dirichlet_at_pos(self, position: Vector) -> PrimaryVariables:
        return self._hydrostatic(position)

    def initial_at_pos(self, position: Vector) -> PrimaryVariables:
        primary_variables = self._hydrostatic(position)
        if self.indices.non_isothermal and 20.0 < position[0] < 30.0 and position[-1] < 30.0:
            values = primary_variables.values.copy()
            values[self.indices.temperature_index] = 380.0
            return PrimaryVariables(values, primary_variables.presence)
        return primary_variables

    def _hydrostatic(self, position: Vector) -> PrimaryVariables:
        depth = self.max_depth - position[-1]
        values = np.zeros(self.num_equations)
        values[self.indices.pressure_index] = 1e5 + depth * 1000.0 * c.ACCELERATION_DUE_TO_GRAVITY
        values[self.indices.switch_index] = 0.0
        if self.indices.non_isothermal:
            values[self.indices.temperature_index] = 283.0 + depth * 0.03
        return PrimaryVariables(values, PhasePresence.LIQUID_ONLY)
