import typing

import numpy as np
import pytest

from boxflow.config import Config
from boxflow.fluid_system import ConstantFluidSystem, FluidSystem, WaterNitrogenFluidSystem
from boxflow.grid import BoundaryFace, Element, StructuredGrid
from boxflow.material_laws import BrooksCorey, LinearMaterial, MaterialLaw
from boxflow.model import BoxModel
from boxflow.problem import BoundaryTypes, Problem
from boxflow.spatial_parameters import MaterialZone, ZonedSpatialParameters
from boxflow.types import Component, PhasePresence, Vector
from boxflow.volume_variables import PrimaryVariables

InitialValues = typing.Callable[[Vector], PrimaryVariables]


class ColumnProblem(Problem):
    """Horizontal 1D column, optionally with fixed pressures at both ends."""

    def __init__(
        self,
        cells: int = 5,
        length: float = 10.0,
        permeability: float = 1e-12,
        left_pressure: float = 2e5,
        right_pressure: float = 1e5,
        fluid_system: typing.Optional[FluidSystem] = None,
        material_law: typing.Optional[MaterialLaw] = None,
        dirichlet: bool = True,
        initial: typing.Optional[InitialValues] = None,
    ) -> None:
        grid = StructuredGrid(lower=(0.0,), upper=(length,), cells=(cells,))
        spatial_parameters = ZonedSpatialParameters(
            default_zone=MaterialZone(
                permeability=permeability,
                porosity=0.3,
                material_law=material_law if material_law is not None else LinearMaterial(),
            )
        )
        super().__init__(
            grid,
            spatial_parameters,
            fluid_system if fluid_system is not None else ConstantFluidSystem(),
        )
        self.length = length
        self.left_pressure = left_pressure
        self.right_pressure = right_pressure
        self.dirichlet = dirichlet
        self._initial = initial

    def steady_pressure(self, x: float) -> float:
        return self.left_pressure + (self.right_pressure - self.left_pressure) * x / self.length

    def boundary_types_at_pos(self, position: Vector) -> BoundaryTypes:
        types = BoundaryTypes(self.num_equations)
        if self.dirichlet:
            types.set_all_dirichlet()
        return types

    def dirichlet_at_pos(self, position: Vector) -> PrimaryVariables:
        return PrimaryVariables([self.steady_pressure(position[0]), 0.0], PhasePresence.LIQUID_ONLY)

    def initial_at_pos(self, position: Vector) -> PrimaryVariables:
        if self._initial is not None:
            return self._initial(position)
        return PrimaryVariables([self.steady_pressure(position[0]), 0.0], PhasePresence.LIQUID_ONLY)


class BoxProblem(Problem):
    """Closed 2D box with optional nitrogen injection through the bottom."""

    def __init__(
        self,
        initial: InitialValues,
        cells: typing.Tuple[int, int] = (2, 2),
        size: float = 4.0,
        injection_rate: float = 0.0,
        fluid_system: typing.Optional[FluidSystem] = None,
        material_law: typing.Optional[MaterialLaw] = None,
        non_isothermal: bool = False,
    ) -> None:
        grid = StructuredGrid(lower=(0.0, 0.0), upper=(size, size), cells=cells)
        spatial_parameters = ZonedSpatialParameters(
            default_zone=MaterialZone(
                permeability=1e-12,
                porosity=0.3,
                material_law=(
                    material_law
                    if material_law is not None
                    else BrooksCorey(entry_pressure=1e4, lambda_=2.0)
                ),
            )
        )
        super().__init__(
            grid,
            spatial_parameters,
            fluid_system if fluid_system is not None else WaterNitrogenFluidSystem(),
            non_isothermal=non_isothermal,
            temperature=300.0,
        )
        self.injection_rate = injection_rate
        self._initial = initial

    def neumann(self, element: Element, boundary_face: BoundaryFace) -> np.ndarray:
        values = np.zeros(self.num_equations)
        if boundary_face.ip_position[-1] < 1e-9:
            values[self.indices.component_equation_index(Component.N2)] = -self.injection_rate
        return values

    def initial_at_pos(self, position: Vector) -> PrimaryVariables:
        return self._initial(position)


def two_phase_state(position: Vector) -> PrimaryVariables:
    """Both phases present, pressure and gas saturation varying in space."""
    x, y = position
    return PrimaryVariables(
        [1e5 + 2e3 * x - 1.5e3 * y, 0.2 + 0.03 * x + 0.02 * y], PhasePresence.BOTH
    )


@pytest.fixture
def column_problem() -> ColumnProblem:
    return ColumnProblem()


@pytest.fixture
def column_model(column_problem: ColumnProblem) -> BoxModel:
    return BoxModel(column_problem, Config(enable_gravity=False))


@pytest.fixture
def box_problem() -> BoxProblem:
    return BoxProblem(initial=two_phase_state)


@pytest.fixture
def box_model(box_problem: BoxProblem) -> BoxModel:
    return BoxModel(box_problem)
