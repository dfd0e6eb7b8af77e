import logging
import typing

import numpy as np

from boxflow._precision import get_dtype
from boxflow.assembler import GhostExchange
from boxflow.config import Config
from boxflow.errors import NumericalFailure
from boxflow.grid import Element
from boxflow.local_residual import LocalResidual
from boxflow.problem import BoundaryTypes, Problem
from boxflow.types import Indices
from boxflow.volume_variables import ElementVolumeVariables, SolutionVector


logger = logging.getLogger(__name__)

__all__ = ["BoxModel"]


class BoxModel:
    """
    Two-phase, two-component box model of a problem.

    Collects the boundary condition types of all boundary vertices, evaluates
    the global residual and maintains the Dirichlet constraints.
    """

    def __init__(
        self,
        problem: Problem,
        config: typing.Optional[Config] = None,
        ghost_exchange: typing.Optional[GhostExchange] = None,
    ) -> None:
        self.problem = problem
        self.grid = problem.grid
        self.config = config if config is not None else Config()
        self.ghost_exchange = ghost_exchange if ghost_exchange is not None else GhostExchange()
        self.boundary_types = self._collect_boundary_types()
        self.local_residual = LocalResidual(
            problem, self.boundary_types, enable_gravity=self.config.enable_gravity
        )
        self._collect_dirichlet_values()

    @property
    def indices(self) -> Indices:
        return self.problem.indices

    @property
    def num_dofs(self) -> int:
        return self.grid.num_vertices

    @property
    def num_equations(self) -> int:
        return self.indices.num_equations

    @property
    def dirichlet_mask(self) -> np.ndarray:
        """Boolean mask of constrained (dof, equation) pairs, shape (num_dofs, num_equations)."""
        return self._dirichlet_mask

    def _collect_boundary_types(self) -> typing.Dict[int, BoundaryTypes]:
        positions = self.grid.vertex_positions
        boundary_types: typing.Dict[int, BoundaryTypes] = {}
        for element in self.grid.elements():
            for face in element.geometry.boundary_faces:
                dof = element.vertex_indices[face.scv_index]
                if dof not in boundary_types:
                    boundary_types[dof] = self.problem.boundary_types_at_pos(positions[dof])
        logger.debug(f"Found {len(boundary_types)} boundary vertices")
        return boundary_types

    def _collect_dirichlet_values(self) -> None:
        positions = self.grid.vertex_positions
        self._dirichlet_mask = np.zeros((self.num_dofs, self.num_equations), dtype=bool)
        self._dirichlet_values = np.zeros((self.num_dofs, self.num_equations), dtype=get_dtype())
        self._dirichlet_presence: typing.Dict[int, int] = {}
        for dof, types in self.boundary_types.items():
            if not types.has_dirichlet:
                continue
            primary_variables = self.problem.dirichlet_at_pos(positions[dof])
            for equation in range(self.num_equations):
                if types.is_dirichlet(equation):
                    self._dirichlet_mask[dof, equation] = True
                    self._dirichlet_values[dof, equation] = primary_variables.values[equation]
            if types.is_dirichlet(self.indices.switch_index):
                self._dirichlet_presence[dof] = int(primary_variables.presence)

    def initial_solution(self) -> SolutionVector:
        """Initial values of all vertices with the Dirichlet values imposed."""
        positions = self.grid.vertex_positions
        solution = SolutionVector.from_primary_variables(
            [self.problem.initial_at_pos(position) for position in positions]
        )
        self.apply_dirichlet(solution)
        return solution

    def apply_dirichlet(self, solution: SolutionVector) -> None:
        """Impose Dirichlet values (and the phase presence of Dirichlet vertices) on `solution` in place."""
        solution.values[self._dirichlet_mask] = self._dirichlet_values[self._dirichlet_mask]
        for dof, presence in self._dirichlet_presence.items():
            solution.presence[dof] = presence

    def is_constrained(self, dof: int) -> bool:
        """Whether the phase presence of `dof` is fixed by a Dirichlet condition."""
        return dof in self._dirichlet_presence

    def element_volume_variables(
        self, element: Element, solution: SolutionVector
    ) -> ElementVolumeVariables:
        return ElementVolumeVariables.compute(self.problem, element, solution, self.indices)

    def residual(
        self,
        solution: SolutionVector,
        previous: SolutionVector,
        dt: float,
        constrained: bool = True,
    ) -> np.ndarray:
        """
        Global residual of shape (num_dofs, num_equations).

        :param solution: Current iterate.
        :param previous: Solution at the beginning of the time step.
        :param dt: Time step size (s).
        :param constrained: Whether Dirichlet rows are replaced by `u - u_D`.
        :raises NumericalFailure: If the residual is not finite.
        """
        self.ghost_exchange.exchange(solution)
        residual = np.zeros((self.num_dofs, self.num_equations), dtype=get_dtype())
        for element in self.grid.elements():
            local = self.local_residual.eval(
                element,
                self.element_volume_variables(element, solution),
                self.element_volume_variables(element, previous),
                dt,
            )
            residual[list(element.vertex_indices)] += local
        if constrained:
            self.constrain_residual(residual, solution)
        self.check_residual(residual)
        return residual

    def constrain_residual(self, residual: np.ndarray, solution: SolutionVector) -> None:
        """Replace residual entries of Dirichlet equations by `u - u_D` in place."""
        mask = self._dirichlet_mask
        residual[mask] = solution.values[mask] - self._dirichlet_values[mask]

    @staticmethod
    def check_residual(residual: np.ndarray) -> None:
        if not np.all(np.isfinite(residual)):
            bad = np.argwhere(~np.isfinite(residual))
            logger.error(f"Non-finite residual at (dof, equation) {bad[:5].tolist()}")
            raise NumericalFailure("Residual contains non-finite values")

    def total_storage(self, solution: SolutionVector) -> np.ndarray:
        """Conserved quantities integrated over the domain, per equation."""
        total = np.zeros(self.num_equations)
        for element in self.grid.elements():
            elem_vol_vars = self.element_volume_variables(element, solution)
            for scv in element.geometry.scvs:
                total += self.local_residual.storage(elem_vol_vars[scv.local_index]) * scv.volume
        return total
