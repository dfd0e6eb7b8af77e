"""
Global residual and Jacobian assembly by numerical differentiation of the
element-local residuals.

Every element contributes a dense `(n_v * n_eq) x (n_v * n_eq)` block. A
column of the block is obtained by perturbing one primary variable of one
vertex, recomputing only that vertex's volume variables and re-evaluating the
element residual.
"""

from concurrent.futures import ThreadPoolExecutor
import logging
import typing

import attrs
import numpy as np
from scipy.sparse import csr_matrix, diags  # type: ignore[import-untyped]

from boxflow._precision import get_dtype, perturbation_floor
from boxflow.config import Config
from boxflow.grid import Element
from boxflow.types import DifferenceMethod, PhasePresence
from boxflow.volume_variables import ElementVolumeVariables, SolutionVector, compute_volume_variables

if typing.TYPE_CHECKING:
    from boxflow.model import BoxModel


logger = logging.getLogger(__name__)

__all__ = ["GhostExchange", "JacobianAssembler", "AssemblyResult", "numeric_epsilon"]


class GhostExchange:
    """
    Hook to synchronize overlapping (ghost) degrees of freedom of a
    partitioned mesh before every residual evaluation.

    The serial default does nothing.
    """

    def exchange(self, solution: SolutionVector) -> None:
        return None


def numeric_epsilon(value: float, base_epsilon: float = 1e-9) -> float:
    """
    Perturbation for the numerical derivative with respect to a primary variable of magnitude `value`.

    Never smaller than what the active floating point precision resolves.
    """
    return max(base_epsilon * (abs(value) + 1.0), perturbation_floor(value))


@attrs.frozen(slots=True)
class AssemblyResult:
    jacobian: csr_matrix
    """Global Jacobian with Dirichlet rows replaced by identity rows."""
    residual: np.ndarray
    """Global residual, shape (num_dofs, num_equations)."""
    num_reassembled: int
    """Number of elements whose Jacobian block was recomputed."""
    recycled: bool = False
    """Whether the Jacobian of a previous assembly was reused as a whole."""


@attrs.define
class _WorkerBuffer:
    residual: np.ndarray
    blocks: typing.Dict[int, np.ndarray] = attrs.field(factory=dict)


class JacobianAssembler:
    """
    Assembles the global residual and the Jacobian of a `BoxModel`.

    Options (taken from the model's `Config`):

    - `numeric_difference_method`: forward, backward or central differences
    - `enable_partial_reassemble`: reuse element blocks whose vertices barely changed
      since they were built for the same step size
    - `enable_jacobian_recycling`: reuse the last matrix at the start of the next time step
    - `assembly_workers`: number of threads sharing the element loop
    """

    def __init__(self, model: "BoxModel", config: typing.Optional[Config] = None) -> None:
        self.model = model
        self.config = config if config is not None else model.config
        self.num_equations = model.num_equations
        self.num_dofs = model.num_dofs
        self._elements: typing.Sequence[Element] = model.grid.elements()

        self._block_rows: typing.Dict[int, np.ndarray] = {}
        self._block_cols: typing.Dict[int, np.ndarray] = {}
        for element in self._elements:
            dofs = np.array(element.vertex_indices)
            global_indices = (
                dofs[:, None] * self.num_equations + np.arange(self.num_equations)[None, :]
            ).reshape(-1)
            self._block_rows[element.index] = np.repeat(global_indices, global_indices.size)
            self._block_cols[element.index] = np.tile(global_indices, global_indices.size)

        self._blocks: typing.Dict[int, np.ndarray] = {}
        self._reference_values: typing.Dict[int, np.ndarray] = {}
        self._reference_presence: typing.Dict[int, np.ndarray] = {}
        self._reference_dt: typing.Dict[int, float] = {}
        self._last_jacobian: typing.Optional[csr_matrix] = None
        self._last_dt: typing.Optional[float] = None

    @property
    def shape(self) -> typing.Tuple[int, int]:
        size = self.num_dofs * self.num_equations
        return size, size

    def sparsity_pattern(self) -> csr_matrix:
        """Boolean matrix of the structurally non-zero entries (vertex couplings through shared elements)."""
        rows = np.concatenate([self._block_rows[e.index] for e in self._elements])
        cols = np.concatenate([self._block_cols[e.index] for e in self._elements])
        pattern = csr_matrix((np.ones(rows.size), (rows, cols)), shape=self.shape)
        pattern.sum_duplicates()
        pattern.data[:] = 1.0
        return pattern.astype(bool)

    def reset(self) -> None:
        """Drop all stored element blocks and the recycled matrix."""
        self._blocks.clear()
        self._reference_values.clear()
        self._reference_presence.clear()
        self._reference_dt.clear()
        self._last_jacobian = None
        self._last_dt = None

    def can_recycle(self, dt: float) -> bool:
        """Whether the last Jacobian may be reused for a time step of size `dt`."""
        return (
            self.config.enable_jacobian_recycling
            and self._last_jacobian is not None
            and self._last_dt == dt
        )

    def _needs_reassembly(self, element: Element, solution: SolutionVector, dt: float) -> bool:
        if not self.config.enable_partial_reassemble or element.index not in self._blocks:
            return True
        # storage derivatives scale with 1/dt
        if self._reference_dt[element.index] != dt:
            return True
        dofs = list(element.vertex_indices)
        if not np.array_equal(self._reference_presence[element.index], solution.presence[dofs]):
            return True
        reference = self._reference_values[element.index]
        current = solution.values[dofs]
        relative_change = np.abs(current - reference) / np.maximum(np.abs(reference), 1.0)
        return bool(np.any(relative_change >= self.config.partial_reassemble_tolerance))

    def element_residual(
        self,
        element: Element,
        elem_vol_vars: ElementVolumeVariables,
        prev_elem_vol_vars: ElementVolumeVariables,
        dt: float,
    ) -> np.ndarray:
        return self.model.local_residual.eval(element, elem_vol_vars, prev_elem_vol_vars, dt)

    def element_jacobian(
        self,
        element: Element,
        solution: SolutionVector,
        elem_vol_vars: ElementVolumeVariables,
        prev_elem_vol_vars: ElementVolumeVariables,
        dt: float,
        residual: np.ndarray,
    ) -> np.ndarray:
        """
        Local Jacobian block by numerical differentiation.

        :param residual: Unperturbed element residual, used by one-sided differences.
        :return: Block of shape (n_v * n_eq, n_v * n_eq), rows and columns in (vertex, equation) order.
        """
        method = self.config.numeric_difference_method
        num_eq = self.num_equations
        size = element.num_vertices * num_eq
        block = np.zeros((size, size), dtype=get_dtype())
        model = self.model

        def perturbed_residual(local: int, values: np.ndarray, presence: PhasePresence) -> np.ndarray:
            vol_vars = compute_volume_variables(
                model.problem, element, local, values, presence, model.indices
            )
            return self.element_residual(
                element, elem_vol_vars.with_replaced(local, vol_vars), prev_elem_vol_vars, dt
            ).reshape(-1)

        unperturbed = residual.reshape(-1)
        for local, dof in enumerate(element.vertex_indices):
            presence = PhasePresence(int(solution.presence[dof]))
            for pv in range(num_eq):
                values = solution.values[dof].copy()
                original = values[pv]
                epsilon = numeric_epsilon(original, self.config.numeric_epsilon)

                if method == DifferenceMethod.BACKWARD:
                    forward_residual = unperturbed
                    forward_delta = 0.0
                else:
                    values[pv] = original + epsilon
                    forward_delta = values[pv] - original
                    forward_residual = perturbed_residual(local, values, presence)

                if method == DifferenceMethod.FORWARD:
                    backward_residual = unperturbed
                    backward_delta = 0.0
                else:
                    values[pv] = original - epsilon
                    backward_delta = original - values[pv]
                    backward_residual = perturbed_residual(local, values, presence)

                block[:, local * num_eq + pv] = (forward_residual - backward_residual) / (
                    forward_delta + backward_delta
                )
        return block

    def _assemble_elements(
        self,
        elements: typing.Sequence[Element],
        solution: SolutionVector,
        previous: SolutionVector,
        dt: float,
        with_jacobian: bool,
    ) -> _WorkerBuffer:
        buffer = _WorkerBuffer(
            residual=np.zeros((self.num_dofs, self.num_equations), dtype=get_dtype())
        )
        for element in elements:
            elem_vol_vars = self.model.element_volume_variables(element, solution)
            prev_elem_vol_vars = self.model.element_volume_variables(element, previous)
            residual = self.element_residual(element, elem_vol_vars, prev_elem_vol_vars, dt)
            buffer.residual[list(element.vertex_indices)] += residual
            if with_jacobian and self._needs_reassembly(element, solution, dt):
                buffer.blocks[element.index] = self.element_jacobian(
                    element, solution, elem_vol_vars, prev_elem_vol_vars, dt, residual
                )
        return buffer

    def _run_element_loop(
        self,
        solution: SolutionVector,
        previous: SolutionVector,
        dt: float,
        with_jacobian: bool,
    ) -> typing.List[_WorkerBuffer]:
        workers = min(self.config.assembly_workers, max(len(self._elements), 1))
        if workers == 1:
            return [self._assemble_elements(self._elements, solution, previous, dt, with_jacobian)]

        chunks = [self._elements[i::workers] for i in range(workers)]
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(
                executor.map(
                    lambda chunk: self._assemble_elements(
                        chunk, solution, previous, dt, with_jacobian
                    ),
                    chunks,
                )
            )

    def assemble_residual(
        self, solution: SolutionVector, previous: SolutionVector, dt: float
    ) -> np.ndarray:
        """Global constrained residual, shape (num_dofs, num_equations)."""
        self.model.ghost_exchange.exchange(solution)
        buffers = self._run_element_loop(solution, previous, dt, with_jacobian=False)
        residual = np.sum([buffer.residual for buffer in buffers], axis=0)
        self.model.constrain_residual(residual, solution)
        self.model.check_residual(residual)
        return residual

    def assemble(
        self,
        solution: SolutionVector,
        previous: SolutionVector,
        dt: float,
        recycle: bool = False,
    ) -> AssemblyResult:
        """
        Assemble the global residual and Jacobian at `solution`.

        :param solution: Current iterate.
        :param previous: Solution at the beginning of the time step.
        :param dt: Time step size (s).
        :param recycle: Reuse the last Jacobian if `can_recycle(dt)` allows it.
        :return: `AssemblyResult` with the CSR Jacobian and the residual.
        :raises NumericalFailure: If any residual entry is not finite.
        """
        if recycle and self.can_recycle(dt):
            residual = self.assemble_residual(solution, previous, dt)
            logger.debug("Recycling Jacobian of the previous time step")
            return AssemblyResult(
                jacobian=self._last_jacobian,  # type: ignore[arg-type]
                residual=residual,
                num_reassembled=0,
                recycled=True,
            )

        self.model.ghost_exchange.exchange(solution)
        buffers = self._run_element_loop(solution, previous, dt, with_jacobian=True)

        residual = np.zeros((self.num_dofs, self.num_equations), dtype=get_dtype())
        num_reassembled = 0
        for buffer in buffers:
            residual += buffer.residual
            for index, block in buffer.blocks.items():
                self._blocks[index] = block
                dofs = list(self._elements[index].vertex_indices)
                self._reference_values[index] = solution.values[dofs].copy()
                self._reference_presence[index] = solution.presence[dofs].copy()
                self._reference_dt[index] = dt
                num_reassembled += 1

        self.model.constrain_residual(residual, solution)
        self.model.check_residual(residual)

        rows = np.concatenate([self._block_rows[e.index] for e in self._elements])
        cols = np.concatenate([self._block_cols[e.index] for e in self._elements])
        data = np.concatenate([self._blocks[e.index].reshape(-1) for e in self._elements])
        jacobian = csr_matrix((data, (rows, cols)), shape=self.shape)
        jacobian.sum_duplicates()
        jacobian = self._constrain_jacobian(jacobian)

        if num_reassembled < len(self._elements):
            logger.debug(
                f"Partial reassembly: {num_reassembled}/{len(self._elements)} element blocks recomputed"
            )
        self._last_jacobian = jacobian
        self._last_dt = dt
        return AssemblyResult(
            jacobian=jacobian, residual=residual, num_reassembled=num_reassembled
        )

    def _constrain_jacobian(self, jacobian: csr_matrix) -> csr_matrix:
        mask = self.model.dirichlet_mask.reshape(-1).astype(get_dtype())
        if not mask.any():
            return jacobian
        constrained = diags(1.0 - mask) @ jacobian + diags(mask)
        return csr_matrix(constrained)
