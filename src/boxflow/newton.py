"""
Newton-Raphson iteration for one implicit time step and time step size
adaptation.
"""

import enum
import logging
import typing

import attrs
import numpy as np

from boxflow.assembler import JacobianAssembler
from boxflow.config import Config
from boxflow.errors import (
    JacobianSingular,
    NumericalFailure,
    PersistentDivergence,
    PreconditionerError,
    SolverError,
)
from boxflow.linear_solvers import ScipyLinearSolver
from boxflow.switching import PrimaryVariableSwitch
from boxflow.volume_variables import SolutionVector

if typing.TYPE_CHECKING:
    from boxflow.model import BoxModel


logger = logging.getLogger(__name__)

LinearSolver = typing.Callable[[typing.Any, np.ndarray], np.ndarray]
"""Linear solver callable `(A, b) -> x`."""

__all__ = [
    "NewtonState",
    "NewtonController",
    "DampingController",
    "NewtonResult",
    "NewtonMethod",
    "TimeStepResult",
    "solve_time_step",
]


class NewtonState(enum.Enum):
    ITERATING = "iterating"
    CONVERGED = "converged"
    NOT_YET_CONVERGED = "not_yet_converged"
    DIVERGED = "diverged"


@attrs.define
class NewtonController:
    """
    Convergence state machine of the Newton iteration.

    Every call to `record` counts as one iteration. The number of iterations
    a converged time step needed drives the suggestion of the next step size.
    """

    config: Config = attrs.field(factory=Config)
    state: NewtonState = attrs.field(init=False, default=NewtonState.ITERATING)
    iteration: int = attrs.field(init=False, default=0)
    residual_norms: typing.List[float] = attrs.field(init=False, factory=list)

    def reset(self) -> None:
        self.state = NewtonState.ITERATING
        self.iteration = 0
        self.residual_norms.clear()

    @property
    def converged(self) -> bool:
        return self.state == NewtonState.CONVERGED

    @property
    def diverged(self) -> bool:
        return self.state == NewtonState.DIVERGED

    def record(
        self,
        residual_norm: float,
        update_norm: typing.Optional[float] = None,
        switched: bool = False,
    ) -> NewtonState:
        """
        Record the residual norm of an iterate and update the state.

        :param residual_norm: Norm of the global residual at the iterate.
        :param update_norm: Relative size of the update that produced the iterate.
        :param switched: Whether a primary variable switch happened in the update.
        :return: The new state.
        """
        self.iteration += 1
        self.residual_norms.append(residual_norm)

        if not np.isfinite(residual_norm) or (
            update_norm is not None and not np.isfinite(update_norm)
        ):
            self.state = NewtonState.DIVERGED
        elif not switched and (
            residual_norm <= self.config.newton_residual_tolerance
            or (
                update_norm is not None
                and update_norm <= self.config.newton_update_tolerance
            )
        ):
            self.state = NewtonState.CONVERGED
        elif self.iteration >= self.config.newton_max_iterations:
            self.state = NewtonState.DIVERGED
        else:
            self.state = NewtonState.NOT_YET_CONVERGED

        logger.debug(
            f"Newton iteration {self.iteration}: residual norm = {residual_norm:.4e}, "
            f"state = {self.state.value}"
        )
        return self.state

    def suggest_time_step(self, step_size: float) -> float:
        """
        Time step size for the next step.

        Fewer iterations than the target grow the step, more shrink it. After
        divergence the step is reduced by `time_step_reduction_factor`.
        """
        if self.diverged:
            return self.time_step_after_failure(step_size)

        target = self.config.newton_target_iterations
        used = self.iteration
        if used > target:
            suggested = step_size / (1.0 + (used - target) / target)
        else:
            suggested = step_size * (1.0 + (target - used) / (1.2 * target))
        return min(suggested, self.config.max_time_step_size)

    def time_step_after_failure(self, step_size: float) -> float:
        return step_size * self.config.time_step_reduction_factor


@attrs.define
class DampingController:
    """Relaxation factor applied to the Newton update."""

    initial_factor: float = 1.0
    min_factor: float = 0.1
    reduction: float = 0.5
    growth: float = 1.5
    factor: float = attrs.field(init=False)

    def __attrs_post_init__(self) -> None:
        self.factor = self.initial_factor

    @classmethod
    def from_config(cls, config: Config) -> "DampingController":
        return cls(
            initial_factor=config.initial_damping_factor,
            min_factor=min(config.min_damping_factor, config.initial_damping_factor),
        )

    def get(self) -> float:
        return self.factor

    def decrease(self) -> float:
        self.factor = max(self.factor * self.reduction, self.min_factor)
        return self.factor

    def increase(self) -> float:
        self.factor = min(self.factor * self.growth, self.initial_factor)
        return self.factor

    def reset(self) -> None:
        self.factor = self.initial_factor


@attrs.frozen(slots=True)
class NewtonResult:
    solution: SolutionVector
    """Last iterate, the solution at the end of the time step if converged."""
    converged: bool
    state: NewtonState
    iterations: int
    """Number of residual evaluations (iterations) performed."""
    residual_norm: float
    """Residual norm of the last iterate."""
    suggested_step_size: float
    """Step size suggested for the next (or the retried) time step."""
    residual_norms: typing.Tuple[float, ...] = ()


def _relative_update_norm(update: np.ndarray, values: np.ndarray) -> float:
    return float(np.max(np.abs(update) / np.maximum(np.abs(values), 1.0), initial=0.0))


class NewtonMethod:
    """
    Solves the discrete balance equations of one time step.

    Each iteration assembles the residual and Jacobian, records the residual
    norm with the `NewtonController`, solves `J Δu = -R`, applies the damped
    (or line searched) update, re-imposes the Dirichlet values and lets the
    `PrimaryVariableSwitch` adjust phase presences.
    """

    def __init__(
        self,
        model: "BoxModel",
        config: typing.Optional[Config] = None,
        assembler: typing.Optional[JacobianAssembler] = None,
        linear_solver: typing.Optional[LinearSolver] = None,
        switch: typing.Optional[PrimaryVariableSwitch] = None,
    ) -> None:
        self.model = model
        self.config = config if config is not None else model.config
        self.assembler = (
            assembler if assembler is not None else JacobianAssembler(model, self.config)
        )
        self.linear_solver = (
            linear_solver
            if linear_solver is not None
            else ScipyLinearSolver.from_config(self.config)
        )
        self.switch = switch if switch is not None else PrimaryVariableSwitch(self.config)
        self.controller = NewtonController(self.config)
        self.damping = DampingController.from_config(self.config)

    def _solve_update(self, jacobian: typing.Any, residual: np.ndarray) -> np.ndarray:
        try:
            update = self.linear_solver(jacobian, -residual.reshape(-1))
        except (SolverError, PreconditionerError) as exc:
            logger.error(f"Linear solver failed: {exc}")
            raise JacobianSingular(f"Newton correction could not be computed. {exc}") from exc

        update = np.asarray(update).reshape(residual.shape)
        if not np.all(np.isfinite(update)):
            logger.error("Linear solver returned a non-finite Newton correction")
            raise JacobianSingular("Newton correction contains non-finite values")
        return update

    def _line_search(
        self,
        solution: SolutionVector,
        previous: SolutionVector,
        update: np.ndarray,
        dt: float,
        residual_norm: float,
    ) -> float:
        """Halve the update until the residual norm decreases, returning the accepted factor."""
        factor = 1.0
        for _ in range(self.config.max_line_search_steps):
            trial = solution.copy()
            trial.values += factor * update
            self.model.apply_dirichlet(trial)
            try:
                trial_norm = float(
                    np.linalg.norm(self.assembler.assemble_residual(trial, previous, dt))
                )
            except NumericalFailure:
                trial_norm = np.inf

            if trial_norm < residual_norm:
                return factor
            logger.debug(
                f"Line search: residual norm {trial_norm:.4e} with factor {factor}, halving"
            )
            factor *= 0.5
        return factor

    def solve(
        self, solution: SolutionVector, previous: SolutionVector, dt: float
    ) -> NewtonResult:
        """
        Run the Newton iteration for a time step of size `dt`.

        :param solution: Initial guess, usually a copy of `previous`.
        :param previous: Solution at the beginning of the time step.
        :param dt: Time step size (s).
        :return: `NewtonResult`; a diverged iteration is reported, not raised.
        :raises NumericalFailure: If a residual becomes non-finite.
        :raises JacobianSingular: If the Newton correction cannot be computed.
        """
        controller = self.controller
        controller.reset()
        self.damping.reset()
        self.switch.reset()

        current = solution.copy()
        self.model.apply_dirichlet(current)

        update_norm: typing.Optional[float] = None
        switched = False
        previous_residual_norm: typing.Optional[float] = None
        residual_norm = np.inf

        while True:
            assembly = self.assembler.assemble(
                current,
                previous,
                dt,
                recycle=controller.iteration == 0 and self.config.enable_jacobian_recycling,
            )
            residual_norm = float(np.linalg.norm(assembly.residual))
            state = controller.record(residual_norm, update_norm, switched)
            if state in (NewtonState.CONVERGED, NewtonState.DIVERGED):
                break

            if previous_residual_norm is not None and residual_norm > previous_residual_norm:
                self.damping.decrease()
            else:
                self.damping.increase()
            previous_residual_norm = residual_norm

            update = self._solve_update(assembly.jacobian, assembly.residual)
            if self.config.use_line_search:
                factor = self._line_search(current, previous, update, dt, residual_norm)
            else:
                factor = self.damping.get()

            update_norm = _relative_update_norm(factor * update, current.values)
            current.values += factor * update
            self.model.apply_dirichlet(current)
            switched = self.switch.update(self.model, current)

        converged = controller.converged
        if converged:
            logger.info(
                f"Newton converged after {controller.iteration} iterations "
                f"with residual norm {residual_norm:.4e}"
            )
        else:
            logger.warning(
                f"Newton diverged after {controller.iteration} iterations "
                f"with residual norm {residual_norm:.4e}"
            )
        return NewtonResult(
            solution=current,
            converged=converged,
            state=controller.state,
            iterations=controller.iteration,
            residual_norm=residual_norm,
            suggested_step_size=controller.suggest_time_step(dt),
            residual_norms=tuple(controller.residual_norms),
        )


@attrs.frozen(slots=True)
class TimeStepResult:
    solution: SolutionVector
    """Solution at the end of the time step."""
    step_size: float
    """Step size that was finally used (s)."""
    suggested_step_size: float
    """Step size suggested for the next time step (s)."""
    iterations: int
    """Newton iterations of the successful attempt."""
    failed_step_sizes: typing.Tuple[float, ...] = ()
    """Step sizes of the failed attempts, in order (s)."""

    @property
    def retries(self) -> int:
        """Number of failed attempts before the successful one."""
        return len(self.failed_step_sizes)


def solve_time_step(
    method: NewtonMethod,
    solution: SolutionVector,
    dt: float,
    max_retries: typing.Optional[int] = None,
    min_step_size: typing.Optional[float] = None,
) -> TimeStepResult:
    """
    Advance `solution` by one time step, reducing the step size after failures.

    Each attempt restarts from `solution`, the last converged state. Failed
    attempts are retried with the step size reduced by the Newton controller
    (`Config.time_step_reduction_factor`).

    :param method: Newton method of the model.
    :param solution: Solution at the beginning of the time step.
    :param dt: Proposed time step size (s).
    :param max_retries: Number of retries, defaults to `Config.max_time_step_retries`.
    :param min_step_size: Reduced step sizes are bounded below by this size (s).
        A failed attempt at the minimum size is not retried.
    :raises PersistentDivergence: If the step still fails after all retries.
    """
    if max_retries is None:
        max_retries = method.config.max_time_step_retries

    step_size = dt
    failed: typing.List[float] = []
    while True:
        try:
            result = method.solve(solution.copy(), solution, step_size)
        except (NumericalFailure, JacobianSingular) as exc:
            logger.warning(f"Time step attempt with size {step_size:.4e} s failed: {exc}")
        else:
            if result.converged:
                return TimeStepResult(
                    solution=result.solution,
                    step_size=step_size,
                    suggested_step_size=result.suggested_step_size,
                    iterations=result.iterations,
                    failed_step_sizes=tuple(failed),
                )

        method.assembler.reset()
        failed.append(step_size)
        if len(failed) > max_retries:
            break
        if min_step_size is not None and step_size <= min_step_size:
            logger.error(f"Time step of minimum size {min_step_size:.4e} s failed")
            break

        new_step_size = method.controller.time_step_after_failure(step_size)
        if min_step_size is not None:
            new_step_size = max(new_step_size, min_step_size)
        logger.warning(
            f"Retrying time step with size {new_step_size:.4e} s "
            f"(retry {len(failed)}/{max_retries})"
        )
        step_size = new_step_size

    logger.error(f"Time step failed after {len(failed) - 1} retries")
    raise PersistentDivergence(
        f"Newton iteration did not converge after {len(failed) - 1} time step reductions "
        f"(last step size {step_size:.4e} s)"
    )
