"""Run a time dependent simulation of a box model."""

import logging
import typing

import attrs

from boxflow.errors import ConvergenceError, PersistentDivergence, ValidationError
from boxflow.model import BoxModel
from boxflow.newton import NewtonMethod, solve_time_step
from boxflow.timing import Timer
from boxflow.volume_variables import SolutionVector

__all__ = ["ModelState", "run"]

logger = logging.getLogger(__name__)


@attrs.frozen(slots=True)
class ModelState:
    """The solution of the model after an accepted time step."""

    step: int
    """The time step index of the state (0 for the initial state)."""
    time: float
    """Simulation time at this state in seconds."""
    step_size: float
    """Size of the time step that led to this state in seconds."""
    solution: SolutionVector
    """Primary variables and phase presence of all vertices."""
    newton_iterations: int = 0
    """Newton iterations of the accepted step."""


def log_progress(
    step: int,
    step_size: float,
    time_elapsed: float,
    total_time: float,
    is_last_step: bool = False,
    interval: int = 3,
) -> None:
    """Logs the simulation progress at specified intervals."""
    if step <= 1 or step % interval == 0 or is_last_step:
        percent_complete = (time_elapsed / total_time) * 100.0
        logger.info(
            f"Time Step {step} with Δt = {step_size:.4f}s - "
            f"({percent_complete:.4f}%) - "
            f"Elapsed Time: {time_elapsed:.4f}s / {total_time:.4f}s"
        )


def run(
    model: BoxModel,
    timer: Timer,
    solution: typing.Optional[SolutionVector] = None,
    method: typing.Optional[NewtonMethod] = None,
    output_frequency: int = 1,
) -> typing.Generator[ModelState, None, None]:
    """
    Advances the model in time until the timer is done.

    Each step is solved with the Newton method. Converged steps are accepted
    and the next step size follows the Newton controller's suggestion. Failed
    attempts are retried by `solve_time_step` with reduced step sizes, at most
    `Config.max_time_step_retries` times and never below `timer.min_step_size`.

    :param model: The box model to simulate.
    :param timer: The time manager for controlling simulation time steps.
    :param solution: Initial solution, defaults to `model.initial_solution()`.
    :param method: Newton method, defaults to one built from the model's config.
    :param output_frequency: Yield the state every `output_frequency` accepted steps.
    :yield: The initial state, then states at the output interval and the last step.
    :raises ConvergenceError: If a step cannot be completed with any allowed step size.
    """
    if output_frequency < 1:
        raise ValidationError("output_frequency must be at least 1")
    if solution is None:
        solution = model.initial_solution()
    if method is None:
        method = NewtonMethod(model)

    with model.config.constants():
        logger.info("Starting box model simulation...")
        logger.debug(f"Number of vertices: {model.num_dofs}")
        logger.debug(f"Number of equations: {model.num_equations}")
        logger.debug(f"Total simulation time: {timer.simulation_time} seconds")

        yield ModelState(
            step=timer.step,
            time=timer.elapsed_time,
            step_size=timer.step_size,
            solution=solution.copy(),
        )

        while not timer.done():
            new_step = timer.next_step
            step_size = timer.propose_step_size()
            logger.debug(f"Attempting time step {new_step} with size {step_size} seconds...")

            try:
                result = solve_time_step(
                    method,
                    solution,
                    step_size,
                    min_step_size=min(timer.min_step_size, step_size),
                )
            except PersistentDivergence as exc:
                raise ConvergenceError(
                    f"Simulation failed at time step {new_step} and cannot reduce time step further. {exc}"
                ) from exc

            for failed_step_size in result.failed_step_sizes:
                timer.reject_step(failed_step_size)
            if result.retries:
                logger.warning(
                    f"Time step {new_step} converged after {result.retries} retries "
                    f"with size {result.step_size} seconds."
                )

            step_size = result.step_size
            solution = result.solution
            timer.accept_step(
                step_size,
                suggested_step_size=result.suggested_step_size,
                newton_iterations=result.iterations,
            )
            log_progress(
                step=timer.step,
                step_size=step_size,
                time_elapsed=timer.elapsed_time,
                total_time=timer.simulation_time,
                is_last_step=timer.is_last_step,
            )

            if timer.step % output_frequency == 0 or timer.is_last_step:
                yield ModelState(
                    step=timer.step,
                    time=timer.elapsed_time,
                    step_size=step_size,
                    solution=solution.copy(),
                    newton_iterations=result.iterations,
                )

        logger.info("Simulation completed.")
