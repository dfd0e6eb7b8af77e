from collections import deque
import logging
import typing

import attrs

from boxflow.errors import TimingError, ValidationError

__all__ = ["StepMetrics", "Timer"]

logger = logging.getLogger(__name__)


@attrs.frozen(slots=True)
class StepMetrics:
    """Metrics for a single time step attempt."""

    step_number: int
    step_size: float
    newton_iterations: typing.Optional[int] = None
    success: bool = True


@attrs.define
class Timer:
    """
    Simulation time manager.

    Keeps the elapsed time and step count, proposes the size of the next time
    step from the suggestion made after an accepted step. Proposed sizes never
    exceed the remaining simulation time.
    """

    initial_step_size: float
    """Initial time step size in seconds."""
    max_step_size: float
    """Maximum allowable time step size in seconds."""
    min_step_size: float
    """Minimum allowable time step size in seconds."""
    simulation_time: float
    """Total simulation time in seconds."""
    max_steps: typing.Optional[int] = None
    """Maximum number of time steps to run for."""
    metrics_history_size: int = 10
    """Number of recent step attempts to keep metrics for."""

    elapsed_time: float = attrs.field(init=False, default=0.0)
    """Current simulation time in seconds (sum of all accepted steps)."""
    step_size: float = attrs.field(init=False, default=0.0)
    """The time step size (in seconds) that was used for the most recently accepted step."""
    next_step_size: float = attrs.field(init=False, default=0.0)
    """Time step size (in seconds) to propose for the next step."""
    step: int = attrs.field(init=False, default=0)
    """Number of accepted time steps completed so far."""
    rejection_count: int = attrs.field(init=False, default=0)
    """Number of failed time step attempts."""
    recent_metrics: deque = attrs.field(init=False)
    """Recent step metrics."""

    def __attrs_post_init__(self) -> None:
        if not 0.0 < self.min_step_size <= self.max_step_size:
            raise ValidationError(
                "Time step bounds must satisfy 0 < min_step_size <= max_step_size"
            )
        if not self.min_step_size <= self.initial_step_size <= self.max_step_size:
            raise ValidationError(
                "initial_step_size must lie between min_step_size and max_step_size"
            )

        self.next_step_size = self.initial_step_size
        self.step_size = self.initial_step_size
        self.recent_metrics = deque(maxlen=self.metrics_history_size)

    @property
    def next_step(self) -> int:
        """Returns the next time step count."""
        return self.step + 1

    def done(self) -> bool:
        """Checks if the simulation has reached its end criteria."""
        if self.elapsed_time >= self.simulation_time:
            return True

        if self.max_steps is not None and self.step >= self.max_steps:
            return True
        return False

    @property
    def time_remaining(self) -> float:
        """Calculates the remaining simulation time in seconds."""
        return max(self.simulation_time - self.elapsed_time, 0.0)

    @property
    def is_last_step(self) -> bool:
        """Determines if the latest accepted step was the last one."""
        return self.done()

    def propose_step_size(self) -> float:
        """Proposes the next time step size without updating state."""
        dt = min(self.next_step_size, self.time_remaining)
        logger.debug(
            f"Proposing time step of size {dt} for time step {self.next_step} "
            f"at elapsed time {self.elapsed_time}."
        )
        return dt

    def reject_step(self, step_size: float) -> None:
        """
        Registers a failed attempt of the next time step.

        Retries and step size reduction are decided by the Newton layer, the
        timer only keeps the record.

        :param step_size: The step size that failed.
        """
        self.recent_metrics.append(
            StepMetrics(step_number=self.next_step, step_size=step_size, success=False)
        )
        self.rejection_count += 1
        logger.debug(
            f"Time step of size {step_size} rejected for time step {self.next_step} "
            f"at elapsed time {self.elapsed_time}."
        )

    def accept_step(
        self,
        step_size: float,
        suggested_step_size: typing.Optional[float] = None,
        newton_iterations: typing.Optional[int] = None,
    ) -> float:
        """
        Registers an accepted time step and sets the size of the next one.

        :param step_size: The time step size that was just accepted.
        :param suggested_step_size: Size suggested by the Newton controller,
            defaults to `step_size`.
        :param newton_iterations: Number of Newton iterations taken.
        :return: The next proposed time step size, within the step size bounds.
        """
        if step_size > self.time_remaining:
            raise TimingError(
                f"Step size {step_size} exceeds remaining time {self.time_remaining}."
            )

        self.elapsed_time += step_size
        self.step_size = step_size
        self.step += 1
        self.recent_metrics.append(
            StepMetrics(
                step_number=self.step,
                step_size=step_size,
                newton_iterations=newton_iterations,
            )
        )

        dt = step_size if suggested_step_size is None else suggested_step_size
        self.next_step_size = min(max(dt, self.min_step_size), self.max_step_size)

        logger.debug(
            f"Time step of size {step_size} accepted for time step {self.step} "
            f"at elapsed time {self.elapsed_time}. Next size: {self.next_step_size:.6f}"
        )
        return self.next_step_size
