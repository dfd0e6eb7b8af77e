import math
import typing

import attrs

from boxflow._validation import checked, enum_converter
from boxflow.constants import Constants
from boxflow.errors import ValidationError
from boxflow.types import DifferenceMethod, Preconditioner, Solver

__all__ = ["Config"]


def _positive(instance: typing.Any, attribute: attrs.Attribute, value: float) -> None:
    if not value > 0.0:
        raise ValidationError(f"'{attribute.name}' must be positive, got {value!r}")


@attrs.frozen
class Config:
    """Discretization, linearization and Newton control parameters."""

    newton_residual_tolerance: float = attrs.field(default=1e-10, validator=_positive)
    """Maximum norm of the residual vector below which the Newton iteration is converged."""
    newton_update_tolerance: float = attrs.field(default=1e-8, validator=_positive)
    """
    Maximum relative primary variable update (`|Δu| / max(|u|, 1)`) below which
    the Newton iteration is converged.
    """
    newton_max_iterations: int = attrs.field(
        default=18,
        validator=checked(
            attrs.validators.ge(1), attrs.validators.le(500)
        ),
    )
    """
    Maximum number of Newton iterations per time step attempt.

    Exceeding this count without convergence counts as divergence and the
    time step is retried with a reduced step size.
    """
    newton_target_iterations: int = attrs.field(
        default=10, validator=checked(attrs.validators.ge(1))
    )
    """Number of Newton iterations considered optimal for time step size adaptation."""
    max_time_step_retries: int = attrs.field(
        default=10, validator=checked(attrs.validators.ge(0))
    )
    """Maximum number of times a failed time step is retried with a reduced step size."""
    max_time_step_size: float = attrs.field(default=math.inf, validator=_positive)
    """Upper bound on the suggested time step size (s)."""
    time_step_reduction_factor: float = attrs.field(
        default=0.5,
        validator=checked(attrs.validators.gt(0), attrs.validators.lt(1)),
    )
    """Factor applied to the time step size after a failed step attempt."""

    numeric_difference_method: DifferenceMethod = attrs.field(
        default=DifferenceMethod.CENTRAL, converter=enum_converter(DifferenceMethod)
    )
    """
    Finite difference scheme for the Jacobian.

    Central differences are the most accurate, forward or backward differences
    need one residual evaluation less per primary variable.
    """
    numeric_epsilon: float = attrs.field(default=1e-9, validator=_positive)
    """Base increment for numerical differentiation, scaled by `|u| + 1`."""
    enable_gravity: bool = True
    """Whether the density weighted gravity term is added to the potential gradients."""

    enable_partial_reassemble: bool = False
    """
    Whether element Jacobian blocks whose vertices barely changed since their
    last linearization are reused instead of being recomputed.
    """
    partial_reassemble_tolerance: float = attrs.field(default=1e-7, validator=_positive)
    """Relative primary variable change below which a vertex counts as unchanged."""
    enable_jacobian_recycling: bool = False
    """
    Whether the Jacobian of the last iteration of a time step is used for the
    first iteration of the next time step (only if the step size did not change).
    """
    assembly_workers: int = attrs.field(
        default=1, validator=checked(attrs.validators.ge(1))
    )
    """Number of threads sharing the element loop during assembly."""

    use_line_search: bool = False
    """Whether the Newton update is scaled back until the residual norm decreases."""
    max_line_search_steps: int = attrs.field(
        default=6, validator=checked(attrs.validators.ge(1))
    )
    """Maximum number of update halvings during a line search."""
    initial_damping_factor: float = attrs.field(
        default=1.0,
        validator=checked(attrs.validators.gt(0), attrs.validators.le(1)),
    )
    """Initial (and maximum) relaxation factor applied to the Newton update."""
    min_damping_factor: float = attrs.field(
        default=0.1,
        validator=checked(attrs.validators.gt(0), attrs.validators.le(1)),
    )
    """Lower bound on the Newton update relaxation factor."""

    switch_saturation_tolerance: float = attrs.field(
        default=0.01, validator=checked(attrs.validators.ge(0))
    )
    """
    Negative saturation a recently switched vertex may reach before the phase is
    considered to disappear again.
    """
    switch_composition_tolerance: float = attrs.field(
        default=0.02, validator=checked(attrs.validators.ge(0))
    )
    """Relative excess over unity of the fictitious mole fraction sum needed for a recently switched vertex to let a phase appear."""
    switch_suppression_iterations: int = attrs.field(
        default=3, validator=checked(attrs.validators.ge(0))
    )
    """Number of iterations a vertex with an oscillating phase presence is kept from switching."""

    linear_solver: typing.Union[Solver, typing.Iterable[Solver]] = "direct"
    """Linear solver(s) used for the Newton correction ('direct', 'bicgstab', 'gmres', 'lgmres')."""
    preconditioner: typing.Optional[Preconditioner] = "ilu"
    """Preconditioner used with iterative linear solvers."""
    linear_solver_max_iterations: int = attrs.field(
        default=500, validator=checked(attrs.validators.ge(1))
    )
    """Maximum number of iterations of iterative linear solvers."""
    linear_solver_tolerance: float = attrs.field(default=1e-10, validator=_positive)
    """Relative tolerance of iterative linear solvers."""

    constants: Constants = attrs.field(factory=Constants)
    """Physical constants used in the simulation."""
