class BoxFlowError(Exception):
    """Base class for all boxflow-related errors."""

    pass


class ValidationError(BoxFlowError, ValueError):
    """Raised when input data fails validation checks."""

    pass


class ComputationError(BoxFlowError):
    """Raised when there is an error during numerical computations."""

    pass


class NumericalFailure(ComputationError):
    """
    Raised when secondary variables, fluxes or residuals become non-finite or
    non-physical (flash non-convergence, negative pressure, NaN residual).

    Never retried locally. The Newton layer aborts the time step and retries
    with a smaller step size.
    """

    pass


class SolverError(BoxFlowError):
    """Raised when a linear solver fails to converge within the specified iterations."""

    pass


class PreconditionerError(BoxFlowError):
    """Raised when there is an error related to preconditioners."""

    pass


class JacobianSingular(SolverError):
    """Raised when the linearized system is singular or the linear solve fails."""

    pass


class SimulationError(BoxFlowError):
    """Base class for simulation-related errors."""

    pass


class ConvergenceError(SimulationError):
    """Raised when a time step cannot converge at any admissible step size."""

    pass


class TimingError(SimulationError):
    """Raised when there is an error related to simulation timing."""

    pass


class PersistentDivergence(TimingError):
    """Raised when a time step cannot be completed after the maximum number of retries."""

    pass


class SwitchOscillation(UserWarning):
    """Warned when a vertex toggles its phase presence back and forth between iterations."""

    pass
