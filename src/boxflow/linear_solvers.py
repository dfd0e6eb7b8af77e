"""Linear solvers and preconditioners for the Newton correction `J Δu = -R`."""

import logging
import threading
import typing
import warnings

import attrs
import numpy as np
import pyamg  # type: ignore[import-untyped]
from scipy.sparse import csr_array, csr_matrix, diags  # type: ignore[import-untyped]
from scipy.sparse.linalg import (  # type: ignore[import-untyped]
    LinearOperator,
    MatrixRankWarning,
    bicgstab,
    gmres,
    lgmres,
    spilu,
    spsolve,
)

from boxflow._precision import get_floating_point_info
from boxflow.config import Config
from boxflow.errors import PreconditionerError, SolverError, ValidationError
from boxflow.types import Preconditioner, PreconditionerFactory, Solver, SolverFunc


logger = logging.getLogger(__name__)

__all__ = [
    "build_amg_preconditioner",
    "build_diagonal_preconditioner",
    "build_ilu_preconditioner",
    "preconditioner_factory",
    "list_preconditioner_factories",
    "get_preconditioner_factory",
    "solver_func",
    "list_solver_funcs",
    "get_solver_func",
    "solve_linear_system",
    "ScipyLinearSolver",
]


def build_amg_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix], cycle: str = "V", **kwargs: typing.Any
) -> LinearOperator:
    """
    Creates an Algebraic Multigrid (AMG) preconditioner using PyAMG.

    :param A_csr: The Jacobian in CSR format.
    :param cycle: Multigrid cycle type ('V', 'W', 'F').
    :param kwargs: Additional arguments for `pyamg.smoothed_aggregation_solver`.
    :return: A SciPy `LinearOperator` that represents the AMG preconditioner.
    """
    ml_solver = pyamg.smoothed_aggregation_solver(csr_matrix(A_csr), **kwargs)
    return ml_solver.aspreconditioner(cycle=cycle)


def build_diagonal_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix],
) -> LinearOperator:
    """
    Creates a diagonal (Jacobi) preconditioner from the Jacobian.

    :param A_csr: The Jacobian in CSR format.
    :return: A SciPy `LinearOperator` that represents the diagonal preconditioner.
    """
    diagonal = A_csr.diagonal()
    epsilon = get_floating_point_info().eps
    threshold = max(1e-10, 100 * epsilon)
    diagonal = np.where(np.abs(diagonal) < threshold, 1.0, diagonal)
    M_diag = diags(1.0 / diagonal, format="csr")
    return LinearOperator(shape=A_csr.shape, matvec=M_diag.dot)  # type: ignore[arg-type]


def build_ilu_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix], **kwargs: typing.Any
) -> LinearOperator:
    """
    Creates an Incomplete LU (ILU) preconditioner using `spilu`.

    :param A_csr: The Jacobian in CSR format. Converted to CSC for `spilu`.
    :return: A SciPy `LinearOperator` that solves the preconditioned system.
    """
    A_csc = A_csr.tocsc()
    kwargs.setdefault("drop_tol", 1e-5)
    kwargs.setdefault("fill_factor", 10)
    ilu_factor = spilu(A_csc, **kwargs)
    return LinearOperator(shape=A_csc.shape, matvec=ilu_factor.solve)  # type: ignore[arg-type]


def _spsolve(
    A: typing.Any,
    b: typing.Any,
    x0: typing.Optional[typing.Any],
    *,
    rtol: float,
    atol: float,
    maxiter: typing.Optional[int],
    M: typing.Optional[typing.Any],
    callback: typing.Optional[typing.Callable[[np.typing.NDArray], None]],
) -> typing.Tuple[np.typing.NDArray, int]:
    with warnings.catch_warnings():
        warnings.simplefilter("error", MatrixRankWarning)
        try:
            x = spsolve(csr_matrix(A).tocsc(), b)
        except (MatrixRankWarning, RuntimeError) as exc:
            logger.debug(f"Direct solve failed: {exc}")
            return np.full(b.shape, np.nan), 1
    return x, 0


def _lgmres(
    A: typing.Any,
    b: typing.Any,
    x0: typing.Optional[typing.Any],
    *,
    rtol: float,
    atol: float,
    maxiter: typing.Optional[int],
    M: typing.Optional[typing.Any],
    callback: typing.Optional[typing.Callable[[np.typing.NDArray], None]],
    inner_m: int = 30,
    outer_k: int = 3,
) -> typing.Tuple[np.typing.NDArray, int]:
    """
    LGMRES solver with configurable inner/outer iteration parameters.

    :param inner_m: Number of inner GMRES iterations per restart.
    :param outer_k: Number of vectors to carry between inner GMRES iterations.
    """
    return lgmres(  # type: ignore[return-value]
        A,
        b,
        x0=x0,
        M=M,
        rtol=rtol,
        atol=atol,
        maxiter=maxiter,
        callback=callback,
        inner_m=inner_m,
        outer_k=outer_k,
    )


_preconditioner_registry_lock = threading.Lock()
_PRECONDITIONER_FACTORIES: typing.Dict[str, PreconditionerFactory] = {
    "amg": build_amg_preconditioner,
    "ilu": build_ilu_preconditioner,
    "diagonal": build_diagonal_preconditioner,
}
"""Registered preconditioner factory functions."""

_solver_registry_lock = threading.Lock()
_SOLVER_FUNCS: typing.Dict[str, SolverFunc] = {
    "direct": _spsolve,
    "bicgstab": bicgstab,
    "gmres": gmres,
    "lgmres": _lgmres,
}
"""Registered solver functions."""


def preconditioner_factory(
    func: typing.Optional[PreconditionerFactory] = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Union[
    PreconditionerFactory,
    typing.Callable[[PreconditionerFactory], PreconditionerFactory],
]:
    """
    Decorator to register a preconditioner factory function.

    A preconditioner factory takes the Jacobian in CSR format and returns a
    SciPy `LinearOperator` approximating its inverse.

    :param func: The preconditioner factory function to decorate.
    :param name: Optional name to register the preconditioner under. If not provided,
        the function's `__name__` attribute is used.
    :param override: If True, allows overriding an existing preconditioner factory.
    :return: The original function, unmodified.
    """

    def decorator(func: PreconditionerFactory) -> PreconditionerFactory:
        with _preconditioner_registry_lock:
            key = name or getattr(func, "__name__", None)
            if not key:
                raise ValidationError(
                    "Preconditioner factory must have a `__name__` attribute or a name must be provided."
                )
            if not override and key in _PRECONDITIONER_FACTORIES:
                raise ValidationError(
                    f"Preconditioner factory '{key}' is already registered. "
                    f"Use `override=True` to replace it."
                )
            _PRECONDITIONER_FACTORIES[key] = func
        return func

    if func is not None:
        return decorator(func)
    return decorator


def list_preconditioner_factories() -> typing.List[str]:
    """List the names of all registered preconditioner factories."""
    with _preconditioner_registry_lock:
        return list(_PRECONDITIONER_FACTORIES.keys())


def get_preconditioner_factory(name: str) -> PreconditionerFactory:
    """
    Get a registered preconditioner factory by name.

    :raises ValidationError: If the preconditioner factory is unknown.
    """
    with _preconditioner_registry_lock:
        if name not in _PRECONDITIONER_FACTORIES:
            raise ValidationError(
                f"Unknown preconditioner factory: {name!r}. "
                f"Available preconditioners: {list(_PRECONDITIONER_FACTORIES.keys())}"
            )
        return _PRECONDITIONER_FACTORIES[name]


def solver_func(
    func: typing.Optional[SolverFunc] = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Union[SolverFunc, typing.Callable[[SolverFunc], SolverFunc]]:
    """
    Decorator to register a solver function.

    A solver function implements the interface of SciPy's sparse iterative
    solvers and returns `(x, info)` with `info == 0` on success.

    :param func: The solver function to decorate.
    :param name: Optional name to register the solver under. If not provided,
        the function's `__name__` attribute is used.
    :param override: If True, allows overriding an existing solver function.
    :return: The original function, unmodified.
    """

    def decorator(func: SolverFunc) -> SolverFunc:
        with _solver_registry_lock:
            key = name or getattr(func, "__name__", None)
            if not key:
                raise ValidationError(
                    "Solver function must have a `__name__` attribute or a name must be provided."
                )
            if not override and key in _SOLVER_FUNCS:
                raise ValidationError(
                    f"Solver function '{key}' is already registered. "
                    f"Use `override=True` to replace it."
                )
            _SOLVER_FUNCS[key] = func
        return func

    if func is not None:
        return decorator(func)
    return decorator


def list_solver_funcs() -> typing.List[str]:
    """List the names of all registered solver functions."""
    with _solver_registry_lock:
        return list(_SOLVER_FUNCS.keys())


def get_solver_func(name: str) -> SolverFunc:
    """
    Get a registered solver function by name.

    :raises ValidationError: If the solver is unknown.
    """
    with _solver_registry_lock:
        if name not in _SOLVER_FUNCS:
            raise ValidationError(
                f"Unknown solver function: {name!r}. "
                f"Available solvers: {list(_SOLVER_FUNCS.keys())}"
            )
        return _SOLVER_FUNCS[name]


def _get_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix],
    preconditioner: typing.Optional[Preconditioner],
) -> typing.Optional[LinearOperator]:
    if isinstance(preconditioner, (type(None), LinearOperator)):
        return preconditioner
    if isinstance(preconditioner, str):
        return get_preconditioner_factory(preconditioner)(A_csr)
    if callable(preconditioner):
        factory = typing.cast(PreconditionerFactory, preconditioner)
        return factory(A_csr)
    raise ValidationError(f"Invalid preconditioner specification: {preconditioner!r}")


def _get_solver_funcs(
    solver: typing.Union[Solver, typing.Iterable[Solver]],
) -> typing.List[SolverFunc]:
    if isinstance(solver, str):
        return [get_solver_func(solver)]
    if callable(solver):
        return [solver]  # type: ignore[list-item]
    if isinstance(solver, (list, tuple)):
        solver_funcs = []
        for s in solver:
            if isinstance(s, str):
                solver_funcs.append(get_solver_func(s))
            elif callable(s):
                solver_funcs.append(s)
            else:
                raise ValidationError(f"Unknown solver type in sequence: {s!r}")
        return solver_funcs
    raise ValidationError("solver must be a string, callable, or a sequence of strings.")


def solve_linear_system(
    A_csr: typing.Union[csr_array, csr_matrix],
    b: np.typing.NDArray,
    max_iterations: int = 500,
    rtol: float = 1e-10,
    atol: typing.Optional[float] = None,
    solver: typing.Union[Solver, typing.Iterable[Solver]] = "direct",
    preconditioner: typing.Optional[Preconditioner] = "ilu",
) -> np.typing.NDArray:
    """
    Solves the linear system A·x = b.

    If a sequence of solvers is given, they are tried in order until one
    succeeds. Preconditioners are only built for iterative solvers.

    :param A_csr: Coefficient matrix in CSR format.
    :param b: Right-hand side vector.
    :param max_iterations: Maximum number of iterations of iterative solvers.
    :param rtol: Relative tolerance of iterative solvers.
    :param atol: Absolute tolerance of iterative solvers.
    :param solver: Solver name ("direct", "bicgstab", "gmres", "lgmres"), custom
        callable, or a sequence of them.
    :param preconditioner: Preconditioner name ("ilu", "amg", "diagonal"), factory,
        `LinearOperator` or None.
    :return: The solution vector.
    :raises PreconditionerError: If the preconditioner cannot be built.
    :raises SolverError: If no solver produced a finite solution.
    """
    solver_funcs = _get_solver_funcs(solver)
    M = None
    if any(func is not _spsolve for func in solver_funcs):
        try:
            M = _get_preconditioner(A_csr, preconditioner)
        except ValidationError:
            raise
        except Exception as exc:
            raise PreconditionerError(f"Error building preconditioner: {exc}") from exc

    atol = atol if atol is not None else float(max(1e-14, rtol * np.linalg.norm(b)))
    for func in solver_funcs:
        x, info = func(
            A_csr,
            b,
            None,
            rtol=rtol,
            atol=atol,
            maxiter=max_iterations,
            M=None if func is _spsolve else M,
            callback=None,
        )
        if info == 0 and np.all(np.isfinite(x)):
            return np.ascontiguousarray(x)
        logger.warning(
            f"Solver {getattr(func, '__name__', func)!r} failed (info={info}) "
            f"within {max_iterations} iterations"
        )
    raise SolverError("All linear solvers failed to solve the system.")


@attrs.frozen
class ScipyLinearSolver:
    """Linear solver callable `(A, b) -> x` configured from a `Config`."""

    solver: typing.Union[Solver, typing.Iterable[Solver]] = "direct"
    preconditioner: typing.Optional[Preconditioner] = "ilu"
    max_iterations: int = 500
    rtol: float = 1e-10

    @classmethod
    def from_config(cls, config: Config) -> "ScipyLinearSolver":
        return cls(
            solver=config.linear_solver,
            preconditioner=config.preconditioner,
            max_iterations=config.linear_solver_max_iterations,
            rtol=config.linear_solver_tolerance,
        )

    def __call__(
        self, A_csr: typing.Union[csr_array, csr_matrix], b: np.typing.NDArray
    ) -> np.typing.NDArray:
        return solve_linear_system(
            A_csr,
            b,
            max_iterations=self.max_iterations,
            rtol=self.rtol,
            solver=self.solver,
            preconditioner=self.preconditioner,
        )
