"""
Floating point precision of solution vectors, residuals and Jacobians.

The dtype is context-local, so simulations running in different threads or
tasks may use different precisions. Finite difference Jacobians need
perturbations that are resolvable in the active precision, see
`perturbation_floor`.
"""

from contextlib import contextmanager
from contextvars import ContextVar
import typing

import numpy as np
import numpy.typing as npt

from boxflow.errors import ValidationError

__all__ = [
    "get_dtype",
    "set_dtype",
    "with_precision",
    "use_64bit_precision",
    "use_32bit_precision",
    "get_floating_point_info",
    "perturbation_floor",
]

_SUPPORTED_DTYPES = (np.dtype(np.float32), np.dtype(np.float64))

_boxflow_dtype: ContextVar[np.dtype] = ContextVar(
    "_boxflow_dtype", default=np.dtype(np.float64)
)


def _as_supported_dtype(dtype: npt.DTypeLike) -> np.dtype:
    try:
        resolved = np.dtype(dtype)
    except TypeError as exc:
        raise ValidationError(f"Invalid data type {dtype!r}") from exc
    if resolved not in _SUPPORTED_DTYPES:
        raise ValidationError(
            f"Unsupported data type {resolved}. Use float32 or float64."
        )
    return resolved


def get_dtype() -> np.dtype:
    """Data type of solution vectors, residuals and Jacobians (float64 unless changed)."""
    return _boxflow_dtype.get()


def set_dtype(dtype: npt.DTypeLike) -> None:
    """
    Set the data type for the current context.

    :param dtype: float32 or float64.
    :raises ValidationError: For any other data type.
    """
    _boxflow_dtype.set(_as_supported_dtype(dtype))


@contextmanager
def with_precision(dtype: npt.DTypeLike) -> typing.Iterator[np.dtype]:
    """
    Temporarily use `dtype` for boxflow computations.

    :param dtype: float32 or float64.
    :yield: The active data type.
    :raises ValidationError: For any other data type.
    """
    token = _boxflow_dtype.set(_as_supported_dtype(dtype))
    try:
        yield get_dtype()
    finally:
        _boxflow_dtype.reset(token)


def use_64bit_precision() -> None:
    set_dtype(np.float64)


def use_32bit_precision() -> None:
    """
    Use single precision.

    Numerical derivatives lose most of their accuracy: perturbations are raised
    to `perturbation_floor`, far above the default base epsilon.
    """
    set_dtype(np.float32)


def get_floating_point_info() -> np.finfo:
    return np.finfo(get_dtype())


def perturbation_floor(value: float) -> float:
    """
    Smallest perturbation of a primary variable of magnitude `value` that is
    still resolved by the active precision (four machine epsilons, relative).
    """
    return 4.0 * float(get_floating_point_info().eps) * (abs(value) + 1.0)
