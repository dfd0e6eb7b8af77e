"""
Capillary pressure and relative permeability closures for two-phase flow.

All laws are formulated in effective saturations and scaled to absolute
saturations through the residual saturations of the wetting and non-wetting
phase:

    Swe = (Sw - Swr) / (1 - Swr - Snr)

Capillary pressure is extended linearly outside the valid range so the
Newton iteration never sees an infinite or undefined value. Relative
permeabilities are evaluated at the effective saturation clamped to [0, 1].
"""

import math
import typing

import attrs
import numba

from boxflow._validation import checked
from boxflow.errors import ValidationError


__all__ = [
    "MaterialLaw",
    "LinearMaterial",
    "BrooksCorey",
    "VanGenuchten",
    "compute_brooks_corey_capillary_pressure",
    "compute_van_genuchten_capillary_pressure",
]


@numba.njit(cache=True)
def _clamp01(value: float) -> float:
    return min(max(value, 0.0), 1.0)


##################
# LINEAR         #
##################


@numba.njit(cache=True)
def compute_linear_capillary_pressure(
    effective_saturation: float, entry_pressure: float, max_pressure: float
) -> float:
    """
    pc = pe + (1 - Swe) * (pc_max - pe)

    :param effective_saturation: Effective wetting phase saturation.
    :param entry_pressure: Capillary pressure at Swe = 1 (Pa).
    :param max_pressure: Capillary pressure at Swe = 0 (Pa).
    """
    return entry_pressure + (1.0 - effective_saturation) * (max_pressure - entry_pressure)


##################
# BROOKS-COREY   #
##################


@numba.njit(cache=True)
def _brooks_corey_pc(effective_saturation: float, entry_pressure: float, lambda_: float) -> float:
    return entry_pressure * effective_saturation ** (-1.0 / lambda_)


@numba.njit(cache=True)
def _brooks_corey_pc_slope(effective_saturation: float, entry_pressure: float, lambda_: float) -> float:
    return (
        -entry_pressure
        / lambda_
        * effective_saturation ** (-1.0 / lambda_ - 1.0)
    )


@numba.njit(cache=True)
def compute_brooks_corey_capillary_pressure(
    effective_saturation: float,
    entry_pressure: float,
    lambda_: float,
    low_threshold: float,
) -> float:
    """
    Regularized Brooks-Corey capillary pressure.

        pc = pe * Swe^(-1/λ)

    Below `low_threshold` and above 1 the curve is continued by its tangent.
    """
    if effective_saturation <= low_threshold:
        pc_threshold = _brooks_corey_pc(low_threshold, entry_pressure, lambda_)
        slope = _brooks_corey_pc_slope(low_threshold, entry_pressure, lambda_)
        return pc_threshold + slope * (effective_saturation - low_threshold)
    if effective_saturation >= 1.0:
        slope = _brooks_corey_pc_slope(1.0, entry_pressure, lambda_)
        return entry_pressure + slope * (effective_saturation - 1.0)
    return _brooks_corey_pc(effective_saturation, entry_pressure, lambda_)


@numba.njit(cache=True)
def compute_brooks_corey_effective_saturation(
    capillary_pressure: float,
    entry_pressure: float,
    lambda_: float,
    low_threshold: float,
) -> float:
    """Inverse of `compute_brooks_corey_capillary_pressure`."""
    if capillary_pressure <= entry_pressure:
        slope = _brooks_corey_pc_slope(1.0, entry_pressure, lambda_)
        return 1.0 + (capillary_pressure - entry_pressure) / slope
    pc_threshold = _brooks_corey_pc(low_threshold, entry_pressure, lambda_)
    if capillary_pressure >= pc_threshold:
        slope = _brooks_corey_pc_slope(low_threshold, entry_pressure, lambda_)
        return low_threshold + (capillary_pressure - pc_threshold) / slope
    return (capillary_pressure / entry_pressure) ** (-lambda_)


@numba.njit(cache=True)
def compute_brooks_corey_relative_permeabilities(
    effective_saturation: float, lambda_: float
) -> typing.Tuple[float, float]:
    """
    Burdine-Brooks-Corey relative permeabilities.

        krw = Swe^((2 + 3λ)/λ)
        krn = (1 - Swe)² * (1 - Swe^((2 + λ)/λ))

    :return: (wetting, non-wetting) relative permeability.
    """
    swe = _clamp01(effective_saturation)
    krw = swe ** ((2.0 + 3.0 * lambda_) / lambda_)
    krn = (1.0 - swe) ** 2 * (1.0 - swe ** ((2.0 + lambda_) / lambda_))
    return krw, krn


##################
# VAN GENUCHTEN  #
##################


@numba.njit(cache=True)
def _van_genuchten_pc(effective_saturation: float, alpha: float, n: float) -> float:
    m = 1.0 - 1.0 / n
    return (effective_saturation ** (-1.0 / m) - 1.0) ** (1.0 / n) / alpha


@numba.njit(cache=True)
def _van_genuchten_pc_slope(effective_saturation: float, alpha: float, n: float) -> float:
    m = 1.0 - 1.0 / n
    inner = effective_saturation ** (-1.0 / m) - 1.0
    return (
        -1.0
        / (alpha * n * m)
        * inner ** (1.0 / n - 1.0)
        * effective_saturation ** (-1.0 / m - 1.0)
    )


@numba.njit(cache=True)
def compute_van_genuchten_capillary_pressure(
    effective_saturation: float,
    alpha: float,
    n: float,
    low_threshold: float,
    high_threshold: float,
) -> float:
    """
    Regularized van Genuchten capillary pressure.

        pc = (Swe^(-1/m) - 1)^(1/n) / α,   m = 1 - 1/n

    Below `low_threshold` the tangent is used. Above `high_threshold` the curve
    is replaced by the straight line through (high_threshold, pc(high_threshold))
    and (1, 0), continued beyond Swe = 1.
    """
    if effective_saturation <= low_threshold:
        pc_threshold = _van_genuchten_pc(low_threshold, alpha, n)
        slope = _van_genuchten_pc_slope(low_threshold, alpha, n)
        return pc_threshold + slope * (effective_saturation - low_threshold)
    if effective_saturation >= high_threshold:
        pc_threshold = _van_genuchten_pc(high_threshold, alpha, n)
        slope = -pc_threshold / (1.0 - high_threshold)
        return pc_threshold + slope * (effective_saturation - high_threshold)
    return _van_genuchten_pc(effective_saturation, alpha, n)


@numba.njit(cache=True)
def compute_van_genuchten_effective_saturation(
    capillary_pressure: float,
    alpha: float,
    n: float,
    low_threshold: float,
    high_threshold: float,
) -> float:
    """Inverse of `compute_van_genuchten_capillary_pressure`."""
    pc_high = _van_genuchten_pc(high_threshold, alpha, n)
    if capillary_pressure <= pc_high:
        slope = -pc_high / (1.0 - high_threshold)
        return high_threshold + (capillary_pressure - pc_high) / slope
    pc_low = _van_genuchten_pc(low_threshold, alpha, n)
    if capillary_pressure >= pc_low:
        slope = _van_genuchten_pc_slope(low_threshold, alpha, n)
        return low_threshold + (capillary_pressure - pc_low) / slope
    m = 1.0 - 1.0 / n
    return ((alpha * capillary_pressure) ** n + 1.0) ** (-m)


@numba.njit(cache=True)
def compute_van_genuchten_relative_permeabilities(
    effective_saturation: float, n: float
) -> typing.Tuple[float, float]:
    """
    Mualem-van Genuchten relative permeabilities.

        krw = sqrt(Swe) * (1 - (1 - Swe^(1/m))^m)²
        krn = (1 - Swe)^(1/3) * (1 - Swe^(1/m))^(2m)

    :return: (wetting, non-wetting) relative permeability.
    """
    m = 1.0 - 1.0 / n
    swe = _clamp01(effective_saturation)
    r = 1.0 - swe ** (1.0 / m)
    krw = math.sqrt(swe) * (1.0 - r**m) ** 2
    krn = (1.0 - swe) ** (1.0 / 3.0) * r ** (2.0 * m)
    return krw, krn


def _saturation(instance: typing.Any, attribute: attrs.Attribute, value: float) -> None:
    if not 0.0 <= value < 1.0:
        raise ValidationError(f"'{attribute.name}' must be in [0, 1), got {value!r}")


@attrs.frozen
class MaterialLaw:
    """
    Base class of two-phase material laws.

    Subclasses implement the effective-saturation closures `_pc`, `_swe` and
    `_kr`, this class handles the conversion between absolute and effective
    saturations.
    """

    residual_wetting_saturation: float = attrs.field(default=0.0, validator=_saturation)
    """Residual saturation of the wetting (liquid) phase, Swr."""
    residual_nonwetting_saturation: float = attrs.field(default=0.0, validator=_saturation)
    """Residual saturation of the non-wetting (gas) phase, Snr."""

    def __attrs_post_init__(self) -> None:
        if self.residual_wetting_saturation + self.residual_nonwetting_saturation >= 1.0:
            raise ValidationError(
                "The sum of residual saturations must be smaller than one."
            )

    def effective_saturation(self, wetting_saturation: float) -> float:
        """Convert an absolute to an effective wetting phase saturation."""
        mobile = 1.0 - self.residual_wetting_saturation - self.residual_nonwetting_saturation
        return (wetting_saturation - self.residual_wetting_saturation) / mobile

    def absolute_saturation(self, effective_saturation: float) -> float:
        """Convert an effective to an absolute wetting phase saturation."""
        mobile = 1.0 - self.residual_wetting_saturation - self.residual_nonwetting_saturation
        return effective_saturation * mobile + self.residual_wetting_saturation

    def capillary_pressure(self, wetting_saturation: float) -> float:
        """Capillary pressure pc = p_n - p_w (Pa) at the absolute wetting saturation."""
        return self._pc(self.effective_saturation(wetting_saturation))

    def wetting_saturation(self, capillary_pressure: float) -> float:
        """Absolute wetting saturation at the given capillary pressure (inverse of `capillary_pressure`)."""
        return self.absolute_saturation(self._swe(capillary_pressure))

    def relative_permeabilities(self, wetting_saturation: float) -> typing.Tuple[float, float]:
        """(wetting, non-wetting) relative permeability at the absolute wetting saturation."""
        return self._kr(self.effective_saturation(wetting_saturation))

    def wetting_relative_permeability(self, wetting_saturation: float) -> float:
        return self.relative_permeabilities(wetting_saturation)[0]

    def nonwetting_relative_permeability(self, wetting_saturation: float) -> float:
        return self.relative_permeabilities(wetting_saturation)[1]

    def _pc(self, effective_saturation: float) -> float:
        raise NotImplementedError

    def _swe(self, capillary_pressure: float) -> float:
        raise NotImplementedError

    def _kr(self, effective_saturation: float) -> typing.Tuple[float, float]:
        raise NotImplementedError


@attrs.frozen
class LinearMaterial(MaterialLaw):
    """
    Linear capillary pressure with linear relative permeabilities.

        pc = pe + (1 - Swe) * (pc_max - pe),  krw = Swe,  krn = 1 - Swe
    """

    entry_pressure: float = 0.0
    """Capillary pressure at full wetting saturation (Pa)."""
    max_pressure: float = 0.0
    """Capillary pressure at residual wetting saturation (Pa)."""

    def _pc(self, effective_saturation: float) -> float:
        return compute_linear_capillary_pressure(
            effective_saturation, self.entry_pressure, self.max_pressure
        )

    def _swe(self, capillary_pressure: float) -> float:
        span = self.max_pressure - self.entry_pressure
        if span == 0.0:
            return 1.0
        return 1.0 - (capillary_pressure - self.entry_pressure) / span

    def _kr(self, effective_saturation: float) -> typing.Tuple[float, float]:
        swe = min(max(effective_saturation, 0.0), 1.0)
        return swe, 1.0 - swe


@attrs.frozen
class BrooksCorey(MaterialLaw):
    """Regularized Brooks-Corey law."""

    entry_pressure: float = attrs.field(default=1e4, validator=checked(attrs.validators.gt(0)))
    """Entry pressure pe (Pa)."""
    lambda_: float = attrs.field(default=2.0, validator=checked(attrs.validators.gt(0)))
    """Pore size distribution index λ."""
    low_threshold: float = attrs.field(
        default=0.01,
        validator=checked(attrs.validators.gt(0), attrs.validators.lt(1)),
    )
    """Effective saturation below which the capillary pressure is extended linearly."""

    def _pc(self, effective_saturation: float) -> float:
        return compute_brooks_corey_capillary_pressure(
            effective_saturation, self.entry_pressure, self.lambda_, self.low_threshold
        )

    def _swe(self, capillary_pressure: float) -> float:
        return compute_brooks_corey_effective_saturation(
            capillary_pressure, self.entry_pressure, self.lambda_, self.low_threshold
        )

    def _kr(self, effective_saturation: float) -> typing.Tuple[float, float]:
        return compute_brooks_corey_relative_permeabilities(effective_saturation, self.lambda_)


@attrs.frozen
class VanGenuchten(MaterialLaw):
    """Regularized van Genuchten-Mualem law."""

    alpha: float = attrs.field(default=1e-4, validator=checked(attrs.validators.gt(0)))
    """Inverse of the characteristic capillary pressure α (1/Pa)."""
    n: float = attrs.field(default=2.0, validator=checked(attrs.validators.gt(1)))
    """Shape parameter n (m = 1 - 1/n)."""
    low_threshold: float = attrs.field(default=0.01)
    high_threshold: float = attrs.field(default=0.99)

    def __attrs_post_init__(self) -> None:
        super().__attrs_post_init__()
        if not 0.0 < self.low_threshold < self.high_threshold < 1.0:
            raise ValidationError(
                "Regularization thresholds must satisfy 0 < low < high < 1."
            )

    def _pc(self, effective_saturation: float) -> float:
        return compute_van_genuchten_capillary_pressure(
            effective_saturation,
            self.alpha,
            self.n,
            self.low_threshold,
            self.high_threshold,
        )

    def _swe(self, capillary_pressure: float) -> float:
        return compute_van_genuchten_effective_saturation(
            capillary_pressure,
            self.alpha,
            self.n,
            self.low_threshold,
            self.high_threshold,
        )

    def _kr(self, effective_saturation: float) -> typing.Tuple[float, float]:
        return compute_van_genuchten_relative_permeabilities(effective_saturation, self.n)
