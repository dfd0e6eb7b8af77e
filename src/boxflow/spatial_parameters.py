"""Spatially varying soil properties: material zones, permeability, porosity and thermal properties."""

import math
import typing

import attrs
import numpy as np

from boxflow._validation import checked
from boxflow.constants import c
from boxflow.errors import ValidationError
from boxflow.grid import Element
from boxflow.material_laws import LinearMaterial, MaterialLaw
from boxflow.types import Permeability, Phase, Tensor, Vector

if typing.TYPE_CHECKING:
    from boxflow.volume_variables import VolumeVariables


__all__ = [
    "BoundingBox",
    "MaterialZone",
    "SomertonConductivity",
    "SpatialParameters",
    "ZonedSpatialParameters",
    "to_tensor",
    "harmonic_mean",
    "two_zone_spatial_parameters",
]


def to_tensor(permeability: Permeability, dimension: int) -> Tensor:
    """Promote a scalar permeability to `k * I`, pass tensors through."""
    if np.ndim(permeability) == 0:
        return float(permeability) * np.eye(dimension)
    tensor = np.asarray(permeability, dtype=float)
    if tensor.shape != (dimension, dimension):
        raise ValidationError(
            f"Permeability tensor must have shape ({dimension}, {dimension}), got {tensor.shape}"
        )
    return tensor


def harmonic_mean(a: Tensor, b: Tensor) -> Tensor:
    """Entry-wise harmonic mean of two tensors; entries that vanish on either side are zero."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    denominator = a + b
    mean = np.zeros(np.broadcast(a, b).shape)
    np.divide(2.0 * a * b, denominator, out=mean, where=denominator != 0.0)
    return mean


@attrs.frozen(slots=True)
class BoundingBox:
    """Axis-aligned box with closed bounds."""

    lower: typing.Tuple[float, ...] = attrs.field(converter=tuple)
    upper: typing.Tuple[float, ...] = attrs.field(converter=tuple)

    def __attrs_post_init__(self) -> None:
        if len(self.lower) != len(self.upper):
            raise ValidationError("`lower` and `upper` must have the same length.")
        if any(lo > hi for lo, hi in zip(self.lower, self.upper)):
            raise ValidationError("`lower` must not exceed `upper` in any direction.")

    def contains(self, position: Vector) -> bool:
        """
        Check whether `position` lies inside the box (boundary included).

        Directions beyond the dimension of the box are ignored.
        """
        return all(
            lo <= x <= hi for x, lo, hi in zip(position, self.lower, self.upper)
        )


@attrs.frozen
class MaterialZone:
    """Homogeneous region of the porous medium."""

    permeability: Permeability
    """Intrinsic permeability, scalar or tensor (m²)."""
    porosity: float = attrs.field(
        validator=checked(attrs.validators.gt(0), attrs.validators.le(1))
    )
    """Porosity (fraction)."""
    material_law: MaterialLaw = attrs.field(factory=LinearMaterial)
    """Capillary pressure / relative permeability closure of the zone."""
    region: typing.Optional[BoundingBox] = None
    """Region the zone covers, `None` for the default zone."""
    heat_capacity: float = attrs.field(
        factory=lambda: c.GRANITE_DENSITY * c.GRANITE_SPECIFIC_HEAT_CAPACITY
    )
    """Volumetric heat capacity of the solid matrix (J/(K·m³))."""
    thermal_conductivity: float = attrs.field(
        factory=lambda: c.GRANITE_THERMAL_CONDUCTIVITY
    )
    """Thermal conductivity of the solid matrix (W/(m·K))."""

    def __attrs_post_init__(self) -> None:
        if np.any(np.asarray(self.permeability) < 0.0):
            raise ValidationError("Permeability must be non-negative.")

    def contains(self, position: Vector) -> bool:
        return self.region is None or self.region.contains(position)


@attrs.frozen
class SomertonConductivity:
    """
    Somerton effective thermal conductivity of a water-saturated porous medium.

        λ_dry = λ_s^(1-φ)
        λ_sat = λ_s^(1-φ) * λ_w^φ
        λ_eff = λ_dry + sqrt(S_l) * (λ_sat - λ_dry)
    """

    fluid_conductivity: float = attrs.field(factory=lambda: c.WATER_THERMAL_CONDUCTIVITY)
    """Thermal conductivity of the liquid phase (W/(m·K))."""

    def effective_conductivity(
        self, liquid_saturation: float, porosity: float, solid_conductivity: float
    ) -> float:
        lambda_dry = solid_conductivity ** (1.0 - porosity)
        lambda_saturated = lambda_dry * self.fluid_conductivity**porosity
        return lambda_dry + math.sqrt(max(liquid_saturation, 0.0)) * (
            lambda_saturated - lambda_dry
        )


class SpatialParameters:
    """
    Base class of spatial parameters.

    Subclasses provide the position based queries, the element based queries
    evaluate them at the position of the sub-control volume.
    """

    def material_law_params_at_pos(self, position: Vector) -> MaterialLaw:
        raise NotImplementedError

    def intrinsic_permeability_at_pos(self, position: Vector) -> Permeability:
        raise NotImplementedError

    def porosity_at_pos(self, position: Vector) -> float:
        raise NotImplementedError

    def heat_capacity_solid_at_pos(self, position: Vector) -> float:
        raise NotImplementedError

    def thermal_conductivity_solid_at_pos(self, position: Vector) -> float:
        raise NotImplementedError

    def material_law_params(self, element: Element, scv_index: int) -> MaterialLaw:
        return self.material_law_params_at_pos(element.geometry.scvs[scv_index].position)

    def intrinsic_permeability(self, element: Element, scv_index: int) -> Permeability:
        return self.intrinsic_permeability_at_pos(element.geometry.scvs[scv_index].position)

    def porosity(self, element: Element, scv_index: int) -> float:
        return self.porosity_at_pos(element.geometry.scvs[scv_index].position)

    def heat_capacity_solid(self, element: Element, scv_index: int) -> float:
        return self.heat_capacity_solid_at_pos(element.geometry.scvs[scv_index].position)

    def thermal_conductivity_solid(self, element: Element, scv_index: int) -> float:
        return self.thermal_conductivity_solid_at_pos(element.geometry.scvs[scv_index].position)

    def mean_permeability(self, permeability_i: Tensor, permeability_j: Tensor) -> Tensor:
        """Permeability at a face between two sub-control volumes (entry-wise harmonic mean)."""
        return harmonic_mean(permeability_i, permeability_j)

    def matrix_heat_flux(
        self,
        temperature_gradient: Vector,
        vol_vars_i: "VolumeVariables",
        vol_vars_j: "VolumeVariables",
        element: Element,
        i: int,
        j: int,
    ) -> Vector:
        """Conductive heat flux vector `-λ_eff ∇T` at a face between the sub-control volumes `i` and `j`."""
        raise NotImplementedError


@attrs.frozen
class ZonedSpatialParameters(SpatialParameters):
    """
    Piecewise constant parameters over a set of material zones.

    The first zone whose region contains a position wins, positions outside
    every zone belong to `default_zone`.

    ```python
    fine = MaterialZone(
        permeability=1e-15,
        porosity=0.3,
        region=BoundingBox(lower=(10.0, 0.0), upper=(20.0, 35.0)),
    )
    params = ZonedSpatialParameters(
        default_zone=MaterialZone(permeability=1e-12, porosity=0.3),
        zones=(fine,),
    )
    params.intrinsic_permeability_at_pos(np.array([15.0, 10.0]))  # 1e-15
    ```
    """

    default_zone: MaterialZone
    zones: typing.Tuple[MaterialZone, ...] = attrs.field(default=(), converter=tuple)
    conductivity_law: SomertonConductivity = attrs.field(factory=SomertonConductivity)

    def __attrs_post_init__(self) -> None:
        for zone in self.zones:
            if zone.region is None:
                raise ValidationError("Every non-default material zone needs a region.")

    def zone_at_pos(self, position: Vector) -> MaterialZone:
        for zone in self.zones:
            if zone.contains(position):
                return zone
        return self.default_zone

    def material_law_params_at_pos(self, position: Vector) -> MaterialLaw:
        return self.zone_at_pos(position).material_law

    def intrinsic_permeability_at_pos(self, position: Vector) -> Permeability:
        return self.zone_at_pos(position).permeability

    def porosity_at_pos(self, position: Vector) -> float:
        return self.zone_at_pos(position).porosity

    def heat_capacity_solid_at_pos(self, position: Vector) -> float:
        return self.zone_at_pos(position).heat_capacity

    def thermal_conductivity_solid_at_pos(self, position: Vector) -> float:
        return self.zone_at_pos(position).thermal_conductivity

    def matrix_heat_flux(
        self,
        temperature_gradient: Vector,
        vol_vars_i: "VolumeVariables",
        vol_vars_j: "VolumeVariables",
        element: Element,
        i: int,
        j: int,
    ) -> Vector:
        liquid_saturation = 0.5 * (
            vol_vars_i.saturation[Phase.LIQUID] + vol_vars_j.saturation[Phase.LIQUID]
        )
        porosity = 0.5 * (vol_vars_i.porosity + vol_vars_j.porosity)
        # solid conductivity of the element the face belongs to
        solid_conductivity = self.thermal_conductivity_solid_at_pos(element.center)
        conductivity = self.conductivity_law.effective_conductivity(
            liquid_saturation, porosity, solid_conductivity
        )
        return -conductivity * np.asarray(temperature_gradient)


def two_zone_spatial_parameters(
    fine_region: BoundingBox = BoundingBox(lower=(10.0, 0.0), upper=(20.0, 35.0)),
    fine_permeability: Permeability = 1e-15,
    coarse_permeability: Permeability = 1e-12,
    porosity: float = 0.3,
    material_law: typing.Optional[MaterialLaw] = None,
) -> ZonedSpatialParameters:
    """
    Coarse domain with a fine-grained low permeability block.

    :param fine_region: Region of the fine-grained block.
    :param fine_permeability: Permeability inside the block (m²).
    :param coarse_permeability: Permeability everywhere else (m²).
    :param porosity: Porosity of both materials.
    :param material_law: Material law of both materials. Defaults to a linear
        law with zero capillary pressure.
    :return: `ZonedSpatialParameters` instance.
    """
    material_law = material_law if material_law is not None else LinearMaterial()
    return ZonedSpatialParameters(
        default_zone=MaterialZone(
            permeability=coarse_permeability,
            porosity=porosity,
            material_law=material_law,
        ),
        zones=(
            MaterialZone(
                permeability=fine_permeability,
                porosity=porosity,
                material_law=material_law,
                region=fine_region,
            ),
        ),
    )
