"""
Quantities at the integration point of sub-control volume faces.

Gradients are reconstructed with the element shape functions from the vertex
values. The advective flux uses the generalized Darcy law, its mobility and
composition are taken from the upstream sub-control volume of each phase.
"""

import typing

import attrs
import numpy as np

from boxflow.constants import c
from boxflow.grid import BoundaryFace, Element, SubControlVolumeFace
from boxflow.types import Component, Phase, Vector
from boxflow.volume_variables import ElementVolumeVariables, VolumeVariables

if typing.TYPE_CHECKING:
    from boxflow.problem import Problem


__all__ = [
    "DIFFUSING_COMPONENT",
    "gradient_at_ip",
    "millington_quirk_tortuosity",
    "porous_media_diffusion_coefficient",
    "integration_point_density",
    "HeatConductionFlux",
    "FluxVariables",
    "BoundaryVariables",
]

DIFFUSING_COMPONENT: typing.Dict[Phase, Component] = {
    Phase.LIQUID: Component.N2,
    Phase.GAS: Component.H2O,
}
"""Component whose fraction gradient drives the binary diffusion in each phase."""


def gradient_at_ip(shape_gradients: np.ndarray, nodal_values: typing.Sequence[float]) -> Vector:
    """
    Gradient of a finite element interpolant at an integration point.

    :param shape_gradients: Shape function gradients at the integration point, shape (num_vertices, dimension).
    :param nodal_values: Values at the element vertices.
    """
    gradient = np.zeros(shape_gradients.shape[1])
    for v, value in enumerate(nodal_values):
        gradient = gradient + shape_gradients[v] * value
    return gradient


def millington_quirk_tortuosity(porosity: float, saturation: float) -> float:
    """τ = (φS)^(7/3) / φ²"""
    return (porosity * saturation) ** (7.0 / 3.0) / porosity**2


def porous_media_diffusion_coefficient(
    porosity: float, saturation: float, diffusion_coefficient: float
) -> float:
    """Effective diffusion coefficient `φ S τ D` of a phase, zero if the phase is absent."""
    if saturation <= 0.0:
        return 0.0
    return (
        porosity
        * saturation
        * millington_quirk_tortuosity(porosity, saturation)
        * diffusion_coefficient
    )


def integration_point_density(
    phase: int,
    vol_vars_i: VolumeVariables,
    vol_vars_j: VolumeVariables,
    saturation_epsilon: typing.Optional[float] = None,
) -> float:
    """
    Phase density at an internal face.

    Saturation weighted mean of the two sub-control volumes, a side where the
    phase is (almost) absent contributes less. If the phase is absent on both
    sides the arithmetic mean is used.
    """
    if saturation_epsilon is None:
        saturation_epsilon = c.SATURATION_EPSILON
    weight_i = min(max(vol_vars_i.saturation[phase] / saturation_epsilon, 0.0), 0.5)
    weight_j = min(max(vol_vars_j.saturation[phase] / saturation_epsilon, 0.0), 0.5)
    if weight_i + weight_j == 0.0:
        weight_i = weight_j = 0.5
    return (
        weight_i * vol_vars_i.density[phase] + weight_j * vol_vars_j.density[phase]
    ) / (weight_i + weight_j)


@attrs.frozen(slots=True)
class HeatConductionFlux:
    """Conductive heat flux across a face, positive from `i` to `j`."""

    temperature_gradient: Vector
    normal_flux: float

    @classmethod
    def compute(
        cls,
        problem: "Problem",
        element: Element,
        normal: Vector,
        shape_gradients: np.ndarray,
        elem_vol_vars: ElementVolumeVariables,
        i: int,
        j: int,
    ) -> "HeatConductionFlux":
        temperature_gradient = gradient_at_ip(
            shape_gradients, [vv.temperature for vv in elem_vol_vars]
        )
        heat_flux = problem.spatial_parameters.matrix_heat_flux(
            temperature_gradient, elem_vol_vars[i], elem_vol_vars[j], element, i, j
        )
        return cls(
            temperature_gradient=temperature_gradient,
            normal_flux=float(np.dot(heat_flux, normal)),
        )


def _potential_gradients(
    shape_gradients: np.ndarray,
    elem_vol_vars: ElementVolumeVariables,
    densities: np.ndarray,
    gravity: typing.Optional[Vector],
) -> np.ndarray:
    gradients = []
    for phase in Phase:
        gradient = gradient_at_ip(
            shape_gradients, [vv.pressure[phase] for vv in elem_vol_vars]
        )
        if gravity is not None:
            gradient = gradient - densities[phase] * gravity
        gradients.append(gradient)
    return np.array(gradients)


def _fraction_gradients(
    shape_gradients: np.ndarray, elem_vol_vars: ElementVolumeVariables, attribute: str
) -> np.ndarray:
    return np.array(
        [
            gradient_at_ip(
                shape_gradients,
                [getattr(vv, attribute)[phase, DIFFUSING_COMPONENT[phase]] for vv in elem_vol_vars],
            )
            for phase in Phase
        ]
    )


@attrs.define(slots=True)
class FluxVariables:
    """
    Flux quantities of an internal sub-control volume face.

    `kmvp_normal[α] = -(K ∇Φ_α)·n` is the normal flux without mobility,
    positive if phase α flows from `i` to `j`.
    """

    face: SubControlVolumeFace
    potential_gradient: np.ndarray
    """Potential gradient per phase, shape (num_phases, dimension)."""
    kmvp_normal: np.ndarray
    upstream: typing.Tuple[int, int]
    """Local index of the upstream sub-control volume per phase."""
    downstream: typing.Tuple[int, int]
    density: np.ndarray
    """Phase mass densities at the integration point."""
    mass_fraction_gradient: np.ndarray
    """Gradient of the diffusing component's mass fraction per phase."""
    mole_fraction_gradient: np.ndarray
    """Gradient of the diffusing component's mole fraction per phase."""
    diffusion_coefficient: np.ndarray
    """Porous medium diffusion coefficient per phase at the face."""
    heat_conduction: typing.Optional[HeatConductionFlux] = None

    @classmethod
    def compute(
        cls,
        problem: "Problem",
        element: Element,
        face: SubControlVolumeFace,
        elem_vol_vars: ElementVolumeVariables,
        gravity: typing.Optional[Vector] = None,
        with_heat_conduction: bool = False,
    ) -> "FluxVariables":
        """
        Evaluate the flux variables of an internal face.

        :param problem: Problem supplying spatial parameters.
        :param element: Element the face belongs to.
        :param face: The internal face.
        :param elem_vol_vars: Volume variables of the element.
        :param gravity: Gravity vector, `None` to neglect gravity.
        :param with_heat_conduction: Whether to evaluate the conductive heat flux.
        """
        vol_vars_i = elem_vol_vars[face.i]
        vol_vars_j = elem_vol_vars[face.j]

        density = np.array(
            [integration_point_density(phase, vol_vars_i, vol_vars_j) for phase in Phase]
        )
        potential_gradient = _potential_gradients(
            face.shape_gradients, elem_vol_vars, density, gravity
        )
        permeability = problem.spatial_parameters.mean_permeability(
            vol_vars_i.permeability, vol_vars_j.permeability
        )
        kmvp_normal = np.array(
            [
                -float(np.dot(permeability @ potential_gradient[phase], face.normal))
                for phase in Phase
            ]
        )
        upstream = tuple(face.i if kmvp_normal[phase] > 0.0 else face.j for phase in Phase)
        downstream = tuple(face.j if kmvp_normal[phase] > 0.0 else face.i for phase in Phase)

        diffusion_coefficient = np.zeros(len(Phase))
        for phase in Phase:
            if vol_vars_i.saturation[phase] <= 0.0 or vol_vars_j.saturation[phase] <= 0.0:
                continue
            d_i = porous_media_diffusion_coefficient(
                vol_vars_i.porosity,
                vol_vars_i.saturation[phase],
                vol_vars_i.diffusion_coefficient[phase],
            )
            d_j = porous_media_diffusion_coefficient(
                vol_vars_j.porosity,
                vol_vars_j.saturation[phase],
                vol_vars_j.diffusion_coefficient[phase],
            )
            if d_i + d_j > 0.0:
                diffusion_coefficient[phase] = 2.0 * d_i * d_j / (d_i + d_j)

        heat_conduction = None
        if with_heat_conduction:
            heat_conduction = HeatConductionFlux.compute(
                problem, element, face.normal, face.shape_gradients, elem_vol_vars, face.i, face.j
            )

        return cls(
            face=face,
            potential_gradient=potential_gradient,
            kmvp_normal=kmvp_normal,
            upstream=upstream,  # type: ignore[arg-type]
            downstream=downstream,  # type: ignore[arg-type]
            density=density,
            mass_fraction_gradient=_fraction_gradients(
                face.shape_gradients, elem_vol_vars, "mass_fraction"
            ),
            mole_fraction_gradient=_fraction_gradients(
                face.shape_gradients, elem_vol_vars, "mole_fraction"
            ),
            diffusion_coefficient=diffusion_coefficient,
            heat_conduction=heat_conduction,
        )

    def volume_flux(self, phase: int, elem_vol_vars: ElementVolumeVariables) -> float:
        """Volumetric flux of `phase` across the face (m³/s), upstream mobility."""
        return self.kmvp_normal[phase] * elem_vol_vars[self.upstream[phase]].mobility[phase]

    def darcy_velocity(self, phase: int, elem_vol_vars: ElementVolumeVariables) -> float:
        """Normal Darcy velocity of `phase` (m/s)."""
        return self.volume_flux(phase, elem_vol_vars) / self.face.area

    def diffusive_flux(self, phase: int) -> float:
        """Mass flux of the diffusing component of `phase` across the face (kg/s)."""
        if self.diffusion_coefficient[phase] == 0.0:
            return 0.0
        return -(
            self.density[phase]
            * self.diffusion_coefficient[phase]
            * float(np.dot(self.mass_fraction_gradient[phase], self.face.normal))
        )


@attrs.define(slots=True)
class BoundaryVariables:
    """
    Flux quantities of a boundary face, used by outflow conditions.

    Densities are interpolated with the shape functions, the permeability and
    the diffusion coefficient are those of the boundary sub-control volume,
    which is also the upstream side for every phase.
    """

    face: BoundaryFace
    potential_gradient: np.ndarray
    kmvp_normal: np.ndarray
    density: np.ndarray
    mass_fraction_gradient: np.ndarray
    mole_fraction_gradient: np.ndarray
    diffusion_coefficient: np.ndarray
    heat_conduction: typing.Optional[HeatConductionFlux] = None

    @classmethod
    def compute(
        cls,
        problem: "Problem",
        element: Element,
        face: BoundaryFace,
        elem_vol_vars: ElementVolumeVariables,
        gravity: typing.Optional[Vector] = None,
        with_heat_conduction: bool = False,
    ) -> "BoundaryVariables":
        vol_vars = elem_vol_vars[face.scv_index]
        density = np.array(
            [
                float(
                    sum(
                        value * vv.density[phase]
                        for value, vv in zip(face.shape_values, elem_vol_vars)
                    )
                )
                for phase in Phase
            ]
        )
        potential_gradient = _potential_gradients(
            face.shape_gradients, elem_vol_vars, density, gravity
        )
        kmvp_normal = np.array(
            [
                -float(np.dot(vol_vars.permeability @ potential_gradient[phase], face.normal))
                for phase in Phase
            ]
        )
        diffusion_coefficient = np.array(
            [
                porous_media_diffusion_coefficient(
                    vol_vars.porosity,
                    vol_vars.saturation[phase],
                    vol_vars.diffusion_coefficient[phase],
                )
                for phase in Phase
            ]
        )
        heat_conduction = None
        if with_heat_conduction:
            heat_conduction = HeatConductionFlux.compute(
                problem,
                element,
                face.normal,
                face.shape_gradients,
                elem_vol_vars,
                face.scv_index,
                face.scv_index,
            )
        return cls(
            face=face,
            potential_gradient=potential_gradient,
            kmvp_normal=kmvp_normal,
            density=density,
            mass_fraction_gradient=_fraction_gradients(
                face.shape_gradients, elem_vol_vars, "mass_fraction"
            ),
            mole_fraction_gradient=_fraction_gradients(
                face.shape_gradients, elem_vol_vars, "mole_fraction"
            ),
            diffusion_coefficient=diffusion_coefficient,
            heat_conduction=heat_conduction,
        )

    def volume_flux(self, phase: int, elem_vol_vars: ElementVolumeVariables) -> float:
        return self.kmvp_normal[phase] * elem_vol_vars[self.face.scv_index].mobility[phase]

    def diffusive_flux(self, phase: int) -> float:
        if self.diffusion_coefficient[phase] == 0.0:
            return 0.0
        return -(
            self.density[phase]
            * self.diffusion_coefficient[phase]
            * float(np.dot(self.mass_fraction_gradient[phase], self.face.normal))
        )
