"""
Element-local residual of the component mass balances and the optional
energy balance.

For every sub-control volume of an element:

    r = (storage(u) - storage(u_old)) / Δt * V + Σ outward fluxes - source * V

Every internal face is evaluated once and its flux is added to `i` and
subtracted from `j`, which makes the discretization locally conservative.
Dirichlet constraints are not handled here.
"""

import typing

import attrs
import numpy as np

from boxflow.flux_variables import DIFFUSING_COMPONENT, BoundaryVariables, FluxVariables
from boxflow.grid import Element
from boxflow.types import Component, Phase, Vector
from boxflow.volume_variables import ElementVolumeVariables, VolumeVariables

if typing.TYPE_CHECKING:
    from boxflow.problem import BoundaryTypes, Problem


__all__ = ["EnergyTransport", "LocalResidual"]


@attrs.frozen
class EnergyTransport:
    """Energy balance terms added to the mass balances of non-isothermal models."""

    equation_index: int = 2

    def storage(self, vol_vars: VolumeVariables) -> float:
        """Energy per unit volume: fluid internal energy plus solid heat (J/m³)."""
        fluid = sum(
            vol_vars.density[phase]
            * vol_vars.saturation[phase]
            * vol_vars.internal_energy[phase]
            for phase in Phase
        )
        return (
            vol_vars.porosity * fluid
            + (1.0 - vol_vars.porosity) * vol_vars.heat_capacity * vol_vars.temperature
        )

    def advective_flux(
        self,
        flux_vars: typing.Union[FluxVariables, BoundaryVariables],
        upstream: typing.Sequence[VolumeVariables],
    ) -> float:
        """Enthalpy transported with the phases (W)."""
        return sum(
            flux_vars.kmvp_normal[phase]
            * upstream[phase].density[phase]
            * upstream[phase].mobility[phase]
            * upstream[phase].enthalpy[phase]
            for phase in Phase
        )

    def conductive_flux(self, flux_vars: typing.Union[FluxVariables, BoundaryVariables]) -> float:
        if flux_vars.heat_conduction is None:
            return 0.0
        return flux_vars.heat_conduction.normal_flux


class LocalResidual:
    """Evaluates storage, flux and source terms of a single element."""

    def __init__(
        self,
        problem: "Problem",
        boundary_types: typing.Mapping[int, "BoundaryTypes"],
        enable_gravity: bool = True,
    ) -> None:
        """
        :param problem: Problem supplying parameters, boundary values and sources.
        :param boundary_types: Boundary condition types by vertex (dof) index,
            for every vertex on the domain boundary.
        :param enable_gravity: Whether gravity acts on the fluid phases.
        """
        self.problem = problem
        self.indices = problem.indices
        self.boundary_types = boundary_types
        self.gravity: typing.Optional[Vector] = problem.gravity() if enable_gravity else None
        self.energy: typing.Optional[EnergyTransport] = (
            EnergyTransport(self.indices.energy_equation_index)
            if self.indices.non_isothermal
            else None
        )

    @property
    def num_equations(self) -> int:
        return self.indices.num_equations

    def storage(self, vol_vars: VolumeVariables) -> np.ndarray:
        """Conserved quantities per unit volume (kg/m³ per component, J/m³ for energy)."""
        storage = np.zeros(self.num_equations)
        for component in Component:
            storage[self.indices.component_equation_index(component)] = vol_vars.porosity * sum(
                vol_vars.density[phase]
                * vol_vars.saturation[phase]
                * vol_vars.mass_fraction[phase, component]
                for phase in Phase
            )
        if self.energy is not None:
            storage[self.energy.equation_index] = self.energy.storage(vol_vars)
        return storage

    def compute_flux(
        self,
        flux_vars: typing.Union[FluxVariables, BoundaryVariables],
        upstream: typing.Sequence[VolumeVariables],
    ) -> np.ndarray:
        """
        Advective, diffusive and (non-isothermal) conductive fluxes across a face.

        :param flux_vars: Flux variables of the face.
        :param upstream: Upstream volume variables per phase.
        :return: Flux per equation, positive along the face normal.
        """
        flux = np.zeros(self.num_equations)
        for phase in Phase:
            up = upstream[phase]
            advective = flux_vars.kmvp_normal[phase] * up.density[phase] * up.mobility[phase]
            for component in Component:
                flux[self.indices.component_equation_index(component)] += (
                    advective * up.mass_fraction[phase, component]
                )

            diffusive = flux_vars.diffusive_flux(phase)
            diffusing = DIFFUSING_COMPONENT[phase]
            other = Component.H2O if diffusing == Component.N2 else Component.N2
            flux[self.indices.component_equation_index(diffusing)] += diffusive
            flux[self.indices.component_equation_index(other)] -= diffusive

        if self.energy is not None:
            flux[self.energy.equation_index] += self.energy.advective_flux(
                flux_vars, upstream
            ) + self.energy.conductive_flux(flux_vars)
        return flux

    def compute_source(self, element: Element, scv_index: int) -> np.ndarray:
        return np.asarray(self.problem.source(element, scv_index), dtype=float)

    def eval_storage(
        self,
        element: Element,
        elem_vol_vars: ElementVolumeVariables,
        prev_elem_vol_vars: ElementVolumeVariables,
        dt: float,
    ) -> np.ndarray:
        """Storage change term `(S(u) - S(u_old)) / Δt * V` for every sub-control volume."""
        residual = np.zeros((element.num_vertices, self.num_equations))
        for scv in element.geometry.scvs:
            local = scv.local_index
            residual[local] = (
                (self.storage(elem_vol_vars[local]) - self.storage(prev_elem_vol_vars[local]))
                / dt
                * scv.volume
            )
        return residual

    def eval_fluxes(
        self, element: Element, elem_vol_vars: ElementVolumeVariables
    ) -> np.ndarray:
        """Sum of the fluxes over the internal faces of every sub-control volume."""
        residual = np.zeros((element.num_vertices, self.num_equations))
        with_heat_conduction = self.energy is not None
        for face in element.geometry.faces:
            flux_vars = FluxVariables.compute(
                self.problem,
                element,
                face,
                elem_vol_vars,
                gravity=self.gravity,
                with_heat_conduction=with_heat_conduction,
            )
            upstream = [elem_vol_vars[flux_vars.upstream[phase]] for phase in Phase]
            flux = self.compute_flux(flux_vars, upstream)
            residual[face.i] += flux
            residual[face.j] -= flux
        return residual

    def eval_boundary(
        self, element: Element, elem_vol_vars: ElementVolumeVariables
    ) -> np.ndarray:
        """Neumann and outflow contributions of the boundary faces of the element."""
        residual = np.zeros((element.num_vertices, self.num_equations))
        for face in element.geometry.boundary_faces:
            dof = element.vertex_indices[face.scv_index]
            types = self.boundary_types[dof]
            if types.has_neumann:
                neumann = np.asarray(self.problem.neumann(element, face), dtype=float) * face.area
                for equation in range(self.num_equations):
                    if types.is_neumann(equation):
                        residual[face.scv_index, equation] += neumann[equation]
            if types.has_outflow:
                boundary_vars = BoundaryVariables.compute(
                    self.problem,
                    element,
                    face,
                    elem_vol_vars,
                    gravity=self.gravity,
                    with_heat_conduction=self.energy is not None,
                )
                upstream = [elem_vol_vars[face.scv_index]] * len(Phase)
                flux = self.compute_flux(boundary_vars, upstream)
                for equation in range(self.num_equations):
                    if types.is_outflow(equation):
                        residual[face.scv_index, equation] += flux[equation]
        return residual

    def eval_sources(self, element: Element) -> np.ndarray:
        residual = np.zeros((element.num_vertices, self.num_equations))
        for scv in element.geometry.scvs:
            residual[scv.local_index] = self.compute_source(element, scv.local_index) * scv.volume
        return residual

    def eval(
        self,
        element: Element,
        elem_vol_vars: ElementVolumeVariables,
        prev_elem_vol_vars: ElementVolumeVariables,
        dt: float,
    ) -> np.ndarray:
        """
        Residual of all sub-control volumes of `element`.

        :param element: The element.
        :param elem_vol_vars: Volume variables at the current iterate.
        :param prev_elem_vol_vars: Volume variables at the beginning of the time step.
        :param dt: Time step size (s).
        :return: Residual of shape (num_vertices, num_equations).
        """
        return (
            self.eval_storage(element, elem_vol_vars, prev_elem_vol_vars, dt)
            + self.eval_fluxes(element, elem_vol_vars)
            + self.eval_boundary(element, elem_vol_vars)
            - self.eval_sources(element)
        )
