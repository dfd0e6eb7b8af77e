from types import SimpleNamespace

import numpy as np
import pytest

from boxflow.config import Config
from boxflow.constants import c
from boxflow.flux_variables import BoundaryVariables, FluxVariables, HeatConductionFlux
from boxflow.local_residual import EnergyTransport
from boxflow.model import BoxModel
from boxflow.problem import BoundaryTypes
from boxflow.types import Component, Phase, PhasePresence
from boxflow.volume_variables import PrimaryVariables

from conftest import BoxProblem, ColumnProblem


def _phase_values(liquid, gas):
    values = np.zeros(2)
    values[Phase.LIQUID] = liquid
    values[Phase.GAS] = gas
    return values


def warm_two_phase_state(position):
    """Two-phase state with a temperature rising by 2 K/m in x."""
    x, y = position
    return PrimaryVariables(
        [1e5 + 2e3 * x - 1.5e3 * y, 0.2 + 0.03 * x + 0.02 * y, 300.0 + 2.0 * x],
        PhasePresence.BOTH,
    )


@pytest.fixture
def warm_box_model():
    return BoxModel(BoxProblem(initial=warm_two_phase_state, non_isothermal=True))


def _faces(model, solution):
    for element in model.grid.elements():
        elem_vol_vars = model.element_volume_variables(element, solution)
        for face in element.geometry.faces:
            yield element, face, elem_vol_vars


class TestEnergyTransport:
    def test_storage(self):
        vol_vars = SimpleNamespace(
            porosity=0.25,
            density=_phase_values(1000.0, 2.0),
            saturation=_phase_values(0.6, 0.4),
            internal_energy=_phase_values(1e5, 3e5),
            heat_capacity=2e6,
            temperature=300.0,
        )
        fluid = 1000.0 * 0.6 * 1e5 + 2.0 * 0.4 * 3e5
        expected = 0.25 * fluid + 0.75 * 2e6 * 300.0
        assert EnergyTransport().storage(vol_vars) == pytest.approx(expected)

    def test_advective_flux_uses_upstream_of_each_phase(self):
        flux_vars = SimpleNamespace(kmvp_normal=_phase_values(2e-12, -1e-12))
        liquid_upstream = SimpleNamespace(
            density=_phase_values(1000.0, 1.0),
            mobility=_phase_values(1e3, 0.0),
            enthalpy=_phase_values(1.1e5, 0.0),
        )
        gas_upstream = SimpleNamespace(
            density=_phase_values(0.0, 1.5),
            mobility=_phase_values(0.0, 5e4),
            enthalpy=_phase_values(0.0, 2.6e6),
        )
        flux = EnergyTransport().advective_flux(flux_vars, [liquid_upstream, gas_upstream])
        expected = 2e-12 * 1000.0 * 1e3 * 1.1e5 - 1e-12 * 1.5 * 5e4 * 2.6e6
        assert flux == pytest.approx(expected)

    def test_conductive_flux(self):
        energy = EnergyTransport()
        assert energy.conductive_flux(SimpleNamespace(heat_conduction=None)) == 0.0
        conduction = HeatConductionFlux(temperature_gradient=np.array([1.0]), normal_flux=-4.5)
        assert energy.conductive_flux(SimpleNamespace(heat_conduction=conduction)) == -4.5


class TestHeatConduction:
    def test_normal_flux_follows_fourier(self, warm_box_model):
        problem = warm_box_model.problem
        law = problem.spatial_parameters.conductivity_law
        solution = warm_box_model.initial_solution()
        for element, face, elem_vol_vars in _faces(warm_box_model, solution):
            flux_vars = FluxVariables.compute(
                problem, element, face, elem_vol_vars, with_heat_conduction=True
            )
            conduction = flux_vars.heat_conduction
            np.testing.assert_allclose(conduction.temperature_gradient, [2.0, 0.0], atol=1e-12)

            liquid_saturation = 0.5 * (
                elem_vol_vars[face.i].saturation[Phase.LIQUID]
                + elem_vol_vars[face.j].saturation[Phase.LIQUID]
            )
            conductivity = law.effective_conductivity(
                liquid_saturation, 0.3, c.GRANITE_THERMAL_CONDUCTIVITY
            )
            expected = -conductivity * float(np.dot([2.0, 0.0], face.normal))
            assert conduction.normal_flux == pytest.approx(expected, rel=1e-10, abs=1e-12)

    def test_isothermal_faces_have_no_conduction(self, box_model):
        solution = box_model.initial_solution()
        for element, face, elem_vol_vars in _faces(box_model, solution):
            flux_vars = FluxVariables.compute(box_model.problem, element, face, elem_vol_vars)
            assert flux_vars.heat_conduction is None

    def test_energy_flux_is_antisymmetric(self, warm_box_model):
        problem = warm_box_model.problem
        local_residual = warm_box_model.local_residual
        energy = problem.indices.energy_equation_index
        solution = warm_box_model.initial_solution()
        conducting = 0
        for element, face, elem_vol_vars in _faces(warm_box_model, solution):
            fluxes = []
            for side in (face, face.reversed()):
                flux_vars = FluxVariables.compute(
                    problem,
                    element,
                    side,
                    elem_vol_vars,
                    gravity=problem.gravity(),
                    with_heat_conduction=True,
                )
                upstream = [elem_vol_vars[flux_vars.upstream[p]] for p in Phase]
                fluxes.append(local_residual.compute_flux(flux_vars, upstream))
                if flux_vars.heat_conduction.normal_flux != 0.0:
                    conducting += 1
            forward, reverse = fluxes
            assert forward[energy] != 0.0
            assert reverse[energy] == pytest.approx(-forward[energy], rel=1e-12)
        assert conducting > 0


class OutflowColumn(ColumnProblem):
    """Column with fixed values on the left and an outflow condition on the right."""

    def boundary_types_at_pos(self, position):
        types = BoundaryTypes(self.num_equations)
        if position[0] < 0.5 * self.length:
            return types.set_all_dirichlet()
        return types.set_all_outflow()


class TestOutflowBoundary:
    def test_boundary_variables(self):
        problem = OutflowColumn()
        model = BoxModel(problem, Config(enable_gravity=False))
        solution = model.initial_solution()
        element = model.grid.elements()[-1]
        (face,) = element.geometry.boundary_faces
        elem_vol_vars = model.element_volume_variables(element, solution)

        boundary_vars = BoundaryVariables.compute(problem, element, face, elem_vol_vars)
        # -K dp/dx with dp/dx = -1e4 Pa/m
        assert boundary_vars.kmvp_normal[Phase.LIQUID] == pytest.approx(1e-8)
        assert boundary_vars.volume_flux(Phase.LIQUID, elem_vol_vars) == pytest.approx(1e-5)
        assert boundary_vars.density[Phase.LIQUID] == pytest.approx(1000.0)
        assert boundary_vars.volume_flux(Phase.GAS, elem_vol_vars) == 0.0
        assert boundary_vars.diffusive_flux(Phase.GAS) == 0.0
        assert boundary_vars.diffusive_flux(Phase.LIQUID) == pytest.approx(0.0, abs=1e-20)
        assert boundary_vars.heat_conduction is None

    def test_outflow_balances_the_steady_column(self):
        model = BoxModel(OutflowColumn(), Config(enable_gravity=False))
        solution = model.initial_solution()
        residual = model.residual(solution, solution, dt=1.0)
        np.testing.assert_allclose(residual, 0.0, atol=1e-12)

    def test_no_flow_column_accumulates_at_the_right_end(self):
        model = BoxModel(ColumnProblem(dirichlet=False), Config(enable_gravity=False))
        solution = model.initial_solution()
        residual = model.residual(solution, solution, dt=1.0)
        water = model.indices.component_equation_index(Component.H2O)
        # 1e-5 m³/s of water at 1000 kg/m³ leave the first and enter the last sub-control volume
        assert residual[-1, water] == pytest.approx(-1e-2)
        assert residual[0, water] == pytest.approx(1e-2)
