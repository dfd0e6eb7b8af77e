from types import SimpleNamespace

import numpy as np
import pytest

from boxflow.config import Config
from boxflow.constants import c
from boxflow.fluid_system import ConstantFluidSystem
from boxflow.flux_variables import (
    FluxVariables,
    gradient_at_ip,
    integration_point_density,
    millington_quirk_tortuosity,
    porous_media_diffusion_coefficient,
)
from boxflow.material_laws import LinearMaterial
from boxflow.model import BoxModel
from boxflow.types import Phase, PhasePresence
from boxflow.volume_variables import PrimaryVariables

from conftest import BoxProblem


def _phase_values(liquid, gas):
    values = np.zeros(2)
    values[Phase.LIQUID] = liquid
    values[Phase.GAS] = gas
    return values


def _side(gas_saturation, gas_density):
    return SimpleNamespace(
        saturation=_phase_values(1.0 - gas_saturation, gas_saturation),
        density=_phase_values(1000.0, gas_density),
    )


class TestIntegrationPointDensity:
    def test_arithmetic_mean_if_present_on_both_sides(self):
        density = integration_point_density(Phase.GAS, _side(0.3, 1.0), _side(0.5, 2.0))
        assert density == pytest.approx(1.5)

    def test_absent_side_is_ignored(self):
        density = integration_point_density(Phase.GAS, _side(0.0, 1.0), _side(0.5, 2.0))
        assert density == pytest.approx(2.0)

    def test_absent_on_both_sides(self):
        density = integration_point_density(Phase.GAS, _side(0.0, 1.0), _side(0.0, 2.0))
        assert density == pytest.approx(1.5)

    def test_trace_saturation_gets_reduced_weight(self):
        epsilon = c.SATURATION_EPSILON
        density = integration_point_density(
            Phase.GAS, _side(epsilon / 4.0, 1.0), _side(0.5, 2.0)
        )
        assert density == pytest.approx((0.25 * 1.0 + 0.5 * 2.0) / 0.75)
        assert integration_point_density(
            Phase.GAS, _side(0.01, 1.0), _side(0.5, 2.0), saturation_epsilon=0.1
        ) == pytest.approx((0.1 * 1.0 + 0.5 * 2.0) / 0.6)


class TestDiffusionCoefficients:
    def test_millington_quirk(self):
        assert millington_quirk_tortuosity(0.3, 1.0) == pytest.approx(0.3 ** (1.0 / 3.0))
        assert porous_media_diffusion_coefficient(0.3, 1.0, 2e-9) == pytest.approx(
            0.3 * 0.3 ** (1.0 / 3.0) * 2e-9
        )

    def test_absent_phase_does_not_diffuse(self):
        assert porous_media_diffusion_coefficient(0.3, 0.0, 2e-5) == 0.0
        assert porous_media_diffusion_coefficient(0.3, -0.1, 2e-5) == 0.0


def test_gradient_at_ip():
    gradients = np.array([[-1.0], [1.0]]) / 2.0
    np.testing.assert_allclose(gradient_at_ip(gradients, [3.0, 7.0]), [2.0])
    np.testing.assert_array_equal(gradient_at_ip(gradients, [5.0, 5.0]), [0.0])


def _face_variables(model, solution, gravity=True):
    problem = model.problem
    for element in model.grid.elements():
        elem_vol_vars = model.element_volume_variables(element, solution)
        for face in element.geometry.faces:
            yield element, face, elem_vol_vars, FluxVariables.compute(
                problem,
                element,
                face,
                elem_vol_vars,
                gravity=problem.gravity() if gravity else None,
            )


class TestFluxVariables:
    def test_reversed_face_flux_is_antisymmetric(self, box_model):
        solution = box_model.initial_solution()
        local_residual = box_model.local_residual
        for element, face, elem_vol_vars, flux_vars in _face_variables(box_model, solution):
            reverse = FluxVariables.compute(
                box_model.problem,
                element,
                face.reversed(),
                elem_vol_vars,
                gravity=box_model.problem.gravity(),
            )
            np.testing.assert_array_equal(reverse.kmvp_normal, -flux_vars.kmvp_normal)
            assert reverse.upstream == flux_vars.upstream

            flux = local_residual.compute_flux(
                flux_vars, [elem_vol_vars[flux_vars.upstream[p]] for p in Phase]
            )
            reverse_flux = local_residual.compute_flux(
                reverse, [elem_vol_vars[reverse.upstream[p]] for p in Phase]
            )
            np.testing.assert_allclose(reverse_flux, -flux, rtol=1e-14, atol=0.0)

    def test_upstream_follows_flow_direction(self, box_model):
        solution = box_model.initial_solution()
        for _, face, _, flux_vars in _face_variables(box_model, solution):
            for phase in Phase:
                if flux_vars.kmvp_normal[phase] > 0.0:
                    assert flux_vars.upstream[phase] == face.i
                    assert flux_vars.downstream[phase] == face.j
                else:
                    assert flux_vars.upstream[phase] == face.j

    def test_darcy_velocity_of_the_column(self, column_model):
        solution = column_model.initial_solution()
        for _, _, elem_vol_vars, flux_vars in _face_variables(
            column_model, solution, gravity=False
        ):
            assert flux_vars.darcy_velocity(Phase.LIQUID, elem_vol_vars) == pytest.approx(1e-5)
            assert flux_vars.volume_flux(Phase.GAS, elem_vol_vars) == 0.0
            # the gas phase is absent everywhere
            assert flux_vars.diffusion_coefficient[Phase.GAS] == 0.0
            assert flux_vars.diffusive_flux(Phase.GAS) == 0.0

    def test_uniform_pressure_without_gravity(self):
        problem = BoxProblem(
            initial=lambda position: PrimaryVariables([1e5, 0.3], PhasePresence.BOTH)
        )
        model = BoxModel(problem, Config(enable_gravity=False))
        solution = model.initial_solution()
        for _, _, _, flux_vars in _face_variables(model, solution, gravity=False):
            np.testing.assert_allclose(flux_vars.kmvp_normal, 0.0, atol=1e-20)
            np.testing.assert_allclose(flux_vars.diffusive_flux(Phase.LIQUID), 0.0, atol=1e-20)

    def test_hydrostatic_liquid_is_at_rest(self):
        gravity = c.ACCELERATION_DUE_TO_GRAVITY

        def hydrostatic(position):
            return PrimaryVariables(
                [2e5 - 1000.0 * gravity * position[-1], 0.0], PhasePresence.LIQUID_ONLY
            )

        problem = BoxProblem(
            initial=hydrostatic,
            fluid_system=ConstantFluidSystem(),
            material_law=LinearMaterial(),
        )
        model = BoxModel(problem)
        solution = model.initial_solution()
        for _, _, _, flux_vars in _face_variables(model, solution):
            np.testing.assert_allclose(flux_vars.potential_gradient[Phase.LIQUID], 0.0, atol=1e-8)
            assert flux_vars.kmvp_normal[Phase.LIQUID] == pytest.approx(0.0, abs=1e-18)
