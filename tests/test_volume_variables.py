import numpy as np
import pytest

from boxflow.errors import NumericalFailure, ValidationError
from boxflow.fluid_system import ConstantFluidSystem, WaterNitrogenFluidSystem
from boxflow.material_laws import BrooksCorey
from boxflow.types import Component, Indices, Phase, PhasePresence
from boxflow.volume_variables import PrimaryVariables, SolutionVector, VolumeVariables


def evaluate(values, presence, non_isothermal=False, law=None):
    return VolumeVariables.from_primary_variables(
        np.array(values, dtype=float),
        presence,
        indices=Indices(non_isothermal=non_isothermal),
        material_law=law if law is not None else BrooksCorey(entry_pressure=1e4, lambda_=2.0),
        porosity=0.3,
        permeability=1e-12 * np.eye(2),
        fluid_system=WaterNitrogenFluidSystem(),
        temperature=300.0,
    )


class TestVolumeVariables:
    @pytest.mark.parametrize(
        "presence, switch, gas_saturation",
        [
            (PhasePresence.BOTH, 0.3, 0.3),
            (PhasePresence.LIQUID_ONLY, 1e-6, 0.0),
            (PhasePresence.GAS_ONLY, 0.01, 1.0),
        ],
    )
    def test_saturations(self, presence, switch, gas_saturation):
        vol_vars = evaluate([1e5, switch], presence)
        assert vol_vars.saturation[Phase.GAS] == pytest.approx(gas_saturation)
        assert vol_vars.saturation.sum() == pytest.approx(1.0)

    def test_phase_pressures_differ_by_capillary_pressure(self):
        law = BrooksCorey(entry_pressure=1e4, lambda_=2.0)
        vol_vars = evaluate([1e5, 0.75], PhasePresence.BOTH, law=law)
        assert vol_vars.capillary_pressure == pytest.approx(law.capillary_pressure(0.25))
        assert vol_vars.pressure[Phase.GAS] == pytest.approx(1e5 + vol_vars.capillary_pressure)
        assert vol_vars.pressure[Phase.LIQUID] == 1e5

    def test_mobility(self):
        vol_vars = evaluate([1e5, 0.5], PhasePresence.BOTH)
        np.testing.assert_allclose(
            vol_vars.mobility, vol_vars.relative_permeability / vol_vars.viscosity
        )
        assert vol_vars.mobility[Phase.LIQUID] > 0.0
        assert vol_vars.mobility[Phase.GAS] > 0.0

    def test_temperature(self):
        assert evaluate([1e5, 0.3], PhasePresence.BOTH).temperature == 300.0
        vol_vars = evaluate([1e5, 0.3, 350.0], PhasePresence.BOTH, non_isothermal=True)
        assert vol_vars.temperature == 350.0
        assert vol_vars.fluid_state.temperature == 350.0

    def test_non_finite_primary_variables(self):
        with pytest.raises(NumericalFailure):
            evaluate([np.nan, 0.3], PhasePresence.BOTH)
        with pytest.raises(NumericalFailure):
            evaluate([1e5, np.inf], PhasePresence.LIQUID_ONLY)

    def test_dissolved_nitrogen_mass_is_linear_around_zero(self):
        fractions = [-2e-6, -1e-6, 0.0, 1e-6]
        masses = []
        for fraction in fractions:
            vol_vars = evaluate([1e5, fraction], PhasePresence.LIQUID_ONLY)
            masses.append(
                vol_vars.density[Phase.LIQUID] * vol_vars.mass_fraction[Phase.LIQUID, Component.N2]
            )
        assert masses[0] < masses[1] < masses[2] == 0.0 < masses[3]
        np.testing.assert_allclose(np.diff(masses), masses[3], rtol=1e-8)


class TestSolutionVector:
    def test_access(self):
        solution = SolutionVector.from_primary_variables(
            [
                PrimaryVariables([1e5, 0.0], PhasePresence.LIQUID_ONLY),
                PrimaryVariables([2e5, 0.4], PhasePresence.BOTH),
            ]
        )
        assert solution.num_dofs == len(solution) == 2
        assert solution.num_equations == 2
        assert solution[1].presence == PhasePresence.BOTH
        np.testing.assert_array_equal(solution[1].values, [2e5, 0.4])
        np.testing.assert_array_equal(solution.flat(), [1e5, 0.0, 2e5, 0.4])

        solution[0] = PrimaryVariables([1.5e5, 0.99], PhasePresence.GAS_ONLY)
        assert solution.presence[0] == PhasePresence.GAS_ONLY
        assert solution.values[0, 1] == 0.99

    def test_copy_is_independent(self):
        solution = SolutionVector(np.ones((3, 2)), np.full(3, PhasePresence.BOTH))
        copy = solution.copy()
        copy.values[0, 0] = 5.0
        copy.presence[0] = PhasePresence.LIQUID_ONLY
        assert solution.values[0, 0] == 1.0
        assert solution.presence[0] == PhasePresence.BOTH

    @pytest.mark.parametrize(
        "values, presence",
        [
            (np.ones(3), np.full(3, 1)),
            (np.ones((3, 2)), np.full(2, 1)),
            (np.ones((3, 2)), np.array([1, 2, 5])),
        ],
    )
    def test_validation(self, values, presence):
        with pytest.raises(ValidationError):
            SolutionVector(values, presence)

    def test_invalid_primary_variable_presence(self):
        with pytest.raises(ValidationError):
            PrimaryVariables([1e5, 0.0], 7)


def test_element_volume_variables(box_model):
    solution = box_model.initial_solution()
    element = box_model.grid.elements()[0]
    elem_vol_vars = box_model.element_volume_variables(element, solution)
    assert len(elem_vol_vars) == 4
    for vol_vars, dof in zip(elem_vol_vars, element.vertex_indices):
        np.testing.assert_array_equal(vol_vars.primary_variables, solution.values[dof])

    replacement = VolumeVariables.from_primary_variables(
        np.array([1e5, 0.5]),
        PhasePresence.BOTH,
        indices=box_model.indices,
        material_law=BrooksCorey(entry_pressure=1e4, lambda_=2.0),
        porosity=0.3,
        permeability=1e-12 * np.eye(2),
        fluid_system=ConstantFluidSystem(),
        temperature=300.0,
    )
    replaced = elem_vol_vars.with_replaced(2, replacement)
    assert replaced[2] is replacement
    assert elem_vol_vars[2] is not replacement
    assert replaced[0] is elem_vol_vars[0]
