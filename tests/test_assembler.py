import numpy as np
import pytest

from boxflow._precision import with_precision
from boxflow.assembler import GhostExchange, JacobianAssembler, numeric_epsilon
from boxflow.config import Config
from boxflow.fluid_system import WaterNitrogenFluidSystem
from boxflow.material_laws import BrooksCorey
from boxflow.model import BoxModel
from boxflow.types import DifferenceMethod, PhasePresence
from boxflow.volume_variables import PrimaryVariables

from conftest import BoxProblem, ColumnProblem, two_phase_state


def two_phase_column() -> ColumnProblem:
    return ColumnProblem(
        fluid_system=WaterNitrogenFluidSystem(),
        material_law=BrooksCorey(entry_pressure=1e4, lambda_=2.0),
        dirichlet=False,
        initial=lambda position: PrimaryVariables(
            [1e5 + 5e3 * position[0], 0.3 + 0.02 * position[0]], PhasePresence.BOTH
        ),
    )


def test_numeric_epsilon():
    assert numeric_epsilon(0.0) == pytest.approx(1e-9)
    assert numeric_epsilon(-1e5) == pytest.approx(1e-9 * (1e5 + 1.0))
    assert numeric_epsilon(2.0, base_epsilon=1e-6) == pytest.approx(3e-6)


def test_numeric_epsilon_resolvable_in_single_precision():
    with with_precision(np.float32):
        epsilon = numeric_epsilon(1e5)
        assert epsilon == pytest.approx(4.0 * np.finfo(np.float32).eps * (1e5 + 1.0))
        assert np.float32(1e5) + np.float32(epsilon) != np.float32(1e5)


def test_difference_methods_agree():
    problem = two_phase_column()
    jacobians = {}
    for method in DifferenceMethod:
        model = BoxModel(problem, Config(enable_gravity=False, numeric_difference_method=method))
        solution = model.initial_solution()
        previous = solution.copy()
        previous.values[:, 1] -= 0.01
        jacobians[method] = (
            JacobianAssembler(model).assemble(solution, previous, dt=1e3).jacobian.toarray()
        )

    central = jacobians[DifferenceMethod.CENTRAL]
    scale = np.abs(central).max(axis=0)
    assert np.all(scale > 0.0)
    for method in (DifferenceMethod.FORWARD, DifferenceMethod.BACKWARD):
        np.testing.assert_allclose(
            np.abs(jacobians[method] - central) / scale, 0.0, atol=1e-4
        )


def test_assembled_residual_matches_model_residual(box_model):
    solution = box_model.initial_solution()
    previous = solution.copy()
    previous.values[:, 0] -= 200.0
    assembler = JacobianAssembler(box_model)
    result = assembler.assemble(solution, previous, dt=50.0)
    expected = box_model.residual(solution, previous, dt=50.0)
    np.testing.assert_allclose(result.residual, expected, rtol=1e-12, atol=1e-15)
    np.testing.assert_allclose(
        assembler.assemble_residual(solution, previous, dt=50.0), expected, rtol=1e-12, atol=1e-15
    )
    assert result.num_reassembled == box_model.grid.num_elements
    assert not result.recycled


def test_jacobian_predicts_residual_change(box_model):
    solution = box_model.initial_solution()
    assembler = JacobianAssembler(box_model)
    result = assembler.assemble(solution, solution, dt=100.0)

    step = np.zeros_like(solution.values)
    step[:, 0] = 1.0
    step[:, 1] = 1e-5
    perturbed = solution.copy()
    perturbed.values += step
    change = box_model.residual(perturbed, solution, dt=100.0) - result.residual
    predicted = (result.jacobian @ step.reshape(-1)).reshape(step.shape)
    np.testing.assert_allclose(predicted, change, rtol=1e-3, atol=1e-3 * np.abs(change).max())


def test_dirichlet_rows_are_identity_rows(column_model):
    solution = column_model.initial_solution()
    result = JacobianAssembler(column_model).assemble(solution, solution, dt=1.0)
    jacobian = result.jacobian.toarray()
    num_equations = column_model.num_equations
    for dof in (0, column_model.num_dofs - 1):
        for equation in range(num_equations):
            row = dof * num_equations + equation
            expected = np.zeros(jacobian.shape[1])
            expected[row] = 1.0
            np.testing.assert_array_equal(jacobian[row], expected)
            assert result.residual[dof, equation] == 0.0


def test_sparsity_pattern(column_model):
    assembler = JacobianAssembler(column_model)
    pattern = assembler.sparsity_pattern()
    assert pattern.shape == assembler.shape == (12, 12)
    # every vertex couples to itself and its neighbours, with 2 x 2 blocks
    assert pattern.nnz == (6 + 2 * 5) * 4


def test_threaded_assembly_matches_serial(box_problem):
    serial_model = BoxModel(box_problem)
    threaded_model = BoxModel(box_problem, Config(assembly_workers=3))
    solution = serial_model.initial_solution()
    previous = solution.copy()
    previous.values[:, 1] += 0.02

    serial = JacobianAssembler(serial_model).assemble(solution, previous, dt=10.0)
    threaded = JacobianAssembler(threaded_model).assemble(solution, previous, dt=10.0)
    np.testing.assert_allclose(threaded.residual, serial.residual, rtol=1e-12, atol=1e-15)
    np.testing.assert_allclose(
        threaded.jacobian.toarray(), serial.jacobian.toarray(), rtol=1e-12, atol=1e-15
    )


class TestPartialReassembly:
    @pytest.fixture
    def model(self):
        problem = BoxProblem(initial=two_phase_state, cells=(3, 3), size=6.0)
        return BoxModel(problem, Config(enable_partial_reassemble=True))

    def test_only_changed_elements_are_relinearized(self, model):
        assembler = JacobianAssembler(model)
        solution = model.initial_solution()
        first = assembler.assemble(solution, solution, dt=10.0)
        assert first.num_reassembled == 9

        second = assembler.assemble(solution, solution, dt=10.0)
        assert second.num_reassembled == 0
        np.testing.assert_array_equal(second.jacobian.toarray(), first.jacobian.toarray())

        # vertex 0 belongs to the corner element only, vertex 5 to four elements
        moved = solution.copy()
        moved.values[0, 0] += 1e3
        assert assembler.assemble(moved, solution, dt=10.0).num_reassembled == 1
        moved.values[5, 1] += 0.01
        assert assembler.assemble(moved, solution, dt=10.0).num_reassembled == 4

    def test_small_changes_reuse_blocks(self, model):
        assembler = JacobianAssembler(model)
        solution = model.initial_solution()
        assembler.assemble(solution, solution, dt=10.0)
        nudged = solution.copy()
        nudged.values[:, 0] *= 1.0 + 1e-9
        assert assembler.assemble(nudged, solution, dt=10.0).num_reassembled == 0

    def test_new_step_size_relinearizes_all_elements(self, model):
        assembler = JacobianAssembler(model)
        solution = model.initial_solution()
        assembler.assemble(solution, solution, dt=1.0)
        result = assembler.assemble(solution, solution, dt=100.0)
        assert result.num_reassembled == 9

        expected = JacobianAssembler(model).assemble(solution, solution, dt=100.0)
        np.testing.assert_allclose(
            result.jacobian.toarray(), expected.jacobian.toarray(), rtol=1e-12, atol=0.0
        )

    def test_reset_forces_full_assembly(self, model):
        assembler = JacobianAssembler(model)
        solution = model.initial_solution()
        assembler.assemble(solution, solution, dt=10.0)
        assembler.reset()
        assert assembler.assemble(solution, solution, dt=10.0).num_reassembled == 9


class TestJacobianRecycling:
    def test_recycled_for_unchanged_step_size(self, box_problem):
        model = BoxModel(box_problem, Config(enable_jacobian_recycling=True))
        assembler = JacobianAssembler(model)
        solution = model.initial_solution()
        assert not assembler.can_recycle(10.0)

        first = assembler.assemble(solution, solution, dt=10.0, recycle=True)
        assert not first.recycled

        second = assembler.assemble(solution, solution, dt=10.0, recycle=True)
        assert second.recycled
        assert second.jacobian is first.jacobian
        assert second.num_reassembled == 0

        assert not assembler.assemble(solution, solution, dt=20.0, recycle=True).recycled
        assembler.reset()
        assert not assembler.can_recycle(20.0)

    def test_disabled_by_default(self, box_model):
        assembler = JacobianAssembler(box_model)
        solution = box_model.initial_solution()
        assembler.assemble(solution, solution, dt=10.0)
        assert not assembler.can_recycle(10.0)
        assert not assembler.assemble(solution, solution, dt=10.0, recycle=True).recycled


def test_ghost_exchange_runs_before_every_evaluation(box_problem):
    class CountingExchange(GhostExchange):
        def __init__(self):
            self.calls = 0

        def exchange(self, solution):
            self.calls += 1

    exchange = CountingExchange()
    model = BoxModel(box_problem, ghost_exchange=exchange)
    assembler = JacobianAssembler(model)
    solution = model.initial_solution()
    assembler.assemble(solution, solution, dt=1.0)
    assembler.assemble_residual(solution, solution, dt=1.0)
    model.residual(solution, solution, dt=1.0)
    assert exchange.calls == 3
