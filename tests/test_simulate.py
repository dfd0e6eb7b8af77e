import numpy as np
import pytest

from boxflow.config import Config
from boxflow.constants import Constants, c
from boxflow.errors import ConvergenceError, NumericalFailure, SimulationError, ValidationError
from boxflow.model import BoxModel
from boxflow.newton import NewtonMethod
from boxflow.simulate import ModelState, run
from boxflow.timing import Timer
from boxflow.types import PhasePresence
from boxflow.volume_variables import PrimaryVariables

from conftest import ColumnProblem


def uniform_column_model(config=None) -> BoxModel:
    problem = ColumnProblem(
        initial=lambda position: PrimaryVariables([1e5, 0.0], PhasePresence.LIQUID_ONLY)
    )
    return BoxModel(problem, config if config is not None else Config(enable_gravity=False))


class LimitedNewton(NewtonMethod):
    """Fails every step larger than `max_step_size`."""

    def __init__(self, model, max_step_size):
        super().__init__(model)
        self.max_step_size = max_step_size
        self.attempted = []

    def solve(self, solution, previous, dt):
        self.attempted.append(dt)
        if dt > self.max_step_size:
            raise NumericalFailure("step too large")
        return super().solve(solution, previous, dt)


def test_column_reaches_steady_state():
    model = uniform_column_model()
    timer = Timer(
        initial_step_size=100.0, max_step_size=1e4, min_step_size=1.0, simulation_time=1000.0
    )
    states = list(run(model, timer))

    assert all(isinstance(state, ModelState) for state in states)
    assert states[0].step == 0
    assert states[0].time == 0.0
    assert [state.step for state in states] == list(range(len(states)))
    assert states[-1].time == pytest.approx(1000.0)
    assert timer.done()
    assert all(state.newton_iterations > 0 for state in states[1:])

    sizes = [state.step_size for state in states[1:-1]]
    assert all(later > earlier for earlier, later in zip(sizes, sizes[1:]))

    problem = model.problem
    expected = [problem.steady_pressure(x) for x in model.grid.vertex_positions[:, 0]]
    np.testing.assert_allclose(states[-1].solution.values[:, 0], expected, rtol=1e-8)


def test_output_frequency():
    model = uniform_column_model()
    timer = Timer(
        initial_step_size=10.0,
        max_step_size=10.0,
        min_step_size=1.0,
        simulation_time=50.0,
    )
    steps = [state.step for state in run(model, timer, output_frequency=2)]
    assert steps == [0, 2, 4, 5]


def test_invalid_output_frequency():
    model = uniform_column_model()
    timer = Timer(initial_step_size=1.0, max_step_size=1.0, min_step_size=1.0, simulation_time=1.0)
    with pytest.raises(ValidationError):
        next(run(model, timer, output_frequency=0))


def test_failed_steps_are_retried_with_smaller_steps():
    model = uniform_column_model()
    method = LimitedNewton(model, max_step_size=50.0)
    timer = Timer(
        initial_step_size=100.0, max_step_size=1e3, min_step_size=1.0, simulation_time=300.0
    )
    states = list(run(model, timer, method=method))

    assert states[-1].time == pytest.approx(300.0)
    assert all(state.step_size <= 50.0 for state in states[1:])
    assert method.attempted[0] == 100.0
    assert any(size > 50.0 for size in method.attempted[1:])


def test_simulation_error_when_step_cannot_shrink():
    model = uniform_column_model()
    method = LimitedNewton(model, max_step_size=0.5)
    timer = Timer(
        initial_step_size=100.0, max_step_size=1e3, min_step_size=10.0, simulation_time=300.0
    )
    with pytest.raises(ConvergenceError) as excinfo:
        list(run(model, timer, method=method))
    assert isinstance(excinfo.value, SimulationError)
    assert method.attempted == [100.0, 50.0, 25.0, 12.5, 10.0]


def test_model_constants_are_active_during_run():
    constants = Constants()
    constants.SATURATION_EPSILON = 1e-3
    model = uniform_column_model(Config(enable_gravity=False, constants=constants))
    seen = []

    class InspectingNewton(NewtonMethod):
        def solve(self, solution, previous, dt):
            seen.append(c.SATURATION_EPSILON)
            return super().solve(solution, previous, dt)

    timer = Timer(initial_step_size=1.0, max_step_size=1.0, min_step_size=1.0, simulation_time=1.0)
    list(run(model, timer, method=InspectingNewton(model)))
    assert seen == [1e-3]
    assert c.SATURATION_EPSILON == 1e-5


def test_retry_count_comes_from_config():
    model = uniform_column_model(Config(enable_gravity=False, max_time_step_retries=2))
    method = LimitedNewton(model, max_step_size=0.5)
    timer = Timer(
        initial_step_size=100.0, max_step_size=1e3, min_step_size=1e-3, simulation_time=300.0
    )
    with pytest.raises(ConvergenceError):
        list(run(model, timer, method=method))
    assert method.attempted == [100.0, 50.0, 25.0]


def test_step_reduction_factor_comes_from_config():
    model = uniform_column_model(Config(enable_gravity=False, time_step_reduction_factor=0.25))
    method = LimitedNewton(model, max_step_size=30.0)
    timer = Timer(
        initial_step_size=100.0,
        max_step_size=100.0,
        min_step_size=1.0,
        simulation_time=300.0,
        metrics_history_size=100,
    )
    states = list(run(model, timer, method=method))

    assert method.attempted[:2] == [100.0, 25.0]
    assert states[1].step_size == 25.0
    assert states[-1].time == pytest.approx(300.0)
    failed = [m for m in timer.recent_metrics if not m.success]
    assert failed[0].step_size == 100.0
    assert failed[0].step_number == 1
    assert timer.rejection_count == len(failed)
