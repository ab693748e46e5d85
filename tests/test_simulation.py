"""Tests for patient trajectory simulation and the PSA driver."""

import numpy as np
import pandas as pd
import pytest

from multistate_cea import (
    TransitionGraph,
    HazardSpec,
    TransitionModel,
    ModelConfig,
    SimulationConfig,
    ConfigurationError,
    simulate_patient_trajectory,
    simulate_psa,
)
from multistate_cea.hazards import Exponential
from multistate_cea.utils.simulation import patient_rng

from conftest import ConstantUniform, make_config


SOJOURN = -np.log(0.5) / 0.1


def _transition_model(config, sample_coefficients=None):
    coefficients = sample_coefficients or {tid: spec.mean for tid, spec in config.hazards.items()}
    return TransitionModel(config.graph, config.hazards, coefficients)


def check_trajectory(traj, max_time):
    """Contiguous segments starting at 0 and ending no later than the horizon."""
    if len(traj) == 0:
        return
    assert traj.entry_times[0] == 0.0
    np.testing.assert_array_equal(traj.exit_times[:-1], traj.entry_times[1:])
    assert traj.exit_times[-1] <= max_time
    assert np.all(traj.sojourn_times >= 0)


def test_fixed_draw_trajectory(config):
    """With u = 0.5 everywhere each sojourn lasts -ln(0.5)/0.1 years."""
    model = _transition_model(config)
    traj = simulate_patient_trajectory(model, {"treat": 0.0}, 20.0, ConstantUniform(0.5))
    np.testing.assert_array_equal(traj.states, [0, 1])
    np.testing.assert_allclose(traj.entry_times, [0.0, SOJOURN])
    np.testing.assert_allclose(traj.exit_times, [SOJOURN, 2 * SOJOURN])
    np.testing.assert_array_equal(traj.transitions, [1, 3])
    assert traj.absorbed
    assert traj.final_state == 2


def test_horizon_truncation(config):
    model = _transition_model(config)
    traj = simulate_patient_trajectory(model, {"treat": 0.0}, 10.0, ConstantUniform(0.5))
    np.testing.assert_array_equal(traj.states, [0, 1])
    np.testing.assert_allclose(traj.exit_times, [SOJOURN, 10.0])
    assert traj.transitions[-1] == -1
    assert not traj.absorbed
    assert traj.final_state == 1


def test_pure_absorbing_chain_has_one_segment():
    graph = TransitionGraph.from_matrix([[None, 1], [None, None]], state_names=["Healthy", "Death"])
    hazards = {1: HazardSpec(1, "weibull", np.array([np.log(1.2), np.log(8.0)]))}
    model = TransitionModel(graph, hazards, {1: hazards[1].mean})
    rng = np.random.default_rng(5)
    for _ in range(100):
        traj = simulate_patient_trajectory(model, {}, 1000.0, rng)
        assert len(traj) == 1
        assert traj.states[0] == 0
        assert traj.absorbed and traj.final_state == 1


def test_random_trajectories_are_valid(config):
    model = _transition_model(config)
    rng = np.random.default_rng(0)
    allowed = config.graph.state_transitions
    for _ in range(200):
        traj = simulate_patient_trajectory(model, {"treat": 0.0}, 15.0, rng)
        check_trajectory(traj, 15.0)
        for a, b in zip(traj.states[:-1], traj.states[1:]):
            assert b in allowed[a]
        if traj.absorbed:
            assert traj.final_state in config.graph.absorbing_states


def test_start_state(config):
    model = _transition_model(config)
    traj = simulate_patient_trajectory(model, {"treat": 0.0}, 20.0, ConstantUniform(0.5), start_state=1)
    np.testing.assert_array_equal(traj.states, [1])
    assert np.isclose(traj.exit_times[0], SOJOURN)

    traj = simulate_patient_trajectory(model, {"treat": 0.0}, 20.0, ConstantUniform(0.5), start_state=2)
    assert len(traj) == 0
    assert traj.absorbed


def test_degenerate_draws_run_to_horizon(config, monkeypatch):
    monkeypatch.setattr(Exponential, "inverse_cumulative_hazard", lambda self, u, theta: -1.0)
    traj = simulate_patient_trajectory(_transition_model(config), {}, 20.0, ConstantUniform(0.5))
    np.testing.assert_array_equal(traj.states, [0])
    np.testing.assert_array_equal(traj.exit_times, [20.0])
    assert not traj.absorbed


def test_patient_rng_keyed_by_unit():
    a = patient_rng(1, 0, 0, 0).random(5)
    np.testing.assert_array_equal(a, patient_rng(1, 0, 0, 0).random(5))
    assert not np.array_equal(a, patient_rng(1, 0, 0, 1).random(5))
    assert not np.array_equal(a, patient_rng(1, 0, 1, 0).random(5))
    assert not np.array_equal(a, patient_rng(1, 1, 0, 0).random(5))
    assert not np.array_equal(a, patient_rng(2, 0, 0, 0).random(5))


def test_fixed_draw_scenario():
    """3 states, 2 strategies, 1 sample, 2 patients, horizon 20, no discounting."""
    config = make_config(rate=0.1, n_patients=2)
    sim_config = SimulationConfig(
        n_samples=1, max_time=20.0, dr_qalys=0.0, dr_costs=0.0, seed=1,
        keep_trajectories=True,
    )
    result = simulate_psa(config, sim_config, rng_factory=lambda s, k, p: ConstantUniform(0.5))

    assert result.qaly.shape == (1, 2)
    assert result.cost.shape == (1, 2)
    # Healthy for one sojourn at utility 1, then Sick for one at 0.5, then dead
    expected_qaly = SOJOURN * 1.0 + SOJOURN * 0.5
    np.testing.assert_allclose(result.qaly, [[expected_qaly, expected_qaly]])
    np.testing.assert_allclose(result.lys, [[2 * SOJOURN, 2 * SOJOURN]])
    np.testing.assert_allclose(result.costs["medical"], [[SOJOURN * 1100.0] * 2])
    np.testing.assert_allclose(result.costs["drug"], [[0.0, SOJOURN * 500.0]])
    np.testing.assert_allclose(result.cost, result.costs["medical"] + result.costs["drug"])

    traj = result.trajectories
    assert len(traj) == 2 * 2 * 2
    np.testing.assert_allclose(traj["exit_time"] - traj["entry_time"], SOJOURN)


def test_psa_shapes_and_reproducibility():
    config = make_config(rate=0.15, n_patients=20, covariance=0.02, treatment_effect=-0.4)
    sim_config = SimulationConfig(n_samples=8, max_time=30.0, seed=123)
    a = simulate_psa(config, sim_config)
    b = simulate_psa(config, sim_config)

    assert a.cost.shape == a.qaly.shape == (8, 2)
    assert np.all(np.isfinite(a.cost)) and np.all(np.isfinite(a.qaly))
    np.testing.assert_array_equal(a.qaly, b.qaly)
    np.testing.assert_array_equal(a.cost, b.cost)
    assert a.seed == 123

    c = simulate_psa(config, SimulationConfig(n_samples=8, max_time=30.0, seed=124))
    assert not np.array_equal(a.qaly, c.qaly)


def test_parallel_matches_serial():
    config = make_config(rate=0.2, n_patients=10, covariance=0.02, treatment_effect=-0.3)
    serial = simulate_psa(config, SimulationConfig(n_samples=4, max_time=25.0, seed=7, n_jobs=1))
    parallel = simulate_psa(config, SimulationConfig(n_samples=4, max_time=25.0, seed=7, n_jobs=2))
    np.testing.assert_array_equal(serial.qaly, parallel.qaly)
    np.testing.assert_array_equal(serial.cost, parallel.cost)


def test_treatment_effect_improves_qalys():
    """A protective effect on Healthy -> Sick keeps patients healthy for longer."""
    config = make_config(rate=0.2, n_patients=2000, treatment_effect=-1.0)
    result = simulate_psa(config, SimulationConfig(n_samples=2, max_time=40.0, seed=3))
    assert np.all(result.qaly[:, 1] > result.qaly[:, 0])


def test_occupancy_and_trajectories():
    config = make_config(rate=0.1, n_patients=50)
    times = [0.0, 5.0, 10.0, 20.0]
    sim_config = SimulationConfig(
        n_samples=3, max_time=20.0, seed=9, occupancy_times=times, keep_trajectories=True,
    )
    result = simulate_psa(config, sim_config)

    assert result.occupancy.shape == (3, 2, 4, 3)
    np.testing.assert_allclose(result.occupancy.sum(axis=-1), 1.0)
    # Everyone starts healthy
    np.testing.assert_allclose(result.occupancy[:, :, 0, 0], 1.0)

    table = result.state_probabilities()
    assert set(table.columns) >= {"strategy_id", "strategy", "state", "state_name", "time", "prob"}
    assert len(table) == 2 * 3 * 4
    sums = table.groupby(["strategy_id", "time"])["prob"].sum()
    np.testing.assert_allclose(sums.values, 1.0)

    traj = result.trajectories
    assert isinstance(traj, pd.DataFrame)
    for _, group in traj.groupby(["sample", "strategy_id", "patient_id"]):
        group = group.sort_values("entry_time")
        assert group["entry_time"].iloc[0] == 0.0
        np.testing.assert_array_equal(group["exit_time"].values[:-1], group["entry_time"].values[1:])
        assert group["exit_time"].iloc[-1] <= 20.0


def test_configuration_errors_raised_before_simulation(config):
    bad = ModelConfig(
        graph=config.graph,
        hazards={1: config.hazards[1], 2: config.hazards[2]},
        utility=config.utility,
        strategies=config.strategies,
        patients=config.patients,
    )
    with pytest.raises(ConfigurationError, match=r"No hazard model for transitions \[3\]"):
        simulate_psa(bad, SimulationConfig(n_samples=1, max_time=10.0))

    with pytest.raises(ConfigurationError, match="Unknown start state"):
        simulate_psa(config, SimulationConfig(n_samples=1, max_time=10.0, start_state=5))


def test_parameter_sample_size_must_match(config):
    from multistate_cea import ParameterSampler

    params = ParameterSampler(config, seed=0).sample(3)
    with pytest.raises(ConfigurationError, match="3 draws"):
        simulate_psa(config, SimulationConfig(n_samples=2, max_time=10.0), parameters=params)


def test_absorbing_start_state_warns(config):
    sim_config = SimulationConfig(n_samples=1, max_time=10.0, seed=0, start_state=2)
    with pytest.warns(UserWarning, match="absorbing"):
        result = simulate_psa(config, sim_config)
    np.testing.assert_array_equal(result.qaly, 0.0)
    np.testing.assert_array_equal(result.cost, 0.0)
