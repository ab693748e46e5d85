"""Tests for model, simulation and analysis configuration."""

import json

import numpy as np
import pandas as pd
import pytest

from multistate_cea import (
    ModelConfig,
    SimulationConfig,
    CEAConfig,
    Strategy,
    Patient,
    StateValueRow,
    StateValueModel,
    ConfigurationError,
    patients_from_frame,
    load_model_config,
)

from conftest import make_config


def get_config_dict():
    return {
        "states": ["Healthy", "Sick", "Death"],
        "transition_matrix": [[None, 1, 2], [None, None, 3], [None, None, None]],
        "hazards": [
            {
                "transition_id": 1,
                "family": "weibull",
                "mean": [0.2, 2.0, -0.5],
                "covariance": [[0.01, 0, 0], [0, 0.02, 0], [0, 0, 0.04]],
                "terms": {"scale": ["treat"]},
            },
            {"transition_id": 2, "family": "exponential", "mean": [-4.0]},
            {"transition_id": 3, "family": "gompertz", "mean": [0.05, -3.0]},
        ],
        "utility": {
            "name": "qalys",
            "rows": [
                {"state_id": 0, "mean": 0.85, "se": 0.05, "distribution": "beta"},
                {"state_id": 1, "mean": 0.6, "se": 0.05, "distribution": "beta"},
            ],
        },
        "costs": [
            {
                "name": "drug",
                "rows": [
                    {"state_id": 0, "mean": 0.0},
                    {"state_id": 1, "mean": 0.0},
                    {"state_id": 0, "mean": 1200.0, "strategy_id": 1},
                ],
            },
            {
                "name": "event",
                "method": "starting",
                "rows": [
                    {"state_id": 0, "mean": 0.0},
                    {"state_id": 1, "mean": 5000.0, "se": 500.0, "distribution": "gamma"},
                ],
            },
        ],
        "strategies": [
            {"strategy_id": 0, "name": "SOC", "covariates": {"treat": 0}},
            {"strategy_id": 1, "name": "New", "covariates": {"treat": 1}},
        ],
        "n_patients": 25,
    }


def test_from_dict():
    config = ModelConfig.from_dict(get_config_dict())
    config.validate()
    assert config.graph.state_name(2) == "Death"
    assert config.hazards[1].n_coefficients == 3
    assert config.hazards[2].covariance is None
    assert config.cost_names == ["drug", "event"]
    assert config.costs[1].method == "starting"
    assert config.strategy_ids == [0, 1]
    assert len(config.patients) == 25
    assert config.strategy_position(1) == 1


def test_load_model_config(tmp_path):
    path = tmp_path / "model.json"
    path.write_text(json.dumps(get_config_dict()))
    config = load_model_config(str(path))
    assert config.graph.transition_ids == [1, 2, 3]

    with pytest.raises(FileNotFoundError):
        load_model_config(str(tmp_path / "missing.json"))


def test_missing_key():
    d = get_config_dict()
    del d["utility"]
    with pytest.raises(ConfigurationError, match="utility"):
        ModelConfig.from_dict(d)


def test_explicit_patients():
    d = get_config_dict()
    del d["n_patients"]
    d["patients"] = [{"patient_id": 4, "covariates": {"age": 60}}, {"patient_id": 9}]
    config = ModelConfig.from_dict(d)
    assert [p.patient_id for p in config.patients] == [4, 9]
    assert config.patients[0].covariates == {"age": 60}


def test_strategy_covariates_override_patient():
    config = make_config()
    merged = config.covariates(Strategy(1, covariates={"treat": 1.0}), Patient(0, {"treat": 0.0, "age": 50.0}))
    assert merged == {"treat": 1.0, "age": 50.0}


def _replace(config, **kwargs):
    fields = dict(
        graph=config.graph,
        hazards=config.hazards,
        utility=config.utility,
        costs=config.costs,
        strategies=config.strategies,
        patients=config.patients,
    )
    fields.update(kwargs)
    return ModelConfig(**fields)


def test_validation_errors(config):
    with pytest.raises(ConfigurationError, match="unknown transition 7"):
        hazards = dict(config.hazards)
        hazards[7] = hazards[1]
        _replace(config, hazards=hazards).validate()

    with pytest.raises(ConfigurationError, match="At least one strategy"):
        _replace(config, strategies=()).validate()

    with pytest.raises(ConfigurationError, match="Duplicate strategy ids"):
        _replace(config, strategies=(Strategy(0), Strategy(0))).validate()

    with pytest.raises(ConfigurationError, match="At least one patient"):
        _replace(config, patients=()).validate()

    with pytest.raises(ConfigurationError, match="Duplicate patient ids"):
        _replace(config, patients=(Patient(1), Patient(1))).validate()

    with pytest.raises(ConfigurationError, match="Duplicate cost category"):
        _replace(config, costs=(config.costs[0], config.costs[0])).validate()

    no_sick = StateValueModel("qalys", (StateValueRow(0, 1.0),))
    with pytest.raises(ConfigurationError, match="no row for state 1"):
        _replace(config, utility=no_sick).validate()

    unknown_state = StateValueModel("qalys", (StateValueRow(0, 1.0), StateValueRow(1, 0.5), StateValueRow(5, 0.1)))
    with pytest.raises(ConfigurationError, match="unknown state 5"):
        _replace(config, utility=unknown_state).validate()

    unknown_strategy = StateValueModel(
        "qalys", (StateValueRow(0, 1.0), StateValueRow(1, 0.5), StateValueRow(1, 0.4, strategy_id=8))
    )
    with pytest.raises(ConfigurationError, match="unknown strategy 8"):
        _replace(config, utility=unknown_strategy).validate()


def test_missing_covariate_detected():
    config = make_config(treatment_effect=-0.5)
    stripped = _replace(config, strategies=(Strategy(0, "SOC"), Strategy(1, "New")))
    with pytest.raises(ConfigurationError, match="covariate 'treat'"):
        stripped.validate()


def test_patients_from_frame():
    df = pd.DataFrame({"patient_id": [3, 7], "age": [55, 70], "female": [1, 0]})
    patients = patients_from_frame(df)
    assert [p.patient_id for p in patients] == [3, 7]
    assert patients[1].covariates == {"age": 70.0, "female": 0.0}

    positional = patients_from_frame(df[["age"]])
    assert [p.patient_id for p in positional] == [0, 1]


def test_simulation_config_validation():
    config = SimulationConfig(n_samples=10, max_time=50.0, occupancy_times=[0, 10, 50])
    assert isinstance(config.occupancy_times, np.ndarray)

    with pytest.raises(ConfigurationError, match="n_samples"):
        SimulationConfig(n_samples=0)
    with pytest.raises(ConfigurationError, match="max_time"):
        SimulationConfig(max_time=-1.0)
    with pytest.raises(ConfigurationError, match="max_time"):
        SimulationConfig(max_time=np.inf)
    with pytest.raises(ConfigurationError, match="dr_costs"):
        SimulationConfig(dr_costs=-0.01)
    with pytest.raises(ConfigurationError, match="n_jobs"):
        SimulationConfig(n_jobs=0)
    with pytest.raises(ConfigurationError, match="strictly increasing"):
        SimulationConfig(occupancy_times=[0, 5, 5])
    with pytest.raises(ConfigurationError, match="within"):
        SimulationConfig(max_time=10.0, occupancy_times=[0, 20])


def test_cea_config():
    config = CEAConfig(k_min=0.0, k_max=50000.0, n_k=11)
    np.testing.assert_allclose(config.wtp_grid(), np.arange(0, 50001, 5000))
    assert CEAConfig(k_min=20000.0, n_k=1).wtp_grid().tolist() == [20000.0]

    with pytest.raises(ConfigurationError, match="Willingness-to-pay"):
        CEAConfig(k_min=100.0, k_max=10.0)
    with pytest.raises(ConfigurationError, match="ci_level"):
        CEAConfig(ci_level=1.5)


def test_strategy_specific_rows_must_cover_every_strategy():
    config = make_config()
    drug_for_new_only = StateValueModel(
        "drug", (StateValueRow(0, 0.0), StateValueRow(1, 700.0, strategy_id=1))
    )
    with pytest.raises(ConfigurationError, match="state 1.*under strategy 0"):
        _replace(config, costs=(config.costs[0], drug_for_new_only)).validate()

    drug_per_strategy = StateValueModel(
        "drug",
        (
            StateValueRow(0, 0.0),
            StateValueRow(1, 0.0, strategy_id=0),
            StateValueRow(1, 700.0, strategy_id=1),
        ),
    )
    _replace(config, costs=(config.costs[0], drug_per_strategy)).validate()
