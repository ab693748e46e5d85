"""Shared fixtures for multistate_cea tests."""

import numpy as np
import pytest

from multistate_cea import (
    TransitionGraph,
    HazardSpec,
    StateValueRow,
    StateValueModel,
    Strategy,
    Patient,
    ModelConfig,
)


class ConstantUniform:
    """Random stream that always returns the same uniform draw."""

    def __init__(self, value=0.5):
        self.value = value

    def random(self, size=None):
        if size is None:
            return self.value
        return np.full(size, self.value)


class SequenceUniform:
    """Random stream that replays a fixed sequence of uniform draws."""

    def __init__(self, values):
        self.values = list(values)

    def random(self, size=None):
        n = 1 if size is None else size
        out, self.values = self.values[:n], self.values[n:]
        return out[0] if size is None else np.asarray(out)


def get_test_transition_matrix():
    """Healthy (0) -> Sick (1) -> Death (2), and Healthy -> Death."""
    return [
        [None, 1, 2],
        [None, None, 3],
        [None, None, None],
    ]


def make_config(rate=0.1, n_patients=2, covariance=None, treatment_effect=None):
    """Three-state model with exponential hazards on every transition.

    If ``treatment_effect`` is given, transition 1 (Healthy -> Sick) has a
    log hazard ratio for the ``treat`` covariate and strategy 1 is treated.
    """
    graph = TransitionGraph.from_matrix(
        get_test_transition_matrix(), state_names=["Healthy", "Sick", "Death"]
    )
    hazards = {}
    for tid in graph.transition_ids:
        if tid == 1 and treatment_effect is not None:
            hazards[tid] = HazardSpec(
                transition_id=tid,
                family="exponential",
                mean=np.array([np.log(rate), treatment_effect]),
                covariance=None if covariance is None else covariance * np.eye(2),
                terms={"rate": ["treat"]},
            )
        else:
            hazards[tid] = HazardSpec(
                transition_id=tid,
                family="exponential",
                mean=np.array([np.log(rate)]),
                covariance=None if covariance is None else covariance * np.eye(1),
            )

    utility = StateValueModel(
        "qalys",
        (StateValueRow(0, 1.0), StateValueRow(1, 0.5)),
    )
    costs = (
        StateValueModel("medical", (StateValueRow(0, 100.0), StateValueRow(1, 1000.0))),
        StateValueModel(
            "drug",
            (
                StateValueRow(0, 0.0),
                StateValueRow(1, 0.0),
                StateValueRow(0, 500.0, strategy_id=1),
            ),
        ),
    )
    strategies = (
        Strategy(0, "SOC", {"treat": 0.0}),
        Strategy(1, "New", {"treat": 1.0}),
    )
    patients = tuple(Patient(i) for i in range(n_patients))
    return ModelConfig(
        graph=graph,
        hazards=hazards,
        utility=utility,
        costs=costs,
        strategies=strategies,
        patients=patients,
    )


@pytest.fixture
def graph():
    return TransitionGraph.from_matrix(
        get_test_transition_matrix(), state_names=["Healthy", "Sick", "Death"]
    )


@pytest.fixture
def config():
    return make_config()
