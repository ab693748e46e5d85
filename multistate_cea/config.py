"""Configuration objects for microsimulation and cost-effectiveness analysis."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import os
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError
from .graph import TransitionGraph
from .hazards import HazardSpec
from .sampling import StateValueModel

__all__ = [
    "Strategy",
    "Patient",
    "ModelConfig",
    "SimulationConfig",
    "CEAConfig",
    "patients_from_frame",
    "load_model_config",
]


@dataclass(frozen=True)
class Strategy:
    """A treatment strategy.

    Parameters
    ----------
    strategy_id : int
        Strategy identifier
    name : str
        Display name
    covariates : Mapping[str, float]
        Strategy-level covariates (e.g. treatment indicators). They take
        precedence over patient covariates with the same name.
    """
    strategy_id: int
    name: str = ""
    covariates: Mapping[str, float] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.name or str(self.strategy_id)


@dataclass(frozen=True)
class Patient:
    """A simulated patient and their covariates."""
    patient_id: int
    covariates: Mapping[str, float] = field(default_factory=dict)


def patients_from_frame(df: pd.DataFrame, id_col: Optional[str] = "patient_id") -> Tuple[Patient, ...]:
    """Build patients from a DataFrame with one row per patient.

    Parameters
    ----------
    df : pd.DataFrame
        Patient covariates
    id_col : Optional[str]
        Column holding patient ids. If None or absent, the row position is used.

    Returns
    -------
    Tuple[Patient, ...]
        Patients in row order
    """
    has_id = id_col is not None and id_col in df.columns
    covariate_cols = [c for c in df.columns if c != id_col]
    patients = []
    for pos, (_, row) in enumerate(df.iterrows()):
        pid = int(row[id_col]) if has_id else pos
        patients.append(Patient(pid, {c: float(row[c]) for c in covariate_cols}))
    return tuple(patients)


@dataclass(frozen=True, eq=False)
class ModelConfig:
    """Everything that defines the decision model, bundled for the simulation.

    Parameters
    ----------
    graph : TransitionGraph
        Transition graph between health states
    hazards : Mapping[int, HazardSpec]
        Fitted hazard model per transition id
    utility : StateValueModel
        Utility per unit time in each state
    costs : Tuple[StateValueModel, ...]
        Cost categories
    strategies : Tuple[Strategy, ...]
        Strategies, in the column order used by all outputs
    patients : Tuple[Patient, ...]
        Simulated population, shared by all strategies
    """
    graph: TransitionGraph
    hazards: Mapping[int, HazardSpec]
    utility: StateValueModel
    costs: Tuple[StateValueModel, ...] = ()
    strategies: Tuple[Strategy, ...] = ()
    patients: Tuple[Patient, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "hazards", dict(self.hazards))
        object.__setattr__(self, "costs", tuple(self.costs))
        object.__setattr__(self, "strategies", tuple(self.strategies))
        object.__setattr__(self, "patients", tuple(self.patients))

    @property
    def strategy_ids(self) -> List[int]:
        return [s.strategy_id for s in self.strategies]

    @property
    def cost_names(self) -> List[str]:
        return [c.name for c in self.costs]

    def strategy_position(self, strategy_id: int) -> int:
        for i, s in enumerate(self.strategies):
            if s.strategy_id == strategy_id:
                return i
        raise ConfigurationError(f"Unknown strategy {strategy_id}")

    def covariates(self, strategy: Strategy, patient: Patient) -> Dict[str, float]:
        """Covariate profile of a patient under a strategy."""
        merged = dict(patient.covariates)
        merged.update(strategy.covariates)
        return merged

    def validate(self) -> None:
        """Check the configuration is complete and consistent.

        Raises
        ------
        ConfigurationError
            If a transition has no hazard model, a hazard references an
            unknown transition, a transient state has no utility or cost,
            ids are duplicated, or a covariate is missing.
        """
        graph = self.graph
        graph_ids = set(graph.transition_ids)
        missing = sorted(graph_ids - set(self.hazards))
        if missing:
            raise ConfigurationError(f"No hazard model for transitions {missing}")
        for tid, spec in self.hazards.items():
            if tid not in graph_ids:
                raise ConfigurationError(f"Hazard model given for unknown transition {tid}")
            if spec.transition_id != tid:
                raise ConfigurationError(
                    f"Hazard model keyed by transition {tid} declares transition {spec.transition_id}"
                )

        if not self.strategies:
            raise ConfigurationError("At least one strategy is required")
        if len(set(self.strategy_ids)) != len(self.strategies):
            raise ConfigurationError(f"Duplicate strategy ids in {self.strategy_ids}")
        if any(sid < 0 for sid in self.strategy_ids):
            raise ConfigurationError(f"Strategy ids must be non-negative, got {self.strategy_ids}")
        if not self.patients:
            raise ConfigurationError("At least one patient is required")
        patient_ids = [p.patient_id for p in self.patients]
        if len(set(patient_ids)) != len(patient_ids):
            raise ConfigurationError("Duplicate patient ids")
        if any(pid < 0 for pid in patient_ids):
            raise ConfigurationError("Patient ids must be non-negative")

        names = [c.name for c in self.costs]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate cost category names in {names}")

        transient = [s for s in range(graph.num_states) if not graph.is_absorbing(s)]
        for model in (self.utility, *self.costs):
            for row in model.rows:
                if not 0 <= row.state_id < graph.num_states:
                    raise ConfigurationError(
                        f"Value model {model.name!r} references unknown state {row.state_id}"
                    )
                if row.strategy_id is not None and row.strategy_id not in self.strategy_ids:
                    raise ConfigurationError(
                        f"Value model {model.name!r} references unknown strategy {row.strategy_id}"
                    )
            generic = {row.state_id for row in model.rows if row.strategy_id is None}
            specific = {
                (row.strategy_id, row.state_id) for row in model.rows if row.strategy_id is not None
            }
            for state in transient:
                if state in generic:
                    continue
                for sid in self.strategy_ids:
                    if (sid, state) not in specific:
                        raise ConfigurationError(
                            f"Value model {model.name!r} has no row for state {state} "
                            f"({graph.state_name(state)}) under strategy {sid}"
                        )

        # Evaluating every linear predictor once surfaces missing covariates now
        for strategy in self.strategies:
            for patient in self.patients:
                x = self.covariates(strategy, patient)
                for spec in self.hazards.values():
                    spec.natural_parameters(spec.mean, x)

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "ModelConfig":
        """Create a model configuration from a JSON-compatible dictionary.

        Expected keys: ``transition_matrix``, ``hazards``, ``utility``,
        ``strategies``, and either ``patients`` or ``n_patients``. Optional:
        ``states`` (names) and ``costs``.
        """
        try:
            graph = TransitionGraph.from_matrix(
                config["transition_matrix"], state_names=config.get("states")
            )
            hazards = {}
            for h in config["hazards"]:
                spec = HazardSpec(
                    transition_id=int(h["transition_id"]),
                    family=h["family"],
                    mean=np.asarray(h["mean"], dtype=float),
                    covariance=None if h.get("covariance") is None else np.asarray(h["covariance"], dtype=float),
                    terms=h.get("terms", {}),
                )
                hazards[spec.transition_id] = spec

            def _value_model(d: Mapping[str, Any]) -> StateValueModel:
                return StateValueModel.from_records(d["name"], d["rows"], method=d.get("method", "wlos"))

            utility = _value_model(config["utility"])
            costs = tuple(_value_model(c) for c in config.get("costs", []))
            strategies = tuple(
                Strategy(int(s["strategy_id"]), s.get("name", ""), dict(s.get("covariates", {})))
                for s in config["strategies"]
            )
            if "patients" in config:
                patients = tuple(
                    Patient(int(p["patient_id"]), dict(p.get("covariates", {})))
                    for p in config["patients"]
                )
            else:
                patients = tuple(Patient(i) for i in range(int(config["n_patients"])))
        except KeyError as e:
            raise ConfigurationError(f"Model configuration is missing key {e}") from e

        return cls(
            graph=graph,
            hazards=hazards,
            utility=utility,
            costs=costs,
            strategies=strategies,
            patients=patients,
        )


def load_model_config(path: str) -> ModelConfig:
    """Load a model configuration from a JSON file.

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Model configuration file not found at {path}")
    with open(path, "r") as f:
        config = json.load(f)
    return ModelConfig.from_dict(config)


@dataclass
class SimulationConfig:
    """Configuration for a PSA microsimulation run.

    Parameters
    ----------
    n_samples : int
        Number of PSA parameter samples
    max_time : float
        Administrative time horizon
    dr_qalys : float
        Continuous discount rate for QALYs
    dr_costs : float
        Continuous discount rate for costs
    start_state : Optional[int]
        Initial state. Defaults to the first non-absorbing state.
    seed : Optional[int]
        Seed for parameter draws and per-patient random streams
    n_jobs : int
        Number of joblib workers over PSA samples (-1 for all cores)
    occupancy_times : Optional[Sequence[float]]
        Strictly increasing times at which to report state occupancy
    keep_trajectories : bool
        Whether to retain every simulated trajectory in the result
    progress : bool
        Whether to show a progress bar over samples
    """
    n_samples: int = 1000
    max_time: float = 100.0
    dr_qalys: float = 0.03
    dr_costs: float = 0.03
    start_state: Optional[int] = None
    seed: Optional[int] = None
    n_jobs: int = 1
    occupancy_times: Optional[Sequence[float]] = None
    keep_trajectories: bool = False
    progress: bool = False

    def __post_init__(self):
        if self.n_samples < 1:
            raise ConfigurationError(f"n_samples must be positive, got {self.n_samples}")
        if not self.max_time > 0 or not np.isfinite(self.max_time):
            raise ConfigurationError(f"max_time must be positive and finite, got {self.max_time}")
        for name in ("dr_qalys", "dr_costs"):
            rate = getattr(self, name)
            if rate < 0 or not np.isfinite(rate):
                raise ConfigurationError(f"{name} must be a finite rate >= 0, got {rate}")
        if self.n_jobs == 0:
            raise ConfigurationError("n_jobs must be non-zero")
        if self.occupancy_times is not None:
            times = np.asarray(self.occupancy_times, dtype=float)
            if times.ndim != 1 or np.any(np.diff(times) <= 0):
                raise ConfigurationError("occupancy_times must be strictly increasing")
            if times.size and (times[0] < 0 or times[-1] > self.max_time):
                raise ConfigurationError(
                    f"occupancy_times must lie within [0, max_time={self.max_time}]"
                )
            self.occupancy_times = times


@dataclass
class CEAConfig:
    """Configuration for the cost-effectiveness analysis.

    Parameters
    ----------
    reference_strategy : int
        Strategy id that comparators are measured against
    k_min : float
        Lowest willingness-to-pay threshold
    k_max : float
        Highest willingness-to-pay threshold
    n_k : int
        Number of thresholds in the grid
    icer_tolerance : float
        Incremental effects with absolute value at or below this make the
        ICER undefined
    ci_level : float
        Credible interval level for summaries
    """
    reference_strategy: int = 0
    k_min: float = 0.0
    k_max: float = 100000.0
    n_k: int = 101
    icer_tolerance: float = 1e-9
    ci_level: float = 0.95

    def __post_init__(self):
        if self.k_min < 0 or self.k_max < self.k_min:
            raise ConfigurationError(
                f"Willingness-to-pay bounds must satisfy 0 <= k_min <= k_max, "
                f"got [{self.k_min}, {self.k_max}]"
            )
        if self.n_k < 1:
            raise ConfigurationError(f"n_k must be positive, got {self.n_k}")
        if not 0 < self.ci_level < 1:
            raise ConfigurationError(f"ci_level must be in (0, 1), got {self.ci_level}")

    def wtp_grid(self) -> np.ndarray:
        """Willingness-to-pay thresholds."""
        if self.n_k == 1:
            return np.array([float(self.k_min)])
        return np.linspace(self.k_min, self.k_max, self.n_k)
