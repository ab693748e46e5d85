"""Parameter sampling for probabilistic sensitivity analysis (PSA)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple, Any, TYPE_CHECKING

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError
from .hazards import HazardSpec

if TYPE_CHECKING:
    from .config import ModelConfig

__all__ = [
    "SUPPORTED_DISTRIBUTIONS",
    "StateValueRow",
    "StateValueModel",
    "ParameterSample",
    "ParameterSampler",
    "method_of_moments",
    "sample_coefficients",
    "sample_state_values",
]

SUPPORTED_DISTRIBUTIONS = ("fixed", "gamma", "beta", "normal", "lognormal")


@dataclass(frozen=True)
class StateValueRow:
    """Mean and standard error of a state value, with its sampling distribution.

    Parameters
    ----------
    state_id : int
        State the value applies to
    mean : float
        Mean value per unit time (or per entry for ``method="starting"``)
    se : float
        Standard error of the mean
    distribution : str
        One of ``SUPPORTED_DISTRIBUTIONS``
    strategy_id : Optional[int]
        Strategy the row applies to. ``None`` applies to every strategy
        without a strategy-specific row for the same state.
    """
    state_id: int
    mean: float
    se: float = 0.0
    distribution: str = "fixed"
    strategy_id: Optional[int] = None


@dataclass(frozen=True)
class StateValueModel:
    """A table of state values: utilities or one cost category.

    ``method="wlos"`` values accrue per unit time spent in the state and
    ``method="starting"`` values are incurred once on entry to the state.
    """
    name: str
    rows: Tuple[StateValueRow, ...]
    method: str = "wlos"

    def __post_init__(self) -> None:
        object.__setattr__(self, "rows", tuple(self.rows))
        if self.method not in ("wlos", "starting"):
            raise ConfigurationError(
                f"Value model {self.name!r}: method must be 'wlos' or 'starting', "
                f"got {self.method!r}"
            )
        seen = set()
        for row in self.rows:
            key = (row.strategy_id, row.state_id)
            if key in seen:
                raise ConfigurationError(
                    f"Value model {self.name!r}: duplicate row for state {row.state_id}"
                    + (f", strategy {row.strategy_id}" if row.strategy_id is not None else "")
                )
            seen.add(key)
            method_of_moments(row.distribution, row.mean, row.se, state_id=row.state_id)

    @classmethod
    def from_records(
        cls, name: str, records: Sequence[Dict[str, Any]], method: str = "wlos"
    ) -> "StateValueModel":
        """Build a value model from dictionaries (e.g. ``DataFrame.to_dict('records')``)."""
        rows = []
        for rec in records:
            strategy_id = rec.get("strategy_id")
            rows.append(
                StateValueRow(
                    state_id=int(rec["state_id"]),
                    mean=float(rec["mean"]),
                    se=float(rec.get("se", 0.0)),
                    distribution=str(rec.get("distribution", "fixed")),
                    strategy_id=None if strategy_id is None else int(strategy_id),
                )
            )
        return cls(name=name, rows=tuple(rows), method=method)


def method_of_moments(
    distribution: str, mean: float, se: float, state_id: Optional[int] = None
) -> Dict[str, float]:
    """Derive distribution parameters from a mean and standard error.

    Parameters
    ----------
    distribution : str
        Distribution family
    mean : float
        Mean of the quantity
    se : float
        Standard error of the quantity
    state_id : Optional[int]
        State the moments belong to, used in error messages

    Returns
    -------
    Dict[str, float]
        Family-specific parameters: ``value`` (fixed), ``shape``/``rate``
        (gamma), ``alpha``/``beta`` (beta), ``mean``/``sd`` (normal),
        ``meanlog``/``sdlog`` (lognormal)
    """
    where = f" for state {state_id}" if state_id is not None else ""
    if distribution not in SUPPORTED_DISTRIBUTIONS:
        raise ConfigurationError(
            f"Unsupported distribution {distribution!r}{where}. "
            f"Supported: {list(SUPPORTED_DISTRIBUTIONS)}"
        )
    if not np.isfinite(mean) or not np.isfinite(se) or se < 0:
        raise ConfigurationError(
            f"Invalid moments{where}: mean={mean}, se={se}"
        )

    if distribution == "fixed":
        return {"value": mean}

    if distribution == "normal":
        return {"mean": mean, "sd": se}

    if se == 0:
        raise ConfigurationError(
            f"{distribution} distribution{where} needs a positive standard error; "
            f"use 'fixed' for a constant value"
        )

    if distribution == "gamma":
        if mean <= 0:
            raise ConfigurationError(f"Gamma distribution{where} needs a positive mean, got {mean}")
        return {"shape": mean ** 2 / se ** 2, "rate": mean / se ** 2}

    if distribution == "beta":
        var = se ** 2
        if not 0 < mean < 1:
            raise ConfigurationError(f"Beta distribution{where} needs a mean in (0, 1), got {mean}")
        if var >= mean * (1 - mean):
            raise ConfigurationError(
                f"Beta distribution{where}: variance {var:.4g} must be below "
                f"mean * (1 - mean) = {mean * (1 - mean):.4g}"
            )
        common = mean * (1 - mean) / var - 1
        return {"alpha": mean * common, "beta": (1 - mean) * common}

    # lognormal
    if mean <= 0:
        raise ConfigurationError(f"Lognormal distribution{where} needs a positive mean, got {mean}")
    sdlog2 = np.log1p(se ** 2 / mean ** 2)
    return {"meanlog": np.log(mean) - sdlog2 / 2, "sdlog": np.sqrt(sdlog2)}


def _draw(row: StateValueRow, n_samples: int, rng: np.random.Generator) -> np.ndarray:
    params = method_of_moments(row.distribution, row.mean, row.se, state_id=row.state_id)
    if row.distribution == "fixed":
        return np.full(n_samples, params["value"], dtype=float)
    if row.distribution == "gamma":
        return rng.gamma(params["shape"], 1.0 / params["rate"], size=n_samples)
    if row.distribution == "beta":
        return rng.beta(params["alpha"], params["beta"], size=n_samples)
    if row.distribution == "normal":
        return rng.normal(params["mean"], params["sd"], size=n_samples)
    return rng.lognormal(params["meanlog"], params["sdlog"], size=n_samples)


def sample_coefficients(
    spec: HazardSpec, n_samples: int, rng: np.random.Generator
) -> np.ndarray:
    """Draw hazard coefficients from their multivariate normal distribution.

    Parameters
    ----------
    spec : HazardSpec
        Fitted hazard model with mean and covariance
    n_samples : int
        Number of draws
    rng : np.random.Generator
        Random number generator

    Returns
    -------
    np.ndarray
        Coefficient draws, shape (n_samples, n_coefficients)
    """
    k = spec.n_coefficients
    if spec.covariance is None:
        return np.tile(spec.mean, (n_samples, 1))

    cov = spec.covariance
    if cov.shape != (k, k):
        raise ConfigurationError(
            f"Transition {spec.transition_id}: covariance must be {k}x{k}, got shape {cov.shape}"
        )
    if not np.all(np.isfinite(cov)) or not np.allclose(cov, cov.T):
        raise ConfigurationError(
            f"Transition {spec.transition_id}: covariance must be finite and symmetric"
        )
    try:
        L = np.linalg.cholesky(cov)
    except np.linalg.LinAlgError as e:
        raise ConfigurationError(
            f"Transition {spec.transition_id}: covariance matrix is not positive definite"
        ) from e

    z = rng.standard_normal((n_samples, k))
    return spec.mean + z @ L.T


def sample_state_values(
    model: StateValueModel,
    n_samples: int,
    num_states: int,
    strategy_ids: Sequence[int],
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw state values for every strategy and state.

    A row shared by all strategies is drawn once, so every strategy sees the
    same value in a given sample. States without a row are valued at zero.

    Returns
    -------
    np.ndarray
        Value draws, shape (n_samples, n_strategies, num_states)
    """
    values = np.zeros((n_samples, len(strategy_ids), num_states))
    position = {s: i for i, s in enumerate(strategy_ids)}

    for row in model.rows:
        if not 0 <= row.state_id < num_states:
            raise ConfigurationError(
                f"Value model {model.name!r} references unknown state {row.state_id}"
            )
        if row.strategy_id is not None and row.strategy_id not in position:
            raise ConfigurationError(
                f"Value model {model.name!r} references unknown strategy {row.strategy_id}"
            )

    # Generic rows first so strategy-specific rows override them
    ordered = sorted(model.rows, key=lambda r: r.strategy_id is not None)
    for row in ordered:
        draws = _draw(row, n_samples, rng)
        if row.strategy_id is None:
            values[:, :, row.state_id] = draws[:, None]
        else:
            values[:, position[row.strategy_id], row.state_id] = draws
    return values


@dataclass(frozen=True, eq=False)
class ParameterSample:
    """All PSA draws for one run. Read-only once created.

    Parameters
    ----------
    n_samples : int
        Number of joint parameter draws
    coefficients : Dict[int, np.ndarray]
        Hazard coefficients per transition id, shape (n_samples, n_coefficients)
    utility : np.ndarray
        Utility draws, shape (n_samples, n_strategies, n_states)
    costs : Dict[str, np.ndarray]
        Cost draws per category, shape (n_samples, n_strategies, n_states)
    """
    n_samples: int
    coefficients: Dict[int, np.ndarray]
    utility: np.ndarray
    costs: Dict[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Frozen copies, so caller-owned arrays stay writable
        coefficients = {tid: np.array(a, dtype=float) for tid, a in self.coefficients.items()}
        utility = np.array(self.utility, dtype=float)
        costs = {name: np.array(a, dtype=float) for name, a in self.costs.items()}
        for arr in [utility, *coefficients.values(), *costs.values()]:
            arr.setflags(write=False)
        object.__setattr__(self, "coefficients", coefficients)
        object.__setattr__(self, "utility", utility)
        object.__setattr__(self, "costs", costs)

    def coefficients_for(self, sample_id: int) -> Dict[int, np.ndarray]:
        """Coefficient vector of every transition for one sample."""
        if not 0 <= sample_id < self.n_samples:
            raise IndexError(f"sample_id {sample_id} out of range [0, {self.n_samples})")
        return {tid: draws[sample_id] for tid, draws in self.coefficients.items()}

    def to_frame(self) -> pd.DataFrame:
        """Wide DataFrame of hazard coefficients, one row per sample (for EVPPI)."""
        columns = {}
        for tid in sorted(self.coefficients):
            draws = self.coefficients[tid]
            for j in range(draws.shape[1]):
                columns[f"t{tid}_b{j}"] = draws[:, j]
        return pd.DataFrame(columns, index=pd.RangeIndex(self.n_samples, name="sample"))


class ParameterSampler:
    """Draw the joint PSA parameter set for a model configuration.

    Parameters
    ----------
    config : ModelConfig
        Model configuration
    seed : Optional[int]
        Random seed for reproducibility
    """

    def __init__(self, config: "ModelConfig", seed: Optional[int] = None) -> None:
        self.config = config
        self.seed = seed

    def sample(self, n_samples: int) -> ParameterSample:
        if n_samples < 1:
            raise ConfigurationError(f"n_samples must be positive, got {n_samples}")
        rng = np.random.default_rng(np.random.SeedSequence(self.seed, spawn_key=(0,)))
        cfg = self.config
        strategy_ids = [s.strategy_id for s in cfg.strategies]
        num_states = cfg.graph.num_states

        coefficients = {
            tid: sample_coefficients(cfg.hazards[tid], n_samples, rng)
            for tid in sorted(cfg.hazards)
        }
        utility = sample_state_values(cfg.utility, n_samples, num_states, strategy_ids, rng)
        costs = {
            model.name: sample_state_values(model, n_samples, num_states, strategy_ids, rng)
            for model in cfg.costs
        }
        return ParameterSample(
            n_samples=n_samples, coefficients=coefficients, utility=utility, costs=costs
        )
