"""Aggregation of per-patient outcomes into PSA summary matrices."""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Any

import numpy as np
import pandas as pd

from ..exceptions import AggregationError

__all__ = ["PSAAggregator", "PSAResult"]


@dataclass(frozen=True, eq=False)
class PSAResult:
    """Posterior draws of costs and effects by strategy.

    All matrices have shape (n_samples, n_strategies), with strategy columns
    in the order of ``strategies``.

    Parameters
    ----------
    strategies : Tuple[Any, ...]
        Strategies in column order
    cost : np.ndarray
        Mean total discounted cost (sum over categories)
    qaly : np.ndarray
        Mean discounted QALYs
    lys : np.ndarray
        Mean discounted life-years
    costs : Dict[str, np.ndarray]
        Mean discounted cost per category
    state_names : Tuple[str, ...]
        State names, used by ``state_probabilities``
    occupancy : Optional[np.ndarray]
        State occupancy probabilities, shape
        (n_samples, n_strategies, n_times, n_states)
    occupancy_times : Optional[np.ndarray]
        Times at which occupancy was evaluated
    trajectories : Optional[pd.DataFrame]
        All simulated trajectories, if retained
    seed : Optional[int]
        Seed that reproduces the run
    """
    strategies: Tuple[Any, ...]
    cost: np.ndarray
    qaly: np.ndarray
    lys: np.ndarray
    costs: Dict[str, np.ndarray] = field(default_factory=dict)
    state_names: Tuple[str, ...] = ()
    occupancy: Optional[np.ndarray] = None
    occupancy_times: Optional[np.ndarray] = None
    trajectories: Optional[pd.DataFrame] = None
    seed: Optional[int] = None

    @property
    def n_samples(self) -> int:
        return self.cost.shape[0]

    @property
    def strategy_ids(self) -> List[int]:
        return [s.strategy_id for s in self.strategies]

    @property
    def strategy_labels(self) -> List[str]:
        return [s.label for s in self.strategies]

    def to_frame(self) -> pd.DataFrame:
        """Long table with one row per (sample, strategy)."""
        n, m = self.cost.shape
        data = {
            "sample": np.repeat(np.arange(n), m),
            "strategy_id": np.tile(self.strategy_ids, n),
            "strategy": np.tile(self.strategy_labels, n),
            "qalys": self.qaly.ravel(),
            "lys": self.lys.ravel(),
            "cost": self.cost.ravel(),
        }
        for name, values in self.costs.items():
            data[f"cost_{name}"] = values.ravel()
        return pd.DataFrame(data)

    def summarize(self, ci_level: float = 0.95) -> pd.DataFrame:
        """Posterior mean and credible interval of each outcome by strategy.

        Parameters
        ----------
        ci_level : float, optional
            Credible interval level (0-1)

        Returns
        -------
        pd.DataFrame
            Columns: strategy_id, strategy, outcome, mean, lower, upper
        """
        alpha = (1 - ci_level) / 2
        outcomes = {"qalys": self.qaly, "lys": self.lys, "cost": self.cost}
        outcomes.update({f"cost_{name}": values for name, values in self.costs.items()})

        rows = []
        for j, strategy in enumerate(self.strategies):
            for outcome, values in outcomes.items():
                col = values[:, j]
                rows.append({
                    "strategy_id": strategy.strategy_id,
                    "strategy": strategy.label,
                    "outcome": outcome,
                    "mean": col.mean(),
                    "lower": np.quantile(col, alpha),
                    "upper": np.quantile(col, 1 - alpha),
                })
        return pd.DataFrame(rows)

    def state_probabilities(self) -> pd.DataFrame:
        """Mean state occupancy probability by (strategy, state, time) across samples.

        Returns
        -------
        pd.DataFrame
            Columns: strategy_id, strategy, state, state_name, time, prob,
            lower, upper (2.5% and 97.5% across samples)
        """
        if self.occupancy is None:
            raise ValueError(
                "State occupancy was not computed; set occupancy_times in SimulationConfig"
            )
        mean = self.occupancy.mean(axis=0)
        lower = np.quantile(self.occupancy, 0.025, axis=0)
        upper = np.quantile(self.occupancy, 0.975, axis=0)
        rows = []
        for j, strategy in enumerate(self.strategies):
            for s, name in enumerate(self.state_names):
                for k, t in enumerate(self.occupancy_times):
                    rows.append({
                        "strategy_id": strategy.strategy_id,
                        "strategy": strategy.label,
                        "state": s,
                        "state_name": name,
                        "time": t,
                        "prob": mean[j, k, s],
                        "lower": lower[j, k, s],
                        "upper": upper[j, k, s],
                    })
        return pd.DataFrame(rows)


class PSAAggregator:
    """Collects per-patient outcomes of every (sample, strategy) cell.

    Each cell stores the arithmetic mean over its patients and must be filled
    exactly once before ``finalize``.

    Parameters
    ----------
    n_samples : int
        Number of PSA samples
    strategies : Sequence[Any]
        Strategies in column order (objects with ``strategy_id``)
    cost_names : Sequence[str]
        Cost categories
    state_names : Sequence[str]
        State names
    occupancy_times : Optional[np.ndarray]
        Times at which occupancy is reported, if any
    """

    def __init__(
        self,
        n_samples: int,
        strategies: Sequence[Any],
        cost_names: Sequence[str] = (),
        state_names: Sequence[str] = (),
        occupancy_times: Optional[np.ndarray] = None,
    ) -> None:
        self.n_samples = n_samples
        self.strategies = tuple(strategies)
        self.cost_names = list(cost_names)
        self.state_names = tuple(state_names)
        self.occupancy_times = None if occupancy_times is None else np.asarray(occupancy_times, dtype=float)
        self._position = {s.strategy_id: j for j, s in enumerate(self.strategies)}

        shape = (n_samples, len(self.strategies))
        self._qaly = np.full(shape, np.nan)
        self._lys = np.full(shape, np.nan)
        self._costs = {name: np.full(shape, np.nan) for name in self.cost_names}
        self._filled = np.zeros(shape, dtype=bool)
        self._occupancy = None
        if self.occupancy_times is not None:
            self._occupancy = np.full(
                shape + (len(self.occupancy_times), len(self.state_names)), np.nan
            )

    def add(
        self,
        sample_id: int,
        strategy_id: int,
        qalys: np.ndarray,
        lys: np.ndarray,
        costs: Mapping[str, np.ndarray],
        occupancy: Optional[np.ndarray] = None,
    ) -> None:
        """Store the patient means of one cell.

        Raises
        ------
        AggregationError
            If the cell is unknown, already filled, or the patient outcomes
            are empty, non-finite or missing a cost category.
        """
        if not 0 <= sample_id < self.n_samples:
            raise AggregationError(f"sample_id {sample_id} is out of range [0, {self.n_samples})")
        if strategy_id not in self._position:
            raise AggregationError(f"Unknown strategy_id {strategy_id} (sample {sample_id})")
        j = self._position[strategy_id]
        cell = f"(sample_id={sample_id}, strategy_id={strategy_id})"
        if self._filled[sample_id, j]:
            raise AggregationError(f"Cell {cell} was filled more than once")

        qalys = np.asarray(qalys, dtype=float)
        if qalys.size == 0:
            raise AggregationError(f"Cell {cell} has no patients")
        missing = set(self.cost_names) - set(costs)
        if missing:
            raise AggregationError(f"Cell {cell} is missing cost categories {sorted(missing)}")

        means = {"qalys": qalys.mean(), "lys": np.mean(lys)}
        means.update({name: np.mean(costs[name]) for name in self.cost_names})
        bad = [k for k, v in means.items() if not np.isfinite(v)]
        if bad:
            raise AggregationError(f"Cell {cell} has non-finite outcomes {bad}")

        self._qaly[sample_id, j] = means["qalys"]
        self._lys[sample_id, j] = means["lys"]
        for name in self.cost_names:
            self._costs[name][sample_id, j] = means[name]
        if self._occupancy is not None:
            if occupancy is None:
                raise AggregationError(f"Cell {cell} is missing state occupancy")
            self._occupancy[sample_id, j] = occupancy
        self._filled[sample_id, j] = True

    @property
    def missing_cells(self) -> List[Tuple[int, int]]:
        """(sample_id, strategy_id) pairs not yet filled."""
        ids = [s.strategy_id for s in self.strategies]
        return [(int(i), ids[j]) for i, j in zip(*np.nonzero(~self._filled))]

    def finalize(
        self, trajectories: Optional[pd.DataFrame] = None, seed: Optional[int] = None
    ) -> PSAResult:
        """Build the immutable result once every cell is filled.

        Raises
        ------
        AggregationError
            If any (sample_id, strategy_id) cell is missing
        """
        missing = self.missing_cells
        if missing:
            shown = ", ".join(f"(sample_id={s}, strategy_id={k})" for s, k in missing[:10])
            more = f" and {len(missing) - 10} more" if len(missing) > 10 else ""
            raise AggregationError(f"Missing PSA cells: {shown}{more}")

        cost = np.zeros_like(self._qaly)
        for values in self._costs.values():
            cost += values

        arrays = [cost, self._qaly, self._lys, *self._costs.values()]
        if self._occupancy is not None:
            arrays.append(self._occupancy)
        for arr in arrays:
            arr.setflags(write=False)

        return PSAResult(
            strategies=self.strategies,
            cost=cost,
            qaly=self._qaly,
            lys=self._lys,
            costs=dict(self._costs),
            state_names=self.state_names,
            occupancy=self._occupancy,
            occupancy_times=self.occupancy_times,
            trajectories=trajectories,
            seed=seed,
        )
