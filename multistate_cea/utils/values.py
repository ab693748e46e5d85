"""Discounted accumulation of state values and state occupancy along trajectories."""

from typing import Optional, Sequence, TYPE_CHECKING

import numpy as np
from scipy import special

if TYPE_CHECKING:
    from .simulation import Trajectory


def discount_factor_integral(start, stop, rate: float) -> np.ndarray:
    """Integral of ``exp(-rate * t)`` over ``[start, stop]``.

    Written as ``exp(-rate * start) * d * exprel(-rate * d)`` with
    ``d = stop - start``, which equals ``d`` exactly when ``rate == 0``.

    Parameters
    ----------
    start : array-like
        Interval start times
    stop : array-like
        Interval end times
    rate : float
        Continuous discount rate (>= 0)

    Returns
    -------
    np.ndarray
        Discounted interval lengths
    """
    start = np.asarray(start, dtype=float)
    stop = np.asarray(stop, dtype=float)
    d = stop - start
    return np.exp(-rate * start) * d * special.exprel(-rate * d)


def accumulate_values(
    trajectory: "Trajectory",
    values: np.ndarray,
    rate: float,
    method: str = "wlos",
) -> float:
    """Discounted total of a state value over one trajectory.

    Parameters
    ----------
    trajectory : Trajectory
        Simulated trajectory
    values : np.ndarray
        Value per state, shape (n_states,)
    rate : float
        Continuous discount rate
    method : str
        'wlos' integrates the value per unit time over each sojourn;
        'starting' counts the value once at each state entry

    Returns
    -------
    float
        Discounted accumulated value
    """
    states = trajectory.states
    if len(states) == 0:
        return 0.0
    v = np.asarray(values, dtype=float)[states]
    if method == "wlos":
        weights = discount_factor_integral(trajectory.entry_times, trajectory.exit_times, rate)
    elif method == "starting":
        weights = np.exp(-rate * trajectory.entry_times)
    else:
        raise ValueError(f"Unknown accumulation method: {method}")
    return float(np.sum(v * weights))


def occupied_states(trajectory: "Trajectory", times: np.ndarray) -> np.ndarray:
    """State occupied at each query time, or -1 where the trajectory is not observed.

    A patient occupies the state of the segment with ``entry <= t < exit``.
    After absorption the absorbing state is occupied. A trajectory that ended
    at the horizon occupies its last state up to and including the horizon.
    """
    times = np.asarray(times, dtype=float)
    out = np.full(times.shape, -1, dtype=int)
    if len(trajectory.states) == 0:
        if trajectory.absorbed:
            out[times >= 0] = trajectory.final_state
        return out

    idx = np.searchsorted(trajectory.entry_times, times, side="right") - 1
    last_exit = trajectory.exit_times[-1]
    inside = (idx >= 0) & (times < last_exit)
    out[inside] = trajectory.states[idx[inside]]

    after = times >= last_exit
    if trajectory.absorbed:
        out[after] = trajectory.final_state
    else:
        out[after & (times <= last_exit)] = trajectory.states[-1]
    return out


def state_occupancy(
    trajectories: Sequence["Trajectory"],
    times: Sequence[float],
    n_states: int,
    max_time: Optional[float] = None,
) -> np.ndarray:
    """Proportion of trajectories in each state at each query time.

    Parameters
    ----------
    trajectories : Sequence[Trajectory]
        Trajectories of one (sample, strategy) cell
    times : Sequence[float]
        Strictly increasing query times, within the simulation horizon
    n_states : int
        Number of states in the model
    max_time : Optional[float]
        Simulation horizon; query times beyond it raise ValueError

    Returns
    -------
    np.ndarray
        Occupancy probabilities, shape (len(times), n_states)
    """
    times = np.asarray(times, dtype=float)
    if times.ndim != 1 or np.any(np.diff(times) <= 0):
        raise ValueError("Query times must be strictly increasing")
    counts = occupancy_counts(trajectories, times, n_states, max_time=max_time)
    if len(trajectories) == 0:
        return counts
    return counts / len(trajectories)


def occupancy_counts(
    trajectories: Sequence["Trajectory"],
    times: np.ndarray,
    n_states: int,
    max_time: Optional[float] = None,
) -> np.ndarray:
    """Number of trajectories in each state at each query time, shape (len(times), n_states)."""
    times = np.asarray(times, dtype=float)
    if max_time is not None and times.size and times[-1] > max_time:
        raise ValueError(f"Query time {times[-1]} is beyond the horizon {max_time}")
    counts = np.zeros((times.size, n_states))
    cols = np.arange(times.size)
    for traj in trajectories:
        occ = occupied_states(traj, times)
        if np.any(occ < 0):
            raise ValueError(
                f"Query times {times[occ < 0].tolist()} are beyond the simulated horizon"
            )
        counts[cols, occ] += 1
    return counts
