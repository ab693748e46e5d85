"""Semi-Markov microsimulation of patient trajectories over PSA samples."""

from dataclasses import dataclass
from functools import partial
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
import warnings

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm.auto import tqdm

from ..config import ModelConfig, SimulationConfig
from ..exceptions import ConfigurationError
from ..hazards import TransitionModel
from ..sampling import ParameterSample, ParameterSampler
from .aggregation import PSAAggregator, PSAResult
from .values import accumulate_values, occupancy_counts

__all__ = [
    "Trajectory",
    "patient_rng",
    "simulate_patient_trajectory",
    "simulate_sample",
    "simulate_psa",
    "trajectories_to_frame",
]

logger = logging.getLogger(__name__)

RngFactory = Callable[[int, int, int], Any]


@dataclass(frozen=True, eq=False)
class Trajectory:
    """Sequence of contiguous sojourns of one simulated patient.

    Segment ``i`` covers ``[entry_times[i], exit_times[i]]`` in ``states[i]``
    and ended through ``transitions[i]`` (-1 if it was cut by the horizon).
    An absorbing ``final_state`` contributes no segment.
    """
    states: np.ndarray
    entry_times: np.ndarray
    exit_times: np.ndarray
    transitions: np.ndarray
    absorbed: bool
    final_state: int

    def __len__(self) -> int:
        return len(self.states)

    @property
    def sojourn_times(self) -> np.ndarray:
        return self.exit_times - self.entry_times


def patient_rng(seed: int, sample_id: int, strategy_id: int, patient_id: int) -> np.random.Generator:
    """Random stream of one (sample, strategy, patient) unit.

    Streams are derived from the run seed and the unit's identity alone, so
    results do not depend on scheduling order or the number of workers.
    """
    ss = np.random.SeedSequence(seed, spawn_key=(1, sample_id, strategy_id, patient_id))
    return np.random.default_rng(ss)


def simulate_patient_trajectory(
    transition_model: TransitionModel,
    covariates: Mapping[str, float],
    max_time: float,
    rng: Any,
    start_state: Optional[int] = None,
) -> Trajectory:
    """Simulate one patient until absorption or the time horizon.

    Parameters
    ----------
    transition_model : TransitionModel
        Hazards for one parameter sample
    covariates : Mapping[str, float]
        Patient and strategy covariates
    max_time : float
        Administrative time horizon
    rng : Any
        Random stream with a ``random(size)`` method
    start_state : Optional[int], optional
        Initial state. Defaults to the first non-absorbing state.

    Returns
    -------
    Trajectory
        Simulated trajectory
    """
    graph = transition_model.graph
    state = graph.first_transient_state if start_state is None else start_state
    params = transition_model.parameters(covariates)

    states: List[int] = []
    entries: List[float] = []
    exits: List[float] = []
    transitions: List[int] = []
    current_time = 0.0
    absorbed = graph.is_absorbing(state)

    while not absorbed:
        trans_id, next_state, sojourn = transition_model.draw_transition(state, params, rng)
        stop = current_time + sojourn
        if stop >= max_time:
            states.append(state)
            entries.append(current_time)
            exits.append(max_time)
            transitions.append(-1)
            break

        states.append(state)
        entries.append(current_time)
        exits.append(stop)
        transitions.append(trans_id)
        current_time = stop
        state = next_state
        absorbed = graph.is_absorbing(state)

    return Trajectory(
        states=np.asarray(states, dtype=int),
        entry_times=np.asarray(entries, dtype=float),
        exit_times=np.asarray(exits, dtype=float),
        transitions=np.asarray(transitions, dtype=int),
        absorbed=absorbed,
        final_state=state,
    )


def simulate_sample(
    config: ModelConfig,
    sim_config: SimulationConfig,
    sample_id: int,
    coefficients: Mapping[int, np.ndarray],
    utility: np.ndarray,
    costs: Mapping[str, np.ndarray],
    rng_factory: RngFactory,
) -> List[Dict[str, Any]]:
    """Simulate every strategy and patient for one PSA sample.

    Trajectories are simulated once and QALYs, life-years, costs and state
    occupancy are all derived from them in the same pass.

    Parameters
    ----------
    config : ModelConfig
        Model configuration
    sim_config : SimulationConfig
        Simulation settings
    sample_id : int
        PSA sample index
    coefficients : Mapping[int, np.ndarray]
        Hazard coefficients of this sample, per transition
    utility : np.ndarray
        Utility of this sample, shape (n_strategies, n_states)
    costs : Mapping[str, np.ndarray]
        Costs of this sample per category, shape (n_strategies, n_states)
    rng_factory : RngFactory
        Maps (sample_id, strategy_id, patient_id) to a random stream

    Returns
    -------
    List[Dict[str, Any]]
        One result per strategy with per-patient outcome arrays
    """
    transition_model = TransitionModel(config.graph, config.hazards, coefficients)
    n_patients = len(config.patients)
    n_states = config.graph.num_states
    ones = np.ones(n_states)
    methods = {c.name: c.method for c in config.costs}
    times = sim_config.occupancy_times

    cells = []
    for pos, strategy in enumerate(config.strategies):
        qalys = np.empty(n_patients)
        lys = np.empty(n_patients)
        cost_values = {name: np.empty(n_patients) for name in costs}
        trajectories = []

        for i, patient in enumerate(config.patients):
            rng = rng_factory(sample_id, strategy.strategy_id, patient.patient_id)
            traj = simulate_patient_trajectory(
                transition_model,
                config.covariates(strategy, patient),
                sim_config.max_time,
                rng,
                start_state=sim_config.start_state,
            )
            qalys[i] = accumulate_values(traj, utility[pos], sim_config.dr_qalys)
            lys[i] = accumulate_values(traj, ones, sim_config.dr_qalys)
            for name, values in costs.items():
                cost_values[name][i] = accumulate_values(
                    traj, values[pos], sim_config.dr_costs, method=methods[name]
                )
            trajectories.append(traj)

        cell = {
            "sample_id": sample_id,
            "strategy_id": strategy.strategy_id,
            "qalys": qalys,
            "lys": lys,
            "costs": cost_values,
            "occupancy": None,
            "trajectories": None,
        }
        if times is not None:
            cell["occupancy"] = occupancy_counts(
                trajectories, times, n_states, max_time=sim_config.max_time
            ) / n_patients
        if sim_config.keep_trajectories:
            cell["trajectories"] = trajectories
        cells.append(cell)
    return cells


def trajectories_to_frame(
    trajectories: Sequence[Trajectory],
    sample_id: int,
    strategy_id: int,
    patient_ids: Sequence[int],
) -> pd.DataFrame:
    """Flatten the trajectories of one (sample, strategy) cell to a DataFrame.

    Columns: sample, strategy_id, patient_id, state, entry_time, exit_time,
    transition, absorbed, final_state.
    """
    frames = []
    for pid, traj in zip(patient_ids, trajectories):
        frames.append(
            pd.DataFrame(
                {
                    "sample": sample_id,
                    "strategy_id": strategy_id,
                    "patient_id": pid,
                    "state": traj.states,
                    "entry_time": traj.entry_times,
                    "exit_time": traj.exit_times,
                    "transition": traj.transitions,
                    "absorbed": traj.absorbed,
                    "final_state": traj.final_state,
                }
            )
        )
    if not frames:
        return pd.DataFrame(
            columns=["sample", "strategy_id", "patient_id", "state", "entry_time",
                     "exit_time", "transition", "absorbed", "final_state"]
        )
    return pd.concat(frames, ignore_index=True)


def simulate_psa(
    config: ModelConfig,
    sim_config: SimulationConfig,
    parameters: Optional[ParameterSample] = None,
    rng_factory: Optional[RngFactory] = None,
) -> PSAResult:
    """Run the PSA microsimulation and aggregate costs and QALYs.

    Parameters
    ----------
    config : ModelConfig
        Model configuration, validated before any simulation
    sim_config : SimulationConfig
        Simulation settings
    parameters : Optional[ParameterSample], optional
        Pre-drawn parameters. If None they are drawn with ``sim_config.seed``.
    rng_factory : Optional[RngFactory], optional
        Maps (sample_id, strategy_id, patient_id) to a random stream. Defaults
        to ``patient_rng`` seeded from ``sim_config.seed``.

    Returns
    -------
    PSAResult
        Dense (n_samples x n_strategies) cost and QALY matrices and extras
    """
    config.validate()
    graph = config.graph
    start_state = sim_config.start_state
    if start_state is not None:
        if not 0 <= start_state < graph.num_states:
            raise ConfigurationError(f"Unknown start state {start_state}")
        if graph.is_absorbing(start_state):
            warnings.warn(f"Start state {start_state} is absorbing; trajectories will be empty")

    seed = sim_config.seed
    if seed is None:
        seed = int(np.random.SeedSequence().entropy)
    if parameters is None:
        parameters = ParameterSampler(config, seed=seed).sample(sim_config.n_samples)
    elif parameters.n_samples != sim_config.n_samples:
        raise ConfigurationError(
            f"Parameter sample has {parameters.n_samples} draws but "
            f"n_samples={sim_config.n_samples}"
        )
    if rng_factory is None:
        rng_factory = partial(patient_rng, seed)

    n_samples = parameters.n_samples
    logger.info(
        "Simulating %d samples x %d strategies x %d patients (n_jobs=%d)",
        n_samples, len(config.strategies), len(config.patients), sim_config.n_jobs,
    )

    def tasks():
        for s in range(n_samples):
            yield delayed(simulate_sample)(
                config,
                sim_config,
                s,
                parameters.coefficients_for(s),
                parameters.utility[s],
                {name: draws[s] for name, draws in parameters.costs.items()},
                rng_factory,
            )

    if sim_config.n_jobs == 1:
        results = (func(*args, **kwargs) for func, args, kwargs in tasks())
    else:
        results = Parallel(n_jobs=sim_config.n_jobs, return_as="generator")(tasks())

    aggregator = PSAAggregator(
        n_samples=n_samples,
        strategies=config.strategies,
        cost_names=config.cost_names,
        state_names=[graph.state_name(s) for s in range(graph.num_states)],
        occupancy_times=sim_config.occupancy_times,
    )
    patient_ids = [p.patient_id for p in config.patients]
    trajectory_frames = []

    for cells in tqdm(results, total=n_samples, desc="Simulating PSA samples",
                      disable=not sim_config.progress):
        for cell in cells:
            aggregator.add(
                cell["sample_id"],
                cell["strategy_id"],
                qalys=cell["qalys"],
                lys=cell["lys"],
                costs=cell["costs"],
                occupancy=cell["occupancy"],
            )
            if cell["trajectories"] is not None:
                trajectory_frames.append(
                    trajectories_to_frame(
                        cell["trajectories"], cell["sample_id"], cell["strategy_id"], patient_ids
                    )
                )

    trajectories = pd.concat(trajectory_frames, ignore_index=True) if trajectory_frames else None
    result = aggregator.finalize(trajectories=trajectories, seed=seed)
    logger.info("Finished PSA simulation")
    return result
