"""Simulation, accumulation, aggregation and decision-analysis utilities."""

from .values import (
    discount_factor_integral,
    accumulate_values,
    occupied_states,
    state_occupancy,
)

from .aggregation import PSAAggregator, PSAResult

from .simulation import (
    Trajectory,
    patient_rng,
    simulate_patient_trajectory,
    simulate_sample,
    simulate_psa,
    trajectories_to_frame,
)

from .cea import (
    CEAResult,
    net_monetary_benefit,
    incremental_summary,
    ceac,
    pairwise_ceac,
    ceaf,
    evpi,
    evppi,
    cost_effectiveness_analysis,
)

__all__ = [
    # State-value accumulation
    "discount_factor_integral",
    "accumulate_values",
    "occupied_states",
    "state_occupancy",

    # Aggregation
    "PSAAggregator",
    "PSAResult",

    # Simulation
    "Trajectory",
    "patient_rng",
    "simulate_patient_trajectory",
    "simulate_sample",
    "simulate_psa",
    "trajectories_to_frame",

    # Cost-effectiveness analysis
    "CEAResult",
    "net_monetary_benefit",
    "incremental_summary",
    "ceac",
    "pairwise_ceac",
    "ceaf",
    "evpi",
    "evppi",
    "cost_effectiveness_analysis",
]
