"""multistate_cea: Probabilistic cost-effectiveness analysis with semi-Markov microsimulation."""

# Exceptions
from .exceptions import ConfigurationError, AggregationError

# Model structure
from .graph import TransitionGraph
from .hazards import (
    HazardFamily,
    HazardSpec,
    TransitionModel,
    create_hazard_family,
)

# Parameter sampling
from .sampling import (
    StateValueRow,
    StateValueModel,
    ParameterSample,
    ParameterSampler,
    method_of_moments,
    sample_coefficients,
    sample_state_values,
)

# Configuration
from .config import (
    Strategy,
    Patient,
    ModelConfig,
    SimulationConfig,
    CEAConfig,
    patients_from_frame,
    load_model_config,
)

# Simulation and analysis utilities
from .utils import (
    Trajectory,
    simulate_patient_trajectory,
    simulate_psa,
    accumulate_values,
    state_occupancy,
    PSAAggregator,
    PSAResult,
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

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "AggregationError",

    # Model structure
    "TransitionGraph",
    "HazardFamily",
    "HazardSpec",
    "TransitionModel",
    "create_hazard_family",

    # Parameter sampling
    "StateValueRow",
    "StateValueModel",
    "ParameterSample",
    "ParameterSampler",
    "method_of_moments",
    "sample_coefficients",
    "sample_state_values",

    # Configuration
    "Strategy",
    "Patient",
    "ModelConfig",
    "SimulationConfig",
    "CEAConfig",
    "patients_from_frame",
    "load_model_config",

    # Simulation
    "Trajectory",
    "simulate_patient_trajectory",
    "simulate_psa",
    "accumulate_values",
    "state_occupancy",
    "PSAAggregator",
    "PSAResult",

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
