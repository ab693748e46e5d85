"""Exception types raised by multistate_cea."""


class ConfigurationError(ValueError):
    """Invalid model or simulation input, detected before simulation starts."""


class AggregationError(RuntimeError):
    """A PSA summary cell was never filled, or was filled more than once."""
