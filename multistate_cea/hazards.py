"""Parametric hazard families and the semi-Markov transition model.

All times are measured from entry into the current state (clock reset), so a
sojourn-time distribution depends only on the state being occupied and the
time spent in it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union, Any

import numpy as np
from scipy import special
from scipy.stats import norm

from .exceptions import ConfigurationError
from .graph import TransitionGraph

__all__ = [
    "HazardFamily",
    "Exponential",
    "Weibull",
    "WeibullPH",
    "Gompertz",
    "LogNormal",
    "LogLogistic",
    "Gamma",
    "GeneralizedGamma",
    "create_hazard_family",
    "HazardSpec",
    "TransitionModel",
]

logger = logging.getLogger(__name__)

ArrayLike = Union[float, np.ndarray]


class HazardFamily:
    """Base class for parametric sojourn-time distributions.

    Subclasses declare their natural parameters and the link function used to
    map linear predictors onto them, and implement the hazard, the cumulative
    hazard and the inverse cumulative hazard.
    """

    name: str = ""
    parameters: Tuple[str, ...] = ()
    links: Tuple[str, ...] = ()

    def inverse_link(self, linear_predictors: np.ndarray) -> np.ndarray:
        """Map linear predictors (one per parameter) to natural parameters."""
        theta = np.asarray(linear_predictors, dtype=float).copy()
        for i, link in enumerate(self.links):
            if link == "log":
                theta[i] = np.exp(theta[i])
        return theta

    def hazard(self, t: ArrayLike, theta: np.ndarray) -> np.ndarray:
        """Instantaneous hazard at time ``t`` since state entry."""
        raise NotImplementedError

    def cumulative_hazard(self, t: ArrayLike, theta: np.ndarray) -> np.ndarray:
        """Cumulative hazard ``H(t)`` since state entry."""
        raise NotImplementedError

    def inverse_cumulative_hazard(self, u: ArrayLike, theta: np.ndarray) -> np.ndarray:
        """Sojourn time with survival probability ``u``, i.e. ``H^{-1}(-log u)``.

        Parameters
        ----------
        u : ArrayLike
            Uniform draws in (0, 1)
        theta : np.ndarray
            Natural-scale parameters in the order of ``parameters``

        Returns
        -------
        np.ndarray
            Sojourn times. ``inf`` means the event never occurs.
        """
        raise NotImplementedError

    def survival(self, t: ArrayLike, theta: np.ndarray) -> np.ndarray:
        return np.exp(-self.cumulative_hazard(t, theta))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class Exponential(HazardFamily):
    """Constant hazard ``rate``."""

    name = "exponential"
    parameters = ("rate",)
    links = ("log",)

    def hazard(self, t, theta):
        t = np.asarray(t, dtype=float)
        return np.full_like(t, theta[0])

    def cumulative_hazard(self, t, theta):
        return theta[0] * np.asarray(t, dtype=float)

    def inverse_cumulative_hazard(self, u, theta):
        return -np.log(u) / theta[0]


class Weibull(HazardFamily):
    """Accelerated failure time Weibull with ``S(t) = exp(-(t/scale)^shape)``."""

    name = "weibull"
    parameters = ("shape", "scale")
    links = ("log", "log")

    def hazard(self, t, theta):
        a, b = theta
        with np.errstate(divide="ignore"):
            return (a / b) * (np.asarray(t, dtype=float) / b) ** (a - 1)

    def cumulative_hazard(self, t, theta):
        a, b = theta
        return (np.asarray(t, dtype=float) / b) ** a

    def inverse_cumulative_hazard(self, u, theta):
        a, b = theta
        return b * (-np.log(u)) ** (1.0 / a)


class WeibullPH(HazardFamily):
    """Proportional hazards Weibull with ``H(t) = scale * t^shape``."""

    name = "weibull_ph"
    parameters = ("shape", "scale")
    links = ("log", "log")

    def hazard(self, t, theta):
        a, m = theta
        with np.errstate(divide="ignore"):
            return a * m * np.asarray(t, dtype=float) ** (a - 1)

    def cumulative_hazard(self, t, theta):
        a, m = theta
        return m * np.asarray(t, dtype=float) ** a

    def inverse_cumulative_hazard(self, u, theta):
        a, m = theta
        return (-np.log(u) / m) ** (1.0 / a)


class Gompertz(HazardFamily):
    """Gompertz with ``h(t) = rate * exp(shape * t)``.

    A negative shape gives a cured fraction: the cumulative hazard is bounded
    and some draws never experience the event.
    """

    name = "gompertz"
    parameters = ("shape", "rate")
    links = ("identity", "log")

    def hazard(self, t, theta):
        a, b = theta
        return b * np.exp(a * np.asarray(t, dtype=float))

    def cumulative_hazard(self, t, theta):
        a, b = theta
        t = np.asarray(t, dtype=float)
        # b * (exp(a t) - 1) / a, continuous through a = 0
        return b * t * special.exprel(a * t)

    def inverse_cumulative_hazard(self, u, theta):
        a, b = theta
        y = -np.log(u)
        if a == 0:
            return y / b
        z = a * y / b
        with np.errstate(invalid="ignore", divide="ignore"):
            t = np.log1p(z) / a
        return np.where(z > -1, t, np.inf)


class LogNormal(HazardFamily):
    """Log-normal sojourn times with parameters ``meanlog`` and ``sdlog``."""

    name = "lognormal"
    parameters = ("meanlog", "sdlog")
    links = ("identity", "log")

    def hazard(self, t, theta):
        mu, s = theta
        t = np.asarray(t, dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            w = (np.log(t) - mu) / s
            h = np.exp(norm.logpdf(w) - norm.logsf(w)) / (s * t)
        return np.where(t > 0, h, 0.0)

    def cumulative_hazard(self, t, theta):
        mu, s = theta
        t = np.asarray(t, dtype=float)
        with np.errstate(divide="ignore"):
            w = (np.log(t) - mu) / s
        return -norm.logsf(w)

    def inverse_cumulative_hazard(self, u, theta):
        mu, s = theta
        return np.exp(mu + s * norm.isf(u))


class LogLogistic(HazardFamily):
    """Log-logistic with ``S(t) = 1 / (1 + (t/scale)^shape)``."""

    name = "loglogistic"
    parameters = ("shape", "scale")
    links = ("log", "log")

    def hazard(self, t, theta):
        a, b = theta
        z = (np.asarray(t, dtype=float) / b) ** a
        with np.errstate(divide="ignore", invalid="ignore"):
            return (a / b) * (np.asarray(t, dtype=float) / b) ** (a - 1) / (1 + z)

    def cumulative_hazard(self, t, theta):
        a, b = theta
        return np.log1p((np.asarray(t, dtype=float) / b) ** a)

    def inverse_cumulative_hazard(self, u, theta):
        a, b = theta
        u = np.asarray(u, dtype=float)
        with np.errstate(divide="ignore"):
            return b * ((1 - u) / u) ** (1.0 / a)


class Gamma(HazardFamily):
    """Gamma sojourn times with ``shape`` and ``rate``."""

    name = "gamma"
    parameters = ("shape", "rate")
    links = ("log", "log")

    def hazard(self, t, theta):
        a, b = theta
        t = np.asarray(t, dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            log_pdf = a * np.log(b) + (a - 1) * np.log(t) - b * t - special.gammaln(a)
            log_sf = np.log(special.gammaincc(a, b * t))
            return np.exp(log_pdf - log_sf)

    def cumulative_hazard(self, t, theta):
        a, b = theta
        with np.errstate(divide="ignore"):
            return -np.log(special.gammaincc(a, b * np.asarray(t, dtype=float)))

    def inverse_cumulative_hazard(self, u, theta):
        a, b = theta
        return special.gammainccinv(a, u) / b


class GeneralizedGamma(HazardFamily):
    """Generalized gamma (Prentice 1974) with location ``mu``, scale ``sigma``, shape ``Q``.

    ``Q = 0`` reduces to the log-normal, ``Q = 1`` to the Weibull and
    ``Q = sigma`` to the gamma distribution.
    """

    name = "gengamma"
    parameters = ("mu", "sigma", "Q")
    links = ("identity", "log", "identity")

    # Below this |Q| the log-normal limit is used
    q_tolerance = 1e-8

    def _lognormal(self, theta) -> Tuple[LogNormal, np.ndarray]:
        return LogNormal(), np.array([theta[0], theta[1]])

    def _log_sf(self, t, theta):
        mu, sigma, q = theta
        g = q ** -2
        with np.errstate(divide="ignore", over="ignore"):
            w = (np.log(t) - mu) / sigma
            x = g * np.exp(q * w)
            if q > 0:
                return np.log(special.gammaincc(g, x))
            return np.log(special.gammainc(g, x))

    def hazard(self, t, theta):
        if abs(theta[2]) < self.q_tolerance:
            family, params = self._lognormal(theta)
            return family.hazard(t, params)
        mu, sigma, q = theta
        t = np.asarray(t, dtype=float)
        g = q ** -2
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            w = (np.log(t) - mu) / sigma
            log_pdf = (
                -np.log(sigma * t)
                + np.log(abs(q)) * (1 - 2 * g)
                + g * (q * w - np.exp(q * w))
                - special.gammaln(g)
            )
            h = np.exp(log_pdf - self._log_sf(t, theta))
        return np.where(t > 0, h, 0.0)

    def cumulative_hazard(self, t, theta):
        if abs(theta[2]) < self.q_tolerance:
            family, params = self._lognormal(theta)
            return family.cumulative_hazard(t, params)
        return -self._log_sf(np.asarray(t, dtype=float), theta)

    def inverse_cumulative_hazard(self, u, theta):
        if abs(theta[2]) < self.q_tolerance:
            family, params = self._lognormal(theta)
            return family.inverse_cumulative_hazard(u, params)
        mu, sigma, q = theta
        g = q ** -2
        if q > 0:
            x = special.gammainccinv(g, u)
        else:
            x = special.gammaincinv(g, u)
        with np.errstate(divide="ignore", over="ignore"):
            w = np.log(x / g) / q
            return np.exp(mu + sigma * w)


_FAMILIES = {
    cls.name: cls
    for cls in (
        Exponential,
        Weibull,
        WeibullPH,
        Gompertz,
        LogNormal,
        LogLogistic,
        Gamma,
        GeneralizedGamma,
    )
}


def create_hazard_family(name: str) -> HazardFamily:
    """Factory function to create a hazard family by name.

    Parameters
    ----------
    name : str
        One of 'exponential', 'weibull', 'weibull_ph', 'gompertz',
        'lognormal', 'loglogistic', 'gamma' or 'gengamma'

    Returns
    -------
    HazardFamily
        Hazard family instance
    """
    try:
        return _FAMILIES[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown hazard family: {name!r}. Supported: {sorted(_FAMILIES)}"
        ) from None


@dataclass(frozen=True, eq=False)
class HazardSpec:
    """Fitted hazard model for one transition.

    Parameters
    ----------
    transition_id : int
        Transition index in the transition graph
    family : str
        Hazard family name (see ``create_hazard_family``)
    mean : np.ndarray
        Mean coefficient vector. For each family parameter, in declared
        order, an intercept followed by one coefficient per term.
    covariance : Optional[np.ndarray]
        Asymptotic covariance of the coefficients. ``None`` fixes them.
    terms : Mapping[str, Sequence[str]]
        Covariate names per family parameter. Parameters that are absent
        are intercept-only.
    """
    transition_id: int
    family: str
    mean: np.ndarray
    covariance: Optional[np.ndarray] = None
    terms: Mapping[str, Sequence[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        dist = create_hazard_family(self.family)
        unknown = set(self.terms) - set(dist.parameters)
        if unknown:
            raise ConfigurationError(
                f"Transition {self.transition_id}: unknown parameters {sorted(unknown)} "
                f"for family {self.family!r} (expected {list(dist.parameters)})"
            )
        terms = {p: tuple(self.terms.get(p, ())) for p in dist.parameters}
        mean = np.atleast_1d(np.asarray(self.mean, dtype=float))
        object.__setattr__(self, "terms", terms)
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "_dist", dist)
        if self.covariance is not None:
            object.__setattr__(
                self, "covariance", np.atleast_2d(np.asarray(self.covariance, dtype=float))
            )

        n_coef = self.n_coefficients
        if mean.shape != (n_coef,):
            raise ConfigurationError(
                f"Transition {self.transition_id}: expected {n_coef} coefficients "
                f"({self.coefficient_names}), got {mean.shape[0]}"
            )
        if not np.all(np.isfinite(mean)):
            raise ConfigurationError(
                f"Transition {self.transition_id}: coefficients must be finite"
            )

    @property
    def distribution(self) -> HazardFamily:
        return self._dist  # type: ignore[attr-defined]

    @property
    def n_coefficients(self) -> int:
        return sum(1 + len(self.terms[p]) for p in self.distribution.parameters)

    @property
    def coefficient_names(self) -> List[str]:
        names = []
        for p in self.distribution.parameters:
            names.append(f"{p}:(intercept)")
            names.extend(f"{p}:{term}" for term in self.terms[p])
        return names

    def natural_parameters(
        self, coefficients: np.ndarray, covariates: Mapping[str, float]
    ) -> np.ndarray:
        """Evaluate the family's parameters for one coefficient draw and covariate profile."""
        lp = np.empty(len(self.distribution.parameters))
        pos = 0
        for i, p in enumerate(self.distribution.parameters):
            x = [1.0]
            for term in self.terms[p]:
                if term not in covariates:
                    raise ConfigurationError(
                        f"Transition {self.transition_id}: covariate {term!r} not provided"
                    )
                x.append(float(covariates[term]))
            n = len(x)
            lp[i] = np.dot(coefficients[pos:pos + n], x)
            pos += n
        return self.distribution.inverse_link(lp)


class TransitionModel:
    """Hazards of all transitions for one sampled coefficient set.

    Parameters
    ----------
    graph : TransitionGraph
        Transition graph
    hazards : Mapping[int, HazardSpec]
        Hazard spec per transition id
    coefficients : Mapping[int, np.ndarray]
        One coefficient draw per transition id
    """

    def __init__(
        self,
        graph: TransitionGraph,
        hazards: Mapping[int, HazardSpec],
        coefficients: Mapping[int, np.ndarray],
    ) -> None:
        self.graph = graph
        self.hazards = hazards
        self.coefficients = coefficients

    def parameters(self, covariates: Mapping[str, float]) -> Dict[int, np.ndarray]:
        """Natural parameters of every transition for one covariate profile."""
        return {
            trans_id: spec.natural_parameters(self.coefficients[trans_id], covariates)
            for trans_id, spec in self.hazards.items()
        }

    def hazard(self, transition_id: int, t: ArrayLike, covariates: Mapping[str, float]) -> np.ndarray:
        spec = self.hazards[transition_id]
        theta = spec.natural_parameters(self.coefficients[transition_id], covariates)
        return spec.distribution.hazard(t, theta)

    def cumulative_hazard(
        self, transition_id: int, t: ArrayLike, covariates: Mapping[str, float]
    ) -> np.ndarray:
        spec = self.hazards[transition_id]
        theta = spec.natural_parameters(self.coefficients[transition_id], covariates)
        return spec.distribution.cumulative_hazard(t, theta)

    def inverse_cumulative_hazard(
        self, transition_id: int, u: ArrayLike, covariates: Mapping[str, float]
    ) -> np.ndarray:
        spec = self.hazards[transition_id]
        theta = spec.natural_parameters(self.coefficients[transition_id], covariates)
        return spec.distribution.inverse_cumulative_hazard(u, theta)

    def draw_transition(
        self,
        state: int,
        params: Mapping[int, np.ndarray],
        rng: Any,
    ) -> Optional[Tuple[int, int, float]]:
        """Resolve competing risks out of ``state``.

        One sojourn time is drawn per outgoing transition by inverting its
        cumulative hazard at an independent uniform draw; the smallest time
        wins. Equal times go to the lowest transition index.

        Parameters
        ----------
        state : int
            Current state
        params : Mapping[int, np.ndarray]
            Natural parameters per transition, from ``parameters``
        rng : Any
            Object with a ``random(size)`` method returning uniforms in [0, 1)

        Returns
        -------
        Optional[Tuple[int, int, float]]
            ``(transition_id, to_state, sojourn_time)``, or ``None`` if the
            state is absorbing. ``sojourn_time`` is ``inf`` if no event occurs.
        """
        outgoing = self.graph.transitions_from(state)
        if not outgoing:
            return None

        u = np.asarray(rng.random(len(outgoing)), dtype=float)
        times = np.empty(len(outgoing))
        for k, (trans_id, _) in enumerate(outgoing):
            spec = self.hazards[trans_id]
            with np.errstate(all="ignore"):
                t = float(spec.distribution.inverse_cumulative_hazard(u[k], params[trans_id]))
            if np.isnan(t) or t < 0 or t == -np.inf:
                logger.debug(
                    "Degenerate sojourn draw %r for transition %d (u=%.6g); "
                    "treating as no event before the horizon", t, trans_id, u[k]
                )
                t = np.inf
            times[k] = t

        # argmin returns the first minimum, i.e. the lowest transition index
        k = int(np.argmin(times))
        trans_id, to_state = outgoing[k]
        return trans_id, to_state, float(times[k])
