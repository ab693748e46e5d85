"""Cost-effectiveness analysis of PSA cost and QALY draws.

Every quantity is computed from the same (n_samples x n_strategies) cost and
effect matrices, so no extra simulation is needed for the value of
information.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Union, TYPE_CHECKING
import warnings

import numpy as np
import pandas as pd

from ..exceptions import ConfigurationError

if TYPE_CHECKING:
    from ..config import CEAConfig
    from .aggregation import PSAResult

__all__ = [
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

ICER_UNDEFINED = "undefined"


def _check_inputs(cost: np.ndarray, qaly: np.ndarray, strategies: Optional[Sequence[str]]):
    cost = np.asarray(cost, dtype=float)
    qaly = np.asarray(qaly, dtype=float)
    if cost.ndim != 2 or cost.shape != qaly.shape:
        raise ValueError(
            f"cost and qaly must be matrices of identical shape (n_samples, n_strategies), "
            f"got {cost.shape} and {qaly.shape}"
        )
    if strategies is None:
        strategies = [str(j) for j in range(cost.shape[1])]
    elif len(strategies) != cost.shape[1]:
        raise ValueError(f"Expected {cost.shape[1]} strategy labels, got {len(strategies)}")
    return cost, qaly, list(strategies)


def net_monetary_benefit(
    cost: np.ndarray, qaly: np.ndarray, k: Union[float, Sequence[float]]
) -> np.ndarray:
    """Net monetary benefit ``k * qaly - cost``.

    Returns
    -------
    np.ndarray
        Shape (n_k, n_samples, n_strategies)
    """
    k = np.atleast_1d(np.asarray(k, dtype=float))
    return k[:, None, None] * np.asarray(qaly)[None] - np.asarray(cost)[None]


def _optimal(nmb: np.ndarray) -> np.ndarray:
    # argmax keeps the first maximum, so ties go to the lowest strategy index
    return np.argmax(nmb, axis=-1)


def incremental_summary(
    cost: np.ndarray,
    qaly: np.ndarray,
    reference: int = 0,
    strategies: Optional[Sequence[str]] = None,
    k: Optional[float] = None,
    tol: float = 1e-9,
    ci_level: float = 0.95,
) -> pd.DataFrame:
    """Incremental costs, effects and ICERs of each comparator versus the reference.

    Parameters
    ----------
    cost : np.ndarray
        Cost draws, shape (n_samples, n_strategies)
    qaly : np.ndarray
        Effect draws, shape (n_samples, n_strategies)
    reference : int, optional
        Column of the reference strategy
    strategies : Optional[Sequence[str]], optional
        Strategy labels in column order
    k : Optional[float], optional
        Willingness to pay at which to report the incremental net benefit
    tol : float, optional
        Mean incremental effects with absolute value at or below ``tol``
        leave the ICER undefined
    ci_level : float, optional
        Credible interval level

    Returns
    -------
    pd.DataFrame
        One row per comparator with columns strategy, ic, ic_lower, ic_upper,
        ie, ie_lower, ie_upper, icer, icer_defined, icer_label and, if ``k``
        is given, inmb, inmb_lower, inmb_upper
    """
    cost, qaly, strategies = _check_inputs(cost, qaly, strategies)
    if not 0 <= reference < cost.shape[1]:
        raise ConfigurationError(f"Reference column {reference} out of range")
    alpha = (1 - ci_level) / 2

    rows = []
    for j, label in enumerate(strategies):
        if j == reference:
            continue
        dc = cost[:, j] - cost[:, reference]
        de = qaly[:, j] - qaly[:, reference]
        ic, ie = dc.mean(), de.mean()

        if abs(ie) <= tol:
            icer, defined, icer_label = np.nan, False, ICER_UNDEFINED
            warnings.warn(
                f"ICER of {label} vs {strategies[reference]} is undefined "
                f"(incremental effect {ie:.3g})"
            )
        else:
            icer, defined = ic / ie, True
            if ie > 0 and ic <= 0:
                icer_label = "dominant"
            elif ie < 0 and ic >= 0:
                icer_label = "dominated"
            else:
                icer_label = f"{icer:,.2f}"

        row = {
            "strategy": label,
            "reference": strategies[reference],
            "ic": ic,
            "ic_lower": np.quantile(dc, alpha),
            "ic_upper": np.quantile(dc, 1 - alpha),
            "ie": ie,
            "ie_lower": np.quantile(de, alpha),
            "ie_upper": np.quantile(de, 1 - alpha),
            "icer": icer,
            "icer_defined": defined,
            "icer_label": icer_label,
        }
        if k is not None:
            inmb = k * de - dc
            row.update({
                "k": k,
                "inmb": inmb.mean(),
                "inmb_lower": np.quantile(inmb, alpha),
                "inmb_upper": np.quantile(inmb, 1 - alpha),
            })
        rows.append(row)
    return pd.DataFrame(rows)


def ceac(
    cost: np.ndarray,
    qaly: np.ndarray,
    k: Sequence[float],
    strategies: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Cost-effectiveness acceptability curve.

    The probability, across samples, that each strategy has the highest net
    benefit. Ties go to the lowest strategy index, so the probabilities sum
    to one at every threshold.

    Returns
    -------
    pd.DataFrame
        Columns: k, strategy, prob
    """
    cost, qaly, strategies = _check_inputs(cost, qaly, strategies)
    k = np.atleast_1d(np.asarray(k, dtype=float))
    best = _optimal(net_monetary_benefit(cost, qaly, k))
    m = cost.shape[1]
    prob = np.stack([(best == j).mean(axis=1) for j in range(m)], axis=1)
    return pd.DataFrame({
        "k": np.repeat(k, m),
        "strategy": np.tile(strategies, len(k)),
        "prob": prob.ravel(),
    })


def pairwise_ceac(
    cost: np.ndarray,
    qaly: np.ndarray,
    k: Sequence[float],
    reference: int = 0,
    strategies: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Probability that each comparator is cost-effective relative to the reference.

    Returns
    -------
    pd.DataFrame
        Columns: k, strategy, prob
    """
    cost, qaly, strategies = _check_inputs(cost, qaly, strategies)
    k = np.atleast_1d(np.asarray(k, dtype=float))
    nmb = net_monetary_benefit(cost, qaly, k)
    frames = []
    for j, label in enumerate(strategies):
        if j == reference:
            continue
        prob = (nmb[:, :, j] > nmb[:, :, reference]).mean(axis=1)
        frames.append(pd.DataFrame({"k": k, "strategy": label, "prob": prob}))
    return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=["k", "strategy", "prob"])


def ceaf(
    cost: np.ndarray,
    qaly: np.ndarray,
    k: Sequence[float],
    strategies: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Cost-effectiveness acceptability frontier.

    At each threshold, the strategy with the highest expected net benefit and
    its probability of being the most cost-effective.

    Returns
    -------
    pd.DataFrame
        Columns: k, strategy, prob
    """
    cost, qaly, strategies = _check_inputs(cost, qaly, strategies)
    k = np.atleast_1d(np.asarray(k, dtype=float))
    nmb = net_monetary_benefit(cost, qaly, k)
    best_expected = _optimal(nmb.mean(axis=1))
    best = _optimal(nmb)
    prob = (best == best_expected[:, None]).mean(axis=1)
    return pd.DataFrame({
        "k": k,
        "strategy": [strategies[j] for j in best_expected],
        "prob": prob,
    })


def evpi(
    cost: np.ndarray,
    qaly: np.ndarray,
    k: Sequence[float],
    strategies: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Expected value of perfect information per patient.

    ``E[max_j NMB_j] - max_j E[NMB_j]``, both expectations taken over the
    same PSA samples.

    Returns
    -------
    pd.DataFrame
        Columns: k, best_strategy, enmb_current, enmb_perfect, evpi
    """
    cost, qaly, strategies = _check_inputs(cost, qaly, strategies)
    k = np.atleast_1d(np.asarray(k, dtype=float))
    nmb = net_monetary_benefit(cost, qaly, k)
    expected = nmb.mean(axis=1)
    current = expected.max(axis=1)
    perfect = nmb.max(axis=2).mean(axis=1)
    return pd.DataFrame({
        "k": k,
        "best_strategy": [strategies[j] for j in _optimal(expected)],
        "enmb_current": current,
        "enmb_perfect": perfect,
        # E[max] >= max E holds exactly; clip round-off
        "evpi": np.maximum(perfect - current, 0.0),
    })


def _polynomial_basis(x: np.ndarray, degree: int) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    if x.ndim == 1:
        x = x[:, None]
    sd = x.std(axis=0)
    z = (x - x.mean(axis=0)) / np.where(sd > 0, sd, 1.0)
    columns = [np.ones(len(z))]
    for d in range(1, degree + 1):
        columns.extend(z.T ** d)
    if degree >= 2:
        p = z.shape[1]
        for a in range(p):
            for b in range(a + 1, p):
                columns.append(z[:, a] * z[:, b])
    return np.column_stack(columns)


def evppi(
    cost: np.ndarray,
    qaly: np.ndarray,
    k: Sequence[float],
    parameters: Union[np.ndarray, pd.DataFrame],
    degree: int = 2,
) -> pd.DataFrame:
    """Expected value of partial perfect information for a parameter subset.

    Net benefit is regressed on a polynomial of the chosen parameter draws
    (one row per PSA sample) and the fitted values stand in for the
    conditional expectation of net benefit given those parameters.

    Parameters
    ----------
    cost, qaly : np.ndarray
        Cost and effect draws, shape (n_samples, n_strategies)
    k : Sequence[float]
        Willingness-to-pay thresholds
    parameters : Union[np.ndarray, pd.DataFrame]
        Draws of the parameters of interest, shape (n_samples, n_params)
    degree : int, optional
        Polynomial degree of the regression metamodel

    Returns
    -------
    pd.DataFrame
        Columns: k, evppi
    """
    cost, qaly, _ = _check_inputs(cost, qaly, None)
    x = parameters.to_numpy() if isinstance(parameters, pd.DataFrame) else np.asarray(parameters)
    if x.shape[0] != cost.shape[0]:
        raise ValueError(f"Expected {cost.shape[0]} parameter draws, got {x.shape[0]}")
    if degree < 1:
        raise ValueError(f"degree must be at least 1, got {degree}")

    basis = _polynomial_basis(x, degree)
    k = np.atleast_1d(np.asarray(k, dtype=float))
    nmb = net_monetary_benefit(cost, qaly, k)
    values = np.empty(len(k))
    for i in range(len(k)):
        coef, *_ = np.linalg.lstsq(basis, nmb[i], rcond=None)
        fitted = basis @ coef
        values[i] = max(fitted.max(axis=1).mean() - fitted.mean(axis=0).max(), 0.0)
    return pd.DataFrame({"k": k, "evppi": values})


@dataclass(frozen=True, eq=False)
class CEAResult:
    """Tables of a cost-effectiveness analysis."""
    summary: pd.DataFrame
    incremental: pd.DataFrame
    nmb: pd.DataFrame
    ceac: pd.DataFrame
    pairwise_ceac: pd.DataFrame
    ceaf: pd.DataFrame
    evpi: pd.DataFrame


def cost_effectiveness_analysis(result: "PSAResult", config: "CEAConfig") -> CEAResult:
    """Run the full decision analysis on a PSA result.

    Parameters
    ----------
    result : PSAResult
        Simulated cost and QALY draws
    config : CEAConfig
        Reference strategy and willingness-to-pay grid

    Returns
    -------
    CEAResult
        Summary, incremental, NMB, CEAC, pairwise CEAC, CEAF and EVPI tables
    """
    ids = result.strategy_ids
    if config.reference_strategy not in ids:
        raise ConfigurationError(
            f"Reference strategy {config.reference_strategy} is not one of {ids}"
        )
    ref = ids.index(config.reference_strategy)
    labels = result.strategy_labels
    k = config.wtp_grid()
    cost, qaly = result.cost, result.qaly

    nmb = net_monetary_benefit(cost, qaly, k).mean(axis=1)
    nmb_table = pd.DataFrame({
        "k": np.repeat(k, len(labels)),
        "strategy": np.tile(labels, len(k)),
        "enmb": nmb.ravel(),
    })

    return CEAResult(
        summary=result.summarize(ci_level=config.ci_level),
        incremental=incremental_summary(
            cost, qaly, reference=ref, strategies=labels, k=k[-1],
            tol=config.icer_tolerance, ci_level=config.ci_level,
        ),
        nmb=nmb_table,
        ceac=ceac(cost, qaly, k, strategies=labels),
        pairwise_ceac=pairwise_ceac(cost, qaly, k, reference=ref, strategies=labels),
        ceaf=ceaf(cost, qaly, k, strategies=labels),
        evpi=evpi(cost, qaly, k, strategies=labels),
    )
