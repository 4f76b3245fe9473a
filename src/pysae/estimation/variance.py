"""
Design-based joint covariance of domain estimators.

This module combines the influence vectors of any number of domain
estimators computed on one stratified cluster design into a joint
covariance matrix, using Taylor series linearization over ultimate
clusters (the method of SAS PROC SURVEYMEANS and R's survey package).

Joint covariance (V):
---------------------

Each estimator k is linearized as theta_k + sum_i w_i z_ik, where z_ik is
the influence value of observation i (zero outside the domain). For each
stratum h with n_h sampled PSUs:

    t_hjk = sum_{i in PSU j} w_i z_ik          (PSU totals)
    V_h   = f_h * n_h / (n_h - 1) * sum_j (t_hj - tbar_h)(t_hj - tbar_h)^T

    V = sum_h V_h

Where:
- w_i = analysis weight (post-stratified when totals are known)
- f_h = 1 - n_h / N_h, finite population correction (1 when N_h unknown)
- tbar_h = mean PSU total in stratum h

Strata are sampled independently, so cross-stratum terms vanish.

Post-stratification:
--------------------

When the design carries post-strata, the portion of each influence
vector explained by post-stratum membership is projected out before the
PSU totals are formed:

    z_ik <- z_ik - sum_{l in g(i)} w_l z_lk / sum_{l in g(i)} w_l

Lonely PSUs:
------------

A stratum with one PSU has no between-PSU variance. It contributes
according to the design's LonelyPSUPolicy:

- CERTAINTY: zero
- ADJUST: f_h * (t_h1 - tbar)(t_h1 - tbar)^T, tbar = mean of all PSU totals
- AVERAGE: mean of V_h over strata with n_h >= 2

Properties:
- The result is exactly symmetric.
- It is positive semi-definite whenever every f_h lies in [0, 1].
- It is NOT guaranteed positive definite. When one estimator is a linear
  combination of others (a national mean and its complete set of
  subnational means), the matrix is rank deficient.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import polars as pl
from scipy import stats

from ..core.config import LonelyPSUPolicy
from ..core.exceptions import ConfigurationError, InconsistentDomainError
from .constants import Z_SCORE_90, Z_SCORE_95, Z_SCORE_99
from .design import StratifiedDesign

if TYPE_CHECKING:
    from .domain import DomainEstimate


@dataclass(frozen=True)
class JointCovariance:
    """Labelled symmetric covariance matrix over domain estimators."""

    labels: tuple[str, ...]
    matrix: np.ndarray

    def __post_init__(self):
        matrix = np.array(self.matrix, dtype=float)
        matrix.setflags(write=False)
        object.__setattr__(self, "matrix", matrix)
        object.__setattr__(self, "labels", tuple(self.labels))

    def index(self, label: str) -> int:
        try:
            return self.labels.index(label)
        except ValueError:
            raise KeyError(label) from None

    def variance(self, label: str) -> float:
        i = self.index(label)
        return float(self.matrix[i, i])

    def submatrix(self, labels: Sequence[str]) -> np.ndarray:
        idx = [self.index(label) for label in labels]
        return self.matrix[np.ix_(idx, idx)].copy()

    @property
    def se(self) -> np.ndarray:
        return np.sqrt(np.diag(self.matrix))

    def correlation(self) -> np.ndarray:
        """Correlation matrix; rows of zero-variance estimators are zero."""
        se = self.se
        with np.errstate(divide="ignore", invalid="ignore"):
            corr = self.matrix / np.outer(se, se)
        corr[~np.isfinite(corr)] = 0.0
        return corr

    def rank(self, tol: float | None = None) -> int:
        return int(np.linalg.matrix_rank(self.matrix, tol=tol, hermitian=True))

    def to_frame(self) -> pl.DataFrame:
        """Long format: one row per (row, col) pair."""
        k = len(self.labels)
        return pl.DataFrame(
            {
                "row": [self.labels[i] for i in range(k) for _ in range(k)],
                "col": [self.labels[j] for _ in range(k) for j in range(k)],
                "covariance": self.matrix.ravel().tolist(),
            }
        )


def joint_covariance(
    design: StratifiedDesign, estimates: Sequence[DomainEstimate]
) -> JointCovariance:
    """Calculate the joint covariance of domain estimates sharing one design.

    Parameters
    ----------
    design : StratifiedDesign
        Design the estimates were computed on
    estimates : sequence of DomainEstimate
        Estimates whose influence vectors are combined

    Returns
    -------
    JointCovariance
        K x K covariance labelled by domain name

    Raises
    ------
    InconsistentDomainError
        If any estimate was computed on a different design or its influence
        vector is not aligned with the design's observations
    """
    if not estimates:
        raise InconsistentDomainError("No domain estimates to combine")
    for est in estimates:
        if est.design_id != design.design_id:
            raise InconsistentDomainError(
                f"Estimate for domain '{est.domain}' was computed on design "
                f"{est.design_id}, not {design.design_id}"
            )
    labels = [est.domain for est in estimates]
    if len(set(labels)) != len(labels):
        raise InconsistentDomainError(f"Duplicate domain labels {labels}")
    influence = np.column_stack([est.influence for est in estimates])
    return covariance_from_influence(design, influence, labels)


def covariance_from_influence(
    design: StratifiedDesign,
    influence: np.ndarray,
    labels: Sequence[str],
) -> JointCovariance:
    """Joint covariance from a raw (n_obs x K) influence matrix."""
    totals_by_stratum = _psu_totals(design, influence, labels)
    contributions = _stratum_contributions(design, totals_by_stratum)

    k = len(labels)
    matrix = np.zeros((k, k))
    for contribution in contributions.values():
        matrix += contribution
    matrix = (matrix + matrix.T) / 2.0

    diag = np.diag(matrix)
    if np.any(diag < 0) or not np.all(np.isfinite(diag)):
        raise ConfigurationError(
            f"Covariance diagonal has negative or non-finite entries {diag.tolist()}; "
            "check FPC inputs"
        )
    return JointCovariance(labels=tuple(labels), matrix=matrix)


def stratum_contributions(
    design: StratifiedDesign,
    influence: np.ndarray,
    labels: Sequence[str],
) -> pl.DataFrame:
    """
    Per-stratum variance contributions for diagnostics.

    Returns
    -------
    pl.DataFrame
        One row per (stratum, estimator) with the number of PSUs, the FPC
        factor, whether the stratum is lonely, and its variance contribution.
    """
    contributions = _stratum_contributions(design, _psu_totals(design, influence, labels))
    rows = []
    for info in design.strata:
        diag = np.diag(contributions[info.stratum])
        for label, value in zip(labels, diag):
            rows.append(
                {
                    "stratum": str(info.stratum),
                    "estimator": label,
                    "n_psus": info.n_psus,
                    "fpc": info.fpc,
                    "lonely": info.lonely,
                    "variance": float(value),
                }
            )
    return pl.DataFrame(rows)


def national_subnational_diagnostic(
    covariance: JointCovariance, national: str
) -> pl.DataFrame:
    """Correlation of the national estimator with every other estimator.

    A negative value is not necessarily an error (unequal PSU weight totals
    can produce one), but on designs where each subnational unit is its own
    stratum with equal PSU totals it must be non-negative.
    """
    corr = covariance.correlation()
    i = covariance.index(national)
    return pl.DataFrame(
        {
            "domain": [label for label in covariance.labels if label != national],
            "correlation": [
                float(corr[i, j]) for j, label in enumerate(covariance.labels) if label != national
            ],
        }
    )


def _psu_totals(
    design: StratifiedDesign, influence: np.ndarray, labels: Sequence[str]
) -> dict[object, np.ndarray]:
    """Weighted influence totals per PSU, grouped by stratum."""
    influence = np.asarray(influence, dtype=float)
    if influence.ndim == 1:
        influence = influence[:, None]
    if influence.shape != (design.n_obs, len(labels)):
        raise InconsistentDomainError(
            f"Influence matrix has shape {influence.shape}; expected "
            f"({design.n_obs}, {len(labels)})"
        )

    z_cols = [f"_z{k}" for k in range(len(labels))]
    keep = ["_stratum", "_psu", "_w"] + (["_post"] if design.has_poststrata else [])
    frame = design.data.select(keep).with_columns(
        [pl.Series(col, influence[:, k]) for k, col in enumerate(z_cols)]
    )

    if design.has_poststrata:
        frame = frame.with_columns(
            [
                (
                    pl.col(col)
                    - safe_divide(
                        (pl.col(col) * pl.col("_w")).sum().over("_post"),
                        pl.col("_w").sum().over("_post"),
                    )
                ).alias(col)
                for col in z_cols
            ]
        )

    totals = frame.group_by(["_stratum", "_psu"], maintain_order=True).agg(
        [(pl.col(col) * pl.col("_w")).sum().alias(col) for col in z_cols]
    )

    matrix = totals.select(z_cols).to_numpy()
    rows: dict[object, list[int]] = {}
    for i, stratum in enumerate(totals["_stratum"].to_list()):
        rows.setdefault(stratum, []).append(i)
    return {stratum: matrix[idx] for stratum, idx in rows.items()}


def _stratum_contributions(
    design: StratifiedDesign, totals_by_stratum: dict[object, np.ndarray]
) -> dict[object, np.ndarray]:
    k = next(iter(totals_by_stratum.values())).shape[1]
    grand_mean = np.vstack(list(totals_by_stratum.values())).mean(axis=0)

    contributions: dict[object, np.ndarray] = {}
    lonely = []
    for info in design.strata:
        t = totals_by_stratum[info.stratum]
        n_h = t.shape[0]
        if n_h >= 2:
            dev = t - t.mean(axis=0)
            contributions[info.stratum] = info.fpc * n_h / (n_h - 1) * (dev.T @ dev)
        else:
            lonely.append(info)

    for info in lonely:
        policy = design.lonely_psu
        if policy is LonelyPSUPolicy.CERTAINTY:
            contributions[info.stratum] = np.zeros((k, k))
        elif policy is LonelyPSUPolicy.ADJUST:
            dev = totals_by_stratum[info.stratum] - grand_mean
            contributions[info.stratum] = info.fpc * (dev.T @ dev)
        elif policy is LonelyPSUPolicy.AVERAGE:
            regular = [
                contributions[s.stratum] for s in design.strata if not s.lonely
            ]
            if not regular:
                raise ConfigurationError(
                    "Lonely PSU policy 'average' needs a stratum with two or more PSUs"
                )
            contributions[info.stratum] = sum(regular) / len(regular)
        else:
            raise ConfigurationError(
                f"Stratum {info.stratum!r} has a single PSU and lonely PSU policy is "
                f"'{policy.value}'"
            )
    return contributions


# =============================================================================
# Utility functions
# =============================================================================


def safe_divide(
    numerator: pl.Expr, denominator: pl.Expr, default: float = 0.0
) -> pl.Expr:
    """
    Safe division that handles zero denominators.

    Parameters
    ----------
    numerator : pl.Expr
        Numerator expression
    denominator : pl.Expr
        Denominator expression
    default : float
        Default value when denominator is zero

    Returns
    -------
    pl.Expr
        Safe division expression
    """
    return pl.when(denominator != 0).then(numerator / denominator).otherwise(default)


def calculate_confidence_interval(
    estimate: float, se: float, confidence: float = 0.95
) -> tuple[float, float]:
    """
    Calculate confidence interval using normal approximation.

    Parameters
    ----------
    estimate : float
        Point estimate
    se : float
        Standard error
    confidence : float
        Confidence level (default 0.95 for 95% CI)

    Returns
    -------
    tuple[float, float]
        Lower and upper bounds of confidence interval
    """
    if not 0.0 < confidence < 1.0:
        raise ConfigurationError(f"Confidence level must lie in (0, 1), got {confidence}")
    if confidence == 0.95:
        z = Z_SCORE_95
    elif confidence == 0.90:
        z = Z_SCORE_90
    elif confidence == 0.99:
        z = Z_SCORE_99
    else:
        z = float(stats.norm.ppf(0.5 + confidence / 2.0))

    lower = estimate - z * se
    upper = estimate + z * se

    return lower, upper


def calculate_cv(estimate: float, se: float) -> float:
    """
    Calculate coefficient of variation as percentage.

    Parameters
    ----------
    estimate : float
        Point estimate
    se : float
        Standard error

    Returns
    -------
    float
        Coefficient of variation as percentage
    """
    if estimate != 0:
        return 100 * se / abs(estimate)
    return 0.0
