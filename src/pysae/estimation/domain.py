"""
Domain estimators and their influence vectors.

A domain estimator returns a point estimate for one statistic over one
domain together with the estimator's influence vector: one value per
design observation, zero outside the domain, such that the estimator is
linearized as

    theta_hat ~ theta + sum_i w_i z_i

Statistic kinds form a closed set. Each kind has exactly one
implementation in ``_point_and_influence``; adding a kind means adding a
class here and a branch there.

WeightedMean:
    theta = sum_D w y / sum_D w
    z_i   = (y_i - theta) / sum_D w

AdjustedProportion (binary response, continuity c):
    W~    = sum_D w + 2 c wbar_D
    theta = (sum_D w y + c wbar_D) / W~
    z_i   = (y_i - theta) / W~

wbar_D is the mean weight in the domain, so the adjustment adds c
pseudo-successes and c pseudo-failures on the weighted-count scale and
keeps small-sample proportions away from 0 and 1.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np
import polars as pl

from ..core.exceptions import ConfigurationError, EmptyDomainError, InconsistentDomainError
from .constants import DEFAULT_CONTINUITY, NATIONAL
from .design import StratifiedDesign
from .variance import (
    JointCovariance,
    calculate_confidence_interval,
    calculate_cv,
    covariance_from_influence,
    joint_covariance,
)


@dataclass(frozen=True)
class WeightedMean:
    """Weighted mean of a binary or continuous response."""


@dataclass(frozen=True)
class AdjustedProportion:
    """Ratio-type proportion with a small-sample continuity adjustment."""

    continuity: float = DEFAULT_CONTINUITY

    def __post_init__(self):
        if self.continuity < 0:
            raise ConfigurationError(
                f"Continuity adjustment must be non-negative, got {self.continuity}"
            )


StatisticKind = WeightedMean | AdjustedProportion


@dataclass(frozen=True, eq=False)
class Domain:
    """A named subset of design observations.

    ``predicate`` is a polars boolean expression over the design records;
    None selects every observation.
    """

    name: str
    predicate: pl.Expr | None = None

    @classmethod
    def national(cls, name: str = NATIONAL) -> Domain:
        return cls(name=name)

    @classmethod
    def tagged(cls, tag, column: str = "domain", name: str | None = None) -> Domain:
        return cls(name=str(tag) if name is None else name, predicate=pl.col(column) == tag)

    def mask(self, design: StratifiedDesign) -> np.ndarray:
        if self.predicate is None:
            return np.ones(design.n_obs, dtype=bool)
        try:
            selected = design.data.select(self.predicate.fill_null(False).alias("_in"))
        except pl.exceptions.ColumnNotFoundError as exc:
            raise ConfigurationError(
                f"Domain '{self.name}' refers to a column missing from the design: {exc}"
            ) from exc
        return selected["_in"].to_numpy().astype(bool)


@dataclass(frozen=True)
class DomainEstimate:
    """Point estimate, variance, and influence vector for one domain."""

    domain: str
    response: str
    kind: StatisticKind
    estimate: float
    variance: float
    weight_total: float
    n_obs: int
    design_id: str
    influence: np.ndarray = field(repr=False)

    def __post_init__(self):
        influence = np.array(self.influence, dtype=float)
        influence.setflags(write=False)
        object.__setattr__(self, "influence", influence)

    @property
    def se(self) -> float:
        return float(np.sqrt(self.variance))

    @property
    def cv(self) -> float:
        return calculate_cv(self.estimate, self.se)

    def confidence_interval(self, confidence: float = 0.95) -> tuple[float, float]:
        return calculate_confidence_interval(self.estimate, self.se, confidence)


def estimate_domain(
    design: StratifiedDesign,
    response: str,
    domain: Domain,
    kind: StatisticKind | None = None,
) -> DomainEstimate:
    """Estimate one statistic over one domain.

    Parameters
    ----------
    design : StratifiedDesign
        Design holding the observations
    response : str
        Response column
    domain : Domain
        Subset of observations to estimate over
    kind : StatisticKind, optional
        Statistic to compute; defaults to WeightedMean()

    Returns
    -------
    DomainEstimate
        Estimate with its design-based variance. The variance equals the
        diagonal entry the covariance engine produces for this estimator.

    Raises
    ------
    EmptyDomainError
        If the domain selects no observations or only zero total weight
    """
    kind = WeightedMean() if kind is None else kind
    y = design.response(response)
    w = design.weights
    mask = domain.mask(design)

    if not mask.any() or w[mask].sum() <= 0:
        raise EmptyDomainError(domain.name)

    estimate, influence = _point_and_influence(kind, y, w, mask, response)
    cov = covariance_from_influence(design, influence, [domain.name])

    return DomainEstimate(
        domain=domain.name,
        response=response,
        kind=kind,
        estimate=estimate,
        variance=float(cov.matrix[0, 0]),
        weight_total=float(w[mask].sum()),
        n_obs=int(mask.sum()),
        design_id=design.design_id,
        influence=influence,
    )


def estimate_domains(
    design: StratifiedDesign,
    response: str,
    domains: Sequence[Domain],
    kind: StatisticKind | None = None,
) -> tuple[list[DomainEstimate], JointCovariance]:
    """Estimate several domains and their joint covariance in one pass."""
    estimates = [estimate_domain(design, response, d, kind) for d in domains]
    return estimates, joint_covariance(design, estimates)


def check_partition(
    design: StratifiedDesign, national: Domain, subnational: Sequence[Domain]
) -> None:
    """Verify the subnational domains partition the national domain.

    Raises
    ------
    InconsistentDomainError
        If two subnational domains share an observation, or their union
        differs from the national domain.
    """
    national_mask = national.mask(design)
    counts = np.zeros(design.n_obs, dtype=int)
    for d in subnational:
        counts += d.mask(design)

    overlap = int((counts > 1).sum())
    if overlap:
        raise InconsistentDomainError(
            f"{overlap} observations belong to more than one subnational domain"
        )
    uncovered = int((national_mask & (counts == 0)).sum())
    outside = int((~national_mask & (counts > 0)).sum())
    if uncovered or outside:
        raise InconsistentDomainError(
            f"Subnational domains do not partition '{national.name}': "
            f"{uncovered} national observations uncovered, {outside} outside"
        )


def _point_and_influence(
    kind: StatisticKind,
    y: np.ndarray,
    w: np.ndarray,
    mask: np.ndarray,
    response: str,
) -> tuple[float, np.ndarray]:
    influence = np.zeros_like(y)
    w_d = w[mask]
    y_d = y[mask]

    if isinstance(kind, WeightedMean):
        denominator = w_d.sum()
        estimate = float((w_d * y_d).sum() / denominator)
    elif isinstance(kind, AdjustedProportion):
        if not np.isin(y_d, (0.0, 1.0)).all():
            raise ConfigurationError(
                f"Adjusted proportion needs a binary response; '{response}' has other values"
            )
        pseudo = kind.continuity * w_d.mean()
        denominator = w_d.sum() + 2.0 * pseudo
        estimate = float(((w_d * y_d).sum() + pseudo) / denominator)
    else:
        raise TypeError(f"Unsupported statistic kind {type(kind).__name__}")

    influence[mask] = (y_d - estimate) / denominator
    return estimate, influence
