"""
Design-based estimation: stratified designs, domain estimators, and the
joint covariance engine.
"""

from .design import StratifiedDesign, StratumInfo, build_design, finite_population_factor
from .domain import (
    AdjustedProportion,
    Domain,
    DomainEstimate,
    StatisticKind,
    WeightedMean,
    check_partition,
    estimate_domain,
    estimate_domains,
)
from .variance import (
    JointCovariance,
    covariance_from_influence,
    joint_covariance,
    national_subnational_diagnostic,
    stratum_contributions,
)

__all__ = [
    "AdjustedProportion",
    "Domain",
    "DomainEstimate",
    "JointCovariance",
    "StatisticKind",
    "StratifiedDesign",
    "StratumInfo",
    "WeightedMean",
    "build_design",
    "check_partition",
    "covariance_from_influence",
    "estimate_domain",
    "estimate_domains",
    "finite_population_factor",
    "joint_covariance",
    "national_subnational_diagnostic",
    "stratum_contributions",
]
