"""
pysae: design-based covariance and aggregation-consistent small-area
prevalence estimation.
"""

from .core.config import (
    DesignColumns,
    DesignConfig,
    LonelyPSUPolicy,
    PopulationConfig,
    SamplingConfig,
    StratumSpec,
)
from .core.exceptions import (
    ConfigurationError,
    EmptyDomainError,
    ExternalSamplerError,
    InconsistentDomainError,
    InsufficientUnitsError,
    PySAEError,
    SingularSubmatrixError,
)
from .estimation import (
    AdjustedProportion,
    Domain,
    DomainEstimate,
    JointCovariance,
    StratifiedDesign,
    WeightedMean,
    build_design,
    check_partition,
    estimate_domain,
    estimate_domains,
    joint_covariance,
)
from .models import (
    AggregationMatrix,
    GaussianSampler,
    LaplaceSampler,
    ModelSpec,
    PyMCSampler,
    build_payload,
    build_policy,
    fit,
)
from .simulation import (
    CalibrationResult,
    HarnessConfig,
    Population,
    draw_sample,
    run_calibration,
    simulate_population,
)

__version__ = "0.1.0"

__all__ = [
    "AdjustedProportion",
    "AggregationMatrix",
    "CalibrationResult",
    "ConfigurationError",
    "DesignColumns",
    "DesignConfig",
    "Domain",
    "DomainEstimate",
    "EmptyDomainError",
    "ExternalSamplerError",
    "GaussianSampler",
    "HarnessConfig",
    "InconsistentDomainError",
    "InsufficientUnitsError",
    "JointCovariance",
    "LaplaceSampler",
    "LonelyPSUPolicy",
    "ModelSpec",
    "Population",
    "PopulationConfig",
    "PyMCSampler",
    "PySAEError",
    "SamplingConfig",
    "SingularSubmatrixError",
    "StratifiedDesign",
    "StratumSpec",
    "WeightedMean",
    "build_design",
    "build_payload",
    "build_policy",
    "check_partition",
    "draw_sample",
    "estimate_domain",
    "estimate_domains",
    "fit",
    "joint_covariance",
    "run_calibration",
    "simulate_population",
]
