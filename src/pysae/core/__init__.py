"""Core infrastructure: exceptions and configuration objects."""

from .config import (
    DesignColumns,
    DesignConfig,
    LonelyPSUPolicy,
    PopulationConfig,
    SamplingConfig,
    StratumSpec,
)
from .exceptions import (
    ConfigurationError,
    EmptyDomainError,
    ExternalSamplerError,
    InconsistentDomainError,
    InsufficientUnitsError,
    PySAEError,
    SingularSubmatrixError,
)

__all__ = [
    "ConfigurationError",
    "DesignColumns",
    "DesignConfig",
    "EmptyDomainError",
    "ExternalSamplerError",
    "InconsistentDomainError",
    "InsufficientUnitsError",
    "LonelyPSUPolicy",
    "PopulationConfig",
    "PySAEError",
    "SamplingConfig",
    "SingularSubmatrixError",
    "StratumSpec",
]
