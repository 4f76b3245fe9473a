"""
Exception hierarchy for pysae.

Every error raised by the package derives from PySAEError so callers can
catch package failures without masking programming errors. Configuration
and domain errors abort a run; only the calibration harness catches
ExternalSamplerError, and only to record a failed replicate.
"""

from __future__ import annotations


class PySAEError(Exception):
    """Base class for all pysae errors."""


class ConfigurationError(PySAEError):
    """Inconsistent design structure or invalid numeric parameters.

    Raised for a PSU mapped to more than one stratum, inconsistent
    inclusion probabilities within a PSU, non-positive weights, negative
    variance parameters, or a lonely PSU under the FAIL policy.
    """


class EmptyDomainError(PySAEError):
    """A domain selected no observations (or only zero total weight)."""

    def __init__(self, domain: str, message: str | None = None):
        self.domain = domain
        super().__init__(message or f"Domain '{domain}' contains no observations")


class InconsistentDomainError(PySAEError):
    """Domain estimates that cannot be combined in one covariance run.

    Raised when estimates were built on different designs, when influence
    vectors are not aligned, or when subnational domains do not partition
    the national domain.
    """


class InsufficientUnitsError(PySAEError):
    """A stratum or PSU cannot supply the requested number of units."""

    def __init__(self, level: str, unit_id, available: int, requested: int):
        self.level = level
        self.unit_id = unit_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"{level} {unit_id!r} has {available} units but {requested} were requested"
        )


class SingularSubmatrixError(PySAEError):
    """A covariance submatrix requested as a likelihood covariance is not
    positive definite. This signals a modeling bug, not a data problem."""

    def __init__(self, spec: str, positions, message: str | None = None):
        self.spec = spec
        self.positions = tuple(positions)
        super().__init__(
            message
            or f"Covariance submatrix for {spec} at positions {self.positions} "
            "is not positive definite"
        )


class ExternalSamplerError(PySAEError):
    """Opaque failure or non-convergence reported by an external sampler."""

    def __init__(self, message: str, diagnostics: dict | None = None):
        self.diagnostics = diagnostics or {}
        super().__init__(message)
