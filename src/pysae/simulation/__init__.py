"""Population simulation, two-stage sampling, and the calibration harness."""

from .harness import (
    CalibrationResult,
    EstimateRecord,
    FitRecord,
    HarnessConfig,
    QuantileRecord,
    ReplicateResult,
    run_calibration,
    run_replicate,
)
from .population import Population, simulate_population
from .sampler import TwoStageSample, check_feasible, draw_sample

__all__ = [
    "CalibrationResult",
    "EstimateRecord",
    "FitRecord",
    "HarnessConfig",
    "Population",
    "QuantileRecord",
    "ReplicateResult",
    "TwoStageSample",
    "check_feasible",
    "draw_sample",
    "run_calibration",
    "run_replicate",
    "simulate_population",
]
