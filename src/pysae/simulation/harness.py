"""
Calibration harness for the aggregation model family.

Each replicate draws (or reuses) a population, draws a two-stage sample,
computes design-based estimates and their joint covariance for the
national domain and every subnational unit, fits every enabled model
spec through the external sampler, and records for each domain and
nominal quantile p whether the posterior p-quantile is at or above the
true simulated value. A well-calibrated model has one-sided coverage
close to p.

Replicates are independent: each receives its own SeedSequence child and
shares no mutable state, so they can run in separate processes and be
merged by concatenation. A replicate whose fit raises
ExternalSamplerError is recorded as failed and excluded from coverage;
every other error aborts the study.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait
from dataclasses import dataclass, field
from multiprocessing import get_context

import numpy as np
import polars as pl

from ..core.config import DesignConfig, LonelyPSUPolicy, PopulationConfig, SamplingConfig
from ..core.exceptions import ConfigurationError, ExternalSamplerError
from ..estimation.constants import DEFAULT_QUANTILES
from ..estimation.domain import Domain, check_partition, estimate_domains
from ..models.aggregation import ModelSpec, build_payload, fit, identity_gap
from .population import Population, simulate_population
from .sampler import draw_sample

logger = logging.getLogger(__name__)

RESPONSE = "y"


@dataclass(frozen=True)
class HarnessConfig:
    """Options for a calibration study.

    Parameters
    ----------
    n_replicates : int
        Number of independent replicates
    quantiles : tuple[float, ...]
        Nominal posterior quantiles to evaluate
    models : tuple[ModelSpec, ...]
        Model specs fitted in every replicate
    redraw_population : bool
        Draw a fresh population per replicate instead of reusing one
    seed : int
        Root seed; replicate seeds are spawned from it
    lonely_psu : LonelyPSUPolicy
        Policy passed to every replicate's design
    use_fpc : bool
        Apply the finite population correction
    n_workers : int
        Worker processes; 1 runs replicates in-process
    replicate_timeout : float, optional
        Wall-clock budget in seconds per replicate (process pool only);
        an overrun is recorded as a failure
    """

    n_replicates: int = 500
    quantiles: tuple[float, ...] = DEFAULT_QUANTILES
    models: tuple[ModelSpec, ...] = tuple(ModelSpec)
    redraw_population: bool = False
    seed: int = 0
    lonely_psu: LonelyPSUPolicy = LonelyPSUPolicy.FAIL
    use_fpc: bool = True
    n_workers: int = 1
    replicate_timeout: float | None = None

    def __post_init__(self):
        if self.n_replicates < 1:
            raise ConfigurationError(f"n_replicates must be positive, got {self.n_replicates}")
        if not self.quantiles or not all(0.0 < q < 1.0 for q in self.quantiles):
            raise ConfigurationError(f"Quantiles must lie in (0, 1), got {self.quantiles}")
        if not self.models:
            raise ConfigurationError("At least one model spec must be enabled")
        if self.n_workers < 1:
            raise ConfigurationError(f"n_workers must be positive, got {self.n_workers}")
        if self.replicate_timeout is not None and self.replicate_timeout <= 0:
            raise ConfigurationError(
                f"replicate_timeout must be positive, got {self.replicate_timeout}"
            )
        object.__setattr__(self, "quantiles", tuple(float(q) for q in self.quantiles))
        object.__setattr__(self, "models", tuple(ModelSpec(m) for m in self.models))


@dataclass(frozen=True)
class EstimateRecord:
    replicate: int
    domain: str
    estimate: float
    se: float
    truth: float


@dataclass(frozen=True)
class QuantileRecord:
    replicate: int
    model: ModelSpec
    domain: str
    quantile: float
    value: float
    truth: float

    @property
    def covered(self) -> bool:
        return self.value >= self.truth


@dataclass(frozen=True)
class FitRecord:
    replicate: int
    model: ModelSpec
    identity_gap: float


@dataclass(frozen=True)
class ReplicateResult:
    replicate: int
    status: str
    estimates: tuple[EstimateRecord, ...] = ()
    quantiles: tuple[QuantileRecord, ...] = ()
    fits: tuple[FitRecord, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def run_replicate(
    replicate: int,
    population_config: PopulationConfig,
    sampling: SamplingConfig,
    config: HarnessConfig,
    sampler,
    seed: np.random.SeedSequence,
    population: Population | None = None,
) -> ReplicateResult:
    """Run one replicate; pure apart from its own random generator."""
    rng = np.random.default_rng(seed)
    if population is None or config.redraw_population:
        population = simulate_population(population_config, rng)

    sample = draw_sample(population, sampling, rng)
    design = sample.design(DesignConfig(lonely_psu=config.lonely_psu, use_fpc=config.use_fpc))
    aggregation = population.aggregation()

    national = Domain.national(aggregation.national)
    units = [Domain.tagged(unit) for unit in aggregation.units]
    check_partition(design, national, units)
    estimates, covariance = estimate_domains(design, RESPONSE, [national, *units])

    truth = population.true_means()
    estimate_records = tuple(
        EstimateRecord(replicate, est.domain, est.estimate, est.se, truth[est.domain])
        for est in estimates
    )
    y = np.array([est.estimate for est in estimates])

    quantile_records, fit_records = [], []
    try:
        for model in config.models:
            payload = build_payload(model, y, covariance, aggregation)
            draws = fit(payload, sampler, rng)
            values = np.quantile(draws, config.quantiles, axis=0)
            for qi, q in enumerate(config.quantiles):
                for pos, label in enumerate(aggregation.labels):
                    quantile_records.append(
                        QuantileRecord(
                            replicate, model, label, q, float(values[qi, pos]), truth[label]
                        )
                    )
            fit_records.append(FitRecord(replicate, model, identity_gap(draws, aggregation)))
    except ExternalSamplerError as exc:
        logger.warning("Replicate %d failed: %s", replicate, exc)
        return ReplicateResult(
            replicate=replicate,
            status="failed",
            estimates=estimate_records,
            error=str(exc),
        )

    return ReplicateResult(
        replicate=replicate,
        status="ok",
        estimates=estimate_records,
        quantiles=tuple(quantile_records),
        fits=tuple(fit_records),
    )


@dataclass(frozen=True)
class CalibrationResult:
    """Replicate records of a calibration study and their summaries."""

    config: HarnessConfig
    replicates: tuple[ReplicateResult, ...] = field(repr=False)

    @property
    def succeeded(self) -> list[ReplicateResult]:
        return [r for r in self.replicates if r.ok]

    @property
    def failures(self) -> list[ReplicateResult]:
        return [r for r in self.replicates if not r.ok]

    def estimates_frame(self) -> pl.DataFrame:
        """(domain, replicate) -> point estimate, SE, and truth."""
        rows = [
            {
                "domain": rec.domain,
                "replicate": rec.replicate,
                "estimate": rec.estimate,
                "se": rec.se,
                "truth": rec.truth,
            }
            for r in self.replicates
            for rec in r.estimates
        ]
        return pl.DataFrame(
            rows,
            schema={
                "domain": pl.Utf8,
                "replicate": pl.Int64,
                "estimate": pl.Float64,
                "se": pl.Float64,
                "truth": pl.Float64,
            },
        )

    def quantiles_frame(self) -> pl.DataFrame:
        rows = [
            {
                "replicate": rec.replicate,
                "model": rec.model.value,
                "domain": rec.domain,
                "quantile": rec.quantile,
                "value": rec.value,
                "truth": rec.truth,
                "covered": rec.covered,
            }
            for r in self.succeeded
            for rec in r.quantiles
        ]
        return pl.DataFrame(
            rows,
            schema={
                "replicate": pl.Int64,
                "model": pl.Utf8,
                "domain": pl.Utf8,
                "quantile": pl.Float64,
                "value": pl.Float64,
                "truth": pl.Float64,
                "covered": pl.Boolean,
            },
        )

    def coverage_frame(self) -> pl.DataFrame:
        """(model, domain, quantile) -> empirical one-sided coverage."""
        return (
            self.quantiles_frame()
            .group_by(["model", "domain", "quantile"])
            .agg(
                pl.col("covered").mean().alias("coverage"),
                pl.len().alias("n"),
            )
            .with_columns(
                (pl.col("coverage") * (1.0 - pl.col("coverage")) / pl.col("n"))
                .sqrt()
                .alias("mcse")
            )
            .sort(["model", "domain", "quantile"])
        )

    def calibration_error(self) -> pl.DataFrame:
        """Mean absolute gap between coverage and nominal quantile."""
        return (
            self.coverage_frame()
            .group_by(["model", "domain"])
            .agg((pl.col("coverage") - pl.col("quantile")).abs().mean().alias("calibration_error"))
            .sort(["model", "domain"])
        )

    def identity_gap_frame(self) -> pl.DataFrame:
        """Mean violation of the aggregation identity per model."""
        rows = [
            {"model": rec.model.value, "replicate": rec.replicate, "identity_gap": rec.identity_gap}
            for r in self.succeeded
            for rec in r.fits
        ]
        frame = pl.DataFrame(
            rows, schema={"model": pl.Utf8, "replicate": pl.Int64, "identity_gap": pl.Float64}
        )
        return frame.group_by("model").agg(pl.col("identity_gap").mean()).sort("model")


def run_calibration(
    population_config: PopulationConfig,
    sampling: SamplingConfig,
    config: HarnessConfig,
    sampler,
    population: Population | None = None,
) -> CalibrationResult:
    """Run a calibration study.

    Parameters
    ----------
    population_config : PopulationConfig
        Population to simulate
    sampling : SamplingConfig
        Two-stage sample sizes
    config : HarnessConfig
        Study options
    sampler : PosteriorSampler
        External sampler; must be picklable when ``n_workers > 1``
    population : Population, optional
        Fixed population to reuse; drawn from the root seed when omitted
        and ``redraw_population`` is False

    Returns
    -------
    CalibrationResult
    """
    root = np.random.SeedSequence(config.seed)
    *seeds, population_seed = root.spawn(config.n_replicates + 1)
    if population is None and not config.redraw_population:
        population = simulate_population(population_config, np.random.default_rng(population_seed))

    args = [
        (i, population_config, sampling, config, sampler, seed, population)
        for i, seed in enumerate(seeds)
    ]

    if config.n_workers == 1:
        results = [run_replicate(*a) for a in args]
    else:
        results = _run_in_pool(args, config)
    results.sort(key=lambda r: r.replicate)

    n_failed = sum(not r.ok for r in results)
    logger.info(
        "Calibration study finished: %d replicates, %d failed (%s)",
        len(results),
        n_failed,
        ", ".join(m.value for m in config.models),
    )
    if n_failed == len(results):
        logger.warning("Every replicate failed; coverage is undefined")

    return CalibrationResult(config=config, replicates=tuple(results))




def _terminate(executor: ProcessPoolExecutor) -> None:
    """Stop a pool without waiting for the replicates it is running."""
    processes = list((executor._processes or {}).values())
    for process in processes:
        process.terminate()
    executor.shutdown(wait=False, cancel_futures=True)
    for process in processes:
        process.join()


def _run_in_pool(args: list, config: HarnessConfig) -> list[ReplicateResult]:
    """Run replicates in spawned worker processes.

    At most ``n_workers`` replicates are in flight, so a replicate's budget
    runs from its submission. A running replicate cannot be interrupted:
    an overrun terminates the whole pool, the overrunning replicates are
    recorded as failed, and the others still in flight restart in a fresh
    pool.
    """
    # spawn: forked children would inherit the polars thread pool
    ctx = get_context("spawn")
    budget = config.replicate_timeout
    queue = list(reversed(args))
    results = []
    while queue:
        executor = ProcessPoolExecutor(max_workers=config.n_workers, mp_context=ctx)
        in_flight = {}
        expired = []
        try:
            while (queue or in_flight) and not expired:
                while queue and len(in_flight) < config.n_workers:
                    job = queue.pop()
                    deadline = None if budget is None else time.monotonic() + budget
                    in_flight[executor.submit(run_replicate, *job)] = (job, deadline)
                timeout = None
                if budget is not None:
                    timeout = max(0.0, min(d for _, d in in_flight.values()) - time.monotonic())
                done, _ = wait(in_flight, timeout=timeout, return_when=FIRST_COMPLETED)
                for future in done:
                    del in_flight[future]
                    results.append(future.result())
                now = time.monotonic()
                expired = [f for f, (_, d) in in_flight.items() if d is not None and d <= now]
        except BaseException:
            _terminate(executor)
            raise

        if not expired:
            executor.shutdown()
            continue
        _terminate(executor)
        for future in expired:
            job, _ = in_flight.pop(future)
            logger.warning("Replicate %d exceeded %.1fs budget", job[0], budget)
            results.append(
                ReplicateResult(
                    replicate=job[0],
                    status="failed",
                    error=f"exceeded wall-clock budget of {budget}s",
                )
            )
        queue.extend(job for job, _ in in_flight.values())
    return results
