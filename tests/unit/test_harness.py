"""Unit tests for the calibration harness on small simulated studies."""

import numpy as np
import polars as pl
import pytest

from pysae import (
    ConfigurationError,
    ExternalSamplerError,
    GaussianSampler,
    HarnessConfig,
    InsufficientUnitsError,
    ModelSpec,
    PopulationConfig,
    SamplingConfig,
    StratumSpec,
    run_calibration,
    simulate_population,
)
from pysae.simulation.harness import run_replicate


class FailFirstCall:
    """Raises ExternalSamplerError on its first call, then defers to Gaussian."""

    def __init__(self):
        self.calls = 0
        self.inner = GaussianSampler(n_draws=200)

    def sample(self, payload, rng):
        self.calls += 1
        if self.calls == 1:
            raise ExternalSamplerError("chains did not mix")
        return self.inner.sample(payload, rng)


class BrokenSampler:
    def sample(self, payload, rng):
        raise ValueError("bug in sampler")


@pytest.fixture
def study_population():
    """Two strata per unit so no unit estimate degenerates to zero variance."""
    strata = []
    for unit, (a, b) in {"north": (10, 8), "south": (8, 6), "west": (6, 5)}.items():
        strata.append(StratumSpec(f"{unit}-1", unit, a, 12))
        strata.append(StratumSpec(f"{unit}-2", unit, b, 12))
    return PopulationConfig(strata=tuple(strata), grand_mean=0.3, stratum_sd=0.2, psu_sd=0.2)


@pytest.fixture
def study_sampling():
    return SamplingConfig(psus_per_stratum=4, individuals_per_psu=8)


@pytest.fixture
def harness_config():
    return HarnessConfig(n_replicates=3, seed=123)


@pytest.fixture
def sampler():
    return GaussianSampler(n_draws=200)


class TestRunCalibration:
    def test_record_counts(self, study_population, study_sampling, harness_config, sampler):
        result = run_calibration(study_population, study_sampling, harness_config, sampler)
        assert len(result.succeeded) == 3
        assert not result.failures

        coverage = result.coverage_frame()
        n_quantiles = len(harness_config.quantiles)
        assert coverage.height == len(ModelSpec) * 4 * n_quantiles
        assert coverage["n"].unique().to_list() == [3]
        assert set(coverage["domain"].unique()) == {"national", "north", "south", "west"}
        assert coverage.columns == ["model", "domain", "quantile", "coverage", "n", "mcse"]

    def test_estimates_frame(self, study_population, study_sampling, harness_config, sampler):
        result = run_calibration(study_population, study_sampling, harness_config, sampler)
        estimates = result.estimates_frame()
        assert estimates.height == 3 * 4
        assert (estimates["se"] > 0).all()

    def test_fixed_population_shares_truth(
        self, study_population, study_sampling, harness_config, sampler
    ):
        result = run_calibration(study_population, study_sampling, harness_config, sampler)
        truth = result.estimates_frame().group_by("domain").agg(pl.col("truth").n_unique())
        assert truth["truth"].to_list() == [1] * 4

    def test_supplied_population(self, study_population, study_sampling, harness_config, sampler):
        population = simulate_population(study_population, np.random.default_rng(77))
        result = run_calibration(
            study_population, study_sampling, harness_config, sampler, population=population
        )
        national = result.estimates_frame().filter(pl.col("domain") == "national")
        assert national["truth"].unique().item() == pytest.approx(population.true_means()["national"])

    def test_redraw_population(self, study_population, study_sampling, sampler):
        config = HarnessConfig(n_replicates=3, seed=5, redraw_population=True)
        result = run_calibration(study_population, study_sampling, config, sampler)
        national = result.estimates_frame().filter(pl.col("domain") == "national")
        assert national["truth"].n_unique() == 3

    def test_same_seed_same_result(self, study_population, study_sampling, harness_config, sampler):
        first = run_calibration(study_population, study_sampling, harness_config, sampler)
        second = run_calibration(study_population, study_sampling, harness_config, sampler)
        assert first.quantiles_frame().equals(second.quantiles_frame())

    def test_identity_gap(self, study_population, study_sampling, harness_config, sampler):
        result = run_calibration(study_population, study_sampling, harness_config, sampler)
        gaps = dict(result.identity_gap_frame().iter_rows())
        for spec in ("bottom_up", "drop_smallest", "geom_mean"):
            assert gaps[spec] == pytest.approx(0.0, abs=1e-10)
        assert gaps["no_agg"] > 1e-4

    def test_model_subset(self, study_population, study_sampling, sampler):
        config = HarnessConfig(n_replicates=2, models=("bottom_up",), quantiles=(0.5,))
        result = run_calibration(study_population, study_sampling, config, sampler)
        assert result.coverage_frame()["model"].unique().to_list() == ["bottom_up"]

    def test_calibration_error_bounds(
        self, study_population, study_sampling, harness_config, sampler
    ):
        result = run_calibration(study_population, study_sampling, harness_config, sampler)
        errors = result.calibration_error()
        assert errors.height == len(ModelSpec) * 4
        assert errors["calibration_error"].is_between(0.0, 1.0).all()


class TestFailures:
    def test_sampler_failure_recorded(self, study_population, study_sampling, harness_config):
        result = run_calibration(
            study_population, study_sampling, harness_config, FailFirstCall()
        )
        assert [r.replicate for r in result.failures] == [0]
        assert "chains did not mix" in result.failures[0].error
        assert result.coverage_frame()["n"].unique().to_list() == [2]
        # design-based estimates of the failed replicate are kept
        assert result.estimates_frame()["replicate"].n_unique() == 3

    def test_other_errors_propagate(self, study_population, study_sampling, harness_config):
        with pytest.raises(ValueError, match="bug in sampler"):
            run_calibration(study_population, study_sampling, harness_config, BrokenSampler())

    def test_infeasible_sampling_propagates(self, study_population, harness_config, sampler):
        with pytest.raises(InsufficientUnitsError):
            run_calibration(study_population, SamplingConfig(20, 5), harness_config, sampler)

    def test_lonely_psu_fails_by_default(self, study_population, harness_config, sampler):
        with pytest.raises(ConfigurationError, match="lonely PSU policy"):
            run_calibration(study_population, SamplingConfig(1, 5), harness_config, sampler)


class TestRunReplicate:
    def test_single_replicate(self, study_population, study_sampling, sampler):
        config = HarnessConfig(n_replicates=1, quantiles=(0.5,))
        result = run_replicate(
            0, study_population, study_sampling, config, sampler, np.random.SeedSequence(1)
        )
        assert result.ok
        assert len(result.estimates) == 4
        assert len(result.quantiles) == len(ModelSpec) * 4
        assert len(result.fits) == len(ModelSpec)

    def test_quantile_record_coverage(self, study_population, study_sampling, sampler):
        config = HarnessConfig(n_replicates=1, quantiles=(0.5,))
        result = run_replicate(
            0, study_population, study_sampling, config, sampler, np.random.SeedSequence(1)
        )
        for record in result.quantiles:
            assert record.covered == (record.value >= record.truth)


class TestHarnessConfig:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"n_replicates": 0},
            {"quantiles": ()},
            {"quantiles": (0.5, 1.0)},
            {"models": ()},
            {"n_workers": 0},
            {"replicate_timeout": 0.0},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            HarnessConfig(**kwargs)

    def test_models_from_strings(self):
        config = HarnessConfig(models=("geom_mean", "no_agg"))
        assert config.models == (ModelSpec.GEOM_MEAN, ModelSpec.NO_AGG)
