"""
End-to-end calibration study under the hierarchical pooling prior.

Four equal-size regions share one prevalence, so the deviation scale is
small and the hierarchical prior pools strongly. BottomUp and GeomMean
derive the national value from the pooled units and stay calibrated
there. NoAgg pools the national estimate as if it were a fifth
independent region, although it is the average of the other four, so
it counts the national information twice. Its national intervals are
too narrow and its one-sided coverage is flatter than nominal.
"""

import polars as pl
import pytest

from pysae import (
    HarnessConfig,
    LaplaceSampler,
    ModelSpec,
    PopulationConfig,
    SamplingConfig,
    StratumSpec,
    run_calibration,
)

REGIONS = ("north", "south", "east", "west")

QUANTILES = (0.1, 0.5, 0.9)

N_REPLICATES = 1000


@pytest.fixture(scope="module")
def study():
    strata = []
    for region in REGIONS:
        strata.append(StratumSpec(f"{region}-1", region, 60, 40))
        strata.append(StratumSpec(f"{region}-2", region, 60, 40))
    population_config = PopulationConfig(
        strata=tuple(strata), grand_mean=0.5, stratum_sd=0.0, psu_sd=0.0
    )
    config = HarnessConfig(
        n_replicates=N_REPLICATES,
        quantiles=QUANTILES,
        models=(ModelSpec.NO_AGG, ModelSpec.BOTTOM_UP, ModelSpec.GEOM_MEAN),
        seed=20240917,
        use_fpc=False,
    )
    return run_calibration(
        population_config,
        SamplingConfig(psus_per_stratum=8, individuals_per_psu=10),
        config,
        LaplaceSampler(n_draws=1000),
    )


def _national_coverage(study, model):
    coverage = study.coverage_frame().filter(
        (pl.col("model") == model.value) & (pl.col("domain") == "national")
    )
    return dict(coverage.select("quantile", "coverage").iter_rows())


def _mean_national_width(study, model):
    values = (
        study.quantiles_frame()
        .filter((pl.col("model") == model.value) & (pl.col("domain") == "national"))
        .pivot(on="quantile", index="replicate", values="value")
    )
    return (values["0.9"] - values["0.1"]).mean()


def test_all_replicates_succeed(study):
    assert len(study.succeeded) == N_REPLICATES


@pytest.mark.parametrize("model", [ModelSpec.BOTTOM_UP, ModelSpec.GEOM_MEAN])
def test_consistent_specs_calibrated_at_national(study, model):
    coverage = _national_coverage(study, model)
    for quantile in QUANTILES:
        assert coverage[quantile] == pytest.approx(quantile, abs=0.05)


def test_no_agg_national_coverage_is_flatter(study):
    no_agg = _national_coverage(study, ModelSpec.NO_AGG)
    bottom_up = _national_coverage(study, ModelSpec.BOTTOM_UP)
    no_agg_spread = no_agg[0.9] - no_agg[0.1]
    bottom_up_spread = bottom_up[0.9] - bottom_up[0.1]
    assert no_agg_spread < 0.8
    assert no_agg_spread < bottom_up_spread - 0.03


def test_no_agg_national_intervals_are_narrower(study):
    no_agg = _mean_national_width(study, ModelSpec.NO_AGG)
    bottom_up = _mean_national_width(study, ModelSpec.BOTTOM_UP)
    assert no_agg < 0.95 * bottom_up


def test_constrained_specs_keep_identity(study):
    gaps = dict(study.identity_gap_frame().iter_rows())
    assert gaps["bottom_up"] < 1e-8
    assert gaps["geom_mean"] < 1e-8
    assert gaps["no_agg"] > 1e-4
