"""
Configuration for unit tests.

Unit tests are fast, isolated tests on small hand-built designs and
synthetic populations. Fixtures shared by several modules live here.
"""

from pathlib import Path

import numpy as np
import polars as pl
import pytest

from pysae import (
    AggregationMatrix,
    DesignConfig,
    LonelyPSUPolicy,
    PopulationConfig,
    SamplingConfig,
    StratumSpec,
    build_design,
)


def pytest_collection_modifyitems(items):
    """Mark tests in this directory as unit tests."""
    unit_dir = Path(__file__).parent
    for item in items:
        if unit_dir in item.path.parents:
            item.add_marker(pytest.mark.unit)


@pytest.fixture
def hand_records():
    """
    Two strata with a lonely PSU, equal weights.

    Stratum A: PSU a1 = (1, 1, 0), PSU a2 = (1, 0, 0)
    Stratum B: PSU b1 = (1, 1)          (lonely)

    National mean = 4/8 = 0.5. With z_i = (y_i - 0.5)/8 the PSU totals are
    a1 = 0.0625, a2 = -0.0625, b1 = 0.125, so stratum A contributes
    2 * (0.0625^2 + 0.0625^2) = 0.015625.
    """
    return pl.DataFrame(
        {
            "stratum": ["A", "A", "A", "A", "A", "A", "B", "B"],
            "psu": ["a1", "a1", "a1", "a2", "a2", "a2", "b1", "b1"],
            "weight": [1.0] * 8,
            "domain": ["u1", "u1", "u2", "u1", "u2", "u2", "u2", "u2"],
            "y": [1, 1, 0, 1, 0, 0, 1, 1],
        }
    )


@pytest.fixture
def hand_design(hand_records):
    return build_design(hand_records, config=DesignConfig(lonely_psu=LonelyPSUPolicy.CERTAINTY))


@pytest.fixture
def unit_strata_records():
    """
    One stratum per subnational unit with equal PSU weight totals.

    u1: 3 PSUs x 4 obs, weight 2  -> W = 24
    u2: 2 PSUs x 3 obs, weight 5  -> W = 30
    u3: 4 PSUs x 2 obs, weight 3  -> W = 24

    Because every PSU in a stratum has the same weight total, the national
    mean is exactly the weighted sum of the unit means with weights W_u / W.
    """
    rng = np.random.default_rng(7)
    layout = {"u1": (3, 4, 2.0), "u2": (2, 3, 5.0), "u3": (4, 2, 3.0)}
    rows = {"stratum": [], "psu": [], "weight": [], "domain": [], "y": []}
    for unit, (n_psu, size, weight) in layout.items():
        for j in range(n_psu):
            for _ in range(size):
                rows["stratum"].append(f"s-{unit}")
                rows["psu"].append(f"{unit}-{j}")
                rows["weight"].append(weight)
                rows["domain"].append(unit)
                rows["y"].append(int(rng.random() < 0.4))
    return pl.DataFrame(rows)


@pytest.fixture
def unit_shares():
    return np.array([24.0, 30.0, 24.0]) / 78.0


@pytest.fixture
def small_population_config():
    strata = (
        StratumSpec("n-urban", "north", 12, 10),
        StratumSpec("n-rural", "north", 10, 10),
        StratumSpec("s-urban", "south", 8, 10),
        StratumSpec("s-rural", "south", 6, 10),
        StratumSpec("w-all", "west", 6, 10),
    )
    return PopulationConfig(strata=strata, grand_mean=0.3, stratum_sd=0.3, psu_sd=0.3)


@pytest.fixture
def small_sampling():
    return SamplingConfig(psus_per_stratum=3, individuals_per_psu=5)


@pytest.fixture
def three_unit_aggregation():
    return AggregationMatrix.from_populations({"a": 100.0, "b": 300.0, "c": 600.0})
