"""Unit tests for console reporting."""

import polars as pl
import pytest
from rich.console import Console

from pysae.reporting import _format_value, display_coverage, display_estimates, display_table


@pytest.fixture
def console():
    return Console(record=True, width=120)


@pytest.fixture
def coverage():
    return pl.DataFrame(
        {
            "model": ["bottom_up"] * 2 + ["no_agg"] * 2,
            "domain": ["national", "national", "north", "north"],
            "quantile": [0.1, 0.9, 0.1, 0.9],
            "coverage": [0.12, 0.88, 0.2, 0.95],
            "n": [50, 50, 50, 50],
            "mcse": [0.046, 0.046, 0.057, 0.031],
        }
    )


class TestDisplayTable:
    def test_title_and_values(self, console):
        df = pl.DataFrame({"domain": ["north"], "estimate": [0.123456]})
        display_table(df, title="Estimates", console=console)
        text = console.export_text()
        assert "Estimates" in text
        assert "north" in text
        assert "0.123" in text
        assert "0.1235" not in text

    def test_truncation_notice(self, console):
        df = pl.DataFrame({"x": list(range(10))})
        display_table(df, max_rows=4, console=console)
        assert "6 more rows" in console.export_text()

    def test_format_value(self):
        assert _format_value(None, 3) == "-"
        assert _format_value(0.5, 2) == "0.50"
        assert _format_value(7, 2) == "7"


class TestDisplayCoverage:
    def test_one_column_per_quantile(self, console, coverage):
        display_coverage(coverage, console=console)
        text = console.export_text()
        assert "p=0.10" in text
        assert "p=0.90" in text
        assert "bottom_up" in text

    def test_estimates_summary(self, console):
        estimates = pl.DataFrame(
            {
                "domain": ["north", "north", "south"],
                "replicate": [0, 1, 0],
                "estimate": [0.3, 0.4, 0.2],
                "se": [0.05, 0.05, 0.04],
                "truth": [0.33, 0.33, 0.21],
            }
        )
        display_estimates(estimates, console=console)
        text = console.export_text()
        assert "mean_estimate" in text
        assert "0.350" in text
