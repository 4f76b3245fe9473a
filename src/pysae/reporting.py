"""
Console display of calibration results using Rich tables.

The reporting collaborator only ever sees flat tables: the estimates
frame (domain, replicate) -> estimate/SE and the coverage frame
(model, domain, quantile) -> coverage.
"""

from __future__ import annotations

import polars as pl
from rich.console import Console
from rich.table import Table


def display_table(
    df: pl.DataFrame,
    title: str = "",
    max_rows: int = 40,
    precision: int = 3,
    console: Console | None = None,
) -> None:
    """
    Format and display a flat result table using Rich.

    Parameters
    ----------
    df : pl.DataFrame
        Table to display.
    title : str, optional
        Title to display above the table.
    max_rows : int, optional
        Maximum rows to display. Defaults to 40.
    precision : int, optional
        Decimal places for floating point numbers. Defaults to 3.
    console : Console, optional
        Console to print to. Defaults to a new stdout console.
    """
    console = console or Console()
    table = Table(title=title or None, show_header=True, header_style="bold cyan")

    for col in df.columns:
        justify = "right" if df[col].dtype.is_numeric() else "left"
        table.add_column(col, justify=justify)

    for row in df.head(max_rows).iter_rows():
        table.add_row(*[_format_value(v, precision) for v in row])

    console.print(table)
    if df.height > max_rows:
        console.print(f"[dim]... {df.height - max_rows} more rows[/dim]")


def display_coverage(
    coverage: pl.DataFrame, title: str = "Posterior quantile coverage", **kwargs
) -> None:
    """Display coverage with one column per nominal quantile."""
    wide = coverage.pivot(
        on="quantile", index=["model", "domain"], values="coverage"
    ).sort(["model", "domain"])
    wide = wide.rename({c: f"p={float(c):.2f}" for c in wide.columns if c not in ("model", "domain")})
    display_table(wide, title=title, **kwargs)


def display_estimates(
    estimates: pl.DataFrame, title: str = "Design-based estimates", **kwargs
) -> None:
    """Display per-domain summaries of point estimates across replicates."""
    summary = (
        estimates.group_by("domain")
        .agg(
            pl.col("truth").first(),
            pl.col("estimate").mean().alias("mean_estimate"),
            pl.col("estimate").std().alias("empirical_se"),
            pl.col("se").mean().alias("mean_se"),
            pl.len().alias("replicates"),
        )
        .sort("domain")
    )
    display_table(summary, title=title, **kwargs)


def _format_value(value, precision: int) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.{precision}f}"
    return str(value)
