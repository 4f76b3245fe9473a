"""
Two-stage stratified cluster sampling from a simulated population.

Stage 1 selects n PSUs without replacement in every stratum; stage 2
selects m individuals without replacement in every selected PSU. Weights
are inverse inclusion probabilities:

    pi_1 = n / N_h          (recorded as psu_prob)
    pi_2 = m / M_hj
    w    = 1 / (pi_1 * pi_2)

Feasibility is checked for every stratum and every PSU before any random
draw, so a failing request never produces a partial selection.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import polars as pl

from ..core.config import DesignConfig, SamplingConfig
from ..core.exceptions import InsufficientUnitsError
from ..estimation.design import StratifiedDesign, build_design
from .population import Population


@dataclass(frozen=True)
class TwoStageSample:
    """Sampled records ready for :func:`build_design`.

    Columns: stratum, psu, domain (the subnational unit), weight,
    psu_prob, population_psus, y.
    """

    records: pl.DataFrame
    config: SamplingConfig

    def design(self, config: DesignConfig | None = None) -> StratifiedDesign:
        return build_design(self.records, config=config)


def check_feasible(population: Population, sampling: SamplingConfig) -> None:
    """Raise InsufficientUnitsError if any stratum or PSU is too small."""
    for stratum, psus in population.stratum_psus.items():
        if len(psus) < sampling.psus_per_stratum:
            raise InsufficientUnitsError("Stratum", stratum, len(psus), sampling.psus_per_stratum)
        for psu in psus:
            size = population.psu_rows[psu][1]
            if size < sampling.individuals_per_psu:
                raise InsufficientUnitsError("PSU", psu, size, sampling.individuals_per_psu)


def draw_sample(
    population: Population, sampling: SamplingConfig, rng: np.random.Generator
) -> TwoStageSample:
    """Draw a two-stage stratified cluster sample.

    Raises
    ------
    InsufficientUnitsError
        If a stratum has fewer PSUs, or a PSU fewer individuals, than
        requested. Raised before any selection is made.
    """
    check_feasible(population, sampling)
    n, m = sampling.psus_per_stratum, sampling.individuals_per_psu

    rows, weights, psu_probs, population_psus = [], [], [], []
    for stratum, psus in population.stratum_psus.items():
        n_total = len(psus)
        selected = rng.choice(n_total, size=n, replace=False)
        for j in np.sort(selected):
            start, size = population.psu_rows[psus[j]]
            members = rng.choice(size, size=m, replace=False)
            rows.append(start + np.sort(members))
            weights.append(np.full(m, (n_total / n) * (size / m)))
            psu_probs.append(np.full(m, n / n_total))
            population_psus.append(np.full(m, n_total))

    index = np.concatenate(rows)
    records = (
        population.frame.select(pl.all().gather(index))
        .select(
            pl.col("stratum"),
            pl.col("psu"),
            pl.col("unit").alias("domain"),
            pl.col("y"),
        )
        .with_columns(
            pl.Series("weight", np.concatenate(weights)),
            pl.Series("psu_prob", np.concatenate(psu_probs)),
            pl.Series("population_psus", np.concatenate(population_psus)),
        )
    )
    return TwoStageSample(records=records, config=sampling)
