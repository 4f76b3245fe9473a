"""
Synthetic two-level populations with known ground truth.

Draw order, all on the logit scale:

    stratum effect  a_h  ~ Normal(logit(grand_mean), stratum_sd)
    PSU effect      b_hj ~ Normal(a_h, psu_sd)
    individual      y_i  ~ Bernoulli(invlogit(b_hj))

The population is fully enumerated, so true domain means are computed by
direct averaging.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import polars as pl
from scipy.special import expit, logit

from ..core.config import PopulationConfig
from ..estimation.constants import NATIONAL
from ..models.aggregation import AggregationMatrix


@dataclass(frozen=True)
class Population:
    """A fully enumerated population.

    ``frame`` has one row per individual with columns stratum, unit, psu,
    individual, prob, y, sorted so that each PSU occupies a contiguous
    block of rows; ``psu_rows`` gives (start, size) per PSU.
    """

    frame: pl.DataFrame
    config: PopulationConfig
    psu_rows: dict[str, tuple[int, int]]
    stratum_psus: dict[str, tuple[str, ...]]

    @property
    def n_individuals(self) -> int:
        return self.frame.height

    def unit_sizes(self) -> dict[str, int]:
        sizes = self.frame.group_by("unit").agg(pl.len().alias("n"))
        lookup = dict(zip(sizes["unit"].to_list(), sizes["n"].to_list()))
        return {unit: int(lookup[unit]) for unit in self.config.units}

    def true_means(self) -> dict[str, float]:
        """National and per-unit prevalence by direct averaging."""
        means = self.frame.group_by("unit").agg(pl.col("y").mean().alias("mean"))
        lookup = dict(zip(means["unit"].to_list(), means["mean"].to_list()))
        truth = {NATIONAL: float(self.frame["y"].mean())}
        truth.update({unit: float(lookup[unit]) for unit in self.config.units})
        return truth

    def aggregation(self) -> AggregationMatrix:
        return AggregationMatrix.from_populations(self.unit_sizes())


def simulate_population(config: PopulationConfig, rng: np.random.Generator) -> Population:
    """Draw a population from the stratum -> PSU -> individual hierarchy.

    Parameters
    ----------
    config : PopulationConfig
        Stratum sizes and the three variance-component scalars
    rng : np.random.Generator
        Random generator; the only source of randomness

    Returns
    -------
    Population
    """
    base = logit(config.grand_mean)

    strata, units, psus, individuals, probs = [], [], [], [], []
    psu_rows: dict[str, tuple[int, int]] = {}
    stratum_psus: dict[str, tuple[str, ...]] = {}
    start = 0
    for spec in config.strata:
        stratum_effect = rng.normal(base, config.stratum_sd)
        psu_effects = rng.normal(stratum_effect, config.psu_sd, size=spec.n_psus)
        ids = []
        for j, (effect, size) in enumerate(zip(psu_effects, spec.sizes)):
            psu_id = f"{spec.stratum_id}-{j}"
            ids.append(psu_id)
            psu_rows[psu_id] = (start, size)
            start += size
            strata.append(np.full(size, spec.stratum_id, dtype=object))
            units.append(np.full(size, spec.unit_id, dtype=object))
            psus.append(np.full(size, psu_id, dtype=object))
            individuals.append(np.arange(size))
            probs.append(np.full(size, expit(effect)))
        stratum_psus[spec.stratum_id] = tuple(ids)

    prob = np.concatenate(probs)
    y = (rng.random(prob.shape[0]) < prob).astype(np.int8)

    frame = pl.DataFrame(
        {
            "stratum": np.concatenate(strata).tolist(),
            "unit": np.concatenate(units).tolist(),
            "psu": np.concatenate(psus).tolist(),
            "individual": np.concatenate(individuals),
            "prob": prob,
            "y": y,
        }
    )
    return Population(
        frame=frame,
        config=config,
        psu_rows=psu_rows,
        stratum_psus=stratum_psus,
    )
