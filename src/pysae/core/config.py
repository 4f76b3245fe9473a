"""
Configuration objects for designs and simulations.

All configuration is explicit: frozen dataclasses validated on
construction, passed to the functions that need them together with an
explicit ``numpy.random.Generator``. Nothing reads process-wide state.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from .exceptions import ConfigurationError


class LonelyPSUPolicy(str, Enum):
    """How a stratum with a single sampled PSU contributes to variance.

    The naive between-PSU variance of such a stratum has a zero
    denominator, so a substitute must be chosen explicitly.

    - FAIL: raise ConfigurationError naming the lonely strata.
    - CERTAINTY: treat the PSU as selected with certainty; the stratum
      contributes exactly zero.
    - ADJUST: centre the lone PSU total on the grand mean of all PSU
      totals in the design (scale 1).
    - AVERAGE: substitute the mean contribution of the strata that have
      two or more PSUs.
    """

    FAIL = "fail"
    CERTAINTY = "certainty"
    ADJUST = "adjust"
    AVERAGE = "average"


@dataclass(frozen=True)
class DesignColumns:
    """Column names of a raw survey extract."""

    stratum: str = "stratum"
    psu: str = "psu"
    weight: str = "weight"
    domain: str = "domain"
    poststratum: str = "poststratum"
    psu_prob: str = "psu_prob"
    population_psus: str = "population_psus"


@dataclass(frozen=True)
class DesignConfig:
    """Options for building a stratified design.

    Parameters
    ----------
    lonely_psu : LonelyPSUPolicy
        Substitute used for single-PSU strata. Defaults to FAIL so that a
        lone PSU is never silently absorbed.
    nest : bool
        Treat PSU ids as nested within strata. When False, a PSU id that
        appears in two strata is rejected.
    use_fpc : bool
        Apply the finite population correction when stratum population
        sizes (or first-stage probabilities) are available.
    poststratum_totals : Mapping, optional
        Known population count per post-stratum; when given, analysis
        weights are calibrated to these totals.
    """

    lonely_psu: LonelyPSUPolicy = LonelyPSUPolicy.FAIL
    nest: bool = True
    use_fpc: bool = True
    poststratum_totals: Mapping | None = None

    def __post_init__(self):
        if not isinstance(self.lonely_psu, LonelyPSUPolicy):
            try:
                object.__setattr__(self, "lonely_psu", LonelyPSUPolicy(self.lonely_psu))
            except ValueError as exc:
                raise ConfigurationError(
                    f"Unknown lonely PSU policy {self.lonely_psu!r}; expected one of "
                    f"{[p.value for p in LonelyPSUPolicy]}"
                ) from exc
        if self.poststratum_totals is not None:
            for group, total in self.poststratum_totals.items():
                if not (total > 0 and math.isfinite(total)):
                    raise ConfigurationError(
                        f"Post-stratum {group!r} has non-positive population total {total}"
                    )


@dataclass(frozen=True)
class StratumSpec:
    """Size metadata for one simulated stratum.

    ``psu_size`` is either one size shared by every PSU or a tuple with
    one size per PSU.
    """

    stratum_id: str
    unit_id: str
    n_psus: int
    psu_size: int | tuple[int, ...]

    def __post_init__(self):
        if self.n_psus < 1:
            raise ConfigurationError(f"Stratum {self.stratum_id!r} needs at least one PSU")
        if isinstance(self.psu_size, int):
            sizes = (self.psu_size,) * self.n_psus
        else:
            sizes = tuple(int(s) for s in self.psu_size)
            if len(sizes) != self.n_psus:
                raise ConfigurationError(
                    f"Stratum {self.stratum_id!r} lists {len(sizes)} PSU sizes "
                    f"for {self.n_psus} PSUs"
                )
        if min(sizes) < 1:
            raise ConfigurationError(f"Stratum {self.stratum_id!r} has an empty PSU")
        object.__setattr__(self, "psu_size", sizes)

    @property
    def sizes(self) -> tuple[int, ...]:
        return self.psu_size  # normalized to a tuple in __post_init__

    @property
    def population(self) -> int:
        return sum(self.sizes)


@dataclass(frozen=True)
class PopulationConfig:
    """Parameters of a synthetic two-level population.

    Parameters
    ----------
    strata : tuple[StratumSpec, ...]
        Per-stratum size metadata.
    grand_mean : float
        Grand mean prevalence on the proportion scale, in (0, 1).
    stratum_sd : float
        Between-stratum standard deviation on the logit scale.
    psu_sd : float
        Between-PSU (within-stratum) standard deviation on the logit scale.
    """

    strata: tuple[StratumSpec, ...]
    grand_mean: float
    stratum_sd: float = 0.0
    psu_sd: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "strata", tuple(self.strata))
        if not self.strata:
            raise ConfigurationError("Population needs at least one stratum")
        ids = [s.stratum_id for s in self.strata]
        if len(set(ids)) != len(ids):
            raise ConfigurationError(f"Duplicate stratum ids in {ids}")
        if not 0.0 < self.grand_mean < 1.0:
            raise ConfigurationError(
                f"grand_mean must lie strictly between 0 and 1, got {self.grand_mean}"
            )
        for name in ("stratum_sd", "psu_sd"):
            value = getattr(self, name)
            if value < 0 or not math.isfinite(value):
                raise ConfigurationError(f"{name} must be a non-negative finite number, got {value}")

    @property
    def units(self) -> list[str]:
        """Subnational unit ids in first-appearance order."""
        seen: dict[str, None] = {}
        for s in self.strata:
            seen.setdefault(s.unit_id, None)
        return list(seen)


@dataclass(frozen=True)
class SamplingConfig:
    """Fixed sizes for a two-stage stratified cluster sample."""

    psus_per_stratum: int
    individuals_per_psu: int

    def __post_init__(self):
        if self.psus_per_stratum < 1 or self.individuals_per_psu < 1:
            raise ConfigurationError(
                "Sample sizes must be positive, got "
                f"psus_per_stratum={self.psus_per_stratum}, "
                f"individuals_per_psu={self.individuals_per_psu}"
            )
