"""
Stratified two-stage design model.

A design is built once from raw survey records (one row per observation)
and is immutable afterwards. It normalizes the record frame to a small set
of private columns used by the domain estimators and the covariance
engine:

- ``_obs``: observation index (row position, aligns influence vectors)
- ``_stratum``: stratum id
- ``_psu``: PSU key, nested within stratum unless ``nest=False``
- ``_w``: analysis weight (post-stratified when totals are supplied)
- ``_post``: post-stratum group (only when post-strata are present)

Per-stratum metadata (PSU ids, FPC factor, lonely status) is kept in
``StratumInfo`` records so the covariance engine never has to re-derive it.

Finite population correction
----------------------------
For a stratum with n_h sampled PSUs out of N_h population PSUs the
between-PSU variance contribution is scaled by

    f_h = 1 - n_h / N_h

N_h comes from the ``population_psus`` column. Without it, a constant
first-stage inclusion probability ``psu_prob`` yields f_h = 1 - psu_prob.
Without either, f_h = 1 (with-replacement approximation).
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass

import numpy as np
import polars as pl

from ..core.config import DesignColumns, DesignConfig, LonelyPSUPolicy
from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StratumInfo:
    """Structural metadata for one stratum."""

    stratum: object
    psus: tuple
    population_psus: float | None
    fpc: float

    @property
    def n_psus(self) -> int:
        return len(self.psus)

    @property
    def lonely(self) -> bool:
        return self.n_psus == 1


@dataclass(frozen=True)
class StratifiedDesign:
    """Immutable stratified cluster design.

    Build instances with :func:`build_design`; the constructor does no
    validation of its own.
    """

    data: pl.DataFrame
    strata: tuple[StratumInfo, ...]
    lonely_psu: LonelyPSUPolicy
    columns: DesignColumns
    has_poststrata: bool
    design_id: str

    @property
    def n_obs(self) -> int:
        return self.data.height

    @property
    def n_psus(self) -> int:
        return sum(s.n_psus for s in self.strata)

    @property
    def weights(self) -> np.ndarray:
        return self.data["_w"].to_numpy()

    @property
    def lonely_strata(self) -> list:
        return [s.stratum for s in self.strata if s.lonely]

    def stratum(self, stratum_id) -> StratumInfo:
        for info in self.strata:
            if info.stratum == stratum_id:
                return info
        raise KeyError(stratum_id)

    def response(self, column: str) -> np.ndarray:
        """Return a response column as float array, rejecting missing values."""
        if column not in self.data.columns:
            raise ConfigurationError(
                f"Response column '{column}' not found; available: {self.data.columns}"
            )
        series = self.data[column]
        if series.null_count() > 0:
            raise ConfigurationError(
                f"Response column '{column}' has {series.null_count()} missing values"
            )
        return series.cast(pl.Float64).to_numpy()


def finite_population_factor(n_sampled: int, n_total: float | None) -> float:
    """
    Finite population correction factor for one stratum.

    Parameters
    ----------
    n_sampled : int
        Number of sampled PSUs
    n_total : float, optional
        Number of PSUs in the stratum population

    Returns
    -------
    float
        1 - n_sampled / n_total, or 1.0 when the population size is unknown
    """
    if n_total is None:
        return 1.0
    if n_total < n_sampled:
        raise ConfigurationError(
            f"Population PSU count {n_total} is smaller than the {n_sampled} sampled PSUs"
        )
    return (n_total - n_sampled) / n_total


def build_design(
    records,
    *,
    columns: DesignColumns | None = None,
    config: DesignConfig | None = None,
) -> StratifiedDesign:
    """Build an immutable stratified design from raw survey records.

    Parameters
    ----------
    records : pl.DataFrame or mapping
        One row per observation with stratum, PSU and weight columns plus
        response fields. Optional columns: domain, poststratum, psu_prob,
        population_psus (names per ``columns``).
    columns : DesignColumns, optional
        Column names of the extract.
    config : DesignConfig, optional
        Lonely PSU policy, nesting, FPC and post-stratification options.

    Returns
    -------
    StratifiedDesign

    Raises
    ------
    ConfigurationError
        Missing columns, non-positive weights, a PSU id shared across strata
        when ``nest=False`` or with differing ``psu_prob`` values,
        inconsistent probabilities within a PSU, or a
        lonely PSU under the FAIL policy.
    """
    columns = columns or DesignColumns()
    config = config or DesignConfig()
    df = records if isinstance(records, pl.DataFrame) else pl.DataFrame(records)

    missing = [c for c in (columns.stratum, columns.psu, columns.weight) if c not in df.columns]
    if missing:
        raise ConfigurationError(f"Design records are missing required columns {missing}")
    if df.height == 0:
        raise ConfigurationError("Design records are empty")

    valid_weight = (
        pl.col(columns.weight).cast(pl.Float64).is_finite() & (pl.col(columns.weight) > 0)
    ).fill_null(False)
    n_bad = df.filter(~valid_weight).height
    if n_bad:
        raise ConfigurationError(f"{n_bad} records have missing or non-positive weights")

    # PSU ids shared across strata
    shared = (
        df.group_by(columns.psu)
        .agg(pl.col(columns.stratum).n_unique().alias("n_strata"))
        .filter(pl.col("n_strata") > 1)
    )
    if shared.height and not config.nest:
        raise ConfigurationError(
            f"PSU ids {shared[columns.psu].to_list()[:5]} appear in more than one stratum; "
            "set nest=True if PSU ids are only unique within strata"
        )

    psu_key = (
        pl.concat_str(
            [pl.col(columns.stratum).cast(pl.Utf8), pl.col(columns.psu).cast(pl.Utf8)],
            separator="::",
        )
        if config.nest
        else pl.col(columns.psu).cast(pl.Utf8)
    )
    data = df.with_row_index("_obs").with_columns(
        pl.col(columns.stratum).alias("_stratum"),
        psu_key.alias("_psu"),
        pl.col(columns.weight).cast(pl.Float64).alias("_w"),
    )

    has_psu_prob = columns.psu_prob in data.columns
    if has_psu_prob:
        _check_constant_within(data, columns.psu_prob, "_psu", "PSU")
        bad_prob = data.filter(
            ~((pl.col(columns.psu_prob) > 0) & (pl.col(columns.psu_prob) <= 1)).fill_null(False)
        )
        if bad_prob.height:
            raise ConfigurationError(
                f"{bad_prob.height} records have first-stage probabilities outside (0, 1]"
            )
        if shared.height:
            conflicting = (
                data.filter(pl.col(columns.psu).is_in(shared[columns.psu].to_list()))
                .group_by(columns.psu)
                .agg(pl.col(columns.psu_prob).n_unique().alias("n_probs"))
                .filter(pl.col("n_probs") > 1)
            )
            if conflicting.height:
                raise ConfigurationError(
                    f"PSU ids {conflicting[columns.psu].to_list()[:5]} are shared across strata "
                    "with inconsistent first-stage probabilities"
                )
    has_pop = columns.population_psus in data.columns
    if has_pop:
        _check_constant_within(data, columns.population_psus, "_stratum", "stratum")

    has_poststrata = columns.poststratum in data.columns
    if has_poststrata:
        data = data.with_columns(pl.col(columns.poststratum).alias("_post"))
        if config.poststratum_totals is not None:
            data = _calibrate_to_poststrata(data, config.poststratum_totals)

    strata = _stratum_metadata(data, columns, config, has_psu_prob, has_pop)

    lonely = [s.stratum for s in strata if s.lonely]
    if lonely:
        if config.lonely_psu is LonelyPSUPolicy.FAIL:
            raise ConfigurationError(
                f"Strata {lonely} have a single PSU; choose a lonely PSU policy "
                f"({', '.join(p.value for p in LonelyPSUPolicy if p is not LonelyPSUPolicy.FAIL)})"
            )
        if config.lonely_psu is LonelyPSUPolicy.AVERAGE and len(lonely) == len(strata):
            raise ConfigurationError(
                "Lonely PSU policy 'average' needs at least one stratum with two or more PSUs"
            )

    digest = hashlib.sha1(
        data.select("_stratum", "_psu", "_w").hash_rows(seed=0).to_numpy().tobytes()
    ).hexdigest()[:16]

    logger.debug(
        "Built design %s: %d strata, %d PSUs, %d observations, %d lonely strata",
        digest,
        len(strata),
        sum(s.n_psus for s in strata),
        data.height,
        len(lonely),
    )

    return StratifiedDesign(
        data=data,
        strata=strata,
        lonely_psu=config.lonely_psu,
        columns=columns,
        has_poststrata=has_poststrata,
        design_id=digest,
    )


def _check_constant_within(data: pl.DataFrame, column: str, group: str, level: str) -> None:
    varying = (
        data.group_by(group)
        .agg(pl.col(column).n_unique().alias("n_values"))
        .filter(pl.col("n_values") > 1)
    )
    if varying.height:
        raise ConfigurationError(
            f"Column '{column}' varies within {level} {varying[group].to_list()[:5]}"
        )


def _calibrate_to_poststrata(data: pl.DataFrame, totals) -> pl.DataFrame:
    """Scale weights so each post-stratum's weighted count equals its total."""
    groups = data["_post"].unique().to_list()
    unknown = [g for g in groups if g not in totals]
    if unknown:
        raise ConfigurationError(f"No population total for post-strata {unknown}")
    lookup = pl.DataFrame(
        {"_post": list(totals.keys()), "_post_total": [float(v) for v in totals.values()]}
    ).with_columns(pl.col("_post").cast(data.schema["_post"]))
    return (
        data.join(lookup, on="_post", how="left")
        .with_columns(
            (pl.col("_w") * pl.col("_post_total") / pl.col("_w").sum().over("_post")).alias("_w")
        )
        .drop("_post_total")
        .sort("_obs")
    )


def _stratum_metadata(
    data: pl.DataFrame,
    columns: DesignColumns,
    config: DesignConfig,
    has_psu_prob: bool,
    has_pop: bool,
) -> tuple[StratumInfo, ...]:
    agg_exprs = [pl.col("_psu").unique(maintain_order=True).alias("psus")]
    if has_pop:
        agg_exprs.append(pl.first(columns.population_psus).cast(pl.Float64).alias("N_h"))
    if has_psu_prob:
        agg_exprs.append(pl.mean(columns.psu_prob).cast(pl.Float64).alias("pi_h"))

    stats = data.group_by("_stratum", maintain_order=True).agg(agg_exprs)

    strata = []
    for row in stats.iter_rows(named=True):
        psus = tuple(row["psus"])
        population = row.get("N_h")
        if not config.use_fpc:
            fpc = 1.0
        elif population is not None:
            fpc = finite_population_factor(len(psus), population)
        elif has_psu_prob:
            fpc = 1.0 - row["pi_h"]
        else:
            fpc = 1.0
        strata.append(
            StratumInfo(
                stratum=row["_stratum"],
                psus=psus,
                population_psus=population,
                fpc=fpc,
            )
        )
    return tuple(strata)
