"""
Aggregation model family.

Four hierarchical formulations relate a national parameter and L
subnational parameters through the aggregation identity

    national = sum_u p_u * unit_u,      P = [p^T ; I_L]   ((L+1) x L)

The joint design-based covariance of (national, unit_1..unit_L) is
singular (rank L), so each formulation picks full-rank covariance
submatrices for its likelihood and recovers the positions it does not
parametrize deterministically.

Positions are indexed 0 = national, 1..L = units. A SpecPolicy holds:

- ``parameters``: positions the sampler parametrizes directly (phi)
- ``recovery``: R, with the full position vector equal to R @ phi; the
  likelihood mean of every position is read from the same map
- ``blocks``: likelihood blocks (positions, weight); the log-likelihood is
  sum_b weight_b * log N(y[b] | (R phi)[b], C[b, b])
- ``diagonal_only``: use only the diagonal of each block covariance

    Spec          phi                           blocks                       R
    NO_AGG        all L+1 positions             L+1 singletons (diagonal)    I
    BOTTOM_UP     units                         units                        P
    DROP_SMALLEST national + units except s     those L positions            B_s
    GEOM_MEAN     units                         L+1 leave-one-out, 1/(L+1)   P

B_s maps phi to itself on the parametrized positions and recovers the
smallest unit s as (phi_national - sum_{l != s} p_l phi_l) / p_s.

GEOM_MEAN models all L+1 positions, since each leave-one-out block reads
its mean from the full vector P phi, national included. Its free
parameters are only the L units, with national = p . units, so its draws
satisfy the aggregation identity exactly. A free national parameter
would leave the identity to the likelihood alone.

Fitting is delegated to an external sampler (see ``samplers``); this
module only builds payloads and applies the recovery map to draws.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

import numpy as np
from scipy import stats

from ..core.exceptions import ConfigurationError, ExternalSamplerError, SingularSubmatrixError
from ..estimation.constants import NATIONAL
from ..estimation.variance import JointCovariance


class ModelSpec(str, Enum):
    """Aggregation model formulations."""

    NO_AGG = "no_agg"
    BOTTOM_UP = "bottom_up"
    DROP_SMALLEST = "drop_smallest"
    GEOM_MEAN = "geom_mean"


@dataclass(frozen=True)
class AggregationMatrix:
    """Population weights of L subnational units and the map P."""

    units: tuple[str, ...]
    weights: np.ndarray
    national: str = NATIONAL

    def __post_init__(self):
        weights = np.array(self.weights, dtype=float)
        if weights.ndim != 1 or len(weights) != len(self.units):
            raise ConfigurationError("Aggregation weights must be one value per unit")
        if len(weights) < 2:
            raise ConfigurationError("Aggregation needs at least two subnational units")
        if np.any(weights <= 0) or not np.all(np.isfinite(weights)):
            raise ConfigurationError(f"Aggregation weights must be positive, got {weights}")
        weights = weights / weights.sum()
        weights.setflags(write=False)
        object.__setattr__(self, "weights", weights)
        object.__setattr__(self, "units", tuple(self.units))

    @classmethod
    def from_populations(
        cls, sizes: Mapping[str, float], national: str = NATIONAL
    ) -> AggregationMatrix:
        """Build from population sizes; weights are population shares."""
        return cls(units=tuple(sizes), weights=np.array(list(sizes.values()), dtype=float),
                   national=national)

    @property
    def n_units(self) -> int:
        return len(self.units)

    @property
    def labels(self) -> tuple[str, ...]:
        return (self.national, *self.units)

    @property
    def matrix(self) -> np.ndarray:
        return np.vstack([self.weights, np.eye(self.n_units)])

    @property
    def smallest(self) -> int:
        """Index (0-based, among units) of the smallest-population unit."""
        return int(np.argmin(self.weights))

    def aggregate(self, unit_values: np.ndarray) -> np.ndarray:
        """National value(s) implied by unit values along the last axis."""
        return np.asarray(unit_values) @ self.weights

    def implied_covariance(self, unit_variances) -> np.ndarray:
        """P diag(v) P^T, the singular joint covariance for independent units."""
        v = np.asarray(unit_variances, dtype=float)
        if v.shape != (self.n_units,) or np.any(v <= 0):
            raise ConfigurationError(
                f"Unit variances must be {self.n_units} positive values, got {v}"
            )
        p = self.matrix
        return p @ np.diag(v) @ p.T


@dataclass(frozen=True)
class LikelihoodBlock:
    positions: tuple[int, ...]
    weight: float = 1.0


@dataclass(frozen=True)
class SpecPolicy:
    """Position selection, covariance selection, and recovery for one spec."""

    spec: ModelSpec
    parameters: tuple[int, ...]
    blocks: tuple[LikelihoodBlock, ...]
    recovery: np.ndarray
    diagonal_only: bool = False

    @property
    def n_params(self) -> int:
        return len(self.parameters)

    @property
    def n_positions(self) -> int:
        return self.recovery.shape[0]

    def recover(self, draws: np.ndarray) -> np.ndarray:
        """Map (n_draws, n_params) parameter draws to all L+1 positions."""
        return np.asarray(draws) @ self.recovery.T

    def block_covariance(self, block: LikelihoodBlock, covariance: np.ndarray) -> np.ndarray:
        idx = list(block.positions)
        sub = covariance[np.ix_(idx, idx)]
        return np.diag(np.diag(sub)) if self.diagonal_only else sub

    def log_likelihood(self, phi: np.ndarray, y: np.ndarray, covariance: np.ndarray) -> float:
        """(Pseudo) log-likelihood of parameters ``phi`` given estimates ``y``."""
        mean = self.recovery @ np.asarray(phi, dtype=float)
        total = 0.0
        for block in self.blocks:
            idx = list(block.positions)
            total += block.weight * stats.multivariate_normal.logpdf(
                np.asarray(y)[idx], mean=mean[idx], cov=self.block_covariance(block, covariance)
            )
        return float(total)


def build_policy(spec: ModelSpec, aggregation: AggregationMatrix) -> SpecPolicy:
    """Resolve a model spec into its position/covariance/recovery policy."""
    spec = ModelSpec(spec)
    n_units = aggregation.n_units
    n_pos = n_units + 1
    units = tuple(range(1, n_pos))

    if spec is ModelSpec.NO_AGG:
        return SpecPolicy(
            spec=spec,
            parameters=tuple(range(n_pos)),
            blocks=tuple(LikelihoodBlock((i,)) for i in range(n_pos)),
            recovery=np.eye(n_pos),
            diagonal_only=True,
        )
    if spec is ModelSpec.BOTTOM_UP:
        return SpecPolicy(
            spec=spec,
            parameters=units,
            blocks=(LikelihoodBlock(units),),
            recovery=aggregation.matrix,
        )
    if spec is ModelSpec.DROP_SMALLEST:
        s = aggregation.smallest
        parameters = (0,) + tuple(1 + u for u in range(n_units) if u != s)
        recovery = np.zeros((n_pos, len(parameters)))
        for j, pos in enumerate(parameters):
            recovery[pos, j] = 1.0
        p = aggregation.weights
        recovery[1 + s, 0] = 1.0 / p[s]
        for j, pos in enumerate(parameters[1:], start=1):
            recovery[1 + s, j] = -p[pos - 1] / p[s]
        return SpecPolicy(
            spec=spec,
            parameters=parameters,
            blocks=(LikelihoodBlock(parameters),),
            recovery=recovery,
        )
    if spec is ModelSpec.GEOM_MEAN:
        weight = 1.0 / n_pos
        blocks = tuple(
            LikelihoodBlock(tuple(i for i in range(n_pos) if i != dropped), weight)
            for dropped in range(n_pos)
        )
        return SpecPolicy(
            spec=spec,
            parameters=units,
            blocks=blocks,
            recovery=aggregation.matrix,
        )
    raise ConfigurationError(f"Unknown model spec {spec!r}")


@dataclass(frozen=True)
class CovarianceBlock:
    positions: tuple[int, ...]
    covariance: np.ndarray
    weight: float


@dataclass(frozen=True)
class SamplerPayload:
    """Everything an external sampler receives for one fit."""

    spec: ModelSpec
    n_obs: int
    n_locations: int
    response: np.ndarray
    se: np.ndarray
    blocks: tuple[CovarianceBlock, ...]
    recovery: np.ndarray
    parameter_positions: tuple[int, ...]

    @property
    def n_params(self) -> int:
        return len(self.parameter_positions)


def build_payload(
    spec: ModelSpec,
    estimates,
    covariance,
    aggregation: AggregationMatrix,
) -> SamplerPayload:
    """Assemble the sampler payload for one model spec.

    Parameters
    ----------
    spec : ModelSpec
        Model formulation
    estimates : array-like
        Position estimates (national first), shape (L+1,) or (n_obs, L+1)
    covariance : JointCovariance or ndarray
        (L+1) x (L+1) joint covariance, ordered like ``aggregation.labels``
    aggregation : AggregationMatrix
        Unit weights

    Raises
    ------
    ConfigurationError
        Shape mismatch, non-finite values, or a negative covariance diagonal
    SingularSubmatrixError
        A likelihood block covariance is not positive definite
    """
    policy = build_policy(spec, aggregation)
    n_pos = policy.n_positions

    if isinstance(covariance, JointCovariance):
        matrix = covariance.submatrix(aggregation.labels)
    else:
        matrix = np.asarray(covariance, dtype=float)
    response = np.atleast_2d(np.asarray(estimates, dtype=float))

    if matrix.shape != (n_pos, n_pos):
        raise ConfigurationError(f"Covariance has shape {matrix.shape}; expected {(n_pos, n_pos)}")
    if response.shape[1] != n_pos:
        raise ConfigurationError(f"Estimates have {response.shape[1]} positions; expected {n_pos}")
    if not (np.all(np.isfinite(matrix)) and np.all(np.isfinite(response))):
        raise ConfigurationError("Estimates and covariance must be finite")
    diag = np.diag(matrix)
    if np.any(diag < 0):
        raise ConfigurationError(f"Covariance diagonal has negative entries {diag.tolist()}")

    blocks = []
    for block in policy.blocks:
        sub = policy.block_covariance(block, matrix)
        try:
            np.linalg.cholesky(sub)
        except np.linalg.LinAlgError as exc:
            raise SingularSubmatrixError(policy.spec.value, block.positions) from exc
        sub = sub.copy()
        sub.setflags(write=False)
        blocks.append(CovarianceBlock(block.positions, sub, block.weight))

    return SamplerPayload(
        spec=policy.spec,
        n_obs=response.shape[0],
        n_locations=n_pos,
        response=response,
        se=np.sqrt(diag),
        blocks=tuple(blocks),
        recovery=policy.recovery,
        parameter_positions=policy.parameters,
    )


def fit(payload: SamplerPayload, sampler, rng: np.random.Generator) -> np.ndarray:
    """Run an external sampler and recover draws for all L+1 positions.

    Returns
    -------
    np.ndarray
        (n_draws, L+1) posterior draws, national first

    Raises
    ------
    ExternalSamplerError
        If the sampler fails or returns draws of the wrong shape
    """
    draws = np.asarray(sampler.sample(payload, rng), dtype=float)
    if draws.ndim != 2 or draws.shape[1] != payload.n_params or draws.shape[0] == 0:
        raise ExternalSamplerError(
            f"Sampler returned draws of shape {draws.shape}; expected (n_draws, {payload.n_params})"
        )
    if not np.all(np.isfinite(draws)):
        raise ExternalSamplerError("Sampler returned non-finite draws")
    return draws @ payload.recovery.T


def identity_gap(draws: np.ndarray, aggregation: AggregationMatrix) -> float:
    """Mean absolute violation of national = p . units across full draws."""
    draws = np.asarray(draws)
    return float(np.mean(np.abs(draws[:, 0] - aggregation.aggregate(draws[:, 1:]))))
