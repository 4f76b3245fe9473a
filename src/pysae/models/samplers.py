"""
External sampler adapters.

The core treats posterior sampling as an opaque blocking call: a sampler
receives a SamplerPayload and returns an (n_draws, n_params) matrix of
draws for the directly parametrized positions. Any sampler failure or
non-convergence must surface as ExternalSamplerError.

All hierarchical adapters share one generative structure on the logit
scale,

    grand_mean      ~ Normal(0, grand_mean_scale)
    deviation_scale ~ Exponential(1)
    eta_j           ~ Normal(grand_mean, deviation_scale)
    phi_j           = invlogit(eta_j)

applied to every parametrized position j, with the payload's weighted
block log-likelihood on the proportion scale.

Three adapters are provided:

- GaussianSampler: exact Gaussian posterior of the parameters under the
  (pseudo)likelihood of the payload, with a flat prior or a fixed normal
  prior per parameter. No hierarchy; a design-based reference.
- LaplaceSampler: the hierarchical model with the likelihood linearized
  on the logit scale around its maximum. The grand mean is integrated in
  closed form and the deviation scale over a log-spaced grid, so a fit is
  a few dozen small Cholesky factorizations. Suitable for calibration
  studies with hundreds of replicates.
- PyMCSampler: the hierarchical model sampled with NUTS. Requires the
  optional ``pymc`` extra.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import numpy as np
from scipy import linalg, special

from ..core.exceptions import ConfigurationError, ExternalSamplerError
from ..estimation.constants import DEFAULT_GRAND_MEAN_SCALE, MAX_RHAT
from .aggregation import SamplerPayload

logger = logging.getLogger(__name__)

# Linearization points are kept this far inside (0, 1)
_PHI_EPS = 1e-4


class PosteriorSampler(Protocol):
    def sample(self, payload: SamplerPayload, rng: np.random.Generator) -> np.ndarray:
        """Return (n_draws, payload.n_params) posterior draws."""
        ...


def likelihood_information(payload: SamplerPayload) -> tuple[np.ndarray, np.ndarray]:
    """Shift and precision of the payload's Gaussian log-likelihood in phi.

    The (pseudo) log-likelihood is ``shift @ phi - phi @ precision @ phi / 2``
    up to a constant.
    """
    k = payload.n_params
    ybar = payload.response.mean(axis=0)
    precision = np.zeros((k, k))
    shift = np.zeros(k)
    for block in payload.blocks:
        idx = list(block.positions)
        design = payload.recovery[idx]
        factor = linalg.cho_factor(block.covariance, lower=True)
        precision += payload.n_obs * block.weight * design.T @ linalg.cho_solve(factor, design)
        shift += payload.n_obs * block.weight * design.T @ linalg.cho_solve(factor, ybar[idx])
    return shift, (precision + precision.T) / 2.0


def _cholesky(precision: np.ndarray, payload: SamplerPayload, what: str) -> np.ndarray:
    try:
        return np.linalg.cholesky(precision)
    except np.linalg.LinAlgError as exc:
        raise ExternalSamplerError(
            f"{what} precision for {payload.spec.value} is not positive definite"
        ) from exc


def _gaussian_draws(
    chol: np.ndarray, mean: np.ndarray, n_draws: int, rng: np.random.Generator
) -> np.ndarray:
    z = rng.standard_normal((n_draws, len(mean)))
    # x = L^{-T} z has covariance (L L^T)^{-1}
    return mean + linalg.solve_triangular(chol.T, z.T, lower=False).T


@dataclass(frozen=True)
class GaussianSampler:
    """Closed-form Gaussian posterior for a payload's linear-Gaussian likelihood.

    Parameters
    ----------
    n_draws : int
        Number of draws returned
    prior_sd : float, optional
        Standard deviation of an independent normal prior on each parameter
        (proportion scale). None gives a flat prior.
    prior_mean : float
        Mean of the normal prior
    """

    n_draws: int = 1000
    prior_sd: float | None = None
    prior_mean: float = 0.5

    def __post_init__(self):
        if self.n_draws < 1:
            raise ConfigurationError(f"n_draws must be positive, got {self.n_draws}")
        if self.prior_sd is not None and self.prior_sd <= 0:
            raise ConfigurationError(f"prior_sd must be positive, got {self.prior_sd}")

    def posterior(self, payload: SamplerPayload) -> tuple[np.ndarray, np.ndarray]:
        """Posterior mean and precision of the parametrized positions."""
        shift, precision = likelihood_information(payload)
        if self.prior_sd is not None:
            precision = precision + np.eye(payload.n_params) / self.prior_sd**2
            shift = shift + self.prior_mean / self.prior_sd**2
        return shift, precision

    def sample(self, payload: SamplerPayload, rng: np.random.Generator) -> np.ndarray:
        shift, precision = self.posterior(payload)
        chol = _cholesky(precision, payload, "Posterior")
        mean = linalg.cho_solve((chol, True), shift)
        return _gaussian_draws(chol, mean, self.n_draws, rng)


@dataclass(frozen=True)
class LaplaceSampler:
    """Hierarchical logit-scale model with a linearized likelihood.

    With phi ~= phi0 + phi0 (1 - phi0) (eta - logit(phi0)) around the
    likelihood maximum phi0, the likelihood becomes Gaussian in eta with
    pseudo-observation ``z`` and precision ``Q``. Given the deviation scale
    tau, and with the grand mean integrated out,

        eta | tau     ~ N(0, tau^2 I + s^2 J)
        z   | tau     ~ N(0, tau^2 I + s^2 J + Q^{-1})
        eta | tau, z  ~ N(P^{-1} Q z, P^{-1}),   P = (tau^2 I + s^2 J)^{-1} + Q

    where s is ``grand_mean_scale`` and J the all-ones matrix. tau is
    integrated over a log-spaced grid weighted by its marginal likelihood
    and the Exponential(1) prior.

    Parameters
    ----------
    n_draws : int
        Number of draws returned
    grand_mean_scale : float
        Prior standard deviation of the grand-mean logit
    n_grid : int
        Grid points for the deviation scale
    min_scale, max_scale : float
        Range of the deviation-scale grid (logit units)
    """

    n_draws: int = 1000
    grand_mean_scale: float = DEFAULT_GRAND_MEAN_SCALE
    n_grid: int = 60
    min_scale: float = 1e-3
    max_scale: float = 10.0

    def __post_init__(self):
        if self.n_draws < 1:
            raise ConfigurationError(f"n_draws must be positive, got {self.n_draws}")
        if self.grand_mean_scale <= 0:
            raise ConfigurationError(
                f"grand_mean_scale must be positive, got {self.grand_mean_scale}"
            )
        if self.n_grid < 2:
            raise ConfigurationError(f"n_grid must be at least 2, got {self.n_grid}")
        if not 0 < self.min_scale < self.max_scale:
            raise ConfigurationError(
                f"Need 0 < min_scale < max_scale, got {self.min_scale}, {self.max_scale}"
            )

    def linearize(self, payload: SamplerPayload) -> tuple[np.ndarray, np.ndarray]:
        """Logit-scale pseudo-observation ``z`` and its precision ``Q``."""
        shift, precision = likelihood_information(payload)
        chol = _cholesky(precision, payload, "Likelihood")
        phi_hat = linalg.cho_solve((chol, True), shift)
        phi0 = np.clip(phi_hat, _PHI_EPS, 1.0 - _PHI_EPS)
        slope = phi0 * (1.0 - phi0)
        z = special.logit(phi0) + (phi_hat - phi0) / slope
        return z, precision * np.outer(slope, slope)

    def _prior_precision(self, scale: float, k: int) -> np.ndarray:
        s2 = self.grand_mean_scale**2
        return (np.eye(k) - s2 / (scale**2 + k * s2) * np.ones((k, k))) / scale**2

    def scale_posterior(self, payload: SamplerPayload) -> tuple[np.ndarray, np.ndarray]:
        """Deviation-scale grid and its normalized posterior weights."""
        z, info = self.linearize(payload)
        k = len(z)
        noise = linalg.cho_solve((np.linalg.cholesky(info), True), np.eye(k))
        scales = np.geomspace(self.min_scale, self.max_scale, self.n_grid)
        log_weights = np.empty(self.n_grid)
        for g, scale in enumerate(scales):
            marginal = scale**2 * np.eye(k) + self.grand_mean_scale**2 + noise
            chol = _cholesky(marginal, payload, "Marginal")
            resid = linalg.solve_triangular(chol, z, lower=True)
            log_ml = -np.log(np.diag(chol)).sum() - 0.5 * resid @ resid
            # Exponential(1) prior; the trailing log(scale) is the grid Jacobian
            log_weights[g] = log_ml - scale + np.log(scale)
        return scales, np.exp(log_weights - special.logsumexp(log_weights))

    def sample(self, payload: SamplerPayload, rng: np.random.Generator) -> np.ndarray:
        z, info = self.linearize(payload)
        k = len(z)
        scales, weights = self.scale_posterior(payload)
        picks = rng.choice(self.n_grid, size=self.n_draws, p=weights)
        eta = np.empty((self.n_draws, k))
        for g in np.unique(picks):
            rows = np.flatnonzero(picks == g)
            chol = _cholesky(self._prior_precision(scales[g], k) + info, payload, "Posterior")
            mean = linalg.cho_solve((chol, True), info @ z)
            eta[rows] = _gaussian_draws(chol, mean, len(rows), rng)
        return special.expit(eta)


@dataclass(frozen=True)
class PyMCSampler:
    """Hierarchical logit-scale model fitted with PyMC's NUTS sampler."""

    draws: int = 1000
    tune: int = 1000
    chains: int = 2
    cores: int = 1
    target_accept: float = 0.9
    grand_mean_scale: float = DEFAULT_GRAND_MEAN_SCALE
    max_rhat: float = MAX_RHAT

    def build_model(self, payload: SamplerPayload):
        import pymc as pm
        import pytensor.tensor as pt

        with pm.Model() as model:
            grand_mean = pm.Normal("grand_mean", mu=0.0, sigma=self.grand_mean_scale)
            deviation_scale = pm.Exponential("deviation_scale", lam=1.0)
            eta = pm.Normal("eta", mu=grand_mean, sigma=deviation_scale, shape=payload.n_params)
            phi = pm.Deterministic("phi", pm.math.invlogit(eta))
            positions = pt.dot(payload.recovery, phi)

            loglik = 0.0
            for block in payload.blocks:
                idx = list(block.positions)
                dist = pm.MvNormal.dist(mu=positions[idx], cov=block.covariance)
                for row in payload.response:
                    loglik = loglik + block.weight * pm.logp(dist, row[idx])
            pm.Potential("pseudo_loglik", loglik)
        return model

    def sample(self, payload: SamplerPayload, rng: np.random.Generator) -> np.ndarray:
        try:
            import arviz as az
            import pymc as pm
        except ImportError as exc:
            raise ExternalSamplerError(
                "PyMCSampler requires the optional 'pymc' extra (pip install pysae[pymc])"
            ) from exc

        seed = int(rng.integers(0, 2**31 - 1))
        try:
            with self.build_model(payload):
                idata = pm.sample(
                    draws=self.draws,
                    tune=self.tune,
                    chains=self.chains,
                    cores=self.cores,
                    target_accept=self.target_accept,
                    random_seed=seed,
                    progressbar=False,
                    compute_convergence_checks=False,
                )
        except (RuntimeError, ValueError, FloatingPointError) as exc:
            raise ExternalSamplerError(f"PyMC sampling failed for {payload.spec.value}: {exc}") from exc

        max_rhat = float(az.rhat(idata, var_names=["phi"])["phi"].max())
        if not max_rhat <= self.max_rhat:
            raise ExternalSamplerError(
                f"{payload.spec.value} did not converge (max r-hat {max_rhat:.3f})",
                diagnostics={"max_rhat": max_rhat},
            )
        logger.debug("%s converged with max r-hat %.3f", payload.spec.value, max_rhat)

        phi = idata.posterior["phi"].stack(sample=("chain", "draw")).transpose("sample", ...)
        return np.asarray(phi.values)
