"""Aggregation model family and external sampler adapters."""

from .aggregation import (
    AggregationMatrix,
    CovarianceBlock,
    LikelihoodBlock,
    ModelSpec,
    SamplerPayload,
    SpecPolicy,
    build_payload,
    build_policy,
    fit,
    identity_gap,
)
from .samplers import (
    GaussianSampler,
    LaplaceSampler,
    PosteriorSampler,
    PyMCSampler,
    likelihood_information,
)

__all__ = [
    "AggregationMatrix",
    "CovarianceBlock",
    "GaussianSampler",
    "LaplaceSampler",
    "LikelihoodBlock",
    "ModelSpec",
    "PosteriorSampler",
    "PyMCSampler",
    "SamplerPayload",
    "SpecPolicy",
    "build_payload",
    "build_policy",
    "fit",
    "identity_gap",
    "likelihood_information",
]
