"""
Property-based tests for the joint covariance engine.

These tests use Hypothesis to generate random stratified cluster designs
and verify properties that must hold for every design:

1. The joint covariance is exactly symmetric and positive semi-definite
2. Its diagonal equals the squared standard error of each domain run alone
3. Any submatrix equals the covariance of the corresponding subset
4. Lonely-PSU substitutes are finite and deterministic
5. When units are strata with equal PSU weight totals, the national
   variance equals p^T C p
"""

import numpy as np
import polars as pl
import pytest
from hypothesis import HealthCheck, assume, given, settings
from hypothesis import strategies as st

from pysae import (
    DesignConfig,
    Domain,
    LonelyPSUPolicy,
    build_design,
    estimate_domain,
    estimate_domains,
    joint_covariance,
)

UNITS = ("u1", "u2", "u3")


@st.composite
def designs(draw, allow_lonely=False):
    """Random records with 1-4 strata, 2-4 PSUs each, and unit tags."""
    n_strata = draw(st.integers(min_value=1, max_value=4))
    rows = {"stratum": [], "psu": [], "weight": [], "domain": [], "y": []}
    for h in range(n_strata):
        min_psus = 1 if allow_lonely and h == 0 else 2
        n_psus = draw(st.integers(min_value=min_psus, max_value=4))
        for j in range(n_psus):
            size = draw(st.integers(min_value=1, max_value=4))
            for _ in range(size):
                rows["stratum"].append(h)
                rows["psu"].append(j)
                rows["weight"].append(draw(st.floats(min_value=0.5, max_value=5.0)))
                rows["domain"].append(draw(st.sampled_from(UNITS)))
                rows["y"].append(draw(st.integers(min_value=0, max_value=1)))
    return pl.DataFrame(rows)


@st.composite
def unit_strata_designs(draw):
    """One stratum per unit; equal weight and PSU size within each stratum."""
    rows = {"stratum": [], "psu": [], "weight": [], "domain": [], "y": []}
    for unit in UNITS:
        n_psus = draw(st.integers(min_value=2, max_value=4))
        size = draw(st.integers(min_value=1, max_value=4))
        weight = draw(st.floats(min_value=0.5, max_value=5.0))
        for j in range(n_psus):
            for _ in range(size):
                rows["stratum"].append(unit)
                rows["psu"].append(j)
                rows["weight"].append(weight)
                rows["domain"].append(unit)
                rows["y"].append(draw(st.integers(min_value=0, max_value=1)))
    return pl.DataFrame(rows)


def _present_domains(records):
    tags = [u for u in UNITS if u in set(records["domain"].to_list())]
    return [Domain.national()] + [Domain.tagged(u) for u in tags]


class TestJointCovarianceProperties:
    @given(records=designs())
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_symmetric_positive_semidefinite(self, records):
        design = build_design(records)
        _, cov = estimate_domains(design, "y", _present_domains(records))
        assert np.array_equal(cov.matrix, cov.matrix.T)
        eigenvalues = np.linalg.eigvalsh(cov.matrix)
        scale = max(float(np.abs(eigenvalues).max()), 1e-300)
        assert eigenvalues.min() >= -1e-10 * scale

    @given(records=designs())
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_diagonal_matches_single_domain_variance(self, records):
        design = build_design(records)
        domains = _present_domains(records)
        _, cov = estimate_domains(design, "y", domains)
        for domain in domains:
            alone = estimate_domain(design, "y", domain)
            assert cov.variance(domain.name) == pytest.approx(alone.variance, rel=1e-9, abs=1e-18)

    @given(records=designs(), data=st.data())
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_submatrix_matches_subset_run(self, records, data):
        design = build_design(records)
        estimates = [estimate_domain(design, "y", d) for d in _present_domains(records)]
        subset = data.draw(
            st.lists(st.sampled_from(estimates), min_size=1, unique_by=lambda e: e.domain)
        )
        full = joint_covariance(design, estimates)
        part = joint_covariance(design, subset)
        np.testing.assert_allclose(
            full.submatrix([e.domain for e in subset]), part.matrix, rtol=1e-9, atol=1e-18
        )


class TestLonelyPSUProperties:
    @given(
        records=designs(allow_lonely=True),
        policy=st.sampled_from(
            [LonelyPSUPolicy.CERTAINTY, LonelyPSUPolicy.ADJUST, LonelyPSUPolicy.AVERAGE]
        ),
    )
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_finite_and_deterministic(self, records, policy):
        config = DesignConfig(lonely_psu=policy)
        if policy is LonelyPSUPolicy.AVERAGE:
            # averaging needs at least one stratum with two or more PSUs
            assume(records["stratum"].n_unique() > 1)
        first = build_design(records, config=config)
        second = build_design(records, config=config)
        a = estimate_domain(first, "y", Domain.national())
        b = estimate_domain(second, "y", Domain.national())
        assert np.isfinite(a.variance)
        assert a.variance >= 0.0
        assert a.variance == b.variance


class TestAggregationIdentityProperty:
    @given(records=unit_strata_designs())
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_national_variance_is_ptcp(self, records):
        design = build_design(records)
        domains = [Domain.national()] + [Domain.tagged(u) for u in UNITS]
        estimates, cov = estimate_domains(design, "y", domains)
        totals = np.array([e.weight_total for e in estimates[1:]])
        p = totals / totals.sum()
        sub = cov.submatrix(list(UNITS))
        assert cov.variance("national") == pytest.approx(p @ sub @ p, rel=1e-9, abs=1e-15)
        assert estimates[0].estimate == pytest.approx(p @ [e.estimate for e in estimates[1:]])
