"""Tests for simulate(), fitted() and ranef()."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from glmm_adaptive import UsageError, binomial, fitted, mixed_model, ranef, simulate

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


def _data(seed, n_clusters=30, n_per=8):
    rng = np.random.default_rng(seed)
    n = n_clusters * n_per
    groups = np.repeat(np.arange(n_clusters), n_per)
    X = np.column_stack([np.ones(n), rng.normal(size=n)])
    b = rng.normal(scale=0.7, size=n_clusters)[groups]
    eta = X @ np.array([0.6, 0.4]) + b
    return X, groups, eta, rng


@pytest.fixture(scope="module")
def poisson_fit():
    X, groups, eta, rng = _data(42)
    y = rng.poisson(np.exp(eta)).astype(float)
    return mixed_model(y, X, groups, family="poisson")


@pytest.fixture(scope="module")
def binomial_fit():
    X, groups, eta, rng = _data(43)
    y = rng.binomial(1, 1.0 / (1.0 + np.exp(-eta))).astype(float)
    return mixed_model(y, X, groups, family="binomial", control={"compute_hessian": False})


@pytest.fixture(scope="module")
def gaussian_fit():
    X, groups, eta, rng = _data(44)
    y = eta + rng.normal(scale=0.5, size=eta.size)
    return mixed_model(y, X, groups, family="gaussian", control={"compute_hessian": False})


def _design_matrix(fit):
    X = np.empty((fit.n_obs, fit.layout.n_betas))
    for cluster in fit.clusters:
        X[cluster.index] = cluster.X
    return X


def _cluster_of(fit):
    out = np.empty(fit.n_obs, dtype=int)
    for i, cluster in enumerate(fit.clusters):
        out[cluster.index] = i
    return out


# ------------------------------------------------------------------ #
# simulate
# ------------------------------------------------------------------ #


class TestSimulate:
    def test_mean_subject_shape_and_dtype(self, poisson_fit):
        sims = simulate(poisson_fit, nsim=1000, type="mean_subject", random_state=1)
        assert sims.shape == (poisson_fit.n_obs, 1000)
        assert np.issubdtype(sims.dtype, np.integer)
        assert np.all(sims >= 0)

    def test_mean_subject_centred_on_population_mean(self, poisson_fit):
        sims = simulate(poisson_fit, nsim=1000, type="mean_subject", random_state=2)
        expected = fitted(poisson_fit, type="mean_subject")
        assert sims.mean() == pytest.approx(expected.mean(), rel=0.02)

    @pytest.mark.parametrize("source", ["posterior", "prior", "mode"])
    def test_subject_specific_sources(self, poisson_fit, source):
        sims = simulate(poisson_fit, nsim=5, re_source=source, random_state=3)
        assert sims.shape == (poisson_fit.n_obs, 5)

    def test_mode_source_tracks_conditional_means(self, poisson_fit):
        sims = simulate(poisson_fit, nsim=2000, re_source="mode", random_state=4)
        expected = fitted(poisson_fit, type="subject_specific")
        assert_allclose(sims.mean(axis=1).mean(), expected.mean(), rtol=0.02)

    def test_reproducible(self, poisson_fit):
        a = simulate(poisson_fit, nsim=3, random_state=7)
        b = simulate(poisson_fit, nsim=3, random_state=7)
        c = simulate(poisson_fit, nsim=3, random_state=8)
        assert_array_equal(a, b)
        assert not np.array_equal(a, c)

    def test_accepts_generator(self, poisson_fit):
        sims = simulate(poisson_fit, nsim=2, random_state=np.random.default_rng(0))
        assert sims.shape == (poisson_fit.n_obs, 2)

    def test_parameter_uncertainty(self, poisson_fit):
        sims = simulate(poisson_fit, nsim=3, parameter_uncertainty=True, random_state=9)
        assert sims.shape == (poisson_fit.n_obs, 3)
        assert np.issubdtype(sims.dtype, np.integer)

    def test_parameter_uncertainty_needs_vcov(self, binomial_fit):
        with pytest.raises(UsageError, match="vcov"):
            simulate(binomial_fit, parameter_uncertainty=True)

    def test_binomial_draws_are_binary(self, binomial_fit):
        sims = simulate(binomial_fit, nsim=50, random_state=10)
        assert set(np.unique(sims)) <= {0, 1}

    def test_gaussian_draws_are_real(self, gaussian_fit):
        sims = simulate(gaussian_fit, nsim=4, random_state=11)
        assert sims.dtype == float

    def test_posterior_draws_are_gaussian_around_mode(self):
        from glmm_adaptive.simulate import _draw_effects

        mode = np.array([0.3, -0.2])
        post_var = np.array([[0.04, 0.01], [0.01, 0.09]])
        rng = np.random.default_rng(12)
        B = _draw_effects(rng, "posterior", mode, post_var, np.eye(2), 20000)
        assert_allclose(B.mean(axis=0), mode, atol=0.01)
        assert_allclose(np.cov(B, rowvar=False), post_var, atol=0.005)

    def test_binomial_trials_draws_are_bounded(self):
        X, groups, eta, rng = _data(45, n_clusters=20, n_per=5)
        y = rng.binomial(8, 1.0 / (1.0 + np.exp(-eta))).astype(float)
        fit = mixed_model(
            y, X, groups, family=binomial(trials=8), control={"compute_hessian": False}
        )
        sims = simulate(fit, nsim=20, random_state=13)
        assert np.issubdtype(sims.dtype, np.integer)
        assert sims.min() >= 0
        assert sims.max() <= 8

    @pytest.mark.parametrize(
        ("kwargs", "match"),
        [
            ({"type": "conditional"}, "simulation type"),
            ({"re_source": "empirical"}, "re_source"),
            ({"nsim": 0}, "nsim"),
            ({"nsim": 2.5}, "nsim"),
        ],
    )
    def test_invalid_arguments(self, poisson_fit, kwargs, match):
        with pytest.raises(UsageError, match=match):
            simulate(poisson_fit, **kwargs)


# ------------------------------------------------------------------ #
# fitted
# ------------------------------------------------------------------ #


class TestFitted:
    def test_mean_subject(self, poisson_fit):
        X = _design_matrix(poisson_fit)
        expected = np.exp(X @ poisson_fit.params.betas)
        assert_allclose(fitted(poisson_fit), expected, rtol=1e-12)

    def test_subject_specific(self, poisson_fit):
        X = _design_matrix(poisson_fit)
        b = poisson_fit.modes[_cluster_of(poisson_fit), 0]
        expected = np.exp(X @ poisson_fit.params.betas + b)
        assert_allclose(fitted(poisson_fit, type="subject_specific"), expected, rtol=1e-12)

    def test_marginal_log_link(self, poisson_fit):
        # E[exp(x'beta + b)] = exp(x'beta + D / 2) for a random intercept
        scale = np.exp(poisson_fit.D[0, 0] / 2.0)
        expected = fitted(poisson_fit) * scale
        assert_allclose(fitted(poisson_fit, type="marginal"), expected, rtol=1e-6)

    def test_marginal_identity_link(self, gaussian_fit):
        assert_allclose(
            fitted(gaussian_fit, type="marginal"), fitted(gaussian_fit), rtol=1e-10
        )

    def test_unknown_type(self, poisson_fit):
        with pytest.raises(UsageError, match="fitted type"):
            fitted(poisson_fit, type="population")


# ------------------------------------------------------------------ #
# ranef
# ------------------------------------------------------------------ #


class TestRanef:
    def test_frame(self, poisson_fit):
        frame = ranef(poisson_fit)
        assert isinstance(frame, pd.DataFrame)
        assert frame.shape == (30, 1)
        assert list(frame.index) == list(range(30))
        assert_allclose(frame.to_numpy(), poisson_fit.modes)

    def test_with_post_vars(self, poisson_fit):
        frame, post_vars = ranef(poisson_fit, post_vars=True)
        assert post_vars.shape == (30, 1, 1)
        assert np.all(post_vars[:, 0, 0] > 0)
        assert frame.shape == (30, 1)

    def test_modes_shrink_toward_zero(self, poisson_fit):
        assert abs(ranef(poisson_fit).to_numpy().mean()) < 0.3
