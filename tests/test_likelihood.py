"""Tests for the marginal likelihood: gradient, caching, parallel reduction."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from glmm_adaptive.clusters import build_clusters
from glmm_adaptive.control import Control
from glmm_adaptive.families import make_family, negative_binomial, poisson
from glmm_adaptive.likelihood import NLL_SENTINEL, MarginalLikelihood
from glmm_adaptive.optimizer import ParameterOptimizer
from glmm_adaptive.parameters import ParameterLayout, ParameterVector
from glmm_adaptive.zero_inflation import zi_poisson

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


def _count_data(seed, n_clusters=12, n_per=6, slope=False, zero_part=False):
    rng = np.random.default_rng(seed)
    n = n_clusters * n_per
    groups = np.repeat(np.arange(n_clusters), n_per)
    x = rng.normal(size=n)
    X = np.column_stack([np.ones(n), x])
    Z = X.copy() if slope else np.ones((n, 1))
    b = rng.normal(scale=0.5, size=(n_clusters, Z.shape[1]))
    eta = X @ np.array([0.5, 0.3]) + np.sum(Z * b[groups], axis=1)
    y = rng.poisson(np.exp(eta)).astype(float)
    if zero_part:
        y[rng.random(n) < 0.25] = 0.0
    X_zi = np.ones((n, 1)) if zero_part else None
    return build_clusters(y, X, groups, Z, X_zi)


def _layout(q=1, n_phis=0, zero_part=False):
    re_names = ("(Intercept)", "x") if q == 2 else ("(Intercept)",)
    return ParameterLayout(
        beta_names=("(Intercept)", "x"),
        re_names=re_names,
        n_phis=n_phis,
        gamma_names=("(Intercept)",) if zero_part else (),
    )


def _fd_gradient(likelihood, theta, h=1e-5):
    out = np.empty_like(theta)
    for j in range(theta.size):
        step = np.zeros_like(theta)
        step[j] = h
        up = likelihood.objective(theta + step)
        down = likelihood.objective(theta - step)
        out[j] = (up - down) / (2.0 * h)
    return out


# ------------------------------------------------------------------ #
# Gradient
# ------------------------------------------------------------------ #


class TestGradient:
    def test_random_intercept_poisson(self):
        clusters = _count_data(1)
        layout = _layout()
        lik = MarginalLikelihood(poisson(), layout, clusters, Control(n_agq=15))
        theta = np.array([0.4, 0.2, np.log(0.6)])
        assert_allclose(lik.gradient(theta), _fd_gradient(lik, theta), rtol=1e-4, atol=1e-5)

    def test_random_slope_poisson(self):
        clusters = _count_data(2, slope=True)
        layout = _layout(q=2)
        lik = MarginalLikelihood(poisson(), layout, clusters, Control(n_agq=21))
        theta = np.array([0.4, 0.2, np.log(0.5), 0.1, np.log(0.4)])
        assert_allclose(lik.gradient(theta), _fd_gradient(lik, theta), rtol=1e-4, atol=1e-5)

    def test_low_order_gradient_tracks_exact_derivative(self):
        # posterior-weighted gradient differentiates the integral, not the rule
        clusters = _count_data(2, slope=True)
        layout = _layout(q=2)
        theta = np.array([0.4, 0.2, np.log(0.5), 0.1, np.log(0.4)])
        low = MarginalLikelihood(poisson(), layout, clusters, Control(n_agq=9))
        high = MarginalLikelihood(poisson(), layout, clusters, Control(n_agq=31))
        exact = _fd_gradient(high, theta)
        assert_allclose(high.gradient(theta), exact, rtol=1e-4, atol=1e-5)
        assert_allclose(low.gradient(theta), exact, rtol=2e-3, atol=1e-3)

    def test_negative_binomial_dispersion(self):
        clusters = _count_data(3)
        layout = _layout(n_phis=1)
        lik = MarginalLikelihood(negative_binomial(), layout, clusters, Control(n_agq=15))
        theta = np.array([0.4, 0.2, np.log(0.5), np.log(3.0)])
        assert_allclose(lik.gradient(theta), _fd_gradient(lik, theta), rtol=1e-4, atol=1e-5)

    def test_zero_inflated_gammas(self):
        clusters = _count_data(4, zero_part=True)
        layout = _layout(zero_part=True)
        lik = MarginalLikelihood(zi_poisson(), layout, clusters, Control(n_agq=15))
        theta = np.array([0.4, 0.2, np.log(0.5), -1.0])
        assert_allclose(lik.gradient(theta), _fd_gradient(lik, theta), rtol=1e-4, atol=1e-5)


# ------------------------------------------------------------------ #
# Evaluation bookkeeping
# ------------------------------------------------------------------ #


class TestEvaluation:
    def setup_method(self):
        self.clusters = _count_data(5)
        self.layout = _layout()
        self.theta = np.array([0.4, 0.2, np.log(0.6)])

    def test_total_is_sum_of_clusters(self):
        lik = MarginalLikelihood(poisson(), self.layout, self.clusters, Control())
        ev = lik.evaluate(self.theta)
        assert ev.finite
        assert ev.loglik == pytest.approx(np.sum(ev.cluster_loglik), rel=1e-14)
        assert len(ev.modes) == len(self.clusters)

    def test_same_theta_is_cached(self):
        lik = MarginalLikelihood(poisson(), self.layout, self.clusters, Control())
        first = lik.evaluate(self.theta)
        second = lik.evaluate(self.theta.copy())
        assert first is second
        assert lik.n_evaluations == 1

    def test_new_theta_recomputes(self):
        lik = MarginalLikelihood(poisson(), self.layout, self.clusters, Control())
        lik.evaluate(self.theta)
        lik.evaluate(self.theta + 0.01)
        assert lik.n_evaluations == 2

    def test_value_and_grad_returns_copies(self):
        lik = MarginalLikelihood(poisson(), self.layout, self.clusters, Control())
        _, grad = lik.value_and_grad(self.theta)
        grad[:] = 0.0
        assert np.any(lik.gradient(self.theta) != 0.0)

    def test_parallel_matches_sequential_bitwise(self):
        serial = MarginalLikelihood(poisson(), self.layout, self.clusters, Control(n_jobs=1))
        threaded = MarginalLikelihood(poisson(), self.layout, self.clusters, Control(n_jobs=3))
        a = serial.evaluate(self.theta)
        b = threaded.evaluate(self.theta)
        assert a.nll == b.nll
        assert_array_equal(a.gradient, b.gradient)
        assert_array_equal(a.cluster_loglik, b.cluster_loglik)

    def test_with_order(self):
        lik = MarginalLikelihood(poisson(), self.layout, self.clusters, Control())
        low = lik.with_order(3)
        assert lik.order == 11
        assert low.order == 3
        assert low.n_evaluations == 0

    def test_mode_flags_are_counted(self):
        lik = MarginalLikelihood(
            poisson(), self.layout, self.clusters, Control(mode_max_iter=1)
        )
        counts = lik.evaluate(np.array([-3.0, 0.0, np.log(2.0)])).flag_counts()
        assert counts.get("mode_not_converged", 0) > 0

    def test_non_finite_gives_sentinel(self):
        def log_dens(y, eta, mu_fun, phis, eta_zi):
            return np.full(np.broadcast(y, eta).shape, np.nan)

        broken = make_family("broken", "log", log_dens, support="count")
        lik = MarginalLikelihood(broken, self.layout, self.clusters, Control())
        ev = lik.evaluate(self.theta)
        assert not ev.finite
        assert ev.nll == NLL_SENTINEL
        assert_array_equal(ev.gradient, np.zeros(self.layout.size))


# ------------------------------------------------------------------ #
# Optimizer
# ------------------------------------------------------------------ #


@pytest.mark.filterwarnings("ignore::glmm_adaptive.exceptions.OptimizerConvergenceWarning")
class TestOptimizer:
    def test_reaches_stationary_point(self):
        clusters = _count_data(6, n_clusters=20)
        layout = _layout()
        lik = MarginalLikelihood(poisson(), layout, clusters, Control())
        theta0 = layout.pack(ParameterVector(betas=np.zeros(2), D=np.eye(1)))
        result = ParameterOptimizer(lik, Control()).run(theta0)
        assert result.evaluation.nll <= lik.objective(theta0)
        assert np.max(np.abs(result.evaluation.gradient)) < 1e-3
        assert result.n_warm_iter > 0

    def test_lbfgsb_agrees_with_bfgs(self):
        clusters = _count_data(7, n_clusters=20)
        layout = _layout()
        theta0 = np.zeros(layout.size)
        fits = []
        for method in ("BFGS", "L-BFGS-B"):
            control = Control(method=method)
            lik = MarginalLikelihood(poisson(), layout, clusters, control)
            fits.append(ParameterOptimizer(lik, control).run(theta0))
        assert fits[0].evaluation.nll == pytest.approx(fits[1].evaluation.nll, abs=1e-4)
