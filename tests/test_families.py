"""Tests for links, FamilySpec construction, built-in families and the registry.

Covers log densities against scipy, analytic scores and curvatures
against finite differences, the construction-time validation of custom
families, dispersion handling, simulation support, and registry wiring.
"""

from __future__ import annotations

from dataclasses import replace

import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy import special, stats

import glmm_adaptive  # noqa: F401  (registers composite families)
from glmm_adaptive.exceptions import UsageError
from glmm_adaptive.families import (
    AnalyticScore,
    ApproximateScore,
    DensityEval,
    FamilySpec,
    as_family,
    available_families,
    binomial,
    gaussian,
    make_family,
    negative_binomial,
    poisson,
    register_family,
    resolve_family,
    with_n_phis,
)
from glmm_adaptive.links import available_links, resolve_link

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def rng():
    return np.random.default_rng(42)


@pytest.fixture()
def eta(rng):
    return rng.normal(0.0, 0.8, size=(12, 3))


def _fd_score_eta(family, y, eta, phis, h=1e-5):
    up = family.log_density(y, eta + h, phis)
    down = family.log_density(y, eta - h, phis)
    return (up - down) / (2.0 * h)


# ------------------------------------------------------------------ #
# Links
# ------------------------------------------------------------------ #


class TestLinks:
    @pytest.mark.parametrize("name", ["identity", "log", "logit", "probit", "cloglog"])
    def test_linkinv_inverts_linkfun(self, name):
        link = resolve_link(name)
        mu = np.array([0.1, 0.3, 0.5, 0.8])
        assert_allclose(link.linkinv(link.linkfun(mu)), mu, rtol=1e-10)

    @pytest.mark.parametrize("name", ["identity", "log", "logit", "probit", "cloglog"])
    def test_mu_eta_matches_finite_difference(self, name):
        link = resolve_link(name)
        eta = np.linspace(-2.0, 1.5, 9)
        h = 1e-6
        fd = (link.linkinv(eta + h) - link.linkinv(eta - h)) / (2.0 * h)
        assert_allclose(link.mu_eta(eta), fd, rtol=1e-6, atol=1e-10)

    def test_unknown_link_raises(self):
        with pytest.raises(UsageError, match="Unknown link"):
            resolve_link("sqrt_of_nothing")

    def test_available_links(self):
        assert set(available_links()) == {"identity", "log", "logit", "probit", "cloglog"}


# ------------------------------------------------------------------ #
# Log densities against scipy
# ------------------------------------------------------------------ #


class TestLogDensities:
    def test_binomial_logit(self, eta, rng):
        y = rng.integers(0, 2, size=eta.shape).astype(float)
        mu = 1.0 / (1.0 + np.exp(-eta))
        expected = stats.bernoulli.logpmf(y, mu)
        assert_allclose(binomial().log_density(y, eta), expected, rtol=1e-10)

    @pytest.mark.parametrize("link", ["probit", "cloglog"])
    def test_binomial_other_links(self, eta, rng, link):
        fam = binomial(link)
        y = rng.integers(0, 2, size=eta.shape).astype(float)
        expected = stats.bernoulli.logpmf(y, fam.linkinv(eta))
        assert_allclose(fam.log_density(y, eta), expected, rtol=1e-10)

    def test_poisson(self, eta, rng):
        y = rng.poisson(2.0, size=eta.shape).astype(float)
        expected = stats.poisson.logpmf(y, np.exp(eta))
        assert_allclose(poisson().log_density(y, eta), expected, rtol=1e-10)

    def test_negative_binomial(self, eta, rng):
        y = rng.poisson(3.0, size=eta.shape).astype(float)
        phi = np.log(2.5)
        k = 2.5
        mu = np.exp(eta)
        expected = stats.nbinom.logpmf(y, k, k / (k + mu))
        got = negative_binomial().log_density(y, eta, [phi])
        assert_allclose(got, expected, rtol=1e-10)

    def test_gaussian(self, eta, rng):
        y = rng.normal(size=eta.shape)
        phi = np.log(0.7)
        expected = stats.norm.logpdf(y, eta, 0.7)
        assert_allclose(gaussian().log_density(y, eta, [phi]), expected, rtol=1e-10)

    def test_density_returns_mean(self, eta):
        out = poisson().density(np.ones_like(eta), eta)
        assert isinstance(out, DensityEval)
        assert_allclose(out.mu_y, np.exp(eta))


# ------------------------------------------------------------------ #
# Analytic scores and curvatures
# ------------------------------------------------------------------ #


def _builtin_cases():
    return [
        ("binomial-logit", binomial("logit"), []),
        ("binomial-probit", binomial("probit"), []),
        ("binomial-cloglog", binomial("cloglog"), []),
        ("binomial10-logit", binomial(trials=10), []),
        ("binomial10-probit", binomial("probit", trials=10), []),
        ("poisson-log", poisson("log"), []),
        ("negbin-log", negative_binomial("log"), [np.log(1.7)]),
        ("gaussian-identity", gaussian("identity"), [np.log(0.8)]),
    ]


def _response_for(family, shape, rng):
    if family.support == "binary":
        return rng.integers(0, 2, size=shape).astype(float)
    if family.support == "binomial":
        return rng.integers(0, family.trials + 1, size=shape).astype(float)
    if family.support == "count":
        return rng.poisson(2.0, size=shape).astype(float)
    return rng.normal(size=shape)


class TestScores:
    @pytest.mark.parametrize(
        ("label", "family", "phis"), _builtin_cases(), ids=[c[0] for c in _builtin_cases()]
    )
    def test_score_eta_matches_fd(self, label, family, phis, eta, rng):
        y = _response_for(family, eta.shape, rng)
        analytic = family.score_eta_values(y, eta, phis)
        assert_allclose(analytic, _fd_score_eta(family, y, eta, phis), rtol=1e-5, atol=1e-7)

    @pytest.mark.parametrize(
        ("family", "phi"),
        [(negative_binomial(), np.log(1.7)), (gaussian(), np.log(0.8))],
    )
    def test_score_phis_matches_fd(self, family, phi, eta, rng):
        y = _response_for(family, eta.shape, rng)
        h = 1e-5
        fd = (
            family.log_density(y, eta, [phi + h]) - family.log_density(y, eta, [phi - h])
        ) / (2.0 * h)
        analytic = family.score_phis_values(y, eta, [phi])
        assert analytic.shape == (1, *eta.shape)
        assert_allclose(analytic[0], fd, rtol=1e-5, atol=1e-7)

    @pytest.mark.parametrize(
        ("family", "phis"),
        [
            (binomial(), []),
            (binomial(trials=10), []),
            (poisson(), []),
            (negative_binomial(), [np.log(1.7)]),
            (gaussian(), [np.log(0.8)]),
        ],
    )
    def test_curvature_matches_fd_of_score(self, family, phis, eta, rng):
        y = _response_for(family, eta.shape, rng)
        h = 1e-5
        fd = (
            family.score_eta_values(y, eta + h, phis) - family.score_eta_values(y, eta - h, phis)
        ) / (2.0 * h)
        assert_allclose(family.curvature_eta_values(y, eta, phis), fd, rtol=1e-5, atol=1e-7)

    def test_non_canonical_link_has_no_curvature(self):
        assert binomial("probit").curvature_eta is None
        assert binomial("probit").curvature_eta_values(np.ones(2), np.zeros(2)) is None

    def test_builtin_scores_are_analytic(self):
        assert isinstance(poisson().score_eta, AnalyticScore)
        assert isinstance(negative_binomial().score_phis, AnalyticScore)
        assert "curvature_eta" in poisson().capabilities

    def test_approximate_score_matches_analytic(self, eta, rng):
        fam = negative_binomial()
        approx = replace(fam, score_eta=ApproximateScore(1e-5), score_phis=ApproximateScore(1e-5))
        y = _response_for(fam, eta.shape, rng)
        phis = [np.log(3.0)]
        assert_allclose(
            approx.score_eta_values(y, eta, phis),
            fam.score_eta_values(y, eta, phis),
            rtol=1e-5,
            atol=1e-7,
        )
        assert_allclose(
            approx.score_phis_values(y, eta, phis),
            fam.score_phis_values(y, eta, phis),
            rtol=1e-5,
            atol=1e-7,
        )

    def test_score_eta_zi_is_zero_without_zero_part(self, eta):
        out = poisson().score_eta_zi_values(np.ones_like(eta), eta, (), eta)
        assert_allclose(out, 0.0)


# ------------------------------------------------------------------ #
# Custom families
# ------------------------------------------------------------------ #


def _poisson_log_dens(y, eta, mu_fun, phis, eta_zi):
    mu = mu_fun(eta)
    return y * np.log(mu) - mu - special.gammaln(y + 1.0)


class TestMakeFamily:
    def test_missing_scores_are_approximated(self):
        fam = make_family("my_poisson", "log", _poisson_log_dens, support="count")
        assert isinstance(fam.score_eta, ApproximateScore)
        assert fam.score_eta.step == pytest.approx(1e-4)
        assert fam.capabilities == frozenset()

    def test_approximated_score_close_to_builtin(self, eta, rng):
        fam = make_family("my_poisson", "log", _poisson_log_dens, fd_step=1e-5)
        y = rng.poisson(2.0, size=eta.shape).astype(float)
        assert_allclose(
            fam.score_eta_values(y, eta), poisson().score_eta_values(y, eta), rtol=1e-5, atol=1e-7
        )

    def test_missing_log_dens_raises(self):
        with pytest.raises(UsageError, match="log_dens"):
            make_family("broken", "log", None)

    def test_non_callable_capability_raises(self):
        with pytest.raises(UsageError, match="score_eta_fun"):
            make_family("broken", "log", _poisson_log_dens, score_eta_fun=3.0)

    def test_unknown_link_raises(self):
        with pytest.raises(UsageError, match="Unknown link"):
            make_family("broken", "loglog", _poisson_log_dens)

    def test_bad_fd_step_raises(self):
        with pytest.raises(UsageError, match="fd_step"):
            make_family("broken", "log", _poisson_log_dens, fd_step=0.0)

    def test_bad_support_raises(self):
        with pytest.raises(UsageError, match="support"):
            make_family("broken", "log", _poisson_log_dens, support="integers")


class TestAsFamily:
    def test_passthrough(self):
        fam = poisson()
        assert as_family(fam) is fam

    def test_by_name(self):
        assert as_family("negative_binomial").name == "negative_binomial"

    def test_from_mapping(self):
        fam = as_family(
            {"family": "mine", "link": "log", "log_dens": _poisson_log_dens, "support": "count"}
        )
        assert isinstance(fam, FamilySpec)
        assert fam.name == "mine"
        assert fam.link.name == "log"

    def test_from_object_with_link_functions(self):
        class Custom:
            family = "custom_log"
            link = "mylog"
            linkfun = staticmethod(np.log)
            linkinv = staticmethod(np.exp)
            log_dens = staticmethod(_poisson_log_dens)

        fam = as_family(Custom())
        assert fam.link.name == "mylog"
        eta = np.linspace(-1, 1, 5)
        assert_allclose(fam.link.mu_eta(eta), np.exp(eta), rtol=1e-6)

    def test_missing_log_dens_raises(self):
        with pytest.raises(UsageError, match="log_dens"):
            as_family({"family": "nothing", "link": "log"})

    def test_missing_link_raises(self):
        with pytest.raises(UsageError, match="link"):
            as_family({"family": "nolink", "log_dens": _poisson_log_dens})


# ------------------------------------------------------------------ #
# Dispersion, validation, simulation
# ------------------------------------------------------------------ #


class TestDispersionAndValidation:
    def test_with_n_phis_fixed_family_mismatch(self):
        with pytest.raises(UsageError, match="dispersion"):
            with_n_phis(negative_binomial(), 2)

    def test_with_n_phis_same_value_passthrough(self):
        fam = negative_binomial()
        assert with_n_phis(fam, 1) is fam
        assert with_n_phis(fam, None) is fam

    def test_with_n_phis_custom_family(self):
        fam = make_family("mine", "log", _poisson_log_dens)
        assert with_n_phis(fam, 2).n_phis == 2

    def test_count_support_rejects_negative(self):
        with pytest.raises(UsageError, match="counts"):
            poisson().validate_y(np.array([0.0, -1.0, 2.0]))

    def test_count_support_rejects_fractions(self):
        with pytest.raises(UsageError, match="counts"):
            poisson().validate_y(np.array([0.5, 1.0]))

    def test_binary_support(self):
        binomial().validate_y(np.array([0.0, 1.0, 1.0]))
        with pytest.raises(UsageError, match="binary"):
            binomial().validate_y(np.array([0.0, 2.0]))

    def test_rejects_nan(self):
        with pytest.raises(UsageError, match="NaN"):
            gaussian().validate_y(np.array([0.0, np.nan]))


class TestSimulation:
    def test_poisson_draws_are_counts(self, eta, rng):
        draws = poisson().simulate(eta, (), None, rng)
        assert draws.shape == eta.shape
        assert np.all(draws >= 0)
        assert np.all(draws == np.round(draws))

    def test_negative_binomial_mean(self, rng):
        eta = np.full(20000, np.log(4.0))
        draws = negative_binomial().simulate(eta, [np.log(2.0)], None, rng)
        assert draws.mean() == pytest.approx(4.0, rel=0.05)
        # Var = mu + mu^2 / k = 4 + 8
        assert draws.var() == pytest.approx(12.0, rel=0.1)

    def test_family_without_law_cannot_simulate(self, rng):
        fam = make_family("mine", "log", _poisson_log_dens)
        assert not fam.can_simulate
        with pytest.raises(UsageError, match="cannot simulate"):
            fam.simulate(np.zeros(3), (), None, rng)


class TestBinomialTrials:
    @pytest.mark.parametrize("link", ["logit", "probit", "cloglog"])
    def test_log_density_matches_scipy(self, link, eta, rng):
        fam = binomial(link, trials=10)
        y = rng.integers(0, 11, size=eta.shape).astype(float)
        mu = resolve_link(link).linkinv(eta)
        assert_allclose(
            fam.log_density(y, eta), stats.binom.logpmf(y, 10, mu), rtol=1e-8, atol=1e-10
        )

    def test_probabilities_sum_to_one(self):
        fam = binomial(trials=7)
        y = np.arange(8.0)
        total = np.exp(fam.log_density(y, np.full(8, 0.4))).sum()
        assert total == pytest.approx(1.0, abs=1e-12)

    def test_single_trial_is_bernoulli(self, eta):
        y = (eta > 0).astype(float)
        assert_allclose(binomial(trials=1).log_density(y, eta), binomial().log_density(y, eta))
        assert binomial().support == "binary"

    def test_mean_scales_with_trials(self, eta):
        assert_allclose(binomial(trials=5).mean(eta), 5.0 * special.expit(eta))

    def test_draws(self, rng):
        fam = binomial(trials=12)
        eta = np.full(4000, special.logit(0.3))
        draws = fam.simulate(eta, (), None, rng)
        assert draws.min() >= 0
        assert draws.max() <= 12
        assert draws.mean() == pytest.approx(3.6, rel=0.03)

    def test_validate_y(self):
        fam = binomial(trials=4)
        fam.validate_y(np.array([0.0, 2.0, 4.0]))
        with pytest.raises(UsageError, match="between 0 and 4"):
            fam.validate_y(np.array([0.0, 5.0]))
        with pytest.raises(UsageError, match="between 0 and 4"):
            fam.validate_y(np.array([1.5]))

    @pytest.mark.parametrize("trials", [0, -2, 2.5, True])
    def test_invalid_trials(self, trials):
        with pytest.raises(UsageError, match="trials"):
            binomial(trials=trials)


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #


class TestRegistry:
    def test_builtins_registered(self):
        names = available_families()
        for name in (
            "binomial",
            "poisson",
            "negative_binomial",
            "gaussian",
            "zi_poisson",
            "zi_negative_binomial",
            "hurdle_poisson",
            "hurdle_negative_binomial",
        ):
            assert name in names

    def test_resolve_unknown_raises(self):
        with pytest.raises(UsageError, match="Unknown family"):
            resolve_family("weibull")

    def test_register_rejects_non_family_factory(self):
        with pytest.raises(TypeError, match="FamilySpec"):
            register_family("bogus", lambda: "not a family")

    def test_register_rejects_failing_factory(self):
        def factory():
            raise RuntimeError("boom")

        with pytest.raises(TypeError, match="could not be called"):
            register_family("bogus", factory)

    def test_register_custom_factory(self):
        register_family(
            "my_poisson_registered",
            lambda: make_family("my_poisson_registered", "log", _poisson_log_dens),
        )
        assert resolve_family("my_poisson_registered").name == "my_poisson_registered"
