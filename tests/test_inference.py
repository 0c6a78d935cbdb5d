"""Tests for the Hessian, Wald tables and likelihood-ratio comparison."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy import stats

from glmm_adaptive import LRTResult, NumericalWarning, UsageError, anova, mixed_model
from glmm_adaptive.inference import covariance_from_hessian, numeric_hessian, wald_table

_NO_HESSIAN = {"compute_hessian": False}

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture(scope="module")
def data():
    rng = np.random.default_rng(42)
    n_clusters, n_per = 40, 8
    n = n_clusters * n_per
    groups = np.repeat(np.arange(n_clusters), n_per)
    X = np.column_stack([np.ones(n), rng.normal(size=n)])
    b0 = rng.normal(scale=0.6, size=n_clusters)[groups]
    b1 = rng.normal(scale=0.3, size=n_clusters)[groups]
    eta = 0.5 + b0 + (0.3 + b1) * X[:, 1]
    y = rng.poisson(np.exp(eta)).astype(float)
    y[rng.random(n) < 0.15] = 0.0
    return y, X, groups


@pytest.fixture(scope="module")
def intercept_fit(data):
    y, X, groups = data
    return mixed_model(y, X, groups, family="poisson")


@pytest.fixture(scope="module")
def slope_fit(data):
    y, X, groups = data
    return mixed_model(y, X, groups, Z=X, family="poisson", control=_NO_HESSIAN)


@pytest.fixture(scope="module")
def zi_fit(data):
    y, X, groups = data
    return mixed_model(y, X, groups, family="zi_poisson", control=_NO_HESSIAN)


@pytest.fixture(scope="module")
def nb_fit(data):
    y, X, groups = data
    return mixed_model(y, X, groups, family="negative_binomial", control=_NO_HESSIAN)


# ------------------------------------------------------------------ #
# Likelihood-ratio test
# ------------------------------------------------------------------ #


class TestAnova:
    def test_self_comparison(self, intercept_fit):
        res = anova(intercept_fit, intercept_fit)
        assert isinstance(res, LRTResult)
        assert res.statistic == 0.0
        assert res.df == 0
        assert res.p_value == 1.0

    def test_refit_is_identical(self, data, intercept_fit):
        y, X, groups = data
        again = mixed_model(y, X, groups, family="poisson", control=_NO_HESSIAN)
        res = anova(intercept_fit, again)
        assert res.df == 0
        assert res.p_value == 1.0

    def test_random_slope(self, intercept_fit, slope_fit):
        res = anova(intercept_fit, slope_fit)
        assert res.df == 2
        assert res.loglik0 == intercept_fit.loglik
        assert res.loglik1 == slope_fit.loglik
        expected = max(0.0, -2.0 * (intercept_fit.loglik - slope_fit.loglik))
        assert res.statistic == pytest.approx(expected)
        assert res.p_value == pytest.approx(stats.chi2.sf(expected, 2))

    def test_argument_order_does_not_matter(self, intercept_fit, slope_fit):
        a = anova(intercept_fit, slope_fit)
        b = anova(slope_fit, intercept_fit)
        assert a.statistic == b.statistic
        assert a.df == b.df
        assert a.aic == b.aic

    def test_zero_inflation(self, intercept_fit, zi_fit):
        res = anova(intercept_fit, zi_fit)
        assert res.df == 1
        assert 0.0 <= res.p_value <= 1.0
        assert res.statistic > 0.0

    def test_non_nested_families(self, intercept_fit, nb_fit):
        with pytest.raises(UsageError, match="not nested"):
            anova(intercept_fit, nb_fit)

    def test_different_data(self, data, intercept_fit):
        y, X, groups = data
        other = mixed_model(y + 1.0, X, groups, family="poisson", control=_NO_HESSIAN)
        with pytest.raises(UsageError, match="same data"):
            anova(intercept_fit, other)

    def test_same_size_different_design(self, data, intercept_fit):
        y, X, groups = data
        X_other = np.column_stack([X[:, 0], X[:, 1] ** 2])
        other = mixed_model(y, X_other, groups, family="poisson", control=_NO_HESSIAN)
        with pytest.raises(UsageError, match="same number of parameters"):
            anova(intercept_fit, other)

    def test_to_frame(self, intercept_fit, slope_fit):
        frame = anova(intercept_fit, slope_fit).to_frame()
        assert frame.shape == (2, 6)
        assert list(frame.index) == ["fit0", "fit1"]
        assert np.isnan(frame.loc["fit0", "LRT"])
        assert frame.loc["fit1", "df"] == 2


# ------------------------------------------------------------------ #
# Wald tables
# ------------------------------------------------------------------ #


class TestWaldTable:
    def test_columns_and_values(self, intercept_fit):
        table = wald_table(intercept_fit)
        assert list(table.columns) == ["Estimate", "Std.Err", "z-value", "p-value"]
        assert list(table.index) == list(intercept_fit.layout.beta_names)
        assert_allclose(table["Estimate"], intercept_fit.params.betas)
        assert_allclose(table["z-value"], table["Estimate"] / table["Std.Err"])
        assert np.all((table["p-value"] >= 0.0) & (table["p-value"] <= 1.0))

    def test_coef_table_delegates(self, intercept_fit):
        assert intercept_fit.coef_table().equals(wald_table(intercept_fit))

    def test_all_parameters(self, intercept_fit):
        table = wald_table(intercept_fit, part="all")
        assert len(table) == intercept_fit.layout.size

    def test_zero_part(self, zi_fit):
        table = wald_table(zi_fit, part="zero_part")
        assert list(table.index) == ["(Intercept)"]
        # fit without a Hessian
        assert table["Std.Err"].isna().all()

    def test_unknown_part(self, intercept_fit):
        with pytest.raises(UsageError, match="part"):
            wald_table(intercept_fit, part="random")


# ------------------------------------------------------------------ #
# Hessian and covariance
# ------------------------------------------------------------------ #


class TestCovariance:
    def test_positive_definite(self):
        H = np.array([[4.0, 1.0], [1.0, 3.0]])
        assert_allclose(covariance_from_hessian(H), np.linalg.inv(H), rtol=1e-12)

    def test_indefinite_warns_and_pseudo_inverts(self):
        H = np.array([[1.0, 0.0], [0.0, -2.0]])
        with pytest.warns(NumericalWarning, match="not positive definite"):
            cov = covariance_from_hessian(H)
        assert_allclose(cov, np.linalg.pinv(H))

    def test_non_finite(self):
        H = np.array([[1.0, np.nan], [np.nan, 1.0]])
        with pytest.warns(NumericalWarning, match="non-finite"):
            cov = covariance_from_hessian(H)
        assert np.isnan(cov).all()

    def test_numeric_hessian_is_symmetric(self, intercept_fit):
        from glmm_adaptive.likelihood import MarginalLikelihood

        lik = MarginalLikelihood(
            intercept_fit.family,
            intercept_fit.layout,
            intercept_fit.clusters,
            intercept_fit.control,
        )
        H = numeric_hessian(lik, intercept_fit.theta)
        assert H.shape == (3, 3)
        assert_allclose(H, H.T)
        assert np.all(np.linalg.eigvalsh(H) > 0)

    def test_vcov_matches_standard_errors(self, intercept_fit):
        se = np.sqrt(np.diag(intercept_fit.vcov))
        assert_allclose(intercept_fit.standard_errors.to_numpy(), se)
