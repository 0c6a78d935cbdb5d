"""Standard errors, Wald tests and likelihood-ratio model comparison.

The covariance of the estimates is the inverse of the Hessian of the
negative log-likelihood at the optimum.  The Hessian is approximated by
centered differences of the analytic (envelope) gradient with
``statsmodels.tools.numdiff.approx_fprime`` and symmetrized.  A
Hessian that is not positive definite is pseudo-inverted with a
:class:`~.exceptions.NumericalWarning`.

:func:`anova` compares two fits by a likelihood-ratio test against a
chi-square reference.  It refuses fits to different data and pairs of
models that are not nested.
"""

from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.tools.numdiff import approx_fprime

from ._results import LRTResult, MixedModelFit
from .exceptions import NumericalWarning, UsageError
from .likelihood import MarginalLikelihood

# ------------------------------------------------------------------ #
# Hessian and covariance
# ------------------------------------------------------------------ #


def numeric_hessian(
    likelihood: MarginalLikelihood, theta: np.ndarray, step: float = 1e-4
) -> np.ndarray:
    """Centered-difference Hessian of the negative log-likelihood."""
    theta = np.asarray(theta, dtype=float)
    H = approx_fprime(theta, likelihood.gradient, epsilon=step, centered=True)
    H = np.atleast_2d(np.asarray(H, dtype=float)).reshape(theta.size, theta.size)
    return 0.5 * (H + H.T)


def covariance_from_hessian(H: np.ndarray) -> np.ndarray:
    """Invert *H*; fall back to the pseudo-inverse when it is not positive definite."""
    H = np.asarray(H, dtype=float)
    if not np.all(np.isfinite(H)):
        warnings.warn(
            "Hessian has non-finite entries; standard errors are unavailable.",
            NumericalWarning,
            stacklevel=2,
        )
        return np.full(H.shape, np.nan)
    try:
        L = np.linalg.cholesky(H)
    except np.linalg.LinAlgError:
        warnings.warn(
            "Hessian is not positive definite at the optimum; using the "
            "pseudo-inverse. Some parameters may be poorly identified.",
            NumericalWarning,
            stacklevel=2,
        )
        cov = np.linalg.pinv(H)
        return 0.5 * (cov + cov.T)
    L_inv = np.linalg.inv(L)
    return L_inv.T @ L_inv


# ------------------------------------------------------------------ #
# Wald table
# ------------------------------------------------------------------ #


def wald_table(fit: MixedModelFit, part: str = "main") -> pd.DataFrame:
    """Estimates, standard errors, z-values and two-sided p-values.

    Args:
        fit: Fitted model.
        part: ``"main"`` (betas), ``"zero_part"`` (gammas) or
            ``"all"`` (every unconstrained parameter).

    Raises:
        UsageError: On an unknown *part*.
    """
    layout = fit.layout
    if part == "main":
        block, names = layout.block("betas"), list(layout.beta_names)
    elif part == "zero_part":
        block, names = layout.block("gammas"), list(layout.gamma_names)
    elif part == "all":
        block, names = slice(0, layout.size), layout.names()
    else:
        raise UsageError(f"part must be 'main', 'zero_part' or 'all', got {part!r}.")

    estimate = fit.theta[block]
    if fit.vcov is None:
        se = np.full(estimate.shape, np.nan)
    else:
        se = np.sqrt(np.clip(np.diag(fit.vcov)[block], 0.0, None))
    with np.errstate(divide="ignore", invalid="ignore"):
        z = estimate / se
    p = 2.0 * stats.norm.sf(np.abs(z))
    return pd.DataFrame(
        {"Estimate": estimate, "Std.Err": se, "z-value": z, "p-value": p},
        index=names,
    )


# ------------------------------------------------------------------ #
# Likelihood-ratio test
# ------------------------------------------------------------------ #


def _stack(fit: MixedModelFit, attr: str) -> np.ndarray | None:
    """Reassemble a per-cluster design block in observation order."""
    blocks = [getattr(c, attr) for c in fit.clusters]
    if blocks[0] is None:
        return None
    out = np.empty((fit.n_obs, blocks[0].shape[1]))
    for cluster, block in zip(fit.clusters, blocks):
        out[cluster.index] = block
    return out


def _same_data(fit0: MixedModelFit, fit1: MixedModelFit) -> bool:
    if fit0.n_obs != fit1.n_obs or fit0.group_ids != fit1.group_ids:
        return False
    if not np.array_equal(fit0.response(), fit1.response()):
        return False
    return all(
        np.array_equal(c0.index, c1.index)
        for c0, c1 in zip(fit0.clusters, fit1.clusters)
    )


def _spans(small: np.ndarray | None, large: np.ndarray | None) -> bool:
    """Whether the columns of *small* lie in the column space of *large*."""
    if small is None:
        return True
    if large is None:
        return False
    rank_large = np.linalg.matrix_rank(large)
    return np.linalg.matrix_rank(np.column_stack([large, small])) == rank_large


def _is_nested(small: MixedModelFit, large: MixedModelFit) -> bool:
    fam_s, fam_l = small.family, large.family
    base_l = fam_l.base.name if fam_l.base is not None else None
    if fam_s.name != fam_l.name and fam_s.name != base_l:
        return False
    ls, ll = small.layout, large.layout
    if (
        ls.n_betas > ll.n_betas
        or ls.q > ll.q
        or ls.n_phis > ll.n_phis
        or ls.n_gammas > ll.n_gammas
        or ls.q_zi > ll.q_zi
    ):
        return False
    return all(
        _spans(_stack(small, attr), _stack(large, attr))
        for attr in ("X", "Z", "X_zi", "Z_zi")
    )


def _identical(fit0: MixedModelFit, fit1: MixedModelFit) -> bool:
    if fit0 is fit1:
        return True
    if fit0.family.name != fit1.family.name or fit0.layout != fit1.layout:
        return False
    for attr in ("X", "Z", "X_zi", "Z_zi"):
        a, b = _stack(fit0, attr), _stack(fit1, attr)
        if (a is None) != (b is None) or (a is not None and not np.array_equal(a, b)):
            return False
    return True


def anova(fit0: MixedModelFit, fit1: MixedModelFit) -> LRTResult:
    """Likelihood-ratio test of two nested fits.

    The fit with fewer parameters is taken as the null model.  A model
    compared with itself yields statistic 0 and p-value 1.

    Raises:
        UsageError: If the fits use different data, are not nested, or
            are different models with the same number of parameters.
    """
    if not _same_data(fit0, fit1):
        raise UsageError("The two fits were not fit to the same data.")

    if _identical(fit0, fit1):
        return LRTResult(
            statistic=0.0,
            df=0,
            p_value=1.0,
            loglik0=fit0.loglik,
            loglik1=fit1.loglik,
            aic=(fit0.aic, fit1.aic),
            bic=(fit0.bic, fit1.bic),
        )

    small, large = (fit0, fit1) if fit0.df <= fit1.df else (fit1, fit0)
    df = large.df - small.df
    if df == 0:
        raise UsageError(
            "The two models have the same number of parameters; a "
            "likelihood-ratio test needs nested models that differ in size."
        )
    if not _is_nested(small, large):
        raise UsageError(
            f"Model with family {small.family.name!r} is not nested in the "
            f"model with family {large.family.name!r}."
        )

    statistic = max(0.0, -2.0 * (small.loglik - large.loglik))
    return LRTResult(
        statistic=statistic,
        df=df,
        p_value=float(stats.chi2.sf(statistic, df)),
        loglik0=small.loglik,
        loglik1=large.loglik,
        aic=(small.aic, large.aic),
        bic=(small.bic, large.bic),
    )
