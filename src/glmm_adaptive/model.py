"""Fitting entry point.

:func:`mixed_model` coerces and validates the inputs, derives starting
values, optimizes the adaptive-quadrature marginal likelihood and
packages everything into a :class:`~._results.MixedModelFit`.

Starting values
~~~~~~~~~~~~~~~
The fixed effects start from a statsmodels GLM of the (base) family
that ignores the clustering; the negative binomial uses the
``sm.NegativeBinomial`` maximum-likelihood fit for its dispersion as
well (``phi = log(1 / alpha)``), the Gaussian the GLM scale
(``phi = log(sigma)``).  Families without a statsmodels counterpart
start at the intercept-only value ``g(mean(y))``.  The zero part starts
from the observed fraction of zeros; random-effects covariances start
at the identity.  Every block can be overridden through
``initial_values``.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

import numpy as np
import statsmodels.api as sm
from scipy import special
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning as SmConvergenceWarning,
)
from statsmodels.tools.sm_exceptions import (
    HessianInversionWarning,
    PerfectSeparationError,
)

from ._compat import as_design, as_labels, as_vector
from ._results import MixedModelFit
from .clusters import build_clusters
from .control import Control, as_control
from .exceptions import (
    CurvatureRegularizationWarning,
    FatalFitError,
    ModeConvergenceWarning,
    UsageError,
)
from .families import FamilySpec, as_family, with_n_phis
from .inference import covariance_from_hessian, numeric_hessian
from .likelihood import MarginalLikelihood
from .optimizer import ParameterOptimizer
from .parameters import ParameterLayout, ParameterVector

logger = logging.getLogger(__name__)

_INTERCEPT = "(Intercept)"
_INITIAL_KEYS = frozenset({"betas", "D", "phis", "gammas", "D_zi"})

# statsmodels failures that only mean "no GLM start available".
_START_ERRORS = (np.linalg.LinAlgError, ValueError, PerfectSeparationError)

# ------------------------------------------------------------------ #
# Starting values
# ------------------------------------------------------------------ #


def _sm_link(link_name: str):
    links = sm.families.links
    return {
        "logit": links.Logit,
        "probit": links.Probit,
        "cloglog": links.CLogLog,
        "log": links.Log,
        "identity": links.Identity,
    }.get(link_name)


def _intercept_start(family: FamilySpec, y: np.ndarray, X: np.ndarray) -> np.ndarray:
    """Betas reproducing ``g(mean(y))`` (non-zero y for count families)."""
    target = y[y > 0] if family.support == "count" and np.any(y > 0) else y
    target = target / family.trials
    with np.errstate(all="ignore"):
        level = float(family.linkfun(np.asarray(np.mean(target))))
    if not np.isfinite(level):
        return np.zeros(X.shape[1])
    beta, *_ = np.linalg.lstsq(X, np.full(X.shape[0], level), rcond=None)
    return beta


def _glm_start(
    family: FamilySpec, y: np.ndarray, X: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """``(betas, phis)`` from a statsmodels fit ignoring the clustering."""
    base = family.base if family.base is not None else family
    n_trials = np.full(y.shape, float(base.trials))
    phis = np.zeros(family.n_phis)
    link_cls = _sm_link(base.link.name)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", SmConvergenceWarning)
        warnings.simplefilter("ignore", HessianInversionWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        try:
            if base.name == "negative_binomial" and base.link.name == "log":
                res = sm.NegativeBinomial(y, X).fit(disp=0)
                alpha = float(res.params[-1])
                if np.isfinite(alpha) and alpha > 0 and family.n_phis:
                    phis[0] = np.log(1.0 / alpha)
                return np.asarray(res.params[:-1], dtype=float), phis
            sm_family = {
                "binomial": sm.families.Binomial,
                "poisson": sm.families.Poisson,
                "gaussian": sm.families.Gaussian,
            }.get(base.name)
            if sm_family is not None and link_cls is not None:
                res = sm.GLM(
                    y / n_trials,
                    X,
                    family=sm_family(link=link_cls()),
                    var_weights=n_trials,
                ).fit()
                if base.name == "gaussian" and family.n_phis:
                    phis[0] = 0.5 * np.log(max(float(res.scale), 1e-8))
                betas = np.asarray(res.params, dtype=float)
                if np.all(np.isfinite(betas)):
                    return betas, phis
        except _START_ERRORS as exc:
            logger.debug("GLM starting values failed: %s", exc)
    return _intercept_start(base, y, X), phis


def _zero_part_start(y: np.ndarray, X_zi: np.ndarray) -> np.ndarray:
    p0 = float(np.clip(np.mean(y == 0), 0.01, 0.99))
    target = np.full(X_zi.shape[0], special.logit(p0))
    gammas, *_ = np.linalg.lstsq(X_zi, target, rcond=None)
    return gammas


def starting_values(
    family: FamilySpec,
    layout: ParameterLayout,
    y: np.ndarray,
    X: np.ndarray,
    X_zi: np.ndarray | None = None,
    initial_values: Mapping[str, Any] | None = None,
) -> ParameterVector:
    """Starting :class:`ParameterVector`, with user overrides applied.

    Raises:
        UsageError: On an unknown override key.
    """
    betas, phis = _glm_start(family, y, X)
    start = ParameterVector(
        betas=betas,
        D=np.eye(layout.q),
        phis=phis,
        gammas=_zero_part_start(y, X_zi) if X_zi is not None else np.zeros(0),
        D_zi=np.eye(layout.q_zi) if layout.q_zi else None,
    )
    if initial_values:
        unknown = sorted(set(initial_values) - _INITIAL_KEYS)
        if unknown:
            raise UsageError(
                f"Unknown initial_values key(s): {unknown}. "
                f"Valid keys: {sorted(_INITIAL_KEYS)}"
            )
        overrides = {
            key: np.atleast_1d(np.asarray(value, dtype=float))
            for key, value in initial_values.items()
        }
        for key in ("D", "D_zi"):
            if key in overrides:
                overrides[key] = np.atleast_2d(overrides[key])
        start = replace(start, **overrides)
    logger.debug("starting values: %s", start.to_dict())
    return start


# ------------------------------------------------------------------ #
# Entry point
# ------------------------------------------------------------------ #


def _warn_flags(flags: dict[str, int], n_clusters: int) -> None:
    n_modes = flags.get("mode_not_converged", 0)
    if n_modes:
        warnings.warn(
            f"Conditional mode did not converge for {n_modes} of {n_clusters} "
            "cluster(s) at the optimum; the last Newton iterate was used.",
            ModeConvergenceWarning,
            stacklevel=3,
        )
    n_reg = flags.get("curvature_regularized", 0)
    if n_reg:
        warnings.warn(
            f"Curvature at the mode was not positive definite for {n_reg} of "
            f"{n_clusters} cluster(s) and was regularized.",
            CurvatureRegularizationWarning,
            stacklevel=3,
        )


def mixed_model(
    y: Any,
    X: Any,
    groups: Any,
    Z: Any = None,
    family: Any = "poisson",
    *,
    X_zi: Any = None,
    Z_zi: Any = None,
    n_phis: int | None = None,
    control: Control | Mapping[str, Any] | None = None,
    initial_values: Mapping[str, Any] | None = None,
) -> MixedModelFit:
    """Fit a GLMM by adaptive Gauss-Hermite quadrature.

    Args:
        y: Response ``(n,)``.
        X: Fixed-effects design ``(n, p)``; include an intercept column
            yourself.
        groups: Cluster label per observation.
        Z: Random-effects design ``(n, q)``; defaults to a random
            intercept.
        family: Registered family name, :class:`~.families.FamilySpec`,
            or an object / mapping satisfying the family contract.
        X_zi: Zero-part fixed-effects design for zero-inflated and
            hurdle families; defaults to an intercept.
        Z_zi: Zero-part random-effects design (optional).
        n_phis: Dispersion parameter count for custom families.
        control: :class:`~.control.Control` or a mapping of overrides.
        initial_values: Overrides for ``"betas"``, ``"D"``, ``"phis"``,
            ``"gammas"``, ``"D_zi"``.

    Returns:
        The fitted :class:`~._results.MixedModelFit`.

    Raises:
        UsageError: On malformed inputs or family.
        SingularDesignError: If a design is rank deficient.
        FatalFitError: If the likelihood is not finite at the start.
    """
    control = as_control(control)
    fam = with_n_phis(as_family(family), n_phis)

    y = as_vector(y, name="y")
    n = y.shape[0]
    X, beta_names = as_design(X, name="X", prefix="x")
    labels = as_labels(groups, name="groups")
    if Z is None:
        Z, re_names = np.ones((n, 1)), (_INTERCEPT,)
    else:
        Z, re_names = as_design(Z, name="Z", prefix="z")

    gamma_names: tuple[str, ...] = ()
    re_zi_names: tuple[str, ...] = ()
    if not fam.has_zero_part and (X_zi is not None or Z_zi is not None):
        raise UsageError(
            f"Family {fam.name!r} has no zero part; X_zi and Z_zi are not allowed."
        )
    if fam.has_zero_part:
        if X_zi is None:
            X_zi, gamma_names = np.ones((n, 1)), (_INTERCEPT,)
        else:
            X_zi, gamma_names = as_design(X_zi, name="X_zi", prefix="x")
        if Z_zi is not None:
            Z_zi, re_zi_names = as_design(Z_zi, name="Z_zi", prefix="z")

    fam.validate_y(y)
    clusters = build_clusters(y, X, labels, Z, X_zi, Z_zi)
    layout = ParameterLayout(
        beta_names=beta_names,
        re_names=re_names,
        n_phis=fam.n_phis,
        gamma_names=gamma_names,
        re_zi_names=re_zi_names,
    )
    start = starting_values(fam, layout, y, np.asarray(X), X_zi, initial_values)
    theta0 = layout.pack(start)

    likelihood = MarginalLikelihood(fam, layout, clusters, control)
    if not likelihood.evaluate(theta0).finite:
        raise FatalFitError(
            "The marginal log-likelihood is not finite at the starting values; "
            "check the response, the designs and initial_values."
        )
    logger.debug(
        "fitting %s: %d observations, %d clusters, order %d, %d parameters",
        fam.name,
        n,
        len(clusters),
        likelihood.order,
        layout.size,
    )

    result = ParameterOptimizer(likelihood, control).run(theta0)
    evaluation = result.evaluation

    vcov = None
    if control.compute_hessian:
        H = numeric_hessian(likelihood, result.theta, control.hessian_step)
        vcov = covariance_from_hessian(H)

    flags = evaluation.flag_counts()
    if not result.converged:
        flags["optimizer_not_converged"] = 1
    _warn_flags(flags, len(clusters))

    return MixedModelFit(
        family=fam,
        layout=layout,
        theta=result.theta,
        params=layout.unpack(result.theta),
        loglik=evaluation.loglik,
        gradient=evaluation.gradient,
        vcov=vcov,
        modes=np.stack([m.mode for m in evaluation.modes]),
        post_vars=np.stack([m.covariance for m in evaluation.modes]),
        group_ids=tuple(c.group for c in clusters),
        converged=result.converged,
        message=result.message,
        n_iter=result.n_iter,
        flags=flags,
        quadrature_order=likelihood.order,
        control=control,
        clusters=clusters,
    )
