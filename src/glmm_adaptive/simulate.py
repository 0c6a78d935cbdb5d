"""Simulation and fitted values from a fitted model.

Two simulation semantics:

* ``"mean_subject"``: random effects fixed at zero, so every draw
  comes from the population-average linear predictor.
* ``"subject_specific"``: random effects taken per cluster from
  ``re_source``:

  - ``"posterior"``: drawn from the Gaussian approximation of the
    cluster posterior, ``N(mode, curvature⁻¹)``;
  - ``"prior"``: drawn afresh from ``N(0, diag(D, D_zi))``;
  - ``"mode"``: fixed at the conditional modes.

Responses are drawn with the family's own law (``simulate_fun`` or its
scipy ``distribution``), including the zero part of zero-inflated and
hurdle families.  With ``parameter_uncertainty=True`` each column first
draws ``theta`` from ``N(theta_hat, vcov)``; the cluster modes are then
recomputed for that draw.

All randomness flows from one ``numpy.random.Generator`` built from
``random_state``.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd

from ._results import MixedModelFit
from .clusters import Cluster
from .exceptions import UsageError
from .integrator import ClusterIntegrator, PriorState
from .parameters import ParameterVector
from .quadrature import effective_order, gauss_hermite_grid

_SIM_TYPES = ("mean_subject", "subject_specific")
_RE_SOURCES = ("posterior", "prior", "mode")
_FITTED_TYPES = ("mean_subject", "subject_specific", "marginal")


def _linear_predictors(
    cluster: Cluster, params: ParameterVector, B: np.ndarray, q: int
) -> tuple[np.ndarray, np.ndarray | None]:
    """``eta`` and ``eta_zi`` ``(n_i, K)`` for random effects *B* ``(K, d)``."""
    eta = (cluster.X @ params.betas)[:, np.newaxis] + cluster.Z @ B[:, :q].T
    eta_zi = None
    if cluster.X_zi is not None:
        eta_zi = (cluster.X_zi @ params.gammas)[:, np.newaxis] + np.zeros(eta.shape)
        if cluster.Z_zi is not None:
            eta_zi = eta_zi + cluster.Z_zi @ B[:, q:].T
    return eta, eta_zi


def _draw_effects(
    rng: np.random.Generator,
    re_source: str,
    mode: np.ndarray,
    post_var: np.ndarray,
    prior_cov: np.ndarray,
    size: int,
) -> np.ndarray:
    if re_source == "mode":
        return np.tile(mode, (size, 1))
    if re_source == "prior":
        return rng.multivariate_normal(np.zeros(mode.shape[0]), prior_cov, size=size)
    return rng.multivariate_normal(mode, post_var, size=size)


def _check_choice(value: str, choices: tuple[str, ...], label: str) -> None:
    if value not in choices:
        raise UsageError(f"Unknown {label} {value!r}. Choose from: {list(choices)}")


def simulate(
    fit: MixedModelFit,
    nsim: int = 1,
    type: str = "subject_specific",
    re_source: str = "posterior",
    random_state: int | np.random.Generator | None = None,
    parameter_uncertainty: bool = False,
) -> np.ndarray:
    """Simulate responses from a fitted model.

    Args:
        fit: Fitted model.
        nsim: Number of simulated data sets (columns).
        type: ``"subject_specific"`` or ``"mean_subject"``.
        re_source: ``"posterior"``, ``"prior"`` or ``"mode"`` (ignored
            for ``"mean_subject"``).  ``"posterior"`` draws random effects
            from a Gaussian approximation of each cluster posterior,
            ``N(mode, curvature⁻¹)``, not from the exact posterior.
        random_state: Seed or ``numpy.random.Generator``.
        parameter_uncertainty: Draw ``theta`` from ``N(theta_hat, vcov)``
            for every column.

    Returns:
        Array ``(n_obs, nsim)`` in the original observation order;
        integer dtype for count, binary and binomial families.

    Raises:
        UsageError: On an unknown type or source, ``nsim < 1``, or
            parameter uncertainty without a usable ``vcov``.
    """
    _check_choice(type, _SIM_TYPES, "simulation type")
    _check_choice(re_source, _RE_SOURCES, "re_source")
    if int(nsim) != nsim or nsim < 1:
        raise UsageError(f"nsim must be a positive integer, got {nsim!r}.")
    nsim = int(nsim)
    rng = np.random.default_rng(random_state)
    family, layout = fit.family, fit.layout
    q, d = layout.q, layout.re_dim

    out = np.empty((fit.n_obs, nsim))

    if not parameter_uncertainty:
        params = fit.params
        prior_cov = params.prior_covariance()
        for i, cluster in enumerate(fit.clusters):
            if type == "mean_subject":
                B = np.zeros((nsim, d))
            else:
                B = _draw_effects(
                    rng, re_source, fit.modes[i], fit.post_vars[i], prior_cov, nsim
                )
            eta, eta_zi = _linear_predictors(cluster, params, B, q)
            out[cluster.index] = family.simulate(eta, params.phis, eta_zi, rng)
    else:
        if fit.vcov is None or not np.all(np.isfinite(fit.vcov)):
            raise UsageError(
                "parameter_uncertainty needs a finite vcov; fit with "
                "compute_hessian=True."
            )
        thetas = rng.multivariate_normal(fit.theta, fit.vcov, size=nsim)
        integrator = ClusterIntegrator(family, layout, fit.control)
        for j, theta in enumerate(thetas):
            prior = PriorState.from_theta(layout, theta)
            params = prior.params
            prior_cov = params.prior_covariance()
            for cluster in fit.clusters:
                if type == "mean_subject":
                    B = np.zeros((1, d))
                elif re_source == "prior":
                    B = rng.multivariate_normal(np.zeros(d), prior_cov, size=1)
                else:
                    mode = integrator.find_mode(cluster, prior)
                    B = _draw_effects(
                        rng, re_source, mode.mode, mode.covariance, prior_cov, 1
                    )
                eta, eta_zi = _linear_predictors(cluster, params, B, q)
                draws = family.simulate(eta, params.phis, eta_zi, rng)
                out[cluster.index, j] = np.asarray(draws).reshape(-1)

    if family.support in ("count", "binary", "binomial"):
        return np.rint(out).astype(np.int64)
    return out


def fitted(fit: MixedModelFit, type: str = "mean_subject") -> np.ndarray:
    """Conditional or marginal means of ``y`` in observation order.

    Args:
        fit: Fitted model.
        type: ``"mean_subject"`` (random effects at zero),
            ``"subject_specific"`` (at the conditional modes) or
            ``"marginal"`` (integrated over ``N(0, diag(D, D_zi))`` with
            the Gauss-Hermite grid).

    Raises:
        UsageError: On an unknown *type*.
    """
    _check_choice(type, _FITTED_TYPES, "fitted type")
    family, layout, params = fit.family, fit.layout, fit.params
    q, d = layout.q, layout.re_dim
    out = np.empty(fit.n_obs)

    if type == "marginal":
        order = effective_order(fit.control.n_agq, d, fit.control.max_nodes)
        nodes, log_weights = gauss_hermite_grid(order, d)
        L_full = PriorState.from_theta(layout, fit.theta).L_full
        B = nodes @ L_full.T
        weights = np.exp(log_weights)
        for cluster in fit.clusters:
            eta, eta_zi = _linear_predictors(cluster, params, B, q)
            out[cluster.index] = family.mean(eta, params.phis, eta_zi) @ weights
        return out

    for i, cluster in enumerate(fit.clusters):
        b = np.zeros(d) if type == "mean_subject" else fit.modes[i]
        eta, eta_zi = _linear_predictors(cluster, params, b[np.newaxis, :], q)
        out[cluster.index] = family.mean(eta, params.phis, eta_zi)[:, 0]
    return out


def ranef(fit: MixedModelFit, post_vars: bool = False) -> Any:
    """Conditional modes per cluster, optionally with posterior covariances.

    Returns:
        A :class:`pandas.DataFrame` indexed by group label, or
        ``(frame, post_vars)`` when *post_vars* is true.
    """
    frame: pd.DataFrame = fit.ranef()
    if post_vars:
        return frame, fit.post_vars
    return frame
