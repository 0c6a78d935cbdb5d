"""Per-cluster adaptive Gauss-Hermite integration.

For one cluster and one parameter vector the integrator

1. **finds the conditional mode** of the penalized log-likelihood::

       h(b) = Σᵢ log f(yᵢ | ηᵢ(b), phis, η_zi,ᵢ(b))
              + log N(b; 0, diag(D, D_zi))

   by Newton iteration with step halving.  The gradient uses the chain
   rule through the random-effects blocks,
   ``∇h = Zᵀ s_η + Z_ziᵀ s_zi − D⁻¹ b``.  The negative Hessian
   (*curvature*) is analytic, ``−Zᵀ diag(c) Z + D⁻¹``, when the family
   supplies ``curvature_eta`` and the zero part has no random effects;
   otherwise it is a centered finite difference of ``∇h``;

2. **adapts** the standardized product grid to ``N(mode, curvature⁻¹)``,
   clipping the eigenvalues of a curvature that is not positive
   definite;

3. **evaluates** the log integrand at every adapted node,
   ``a_k = log w_k + log p(y, b_k) − log N(b_k; mode, Σ)``, and reduces
   with ``logsumexp``.

The gradient of the cluster log-likelihood with respect to ``theta`` is
the posterior expectation of the complete-data score under the node
weights ``π_k = exp(a_k − loglik)``, with the adapted nodes held fixed.

Mode finding is a small state machine (:class:`ModeStatus`)::

    INIT → ITERATING → CONVERGED
                     ↘ MAX_ITER_REACHED

Both terminal states are accepted; the second is flagged on the
returned :class:`RandomEffectsMode` and counted by the likelihood.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

import numpy as np
from scipy import linalg
from scipy.special import logsumexp

from .clusters import Cluster
from .control import Control
from .families import FamilySpec
from .parameters import ParameterLayout, ParameterVector, log_chol_prior_gradient
from .quadrature import (
    QuadratureRule,
    adapt,
    effective_order,
    gauss_hermite_grid,
    gaussian_log_density,
)

# Relative floor for clipped curvature eigenvalues.
_EIG_FLOOR: float = 1e-8

# ------------------------------------------------------------------ #
# Value types
# ------------------------------------------------------------------ #


class ModeStatus(enum.Enum):
    """State of the per-cluster Newton iteration."""

    INIT = "init"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"


@dataclass(frozen=True)
class RandomEffectsMode:
    """Conditional mode of one cluster's random effects.

    Attributes:
        mode: Stacked mode ``[b, b_zi]``.
        curvature: Negative Hessian of ``h`` at the mode, after any
            regularization; positive definite.
        status: Terminal :class:`ModeStatus`.
        n_iter: Newton iterations used.
        regularized: Whether eigenvalues had to be clipped.
    """

    mode: np.ndarray
    curvature: np.ndarray
    status: ModeStatus
    n_iter: int
    regularized: bool = False

    @property
    def converged(self) -> bool:
        return self.status is ModeStatus.CONVERGED

    @property
    def covariance(self) -> np.ndarray:
        """Gaussian approximation of the posterior covariance."""
        cov = np.linalg.inv(self.curvature)
        return 0.5 * (cov + cov.T)


@dataclass(frozen=True)
class ClusterContribution:
    """Log-likelihood contribution of one cluster and its gradient."""

    loglik: float
    gradient: np.ndarray
    mode: RandomEffectsMode


@dataclass(frozen=True)
class PriorState:
    """Quantities shared by every cluster for one parameter vector."""

    params: ParameterVector
    L: np.ndarray
    L_zi: np.ndarray | None
    L_full: np.ndarray

    @classmethod
    def from_theta(cls, layout: ParameterLayout, theta: np.ndarray) -> PriorState:
        params = layout.unpack(theta)
        L, L_zi = layout.cholesky_factors(theta)
        L_full = L if L_zi is None else linalg.block_diag(L, L_zi)
        return cls(params=params, L=L, L_zi=L_zi, L_full=L_full)


def regularize_curvature(C: np.ndarray) -> tuple[np.ndarray, bool]:
    """Symmetrize *C* and clip its eigenvalues to be positive.

    Returns:
        ``(C_pd, regularized)``.
    """
    C = 0.5 * (C + C.T)
    if not np.all(np.isfinite(C)):
        return np.eye(C.shape[0]), True
    eigval, eigvec = np.linalg.eigh(C)
    floor = _EIG_FLOOR * max(1.0, float(np.max(np.abs(eigval))))
    if eigval.min() > floor:
        return C, False
    clipped = np.maximum(eigval, floor)
    return (eigvec * clipped) @ eigvec.T, True


# ------------------------------------------------------------------ #
# Integrator
# ------------------------------------------------------------------ #


class ClusterIntegrator:
    """Adaptive Gauss-Hermite integration of one cluster at a time.

    Instances are immutable after construction and safe to share
    between worker threads.

    Args:
        family: Response family.
        layout: Parameter layout (block sizes).
        control: Fitting controls.
        order: Gauss-Hermite order per dimension; defaults to
            ``control.n_agq``.  Lowered so that ``order**q`` stays
            within ``control.max_nodes``.
    """

    def __init__(
        self,
        family: FamilySpec,
        layout: ParameterLayout,
        control: Control,
        order: int | None = None,
    ) -> None:
        self.family = family
        self.layout = layout
        self.control = control
        q = layout.re_dim
        self.order = effective_order(order or control.n_agq, q, control.max_nodes)
        self.nodes, self.log_weights = gauss_hermite_grid(self.order, q)
        self._analytic_curvature = family.curvature_eta is not None and layout.q_zi == 0

    # ---- Linear predictors -----------------------------------------

    def _predictors(
        self, cluster: Cluster, prior: PriorState, B: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray | None]:
        """Linear predictors at random effects *B* ``(K, re_dim)``.

        Returns ``eta`` and ``eta_zi`` with shape ``(n_i, K)``.
        """
        q = self.layout.q
        eta = (cluster.X @ prior.params.betas)[:, np.newaxis] + cluster.Z @ B[:, :q].T
        eta_zi = None
        if cluster.X_zi is not None:
            eta_zi = (cluster.X_zi @ prior.params.gammas)[:, np.newaxis]
            if cluster.Z_zi is not None:
                eta_zi = eta_zi + cluster.Z_zi @ B[:, q:].T
            else:
                eta_zi = np.broadcast_to(eta_zi, eta.shape)
        return eta, eta_zi

    def _log_prior(self, prior: PriorState, B: np.ndarray) -> np.ndarray:
        return gaussian_log_density(B, np.zeros(B.shape[1]), prior.L_full)

    # ---- Penalized log-likelihood and derivatives ------------------

    def penalized(self, cluster: Cluster, prior: PriorState, b: np.ndarray) -> float:
        """``h(b)``: complete-data log-likelihood at a single point."""
        B = b[np.newaxis, :]
        eta, eta_zi = self._predictors(cluster, prior, B)
        y = cluster.y[:, np.newaxis]
        ll = self.family.log_density(y, eta, prior.params.phis, eta_zi)
        return float(np.sum(ll) + self._log_prior(prior, B)[0])

    def gradient(
        self, cluster: Cluster, prior: PriorState, b: np.ndarray
    ) -> np.ndarray:
        """``∇h(b)``."""
        B = b[np.newaxis, :]
        eta, eta_zi = self._predictors(cluster, prior, B)
        y = cluster.y[:, np.newaxis]
        phis = prior.params.phis
        s_eta = self.family.score_eta_values(y, eta, phis, eta_zi)[:, 0]
        parts = [cluster.Z.T @ s_eta]
        if cluster.Z_zi is not None:
            s_zi = self.family.score_eta_zi_values(y, eta, phis, eta_zi)[:, 0]
            parts.append(cluster.Z_zi.T @ s_zi)
        penalty = linalg.cho_solve((prior.L_full, True), b)
        return np.concatenate(parts) - penalty

    def curvature(
        self, cluster: Cluster, prior: PriorState, b: np.ndarray
    ) -> np.ndarray:
        """Negative Hessian of ``h`` at *b* (not regularized)."""
        d = b.shape[0]
        D_inv = linalg.cho_solve((prior.L_full, True), np.eye(d))
        if self._analytic_curvature:
            B = b[np.newaxis, :]
            eta, eta_zi = self._predictors(cluster, prior, B)
            c = self.family.curvature_eta_values(
                cluster.y[:, np.newaxis], eta, prior.params.phis, eta_zi
            )[:, 0]
            return D_inv - (cluster.Z.T * c) @ cluster.Z
        h = self.control.fd_step
        C = np.empty((d, d))
        for j in range(d):
            step = np.zeros(d)
            step[j] = h
            up = self.gradient(cluster, prior, b + step)
            down = self.gradient(cluster, prior, b - step)
            C[:, j] = -(up - down) / (2.0 * h)
        return 0.5 * (C + C.T)

    # ---- Mode finding ----------------------------------------------

    def find_mode(
        self,
        cluster: Cluster,
        prior: PriorState,
        start: np.ndarray | None = None,
    ) -> RandomEffectsMode:
        """Newton iteration with step halving for the conditional mode."""
        ctrl = self.control
        d = self.layout.re_dim
        b = np.zeros(d) if start is None else np.array(start, dtype=float)
        status = ModeStatus.INIT
        h_val = self.penalized(cluster, prior, b)
        n_iter = 0

        status = ModeStatus.ITERATING
        while status is ModeStatus.ITERATING:
            g = self.gradient(cluster, prior, b)
            if np.max(np.abs(g)) < ctrl.mode_tol:
                status = ModeStatus.CONVERGED
                break
            if n_iter >= ctrl.mode_max_iter:
                status = ModeStatus.MAX_ITER_REACHED
                break
            n_iter += 1
            C, _ = regularize_curvature(self.curvature(cluster, prior, b))
            step = np.linalg.solve(C, g)

            t = 1.0
            accepted = False
            for _ in range(ctrl.mode_max_halving + 1):
                b_new = b + t * step
                h_new = self.penalized(cluster, prior, b_new)
                if np.isfinite(h_new) and h_new >= h_val - 1e-12 * (1.0 + abs(h_val)):
                    accepted = True
                    break
                t *= 0.5
            if not accepted:
                # No ascent direction left at this precision.
                status = ModeStatus.MAX_ITER_REACHED
                break
            b, h_val = b_new, h_new
            if np.max(np.abs(t * step)) < ctrl.mode_tol:
                status = ModeStatus.CONVERGED

        curvature, regularized = regularize_curvature(self.curvature(cluster, prior, b))
        return RandomEffectsMode(
            mode=b,
            curvature=curvature,
            status=status,
            n_iter=n_iter,
            regularized=regularized,
        )

    # ---- Quadrature ------------------------------------------------

    def rule(self, mode: RandomEffectsMode) -> QuadratureRule:
        """Adapt the standardized grid to the Gaussian approximation at *mode*."""
        chol = np.linalg.cholesky(mode.covariance)
        return adapt(self.nodes, self.log_weights, mode.mode, chol)

    def node_log_integrand(
        self, cluster: Cluster, prior: PriorState, rule: QuadratureRule
    ) -> np.ndarray:
        """``a_k`` at every adapted node, shape ``(K,)``."""
        eta, eta_zi = self._predictors(cluster, prior, rule.points)
        ll = self.family.log_density(
            cluster.y[:, np.newaxis], eta, prior.params.phis, eta_zi
        )
        return (
            rule.log_weights
            + np.sum(ll, axis=0)
            + self._log_prior(prior, rule.points)
            - rule.log_importance
        )

    def contribution(
        self,
        cluster: Cluster,
        prior: PriorState,
        with_gradient: bool = True,
    ) -> ClusterContribution:
        """Log-likelihood contribution of *cluster* and its gradient in ``theta``."""
        mode = self.find_mode(cluster, prior)
        rule = self.rule(mode)
        a = self.node_log_integrand(cluster, prior, rule)
        loglik = float(logsumexp(a))
        if not with_gradient or not np.isfinite(loglik):
            return ClusterContribution(loglik, np.zeros(self.layout.size), mode)
        weights = np.exp(a - loglik)
        return ClusterContribution(
            loglik, self._expected_score(cluster, prior, rule, weights), mode
        )

    def _expected_score(
        self,
        cluster: Cluster,
        prior: PriorState,
        rule: QuadratureRule,
        weights: np.ndarray,
    ) -> np.ndarray:
        """Posterior expectation of the complete-data score in ``theta``."""
        layout = self.layout
        family = self.family
        phis = prior.params.phis
        y = cluster.y[:, np.newaxis]
        eta, eta_zi = self._predictors(cluster, prior, rule.points)

        grad = np.zeros(layout.size)
        s_eta = family.score_eta_values(y, eta, phis, eta_zi)
        grad[layout.block("betas")] = cluster.X.T @ (s_eta @ weights)

        B = rule.points[:, : layout.q]
        grad[layout.block("D")] = log_chol_prior_gradient(
            prior.L, (B.T * weights) @ B
        )
        if layout.n_phis:
            s_phis = family.score_phis_values(y, eta, phis, eta_zi)
            grad[layout.block("phis")] = np.sum(s_phis, axis=1) @ weights
        if layout.n_gammas and cluster.X_zi is not None:
            s_zi = family.score_eta_zi_values(y, eta, phis, eta_zi)
            grad[layout.block("gammas")] = cluster.X_zi.T @ (s_zi @ weights)
        if layout.q_zi:
            B_zi = rule.points[:, layout.q :]
            grad[layout.block("D_zi")] = log_chol_prior_gradient(
                prior.L_zi, (B_zi.T * weights) @ B_zi
            )
        return grad
