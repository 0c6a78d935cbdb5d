"""Gauss-Hermite product rules and their adaptation to a cluster.

Nodes and weights are the probabilists' Gauss-Hermite rule
(``numpy.polynomial.hermite_e.hermegauss``, weight ``exp(−z²/2)``)
with the weights normalized to sum to one, so that::

    E[g(Z)] ≈ Σ_k w_k g(z_k),   Z ~ N(0, I_q)

The ``q``-dimensional rule is the tensor product of the 1-D rule.  The
node count grows as ``order**q``; :func:`effective_order` lowers the
order until the grid fits in ``max_nodes`` (order 1 is the Laplace
approximation).

Adapting to a cluster shifts the standardized nodes by the conditional
mode and scales them by the Cholesky factor of the posterior covariance
approximation ``Σ = curvature⁻¹``::

    b_k = mode + L_Σ z_k

The log density of ``N(mode, Σ)`` at every adapted node is stored with
the rule; it is the importance density subtracted in the integrand.
"""

from __future__ import annotations

import functools
import itertools
from dataclasses import dataclass

import numpy as np
from numpy.polynomial.hermite_e import hermegauss

from .exceptions import UsageError


@dataclass(frozen=True)
class QuadratureRule:
    """Adapted quadrature rule for one cluster.

    Attributes:
        nodes: Standardized nodes ``z_k``, shape ``(K, q)``.
        log_weights: Log weights (summing to one in probability), ``(K,)``.
        shift: Mode the nodes are centered on, ``(q,)``.
        scale: Lower Cholesky factor of the posterior covariance, ``(q, q)``.
        points: Adapted nodes ``b_k = shift + scale @ z_k``, ``(K, q)``.
        log_importance: ``log N(b_k; shift, scale scaleᵀ)``, ``(K,)``.
    """

    nodes: np.ndarray
    log_weights: np.ndarray
    shift: np.ndarray
    scale: np.ndarray
    points: np.ndarray
    log_importance: np.ndarray

    @property
    def n_nodes(self) -> int:
        return int(self.nodes.shape[0])


def effective_order(order: int, q: int, max_nodes: int) -> int:
    """Largest order ``<= order`` with ``order**q <= max_nodes`` (at least 1)."""
    if order < 1:
        raise UsageError(f"Quadrature order must be >= 1, got {order}.")
    if q == 0:
        return order
    while order > 1 and order**q > max_nodes:
        order -= 1
    return order


@functools.lru_cache(maxsize=64)
def _gh_grid(order: int, q: int) -> tuple[np.ndarray, np.ndarray]:
    z, w = hermegauss(order)
    log_w = np.log(w / w.sum())
    nodes = np.array(list(itertools.product(z, repeat=q)), dtype=float).reshape(-1, q)
    log_weights = np.array(
        [sum(combo) for combo in itertools.product(log_w, repeat=q)], dtype=float
    )
    nodes.setflags(write=False)
    log_weights.setflags(write=False)
    return nodes, log_weights


def gauss_hermite_grid(order: int, q: int) -> tuple[np.ndarray, np.ndarray]:
    """Standardized product grid ``(nodes (K, q), log_weights (K,))``.

    Results are cached and returned read-only.
    """
    return _gh_grid(int(order), int(q))


def gaussian_log_density(
    points: np.ndarray, mean: np.ndarray, chol: np.ndarray
) -> np.ndarray:
    """``log N(points; mean, chol cholᵀ)`` row-wise."""
    q = chol.shape[0]
    resid = np.atleast_2d(points) - mean
    v = np.linalg.solve(chol, resid.T)
    log_det = 2.0 * np.sum(np.log(np.diag(chol)))
    return -0.5 * (q * np.log(2.0 * np.pi) + log_det + np.sum(v * v, axis=0))


def adapt(
    nodes: np.ndarray,
    log_weights: np.ndarray,
    mode: np.ndarray,
    chol: np.ndarray,
) -> QuadratureRule:
    """Shift and scale a standardized grid to ``N(mode, chol cholᵀ)``."""
    points = mode + nodes @ chol.T
    # log N(b_k; mode, Σ) with b_k − mode = chol z_k
    q = chol.shape[0]
    log_det = 2.0 * np.sum(np.log(np.diag(chol)))
    log_importance = -0.5 * (
        q * np.log(2.0 * np.pi) + log_det + np.sum(nodes * nodes, axis=1)
    )
    return QuadratureRule(
        nodes=nodes,
        log_weights=log_weights,
        shift=mode,
        scale=chol,
        points=points,
        log_importance=log_importance,
    )
