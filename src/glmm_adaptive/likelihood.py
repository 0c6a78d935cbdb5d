"""Negative marginal log-likelihood over all clusters.

:class:`MarginalLikelihood` is the objective the optimizer minimizes.
One evaluation unpacks ``theta`` once, runs the integrator on every
cluster and reduces the contributions in cluster order.

Parallelism
~~~~~~~~~~~
When ``n_jobs != 1`` clusters are processed with
``joblib.Parallel(prefer="threads")``.  Each task only reads the shared
cluster arrays (they are write-protected) and returns a new
:class:`~.integrator.ClusterContribution`.  ``Parallel`` returns the
results in submission order, so the reduction order, and with it the
floating-point result, does not depend on the worker count.

Caching
~~~~~~~
scipy calls the objective and the gradient at the same point; the last
evaluation is kept in a single-entry cache keyed on the exact bytes of
``theta``.  Nothing else survives between evaluations, so every new
parameter vector recomputes all modes and quadrature rules.

A non-finite total is reported as ``1e30`` with a zero gradient, which
makes a line search reject the step instead of failing.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
from joblib import Parallel, delayed

from ._config import get_n_jobs
from .clusters import Cluster
from .control import Control
from .families import FamilySpec
from .integrator import (
    ClusterContribution,
    ClusterIntegrator,
    ModeStatus,
    PriorState,
    RandomEffectsMode,
)
from .parameters import ParameterLayout

logger = logging.getLogger(__name__)

NLL_SENTINEL: float = 1e30
"""Objective value reported when the likelihood is not finite."""


@dataclass(frozen=True)
class LikelihoodEvaluation:
    """Result of one pass over all clusters.

    Attributes:
        theta: Parameter vector evaluated (copy).
        nll: Negative log-likelihood, or :data:`NLL_SENTINEL`.
        gradient: Gradient of ``nll`` in ``theta``.
        cluster_loglik: Per-cluster log-likelihood, cluster order.
        modes: Per-cluster :class:`RandomEffectsMode`, cluster order.
        finite: Whether the raw total was finite.
    """

    theta: np.ndarray
    nll: float
    gradient: np.ndarray
    cluster_loglik: np.ndarray
    modes: tuple[RandomEffectsMode, ...]
    finite: bool

    @property
    def loglik(self) -> float:
        return -self.nll

    def flag_counts(self) -> dict[str, int]:
        """Numerical flags raised by the per-cluster integrations."""
        counts = Counter()
        for mode in self.modes:
            if mode.status is ModeStatus.MAX_ITER_REACHED:
                counts["mode_not_converged"] += 1
            if mode.regularized:
                counts["curvature_regularized"] += 1
        return dict(counts)


class MarginalLikelihood:
    """Negative marginal log-likelihood with its envelope gradient.

    Args:
        family: Response family.
        layout: Parameter layout.
        clusters: Clusters in reduction order.
        control: Fitting controls.
        order: Quadrature order (defaults to ``control.n_agq``).
    """

    def __init__(
        self,
        family: FamilySpec,
        layout: ParameterLayout,
        clusters: Sequence[Cluster],
        control: Control,
        order: int | None = None,
    ) -> None:
        self.family = family
        self.layout = layout
        self.clusters = tuple(clusters)
        self.control = control
        self.integrator = ClusterIntegrator(family, layout, control, order=order)
        self.n_jobs = control.n_jobs if control.n_jobs is not None else get_n_jobs()
        self.n_evaluations = 0
        self._cache_key: bytes | None = None
        self._cache: LikelihoodEvaluation | None = None

    @property
    def order(self) -> int:
        return self.integrator.order

    def _contributions(self, prior: PriorState) -> list[ClusterContribution]:
        contribution = self.integrator.contribution
        if self.n_jobs == 1 or len(self.clusters) == 1:
            return [contribution(c, prior) for c in self.clusters]
        return Parallel(n_jobs=self.n_jobs, prefer="threads")(
            delayed(contribution)(c, prior) for c in self.clusters
        )

    def evaluate(self, theta: np.ndarray) -> LikelihoodEvaluation:
        """Evaluate at *theta*, reusing the cached result for the same vector."""
        theta = np.ascontiguousarray(theta, dtype=float)
        key = theta.tobytes()
        if self._cache is not None and key == self._cache_key:
            logger.debug("likelihood cache hit")
            return self._cache

        prior = PriorState.from_theta(self.layout, theta)
        results = self._contributions(prior)
        cluster_loglik = np.array([r.loglik for r in results])
        total = float(np.sum(cluster_loglik))
        grad = -np.sum(np.stack([r.gradient for r in results]), axis=0)

        finite = np.isfinite(total) and bool(np.all(np.isfinite(grad)))
        if finite:
            nll = -total
        else:
            nll = NLL_SENTINEL
            grad = np.zeros_like(grad)

        self.n_evaluations += 1
        evaluation = LikelihoodEvaluation(
            theta=theta.copy(),
            nll=nll,
            gradient=grad,
            cluster_loglik=cluster_loglik,
            modes=tuple(r.mode for r in results),
            finite=finite,
        )
        self._cache_key = key
        self._cache = evaluation
        return evaluation

    def objective(self, theta: np.ndarray) -> float:
        return self.evaluate(theta).nll

    def gradient(self, theta: np.ndarray) -> np.ndarray:
        return self.evaluate(theta).gradient.copy()

    def value_and_grad(self, theta: np.ndarray) -> tuple[float, np.ndarray]:
        """``(nll, gradient)`` as ``scipy.optimize.minimize(jac=True)`` expects."""
        evaluation = self.evaluate(theta)
        return evaluation.nll, evaluation.gradient.copy()

    def loglik(self, theta: np.ndarray) -> float:
        return self.evaluate(theta).loglik

    def modes(self, theta: np.ndarray) -> tuple[RandomEffectsMode, ...]:
        return self.evaluate(theta).modes

    def with_order(self, order: int) -> MarginalLikelihood:
        """Same problem at a different quadrature order (fresh cache)."""
        return MarginalLikelihood(
            self.family, self.layout, self.clusters, self.control, order=order
        )
