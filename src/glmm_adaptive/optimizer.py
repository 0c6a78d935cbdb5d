"""Outer quasi-Newton optimization of the marginal likelihood.

:class:`ParameterOptimizer` minimizes
:meth:`~.likelihood.MarginalLikelihood.value_and_grad` over the
unconstrained parameter vector with ``scipy.optimize.minimize``
(``"BFGS"`` by default, ``"L-BFGS-B"`` allowed).

The run has two phases:

1. **Warm start** (optional): at most ``warm_start_iter`` iterations at
   the reduced quadrature order ``warm_start_order``; this moves the
   variance components away from the identity start.
2. **Refinement** at the full order, up to ``max_iter`` iterations.

Each phase stops on the first of: gradient inf-norm below
``tol_grad``, relative objective change below ``tol_rel``, the
iteration cap, or the ``max_time`` wall-clock budget (shared between
phases).  The thresholds are checked from the ``intermediate_result``
callback, which ends the scipy run by raising ``StopIteration``.

The best iterate seen is returned even when scipy's final point is
worse (e.g. after an aborted line search).  Missing both thresholds is
not fatal: the result carries ``converged=False`` and an
:class:`~.exceptions.OptimizerConvergenceWarning` is issued.
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass

import numpy as np
from scipy.optimize import minimize

from .control import Control
from .exceptions import OptimizerConvergenceWarning
from .likelihood import LikelihoodEvaluation, MarginalLikelihood

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OptimizationResult:
    """Outcome of :meth:`ParameterOptimizer.run`.

    Attributes:
        theta: Best parameter vector found.
        evaluation: Full-order likelihood evaluation at ``theta``.
        converged: Whether a convergence threshold was met.
        message: Reason the refinement phase stopped.
        n_iter: Refinement iterations.
        n_warm_iter: Warm-start iterations (0 when skipped).
        n_evaluations: Full-order likelihood evaluations.
        elapsed: Wall-clock seconds for both phases.
    """

    theta: np.ndarray
    evaluation: LikelihoodEvaluation
    converged: bool
    message: str
    n_iter: int
    n_warm_iter: int
    n_evaluations: int
    elapsed: float


class _Phase:
    """Bookkeeping for one scipy run: best iterate and stopping rules."""

    def __init__(
        self,
        likelihood: MarginalLikelihood,
        control: Control,
        deadline: float | None,
        label: str,
    ) -> None:
        self.likelihood = likelihood
        self.control = control
        self.deadline = deadline
        self.label = label
        self.best_theta: np.ndarray | None = None
        self.best_nll = np.inf
        self.best_grad_norm = np.inf
        self.prev_nll: float | None = None
        self.n_iter = 0
        self.stop_reason: str | None = None

    def fun(self, theta: np.ndarray) -> tuple[float, np.ndarray]:
        nll, grad = self.likelihood.value_and_grad(theta)
        if nll < self.best_nll:
            self.best_nll = nll
            self.best_theta = np.array(theta, dtype=float)
            self.best_grad_norm = float(np.max(np.abs(grad))) if grad.size else 0.0
        return nll, grad

    def callback(self, intermediate_result) -> None:
        self.n_iter += 1
        fun = float(intermediate_result.fun)
        logger.debug("%s iteration %d: nll=%.10g", self.label, self.n_iter, fun)
        if self.best_grad_norm < self.control.tol_grad:
            self.stop_reason = "gradient norm below tol_grad"
            raise StopIteration
        if self.prev_nll is not None:
            rel = abs(self.prev_nll - fun) / max(abs(self.prev_nll), 1.0)
            if rel < self.control.tol_rel:
                self.stop_reason = "relative objective change below tol_rel"
                raise StopIteration
        self.prev_nll = fun
        if self.deadline is not None and time.perf_counter() > self.deadline:
            self.stop_reason = "max_time reached"
            raise StopIteration

    @property
    def converged(self) -> bool:
        return self.stop_reason in (
            "gradient norm below tol_grad",
            "relative objective change below tol_rel",
        )


class ParameterOptimizer:
    """Warm start plus quasi-Newton refinement.

    Args:
        likelihood: Full-order objective.
        control: Fitting controls.
    """

    def __init__(self, likelihood: MarginalLikelihood, control: Control) -> None:
        self.likelihood = likelihood
        self.control = control

    def _minimize(self, phase: _Phase, theta0: np.ndarray, max_iter: int):
        options = {"maxiter": max_iter, "gtol": self.control.tol_grad}
        if self.control.method == "L-BFGS-B":
            options["ftol"] = self.control.tol_rel
        return minimize(
            phase.fun,
            theta0,
            method=self.control.method,
            jac=True,
            callback=phase.callback,
            options=options,
        )

    def run(self, theta0: np.ndarray) -> OptimizationResult:
        """Minimize from *theta0* and return the best iterate."""
        ctrl = self.control
        start = time.perf_counter()
        deadline = None if ctrl.max_time is None else start + ctrl.max_time
        theta = np.asarray(theta0, dtype=float)

        n_warm_iter = 0
        if (
            ctrl.warm_start
            and ctrl.warm_start_iter > 0
            and ctrl.warm_start_order < self.likelihood.order
        ):
            warm_lik = self.likelihood.with_order(ctrl.warm_start_order)
            warm = _Phase(warm_lik, ctrl, deadline, "warm start")
            logger.debug(
                "warm start: order %d, at most %d iterations",
                warm_lik.order,
                ctrl.warm_start_iter,
            )
            self._minimize(warm, theta, ctrl.warm_start_iter)
            n_warm_iter = warm.n_iter
            if warm.best_theta is not None and np.isfinite(warm.best_nll):
                theta = warm.best_theta
            logger.debug("warm start done: nll=%.10g", warm.best_nll)

        refine = _Phase(self.likelihood, ctrl, deadline, "refine")
        n_eval_before = self.likelihood.n_evaluations
        res = self._minimize(refine, theta, ctrl.max_iter)

        converged = refine.converged or bool(res.success)
        if refine.best_theta is None:
            best_theta = np.asarray(res.x, dtype=float)
        else:
            best_theta = refine.best_theta
        if not converged and refine.best_grad_norm < ctrl.tol_grad:
            converged = True
        message = refine.stop_reason or str(res.message)
        evaluation = self.likelihood.evaluate(best_theta)
        elapsed = time.perf_counter() - start

        if not converged:
            warnings.warn(
                f"Optimizer stopped without meeting the convergence thresholds "
                f"({message}; gradient inf-norm {refine.best_grad_norm:.3g}). "
                "Returning the best iterate found.",
                OptimizerConvergenceWarning,
                stacklevel=2,
            )
        logger.debug(
            "refinement: %d iterations, nll=%.10g, converged=%s",
            refine.n_iter,
            evaluation.nll,
            converged,
        )
        return OptimizationResult(
            theta=best_theta,
            evaluation=evaluation,
            converged=converged,
            message=message,
            n_iter=refine.n_iter,
            n_warm_iter=n_warm_iter,
            n_evaluations=self.likelihood.n_evaluations - n_eval_before,
            elapsed=elapsed,
        )
