"""Fitting controls: quadrature, mode finding and the outer optimizer.

:class:`Control` is an immutable value validated once at construction.
Pass a ``Control`` or a plain mapping of overrides to
:func:`~.model.mixed_model`; :func:`as_control` performs the coercion.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

from .exceptions import UsageError

_METHODS = ("BFGS", "L-BFGS-B")


@dataclass(frozen=True)
class Control:
    """Settings for one fit.

    Attributes:
        n_agq: Gauss-Hermite order per random-effects dimension.
        max_nodes: Cap on ``order**q``; the order is lowered to fit.
        mode_max_iter: Newton iterations per cluster mode.
        mode_tol: Gradient-norm / step-size threshold for the mode.
        mode_max_halving: Step halvings per Newton iteration.
        fd_step: Step for finite-difference curvature of the mode.
        hessian_step: Step for the numeric Hessian at the optimum.
        max_iter: Outer optimizer iteration cap.
        tol_grad: Gradient inf-norm threshold of the outer optimizer.
        tol_rel: Relative objective-change threshold.
        max_time: Wall-clock budget in seconds (``None`` for no limit).
        method: ``"BFGS"`` or ``"L-BFGS-B"``.
        warm_start: Run a reduced-order phase before the full fit.
        warm_start_order: Quadrature order of the warm-start phase.
        warm_start_iter: Iteration cap of the warm-start phase.
        n_jobs: Worker threads over clusters (``None`` = package default).
        compute_hessian: Whether to compute ``vcov`` after the fit.
    """

    n_agq: int = 11
    max_nodes: int = 2000
    mode_max_iter: int = 50
    mode_tol: float = 1e-8
    mode_max_halving: int = 10
    fd_step: float = 1e-4
    hessian_step: float = 1e-4
    max_iter: int = 200
    tol_grad: float = 1e-5
    tol_rel: float = 1e-10
    max_time: float | None = None
    method: str = "BFGS"
    warm_start: bool = True
    warm_start_order: int = 3
    warm_start_iter: int = 30
    n_jobs: int | None = None
    compute_hessian: bool = True

    def __post_init__(self) -> None:
        for name in ("n_agq", "max_nodes", "mode_max_iter", "warm_start_order"):
            value = getattr(self, name)
            if int(value) != value or value < 1:
                raise UsageError(f"{name} must be an integer >= 1, got {value!r}.")
        for name in ("mode_max_halving", "max_iter", "warm_start_iter"):
            value = getattr(self, name)
            if int(value) != value or value < 0:
                raise UsageError(f"{name} must be an integer >= 0, got {value!r}.")
        for name in ("mode_tol", "fd_step", "hessian_step", "tol_grad", "tol_rel"):
            value = getattr(self, name)
            if not value > 0:
                raise UsageError(f"{name} must be positive, got {value!r}.")
        if self.max_time is not None and not self.max_time > 0:
            raise UsageError(f"max_time must be positive, got {self.max_time!r}.")
        if self.method not in _METHODS:
            raise UsageError(
                f"Unknown optimizer method {self.method!r}. "
                f"Choose from: {list(_METHODS)}"
            )
        n_jobs = self.n_jobs
        if n_jobs is not None and (int(n_jobs) != n_jobs or n_jobs == 0):
            raise UsageError(f"n_jobs must be a non-zero integer, got {n_jobs!r}.")


def as_control(control: Control | Mapping[str, Any] | None) -> Control:
    """Coerce *control* to a :class:`Control`.

    Raises:
        UsageError: On an unknown key or an invalid value.
    """
    if control is None:
        return Control()
    if isinstance(control, Control):
        return control
    if isinstance(control, Mapping):
        known = {f.name for f in fields(Control)}
        unknown = sorted(set(control) - known)
        if unknown:
            raise UsageError(f"Unknown control setting(s): {unknown}")
        return replace(Control(), **control)
    kind = type(control).__name__
    raise UsageError(f"control must be a Control or a mapping, got {kind}.")
