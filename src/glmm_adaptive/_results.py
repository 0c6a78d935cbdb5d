"""Typed result objects for mixed-model fits.

Frozen dataclasses that provide:

* **Attribute access**: ``fit.loglik``, ``fit.converged``, etc.
* **Dict-like access**: ``fit["loglik"]``, ``fit.get("key")``,
  ``"key" in fit`` for consumers that prefer bracket syntax.
* **Serialisation**: ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python.

Two result types:

* :class:`MixedModelFit`: a fitted GLMM.  Its fields are the complete
  persisted state of the fit; :mod:`.simulate` and :mod:`.inference`
  work from them alone.
* :class:`LRTResult`: a likelihood-ratio comparison of two fits.

Both are frozen: a result is a snapshot of a completed computation.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np
import pandas as pd

from .exceptions import UsageError

if TYPE_CHECKING:
    from .clusters import Cluster
    from .control import Control
    from .families import FamilySpec
    from .parameters import ParameterLayout, ParameterVector

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer, np.bool_)):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports ``result["key"]`` (``KeyError`` on miss),
    ``result.get(key, default)`` and ``"key" in result``.

    Subclasses may override ``_SERIALIZERS`` to register conversion
    functions for non-primitive fields; serialized values still pass
    through :func:`_numpy_to_python`.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {}

    # Fields to exclude from to_dict() serialisation.
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset()

    def __getitem__(self, key: str) -> Any:
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain, JSON-serialisable dictionary."""
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


# ------------------------------------------------------------------ #
# MixedModelFit
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class MixedModelFit(_DictAccessMixin):
    """A fitted generalized linear mixed model.

    Returned by :func:`~.model.mixed_model`.  All fields are accessible
    both as attributes (``fit.loglik``) and via dict syntax
    (``fit["loglik"]``).
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "family": lambda f: f.name,
        "layout": lambda layout: layout.names(),
        "params": lambda p: p.to_dict(),
        "control": asdict,
        "group_ids": list,
    }
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"clusters"})

    # ---- Model -----------------------------------------------------
    family: FamilySpec
    """Response family the model was fit with."""

    layout: ParameterLayout
    """Block sizes and names of the unconstrained parameter vector."""

    # ---- Estimates -------------------------------------------------
    theta: np.ndarray
    """Unconstrained optimum ``[betas | chol(D) | phis | gammas | chol(D_zi)]``."""

    params: ParameterVector
    """Estimates on their natural scale (``phis`` on the log scale)."""

    loglik: float
    """Maximized marginal log-likelihood."""

    gradient: np.ndarray
    """Gradient of the negative log-likelihood at ``theta``."""

    vcov: np.ndarray | None
    """Covariance of ``theta`` (inverse Hessian); ``None`` if not computed."""

    # ---- Random effects --------------------------------------------
    modes: np.ndarray
    """Conditional modes ``(n_clusters, re_dim)``, cluster order."""

    post_vars: np.ndarray
    """Posterior covariance approximations ``(n_clusters, re_dim, re_dim)``."""

    group_ids: tuple[Any, ...]
    """Cluster labels, in the row order of ``modes``."""

    # ---- Diagnostics -----------------------------------------------
    converged: bool
    """Whether the optimizer met a convergence threshold."""

    message: str
    """Reason the optimizer stopped."""

    n_iter: int
    """Optimizer iterations (refinement phase)."""

    flags: dict[str, int]
    """Counts of numerical warnings at the optimum."""

    quadrature_order: int
    """Gauss-Hermite order per dimension actually used."""

    control: Control
    """Controls the fit ran with."""

    clusters: tuple[Cluster, ...] = field(repr=False)
    """Cluster data (read-only), needed by simulation and fitted values."""

    # ---- Sizes and information criteria ----------------------------

    @property
    def n_obs(self) -> int:
        return int(sum(c.n_obs for c in self.clusters))

    @property
    def n_clusters(self) -> int:
        return len(self.clusters)

    @property
    def df(self) -> int:
        """Number of estimated parameters."""
        return self.layout.size

    @property
    def aic(self) -> float:
        return -2.0 * self.loglik + 2.0 * self.df

    @property
    def bic(self) -> float:
        return -2.0 * self.loglik + np.log(self.n_obs) * self.df

    # ---- Accessors -------------------------------------------------

    @property
    def D(self) -> np.ndarray:
        return self.params.D

    @property
    def D_zi(self) -> np.ndarray | None:
        return self.params.D_zi

    @property
    def phis(self) -> np.ndarray:
        """Dispersion parameters on the log scale."""
        return self.params.phis

    def fixef(self, part: str = "main") -> pd.Series:
        """Fixed effects of the ``"main"`` or ``"zero_part"`` model."""
        if part == "main":
            return pd.Series(self.params.betas, index=list(self.layout.beta_names))
        if part == "zero_part":
            return pd.Series(self.params.gammas, index=list(self.layout.gamma_names))
        raise UsageError(f"part must be 'main' or 'zero_part', got {part!r}.")

    def ranef(self) -> pd.DataFrame:
        """Conditional modes as a frame indexed by group label."""
        columns = [*self.layout.re_names, *(f"zi_{n}" for n in self.layout.re_zi_names)]
        return pd.DataFrame(self.modes, index=list(self.group_ids), columns=columns)

    @property
    def standard_errors(self) -> pd.Series:
        """Standard errors of the unconstrained parameters."""
        names = self.layout.names()
        if self.vcov is None:
            return pd.Series(np.full(len(names), np.nan), index=names)
        return pd.Series(np.sqrt(np.clip(np.diag(self.vcov), 0.0, None)), index=names)

    def coef_table(self, part: str = "main") -> pd.DataFrame:
        """Wald table of the fixed effects (see :func:`~.inference.wald_table`)."""
        from .inference import wald_table

        return wald_table(self, part=part)

    def response(self) -> np.ndarray:
        """Observed response in the original observation order."""
        y = np.empty(self.n_obs)
        for cluster in self.clusters:
            y[cluster.index] = cluster.y
        return y


# ------------------------------------------------------------------ #
# LRTResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class LRTResult(_DictAccessMixin):
    """Likelihood-ratio test of a smaller model against a larger one."""

    statistic: float
    """``-2 (loglik0 - loglik1)``, clipped at zero."""

    df: int
    """Difference in parameter counts."""

    p_value: float
    """Upper chi-square tail probability of ``statistic``."""

    loglik0: float
    """Log-likelihood of the smaller model."""

    loglik1: float
    """Log-likelihood of the larger model."""

    aic: tuple[float, float]
    """AIC of (smaller, larger)."""

    bic: tuple[float, float]
    """BIC of (smaller, larger)."""

    def to_frame(self) -> pd.DataFrame:
        """Two-row comparison table."""
        return pd.DataFrame(
            {
                "AIC": list(self.aic),
                "BIC": list(self.bic),
                "log.Lik": [self.loglik0, self.loglik1],
                "LRT": [np.nan, self.statistic],
                "df": [np.nan, self.df],
                "p-value": [np.nan, self.p_value],
            },
            index=["fit0", "fit1"],
        )
