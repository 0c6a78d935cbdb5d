"""Grouping of observations into independent clusters.

The marginal likelihood factorizes over clusters: each one carries its
own random-effects vector and contributes an independent integral.
:func:`build_clusters` validates the designs once, splits them by the
grouping factor and freezes the pieces, so the integrator and the
worker threads only ever see read-only per-cluster blocks.

Clusters are ordered by sorted group label (``np.unique`` order).  That
order is the reduction order of the likelihood and the row order of
``fit.modes``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np

from .exceptions import SingularDesignError, UsageError


def _frozen(arr: np.ndarray | None) -> np.ndarray | None:
    if arr is None:
        return None
    out = np.array(arr, dtype=float, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class Cluster:
    """Data of one cluster (read-only arrays).

    Attributes:
        group: Original group label.
        index: Row positions of the cluster's observations in the input.
        y: Responses ``(n_i,)``.
        X: Fixed-effects block ``(n_i, p)``.
        Z: Random-effects block ``(n_i, q)``.
        X_zi: Zero-part fixed-effects block ``(n_i, p_zi)`` or ``None``.
        Z_zi: Zero-part random-effects block ``(n_i, q_zi)`` or ``None``.
    """

    group: Any
    index: np.ndarray
    y: np.ndarray
    X: np.ndarray
    Z: np.ndarray
    X_zi: np.ndarray | None = None
    Z_zi: np.ndarray | None = None

    @property
    def n_obs(self) -> int:
        return int(self.y.shape[0])

    def __repr__(self) -> str:
        return f"Cluster(group={self.group!r}, n_obs={self.n_obs})"


# ------------------------------------------------------------------ #
# Validation
# ------------------------------------------------------------------ #


def _as_matrix(arr: Any, label: str, n: int) -> np.ndarray:
    out = np.asarray(arr, dtype=float)
    if out.ndim == 1:
        out = out[:, np.newaxis]
    if out.ndim != 2:
        msg = f"'{label}' must be 1-D or 2-D, got {out.ndim} dimensions."
        raise UsageError(msg)
    if out.shape[0] != n:
        msg = f"'{label}' has {out.shape[0]} rows but y has {n} observations."
        raise UsageError(msg)
    if out.shape[1] == 0:
        msg = f"'{label}' has no columns."
        raise UsageError(msg)
    if not np.all(np.isfinite(out)):
        msg = f"'{label}' contains NaN or infinite values."
        raise UsageError(msg)
    return out


def _check_rank(arr: np.ndarray, label: str) -> None:
    """Raise :class:`SingularDesignError` if *arr* lacks full column rank."""
    rank = np.linalg.matrix_rank(arr)
    if rank < arr.shape[1]:
        msg = (
            f"Design '{label}' is rank deficient (rank {rank} < "
            f"{arr.shape[1]} columns); the likelihood is not identified."
        )
        raise SingularDesignError(msg)


def build_clusters(
    y: Any,
    X: Any,
    groups: Any,
    Z: Any,
    X_zi: Any = None,
    Z_zi: Any = None,
) -> tuple[Cluster, ...]:
    """Validate the designs and split them by *groups*.

    Args:
        y: Response ``(n,)``.
        X: Fixed-effects design ``(n, p)``.
        groups: Cluster label per observation ``(n,)``.
        Z: Random-effects design ``(n, q)``.
        X_zi: Optional zero-part fixed-effects design ``(n, p_zi)``.
        Z_zi: Optional zero-part random-effects design ``(n, q_zi)``;
            requires *X_zi*.

    Returns:
        Clusters in sorted-label order.

    Raises:
        UsageError: On mismatched lengths, bad shapes or non-finite
            values.
        SingularDesignError: If any design lacks full column rank.
    """
    y = np.asarray(y, dtype=float)
    if y.ndim == 2 and y.shape[1] == 1:
        y = y[:, 0]
    if y.ndim != 1:
        msg = f"y must be one-dimensional, got shape {y.shape}."
        raise UsageError(msg)
    n = y.shape[0]
    if n == 0:
        msg = "y is empty."
        raise UsageError(msg)

    labels = np.asarray(groups)
    if labels.ndim != 1 or labels.shape[0] != n:
        msg = f"groups must be 1-D with {n} entries, got shape {labels.shape}."
        raise UsageError(msg)
    if labels.dtype.kind == "f" and np.any(np.isnan(labels)):
        msg = "groups contains missing labels."
        raise UsageError(msg)

    X = _as_matrix(X, "X", n)
    Z = _as_matrix(Z, "Z", n)
    _check_rank(X, "X")
    _check_rank(Z, "Z")
    if Z_zi is not None and X_zi is None:
        msg = "Z_zi requires a zero-part fixed-effects design X_zi."
        raise UsageError(msg)
    if X_zi is not None:
        X_zi = _as_matrix(X_zi, "X_zi", n)
        _check_rank(X_zi, "X_zi")
    if Z_zi is not None:
        Z_zi = _as_matrix(Z_zi, "Z_zi", n)
        _check_rank(Z_zi, "Z_zi")

    unique, codes = np.unique(labels, return_inverse=True)
    clusters = []
    for g, label in enumerate(unique):
        idx = np.flatnonzero(codes == g)
        idx.setflags(write=False)
        clusters.append(
            Cluster(
                group=label.item() if hasattr(label, "item") else label,
                index=idx,
                y=_frozen(y[idx]),
                X=_frozen(X[idx]),
                Z=_frozen(Z[idx]),
                X_zi=_frozen(X_zi[idx]) if X_zi is not None else None,
                Z_zi=_frozen(Z_zi[idx]) if Z_zi is not None else None,
            )
        )
    return tuple(clusters)
