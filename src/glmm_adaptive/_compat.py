"""Input compatibility layer: NumPy, pandas and optional Polars.

:func:`~.model.mixed_model` accepts NumPy arrays, pandas objects and
Polars frames/series.  Everything is converted here, at the boundary,
so that the engine only ever sees float NumPy arrays.  Column names of
frames become coefficient names; plain arrays get positional names
(``x0``, ``x1``, …).

Polars is **not** a required dependency.  If it is not installed,
Polars inputs simply cannot occur and everything else works unchanged.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd

from .exceptions import UsageError

# Polars is optional; detect it at import time.
try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _from_polars(obj: Any) -> Any:
    """Convert Polars objects to their pandas counterparts."""
    if _HAS_POLARS:
        if isinstance(obj, pl.LazyFrame):
            return obj.collect().to_pandas()
        if isinstance(obj, (pl.DataFrame, pl.Series)):
            return obj.to_pandas()
    return obj


def as_design(
    obj: Any, *, name: str, prefix: str = "x"
) -> tuple[np.ndarray, tuple[str, ...]]:
    """Coerce a design matrix and derive its column names.

    A 1-D input becomes a single column.

    Returns:
        ``(matrix (n, p) float, column names)``.

    Raises:
        UsageError: If the values cannot be converted to floats.
    """
    obj = _from_polars(obj)
    if isinstance(obj, pd.DataFrame):
        names = tuple(str(c) for c in obj.columns)
        values = obj.to_numpy()
    elif isinstance(obj, pd.Series):
        names = (str(obj.name) if obj.name is not None else f"{prefix}0",)
        values = obj.to_numpy()[:, np.newaxis]
    else:
        values = np.asarray(obj)
        if values.ndim == 1:
            values = values[:, np.newaxis]
        n_cols = values.shape[1] if values.ndim == 2 else 0
        names = tuple(f"{prefix}{j}" for j in range(n_cols))
    try:
        values = np.asarray(values, dtype=float)
    except (TypeError, ValueError):
        msg = f"'{name}' must be numeric."
        raise UsageError(msg) from None
    return values, names


def as_vector(obj: Any, *, name: str) -> np.ndarray:
    """Coerce a numeric response to a 1-D float array."""
    obj = _from_polars(obj)
    if isinstance(obj, pd.DataFrame):
        if obj.shape[1] != 1:
            msg = f"'{name}' must have exactly one column, got {obj.shape[1]}."
            raise UsageError(msg)
        obj = obj.iloc[:, 0]
    try:
        values = np.asarray(obj, dtype=float)
    except (TypeError, ValueError):
        msg = f"'{name}' must be numeric."
        raise UsageError(msg) from None
    if values.ndim == 2 and values.shape[1] == 1:
        values = values[:, 0]
    return values


def as_labels(obj: Any, *, name: str) -> np.ndarray:
    """Coerce a grouping factor to a 1-D array of labels (any dtype)."""
    obj = _from_polars(obj)
    if isinstance(obj, pd.DataFrame):
        if obj.shape[1] != 1:
            msg = f"'{name}' must have exactly one column, got {obj.shape[1]}."
            raise UsageError(msg)
        obj = obj.iloc[:, 0]
    if isinstance(obj, pd.Series):
        if obj.isna().any():
            msg = f"'{name}' contains missing labels."
            raise UsageError(msg)
        obj = obj.to_numpy()
    labels = np.asarray(obj)
    if labels.dtype == object:
        labels = labels.astype(str)
    return labels
