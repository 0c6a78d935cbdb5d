"""Process-wide defaults for the glmm_adaptive package.

Controls how many worker threads the marginal likelihood uses to
process clusters when a :class:`~.control.Control` leaves ``n_jobs``
unset.

Resolution order (first match wins):
    1. Programmatic override via :func:`set_n_jobs`.
    2. The ``GLMM_ADAPTIVE_N_JOBS`` environment variable.
    3. ``1`` (sequential).

Any integer accepted by :class:`joblib.Parallel` is valid, including
``-1`` for "all cores".  ``0`` is rejected.

Examples:
    Use every core from the shell::

        export GLMM_ADAPTIVE_N_JOBS=-1

    Programmatically::

        import glmm_adaptive
        glmm_adaptive.set_n_jobs(4)

    Restore the default resolution order::

        glmm_adaptive.set_n_jobs(None)
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)

_ENV_VAR = "GLMM_ADAPTIVE_N_JOBS"

# Sentinel indicating "no programmatic override has been set".
_n_jobs_override: int | None = None


def _check_n_jobs(value: int) -> int:
    if isinstance(value, bool) or int(value) != value or value == 0:
        raise ValueError(f"n_jobs must be a non-zero integer, got {value!r}.")
    return int(value)


def get_n_jobs() -> int:
    """Return the default worker count.

    Resolution order:
        1. Value set by :func:`set_n_jobs`.
        2. ``GLMM_ADAPTIVE_N_JOBS`` environment variable.
        3. ``1``.

    An unparseable environment value is ignored (logged at WARNING).

    Returns:
        A non-zero integer suitable for :class:`joblib.Parallel`.
    """
    # 1. Programmatic override
    if _n_jobs_override is not None:
        return _n_jobs_override

    # 2. Environment variable
    env = os.environ.get(_ENV_VAR, "").strip()
    if env:
        try:
            return _check_n_jobs(int(env))
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", _ENV_VAR, env)

    # 3. Sequential
    return 1


def set_n_jobs(n_jobs: int | None) -> None:
    """Override the default worker count.

    Args:
        n_jobs: Non-zero integer, or ``None`` to restore the default
            resolution order.

    Raises:
        ValueError: If *n_jobs* is zero or not an integer.
    """
    global _n_jobs_override
    _n_jobs_override = None if n_jobs is None else _check_n_jobs(n_jobs)
