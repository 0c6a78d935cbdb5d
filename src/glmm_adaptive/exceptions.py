"""Error and warning hierarchy for glmm_adaptive.

Three severities, matching how each failure is handled:

* :class:`UsageError`: raised synchronously before any work is done
  (malformed family, mismatched dimensions, invalid controls,
  non-nested model comparison).  Subclasses ``ValueError`` so callers
  that already guard against bad arguments keep working.
* :class:`NumericalWarning`: a local numerical problem that the engine
  recovers from (mode search hit its cap, curvature had to be
  regularised, optimizer hit its budget).  Emitted through
  ``warnings.warn`` and also counted on the fit object, so the fit
  proceeds and the caller decides whether to trust it.
* :class:`FatalFitError`: the likelihood itself is undefined (singular
  design, non-finite objective at the start).  Aborts the fit with a
  diagnosis distinct from ordinary non-convergence.
"""

from __future__ import annotations


class UsageError(ValueError):
    """Invalid input detected before any computation starts."""


class NumericalWarning(RuntimeWarning):
    """Recoverable numerical problem; surfaced as a flag on the fit."""


class ModeConvergenceWarning(NumericalWarning):
    """Per-cluster mode search stopped at its iteration cap."""


class CurvatureRegularizationWarning(NumericalWarning):
    """Curvature at the mode was not positive definite and was clipped."""


class OptimizerConvergenceWarning(NumericalWarning):
    """Outer optimizer stopped before meeting its convergence thresholds."""


class FatalFitError(RuntimeError):
    """The marginal likelihood is undefined for the supplied data."""


class SingularDesignError(FatalFitError):
    """A fixed-effects design matrix is rank deficient."""
