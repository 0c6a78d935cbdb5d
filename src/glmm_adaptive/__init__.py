"""glmm_adaptive: Generalized linear mixed models by adaptive quadrature.

Fits GLMMs by maximum likelihood, integrating the cluster-level random
effects out with adaptive Gauss-Hermite quadrature.  One pluggable
family abstraction covers Bernoulli and binomial, Poisson, negative binomial and
Gaussian responses, their zero-inflated and hurdle compositions, and
user-supplied distributions.

Public API:
    .. autosummary::
        mixed_model
        simulate
        fitted
        ranef
        anova
        wald_table
        Control
        MixedModelFit
        LRTResult
        FamilySpec
        make_family
        as_family
        binomial
        poisson
        negative_binomial
        gaussian
        zero_inflated
        hurdle
        register_family
        resolve_family
        get_n_jobs
        set_n_jobs
"""

from ._config import get_n_jobs, set_n_jobs
from ._results import LRTResult, MixedModelFit
from .control import Control
from .exceptions import (
    CurvatureRegularizationWarning,
    FatalFitError,
    ModeConvergenceWarning,
    NumericalWarning,
    OptimizerConvergenceWarning,
    SingularDesignError,
    UsageError,
)
from .families import (
    FamilySpec,
    as_family,
    available_families,
    binomial,
    gaussian,
    make_family,
    negative_binomial,
    poisson,
    register_family,
    resolve_family,
)
from .inference import anova, wald_table
from .model import mixed_model
from .simulate import fitted, ranef, simulate
from .zero_inflation import (
    hurdle,
    hurdle_negative_binomial,
    hurdle_poisson,
    zero_inflated,
    zi_negative_binomial,
    zi_poisson,
)

__version__ = "0.1.0"

__all__ = [
    "mixed_model",
    "simulate",
    "fitted",
    "ranef",
    "anova",
    "wald_table",
    "Control",
    "MixedModelFit",
    "LRTResult",
    "FamilySpec",
    "make_family",
    "as_family",
    "available_families",
    "binomial",
    "poisson",
    "negative_binomial",
    "gaussian",
    "zero_inflated",
    "hurdle",
    "zi_poisson",
    "zi_negative_binomial",
    "hurdle_poisson",
    "hurdle_negative_binomial",
    "register_family",
    "resolve_family",
    "get_n_jobs",
    "set_n_jobs",
    "UsageError",
    "NumericalWarning",
    "ModeConvergenceWarning",
    "CurvatureRegularizationWarning",
    "OptimizerConvergenceWarning",
    "FatalFitError",
    "SingularDesignError",
]
