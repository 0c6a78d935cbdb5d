"""Zero-inflated and hurdle families as compositions of a base family.

Both variants add a gating Bernoulli process driven by a second linear
predictor ``eta_zi`` with ``π = logistic(eta_zi)``:

* **Zero-inflated** (mixture): an extra point mass at zero::

      P(y = 0) = π + (1 − π) f(0)
      P(y > 0) = (1 − π) f(y)

* **Hurdle** (two-part): zeros come only from the gate::

      P(y = 0) = π
      P(y > 0) = (1 − π) f(y) / (1 − f(0))

where ``f`` is the base family's density.  The composite wraps the base
:class:`~.families.FamilySpec` value and exposes the identical
interface, so the integrator cannot tell it apart from a plain family.
Its scores in ``eta``, ``phis`` and ``eta_zi`` are derived from the base
density and base scores evaluated at ``y`` and at zero; if the base
family approximates its scores numerically, so does the composite.

All log-probabilities are combined with ``np.logaddexp`` so that tiny
base zero-probabilities (large means) do not underflow.
"""

from __future__ import annotations

from functools import partial

import numpy as np
from scipy import special

from .exceptions import UsageError
from .families import (
    AnalyticScore,
    DensityEval,
    FamilySpec,
    negative_binomial,
    poisson,
    register_family,
)

# Rejection rounds for zero-truncated draws when the base family has no
# scipy distribution to invert.
_MAX_REJECTION_ROUNDS: int = 1000

# ------------------------------------------------------------------ #
# Shared helpers
# ------------------------------------------------------------------ #


def _require_eta_zi(eta_zi: np.ndarray | None, name: str) -> np.ndarray:
    if eta_zi is None:
        msg = f"Family {name!r} needs a zero-part linear predictor (eta_zi)."
        raise UsageError(msg)
    return np.asarray(eta_zi, dtype=float)


def _gate_logs(eta_zi: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """``(log π, log(1 − π))`` for ``π = logistic(eta_zi)``."""
    return -np.logaddexp(0.0, -eta_zi), -np.logaddexp(0.0, eta_zi)


def _base_parts(base: FamilySpec, y, eta, phis):
    y = np.asarray(y, dtype=float)
    zeros = np.zeros_like(y)
    ld_y = base.log_density(y, eta, phis)
    ld_0 = base.log_density(zeros, eta, phis)
    return y, zeros, ld_y, ld_0


def _log1m_exp(log_p: np.ndarray) -> np.ndarray:
    """``log(1 − exp(log_p))`` for ``log_p < 0``."""
    return np.log(-np.expm1(np.minimum(log_p, -np.finfo(float).tiny)))


def _base_draws(base: FamilySpec, mu, phis, rng: np.random.Generator) -> np.ndarray:
    if base.simulate_fun is not None:
        return np.asarray(base.simulate_fun(mu, phis, None, rng))
    if base.distribution is not None:
        return np.asarray(base.distribution(mu, phis).rvs(random_state=rng))
    msg = f"Base family {base.name!r} cannot simulate."
    raise UsageError(msg)


# ------------------------------------------------------------------ #
# Zero-inflated mixture
# ------------------------------------------------------------------ #


def _zi_log_dens(base, y, eta, mu_fun, phis, eta_zi):
    eta_zi = _require_eta_zi(eta_zi, f"zi_{base.name}")
    log_pi, log_1mpi = _gate_logs(eta_zi)
    y, _, ld_y, ld_0 = _base_parts(base, y, eta, phis)
    log_p0 = np.logaddexp(log_pi, log_1mpi + ld_0)
    out = np.where(y == 0, log_p0, log_1mpi + ld_y)
    mu_y = np.exp(log_1mpi) * base.mean(eta, phis)
    return DensityEval(out, mu_y)


def _zi_zero_weight(base, y, eta, phis, eta_zi):
    """Posterior probability that an observed zero came from the base law."""
    log_pi, log_1mpi = _gate_logs(eta_zi)
    y, zeros, ld_y, ld_0 = _base_parts(base, y, eta, phis)
    log_p0 = np.logaddexp(log_pi, log_1mpi + ld_0)
    return y, zeros, np.exp(log_1mpi + ld_0 - log_p0)


def _zi_score_eta(base, y, eta, mu_fun, phis, eta_zi):
    eta_zi = _require_eta_zi(eta_zi, f"zi_{base.name}")
    y, zeros, r0 = _zi_zero_weight(base, y, eta, phis, eta_zi)
    s_y = base.score_eta_values(y, eta, phis)
    s_0 = base.score_eta_values(zeros, eta, phis)
    return np.where(y == 0, r0 * s_0, s_y)


def _zi_score_phis(base, y, eta, mu_fun, phis, eta_zi):
    eta_zi = _require_eta_zi(eta_zi, f"zi_{base.name}")
    y, zeros, r0 = _zi_zero_weight(base, y, eta, phis, eta_zi)
    s_y = base.score_phis_values(y, eta, phis)
    s_0 = base.score_phis_values(zeros, eta, phis)
    return np.where(y == 0, r0 * s_0, s_y)


def _zi_score_eta_zi(base, y, eta, mu_fun, phis, eta_zi):
    eta_zi = _require_eta_zi(eta_zi, f"zi_{base.name}")
    pi = special.expit(eta_zi)
    y, _, ld_y, ld_0 = _base_parts(base, y, eta, phis)
    log_pi, log_1mpi = _gate_logs(eta_zi)
    log_p0 = np.logaddexp(log_pi, log_1mpi + ld_0)
    # d log P(0) / d eta_zi = π (1 − π) (1 − f(0)) / P(0)
    d_zero = np.exp(log_pi + log_1mpi + _log1m_exp(ld_0) - log_p0)
    return np.where(y == 0, d_zero, -pi)


def _zi_mean(base, eta, mu_fun, phis, eta_zi):
    eta_zi = _require_eta_zi(eta_zi, f"zi_{base.name}")
    return (1.0 - special.expit(eta_zi)) * base.mean(eta, phis)


def _zi_simulate(base, mu, phis, eta_zi, rng):
    eta_zi = _require_eta_zi(eta_zi, f"zi_{base.name}")
    draws = _base_draws(base, mu, phis, rng).astype(float)
    structural_zero = rng.random(draws.shape) < special.expit(eta_zi)
    return np.where(structural_zero, 0.0, draws)


# ------------------------------------------------------------------ #
# Hurdle (two-part)
# ------------------------------------------------------------------ #


def _hurdle_log_dens(base, y, eta, mu_fun, phis, eta_zi):
    eta_zi = _require_eta_zi(eta_zi, f"hurdle_{base.name}")
    log_pi, log_1mpi = _gate_logs(eta_zi)
    y, _, ld_y, ld_0 = _base_parts(base, y, eta, phis)
    log_1mf0 = _log1m_exp(ld_0)
    out = np.where(y == 0, log_pi, log_1mpi + ld_y - log_1mf0)
    mu_y = np.exp(log_1mpi - log_1mf0) * base.mean(eta, phis)
    return DensityEval(out, mu_y)


def _hurdle_truncation_ratio(base, y, eta, phis):
    """``f(0) / (1 − f(0))``: derivative weight of the truncation term."""
    y, zeros, _, ld_0 = _base_parts(base, y, eta, phis)
    return y, zeros, np.exp(ld_0 - _log1m_exp(ld_0))


def _hurdle_score_eta(base, y, eta, mu_fun, phis, eta_zi):
    y, zeros, ratio = _hurdle_truncation_ratio(base, y, eta, phis)
    s_y = base.score_eta_values(y, eta, phis)
    s_0 = base.score_eta_values(zeros, eta, phis)
    return np.where(y == 0, 0.0, s_y + ratio * s_0)


def _hurdle_score_phis(base, y, eta, mu_fun, phis, eta_zi):
    y, zeros, ratio = _hurdle_truncation_ratio(base, y, eta, phis)
    s_y = base.score_phis_values(y, eta, phis)
    s_0 = base.score_phis_values(zeros, eta, phis)
    return np.where(y == 0, 0.0, s_y + ratio * s_0)


def _hurdle_score_eta_zi(base, y, eta, mu_fun, phis, eta_zi):
    eta_zi = _require_eta_zi(eta_zi, f"hurdle_{base.name}")
    pi = special.expit(eta_zi)
    y = np.asarray(y, dtype=float)
    return np.where(y == 0, 1.0 - pi, -pi)


def _hurdle_mean(base, eta, mu_fun, phis, eta_zi):
    eta_zi = _require_eta_zi(eta_zi, f"hurdle_{base.name}")
    ld_0 = base.log_density(np.zeros_like(np.asarray(eta, dtype=float)), eta, phis)
    _, log_1mpi = _gate_logs(eta_zi)
    return np.exp(log_1mpi - _log1m_exp(ld_0)) * base.mean(eta, phis)


def _zero_truncated_draws(base, mu, phis, rng):
    if base.distribution is not None:
        dist = base.distribution(mu, phis)
        f0 = dist.cdf(0.0)
        u = rng.uniform(f0, 1.0)
        return np.maximum(dist.ppf(u), 1.0)
    draws = _base_draws(base, mu, phis, rng).astype(float)
    for _ in range(_MAX_REJECTION_ROUNDS):
        redo = draws == 0
        if not np.any(redo):
            return draws
        fresh = _base_draws(base, mu, phis, rng).astype(float)
        draws = np.where(redo, fresh, draws)
    msg = (
        f"Zero-truncated sampling from {base.name!r} did not finish; give the "
        "base family a 'distribution' so draws can use the inverse CDF."
    )
    raise UsageError(msg)


def _hurdle_simulate(base, mu, phis, eta_zi, rng):
    eta_zi = _require_eta_zi(eta_zi, f"hurdle_{base.name}")
    mu = np.asarray(mu, dtype=float)
    positive = _zero_truncated_draws(base, mu, phis, rng)
    gate_zero = rng.random(mu.shape) < special.expit(eta_zi)
    return np.where(gate_zero, 0.0, positive)


# ------------------------------------------------------------------ #
# Composition
# ------------------------------------------------------------------ #


def _check_base(base: FamilySpec) -> None:
    if not isinstance(base, FamilySpec):
        msg = f"Base family must be a FamilySpec, got {type(base).__name__}."
        raise UsageError(msg)
    if base.has_zero_part:
        msg = f"Base family {base.name!r} already has a zero part."
        raise UsageError(msg)
    if base.support == "binary":
        msg = "Zero-inflated and hurdle variants need a count or continuous base."
        raise UsageError(msg)


def zero_inflated(base: FamilySpec) -> FamilySpec:
    """Zero-inflated mixture of *base* with a logistic gate."""
    _check_base(base)
    return FamilySpec(
        name=f"zi_{base.name}",
        link=base.link,
        log_dens=partial(_zi_log_dens, base),
        score_eta=AnalyticScore(partial(_zi_score_eta, base)),
        score_phis=AnalyticScore(partial(_zi_score_phis, base)),
        score_eta_zi=AnalyticScore(partial(_zi_score_eta_zi, base)),
        simulate_fun=partial(_zi_simulate, base) if base.can_simulate else None,
        mean_fun=partial(_zi_mean, base),
        n_phis=base.n_phis,
        fixed_n_phis=base.fixed_n_phis,
        zero_part="zero_inflated",
        base=base,
        support=base.support,
        trials=base.trials,
    )


def hurdle(base: FamilySpec) -> FamilySpec:
    """Hurdle model: logistic zero gate plus zero-truncated *base*."""
    _check_base(base)
    return FamilySpec(
        name=f"hurdle_{base.name}",
        link=base.link,
        log_dens=partial(_hurdle_log_dens, base),
        score_eta=AnalyticScore(partial(_hurdle_score_eta, base)),
        score_phis=AnalyticScore(partial(_hurdle_score_phis, base)),
        score_eta_zi=AnalyticScore(partial(_hurdle_score_eta_zi, base)),
        simulate_fun=partial(_hurdle_simulate, base) if base.can_simulate else None,
        mean_fun=partial(_hurdle_mean, base),
        n_phis=base.n_phis,
        fixed_n_phis=base.fixed_n_phis,
        zero_part="hurdle",
        base=base,
        support=base.support,
        trials=base.trials,
    )


def zi_poisson() -> FamilySpec:
    return zero_inflated(poisson())


def zi_negative_binomial() -> FamilySpec:
    return zero_inflated(negative_binomial())


def hurdle_poisson() -> FamilySpec:
    return hurdle(poisson())


def hurdle_negative_binomial() -> FamilySpec:
    return hurdle(negative_binomial())


register_family("zi_poisson", zi_poisson)
register_family("zi_negative_binomial", zi_negative_binomial)
register_family("hurdle_poisson", hurdle_poisson)
register_family("hurdle_negative_binomial", hurdle_negative_binomial)
