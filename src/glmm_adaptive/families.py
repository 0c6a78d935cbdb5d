"""Response families: the single extension point of the engine.

A :class:`FamilySpec` describes one response distribution through a
small capability set:

=====================  ========  =========================================
Capability             Required  Used by
=====================  ========  =========================================
``link``               yes       mean model, simulation, fitted values
``log_dens``           yes       mode finding, quadrature, likelihood
``score_eta``          no        mode gradient, β gradient
``score_phis``         no        dispersion gradient
``score_eta_zi``       no        zero-part gradient (composites)
``curvature_eta``      no        analytic Newton curvature at the mode
``distribution``       no        simulation, zero-truncated draws
``simulate_fun``       no        simulation (overrides ``distribution``)
``mean_fun``           no        conditional mean of y (composites)
=====================  ========  =========================================

Every function shares the calling convention
``fn(y, eta, mu_fun, phis, eta_zi)`` and operates element-wise, so the
integrator can pass ``(n_i, K)`` arrays (observations × quadrature
nodes) without the family knowing about quadrature at all.  Dispersion
parameters ``phis`` always arrive on the unconstrained (log) scale.

Score capabilities are resolved **once**, when the family is built, to
a tagged choice: :class:`AnalyticScore` wraps a user function and
:class:`ApproximateScore` records the centered finite-difference step
used in its place.  The engine calls :meth:`FamilySpec.score_eta_values`
and friends and never asks which variant it got.

Built-in families (``binomial``, ``poisson``, ``negative_binomial``,
``gaussian``) carry analytic scores for every link and analytic
curvature for their canonical link.  Zero-inflated and hurdle variants
live in :mod:`.zero_inflation` and are compositions of these.

The registry (:func:`register_family` / :func:`resolve_family`) maps
user-facing names to factories.  :func:`as_family` is the public
coercion point: it accepts a registered name, a ``FamilySpec``, or any
mapping/object exposing the contract, and validates it before the fit
starts.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, NamedTuple, TypeAlias

import numpy as np
from scipy import special, stats

from .exceptions import UsageError
from .links import Link, resolve_link

LogDensFn: TypeAlias = Callable[..., Any]

DEFAULT_FD_STEP: float = 1e-4
"""Centered finite-difference step used when an analytic score is absent."""

_SUPPORTS = frozenset({"real", "binary", "binomial", "count", "positive"})

# ------------------------------------------------------------------ #
# Density evaluation and score rules
# ------------------------------------------------------------------ #


class DensityEval(NamedTuple):
    """Per-observation log density with the attached conditional mean of y."""

    log_dens: np.ndarray
    mu_y: np.ndarray


@dataclass(frozen=True)
class AnalyticScore:
    """Score supplied by the family: ``fn(y, eta, mu_fun, phis, eta_zi)``."""

    fn: Callable[..., np.ndarray]


@dataclass(frozen=True)
class ApproximateScore:
    """Score approximated by centered finite differences of ``log_dens``."""

    step: float = DEFAULT_FD_STEP


ScoreRule: TypeAlias = AnalyticScore | ApproximateScore


def _as_phis(phis: Any) -> np.ndarray:
    return np.atleast_1d(np.asarray(phis, dtype=float))


# ------------------------------------------------------------------ #
# FamilySpec
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FamilySpec:
    """Immutable description of a response distribution.

    Use :func:`make_family` (custom families) or the built-in factories
    rather than constructing this directly; they validate the
    capability set and resolve score rules.

    Attributes:
        name: Family identifier used in results and model comparison.
        link: Resolved :class:`~.links.Link`.
        log_dens: ``(y, eta, mu_fun, phis, eta_zi) → log f`` element-wise,
            returning an array or a :class:`DensityEval`.
        score_eta: Rule for ``∂ log f / ∂ eta``.
        score_phis: Rule for ``∂ log f / ∂ phis`` (log scale); analytic
            functions return an array with a leading ``n_phis`` axis.
        score_eta_zi: Rule for ``∂ log f / ∂ eta_zi``.
        curvature_eta: Optional ``∂² log f / ∂ eta²``.
        distribution: Optional ``(mu, phis) → scipy frozen distribution``.
        simulate_fun: Optional ``(mu, phis, eta_zi, rng) → draws``.
        mean_fun: Optional ``(eta, mu_fun, phis, eta_zi) → E[y]``.
        n_phis: Number of dispersion parameters.
        fixed_n_phis: Whether ``n_phis`` is intrinsic to the family.
        zero_part: ``"none"``, ``"zero_inflated"`` or ``"hurdle"``.
        base: Wrapped family for zero-inflated / hurdle composites.
        support: ``"real"``, ``"binary"``, ``"binomial"``, ``"count"`` or
            ``"positive"``.
        trials: Number of Bernoulli trials per observation for
            ``"binomial"`` support.
    """

    name: str
    link: Link
    log_dens: LogDensFn
    score_eta: ScoreRule = field(default_factory=ApproximateScore)
    score_phis: ScoreRule = field(default_factory=ApproximateScore)
    score_eta_zi: ScoreRule = field(default_factory=ApproximateScore)
    curvature_eta: Callable[..., np.ndarray] | None = None
    distribution: Callable[..., Any] | None = None
    simulate_fun: Callable[..., np.ndarray] | None = None
    mean_fun: Callable[..., np.ndarray] | None = None
    n_phis: int = 0
    fixed_n_phis: bool = False
    zero_part: str = "none"
    base: FamilySpec | None = None
    support: str = "real"
    trials: int = 1

    # ---- Link shortcuts --------------------------------------------

    @property
    def linkfun(self) -> Callable[[np.ndarray], np.ndarray]:
        return self.link.linkfun

    @property
    def linkinv(self) -> Callable[[np.ndarray], np.ndarray]:
        return self.link.linkinv

    @property
    def has_zero_part(self) -> bool:
        return self.zero_part != "none"

    @property
    def capabilities(self) -> frozenset[str]:
        """Names of the optional capabilities supplied analytically."""
        caps = set()
        if isinstance(self.score_eta, AnalyticScore):
            caps.add("score_eta")
        if isinstance(self.score_phis, AnalyticScore):
            caps.add("score_phis")
        if isinstance(self.score_eta_zi, AnalyticScore):
            caps.add("score_eta_zi")
        for name in ("curvature_eta", "distribution", "simulate_fun", "mean_fun"):
            if getattr(self, name) is not None:
                caps.add(name)
        return frozenset(caps)

    @property
    def can_simulate(self) -> bool:
        return self.simulate_fun is not None or self.distribution is not None

    # ---- Density ---------------------------------------------------

    def density(
        self,
        y: np.ndarray,
        eta: np.ndarray,
        phis: Any = (),
        eta_zi: np.ndarray | None = None,
    ) -> DensityEval:
        """Evaluate the log density and the conditional mean of y."""
        phis = _as_phis(phis)
        out = self.log_dens(y, eta, self.link.linkinv, phis, eta_zi)
        if isinstance(out, DensityEval):
            return out
        mu_y = self.mean(eta, phis, eta_zi)
        return DensityEval(np.asarray(out, dtype=float), mu_y)

    def log_density(
        self,
        y: np.ndarray,
        eta: np.ndarray,
        phis: Any = (),
        eta_zi: np.ndarray | None = None,
    ) -> np.ndarray:
        """Element-wise log density (conditional mean discarded)."""
        out = self.log_dens(y, eta, self.link.linkinv, _as_phis(phis), eta_zi)
        if isinstance(out, DensityEval):
            return out.log_dens
        return np.asarray(out, dtype=float)

    def mean(
        self,
        eta: np.ndarray,
        phis: Any = (),
        eta_zi: np.ndarray | None = None,
    ) -> np.ndarray:
        """Conditional mean of y given the linear predictors."""
        if self.mean_fun is not None:
            return np.asarray(
                self.mean_fun(eta, self.link.linkinv, _as_phis(phis), eta_zi),
                dtype=float,
            )
        return self.link.linkinv(eta)

    # ---- Scores ----------------------------------------------------

    def score_eta_values(
        self,
        y: np.ndarray,
        eta: np.ndarray,
        phis: Any = (),
        eta_zi: np.ndarray | None = None,
    ) -> np.ndarray:
        """``∂ log f / ∂ eta`` element-wise, analytic or approximated."""
        phis = _as_phis(phis)
        rule = self.score_eta
        if isinstance(rule, AnalyticScore):
            return np.asarray(rule.fn(y, eta, self.link.linkinv, phis, eta_zi), float)
        h = rule.step
        up = self.log_density(y, eta + h, phis, eta_zi)
        down = self.log_density(y, eta - h, phis, eta_zi)
        return (up - down) / (2.0 * h)

    def score_phis_values(
        self,
        y: np.ndarray,
        eta: np.ndarray,
        phis: Any = (),
        eta_zi: np.ndarray | None = None,
    ) -> np.ndarray:
        """``∂ log f / ∂ phis`` with shape ``(n_phis, *eta.shape)``."""
        phis = _as_phis(phis)
        n_phis = phis.shape[0]
        shape = np.broadcast(np.asarray(y), np.asarray(eta)).shape
        if n_phis == 0:
            return np.zeros((0, *shape))
        rule = self.score_phis
        if isinstance(rule, AnalyticScore):
            out = np.asarray(rule.fn(y, eta, self.link.linkinv, phis, eta_zi), float)
            return out.reshape((n_phis, *shape))
        h = rule.step
        scores = np.empty((n_phis, *shape))
        for j in range(n_phis):
            step = np.zeros(n_phis)
            step[j] = h
            up = self.log_density(y, eta, phis + step, eta_zi)
            down = self.log_density(y, eta, phis - step, eta_zi)
            scores[j] = (up - down) / (2.0 * h)
        return scores

    def score_eta_zi_values(
        self,
        y: np.ndarray,
        eta: np.ndarray,
        phis: Any = (),
        eta_zi: np.ndarray | None = None,
    ) -> np.ndarray:
        """``∂ log f / ∂ eta_zi``; zeros when the family has no zero part."""
        if eta_zi is None or not self.has_zero_part:
            return np.zeros(np.broadcast(np.asarray(y), np.asarray(eta)).shape)
        phis = _as_phis(phis)
        rule = self.score_eta_zi
        if isinstance(rule, AnalyticScore):
            return np.asarray(rule.fn(y, eta, self.link.linkinv, phis, eta_zi), float)
        h = rule.step
        up = self.log_density(y, eta, phis, eta_zi + h)
        down = self.log_density(y, eta, phis, eta_zi - h)
        return (up - down) / (2.0 * h)

    def curvature_eta_values(
        self,
        y: np.ndarray,
        eta: np.ndarray,
        phis: Any = (),
        eta_zi: np.ndarray | None = None,
    ) -> np.ndarray | None:
        """``∂² log f / ∂ eta²`` if the family supplies it, else ``None``."""
        if self.curvature_eta is None:
            return None
        out = self.curvature_eta(y, eta, self.link.linkinv, _as_phis(phis), eta_zi)
        return np.asarray(out, dtype=float)

    # ---- Simulation and validation ---------------------------------

    def simulate(
        self,
        eta: np.ndarray,
        phis: Any,
        eta_zi: np.ndarray | None,
        rng: np.random.Generator,
    ) -> np.ndarray:
        """Draw one response per element of *eta* from the family's law.

        Raises:
            UsageError: If the family offers neither ``simulate_fun``
                nor ``distribution``.
        """
        phis = _as_phis(phis)
        mu = self.link.linkinv(eta)
        if self.simulate_fun is not None:
            return np.asarray(self.simulate_fun(mu, phis, eta_zi, rng))
        if self.distribution is not None:
            return np.asarray(self.distribution(mu, phis).rvs(random_state=rng))
        msg = (
            f"Family {self.name!r} cannot simulate: supply 'simulate_fun' or "
            "'distribution' when building it."
        )
        raise UsageError(msg)

    def validate_y(self, y: np.ndarray) -> None:
        """Check that *y* lies in the family's support."""
        y = np.asarray(y, dtype=float)
        if np.any(~np.isfinite(y)):
            msg = f"Family {self.name!r} does not accept NaN or infinite responses."
            raise UsageError(msg)
        if self.support == "binary" and not np.all(np.isin(y, (0.0, 1.0))):
            msg = f"Family {self.name!r} requires a binary (0/1) response."
            raise UsageError(msg)
        if self.support == "binomial" and (
            np.any(y < 0) or np.any(y > self.trials) or not np.allclose(y, np.round(y))
        ):
            msg = (
                f"Family {self.name!r} requires integer success counts between "
                f"0 and {self.trials}."
            )
            raise UsageError(msg)
        if self.support == "count" and (
            np.any(y < 0) or not np.allclose(y, np.round(y))
        ):
            msg = f"Family {self.name!r} requires non-negative integer counts."
            raise UsageError(msg)
        if self.support == "positive" and np.any(y <= 0):
            msg = f"Family {self.name!r} requires a strictly positive response."
            raise UsageError(msg)

    def __repr__(self) -> str:
        return f"FamilySpec(name={self.name!r}, link={self.link.name!r})"


# ------------------------------------------------------------------ #
# Construction and validation
# ------------------------------------------------------------------ #


def _check_callable(value: Any, label: str, family: str) -> None:
    if value is not None and not callable(value):
        kind = type(value).__name__
        msg = f"Family {family!r}: '{label}' must be callable, got {kind}."
        raise UsageError(msg)


def _score_rule(fn: Callable[..., np.ndarray] | None, step: float) -> ScoreRule:
    if fn is None:
        return ApproximateScore(step)
    return AnalyticScore(fn)


def make_family(
    name: str,
    link: str | Link,
    log_dens: LogDensFn,
    *,
    score_eta_fun: Callable[..., np.ndarray] | None = None,
    score_phis_fun: Callable[..., np.ndarray] | None = None,
    score_eta_zi_fun: Callable[..., np.ndarray] | None = None,
    curvature_eta_fun: Callable[..., np.ndarray] | None = None,
    distribution: Callable[..., Any] | None = None,
    simulate_fun: Callable[..., np.ndarray] | None = None,
    mean_fun: Callable[..., np.ndarray] | None = None,
    n_phis: int = 0,
    fd_step: float = DEFAULT_FD_STEP,
    support: str = "real",
    zero_part: str = "none",
) -> FamilySpec:
    """Build and validate a custom :class:`FamilySpec`.

    Args:
        name: Family identifier.
        link: Link name or :class:`~.links.Link`.
        log_dens: ``(y, eta, mu_fun, phis, eta_zi) → log f`` element-wise.
        score_eta_fun: Optional analytic ``∂ log f / ∂ eta``.
        score_phis_fun: Optional analytic ``∂ log f / ∂ phis``.
        score_eta_zi_fun: Optional analytic ``∂ log f / ∂ eta_zi``.
        curvature_eta_fun: Optional analytic ``∂² log f / ∂ eta²``.
        distribution: Optional ``(mu, phis) → scipy frozen distribution``.
        simulate_fun: Optional ``(mu, phis, eta_zi, rng) → draws``.
        mean_fun: Optional ``(eta, mu_fun, phis, eta_zi) → E[y]``.
        n_phis: Number of dispersion parameters (log scale).
        fd_step: Finite-difference step for absent scores.
        support: Response support used by :meth:`FamilySpec.validate_y`.
        zero_part: ``"none"``, ``"zero_inflated"`` or ``"hurdle"`` for
            families that read ``eta_zi`` themselves.

    Raises:
        UsageError: On a missing or non-callable capability, an unknown
            link, or invalid numeric settings.
    """
    if not isinstance(name, str) or not name:
        msg = "Family name must be a non-empty string."
        raise UsageError(msg)
    if log_dens is None:
        msg = f"Family {name!r} is missing the required 'log_dens' function."
        raise UsageError(msg)
    _check_callable(log_dens, "log_dens", name)
    for label, fn in (
        ("score_eta_fun", score_eta_fun),
        ("score_phis_fun", score_phis_fun),
        ("score_eta_zi_fun", score_eta_zi_fun),
        ("curvature_eta_fun", curvature_eta_fun),
        ("distribution", distribution),
        ("simulate_fun", simulate_fun),
        ("mean_fun", mean_fun),
    ):
        _check_callable(fn, label, name)
    if not fd_step > 0:
        msg = f"Family {name!r}: fd_step must be positive, got {fd_step!r}."
        raise UsageError(msg)
    if int(n_phis) != n_phis or n_phis < 0:
        msg = f"Family {name!r}: n_phis must be a non-negative integer."
        raise UsageError(msg)
    if support not in _SUPPORTS:
        msg = f"Family {name!r}: unknown support {support!r}."
        raise UsageError(msg)
    if zero_part not in ("none", "zero_inflated", "hurdle"):
        msg = f"Family {name!r}: unknown zero_part {zero_part!r}."
        raise UsageError(msg)

    return FamilySpec(
        name=name,
        link=resolve_link(link),
        log_dens=log_dens,
        score_eta=_score_rule(score_eta_fun, fd_step),
        score_phis=_score_rule(score_phis_fun, fd_step),
        score_eta_zi=_score_rule(score_eta_zi_fun, fd_step),
        curvature_eta=curvature_eta_fun,
        distribution=distribution,
        simulate_fun=simulate_fun,
        mean_fun=mean_fun,
        n_phis=int(n_phis),
        zero_part=zero_part,
        support=support,
    )


def _numeric_mu_eta(linkinv: Callable[[np.ndarray], np.ndarray]) -> Callable:
    def mu_eta(eta: np.ndarray) -> np.ndarray:
        h = DEFAULT_FD_STEP
        return (linkinv(eta + h) - linkinv(eta - h)) / (2.0 * h)

    return mu_eta


def _link_from_parts(obj_get: Callable[[str], Any], family: str) -> Link:
    link = obj_get("link")
    linkfun = obj_get("linkfun")
    linkinv = obj_get("linkinv")
    if isinstance(link, Link):
        return link
    if linkfun is None or linkinv is None:
        if link is None:
            msg = (
                f"Family {family!r} must provide 'link' together with "
                "'linkfun' and 'linkinv'."
            )
            raise UsageError(msg)
        return resolve_link(link)
    _check_callable(linkfun, "linkfun", family)
    _check_callable(linkinv, "linkinv", family)
    mu_eta = obj_get("mu_eta")
    _check_callable(mu_eta, "mu_eta", family)
    return Link(
        name=str(link) if link is not None else "custom",
        linkfun=linkfun,
        linkinv=linkinv,
        mu_eta=mu_eta if mu_eta is not None else _numeric_mu_eta(linkinv),
    )


def as_family(family: str | FamilySpec | Mapping[str, Any] | Any) -> FamilySpec:
    """Coerce *family* to a validated :class:`FamilySpec`.

    Accepts a registered name, an existing ``FamilySpec`` (returned
    as-is), or a mapping / object exposing ``link``, ``linkfun``,
    ``linkinv`` and ``log_dens`` plus any of the optional capabilities
    (``score_eta_fun``, ``score_phis_fun``, ``score_eta_zi_fun``,
    ``curvature_eta_fun``, ``distribution``, ``simulate_fun``,
    ``mean_fun``, ``n_phis``, ``support``).

    Raises:
        UsageError: If a required capability is missing or malformed.
    """
    if isinstance(family, FamilySpec):
        return family
    if isinstance(family, str):
        return resolve_family(family)

    if isinstance(family, Mapping):
        def obj_get(key: str) -> Any:
            return family.get(key)
    else:
        def obj_get(key: str) -> Any:
            return getattr(family, key, None)

    name = obj_get("family") or obj_get("name") or "custom"
    if obj_get("log_dens") is None:
        msg = f"Family {name!r} is missing the required 'log_dens' function."
        raise UsageError(msg)
    link = _link_from_parts(obj_get, name)
    return make_family(
        name,
        link,
        obj_get("log_dens"),
        score_eta_fun=obj_get("score_eta_fun"),
        score_phis_fun=obj_get("score_phis_fun"),
        score_eta_zi_fun=obj_get("score_eta_zi_fun"),
        curvature_eta_fun=obj_get("curvature_eta_fun"),
        distribution=obj_get("distribution"),
        simulate_fun=obj_get("simulate_fun"),
        mean_fun=obj_get("mean_fun"),
        n_phis=obj_get("n_phis") or 0,
        fd_step=obj_get("fd_step") or DEFAULT_FD_STEP,
        support=obj_get("support") or "real",
        zero_part=obj_get("zero_part") or "none",
    )


def with_n_phis(family: FamilySpec, n_phis: int | None) -> FamilySpec:
    """Return *family* with its dispersion count set to *n_phis*.

    Raises:
        UsageError: If the family's dispersion count is intrinsic and
            *n_phis* disagrees with it.
    """
    if n_phis is None or n_phis == family.n_phis:
        return family
    if family.fixed_n_phis:
        msg = (
            f"Family {family.name!r} has exactly {family.n_phis} dispersion "
            f"parameter(s); got n_phis={n_phis}."
        )
        raise UsageError(msg)
    if int(n_phis) != n_phis or n_phis < 0:
        msg = f"n_phis must be a non-negative integer, got {n_phis!r}."
        raise UsageError(msg)
    return replace(family, n_phis=int(n_phis))


# ------------------------------------------------------------------ #
# Built-in families
# ------------------------------------------------------------------ #
#
# Canonical links get the closed-form score and curvature; any other
# link uses the generic chain rule through ``link.mu_eta`` and leaves
# the curvature to finite differences in the integrator.


# Binomial: y successes out of ``trials``; trials=1 is the Bernoulli case.


def _log_binom_coef(y, n):
    return (
        special.gammaln(n + 1.0)
        - special.gammaln(y + 1.0)
        - special.gammaln(n - y + 1.0)
    )


def _make_binomial_log_dens(link: Link, trials: int) -> LogDensFn:
    if link.name == "logit":
        if trials == 1:
            def log_dens(y, eta, mu_fun, phis, eta_zi):
                return y * eta - np.logaddexp(0.0, eta)
            return log_dens

        def log_dens(y, eta, mu_fun, phis, eta_zi):
            coef = _log_binom_coef(y, trials)
            return coef + y * eta - trials * np.logaddexp(0.0, eta)
        return log_dens

    def log_dens(y, eta, mu_fun, phis, eta_zi):
        mu = mu_fun(eta)
        out = special.xlogy(y, mu) + special.xlog1py(trials - y, -mu)
        if trials > 1:
            out = out + _log_binom_coef(y, trials)
        return out

    return log_dens


def _make_binomial_score(link: Link, trials: int) -> Callable[..., np.ndarray]:
    if link.name == "logit":
        def score(y, eta, mu_fun, phis, eta_zi):
            return y - trials * special.expit(eta)
        return score

    def score(y, eta, mu_fun, phis, eta_zi):
        mu = mu_fun(eta)
        return (y - trials * mu) / (mu * (1.0 - mu)) * link.mu_eta(eta)

    return score


def _make_binomial_curvature(trials: int) -> Callable[..., np.ndarray]:
    def curvature(y, eta, mu_fun, phis, eta_zi):
        mu = special.expit(eta)
        return -trials * mu * (1.0 - mu)

    return curvature


def _make_binomial_distribution(trials: int) -> Callable[..., Any]:
    if trials == 1:
        def distribution(mu, phis):
            return stats.bernoulli(mu)
        return distribution

    def distribution(mu, phis):
        return stats.binom(trials, mu)

    return distribution


def _make_binomial_mean(trials: int) -> Callable[..., np.ndarray]:
    def mean(eta, mu_fun, phis, eta_zi):
        return trials * mu_fun(eta)

    return mean


def binomial(link: str | Link = "logit", trials: int = 1) -> FamilySpec:
    """Binomial successes out of *trials* with a probability link.

    ``trials=1`` (the default) is the Bernoulli model for a 0/1
    response; larger values model a count of successes out of the same
    number of trials for every observation.

    Raises:
        UsageError: If *trials* is not a positive integer.
    """
    if isinstance(trials, bool) or int(trials) != trials or trials < 1:
        msg = f"binomial: trials must be a positive integer, got {trials!r}."
        raise UsageError(msg)
    trials = int(trials)
    link = resolve_link(link)
    return FamilySpec(
        name="binomial",
        link=link,
        log_dens=_make_binomial_log_dens(link, trials),
        score_eta=AnalyticScore(_make_binomial_score(link, trials)),
        curvature_eta=(
            _make_binomial_curvature(trials) if link.name == "logit" else None
        ),
        distribution=_make_binomial_distribution(trials),
        mean_fun=_make_binomial_mean(trials) if trials > 1 else None,
        n_phis=0,
        fixed_n_phis=True,
        support="binary" if trials == 1 else "binomial",
        trials=trials,
    )


def _make_poisson_log_dens(link: Link) -> LogDensFn:
    if link.name == "log":
        def log_dens(y, eta, mu_fun, phis, eta_zi):
            return y * eta - mu_fun(eta) - special.gammaln(y + 1.0)
        return log_dens

    def log_dens(y, eta, mu_fun, phis, eta_zi):
        mu = mu_fun(eta)
        return special.xlogy(y, mu) - mu - special.gammaln(y + 1.0)

    return log_dens


def _make_poisson_score(link: Link) -> Callable[..., np.ndarray]:
    if link.name == "log":
        def score(y, eta, mu_fun, phis, eta_zi):
            return y - mu_fun(eta)
        return score

    def score(y, eta, mu_fun, phis, eta_zi):
        mu = mu_fun(eta)
        return (y / mu - 1.0) * link.mu_eta(eta)

    return score


def _poisson_curvature(y, eta, mu_fun, phis, eta_zi):
    return -mu_fun(eta)


def _poisson_distribution(mu, phis):
    return stats.poisson(mu)


def poisson(link: str | Link = "log") -> FamilySpec:
    """Poisson counts."""
    link = resolve_link(link)
    return FamilySpec(
        name="poisson",
        link=link,
        log_dens=_make_poisson_log_dens(link),
        score_eta=AnalyticScore(_make_poisson_score(link)),
        curvature_eta=_poisson_curvature if link.name == "log" else None,
        distribution=_poisson_distribution,
        n_phis=0,
        fixed_n_phis=True,
        support="count",
    )


# Negative binomial (NB2): size k = exp(phi), Var(y) = mu + mu²/k.


def _negbin_log_dens(y, eta, mu_fun, phis, eta_zi):
    k = np.exp(phis[0])
    mu = mu_fun(eta)
    log_k_mu = np.log(k + mu)
    return (
        special.gammaln(y + k)
        - special.gammaln(k)
        - special.gammaln(y + 1.0)
        + k * (np.log(k) - log_k_mu)
        + special.xlogy(y, mu)
        - y * log_k_mu
    )


def _make_negbin_score(link: Link) -> Callable[..., np.ndarray]:
    if link.name == "log":
        def score(y, eta, mu_fun, phis, eta_zi):
            k = np.exp(phis[0])
            mu = mu_fun(eta)
            return k * (y - mu) / (k + mu)
        return score

    def score(y, eta, mu_fun, phis, eta_zi):
        k = np.exp(phis[0])
        mu = mu_fun(eta)
        return (y / mu - (y + k) / (k + mu)) * link.mu_eta(eta)

    return score


def _negbin_score_phis(y, eta, mu_fun, phis, eta_zi):
    k = np.exp(phis[0])
    mu = mu_fun(eta)
    dk = (
        special.digamma(y + k)
        - special.digamma(k)
        + np.log(k)
        - np.log(k + mu)
        + 1.0
        - (y + k) / (k + mu)
    )
    return (k * dk)[np.newaxis, ...]


def _negbin_curvature(y, eta, mu_fun, phis, eta_zi):
    k = np.exp(phis[0])
    mu = mu_fun(eta)
    return -k * mu * (k + y) / (k + mu) ** 2


def _negbin_distribution(mu, phis):
    k = float(np.exp(phis[0]))
    return stats.nbinom(k, k / (k + mu))


def negative_binomial(link: str | Link = "log") -> FamilySpec:
    """Negative binomial counts with dispersion ``phi = log(size)``."""
    link = resolve_link(link)
    return FamilySpec(
        name="negative_binomial",
        link=link,
        log_dens=_negbin_log_dens,
        score_eta=AnalyticScore(_make_negbin_score(link)),
        score_phis=AnalyticScore(_negbin_score_phis),
        curvature_eta=_negbin_curvature if link.name == "log" else None,
        distribution=_negbin_distribution,
        n_phis=1,
        fixed_n_phis=True,
        support="count",
    )


# Gaussian: phi = log(sigma).


def _gaussian_log_dens(y, eta, mu_fun, phis, eta_zi):
    sigma = np.exp(phis[0])
    resid = (y - mu_fun(eta)) / sigma
    return -0.5 * np.log(2.0 * np.pi) - phis[0] - 0.5 * resid**2


def _make_gaussian_score(link: Link) -> Callable[..., np.ndarray]:
    def score(y, eta, mu_fun, phis, eta_zi):
        sigma2 = np.exp(2.0 * phis[0])
        return (y - mu_fun(eta)) / sigma2 * link.mu_eta(eta)

    return score


def _gaussian_score_phis(y, eta, mu_fun, phis, eta_zi):
    resid = (y - mu_fun(eta)) / np.exp(phis[0])
    return (resid**2 - 1.0)[np.newaxis, ...]


def _gaussian_curvature(y, eta, mu_fun, phis, eta_zi):
    return np.full(np.broadcast(y, eta).shape, -np.exp(-2.0 * phis[0]))


def _gaussian_distribution(mu, phis):
    return stats.norm(mu, float(np.exp(phis[0])))


def gaussian(link: str | Link = "identity") -> FamilySpec:
    """Normal response with residual scale ``phi = log(sigma)``."""
    link = resolve_link(link)
    return FamilySpec(
        name="gaussian",
        link=link,
        log_dens=_gaussian_log_dens,
        score_eta=AnalyticScore(_make_gaussian_score(link)),
        score_phis=AnalyticScore(_gaussian_score_phis),
        curvature_eta=_gaussian_curvature if link.name == "identity" else None,
        distribution=_gaussian_distribution,
        n_phis=1,
        fixed_n_phis=True,
        support="real",
    )


# ------------------------------------------------------------------ #
# Family registry
# ------------------------------------------------------------------ #

_FAMILIES: dict[str, Callable[[], FamilySpec]] = {}
"""Registry mapping family names to zero-argument factories."""


def register_family(name: str, factory: Callable[[], FamilySpec]) -> None:
    """Register a :class:`FamilySpec` factory under *name*.

    Raises:
        TypeError: If *factory* does not produce a ``FamilySpec``.
    """
    try:
        instance = factory()
    except Exception:  # noqa: BLE001
        msg = f"{factory!r} could not be called to build a family."
        raise TypeError(msg) from None
    if not isinstance(instance, FamilySpec):
        msg = f"{factory!r} does not build a FamilySpec."
        raise TypeError(msg)
    _FAMILIES[name] = factory


def resolve_family(name: str) -> FamilySpec:
    """Build the registered family called *name*.

    Raises:
        UsageError: If *name* is not registered.
    """
    if name not in _FAMILIES:
        available = ", ".join(sorted(_FAMILIES)) or "(none registered)"
        msg = f"Unknown family {name!r}.  Available families: {available}."
        raise UsageError(msg)
    return _FAMILIES[name]()


def available_families() -> list[str]:
    """Names of all registered families."""
    return sorted(_FAMILIES)


register_family("binomial", binomial)
register_family("poisson", poisson)
register_family("negative_binomial", negative_binomial)
register_family("gaussian", gaussian)
