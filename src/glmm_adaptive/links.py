"""Link functions shared by the built-in and user-supplied families.

A :class:`Link` is an immutable bundle of three pure functions:

* ``linkfun``: ``g(mu) = eta``
* ``linkinv``: ``g⁻¹(eta) = mu``
* ``mu_eta``: ``d mu / d eta``, used by the generic (non-canonical)
  score formulas in :mod:`.families`.

Links are looked up by name through :func:`resolve_link`, which is the
only place a string is turned into behaviour.  Everything downstream
holds the ``Link`` value itself.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
from scipy import special
from scipy.stats import norm

from .exceptions import UsageError

ArrayFn = Callable[[np.ndarray], np.ndarray]

# Keeps log(mu) and log(1 - mu) finite in the generic Bernoulli density.
_PROB_EPS: float = 1e-12


@dataclass(frozen=True)
class Link:
    """Immutable link configuration.

    Attributes:
        name: Identifier (``"logit"``, ``"log"``, …).
        linkfun: ``mu → eta``.
        linkinv: ``eta → mu``.
        mu_eta: ``eta → d mu / d eta``.
    """

    name: str
    linkfun: ArrayFn
    linkinv: ArrayFn
    mu_eta: ArrayFn

    def __repr__(self) -> str:
        return f"Link({self.name!r})"


def _identity(x: np.ndarray) -> np.ndarray:
    return np.asarray(x, dtype=float)


def _ones_like(x: np.ndarray) -> np.ndarray:
    return np.ones_like(np.asarray(x, dtype=float))


def _log_linkinv(eta: np.ndarray) -> np.ndarray:
    return np.exp(np.clip(eta, -700.0, 700.0))


def _logit_linkinv(eta: np.ndarray) -> np.ndarray:
    return np.clip(special.expit(eta), _PROB_EPS, 1.0 - _PROB_EPS)


def _logit_mu_eta(eta: np.ndarray) -> np.ndarray:
    mu = special.expit(eta)
    return np.maximum(mu * (1.0 - mu), np.finfo(float).tiny)


def _probit_linkinv(eta: np.ndarray) -> np.ndarray:
    return np.clip(norm.cdf(eta), _PROB_EPS, 1.0 - _PROB_EPS)


def _probit_mu_eta(eta: np.ndarray) -> np.ndarray:
    return np.maximum(norm.pdf(eta), np.finfo(float).tiny)


def _cloglog_linkfun(mu: np.ndarray) -> np.ndarray:
    return np.log(-np.log1p(-np.asarray(mu, dtype=float)))


def _cloglog_linkinv(eta: np.ndarray) -> np.ndarray:
    mu = -np.expm1(-np.exp(np.clip(eta, -700.0, 700.0)))
    return np.clip(mu, _PROB_EPS, 1.0 - _PROB_EPS)


def _cloglog_mu_eta(eta: np.ndarray) -> np.ndarray:
    eta = np.clip(eta, -700.0, 700.0)
    return np.maximum(np.exp(eta - np.exp(eta)), np.finfo(float).tiny)


_LINKS: dict[str, Link] = {
    "identity": Link("identity", _identity, _identity, _ones_like),
    "log": Link("log", np.log, _log_linkinv, _log_linkinv),
    "logit": Link("logit", special.logit, _logit_linkinv, _logit_mu_eta),
    "probit": Link("probit", norm.ppf, _probit_linkinv, _probit_mu_eta),
    "cloglog": Link("cloglog", _cloglog_linkfun, _cloglog_linkinv, _cloglog_mu_eta),
}


def resolve_link(link: str | Link) -> Link:
    """Return the :class:`Link` for *link* (name or instance).

    Raises:
        UsageError: If *link* is an unknown name or not a ``Link``.
    """
    if isinstance(link, Link):
        return link
    if isinstance(link, str) and link in _LINKS:
        return _LINKS[link]
    available = ", ".join(sorted(_LINKS))
    msg = f"Unknown link {link!r}.  Available links: {available}."
    raise UsageError(msg)


def available_links() -> list[str]:
    """Names of the built-in links."""
    return sorted(_LINKS)
