"""Model parameters and their unconstrained reparameterization.

The optimizer works on one flat vector::

    theta = [ betas | vech-log-chol(D) | phis | gammas | vech-log-chol(D_zi) ]

* ``betas`` / ``gammas``: fixed effects of the main and zero part,
  unconstrained as they are.
* ``D`` / ``D_zi``: random-effects covariances, stored through their
  lower Cholesky factor ``L`` with the diagonal on the log scale, row by
  row::

      [log L₀₀, L₁₀, log L₁₁, L₂₀, L₂₁, log L₂₂, …]

  Any real vector maps to a valid positive-definite matrix.
* ``phis``: dispersions, already on the log scale inside the families.

:class:`ParameterLayout` owns the block sizes and names and converts
between :class:`ParameterVector` and ``theta``.  It also provides the
gradient of the Gaussian prior with respect to the log-Cholesky
parameters, which the integrator needs for the envelope gradient.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
from scipy import linalg

from .exceptions import UsageError

# ------------------------------------------------------------------ #
# Log-Cholesky helpers
# ------------------------------------------------------------------ #


def n_chol(d: int) -> int:
    """Number of free parameters in a ``d × d`` covariance."""
    return d * (d + 1) // 2


def fill_lower_triangular(params: np.ndarray, d: int) -> np.ndarray:
    """Rebuild the Cholesky factor ``L`` from its log-Cholesky vector."""
    L = np.zeros((d, d))
    idx = 0
    for i in range(d):
        for j in range(i):
            L[i, j] = params[idx]
            idx += 1
        L[i, i] = np.exp(params[idx])
        idx += 1
    return L


def chol_transf(D: np.ndarray) -> np.ndarray:
    """Covariance → log-Cholesky vector.

    Raises:
        UsageError: If *D* is not square, symmetric and positive definite.
    """
    D = np.atleast_2d(np.asarray(D, dtype=float))
    d = D.shape[0]
    if D.shape != (d, d) or not np.allclose(D, D.T):
        msg = f"Covariance must be a symmetric square matrix, got shape {D.shape}."
        raise UsageError(msg)
    try:
        L = np.linalg.cholesky(D)
    except np.linalg.LinAlgError:
        msg = "Covariance matrix is not positive definite."
        raise UsageError(msg) from None
    out = np.empty(n_chol(d))
    idx = 0
    for i in range(d):
        for j in range(i):
            out[idx] = L[i, j]
            idx += 1
        out[idx] = np.log(L[i, i])
        idx += 1
    return out


def chol_inv(params: np.ndarray, d: int) -> np.ndarray:
    """Log-Cholesky vector → covariance ``L Lᵀ``."""
    L = fill_lower_triangular(params, d)
    return L @ L.T


def log_chol_prior_gradient(L: np.ndarray, second_moment: np.ndarray) -> np.ndarray:
    """Expected gradient of ``log N(b; 0, L Lᵀ)`` in log-Cholesky coordinates.

    With ``v = L⁻¹ b`` the gradient with respect to ``L`` is
    ``L⁻ᵀ (v vᵀ − I)``; taking its expectation only needs
    ``M = E[b bᵀ]``.  Diagonal entries are scaled by ``L_ii`` for the
    log transform.

    Args:
        L: Lower Cholesky factor ``(d, d)``.
        second_moment: ``E[b bᵀ]`` under the posterior node weights.

    Returns:
        Gradient vector of length ``d (d + 1) / 2`` in the layout order.
    """
    d = L.shape[0]
    # L⁻¹ M L⁻ᵀ
    inner = linalg.solve_triangular(L, second_moment, lower=True)
    inner = linalg.solve_triangular(L, inner.T, lower=True).T
    G = linalg.solve_triangular(L.T, inner - np.eye(d), lower=False)
    out = np.empty(n_chol(d))
    idx = 0
    for i in range(d):
        for j in range(i):
            out[idx] = G[i, j]
            idx += 1
        out[idx] = G[i, i] * L[i, i]
        idx += 1
    return out


# ------------------------------------------------------------------ #
# Parameter values
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ParameterVector:
    """Parameters on their natural scale.

    ``phis`` stays on the log scale, the scale every family receives.
    ``gammas`` and ``D_zi`` are empty / ``None`` without a zero part.
    """

    betas: np.ndarray
    D: np.ndarray
    phis: np.ndarray = field(default_factory=lambda: np.zeros(0))
    gammas: np.ndarray = field(default_factory=lambda: np.zeros(0))
    D_zi: np.ndarray | None = None

    def prior_covariance(self) -> np.ndarray:
        """Block-diagonal ``diag(D, D_zi)`` of the stacked random effects."""
        if self.D_zi is None or self.D_zi.size == 0:
            return self.D
        return linalg.block_diag(self.D, self.D_zi)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "betas": self.betas,
            "D": self.D,
            "phis": self.phis,
        }
        if self.gammas.size:
            out["gammas"] = self.gammas
        if self.D_zi is not None:
            out["D_zi"] = self.D_zi
        return out


@dataclass(frozen=True)
class ParameterLayout:
    """Block sizes, names and transforms of the unconstrained vector.

    Attributes:
        beta_names: Fixed-effect names, one per column of ``X``.
        re_names: Random-effect names, one per column of ``Z``.
        n_phis: Number of dispersion parameters.
        gamma_names: Zero-part fixed-effect names (may be empty).
        re_zi_names: Zero-part random-effect names (may be empty).
    """

    beta_names: tuple[str, ...]
    re_names: tuple[str, ...]
    n_phis: int = 0
    gamma_names: tuple[str, ...] = ()
    re_zi_names: tuple[str, ...] = ()

    # ---- Sizes -----------------------------------------------------

    @property
    def n_betas(self) -> int:
        return len(self.beta_names)

    @property
    def q(self) -> int:
        return len(self.re_names)

    @property
    def n_gammas(self) -> int:
        return len(self.gamma_names)

    @property
    def q_zi(self) -> int:
        return len(self.re_zi_names)

    @property
    def re_dim(self) -> int:
        """Dimension of the stacked random-effects vector."""
        return self.q + self.q_zi

    @property
    def size(self) -> int:
        return (
            self.n_betas
            + n_chol(self.q)
            + self.n_phis
            + self.n_gammas
            + n_chol(self.q_zi)
        )

    # ---- Block slices ----------------------------------------------

    def _bounds(self) -> dict[str, slice]:
        sizes = (
            ("betas", self.n_betas),
            ("D", n_chol(self.q)),
            ("phis", self.n_phis),
            ("gammas", self.n_gammas),
            ("D_zi", n_chol(self.q_zi)),
        )
        out: dict[str, slice] = {}
        start = 0
        for name, size in sizes:
            out[name] = slice(start, start + size)
            start += size
        return out

    def block(self, name: str) -> slice:
        """Slice of *name* (``"betas"``, ``"D"``, ``"phis"``, ``"gammas"``,
        ``"D_zi"``) within ``theta``."""
        return self._bounds()[name]

    # ---- Transforms ------------------------------------------------

    def pack(self, params: ParameterVector) -> np.ndarray:
        """:class:`ParameterVector` → unconstrained ``theta``.

        Raises:
            UsageError: If a block has the wrong size.
        """
        betas = np.atleast_1d(np.asarray(params.betas, dtype=float))
        phis = np.atleast_1d(np.asarray(params.phis, dtype=float))
        gammas = np.atleast_1d(np.asarray(params.gammas, dtype=float))
        D = np.atleast_2d(np.asarray(params.D, dtype=float))
        self._check_len("betas", betas.size, self.n_betas)
        self._check_len("phis", phis.size, self.n_phis)
        self._check_len("gammas", gammas.size, self.n_gammas)
        self._check_len("D", D.shape[0], self.q)
        parts = [betas, chol_transf(D), phis, gammas]
        if self.q_zi:
            if params.D_zi is None:
                msg = "D_zi is required when the zero part has random effects."
                raise UsageError(msg)
            D_zi = np.atleast_2d(np.asarray(params.D_zi, dtype=float))
            self._check_len("D_zi", D_zi.shape[0], self.q_zi)
            parts.append(chol_transf(D_zi))
        return np.concatenate(parts)

    def unpack(self, theta: np.ndarray) -> ParameterVector:
        """Unconstrained ``theta`` → :class:`ParameterVector`."""
        theta = np.asarray(theta, dtype=float)
        self._check_len("theta", theta.size, self.size)
        b = self._bounds()
        return ParameterVector(
            betas=theta[b["betas"]].copy(),
            D=chol_inv(theta[b["D"]], self.q),
            phis=theta[b["phis"]].copy(),
            gammas=theta[b["gammas"]].copy(),
            D_zi=chol_inv(theta[b["D_zi"]], self.q_zi) if self.q_zi else None,
        )

    def cholesky_factors(
        self, theta: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray | None]:
        """Cholesky factors ``(L, L_zi)`` straight from ``theta``."""
        b = self._bounds()
        L = fill_lower_triangular(theta[b["D"]], self.q)
        L_zi = fill_lower_triangular(theta[b["D_zi"]], self.q_zi) if self.q_zi else None
        return L, L_zi

    # ---- Names -----------------------------------------------------

    @staticmethod
    def _chol_names(prefix: str, names: tuple[str, ...]) -> list[str]:
        out = []
        for i in range(len(names)):
            for j in range(i):
                out.append(f"{prefix}[{names[i]}:{names[j]}]")
            out.append(f"log_{prefix}[{names[i]}]")
        return out

    def names(self) -> list[str]:
        """Labels of every entry of ``theta``, in order."""
        return [
            *self.beta_names,
            *self._chol_names("chol_D", self.re_names),
            *(f"log_phi_{j + 1}" for j in range(self.n_phis)),
            *(f"zi_{name}" for name in self.gamma_names),
            *self._chol_names("chol_D_zi", self.re_zi_names),
        ]

    @staticmethod
    def _check_len(label: str, got: int, expected: int) -> None:
        if got != expected:
            msg = f"'{label}' has {got} entries, expected {expected}."
            raise UsageError(msg)
