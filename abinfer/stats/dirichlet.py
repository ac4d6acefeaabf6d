"""Dirichlet posterior over mixture weights.

Prior Dir(alpha_0, ..., alpha_0); after an M-step the posterior is
Dir(alpha_0 + N_1, ..., alpha_0 + N_K) where N_k is the effective count
(sum of responsibilities) of component k.
"""

from __future__ import annotations

from typing import Any, Optional

import numpy as np
from scipy import special as sp_special
from scipy import stats as sp_stats

from abinfer.core.config import settings
from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.stats.posterior import check_level


class DirichletPosterior:
    """Immutable Dirichlet distribution.

    Parameters
    ----------
    alpha : array-like
        Concentration parameters, all strictly positive.
    """

    __slots__ = ("alpha", "_rng")

    def __init__(self, alpha: Any, rng: Optional[np.random.Generator] = None) -> None:
        alpha = np.array(alpha, dtype=float).reshape(-1)
        if alpha.size == 0:
            raise InferenceError(ErrorCode.INVALID_PRIOR, "Dirichlet needs at least one concentration parameter")
        if np.any(~np.isfinite(alpha)) or np.any(alpha <= 0):
            raise InferenceError(
                ErrorCode.INVALID_PRIOR,
                "All concentration parameters must be positive",
                {"alpha": alpha.tolist()},
            )
        alpha.setflags(write=False)
        self.alpha = alpha
        self._rng = rng if rng is not None else np.random.default_rng()

    @classmethod
    def symmetric(cls, k: int, concentration: Optional[float] = None) -> "DirichletPosterior":
        concentration = settings.DIRICHLET_PRIOR_ALPHA if concentration is None else concentration
        return cls(np.full(k, concentration))

    def updated(self, counts: Any) -> "DirichletPosterior":
        """Posterior after observing (possibly fractional) counts."""
        return DirichletPosterior(self.alpha + np.asarray(counts, dtype=float), rng=self._rng)

    @property
    def dimension(self) -> int:
        return int(self.alpha.size)

    @property
    def total(self) -> float:
        return float(np.sum(self.alpha))

    # ------------------------------------------------------------------
    # Moments
    # ------------------------------------------------------------------

    def mean(self) -> np.ndarray:
        """E[pi_k] = alpha_k / sum(alpha)."""
        return self.alpha / self.total

    def variance(self) -> np.ndarray:
        """Var[pi_k] = alpha_k (A - alpha_k) / (A^2 (A + 1))."""
        a = self.total
        return self.alpha * (a - self.alpha) / (a * a * (a + 1))

    def covariance(self) -> np.ndarray:
        """Full covariance matrix; off-diagonals are -alpha_i alpha_j / (A^2 (A + 1))."""
        a = self.total
        cov = -np.outer(self.alpha, self.alpha) / (a * a * (a + 1))
        np.fill_diagonal(cov, self.variance())
        return cov

    def expected_log_weights(self) -> np.ndarray:
        """E[log pi_k] = digamma(alpha_k) - digamma(sum(alpha))."""
        return sp_special.digamma(self.alpha) - sp_special.digamma(self.total)

    # ------------------------------------------------------------------
    # Marginals
    # ------------------------------------------------------------------

    def marginal(self, k: int):
        """pi_k ~ Beta(alpha_k, sum_{j != k} alpha_j)."""
        if not 0 <= k < self.dimension:
            raise IndexError(f"Invalid component index: {k}")
        return sp_stats.beta(self.alpha[k], self.total - self.alpha[k])

    def marginal_interval(self, k: int, level: Optional[float] = None) -> tuple[float, float]:
        level = settings.CREDIBLE_LEVEL if level is None else level
        check_level(level)
        if self.dimension == 1:
            return (1.0, 1.0)
        tail = (1 - level) / 2
        dist = self.marginal(k)
        return (float(dist.ppf(tail)), float(dist.ppf(1 - tail)))

    # ------------------------------------------------------------------
    # Information
    # ------------------------------------------------------------------

    def log_normalizer(self) -> float:
        """log B(alpha) = sum log Gamma(alpha_k) - log Gamma(sum alpha)."""
        return float(np.sum(sp_special.gammaln(self.alpha)) - sp_special.gammaln(self.total))

    def kl_divergence(self, other: "DirichletPosterior") -> float:
        """KL(self || other)."""
        if self.dimension != other.dimension:
            raise ValueError("Distributions must have the same dimension for KL divergence")
        return float(
            other.log_normalizer()
            - self.log_normalizer()
            + np.sum((self.alpha - other.alpha) * self.expected_log_weights())
        )

    def entropy(self) -> float:
        k = self.dimension
        return float(
            self.log_normalizer()
            - (self.total - k) * sp_special.digamma(self.total)
            + np.sum((self.alpha - 1) * sp_special.digamma(self.alpha))
        )

    def log_pdf(self, x: Any) -> float:
        x = np.asarray(x, dtype=float)
        if x.shape != self.alpha.shape:
            raise ValueError("Input dimension must match distribution dimension")
        if abs(float(np.sum(x)) - 1) > 1e-10 or np.any(x < 0):
            return -np.inf
        if self.dimension == 1:
            return 0.0
        with np.errstate(divide="ignore"):
            log_x = np.log(x)
        terms = np.where(self.alpha == 1, 0.0, (self.alpha - 1) * log_x)
        if np.any(np.isnan(terms)) or np.any(terms == np.inf):
            return -np.inf
        return float(np.sum(terms) - self.log_normalizer())

    def sample(self, n: int = 1) -> np.ndarray:
        """Draw an (n, K) matrix of weight vectors."""
        return self._rng.dirichlet(self.alpha, size=n)

    def __repr__(self) -> str:
        return f"DirichletPosterior(alpha={np.round(self.alpha, 3).tolist()})"
