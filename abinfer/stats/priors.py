"""Prior parsing and construction for the conjugate engines.

Three sources of prior information, in priority order:
1. Explicit ``PriorSpec`` passed through ``FitOptions.prior_params``
2. Empirical: moment-matched to the data being fit (Normal/LogNormal only)
3. Family default: Beta(1, 1) or NIG(0, 1, 2, 2)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy import special as sp_special
from scipy import stats as sp_stats

from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.models.config import PriorSpec

NIG_PRIOR_TYPE = "normal-inverse-gamma"
DEFAULT_BETA_PRIOR = (1.0, 1.0)
MIN_EMPIRICAL_BETA = 1e-6


# ======================================================================
# Normal-Inverse-Gamma
# ======================================================================


@dataclass(frozen=True)
class NormalInverseGamma:
    """Normal-Inverse-Gamma distribution over (mu, sigma^2).

    sigma^2 ~ InvGamma(alpha, beta),  mu | sigma^2 ~ Normal(mu0, sigma^2 / lam)
    """

    mu0: float
    lam: float
    alpha: float
    beta: float

    def __post_init__(self) -> None:
        values = (self.mu0, self.lam, self.alpha, self.beta)
        if not all(math.isfinite(v) for v in values):
            raise InferenceError(
                ErrorCode.INVALID_PRIOR,
                "Normal-Inverse-Gamma parameters must be finite",
                {"params": values},
            )
        if self.lam <= 0 or self.alpha <= 0 or self.beta <= 0:
            raise InferenceError(
                ErrorCode.INVALID_PRIOR,
                "Normal-Inverse-Gamma requires lambda, alpha and beta > 0",
                {"lambda": self.lam, "alpha": self.alpha, "beta": self.beta},
            )

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.mu0, self.lam, self.alpha, self.beta)

    def to_spec(self) -> PriorSpec:
        return PriorSpec(type=NIG_PRIOR_TYPE, params=self.as_tuple())

    # ------------------------------------------------------------------
    # Moments
    # ------------------------------------------------------------------

    def expected_precision(self) -> float:
        """E[1 / sigma^2]."""
        return self.alpha / self.beta

    def expected_log_variance(self) -> float:
        """E[log sigma^2]."""
        return math.log(self.beta) - float(sp_special.digamma(self.alpha))

    def expected_variance(self) -> float:
        """E[sigma^2], the mode when alpha <= 1."""
        if self.alpha > 1:
            return self.beta / (self.alpha - 1)
        return self.beta / (self.alpha + 1)

    # ------------------------------------------------------------------
    # Densities
    # ------------------------------------------------------------------

    def expected_log_likelihood(self, y: np.ndarray) -> np.ndarray:
        """E_q[log Normal(y | mu, sigma^2)] under this distribution."""
        y = np.asarray(y, dtype=float)
        return (
            -0.5 * math.log(2 * math.pi)
            - 0.5 * self.expected_log_variance()
            - 0.5 * (self.expected_precision() * (y - self.mu0) ** 2 + 1.0 / self.lam)
        )

    def predictive(self):
        """Marginal predictive of one observation: Student-t with 2*alpha dof."""
        scale = math.sqrt(self.beta * (self.lam + 1) / (self.alpha * self.lam))
        return sp_stats.t(df=2 * self.alpha, loc=self.mu0, scale=scale)

    def kl_divergence(self, other: "NormalInverseGamma") -> float:
        """KL(self || other), exact."""
        a1, b1, a0, b0 = self.alpha, self.beta, other.alpha, other.beta
        kl_ig = (
            (a1 - a0) * sp_special.digamma(a1)
            - sp_special.gammaln(a1)
            + sp_special.gammaln(a0)
            + a0 * (math.log(b1) - math.log(b0))
            + a1 * (b0 - b1) / b1
        )
        l1, l0 = self.lam, other.lam
        kl_normal = 0.5 * (
            l0 / l1 - 1 + math.log(l1 / l0) + l0 * (self.mu0 - other.mu0) ** 2 * a1 / b1
        )
        return float(kl_ig + kl_normal)

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def sample(self, size: int, rng: np.random.Generator) -> tuple[np.ndarray, np.ndarray]:
        """Draw ``size`` (mu, sigma^2) pairs."""
        sigma2 = 1.0 / rng.gamma(self.alpha, 1.0 / self.beta, size=size)
        mu = rng.normal(self.mu0, np.sqrt(sigma2 / self.lam))
        return mu, sigma2


DEFAULT_NIG_PRIOR = NormalInverseGamma(mu0=0.0, lam=1.0, alpha=2.0, beta=2.0)


def empirical_nig_prior(mean: float, variance: float) -> NormalInverseGamma:
    """Weak prior centred on the data: NIG(mean, 1, 2, 2 * variance).

    ``variance`` is the population (divide-by-n) variance.  The scale is
    floored so constant data still yields a valid prior.
    """
    if not math.isfinite(mean) or not math.isfinite(variance):
        return DEFAULT_NIG_PRIOR
    return NormalInverseGamma(
        mu0=float(mean),
        lam=1.0,
        alpha=2.0,
        beta=max(2.0 * float(variance), MIN_EMPIRICAL_BETA),
    )


# ======================================================================
# Resolving PriorSpec
# ======================================================================


def resolve_beta_prior(spec: Optional[PriorSpec]) -> tuple[float, float]:
    """Return (alpha, beta) for a Beta prior, defaulting to Beta(1, 1)."""
    if spec is None:
        return DEFAULT_BETA_PRIOR
    if spec.type != "beta":
        raise InferenceError(
            ErrorCode.INVALID_PRIOR,
            "Beta-Binomial requires a beta prior",
            {"actual_type": spec.type},
        )
    if len(spec.params) != 2:
        raise InferenceError(
            ErrorCode.INVALID_PRIOR,
            "Beta prior needs exactly 2 parameters",
            {"params": spec.params},
        )
    alpha, beta = (float(p) for p in spec.params)
    if not (alpha > 0 and beta > 0) or not (math.isfinite(alpha) and math.isfinite(beta)):
        raise InferenceError(
            ErrorCode.INVALID_PRIOR,
            "Beta prior parameters must be positive",
            {"alpha": alpha, "beta": beta},
        )
    return (alpha, beta)


def resolve_nig_prior(spec: Optional[PriorSpec]) -> Optional[NormalInverseGamma]:
    """Parse an explicit NIG prior, or ``None`` when the caller should go empirical."""
    if spec is None:
        return None
    if spec.type != NIG_PRIOR_TYPE:
        raise InferenceError(
            ErrorCode.INVALID_PRIOR,
            "Normal/LogNormal models require a normal-inverse-gamma prior",
            {"actual_type": spec.type},
        )
    if len(spec.params) != 4:
        raise InferenceError(
            ErrorCode.INVALID_PRIOR,
            "Normal-Inverse-Gamma prior needs 4 parameters",
            {"params": spec.params},
        )
    mu0, lam, alpha, beta = (float(p) for p in spec.params)
    return NormalInverseGamma(mu0=mu0, lam=lam, alpha=alpha, beta=beta)


# ======================================================================
# Elicited / historical Beta priors
# ======================================================================


def user_elicited_prior(expected_rate: float, confidence: float) -> PriorSpec:
    """Build a Beta prior from a user-specified expected rate and confidence.

    Parameters
    ----------
    expected_rate : float
        Expected conversion rate (0 < rate < 1).
    confidence : float
        Prior strength in pseudo-observations.
        Higher = more confident, tighter prior.

    Returns
    -------
    PriorSpec
        Beta prior with alpha = rate * confidence, beta = (1-rate) * confidence.
    """
    if not (0 < expected_rate < 1):
        raise InferenceError(ErrorCode.INVALID_PRIOR, "expected_rate must be between 0 and 1 exclusive")
    if confidence <= 0:
        raise InferenceError(ErrorCode.INVALID_PRIOR, "confidence must be positive")

    alpha = expected_rate * confidence
    beta = (1 - expected_rate) * confidence
    return PriorSpec(type="beta", params=(max(alpha, 0.01), max(beta, 0.01)))


def historical_beta_prior(rates: list[float]) -> PriorSpec:
    """Fit a Beta prior to past conversion rates via moment matching.

    Given sample mean m and variance v:
        alpha = m * (m*(1-m)/v - 1)
        beta  = (1-m) * (m*(1-m)/v - 1)
    """
    if len(rates) < 2:
        raise InferenceError(ErrorCode.INSUFFICIENT_DATA, "Need at least 2 rates for moment matching")

    arr = np.array(rates, dtype=float)
    m = float(np.mean(arr))
    v = float(np.var(arr, ddof=1))

    if m <= 0 or m >= 1:
        return PriorSpec(type="beta", params=DEFAULT_BETA_PRIOR)

    if v <= 0 or v >= m * (1 - m):
        # Weak prior at the observed mean
        return PriorSpec(type="beta", params=(m * 5, (1 - m) * 5))

    common = m * (1 - m) / v - 1
    alpha = min(max(m * common, 0.1), 1000.0)
    beta = min(max((1 - m) * common, 0.1), 1000.0)
    return PriorSpec(type="beta", params=(alpha, beta))
