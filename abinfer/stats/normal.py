"""Normal and LogNormal conjugate engines (Normal-Inverse-Gamma prior).

The model is X ~ Normal(mu, sigma^2); the LogNormal engine applies the same
model to log X.  Given sufficient statistics (n, mean, sum of squared
deviations) the posterior is:

    lambda_n = lambda_0 + n
    mu_n     = (lambda_0 * mu_0 + n * mean) / lambda_n
    alpha_n  = alpha_0 + n / 2
    beta_n   = beta_0 + SSD / 2 + (lambda_0 * n / lambda_n) * (mean - mu_0)^2 / 2

Weighted statistics (soft assignments from the mixture engine) go through the
same update with n replaced by the total weight.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
from scipy import stats as sp_stats

from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.models.config import FitOptions, ModelConfig
from abinfer.models.data import StandardData
from abinfer.stats.base import EngineCapabilities, InferenceEngine
from abinfer.stats.posterior import InferenceResult, ParametricPosterior, PosteriorCapabilities
from abinfer.stats.priors import (
    DEFAULT_NIG_PRIOR,
    NormalInverseGamma,
    empirical_nig_prior,
    resolve_nig_prior,
)


# ======================================================================
# Sufficient statistics
# ======================================================================


@dataclass(frozen=True)
class SufficientStats:
    """Weighted sufficient statistics of a sample (already on the model scale)."""

    n: float
    mean: float
    ssd: float

    @classmethod
    def from_values(cls, values: Any, weights: Any = None) -> "SufficientStats":
        values = np.asarray(values, dtype=float)
        if weights is None:
            weights = np.ones_like(values)
        else:
            weights = np.asarray(weights, dtype=float)
        total = float(np.sum(weights))
        if total <= 0:
            return cls(n=0.0, mean=0.0, ssd=0.0)
        mean = float(np.sum(weights * values) / total)
        ssd = float(np.sum(weights * (values - mean) ** 2))
        return cls(n=total, mean=mean, ssd=ssd)

    @classmethod
    def from_sums(cls, n: float, sum_x: float, sum_x2: float) -> "SufficientStats":
        if n <= 0:
            return cls(n=0.0, mean=0.0, ssd=0.0)
        mean = sum_x / n
        return cls(n=float(n), mean=float(mean), ssd=max(float(sum_x2 - n * mean * mean), 0.0))

    @property
    def sum_x(self) -> float:
        return self.n * self.mean

    @property
    def sum_x2(self) -> float:
        return self.ssd + self.n * self.mean * self.mean

    @property
    def population_variance(self) -> float:
        return self.ssd / self.n if self.n > 0 else 0.0


def nig_update(prior: NormalInverseGamma, stats: SufficientStats) -> NormalInverseGamma:
    """Conjugate Normal-Inverse-Gamma update."""
    if stats.n <= 0:
        return prior
    lam = prior.lam + stats.n
    mu0 = (prior.lam * prior.mu0 + stats.n * stats.mean) / lam
    alpha = prior.alpha + stats.n / 2
    beta = (
        prior.beta
        + 0.5 * stats.ssd
        + 0.5 * (prior.lam * stats.n / lam) * (stats.mean - prior.mu0) ** 2
    )
    return NormalInverseGamma(mu0=mu0, lam=lam, alpha=alpha, beta=beta)


# ======================================================================
# Posteriors
# ======================================================================


class NormalInverseGammaPosterior(ParametricPosterior):
    """Posterior predictive of an observation under a NIG posterior.

    Sampling draws sigma^2 ~ InvGamma(alpha, beta), then
    mu ~ Normal(mu0, sigma^2 / lambda), then the observation.  Summaries
    come from the cached Monte Carlo buffer.
    """

    parameter_count = 2
    log_space = False
    family = "normal"

    def __init__(
        self,
        params: NormalInverseGamma,
        prior: Optional[NormalInverseGamma] = None,
        rng: Optional[np.random.Generator] = None,
        mc_sample_size: Optional[int] = None,
    ) -> None:
        super().__init__(rng=rng, mc_sample_size=mc_sample_size)
        self.params = params
        self.prior = prior

    @property
    def capabilities(self) -> PosteriorCapabilities:
        return PosteriorCapabilities(analytical=False, parameter_sampling=True)

    # ------------------------------------------------------------------
    # Scale transforms
    # ------------------------------------------------------------------

    def to_model_scale(self, x: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Return (y, log-Jacobian) where y is x on the Normal scale."""
        if not self.log_space:
            return x, np.zeros_like(x)
        with np.errstate(divide="ignore", invalid="ignore"):
            y = np.where(x > 0, np.log(np.where(x > 0, x, 1.0)), np.nan)
        return y, np.where(x > 0, -y, -np.inf)

    def from_model_scale(self, y: np.ndarray) -> np.ndarray:
        return np.exp(y) if self.log_space else y

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _draw(self, n: int) -> np.ndarray:
        mu, sigma2 = self.params.sample(n, self._rng)
        return self.from_model_scale(self._rng.normal(mu, np.sqrt(sigma2)))

    def sample_parameters(self, size: int) -> dict[str, np.ndarray]:
        mu, sigma2 = self.params.sample(size, self._rng)
        return {"mu": mu, "sigma2": sigma2}

    def point_parameters(self) -> dict[str, np.ndarray]:
        return {
            "mu": np.array([self.params.mu0]),
            "sigma2": np.array([self.params.expected_variance()]),
        }

    def parameters(self) -> dict[str, float]:
        return {
            "mu0": self.params.mu0,
            "lambda": self.params.lam,
            "alpha": self.params.alpha,
            "beta": self.params.beta,
        }

    # ------------------------------------------------------------------
    # Densities
    # ------------------------------------------------------------------

    def log_pdf(self, x: float) -> float:
        """Marginal posterior predictive log density (Student-t on the model scale)."""
        return float(self.log_pdf_batch([x])[0])

    def log_pdf_batch(self, xs: Any) -> np.ndarray:
        x = np.asarray(xs, dtype=float)
        y, log_jac = self.to_model_scale(x)
        out = np.full(x.shape, -np.inf)
        ok = np.isfinite(y)
        out[ok] = self.params.predictive().logpdf(y[ok]) + log_jac[ok]
        return out

    def log_likelihood(self, x: Any, params: dict[str, np.ndarray]) -> np.ndarray:
        """log p(x | mu, sigma^2) for every (point, draw) pair."""
        x = np.asarray(x, dtype=float)
        y, log_jac = self.to_model_scale(x)
        mu = np.asarray(params["mu"], dtype=float)[None, :]
        sigma2 = np.asarray(params["sigma2"], dtype=float)[None, :]
        safe_y = np.where(np.isfinite(y), y, 0.0)[:, None]
        ll = -0.5 * np.log(2 * np.pi * sigma2) - 0.5 * (safe_y - mu) ** 2 / sigma2
        ll = ll + log_jac[:, None]
        return np.where(np.isfinite(y)[:, None], ll, -np.inf)

    def expected_log_likelihood(self, x: Any) -> np.ndarray:
        """E_q[log p(x | mu, sigma^2)] under the NIG posterior."""
        x = np.asarray(x, dtype=float)
        y, log_jac = self.to_model_scale(x)
        safe_y = np.where(np.isfinite(y), y, 0.0)
        return np.where(np.isfinite(y), self.params.expected_log_likelihood(safe_y) + log_jac, -np.inf)

    def kl_divergence_from(self, prior: Optional[NormalInverseGamma] = None) -> float:
        """KL(posterior || prior); defaults to the prior this posterior was fit with."""
        prior = prior or self.prior
        if prior is None:
            raise InferenceError(ErrorCode.INVALID_PRIOR, "No prior recorded for KL divergence")
        return self.params.kl_divergence(prior)

    def plug_in_mean(self) -> float:
        """Mean of the observable under the point-estimate parameters."""
        return self.params.mu0

    def __repr__(self) -> str:
        p = self.params
        return (
            f"{type(self).__name__}(mu0={p.mu0:.4f}, lambda={p.lam:.3f}, "
            f"alpha={p.alpha:.3f}, beta={p.beta:.4f})"
        )


class NormalPosterior(NormalInverseGammaPosterior):
    family = "normal"

    def mean(self) -> float:
        return self.params.mu0


class LogNormalPosterior(NormalInverseGammaPosterior):
    log_space = True
    family = "lognormal"

    def plug_in_mean(self) -> float:
        return math.exp(self.params.mu0 + 0.5 * self.params.expected_variance())


# ======================================================================
# Engines
# ======================================================================


class NormalInverseGammaConjugate(InferenceEngine):
    """Shared fit logic for the Normal and LogNormal conjugate engines."""

    algorithm = "conjugate"
    family = "normal"
    posterior_cls: type[NormalInverseGammaPosterior] = NormalPosterior

    def transform(self, values: np.ndarray) -> np.ndarray:
        return values

    def check_values(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=float)
        values = values[np.isfinite(values)]
        if len(values) == 0:
            raise InferenceError(ErrorCode.INSUFFICIENT_DATA, f"{self.name} needs at least one finite value")
        return values

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fit_sync(
        self,
        data: StandardData,
        config: ModelConfig,
        options: FitOptions,
    ) -> InferenceResult:
        started = time.perf_counter()
        self.validate_standard_data(data, config)
        values = self.check_values(data.values())
        stats = SufficientStats.from_values(self.transform(values))
        return self._result(stats, options, started, data, config)

    def fit_weighted(
        self,
        values: Any,
        weights: Any,
        options: Optional[FitOptions] = None,
    ) -> InferenceResult:
        """Fit with a non-negative weight per observation."""
        started = time.perf_counter()
        values = np.asarray(values, dtype=float)
        weights = np.asarray(weights, dtype=float)
        if values.shape != weights.shape:
            raise InferenceError(ErrorCode.INVALID_DATA, "values and weights must have the same length")
        if np.any(weights < 0) or not np.all(np.isfinite(weights)):
            raise InferenceError(ErrorCode.INVALID_DATA, "weights must be finite and non-negative")
        keep = np.isfinite(values)
        values = self.check_values(values[keep])
        stats = SufficientStats.from_values(self.transform(values), weights[keep])
        return self._result(stats, options or FitOptions(), started, None, self.default_config())

    def fit_from_stats(
        self,
        stats: SufficientStats,
        options: Optional[FitOptions] = None,
    ) -> InferenceResult:
        """Fit from statistics already on the model scale (log scale for LogNormal)."""
        started = time.perf_counter()
        return self._result(stats, options or FitOptions(), started, None, self.default_config())

    def default_config(self) -> ModelConfig:
        return ModelConfig(structure="simple", type=self.family)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def resolve_prior(self, stats: SufficientStats, options: FitOptions) -> NormalInverseGamma:
        explicit = resolve_nig_prior(options.prior_params)
        if explicit is not None:
            return explicit
        if stats.n > 0:
            return empirical_nig_prior(stats.mean, stats.population_variance)
        return DEFAULT_NIG_PRIOR

    def posterior_from_stats(
        self,
        stats: SufficientStats,
        prior: NormalInverseGamma,
        rng: Optional[np.random.Generator] = None,
    ) -> NormalInverseGammaPosterior:
        return self.posterior_cls(nig_update(prior, stats), prior=prior, rng=rng)

    def _result(
        self,
        stats: SufficientStats,
        options: FitOptions,
        started: float,
        data: Optional[StandardData],
        config: ModelConfig,
    ) -> InferenceResult:
        prior = self.resolve_prior(stats, options)
        posterior = self.posterior_from_stats(stats, prior, rng=options.rng())
        return self.build_result(posterior, started, data, config, model_type=self.family)


class NormalConjugate(NormalInverseGammaConjugate):
    name = "NormalConjugate"
    family = "normal"
    posterior_cls = NormalPosterior
    capabilities = EngineCapabilities(
        structures=frozenset({"simple"}),
        families=frozenset({"normal"}),
        data_types=frozenset({"user-level"}),
        exact=True,
    )


class LogNormalConjugate(NormalInverseGammaConjugate):
    name = "LogNormalConjugate"
    family = "lognormal"
    posterior_cls = LogNormalPosterior
    capabilities = EngineCapabilities(
        structures=frozenset({"simple"}),
        families=frozenset({"lognormal"}),
        data_types=frozenset({"user-level"}),
        exact=True,
    )

    def transform(self, values: np.ndarray) -> np.ndarray:
        return np.log(values)

    def check_values(self, values: np.ndarray) -> np.ndarray:
        values = super().check_values(values)
        if np.any(values <= 0):
            raise InferenceError(
                ErrorCode.INVALID_DATA,
                "LogNormal requires strictly positive values",
                {"non_positive": int(np.sum(values <= 0))},
            )
        return values


def is_likely_lognormal(values: Any) -> bool:
    """Quick shape check: positive, right-skewed (mean > 1.1 * median) and CV > 0.5."""
    values = np.asarray(values, dtype=float)
    if len(values) < 10 or np.any(values <= 0):
        return False
    mean = float(np.mean(values))
    median = float(np.median(values))
    cv = float(np.std(values)) / mean
    return mean > median * 1.1 and cv > 0.5
