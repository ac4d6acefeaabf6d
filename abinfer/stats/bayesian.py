"""Conjugate Beta-Binomial engine for conversion rates.

Default prior is Beta(1, 1).  Posteriors are immutable: every fit returns a
*new* ``BetaPosterior`` so callers can safely compare pre- and post-update
distributions.
"""

from __future__ import annotations

import math
import time
from typing import Any, Optional

import numpy as np
from scipy import special as sp_special
from scipy import stats as sp_stats
from scipy.optimize import minimize_scalar

from abinfer.core.config import settings
from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.models.config import FitOptions, ModelConfig
from abinfer.models.data import StandardData
from abinfer.stats.base import EngineCapabilities, InferenceEngine
from abinfer.stats.posterior import (
    InferenceResult,
    ParametricPosterior,
    PosteriorCapabilities,
    check_level,
)
from abinfer.stats.priors import resolve_beta_prior

BETA_CONFIG = ModelConfig(structure="simple", type="beta")


class BetaPosterior(ParametricPosterior):
    """Beta(alpha, beta) posterior over a conversion probability.

    Parameters
    ----------
    alpha : float
        Pseudo-successes (prior plus observed).
    beta : float
        Pseudo-failures (prior plus observed).
    """

    parameter_count = 1

    def __init__(
        self,
        alpha: float,
        beta: float,
        rng: Optional[np.random.Generator] = None,
        mc_sample_size: Optional[int] = None,
    ) -> None:
        if not (alpha > 0 and beta > 0):
            raise InferenceError(
                ErrorCode.INVALID_PRIOR,
                "Alpha and beta must be positive",
                {"alpha": alpha, "beta": beta},
            )
        super().__init__(rng=rng, mc_sample_size=mc_sample_size)
        self.alpha = float(alpha)
        self.beta = float(beta)
        self._dist = sp_stats.beta(self.alpha, self.beta)

    @property
    def capabilities(self) -> PosteriorCapabilities:
        return PosteriorCapabilities(analytical=True, parameter_sampling=True)

    def _draw(self, n: int) -> np.ndarray:
        return self._rng.beta(self.alpha, self.beta, size=n)

    def parameters(self) -> dict[str, float]:
        return {"alpha": self.alpha, "beta": self.beta}

    # ------------------------------------------------------------------
    # Posterior summaries
    # ------------------------------------------------------------------

    def mean(self) -> float:
        """alpha / (alpha + beta)."""
        return self.alpha / (self.alpha + self.beta)

    def variance(self) -> float:
        """Var = alpha * beta / ((alpha + beta)^2 * (alpha + beta + 1))"""
        ab = self.alpha + self.beta
        return (self.alpha * self.beta) / (ab * ab * (ab + 1))

    def credible_interval(self, level: Optional[float] = None) -> tuple[float, float]:
        """Equal-tailed credible interval for the conversion rate."""
        level = settings.CREDIBLE_LEVEL if level is None else level
        check_level(level)
        lower_tail = (1 - level) / 2
        return (float(self._dist.ppf(lower_tail)), float(self._dist.ppf(1 - lower_tail)))

    def hdi(self, credible_mass: Optional[float] = None) -> tuple[float, float]:
        """Highest Density Interval for the posterior.

        Finds the narrowest interval containing ``credible_mass`` of the
        posterior probability by minimising the interval width over the
        lower tail mass.
        """
        credible_mass = settings.CREDIBLE_LEVEL if credible_mass is None else credible_mass
        check_level(credible_mass)

        def interval_width(low_tail: float) -> float:
            return float(self._dist.ppf(low_tail + credible_mass) - self._dist.ppf(low_tail))

        result = minimize_scalar(
            interval_width,
            bounds=(0.0, 1.0 - credible_mass),
            method="bounded",
        )
        low = float(self._dist.ppf(result.x))
        high = float(self._dist.ppf(result.x + credible_mass))
        return (low, high)

    def median(self) -> float:
        return float(self._dist.median())

    def quantile(self, q: float) -> float:
        return float(self._dist.ppf(q))

    def mode(self) -> float:
        """Mode of the Beta distribution; NaN unless alpha > 1 and beta > 1."""
        if self.alpha > 1 and self.beta > 1:
            return (self.alpha - 1) / (self.alpha + self.beta - 2)
        return math.nan

    def probability_greater_than(
        self,
        other: "BetaPosterior",
        n_samples: int = 50_000,
        seed: int = 42,
    ) -> float:
        """Monte Carlo estimate of P(rate_self > rate_other).

        Parameters
        ----------
        other : BetaPosterior
            The baseline posterior.
        n_samples : int
            Number of Monte Carlo draws.
        seed : int
            RNG seed for reproducibility.
        """
        rng = np.random.default_rng(seed)
        samples_self = rng.beta(self.alpha, self.beta, size=n_samples)
        samples_other = rng.beta(other.alpha, other.beta, size=n_samples)
        return float(np.mean(samples_self > samples_other))

    # ------------------------------------------------------------------
    # Densities
    # ------------------------------------------------------------------

    def log_marginal_likelihood(self, successes: int, trials: int) -> float:
        """Beta-Binomial log PMF: log C(n, s) + log B(s + a, n - s + b) - log B(a, b)."""
        if successes < 0 or successes > trials:
            return -math.inf
        log_choose = (
            sp_special.gammaln(trials + 1)
            - sp_special.gammaln(successes + 1)
            - sp_special.gammaln(trials - successes + 1)
        )
        return float(
            log_choose
            + sp_special.betaln(successes + self.alpha, trials - successes + self.beta)
            - sp_special.betaln(self.alpha, self.beta)
        )

    def log_pdf(self, x: float) -> float:
        """Predictive log probability of a single 0/1 outcome."""
        return float(self.log_pdf_batch([x])[0])

    def log_pdf_batch(self, xs: Any) -> np.ndarray:
        xs = np.asarray(xs, dtype=float)
        if not np.all((xs == 0) | (xs == 1)):
            raise InferenceError(ErrorCode.INVALID_DATA, "Beta posterior scores 0/1 outcomes only")
        log_p = math.log(self.mean())
        log_q = math.log1p(-self.mean())
        return np.where(xs == 1, log_p, log_q)

    def sample_parameters(self, size: int) -> dict[str, np.ndarray]:
        return {"p": self._rng.beta(self.alpha, self.beta, size=size)}

    def point_parameters(self) -> dict[str, np.ndarray]:
        return {"p": np.array([self.mean()])}

    def log_likelihood(self, x: Any, params: dict[str, np.ndarray]) -> np.ndarray:
        """Bernoulli log likelihood, shape (len(x), n_draws)."""
        x = np.asarray(x, dtype=float)[:, None]
        p = np.clip(np.asarray(params["p"], dtype=float)[None, :], 1e-300, 1 - 1e-16)
        return x * np.log(p) + (1 - x) * np.log1p(-p)

    def __repr__(self) -> str:
        return f"BetaPosterior(alpha={self.alpha:.3f}, beta={self.beta:.3f})"


# ======================================================================
# Engine
# ======================================================================


class BetaBinomialConjugate(InferenceEngine):
    """Exact Beta-Binomial update: Beta(a + s, b + n - s)."""

    name = "BetaBinomialConjugate"
    algorithm = "conjugate"
    capabilities = EngineCapabilities(
        structures=frozenset({"simple"}),
        families=frozenset({"beta"}),
        data_types=frozenset({"binomial"}),
        exact=True,
    )

    def fit_sync(
        self,
        data: StandardData,
        config: ModelConfig,
        options: FitOptions,
    ) -> InferenceResult:
        started = time.perf_counter()
        self.validate_standard_data(data, config)
        summary = data.binomial
        posterior = self.posterior(summary.successes, summary.trials, options)
        return self.build_result(posterior, started, data, config, model_type="beta")

    def fit_weighted(
        self,
        outcomes: Any,
        weights: Any,
        options: Optional[FitOptions] = None,
    ) -> InferenceResult:
        """Fit on 0/1 outcomes where each carries a non-negative weight."""
        started = time.perf_counter()
        outcomes = np.asarray(outcomes, dtype=float)
        weights = np.asarray(weights, dtype=float)
        if outcomes.shape != weights.shape:
            raise InferenceError(ErrorCode.INVALID_DATA, "outcomes and weights must have the same length")
        if np.any(weights < 0):
            raise InferenceError(ErrorCode.INVALID_DATA, "weights must be non-negative")
        if not np.all((outcomes == 0) | (outcomes == 1)):
            raise InferenceError(ErrorCode.INVALID_DATA, "outcomes must be 0 or 1")
        posterior = self.posterior(
            float(np.sum(weights * outcomes)),
            float(np.sum(weights)),
            options or FitOptions(),
        )
        return self.build_result(posterior, started, None, BETA_CONFIG, model_type="beta")

    def fit_from_stats(
        self,
        successes: float,
        trials: float,
        options: Optional[FitOptions] = None,
    ) -> InferenceResult:
        started = time.perf_counter()
        posterior = self.posterior(successes, trials, options or FitOptions())
        return self.build_result(posterior, started, None, BETA_CONFIG, model_type="beta")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def posterior(successes: float, trials: float, options: FitOptions) -> BetaPosterior:
        if successes < 0 or trials < 0:
            raise InferenceError(
                ErrorCode.INVALID_DATA,
                "successes and trials must be non-negative",
                {"successes": successes, "trials": trials},
            )
        if successes > trials:
            raise InferenceError(
                ErrorCode.INVALID_DATA,
                "successes cannot exceed trials",
                {"successes": successes, "trials": trials},
            )
        prior_alpha, prior_beta = resolve_beta_prior(options.prior_params)
        return BetaPosterior(
            prior_alpha + successes,
            prior_beta + (trials - successes),
            rng=options.rng(),
        )
