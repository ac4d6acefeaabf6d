"""Posterior contract shared by every fitted distribution.

A posterior must be able to draw samples.  Everything else (mean, variance,
credible intervals, log densities, parameter draws for WAIC) is optional and
advertised up-front through a :class:`PosteriorCapabilities` record, so
callers inspect one flag set instead of probing for methods.

Summaries that have no closed form are computed from a Monte Carlo buffer
that is filled on first use and then kept for the lifetime of the object.
Posteriors are never updated in place; a new fit produces a new object.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from abinfer.core.config import settings
from abinfer.core.errors import ErrorCode, InferenceError


def hdi_from_samples(samples: np.ndarray, credible_mass: float = 0.95) -> tuple[float, float]:
    """Compute the Highest Density Interval from Monte Carlo samples.

    Uses the sorted-interval method: find the shortest interval containing
    ``credible_mass`` proportion of sorted samples.

    Parameters
    ----------
    samples : np.ndarray
        1-D array of Monte Carlo samples.
    credible_mass : float
        Probability mass to include (e.g. 0.95 for 95% HDI).

    Returns
    -------
    tuple[float, float]
        (lower_bound, upper_bound)
    """
    sorted_samples = np.sort(samples)
    n = len(sorted_samples)
    interval_size = int(np.ceil(credible_mass * n))
    if interval_size >= n:
        return (float(sorted_samples[0]), float(sorted_samples[-1]))

    widths = sorted_samples[interval_size:] - sorted_samples[: n - interval_size]
    best_idx = int(np.argmin(widths))
    return (float(sorted_samples[best_idx]), float(sorted_samples[best_idx + interval_size - 1]))


def check_level(level: float) -> None:
    if not 0 < level < 1:
        raise ValueError("level must be between 0 and 1 exclusive")


@dataclass(frozen=True)
class PosteriorCapabilities:
    """What a posterior can do beyond sampling.

    analytical
        mean/variance come from closed-form (or per-family) expressions
        rather than from the joint Monte Carlo buffer.
    parameter_sampling
        ``sample_parameters`` and ``log_likelihood`` are available (full
        WAIC with an effective-parameter penalty).
    log_pdf
        ``log_pdf`` returns the marginal predictive log density.
    """

    analytical: bool
    parameter_sampling: bool
    log_pdf: bool = True


class Posterior(ABC):
    """Base class for fitted distributions.

    Parameters
    ----------
    rng : np.random.Generator | None
        Random source for every draw this posterior makes.
    mc_sample_size : int | None
        Size of the cached Monte Carlo buffer.
    """

    parameter_count: int = 1

    def __init__(
        self,
        rng: Optional[np.random.Generator] = None,
        mc_sample_size: Optional[int] = None,
    ) -> None:
        self._rng = rng if rng is not None else np.random.default_rng()
        self._mc_sample_size = mc_sample_size or settings.MC_SAMPLE_SIZE
        self._mc_samples: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # Required
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def capabilities(self) -> PosteriorCapabilities:
        ...

    @abstractmethod
    def _draw(self, n: int) -> np.ndarray:
        """Draw ``n`` fresh samples (1-D float array)."""

    def sample(self, n: int = 1) -> np.ndarray:
        """Draw exactly ``n`` samples from the posterior (predictive)."""
        if n < 0:
            raise ValueError("n must be non-negative")
        if n == 0:
            return np.empty(0, dtype=float)
        return np.asarray(self._draw(int(n)), dtype=float).reshape(int(n))

    def has_analytical_form(self) -> bool:
        return self.capabilities.analytical

    # ------------------------------------------------------------------
    # Monte Carlo summaries (overridden where closed forms exist)
    # ------------------------------------------------------------------

    def mc_samples(self) -> np.ndarray:
        """Sorted Monte Carlo buffer, filled once on first access."""
        if self._mc_samples is None:
            self._mc_samples = np.sort(self.sample(self._mc_sample_size))
        return self._mc_samples

    def mean(self) -> float:
        return float(np.mean(self.mc_samples()))

    def variance(self) -> float:
        return float(np.var(self.mc_samples(), ddof=1))

    def credible_interval(self, level: Optional[float] = None) -> tuple[float, float]:
        """Equal-tailed credible interval, (lower, upper) with lower <= upper."""
        level = settings.CREDIBLE_LEVEL if level is None else level
        check_level(level)
        tail = (1 - level) / 2
        low, high = np.quantile(self.mc_samples(), [tail, 1 - tail])
        return (float(low), float(high))

    def hdi(self, credible_mass: Optional[float] = None) -> tuple[float, float]:
        credible_mass = settings.CREDIBLE_LEVEL if credible_mass is None else credible_mass
        check_level(credible_mass)
        return hdi_from_samples(self.mc_samples(), credible_mass)

    def median(self) -> float:
        return float(np.median(self.mc_samples()))

    def quantile(self, q: float) -> float:
        return float(np.quantile(self.mc_samples(), q))

    # ------------------------------------------------------------------
    # Optional densities
    # ------------------------------------------------------------------

    def log_pdf(self, x: float) -> float:
        raise InferenceError(
            ErrorCode.NOT_IMPLEMENTED,
            f"{type(self).__name__} does not provide a log density",
        )

    def log_pdf_batch(self, xs: Any) -> np.ndarray:
        return np.array([self.log_pdf(float(x)) for x in np.asarray(xs, dtype=float)])

    def summary(self, level: Optional[float] = None) -> dict[str, Any]:
        """Plain-dict summary for export layers."""
        low, high = self.credible_interval(level)
        return {
            "mean": self.mean(),
            "variance": self.variance(),
            "credible_interval": (low, high),
            "analytical": self.has_analytical_form(),
        }


class ParametricPosterior(Posterior):
    """Posterior that can draw parameter vectors and score data under them.

    ``sample_parameters(size)`` returns a dict of arrays whose leading axis is
    the draw index.  ``log_likelihood(x, params)`` returns a matrix of shape
    ``(len(x), n_draws)``.
    """

    @abstractmethod
    def sample_parameters(self, size: int) -> dict[str, np.ndarray]:
        ...

    @abstractmethod
    def point_parameters(self) -> dict[str, np.ndarray]:
        """Posterior point estimate in the same layout as one parameter draw."""

    @abstractmethod
    def log_likelihood(self, x: Any, params: dict[str, np.ndarray]) -> np.ndarray:
        ...


# ======================================================================
# Fit results
# ======================================================================


@dataclass(frozen=True)
class Diagnostics:
    converged: bool
    iterations: int
    runtime: float
    model_type: str
    final_elbo: Optional[float] = None
    elbo_history: tuple[float, ...] = ()
    likelihood_history: tuple[float, ...] = ()
    parameter_count: Optional[int] = None
    requested_components: Optional[int] = None
    actual_components: Optional[int] = None
    fallback_reason: Optional[str] = None


@dataclass(frozen=True)
class ResultMetadata:
    algorithm: str
    engine_name: str
    capabilities: dict[str, bool] = field(default_factory=dict)
    model_config: Any = None
    data_quality: Any = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class InferenceResult:
    posterior: Posterior
    diagnostics: Diagnostics
    metadata: ResultMetadata
