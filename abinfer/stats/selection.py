"""Information criteria for comparing fitted posteriors on the same data.

WAIC (Watanabe-Akaike) is computed from pointwise log-likelihood draws:

    lppd   = sum_i log( 1/S sum_s p(x_i | theta_s) )
    p_WAIC = sum_i Var_s[ log p(x_i | theta_s) ]
    WAIC   = -2 (lppd - p_WAIC) / n

Posteriors that cannot draw parameters fall back to their marginal
``log_pdf``; p_WAIC is then 0.  Large datasets are subsampled (stratified by
conversion when the data carries it) and only lppd is rescaled back to the
full size.  Scores are reported per observation.

BIC uses the posterior point estimate as a plug-in:

    BIC = (-2 sum_i log p(x_i | theta_hat) + k log n) / n
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np
from scipy.special import logsumexp

from abinfer.core.config import settings
from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.models.config import ModelConfig
from abinfer.models.data import BinomialSummary, StandardData, UserRecord
from abinfer.stats.posterior import ParametricPosterior, Posterior

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelCandidate:
    name: str
    posterior: Posterior
    config: Optional[ModelConfig] = None


@dataclass(frozen=True)
class Observations:
    """Flat numeric view of a dataset; ``converted`` is set for user-level data."""

    values: np.ndarray
    converted: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class WAICResult:
    waic: float
    lppd: float
    p_waic: float
    n_observations: int
    n_evaluated: int
    n_parameter_draws: int
    method: str


@dataclass(frozen=True)
class BICResult:
    bic: float
    log_likelihood: float
    parameter_count: int
    n_observations: int


@dataclass
class ModelScore:
    """One ranked entry of a comparison."""

    name: str
    criterion: str
    score: float
    delta: float = 0.0
    weight: float = 0.0
    config: Optional[ModelConfig] = None
    details: Any = field(default=None, repr=False)

    @property
    def waic(self) -> float:
        return self.score

    @property
    def delta_waic(self) -> float:
        return self.delta


# ======================================================================
# Data extraction and subsampling
# ======================================================================


def extract_observations(data: Any) -> Observations:
    """Flatten whatever data shape a model was fit on into numeric observations.

    Binomial counts expand to 0/1 outcomes; user-level data yields values plus
    conversion flags.  Plain sequences of numbers or user records are accepted.
    Missing (non-finite) values are dropped, as the engines drop them at fit time.
    """
    if isinstance(data, StandardData):
        if data.is_binomial:
            return _expand_binomial(data.binomial.successes, data.binomial.trials)
        return _finite(Observations(values=data.values(), converted=data.converted()))
    if isinstance(data, BinomialSummary):
        return _expand_binomial(data.successes, data.trials)
    if isinstance(data, Observations):
        return _finite(data)
    if isinstance(data, dict) and "successes" in data and "trials" in data:
        return _expand_binomial(int(data["successes"]), int(data["trials"]))
    if isinstance(data, (list, tuple)) and data and isinstance(data[0], (UserRecord, dict)):
        return extract_observations(StandardData.from_user_level(data, precompute_stats=False))
    if isinstance(data, (list, tuple, np.ndarray)):
        return _finite(Observations(values=np.asarray(data, dtype=float).reshape(-1)))
    raise InferenceError(
        ErrorCode.INVALID_DATA,
        "Unable to extract data values for model comparison",
        {"data_type": type(data).__name__},
    )


def _finite(observations: Observations) -> Observations:
    keep = np.isfinite(observations.values)
    if keep.all():
        return observations
    converted = None if observations.converted is None else observations.converted[keep]
    return Observations(values=observations.values[keep], converted=converted)


def _expand_binomial(successes: int, trials: int) -> Observations:
    values = np.zeros(trials)
    values[:successes] = 1.0
    return Observations(values=values)


def adaptive_sample_sizes(n: int) -> tuple[int, int]:
    """Return (data points to evaluate, parameter draws per point)."""
    if n <= 100:
        return n, 200
    if n <= 500:
        return n, 100
    if n <= settings.WAIC_MAX_POINTS:
        return n, 50
    return settings.WAIC_MAX_POINTS, 50


def stratified_subsample(
    observations: Observations,
    target: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Subsample values, preserving the conversion rate when flags are present."""
    n = len(observations)
    if target >= n:
        return observations.values
    values = observations.values
    if observations.converted is None:
        return values[rng.choice(n, size=target, replace=False)]

    converted = observations.converted & (values > 0)
    conv_idx = np.flatnonzero(converted)
    other_idx = np.flatnonzero(~converted)
    target_conv = min(int(round(target * len(conv_idx) / n)), len(conv_idx))
    target_other = min(target - target_conv, len(other_idx))
    picked = np.concatenate(
        [
            rng.choice(conv_idx, size=target_conv, replace=False),
            rng.choice(other_idx, size=target_other, replace=False),
        ]
    ).astype(int)
    return values[picked]


# ======================================================================
# Criteria
# ======================================================================


def compute_waic(
    posterior: Posterior,
    data: Any,
    rng: Optional[np.random.Generator] = None,
) -> WAICResult:
    """Per-observation WAIC of ``posterior`` on ``data``."""
    rng = rng if rng is not None else np.random.default_rng()
    observations = extract_observations(data)
    n = len(observations)
    if n == 0:
        raise InferenceError(ErrorCode.INSUFFICIENT_DATA, "No data points for WAIC computation")

    data_sample, param_sample = adaptive_sample_sizes(n)
    points = stratified_subsample(observations, data_sample, rng)
    if len(points) < n:
        logger.info("WAIC: subsampling %d data points to %d", n, len(points))

    caps = posterior.capabilities
    if caps.parameter_sampling and isinstance(posterior, ParametricPosterior):
        params = posterior.sample_parameters(param_sample)
        log_lik = posterior.log_likelihood(points, params)
        with np.errstate(invalid="ignore"):
            lppd = float(np.sum(logsumexp(log_lik, axis=1) - math.log(param_sample)))
            p_waic = float(np.sum(np.var(log_lik, axis=1, ddof=1)))
        method, draws = "parameter_sampling", param_sample
    elif caps.log_pdf:
        lppd = float(np.sum(posterior.log_pdf_batch(points)))
        p_waic = 0.0
        method, draws = "log_pdf", 0
    else:
        raise InferenceError(
            ErrorCode.NOT_IMPLEMENTED,
            "Posterior supports neither parameter sampling nor log_pdf",
        )

    if len(points) < n:
        lppd *= n / len(points)

    waic = -2.0 * (lppd - p_waic) / n
    if not math.isfinite(waic):
        raise InferenceError(
            ErrorCode.INTERNAL_ERROR,
            "WAIC computation resulted in a non-finite value",
            {"lppd": lppd, "p_waic": p_waic},
        )
    return WAICResult(
        waic=waic,
        lppd=lppd,
        p_waic=p_waic,
        n_observations=n,
        n_evaluated=len(points),
        n_parameter_draws=draws,
        method=method,
    )


def compute_bic(posterior: Posterior, data: Any) -> BICResult:
    """Per-observation BIC using the posterior point estimate."""
    observations = extract_observations(data)
    n = len(observations)
    if n == 0:
        raise InferenceError(ErrorCode.INSUFFICIENT_DATA, "No data points for BIC computation")

    if posterior.capabilities.parameter_sampling and isinstance(posterior, ParametricPosterior):
        log_lik = float(np.sum(posterior.log_likelihood(observations.values, posterior.point_parameters())))
    else:
        log_lik = float(np.sum(posterior.log_pdf_batch(observations.values)))

    k = posterior.parameter_count
    bic = (-2.0 * log_lik + k * math.log(n)) / n
    if not math.isfinite(bic):
        raise InferenceError(
            ErrorCode.INTERNAL_ERROR,
            "BIC computation resulted in a non-finite value",
            {"log_likelihood": log_lik},
        )
    return BICResult(bic=bic, log_likelihood=log_lik, parameter_count=k, n_observations=n)


# ======================================================================
# Comparison
# ======================================================================


def information_weights(deltas: Sequence[float]) -> np.ndarray:
    """Akaike-style weights exp(-delta/2), normalized to sum to 1."""
    rel = np.exp(-0.5 * np.asarray(deltas, dtype=float))
    return rel / rel.sum()


def _rank(scores: list[ModelScore]) -> list[ModelScore]:
    scores.sort(key=lambda s: s.score)
    best = scores[0].score
    for score in scores:
        score.delta = score.score - best
    for score, weight in zip(scores, information_weights([s.delta for s in scores])):
        score.weight = float(weight)
    return scores


def _compare(candidates: Sequence[ModelCandidate], criterion: str, evaluate) -> list[ModelScore]:
    if not candidates:
        raise InferenceError(ErrorCode.INVALID_CONFIG, "No model candidates provided for comparison")

    scores: list[ModelScore] = []
    failures: dict[str, str] = {}
    for candidate in candidates:
        try:
            details, value = evaluate(candidate)
        except Exception as exc:
            logger.warning("Failed to compute %s for %s: %s", criterion.upper(), candidate.name, exc)
            failures[candidate.name] = str(exc)
            continue
        scores.append(
            ModelScore(
                name=candidate.name,
                criterion=criterion,
                score=value,
                config=candidate.config,
                details=details,
            )
        )

    if not scores:
        raise InferenceError(
            ErrorCode.INTERNAL_ERROR,
            f"All models failed {criterion.upper()} computation",
            {"failures": failures},
        )
    return _rank(scores)


def compare_models(
    candidates: Sequence[ModelCandidate],
    data: Any,
    seed: Optional[int] = None,
) -> list[ModelScore]:
    """Rank candidates by WAIC (ascending) with Akaike weights."""
    rng = np.random.default_rng(seed)

    def evaluate(candidate: ModelCandidate):
        result = compute_waic(candidate.posterior, data, rng=rng)
        return result, result.waic

    return _compare(candidates, "waic", evaluate)


def compare_models_bic(candidates: Sequence[ModelCandidate], data: Any) -> list[ModelScore]:
    """Rank candidates by BIC (ascending) with BIC weights."""

    def evaluate(candidate: ModelCandidate):
        result = compute_bic(candidate.posterior, data)
        return result, result.bic

    return _compare(candidates, "bic", evaluate)


def compare_models_dic(candidates: Sequence[ModelCandidate], data: Any) -> list[ModelScore]:
    raise InferenceError(
        ErrorCode.NOT_IMPLEMENTED,
        "DIC is not available; use compare_models() for WAIC",
    )
