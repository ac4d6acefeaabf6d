"""Capability-based model routing.

``ModelRouter.route`` inspects the data and decides structure, family and
component count, then looks the engine up in a static registry.  Every
decision appends a human-readable line to ``reasoning`` so a route can be
audited after the fact.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
from scipy import stats as sp_stats

from abinfer.core.config import settings
from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.models.config import FitOptions, ModelConfig
from abinfer.models.data import DataQuality, StandardData
from abinfer.stats.base import InferenceEngine
from abinfer.stats.bayesian import BetaBinomialConjugate
from abinfer.stats.compound import CompoundInferenceEngine
from abinfer.stats.mixture import LogNormalMixtureVBEM, NormalMixtureVBEM
from abinfer.stats.normal import LogNormalConjugate, NormalConjugate
from abinfer.stats.selection import ModelCandidate, compare_models

logger = logging.getLogger(__name__)

# (structure, family, is_mixture) -> engine class
ENGINE_REGISTRY: dict[tuple[str, str, bool], type[InferenceEngine]] = {
    ("simple", "beta", False): BetaBinomialConjugate,
    ("simple", "normal", False): NormalConjugate,
    ("simple", "lognormal", False): LogNormalConjugate,
    ("simple", "normal", True): NormalMixtureVBEM,
    ("simple", "lognormal", True): LogNormalMixtureVBEM,
    ("compound", "lognormal", False): CompoundInferenceEngine,
    ("compound", "lognormal", True): CompoundInferenceEngine,
    ("compound", "normal", False): CompoundInferenceEngine,
    ("compound", "normal", True): CompoundInferenceEngine,
    ("compound", "gamma", False): CompoundInferenceEngine,
    ("compound", "gamma", True): CompoundInferenceEngine,
}

FALLBACK_ENGINE: type[InferenceEngine] = LogNormalConjugate


@dataclass
class RouteResult:
    config: ModelConfig
    engine: InferenceEngine
    confidence: float
    reasoning: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ComponentScore:
    k: int
    waic: float
    delta_waic: float
    weight: float


@dataclass(frozen=True)
class ComponentComparison:
    """WAIC sweep over component counts.

    ``selected_k`` is what the routing heuristics chose, ``optimal_k`` what
    WAIC prefers; ``confidence`` is the Akaike weight of the best model (0 when
    the sweep failed).
    """

    selected_k: int
    optimal_k: int
    models: tuple[ComponentScore, ...]
    confidence: float
    compute_time_ms: float


@dataclass(frozen=True)
class BasicStats:
    n: int
    mean: float
    variance: float
    std: float
    cv: float
    skewness: float
    kurtosis: float


# ======================================================================
# Statistics helpers
# ======================================================================


def basic_stats(values: Any) -> BasicStats:
    """Moments used by the heuristics.

    Skewness and excess kurtosis are standardized by the sample std (ddof=1),
    i.e. scipy's biased moments rescaled by powers of (n - 1) / n.
    """
    values = np.asarray(values, dtype=float)
    n = len(values)
    if n == 0:
        return BasicStats(0, math.nan, math.nan, math.nan, math.nan, 0.0, 0.0)
    mean = float(np.mean(values))
    variance = float(np.var(values, ddof=1)) if n > 1 else 0.0
    std = math.sqrt(variance)
    cv = std / mean if mean != 0 else math.inf
    if std == 0:
        return BasicStats(n, mean, variance, std, cv, 0.0, 0.0)
    shrink = (n - 1) / n
    skewness = float(sp_stats.skew(values)) * shrink**1.5
    kurtosis = (float(sp_stats.kurtosis(values)) + 3.0) * shrink**2 - 3.0
    return BasicStats(
        n=n,
        mean=mean,
        variance=variance,
        std=std,
        cv=cv,
        skewness=skewness,
        kurtosis=kurtosis,
    )


def detect_gaps(sorted_values: Any) -> bool:
    """Quartiles far from the median relative to the range suggest multiple modes."""
    sorted_values = np.asarray(sorted_values, dtype=float)
    n = len(sorted_values)
    if n < 10:
        return False
    q25 = sorted_values[int(0.25 * n)]
    q50 = sorted_values[int(0.5 * n)]
    q75 = sorted_values[int(0.75 * n)]
    value_range = sorted_values[-1] - sorted_values[0]
    if value_range <= 0:
        return False
    mean_gap = (abs(q25 - q50) + abs(q75 - q50)) / 2
    return mean_gap / value_range > 0.3


# ======================================================================
# Router
# ======================================================================


class ModelRouter:
    """Pure decision function from data to (config, engine)."""

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    @classmethod
    def route(cls, data: StandardData, options: Optional[FitOptions] = None) -> RouteResult:
        if not isinstance(data, StandardData):
            raise InferenceError(
                ErrorCode.INVALID_DATA,
                "route() requires StandardData",
                {"actual_type": type(data).__name__},
            )
        reasoning: list[str] = []

        if options is not None and options.force_config is not None:
            config = options.force_config
            cls.validate_config(config)
            reasoning.append("Using user-specified model configuration")
            return cls._result(config, reasoning, 1.0)

        if data.is_binomial:
            reasoning.append("Binomial data always uses Beta-Binomial conjugate model")
            return cls._result(ModelConfig(structure="simple", type="beta"), reasoning, 1.0)

        if data.quality.has_zeros:
            reasoning.append("Data contains zeros, using compound model structure")
            return cls._route_compound(data, reasoning)

        reasoning.append("No zeros in data, using simple model structure")
        return cls._route_simple(data, reasoning)

    @classmethod
    def _route_compound(cls, data: StandardData, reasoning: list[str]) -> RouteResult:
        positive = data.positive_converted_values()
        positive = positive[np.isfinite(positive)]
        if len(positive) == 0:
            reasoning.append("No positive values found, defaulting to Beta-LogNormal compound")
            config = ModelConfig(structure="compound", value_type="lognormal", value_components=1)
            return cls._result(config, reasoning, 0.9)

        value_type = cls.select_value_distribution(positive, data.quality, reasoning)
        components = cls.determine_components(positive, reasoning)
        config = ModelConfig(
            structure="compound",
            frequency_type="beta",
            value_type=value_type,
            value_components=components,
        )
        return cls._result(config, reasoning, 0.85)

    @classmethod
    def _route_simple(cls, data: StandardData, reasoning: list[str]) -> RouteResult:
        values = data.values()
        values = values[np.isfinite(values)]
        family = cls.select_value_distribution(values, data.quality, reasoning)
        components = cls.determine_components(values, reasoning)
        config = ModelConfig(structure="simple", type=family, components=components)
        return cls._result(config, reasoning, 0.8)

    @classmethod
    def _result(cls, config: ModelConfig, reasoning: list[str], confidence: float) -> RouteResult:
        engine = cls.select_engine(config, reasoning)
        logger.info(
            "Routed to %s (%s, confidence %.2f)", engine.name, config.label(), confidence
        )
        return RouteResult(config=config, engine=engine, confidence=confidence, reasoning=reasoning)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    @staticmethod
    def select_value_distribution(
        values: Any,
        quality: DataQuality,
        reasoning: list[str],
    ) -> str:
        if quality.has_negatives:
            reasoning.append("Data contains negative values, using Normal distribution")
            return "normal"

        stats = basic_stats(values)
        if stats.skewness > 2:
            reasoning.append(f"High skewness ({stats.skewness:.2f}) suggests LogNormal distribution")
            return "lognormal"
        if stats.cv > 1.0:
            reasoning.append(f"High coefficient of variation ({stats.cv:.2f}) suggests LogNormal distribution")
            return "lognormal"

        reasoning.append("Positive continuous data, defaulting to LogNormal distribution")
        return "lognormal"

    @staticmethod
    def determine_components(values: Any, reasoning: list[str]) -> int:
        values = np.asarray(values, dtype=float)
        if len(values) < settings.ROUTER_MIN_MIXTURE_POINTS:
            reasoning.append("Small dataset, using single component")
            return 1

        stats = basic_stats(values)
        if stats.kurtosis > 3:
            reasoning.append(f"High kurtosis ({stats.kurtosis:.2f}) suggests mixture model")
            return 2

        if detect_gaps(np.sort(values)):
            reasoning.append("Detected gaps in data distribution, using mixture model")
            return 2

        reasoning.append("No evidence of multimodality, using single component")
        return 1

    # ------------------------------------------------------------------
    # Engine lookup
    # ------------------------------------------------------------------

    @staticmethod
    def validate_config(config: ModelConfig) -> None:
        """Raise INVALID_CONFIG unless some registered engine declares support."""
        if not any(engine.capabilities.supports_config(config) for engine in set(ENGINE_REGISTRY.values())):
            raise InferenceError(
                ErrorCode.INVALID_CONFIG,
                f"No engine supports model {config.label()}",
                {"config": config.model_dump()},
            )

    @staticmethod
    def select_engine(config: ModelConfig, reasoning: Optional[list[str]] = None) -> InferenceEngine:
        key = (config.structure, config.family or "", config.component_count > 1)
        engine_cls = ENGINE_REGISTRY.get(key)
        if engine_cls is not None and engine_cls.capabilities.supports_config(config):
            return engine_cls()

        reason = f"No engine registered for {config.label()}, falling back to {FALLBACK_ENGINE.name}"
        logger.warning("%s", reason)
        if reasoning is not None:
            reasoning.append(reason)
        return FALLBACK_ENGINE()

    # ------------------------------------------------------------------
    # Component comparison
    # ------------------------------------------------------------------

    @staticmethod
    def should_run_component_comparison(
        data: StandardData,
        config: ModelConfig,
        options: Optional[FitOptions] = None,
    ) -> bool:
        if options is not None and options.force_config is not None:
            return False
        if data.n < settings.ROUTER_MIN_MIXTURE_POINTS:
            return False
        return config.family in ("lognormal", "normal")

    @classmethod
    async def compare_components(
        cls,
        data: StandardData,
        config: ModelConfig,
        options: Optional[FitOptions] = None,
    ) -> ComponentComparison:
        """Sweep K by WAIC; never raises, a failed sweep reports confidence 0."""
        started = time.perf_counter()
        current_k = config.component_count
        max_k = min(settings.MAX_COMPONENTS, data.n // settings.COMPARISON_POINTS_PER_COMPONENT)

        if max_k <= 1:
            return ComponentComparison(
                selected_k=current_k,
                optimal_k=1,
                models=(ComponentScore(k=1, waic=0.0, delta_waic=0.0, weight=1.0),),
                confidence=1.0,
                compute_time_ms=(time.perf_counter() - started) * 1000,
            )

        try:
            return await cls.sweep_components(data, config, max_k, options)
        except Exception as exc:
            logger.warning("Component comparison failed: %s", exc)
            return ComponentComparison(
                selected_k=current_k,
                optimal_k=current_k,
                models=(ComponentScore(k=current_k, waic=0.0, delta_waic=0.0, weight=1.0),),
                confidence=0.0,
                compute_time_ms=(time.perf_counter() - started) * 1000,
            )

    @classmethod
    async def sweep_components(
        cls,
        data: StandardData,
        config: ModelConfig,
        max_k: int,
        options: Optional[FitOptions] = None,
    ) -> ComponentComparison:
        """Fit K = 1..max_k and rank them by WAIC.

        Parameters
        ----------
        data : StandardData
            Dataset every K is fit on and scored against.
        config : ModelConfig
            Base configuration; only its component count is varied.
        max_k : int
            Largest component count to try.
        options : FitOptions | None
            Seed and prior shared by every fit.

        Returns
        -------
        ComponentComparison
            Scores ordered by K. Fit and scoring errors propagate.
        """
        started = time.perf_counter()
        fit_options = (options or FitOptions()).model_copy(
            update={"force_config": None, "on_progress": None}
        )
        candidates = []
        for k in range(1, max_k + 1):
            k_config = config.with_components(k)
            engine = cls.select_engine(k_config)
            result = await engine.fit(data, k_config, fit_options)
            name = f"value_k={k}" if config.structure == "compound" else f"k={k}"
            candidates.append(ModelCandidate(name=name, posterior=result.posterior, config=k_config))

        ranking = compare_models(candidates, data, seed=fit_options.seed)
        models = sorted(
            (
                ComponentScore(
                    k=score.config.component_count,
                    waic=score.waic,
                    delta_waic=score.delta_waic,
                    weight=score.weight,
                )
                for score in ranking
            ),
            key=lambda m: m.k,
        )
        return ComponentComparison(
            selected_k=config.component_count,
            optimal_k=ranking[0].config.component_count,
            models=tuple(models),
            confidence=ranking[0].weight,
            compute_time_ms=(time.perf_counter() - started) * 1000,
        )
