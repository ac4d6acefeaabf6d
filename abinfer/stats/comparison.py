"""Fit several named model configurations on the same data and rank them."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from abinfer.core.config import settings
from abinfer.core.errors import ErrorCode, InferenceError, wrap_error
from abinfer.models.config import FitOptions, ModelConfig
from abinfer.models.data import StandardData
from abinfer.stats.posterior import InferenceResult
from abinfer.stats.router import ComponentComparison, ModelRouter
from abinfer.stats.selection import (
    ModelCandidate,
    compare_models,
    compare_models_bic,
    compare_models_dic,
)

CRITERIA = ("waic", "bic", "dic")


@dataclass(frozen=True)
class NamedModel:
    name: str
    config: ModelConfig


@dataclass(frozen=True)
class RankedModel:
    name: str
    config: ModelConfig
    score: float
    delta_score: float
    weight: float


@dataclass(frozen=True)
class ComparisonResult:
    models: tuple[RankedModel, ...]
    best: RankedModel
    criterion: str
    compute_time_ms: float

    @property
    def confidence(self) -> float:
        return self.best.weight


class ModelComparison:
    """Fit-and-rank helpers built on the router and the information criteria."""

    @classmethod
    async def compare(
        cls,
        data: StandardData,
        models: Sequence[NamedModel],
        criterion: str = "waic",
        parallel: bool = True,
        options: Optional[FitOptions] = None,
    ) -> ComparisonResult:
        """Fit every named config through the router and rank by ``criterion``.

        Parameters
        ----------
        data : StandardData
            Dataset every model is fit on and scored against.
        models : sequence of NamedModel
            Configurations to compare.
        criterion : str
            ``"waic"`` (default), ``"bic"`` or ``"dic"`` (not implemented).
        parallel : bool
            Schedule the fits concurrently on the event loop.

        Returns
        -------
        ComparisonResult
            Models sorted best first, with the best model's weight as confidence.
        """
        started = time.perf_counter()
        criterion = criterion.lower()
        if criterion not in CRITERIA:
            raise InferenceError(ErrorCode.INVALID_CONFIG, f"Unknown comparison criterion: {criterion}")
        if not models:
            raise InferenceError(ErrorCode.INVALID_CONFIG, "No models provided for comparison")

        if len(models) == 1:
            only = RankedModel(models[0].name, models[0].config, 0.0, 0.0, 1.0)
            return ComparisonResult(
                models=(only,),
                best=only,
                criterion=criterion,
                compute_time_ms=(time.perf_counter() - started) * 1000,
            )

        try:
            if parallel:
                results = await asyncio.gather(*(cls._fit(data, m.config, options) for m in models))
            else:
                results = [await cls._fit(data, m.config, options) for m in models]

            candidates = [
                ModelCandidate(name=m.name, posterior=r.posterior, config=m.config)
                for m, r in zip(models, results)
            ]
            seed = options.seed if options is not None else None
            if criterion == "waic":
                ranking = compare_models(candidates, data, seed=seed)
            elif criterion == "bic":
                ranking = compare_models_bic(candidates, data)
            else:
                ranking = compare_models_dic(candidates, data)
        except InferenceError:
            raise
        except Exception as exc:
            raise wrap_error(exc) from exc

        ranked = tuple(
            RankedModel(s.name, s.config, s.score, s.delta, s.weight) for s in ranking
        )
        return ComparisonResult(
            models=ranked,
            best=ranked[0],
            criterion=criterion,
            compute_time_ms=(time.perf_counter() - started) * 1000,
        )

    @classmethod
    async def compare_mixture_components(
        cls,
        data: StandardData,
        base_config: ModelConfig,
        max_components: Optional[int] = None,
        options: Optional[FitOptions] = None,
    ) -> ComponentComparison:
        """WAIC sweep over K = 1..min(max_components, n // 30)."""
        if not cls.supports_mixtures(base_config):
            raise InferenceError(
                ErrorCode.MODEL_MISMATCH,
                "Model configuration does not support mixture components",
                {"config": base_config.model_dump()},
            )

        max_components = settings.MAX_COMPONENTS if max_components is None else max_components
        max_k = min(max_components, data.n // settings.COMPARISON_POINTS_PER_COMPONENT)
        if max_k < 1:
            raise InferenceError(
                ErrorCode.INSUFFICIENT_DATA,
                f"Dataset too small for mixture models (n={data.n})",
                {"data_size": data.n, "min_required": settings.COMPARISON_POINTS_PER_COMPONENT},
            )

        try:
            return await ModelRouter.sweep_components(data, base_config, max_k, options)
        except InferenceError:
            raise
        except Exception as exc:
            raise wrap_error(exc) from exc

    @staticmethod
    def supports_mixtures(config: ModelConfig) -> bool:
        return config.family in ("lognormal", "normal")

    @classmethod
    def should_run_comparison(cls, data: StandardData, config: ModelConfig) -> bool:
        return data.n >= settings.ROUTER_MIN_MIXTURE_POINTS and cls.supports_mixtures(config)

    @staticmethod
    async def _fit(
        data: StandardData,
        config: ModelConfig,
        options: Optional[FitOptions],
    ) -> InferenceResult:
        fit_options = (options or FitOptions()).model_copy(update={"force_config": config})
        route = ModelRouter.route(data, fit_options)
        return await route.engine.fit(data, config, fit_options)
