"""InferenceService: orchestrator that ties routing, fitting and component
comparison together into a single ``fit`` call.

This is the main entry point for callers that just have data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from abinfer.core.errors import wrap_error
from abinfer.models.config import FitOptions, ModelConfig
from abinfer.models.data import StandardData
from abinfer.stats.compound import CompoundPosterior
from abinfer.stats.mixture import MixturePosterior
from abinfer.stats.posterior import InferenceResult
from abinfer.stats.router import ComponentComparison, ModelRouter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Analysis:
    """Fit result plus the routing decision that produced it."""

    result: InferenceResult
    config: ModelConfig
    engine_name: str
    confidence: float
    reasoning: tuple[str, ...] = ()
    component_comparison: Optional[ComponentComparison] = None
    warnings: tuple[str, ...] = field(default=())

    @property
    def posterior(self):
        return self.result.posterior

    def summary(self, level: Optional[float] = None) -> dict[str, Any]:
        """Plain-dict view for export layers."""
        posterior = self.result.posterior
        diagnostics = self.result.diagnostics
        low, high = posterior.credible_interval(level)

        summary: dict[str, Any] = {
            "model": self.config.label(),
            "engine": self.engine_name,
            "routing_confidence": self.confidence,
            "reasoning": list(self.reasoning),
            "mean": round(posterior.mean(), 6),
            "variance": round(posterior.variance(), 6),
            "credible_interval": (round(low, 6), round(high, 6)),
            "converged": diagnostics.converged,
            "iterations": diagnostics.iterations,
            "model_type": diagnostics.model_type,
            "fallback_reason": diagnostics.fallback_reason,
            "warnings": list(self.warnings),
        }

        if isinstance(posterior, MixturePosterior):
            summary["components"] = [
                {
                    "mean": round(c["mean"], 6),
                    "variance": round(c["variance"], 6),
                    "weight": round(c["weight"], 4),
                    "weight_ci": tuple(round(x, 4) for x in c["weight_ci"]),
                }
                for c in posterior.components(level)
            ]
        if isinstance(posterior, CompoundPosterior):
            summary["decomposition"] = {
                k: round(v, 6) for k, v in posterior.expected_value_per_user().items()
            }
        if self.component_comparison is not None:
            cc = self.component_comparison
            summary["component_comparison"] = {
                "selected_k": cc.selected_k,
                "optimal_k": cc.optimal_k,
                "confidence": round(cc.confidence, 4),
                "models": [
                    {"k": m.k, "waic": round(m.waic, 6), "delta_waic": round(m.delta_waic, 6), "weight": round(m.weight, 4)}
                    for m in cc.models
                ],
            }
        return summary


class InferenceService:
    """Route, fit, and optionally compare component counts.

    Parameters
    ----------
    router : type[ModelRouter]
        Router used to pick the configuration and engine.
    """

    def __init__(self, router: type[ModelRouter] = ModelRouter) -> None:
        self.router = router

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fit(self, data: StandardData, options: Optional[FitOptions] = None) -> Analysis:
        """Run a full analysis on ``data``.

        Steps:
        1. Route the data to a configuration and engine
        2. Fit the engine
        3. If requested and worthwhile, sweep component counts by WAIC
        4. Return the result with the routing audit trail attached

        Parameters
        ----------
        data : StandardData
            Normalized input.
        options : FitOptions | None
            Per-call overrides.

        Returns
        -------
        Analysis
        """
        options = options or FitOptions()

        # ----------------------------------------------------------
        # 1. Route
        # ----------------------------------------------------------
        route = self.router.route(data, options)

        # ----------------------------------------------------------
        # 2. Fit
        # ----------------------------------------------------------
        try:
            result = await route.engine.fit(data, route.config, options)
        except Exception as exc:
            logger.exception("Fit failed for %s", route.config.label())
            raise wrap_error(exc) from exc

        # ----------------------------------------------------------
        # 3. Optional component comparison
        # ----------------------------------------------------------
        comparison: Optional[ComponentComparison] = None
        if options.run_component_comparison and self.router.should_run_component_comparison(
            data, route.config, options
        ):
            comparison = await self.router.compare_components(data, route.config, options)
            if comparison.optimal_k != comparison.selected_k and comparison.confidence > 0:
                logger.info(
                    "WAIC prefers %d components over the selected %d (weight %.2f)",
                    comparison.optimal_k,
                    comparison.selected_k,
                    comparison.confidence,
                )

        return Analysis(
            result=result,
            config=route.config,
            engine_name=route.engine.name,
            confidence=route.confidence,
            reasoning=tuple(route.reasoning),
            component_comparison=comparison,
            warnings=result.metadata.warnings,
        )
