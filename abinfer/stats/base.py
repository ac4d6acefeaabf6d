"""Inference engine contract.

Every engine declares up-front which structures, families, data types and
component counts it supports.  The router uses these declarations for
compatibility checks; engines use them to validate their own inputs before
doing any work.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.models.config import FitOptions, ModelConfig
from abinfer.models.data import StandardData
from abinfer.stats.posterior import Diagnostics, InferenceResult, Posterior, ResultMetadata


@dataclass(frozen=True)
class EngineCapabilities:
    structures: frozenset[str]
    families: frozenset[str]
    data_types: frozenset[str]
    min_components: int = 1
    max_components: int = 1
    exact: bool = False
    fast: bool = True
    stable: bool = True

    def supports_config(self, config: ModelConfig) -> bool:
        return (
            config.structure in self.structures
            and config.family in self.families
            and self.min_components <= config.component_count <= self.max_components
        )

    def supports(self, config: ModelConfig, data: Optional[StandardData] = None) -> bool:
        if not self.supports_config(config):
            return False
        return data is None or data.type in self.data_types

    def as_dict(self) -> dict[str, bool]:
        return {"exact": self.exact, "fast": self.fast, "stable": self.stable}


class InferenceEngine(ABC):
    """Base class for all engines.

    ``fit`` is asynchronous so callers are never blocked waiting on a
    result; the work itself happens synchronously in ``fit_sync``, so one
    fit is atomic with respect to any other.
    """

    name: str = "engine"
    algorithm: str = "conjugate"
    capabilities: EngineCapabilities

    async def fit(
        self,
        data: StandardData,
        config: ModelConfig,
        options: Optional[FitOptions] = None,
    ) -> InferenceResult:
        return self.fit_sync(data, config, options or FitOptions())

    @abstractmethod
    def fit_sync(
        self,
        data: StandardData,
        config: ModelConfig,
        options: FitOptions,
    ) -> InferenceResult:
        ...

    def can_handle(self, config: ModelConfig, data: Optional[StandardData] = None) -> bool:
        return self.capabilities.supports(config, data)

    def validate_standard_data(self, data: StandardData, config: ModelConfig) -> None:
        if data.type not in self.capabilities.data_types:
            raise InferenceError(
                ErrorCode.MODEL_MISMATCH,
                f"{self.name} does not support {data.type} data",
                {"supported": sorted(self.capabilities.data_types)},
            )
        if not self.capabilities.supports_config(config):
            raise InferenceError(
                ErrorCode.MODEL_MISMATCH,
                f"{self.name} does not support model {config.label()}",
                {"config": config.model_dump()},
            )

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def build_result(
        self,
        posterior: Posterior,
        started: float,
        data: Optional[StandardData],
        config: Optional[ModelConfig],
        model_type: str,
        converged: bool = True,
        iterations: int = 1,
        warnings: tuple[str, ...] = (),
        **diagnostics,
    ) -> InferenceResult:
        capabilities = self.capabilities.as_dict()
        capabilities["analytical"] = posterior.capabilities.analytical
        capabilities["parameter_sampling"] = posterior.capabilities.parameter_sampling
        return InferenceResult(
            posterior=posterior,
            diagnostics=Diagnostics(
                converged=converged,
                iterations=iterations,
                runtime=time.perf_counter() - started,
                model_type=model_type,
                parameter_count=posterior.parameter_count,
                **diagnostics,
            ),
            metadata=ResultMetadata(
                algorithm=self.algorithm,
                engine_name=self.name,
                capabilities=capabilities,
                model_config=config,
                data_quality=data.quality if data is not None else None,
                warnings=warnings,
            ),
        )
