"""Model choices and per-call fit options."""

from __future__ import annotations

from typing import Any, Callable, Literal, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator

from abinfer.core.config import settings

Structure = Literal["simple", "compound"]
Family = Literal["beta", "normal", "lognormal", "gamma"]


class ModelConfig(BaseModel):
    """A model choice.

    ``simple`` models use ``type`` and ``components``.  ``compound`` models
    use ``frequency_type`` (always ``"beta"``), ``value_type`` and
    ``value_components``.  ``value_type`` may be left unset here; the compound
    engine rejects such a config with ``INVALID_CONFIG`` at fit time.
    """

    model_config = ConfigDict(frozen=True)

    structure: Structure = "simple"
    type: Optional[Family] = None
    components: int = Field(default=1, ge=1)
    frequency_type: Optional[Literal["beta"]] = None
    value_type: Optional[Family] = None
    value_components: int = Field(default=1, ge=1)

    @model_validator(mode="before")
    @classmethod
    def _default_frequency(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("structure") == "compound":
            data = dict(data)
            data.setdefault("frequency_type", "beta")
            if data["frequency_type"] is None:
                data["frequency_type"] = "beta"
        return data

    @model_validator(mode="after")
    def _check_structure(self) -> "ModelConfig":
        if self.structure == "simple" and self.type is None:
            raise ValueError("simple models require a type")
        return self

    @property
    def family(self) -> Optional[str]:
        """Distribution family of the (value) model."""
        return self.value_type if self.structure == "compound" else self.type

    @property
    def component_count(self) -> int:
        return self.value_components if self.structure == "compound" else self.components

    def with_components(self, k: int) -> "ModelConfig":
        if self.structure == "compound":
            return self.model_copy(update={"value_components": k})
        return self.model_copy(update={"components": k})

    def label(self) -> str:
        family = self.family or "unknown"
        name = family if self.component_count == 1 else f"{family}-mixture-{self.component_count}"
        return f"compound-{name}" if self.structure == "compound" else name


class PriorSpec(BaseModel):
    """Prior family plus its numeric parameters.

    Beta takes ``(alpha, beta)``; Normal/LogNormal take the Normal-Inverse-Gamma
    ``(mu0, lambda, alpha, beta)``.
    """

    model_config = ConfigDict(frozen=True)

    type: str
    params: tuple[float, ...]


class FitProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: str
    progress: float
    iteration: Optional[int] = None


class FitOptions(BaseModel):
    """Per-call overrides.  ``None`` means "use the settings default"."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    prior_params: Optional[PriorSpec] = None
    max_iterations: Optional[int] = Field(default=None, ge=1)
    tolerance: Optional[float] = Field(default=None, gt=0)
    seed: Optional[int] = None
    on_progress: Optional[Callable[[FitProgress], None]] = None
    force_config: Optional[ModelConfig] = None
    run_component_comparison: bool = False

    def resolved_max_iterations(self) -> int:
        return self.max_iterations if self.max_iterations is not None else settings.MAX_ITERATIONS

    def resolved_tolerance(self) -> float:
        return self.tolerance if self.tolerance is not None else settings.VBEM_TOLERANCE

    def rng(self) -> np.random.Generator:
        return np.random.default_rng(self.seed)

    def report(self, stage: str, progress: float, iteration: Optional[int] = None) -> None:
        if self.on_progress is not None:
            self.on_progress(FitProgress(stage=stage, progress=progress, iteration=iteration))
