"""Bayesian inference for A/B-test data."""

from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.models import FitOptions, ModelConfig, PriorSpec, StandardData, UserRecord
from abinfer.stats import InferenceService, ModelComparison, ModelRouter

__all__ = [
    "ErrorCode",
    "InferenceError",
    "FitOptions",
    "ModelConfig",
    "PriorSpec",
    "StandardData",
    "UserRecord",
    "InferenceService",
    "ModelComparison",
    "ModelRouter",
]
