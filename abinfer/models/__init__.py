from abinfer.models.config import FitOptions, FitProgress, ModelConfig, PriorSpec
from abinfer.models.data import (
    BinomialSummary,
    DataQuality,
    EmpiricalStats,
    StandardData,
    UserLevelPayload,
    UserRecord,
)

__all__ = [
    "FitOptions",
    "FitProgress",
    "ModelConfig",
    "PriorSpec",
    "BinomialSummary",
    "DataQuality",
    "EmpiricalStats",
    "StandardData",
    "UserLevelPayload",
    "UserRecord",
]
