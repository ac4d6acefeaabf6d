"""Normalized input data for every engine.

There are only two shapes of data: aggregate ``binomial`` counts and
``user-level`` records.  Continuous data is user-level data where every user
converted.  Quality indicators are computed once, at construction, and drive
routing decisions downstream.
"""

from __future__ import annotations

import math
from typing import Any, Iterable, Literal, Optional, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, model_validator
from scipy import stats as sp_stats

from abinfer.core.errors import ErrorCode, InferenceError

DataType = Literal["binomial", "user-level"]


class DataQuality(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_zeros: bool = False
    has_negatives: bool = False
    has_outliers: bool = False
    missing_data: int = 0


class UserRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str = ""
    converted: bool
    value: float


class BinomialSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    successes: int
    trials: int


class EmpiricalStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    mean: float
    variance: float
    min: float
    max: float
    q25: float
    q50: float
    q75: float
    skewness: Optional[float] = None
    kurtosis: Optional[float] = None


class UserLevelPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    users: tuple[UserRecord, ...]
    empirical_stats: Optional[EmpiricalStats] = None


# ======================================================================
# Quality / statistics helpers
# ======================================================================


def detect_outliers(values: np.ndarray) -> bool:
    """IQR rule: any point beyond 1.5 * IQR from the quartiles."""
    if len(values) < 4:
        return False
    sorted_values = np.sort(values)
    n = len(sorted_values)
    q1 = sorted_values[int(n * 0.25)]
    q3 = sorted_values[int(n * 0.75)]
    iqr = q3 - q1
    return bool(np.any((values < q1 - 1.5 * iqr) | (values > q3 + 1.5 * iqr)))


def analyze_user_level(users: Sequence[UserRecord]) -> DataQuality:
    values = np.array([u.value for u in users], dtype=float)
    finite = values[np.isfinite(values)]
    return DataQuality(
        has_zeros=bool(np.any(finite == 0)),
        has_negatives=bool(np.any(finite < 0)),
        has_outliers=detect_outliers(finite),
        missing_data=int(len(values) - len(finite)),
    )


def compute_empirical_stats(values: np.ndarray) -> EmpiricalStats:
    if len(values) == 0:
        raise InferenceError(ErrorCode.INSUFFICIENT_DATA, "Cannot compute statistics for empty data")

    values = np.asarray(values, dtype=float)
    variance = float(np.var(values, ddof=1)) if len(values) > 1 else 0.0
    q25, q50, q75 = np.quantile(values, [0.25, 0.5, 0.75])

    skewness = kurtosis = None
    if len(values) > 2 and variance > 0:
        skewness = float(sp_stats.skew(values))
        kurtosis = float(sp_stats.kurtosis(values))

    return EmpiricalStats(
        mean=float(np.mean(values)),
        variance=variance,
        min=float(np.min(values)),
        max=float(np.max(values)),
        q25=float(q25),
        q50=float(q50),
        q75=float(q75),
        skewness=skewness,
        kurtosis=kurtosis,
    )


def _check_count(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise InferenceError(ErrorCode.INVALID_DATA, f"{name} must be an integer", {name: value})
    if not float(value).is_integer():
        raise InferenceError(ErrorCode.INVALID_DATA, f"{name} must be an integer", {name: value})
    if value < 0:
        raise InferenceError(ErrorCode.INVALID_DATA, f"{name} must be non-negative", {name: value})
    return int(value)


# ======================================================================
# StandardData
# ======================================================================


class StandardData(BaseModel):
    """Immutable, validated input for a single analysis request."""

    model_config = ConfigDict(frozen=True)

    type: DataType
    n: int
    binomial: Optional[BinomialSummary] = None
    user_level: Optional[UserLevelPayload] = None
    quality: DataQuality = DataQuality()

    @model_validator(mode="after")
    def _check_payload(self) -> "StandardData":
        if self.n <= 0:
            raise ValueError("n must be positive")
        if self.type == "binomial":
            if self.binomial is None or self.user_level is not None:
                raise ValueError("binomial data must carry exactly the binomial payload")
            if self.binomial.successes < 0 or self.binomial.trials < 0:
                raise ValueError("successes and trials must be non-negative")
            if self.binomial.successes > self.binomial.trials:
                raise ValueError("successes cannot exceed trials")
        else:
            if self.user_level is None or self.binomial is not None:
                raise ValueError("user-level data must carry exactly the user-level payload")
        return self

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def from_binomial(cls, successes: Any, trials: Any) -> "StandardData":
        successes = _check_count("successes", successes)
        trials = _check_count("trials", trials)
        if trials == 0:
            raise InferenceError(ErrorCode.INSUFFICIENT_DATA, "trials must be positive")
        if successes > trials:
            raise InferenceError(
                ErrorCode.INVALID_DATA,
                "successes cannot exceed trials",
                {"successes": successes, "trials": trials},
            )
        return cls(
            type="binomial",
            n=trials,
            binomial=BinomialSummary(successes=successes, trials=trials),
            quality=DataQuality(),
        )

    @classmethod
    def from_binary(cls, outcomes: Iterable[Any]) -> "StandardData":
        """Aggregate a sequence of 0/1 outcomes into binomial counts."""
        arr = np.asarray(list(outcomes), dtype=float)
        if arr.size == 0:
            raise InferenceError(ErrorCode.INSUFFICIENT_DATA, "Outcome array cannot be empty")
        if not np.all((arr == 0) | (arr == 1)):
            raise InferenceError(ErrorCode.INVALID_DATA, "Binary outcomes must be 0 or 1")
        return cls.from_binomial(int(arr.sum()), int(arr.size))

    @classmethod
    def from_user_level(
        cls,
        users: Iterable[Any],
        precompute_stats: bool = True,
    ) -> "StandardData":
        """Build user-level data from ``UserRecord`` objects or plain dicts."""
        records = tuple(
            u if isinstance(u, UserRecord) else UserRecord(**_record_fields(u, i))
            for i, u in enumerate(users)
        )
        if not records:
            raise InferenceError(ErrorCode.INSUFFICIENT_DATA, "User-level data cannot be empty")

        quality = analyze_user_level(records)
        values = np.array([u.value for u in records], dtype=float)
        finite = values[np.isfinite(values)]
        empirical = compute_empirical_stats(finite) if precompute_stats and len(finite) else None

        return cls(
            type="user-level",
            n=len(records),
            user_level=UserLevelPayload(users=records, empirical_stats=empirical),
            quality=quality,
        )

    @classmethod
    def from_continuous(cls, values: Iterable[float], user_id_prefix: str = "user") -> "StandardData":
        """Continuous values are user-level data where every user converted."""
        return cls.from_user_level(
            UserRecord(user_id=f"{user_id_prefix}_{i}", converted=True, value=float(v))
            for i, v in enumerate(values)
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_binomial(self) -> bool:
        return self.type == "binomial"

    @property
    def is_user_level(self) -> bool:
        return self.type == "user-level"

    @property
    def users(self) -> tuple[UserRecord, ...]:
        if self.user_level is None:
            return ()
        return self.user_level.users

    def values(self) -> np.ndarray:
        return np.array([u.value for u in self.users], dtype=float)

    def converted(self) -> np.ndarray:
        return np.array([u.converted for u in self.users], dtype=bool)

    def positive_converted_values(self) -> np.ndarray:
        return np.array(
            [u.value for u in self.users if u.converted and u.value > 0],
            dtype=float,
        )


def _record_fields(raw: Any, index: int) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise InferenceError(ErrorCode.INVALID_DATA, "User records must be UserRecord or dict", {"index": index})
    if "value" not in raw or "converted" not in raw:
        raise InferenceError(
            ErrorCode.INVALID_DATA,
            "User records require 'converted' and 'value'",
            {"index": index},
        )
    value = raw["value"]
    if value is None:
        value = math.nan
    return {
        "user_id": str(raw.get("user_id", raw.get("userId", f"user_{index}"))),
        "converted": bool(raw["converted"]),
        "value": float(value),
    }
