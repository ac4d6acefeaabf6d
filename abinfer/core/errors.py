"""Structured errors raised by the inference core.

Every failure the engines raise on purpose is an ``InferenceError`` carrying
an ``ErrorCode``.  It subclasses ``ValueError`` so callers that only care
about "bad input" can keep catching ``ValueError``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    INVALID_DATA = "INVALID_DATA"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    INVALID_PRIOR = "INVALID_PRIOR"
    INVALID_CONFIG = "INVALID_CONFIG"
    MODEL_MISMATCH = "MODEL_MISMATCH"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class InferenceError(ValueError):
    """Error with a machine-readable code and optional debugging context.

    Parameters
    ----------
    code : ErrorCode
        Category of the failure.
    message : str
        Human-readable description.
    context : dict | None
        Extra values useful when debugging (offending counts, config, ...).
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = context or {}

    def is_code(self, *codes: ErrorCode) -> bool:
        return self.code in codes

    def __str__(self) -> str:
        if self.context:
            return f"[{self.code.value}] {self.message} (context: {self.context})"
        return f"[{self.code.value}] {self.message}"


def wrap_error(error: BaseException, code: ErrorCode = ErrorCode.INTERNAL_ERROR) -> InferenceError:
    """Return ``error`` unchanged if it is already an InferenceError, else wrap it."""
    if isinstance(error, InferenceError):
        return error
    return InferenceError(
        code,
        str(error) or type(error).__name__,
        {"original_type": type(error).__name__},
    )
