"""
Error taxonomy
==============
Four failure families, each with its own propagation rule:

  ConfigurationError    : NO_API_KEY; never retried, user-legible fallback
  TransientBackendError : TIMEOUT / RATE_LIMIT / API_ERROR; retried up to the bound
  MalformedOutputError  : EMPTY_RESPONSE / decode / structure; retried (resampling helps)
  SemanticQualityError  : quality-gate blockers; handled by variant selection

Nothing in this hierarchy crosses the pipeline boundary: run_pipeline()
turns every failure into a tagged PipelineResult.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    # Backend result codes
    NO_API_KEY = "NO_API_KEY"
    TIMEOUT = "TIMEOUT"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    RATE_LIMIT = "RATE_LIMIT"
    API_ERROR = "API_ERROR"
    # Pipeline-internal codes
    DECODE_ERROR = "DECODE_ERROR"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    QUALITY_GATE_FAILED = "QUALITY_GATE_FAILED"
    CANCELLED = "CANCELLED"


class StructGenError(Exception):
    """Base class. Carries an ErrorCode and optional details."""

    code: ErrorCode = ErrorCode.API_ERROR
    retryable: bool = True

    def __init__(self, message: str = "", code: Optional[ErrorCode] = None,
                 details: Optional[dict] = None):
        self.code = code or type(self).code
        self.details = details or {}
        super().__init__(message or self.code.value)


class ConfigurationError(StructGenError):
    code = ErrorCode.NO_API_KEY
    retryable = False


class TransientBackendError(StructGenError):
    code = ErrorCode.API_ERROR


class MalformedOutputError(StructGenError):
    code = ErrorCode.DECODE_ERROR


class SemanticQualityError(StructGenError):
    code = ErrorCode.QUALITY_GATE_FAILED
    retryable = False


_CATEGORY: dict[ErrorCode, type[StructGenError]] = {
    ErrorCode.NO_API_KEY: ConfigurationError,
    ErrorCode.TIMEOUT: TransientBackendError,
    ErrorCode.RATE_LIMIT: TransientBackendError,
    ErrorCode.API_ERROR: TransientBackendError,
    ErrorCode.EMPTY_RESPONSE: MalformedOutputError,
    ErrorCode.DECODE_ERROR: MalformedOutputError,
    ErrorCode.VALIDATION_FAILED: MalformedOutputError,
    ErrorCode.QUALITY_GATE_FAILED: SemanticQualityError,
    ErrorCode.CANCELLED: StructGenError,
}

_USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.NO_API_KEY: (
        "The generation service is not configured. "
        "Set an API key (e.g. GEMINI_API_KEY) and try again."
    ),
    ErrorCode.TIMEOUT: "The model took too long to respond. Please try again shortly.",
    ErrorCode.RATE_LIMIT: "The model service is busy. Please wait a moment and retry.",
    ErrorCode.API_ERROR: "The model service returned an error. Please try again.",
    ErrorCode.EMPTY_RESPONSE: "The model returned an empty answer. Try rephrasing your request.",
    ErrorCode.DECODE_ERROR: "The model answer could not be read. Please try again.",
    ErrorCode.VALIDATION_FAILED: "The model answer was incomplete. Please try again.",
    ErrorCode.QUALITY_GATE_FAILED: "No answer met the quality bar. Please try again.",
    ErrorCode.CANCELLED: "The request was cancelled.",
}


def to_code(value: "ErrorCode | str | None") -> ErrorCode:
    """Coerce a raw backend error string to an ErrorCode (unknown → API_ERROR)."""
    if isinstance(value, ErrorCode):
        return value
    try:
        return ErrorCode(str(value))
    except ValueError:
        return ErrorCode.API_ERROR


def classify(code: "ErrorCode | str") -> type[StructGenError]:
    """Return the exception family an error code belongs to."""
    return _CATEGORY[to_code(code)]


def is_retryable(code: "ErrorCode | str") -> bool:
    return classify(code).retryable and to_code(code) != ErrorCode.CANCELLED


def user_message(code: "ErrorCode | str") -> str:
    return _USER_MESSAGES[to_code(code)]
