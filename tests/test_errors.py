"""Tests for structgen/errors.py: error taxonomy and user-facing messages."""
from __future__ import annotations

import pytest

from structgen.errors import (
    ConfigurationError,
    ErrorCode,
    MalformedOutputError,
    SemanticQualityError,
    StructGenError,
    TransientBackendError,
    classify,
    is_retryable,
    to_code,
    user_message,
)


@pytest.mark.parametrize("code,family", [
    (ErrorCode.NO_API_KEY, ConfigurationError),
    (ErrorCode.TIMEOUT, TransientBackendError),
    (ErrorCode.RATE_LIMIT, TransientBackendError),
    (ErrorCode.API_ERROR, TransientBackendError),
    (ErrorCode.EMPTY_RESPONSE, MalformedOutputError),
    (ErrorCode.DECODE_ERROR, MalformedOutputError),
    (ErrorCode.VALIDATION_FAILED, MalformedOutputError),
    (ErrorCode.QUALITY_GATE_FAILED, SemanticQualityError),
])
def test_classify(code, family):
    assert classify(code) is family
    assert classify(code.value) is family


def test_only_configuration_quality_and_cancel_are_terminal():
    terminal = {c for c in ErrorCode if not is_retryable(c)}
    assert terminal == {ErrorCode.NO_API_KEY, ErrorCode.QUALITY_GATE_FAILED, ErrorCode.CANCELLED}


def test_to_code():
    assert to_code("TIMEOUT") is ErrorCode.TIMEOUT
    assert to_code(ErrorCode.RATE_LIMIT) is ErrorCode.RATE_LIMIT
    assert to_code("SOMETHING_NEW") is ErrorCode.API_ERROR
    assert to_code(None) is ErrorCode.API_ERROR


def test_every_code_has_a_user_message():
    for code in ErrorCode:
        assert user_message(code)


def test_error_carries_code_and_details():
    err = MalformedOutputError("bad", code=ErrorCode.EMPTY_RESPONSE, details={"preview": ""})
    assert err.code == ErrorCode.EMPTY_RESPONSE
    assert err.details == {"preview": ""}
    assert str(err) == "bad"
    assert isinstance(err, StructGenError)


def test_default_message_is_code():
    assert str(ConfigurationError()) == "NO_API_KEY"
    assert ConfigurationError().retryable is False
