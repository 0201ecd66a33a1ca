"""Tests for structgen/structural.py: JSON decoding repairs and schema validators."""
from __future__ import annotations

import pytest

from structgen.errors import ErrorCode, MalformedOutputError
from structgen.structural import (
    accept_any,
    all_of,
    decode_json,
    describe_failure,
    schema_validator,
    strip_fences,
    validate_schema,
)

SCHEMA = {
    "type": "object",
    "required": ["title", "items"],
    "properties": {
        "title": {"type": "string"},
        "items": {"type": "array", "items": {"type": "string"}},
    },
}


# ─────────────────────────────────────────────────────────────────────────────
# decode_json
# ─────────────────────────────────────────────────────────────────────────────

def test_decode_plain_json():
    assert decode_json('{"a": 1}') == {"a": 1}


def test_decode_strips_markdown_fences():
    raw = '```json\n{"a": [1, 2]}\n```'
    assert strip_fences(raw) == '{"a": [1, 2]}'
    assert decode_json(raw) == {"a": [1, 2]}


def test_decode_repairs_trailing_commas():
    assert decode_json('{"a": [1, 2,],}') == {"a": [1, 2]}


def test_decode_removes_control_characters():
    assert decode_json('{"a": "x\x07y"}') == {"a": "xy"}


def test_decode_extracts_payload_from_prose():
    raw = 'Sure! Here is the result:\n{"status": "clarified"}\nHope this helps.'
    assert decode_json(raw) == {"status": "clarified"}


def test_decode_prefers_block_that_starts_first():
    raw = 'Result: [{"id": "a"}, {"id": "b"}] done'
    assert decode_json(raw) == [{"id": "a"}, {"id": "b"}]


@pytest.mark.parametrize("raw", ["", "   ", None])
def test_decode_blank_is_empty_response(raw):
    with pytest.raises(MalformedOutputError) as exc:
        decode_json(raw)
    assert exc.value.code == ErrorCode.EMPTY_RESPONSE


def test_decode_garbage_is_decode_error():
    with pytest.raises(MalformedOutputError) as exc:
        decode_json("I cannot help with that {not json")
    assert exc.value.code == ErrorCode.DECODE_ERROR
    assert "preview" in exc.value.details


# ─────────────────────────────────────────────────────────────────────────────
# Validators
# ─────────────────────────────────────────────────────────────────────────────

def test_schema_validator_is_total_predicate():
    valid = schema_validator(SCHEMA)
    assert valid({"title": "t", "items": ["x"]}) is True
    assert valid({"title": "t"}) is False
    assert valid("not an object") is False
    assert valid.schema is SCHEMA


def test_schema_validator_rejects_bad_schema():
    with pytest.raises(Exception):
        schema_validator({"type": "no-such-type"})


def test_validate_schema_reports_paths():
    result = validate_schema({"title": 3, "items": ["ok", 4]}, SCHEMA)
    assert not result
    assert "title" in result.details
    assert "items/1" in result.details


def test_validate_schema_passes():
    result = validate_schema({"title": "t", "items": []}, SCHEMA)
    assert result.passed
    assert bool(result) is True


def test_describe_failure_without_schema():
    assert describe_failure(None, {}) == "payload failed structural validation"


def test_describe_failure_names_missing_field():
    assert "items" in describe_failure(SCHEMA, {"title": "t"})


def test_all_of_and_accept_any():
    has_title = schema_validator(SCHEMA)
    short = lambda d: len(d.get("items", [])) < 3   # noqa: E731
    combined = all_of(has_title, short)
    assert combined({"title": "t", "items": ["a"]})
    assert not combined({"title": "t", "items": ["a", "b", "c"]})
    assert accept_any({}) is True
    assert accept_any(None) is False
