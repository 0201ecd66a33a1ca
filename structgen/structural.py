"""
Structural Validation
=====================
Decode raw model text into structured data once, at the boundary, then
check it against the stage's required shape.

decode_json() repairs the common LLM formatting mistakes (markdown
fences, trailing commas, stray control characters, prose around the
payload) before giving up with MalformedOutputError.

A StructuralValidator is any total predicate `(data) -> bool`. The
helpers here build them from JSON Schemas (jsonschema) so every stage
validates with one compiled validator rather than ad hoc field probing.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Optional

import jsonschema

from .errors import ErrorCode, MalformedOutputError

logger = logging.getLogger("structgen.structural")

StructuralValidator = Callable[[Any], bool]

_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z]*\s*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)


class ValidationResult:
    __slots__ = ("passed", "details", "validator_name")

    def __init__(self, passed: bool, details: str = "", validator_name: str = ""):
        self.passed = passed
        self.details = details
        self.validator_name = validator_name

    def __bool__(self) -> bool:
        return self.passed

    def __repr__(self) -> str:
        return f"ValidationResult(passed={self.passed}, validator={self.validator_name!r})"


# ─────────────────────────────────────────────────────────────────────────────
# Decoding
# ─────────────────────────────────────────────────────────────────────────────

def strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = _FENCE_OPEN_RE.sub("", text)
        text = _FENCE_CLOSE_RE.sub("", text)
        text = text.strip()
    return text


def _try_parse(s: str) -> tuple[bool, Any]:
    """json.loads with progressively more aggressive fixes. Returns (ok, value)."""
    # 1. Direct parse
    try:
        return True, json.loads(s)
    except json.JSONDecodeError:
        pass
    # 2. Trailing commas before ] or }
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", s)
    try:
        return True, json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    # 3. Control characters (except \n \r \t)
    cleaned = _CONTROL_CHARS_RE.sub("", cleaned)
    try:
        return True, json.loads(cleaned)
    except json.JSONDecodeError:
        return False, None


def decode_json(raw: Optional[str]) -> Any:
    """
    Parse model output as JSON.

    Raises
    ------
    MalformedOutputError  EMPTY_RESPONSE for blank input, DECODE_ERROR when
                          nothing parseable can be recovered
    """
    if raw is None or not raw.strip():
        raise MalformedOutputError("Empty model output", code=ErrorCode.EMPTY_RESPONSE)

    text = strip_fences(raw)
    ok, value = _try_parse(text)
    if ok:
        return value

    # Extract the outermost {...} or [...] block, whichever starts first
    candidates = [m for m in (_OBJECT_RE.search(text), _ARRAY_RE.search(text)) if m]
    for match in sorted(candidates, key=lambda m: m.start()):
        ok, value = _try_parse(match.group())
        if ok:
            return value

    logger.debug(f"Could not decode model output; first 200 chars: {text[:200]!r}")
    raise MalformedOutputError(
        "Model output is not valid JSON",
        code=ErrorCode.DECODE_ERROR,
        details={"preview": text[:200]},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Validators
# ─────────────────────────────────────────────────────────────────────────────

def validate_schema(data: Any, schema: dict) -> ValidationResult:
    """Validate decoded data against a JSON Schema, collecting every error."""
    validator = jsonschema.Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    if not errors:
        return ValidationResult(True, "Valid", "json_schema")
    details = "; ".join(
        f"{'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}"
        for e in errors[:5]
    )
    return ValidationResult(False, details, "json_schema")


def schema_validator(schema: dict) -> StructuralValidator:
    """Build a total predicate from a JSON Schema. The schema is compiled once."""
    jsonschema.Draft7Validator.check_schema(schema)
    compiled = jsonschema.Draft7Validator(schema)

    def _validate(data: Any) -> bool:
        return compiled.is_valid(data)

    _validate.schema = schema  # type: ignore[attr-defined]
    return _validate


def all_of(*validators: StructuralValidator) -> StructuralValidator:
    """Conjunction of validators; short-circuits on the first failure."""
    def _validate(data: Any) -> bool:
        return all(v(data) for v in validators)
    return _validate


def accept_any(data: Any) -> bool:
    return data is not None


def describe_failure(schema: Optional[dict], data: Any) -> str:
    """Human-readable reason a payload failed; used for retry prompts and logs."""
    if schema is None:
        return "payload failed structural validation"
    return validate_schema(data, schema).details
