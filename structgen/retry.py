"""
Retry Orchestrator: generate, decode, validate, retry.
=======================================================
One call to RetryOrchestrator.run() is a small state machine:

    ATTEMPT ──ok & valid──────────────► SUCCESS
       │
       ├─ NO_API_KEY ─────────────────► TERMINAL   (one call, never retried)
       │
       └─ EMPTY_RESPONSE / DECODE_ERROR / VALIDATION_FAILED /
          TIMEOUT / RATE_LIMIT / API_ERROR
              attempts left ──► on_retry → backoff → ATTEMPT (n+1)
              exhausted     ──► TERMINAL

The loop is explicit and bounded: at most max_retries + 1 backend calls.
Each iteration lowers the sampling temperature a notch and, for formatting
or schema failures, appends a targeted reminder to the prompt.

run() never raises for backend or payload failures; it returns a tagged
RetryOutcome. Only cancellation propagates (asyncio.CancelledError).
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .api_clients import GenerationClient, GenerationResult
from .cancellation import CancellationToken, run_cancellable
from .errors import ErrorCode, MalformedOutputError, is_retryable
from .hooks import EventType, HookRegistry
from .models import GenerationAttempt, GenerationConfig, RunTier, StageLike
from .structural import StructuralValidator, decode_json, describe_failure
from .tracing import traced_generation

logger = logging.getLogger("structgen.retry")

OnRetry = Callable[[int, str], None]


def _log_retry(attempt: int, error: str) -> None:
    logger.warning(f"Retry attempt {attempt} due to: {error}")


@dataclass
class RetryOptions:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    temperature_decay: float = 0.2
    temperature_floor: float = 0.3
    timeout: Optional[float] = 90.0
    adjust_prompt: bool = True
    on_retry: OnRetry = _log_retry

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def temperature_for(self, base: float, attempt: int) -> float:
        """Decay from the base temperature, never below the floor (or the base if lower)."""
        floor = min(self.temperature_floor, base)
        return round(max(floor, base - (attempt - 1) * self.temperature_decay), 4)

    def delay_for(self, attempt: int, code: Optional[ErrorCode] = None) -> float:
        """Exponential backoff with up to 10% jitter; rate limits wait twice as long."""
        delay = min(self.initial_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)
        delay += delay * 0.1 * random.random()
        if code == ErrorCode.RATE_LIMIT:
            delay *= 2
        return delay


@dataclass
class RetryOutcome:
    ok: bool
    data: Any = None
    raw_text: str = ""
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    attempts: int = 0
    history: list[GenerationAttempt] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def reported_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def errors(self) -> list[str]:
        return [a.error for a in self.history if a.error]


# ─────────────────────────────────────────────────────────────────────────────
# Prompt adjustment
# ─────────────────────────────────────────────────────────────────────────────

_FORMAT_EXAMPLES = {
    "S0": '{"status": "clarification_needed", "ai_question": "Your question here"}',
    "S1": '[{"id": "example-id", "title": "Example Title", "summary": "Brief summary"}]',
    "S2": '{"mermaidChart": "graph TD\\n  A --> B", "metaphor": "Learning is like..."}',
    "S3": '{"actionPlan": [{"id": "step-1", "text": "Action text", "isCompleted": false}], '
          '"kpis": ["KPI 1"]}',
    "S4": '{"analysis": "Analysis text", "suggestions": ["Suggestion 1"]}',
}
_GENERIC_EXAMPLE = '{"field": "value"}'


def adjust_prompt(prompt: str, code: ErrorCode, error: str = "",
                  attempt: int = 1, stage: str = "") -> str:
    """
    Append a reminder targeted at the failure kind. Always derived from the
    caller's original prompt, so reminders never pile up across attempts.
    """
    example = _FORMAT_EXAMPLES.get(str(stage).upper(), _GENERIC_EXAMPLE)

    if code == ErrorCode.EMPTY_RESPONSE:
        if attempt == 1:
            return f"{prompt}\n\nCRITICAL: You must provide a complete response. Do not return empty content."
        return (f"{prompt}\n\nIMPORTANT: This is attempt #{attempt + 1}. Provide a valid, "
                f"complete JSON response with all required fields, for example:\n{example}")

    if code == ErrorCode.DECODE_ERROR:
        if attempt == 1:
            return (f"{prompt}\n\nFORMATTING REQUIREMENTS:\n"
                    "1. Return ONLY valid JSON, no additional text\n"
                    "2. Use double quotes for all strings\n"
                    "3. Ensure all brackets and braces are properly closed\n"
                    "4. Do not include explanatory text before or after the JSON\n\n"
                    f"Example format:\n{example}")
        return (f"{prompt}\n\nSIMPLIFIED: Return this exact JSON structure with your content:\n"
                f"{example}\n\nReplace the values but keep the exact structure.")

    if code == ErrorCode.VALIDATION_FAILED:
        details = error or "Schema validation failed"
        return (f"{prompt}\n\nREQUIRED FIELDS MISSING OR INVALID:\n{details}\n\n"
                "Include ALL required fields in your response.")

    if code == ErrorCode.TIMEOUT:
        return (f"{prompt}\n\nTIME CONSTRAINT: Provide a concise response. "
                "Aim for brevity while maintaining quality.")

    # RATE_LIMIT and API_ERROR: the prompt is not the problem
    return prompt


# ─────────────────────────────────────────────────────────────────────────────
# RetryOrchestrator
# ─────────────────────────────────────────────────────────────────────────────

class RetryOrchestrator:
    """
    Bounded generate → decode → validate loop over a GenerationClient.

    Usage:
        orch = RetryOrchestrator(client, RetryOptions(max_retries=3))
        outcome = await orch.run(prompt, schema_validator(S1_SCHEMA), stage="S1")
        if outcome.ok:
            use(outcome.data)
    """

    def __init__(self, client: GenerationClient, options: Optional[RetryOptions] = None,
                 hooks: Optional[HookRegistry] = None):
        self.client = client
        self.options = options or RetryOptions()
        self.hooks = hooks or HookRegistry()

    async def run(self, prompt: str, validator: StructuralValidator,
                  config: Optional[GenerationConfig] = None, *,
                  stage: StageLike = "", tier: RunTier = RunTier.PRO,
                  schema: Optional[dict] = None,
                  cancel: Optional[CancellationToken] = None,
                  max_retries: Optional[int] = None) -> RetryOutcome:
        opts = self.options
        base_config = config or GenerationConfig()
        stage_tag = getattr(stage, "value", stage) or ""
        max_attempts = (max_retries if max_retries is not None else opts.max_retries) + 1
        outcome = RetryOutcome(ok=False)
        current_prompt = prompt
        schema = schema or getattr(validator, "schema", None)

        for attempt in range(1, max_attempts + 1):
            cfg = base_config.with_temperature(opts.temperature_for(base_config.temperature, attempt))
            record = GenerationAttempt(attempt_number=attempt, config=cfg)
            outcome.history.append(record)
            outcome.attempts = attempt

            with traced_generation(stage_tag, attempt, cfg.temperature) as span:
                result = await self._call(current_prompt, cfg, tier, stage_tag, cancel)
                outcome.input_tokens += result.input_tokens
                outcome.output_tokens += result.output_tokens

                code, error, data = self._evaluate(result, validator, schema)
                span.set_attribute("generation.ok", code is None)
                if code is not None:
                    span.set_attribute("generation.error_code", code.value)

            if code is None:
                record.raw_output = result.text
                outcome.ok = True
                outcome.data = data
                outcome.raw_text = result.text
                outcome.error = None
                outcome.error_code = None
                logger.debug(f"[{stage_tag or '-'}] succeeded on attempt {attempt}/{max_attempts}")
                return outcome

            record.raw_output = result.text if result.ok else None
            record.error = error
            record.error_code = code.value
            outcome.error = error
            outcome.error_code = code

            if not is_retryable(code):
                logger.error(f"[{stage_tag or '-'}] terminal error {code.value} on attempt {attempt}")
                break
            if attempt == max_attempts:
                logger.error(
                    f"[{stage_tag or '-'}] giving up after {attempt} attempts; last error: {error}"
                )
                break

            opts.on_retry(attempt, error)
            self.hooks.fire(EventType.GENERATION_RETRY, attempt=attempt, error=error, stage=stage_tag)

            delay = opts.delay_for(attempt, code)
            if delay > 0:
                await run_cancellable(asyncio.sleep(delay), cancel)
            if opts.adjust_prompt:
                current_prompt = adjust_prompt(prompt, code, error, attempt, stage_tag)

        return outcome

    async def _call(self, prompt: str, cfg: GenerationConfig, tier: RunTier,
                    stage_tag: str, cancel: Optional[CancellationToken]) -> GenerationResult:
        try:
            return await run_cancellable(
                self.client.generate(prompt, cfg, tier, stage_tag),
                cancel, timeout=self.options.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{stage_tag or '-'}] generation timed out after {self.options.timeout}s")
            return GenerationResult.failure(
                ErrorCode.TIMEOUT, f"timed out after {self.options.timeout}s",
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[{stage_tag or '-'}] generation client raised: {e}")
            return GenerationResult.failure(ErrorCode.API_ERROR, str(e))

    @staticmethod
    def _evaluate(result: GenerationResult, validator: StructuralValidator,
                  schema: Optional[dict]) -> tuple[Optional[ErrorCode], str, Any]:
        """Returns (error_code, error, data); error_code is None on success."""
        if not result.ok:
            code = result.error_code or ErrorCode.API_ERROR
            return code, result.error or code.value, None
        try:
            data = decode_json(result.text)
        except MalformedOutputError as e:
            return e.code, str(e), None
        try:
            valid = bool(validator(data))
        except Exception as e:
            return ErrorCode.VALIDATION_FAILED, f"validator raised: {e}", None
        if not valid:
            return ErrorCode.VALIDATION_FAILED, describe_failure(schema, data), None
        return None, "", data
