"""
Variant Selector: quality-gated n-best with one conservative fallback.
=======================================================================
1. Generate `variant_count` candidates concurrently through the
   RetryOrchestrator. Variant 0 samples at the tier's primary temperature,
   the rest at a fixed alternate temperature so they diversify instead of
   duplicating each other.
2. Run the quality gates on every structurally valid candidate. Variants
   that never produced valid structure are excluded with a reason; they
   do not abort the batch.
3. Among passing candidates pick the fewest issues; ties go to the
   lowest index (first generated).
4. Nothing passed → exactly one extra low-temperature attempt. If that
   fails too, report failure with every issue collected along the way.

All variant tasks are awaited to completion (not fail-fast). If the
cancellation token fires, every in-flight task is cancelled.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .cancellation import CancellationToken
from .errors import ErrorCode, to_code
from .hooks import EventType, HookRegistry
from .models import (
    GenerationConfig, QualityIssue, RunTier, StageLike, Variant, as_stage,
)
from .quality import QualityContext, QualityGateEngine
from .retry import RetryOrchestrator
from .structural import StructuralValidator

logger = logging.getLogger("structgen.selector")

LITE_TEMPERATURE = 0.5
PRIMARY_TEMPERATURE = 0.8
ALTERNATE_TEMPERATURE = 0.6
FALLBACK_TEMPERATURE = 0.3


def primary_temperature(tier: "RunTier | str") -> float:
    return LITE_TEMPERATURE if RunTier(tier) == RunTier.LITE else PRIMARY_TEMPERATURE


def variant_config(index: int, tier: "RunTier | str",
                   base: Optional[GenerationConfig] = None) -> GenerationConfig:
    """Variant 0 samples at the tier's primary temperature, the rest at 0.6; all else follows base."""
    base = base or GenerationConfig()
    if index == 0:
        return base.with_temperature(primary_temperature(tier))
    return base.with_temperature(ALTERNATE_TEMPERATURE)


@dataclass
class SelectionOutcome:
    candidate: Optional[Variant]
    variants: list[Variant] = field(default_factory=list)
    fallback_used: bool = False
    issues: list[QualityIssue] = field(default_factory=list)
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def ok(self) -> bool:
        return self.candidate is not None

    @property
    def attempts(self) -> int:
        """Backend calls made across every variant and the fallback."""
        return sum(v.attempts for v in self.variants)

    @property
    def reported_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class VariantSelector:
    def __init__(self, retry: RetryOrchestrator, quality: QualityGateEngine,
                 hooks: Optional[HookRegistry] = None):
        self.retry = retry
        self.quality = quality
        self.hooks = hooks or retry.hooks

    async def select_best(self, prompt: str, variant_count: int, stage: StageLike,
                          context: Optional[QualityContext] = None, *,
                          validator: StructuralValidator,
                          tier: RunTier = RunTier.PRO,
                          base_config: Optional[GenerationConfig] = None,
                          cancel: Optional[CancellationToken] = None,
                          max_retries: Optional[int] = None) -> SelectionOutcome:
        if variant_count < 1:
            raise ValueError(f"variant_count must be >= 1, got {variant_count}")
        stage = as_stage(stage)
        outcome = SelectionOutcome(candidate=None)

        tasks = [
            asyncio.create_task(self._run_variant(
                Variant(index=i, config=variant_config(i, tier, base_config)),
                prompt, stage, context, validator, tier, cancel, max_retries, outcome,
            ))
            for i in range(variant_count)
        ]
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if cancel is not None and cancel.cancelled:
            raise asyncio.CancelledError(cancel.reason)

        for i, res in enumerate(results):
            if isinstance(res, BaseException):
                logger.error(f"[{stage.value}] variant {i} crashed: {res!r}")
                v = Variant(index=i, config=variant_config(i, tier, base_config),
                            excluded_reason=f"{ErrorCode.API_ERROR.value}: {res}")
                outcome.variants.append(v)
            else:
                outcome.variants.append(res)

        best = self._pick(outcome.variants)
        if best is not None:
            logger.info(
                f"[{stage.value}] selected variant {best.index} of {variant_count} "
                f"({best.issue_count} issue(s))"
            )
            outcome.candidate = best
            outcome.issues = list(best.issues)
            return outcome

        if all(v.excluded_reason and v.excluded_reason.startswith(ErrorCode.NO_API_KEY.value)
               for v in outcome.variants):
            outcome.error_code = ErrorCode.NO_API_KEY
            outcome.error = "No generation API key configured"
            logger.error(f"[{stage.value}] every variant failed with NO_API_KEY; skipping fallback")
            return outcome

        # Fallback tier: one conservative attempt
        fallback_config = (base_config or GenerationConfig()).with_temperature(FALLBACK_TEMPERATURE)
        logger.warning(
            f"[{stage.value}] no variant passed quality gates; "
            f"fallback attempt at temperature {FALLBACK_TEMPERATURE}"
        )
        self.hooks.fire(EventType.FALLBACK_ATTEMPT, stage=stage.value, temperature=FALLBACK_TEMPERATURE)
        fallback = await self._run_variant(
            Variant(index=variant_count, config=fallback_config),
            prompt, stage, context, validator, tier, cancel, max_retries, outcome,
        )
        outcome.variants.append(fallback)
        outcome.fallback_used = True

        if fallback.passed:
            logger.info(f"[{stage.value}] fallback attempt passed")
            outcome.candidate = fallback
            outcome.issues = list(fallback.issues)
            return outcome

        outcome.issues = [i for v in outcome.variants for i in v.issues]
        if any(v.parsed is not None for v in outcome.variants):
            outcome.error_code = ErrorCode.QUALITY_GATE_FAILED
            outcome.error = f"No candidate passed quality gates ({len(outcome.issues)} issue(s))"
        else:
            last = outcome.variants[-1].excluded_reason or ""
            code, _, message = last.partition(": ")
            outcome.error_code = to_code(code)
            outcome.error = message or last
        logger.error(f"[{stage.value}] selection failed: {outcome.error}")
        return outcome

    @staticmethod
    def _pick(variants: list[Variant]) -> Optional[Variant]:
        passing = [v for v in variants if v.passed]
        if not passing:
            return None
        return min(passing, key=lambda v: (v.issue_count, v.index))

    async def _run_variant(self, variant: Variant, prompt: str, stage, context: Any,
                           validator: StructuralValidator, tier: RunTier,
                           cancel: Optional[CancellationToken], max_retries: Optional[int],
                           outcome: SelectionOutcome) -> Variant:
        result = await self.retry.run(
            prompt, validator, variant.config,
            stage=stage, tier=tier, cancel=cancel, max_retries=max_retries,
        )
        variant.attempts = result.attempts
        outcome.input_tokens += result.input_tokens
        outcome.output_tokens += result.output_tokens

        if not result.ok:
            code = result.error_code or ErrorCode.API_ERROR
            variant.excluded_reason = f"{code.value}: {result.error}"
            logger.warning(f"[{stage.value}] variant {variant.index} excluded: {variant.excluded_reason}")
            self.hooks.fire(EventType.VARIANT_REJECTED, stage=stage.value,
                            index=variant.index, reason=variant.excluded_reason)
            return variant

        variant.raw_text = result.raw_text
        variant.parsed = result.data
        gate = self.quality.run(stage, result.data, context)
        variant.issues = gate.issues
        variant.passed = gate.passed
        if not gate.passed:
            reason = f"{len(gate.blockers)} blocker issue(s)"
            logger.info(f"[{stage.value}] variant {variant.index} failed quality gates: {reason}")
            self.hooks.fire(EventType.VARIANT_REJECTED, stage=stage.value,
                            index=variant.index, reason=reason)
        return variant
