"""
Pipeline: the one call the outside world needs.
================================================
    result = await pipeline.run_pipeline(prompt, "S1", PipelineOptions(session_id="u-42"))
    if result.ok:
        render(result.data)
    else:
        show(result.user_message)     # result.error_code, result.attempts, result.issues

Steps for one invocation:
  1. Compact the caller's conversation history if it is over budget.
  2. Estimate the call and ask the ledger for a recommendation; a high
     priority compact_now is applied, anything else is logged.
  3. Quality-gated n-best selection (retry + structural validation per variant).
  4. Charge the session ledger: backend-reported usage when available,
     the heuristic estimate otherwise.

run_pipeline() never raises. Every failure, including cancellation via
the token and unexpected exceptions, comes back as a PipelineResult with
ok=False.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Optional, Sequence

from .api_clients import GenerationClient
from .budget import BudgetLedger
from .cancellation import CancellationToken
from .config import PipelineConfig
from .errors import ErrorCode, StructGenError, user_message
from .history import CompactionOptions, HistoryCompactor
from .hooks import EventType, HookRegistry
from .models import (
    CompactionResult, ConversationMessage, GenerationConfig, OptimizationAction,
    OptimizationStrategy, Priority, QualityIssue, Role, RunTier, Stage, StageLike,
    TokenEstimate, as_stage,
)
from .quality import QualityContext, QualityGateEngine
from .retry import RetryOptions, RetryOrchestrator
from .selector import SelectionOutcome, VariantSelector, primary_temperature
from .session_store import SessionStore
from .stage_checks import default_engine, validator_for
from .streaming import StreamEvent, TextChunk, stream_generation
from .structural import StructuralValidator
from .tokens import TokenEstimator
from .tracing import traced_pipeline

logger = logging.getLogger("structgen.pipeline")


@dataclass
class PipelineOptions:
    session_id: str = "default"
    tier: RunTier = RunTier.PRO
    history: Sequence[ConversationMessage] = ()
    context: Optional[QualityContext] = None
    validator: Optional[StructuralValidator] = None
    variant_count: Optional[int] = None
    expected_output_tokens: Optional[int] = None
    generation: Optional[GenerationConfig] = None
    cancel: Optional[CancellationToken] = None


@dataclass
class PipelineResult:
    ok: bool
    stage: str
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    attempts: int = 0
    issues: list[QualityIssue] = field(default_factory=list)
    usage: int = 0
    fallback_used: bool = False
    strategy: Optional[OptimizationStrategy] = None
    compaction: Optional[CompactionResult] = None

    @property
    def user_message(self) -> Optional[str]:
        return user_message(self.error_code) if self.error_code else None

    def to_dict(self) -> dict:
        base = {"ok": self.ok, "stage": self.stage, "attempts": self.attempts,
                "usage": self.usage,
                "issues": [i.to_dict() for i in self.issues]}
        if self.ok:
            base["data"] = self.data
        else:
            base["error"] = self.error
            base["error_code"] = self.error_code.value if self.error_code else None
            base["message"] = self.user_message
        return base


def render_history(messages: Sequence[ConversationMessage]) -> str:
    labels = {Role.USER: "User", Role.ASSISTANT: "AI", Role.SYSTEM: "System"}
    return "\n\n".join(f"{labels[m.role]}: {m.content}" for m in messages)


class Pipeline:
    """
    Wires the components together. Everything is injected; nothing is global.

    Usage:
        pipeline = Pipeline(UnifiedGenerationClient(), load_config())
    """

    def __init__(self, client: GenerationClient, config: Optional[PipelineConfig] = None, *,
                 store: Optional[SessionStore] = None,
                 ledger: Optional[BudgetLedger] = None,
                 estimator: Optional[TokenEstimator] = None,
                 quality: Optional[QualityGateEngine] = None,
                 hooks: Optional[HookRegistry] = None,
                 retry_options: Optional[RetryOptions] = None):
        self.client = client
        self.config = config or PipelineConfig()
        self.hooks = hooks or HookRegistry()
        self.estimator = estimator or TokenEstimator(counter=getattr(client, "count_tokens", None))
        self.ledger = ledger or BudgetLedger(self.config.stage_budgets, store=store, hooks=self.hooks)
        self.quality = quality or default_engine()
        self.retry = RetryOrchestrator(
            client,
            retry_options or RetryOptions(
                max_retries=self.config.max_retries,
                initial_delay=self.config.initial_delay,
                max_delay=self.config.max_delay,
                backoff_multiplier=self.config.backoff_multiplier,
                timeout=self.config.request_timeout,
            ),
            hooks=self.hooks,
        )
        self.selector = VariantSelector(self.retry, self.quality, hooks=self.hooks)
        self.compactor = HistoryCompactor(
            client, self.estimator,
            CompactionOptions(
                max_tokens=self.config.compaction_max_tokens,
                recent_turns_to_keep=self.config.recent_turns_to_keep,
                summary_max_tokens=self.config.summary_max_tokens,
            ),
            hooks=self.hooks,
            summary_timeout=self.config.request_timeout,
        )

    # ── helpers ──────────────────────────────────────────────────────────────

    def _estimate(self, prompt: str, history_text: str, stage: Stage,
                  options: PipelineOptions) -> TokenEstimate:
        expected = options.expected_output_tokens
        if expected is None:
            expected = self.config.budget_for(stage).max_per_turn // 2
        return TokenEstimate.build(
            context=self.estimator.estimate(history_text),
            user_input=self.estimator.estimate(prompt),
            estimated_output=expected,
        )

    def _charge_amount(self, selection: SelectionOutcome, estimate: TokenEstimate) -> int:
        """Backend-reported usage when present, heuristic otherwise."""
        if selection.reported_tokens > 0:
            return selection.reported_tokens
        charged = 0
        for v in selection.variants:
            charged += v.attempts * estimate.prompt_tokens + self.estimator.estimate(v.raw_text)
        return charged

    async def _prepare_history(self, history: Sequence[ConversationMessage],
                               options: PipelineOptions,
                               force: bool = False) -> Optional[CompactionResult]:
        if not history:
            return None
        opts = self.compactor.options
        if force:
            opts = replace(opts, max_tokens=0)
        return await self.compactor.compact(history, opts, options.cancel)

    # ── public API ───────────────────────────────────────────────────────────

    async def run_pipeline(self, prompt: str, stage: StageLike,
                           options: Optional[PipelineOptions] = None) -> PipelineResult:
        options = options or PipelineOptions()
        stage_tag = getattr(stage, "value", str(stage))
        with traced_pipeline(stage_tag, options.session_id) as span:
            try:
                result = await self._run(prompt, as_stage(stage), options)
            except asyncio.CancelledError:
                if options.cancel is None or not options.cancel.cancelled:
                    raise
                logger.info(f"[{stage_tag}] pipeline cancelled: {options.cancel.reason}")
                result = PipelineResult(ok=False, stage=stage_tag, error_code=ErrorCode.CANCELLED,
                                        error=options.cancel.reason or "cancelled")
            except StructGenError as e:
                logger.error(f"[{stage_tag}] pipeline failed: {e}")
                result = PipelineResult(ok=False, stage=stage_tag, error_code=e.code, error=str(e))
            except Exception as e:
                logger.exception(f"[{stage_tag}] unexpected pipeline error: {e}")
                result = PipelineResult(ok=False, stage=stage_tag,
                                        error_code=ErrorCode.API_ERROR, error=str(e))
            span.set_attribute("pipeline.ok", result.ok)
            span.set_attribute("pipeline.attempts", result.attempts)

        self.hooks.fire(EventType.PIPELINE_COMPLETED, stage=stage_tag, result=result)
        return result

    async def _run(self, prompt: str, stage: Stage, options: PipelineOptions) -> PipelineResult:
        compaction = await self._prepare_history(options.history, options)
        history = compaction.compacted_messages if compaction else []

        estimate = self._estimate(prompt, render_history(history), stage, options)
        check = await self.ledger.check(stage, options.session_id, estimate)
        strategy = check.strategy
        if strategy.action != OptimizationAction.PROCEED:
            logger.info(
                f"[{stage.value}] budget recommends {strategy.action.value} "
                f"({strategy.priority.value}): {strategy.reason}"
            )
        if (strategy.action == OptimizationAction.COMPACT_NOW and strategy.priority == Priority.HIGH
                and history and not (compaction and compaction.was_compacted)):
            compaction = await self._prepare_history(options.history, options, force=True)
            history = compaction.compacted_messages
            estimate = self._estimate(prompt, render_history(history), stage, options)

        full_prompt = f"{render_history(history)}\n\n{prompt}" if history else prompt
        validator = options.validator or validator_for(stage)
        variant_count = options.variant_count or self.config.variants_for(options.tier)
        base_config = options.generation or GenerationConfig(
            temperature=primary_temperature(options.tier),
        )

        selection = await self.selector.select_best(
            full_prompt, variant_count, stage, options.context,
            validator=validator, tier=options.tier, base_config=base_config,
            cancel=options.cancel, max_retries=self.config.retries_for(stage),
        )

        charged = self._charge_amount(selection, estimate)
        await self.ledger.track(options.session_id, stage, charged)

        if selection.ok:
            return PipelineResult(
                ok=True, stage=stage.value, data=selection.candidate.parsed,
                attempts=selection.attempts, issues=selection.issues, usage=charged,
                fallback_used=selection.fallback_used, strategy=strategy, compaction=compaction,
            )
        return PipelineResult(
            ok=False, stage=stage.value, error=selection.error, error_code=selection.error_code,
            attempts=selection.attempts, issues=selection.issues, usage=charged,
            fallback_used=selection.fallback_used, strategy=strategy, compaction=compaction,
        )

    async def stream(self, prompt: str, stage: StageLike,
                     options: Optional[PipelineOptions] = None) -> AsyncIterator[StreamEvent]:
        """
        Stream one generation as events. The session ledger is charged with
        the heuristic size of the prompt and of every chunk received, however
        the stream ends (completion, failure, consumer break or cancellation).
        """
        options = options or PipelineOptions()
        stage = as_stage(stage)
        config = options.generation or GenerationConfig(temperature=primary_temperature(options.tier))
        streamed: list[str] = []
        events = stream_generation(
            self.client, prompt, config, tier=options.tier, stage_tag=stage.value,
            cancel=options.cancel, chunk_timeout=self.config.request_timeout, decode=True,
        )
        try:
            async for event in events:
                if isinstance(event, TextChunk):
                    streamed.append(event.text)
                yield event
        finally:
            await events.aclose()
            await self.ledger.track(
                options.session_id, stage,
                self.estimator.estimate(prompt) + self.estimator.estimate("".join(streamed)),
            )


async def run_pipeline(pipeline: Pipeline, prompt: str, stage: StageLike,
                       options: Optional[PipelineOptions] = None) -> PipelineResult:
    return await pipeline.run_pipeline(prompt, stage, options)
