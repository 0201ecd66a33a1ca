"""
Budget Ledger: per-session, per-stage token accounting.
========================================================
Plan before spending: every stage has a StageBudget (max per turn, max
total, warning threshold). The ledger keeps a running total of tokens
consumed per (session, stage), derives a BudgetStatus view from it, and
recommends, but never applies, an OptimizationStrategy for the next call.

Usage:
    ledger = BudgetLedger()
    await ledger.track("sess-1", Stage.S1, 5200)
    status = await ledger.remaining(Stage.S1, "sess-1")
    status.is_near_limit        # True (5200 ≥ 5000)
    strategy = ledger.suggest(estimate, status)

Overflow never raises: a session that exceeds max_total is logged and
flagged through the BUDGET_EXCEEDED hook after the fact.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from .config import DEFAULT_STAGE_BUDGETS
from .hooks import EventType, HookRegistry
from .models import (
    BudgetStatus, OptimizationAction, OptimizationStrategy, Priority, Stage,
    StageBudget, StageLike, TokenEstimate, as_stage,
)
from .session_store import InMemorySessionStore, SessionStore

logger = logging.getLogger("structgen.budget")

DEFAULT_SESSION = "default"

# suggest() sub-thresholds
_CONTEXT_SHARE_FOR_COMPACTION = 0.5   # context > 50% of the prompt → compaction pays off
_EXAMPLES_OVER_BUDGET = 500           # tokens of examples worth trimming when over budget
_CONTEXT_NEAR_WARNING = 1500
_EXAMPLES_NEAR_WARNING = 600
_SHORTER_PROMPT_SAVINGS = 300


@dataclass(frozen=True)
class BudgetCheck:
    can_proceed: bool
    strategy: OptimizationStrategy
    status: BudgetStatus


class BudgetLedger:
    """
    Running token totals keyed by session id, one counter per stage.

    The counters are the only state shared between concurrent pipeline calls.
    Increments go through SessionStore.increment, which is atomic within
    the store (and across processes for SqliteSessionStore).
    """

    def __init__(self, budgets: Optional[Mapping[Stage, StageBudget]] = None,
                 store: Optional[SessionStore] = None,
                 hooks: Optional[HookRegistry] = None) -> None:
        self._budgets: dict[Stage, StageBudget] = dict(budgets or DEFAULT_STAGE_BUDGETS)
        self._store = store or InMemorySessionStore()
        self._hooks = hooks or HookRegistry()

    @staticmethod
    def _key(session_id: str) -> str:
        return f"budget:{session_id}"

    # ── Query ────────────────────────────────────────────────────────────────

    def budget_for(self, stage: StageLike) -> StageBudget:
        return self._budgets[as_stage(stage)]

    async def _usage(self, session_id: str) -> dict[str, int]:
        return await self._store.get(self._key(session_id)) or {}

    async def used(self, stage: StageLike, session_id: str = DEFAULT_SESSION) -> int:
        usage = await self._usage(session_id)
        return int(usage.get(as_stage(stage).value, 0))

    async def remaining(self, stage: StageLike,
                        session_id: str = DEFAULT_SESSION) -> BudgetStatus:
        stage = as_stage(stage)
        budget = self._budgets[stage]
        used = await self.used(stage, session_id)
        return BudgetStatus(
            stage=stage,
            used=used,
            remaining=max(0, budget.max_total - used),
            max_total=budget.max_total,
            utilization_rate=used / budget.max_total if budget.max_total > 0 else 1.0,
            is_near_limit=used >= budget.warning_threshold,
        )

    # ── Tracking ─────────────────────────────────────────────────────────────

    async def track(self, session_id: str, stage: StageLike, tokens: int) -> int:
        """Add tokens to the session's stage total. Returns the new total."""
        if tokens < 0:
            raise ValueError(f"tokens must be >= 0, got {tokens}")
        stage = as_stage(stage)
        budget = self._budgets[stage]

        before, after = await self._store.increment(self._key(session_id), stage.value, tokens)

        logger.debug(
            "Session usage updated: session=%s stage=%s added=%d total=%d",
            session_id, stage.value, tokens, after,
        )
        if before < budget.warning_threshold <= after:
            logger.info(
                "Session %s crossed %s warning threshold (%d/%d)",
                session_id, stage.value, after, budget.warning_threshold,
            )
            self._hooks.fire(
                EventType.BUDGET_WARNING, session_id=session_id, stage=stage.value,
                used=after, threshold=budget.warning_threshold,
            )
        if after > budget.max_total:
            logger.warning(
                "Session %s exceeded %s budget: used=%d max=%d over_by=%d",
                session_id, stage.value, after, budget.max_total, after - budget.max_total,
            )
            self._hooks.fire(
                EventType.BUDGET_EXCEEDED, session_id=session_id, stage=stage.value,
                used=after, max_total=budget.max_total,
            )
        return after

    async def clear(self, session_id: str) -> None:
        """Drop every counter for the session (the entry is removed, not zeroed)."""
        await self._store.delete(self._key(session_id))
        logger.debug("Session usage cleared: %s", session_id)

    async def usage_stats(self) -> dict:
        """Totals, averages and maxima per stage across all known sessions."""
        sessions = []
        for key in await self._store.keys():
            if key.startswith("budget:"):
                sessions.append(await self._store.get(key) or {})

        by_stage: dict[str, dict] = {}
        for stage in self._budgets:
            values = [int(s.get(stage.value, 0)) for s in sessions]
            total = sum(values)
            by_stage[stage.value] = {
                "total": total,
                "avg": total / len(values) if values else 0,
                "max": max(values) if values else 0,
            }
        return {"total_sessions": len(sessions), "by_stage": by_stage}

    # ── Recommendations ──────────────────────────────────────────────────────

    def suggest(self, estimate: TokenEstimate, status: BudgetStatus) -> OptimizationStrategy:
        """
        Pure decision function over an estimate and a budget view.

        1. Next call would overrun the remaining budget → high priority action.
        2. Projected total crosses the warning threshold → medium priority action.
        3. Otherwise proceed.
        """
        context = estimate.breakdown.context
        examples = estimate.breakdown.examples
        warning_threshold = self._budgets[status.stage].warning_threshold

        if estimate.total > status.remaining:
            if context > estimate.prompt_tokens * _CONTEXT_SHARE_FOR_COMPACTION:
                return OptimizationStrategy(
                    action=OptimizationAction.COMPACT_NOW,
                    reason=f"Conversation history uses {context} tokens; compaction saves 40-60%",
                    expected_savings=context // 2,
                    priority=Priority.HIGH,
                )
            if examples > _EXAMPLES_OVER_BUDGET:
                return OptimizationStrategy(
                    action=OptimizationAction.REDUCE_EXAMPLES,
                    reason=f"Examples use {examples} tokens; dropping some saves ~{examples // 2}",
                    expected_savings=examples // 2,
                    priority=Priority.HIGH,
                )
            return OptimizationStrategy(
                action=OptimizationAction.USE_SHORTER_PROMPT,
                reason="Budget nearly exhausted; use the condensed prompt",
                expected_savings=_SHORTER_PROMPT_SAVINGS,
                priority=Priority.HIGH,
            )

        if status.used + estimate.total > warning_threshold:
            if context > _CONTEXT_NEAR_WARNING:
                return OptimizationStrategy(
                    action=OptimizationAction.COMPACT_NOW,
                    reason="History is long; compact early to avoid overrunning later",
                    expected_savings=context // 2,
                    priority=Priority.MEDIUM,
                )
            if examples > _EXAMPLES_NEAR_WARNING:
                return OptimizationStrategy(
                    action=OptimizationAction.REDUCE_EXAMPLES,
                    reason="Approaching the budget limit; use fewer examples",
                    expected_savings=int(examples * 0.3),
                    priority=Priority.MEDIUM,
                )

        return OptimizationStrategy(
            action=OptimizationAction.PROCEED,
            reason=f"Budget sufficient, {status.remaining} tokens remaining",
            expected_savings=0,
            priority=Priority.LOW,
        )

    async def check(self, stage: StageLike, session_id: str,
                    estimate: TokenEstimate) -> BudgetCheck:
        status = await self.remaining(stage, session_id)
        strategy = self.suggest(estimate, status)
        return BudgetCheck(
            can_proceed=strategy.action == OptimizationAction.PROCEED,
            strategy=strategy,
            status=status,
        )

    async def should_compact_now(self, stage: StageLike, session_id: str,
                                 estimate: TokenEstimate) -> bool:
        strategy = (await self.check(stage, session_id, estimate)).strategy
        return strategy.action == OptimizationAction.COMPACT_NOW and strategy.priority == Priority.HIGH

    async def recommended_example_count(self, stage: StageLike, session_id: str,
                                        default_count: int) -> int:
        status = await self.remaining(stage, session_id)
        if status.utilization_rate < 0.5:
            return default_count
        if status.utilization_rate > 0.8:
            return max(1, default_count // 2)
        return max(1, default_count - 1)
