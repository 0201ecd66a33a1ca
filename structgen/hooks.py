"""
HookRegistry: lightweight event hooks for the pipeline lifecycle.
==================================================================
A simple pub-sub mechanism for observing retries, budget pressure,
compaction and variant selection without touching core logic.
Callbacks are synchronous (fire-and-forget).

Events (see EventType):
  GENERATION_RETRY   : before each retry inside RetryOrchestrator
  BUDGET_WARNING     : a session crossed a stage's warning threshold
  BUDGET_EXCEEDED    : a session's stage usage went past max_total
  HISTORY_COMPACTED  : HistoryCompactor replaced older turns with a summary
  VARIANT_REJECTED   : a candidate was excluded from n-best selection
  FALLBACK_ATTEMPT   : the low-temperature fallback is about to run
  PIPELINE_COMPLETED : run_pipeline() produced its result
"""
from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger("structgen.hooks")


# ─────────────────────────────────────────────────────────────────────────────
# EventType
# ─────────────────────────────────────────────────────────────────────────────

class EventType(str, Enum):
    """
    Callback signatures (all kwargs):
      GENERATION_RETRY  : attempt: int, error: str, stage: str
      BUDGET_WARNING    : session_id: str, stage: str, used: int, threshold: int
      BUDGET_EXCEEDED   : session_id: str, stage: str, used: int, max_total: int
      HISTORY_COMPACTED : result: CompactionResult
      VARIANT_REJECTED  : stage: str, index: int, reason: str
      FALLBACK_ATTEMPT  : stage: str, temperature: float
      PIPELINE_COMPLETED: stage: str, result: PipelineResult
    """
    GENERATION_RETRY   = "generation_retry"
    BUDGET_WARNING     = "budget_warning"
    BUDGET_EXCEEDED    = "budget_exceeded"
    HISTORY_COMPACTED  = "history_compacted"
    VARIANT_REJECTED   = "variant_rejected"
    FALLBACK_ATTEMPT   = "fallback_attempt"
    PIPELINE_COMPLETED = "pipeline_completed"


# ─────────────────────────────────────────────────────────────────────────────
# HookRegistry
# ─────────────────────────────────────────────────────────────────────────────

class HookRegistry:
    """
    Maps event names to lists of callback functions.

    Usage:
        registry = HookRegistry()
        registry.add(EventType.GENERATION_RETRY, lambda attempt, error, **_: print(attempt))
        registry.fire(EventType.GENERATION_RETRY, attempt=1, error="TIMEOUT", stage="S1")

    Exceptions thrown by individual callbacks are caught and logged, so one bad
    hook never prevents subsequent hooks or pipeline logic from running.
    """

    def __init__(self) -> None:
        self._hooks: dict[str, list[Callable]] = defaultdict(list)

    def add(self, event: str | EventType, callback: Callable) -> None:
        key = event.value if isinstance(event, EventType) else str(event)
        self._hooks[key].append(callback)

    def fire(self, event: str | EventType, **kwargs) -> None:
        key = event.value if isinstance(event, EventType) else str(event)
        for cb in self._hooks.get(key, []):
            try:
                cb(**kwargs)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Hook callback %r raised for event %r: %s",
                    cb, key, exc,
                )

    def clear(self, event: Optional[str | EventType] = None) -> None:
        """Remove callbacks for one event, or for all events when event is None."""
        if event is None:
            self._hooks.clear()
        else:
            key = event.value if isinstance(event, EventType) else str(event)
            self._hooks.pop(key, None)

    def registered_events(self) -> list[str]:
        return [k for k, v in self._hooks.items() if v]

    def __len__(self) -> int:
        return sum(len(v) for v in self._hooks.values())
