"""
History Compaction
==================
Long conversations are the main driver of prompt cost. HistoryCompactor
replaces the older part of a conversation with one generated summary
while keeping the most recent turns verbatim:

    [m1 m2 m3 m4 m5 m6 m7 m8 m9]      recent_turns_to_keep = 2
     └──── summarized ───┘└recent┘    (2 turns = 4 messages, +1 trailing)

    → [system:<conversation_summary>…</conversation_summary>, m5 m6 m7 m8 m9]

The summary is requested with a token bound in the prompt and a matching
max_output_tokens, but is never truncated locally. When the summary call
fails a deterministic fallback summary is used instead.

Compaction either shrinks the history or does nothing: when the
compacted form would not be smaller, the identity result is returned.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from .api_clients import GenerationClient
from .cancellation import CancellationToken, run_cancellable
from .hooks import EventType, HookRegistry
from .models import (
    CompactionResult, ConversationMessage, GenerationConfig, Role, RunTier,
)
from .tokens import TokenEstimator

logger = logging.getLogger("structgen.history")

DEFAULT_MAX_TOKENS = 3000
DEFAULT_RECENT_TURNS = 3
DEFAULT_SUMMARY_MAX_TOKENS = 500
SUMMARY_TEMPERATURE = 0.3

# Key turning point scoring
_KEY_TURN_THRESHOLD = 4
_CRITICAL_PATTERNS = (
    re.compile(r"必须|一定|不能|只|仅|exclusively|must|cannot|only", re.IGNORECASE),
    re.compile(r"约束|限制|边界|constraint|limitation|boundary", re.IGNORECASE),
    re.compile(r"确认|明确|clarify|confirm", re.IGNORECASE),
)
_CONCRETE_PATTERNS = (
    re.compile(r"\d+\s*(周|月|年|天|小时|week|month|year|day|hour)", re.IGNORECASE),
    re.compile(r"\d+\s*(元|块|万|预算|dollar|budget)", re.IGNORECASE),
    re.compile(r"每天|每周|每月|daily|weekly|monthly", re.IGNORECASE),
)
_GENERAL_PATTERNS = (
    re.compile(r"重要|关键|核心|优先|important|key|priority", re.IGNORECASE),
    re.compile(r"目标|目的|goal|purpose|objective", re.IGNORECASE),
)


@dataclass(frozen=True)
class CompactionOptions:
    max_tokens: int = DEFAULT_MAX_TOKENS
    recent_turns_to_keep: int = DEFAULT_RECENT_TURNS
    summary_max_tokens: int = DEFAULT_SUMMARY_MAX_TOKENS
    preserve_key_turns: bool = False

    def __post_init__(self):
        if self.recent_turns_to_keep < 0:
            raise ValueError("recent_turns_to_keep must be >= 0")
        if self.summary_max_tokens <= 0:
            raise ValueError("summary_max_tokens must be > 0")


def key_turn_score(message: ConversationMessage) -> int:
    """Information-density score; messages scoring >= 4 are key turning points."""
    content = message.content
    score = 0
    if message.role == Role.USER:
        score += 1
    if any(p.search(content) for p in _CRITICAL_PATTERNS):
        score += 3
    if any(p.search(content) for p in _CONCRETE_PATTERNS):
        score += 2
    if any(p.search(content) for p in _GENERAL_PATTERNS):
        score += 1
    if len(content) > 150:
        score += 1
    if len(content) > 300:
        score += 1
    return score


def recent_suffix_length(message_count: int, recent_turns: int) -> int:
    """2 messages per turn, plus a trailing unpaired message on odd-length histories."""
    return min(message_count, 2 * recent_turns + message_count % 2)


def fallback_summary(messages: Sequence[ConversationMessage]) -> str:
    user_messages = [m for m in messages if m.role == Role.USER]
    assistant_messages = [m for m in messages if m.role == Role.ASSISTANT]
    topics = "; ".join(m.content[:50] for m in user_messages[:3])
    return (
        f"The conversation contains {len(messages)} messages "
        f"({len(user_messages)} from the user, {len(assistant_messages)} from the assistant).\n"
        f"Main topics: {topics}..."
    )


class HistoryCompactor:
    """
    Stateless apart from its collaborators, so one instance can compact any
    number of independent conversations concurrently.
    """

    def __init__(self, client: GenerationClient, estimator: Optional[TokenEstimator] = None,
                 options: Optional[CompactionOptions] = None,
                 hooks: Optional[HookRegistry] = None,
                 summary_timeout: Optional[float] = 60.0):
        self.client = client
        self.estimator = estimator or TokenEstimator()
        self.options = options or CompactionOptions()
        self.hooks = hooks or HookRegistry()
        self.summary_timeout = summary_timeout

    def count(self, messages: Sequence[ConversationMessage]) -> int:
        return self.estimator.estimate_messages(messages)

    def should_compact(self, messages: Sequence[ConversationMessage],
                       max_tokens: Optional[int] = None) -> bool:
        if len(messages) <= 1:
            return False
        threshold = self.options.max_tokens if max_tokens is None else max_tokens
        return self.count(messages) > threshold

    # ── compact ──────────────────────────────────────────────────────────────

    async def compact(self, messages: Sequence[ConversationMessage],
                      options: Optional[CompactionOptions] = None,
                      cancel: Optional[CancellationToken] = None) -> CompactionResult:
        opts = options or self.options
        messages = list(messages)
        original_tokens = self.count(messages)

        if not self.should_compact(messages, opts.max_tokens):
            logger.debug(
                "No compaction needed: %d messages, %d tokens (threshold %d)",
                len(messages), original_tokens, opts.max_tokens,
            )
            return CompactionResult.unchanged(messages, original_tokens)

        keep = recent_suffix_length(len(messages), opts.recent_turns_to_keep)
        older = messages[:len(messages) - keep]
        recent = messages[len(messages) - keep:]
        if not older:
            return CompactionResult.unchanged(messages, original_tokens)

        key_turns: list[ConversationMessage] = []
        to_summarize = older
        if opts.preserve_key_turns:
            key_turns = [m for m in older if key_turn_score(m) >= _KEY_TURN_THRESHOLD]
            to_summarize = [m for m in older if key_turn_score(m) < _KEY_TURN_THRESHOLD]
            logger.debug("Key turning points preserved: %d of %d older messages",
                         len(key_turns), len(older))

        summary_message: Optional[ConversationMessage] = None
        if to_summarize:
            summary = await self._summarize(to_summarize, opts.summary_max_tokens, cancel)
            summary_message = ConversationMessage(
                role=Role.SYSTEM,
                content=(
                    "<conversation_summary>\n"
                    f"Summary of {len(to_summarize)} earlier messages:\n\n"
                    f"{summary}\n"
                    "</conversation_summary>"
                ),
            )

        compacted = ([summary_message] if summary_message else []) + key_turns + recent
        compacted_tokens = self.count(compacted)
        if compacted_tokens >= original_tokens:
            logger.info(
                "Compaction skipped: summary would not shrink history (%d → %d tokens)",
                original_tokens, compacted_tokens,
            )
            return CompactionResult.unchanged(messages, original_tokens)

        result = CompactionResult(
            compacted_messages=compacted,
            summary=summary_message.content if summary_message else "",
            was_compacted=True,
            original_tokens=original_tokens,
            compacted_tokens=compacted_tokens,
            compression_ratio=compacted_tokens / original_tokens,
        )
        logger.info(
            "Compaction completed: %d → %d messages, %d → %d tokens (%.1f%%)",
            len(messages), len(compacted), original_tokens, compacted_tokens,
            result.compression_ratio * 100,
        )
        self.hooks.fire(EventType.HISTORY_COMPACTED, result=result)
        return result

    async def _summarize(self, messages: Sequence[ConversationMessage], max_tokens: int,
                         cancel: Optional[CancellationToken]) -> str:
        conversation = "\n\n".join(
            f"{'User' if m.role == Role.USER else 'AI'}: {m.content}" for m in messages
        )
        prompt = (
            "Write a concise summary of the following conversation.\n\n"
            "Requirements:\n"
            "1. Keep the key information: the user's main questions, clarifications and confirmed facts\n"
            "2. Skip repetition and redundant content\n"
            "3. Stay objective and use the third person\n"
            f"4. Stay within {max_tokens} tokens\n\n"
            f"Conversation:\n{conversation}\n\nSummary:"
        )
        config = GenerationConfig(temperature=SUMMARY_TEMPERATURE, max_output_tokens=max_tokens)
        try:
            result = await run_cancellable(
                self.client.generate(prompt, config, RunTier.PRO, "compaction"),
                cancel, timeout=self.summary_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Summary generation raised, using fallback: {e}")
            return fallback_summary(messages)

        if not result.ok or not result.text.strip():
            logger.warning(f"Summary generation failed ({result.error_code}), using fallback")
            return fallback_summary(messages)
        return result.text.strip()

    # ── convenience wrappers ─────────────────────────────────────────────────

    async def smart_compact(self, messages: Sequence[ConversationMessage],
                            target_tokens: Optional[int] = None,
                            cancel: Optional[CancellationToken] = None) -> CompactionResult:
        """Keep fewer recent turns the longer the conversation is."""
        current = self.count(messages)
        if current < 1000:
            return CompactionResult.unchanged(list(messages), current)

        if current > 5000:
            recent_turns = 2
        elif current > 3000:
            recent_turns = 3
        else:
            recent_turns = 4

        opts = replace(
            self.options,
            max_tokens=target_tokens or self.options.max_tokens,
            recent_turns_to_keep=recent_turns,
        )
        return await self.compact(messages, opts, cancel)

    async def batch_compact(self, conversations: Sequence[Sequence[ConversationMessage]],
                            options: Optional[CompactionOptions] = None,
                            cancel: Optional[CancellationToken] = None) -> list[CompactionResult]:
        """Compact independent conversations concurrently; results keep input order."""
        results = await asyncio.gather(
            *(self.compact(conv, options, cancel) for conv in conversations)
        )
        total_original = sum(r.original_tokens for r in results)
        total_compacted = sum(r.compacted_tokens for r in results)
        logger.info(
            "Batch compaction: %d conversations, %d → %d tokens",
            len(results), total_original, total_compacted,
        )
        return list(results)
