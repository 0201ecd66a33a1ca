"""Tests for structgen/history.py: summary-based history compaction."""
from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClient, conversation
from structgen.errors import ErrorCode
from structgen.history import (
    CompactionOptions,
    HistoryCompactor,
    fallback_summary,
    key_turn_score,
    recent_suffix_length,
)
from structgen.hooks import EventType, HookRegistry
from structgen.models import ConversationMessage, Role

SUMMARY = "The user wants to learn Python for data analysis in three months."
TIGHT = CompactionOptions(max_tokens=500, recent_turns_to_keep=2, summary_max_tokens=300)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("count,turns,expected", [
    (9, 2, 5),
    (8, 2, 4),
    (3, 5, 3),
    (0, 3, 0),
    (7, 0, 1),
])
def test_recent_suffix_length(count, turns, expected):
    assert recent_suffix_length(count, turns) == expected


def test_key_turn_score_rewards_constraints():
    plain = ConversationMessage.user("ok")
    constrained = ConversationMessage.user("I must finish within 3 months")
    assert key_turn_score(plain) == 1
    assert key_turn_score(constrained) >= 4


def test_fallback_summary_mentions_counts():
    messages = conversation(2)
    text = fallback_summary(messages)
    assert "4 messages" in text
    assert "2 from the user" in text
    assert "question 0" in text


def test_options_validation():
    with pytest.raises(ValueError):
        CompactionOptions(recent_turns_to_keep=-1)
    with pytest.raises(ValueError):
        CompactionOptions(summary_max_tokens=0)


# ─────────────────────────────────────────────────────────────────────────────
# compact
# ─────────────────────────────────────────────────────────────────────────────

def test_below_threshold_is_identity():
    client = FakeClient(SUMMARY)
    compactor = HistoryCompactor(client)
    messages = conversation(2, words_per_message=5)

    result = asyncio.run(compactor.compact(messages))
    assert result.was_compacted is False
    assert result.compacted_messages == messages
    assert result.compression_ratio == 1.0
    assert result.summary == ""
    assert result.original_tokens == result.compacted_tokens
    assert client.call_count == 0


def test_single_message_never_compacts():
    client = FakeClient(SUMMARY)
    compactor = HistoryCompactor(client)
    messages = [ConversationMessage.user("word " * 5000)]

    result = asyncio.run(compactor.compact(messages, TIGHT))
    assert result.was_compacted is False
    assert client.call_count == 0


def test_compaction_keeps_recent_turns_and_shrinks():
    client = FakeClient(SUMMARY)
    compactor = HistoryCompactor(client)
    messages = conversation(10)

    result = asyncio.run(compactor.compact(messages, TIGHT))
    assert result.was_compacted is True
    assert result.compression_ratio < 1
    assert result.compacted_tokens < result.original_tokens
    assert result.compacted_messages[1:] == messages[-4:]

    summary = result.compacted_messages[0]
    assert summary.role == Role.SYSTEM
    assert summary.content.startswith("<conversation_summary>")
    assert "Summary of 16 earlier messages" in summary.content
    assert SUMMARY in summary.content
    assert result.summary == summary.content


def test_odd_history_keeps_trailing_message():
    messages = conversation(10, trailing_user=True)
    result = asyncio.run(HistoryCompactor(FakeClient(SUMMARY)).compact(messages, TIGHT))
    assert result.was_compacted
    assert result.compacted_messages[1:] == messages[-5:]


def test_summary_request_is_bounded_and_low_temperature():
    client = FakeClient(SUMMARY)
    asyncio.run(HistoryCompactor(client).compact(conversation(10), TIGHT))

    assert client.call_count == 1
    call = client.calls[0]
    assert call["config"].temperature == pytest.approx(0.3)
    assert call["config"].max_output_tokens == 300
    assert call["stage_tag"] == "compaction"
    assert "300 tokens" in call["prompt"]
    assert "question 0" in call["prompt"]
    # recent turns are not sent for summarization
    assert "question 9" not in call["prompt"]


def test_failed_summary_uses_fallback():
    client = FakeClient(ErrorCode.API_ERROR)
    result = asyncio.run(HistoryCompactor(client).compact(conversation(10), TIGHT))
    assert result.was_compacted
    assert "The conversation contains 16 messages" in result.summary


def test_raising_client_uses_fallback():
    client = FakeClient(RuntimeError("socket closed"))
    result = asyncio.run(HistoryCompactor(client).compact(conversation(10), TIGHT))
    assert result.was_compacted
    assert "Main topics" in result.summary


def test_summary_that_does_not_shrink_is_discarded():
    client = FakeClient("very long summary " * 2000)
    messages = conversation(10)
    result = asyncio.run(HistoryCompactor(client).compact(messages, TIGHT))
    assert result.was_compacted is False
    assert result.compacted_messages == messages
    assert result.compression_ratio == 1.0


def test_nothing_older_than_recent_window_is_identity():
    client = FakeClient(SUMMARY)
    messages = conversation(3)
    opts = CompactionOptions(max_tokens=10, recent_turns_to_keep=5)
    result = asyncio.run(HistoryCompactor(client).compact(messages, opts))
    assert result.was_compacted is False
    assert client.call_count == 0


def test_key_turns_are_preserved_verbatim():
    messages = conversation(10)
    key = ConversationMessage.user("I must finish within 3 months, budget is 500 dollar")
    messages.insert(2, key)
    messages.insert(3, ConversationMessage.assistant("Understood."))
    opts = CompactionOptions(max_tokens=500, recent_turns_to_keep=2, preserve_key_turns=True)

    result = asyncio.run(HistoryCompactor(FakeClient(SUMMARY)).compact(messages, opts))
    assert result.was_compacted
    assert key in result.compacted_messages
    assert result.compacted_messages[-4:] == messages[-4:]


def test_compaction_fires_hook():
    hooks = HookRegistry()
    seen = []
    hooks.add(EventType.HISTORY_COMPACTED, lambda result: seen.append(result))
    compactor = HistoryCompactor(FakeClient(SUMMARY), hooks=hooks)

    asyncio.run(compactor.compact(conversation(10), TIGHT))
    assert len(seen) == 1
    assert seen[0].was_compacted


def test_should_compact():
    compactor = HistoryCompactor(FakeClient(SUMMARY))
    messages = conversation(10)
    assert compactor.should_compact(messages, max_tokens=500)
    assert not compactor.should_compact(messages, max_tokens=100_000)
    assert not compactor.should_compact(messages[:1], max_tokens=0)


# ─────────────────────────────────────────────────────────────────────────────
# smart / batch
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_smart_compact_skips_short_conversations():
    client = FakeClient(SUMMARY)
    result = await HistoryCompactor(client).smart_compact(conversation(2), target_tokens=10)
    assert result.was_compacted is False
    assert client.call_count == 0


@pytest.mark.asyncio
async def test_smart_compact_long_conversation():
    client = FakeClient(SUMMARY)
    messages = conversation(8)
    result = await HistoryCompactor(client).smart_compact(messages, target_tokens=500)
    assert result.was_compacted
    # 8 turns is ~2300 tokens, so four recent turns are kept
    assert result.compacted_messages[1:] == messages[-8:]


@pytest.mark.asyncio
async def test_batch_compact_keeps_order():
    client = FakeClient(SUMMARY)
    short = conversation(1, words_per_message=3)
    long = conversation(10)
    results = await HistoryCompactor(client).batch_compact([short, long], TIGHT)
    assert [r.was_compacted for r in results] == [False, True]
