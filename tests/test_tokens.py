"""Tests for structgen/tokens.py: heuristic estimator and precise-counter fallback."""
from __future__ import annotations

import asyncio

import pytest

from structgen.models import ConversationMessage
from structgen.tokens import TokenEstimator, estimate_tokens


# ─────────────────────────────────────────────────────────────────────────────
# Heuristic
# ─────────────────────────────────────────────────────────────────────────────

def test_empty_text_is_zero():
    assert estimate_tokens("") == 0
    assert TokenEstimator().estimate("") == 0


def test_cjk_text_within_range():
    text = "我想学习Python编程"
    assert 4 <= estimate_tokens(text) <= 10


def test_latin_text_within_range():
    text = "I want to learn Python"
    assert 4 <= estimate_tokens(text) <= 8
    assert estimate_tokens(text) == 6


def test_estimate_is_idempotent():
    text = "Some text 和一些中文 mixed together."
    assert estimate_tokens(text) == estimate_tokens(text)


def test_cjk_costs_more_per_character():
    assert estimate_tokens("学" * 30) > estimate_tokens("a" * 30)


def test_estimate_grows_with_length():
    assert estimate_tokens("word " * 200) > estimate_tokens("word " * 20)


def test_estimate_messages_joins_contents():
    est = TokenEstimator()
    messages = [ConversationMessage.user("hello there"), ConversationMessage.assistant("hi")]
    assert est.estimate_messages(messages) == estimate_tokens("hello there\nhi")


# ─────────────────────────────────────────────────────────────────────────────
# Precise counter
# ─────────────────────────────────────────────────────────────────────────────

def test_count_without_counter_uses_heuristic():
    est = TokenEstimator()
    assert not est.has_precise_counter
    assert asyncio.run(est.count("I want to learn Python")) == 6


def test_count_prefers_precise_counter():
    async def counter(text):
        return 42

    est = TokenEstimator(counter=counter)
    assert est.has_precise_counter
    assert asyncio.run(est.count("anything")) == 42


def test_count_falls_back_when_counter_raises():
    async def counter(text):
        raise RuntimeError("backend down")

    est = TokenEstimator(counter=counter)
    assert asyncio.run(est.count("I want to learn Python")) == 6


def test_count_batch_falls_back_per_item():
    async def counter(text):
        if "bad" in text:
            raise RuntimeError("nope")
        return 100

    est = TokenEstimator(counter=counter)
    counts = asyncio.run(est.count_batch(["good one", "bad one", ""]))
    assert counts == [100, estimate_tokens("bad one"), 0]


def test_count_batch_empty():
    assert asyncio.run(TokenEstimator().count_batch([])) == []


@pytest.mark.asyncio
async def test_count_cached_calls_counter_once():
    calls = []

    async def counter(text):
        calls.append(text)
        return 7

    est = TokenEstimator(counter=counter)
    assert await est.count_cached("abc") == 7
    assert await est.count_cached("abc") == 7
    assert calls == ["abc"]
    assert est.cache_stats()["size"] == 1


@pytest.mark.asyncio
async def test_cache_evicts_oldest_when_full():
    async def counter(text):
        return len(text)

    est = TokenEstimator(counter=counter, cache_max_size=2)
    for text in ("a", "bb", "ccc"):
        await est.count_cached(text)
    assert est.cache_stats()["size"] == 2


@pytest.mark.asyncio
async def test_clean_cache_drops_expired_entries():
    async def counter(text):
        return 1

    est = TokenEstimator(counter=counter, cache_ttl=0)
    await est.count_cached("x")
    assert est.clean_cache() == 1
    assert est.cache_stats()["size"] == 0


@pytest.mark.asyncio
async def test_compare_reports_difference():
    async def counter(text):
        return 10

    report = await TokenEstimator(counter=counter).compare("I want to learn Python")
    assert report["real"] == 10
    assert report["heuristic"] == 6
    assert report["difference"] == 4
    assert report["percent_diff"] == pytest.approx(40.0)


# ─────────────────────────────────────────────────────────────────────────────
# Per-stage turn estimates
# ─────────────────────────────────────────────────────────────────────────────

def test_framework_turn_counts_examples():
    est = TokenEstimator().estimate_framework_turn("learn python", example_count=2)
    assert est.breakdown.examples == 700
    assert est.prompt_tokens == 1500 + estimate_tokens("learn python") + 700
    assert est.total == est.prompt_tokens + 1500


def test_dynamics_turn_scales_with_nodes():
    small = TokenEstimator().estimate_dynamics_turn(node_count=4)
    large = TokenEstimator().estimate_dynamics_turn(node_count=20)
    assert large.breakdown.context - small.breakdown.context == 16 * 50


def test_clarification_turn_includes_history():
    history = [ConversationMessage.user("I want to learn Python")]
    est = TokenEstimator().estimate_clarification_turn(history)
    assert est.breakdown.context == 6
    assert est.estimated_output_tokens == 200
