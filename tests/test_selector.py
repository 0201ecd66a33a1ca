"""Tests for structgen/selector.py: quality-gated n-best selection with fallback."""
from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClient
from structgen.cancellation import CancellationToken
from structgen.errors import ErrorCode
from structgen.hooks import EventType, HookRegistry
from structgen.models import GenerationConfig, IssueArea, RunTier
from structgen.quality import QualityGateEngine, blocker, warn
from structgen.retry import RetryOptions, RetryOrchestrator
from structgen.selector import VariantSelector, primary_temperature, variant_config
from structgen.structural import accept_any


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

def counting_engine():
    """S1 check emitting data["warns"] warnings and a blocker unless data["ok"] is true."""
    engine = QualityGateEngine()

    def check_counts(data, context):
        issues = [warn(IssueArea.EVIDENCE, f"warning {i}", "x") for i in range(data.get("warns", 0))]
        if not data.get("ok", True):
            issues.append(blocker(IssueArea.COVERAGE, "not ok", "ok"))
        return issues

    engine.register("S1", check_counts)
    return engine


def make_selector(client, hooks=None, max_retries=0):
    retry = RetryOrchestrator(
        client,
        RetryOptions(max_retries=max_retries, initial_delay=0.0, max_delay=0.0, timeout=None),
        hooks=hooks,
    )
    return VariantSelector(retry, counting_engine())


def select(selector, count, **kwargs):
    kwargs.setdefault("validator", accept_any)
    return asyncio.run(selector.select_best("Generate.", count, "S1", **kwargs))


# ─────────────────────────────────────────────────────────────────────────────
# Selection
# ─────────────────────────────────────────────────────────────────────────────

def test_single_variant_success():
    client = FakeClient({"warns": 0})
    outcome = select(make_selector(client), 1)
    assert outcome.ok
    assert outcome.candidate.index == 0
    assert outcome.fallback_used is False
    assert client.call_count == 1


def test_fewest_issues_wins():
    client = FakeClient({"warns": 3}, {"warns": 1}, {"warns": 2})
    outcome = select(make_selector(client), 3)
    assert outcome.ok
    assert outcome.candidate.index == 1
    assert outcome.candidate.parsed == {"warns": 1}
    assert len(outcome.issues) == 1
    assert client.call_count == 3
    assert outcome.attempts == 3


def test_tie_goes_to_lowest_index():
    client = FakeClient({"warns": 2, "v": "a"}, {"warns": 2, "v": "b"})
    outcome = select(make_selector(client), 2)
    assert outcome.candidate.index == 0
    assert outcome.candidate.parsed["v"] == "a"


def test_structurally_invalid_variant_is_excluded_not_fatal():
    client = FakeClient("not json at all", {"warns": 4})
    outcome = select(make_selector(client), 2)
    assert outcome.ok
    assert outcome.candidate.index == 1
    assert outcome.variants[0].excluded_reason.startswith("DECODE_ERROR")
    assert outcome.fallback_used is False


def test_variant_sampling_configs():
    client = FakeClient({"warns": 0})
    select(make_selector(client), 3)
    assert client.temperatures == pytest.approx([0.8, 0.6, 0.6])


def test_lite_tier_primary_temperature():
    client = FakeClient({"warns": 0})
    select(make_selector(client), 1, tier=RunTier.LITE)
    assert client.temperatures == pytest.approx([0.5])
    assert primary_temperature("Lite") == 0.5
    assert primary_temperature(RunTier.REVIEW) == 0.8
    assert variant_config(2, RunTier.PRO).top_k == 40


def test_variants_keep_caller_sampling_settings():
    client = FakeClient({"warns": 0})
    base = GenerationConfig(temperature=0.8, max_output_tokens=1024, top_p=0.5, top_k=8)
    select(make_selector(client), 3, base_config=base)

    configs = [c["config"] for c in client.calls]
    assert [c.temperature for c in configs] == pytest.approx([0.8, 0.6, 0.6])
    assert {(c.top_p, c.top_k, c.max_output_tokens) for c in configs} == {(0.5, 8, 1024)}


def test_variant_count_must_be_positive():
    with pytest.raises(ValueError):
        select(make_selector(FakeClient({})), 0)


# ─────────────────────────────────────────────────────────────────────────────
# Fallback
# ─────────────────────────────────────────────────────────────────────────────

def test_fallback_runs_once_at_low_temperature():
    client = FakeClient({"ok": False}, {"ok": False}, {"ok": True})
    hooks = HookRegistry()
    fallbacks = []
    hooks.add(EventType.FALLBACK_ATTEMPT, lambda **kw: fallbacks.append(kw))

    outcome = select(make_selector(client, hooks=hooks), 2)
    assert outcome.ok
    assert outcome.fallback_used is True
    assert outcome.candidate.index == 2
    assert client.call_count == 3
    assert client.temperatures[-1] == pytest.approx(0.3)
    assert fallbacks == [{"stage": "S1", "temperature": 0.3}]


def test_failed_fallback_reports_every_issue():
    client = FakeClient({"ok": False})
    outcome = select(make_selector(client), 2)
    assert not outcome.ok
    assert outcome.fallback_used is True
    assert client.call_count == 3
    assert outcome.error_code == ErrorCode.QUALITY_GATE_FAILED
    assert len(outcome.issues) == 3
    assert all(i.is_blocker for i in outcome.issues)


def test_structural_failure_everywhere_reports_last_code():
    client = FakeClient("garbage")
    outcome = select(make_selector(client), 2)
    assert not outcome.ok
    assert client.call_count == 3
    assert outcome.error_code == ErrorCode.DECODE_ERROR
    assert outcome.issues == []


def test_fallback_goes_through_retry_loop():
    client = FakeClient("garbage")
    select(make_selector(client, max_retries=1), 2)
    # 2 variants x 2 attempts, then the fallback with its own 2 attempts
    assert client.call_count == 6


def test_missing_api_key_skips_fallback():
    client = FakeClient(ErrorCode.NO_API_KEY)
    outcome = select(make_selector(client, max_retries=3), 2)
    assert not outcome.ok
    assert outcome.error_code == ErrorCode.NO_API_KEY
    assert outcome.fallback_used is False
    assert client.call_count == 2


def test_rejections_fire_hook():
    client = FakeClient("garbage", {"ok": False}, {"ok": True})
    hooks = HookRegistry()
    rejected = []
    hooks.add(EventType.VARIANT_REJECTED, lambda **kw: rejected.append(kw["index"]))
    select(make_selector(client, hooks=hooks), 2)
    assert sorted(rejected) == [0, 1]


def test_reported_tokens_include_fallback():
    client = FakeClient({"ok": False}, {"ok": False}, {"ok": True}, usage=(100, 20))
    outcome = select(make_selector(client), 2)
    assert outcome.reported_tokens == 360


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_stops_all_variants():
    token = CancellationToken()
    client = FakeClient({"warns": 0}, delay=10.0)
    selector = make_selector(client)
    asyncio.get_running_loop().call_later(0.05, token.cancel, "client disconnected")

    with pytest.raises(asyncio.CancelledError):
        await selector.select_best("Generate.", 3, "S1", validator=accept_any, cancel=token)
    assert client.call_count == 3
