"""Tests for structgen/session_store.py: in-memory and aiosqlite session stores."""
from __future__ import annotations

import asyncio

import pytest

from structgen.budget import BudgetLedger
from structgen.models import Stage
from structgen.session_store import InMemorySessionStore, SqliteSessionStore


@pytest.mark.asyncio
async def test_in_memory_roundtrip_and_delete():
    store = InMemorySessionStore()
    await store.set("budget:a", {"S1": 10})
    assert await store.get("budget:a") == {"S1": 10}
    assert await store.keys() == ["budget:a"]
    await store.delete("budget:a")
    assert await store.get("budget:a") is None
    await store.delete("missing")   # no error


@pytest.mark.asyncio
async def test_in_memory_returns_copies():
    store = InMemorySessionStore()
    await store.set("k", {"S1": 1})
    value = await store.get("k")
    value["S1"] = 999
    assert await store.get("k") == {"S1": 1}


@pytest.mark.asyncio
async def test_sqlite_store_persists_across_instances(tmp_path):
    db = tmp_path / "nested" / "sessions.db"
    store = SqliteSessionStore(db)
    await store.set("budget:a", {"S1": 120, "S2": 5})
    await store.set("budget:b", {"S1": 1})
    await store.close()

    reopened = SqliteSessionStore(db)
    try:
        assert await reopened.get("budget:a") == {"S1": 120, "S2": 5}
        assert await reopened.keys() == ["budget:a", "budget:b"]
        await reopened.delete("budget:b")
        assert await reopened.get("budget:b") is None
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_sqlite_store_overwrites(tmp_path):
    store = SqliteSessionStore(tmp_path / "s.db")
    try:
        await store.set("k", {"S1": 1})
        await store.set("k", {"S1": 2})
        assert await store.get("k") == {"S1": 2}
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_ledger_on_sqlite_store(tmp_path):
    store = SqliteSessionStore(tmp_path / "ledger.db")
    try:
        ledger = BudgetLedger(store=store)
        await ledger.track("u-1", Stage.S1, 5200)
        status = await ledger.remaining(Stage.S1, "u-1")
        assert status.is_near_limit
        stats = await ledger.usage_stats()
        assert stats["total_sessions"] == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_in_memory_increment():
    store = InMemorySessionStore()
    assert await store.increment("budget:a", "S1", 10) == (0, 10)
    assert await store.increment("budget:a", "S1", 5) == (10, 15)
    assert await store.increment("budget:a", "S2", 1) == (0, 1)
    assert await store.get("budget:a") == {"S1": 15, "S2": 1}


@pytest.mark.asyncio
async def test_sqlite_increment_keeps_other_fields(tmp_path):
    store = SqliteSessionStore(tmp_path / "s.db")
    try:
        await store.set("budget:a", {"S2": 7})
        assert await store.increment("budget:a", "S1", 30) == (0, 30)
        assert await store.increment("budget:a", "S1", 12) == (30, 42)
        assert await store.get("budget:a") == {"S2": 7, "S1": 42}
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_two_sqlite_stores_on_one_file_lose_no_updates(tmp_path):
    db = tmp_path / "shared.db"
    first, second = SqliteSessionStore(db), SqliteSessionStore(db)
    try:
        # open both connections (schema, WAL) before the concurrent writes
        await first.keys()
        await second.keys()
        ledgers = [BudgetLedger(store=first), BudgetLedger(store=second)]
        await asyncio.gather(*(
            ledger.track("sess", Stage.S1, 10) for ledger in ledgers for _ in range(20)
        ))
        assert await ledgers[0].used(Stage.S1, "sess") == 400
        assert await ledgers[1].used(Stage.S1, "sess") == 400
    finally:
        await first.close()
        await second.close()
