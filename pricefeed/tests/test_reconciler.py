"""Tests for the call budget and the budgeted reconciliation poller."""

from __future__ import annotations

import asyncio
import re
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest
from aioresponses import aioresponses

from pricefeed.connectors.geckoterminal_client import (
    AggregatorQuote,
    AggregatorRateLimitError,
    GeckoTerminalClient,
)
from pricefeed.core.reconciler import CallBudget, ReconciliationPoller
from pricefeed.core.snapshot import SnapshotUpdate
from pricefeed.core.token_store import TokenRecord


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _addr(i: int) -> str:
    return f"0x{i:040x}"


def _quote(address: str, **overrides: Any) -> AggregatorQuote:
    values: dict[str, Any] = {
        "address": address,
        "price_usd": 0.002,
        "valuation_usd": 1.0,
        "market_cap_usd": None,
        "volume_usd_24h": 5000.0,
        "total_supply": 10**27,
        "decimals": 18,
        "pool_address": "0x" + "cd" * 20,
    }
    values.update(overrides)
    return AggregatorQuote(**values)


def _client_returning(known: set[str] | None = None, **overrides: Any) -> AsyncMock:
    """Aggregator double that quotes every requested address (or only ``known``)."""

    async def get_tokens_multi(addresses: list[str]) -> dict[str, AggregatorQuote]:
        return {
            a: _quote(a, **overrides) for a in addresses if known is None or a in known
        }

    client = AsyncMock()
    client.get_tokens_multi.side_effect = get_tokens_multi
    return client


class TestCallBudget:
    def test_limit_within_window(self) -> None:
        clock = FakeClock()
        budget = CallBudget(limit=3, window_s=60, clock=clock)

        assert [budget.try_acquire() for _ in range(4)] == [True, True, True, False]
        assert budget.remaining() == 0

        clock.now = 59.9
        assert not budget.try_acquire()
        clock.now = 60.0
        assert budget.remaining() == 3
        assert budget.try_acquire()

    def test_no_window_exceeds_limit(self) -> None:
        clock = FakeClock()
        budget = CallBudget(limit=5, window_s=10, clock=clock)
        granted: list[float] = []

        for step in range(200):
            clock.now = step * 0.7
            if budget.try_acquire():
                granted.append(clock.now)

        for t in granted:
            in_window = [g for g in granted if t - 10 < g <= t]
            assert len(in_window) <= 5
        assert len(granted) > 5


class TestTick:
    async def test_partial_response(self, memory_store: Any) -> None:
        """30 stale tokens, 25 quoted: 25 refreshed, 5 keep their old timestamp."""
        addresses = [_addr(i) for i in range(1, 31)]
        for a in addresses:
            memory_store.add_token(a)
        client = _client_returning(known=set(addresses[:25]))
        poller = ReconciliationPoller(memory_store, client, CallBudget(limit=30), batch_size=30)

        result = await poller.tick()

        assert result.calls == 1
        assert result.updated == 25
        assert result.missing == 5
        for a in addresses[:25]:
            snap = await memory_store.get_snapshot(a)
            assert snap.last_updated >= result.started_at
            assert snap.valuation_usd == pytest.approx(2e6)
        for a in addresses[25:]:
            assert await memory_store.get_snapshot(a) is None

    async def test_selects_stalest_within_budget(self, memory_store: Any) -> None:
        a, b, c = _addr(1), _addr(2), _addr(3)
        for x in (a, b, c):
            memory_store.add_token(x)
        await memory_store.apply_update(
            SnapshotUpdate(address=b, timestamp=datetime.now(UTC), source="swap", price_usd=1.0)
        )
        client = _client_returning()
        budget = CallBudget(limit=1)
        poller = ReconciliationPoller(memory_store, client, budget, batch_size=2)

        result = await poller.tick()

        assert result.selected == 2
        client.get_tokens_multi.assert_awaited_once_with([a, c])
        assert budget.remaining() == 0

    async def test_exhausted_budget_selects_nothing(self) -> None:
        store = AsyncMock()
        client = AsyncMock()
        budget = CallBudget(limit=1)
        budget.try_acquire()
        poller = ReconciliationPoller(store, client, budget)

        result = await poller.tick()

        assert result.selected == 0
        store.list_stale.assert_not_awaited()
        client.get_tokens_multi.assert_not_awaited()

    async def test_failed_batch_consumes_budget_and_continues(self, memory_store: Any) -> None:
        addresses = [_addr(i) for i in range(1, 61)]
        for a in addresses:
            memory_store.add_token(a)

        client = AsyncMock()
        client.get_tokens_multi.side_effect = [
            AggregatorRateLimitError("Rate limited"),
            {a: _quote(a) for a in addresses[30:]},
        ]
        budget = CallBudget(limit=30)
        poller = ReconciliationPoller(memory_store, client, budget, batch_size=30)

        result = await poller.tick()

        assert result.calls == 2
        assert result.failed_batches == 1
        assert result.updated == 30
        assert budget.used == 2
        assert await memory_store.get_snapshot(addresses[0]) is None

    async def test_malformed_response_fails_only_its_batch(self, memory_store: Any) -> None:
        addresses = [_addr(i) for i in range(1, 61)]
        for a in addresses:
            memory_store.add_token(a)
        second = [
            {"id": f"base_{a}", "attributes": {"address": a, "price_usd": "0.01"}}
            for a in addresses[30:]
        ]
        client = GeckoTerminalClient(network="base")
        poller = ReconciliationPoller(memory_store, client, CallBudget(limit=30), batch_size=30)

        try:
            with aioresponses() as m:
                pattern = re.compile(r"https://api\.geckoterminal\.com/.+")
                m.get(pattern, payload=["unexpected"])
                m.get(pattern, payload={"data": second})
                result = await poller.tick()
        finally:
            await client.close()

        assert result.calls == 2
        assert result.failed_batches == 1
        assert result.updated == 30
        assert await memory_store.get_snapshot(addresses[0]) is None
        snap = await memory_store.get_snapshot(addresses[-1])
        assert snap.price_usd == pytest.approx(0.01)

    async def test_price_above_ceiling_keeps_other_fields(self, memory_store: Any) -> None:
        a = _addr(1)
        memory_store.add_token(a)
        client = _client_returning(price_usd=2e6, total_supply=None)
        poller = ReconciliationPoller(memory_store, client, CallBudget(), max_price=1e6)

        result = await poller.tick()

        assert result.updated == 1
        snap = await memory_store.get_snapshot(a)
        assert snap.price_usd is None
        assert snap.pool_address is None
        assert snap.volume_usd_24h == 5000.0

    async def test_nothing_usable_is_skipped(self, memory_store: Any) -> None:
        a = _addr(1)
        memory_store.add_token(a)
        client = _client_returning(price_usd=None, volume_usd_24h=None, total_supply=None)
        poller = ReconciliationPoller(memory_store, client, CallBudget())

        result = await poller.tick()

        assert result.skipped == 1
        assert result.updated == 0
        assert memory_store.bulk_calls == []

    async def test_fdv_used_only_without_supply(self, memory_store: Any) -> None:
        a = _addr(1)
        memory_store.add_token(a)
        client = _client_returning(total_supply=None, valuation_usd=123.0)
        poller = ReconciliationPoller(memory_store, client, CallBudget())

        await poller.tick()

        snap = await memory_store.get_snapshot(a)
        assert snap.valuation_usd == 123.0

    async def test_older_than_swap_price_not_overwritten(self, memory_store: Any) -> None:
        """A swap written after the aggregator fetch wins the price group."""
        a = _addr(1)
        memory_store.add_token(a)
        future = datetime.now(UTC) + timedelta(minutes=1)
        await memory_store.apply_update(
            SnapshotUpdate(address=a, timestamp=future, source="swap", price_usd=0.5)
        )
        poller = ReconciliationPoller(memory_store, _client_returning(), CallBudget())

        await poller.tick()

        snap = await memory_store.get_snapshot(a)
        assert snap.price_usd == 0.5
        assert snap.volume_usd_24h == 5000.0

    async def test_swap_during_fetch_keeps_live_price(self, memory_store: Any) -> None:
        a = _addr(1)
        memory_store.add_token(a)

        async def get_tokens_multi(addresses: list[str]) -> dict[str, AggregatorQuote]:
            await asyncio.sleep(0.01)
            await memory_store.apply_update(
                SnapshotUpdate(address=a, timestamp=datetime.now(UTC), source="swap", price_usd=0.5)
            )
            return {a: _quote(a)}

        client = AsyncMock()
        client.get_tokens_multi.side_effect = get_tokens_multi
        poller = ReconciliationPoller(memory_store, client, CallBudget())

        result = await poller.tick()

        assert result.updated == 1
        snap = await memory_store.get_snapshot(a)
        assert snap.price_usd == 0.5
        assert snap.volume_usd_24h == 5000.0

    async def test_write_failure_counted(self) -> None:
        a = _addr(1)
        store = AsyncMock()
        store.list_stale.return_value = [TokenRecord(id=1, address=a, decimals=18)]
        store.bulk_apply.side_effect = RuntimeError("connection reset")
        poller = ReconciliationPoller(store, _client_returning(), CallBudget())

        result = await poller.tick()

        assert result.failed_batches == 1
        assert "connection reset" in result.errors[0]


class TestRun:
    async def test_runs_until_stopped(self, memory_store: Any) -> None:
        memory_store.add_token(_addr(1))
        poller = ReconciliationPoller(
            memory_store, _client_returning(), CallBudget(), tick_interval_s=0.01
        )
        stop = asyncio.Event()

        task = asyncio.create_task(poller.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert poller.stats["cycles"] >= 2
        assert poller.stats["total_updated"] >= 1
