"""Budgeted bulk reconciliation from the aggregator (pull path).

Every tick selects the stalest tokens the remaining call budget can cover,
fetches them in aggregator-sized batches and bulk-applies guarded snapshot
updates. When the budget is exhausted the tick selects nothing and the work
waits for the window to roll; nothing is queued.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pricefeed.connectors.geckoterminal_client import AggregatorError
from pricefeed.core.price_math import DEFAULT_MAX_PRICE_USD, validate_quote
from pricefeed.core.snapshot import SnapshotUpdate
from pricefeed.utils.logger import get_logger

if TYPE_CHECKING:
    from pricefeed.connectors.geckoterminal_client import AggregatorQuote, GeckoTerminalClient
    from pricefeed.core.token_store import TokenRecord, TokenStore

logger = get_logger("reconciler")


class CallBudget:
    """Sliding-window call ceiling.

    A slot is consumed when acquired, whatever the call's outcome, and frees
    up ``window_s`` seconds later. No rolling window ever holds more than
    ``limit`` acquisitions.
    """

    def __init__(
        self,
        limit: int = 30,
        window_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self._window_s = window_s
        self._clock = clock
        self._calls: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self._window_s:
            self._calls.popleft()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def used(self) -> int:
        self._prune(self._clock())
        return len(self._calls)

    def remaining(self) -> int:
        return max(0, self._limit - self.used)

    def try_acquire(self) -> bool:
        now = self._clock()
        self._prune(now)
        if len(self._calls) >= self._limit:
            return False
        self._calls.append(now)
        return True


@dataclass
class ReconcileCycleResult:
    started_at: datetime
    budget_remaining: int = 0
    selected: int = 0
    batches: int = 0
    calls: int = 0
    updated: int = 0
    missing: int = 0
    skipped: int = 0
    failed_batches: int = 0
    errors: list[str] = field(default_factory=list)


class ReconciliationPoller:
    """Scheduled bulk refresh of the stalest tokens.

    Args:
        store: Token store (staleness read and bulk apply).
        client: Aggregator client.
        budget: Shared call budget.
        batch_size: Addresses per aggregator call.
        tick_interval_s: Delay between ticks in ``run``.
        max_price: Sanity ceiling for aggregator prices.
    """

    def __init__(
        self,
        store: TokenStore,
        client: GeckoTerminalClient,
        budget: CallBudget,
        batch_size: int = 30,
        tick_interval_s: float = 2.0,
        max_price: float = DEFAULT_MAX_PRICE_USD,
    ) -> None:
        self._store = store
        self._client = client
        self._budget = budget
        self._batch_size = batch_size
        self._tick_interval_s = tick_interval_s
        self._max_price = max_price

        self._cycles = 0
        self._total_updated = 0
        self._total_failed_batches = 0
        self._last_result: ReconcileCycleResult | None = None

    @property
    def tick_interval_s(self) -> float:
        return self._tick_interval_s

    async def tick(self) -> ReconcileCycleResult:
        """Run one reconciliation cycle.

        A batch that fails is counted and skipped; the rest of the cycle
        proceeds.
        """
        result = ReconcileCycleResult(started_at=datetime.now(UTC))
        result.budget_remaining = self._budget.remaining()
        self._cycles += 1

        if result.budget_remaining > 0:
            tokens = await self._store.list_stale(result.budget_remaining * self._batch_size)
            result.selected = len(tokens)
            batches = [
                tokens[i : i + self._batch_size] for i in range(0, len(tokens), self._batch_size)
            ]
            for batch in batches:
                if not self._budget.try_acquire():
                    logger.debug("reconcile_budget_exhausted", deferred=len(batch))
                    break
                result.batches += 1
                result.calls += 1
                await self._process_batch(batch, result)

        self._total_updated += result.updated
        self._total_failed_batches += result.failed_batches
        self._last_result = result

        if result.selected:
            logger.info(
                "reconcile_cycle",
                selected=result.selected,
                calls=result.calls,
                updated=result.updated,
                missing=result.missing,
                skipped=result.skipped,
                failed_batches=result.failed_batches,
                budget_used=self._budget.used,
            )
        return result

    async def _process_batch(self, batch: list[TokenRecord], result: ReconcileCycleResult) -> None:
        addresses = [t.address for t in batch]
        # Stamped before the fetch so a swap landing mid-request wins the merge.
        requested_at = datetime.now(UTC)
        try:
            quotes = await self._client.get_tokens_multi(addresses)
        except AggregatorError as e:
            result.failed_batches += 1
            result.errors.append(str(e))
            logger.warning("reconcile_batch_fetch_failed", size=len(batch), error=str(e))
            return

        updates: list[SnapshotUpdate] = []
        for token in batch:
            quote = quotes.get(token.address)
            if quote is None:
                result.missing += 1
                continue
            try:
                update = self._build_update(token, quote, requested_at)
            except (ValueError, TypeError, OverflowError) as e:
                logger.warning("reconcile_token_skipped", address=token.address, error=str(e))
                update = None
            if update is None:
                result.skipped += 1
                continue
            updates.append(update)

        if not updates:
            return
        try:
            result.updated += await self._store.bulk_apply(updates)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result.failed_batches += 1
            result.errors.append(str(e))
            logger.warning("reconcile_batch_write_failed", size=len(updates), error=str(e))

    def _build_update(
        self, token: TokenRecord, quote: AggregatorQuote, requested_at: datetime
    ) -> SnapshotUpdate | None:
        """Validated update for one token, or None if the quote carries nothing usable."""
        price = (
            validate_quote(quote.price_usd, self._max_price)
            if quote.price_usd is not None
            else None
        )
        volume = _non_negative(quote.volume_usd_24h)
        supply = quote.total_supply
        if supply is not None and supply < 0:
            supply = None
        if price is None and volume is None and supply is None:
            return None

        return SnapshotUpdate(
            address=token.address,
            timestamp=requested_at,
            source="aggregator",
            price_usd=price,
            valuation_usd=_non_negative(quote.valuation_usd) if price is not None else None,
            volume_usd_24h=volume,
            total_supply=supply,
            decimals=_first_known(quote.decimals, token.decimals) if supply is not None else None,
            pool_address=quote.pool_address if price is not None else None,
        )

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick until ``stop_event`` is set. Tick errors are logged, never raised."""
        logger.info(
            "reconciler_started",
            batch_size=self._batch_size,
            calls_per_window=self._budget.limit,
            tick_interval_s=self._tick_interval_s,
        )
        while not stop_event.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("reconcile_tick_error", error=str(e))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._tick_interval_s)
            except TimeoutError:
                pass

    @property
    def stats(self) -> dict[str, Any]:
        last = self._last_result
        return {
            "cycles": self._cycles,
            "total_updated": self._total_updated,
            "total_failed_batches": self._total_failed_batches,
            "budget_used": self._budget.used,
            "budget_remaining": self._budget.remaining(),
            "last_selected": last.selected if last else 0,
        }


def _first_known(*values: int | None) -> int | None:
    return next((v for v in values if v is not None), None)


def _non_negative(value: float | None) -> float | None:
    if value is None or not math.isfinite(value) or value < 0:
        return None
    return value
