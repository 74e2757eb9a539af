"""Onboarding of newly registered tokens without a process restart.

The insert stream is the catalog's monotonically increasing ``tokens.id``:
``start()`` positions the cursor at the current maximum ("now") and each poll
delivers tokens inserted since, in order. The cursor is not persisted, so a
fresh start after a reconnect misses tokens inserted during the outage. A
periodic full reconcile closes that gap by diffing the whole catalog against
the subscription registry.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING

from pricefeed.core.swap_subscriber import SubscriptionState
from pricefeed.utils.logger import get_logger

if TYPE_CHECKING:
    from pricefeed.core.swap_subscriber import SubscriptionRegistry, SwapSubscriber
    from pricefeed.core.token_store import TokenRecord, TokenStore

logger = get_logger("onboarding")


class OnboardingListener:
    """Watches the token catalog for inserts and subscribes each new token once.

    Args:
        store: Token store providing the insert stream.
        subscriber: Swap subscriber that binds tokens to pools.
        registry: Subscription registry, read for the full reconcile diff.
        poll_interval_s: Insert-stream poll interval.
        reconcile_interval_s: Full catalog vs. registry diff interval.
    """

    def __init__(
        self,
        store: TokenStore,
        subscriber: SwapSubscriber,
        registry: SubscriptionRegistry,
        poll_interval_s: float = 5.0,
        reconcile_interval_s: float = 300.0,
        batch_limit: int = 500,
    ) -> None:
        self._store = store
        self._subscriber = subscriber
        self._registry = registry
        self._poll_interval_s = poll_interval_s
        self._reconcile_interval_s = reconcile_interval_s
        self._batch_limit = batch_limit

        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._cursor = 0
        self._seen: set[str] = set()
        self._last_reconcile = 0.0
        self._onboarded = 0
        self._reconciled = 0

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Open a fresh watch positioned at "now" and start the poll task."""
        if self.is_running:
            return
        self._cursor = await self._store.max_token_id()
        self._last_reconcile = time.monotonic()
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="onboarding_listener")
        logger.info("onboarding_started", cursor=self._cursor)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info("onboarding_stopped", onboarded=self._onboarded, reconciled=self._reconciled)

    # ------------------------------------------------------------------
    # Insert stream
    # ------------------------------------------------------------------

    async def poll_once(self) -> int:
        """Consume inserts after the cursor.

        Each token address triggers setup at most once per listener, even if
        the stream redelivers it.

        Returns:
            Number of new tokens handed to the subscriber.
        """
        tokens = await self._store.tokens_after(self._cursor, limit=self._batch_limit)
        handled = 0
        for token in tokens:
            self._cursor = max(self._cursor, token.id)
            if token.address in self._seen:
                continue
            self._seen.add(token.address)
            handled += 1
            await self._onboard(token)
        if handled:
            logger.info("onboarding_inserts", count=handled, cursor=self._cursor)
        return handled

    async def _onboard(self, token: TokenRecord) -> None:
        try:
            subscribed = await self._subscriber.subscribe(token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("onboarding_subscribe_error", address=token.address, error=str(e))
            return
        if subscribed:
            self._onboarded += 1
        else:
            logger.info(
                "onboarding_deferred",
                address=token.address,
                state=self._registry.state(token.address).value,
            )

    # ------------------------------------------------------------------
    # Full reconcile
    # ------------------------------------------------------------------

    async def reconcile_once(self) -> int:
        """Subscribe every catalog token that has no live subscription.

        Tokens in resolver cooldown or already resolving are skipped, as is
        the reference asset, which the anchor prices.

        Returns:
            Number of tokens subscribed by this pass.
        """
        self._last_reconcile = time.monotonic()
        tokens = await self._store.list_tokens()
        reference = self._subscriber.reference_address
        missing = [
            t
            for t in tokens
            if t.address != reference
            and self._registry.state(t.address) is SubscriptionState.UNSUBSCRIBED
            and not self._registry.in_cooldown(t.address)
        ]
        if not missing:
            return 0

        subscribed = await self._subscriber.subscribe_all(missing)
        self._seen.update(t.address for t in missing)
        self._reconciled += subscribed
        logger.info(
            "onboarding_reconciled",
            catalog=len(tokens),
            missing=len(missing),
            subscribed=subscribed,
        )
        return subscribed

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
                if time.monotonic() - self._last_reconcile >= self._reconcile_interval_s:
                    await self.reconcile_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("onboarding_poll_error", error=str(e))

            await asyncio.sleep(self._poll_interval_s)

    @property
    def stats(self) -> dict[str, int]:
        return {
            "cursor": self._cursor,
            "seen": len(self._seen),
            "onboarded": self._onboarded,
            "reconciled": self._reconciled,
        }
