"""Per-token live Swap subscriptions and the registry that owns their handles.

Each token moves through UNSUBSCRIBED -> RESOLVING -> SUBSCRIBED. The registry
guarantees at most one live handle per token: a second ``subscribe`` for a
token that is resolving or subscribed is a no-op, and ``invalidate_all``
disposes every handle synchronously and bumps a generation counter so that a
subscribe that started before a reconnect can never register afterwards.

On every Swap on a subscribed pool the handler re-reads ``slot0``, prices the
token against the anchor, refreshes total supply and writes one guarded
snapshot update.
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from eth_abi.exceptions import DecodingError

from pricefeed.connectors.chain_stream import ChainStreamError
from pricefeed.connectors.uniswap_v3 import SWAP_TOPIC, decode_swap_log
from pricefeed.core.price_math import (
    DEFAULT_MAX_PRICE_USD,
    DEFAULT_PRECISION_EXPONENT,
    compute_usd_quote,
)
from pricefeed.core.snapshot import SnapshotUpdate
from pricefeed.core.token_store import TokenRecord, normalize_address
from pricefeed.utils.logger import get_logger

if TYPE_CHECKING:
    from pricefeed.connectors.chain_stream import ChainStream, LogSubscription
    from pricefeed.connectors.uniswap_v3 import UniswapV3Reader
    from pricefeed.core.anchor import AnchorTracker
    from pricefeed.core.pool_resolver import PoolResolver
    from pricefeed.core.token_store import TokenStore

logger = get_logger("swap_subscriber")


class SubscriptionState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    RESOLVING = "resolving"
    SUBSCRIBED = "subscribed"


@dataclass(eq=False)
class PoolSubscription:
    """A token bound to its pool, with the orientation cached at subscribe time."""

    address: str
    pool_address: str
    fee: int
    token0: str
    token1: str
    reference_is_token0: bool
    token_decimals: int
    reference_decimals: int
    generation: int
    handle: LogSubscription | None = None

    @property
    def decimals0(self) -> int:
        return self.reference_decimals if self.reference_is_token0 else self.token_decimals

    @property
    def decimals1(self) -> int:
        return self.token_decimals if self.reference_is_token0 else self.reference_decimals

    def dispose(self) -> None:
        if self.handle is not None:
            self.handle.dispose()


# ================================================================
# Registry
# ================================================================


class SubscriptionRegistry:
    """In-memory map from token address to its live subscription."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, PoolSubscription] = {}
        self._resolving: set[str] = set()
        self._cooldown_until: dict[str, float] = {}
        self._generation = 0

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and normalize_address(address) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def generation(self) -> int:
        return self._generation

    def get(self, address: str) -> PoolSubscription | None:
        return self._entries.get(normalize_address(address))

    def addresses(self) -> set[str]:
        return set(self._entries)

    def state(self, address: str) -> SubscriptionState:
        addr = normalize_address(address)
        if addr in self._entries:
            return SubscriptionState.SUBSCRIBED
        if addr in self._resolving:
            return SubscriptionState.RESOLVING
        return SubscriptionState.UNSUBSCRIBED

    def begin(self, address: str) -> bool:
        """UNSUBSCRIBED -> RESOLVING. False if the token is already in flight or live."""
        addr = normalize_address(address)
        if addr in self._entries or addr in self._resolving:
            return False
        self._resolving.add(addr)
        return True

    def add(self, entry: PoolSubscription) -> bool:
        """RESOLVING -> SUBSCRIBED.

        Rejects (and disposes) the entry if it was created under an older
        generation or if the token already has a live handle.
        """
        self._resolving.discard(entry.address)
        if entry.generation != self._generation or entry.address in self._entries:
            entry.dispose()
            return False
        self._entries[entry.address] = entry
        self._cooldown_until.pop(entry.address, None)
        return True

    def fail(self, address: str, cooldown_s: float) -> None:
        """RESOLVING -> UNSUBSCRIBED, not retried for ``cooldown_s``."""
        addr = normalize_address(address)
        self._resolving.discard(addr)
        self._cooldown_until[addr] = self._clock() + cooldown_s

    def abandon(self, address: str) -> None:
        self._resolving.discard(normalize_address(address))

    def in_cooldown(self, address: str) -> bool:
        until = self._cooldown_until.get(normalize_address(address))
        return until is not None and self._clock() < until

    def invalidate_all(self) -> int:
        """Dispose every handle and start a new generation.

        Runs without awaiting, so no handler or subscribe can interleave.

        Returns:
            Number of handles disposed.
        """
        count = len(self._entries)
        for entry in self._entries.values():
            entry.dispose()
        self._entries.clear()
        self._resolving.clear()
        self._generation += 1
        return count


# ================================================================
# Subscriber
# ================================================================


class SwapSubscriber:
    """Creates pool subscriptions and prices every Swap they deliver.

    Args:
        registry: Shared subscription registry.
        resolver: Pool resolver for token/reference pairs.
        reader: Contract reader for pool state and supply.
        stream: Chain stream for log subscriptions.
        anchor: Reference asset price source.
        store: Token store for snapshot writes.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        resolver: PoolResolver,
        reader: UniswapV3Reader,
        stream: ChainStream,
        anchor: AnchorTracker,
        store: TokenStore,
        resolver_cooldown_s: float = 300.0,
        retry_delay_s: float = 5.0,
        supply_timeout_s: float = 5.0,
        max_price: float = DEFAULT_MAX_PRICE_USD,
        precision_exponent: int = DEFAULT_PRECISION_EXPONENT,
        max_concurrency: int = 10,
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._reader = reader
        self._stream = stream
        self._anchor = anchor
        self._store = store
        self._resolver_cooldown_s = resolver_cooldown_s
        self._retry_delay_s = retry_delay_s
        self._supply_timeout_s = supply_timeout_s
        self._max_price = max_price
        self._precision_exponent = precision_exponent
        self._max_concurrency = max_concurrency

        self._swaps_seen = 0
        self._updates_written = 0
        self._deferred = 0
        self._invalid = 0

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def reference_address(self) -> str:
        return self._anchor.reference_address

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------

    async def subscribe(self, token: TokenRecord | str) -> bool:
        """Bind a token to its pool and start listening for swaps.

        Idempotent: a token that is already resolving or subscribed is left
        alone.

        Returns:
            True if the token is subscribed when the call returns.
        """
        address = normalize_address(token.address if isinstance(token, TokenRecord) else token)
        known_decimals = token.decimals if isinstance(token, TokenRecord) else None
        reference = self._anchor.reference_address

        if address == reference:
            return False
        if not self._registry.begin(address):
            return address in self._registry

        generation = self._registry.generation
        try:
            location = await self._resolver.resolve(address, reference)
            if location is None:
                self._registry.fail(address, self._resolver_cooldown_s)
                return False

            token0, token1 = await self._reader.pool_tokens(location.address)
            if known_decimals is None:
                known_decimals = await self._reader.decimals(address)

            entry = PoolSubscription(
                address=address,
                pool_address=location.address,
                fee=location.fee,
                token0=token0,
                token1=token1,
                reference_is_token0=token0 == reference,
                token_decimals=known_decimals,
                reference_decimals=self._anchor.reference_decimals,
                generation=generation,
            )
            entry.handle = await self._stream.subscribe_logs(
                location.address,
                [SWAP_TOPIC],
                functools.partial(self._on_swap, entry),
            )
        except asyncio.CancelledError:
            self._registry.abandon(address)
            raise
        except (ChainStreamError, DecodingError, ValueError) as e:
            logger.warning("subscribe_failed", address=address, error=str(e))
            self._registry.fail(address, self._retry_delay_s)
            return False

        if not self._registry.add(entry):
            logger.debug("subscribe_superseded", address=address, generation=generation)
            return False

        logger.info(
            "token_subscribed",
            address=address,
            pool=entry.pool_address,
            fee=entry.fee,
            reference_is_token0=entry.reference_is_token0,
        )
        return True

    async def subscribe_all(self, tokens: Iterable[TokenRecord | str]) -> int:
        """Subscribe many tokens with bounded concurrency.

        Returns:
            Number of tokens subscribed by this call.
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _one(token: TokenRecord | str) -> bool:
            async with semaphore:
                return await self.subscribe(token)

        results = await asyncio.gather(*(_one(t) for t in tokens))
        return sum(1 for ok in results if ok)

    # ------------------------------------------------------------------
    # Swap handling
    # ------------------------------------------------------------------

    async def _on_swap(self, entry: PoolSubscription, log: dict[str, Any]) -> None:
        if entry.generation != self._registry.generation:
            return
        event = decode_swap_log(log)
        if event is None:
            return
        self._swaps_seen += 1
        received_at = datetime.now(UTC)

        anchor = self._anchor.price_usd
        if anchor is None:
            self._deferred += 1
            logger.info("swap_price_deferred", address=entry.address, reason="no_anchor")
            return

        sqrt_price = event.sqrt_price_x96
        try:
            sqrt_price = (await self._reader.slot0(entry.pool_address)).sqrt_price_x96
        except (ChainStreamError, DecodingError) as e:
            logger.debug("slot0_read_failed", pool=entry.pool_address, error=str(e))

        price = compute_usd_quote(
            sqrt_price,
            entry.decimals0,
            entry.decimals1,
            reference_is_token0=entry.reference_is_token0,
            anchor_usd=anchor,
            max_price=self._max_price,
            precision_exponent=self._precision_exponent,
        )
        if price is None:
            self._invalid += 1
            logger.info(
                "swap_price_invalid",
                address=entry.address,
                pool=entry.pool_address,
                sqrt_price_x96=str(sqrt_price),
            )
            return

        supply = await self._read_supply(entry.address)
        update = SnapshotUpdate(
            address=entry.address,
            timestamp=received_at,
            source="swap",
            price_usd=price,
            total_supply=supply,
            decimals=entry.token_decimals if supply is not None else None,
            pool_address=entry.pool_address,
            block_number=event.block_number,
            last_trade_at=received_at,
        )
        if await self._store.apply_update(update):
            self._updates_written += 1
            logger.debug(
                "swap_price_updated",
                address=entry.address,
                price_usd=price,
                block=event.block_number,
            )

    async def _read_supply(self, address: str) -> int | None:
        """Total supply, or None (stored supply is kept) on timeout or error."""
        try:
            return await asyncio.wait_for(
                self._reader.total_supply(address), timeout=self._supply_timeout_s
            )
        except TimeoutError:
            logger.info("supply_read_timeout", address=address)
        except (ChainStreamError, DecodingError) as e:
            logger.debug("supply_read_failed", address=address, error=str(e))
        return None

    @property
    def stats(self) -> dict[str, int]:
        return {
            "subscribed": len(self._registry),
            "swaps_seen": self._swaps_seen,
            "updates_written": self._updates_written,
            "deferred_no_anchor": self._deferred,
            "invalid_quotes": self._invalid,
        }
