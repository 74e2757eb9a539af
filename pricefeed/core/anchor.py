"""Live USD price of the reference asset (WETH), read from its stable-asset pool.

Seeded once from ``slot0`` and then kept current by a Swap subscription on the
same pool. Every downstream quote multiplies its pool ratio by this value, so
when it is absent the swap path defers instead of writing.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pricefeed.connectors.uniswap_v3 import SWAP_TOPIC, decode_swap_log
from pricefeed.core.price_math import (
    DEFAULT_MAX_PRICE_USD,
    DEFAULT_PRECISION_EXPONENT,
    compute_usd_quote,
)
from pricefeed.core.snapshot import SnapshotUpdate
from pricefeed.core.token_store import normalize_address
from pricefeed.utils.logger import get_logger

if TYPE_CHECKING:
    from pricefeed.connectors.chain_stream import ChainStream, LogSubscription
    from pricefeed.connectors.uniswap_v3 import UniswapV3Reader
    from pricefeed.core.pool_resolver import PoolResolver
    from pricefeed.core.token_store import TokenStore

logger = get_logger("anchor")


class AnchorUnavailableError(Exception):
    """Reference/stable pool could not be resolved or seeded."""


class AnchorTracker:
    """Tracks the reference asset's USD price.

    Args:
        reader: Contract reader for ``slot0`` and pool orientation.
        resolver: Pool resolver for the reference/stable pair.
        stream: Chain stream used for the Swap subscription.
        store: Token store; the reference token's own snapshot is written
            when it is part of the catalog.
        reference_address: Reference asset (e.g. WETH).
        stable_address: USD stable asset (e.g. USDC), valued at 1.0.
    """

    def __init__(
        self,
        reader: UniswapV3Reader,
        resolver: PoolResolver,
        stream: ChainStream,
        store: TokenStore,
        reference_address: str,
        stable_address: str,
        reference_decimals: int = 18,
        stable_decimals: int = 6,
        max_price: float = DEFAULT_MAX_PRICE_USD,
        precision_exponent: int = DEFAULT_PRECISION_EXPONENT,
    ) -> None:
        self._reader = reader
        self._resolver = resolver
        self._stream = stream
        self._store = store
        self._reference = normalize_address(reference_address)
        self._stable = normalize_address(stable_address)
        self._reference_decimals = reference_decimals
        self._stable_decimals = stable_decimals
        self._max_price = max_price
        self._precision_exponent = precision_exponent

        self._pool_address: str | None = None
        self._stable_is_token0 = False
        self._handle: LogSubscription | None = None
        self._reference_tracked = False

        self._price_usd: float | None = None
        self._updated_at: datetime | None = None
        self._update_count = 0

    @property
    def reference_address(self) -> str:
        return self._reference

    @property
    def reference_decimals(self) -> int:
        return self._reference_decimals

    @property
    def price_usd(self) -> float | None:
        """Current anchor, or None before the first successful seed."""
        return self._price_usd

    @property
    def is_live(self) -> bool:
        return self._handle is not None and self._handle.active

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> float:
        """Resolve the pool, seed the price and subscribe to its swaps.

        Returns:
            The seeded anchor price.

        Raises:
            AnchorUnavailableError: No pool, or the seed read gave no valid price.
            ChainStreamError: On any chain call failure.
        """
        self.reset()

        location = await self._resolver.resolve(self._reference, self._stable)
        if location is None:
            raise AnchorUnavailableError("No reference/stable pool on any fee tier")

        token0, _token1 = await self._reader.pool_tokens(location.address)
        self._pool_address = location.address
        self._stable_is_token0 = token0 == self._stable

        slot0 = await self._reader.slot0(location.address)
        price = self._apply(slot0.sqrt_price_x96)
        if price is None:
            raise AnchorUnavailableError("Seed read produced no valid anchor price")

        self._reference_tracked = await self._store.get_token(self._reference) is not None
        await self._persist(price, block_number=None)

        self._handle = await self._stream.subscribe_logs(
            location.address, [SWAP_TOPIC], self._on_swap
        )
        logger.info(
            "anchor_started",
            pool=location.address,
            fee=location.fee,
            price_usd=price,
            reference_tracked=self._reference_tracked,
        )
        return price

    def reset(self) -> None:
        """Drop the live subscription. The last price is kept until reseeded."""
        if self._handle is not None:
            self._handle.dispose()
            self._handle = None

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def _apply(self, sqrt_price_x96: int) -> float | None:
        if self._stable_is_token0:
            decimals0, decimals1 = self._stable_decimals, self._reference_decimals
        else:
            decimals0, decimals1 = self._reference_decimals, self._stable_decimals

        price = compute_usd_quote(
            sqrt_price_x96,
            decimals0,
            decimals1,
            reference_is_token0=self._stable_is_token0,
            anchor_usd=1.0,
            max_price=self._max_price,
            precision_exponent=self._precision_exponent,
        )
        if price is None:
            logger.info("anchor_price_invalid", sqrt_price_x96=str(sqrt_price_x96))
            return None

        self._price_usd = price
        self._updated_at = datetime.now(UTC)
        self._update_count += 1
        return price

    async def _on_swap(self, log: dict[str, Any]) -> None:
        event = decode_swap_log(log)
        if event is None:
            return
        price = self._apply(event.sqrt_price_x96)
        if price is None:
            return
        logger.debug("anchor_updated", price_usd=price, block=event.block_number)
        await self._persist(price, block_number=event.block_number)

    async def _persist(self, price: float, block_number: int | None) -> None:
        """Write the reference token's own snapshot if it is in the catalog."""
        if not self._reference_tracked:
            return
        now = datetime.now(UTC)
        await self._store.apply_update(
            SnapshotUpdate(
                address=self._reference,
                timestamp=now,
                source="anchor",
                price_usd=price,
                pool_address=self._pool_address,
                block_number=block_number,
                last_trade_at=now if block_number is not None else None,
            )
        )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "price_usd": self._price_usd,
            "pool": self._pool_address,
            "updates": self._update_count,
            "updated_at": self._updated_at.isoformat() if self._updated_at else None,
            "live": self.is_live,
        }
