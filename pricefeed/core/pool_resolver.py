"""Canonical pool discovery by ordered fee-tier probing.

The first tier whose factory lookup returns a non-zero address wins, never
the tier with the most liquidity, so the same pair and chain state always
resolve to the same pool. No retry here; callers own the retry policy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from pricefeed.connectors.uniswap_v3 import ZERO_ADDRESS
from pricefeed.utils.logger import get_logger

if TYPE_CHECKING:
    from pricefeed.connectors.uniswap_v3 import UniswapV3Reader

logger = get_logger("pool_resolver")

DEFAULT_FEE_TIERS = (500, 3000, 10000)


@dataclass(frozen=True)
class PoolLocation:
    address: str
    fee: int


class PoolResolver:
    """Resolve a token pair to its pool address.

    Args:
        reader: Contract reader used for factory ``getPool`` lookups.
        fee_tiers: Probe order, in hundredths of a basis point.
    """

    def __init__(
        self,
        reader: UniswapV3Reader,
        fee_tiers: list[int] | tuple[int, ...] = DEFAULT_FEE_TIERS,
    ) -> None:
        self._reader = reader
        self._fee_tiers = tuple(fee_tiers)

    @property
    def fee_tiers(self) -> tuple[int, ...]:
        return self._fee_tiers

    async def resolve(self, token_a: str, token_b: str) -> PoolLocation | None:
        """Probe fee tiers in order and return the first existing pool.

        Returns:
            PoolLocation, or None if no tier has a pool.

        Raises:
            ChainStreamError: If a factory call fails. Tiers after the failing
                one are not probed.
        """
        for fee in self._fee_tiers:
            pool = await self._reader.get_pool(token_a, token_b, fee)
            if pool and pool.lower() != ZERO_ADDRESS:
                logger.debug("pool_resolved", token_a=token_a, token_b=token_b, pool=pool, fee=fee)
                return PoolLocation(address=pool.lower(), fee=fee)

        logger.info(
            "pool_not_found", token_a=token_a, token_b=token_b, tiers=list(self._fee_tiers)
        )
        return None
