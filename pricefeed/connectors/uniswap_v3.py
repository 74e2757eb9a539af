"""Uniswap V3 contract reads and Swap log decoding over the chain stream.

Covers exactly what the price feed needs: factory ``getPool``, pool
``slot0``/``token0``/``token1``, ERC-20 ``totalSupply``/``decimals``, and the
pool ``Swap`` event. Calldata is ABI-encoded with eth-abi; selectors and topics
are keccak hashes via web3.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from pricefeed.utils.logger import get_logger

if TYPE_CHECKING:
    from pricefeed.connectors.chain_stream import ChainStream

logger = get_logger("uniswap_v3")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SWAP_EVENT_SIGNATURE = "Swap(address,address,int256,int256,uint160,uint128,int24)"
SWAP_TOPIC = Web3.to_hex(Web3.keccak(text=SWAP_EVENT_SIGNATURE))


def _selector(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature)[:4])


GET_POOL_SELECTOR = _selector("getPool(address,address,uint24)")
SLOT0_SELECTOR = _selector("slot0()")
TOKEN0_SELECTOR = _selector("token0()")
TOKEN1_SELECTOR = _selector("token1()")
TOTAL_SUPPLY_SELECTOR = _selector("totalSupply()")
DECIMALS_SELECTOR = _selector("decimals()")

_SLOT0_TYPES = ["uint160", "int24", "uint16", "uint16", "uint16", "uint8", "bool"]
_SWAP_DATA_TYPES = ["int256", "int256", "uint160", "uint128", "int24"]


# ================================================================
# Data models
# ================================================================


@dataclass(frozen=True)
class Slot0:
    sqrt_price_x96: int
    tick: int


@dataclass(frozen=True)
class SwapEvent:
    """Decoded pool Swap log."""

    pool_address: str
    sender: str
    recipient: str
    amount0: int
    amount1: int
    sqrt_price_x96: int
    liquidity: int
    tick: int
    block_number: int | None


# ================================================================
# Codec helpers
# ================================================================


def _to_bytes(hex_data: str) -> bytes:
    return Web3.to_bytes(hexstr=hex_data) if hex_data and hex_data != "0x" else b""


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def _parse_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16) if str(value).startswith("0x") else int(value)


def decode_swap_log(log: dict[str, Any]) -> SwapEvent | None:
    """Decode a raw ``eth_subscription`` Swap log.

    Args:
        log: Raw log dict with 'address', 'topics', 'data', 'blockNumber'.

    Returns:
        Parsed event or None if the log is not a well-formed Swap.
    """
    try:
        topics = log.get("topics") or []
        if len(topics) < 3 or str(topics[0]).lower() != SWAP_TOPIC.lower():
            return None
        amount0, amount1, sqrt_price, liquidity, tick = decode(
            _SWAP_DATA_TYPES, _to_bytes(log.get("data", ""))
        )
        return SwapEvent(
            pool_address=str(log.get("address", "")).lower(),
            sender=_topic_address(topics[1]),
            recipient=_topic_address(topics[2]),
            amount0=amount0,
            amount1=amount1,
            sqrt_price_x96=sqrt_price,
            liquidity=liquidity,
            tick=tick,
            block_number=_parse_int(log.get("blockNumber")),
        )
    except (DecodingError, ValueError, TypeError) as e:
        logger.debug("decode_swap_log_error", error=str(e))
        return None


# ================================================================
# Reader
# ================================================================


class UniswapV3Reader:
    """Read-only contract calls over a shared ``ChainStream``.

    Args:
        stream: Connected chain stream.
        factory_address: Uniswap V3 factory contract.
    """

    def __init__(self, stream: ChainStream, factory_address: str) -> None:
        self._stream = stream
        self._factory = Web3.to_checksum_address(factory_address)

    async def _call(
        self,
        to: str,
        selector: str,
        arg_types: list[str] | None = None,
        args: list[Any] | None = None,
    ) -> bytes:
        data = selector
        if arg_types:
            data += encode(arg_types, args or []).hex()
        result = await self._stream.eth_call(Web3.to_checksum_address(to), data)
        return _to_bytes(result)

    async def get_pool(self, token_a: str, token_b: str, fee: int) -> str:
        """Factory pool lookup. Returns the zero address if no pool exists."""
        raw = await self._call(
            self._factory,
            GET_POOL_SELECTOR,
            ["address", "address", "uint24"],
            [Web3.to_checksum_address(token_a), Web3.to_checksum_address(token_b), fee],
        )
        if not raw:
            return ZERO_ADDRESS
        (pool,) = decode(["address"], raw)
        return pool.lower()

    async def slot0(self, pool: str) -> Slot0:
        raw = await self._call(pool, SLOT0_SELECTOR)
        values = decode(_SLOT0_TYPES, raw)
        return Slot0(sqrt_price_x96=values[0], tick=values[1])

    async def pool_tokens(self, pool: str) -> tuple[str, str]:
        """(token0, token1) of a pool, lowercase."""
        raw0, raw1 = await asyncio.gather(
            self._call(pool, TOKEN0_SELECTOR),
            self._call(pool, TOKEN1_SELECTOR),
        )
        (token0,) = decode(["address"], raw0)
        (token1,) = decode(["address"], raw1)
        return token0.lower(), token1.lower()

    async def total_supply(self, token: str) -> int:
        raw = await self._call(token, TOTAL_SUPPLY_SELECTOR)
        (supply,) = decode(["uint256"], raw)
        return supply

    async def decimals(self, token: str) -> int:
        raw = await self._call(token, DECIMALS_SELECTOR)
        (places,) = decode(["uint8"], raw)
        return places
