"""GeckoTerminal connector for bulk token quotes (reconciliation path).

Fetches price, valuation, 24h volume, supply, decimals and top pool for up to
30 tokens per call via ``/networks/{network}/tokens/multi/{addresses}``.

Interface contract:
  - get_tokens_multi(addresses) → dict[address, AggregatorQuote]

Addresses missing from the response are simply absent from the result.
Rate limits: 30 calls/min on the public API. Budgeting is the caller's job;
each call here is a single attempt with no internal retry or wait.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import quote

import aiohttp
from yarl import URL

from pricefeed.utils.logger import get_logger

logger = get_logger("geckoterminal")

BASE_URL = "https://api.geckoterminal.com/api/v2"
MAX_ADDRESSES_PER_CALL = 30


# ================================================================
# Data models
# ================================================================


@dataclass(frozen=True)
class AggregatorQuote:
    """One token from the /tokens/multi response."""

    address: str
    price_usd: float | None
    valuation_usd: float | None  # fdv_usd
    market_cap_usd: float | None
    volume_usd_24h: float | None
    total_supply: int | None  # raw units
    decimals: int | None
    pool_address: str | None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))


# ================================================================
# Error types
# ================================================================


class AggregatorError(Exception):
    """Base error for aggregator API calls."""


class AggregatorRateLimitError(AggregatorError):
    """Rate limit exceeded (HTTP 429)."""


class AggregatorAuthError(AggregatorError):
    """Invalid or missing API key."""


# ================================================================
# Client
# ================================================================


class GeckoTerminalClient:
    """Async GeckoTerminal API client.

    Args:
        network: GeckoTerminal network id (e.g., "base").
        base_url: API root.
        api_key: Optional key for the paid tier (x-cg-pro-api-key header).
        session: Optional shared aiohttp session.
        timeout_s: Total request timeout.
    """

    def __init__(
        self,
        network: str = "base",
        base_url: str = BASE_URL,
        api_key: str = "",
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        self._network = network
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session = session
        self._owns_session = session is None
        self._timeout_s = timeout_s

        self._call_timestamps: list[float] = []
        self._total_calls = 0
        self._failed_calls = 0

        logger.info("geckoterminal_client_init", network=network, has_key=bool(api_key))

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_s),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if we own it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        logger.info("geckoterminal_client_closed", total_calls=self._total_calls)

    # ------------------------------------------------------------------
    # Usage tracking
    # ------------------------------------------------------------------

    def _record_call(self) -> None:
        now = time.monotonic()
        self._call_timestamps = [t for t in self._call_timestamps if now - t < 60]
        self._call_timestamps.append(now)
        self._total_calls += 1

    @property
    def usage_stats(self) -> dict[str, int]:
        """Current API usage statistics."""
        now = time.monotonic()
        return {
            "calls_last_minute": sum(1 for t in self._call_timestamps if now - t < 60),
            "total_calls": self._total_calls,
            "failed_calls": self._failed_calls,
        }

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _tokens_multi_url(self, addresses: list[str]) -> URL:
        joined = quote(",".join(addresses), safe="")
        return URL(
            f"{self._base_url}/networks/{self._network}/tokens/multi/{joined}",
            encoded=True,
        )

    async def _request(self, url: URL) -> Any:
        """Single GET attempt.

        Raises:
            AggregatorAuthError: On 401/403.
            AggregatorRateLimitError: On 429.
            AggregatorError: On any other failure.
        """
        session = await self._get_session()
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-cg-pro-api-key"] = self._api_key

        self._record_call()
        try:
            async with session.get(url, headers=headers) as resp:
                if resp.status == 200:
                    return await resp.json()

                body = await resp.text()
                self._failed_calls += 1

                if resp.status in (401, 403):
                    raise AggregatorAuthError(f"Rejected credentials: {body[:200]}")
                if resp.status == 429:
                    logger.warning("geckoterminal_429")
                    raise AggregatorRateLimitError("Rate limited")
                raise AggregatorError(f"Unexpected status {resp.status}: {body[:200]}")

        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            self._failed_calls += 1
            logger.warning("geckoterminal_network_error", error=str(e))
            raise AggregatorError(f"Network error: {e}") from e

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_tokens_multi(self, addresses: list[str]) -> dict[str, AggregatorQuote]:
        """Fetch quotes for up to 30 token addresses in one call.

        Args:
            addresses: Token addresses (any case).

        Returns:
            Quotes keyed by lowercase address. Unknown tokens are omitted.

        Raises:
            ValueError: If more than 30 addresses are passed.
            AggregatorError: On call failure.
        """
        if not addresses:
            return {}
        if len(addresses) > MAX_ADDRESSES_PER_CALL:
            raise ValueError(
                f"At most {MAX_ADDRESSES_PER_CALL} addresses per call, got {len(addresses)}"
            )

        normalized = [a.lower() for a in addresses]
        data = await self._request(self._tokens_multi_url(normalized))

        items = (data.get("data") or []) if isinstance(data, dict) else None
        if not isinstance(items, list):
            self._failed_calls += 1
            logger.warning("geckoterminal_malformed_response", type=type(data).__name__)
            raise AggregatorError("Malformed response")

        fetched_at = datetime.now(UTC)
        quotes: dict[str, AggregatorQuote] = {}
        for item in items:
            parsed = self._parse_token(item, fetched_at)
            if parsed is not None:
                quotes[parsed.address] = parsed

        logger.debug("geckoterminal_tokens_multi", requested=len(normalized), returned=len(quotes))
        return quotes

    # ------------------------------------------------------------------
    # Parsers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_token(raw: Any, fetched_at: datetime) -> AggregatorQuote | None:
        """Parse one token from the /tokens/multi response, None if it is malformed."""
        if not isinstance(raw, dict):
            logger.debug("geckoterminal_item_skipped", type=type(raw).__name__)
            return None
        attributes = _as_dict(raw.get("attributes"))
        address = attributes.get("address") or _id_suffix(raw.get("id"))
        if not address:
            return None

        volume = attributes.get("volume_usd") or {}
        top_pools = _as_dict(_as_dict(raw.get("relationships")).get("top_pools")).get("data")
        first_pool = top_pools[0] if isinstance(top_pools, list) and top_pools else None
        pool_address = _id_suffix(_as_dict(first_pool).get("id"))

        return AggregatorQuote(
            address=str(address).lower(),
            price_usd=_safe_float(attributes.get("price_usd")),
            valuation_usd=_safe_float(attributes.get("fdv_usd")),
            market_cap_usd=_safe_float(attributes.get("market_cap_usd")),
            volume_usd_24h=_safe_float(volume.get("h24") if isinstance(volume, dict) else None),
            total_supply=_safe_raw_int(attributes.get("total_supply")),
            decimals=_safe_int(attributes.get("decimals")),
            pool_address=pool_address.lower() if pool_address else None,
            fetched_at=fetched_at,
        )


# ================================================================
# Helpers
# ================================================================


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _id_suffix(value: Any) -> str | None:
    """'base_0xabc' → '0xabc'."""
    if not value or "_" not in str(value):
        return None
    return str(value).split("_", 1)[1]


def _safe_float(value: Any) -> float | None:
    """Convert value to float or None."""
    if value is None:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _safe_int(value: Any) -> int | None:
    """Convert value to int or None."""
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def _safe_raw_int(value: Any) -> int | None:
    """Raw supply strings arrive as '1000000000000000000000.0'."""
    if value is None:
        return None
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError, TypeError, OverflowError):
        return None
