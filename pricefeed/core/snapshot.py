"""Price snapshot updates and the guarded merge shared by both write paths.

The swap path (push) and the reconciliation path (pull) write the same
``token_prices`` row without any ordering between them. Each update carries a
single timestamp and only touches the field groups it owns:

- ``PRICE``:  price_usd, valuation_usd, pool_address, block_number, last_trade_at
- ``MARKET``: volume_usd_24h
- ``SUPPLY``: total_supply, decimals

A group is applied only when the row's timestamp for that group is absent or
not newer than the update's. ``None`` values never overwrite stored data.
Valuation is recomputed explicitly whenever price or supply changes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pricefeed.utils.db import TokenPrice

DEFAULT_DECIMALS = 18


class FieldGroup(str, Enum):
    PRICE = "price"
    MARKET = "market"
    SUPPLY = "supply"


_GROUP_TIMESTAMP: dict[FieldGroup, str] = {
    FieldGroup.PRICE: "price_updated_at",
    FieldGroup.MARKET: "market_updated_at",
    FieldGroup.SUPPLY: "supply_updated_at",
}


@dataclass(frozen=True)
class SnapshotUpdate:
    """A partial quote update for one token, stamped with the writer's time."""

    address: str
    timestamp: datetime
    source: str
    price_usd: float | None = None
    valuation_usd: float | None = None  # used only when supply is unknown
    volume_usd_24h: float | None = None
    total_supply: int | None = None
    decimals: int | None = None
    pool_address: str | None = None
    block_number: int | None = None
    last_trade_at: datetime | None = None

    @property
    def groups(self) -> frozenset[FieldGroup]:
        """Field groups this update carries data for."""
        groups: set[FieldGroup] = set()
        if self.price_usd is not None:
            groups.add(FieldGroup.PRICE)
        if self.volume_usd_24h is not None:
            groups.add(FieldGroup.MARKET)
        if self.total_supply is not None or self.decimals is not None:
            groups.add(FieldGroup.SUPPLY)
        return frozenset(groups)


def compute_valuation(
    price_usd: float | None,
    total_supply: int | Decimal | None,
    decimals: int | None,
) -> float | None:
    """Valuation = price × decimal-adjusted supply.

    Returns None if any input is missing or the result is not a finite,
    non-negative number.
    """
    if price_usd is None or total_supply is None:
        return None
    places = DEFAULT_DECIMALS if decimals is None else decimals
    try:
        supply = Decimal(total_supply).scaleb(-places)
        value = float(Decimal(repr(float(price_usd))) * supply)
    except (InvalidOperation, ValueError, OverflowError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (some drivers drop tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def merge_snapshot(row: TokenPrice, update: SnapshotUpdate) -> frozenset[FieldGroup]:
    """Apply ``update`` onto ``row`` in place, group by group.

    Returns:
        The field groups actually applied. Empty if every group in the update
        was older than the stored data.
    """
    ts = as_utc(update.timestamp)
    applied: set[FieldGroup] = set()

    for group in update.groups:
        current = as_utc(getattr(row, _GROUP_TIMESTAMP[group]))
        if current is not None and current > ts:
            continue
        setattr(row, _GROUP_TIMESTAMP[group], ts)
        applied.add(group)

    if FieldGroup.PRICE in applied:
        row.price_usd = update.price_usd
        if update.pool_address is not None:
            row.pool_address = update.pool_address
        if update.block_number is not None:
            row.block_number = update.block_number
        if update.last_trade_at is not None:
            row.last_trade_at = update.last_trade_at

    if FieldGroup.MARKET in applied:
        row.volume_usd_24h = update.volume_usd_24h

    if FieldGroup.SUPPLY in applied:
        if update.total_supply is not None:
            row.total_supply = Decimal(update.total_supply)
        if update.decimals is not None:
            row.decimals = update.decimals

    if applied & {FieldGroup.PRICE, FieldGroup.SUPPLY}:
        valuation = compute_valuation(row.price_usd, row.total_supply, row.decimals)
        if valuation is None and FieldGroup.PRICE in applied:
            valuation = update.valuation_usd
        if valuation is not None:
            row.valuation_usd = valuation

    if applied:
        last = as_utc(row.last_updated)
        if last is None or ts > last:
            row.last_updated = ts

    return frozenset(applied)
