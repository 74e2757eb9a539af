"""Token store access: catalog reads, staleness reads and guarded snapshot writes.

Both write paths go through ``apply_update`` / ``bulk_apply``, which lock the
affected ``token_prices`` rows and run ``merge_snapshot`` inside a single
transaction, so a stale writer can never overwrite a fresher field group.

The insert notification stream is modelled on the catalog's monotonically
increasing ``tokens.id``: ``max_token_id()`` marks "now" and
``tokens_after(cursor)`` delivers full documents inserted since, in order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime  # noqa: TC003
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from pricefeed.core.snapshot import SnapshotUpdate, as_utc, merge_snapshot
from pricefeed.utils.db import Token, TokenPrice
from pricefeed.utils.logger import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger("token_store")


@dataclass(frozen=True)
class TokenRecord:
    """Static token metadata plus the staleness key used for reconciliation."""

    id: int
    address: str
    name: str | None = None
    symbol: str | None = None
    decimals: int | None = None
    deployer: str | None = None
    created_at: datetime | None = None
    last_updated: datetime | None = None


def normalize_address(address: str) -> str:
    """Canonical form of an address: lowercase, 0x-prefixed."""
    addr = address.strip().lower()
    return addr if addr.startswith("0x") else f"0x{addr}"


def _to_record(token: Token, last_updated: datetime | None = None) -> TokenRecord:
    return TokenRecord(
        id=token.id,
        address=normalize_address(token.address),
        name=token.name,
        symbol=token.symbol,
        decimals=token.decimals,
        deployer=token.deployer,
        created_at=as_utc(token.created_at),
        last_updated=as_utc(last_updated),
    )


class TokenStore:
    """Async store facade over the ``tokens`` and ``token_prices`` tables.

    Args:
        session_factory: SQLAlchemy async session factory.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Catalog reads
    # ------------------------------------------------------------------

    async def list_tokens(self) -> list[TokenRecord]:
        """All registered tokens in insertion order."""
        async with self._session_factory() as session:
            result = await session.execute(select(Token).order_by(Token.id))
            return [_to_record(t) for t in result.scalars()]

    async def get_token(self, address: str) -> TokenRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Token).where(Token.address == normalize_address(address))
            )
            token = result.scalar_one_or_none()
            return _to_record(token) if token is not None else None

    async def list_stale(self, limit: int) -> list[TokenRecord]:
        """Tokens ordered by ascending ``last_updated`` (never-updated first).

        Args:
            limit: Maximum number of tokens to return.
        """
        if limit <= 0:
            return []
        stmt = (
            select(Token, TokenPrice.last_updated)
            .outerjoin(TokenPrice, TokenPrice.address == Token.address)
            .order_by(TokenPrice.last_updated.asc().nulls_first(), Token.id)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_record(token, last_updated) for token, last_updated in result.all()]

    async def max_token_id(self) -> int:
        """Highest catalog id, i.e. the insert-stream position for "now"."""
        async with self._session_factory() as session:
            result = await session.execute(select(func.max(Token.id)))
            return result.scalar_one_or_none() or 0

    async def tokens_after(self, token_id: int, limit: int = 500) -> list[TokenRecord]:
        """Tokens inserted after ``token_id``, oldest first."""
        stmt = select(Token).where(Token.id > token_id).order_by(Token.id).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_record(t) for t in result.scalars()]

    # ------------------------------------------------------------------
    # Snapshot reads / writes
    # ------------------------------------------------------------------

    async def get_snapshot(self, address: str) -> TokenPrice | None:
        async with self._session_factory() as session:
            return await session.get(TokenPrice, normalize_address(address))

    async def apply_update(self, update: SnapshotUpdate) -> bool:
        """Guarded single-record merge.

        Returns:
            True if at least one field group was written.
        """
        return await self.bulk_apply([update]) > 0

    async def bulk_apply(self, updates: list[SnapshotUpdate]) -> int:
        """Guarded merge of many updates in one transaction, keyed by address.

        Missing snapshot rows are created. If a concurrent writer creates the
        same row first, the whole batch is retried once against the now
        existing rows.

        Returns:
            Number of updates that wrote at least one field group.
        """
        if not updates:
            return 0
        try:
            return await self._bulk_apply_once(updates)
        except IntegrityError:
            logger.debug("snapshot_insert_race_retry", count=len(updates))
            return await self._bulk_apply_once(updates)

    async def _bulk_apply_once(self, updates: list[SnapshotUpdate]) -> int:
        addresses = sorted({normalize_address(u.address) for u in updates})
        applied = 0
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                select(TokenPrice)
                .where(TokenPrice.address.in_(addresses))
                .order_by(TokenPrice.address)
                .with_for_update()
            )
            rows = {row.address: row for row in result.scalars()}

            for update in updates:
                address = normalize_address(update.address)
                row = rows.get(address)
                if row is None:
                    row = TokenPrice(address=address)
                    session.add(row)
                    rows[address] = row
                if merge_snapshot(row, update):
                    applied += 1
                else:
                    logger.debug(
                        "snapshot_update_stale",
                        address=address,
                        source=update.source,
                        ts=update.timestamp.isoformat(),
                    )
        return applied
