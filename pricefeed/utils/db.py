"""Database engine, session management, and SQLAlchemy 2.0 async models.

Two tables: ``tokens`` (static metadata, inserted by the onboarding process)
and ``token_prices`` (mutable quote state, one row per token address).
All timestamps UTC. All prices USD.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003

from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pricefeed.config.settings import get_config


class Base(DeclarativeBase):
    pass


# ================================================================
# TOKENS: registered token catalog (written by the onboarding process)
# ================================================================
class Token(Base):
    __tablename__ = "tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    symbol: Mapped[str | None] = mapped_column(String(64), nullable=True)
    decimals: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deployer: Mapped[str | None] = mapped_column(String(42), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ================================================================
# TOKEN_PRICES: per-token quote state, written by swap and reconcile paths
# ================================================================
class TokenPrice(Base):
    __tablename__ = "token_prices"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    price_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    valuation_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    volume_usd_24h: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_supply: Mapped[Decimal | None] = mapped_column(Numeric(78, 0), nullable=True)  # raw units
    decimals: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pool_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_trade_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Per field-group freshness (guarded merge)
    price_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    market_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    supply_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_token_prices_last_updated", "last_updated"),)


# ================================================================
# Engine & Session Factory
# ================================================================

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async SQLAlchemy engine (singleton)."""
    global _engine
    if _engine is None:
        config = get_config()
        _engine = create_async_engine(
            config.database_url,
            echo=False,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory (singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def dispose_engine() -> None:
    """Close pooled connections (shutdown)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
