"""Create token catalog and price snapshot tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "tokens",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("address", sa.String(42), nullable=False, unique=True),
        sa.Column("name", sa.String(128), nullable=True),
        sa.Column("symbol", sa.String(64), nullable=True),
        sa.Column("decimals", sa.Integer, nullable=True),
        sa.Column("deployer", sa.String(42), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "token_prices",
        sa.Column("address", sa.String(42), primary_key=True),
        sa.Column("price_usd", sa.Float, nullable=True),
        sa.Column("valuation_usd", sa.Float, nullable=True),
        sa.Column("volume_usd_24h", sa.Float, nullable=True),
        sa.Column("total_supply", sa.Numeric(78, 0), nullable=True),
        sa.Column("decimals", sa.Integer, nullable=True),
        sa.Column("pool_address", sa.String(42), nullable=True),
        sa.Column("block_number", sa.BigInteger, nullable=True),
        sa.Column("last_trade_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("price_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("market_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("supply_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_token_prices_last_updated", "token_prices", ["last_updated"])


def downgrade() -> None:
    op.drop_index("idx_token_prices_last_updated", table_name="token_prices")
    op.drop_table("token_prices")
    op.drop_table("tokens")
