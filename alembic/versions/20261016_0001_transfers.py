"""Create the transfers table.

Revision ID: 001_transfers
Revises:
Create Date: 2026-10-16 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_transfers"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.Integer(), nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("amount", sa.String(78), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_transfers_tx_log"),
    )
    op.create_index("idx_transfers_from", "transfers", ["from_address"])
    op.create_index("idx_transfers_to", "transfers", ["to_address"])
    op.create_index("idx_transfers_block", "transfers", ["block_number"])


def downgrade() -> None:
    op.drop_index("idx_transfers_block", table_name="transfers")
    op.drop_index("idx_transfers_to", table_name="transfers")
    op.drop_index("idx_transfers_from", table_name="transfers")
    op.drop_table("transfers")
