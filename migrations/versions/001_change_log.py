"""Add cdc_change_log and cdc_cursors tables for change capture.

Revision ID: 001_change_log
Revises:
Create Date: 2026-10-16

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001_change_log"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "cdc_change_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("table_name", sa.String(100), nullable=False),
        sa.Column("operation_type", sa.String(10), nullable=False),
        sa.Column("record_id", sa.String(100), nullable=True),
        sa.Column("old_data", JSONB, nullable=True),
        sa.Column("new_data", JSONB, nullable=True),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column(
            "change_timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        comment="Captured row mutations awaiting or past publication",
    )
    op.create_index("idx_cdc_table_op", "cdc_change_log", ["table_name", "operation_type"])
    op.create_index("idx_cdc_processed_id", "cdc_change_log", ["processed", "id"])
    op.create_index("idx_cdc_timestamp", "cdc_change_log", ["change_timestamp"])

    op.create_table(
        "cdc_cursors",
        sa.Column("consumer_group", sa.String(128), primary_key=True),
        sa.Column("stream", sa.String(100), primary_key=True),
        sa.Column("last_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )


def downgrade() -> None:
    op.drop_table("cdc_cursors")
    op.drop_index("idx_cdc_timestamp", "cdc_change_log")
    op.drop_index("idx_cdc_processed_id", "cdc_change_log")
    op.drop_index("idx_cdc_table_op", "cdc_change_log")
    op.drop_table("cdc_change_log")
