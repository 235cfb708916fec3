"""initial schema

Revision ID: 3c1f0a9d2b7e
Revises:
Create Date: 2026-10-19 09:12:41.503218

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3c1f0a9d2b7e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create session, rate, sync queue and audit tables."""
    op.create_table(
        "wifi_session",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
        ),
        sa.Column("mac", sa.VARCHAR(17), nullable=False),
        sa.Column("ip", sa.VARCHAR(45), nullable=True),
        sa.Column("device_id", sa.VARCHAR(128), nullable=True),
        sa.Column("state", sa.VARCHAR(16), nullable=False),
        sa.Column("remaining_seconds", sa.Integer(), nullable=False),
        sa.Column("total_paid", sa.Integer(), nullable=False),
        sa.Column("download_limit", sa.Integer(), nullable=False),
        sa.Column("upload_limit", sa.Integer(), nullable=False),
        sa.Column("token", sa.VARCHAR(64), nullable=True, unique=True),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("timer_anchor", sa.Float(), nullable=False),
        sa.Column("ended_at", sa.Float(), nullable=True),
        sa.Column("end_reason", sa.Text(), nullable=True),
    )
    op.create_index("ix_wifi_session_mac", "wifi_session", ["mac"])
    op.create_index("ix_wifi_session_device_id", "wifi_session", ["device_id"])
    op.create_index("ix_wifi_session_state", "wifi_session", ["state"])
    op.create_index("ix_wifi_session_mac_state", "wifi_session", ["mac", "state"])

    op.create_table(
        "rate",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("pesos", sa.Integer(), nullable=False, unique=True),
        sa.Column("minutes", sa.Integer(), nullable=False),
        sa.Column("download_limit", sa.Integer(), nullable=False),
        sa.Column("upload_limit", sa.Integer(), nullable=False),
    )

    op.create_table(
        "sync_item",
        sa.Column("seq", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("id", sa.VARCHAR(32), nullable=False, unique=True),
        sa.Column("kind", sa.VARCHAR(16), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("retry_count", sa.SmallInteger(), nullable=False, server_default="0"),
    )

    op.create_table(
        "device_audit",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("device_id", sa.VARCHAR(128), nullable=False),
        sa.Column("event", sa.VARCHAR(32), nullable=False),
        sa.Column("old_mac", sa.VARCHAR(17), nullable=True),
        sa.Column("new_mac", sa.VARCHAR(17), nullable=True),
        sa.Column("old_ip", sa.VARCHAR(45), nullable=True),
        sa.Column("new_ip", sa.VARCHAR(45), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_device_audit_device_id", "device_audit", ["device_id"])


def downgrade() -> None:
    """Drop all gateway tables."""
    op.drop_index("ix_device_audit_device_id", table_name="device_audit")
    op.drop_table("device_audit")
    op.drop_table("sync_item")
    op.drop_table("rate")
    op.drop_index("ix_wifi_session_mac_state", table_name="wifi_session")
    op.drop_index("ix_wifi_session_state", table_name="wifi_session")
    op.drop_index("ix_wifi_session_device_id", table_name="wifi_session")
    op.drop_index("ix_wifi_session_mac", table_name="wifi_session")
    op.drop_table("wifi_session")
