"""
Инициальная миграция.

Создаёт таблицы:
- capture_sessions
- artifacts
- destinations
- delivery_attempts
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "capture_sessions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("target_url", sa.Text(), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "recording", "completed", "failed", name="sessionstatus"),
            nullable=False,
        ),
        sa.Column("scheduled_start", sa.DateTime(), nullable=True),
        sa.Column("scheduled_end", sa.DateTime(), nullable=True),
        sa.Column("actual_start", sa.DateTime(), nullable=True),
        sa.Column("actual_end", sa.DateTime(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_capture_sessions_organization_id", "capture_sessions", ["organization_id"])

    op.create_table(
        "artifacts",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "session_id",
            sa.String(length=64),
            sa.ForeignKey("capture_sessions.id"),
            nullable=False,
        ),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("duration_sec", sa.Float(), nullable=True),
        sa.Column("format", sa.String(length=16), nullable=False),
        sa.Column("capture_log_key", sa.Text(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("raw", "encoding", "encoded", "failed", name="artifactstatus"),
            nullable=False,
        ),
        sa.Column("encoded_storage_key", sa.Text(), nullable=True),
        sa.Column("encoded_byte_size", sa.Integer(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("session_id", name="uq_artifacts_session_id"),
    )
    op.create_index("ix_artifacts_organization_id", "artifacts", ["organization_id"])

    op.create_table(
        "destinations",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=True),
        sa.Column(
            "transport",
            sa.Enum(
                "callback",
                "stream_http",
                "stream_socket",
                "stream_storage",
                name="destinationtransport",
            ),
            nullable=False,
        ),
        sa.Column(
            "stream_format",
            sa.Enum("media_chunk", "metadata", name="streamformat"),
            nullable=False,
        ),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("secret", sa.String(length=256), nullable=True),
        sa.Column("events", sa.JSON(), nullable=False),
        sa.Column("headers", sa.JSON(), nullable=False),
        sa.Column("retry_budget", sa.Integer(), nullable=False),
        sa.Column("timeout_ms", sa.Integer(), nullable=False),
        sa.Column("chunk_interval_ms", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_destinations_organization_id", "destinations", ["organization_id"])

    op.create_table(
        "delivery_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("destination_id", sa.String(length=64), nullable=False),
        sa.Column("event_id", sa.String(length=96), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("terminal", sa.Boolean(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "destination_id", "event_id", "attempt", name="uq_delivery_attempts_dest_event_try"
        ),
    )
    op.create_index(
        "ix_delivery_attempts_destination_id", "delivery_attempts", ["destination_id"]
    )
    op.create_index("ix_delivery_attempts_event_id", "delivery_attempts", ["event_id"])


def downgrade() -> None:
    op.drop_index("ix_delivery_attempts_event_id", table_name="delivery_attempts")
    op.drop_index("ix_delivery_attempts_destination_id", table_name="delivery_attempts")
    op.drop_table("delivery_attempts")
    op.drop_index("ix_destinations_organization_id", table_name="destinations")
    op.drop_table("destinations")
    op.drop_index("ix_artifacts_organization_id", table_name="artifacts")
    op.drop_table("artifacts")
    op.drop_index("ix_capture_sessions_organization_id", table_name="capture_sessions")
    op.drop_table("capture_sessions")
