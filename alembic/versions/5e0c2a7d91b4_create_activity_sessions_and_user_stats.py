"""Create activity_sessions and user_stats tables

Revision ID: 5e0c2a7d91b4
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5e0c2a7d91b4'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_METRICS = (
    "online_minutes",
    "voice_minutes",
    "screen_share_minutes",
    "games_played",
    "games_minutes",
    "spotify_minutes",
    "spotify_songs",
)


def upgrade() -> None:
    """Create the session log and the per-user counter table."""

    # --- activity_sessions ---
    op.create_table(
        "activity_sessions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("label", sa.String(200), nullable=False, server_default=""),
        sa.Column("detail", sa.String(100), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer, nullable=True, server_default="0"),
        sa.Column("screen_share_minutes", sa.Integer, nullable=True, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column(
            "continues_id",
            sa.BigInteger,
            sa.ForeignKey("activity_sessions.id"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=True,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_activity_sessions_user_start", "activity_sessions", ["user_id", "start_time"],
    )
    op.create_index(
        "ix_activity_sessions_status_kind", "activity_sessions", ["status", "kind"],
    )

    # --- user_stats ---
    counter_columns = [
        sa.Column(f"{period}_{metric}", sa.Integer, nullable=True, server_default="0")
        for period in ("daily", "monthly")
        for metric in _METRICS
    ]
    op.create_table(
        "user_stats",
        sa.Column("user_id", sa.BigInteger, primary_key=True),
        *counter_columns,
        sa.Column("last_daily_reset", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_monthly_reset", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("user_stats")
    op.drop_index("ix_activity_sessions_status_kind", table_name="activity_sessions")
    op.drop_index("ix_activity_sessions_user_start", table_name="activity_sessions")
    op.drop_table("activity_sessions")
