"""Initial davgate schema: principals, blocks and sessions.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "dav_users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("username", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="general"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("can_read", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("max_sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bind_address", sa.String(64), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_dav_users_username", "dav_users", ["username"], unique=True)

    op.create_table(
        "dav_blocks",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("address", sa.String(64), nullable=False),
        sa.Column("remark", sa.String(512), nullable=False, server_default=""),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_dav_blocks_address", "dav_blocks", ["address"], unique=True)
    op.create_index("ix_dav_blocks_expires_at", "dav_blocks", ["expires_at"])

    op.create_table(
        "dav_sessions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("session_token", sa.String(64), nullable=False, unique=True),
        sa.Column(
            "principal_id",
            UUID(as_uuid=True),
            sa.ForeignKey("dav_users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("principal_name", sa.String(255), nullable=False),
        sa.Column("address", sa.String(64), nullable=False),
        sa.Column("user_agent", sa.String(512), nullable=False, server_default=""),
        sa.Column("force_close", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "principal_id", "address", name="uq_dav_sessions_principal_address"
        ),
    )
    op.create_index("ix_dav_sessions_principal_id", "dav_sessions", ["principal_id"])
    op.create_index("ix_dav_sessions_principal_name", "dav_sessions", ["principal_name"])
    op.create_index("ix_dav_sessions_address", "dav_sessions", ["address"])
    op.create_index("ix_dav_sessions_last_seen", "dav_sessions", ["last_seen"])


def downgrade() -> None:
    op.drop_table("dav_sessions")
    op.drop_index("ix_dav_blocks_expires_at", table_name="dav_blocks")
    op.drop_index("ix_dav_blocks_address", table_name="dav_blocks")
    op.drop_table("dav_blocks")
    op.drop_index("ix_dav_users_username", table_name="dav_users")
    op.drop_table("dav_users")
