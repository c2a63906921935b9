"""init

Revision ID: 7c1e4a9b2f03
Revises:
Create Date: 2026-10-19 09:12:41.518204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "7c1e4a9b2f03"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "principals",
        sa.Column("guid", sa.String(512), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(512), nullable=True),
        sa.Column("email_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("password_hash", sa.String(512), nullable=True),
        sa.Column("password_set_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "grace_logins_used", sa.Integer, nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    # Emails are stored lower-cased, so a plain unique index gives case-insensitive uniqueness.
    op.create_index("idx_principals_email", "principals", ["email"], unique=True)

    op.create_table(
        "password_history",
        sa.Column("guid", sa.String(512), primary_key=True),
        sa.Column(
            "principal_guid",
            sa.String(512),
            sa.ForeignKey("principals.guid", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("password_hash", sa.String(512), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_password_history_principal",
        "password_history",
        ["principal_guid", "created_at"],
    )

    op.create_table(
        "auth_attempts",
        sa.Column("guid", sa.String(512), primary_key=True),
        sa.Column("identifier", sa.String(512), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("success", sa.Boolean, nullable=False),
        sa.Column(
            "principal_guid",
            sa.String(512),
            sa.ForeignKey("principals.guid", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(1024), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_auth_attempts_lookup",
        "auth_attempts",
        ["identifier", "action", "created_at"],
    )
    op.create_index("idx_auth_attempts_created_at", "auth_attempts", ["created_at"])

    op.create_table(
        "user_sessions",
        sa.Column("guid", sa.String(512), primary_key=True),
        sa.Column(
            "principal_guid",
            sa.String(512),
            sa.ForeignKey("principals.guid", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("token_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("deactivated_reason", sa.String(64), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(1024), nullable=True),
    )
    op.create_index(
        "idx_user_sessions_token_hash", "user_sessions", ["token_hash"], unique=True
    )
    op.create_index(
        "idx_user_sessions_principal_active",
        "user_sessions",
        ["principal_guid", "is_active"],
    )
    op.create_index("idx_user_sessions_expires_at", "user_sessions", ["expires_at"])

    op.create_table(
        "session_activity",
        sa.Column("guid", sa.String(512), primary_key=True),
        sa.Column(
            "session_guid",
            sa.String(512),
            sa.ForeignKey("user_sessions.guid", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(1024), nullable=True),
        sa.Column("detail", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_session_activity_session",
        "session_activity",
        ["session_guid", "created_at"],
    )

    op.create_table(
        "verification_tokens",
        sa.Column("token_hash", sa.String(64), primary_key=True),
        sa.Column("identifier", sa.String(512), nullable=False),
        sa.Column("token_type", sa.String(64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_verification_tokens_identifier",
        "verification_tokens",
        ["identifier", "token_type"],
        unique=True,
    )
    op.create_index(
        "idx_verification_tokens_expires_at", "verification_tokens", ["expires_at"]
    )


def downgrade() -> None:
    op.drop_table("verification_tokens")
    op.drop_table("session_activity")
    op.drop_table("user_sessions")
    op.drop_table("auth_attempts")
    op.drop_table("password_history")
    op.drop_table("principals")
