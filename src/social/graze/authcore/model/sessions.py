"""Session data models.

Provides SQLAlchemy models for server-tracked sessions and the append-only activity trail attached to each of them.
Sessions are deactivated, never deleted, so the pair of tables forms the session audit trail.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSON

from social.graze.authcore.model.base import Base, str64, guidpk


class UserSession(Base):
    """Authenticated session bound to a principal.

    The opaque session token is never stored; `token_hash` holds its SHA-256 digest and is the lookup key.
    """

    __tablename__ = "user_sessions"

    guid: Mapped[guidpk]
    principal_guid: Mapped[str] = mapped_column(
        String(512), ForeignKey("principals.guid", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str64]
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    last_activity: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deactivated_reason: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    __table_args__ = (
        Index("idx_user_sessions_token_hash", "token_hash", unique=True),
        Index("idx_user_sessions_principal_active", "principal_guid", "is_active"),
        Index("idx_user_sessions_expires_at", "expires_at"),
    )


class SessionActivity(Base):
    """Append-only activity event tied to a session."""

    __tablename__ = "session_activity"

    guid: Mapped[guidpk]
    session_guid: Mapped[str] = mapped_column(
        String(512), ForeignKey("user_sessions.guid", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[str64]
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    detail: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("idx_session_activity_session", "session_guid", "created_at"),
    )
