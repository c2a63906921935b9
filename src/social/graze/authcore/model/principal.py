"""Principal and password credential data models.

Provides SQLAlchemy models for authenticated identities, their current password credential, and the bounded history
of prior password hashes used for reuse prevention.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from social.graze.authcore.model.base import Base, str320, str512, guidpk


class Principal(Base):
    """Authenticated identity with its current password credential.

    Email addresses are stored lower-cased so the unique index doubles as the case-insensitive lookup key. The
    credential is replaced in place on change; prior hashes live in `PasswordHistory`.
    """

    __tablename__ = "principals"

    guid: Mapped[guidpk]
    email: Mapped[str320]
    name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    email_verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    password_hash: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    password_set_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    grace_logins_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (Index("idx_principals_email", "email", unique=True),)


class PasswordHistory(Base):
    """Immutable record of a prior password hash for a principal."""

    __tablename__ = "password_history"

    guid: Mapped[guidpk]
    principal_guid: Mapped[str] = mapped_column(
        String(512), ForeignKey("principals.guid", ondelete="CASCADE"), nullable=False
    )
    password_hash: Mapped[str512]
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("idx_password_history_principal", "principal_guid", "created_at"),
    )
