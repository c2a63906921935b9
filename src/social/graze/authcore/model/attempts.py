"""Authentication attempt log data model.

One row per authentication-adjacent attempt. The table is append-only, read in time-windowed range queries by the
rate limiter and pruned by the retention sweep.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from social.graze.authcore.model.base import Base, str64, str512, guidpk


class AuthAttempt(Base):
    __tablename__ = "auth_attempts"

    guid: Mapped[guidpk]
    identifier: Mapped[str512]
    action: Mapped[str64]
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    principal_guid: Mapped[Optional[str]] = mapped_column(
        String(512), ForeignKey("principals.guid", ondelete="SET NULL"), nullable=True
    )
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("idx_auth_attempts_lookup", "identifier", "action", "created_at"),
        Index("idx_auth_attempts_created_at", "created_at"),
    )
