"""Single-use verification token data model.

Holds email verification and password reset tokens. At most one live token exists per (identifier, token_type);
tokens are deleted when consumed or swept after expiry.
"""
from datetime import datetime
from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from social.graze.authcore.model.base import Base, str64, str512


class VerificationToken(Base):
    __tablename__ = "verification_tokens"

    token_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    identifier: Mapped[str512]
    token_type: Mapped[str64]
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index(
            "idx_verification_tokens_identifier", "identifier", "token_type", unique=True
        ),
        Index("idx_verification_tokens_expires_at", "expires_at"),
    )
