"""Plain records exchanged between the core subsystems and the store adapters."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ClientMetadata:
    """Client details captured alongside attempts and session activity."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AttemptRecord:
    guid: str
    identifier: str
    action: str
    success: bool
    created_at: datetime
    principal_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class PrincipalRecord:
    guid: str
    email: str
    created_at: datetime
    updated_at: datetime
    name: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    password_hash: Optional[str] = None
    password_set_at: Optional[datetime] = None
    grace_logins_used: int = 0


@dataclass
class PasswordHistoryRecord:
    guid: str
    principal_id: str
    password_hash: str
    created_at: datetime


@dataclass
class SessionRecord:
    guid: str
    principal_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    is_active: bool = True
    deactivated_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class SessionActivityRecord:
    guid: str
    session_id: str
    action: str
    created_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenRecord:
    token_hash: str
    identifier: str
    token_type: str
    expires_at: datetime
    created_at: datetime
