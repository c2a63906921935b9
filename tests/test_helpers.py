"""
Common testing utilities for the auth core tests.

Provides a controllable clock, a recording metrics client, a recording mailer and store adapters that always fail,
plus small factories for records.
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Union

from ulid import ULID

from social.graze.authcore.app.metrics import MetricsClient
from social.graze.authcore.core.clock import Clock
from social.graze.authcore.core.mailer import EmailDeliveryError, Mailer, OutboundEmail
from social.graze.authcore.store.base import (
    AttemptStore,
    SessionStore,
    StoreError,
    TokenStore,
)
from social.graze.authcore.store.records import (
    AttemptRecord,
    PrincipalRecord,
    SessionActivityRecord,
    SessionRecord,
    TokenRecord,
)

START = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

STRONG_PASSWORD = "Str0ng!Pass"
OTHER_STRONG_PASSWORD = "An0ther$ecret"


def generate_ulid_string() -> str:
    """Generate a ULID string for testing."""
    return str(ULID())


class FrozenClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, now: datetime) -> None:
        self.current = now


class MockStatsdClient(MetricsClient):
    """Mock metrics client for testing metrics collection."""

    def __init__(self):
        self.gauges: Dict[str, Dict[str, Any]] = {}
        self.increments: Dict[Any, Union[int, float]] = {}
        self.timers: Dict[str, Dict[str, Any]] = {}
        self.closed = False

    def gauge(self, metric_name, value, tag_dict=None):
        """Record gauge metric."""
        self.gauges[metric_name] = {"value": value, "tags": tag_dict or {}}

    def increment(self, metric_name, value=1, tag_dict=None):
        """Record increment metric."""
        key = (metric_name, tuple(sorted((tag_dict or {}).items())))
        self.increments[key] = self.increments.get(key, 0) + value

    def timer(self, metric_name, value, tag_dict=None):
        """Record timer metric."""
        self.timers[metric_name] = {"value": value, "tags": tag_dict or {}}

    async def close(self):
        self.closed = True

    def count(self, metric_name: str, **tags) -> Union[int, float]:
        """Sum of increments for a metric whose tags include `tags`."""
        total: Union[int, float] = 0
        for (name, tag_items), value in self.increments.items():
            tag_values = dict(tag_items)
            if name == metric_name and all(tag_values.get(k) == v for k, v in tags.items()):
                total += value
        return total


class RecordingMailer(Mailer):
    def __init__(self, fail: bool = False):
        self.sent: List[OutboundEmail] = []
        self.fail = fail

    async def send(self, message: OutboundEmail) -> None:
        if self.fail:
            raise EmailDeliveryError.rejected(503)
        self.sent.append(message)

    def last_token(self) -> Optional[str]:
        return self.sent[-1].token if self.sent else None


def _down(operation: str) -> StoreError:
    return StoreError.unavailable(operation, ConnectionRefusedError("connection refused"))


class FailingAttemptStore(AttemptStore):
    async def add_attempt(self, record: AttemptRecord) -> None:
        raise _down("add_attempt")

    async def list_attempts(self, identifier, action, since) -> List[AttemptRecord]:
        raise _down("list_attempts")

    async def query_attempts(self, since, identifier=None, action=None) -> List[AttemptRecord]:
        raise _down("query_attempts")

    async def delete_attempts_before(self, cutoff) -> int:
        raise _down("delete_attempts_before")


class FailingSessionStore(SessionStore):
    async def insert_session(self, session: SessionRecord) -> None:
        raise _down("insert_session")

    async def get_session_by_token_hash(self, token_hash: str) -> Optional[SessionRecord]:
        raise _down("get_session_by_token_hash")

    async def list_active_sessions(self, principal_id: str) -> List[SessionRecord]:
        raise _down("list_active_sessions")

    async def touch_session(self, session_id, last_activity, expires_at) -> None:
        raise _down("touch_session")

    async def deactivate_session(self, session_id: str, reason: str) -> bool:
        raise _down("deactivate_session")

    async def list_stale_sessions(
        self, now, inactive_since, principal_id=None, limit=500
    ) -> List[SessionRecord]:
        raise _down("list_stale_sessions")

    async def add_activity(self, event: SessionActivityRecord) -> None:
        raise _down("add_activity")

    async def recent_activity(self, session_id: str, limit: int) -> List[SessionActivityRecord]:
        raise _down("recent_activity")


class FailingTokenStore(TokenStore):
    async def replace_token(self, record: TokenRecord) -> None:
        raise _down("replace_token")

    async def get_token(self, token_hash: str) -> Optional[TokenRecord]:
        raise _down("get_token")

    async def consume_token(self, token_hash: str) -> Optional[TokenRecord]:
        raise _down("consume_token")

    async def delete_expired_tokens(self, now) -> int:
        raise _down("delete_expired_tokens")

    async def list_tokens(self, identifier: str) -> List[TokenRecord]:
        raise _down("list_tokens")


def make_principal(
    email: str = "alice@example.com",
    password_hash: Optional[str] = None,
    created_at: datetime = START,
    **kwargs,
) -> PrincipalRecord:
    return PrincipalRecord(
        guid=generate_ulid_string(),
        email=email,
        created_at=created_at,
        updated_at=created_at,
        password_hash=password_hash,
        password_set_at=created_at if password_hash else None,
        **kwargs,
    )
