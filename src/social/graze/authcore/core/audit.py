"""
Audit and security event log.

Authentication events (sign-in, sign-up, password change, ...) and security events (brute force, suspicious
session, store outage, ...) are written to the `social.graze.authcore.audit` logger with emails and IP addresses
masked. Every event is also counted through the metrics client. High and critical security events are forwarded
to Sentry so they page someone; `store_unavailable` events additionally push the health gauge towards unready.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional

import sentry_sdk

from social.graze.authcore.app.metrics import MetricsClient
from social.graze.authcore.model.health import HealthGauge
from social.graze.authcore.store.records import ClientMetadata

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "social.graze.authcore.audit"


class SecurityEventType(str, Enum):
    BRUTE_FORCE = "brute_force"
    MULTIPLE_FAILED_ATTEMPTS = "multiple_failed_attempts"
    ACCOUNT_TAKEOVER = "account_takeover"
    PASSWORD_REUSE = "password_reuse"
    SUSPICIOUS_SESSION = "suspicious_session"
    UNKNOWN_ACCOUNT = "unknown_account"
    STORE_UNAVAILABLE = "store_unavailable"


_SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.ERROR,
}


def mask_email(email: Optional[str]) -> Optional[str]:
    """Keep the first and last character of the local part: `a***e@example.com`."""
    if not email:
        return None
    username, _, domain = email.partition("@")
    if len(username) <= 2:
        return email
    return f"{username[0]}***{username[-1]}@{domain}"


def mask_ip(ip_address: Optional[str]) -> Optional[str]:
    """Drop the host half of an IPv4 address and all but the first two groups of an IPv6 address."""
    if not ip_address:
        return None
    parts = ip_address.split(".")
    if len(parts) == 4:
        return f"{parts[0]}.{parts[1]}.xxx.xxx"
    if ":" in ip_address:
        groups = ip_address.split(":")
        return ":".join(groups[:2]) + ":xxxx"
    return ip_address


class AuditLogger:
    def __init__(
        self,
        metrics_client: MetricsClient,
        health_gauge: Optional[HealthGauge] = None,
        logger_name: str = AUDIT_LOGGER_NAME,
    ):
        self.metrics_client = metrics_client
        self.health_gauge = health_gauge
        self.audit_logger = logging.getLogger(logger_name)

    def auth_event(
        self,
        event_type: str,
        success: bool,
        email: Optional[str] = None,
        principal_id: Optional[str] = None,
        client: Optional[ClientMetadata] = None,
        error: Optional[str] = None,
        **detail: Any,
    ) -> None:
        record = self._record(event_type, email, principal_id, client, detail)
        record["success"] = success
        if error is not None:
            record["error"] = error

        if success:
            self.audit_logger.info("auth %s succeeded %s", event_type, record)
        else:
            self.audit_logger.warning("auth %s failed: %s %s", event_type, error, record)

        self.metrics_client.increment(
            "authcore.audit.auth_event",
            1,
            tag_dict={"type": event_type, "success": str(success).lower()},
        )

    async def security_event(
        self,
        event_type: SecurityEventType,
        severity: str,
        email: Optional[str] = None,
        principal_id: Optional[str] = None,
        client: Optional[ClientMetadata] = None,
        **detail: Any,
    ) -> None:
        record = self._record(event_type.value, email, principal_id, client, detail)
        record["severity"] = severity

        self.audit_logger.log(
            _SEVERITY_LEVELS.get(severity, logging.INFO),
            "security event %s %s",
            event_type.value,
            record,
        )

        self.metrics_client.increment(
            "authcore.audit.security_event",
            1,
            tag_dict={"type": event_type.value, "severity": severity},
        )

        if severity in ("high", "critical"):
            sentry_sdk.capture_message(
                f"security event: {event_type.value}", level="error"
            )

        if event_type == SecurityEventType.STORE_UNAVAILABLE and self.health_gauge is not None:
            await self.health_gauge.womp()

    @staticmethod
    def _record(
        event_type: str,
        email: Optional[str],
        principal_id: Optional[str],
        client: Optional[ClientMetadata],
        detail: Dict[str, Any],
    ) -> Dict[str, Any]:
        record: Dict[str, Any] = {"type": event_type}
        if email:
            record["email"] = mask_email(email)
        if principal_id:
            record["principal_id"] = principal_id
        if client is not None:
            if client.ip_address:
                record["ip_address"] = mask_ip(client.ip_address)
            if client.user_agent:
                record["user_agent"] = client.user_agent
        record.update(detail)
        return record
