"""
Outbound email collaborator.

The core never renders or delivers email itself. It hands an `OutboundEmail` (recipient, kind, token and the link
built around it) to a `Mailer`:

- WebhookMailer: POSTs the message as JSON to a delivery service over the shared aiohttp client session
- LoggingMailer: logs the message instead of sending it, for development

Delivery failures are raised as `EmailDeliveryError`; the orchestrator maps them to `EMAIL_SEND_FAILED` or, for
password reset requests, only logs them.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import ClientSession

from social.graze.authcore.core.audit import mask_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundEmail:
    kind: str
    recipient: str
    token: str
    link: str
    expires_at: datetime
    name: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "recipient": self.recipient,
            "name": self.name,
            "token": self.token,
            "link": self.link,
            "expires_at": self.expires_at.isoformat(),
        }


class EmailDeliveryError(Exception):
    @staticmethod
    def rejected(status: int) -> "EmailDeliveryError":
        return EmailDeliveryError(f"error-mailer-1000 delivery service returned {status}")

    @staticmethod
    def unreachable(cause: BaseException) -> "EmailDeliveryError":
        return EmailDeliveryError(
            f"error-mailer-1001 delivery service unreachable: {type(cause).__name__}"
        )


class Mailer(ABC):
    @abstractmethod
    async def send(self, message: OutboundEmail) -> None:
        pass


class WebhookMailer(Mailer):
    def __init__(
        self,
        http_session: ClientSession,
        webhook_url: str,
        timeout_seconds: float = 10.0,
    ):
        self.http_session = http_session
        self.webhook_url = webhook_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def send(self, message: OutboundEmail) -> None:
        try:
            async with self.http_session.post(
                self.webhook_url, json=message.payload(), timeout=self.timeout
            ) as response:
                if response.status >= 300:
                    raise EmailDeliveryError.rejected(response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise EmailDeliveryError.unreachable(e) from e


class LoggingMailer(Mailer):
    async def send(self, message: OutboundEmail) -> None:
        logger.info(
            "email %s for %s: %s", message.kind, mask_email(message.recipient), message.link
        )
