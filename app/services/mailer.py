from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EmailMessage:
    to: str
    subject: str
    body: str


class Mailer(Protocol):
    async def send(self, message: EmailMessage) -> None: ...


class LoggingMailer:
    """Delivery is a log line; an SMTP or provider-backed mailer plugs in here."""

    async def send(self, message: EmailMessage) -> None:
        logger.info("Email to=%s subject=%r", message.to, message.subject)


class InMemoryMailer:
    def __init__(self) -> None:
        self.outbox: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.outbox.append(message)


mailer: Mailer = LoggingMailer()
