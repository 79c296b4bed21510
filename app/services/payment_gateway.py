"""Payment gateway boundary.

The enrollment transaction charges the card while it holds the course
lock, so the gateway call sits inside the unit of work: a decline rolls
back the student, enrollment and seat together.

The transaction id is the idempotency key.  A retried unit of work charges
again under the same id and gets the first capture back, so retries never
double-charge.  When the unit of work still fails after a capture, the
service refunds that id; refunding an id with nothing captured is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

logger = logging.getLogger(__name__)


class PaymentDeclined(Exception):
    pass


@dataclass(frozen=True, slots=True)
class Charge:
    amount: Decimal
    currency: str
    method: str
    transaction_id: str
    card_last_four: str | None = None


@dataclass(frozen=True, slots=True)
class ChargeResult:
    gateway: str
    gateway_transaction_id: str


class PaymentGateway(Protocol):
    async def charge(self, charge: Charge) -> ChargeResult: ...

    async def refund(self, transaction_id: str) -> bool:
        """Return a captured charge.  False when nothing is captured under the id."""
        ...


class SimulatedPaymentGateway:
    """Approves every charge after ``latency`` seconds.

    Set ``decline`` to make every charge fail (tests, demo of rollback).
    """

    name = "simulated"

    def __init__(self, latency: float = 0.0, decline: bool = False) -> None:
        self.latency = latency
        self.decline = decline
        self.charges: list[Charge] = []
        self.refunds: list[str] = []
        self._captured: dict[str, ChargeResult] = {}

    async def charge(self, charge: Charge) -> ChargeResult:
        previous = self._captured.get(charge.transaction_id)
        if previous is not None:
            return previous
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.decline:
            logger.warning(
                "Charge declined for transaction=%s", charge.transaction_id
            )
            raise PaymentDeclined("card declined")
        result = ChargeResult(
            gateway=self.name,
            gateway_transaction_id=f"ch_{secrets.token_hex(12)}",
        )
        self.charges.append(charge)
        self._captured[charge.transaction_id] = result
        return result

    async def refund(self, transaction_id: str) -> bool:
        if transaction_id not in self._captured or transaction_id in self.refunds:
            return False
        self.refunds.append(transaction_id)
        logger.info("Refunded transaction=%s", transaction_id)
        return True


payment_gateway: PaymentGateway = SimulatedPaymentGateway()
