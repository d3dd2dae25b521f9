"""
Confirmation notifiers. Delivery is best effort; the monitor never rolls a
confirmation back because a notifier failed.
"""

from datetime import UTC, datetime

import httpx

from refpay.crypto.interfaces import Notifier
from refpay.logging_config import get_logger
from refpay.models import PaymentRecord

logger = get_logger("notifier")

CONFIRMED_EVENT = "payment.confirmed"


class LoggingNotifier:
    async def on_confirmed(self, payment: PaymentRecord) -> None:
        logger.info(
            CONFIRMED_EVENT,
            reference=payment.reference,
            user_id=payment.user_id,
            signature=payment.signature,
        )


class WebhookNotifier:
    """POSTs a ``payment.confirmed`` event to a merchant webhook."""

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def on_confirmed(self, payment: PaymentRecord) -> None:
        payload = {
            "event": CONFIRMED_EVENT,
            "data": {
                "reference": payment.reference,
                "amount": str(payment.amount),
                "total_amount_due": str(payment.total_amount_due),
                "currency": payment.currency.value,
                "signature": payment.signature,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        }
        response = await self.client.post(self.url, json=payload)
        response.raise_for_status()
        logger.info(
            "webhook_delivered",
            reference=payment.reference,
            status_code=response.status_code,
        )

    async def close(self) -> None:
        await self.client.aclose()


class CompositeNotifier:
    """Fans one confirmation out to several notifiers; one failing does not stop the rest."""

    def __init__(self, notifiers: list[Notifier]):
        self.notifiers = notifiers

    async def on_confirmed(self, payment: PaymentRecord) -> None:
        for notifier in self.notifiers:
            try:
                await notifier.on_confirmed(payment)
            except Exception as e:
                logger.warning(
                    "notifier_failed",
                    notifier=type(notifier).__name__,
                    reference=payment.reference,
                    error=str(e),
                )
