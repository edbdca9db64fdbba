"""
Mercado Pago payment notifications.

Notifications are delivered at least once and carry only the payment id; the
payment itself is fetched back from Mercado Pago before anything is written.
"""

import logging
from typing import Optional

from pymongo.database import Database

from lifecycle import approve_payment, refund_payment
from odds_engine import OddsEngine
from payments import MercadoPagoClient

logger = logging.getLogger(__name__)

REFUND_STATUSES = ("refunded", "charged_back")


def notification_payment_id(body: Optional[dict], query: dict) -> Optional[str]:
    """Payment id of a notification, or None when it is not about a payment.

    Handles the webhook body ({"type": "payment", "data": {"id": ...}}) and the
    legacy IPN query string (?topic=payment&id=...).
    """
    body = body or {}
    topic = body.get("type") or body.get("topic") or query.get("type") or query.get("topic")
    if topic != "payment":
        return None
    data = body.get("data") or {}
    payment_id = data.get("id") or query.get("data.id") or query.get("id")
    return str(payment_id) if payment_id else None


class WebhookHandler:
    def __init__(self, db: Database, payments: MercadoPagoClient, engine: OddsEngine):
        self.db = db
        self.payments = payments
        self.engine = engine

    def handle(self, body: Optional[dict], query: Optional[dict] = None) -> dict:
        """Process one notification.

        PaymentProviderError from the payment lookup propagates so the caller
        can answer with a retryable status.
        """
        payment_id = notification_payment_id(body, query or {})
        if payment_id is None:
            return {"status": "ignored", "reason": "not a payment notification"}

        payment = self.payments.get_payment(payment_id)
        payment.setdefault("id", payment_id)
        payment_status = payment.get("status")

        if payment_status == "approved":
            outcome = approve_payment(self.db, self.engine, payment)
        elif payment_status in REFUND_STATUSES:
            outcome = refund_payment(self.db, self.engine, payment_id)
        else:
            logger.info("Payment %s is %s, nothing to do", payment_id, payment_status)
            outcome = "ignored"
        return {"status": outcome, "payment_id": payment_id}
