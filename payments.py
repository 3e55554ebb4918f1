"""
Stripe integration: payment intents, refunds and the signed webhook.

Client-side "payment succeeded" reports are never trusted; an order only becomes
paid through the verified webhook (or the test-mode fallback in orders.mark_paid).
"""
import logging
from typing import Any, Dict, Optional, Tuple

import stripe
from fastapi import Depends
from pymongo.database import Database

from errors import FailedPrecondition, InvalidArgument, NotFound, Unavailable
from notifications import OrderEventBus
from orders import apply_with_retry, confirm_payment, load_order, load_visible_order, record_payment_failure, to_minor_units
from schemas import CurrentUser
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


class StripeGateway:
    """Thin wrapper over the stripe client; every network call goes through here."""

    def __init__(self, api_key: str, webhook_secret: Optional[str] = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def create_intent(self, amount: int, currency: str, metadata: Dict[str, str]) -> Dict[str, str]:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=amount,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            raise Unavailable(f"Payment processor error: {e.user_message or str(e)}")
        return {"id": intent["id"], "client_secret": intent["client_secret"]}

    def refund(self, payment_intent_id: str) -> str:
        try:
            refund = stripe.Refund.create(api_key=self.api_key, payment_intent=payment_intent_id)
        except stripe.StripeError as e:
            raise Unavailable(f"Refund failed: {e.user_message or str(e)}")
        return refund["id"]

    def construct_event(self, payload: bytes, sig_header: Optional[str]):
        if not self.webhook_secret:
            raise FailedPrecondition("STRIPE_WEBHOOK_SECRET missing")
        return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)


def get_payment_gateway(settings: Settings = Depends(get_settings)) -> Optional[StripeGateway]:
    if not settings.payments_configured:
        return None
    return StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret)


def create_intent(database: Database, gateway: Optional[StripeGateway], settings: Settings,
                  user: CurrentUser, order_id: str) -> Dict[str, Any]:
    doc = load_visible_order(database, user, order_id)
    if (doc.get("payment") or {}).get("status") == "paid":
        raise InvalidArgument("Order already paid")
    if doc["status"] == "cancelled":
        raise FailedPrecondition("Order is cancelled")
    if gateway is None:
        raise FailedPrecondition("Payment processor not configured")

    amount = to_minor_units(doc["total_amount"])
    intent = gateway.create_intent(amount, settings.currency, {"orderId": str(doc["_id"]), "userId": user.id})
    logger.info("Payment intent %s created for order %s (%d %s)", intent["id"], doc["_id"], amount, settings.currency)
    return {
        "client_secret": intent["client_secret"],
        "payment_intent_id": intent["id"],
        "amount": amount,
        "currency": settings.currency,
    }


def intent_reference(event) -> Tuple[Optional[str], Optional[str]]:
    """Pull (intent id, orderId metadata) out of a verified event.

    Only subscript and `in` work on every SDK release; StripeObject is not a dict.
    """
    intent = event["data"]["object"]
    intent_id = intent["id"] if "id" in intent else None
    metadata = intent["metadata"] if "metadata" in intent else None
    if metadata is None or "orderId" not in metadata:
        return intent_id, None
    return intent_id, metadata["orderId"]


def handle_webhook(database: Database, bus: Optional[OrderEventBus], gateway: Optional[StripeGateway],
                   payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    if gateway is None:
        raise FailedPrecondition("Payment processor not configured")
    try:
        event = gateway.construct_event(payload, sig_header)
    except FailedPrecondition:
        raise
    except Exception as e:
        # fail closed on anything the verifier dislikes
        logger.warning("Webhook signature verification failed: %s", e)
        raise InvalidArgument(f"Webhook Error: {e}")

    event_type = event["type"]
    if event_type not in (PAYMENT_SUCCEEDED, PAYMENT_FAILED):
        return {"received": True}

    intent_id, order_id = intent_reference(event)
    if not order_id:
        logger.warning("Webhook %s for intent %s carries no orderId", event_type, intent_id)
        return {"received": True}

    def apply():
        try:
            doc = load_order(database, order_id)
        except (NotFound, InvalidArgument):
            logger.warning("Webhook %s for unknown order %s", event_type, order_id)
            return None
        if event_type == PAYMENT_FAILED:
            return record_payment_failure(database, bus, doc)
        try:
            return confirm_payment(database, bus, doc, intent_id)
        except FailedPrecondition as e:
            # e.g. a late replay after refund; acknowledge so the processor stops resending
            logger.warning("Ignoring %s for order %s: %s", event_type, order_id, e.message)
            return None

    apply_with_retry(apply)
    return {"received": True}
