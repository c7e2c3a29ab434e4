"""
Payment reconciliation with Stripe.

An order's payment_status moves along

    pending -> paid -> refunded
    pending -> failed

and is driven from three places: the client confirming an intent it just
paid, Stripe's webhook (authoritative), and an admin refund. Every move is a
conditional update on the current payment_status, so webhook retries and
out-of-order deliveries can only re-apply a state or be ignored.
"""
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

import stripe
from pymongo import ReturnDocument

from access import can_refund
from config import Settings
from database import Database, utcnow
from errors import (
    ExternalServiceError,
    Forbidden,
    InvalidRequest,
    NotFound,
    PaymentProviderUnavailable,
    WebhookProcessingError,
    WebhookSignatureError,
)
from orders import OrderService

logger = logging.getLogger(__name__)

# payment_status values each target may be entered from
PAYMENT_TRANSITIONS = {
    "paid": ("pending",),
    "failed": ("pending",),
    "refunded": ("paid",),
}

EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class PaymentIntent:
    id: str
    status: str
    amount: int
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class Refund:
    id: str
    amount: int
    status: str


@contextmanager
def _provider_call(action: str):
    try:
        yield
    except stripe.APIConnectionError as e:
        logger.error("Stripe unreachable during %s: %s", action, e)
        raise PaymentProviderUnavailable(detail=str(e))
    except stripe.StripeError as e:
        logger.error("Stripe error during %s: %s", action, e)
        raise ExternalServiceError(detail=str(e))


class StripeGateway:
    """The only code that talks to Stripe."""

    def __init__(self, api_key: str, webhook_secret: str, currency: str = "usd",
                 timeout: float = 10.0, max_retries: int = 0):
        self.webhook_secret = webhook_secret
        self.currency = currency
        self._client = None
        if api_key:
            self._client = stripe.StripeClient(
                api_key,
                http_client=stripe.RequestsClient(timeout=timeout),
                max_network_retries=max_retries,
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(
            settings.stripe_secret_key,
            settings.stripe_webhook_secret,
            currency=settings.stripe_currency,
            timeout=settings.stripe_timeout,
            max_retries=settings.stripe_max_retries,
        )

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            logger.error("Payment call attempted without STRIPE_SECRET_KEY")
            raise ExternalServiceError(detail="STRIPE_SECRET_KEY is not configured")
        return self._client

    def create_payment_intent(self, amount: int, metadata: Dict[str, str]) -> PaymentIntent:
        with _provider_call("payment intent creation"):
            intent = self.client.payment_intents.create(
                params={"amount": amount, "currency": self.currency, "metadata": metadata}
            )
        return _to_intent(intent)

    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        with _provider_call("payment intent lookup"):
            intent = self.client.payment_intents.retrieve(intent_id)
        return _to_intent(intent)

    def create_refund(self, payment_intent_id: str, amount: int, metadata: Dict[str, str]) -> Refund:
        with _provider_call("refund"):
            refund = self.client.refunds.create(
                params={
                    "payment_intent": payment_intent_id,
                    "amount": amount,
                    "reason": "requested_by_customer",
                    "metadata": metadata,
                },
                options={"idempotency_key": f"refund-{payment_intent_id}-{amount}"},
            )
        return Refund(id=refund.id, amount=refund.amount, status=refund.status)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify a webhook delivery and decode its event."""
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError:
            raise WebhookSignatureError("Payload is not valid UTF-8")
        try:
            stripe.WebhookSignature.verify_header(
                text, signature, self.webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(str(e))
        try:
            event = json.loads(text)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}")
        if not isinstance(event, dict):
            raise WebhookSignatureError("Invalid payload: expected an event object")
        return event


def _to_intent(obj) -> PaymentIntent:
    return PaymentIntent(
        id=obj.id,
        status=obj.status,
        amount=obj.amount,
        client_secret=getattr(obj, "client_secret", None),
        metadata=dict(obj.metadata or {}),
    )


class PaymentService:
    def __init__(self, db: Database, orders: OrderService, gateway: StripeGateway):
        self.db = db
        self.orders = orders
        self.gateway = gateway
        self._webhook_handlers = {
            EVENT_PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            EVENT_PAYMENT_FAILED: self._on_payment_failed,
        }

    def _transition(self, order: dict, target: str, changes: dict) -> Optional[dict]:
        """Move `order` to `target` payment_status.

        Returns the order as stored afterwards if it is in `target` (either
        just moved there or already there), otherwise None.
        """
        updated = self.db["order"].find_one_and_update(
            {"_id": order["_id"], "payment_status": {"$in": list(PAYMENT_TRANSITIONS[target])}},
            {"$set": {**changes, "payment_status": target, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            return updated
        current = self.db["order"].find_one({"_id": order["_id"]})
        if current is not None and current.get("payment_status") == target:
            return current
        return None

    def create_payment_intent(self, user: dict, order_id: Optional[str]) -> dict:
        if not order_id:
            raise InvalidRequest("Order ID is required")
        order = self.orders.find_owned(str(user["_id"]), order_id)
        payment_status = order.get("payment_status")
        if payment_status == "paid":
            raise InvalidRequest("Order is already paid")
        if payment_status != "pending":
            raise InvalidRequest(f"Order payment is {payment_status} and cannot be retried, please place a new order")

        intent = self.gateway.create_payment_intent(
            to_minor_units(order["total_amount"]),
            {"order_id": str(order["_id"]), "user_id": str(user["_id"])},
        )
        return {"client_secret": intent.client_secret, "order_id": str(order["_id"]), "payment_intent_id": intent.id}

    def confirm_payment(self, user: dict, order_id: Optional[str], payment_intent_id: Optional[str]) -> dict:
        if not order_id or not payment_intent_id:
            raise InvalidRequest("Order ID and Payment Intent ID are required")
        order = self.orders.find_owned(str(user["_id"]), order_id)

        intent = self.gateway.retrieve_payment_intent(payment_intent_id)
        if intent.metadata.get("order_id") != str(order["_id"]):
            raise InvalidRequest("Payment intent does not belong to this order")
        if intent.status != "succeeded":
            raise InvalidRequest("Payment not completed")

        updated = self._transition(order, "paid", {"payment_id": intent.id, "status": "processing"})
        if updated is None:
            raise InvalidRequest(f"Order payment is {order.get('payment_status')}")
        logger.info("Payment %s confirmed for order %s", intent.id, order.get("order_number"))
        return self.orders.present_one(updated)

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        try:
            event = self.gateway.construct_event(payload, signature)
        except WebhookSignatureError as e:
            logger.warning("Webhook signature verification failed: %s", e.reason)
            raise

        event_type = event.get("type")
        handler = self._webhook_handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled event type: %s", event_type)
            return {"received": True}

        try:
            intent = event["data"]["object"]
            handler(intent)
        except Exception:
            logger.exception("Error processing webhook event %s (%s)", event.get("id"), event_type)
            raise WebhookProcessingError(event_type)
        return {"received": True}

    def _order_for_intent(self, intent: dict) -> Optional[dict]:
        order_id = (intent.get("metadata") or {}).get("order_id")
        order = self.orders.find(order_id) if order_id else None
        if order is None:
            logger.info("Webhook for intent %s references no known order (%r)", intent.get("id"), order_id)
        return order

    def _on_payment_succeeded(self, intent: dict) -> None:
        order = self._order_for_intent(intent)
        if order is None:
            return
        if self._transition(order, "paid", {"payment_id": intent["id"], "status": "processing"}) is None:
            logger.warning("Ignoring payment success for order %s in payment state %s",
                           order.get("order_number"), order.get("payment_status"))
            return
        logger.info("Order %s marked paid by webhook", order.get("order_number"))

    def _on_payment_failed(self, intent: dict) -> None:
        order = self._order_for_intent(intent)
        if order is None:
            return
        if self._transition(order, "failed", {"payment_id": intent["id"]}) is None:
            logger.warning("Ignoring payment failure for order %s in payment state %s",
                           order.get("order_number"), order.get("payment_status"))
            return
        logger.info("Order %s marked failed by webhook", order.get("order_number"))

    def refund(self, actor: dict, order_id: Optional[str], reason: Optional[str], amount: Optional[float] = None) -> dict:
        if not can_refund(actor.get("role", "user")):
            raise Forbidden("Not authorized as admin or super admin")
        if not order_id or not reason:
            raise InvalidRequest("Order ID and reason are required")
        order = self.orders.find(order_id)
        if not order:
            raise NotFound("Order")
        if order.get("payment_status") != "paid":
            raise InvalidRequest("Order is not paid")
        if not order.get("payment_id"):
            raise InvalidRequest("No payment ID found for this order")

        total = order["total_amount"]
        if amount is not None and not 0 < to_minor_units(amount) <= to_minor_units(total):
            raise InvalidRequest("Refund amount must be positive and no more than the order total")
        minor = to_minor_units(total if amount is None else amount)

        refund = self.gateway.create_refund(
            order["payment_id"], minor, {"order_id": str(order["_id"]), "reason": reason}
        )
        updated = self._transition(order, "refunded", {
            "status": "cancelled",
            "cancelled_at": utcnow(),
            "cancelled_by": str(actor["_id"]),
            "cancel_reason": reason,
        })
        if updated is None:
            logger.error("Refund %s issued but order %s left paid state concurrently", refund.id, order.get("order_number"))
        else:
            logger.info("Refund %s issued for order %s (%d minor units)", refund.id, order.get("order_number"), minor)
        return {"id": refund.id, "amount": refund.amount / 100, "status": refund.status}
