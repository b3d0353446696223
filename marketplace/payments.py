"""Checkout: open a provider PaymentIntent for a pending order.

The order only becomes ``paid`` when the provider's webhook says so.
"""

import logging

import stripe

from .errors import BusinessRuleViolation, Forbidden, NotFound
from .settings import PAYMENT_CURRENCY, STRIPE_SECRET_KEY

logger = logging.getLogger(__name__)


class PaymentProviderError(Exception):
    pass


class CheckoutService:
    def __init__(self, store, metrics, api_key: str = STRIPE_SECRET_KEY):
        self.store = store
        self.metrics = metrics
        self.api_key = api_key

    def create_payment_intent(self, user_id: str, order_id: str) -> dict:
        with self.store.transaction() as tx:
            order = tx.get_order(order_id)
        if order is None:
            raise NotFound("Order not found")
        if order["buyer_id"] != user_id:
            raise Forbidden("Unauthorized")
        if order["state"] != "pending":
            raise BusinessRuleViolation("Order cannot be paid for")

        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=order["amount_cents"],
                currency=(order.get("currency") or PAYMENT_CURRENCY).lower(),
                metadata={
                    "order_id": order["id"],
                    "buyer_id": order["buyer_id"],
                    "seller_id": order["seller_id"],
                },
                description=f"Payment for order {order['id']}",
                automatic_payment_methods={"enabled": True},
                idempotency_key=f"order-{order['id']}-payment-intent",
            )
        except stripe.StripeError as exc:
            logger.error("PaymentIntent creation failed for order %s: %s", order_id, exc)
            self.metrics.increment("payment_intent_failed")
            raise PaymentProviderError(str(exc)) from exc

        with self.store.transaction() as tx:
            updated = tx.set_payment_intent(order_id, intent["id"])
        if updated is None:
            raise BusinessRuleViolation("Order cannot be paid for")

        self.metrics.increment("payment_intent_created")
        logger.info("PaymentIntent %s created for order %s", intent["id"], order_id)
        return {"payment_intent_id": intent["id"], "client_secret": intent["client_secret"]}
