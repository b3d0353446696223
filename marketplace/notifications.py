"""In-app notifications written after an order changes state.

Each notification is inserted in its own transaction once the state change has
committed. A failed insert is logged and dropped: it must never turn a
successful transition into a failed request.
"""

import logging
from dataclasses import dataclass

from .models import OrderState
from .transitions import Trigger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notice:
    audience: str  # "buyer" or "seller"
    kind: str
    title: str
    message: str


_BY_STATE = {
    OrderState.PAID: [
        Notice("buyer", "order_paid", "Payment Successful",
               "Your payment has been processed successfully. The seller will be notified to ship your item."),
        Notice("seller", "order_paid", "Payment Received",
               "A buyer has paid for your item. Please ship the item and update the order status."),
    ],
    OrderState.PAYMENT_FAILED: [
        Notice("buyer", "payment_failed", "Payment Failed",
               "Your payment could not be processed. Please try again or contact support."),
    ],
    OrderState.READY_FOR_HANDOVER: [
        Notice("buyer", "order_ready", "Item Ready",
               "The seller has marked your item ready for handover."),
    ],
    OrderState.SHIPPED: [
        Notice("buyer", "order_shipped", "Item Shipped",
               "Your item has been shipped by the seller. You will receive tracking information soon."),
    ],
    OrderState.DELIVERED: [
        Notice("seller", "order_delivered", "Item Delivered",
               "The buyer has confirmed delivery of the item. Funds will be released to your account."),
    ],
    OrderState.DISPUTED: [
        Notice("buyer", "dispute_created", "Dispute Created",
               "A dispute has been created for your order. Our team will review the case."),
        Notice("seller", "dispute_created", "Dispute Created",
               "A dispute has been created for your order. Our team will review the case."),
    ],
    OrderState.REFUNDED: [
        Notice("buyer", "order_refunded", "Refund Processed",
               "Your payment has been refunded."),
        Notice("seller", "order_refunded", "Order Refunded",
               "The payment for this order has been refunded to the buyer."),
    ],
    OrderState.COMPLETED: [
        Notice("seller", "funds_released", "Funds Released",
               "The funds for this order have been released to you."),
    ],
}

_DISPUTE_RESOLVED = {
    Trigger.DISPUTE_WON: [
        Notice("buyer", "dispute_resolved", "Dispute Resolved",
               "The dispute on your order was closed in the seller's favour."),
        Notice("seller", "dispute_resolved", "Dispute Resolved",
               "The dispute on your order was closed in your favour. Funds will be released."),
    ],
    Trigger.DISPUTE_LOST: [
        Notice("buyer", "dispute_resolved", "Dispute Resolved",
               "The dispute on your order was closed in your favour and the payment refunded."),
        Notice("seller", "dispute_resolved", "Dispute Resolved",
               "The dispute on your order was closed in the buyer's favour and the payment refunded."),
    ],
}


def notices_for(to_state, trigger: Trigger, actor_role=None) -> list:
    """Who hears about an order reaching ``to_state`` through ``trigger``."""
    if trigger in _DISPUTE_RESOLVED:
        return list(_DISPUTE_RESOLVED[trigger])
    if OrderState(to_state) == OrderState.CANCELLED:
        if trigger == Trigger.PAYMENT_CANCELED:
            return [Notice("buyer", "payment_canceled", "Payment Cancelled",
                           "The payment for your order was cancelled.")]
        # a party cancelled: tell the other one
        other = "seller" if actor_role == "buyer" else "buyer"
        return [Notice(other, "order_cancelled", "Order Cancelled",
                       f"The {actor_role or 'other party'} cancelled this order.")]
    return list(_BY_STATE.get(OrderState(to_state), []))


class Notifier:
    def __init__(self, store, metrics):
        self.store = store
        self.metrics = metrics

    def order_changed(self, order: dict, trigger: Trigger, actor_role=None) -> int:
        """Write notifications for ``order``'s new state; returns how many were stored."""
        sent = 0
        for notice in notices_for(order["state"], trigger, actor_role):
            user_id = order["buyer_id"] if notice.audience == "buyer" else order["seller_id"]
            try:
                with self.store.transaction() as tx:
                    tx.add_notification(user_id, notice.kind, notice.title, notice.message, order["id"])
            except Exception:
                logger.exception(
                    "Failed to store %s notification for order %s", notice.kind, order["id"]
                )
                self.metrics.increment("notification_failed", kind=notice.kind)
                continue
            sent += 1
            self.metrics.increment("notification_sent", kind=notice.kind)
        return sent
