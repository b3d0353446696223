"""Order lifecycle: one table of every allowed state change.

Webhook deliveries arrive in any order, so each trigger lists the states it may
move an order out of. Anything not listed is a no-op for that trigger. Every
row moves strictly forward in ``LIFECYCLE_RANK``; terminal states are never a
source, which is what keeps a late ``payment_failed`` from undoing ``paid``.
"""

from enum import Enum
from typing import Optional

from .models import OrderState

S = OrderState


class Trigger(str, Enum):
    # provider events
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELED = "payment_canceled"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_LOST = "dispute_lost"
    DISPUTE_WON = "dispute_won"
    REFUNDED = "refunded"
    # buyer / seller actions
    MARK_READY = "mark_ready"
    MARK_SHIPPED = "mark_shipped"
    CONFIRM_DELIVERY = "confirm_delivery"
    RELEASE_FUNDS = "release_funds"
    CANCEL = "cancel"


LIFECYCLE_RANK = {
    S.PENDING: 0,
    S.PAYMENT_FAILED: 1,
    S.PAID: 2,
    S.READY_FOR_HANDOVER: 3,
    S.SHIPPED: 4,
    S.DELIVERED: 5,
    S.DISPUTED: 6,
    S.CANCELLED: 7,
    S.REFUNDED: 8,
    S.COMPLETED: 8,
}

TERMINAL_STATES = frozenset([S.COMPLETED, S.REFUNDED, S.CANCELLED])

_AFTER_PAYMENT = frozenset([S.PAID, S.READY_FOR_HANDOVER, S.SHIPPED, S.DELIVERED])

TRANSITIONS: dict[Trigger, tuple[frozenset, OrderState]] = {
    Trigger.PAYMENT_SUCCEEDED: (frozenset([S.PENDING]), S.PAID),
    Trigger.PAYMENT_FAILED: (frozenset([S.PENDING]), S.PAYMENT_FAILED),
    Trigger.PAYMENT_CANCELED: (frozenset([S.PENDING]), S.CANCELLED),
    Trigger.DISPUTE_OPENED: (_AFTER_PAYMENT, S.DISPUTED),
    # a close can overtake its own "created" delivery
    Trigger.DISPUTE_LOST: (_AFTER_PAYMENT | {S.DISPUTED}, S.REFUNDED),
    Trigger.DISPUTE_WON: (frozenset([S.DISPUTED]), S.COMPLETED),
    Trigger.REFUNDED: (_AFTER_PAYMENT | {S.DISPUTED}, S.REFUNDED),
    Trigger.MARK_READY: (frozenset([S.PAID]), S.READY_FOR_HANDOVER),
    Trigger.MARK_SHIPPED: (frozenset([S.READY_FOR_HANDOVER]), S.SHIPPED),
    Trigger.CONFIRM_DELIVERY: (frozenset([S.SHIPPED]), S.DELIVERED),
    Trigger.RELEASE_FUNDS: (frozenset([S.DELIVERED]), S.COMPLETED),
    Trigger.CANCEL: (frozenset([S.PENDING, S.PAYMENT_FAILED, S.PAID]), S.CANCELLED),
}

# Which party may fire each user action
ACTION_ROLES = {
    Trigger.MARK_READY: frozenset(["seller"]),
    Trigger.MARK_SHIPPED: frozenset(["seller"]),
    Trigger.CONFIRM_DELIVERY: frozenset(["buyer"]),
    Trigger.RELEASE_FUNDS: frozenset(["buyer"]),
    Trigger.CANCEL: frozenset(["buyer", "seller"]),
}


def sources(trigger: Trigger) -> frozenset:
    return TRANSITIONS[trigger][0]


def target(trigger: Trigger) -> OrderState:
    return TRANSITIONS[trigger][1]


def next_state(current, trigger: Trigger) -> Optional[OrderState]:
    """Return the state ``trigger`` moves ``current`` to, or None if it may not."""
    allowed, to_state = TRANSITIONS[trigger]
    if OrderState(current) not in allowed:
        return None
    return to_state


def is_forward(from_state, to_state) -> bool:
    return LIFECYCLE_RANK[OrderState(to_state)] > LIFECYCLE_RANK[OrderState(from_state)]
