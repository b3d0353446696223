"""Payment provider webhook intake.

``WebhookGate`` decides whether a delivery is admitted at all: signature,
freshness, payload shape. ``Reconciler`` applies an admitted event exactly once:

1. claim the event id in the ledger (duplicate -> acknowledged, nothing else)
2. resolve the order the event is about
3. conditional state change from the transition table
4. payment audit row inside a savepoint (best-effort)
5. after commit: notifications and metrics (best-effort)

Steps 1-4 share one database transaction, so an unexpected failure rolls the
claim back too and the provider's retry can process the event again.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import stripe
from pydantic import TypeAdapter, ValidationError

from .errors import WebhookRejected
from .models import (
    HANDLED_EVENT_TYPES,
    ChargeRefundedEvent,
    DisputeEvent,
    EventEnvelope,
    HandledEvent,
    PaymentEvent,
    PaymentIntentEvent,
    RefundUpdatedEvent,
    UnhandledEvent,
)
from .settings import STRIPE_WEBHOOK_SECRET, WEBHOOK_MAX_AGE_SECONDS, WEBHOOK_MAX_FUTURE_SECONDS
from .transitions import Trigger, sources, target

logger = logging.getLogger(__name__)

_handled_events = TypeAdapter(HandledEvent)

_PAYMENT_INTENT_TRIGGERS = {
    "payment_intent.succeeded": Trigger.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": Trigger.PAYMENT_FAILED,
    "payment_intent.canceled": Trigger.PAYMENT_CANCELED,
}

_DISPUTE_CLOSED_TRIGGERS = {
    "lost": Trigger.DISPUTE_LOST,
    "won": Trigger.DISPUTE_WON,
    "warning_closed": Trigger.DISPUTE_WON,
}

_PAYMENT_KIND = {
    Trigger.PAYMENT_SUCCEEDED: "capture",
    Trigger.PAYMENT_FAILED: "failure",
    Trigger.REFUNDED: "refund",
    Trigger.DISPUTE_LOST: "refund",
}

_UNSUCCESSFUL_REFUND = ("failed", "canceled")

_CLOSED_DISPUTE = ("closed_won", "closed_lost")


class WebhookGate:
    def __init__(self, secret: str = STRIPE_WEBHOOK_SECRET, max_age: int = WEBHOOK_MAX_AGE_SECONDS,
                 max_future: int = WEBHOOK_MAX_FUTURE_SECONDS, clock=time.time, metrics=None):
        self.secret = secret
        self.max_age = max_age
        self.max_future = max_future
        self.clock = clock
        self.metrics = metrics

    def admit(self, body: bytes, signature: Optional[str]) -> PaymentEvent:
        """Return the decoded event, or raise WebhookRejected without side effects."""
        try:
            self.verify_signature(body, signature)
            envelope = self._envelope(body)
            self.check_freshness(envelope)
            return self._decode(body, envelope)
        except WebhookRejected as exc:
            if self.metrics is not None:
                self.metrics.increment("webhook_rejected", reason=exc.message)
            raise

    def verify_signature(self, body: bytes, signature: Optional[str]) -> None:
        if not signature:
            logger.warning("Webhook delivery without signature header")
            raise WebhookRejected("Missing signature")
        if not self.secret:
            logger.error("STRIPE_WEBHOOK_SECRET not set; rejecting webhook")
            raise WebhookRejected("Invalid signature")
        try:
            stripe.Webhook.construct_event(body, signature, self.secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise WebhookRejected("Invalid signature")
        except ValueError:
            raise WebhookRejected("Invalid payload")

    def check_freshness(self, envelope: EventEnvelope) -> None:
        age = self.clock() - envelope.created
        if age > self.max_age:
            logger.warning("Rejecting stale webhook event %s (age %.0fs)", envelope.id, age)
            raise WebhookRejected("Stale event")
        if -age > self.max_future:
            logger.warning("Rejecting webhook event %s created %.0fs in the future", envelope.id, -age)
            raise WebhookRejected("Event timestamp is in the future")

    def _envelope(self, body: bytes) -> EventEnvelope:
        try:
            return EventEnvelope.model_validate_json(body)
        except ValidationError as exc:
            logger.warning("Malformed webhook envelope: %s", exc.errors(include_url=False))
            raise WebhookRejected("Malformed event payload")

    def _decode(self, body: bytes, envelope: EventEnvelope):
        if envelope.type not in HANDLED_EVENT_TYPES:
            return UnhandledEvent(
                id=envelope.id, type=envelope.type, created=envelope.created, livemode=envelope.livemode
            )
        try:
            return _handled_events.validate_json(body)
        except ValidationError as exc:
            logger.warning(
                "Malformed %s payload for event %s: %s",
                envelope.type, envelope.id, exc.errors(include_url=False),
            )
            raise WebhookRejected("Malformed event payload")


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    status: str  # applied, duplicate, ignored, skipped, order_not_found
    order_id: Optional[str] = None
    from_state: Optional[str] = None
    to_state: Optional[str] = None

    @property
    def idempotent(self) -> bool:
        return self.status == "duplicate"


def trigger_for(event) -> Optional[Trigger]:
    """Map a decoded event to the order trigger it fires, if any."""
    if isinstance(event, PaymentIntentEvent):
        return _PAYMENT_INTENT_TRIGGERS[event.type]
    if isinstance(event, ChargeRefundedEvent):
        return Trigger.REFUNDED
    if isinstance(event, RefundUpdatedEvent):
        if event.data.object.status in _UNSUCCESSFUL_REFUND:
            return None
        return Trigger.REFUNDED
    if isinstance(event, DisputeEvent):
        if event.type == "charge.dispute.created":
            return Trigger.DISPUTE_OPENED
        if event.type == "charge.dispute.closed":
            return _DISPUTE_CLOSED_TRIGGERS.get(event.data.object.status or "")
    return None


def _payment_amount(event) -> int:
    obj = event.data.object
    if isinstance(event, ChargeRefundedEvent):
        return obj.amount_refunded or obj.amount
    return obj.amount


class Reconciler:
    def __init__(self, store, notifier, metrics):
        self.store = store
        self.notifier = notifier
        self.metrics = metrics

    def process(self, event: PaymentEvent) -> WebhookOutcome:
        started = time.perf_counter()
        outcome, order, trigger = self._apply(event)

        if outcome.status == "applied":
            self.notifier.order_changed(order, trigger)

        elapsed_ms = (time.perf_counter() - started) * 1000
        self.metrics.increment("webhook_processed", event_type=event.type, outcome=outcome.status)
        self.metrics.observe("webhook_duration_ms", elapsed_ms, event_type=event.type)
        logger.info(
            "WEBHOOK event=%s type=%s outcome=%s order=%s %s->%s (%.1fms)",
            outcome.event_id, outcome.event_type, outcome.status, outcome.order_id,
            outcome.from_state, outcome.to_state, elapsed_ms,
        )
        return outcome

    def _apply(self, event):
        trigger = trigger_for(event)

        with self.store.transaction() as tx:
            if not tx.claim_event(event.id, event.type, event.created):
                return WebhookOutcome(event.id, event.type, "duplicate"), None, trigger

            if isinstance(event, UnhandledEvent):
                return WebhookOutcome(event.id, event.type, "ignored"), None, trigger

            order = self._resolve_order(tx, event.data.object)
            if order is None:
                logger.warning("No order found for webhook event %s (%s)", event.id, event.type)
                return WebhookOutcome(event.id, event.type, "order_not_found"), None, trigger

            outcome = WebhookOutcome(event.id, event.type, "ignored", order_id=order["id"],
                                     from_state=order["state"])
            if isinstance(event, DisputeEvent) and self._record_dispute(tx, event, order):
                # the close overtook this "created" delivery; the order must not reopen
                outcome.status = "skipped"
                return outcome, order, trigger
            if trigger is None:
                return outcome, order, trigger

            obj = event.data.object
            payment_intent_id = obj.id if isinstance(event, PaymentIntentEvent) else None
            updated = tx.transition_order(order["id"], sources(trigger), target(trigger),
                                          payment_intent_id=payment_intent_id, charge_id=obj.charge_id)
            if updated is None:
                # Out-of-order or replayed-under-new-id event; the order is already past it.
                outcome.status = "skipped"
                return outcome, order, trigger

            outcome.status = "applied"
            outcome.to_state = updated["state"]
            self._record_payment(tx, event, trigger, updated)
            return outcome, updated, trigger

    def _resolve_order(self, tx, obj):
        order = None
        if obj.order_id:
            order = tx.get_order(obj.order_id)
        if order is None and obj.payment_intent:
            order = tx.find_order_by_payment_intent(obj.payment_intent)
        if order is None and obj.charge_id:
            order = tx.find_order_by_charge(obj.charge_id)
        return order

    def _record_dispute(self, tx, event: DisputeEvent, order: dict) -> bool:
        """Keep the dispute row in step with the event.

        Returns True when a ``created`` event arrives for a dispute that is
        already closed.
        """
        dispute = event.data.object
        if event.type == "charge.dispute.created":
            if tx.open_dispute(dispute.id, order["id"], dispute.amount, dispute.currency, dispute.reason):
                return False
            existing = tx.get_dispute(dispute.id)
            return existing is not None and existing["status"] in _CLOSED_DISPUTE
        if event.type == "charge.dispute.updated":
            status = "under_review"
        elif dispute.status == "lost":
            status = "closed_lost"
        elif dispute.status in ("won", "warning_closed"):
            status = "closed_won"
        else:
            return False
        if not tx.set_dispute_status(dispute.id, order["id"], dispute.amount, dispute.currency,
                                     dispute.reason, status):
            logger.warning("Dispute %s already closed; not moving it to %s", dispute.id, status)
        return False

    def _record_payment(self, tx, event, trigger: Trigger, order: dict) -> None:
        kind = _PAYMENT_KIND.get(trigger)
        if kind is None:
            return
        obj = event.data.object
        try:
            with tx.savepoint():
                tx.record_payment(order["id"], kind, _payment_amount(event), obj.currency, obj.id, event.id)
        except Exception:
            logger.exception("Failed to record %s payment for order %s (event %s)", kind, order["id"], event.id)
            self.metrics.increment("payment_record_failed", kind=kind)
