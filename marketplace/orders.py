import logging

from .errors import Forbidden, NotFound, RateLimited
from .settings import ORDER_ACTION_RATE_LIMIT, ORDER_ACTION_RATE_WINDOW_SECONDS
from .transitions import ACTION_ROLES, Trigger, next_state, sources

logger = logging.getLogger(__name__)


def role_of(order: dict, user_id: str):
    if order["buyer_id"] == user_id:
        return "buyer"
    if order["seller_id"] == user_id:
        return "seller"
    return None


class OrderService:
    def __init__(self, store, rate_limiter, notifier, metrics):
        self.store = store
        self.rate_limiter = rate_limiter
        self.notifier = notifier
        self.metrics = metrics

    def get(self, user_id: str, order_id: str) -> dict:
        with self.store.transaction() as tx:
            order = tx.get_order(order_id)
        if order is None:
            raise NotFound("Order not found")
        if role_of(order, user_id) is None:
            raise Forbidden("Unauthorized")
        return order

    def perform(self, user_id: str, order_id: str, action: str) -> dict:
        """Run a buyer/seller action against the order's current state."""
        decision = self.rate_limiter.hit(
            f"order_actions:{user_id}", ORDER_ACTION_RATE_LIMIT, ORDER_ACTION_RATE_WINDOW_SECONDS
        )
        if not decision.allowed:
            raise RateLimited(decision.retry_after)

        trigger = Trigger(action)
        with self.store.transaction() as tx:
            order = tx.get_order(order_id)
            if order is None:
                raise NotFound("Order not found")
            role = role_of(order, user_id)
            if role is None or role not in ACTION_ROLES[trigger]:
                self._refuse(order, action, user_id, role)
            to_state = next_state(order["state"], trigger)
            if to_state is None:
                self._refuse(order, action, user_id, role)
            updated = tx.transition_order(order_id, sources(trigger), to_state)
            if updated is None:
                # state moved between read and write
                self._refuse(order, action, user_id, role)
            tx.record_order_event(order_id, user_id, action, order["state"], updated["state"])

        self.metrics.increment("order_action", action=action)
        logger.info("Order %s: %s by %s %s->%s", order_id, action, role, order["state"], updated["state"])
        self.notifier.order_changed(updated, trigger, actor_role=role)
        return updated

    def _refuse(self, order: dict, action: str, user_id: str, role) -> None:
        self.metrics.increment("order_action_refused", action=action)
        logger.info(
            "Order %s: %s refused for %s (role=%s, state=%s)", order["id"], action, user_id, role, order["state"]
        )
        raise Forbidden("Not allowed")
