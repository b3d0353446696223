"""Buyer/seller order actions and order reads."""

from __future__ import annotations

import uuid

import pytest


def _act(client, auth, order, user_id, action):
    return client.post(f"/orders/{order['id']}/actions", json={"action": action}, headers=auth(user_id))


class TestActions:
    def test_seller_marks_ready(self, client, store, auth):
        order = store.add_order(state="paid")
        resp = _act(client, auth, order, order["seller_id"], "mark_ready")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["state"] == "ready_for_handover"
        assert body["order"]["id"] == order["id"]
        assert store.order_events[-1] == {
            "order_id": order["id"], "actor_id": order["seller_id"], "action": "mark_ready",
            "from_state": "paid", "to_state": "ready_for_handover",
        }

    def test_full_handover(self, client, store, auth):
        order = store.add_order(state="paid")
        steps = [
            (order["seller_id"], "mark_ready", "ready_for_handover"),
            (order["seller_id"], "mark_shipped", "shipped"),
            (order["buyer_id"], "confirm_delivery", "delivered"),
            (order["buyer_id"], "release_funds", "completed"),
        ]
        for user_id, action, expected in steps:
            resp = _act(client, auth, order, user_id, action)
            assert resp.status_code == 200, resp.json()
            assert resp.json()["state"] == expected
        assert len(store.order_events) == 4

    @pytest.mark.parametrize("party,action", [
        ("buyer_id", "mark_ready"),
        ("buyer_id", "mark_shipped"),
        ("seller_id", "confirm_delivery"),
        ("seller_id", "release_funds"),
    ])
    def test_wrong_party_refused(self, client, store, auth, party, action):
        order = store.add_order(state="paid")
        resp = _act(client, auth, order, order[party], action)
        assert resp.status_code == 403
        assert resp.json() == {"error": "Not allowed"}
        assert store.orders[order["id"]]["state"] == "paid"

    def test_stranger_refused(self, client, store, auth):
        order = store.add_order(state="paid")
        resp = _act(client, auth, order, str(uuid.uuid4()), "cancel")
        assert resp.status_code == 403

    def test_ship_before_ready_refused(self, client, store, auth):
        order = store.add_order(state="paid")
        resp = _act(client, auth, order, order["seller_id"], "mark_shipped")
        assert resp.status_code == 403
        assert store.order_events == []

    @pytest.mark.parametrize("state", ["pending", "payment_failed", "paid"])
    def test_cancel_allowed(self, client, store, auth, state):
        order = store.add_order(state=state)
        resp = _act(client, auth, order, order["buyer_id"], "cancel")
        assert resp.status_code == 200
        assert resp.json()["state"] == "cancelled"

    @pytest.mark.parametrize("state", ["shipped", "disputed", "completed", "refunded"])
    def test_cancel_refused_later(self, client, store, auth, state):
        order = store.add_order(state=state)
        resp = _act(client, auth, order, order["seller_id"], "cancel")
        assert resp.status_code == 403
        assert store.orders[order["id"]]["state"] == state

    def test_unknown_action(self, client, store, auth):
        order = store.add_order(state="paid")
        resp = _act(client, auth, order, order["seller_id"], "teleport")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid request"

    def test_unknown_order(self, client, auth):
        resp = client.post(f"/orders/{uuid.uuid4()}/actions", json={"action": "cancel"}, headers=auth(str(uuid.uuid4())))
        assert resp.status_code == 404
        assert resp.json() == {"error": "Order not found"}

    def test_rate_limited(self, client, store, auth, monkeypatch):
        monkeypatch.setattr("marketplace.orders.ORDER_ACTION_RATE_LIMIT", 1)
        order = store.add_order(state="paid")
        assert _act(client, auth, order, order["seller_id"], "mark_ready").status_code == 200
        resp = _act(client, auth, order, order["seller_id"], "mark_shipped")
        assert resp.status_code == 429
        assert "Retry-After" in resp.headers


class TestNotifications:
    def test_shipped_notifies_buyer(self, client, store, auth):
        order = store.add_order(state="ready_for_handover")
        _act(client, auth, order, order["seller_id"], "mark_shipped")
        assert [n["kind"] for n in store.notifications_for(order["buyer_id"])] == ["order_shipped"]
        assert store.notifications_for(order["seller_id"]) == []

    def test_cancel_notifies_other_party(self, client, store, auth):
        order = store.add_order(state="paid")
        _act(client, auth, order, order["buyer_id"], "cancel")
        (notice,) = store.notifications_for(order["seller_id"])
        assert notice["kind"] == "order_cancelled"
        assert notice["message"] == "The buyer cancelled this order."

    def test_notification_failure_does_not_fail_action(self, client, store, auth, metrics):
        order = store.add_order(state="shipped")
        store.fail_on.add("add_notification")
        resp = _act(client, auth, order, order["buyer_id"], "confirm_delivery")
        assert resp.status_code == 200
        assert store.orders[order["id"]]["state"] == "delivered"
        assert metrics.count("notification_failed", kind="order_delivered") == 1


class TestGetOrder:
    def test_buyer_reads_order(self, client, store, auth):
        order = store.add_order(state="paid")
        resp = client.get(f"/orders/{order['id']}", headers=auth(order["buyer_id"]))
        assert resp.status_code == 200
        assert resp.json()["state"] == "paid"
        assert resp.json()["amount_cents"] == 5000

    def test_seller_reads_order(self, client, store, auth):
        order = store.add_order()
        assert client.get(f"/orders/{order['id']}", headers=auth(order["seller_id"])).status_code == 200

    def test_stranger_cannot_read(self, client, store, auth):
        order = store.add_order()
        resp = client.get(f"/orders/{order['id']}", headers=auth(str(uuid.uuid4())))
        assert resp.status_code == 403
        assert resp.json() == {"error": "Unauthorized"}

    def test_missing_order(self, client, auth):
        resp = client.get(f"/orders/{uuid.uuid4()}", headers=auth(str(uuid.uuid4())))
        assert resp.status_code == 404
