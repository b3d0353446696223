"""PostgreSQL persistence.

All writes that guard the order lifecycle are single statements the database
makes atomic: the webhook claim is an ``INSERT ... ON CONFLICT DO NOTHING`` on
the event id primary key and every state change is an ``UPDATE`` filtered on the
current state. Bid placement is the ``place_bid`` function in ``db/schema.sql``.
"""

import json
import uuid
from contextlib import contextmanager

import psycopg
from psycopg.rows import dict_row

from .models import DisputeStatus, PaymentKind
from .settings import DATABASE_URL

ORDER_COLUMNS = (
    "id, listing_id, buyer_id, seller_id, amount_cents, currency, state, "
    "payment_intent_id, charge_id, created_at, updated_at, paid_at, refunded_at"
)


@contextmanager
def get_conn(dsn: str = DATABASE_URL):
    conn = psycopg.connect(dsn, row_factory=dict_row)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _plain(row):
    if row is None:
        return None
    return {k: str(v) if isinstance(v, uuid.UUID) else v for k, v in row.items()}


class PostgresStore:
    def __init__(self, dsn: str = DATABASE_URL):
        self.dsn = dsn

    @contextmanager
    def transaction(self):
        with get_conn(self.dsn) as conn:
            yield PostgresTransaction(conn)


class PostgresTransaction:
    def __init__(self, conn):
        self.conn = conn

    def savepoint(self):
        # Nested inside the implicit transaction, psycopg issues SAVEPOINT here.
        return self.conn.transaction()

    # --- webhook ledger ---

    def claim_event(self, event_id: str, event_type: str, created: int) -> bool:
        row = self.conn.execute(
            "INSERT INTO webhook_events(event_id, event_type, event_created_at) "
            "VALUES (%s, %s, to_timestamp(%s)) "
            "ON CONFLICT (event_id) DO NOTHING RETURNING event_id",
            (event_id, event_type, created),
        ).fetchone()
        return row is not None

    # --- orders ---

    def get_order(self, order_id: str):
        try:
            uuid.UUID(str(order_id))
        except ValueError:
            return None
        row = self.conn.execute(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = %s",
            (order_id,),
        ).fetchone()
        return _plain(row)

    def find_order_by_payment_intent(self, payment_intent_id: str):
        row = self.conn.execute(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE payment_intent_id = %s",
            (payment_intent_id,),
        ).fetchone()
        return _plain(row)

    def find_order_by_charge(self, charge_id: str):
        row = self.conn.execute(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE charge_id = %s",
            (charge_id,),
        ).fetchone()
        return _plain(row)

    def transition_order(self, order_id: str, from_states, to_state, payment_intent_id=None, charge_id=None):
        """Move the order to ``to_state`` only if it is still in one of ``from_states``.

        Returns the updated row, or None when the guard did not match.
        """
        row = self.conn.execute(
            "UPDATE orders SET state = %(to)s, updated_at = NOW(), "
            "paid_at = CASE WHEN %(to)s::text = 'paid' THEN NOW() ELSE paid_at END, "
            "refunded_at = CASE WHEN %(to)s::text = 'refunded' THEN NOW() ELSE refunded_at END, "
            "payment_intent_id = COALESCE(%(pi)s, payment_intent_id), "
            "charge_id = COALESCE(charge_id, %(charge)s) "
            f"WHERE id = %(id)s AND state = ANY(%(from)s::text[]) RETURNING {ORDER_COLUMNS}",
            {
                "to": getattr(to_state, "value", to_state),
                "pi": payment_intent_id,
                "charge": charge_id,
                "id": order_id,
                "from": [getattr(s, "value", s) for s in from_states],
            },
        ).fetchone()
        return _plain(row)

    def set_payment_intent(self, order_id: str, payment_intent_id: str):
        row = self.conn.execute(
            "UPDATE orders SET payment_intent_id = %s, updated_at = NOW() "
            f"WHERE id = %s AND state = 'pending' RETURNING {ORDER_COLUMNS}",
            (payment_intent_id, order_id),
        ).fetchone()
        return _plain(row)

    def record_order_event(self, order_id: str, actor_id: str, action: str, from_state: str, to_state: str):
        self.conn.execute(
            "INSERT INTO order_events(order_id, actor_id, action, from_state, to_state) "
            "VALUES (%s, %s, %s, %s, %s)",
            (order_id, actor_id, action, from_state, to_state),
        )

    # --- payments / disputes / notifications ---

    def record_payment(self, order_id: str, kind: PaymentKind, amount_cents: int, currency: str,
                       provider_ref: str, event_id=None):
        self.conn.execute(
            "INSERT INTO payments(order_id, kind, amount_cents, currency, provider_ref, event_id) "
            "VALUES (%s, %s, %s, %s, %s, %s)",
            (order_id, kind, amount_cents, currency.upper(), provider_ref, event_id),
        )

    def open_dispute(self, dispute_id: str, order_id: str, amount_cents: int, currency: str, reason) -> bool:
        """Insert the dispute as ``created``; False if it is already known."""
        row = self.conn.execute(
            "INSERT INTO disputes(id, order_id, amount_cents, currency, reason, status) "
            "VALUES (%s, %s, %s, %s, %s, 'created') ON CONFLICT (id) DO NOTHING RETURNING id",
            (dispute_id, order_id, amount_cents, currency.upper(), reason),
        ).fetchone()
        return row is not None

    def get_dispute(self, dispute_id: str):
        row = self.conn.execute(
            "SELECT id, order_id, amount_cents, currency, reason, status FROM disputes WHERE id = %s",
            (dispute_id,),
        ).fetchone()
        return _plain(row)

    def set_dispute_status(self, dispute_id: str, order_id: str, amount_cents: int, currency: str, reason,
                           status: DisputeStatus) -> bool:
        """Upsert the dispute at ``status``. A closed dispute is never changed again."""
        row = self.conn.execute(
            "INSERT INTO disputes(id, order_id, amount_cents, currency, reason, status) "
            "VALUES (%s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (id) DO UPDATE SET status = EXCLUDED.status, updated_at = NOW() "
            "WHERE disputes.status NOT IN ('closed_won', 'closed_lost') RETURNING id",
            (dispute_id, order_id, amount_cents, currency.upper(), reason, status),
        ).fetchone()
        return row is not None

    def add_notification(self, user_id: str, kind: str, title: str, message: str, order_id=None):
        self.conn.execute(
            "INSERT INTO notifications(user_id, kind, title, message, order_id) "
            "VALUES (%s, %s, %s, %s, %s)",
            (user_id, kind, title, message, order_id),
        )

    # --- listings / bids ---

    def get_listing(self, listing_id: str):
        try:
            uuid.UUID(str(listing_id))
        except ValueError:
            return None
        row = self.conn.execute(
            "SELECT id, seller_id, title, status, start_cents, reserve_cents, end_at "
            "FROM listings WHERE id = %s",
            (listing_id,),
        ).fetchone()
        return _plain(row)

    def get_high_bid(self, listing_id: str):
        row = self.conn.execute(
            "SELECT id, listing_id, bidder_id, amount_cents, proxy_max_cents, created_at "
            "FROM bids WHERE listing_id = %s ORDER BY amount_cents DESC, created_at ASC LIMIT 1",
            (listing_id,),
        ).fetchone()
        return _plain(row)

    def place_bid(self, listing_id: str, bidder_id: str, amount_cents: int, proxy_max_cents=None) -> dict:
        row = self.conn.execute(
            "SELECT place_bid(%s, %s, %s, %s) AS result",
            (listing_id, bidder_id, amount_cents, proxy_max_cents),
        ).fetchone()
        result = row["result"]
        if isinstance(result, str):
            result = json.loads(result)
        return result
