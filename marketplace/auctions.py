"""Bid placement.

Amount rules are checked here so the caller gets a precise reason; the write
itself goes through the database's ``place_bid`` routine, which locks the
listing row and re-checks the high bid, so two racing bids cannot both win.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import BusinessRuleViolation, NotFound, RateLimited
from .settings import BID_RATE_LIMIT, BID_RATE_WINDOW_SECONDS

logger = logging.getLogger(__name__)

# (upper bound of current bid, exclusive; increment), all in cents
BID_INCREMENTS = (
    (1000, 50),
    (5000, 100),
    (10000, 250),
    (25000, 500),
    (50000, 1000),
    (100000, 2500),
    (250000, 5000),
    (500000, 10000),
)
TOP_INCREMENT = 25000


def _dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


def bid_increment(current_cents: int) -> int:
    for upper, increment in BID_INCREMENTS:
        if current_cents < upper:
            return increment
    return TOP_INCREMENT


def minimum_bid(current_cents: Optional[int], start_cents: int = 0) -> int:
    """Lowest acceptable next bid; with no bids yet that is the start price."""
    if current_cents is None:
        return max(start_cents, bid_increment(0))
    return current_cents + bid_increment(current_cents)


def validate_bid_amount(amount_cents: int, current_cents: Optional[int], start_cents: int = 0,
                        reserve_cents: Optional[int] = None) -> None:
    floor = minimum_bid(current_cents, start_cents)
    if amount_cents < floor:
        raise BusinessRuleViolation(f"Minimum bid is {_dollars(floor)}", minimum_bid=floor)
    if reserve_cents and amount_cents < reserve_cents:
        raise BusinessRuleViolation(
            f"Bid must meet reserve price of {_dollars(reserve_cents)}", minimum_bid=reserve_cents
        )


def _as_utc(value) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BidService:
    def __init__(self, store, rate_limiter, metrics, now=None):
        self.store = store
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.now = now or (lambda: datetime.now(timezone.utc))

    def place(self, user_id: str, listing_id: str, amount_cents: int, proxy_max_cents=None) -> dict:
        decision = self.rate_limiter.hit(f"bids:{user_id}", BID_RATE_LIMIT, BID_RATE_WINDOW_SECONDS)
        if not decision.allowed:
            self.metrics.increment("bid_rejected", reason="rate_limited")
            raise RateLimited(decision.retry_after)

        with self.store.transaction() as tx:
            listing = tx.get_listing(listing_id)
            if listing is None:
                raise NotFound("Listing not found")
            high_bid = tx.get_high_bid(listing_id)

        try:
            self._check_listing(user_id, listing)
            validate_bid_amount(
                amount_cents,
                high_bid["amount_cents"] if high_bid else None,
                listing.get("start_cents") or 0,
                listing.get("reserve_cents"),
            )
        except BusinessRuleViolation as exc:
            self.metrics.increment("bid_rejected", reason="validation")
            logger.info("Bid by %s on %s rejected: %s", user_id, listing_id, exc.message)
            raise

        with self.store.transaction() as tx:
            result = tx.place_bid(listing_id, user_id, amount_cents, proxy_max_cents)

        if not result.get("success"):
            reason = result.get("error") or "Failed to place bid"
            self.metrics.increment("bid_rejected", reason="conflict")
            logger.info("Bid by %s on %s refused by place_bid: %s", user_id, listing_id, reason)
            raise BusinessRuleViolation(reason)

        self.metrics.increment("bid_placed")
        logger.info("Bid %s placed by %s on %s for %d", result.get("bid_id"), user_id, listing_id, amount_cents)
        return {
            "id": str(result["bid_id"]),
            "listing_id": listing_id,
            "amount_cents": result.get("amount_cents", amount_cents),
            "proxy_max_cents": proxy_max_cents,
            "is_proxy_bid": bool(result.get("is_proxy_bid")),
            "outbid_previous": bool(result.get("outbid_previous")),
            "outbid_by_proxy": bool(result.get("outbid_by_proxy")),
            "new_end_at": result.get("new_end_at"),
        }

    def _check_listing(self, user_id: str, listing: dict) -> None:
        if listing["seller_id"] == user_id:
            raise BusinessRuleViolation("You cannot bid on your own listing")
        if listing["status"] != "live":
            raise BusinessRuleViolation("Auction is not live")
        end_at = _as_utc(listing.get("end_at"))
        if end_at is not None and end_at <= self.now():
            raise BusinessRuleViolation("Auction has ended")
