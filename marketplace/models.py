from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OrderState(str, Enum):
    PENDING = "pending"
    PAYMENT_FAILED = "payment_failed"
    PAID = "paid"
    READY_FOR_HANDOVER = "ready_for_handover"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    COMPLETED = "completed"


OrderAction = Literal["mark_ready", "mark_shipped", "confirm_delivery", "release_funds", "cancel"]
PaymentKind = Literal["capture", "refund", "failure"]
DisputeStatus = Literal["created", "under_review", "closed_won", "closed_lost"]


# --- API bodies ---

class BidRequest(BaseModel):
    listing_id: str = Field(min_length=1)
    amount_cents: int = Field(ge=100)
    proxy_max_cents: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def proxy_covers_amount(self):
        if self.proxy_max_cents is not None and self.proxy_max_cents < self.amount_cents:
            raise ValueError("proxy_max_cents must be at least amount_cents")
        return self


class BidResponse(BaseModel):
    id: str
    listing_id: str
    amount_cents: int
    proxy_max_cents: Optional[int] = None
    is_proxy_bid: bool = False
    outbid_previous: bool = False
    outbid_by_proxy: bool = False
    new_end_at: Optional[datetime] = None


class OrderActionRequest(BaseModel):
    action: OrderAction


class Order(BaseModel):
    id: str
    listing_id: Optional[str] = None
    buyer_id: str
    seller_id: str
    amount_cents: int
    currency: str
    state: OrderState
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class PaymentIntentResponse(BaseModel):
    payment_intent_id: str
    client_secret: str


# --- Payment provider webhook payloads ---

class _ProviderObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: dict[str, str] = {}

    @property
    def order_id(self) -> Optional[str]:
        return self.metadata.get("order_id") or None

    @property
    def charge_id(self) -> Optional[str]:
        return getattr(self, "charge", None)


class PaymentIntentObject(_ProviderObject):
    amount: int = 0
    currency: str = "aud"
    latest_charge: Optional[str] = None
    last_payment_error: Optional[dict] = None
    cancellation_reason: Optional[str] = None

    @property
    def payment_intent(self) -> str:
        return self.id

    @property
    def charge_id(self) -> Optional[str]:
        return self.latest_charge


class ChargeObject(_ProviderObject):
    amount: int = 0
    amount_refunded: int = 0
    currency: str = "aud"
    payment_intent: Optional[str] = None

    @property
    def charge_id(self) -> str:
        return self.id


class RefundObject(_ProviderObject):
    amount: int = 0
    currency: str = "aud"
    status: Optional[str] = None
    charge: Optional[str] = None
    payment_intent: Optional[str] = None


class DisputeObject(_ProviderObject):
    amount: int = 0
    currency: str = "aud"
    reason: Optional[str] = None
    status: Optional[str] = None
    charge: Optional[str] = None
    payment_intent: Optional[str] = None


class EventEnvelope(BaseModel):
    """Fields every provider event carries, whatever its type."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int
    livemode: bool = False
    data: dict


class _Data(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PaymentIntentData(_Data):
    object: PaymentIntentObject


class ChargeData(_Data):
    object: ChargeObject


class RefundData(_Data):
    object: RefundObject


class DisputeData(_Data):
    object: DisputeObject


class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    created: int
    livemode: bool = False


class PaymentIntentEvent(_Event):
    type: Literal[
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "payment_intent.canceled",
    ]
    data: PaymentIntentData


class ChargeRefundedEvent(_Event):
    type: Literal["charge.refunded"]
    data: ChargeData


class RefundUpdatedEvent(_Event):
    type: Literal["charge.refund.updated"]
    data: RefundData


class DisputeEvent(_Event):
    type: Literal[
        "charge.dispute.created",
        "charge.dispute.updated",
        "charge.dispute.closed",
    ]
    data: DisputeData


class UnhandledEvent(_Event):
    type: str


HandledEvent = Annotated[
    Union[PaymentIntentEvent, ChargeRefundedEvent, RefundUpdatedEvent, DisputeEvent],
    Field(discriminator="type"),
]

PaymentEvent = Union[PaymentIntentEvent, ChargeRefundedEvent, RefundUpdatedEvent, DisputeEvent, UnhandledEvent]

HANDLED_EVENT_TYPES = frozenset(
    [
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "payment_intent.canceled",
        "charge.refunded",
        "charge.refund.updated",
        "charge.dispute.created",
        "charge.dispute.updated",
        "charge.dispute.closed",
    ]
)
