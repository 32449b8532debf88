"""Typed Stripe webhook events handled by the reconciler."""

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from src.modules.ledger.errors import UnsupportedWebhookEvent


class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SubscriptionItem(StripeObject):
    price_id: str | None = None
    current_period_end: int | None = None

    @classmethod
    def from_raw(cls, raw: dict) -> "SubscriptionItem":
        price = raw.get("price") or {}
        return cls(
            price_id=price.get("id") if isinstance(price, dict) else price,
            current_period_end=raw.get("current_period_end"),
        )


class SubscriptionObject(StripeObject):
    id: str
    customer: str | None = None
    status: str
    cancel_at_period_end: bool = False
    current_period_end: int | None = None
    items: dict = Field(default_factory=dict)
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def line_items(self) -> list[SubscriptionItem]:
        return [SubscriptionItem.from_raw(item) for item in self.items.get("data", [])]

    @property
    def period_end(self) -> datetime | None:
        # Newer API versions report the period on the subscription items
        timestamp = self.current_period_end
        if timestamp is None:
            timestamp = next(
                (i.current_period_end for i in self.line_items if i.current_period_end),
                None,
            )
        if timestamp is None:
            return None
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class LastPaymentError(StripeObject):
    code: str | None = None
    message: str | None = None


class PaymentIntentObject(StripeObject):
    id: str
    amount: int = 0
    currency: str = "usd"
    customer: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    last_payment_error: LastPaymentError | None = None


class ChargeObject(StripeObject):
    id: str
    payment_intent: str | None = None
    amount: int = 0
    currency: str = "usd"
    amount_refunded: int = 0
    refunded: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)


class SubscriptionData(StripeObject):
    object: SubscriptionObject


class PaymentIntentData(StripeObject):
    object: PaymentIntentObject


class ChargeData(StripeObject):
    object: ChargeObject


class StripeEvent(StripeObject):
    id: str
    created: int = 0
    livemode: bool = False


class SubscriptionCreated(StripeEvent):
    type: Literal["customer.subscription.created"]
    data: SubscriptionData


class SubscriptionUpdated(StripeEvent):
    type: Literal["customer.subscription.updated"]
    data: SubscriptionData


class SubscriptionDeleted(StripeEvent):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionData


class PaymentSucceeded(StripeEvent):
    type: Literal["payment_intent.succeeded"]
    data: PaymentIntentData


class PaymentFailed(StripeEvent):
    type: Literal["payment_intent.payment_failed"]
    data: PaymentIntentData


class ChargeRefunded(StripeEvent):
    type: Literal["charge.refunded"]
    data: ChargeData


WebhookEvent = Annotated[
    Union[
        SubscriptionCreated,
        SubscriptionUpdated,
        SubscriptionDeleted,
        PaymentSucceeded,
        PaymentFailed,
        ChargeRefunded,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[WebhookEvent] = TypeAdapter(WebhookEvent)

SUPPORTED_EVENT_TYPES = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "charge.refunded",
    }
)


def parse_event(payload: dict) -> WebhookEvent:
    """Validate a raw event, rejecting types the ledger does not reconcile."""
    event_type = payload.get("type")
    if event_type not in SUPPORTED_EVENT_TYPES:
        raise UnsupportedWebhookEvent(
            details={"event_type": event_type, "event_id": payload.get("id")}
        )
    return _event_adapter.validate_python(payload)
