"""Typed views over the gateway webhook payloads.

Razorpay wraps every entity as ``{"event": ..., "payload": {"<kind>": {"entity": {...}}}}``.
Each event kind we act on gets its own model, anything else decodes to
``IgnoredEvent`` so new gateway event types never break delivery.
"""
from typing import Any, Dict, Optional, Type, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class _Entity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("amount", mode="before", check_fields=False)
    @classmethod
    def _coerce_amount(cls, v):
        # gateway sometimes sends minor unit amounts as strings
        if isinstance(v, str):
            return int(v) if v.strip() else 0
        return v


class PaymentEntity(_Entity):
    id: str
    order_id: Optional[str] = None
    status: Optional[str] = None
    amount: int = 0
    method: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("notes", mode="before")
    @classmethod
    def _notes_dict(cls, v):
        # empty notes arrive as [] from the gateway
        return v if isinstance(v, dict) else {}


class RefundEntity(_Entity):
    id: str
    payment_id: str
    amount: int = 0
    status: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("notes", mode="before")
    @classmethod
    def _notes_dict(cls, v):
        return v if isinstance(v, dict) else {}


class GatewayOrderEntity(_Entity):
    id: str
    status: Optional[str] = None
    amount: int = 0


class PaymentCapturedEvent(BaseModel):
    event: str
    payment: PaymentEntity


class PaymentFailedEvent(BaseModel):
    event: str
    payment: PaymentEntity


class RefundEvent(BaseModel):
    event: str
    refund: RefundEntity


class OrderPaidEvent(BaseModel):
    event: str
    order: GatewayOrderEntity
    payment: Optional[PaymentEntity] = None


class IgnoredEvent(BaseModel):
    event: Optional[str] = None


WebhookEvent = Union[PaymentCapturedEvent, PaymentFailedEvent, RefundEvent, OrderPaidEvent, IgnoredEvent]

EVENT_MODELS: Dict[str, Type[BaseModel]] = {
    "payment.captured": PaymentCapturedEvent,
    "payment.failed": PaymentFailedEvent,
    "refund.created": RefundEvent,
    "refund.processed": RefundEvent,
    "order.paid": OrderPaidEvent,
}


class MalformedEvent(ValueError):
    pass


def _entity(payload: Dict[str, Any], kind: str) -> Optional[Dict[str, Any]]:
    body = payload.get("payload")
    if body is None:
        return None
    if not isinstance(body, dict):
        raise MalformedEvent("payload must be an object")
    wrapper = body.get(kind)
    if wrapper is None:
        return None
    if not isinstance(wrapper, dict):
        raise MalformedEvent(f"payload.{kind} must be an object")
    return wrapper.get("entity")


def parse_webhook_event(payload: Dict[str, Any]) -> WebhookEvent:
    """Decode a verified webhook body into its event model.

    Raises MalformedEvent when a known event type is missing the entity it needs
    or its payload is not an object.
    """
    event_type = payload.get("event")
    if not isinstance(event_type, str):
        return IgnoredEvent(event=None)
    model = EVENT_MODELS.get(event_type)
    if model is None:
        return IgnoredEvent(event=event_type)

    data: Dict[str, Any] = {"event": event_type}
    for kind in ("payment", "refund", "order"):
        entity = _entity(payload, kind)
        if entity is not None:
            data[kind] = entity
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedEvent(f"{event_type}: {e.error_count()} invalid field(s)") from e
