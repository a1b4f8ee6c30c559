from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from storefront.schema.full_schema import PaymentMethod


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# cart snapshot line , whatever the browser cart held at submission time
class CartItemIn(_CamelModel):
    product_id: Optional[str] = None
    name: str = Field(min_length=1, max_length=255)
    price: Decimal = Field(ge=0)
    quantity: int = Field(gt=0)

    @field_validator("product_id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        return None if v is None else str(v)


class CheckoutIn(_CamelModel):
    buyer_id: str
    items: List[CartItemIn] = Field(min_length=1)
    shipping_address: Dict[str, Any]
    amount: Decimal = Field(gt=0)
    payment_method: PaymentMethod
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    credential: Optional[str] = None

    @field_validator("payment_method", mode="before")
    @classmethod
    def _lower_method(cls, v):
        return v.lower() if isinstance(v, str) else v

    @field_validator("gateway_order_id", "gateway_payment_id", "gateway_signature", mode="before")
    @classmethod
    def _blank_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class PaymentIntentIn(_CamelModel):
    amount: Decimal = Field(gt=0)
    currency: Optional[str] = None
    receipt: Optional[str] = Field(default=None, max_length=40)
    notes: Dict[str, Any] = Field(default_factory=dict)


class CancelIn(_CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)


# status values are checked in the admin service so an unknown value answers 400 , not 422
class StatusUpdateIn(_CamelModel):
    status: str
    payment_status: Optional[str] = None


class RefundIn(_CamelModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)
