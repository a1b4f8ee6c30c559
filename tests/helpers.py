import dataclasses
import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Dict, List, Optional
from jose import jwt
from sqlalchemy import select
from storefront.db.connection import async_session
from storefront.orders.repository import get_order_by_public_id
from storefront.orders.utils import generate_order_number
from storefront.payments.gateway import GatewayError, GatewayPayment, PaymentNotFound
from storefront.schema.full_schema import OrderItem, Orders, PaymentWebhookEvent, Profile, Refund

url_prefix = "/api/v1"

IDP_SECRET = "test-idp-secret"
WEBHOOK_SECRET = "test-webhook-secret"


def make_token(sub: str, secret: str = IDP_SECRET, expires_in: int = 3600) -> str:
    claims = {"sub": sub, "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(sub: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(sub)}"}


def checkout_body(buyer_id: str, **overrides) -> dict:
    body = {
        "buyerId": buyer_id,
        "items": [
            {"productId": "prod-1", "name": "Money plant", "price": "299.50", "quantity": 1},
            {"productId": 7, "name": "Terracotta pot", "price": "100.00", "quantity": 2},
        ],
        "shippingAddress": {"line1": "12 MG Road", "city": "Pune", "pincode": "411001"},
        "amount": "499.50",
        "paymentMethod": "upi",
    }
    body.update(overrides)
    return body


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def signed_request(payload: dict, event_id: Optional[str] = None):
    body = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json", "X-Signature": sign(body)}
    if event_id:
        headers["X-Razorpay-Event-Id"] = event_id
    return body, headers


def payment_event(event: str, payment_id: str, gateway_order_id: Optional[str] = None,
                  amount: int = 49950, status: str = "captured") -> dict:
    entity = {"id": payment_id, "order_id": gateway_order_id, "amount": amount, "status": status,
              "method": "upi", "notes": []}
    return {"event": event, "payload": {"payment": {"entity": entity}}}


def refund_event(refund_id: str, payment_id: str, amount: int, event: str = "refund.processed") -> dict:
    entity = {"id": refund_id, "payment_id": payment_id, "amount": amount, "status": "processed"}
    return {"event": event, "payload": {"refund": {"entity": entity}}}


async def seed_order(user_id: str = "buyer-1", amount: str = "499.50", items: int = 1,
                     lines: Optional[List[tuple]] = None, **values) -> Orders:
    data = dict(
        order_number=generate_order_number(),
        user_id=user_id,
        status="created",
        payment_status="captured",
        amount=Decimal(amount),
        currency="INR",
        payment_method="upi",
        shipping_address={"city": "Pune"},
    )
    data.update(values)
    async with async_session() as session:
        order = Orders(**data)
        session.add(order)
        await session.flush()
        # lines are (name, price, quantity)
        lines = lines if lines is not None else [(f"Item {i}", amount, 1) for i in range(items)]
        for i, (name, price, quantity) in enumerate(lines):
            session.add(OrderItem(order_id=order.id, product_id=f"prod-{i}", product_name=name,
                                  product_price=Decimal(price), quantity=quantity))
        await session.commit()
        return order


async def seed_refund(order_id: int, amount: str, status: str, gateway_refund_id: Optional[str] = None,
                      **values) -> Refund:
    async with async_session() as session:
        refund = Refund(order_id=order_id, amount=Decimal(amount), status=status, gateway_refund_id=gateway_refund_id,
                        **values)
        session.add(refund)
        await session.commit()
        return refund


async def seed_profile(user_id: str, role: str = "admin") -> None:
    async with async_session() as session:
        session.add(Profile(user_id=user_id, role=role))
        await session.commit()


async def load_order(public_id) -> Optional[Orders]:
    async with async_session() as session:
        return await get_order_by_public_id(session, public_id)


async def orders_for_payment(payment_id: str) -> List[Orders]:
    async with async_session() as session:
        res = await session.execute(select(Orders).where(Orders.gateway_payment_id == payment_id))
        return list(res.scalars().all())


async def all_orders() -> List[Orders]:
    async with async_session() as session:
        res = await session.execute(select(Orders))
        return list(res.scalars().all())


async def items_for(order_id: int) -> List[OrderItem]:
    async with async_session() as session:
        res = await session.execute(select(OrderItem).where(OrderItem.order_id == order_id))
        return list(res.scalars().all())


async def refunds_for(order_id: int) -> List[Refund]:
    async with async_session() as session:
        res = await session.execute(select(Refund).where(Refund.order_id == order_id).order_by(Refund.id))
        return list(res.scalars().all())


async def webhook_events() -> List[PaymentWebhookEvent]:
    async with async_session() as session:
        res = await session.execute(select(PaymentWebhookEvent).order_by(PaymentWebhookEvent.id))
        return list(res.scalars().all())


class FakeGateway:
    """In-memory stand in for RazorpayGateway , records every call."""

    def __init__(self, key_id: str = "rzp_test_fake"):
        self.key_id = key_id
        self.payments: Dict[str, GatewayPayment] = {}
        self.failing = set()
        self.fetch_error: Optional[GatewayError] = None
        self.fetch_calls: List[str] = []
        self.refund_calls: List[tuple] = []
        self.created_orders: List[dict] = []
        self._seq = 0

    @property
    def is_test_mode(self) -> bool:
        return self.key_id.startswith("rzp_test_")

    def add_payment(self, payment_id: str, amount_minor: int, status: str = "captured", amount_refunded: int = 0):
        self.payments[payment_id] = GatewayPayment(id=payment_id, status=status, amount=amount_minor,
                                                   amount_refunded=amount_refunded, method="upi")

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        self.fetch_calls.append(payment_id)
        if self.fetch_error is not None:
            raise self.fetch_error
        if payment_id not in self.payments:
            raise PaymentNotFound("fetch_payment failed with http 400", status_code=400,
                                  code="BAD_REQUEST_ERROR", description="The id provided does not exist")
        return self.payments[payment_id]

    async def _refund(self, strategy: str, payment_id: str, amount_minor: int) -> dict:
        self.refund_calls.append((strategy, payment_id, amount_minor))
        if strategy in self.failing:
            raise GatewayError(f"{strategy} refund rejected", status_code=400, code="BAD_REQUEST_ERROR",
                               description="refund not supported for this payment")
        payment = self.payments.get(payment_id)
        if payment is not None:
            self.payments[payment_id] = dataclasses.replace(payment,
                                                            amount_refunded=payment.amount_refunded + amount_minor)
        self._seq += 1
        return {"id": f"rfnd_{self._seq:04d}", "payment_id": payment_id, "amount": amount_minor, "status": "processed"}

    async def create_instant_refund(self, payment_id, amount_minor, notes=None):
        return await self._refund("instant", payment_id, amount_minor)

    async def create_refund(self, payment_id, amount_minor, speed=None, notes=None):
        return await self._refund("normal", payment_id, amount_minor)

    async def create_refund_via_sdk(self, payment_id, amount_minor, notes=None):
        return await self._refund("sdk", payment_id, amount_minor)

    async def create_order(self, amount_minor, currency, receipt=None, notes=None, idempotency_key=None):
        self.created_orders.append({"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes,
                                    "idempotency_key": idempotency_key})
        return {"id": "order_fake0001", "amount": amount_minor, "currency": currency, "status": "created"}
