
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple
from sqlalchemy import and_, case, extract, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.common.utils import now
from storefront.db.utils import is_unique_violation
from storefront.schema.full_schema import (OrderItem, Orders, OrderStatus, PaymentStatus, PaymentWebhookEvent,
                                           WebhookEventStatus)

SALE_PAYMENT_STATUSES = (PaymentStatus.CAPTURED.value, PaymentStatus.PARTIALLY_REFUNDED.value)
PENDING_ORDER_STATUSES = (OrderStatus.CREATED.value, OrderStatus.PAID.value)


def _parse_public_id(public_id) -> Optional[uuid.UUID]:
    if isinstance(public_id, uuid.UUID):
        return public_id
    try:
        return uuid.UUID(str(public_id))
    except (TypeError, ValueError):
        return None


async def get_order_by_public_id(session: AsyncSession, public_id) -> Optional[Orders]:
    pid = _parse_public_id(public_id)
    if pid is None:
        return None
    res = await session.execute(select(Orders).where(Orders.public_id == pid))
    return res.scalar_one_or_none()


async def get_order_by_payment_id(session: AsyncSession, gateway_payment_id: str) -> Optional[Orders]:
    res = await session.execute(select(Orders).where(Orders.gateway_payment_id == gateway_payment_id))
    return res.scalar_one_or_none()


async def get_order_by_gateway_order_id(session: AsyncSession, gateway_order_id: str) -> Optional[Orders]:
    # gateway order ids are not unique locally (a failed attempt may be retried against the same gateway order)
    stmt = (select(Orders).where(Orders.gateway_order_id == gateway_order_id)
            .order_by(Orders.id.desc()).limit(1))
    res = await session.execute(stmt)
    return res.scalars().first()


async def insert_order(session: AsyncSession, values: Dict[str, Any]) -> Orders:
    """Add and flush a new order. IntegrityError from the payment id constraint propagates to the caller."""
    order = Orders(**values)
    session.add(order)
    await session.flush()
    return order


async def insert_order_items(session: AsyncSession, order_id: int, items: Sequence[Dict[str, Any]]) -> None:
    for it in items:
        session.add(OrderItem(
            order_id=order_id,
            product_id=it.get("product_id"),
            product_name=it["name"],
            product_price=it["price"],
            quantity=int(it["quantity"]),
        ))
    await session.flush()


async def count_order_items(session: AsyncSession, order_id: int) -> int:
    res = await session.execute(select(func.count(OrderItem.id)).where(OrderItem.order_id == order_id))
    return int(res.scalar_one())


async def load_order_items(session: AsyncSession, order_id: int) -> List[OrderItem]:
    res = await session.execute(select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id))
    return list(res.scalars().all())


async def load_items_for_orders(session: AsyncSession, order_ids: Sequence[int]) -> Dict[int, List[OrderItem]]:
    grouped: Dict[int, List[OrderItem]] = {oid: [] for oid in order_ids}
    if not order_ids:
        return grouped
    res = await session.execute(select(OrderItem).where(OrderItem.order_id.in_(order_ids)).order_by(OrderItem.id))
    for item in res.scalars().all():
        grouped[item.order_id].append(item)
    return grouped


async def list_orders(session: AsyncSession, limit: int = 50, offset: int = 0,
                      status: Optional[str] = None, payment_status: Optional[str] = None) -> List[Orders]:
    stmt = select(Orders)
    if status:
        stmt = stmt.where(Orders.status == status)
    if payment_status:
        stmt = stmt.where(Orders.payment_status == payment_status)
    stmt = stmt.order_by(Orders.created_at.desc(), Orders.id.desc()).limit(limit).offset(offset)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def set_payment_status(session: AsyncSession, order_id: int, payment_status: str) -> None:
    stmt = (update(Orders).where(Orders.id == order_id)
            .values(payment_status=payment_status, updated_at=now()))
    await session.execute(stmt)


async def backfill_payment_id(session: AsyncSession, order_id: int, gateway_payment_id: str) -> None:
    # only fills a missing id , never repoints an order at a different payment
    stmt = (update(Orders)
            .where(Orders.id == order_id, Orders.gateway_payment_id.is_(None))
            .values(gateway_payment_id=gateway_payment_id, updated_at=now()))
    await session.execute(stmt)


async def set_order_status(session: AsyncSession, order_id: int, status: str,
                           payment_status: Optional[str] = None) -> None:
    values: Dict[str, Any] = {"status": status, "updated_at": now()}
    if payment_status is not None:
        values["payment_status"] = payment_status
    await session.execute(update(Orders).where(Orders.id == order_id).values(**values))

# ----------------------------------------------------------------------------------------------------
# webhook audit trail

async def get_webhook_event(session: AsyncSession, provider: str, provider_event_id: str) -> Optional[PaymentWebhookEvent]:
    stmt = select(PaymentWebhookEvent).where(
        PaymentWebhookEvent.provider == provider,
        PaymentWebhookEvent.provider_event_id == provider_event_id)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def record_webhook_event(session: AsyncSession, provider: str, provider_event_id: Optional[str],
                               event_type: Optional[str], payload: Optional[dict]) -> PaymentWebhookEvent:
    """Insert the audit row for a delivery or bump the attempt counter of an earlier one.

    Committed immediately so the trail survives a failure while processing the event.
    """
    if provider_event_id:
        existing = await get_webhook_event(session, provider, provider_event_id)
        if existing is not None:
            existing.attempts += 1
            await session.commit()
            return existing

    ev = PaymentWebhookEvent(provider=provider, provider_event_id=provider_event_id,
                             event_type=event_type, payload=payload,
                             status=WebhookEventStatus.RECEIVED.value, created_at=now())
    session.add(ev)
    try:
        await session.commit()
    except IntegrityError as e:
        # concurrent delivery of the same event inserted first
        await session.rollback()
        if not provider_event_id or not is_unique_violation(e):
            raise
        existing = await get_webhook_event(session, provider, provider_event_id)
        if existing is None:
            raise
        return existing
    return ev


async def mark_webhook_event(session: AsyncSession, ev_id: int, status: str, last_error: Optional[str] = None) -> None:
    values: Dict[str, Any] = {"status": status, "last_error": last_error}
    if status in (WebhookEventStatus.PROCESSED.value, WebhookEventStatus.IGNORED.value):
        values["processed_at"] = now()
    await session.execute(update(PaymentWebhookEvent).where(PaymentWebhookEvent.id == ev_id).values(**values))

# ----------------------------------------------------------------------------------------------------
# admin analytics

def _sale_filter(since: datetime):
    # money the shop kept , cancelled orders are owed back even while their refund is pending
    return and_(
        Orders.created_at >= since,
        Orders.status != OrderStatus.CANCELLED.value,
        or_(Orders.payment_status.in_(SALE_PAYMENT_STATUSES), Orders.status == OrderStatus.DELIVERED.value),
    )


async def monthly_sales(session: AsyncSession, since: datetime) -> List[Tuple[int, int, Decimal]]:
    year = extract("year", Orders.created_at)
    month = extract("month", Orders.created_at)
    stmt = (select(year, month, func.coalesce(func.sum(Orders.amount), 0))
            .where(_sale_filter(since))
            .group_by(year, month)
            .order_by(year, month))
    res = await session.execute(stmt)
    return [(int(y), int(m), total) for y, m, total in res.all()]


async def top_products(session: AsyncSession, since: datetime, limit: int = 7) -> List[Tuple[str, int, Decimal]]:
    quantity = func.sum(OrderItem.quantity)
    revenue = func.sum(OrderItem.product_price * OrderItem.quantity)
    stmt = (select(OrderItem.product_name, quantity, revenue)
            .join(Orders, Orders.id == OrderItem.order_id)
            .where(_sale_filter(since))
            .group_by(OrderItem.product_name)
            .order_by(quantity.desc(), revenue.desc(), OrderItem.product_name)
            .limit(limit))
    res = await session.execute(stmt)
    return [(name, int(qty), rev) for name, qty, rev in res.all()]


async def order_totals(session: AsyncSession, since: datetime) -> Dict[str, Any]:
    pending = case((Orders.status.in_(PENDING_ORDER_STATUSES), 1), else_=0)
    revenue = case((_sale_filter(since), Orders.amount), else_=0)
    stmt = (select(func.count(Orders.id), func.coalesce(func.sum(pending), 0), func.coalesce(func.sum(revenue), 0))
            .where(Orders.created_at >= since))
    total, pending_count, revenue_total = (await session.execute(stmt)).one()
    return {"total_orders": int(total), "pending_orders": int(pending_count), "revenue": revenue_total}
