import calendar
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.admin.constants import ANALYTICS_MONTHS, TOP_PRODUCTS_LIMIT, logger
from storefront.common.custom_exceptions import StorefrontError, order_not_found
from storefront.common.utils import now
from storefront.orders.repository import (get_order_by_public_id, monthly_sales, order_totals, set_order_status,
                                          top_products)
from storefront.refunds.repository import monthly_refunds, refund_status_totals
from storefront.schema.full_schema import OrderStatus, Orders, PaymentStatus, RefundStatus

VALID_ORDER_STATUSES = frozenset(s.value for s in OrderStatus)
VALID_PAYMENT_STATUSES = frozenset(s.value for s in PaymentStatus)
CENTS = Decimal("0.01")


def _invalid_status(detail: str) -> StorefrontError:
    return StorefrontError(status.HTTP_400_BAD_REQUEST, "INVALID_STATUS", detail)


async def update_order_status(session: AsyncSession, order_public_id: str, new_status: str,
                              payment_status: Optional[str] = None, admin_id: Optional[str] = None) -> Orders:
    """Manual override of fulfillment (and optionally payment) status. No transition rules are enforced."""
    if new_status not in VALID_ORDER_STATUSES:
        raise _invalid_status(f"Invalid status. Must be one of: {', '.join(s.value for s in OrderStatus)}")
    if payment_status is not None and payment_status not in VALID_PAYMENT_STATUSES:
        raise _invalid_status(f"Invalid payment status. Must be one of: {', '.join(s.value for s in PaymentStatus)}")

    order = await get_order_by_public_id(session, order_public_id)
    if order is None:
        raise order_not_found()

    previous = (order.status, order.payment_status)
    await set_order_status(session, order.id, new_status, payment_status=payment_status)
    await session.commit()
    await session.refresh(order)

    logger.info("admin.order_status_updated", extra={
        "order_id": str(order.public_id), "admin_id": admin_id,
        "previous_status": previous[0], "previous_payment_status": previous[1],
        "new_status": order.status, "new_payment_status": order.payment_status})
    return order

# ----------------------------------------------------------------------------------------------------
# sales analytics

def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS)


def months_before(at: datetime, months: int) -> datetime:
    """Same day and time ``months`` calendar months earlier, clamped to the end of shorter months."""
    total = at.year * 12 + (at.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    day = min(at.day, calendar.monthrange(year, month)[1])
    return at.replace(year=year, month=month, day=day)


def _month_point(year: int, month: int, key: str, amount) -> Dict[str, Any]:
    return {"month": f"{year:04d}-{month:02d}", "label": calendar.month_name[month], key: _money(amount)}


async def sales_analytics(session: AsyncSession, at: Optional[datetime] = None) -> Dict[str, Any]:
    at = at or now()
    since = months_before(at, ANALYTICS_MONTHS)

    sales = await monthly_sales(session, since)
    products = await top_products(session, since, limit=TOP_PRODUCTS_LIMIT)
    totals = await order_totals(session, since)
    refunds = await monthly_refunds(session, since)
    by_status = await refund_status_totals(session, since)

    status_counts = {s.value: by_status.get(s.value, (0, 0))[0] for s in RefundStatus}
    # statuses outside the enum still count
    for st, (count, _) in by_status.items():
        status_counts.setdefault(st, count)
    total_refunds = sum(status_counts.values())
    refund_rate = (Decimal(total_refunds) * 100 / totals["total_orders"]) if totals["total_orders"] else Decimal(0)

    return {
        "window": {"from": since, "to": at, "months": ANALYTICS_MONTHS},
        "salesChart": [_month_point(y, m, "sales", amount) for y, m, amount in sales],
        "topProducts": [{"name": name, "quantity": qty, "revenue": _money(rev)} for name, qty, rev in products],
        "refundsChart": [_month_point(y, m, "refunds", amount) for y, m, amount in refunds],
        "refundStatusChart": [{"status": st, "count": count} for st, count in status_counts.items()],
        "stats": {
            "totalRevenue": _money(totals["revenue"]),
            "totalOrders": totals["total_orders"],
            "pendingOrders": totals["pending_orders"],
            "totalRefunds": total_refunds,
            "totalRefundAmount": _money(by_status.get(RefundStatus.PROCESSED.value, (0, 0))[1]),
            "refundRate": f"{refund_rate.quantize(CENTS)}",
        },
    }
