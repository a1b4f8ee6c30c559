from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple
from sqlalchemy import extract, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.common.utils import now
from storefront.schema.full_schema import Refund, RefundStatus


async def insert_refund(session: AsyncSession, order_id: int, amount: Decimal, status: str,
                        reason: Optional[str] = None, gateway_refund_id: Optional[str] = None) -> Refund:
    refund = Refund(order_id=order_id, amount=amount, status=status, reason=reason,
                    gateway_refund_id=gateway_refund_id)
    session.add(refund)
    await session.flush()
    return refund


async def update_refund(session: AsyncSession, refund_id: int, status: str,
                        gateway_refund_id: Optional[str] = None) -> None:
    values = {"status": status, "updated_at": now()}
    if gateway_refund_id is not None:
        values["gateway_refund_id"] = gateway_refund_id
    await session.execute(update(Refund).where(Refund.id == refund_id).values(**values))


async def get_refund_by_gateway_id(session: AsyncSession, gateway_refund_id: str) -> Optional[Refund]:
    res = await session.execute(select(Refund).where(Refund.gateway_refund_id == gateway_refund_id))
    return res.scalar_one_or_none()


async def sum_refunds(session: AsyncSession, order_id: int, statuses: Sequence[str]) -> Decimal:
    stmt = select(func.coalesce(func.sum(Refund.amount), 0)).where(
        Refund.order_id == order_id, Refund.status.in_(tuple(statuses)))
    res = await session.execute(stmt)
    return Decimal(str(res.scalar_one())).quantize(Decimal("0.01"))


async def sum_processed_refunds(session: AsyncSession, order_id: int) -> Decimal:
    return await sum_refunds(session, order_id, (RefundStatus.PROCESSED.value,))


async def find_unlinked_refund(session: AsyncSession, order_id: int, amount: Decimal) -> Optional[Refund]:
    """A local refund whose gateway call went through but whose bookkeeping never got the gateway id."""
    stmt = (select(Refund)
            .where(Refund.order_id == order_id,
                   Refund.gateway_refund_id.is_(None),
                   Refund.status.in_((RefundStatus.INITIATED.value, RefundStatus.FAILED.value)),
                   Refund.amount == amount)
            .order_by(Refund.created_at.desc(), Refund.id.desc())
            .limit(1))
    res = await session.execute(stmt)
    return res.scalars().first()


async def list_refunds_for_order(session: AsyncSession, order_id: int) -> List[Refund]:
    res = await session.execute(select(Refund).where(Refund.order_id == order_id).order_by(Refund.id))
    return list(res.scalars().all())


async def has_refund_in_flight(session: AsyncSession, order_id: int) -> bool:
    # initiated rows are written before the gateway call and resolved right after it
    stmt = select(func.count(Refund.id)).where(
        Refund.order_id == order_id, Refund.status == RefundStatus.INITIATED.value)
    res = await session.execute(stmt)
    return int(res.scalar_one()) > 0


async def monthly_refunds(session: AsyncSession, since: datetime) -> List[Tuple[int, int, Decimal]]:
    year = extract("year", Refund.created_at)
    month = extract("month", Refund.created_at)
    stmt = (select(year, month, func.coalesce(func.sum(Refund.amount), 0))
            .where(Refund.created_at >= since)
            .group_by(year, month)
            .order_by(year, month))
    res = await session.execute(stmt)
    return [(int(y), int(m), total) for y, m, total in res.all()]


async def refund_status_totals(session: AsyncSession, since: datetime) -> Dict[str, Tuple[int, Decimal]]:
    """Count and amount of refunds per status created since ``since``."""
    stmt = (select(Refund.status, func.count(Refund.id), func.coalesce(func.sum(Refund.amount), 0))
            .where(Refund.created_at >= since)
            .group_by(Refund.status))
    res = await session.execute(stmt)
    return {st: (int(count), amount) for st, count, amount in res.all()}
