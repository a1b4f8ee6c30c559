
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional
from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.common.custom_exceptions import StorefrontError, forbidden, order_not_found
from storefront.common.utils import as_utc, now
from storefront.config.settings import config_settings
from storefront.orders.repository import get_order_by_public_id, set_order_status, set_payment_status
from storefront.payments.constants import CAPTURED_STATES
from storefront.payments.gateway import GatewayError, GatewayPayment, PaymentNotFound, RazorpayGateway, to_minor_units
from storefront.refunds.constants import (DEFAULT_CANCEL_REASON, DEFAULT_REFUND_REASON, MSG_CANCELLED, MSG_REFUND_MANUAL,
                                          MSG_REFUND_PENDING, MSG_REFUNDED, logger)
from storefront.refunds.repository import (has_refund_in_flight, insert_refund, sum_processed_refunds, sum_refunds,
                                           update_refund)
from storefront.refunds.strategies import RefundOutcome, build_strategies, run_refund_strategies
from storefront.schema.full_schema import OrderStatus, Orders, PaymentStatus, Refund, RefundStatus

REFUNDABLE_PAYMENT_STATUSES = (PaymentStatus.CAPTURED.value, PaymentStatus.PARTIALLY_REFUNDED.value)


def not_cancellable(detail: str) -> StorefrontError:
    return StorefrontError(status.HTTP_400_BAD_REQUEST, "NOT_CANCELLABLE", detail)


@dataclass
class RefundAttempt:
    refund: Optional[Refund] = None
    processed: bool = False
    # a refund is owed but was not completed in this call
    pending: bool = False
    skipped_reason: Optional[str] = None


@dataclass
class CancellationResult:
    order: Orders
    refund_processed: bool
    refund_pending: bool
    message: str
    refund: Optional[Refund] = None


def check_cancellable(order: Orders, requester_id: Optional[str], is_admin: bool, at: datetime) -> None:
    """Raise 403/400 when the order cannot be cancelled by this requester at ``at``.

    Admins skip the ownership check only , the window still applies to them.
    """
    if not is_admin and order.user_id != requester_id:
        raise forbidden("You can only cancel your own orders")
    if order.status == OrderStatus.CANCELLED.value:
        raise not_cancellable("Order is already cancelled")
    if order.status == OrderStatus.DELIVERED.value:
        raise not_cancellable("Delivered orders cannot be cancelled")
    window = timedelta(hours=config_settings.CANCELLATION_WINDOW_HOURS)
    if at - as_utc(order.created_at) > window:
        raise not_cancellable(
            f"Orders can only be cancelled within {config_settings.CANCELLATION_WINDOW_HOURS} hours of placing them")


async def _fetch_live_payment(gateway: RazorpayGateway, order: Orders, ctx: Dict[str, Any]) -> Optional[GatewayPayment]:
    try:
        payment = await gateway.fetch_payment(order.gateway_payment_id)
    except PaymentNotFound as e:
        # cod order marked captured by mistake , or a test key looking at a live payment
        logger.warning("refund.payment_not_found", extra={**ctx, **e.diagnostics()})
        return None
    if payment.status not in CAPTURED_STATES:
        logger.warning("refund.payment_not_captured", extra={**ctx, "gateway_payment_status": payment.status})
        return None
    return payment


async def attempt_cancellation_refund(session: AsyncSession, gateway: RazorpayGateway, order: Orders,
                                      reason: str) -> RefundAttempt:
    """Best effort refund of whatever is still owed on a cancelled order. Never raises for gateway trouble."""
    if order.payment_status not in REFUNDABLE_PAYMENT_STATUSES or not order.gateway_payment_id:
        return RefundAttempt(skipped_reason="nothing_captured")

    ctx = {"order_id": str(order.public_id), "payment_id": order.gateway_payment_id,
           "test_mode": gateway.is_test_mode}

    try:
        payment = await _fetch_live_payment(gateway, order, ctx)
    except GatewayError as e:
        logger.error("refund.payment_fetch_failed", extra={**ctx, **e.diagnostics()})
        return RefundAttempt(pending=True, skipped_reason="gateway_unavailable")
    if payment is None:
        return RefundAttempt(skipped_reason="payment_not_refundable")

    processed = await sum_processed_refunds(session, order.id)
    requested = order.amount - processed
    if requested <= 0:
        logger.info("refund.already_refunded", extra={**ctx, "processed": str(processed)})
        return RefundAttempt(skipped_reason="already_refunded")

    if await has_refund_in_flight(session, order.id):
        logger.warning("refund.in_flight", extra=ctx)
        return RefundAttempt(pending=True, skipped_reason="refund_in_flight")

    requested_minor = to_minor_units(requested)
    ctx["amount_minor"] = requested_minor
    if requested_minor > payment.refundable:
        logger.warning("refund.exceeds_refundable", extra={
            **ctx, "captured_minor": payment.amount, "refunded_minor": payment.amount_refunded})
        return RefundAttempt(pending=True, skipped_reason="exceeds_refundable")

    refund = await insert_refund(session, order.id, requested, RefundStatus.INITIATED.value, reason=reason)
    # audit row must exist before money moves
    await session.commit()

    outcome = await run_refund_strategies(build_strategies(gateway), order.gateway_payment_id, requested_minor,
                                          notes={"order_id": str(order.public_id), "reason": reason}, context=ctx)
    await _resolve_refund(session, refund, outcome)
    return RefundAttempt(refund=refund, processed=outcome.succeeded, pending=not outcome.succeeded)


async def _resolve_refund(session: AsyncSession, refund: Refund, outcome: RefundOutcome) -> None:
    if outcome.succeeded:
        await update_refund(session, refund.id, RefundStatus.PROCESSED.value, gateway_refund_id=outcome.refund_id)
    else:
        await update_refund(session, refund.id, RefundStatus.FAILED.value)


def cancellation_message(attempt: RefundAttempt, test_mode: bool) -> str:
    if attempt.processed:
        return MSG_REFUNDED
    if attempt.pending:
        # sandbox rails reject instant refunds routinely , that is not worth alarming the buyer about
        return MSG_REFUND_PENDING if test_mode else MSG_REFUND_MANUAL
    return MSG_CANCELLED


async def cancel_order(session: AsyncSession, gateway: RazorpayGateway, order_public_id: str,
                       requester_id: Optional[str], is_admin: bool = False, reason: Optional[str] = None,
                       at: Optional[datetime] = None) -> CancellationResult:
    order = await get_order_by_public_id(session, order_public_id)
    if order is None:
        raise order_not_found()

    check_cancellable(order, requester_id, is_admin, at or now())

    reason = reason or DEFAULT_CANCEL_REASON
    attempt = await attempt_cancellation_refund(session, gateway, order, reason)

    # cancelled regardless of the refund , payment status only moves when money actually moved
    payment_status = PaymentStatus.REFUNDED.value if attempt.processed else None
    await set_order_status(session, order.id, OrderStatus.CANCELLED.value, payment_status=payment_status)
    await session.commit()
    await session.refresh(order)

    logger.info("order.cancelled", extra={
        "order_id": str(order.public_id), "by_admin": is_admin, "refund_processed": attempt.processed,
        "refund_pending": attempt.pending, "skipped_reason": attempt.skipped_reason,
        "payment_status": order.payment_status})

    return CancellationResult(
        order=order,
        refund_processed=attempt.processed,
        refund_pending=attempt.pending,
        message=cancellation_message(attempt, gateway.is_test_mode),
        refund=attempt.refund,
    )

# ----------------------------------------------------------------------------------------------------
# admin initiated refunds


def _not_refundable(detail: str) -> StorefrontError:
    return StorefrontError(status.HTTP_400_BAD_REQUEST, "NOT_REFUNDABLE", detail)


def _exceeds_balance(detail: str) -> StorefrontError:
    return StorefrontError(status.HTTP_400_BAD_REQUEST, "REFUND_EXCEEDS_BALANCE", detail)


async def create_manual_refund(session: AsyncSession, gateway: RazorpayGateway, order_public_id: str,
                               amount: Optional[Decimal] = None, reason: Optional[str] = None) -> Dict[str, Any]:
    """Full or partial refund against an order's captured payment.

    The amount defaults to whatever has not been refunded yet. Refunds that would
    push the processed total above the order amount are refused before the gateway
    is contacted.
    """
    order = await get_order_by_public_id(session, order_public_id)
    if order is None:
        raise order_not_found()
    if not order.gateway_payment_id:
        raise _not_refundable("Order has no gateway payment to refund")
    if order.payment_status == PaymentStatus.REFUNDED.value:
        raise _not_refundable("Order is already fully refunded")
    if order.payment_status not in REFUNDABLE_PAYMENT_STATUSES:
        raise _not_refundable(f"Cannot refund an order with payment status {order.payment_status}")

    if await has_refund_in_flight(session, order.id):
        logger.warning("refund.in_flight", extra={"order_id": str(order.public_id), "manual": True})
        raise StorefrontError(status.HTTP_409_CONFLICT, "REFUND_IN_FLIGHT",
                              "Another refund for this order is still being processed")

    processed = await sum_processed_refunds(session, order.id)
    # initiated rows hold their amount until the gateway settles them
    committed = await sum_refunds(session, order.id, (RefundStatus.PROCESSED.value, RefundStatus.INITIATED.value))
    remaining = order.amount - committed
    requested = Decimal(amount).quantize(Decimal("0.01")) if amount is not None else remaining
    if requested <= 0 or requested > remaining:
        raise _exceeds_balance(f"Refund amount exceeds the refundable balance of {remaining}")

    ctx = {"order_id": str(order.public_id), "payment_id": order.gateway_payment_id,
           "test_mode": gateway.is_test_mode, "manual": True}
    try:
        payment = await _fetch_live_payment(gateway, order, ctx)
    except GatewayError as e:
        logger.error("refund.payment_fetch_failed", extra={**ctx, **e.diagnostics()})
        raise StorefrontError(status.HTTP_502_BAD_GATEWAY, "GATEWAY_UNAVAILABLE",
                              "Payment provider unavailable, please retry")
    if payment is None:
        raise _not_refundable("Payment is not in a refundable state at the gateway")

    requested_minor = to_minor_units(requested)
    ctx["amount_minor"] = requested_minor
    if requested_minor > payment.refundable:
        logger.warning("refund.exceeds_refundable", extra={
            **ctx, "captured_minor": payment.amount, "refunded_minor": payment.amount_refunded})
        raise _exceeds_balance("Refund amount exceeds what the gateway can still refund")

    reason = reason or DEFAULT_REFUND_REASON
    refund = await insert_refund(session, order.id, requested, RefundStatus.INITIATED.value, reason=reason)
    await session.commit()

    outcome = await run_refund_strategies(build_strategies(gateway), order.gateway_payment_id, requested_minor,
                                          notes={"order_id": str(order.public_id), "reason": reason}, context=ctx)
    await _resolve_refund(session, refund, outcome)

    if not outcome.succeeded:
        await session.commit()
        raise StorefrontError(status.HTTP_502_BAD_GATEWAY, "REFUND_FAILED",
                              "Refund could not be processed, please retry later")

    fully_refunded = processed + requested >= order.amount
    await set_payment_status(session, order.id,
                             PaymentStatus.REFUNDED.value if fully_refunded else PaymentStatus.PARTIALLY_REFUNDED.value)
    await session.commit()
    await session.refresh(order)
    await session.refresh(refund)

    logger.info("refund.manual_processed", extra={**ctx, "refund_id": outcome.refund_id,
                                                  "strategy": outcome.strategy, "fully_refunded": fully_refunded})
    return {"order": order, "refund": refund}
