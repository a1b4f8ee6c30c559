
import hashlib
import hmac
import json
from typing import Optional
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.common.constants import PROVIDER, request_id_ctx
from storefront.common.custom_exceptions import StorefrontError
from storefront.config.settings import config_settings
from storefront.db.dependencies import get_session
from storefront.orders.constants import logger
from storefront.orders.repository import backfill_payment_id, get_order_by_gateway_order_id, get_order_by_payment_id, mark_webhook_event, record_webhook_event, set_payment_status
from storefront.payments.gateway import from_minor_units
from storefront.refunds.constants import EXTERNAL_REFUND_REASON
from storefront.refunds.repository import find_unlinked_refund, get_refund_by_gateway_id, insert_refund, sum_processed_refunds, update_refund
from storefront.schema.full_schema import PaymentStatus, RefundStatus, WebhookEventStatus
from storefront.schema.webhook_events import (IgnoredEvent, MalformedEvent, OrderPaidEvent, PaymentCapturedEvent,
                                              PaymentFailedEvent, RefundEvent, WebhookEvent, parse_webhook_event)

webhooks_router = APIRouter()

SIGNATURE_HEADERS = ("x-signature", "x-razorpay-signature")


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(request: Request, body: bytes) -> None:
    """HMAC-SHA256 over the raw, unparsed body. Raises 401 on a missing or wrong signature."""
    received: Optional[str] = None
    for header in SIGNATURE_HEADERS:
        received = request.headers.get(header)
        if received:
            break
    if not received:
        logger.warning("webhook.signature_missing", extra={"body_len": len(body)})
        raise StorefrontError(status.HTTP_401_UNAUTHORIZED, "UNAUTHORIZED", "Missing signature")

    expected = compute_signature(body, config_settings.RAZORPAY_WEBHOOK_SECRET)
    if not hmac.compare_digest(expected, received.strip()):
        logger.warning("webhook.signature_mismatch", extra={"body_len": len(body)})
        raise StorefrontError(status.HTTP_401_UNAUTHORIZED, "UNAUTHORIZED", "Invalid signature")

# ----------------------------------------------------------------------------------------------------
# event handlers , each returns a short outcome tag and only ever sets fields to gateway reported values


async def handle_payment_captured(session: AsyncSession, event: PaymentCapturedEvent) -> str:
    payment = event.payment
    order = await get_order_by_payment_id(session, payment.id)

    if order is None and payment.order_id:
        # webhook beat the checkout call , the order only knows its gateway order id so far
        order = await get_order_by_gateway_order_id(session, payment.order_id)
        if order is not None:
            if order.gateway_payment_id and order.gateway_payment_id != payment.id:
                logger.warning("webhook.payment_captured.payment_id_differs", extra={
                    "order_id": str(order.public_id), "stored_payment_id": order.gateway_payment_id,
                    "payment_id": payment.id, "gateway_order_id": payment.order_id})
            await backfill_payment_id(session, order.id, payment.id)

    if order is None:
        logger.warning("webhook.payment_captured.unmatched", extra={
            "payment_id": payment.id, "gateway_order_id": payment.order_id, "amount_minor": payment.amount})
        return "unmatched"

    previous = order.payment_status
    await set_payment_status(session, order.id, PaymentStatus.CAPTURED.value)
    logger.info("webhook.payment_captured", extra={
        "order_id": str(order.public_id), "payment_id": payment.id, "previous_payment_status": previous})
    return "captured"


async def handle_payment_failed(session: AsyncSession, event: PaymentFailedEvent) -> str:
    payment = event.payment
    order = await get_order_by_payment_id(session, payment.id)
    if order is None:
        logger.warning("webhook.payment_failed.unmatched", extra={
            "payment_id": payment.id, "gateway_order_id": payment.order_id})
        return "unmatched"

    previous = order.payment_status
    await set_payment_status(session, order.id, PaymentStatus.FAILED.value)
    logger.info("webhook.payment_failed", extra={
        "order_id": str(order.public_id), "payment_id": payment.id, "previous_payment_status": previous})
    return "failed"


async def _sync_refunded_status(session: AsyncSession, order) -> None:
    processed = await sum_processed_refunds(session, order.id)
    if processed <= 0:
        return
    value = PaymentStatus.REFUNDED.value if processed >= order.amount else PaymentStatus.PARTIALLY_REFUNDED.value
    await set_payment_status(session, order.id, value)


async def handle_refund(session: AsyncSession, event: RefundEvent) -> str:
    entity = event.refund
    refund = await get_refund_by_gateway_id(session, entity.id)
    order = await get_order_by_payment_id(session, entity.payment_id)

    if refund is not None:
        await update_refund(session, refund.id, RefundStatus.PROCESSED.value)
        outcome = "refund_processed"
    else:
        if order is None:
            logger.warning("webhook.refund.unmatched", extra={
                "refund_id": entity.id, "payment_id": entity.payment_id, "amount_minor": entity.amount})
            return "unmatched"

        amount = from_minor_units(entity.amount)
        local = await find_unlinked_refund(session, order.id, amount)
        if local is not None:
            # gateway accepted the refund but our own bookkeeping never saw the id
            await update_refund(session, local.id, RefundStatus.PROCESSED.value, gateway_refund_id=entity.id)
            outcome = "refund_adopted"
        else:
            await insert_refund(session, order.id, amount, RefundStatus.PROCESSED.value,
                                reason=EXTERNAL_REFUND_REASON, gateway_refund_id=entity.id)
            outcome = "refund_recorded"

    if order is not None:
        await _sync_refunded_status(session, order)

    logger.info("webhook.refund", extra={
        "event_type": event.event, "refund_id": entity.id, "payment_id": entity.payment_id,
        "amount_minor": entity.amount, "outcome": outcome})
    return outcome


async def handle_order_paid(session: AsyncSession, event: OrderPaidEvent) -> str:
    order = await get_order_by_gateway_order_id(session, event.order.id)
    if order is None:
        logger.warning("webhook.order_paid.unmatched", extra={"gateway_order_id": event.order.id})
        return "unmatched"

    if event.payment is not None and event.payment.id:
        await backfill_payment_id(session, order.id, event.payment.id)
    await set_payment_status(session, order.id, PaymentStatus.CAPTURED.value)
    logger.info("webhook.order_paid", extra={"order_id": str(order.public_id), "gateway_order_id": event.order.id})
    return "captured"


async def dispatch_event(session: AsyncSession, event: WebhookEvent) -> str:
    if isinstance(event, PaymentCapturedEvent):
        return await handle_payment_captured(session, event)
    if isinstance(event, PaymentFailedEvent):
        return await handle_payment_failed(session, event)
    if isinstance(event, RefundEvent):
        return await handle_refund(session, event)
    if isinstance(event, OrderPaidEvent):
        return await handle_order_paid(session, event)

    logger.info("webhook.event_ignored", extra={"event_type": getattr(event, "event", None)})
    return "ignored"


def _audit_status(outcome: str) -> str:
    if outcome == "unmatched":
        return WebhookEventStatus.UNMATCHED.value
    if outcome == "ignored":
        return WebhookEventStatus.IGNORED.value
    return WebhookEventStatus.PROCESSED.value


async def payment_webhook(request: Request, session: AsyncSession = Depends(get_session)):
    body = await request.body()
    verify_signature(request, body)

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("webhook.body_not_json", extra={"body_len": len(body)})
        raise StorefrontError(status.HTTP_400_BAD_REQUEST, "INVALID_PAYLOAD", "Body is not valid JSON")
    if not isinstance(payload, dict):
        raise StorefrontError(status.HTTP_400_BAD_REQUEST, "INVALID_PAYLOAD", "Body must be a JSON object")

    try:
        event = parse_webhook_event(payload)
    except MalformedEvent as e:
        logger.warning("webhook.malformed_event", extra={"event_type": payload.get("event"), "error": str(e)})
        raise StorefrontError(status.HTTP_400_BAD_REQUEST, "INVALID_PAYLOAD", "Malformed event payload")

    provider_event_id = request.headers.get("x-razorpay-event-id")
    event_type = None if isinstance(event, IgnoredEvent) and event.event is None else event.event
    ev = await record_webhook_event(session, PROVIDER, provider_event_id, event_type, payload)

    if ev.status in (WebhookEventStatus.PROCESSED.value, WebhookEventStatus.IGNORED.value):
        logger.info("webhook.already_processed", extra={
            "provider_event_id": provider_event_id, "event_type": event_type, "attempts": ev.attempts})
        return JSONResponse({"received": True, "outcome": "duplicate"}, status_code=200)

    ev_id = ev.id
    try:
        outcome = await dispatch_event(session, event)
        await mark_webhook_event(session, ev_id, _audit_status(outcome))
        await session.commit()
    except Exception as e:
        rid = request_id_ctx.get(None)
        await session.rollback()
        try:
            await mark_webhook_event(session, ev_id, WebhookEventStatus.RECEIVED.value,
                                     last_error=f"{type(e).__name__} while processing {event_type}")
            await session.commit()
        except Exception as rec_err:
            await session.rollback()
            logger.error("webhook.record_error_failure", exc_info=rec_err,
                         extra={"request_id": rid, "webhook_event_id": ev_id})
        logger.error("webhook.processing_failed", exc_info=e, extra={
            "request_id": rid, "webhook_event_id": ev_id, "event_type": event_type})
        # non 2xx makes the gateway redeliver
        raise StorefrontError(status.HTTP_500_INTERNAL_SERVER_ERROR, "WEBHOOK_PROCESSING_FAILED",
                              "Webhook processing failed") from e

    return JSONResponse({"received": True, "outcome": outcome}, status_code=200)


webhooks_router.add_api_route(config_settings.RZPAY_WEBHOOK_PATH, payment_webhook, methods=["POST"], include_in_schema=False)
