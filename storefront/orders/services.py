
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from fastapi import status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.common.custom_exceptions import StorefrontError, forbidden, order_not_found, unauthorized
from storefront.config.settings import config_settings
from storefront.db.utils import is_unique_violation
from storefront.orders.constants import logger
from storefront.orders.repository import count_order_items, get_order_by_payment_id, get_order_by_public_id, insert_order, insert_order_items, load_order_items
from storefront.orders.utils import generate_order_number, optimistic_payment_status
from storefront.payments.gateway import GatewayError, RazorpayGateway, to_minor_units
from storefront.refunds.repository import list_refunds_for_order
from storefront.schema.full_schema import OrderStatus, Orders
from storefront.schema.requests import CheckoutIn, PaymentIntentIn


@dataclass
class CheckoutResult:
    order: Orders
    created: bool


def _items_payload(payload: CheckoutIn) -> List[Dict[str, Any]]:
    return [it.model_dump() for it in payload.items]


async def _ensure_items(session: AsyncSession, order: Orders, items: List[Dict[str, Any]]) -> None:
    """Insert items for an order that already existed , only when it has none. Never deletes the order."""
    if await count_order_items(session, order.id) > 0:
        return
    try:
        await insert_order_items(session, order.id, items)
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("checkout.existing_order_items_failed", extra={
            "order_id": str(order.public_id), "gateway_payment_id": order.gateway_payment_id})
        raise StorefrontError(status.HTTP_500_INTERNAL_SERVER_ERROR, "ORDER_ITEMS_FAILED",
                              "Failed to create order items")
    logger.warning("checkout.items_backfilled", extra={"order_id": str(order.public_id)})


async def _replay(session: AsyncSession, order: Orders, buyer_id: str,
                  items: List[Dict[str, Any]]) -> CheckoutResult:
    if order.user_id != buyer_id:
        logger.warning("checkout.payment_owned_by_other_buyer", extra={
            "gateway_payment_id": order.gateway_payment_id, "buyer_id": buyer_id})
        raise forbidden("Payment is already linked to a different account")
    await _ensure_items(session, order, items)
    return CheckoutResult(order=order, created=False)


async def save_order(session: AsyncSession, identity_user_id: Optional[str], payload: CheckoutIn) -> CheckoutResult:
    """Create exactly one order (+ items) per gateway payment id, or hand back the one that exists.

    The unique index on gateway_payment_id is the only arbiter between a browser retry ,
    a concurrent checkout call and the webhook path. COD orders have no dedup key.
    """
    if not identity_user_id or identity_user_id != payload.buyer_id:
        logger.warning("checkout.identity_mismatch", extra={
            "buyer_id": payload.buyer_id, "authenticated": bool(identity_user_id)})
        raise unauthorized("Invalid user session")

    items = _items_payload(payload)
    payment_id = payload.gateway_payment_id

    if payment_id:
        existing = await get_order_by_payment_id(session, payment_id)
        if existing is not None:
            logger.info("checkout.idempotent_replay", extra={
                "order_id": str(existing.public_id), "gateway_payment_id": payment_id})
            return await _replay(session, existing, payload.buyer_id, items)

    values = {
        "order_number": generate_order_number(),
        "user_id": payload.buyer_id,
        "status": OrderStatus.CREATED.value,
        "payment_status": optimistic_payment_status(payload.payment_method.value),
        "amount": payload.amount,
        "currency": config_settings.DEFAULT_CURRENCY,
        "payment_method": payload.payment_method.value,
        "gateway_order_id": payload.gateway_order_id,
        "gateway_payment_id": payment_id,
        "gateway_signature": payload.gateway_signature,
        "shipping_address": payload.shipping_address,
    }

    try:
        order = await insert_order(session, values)
    except IntegrityError as e:
        await session.rollback()
        if not payment_id or not is_unique_violation(e, "gateway_payment_id"):
            logger.exception("checkout.order_insert_failed", extra={"buyer_id": payload.buyer_id})
            raise StorefrontError(status.HTTP_500_INTERNAL_SERVER_ERROR, "ORDER_CREATE_FAILED",
                                  "Failed to create order")
        # another writer inserted the same payment between our lookup and insert
        winner = await get_order_by_payment_id(session, payment_id)
        if winner is None:
            logger.error("checkout.race_winner_missing", extra={"gateway_payment_id": payment_id})
            raise StorefrontError(status.HTTP_500_INTERNAL_SERVER_ERROR, "ORDER_CREATE_FAILED",
                                  "Failed to create order")
        logger.info("checkout.lost_insert_race", extra={
            "order_id": str(winner.public_id), "gateway_payment_id": payment_id})
        return await _replay(session, winner, payload.buyer_id, items)
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("checkout.order_insert_failed", extra={"buyer_id": payload.buyer_id})
        raise StorefrontError(status.HTTP_500_INTERNAL_SERVER_ERROR, "ORDER_CREATE_FAILED",
                              "Failed to create order")

    try:
        await insert_order_items(session, order.id, items)
        await session.commit()
    except SQLAlchemyError:
        # order and items share one transaction , rolling back removes the fresh order too
        await session.rollback()
        logger.exception("checkout.order_items_failed", extra={
            "buyer_id": payload.buyer_id, "gateway_payment_id": payment_id, "item_count": len(items)})
        raise StorefrontError(status.HTTP_500_INTERNAL_SERVER_ERROR, "ORDER_ITEMS_FAILED",
                              "Failed to create order items")

    logger.info("checkout.order_created", extra={
        "order_id": str(order.public_id), "order_number": order.order_number,
        "payment_method": order.payment_method, "payment_status": order.payment_status,
        "gateway_payment_id": payment_id})
    return CheckoutResult(order=order, created=True)


async def create_payment_intent(gateway: RazorpayGateway, user_id: str, payload: PaymentIntentIn,
                                idempotency_key: Optional[str] = None) -> Dict[str, Any]:
    """Create the gateway order a client side checkout pays against.

    The client Idempotency-Key is forwarded to the gateway scoped to the buyer.
    """
    currency = payload.currency or config_settings.DEFAULT_CURRENCY
    amount_minor = to_minor_units(payload.amount)
    notes = {**payload.notes, "buyer_id": user_id}
    scoped_key = f"{user_id}:{idempotency_key}" if idempotency_key else None
    try:
        psp_order = await gateway.create_order(amount_minor, currency, receipt=payload.receipt, notes=notes,
                                              idempotency_key=scoped_key)
    except GatewayError as e:
        logger.error("payment_intent.gateway_failed", extra={"amount_minor": amount_minor, **e.diagnostics()})
        raise StorefrontError(status.HTTP_502_BAD_GATEWAY, "GATEWAY_UNAVAILABLE",
                              "Payment provider unavailable, please retry")

    provider_order_id = psp_order.get("id")
    if not provider_order_id:
        logger.error("payment_intent.missing_order_id", extra={"amount_minor": amount_minor})
        raise StorefrontError(status.HTTP_502_BAD_GATEWAY, "GATEWAY_UNAVAILABLE",
                              "Payment provider unavailable, please retry")

    return {
        "gatewayOrderId": provider_order_id,
        "amount": amount_minor,
        "currency": currency,
        "keyId": gateway.key_id,
    }


async def get_buyer_order(session: AsyncSession, order_public_id: str, user_id: str) -> Dict[str, Any]:
    order = await get_order_by_public_id(session, order_public_id)
    if order is None:
        raise order_not_found()
    if order.user_id != user_id:
        raise forbidden("You can only view your own orders")
    items = await load_order_items(session, order.id)
    refunds = await list_refunds_for_order(session, order.id)
    return {"order": order, "items": items, "refunds": refunds}
