
from typing import Optional
from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.auth.dependencies import get_identity, resolve_checkout_identity
from storefront.common.constants import request_id_ctx
from storefront.common.utils import success_response
from storefront.db.dependencies import get_session
from storefront.orders.repository import load_order_items
from storefront.orders.services import create_payment_intent, get_buyer_order, save_order
from storefront.orders.utils import order_to_dict, refund_to_dict
from storefront.payments.gateway import RazorpayGateway, get_gateway
from storefront.refunds.services import cancel_order
from storefront.schema.requests import CancelIn, CheckoutIn, PaymentIntentIn

orders_router = APIRouter()


# browser lands here right after the gateway checkout widget reports success (or for cod , straight away)
@orders_router.post("/orders")
async def place_order(request: Request, payload: CheckoutIn,
                      session: AsyncSession = Depends(get_session)):

    identity = resolve_checkout_identity(request, payload.credential)
    result = await save_order(session, identity, payload)

    items = await load_order_items(session, result.order.id)
    data = {
        "orderId": str(result.order.public_id),
        "orderNumber": result.order.order_number,
        "order": order_to_dict(result.order, items),
    }
    status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return success_response(data, status_code=status_code, request_id=request_id_ctx.get(None))


@orders_router.post("/orders/payment-intent")
async def payment_intent(payload: PaymentIntentIn,
                         idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
                         user_identifier: str = Depends(get_identity),
                         gateway: RazorpayGateway = Depends(get_gateway)):
    data = await create_payment_intent(gateway, user_identifier, payload, idempotency_key=idempotency_key)
    return success_response(data, status_code=status.HTTP_201_CREATED, request_id=request_id_ctx.get(None))


@orders_router.get("/orders/{order_id}")
async def get_order(order_id: str,
                    user_identifier: str = Depends(get_identity),
                    session: AsyncSession = Depends(get_session)):
    res = await get_buyer_order(session, order_id, user_identifier)
    data = order_to_dict(res["order"], res["items"])
    data["refunds"] = [refund_to_dict(r) for r in res["refunds"]]
    return success_response({"order": data}, request_id=request_id_ctx.get(None))


@orders_router.post("/orders/{order_id}/cancel")
async def cancel_my_order(order_id: str, payload: Optional[CancelIn] = None,
                          user_identifier: str = Depends(get_identity),
                          session: AsyncSession = Depends(get_session),
                          gateway: RazorpayGateway = Depends(get_gateway)):
    result = await cancel_order(session, gateway, order_id, user_identifier, is_admin=False, reason=payload.reason if payload else None)
    return success_response(cancellation_payload(result), request_id=request_id_ctx.get(None))


def cancellation_payload(result) -> dict:
    data = {
        "status": "cancelled",
        "refundProcessed": result.refund_processed,
        "refundPending": result.refund_pending,
        "message": result.message,
        "order": order_to_dict(result.order),
    }
    if result.refund is not None:
        data["refund"] = refund_to_dict(result.refund)
    return data
