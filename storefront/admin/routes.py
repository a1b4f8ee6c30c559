from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.admin.constants import MAX_PAGE_SIZE
from storefront.admin.services import sales_analytics, update_order_status
from storefront.auth.dependencies import require_admin
from storefront.common.constants import request_id_ctx
from storefront.common.utils import success_response
from storefront.db.dependencies import get_session
from storefront.orders.repository import list_orders, load_items_for_orders
from storefront.orders.routes import cancellation_payload
from storefront.orders.utils import order_to_dict, refund_to_dict
from storefront.payments.gateway import RazorpayGateway, get_gateway
from storefront.refunds.services import cancel_order, create_manual_refund
from storefront.schema.requests import CancelIn, RefundIn, StatusUpdateIn

admin_orders_router = APIRouter()
admin_analytics_router = APIRouter()


@admin_orders_router.get("")
async def list_all_orders(limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE), offset: int = Query(0, ge=0),
                          status_filter: Optional[str] = Query(None, alias="status"),
                          payment_status: Optional[str] = Query(None, alias="paymentStatus"),
                          admin_id: str = Depends(require_admin),
                          session: AsyncSession = Depends(get_session)):
    orders = await list_orders(session, limit=limit, offset=offset, status=status_filter, payment_status=payment_status)
    items = await load_items_for_orders(session, [o.id for o in orders])
    data = {
        "orders": [order_to_dict(o, items.get(o.id, [])) for o in orders],
        "limit": limit,
        "offset": offset,
    }
    return success_response(data, request_id=request_id_ctx.get(None))


@admin_orders_router.patch("/{order_id}/status")
async def set_status(order_id: str, payload: StatusUpdateIn,
                     admin_id: str = Depends(require_admin),
                     session: AsyncSession = Depends(get_session)):
    order = await update_order_status(session, order_id, payload.status, payload.payment_status, admin_id=admin_id)
    return success_response({"order": order_to_dict(order)}, request_id=request_id_ctx.get(None))


@admin_orders_router.post("/{order_id}/cancel")
async def admin_cancel(order_id: str, payload: Optional[CancelIn] = None,
                       admin_id: str = Depends(require_admin),
                       session: AsyncSession = Depends(get_session),
                       gateway: RazorpayGateway = Depends(get_gateway)):
    result = await cancel_order(session, gateway, order_id, admin_id, is_admin=True,
                                reason=payload.reason if payload else None)
    return success_response(cancellation_payload(result), request_id=request_id_ctx.get(None))


@admin_orders_router.post("/{order_id}/refunds")
async def admin_refund(order_id: str, payload: Optional[RefundIn] = None,
                       admin_id: str = Depends(require_admin),
                       session: AsyncSession = Depends(get_session),
                       gateway: RazorpayGateway = Depends(get_gateway)):
    payload = payload or RefundIn()
    res = await create_manual_refund(session, gateway, order_id, amount=payload.amount, reason=payload.reason)
    data = {"order": order_to_dict(res["order"]), "refund": refund_to_dict(res["refund"])}
    return success_response(data, status_code=status.HTTP_201_CREATED, request_id=request_id_ctx.get(None))


@admin_analytics_router.get("")
async def analytics(admin_id: str = Depends(require_admin),
                    session: AsyncSession = Depends(get_session)):
    data = await sales_analytics(session)
    return success_response({"analytics": data}, request_id=request_id_ctx.get(None))
