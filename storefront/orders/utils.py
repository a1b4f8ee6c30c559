
import random
import time
from typing import Any, Dict, Iterable, Optional
from storefront.orders.constants import ORDER_NUMBER_PREFIX
from storefront.schema.full_schema import OrderItem, Orders, PaymentMethod, PaymentStatus, Refund


def generate_order_number() -> str:
    # human facing only , never used to find or dedupe orders
    return f"{ORDER_NUMBER_PREFIX}-{int(time.time() * 1000)}-{random.randint(0, 999)}"


def optimistic_payment_status(payment_method: str) -> str:
    """Status the checkout path writes before the gateway webhook confirms anything."""
    if payment_method == PaymentMethod.COD.value:
        return PaymentStatus.CREATED.value
    return PaymentStatus.CAPTURED.value


def item_to_dict(item: OrderItem) -> Dict[str, Any]:
    return {
        "productId": item.product_id,
        "name": item.product_name,
        "price": item.product_price,
        "quantity": item.quantity,
    }


def order_to_dict(order: Orders, items: Optional[Iterable[OrderItem]] = None) -> Dict[str, Any]:
    data = {
        "orderId": str(order.public_id),
        "orderNumber": order.order_number,
        "buyerId": order.user_id,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "amount": order.amount,
        "currency": order.currency,
        "paymentMethod": order.payment_method,
        "gatewayOrderId": order.gateway_order_id,
        "gatewayPaymentId": order.gateway_payment_id,
        "shippingAddress": order.shipping_address,
        "createdAt": order.created_at,
        "updatedAt": order.updated_at,
    }
    if items is not None:
        data["items"] = [item_to_dict(it) for it in items]
    return data


def refund_to_dict(refund: Refund) -> Dict[str, Any]:
    return {
        "refundId": str(refund.public_id),
        "amount": refund.amount,
        "status": refund.status,
        "gatewayRefundId": refund.gateway_refund_id,
        "reason": refund.reason,
        "createdAt": refund.created_at,
    }
