import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import pytest
from storefront.admin.services import months_before, sales_analytics
from storefront.common.utils import now
from storefront.db.connection import async_session
from tests.helpers import (auth_headers, load_order, refund_event, refunds_for, seed_order, seed_profile, seed_refund,
                           signed_request, url_prefix)

admin_url = f"{url_prefix}/admin/orders"


@pytest.fixture
async def admin_headers():
    await seed_profile("ops-1", role="admin")
    return auth_headers("ops-1")


@pytest.mark.asyncio
async def test_status_console_is_admin_only(ac_client):
    await seed_profile("buyer-1", role="customer")
    order = await seed_order()

    customer = await ac_client.patch(f"{admin_url}/{order.public_id}/status", json={"status": "shipped"},
                                     headers=auth_headers("buyer-1"))
    no_profile = await ac_client.patch(f"{admin_url}/{order.public_id}/status", json={"status": "shipped"},
                                       headers=auth_headers("stranger"))
    anonymous = await ac_client.patch(f"{admin_url}/{order.public_id}/status", json={"status": "shipped"})

    assert customer.status_code == 403
    assert customer.json()["error"]["code"] == "FORBIDDEN"
    assert no_profile.status_code == 403
    assert anonymous.status_code == 401
    assert (await load_order(order.public_id)).status == "created"


@pytest.mark.asyncio
async def test_invalid_status_values_are_rejected(ac_client, admin_headers):
    order = await seed_order()

    bad_status = await ac_client.patch(f"{admin_url}/{order.public_id}/status", json={"status": "lost"},
                                       headers=admin_headers)
    bad_payment = await ac_client.patch(f"{admin_url}/{order.public_id}/status",
                                        json={"status": "shipped", "paymentStatus": "maybe"}, headers=admin_headers)

    for r in (bad_status, bad_payment):
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_STATUS"
    assert (await load_order(order.public_id)).status == "created"


@pytest.mark.asyncio
async def test_admin_overrides_status_directly(ac_client, admin_headers):
    order = await seed_order(status="cancelled", payment_status="refunded")

    r = await ac_client.patch(f"{admin_url}/{order.public_id}/status",
                              json={"status": "shipped", "paymentStatus": "captured"}, headers=admin_headers)

    assert r.status_code == 200
    assert r.json()["data"]["order"]["status"] == "shipped"
    assert r.json()["data"]["order"]["paymentStatus"] == "captured"
    stored = await load_order(order.public_id)
    assert (stored.status, stored.payment_status) == ("shipped", "captured")


@pytest.mark.asyncio
async def test_status_without_payment_status_leaves_payment_alone(ac_client, admin_headers):
    order = await seed_order(payment_status="failed")

    r = await ac_client.patch(f"{admin_url}/{order.public_id}/status", json={"status": "delivered"},
                              headers=admin_headers)

    assert r.status_code == 200
    assert (await load_order(order.public_id)).payment_status == "failed"


@pytest.mark.asyncio
async def test_status_update_for_missing_order(ac_client, admin_headers):
    r = await ac_client.patch(f"{admin_url}/{uuid.uuid4()}/status", json={"status": "shipped"},
                              headers=admin_headers)

    assert r.status_code == 404


@pytest.mark.asyncio
async def test_admin_lists_orders_newest_first(ac_client, admin_headers):
    old = await seed_order(user_id="buyer-1", created_at=now() - timedelta(days=2), items=1)
    new = await seed_order(user_id="buyer-2", created_at=now() - timedelta(hours=1), items=3, status="shipped")

    r = await ac_client.get(admin_url, headers=admin_headers)
    shipped = await ac_client.get(admin_url, params={"status": "shipped"}, headers=admin_headers)

    assert r.status_code == 200
    orders = r.json()["data"]["orders"]
    assert [o["orderId"] for o in orders] == [str(new.public_id), str(old.public_id)]
    assert len(orders[0]["items"]) == 3
    assert [o["orderId"] for o in shipped.json()["data"]["orders"]] == [str(new.public_id)]


@pytest.mark.asyncio
async def test_partial_then_remaining_refund(ac_client, gateway, admin_headers):
    order = await seed_order(gateway_payment_id="pay_M")
    gateway.add_payment("pay_M", 49950)

    partial = await ac_client.post(f"{admin_url}/{order.public_id}/refunds", json={"amount": "100"},
                                   headers=admin_headers)
    assert partial.status_code == 201
    assert partial.json()["data"]["refund"]["status"] == "processed"
    assert partial.json()["data"]["order"]["paymentStatus"] == "partially_refunded"

    rest = await ac_client.post(f"{admin_url}/{order.public_id}/refunds", json={"reason": "damaged"},
                                headers=admin_headers)
    assert rest.status_code == 201
    assert rest.json()["data"]["order"]["paymentStatus"] == "refunded"

    assert [c[2] for c in gateway.refund_calls] == [10000, 39950]
    refunds = await refunds_for(order.id)
    assert sum(x.amount for x in refunds) == Decimal("499.50")
    assert refunds[1].reason == "damaged"


@pytest.mark.asyncio
async def test_refund_above_balance_never_reaches_gateway(ac_client, gateway, admin_headers):
    order = await seed_order(gateway_payment_id="pay_BIG")
    gateway.add_payment("pay_BIG", 49950)

    r = await ac_client.post(f"{admin_url}/{order.public_id}/refunds", json={"amount": "500.00"},
                             headers=admin_headers)

    assert r.status_code == 400
    assert r.json()["error"]["code"] == "REFUND_EXCEEDS_BALANCE"
    assert gateway.fetch_calls == []
    assert gateway.refund_calls == []


@pytest.mark.asyncio
async def test_refund_of_unpaid_order_is_refused(ac_client, gateway, admin_headers):
    cod = await seed_order(payment_method="cod", payment_status="created")
    refunded = await seed_order(gateway_payment_id="pay_R", payment_status="refunded")

    r_cod = await ac_client.post(f"{admin_url}/{cod.public_id}/refunds", headers=admin_headers)
    r_refunded = await ac_client.post(f"{admin_url}/{refunded.public_id}/refunds", headers=admin_headers)

    assert r_cod.status_code == 400
    assert r_refunded.status_code == 400
    assert r_refunded.json()["error"]["code"] == "NOT_REFUNDABLE"


@pytest.mark.asyncio
async def test_failed_manual_refund_answers_502(ac_client, gateway, admin_headers):
    order = await seed_order(gateway_payment_id="pay_FAIL")
    gateway.add_payment("pay_FAIL", 49950)
    gateway.failing = {"instant", "normal", "sdk"}

    r = await ac_client.post(f"{admin_url}/{order.public_id}/refunds", headers=admin_headers)

    assert r.status_code == 502
    assert r.json()["error"]["code"] == "REFUND_FAILED"
    assert [x.status for x in await refunds_for(order.id)] == ["failed"]
    assert (await load_order(order.public_id)).payment_status == "captured"


@pytest.mark.asyncio
async def test_manual_refund_waits_for_refund_in_flight(ac_client, gateway, admin_headers):
    order = await seed_order(gateway_payment_id="pay_F")
    gateway.add_payment("pay_F", 49950)
    # a cancellation refund committed its row but the gateway has not settled it yet
    await seed_refund(order.id, "499.50", "initiated")

    r = await ac_client.post(f"{admin_url}/{order.public_id}/refunds", headers=admin_headers)

    assert r.status_code == 409
    assert r.json()["error"]["code"] == "REFUND_IN_FLIGHT"
    assert gateway.refund_calls == []

    body, headers = signed_request(refund_event("rfnd_first", "pay_F", 49950))
    settled = await ac_client.post(f"{url_prefix}/webhooks/payment", content=body, headers=headers)

    assert settled.json()["outcome"] == "refund_adopted"
    refunds = await refunds_for(order.id)
    assert sum(x.amount for x in refunds if x.status == "processed") == Decimal("499.50")
    assert (await load_order(order.public_id)).payment_status == "refunded"


def at_utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_analytics_window_is_calendar_months():
    assert months_before(at_utc(2026, 6, 15, 12), 6) == at_utc(2025, 12, 15, 12)
    assert months_before(at_utc(2026, 8, 31), 6) == at_utc(2026, 2, 28)
    assert months_before(at_utc(2026, 3, 1), 6) == at_utc(2025, 9, 1)


@pytest.mark.asyncio
async def test_analytics_aggregates_sales_products_and_refunds():
    tea_order = await seed_order(amount="300", created_at=at_utc(2026, 5, 10), lines=[("Tea", "100", 3)])
    await seed_order(amount="200", status="delivered", payment_method="cod", payment_status="created",
                     created_at=at_utc(2026, 6, 1), lines=[("Mug", "50", 2), ("Tea", "100", 1)])
    cancelled = await seed_order(amount="500", status="cancelled", created_at=at_utc(2026, 6, 10),
                                 lines=[("Kettle", "500", 1)])
    await seed_order(amount="80", payment_status="failed", created_at=at_utc(2026, 6, 12), lines=[("Spoon", "40", 2)])
    old = await seed_order(amount="999", created_at=at_utc(2025, 11, 1), lines=[("Tea", "999", 1)])
    await seed_refund(cancelled.id, "500", "processed", created_at=at_utc(2026, 6, 11))
    await seed_refund(tea_order.id, "100", "failed", created_at=at_utc(2026, 5, 20))
    await seed_refund(old.id, "999", "processed", created_at=at_utc(2025, 11, 2))

    async with async_session() as session:
        data = await sales_analytics(session, at=at_utc(2026, 6, 15, 12))

    assert data["salesChart"] == [
        {"month": "2026-05", "label": "May", "sales": Decimal("300")},
        {"month": "2026-06", "label": "June", "sales": Decimal("200")},
    ]
    assert data["topProducts"] == [
        {"name": "Tea", "quantity": 4, "revenue": Decimal("400")},
        {"name": "Mug", "quantity": 2, "revenue": Decimal("100")},
    ]
    assert data["refundsChart"] == [
        {"month": "2026-05", "label": "May", "refunds": Decimal("100")},
        {"month": "2026-06", "label": "June", "refunds": Decimal("500")},
    ]
    assert data["refundStatusChart"] == [
        {"status": "initiated", "count": 0},
        {"status": "processed", "count": 1},
        {"status": "failed", "count": 1},
    ]
    assert data["stats"] == {
        "totalRevenue": Decimal("500"),
        "totalOrders": 4,
        "pendingOrders": 2,
        "totalRefunds": 2,
        "totalRefundAmount": Decimal("500"),
        "refundRate": "50.00",
    }


@pytest.mark.asyncio
async def test_top_products_are_capped_at_seven(ac_client, admin_headers):
    lines = [(f"Product {i}", "10", i + 1) for i in range(9)]
    await seed_order(amount="450", created_at=now() - timedelta(hours=1), lines=lines)

    r = await ac_client.get(f"{url_prefix}/admin/analytics", headers=admin_headers)

    assert r.status_code == 200
    analytics = r.json()["data"]["analytics"]
    assert [p["name"] for p in analytics["topProducts"]] == [f"Product {i}" for i in range(8, 1, -1)]
    assert analytics["stats"]["totalOrders"] == 1
    assert analytics["stats"]["refundRate"] == "0.00"


@pytest.mark.asyncio
async def test_analytics_is_admin_only(ac_client):
    await seed_profile("buyer-1", role="customer")

    customer = await ac_client.get(f"{url_prefix}/admin/analytics", headers=auth_headers("buyer-1"))
    anonymous = await ac_client.get(f"{url_prefix}/admin/analytics")

    assert customer.status_code == 403
    assert anonymous.status_code == 401
