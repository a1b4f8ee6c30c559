import uuid
import pytest
from sqlalchemy.exc import OperationalError
from storefront.orders import services as order_services
from tests.helpers import (all_orders, auth_headers, checkout_body, items_for, make_token, orders_for_payment,
                           seed_order, url_prefix)


@pytest.mark.asyncio
async def test_paid_checkout_creates_order_with_optimistic_capture(ac_client):
    body = checkout_body("buyer-1", gatewayOrderId="order_A1", gatewayPaymentId="pay_A1", gatewaySignature="sig")
    r = await ac_client.post(f"{url_prefix}/orders", json=body, headers=auth_headers("buyer-1"))

    assert r.status_code == 201
    data = r.json()["data"]
    assert data["orderNumber"].startswith("ORD-")
    order = data["order"]
    assert order["orderId"] == data["orderId"]
    assert order["status"] == "created"
    assert order["paymentStatus"] == "captured"
    assert order["gatewayPaymentId"] == "pay_A1"
    assert len(order["items"]) == 2
    assert order["items"][1]["productId"] == "7"


@pytest.mark.asyncio
async def test_cod_checkout_starts_unpaid_and_is_never_deduplicated(ac_client):
    body = checkout_body("buyer-1", paymentMethod="COD")

    r1 = await ac_client.post(f"{url_prefix}/orders", json=body, headers=auth_headers("buyer-1"))
    r2 = await ac_client.post(f"{url_prefix}/orders", json=body, headers=auth_headers("buyer-1"))

    assert r1.status_code == 201 and r2.status_code == 201
    assert r1.json()["data"]["order"]["paymentStatus"] == "created"
    assert r1.json()["data"]["order"]["gatewayPaymentId"] is None
    assert r1.json()["data"]["orderId"] != r2.json()["data"]["orderId"]
    assert len(await all_orders()) == 2


@pytest.mark.asyncio
async def test_replayed_checkout_returns_the_existing_order(ac_client):
    body = checkout_body("buyer-1", gatewayPaymentId="pay_R1")
    headers = auth_headers("buyer-1")

    first = await ac_client.post(f"{url_prefix}/orders", json=body, headers=headers)
    second = await ac_client.post(f"{url_prefix}/orders", json=body, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 200
    assert first.json()["data"]["orderId"] == second.json()["data"]["orderId"]

    orders = await orders_for_payment("pay_R1")
    assert len(orders) == 1
    assert len(await items_for(orders[0].id)) == 2


@pytest.mark.asyncio
async def test_losing_the_insert_race_returns_the_winning_order(ac_client, monkeypatch):
    winner = await seed_order(user_id="buyer-1", gateway_payment_id="pay_RACE", items=2)

    real_lookup = order_services.get_order_by_payment_id
    calls = {"n": 0}

    async def stale_lookup(session, payment_id):
        # first lookup runs before the other writer committed
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return await real_lookup(session, payment_id)

    monkeypatch.setattr(order_services, "get_order_by_payment_id", stale_lookup)

    r = await ac_client.post(f"{url_prefix}/orders", json=checkout_body("buyer-1", gatewayPaymentId="pay_RACE"),
                             headers=auth_headers("buyer-1"))

    assert r.status_code == 200
    assert r.json()["data"]["orderId"] == str(winner.public_id)
    assert calls["n"] == 2
    assert len(await orders_for_payment("pay_RACE")) == 1
    assert len(await items_for(winner.id)) == 2


@pytest.mark.asyncio
async def test_replay_fills_items_only_when_the_order_has_none(ac_client):
    existing = await seed_order(user_id="buyer-1", gateway_payment_id="pay_EMPTY", items=0)

    r = await ac_client.post(f"{url_prefix}/orders", json=checkout_body("buyer-1", gatewayPaymentId="pay_EMPTY"),
                             headers=auth_headers("buyer-1"))

    assert r.status_code == 200
    assert len(await items_for(existing.id)) == 2


@pytest.mark.asyncio
async def test_payment_linked_to_another_buyer_is_not_returned(ac_client):
    await seed_order(user_id="buyer-1", gateway_payment_id="pay_OWNED")

    r = await ac_client.post(f"{url_prefix}/orders", json=checkout_body("buyer-2", gatewayPaymentId="pay_OWNED"),
                             headers=auth_headers("buyer-2"))

    assert r.status_code == 403
    assert r.json()["error"]["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_identity_must_match_buyer(ac_client):
    body = checkout_body("buyer-1", gatewayPaymentId="pay_X")

    mismatched = await ac_client.post(f"{url_prefix}/orders", json=body, headers=auth_headers("buyer-2"))
    anonymous = await ac_client.post(f"{url_prefix}/orders", json=body)
    forged = await ac_client.post(f"{url_prefix}/orders",
                                  json={**body, "credential": make_token("buyer-1", secret="wrong-secret")})

    for r in (mismatched, anonymous, forged):
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "UNAUTHORIZED"
    assert await all_orders() == []


@pytest.mark.asyncio
async def test_credential_can_travel_in_the_body(ac_client):
    body = checkout_body("buyer-1", gatewayPaymentId="pay_BODY", credential=make_token("buyer-1"))

    r = await ac_client.post(f"{url_prefix}/orders", json=body)

    assert r.status_code == 201


@pytest.mark.asyncio
async def test_item_failure_leaves_no_fresh_order_behind(ac_client, monkeypatch):
    async def broken_items(session, order_id, items):
        raise OperationalError("INSERT INTO order_items", None, Exception("disk I/O error"))

    monkeypatch.setattr(order_services, "insert_order_items", broken_items)

    r = await ac_client.post(f"{url_prefix}/orders", json=checkout_body("buyer-1", gatewayPaymentId="pay_P6"),
                             headers=auth_headers("buyer-1"))

    assert r.status_code == 500
    assert r.json()["error"]["code"] == "ORDER_ITEMS_FAILED"
    assert await orders_for_payment("pay_P6") == []
    assert await all_orders() == []


@pytest.mark.asyncio
async def test_item_failure_never_deletes_a_pre_existing_order(ac_client, monkeypatch):
    existing = await seed_order(user_id="buyer-1", gateway_payment_id="pay_P6B", items=0)

    async def broken_items(session, order_id, items):
        raise OperationalError("INSERT INTO order_items", None, Exception("disk I/O error"))

    monkeypatch.setattr(order_services, "insert_order_items", broken_items)

    r = await ac_client.post(f"{url_prefix}/orders", json=checkout_body("buyer-1", gatewayPaymentId="pay_P6B"),
                             headers=auth_headers("buyer-1"))

    assert r.status_code == 500
    remaining = await orders_for_payment("pay_P6B")
    assert [o.id for o in remaining] == [existing.id]


@pytest.mark.asyncio
async def test_malformed_checkout_body_is_rejected(ac_client):
    body = checkout_body("buyer-1", items=[])

    r = await ac_client.post(f"{url_prefix}/orders", json=body, headers=auth_headers("buyer-1"))

    assert r.status_code == 422
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"
    assert "items" in r.json()["error"]["details"]["fields"]


@pytest.mark.asyncio
async def test_payment_intent_creates_gateway_order(ac_client, gateway):
    r = await ac_client.post(f"{url_prefix}/orders/payment-intent", json={"amount": "499.50", "receipt": "cart-42"},
                             headers=auth_headers("buyer-1"))

    assert r.status_code == 201
    data = r.json()["data"]
    assert data == {"gatewayOrderId": "order_fake0001", "amount": 49950, "currency": "INR", "keyId": "rzp_test_fake"}
    assert gateway.created_orders[0]["notes"]["buyer_id"] == "buyer-1"
    assert gateway.created_orders[0]["idempotency_key"] is None


@pytest.mark.asyncio
async def test_payment_intent_forwards_idempotency_key_per_buyer(ac_client, gateway):
    body = {"amount": "499.50"}
    await ac_client.post(f"{url_prefix}/orders/payment-intent", json=body,
                         headers={**auth_headers("buyer-1"), "Idempotency-Key": "cart-42"})
    await ac_client.post(f"{url_prefix}/orders/payment-intent", json=body,
                         headers={**auth_headers("buyer-2"), "Idempotency-Key": "cart-42"})

    assert [o["idempotency_key"] for o in gateway.created_orders] == ["buyer-1:cart-42", "buyer-2:cart-42"]


@pytest.mark.asyncio
async def test_payment_intent_requires_a_session(ac_client):
    r = await ac_client.post(f"{url_prefix}/orders/payment-intent", json={"amount": "10"})

    assert r.status_code == 401


@pytest.mark.asyncio
async def test_buyer_can_only_read_own_order(ac_client):
    order = await seed_order(user_id="buyer-1", items=2)

    own = await ac_client.get(f"{url_prefix}/orders/{order.public_id}", headers=auth_headers("buyer-1"))
    other = await ac_client.get(f"{url_prefix}/orders/{order.public_id}", headers=auth_headers("buyer-2"))
    missing = await ac_client.get(f"{url_prefix}/orders/{uuid.uuid4()}", headers=auth_headers("buyer-1"))

    assert own.status_code == 200
    assert len(own.json()["data"]["order"]["items"]) == 2
    assert own.json()["data"]["order"]["refunds"] == []
    assert other.status_code == 403
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "ORDER_NOT_FOUND"
