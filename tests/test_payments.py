import uuid

from sqlalchemy import select

from meatshop.core.deps import get_payment_gateway
from meatshop.main import app
from meatshop.models.inventory import StockItem
from meatshop.models.notification import Notification
from meatshop.models.order import Order
from meatshop.services.payment_provider import SimulatedPaymentGateway
from meatshop.services.payment_service import _flow_locks


def _declining_gateway(*, charge: bool = False, refund: bool = False) -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway(
        success_rate=1.0 if charge else 0.0,
        refund_success_rate=1.0 if refund else 0.0,
        delay_ms=0,
    )


def _create_product(client, *, price: float = 50.0, quantity: float = 10) -> str:
    res = client.post(
        "/api/products",
        json={
            "name": "Payment Test Striploin",
            "sku": f"PAY-{uuid.uuid4().hex[:8]}",
            "price": price,
            "initialQuantity": quantity,
        },
    )
    assert res.status_code == 201, res.text
    return res.json()["data"]["id"]


def _order_for_120(client, *, payment_method: str = "card") -> tuple[str, str]:
    product_id = _create_product(client)
    res = client.post(
        "/api/orders",
        json={
            "userId": "user_1",
            "addressId": "addr_1",
            "paymentMethod": payment_method,
            "items": [{"productId": product_id, "quantity": 2}],
        },
    )
    assert res.status_code == 201, res.text
    assert res.json()["data"]["total"] == 120.0
    return res.json()["data"]["id"], product_id


def _pay(client, order_id: str, *, amount: float = 120.0, method: str = "card", **extra):
    return client.post(
        "/api/payments/process",
        json={"orderId": order_id, "amount": amount, "method": method, **extra},
    )


def _notification_types(session_local, order_id: str) -> list[tuple[str, str, str]]:
    db = session_local()
    try:
        rows = db.execute(
            select(Notification.type, Notification.channel, Notification.status)
            .where(Notification.order_id == order_id)
            .order_by(Notification.type.asc(), Notification.channel.asc())
        ).all()
        return [tuple(row) for row in rows]
    finally:
        db.close()


def test_card_payment_is_captured_and_customer_notified(test_context):
    client, session_local = test_context
    order_id, _ = _order_for_120(client)

    res = _pay(client, order_id, cardToken="tok_mastercard_5454")
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["message"] == "Payment successful"
    payment = body["data"]
    assert payment["status"] == "captured"
    assert payment["amount"] == 120.0
    assert payment["currency"] == "AED"
    assert payment["cardBrand"] == "Mastercard"
    assert payment["cardLast4"] == "5454"
    assert payment["gatewayTransactionId"].startswith("txn_")
    assert payment["refundedAmount"] == 0.0

    order = client.get(f"/api/orders/{order_id}").json()["data"]
    assert order["paymentStatus"] == "captured"

    assert ("payment_received", "email", "sent") in _notification_types(session_local, order_id)
    assert ("payment_received", "sms", "sent") in _notification_types(session_local, order_id)

    again = _pay(client, order_id)
    assert again.status_code == 400, again.text
    assert again.json()["error"] == "Payment already processed for this order"


def test_declined_card_marks_order_failed_and_sends_failure_notice(test_context):
    client, session_local = test_context
    order_id, _ = _order_for_120(client)
    app.dependency_overrides[get_payment_gateway] = lambda: _declining_gateway()

    res = _pay(client, order_id, cardToken="tok_visa")
    assert res.status_code == 400, res.text
    body = res.json()
    assert body["success"] is False
    assert body["code"] == "gateway_declined"
    assert body["error"] == "Payment declined. Please try another card."

    db = session_local()
    try:
        order = db.get(Order, order_id)
        assert order.payment_status == "failed"
        assert order.status == "pending"
    finally:
        db.close()

    notifications = _notification_types(session_local, order_id)
    assert ("payment_failed", "sms", "sent") in notifications
    assert ("payment_failed", "email", "sent") in notifications

    app.dependency_overrides[get_payment_gateway] = lambda: _declining_gateway(charge=True)
    retry = _pay(client, order_id, cardToken="tok_visa")
    assert retry.status_code == 200, retry.text
    assert retry.json()["data"]["status"] == "captured"


def test_payment_amount_must_match_order_total(test_context):
    client, _ = test_context
    order_id, _ = _order_for_120(client)

    res = _pay(client, order_id, amount=100.0)
    assert res.status_code == 400, res.text
    assert res.json()["code"] == "validation_error"
    assert res.json()["error"] == "Payment amount 100.00 does not match order total 120.00"

    missing = _pay(client, "order_missing")
    assert missing.status_code == 404, missing.text


def test_cannot_pay_for_cancelled_order(test_context):
    client, _ = test_context
    order_id, _ = _order_for_120(client)
    assert client.delete(f"/api/orders/{order_id}").status_code == 200

    res = _pay(client, order_id)
    assert res.status_code == 400, res.text
    assert res.json()["error"] == "Cannot take payment for a cancelled order"


def test_cash_on_delivery_stays_pending_until_captured(test_context):
    client, _ = test_context
    order_id, _ = _order_for_120(client, payment_method="cod")

    res = _pay(client, order_id, method="cod")
    assert res.status_code == 200, res.text
    assert res.json()["message"] == "Order confirmed. Pay on delivery."
    payment = res.json()["data"]
    assert payment["status"] == "pending"
    assert payment["cardLast4"] is None

    refund = client.post(f"/api/payments/{payment['id']}/refund", json={"amount": 10, "reason": "Too early"})
    assert refund.status_code == 400, refund.text
    assert refund.json()["error"] == "Cannot refund payment with status: pending"

    captured = client.post(f"/api/payments/{payment['id']}/capture")
    assert captured.status_code == 200, captured.text
    assert captured.json()["data"]["status"] == "captured"
    assert client.get(f"/api/orders/{order_id}").json()["data"]["paymentStatus"] == "captured"

    twice = client.post(f"/api/payments/{payment['id']}/capture")
    assert twice.status_code == 400, twice.text
    assert twice.json()["error"] == "Cannot capture payment with status: captured"


def test_bank_transfer_message(test_context):
    client, _ = test_context
    order_id, _ = _order_for_120(client, payment_method="bank_transfer")

    res = _pay(client, order_id, method="bank_transfer")
    assert res.status_code == 200, res.text
    assert res.json()["message"] == "Order confirmed. Awaiting bank transfer."
    assert res.json()["data"]["status"] == "pending"


def test_partial_then_full_refund_refunds_order_and_releases_stock(test_context):
    client, session_local = test_context
    order_id, product_id = _order_for_120(client)
    payment_id = _pay(client, order_id).json()["data"]["id"]

    first = client.post(
        f"/api/payments/{payment_id}/refund",
        json={"amount": 60, "reason": "Half the lamb was missing"},
        headers={"X-User-Id": "admin_1"},
    )
    assert first.status_code == 200, first.text
    assert first.json()["message"] == "Refund of AED 60.00 processed successfully"
    assert first.json()["data"]["status"] == "partially_refunded"
    assert first.json()["data"]["refundedAmount"] == 60.0

    too_much = client.post(f"/api/payments/{payment_id}/refund", json={"amount": 100, "reason": "More"})
    assert too_much.status_code == 400, too_much.text
    assert too_much.json()["code"] == "exceeds_refundable"
    assert too_much.json()["error"] == "Maximum refundable amount is AED 60.00"
    assert client.get(f"/api/payments/{payment_id}").json()["data"]["refundedAmount"] == 60.0

    rest = client.post(f"/api/payments/{payment_id}/refund", json={"amount": 60, "reason": "Rest"})
    assert rest.status_code == 200, rest.text
    payment = rest.json()["data"]
    assert payment["status"] == "refunded"
    assert payment["refundedAmount"] == 120.0
    assert [refund["amount"] for refund in payment["refunds"]] == [60.0, 60.0]
    assert payment["refunds"][0]["processedBy"] == "admin_1"

    order = client.get(f"/api/orders/{order_id}").json()["data"]
    assert order["status"] == "refunded"
    assert order["paymentStatus"] == "refunded"
    assert order["statusHistory"][-1]["notes"] == "Full refund: Rest"

    db = session_local()
    try:
        stock = db.execute(select(StockItem).where(StockItem.product_id == product_id)).scalar_one()
        assert float(stock.available_quantity) == 10.0
        assert float(stock.reserved_quantity) == 0.0
    finally:
        db.close()

    refund_notices = [row for row in _notification_types(session_local, order_id) if row[0] == "refund_processed"]
    assert len(refund_notices) == 4


def test_partly_refunded_payment_cannot_be_charged_again(test_context):
    client, _ = test_context
    order_id, _ = _order_for_120(client)
    payment = _pay(client, order_id, cardToken="tok_visa_4242").json()["data"]
    refund = client.post(f"/api/payments/{payment['id']}/refund", json={"amount": 60, "reason": "Short weight"})
    assert refund.status_code == 200, refund.text

    again = _pay(client, order_id)
    assert again.status_code == 400, again.text
    assert again.json()["code"] == "business_rule_violation"
    assert again.json()["error"] == "Payment already processed for this order"

    current = client.get(f"/api/payments/{payment['id']}").json()["data"]
    assert current["status"] == "partially_refunded"
    assert current["refundedAmount"] == 60.0
    assert current["gatewayTransactionId"] == payment["gatewayTransactionId"]
    assert client.get(f"/api/orders/{order_id}").json()["data"]["paymentStatus"] == "partially_refunded"
    assert _flow_locks == {}


def test_full_refund_of_delivered_order_keeps_delivered_status(test_context):
    client, _ = test_context
    order_id, _ = _order_for_120(client)
    payment_id = _pay(client, order_id).json()["data"]["id"]
    for status in ("confirmed", "processing", "ready_for_pickup", "out_for_delivery", "delivered"):
        assert client.patch(f"/api/orders/{order_id}/status", json={"status": status}).status_code == 200

    res = client.post(f"/api/payments/{payment_id}/refund", json={"amount": 120, "reason": "Spoiled"})
    assert res.status_code == 200, res.text
    order = client.get(f"/api/orders/{order_id}").json()["data"]
    assert order["status"] == "delivered"
    assert order["paymentStatus"] == "refunded"


def test_gateway_refund_failure_leaves_payment_untouched(test_context):
    client, _ = test_context
    order_id, _ = _order_for_120(client)
    payment_id = _pay(client, order_id).json()["data"]["id"]
    app.dependency_overrides[get_payment_gateway] = lambda: _declining_gateway(charge=True)

    res = client.post(f"/api/payments/{payment_id}/refund", json={"amount": 20, "reason": "Late"})
    assert res.status_code == 400, res.text
    assert res.json()["code"] == "gateway_declined"
    assert res.json()["error"] == "Refund failed. Please try again later."

    payment = client.get(f"/api/payments/{payment_id}").json()["data"]
    assert payment["status"] == "captured"
    assert payment["refundedAmount"] == 0.0
    assert payment["refunds"] == []


def test_payment_lookup_listing_and_stats(test_context):
    client, _ = test_context
    card_order, _ = _order_for_120(client)
    cod_order, _ = _order_for_120(client, payment_method="cod")
    card_payment = _pay(client, card_order).json()["data"]
    _pay(client, cod_order, method="cod")

    by_order = client.get(f"/api/payments/order/{card_order}")
    assert by_order.status_code == 200, by_order.text
    assert by_order.json()["data"]["id"] == card_payment["id"]

    assert client.get("/api/payments/order/order_missing").status_code == 404
    assert client.get("/api/payments/pay_missing").status_code == 404

    listed = client.get("/api/payments", params={"userId": "user_1", "method": "cod"})
    assert listed.status_code == 200, listed.text
    assert listed.json()["pagination"]["total"] == 1
    assert listed.json()["data"][0]["orderId"] == cod_order

    stats = client.get("/api/payments/stats").json()["data"]
    assert stats["totalPayments"] == 2
    assert stats["totalAmount"] == 240.0
    assert stats["capturedAmount"] == 120.0
    assert stats["pendingAmount"] == 120.0
    assert stats["byMethod"] == {"card": 1, "cod": 1, "bankTransfer": 0}
    assert stats["byStatus"]["captured"] == 1
    assert stats["byStatus"]["pending"] == 1
