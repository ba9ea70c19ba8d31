import uuid

from sqlalchemy import func, select

from meatshop.models.discount import DiscountCode
from meatshop.models.inventory import StockItem, StockMovement
from meatshop.models.order import Order, OrderStatusHistory


def _create_product(client, *, price: float = 50.0, quantity: float = 10, **extra) -> str:
    res = client.post(
        "/api/products",
        json={
            "name": extra.pop("name", "Test Ribeye"),
            "sku": f"TEST-{uuid.uuid4().hex[:8]}",
            "price": price,
            "initialQuantity": quantity,
            **extra,
        },
    )
    assert res.status_code == 201, res.text
    return res.json()["data"]["id"]


def _place_order(client, items: list[tuple[str, float]], **extra):
    return client.post(
        "/api/orders",
        json={
            "userId": extra.pop("user_id", "user_1"),
            "addressId": extra.pop("address_id", "addr_1"),
            "paymentMethod": extra.pop("payment_method", "card"),
            "items": [{"productId": product_id, "quantity": quantity} for product_id, quantity in items],
            **extra,
        },
    )


def _stock(session_local, product_id: str) -> StockItem:
    db = session_local()
    try:
        return db.execute(select(StockItem).where(StockItem.product_id == product_id)).scalar_one()
    finally:
        db.close()


def test_create_order_prices_reserves_and_records_history(test_context):
    client, session_local = test_context
    product_id = _create_product(client, price=50.0, quantity=10)

    res = _place_order(client, [(product_id, 2)])
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["success"] is True
    assert body["message"] == "Order created successfully"

    order = body["data"]
    assert order["orderNumber"].startswith("ORD-")
    assert order["subtotal"] == 100.0
    assert order["discount"] == 0.0
    assert order["vatAmount"] == 5.0
    assert order["deliveryFee"] == 15.0
    assert order["total"] == 120.0
    assert order["status"] == "pending"
    assert order["paymentStatus"] == "pending"
    assert order["deliveryZoneId"] == "zone_dubai_downtown"
    assert order["deliveryAddress"]["building"] == "Burj Khalifa Tower"
    assert [item["quantity"] for item in order["items"]] == [2.0]
    assert order["items"][0]["unitPrice"] == 50.0
    assert [entry["status"] for entry in order["statusHistory"]] == ["pending"]
    assert order["statusHistory"][0]["changedBy"] == "system"

    stock = _stock(session_local, product_id)
    assert float(stock.quantity) == 10.0
    assert float(stock.reserved_quantity) == 2.0
    assert float(stock.available_quantity) == 8.0


def test_create_order_rejects_insufficient_stock_without_partial_reservation(test_context):
    client, session_local = test_context
    plenty_id = _create_product(client, name="Plenty", quantity=20)
    scarce_id = _create_product(client, name="Scarce Brisket", quantity=1)

    res = _place_order(client, [(plenty_id, 3), (scarce_id, 2)])
    assert res.status_code == 400, res.text
    body = res.json()
    assert body["success"] is False
    assert body["code"] == "insufficient_stock"
    assert body["error"] == "Insufficient stock for Scarce Brisket. Available: 1.00, Requested: 2.00"

    assert float(_stock(session_local, plenty_id).available_quantity) == 20.0
    assert float(_stock(session_local, scarce_id).available_quantity) == 1.0

    db = session_local()
    try:
        assert db.execute(select(func.count(Order.id))).scalar_one() == 0
        reserved = db.execute(
            select(func.count(StockMovement.id)).where(StockMovement.type == "reserved")
        ).scalar_one()
        assert reserved == 0
    finally:
        db.close()


def test_create_order_validates_products_and_quantities(test_context):
    client, _ = test_context

    inactive = _place_order(client, [("prod_7", 1)])
    assert inactive.status_code == 400, inactive.text
    assert inactive.json()["code"] == "product_unavailable"

    missing = _place_order(client, [("prod_missing", 1)])
    assert missing.status_code == 404, missing.text

    below_minimum = _place_order(client, [("prod_5", 0.5)])
    assert below_minimum.status_code == 400, below_minimum.text
    assert below_minimum.json()["error"] == "Minimum order quantity for Beef Brisket is 1.00"

    above_maximum = _place_order(client, [("prod_6", 4)])
    assert above_maximum.status_code == 400, above_maximum.text

    too_precise = _place_order(client, [("prod_1", 0.001)])
    assert too_precise.status_code == 400, too_precise.text
    assert too_precise.json()["code"] == "validation_error"
    assert [detail["field"] for detail in too_precise.json()["details"]] == ["items.0.quantity"]
    assert client.get("/api/stock/prod_1").json()["data"]["reservedQuantity"] == 0.0

    empty = client.post(
        "/api/orders",
        json={"userId": "user_1", "addressId": "addr_1", "paymentMethod": "card", "items": []},
    )
    assert empty.status_code == 400, empty.text
    assert empty.json()["code"] == "validation_error"


def test_create_order_rejects_address_of_another_user(test_context):
    client, _ = test_context

    res = _place_order(client, [("prod_1", 1)], user_id="user_2", address_id="addr_1")
    assert res.status_code == 404, res.text
    assert res.json()["error"] == "Address not found"


def test_create_order_with_inline_address_creates_guest_records(test_context):
    client, session_local = test_context

    res = _place_order(
        client,
        [("prod_3", 1)],
        user_id="guest_42",
        address_id="addr_guest",
        delivery_address={
            "label": "Villa",
            "fullName": "Guest Buyer",
            "street": "Al Wasl Road",
            "emirate": "Sharjah",
            "phone": "+971509999999",
        },
    )
    assert res.status_code == 201, res.text
    order = res.json()["data"]
    assert order["userId"] == "guest_42"
    assert order["addressId"] == "addr_guest"
    assert order["deliveryFee"] == 20.0
    assert order["deliveryAddress"]["country"] == "UAE"
    assert order["customerEmail"] == "user-guest_42@temp.local"


def test_discount_code_is_applied_and_usage_counted(test_context):
    client, session_local = test_context
    product_id = _create_product(client, price=50.0, quantity=10)

    res = _place_order(client, [(product_id, 2)], discount_code="welcome10")
    assert res.status_code == 201, res.text
    order = res.json()["data"]
    assert order["discount"] == 10.0
    assert order["discountCode"] == "WELCOME10"
    assert order["vatAmount"] == 4.5
    assert order["total"] == 109.5

    db = session_local()
    try:
        code = db.execute(select(DiscountCode).where(DiscountCode.code == "WELCOME10")).scalar_one()
        assert code.usage_count == 151
    finally:
        db.close()


def test_discount_code_below_minimum_order_is_rejected(test_context):
    client, session_local = test_context
    product_id = _create_product(client, price=50.0, quantity=10)

    res = _place_order(client, [(product_id, 2)], discount_code="FLAT50")
    assert res.status_code == 400, res.text
    assert res.json()["code"] == "discount_not_applicable"
    assert float(_stock(session_local, product_id).available_quantity) == 10.0

    unknown = _place_order(client, [(product_id, 2)], discount_code="NOPE")
    assert unknown.status_code == 400, unknown.text
    assert unknown.json()["error"] == "Discount code NOPE is not valid"


def test_discount_code_at_usage_limit_is_rejected(test_context):
    client, session_local = test_context
    db = session_local()
    try:
        code = db.execute(select(DiscountCode).where(DiscountCode.code == "MEAT20")).scalar_one()
        code.usage_count = code.usage_limit
        db.commit()
    finally:
        db.close()

    res = _place_order(client, [("prod_5", 2)], discount_code="MEAT20")
    assert res.status_code == 400, res.text
    assert res.json()["error"] == "Discount code MEAT20 has reached its usage limit"


def test_order_status_lifecycle_commits_stock_on_delivery(test_context):
    client, session_local = test_context
    product_id = _create_product(client, quantity=10)
    order_id = _place_order(client, [(product_id, 2)]).json()["data"]["id"]

    skipped = client.patch(f"/api/orders/{order_id}/status", json={"status": "delivered"})
    assert skipped.status_code == 400, skipped.text
    assert skipped.json()["code"] == "invalid_state_transition"
    assert skipped.json()["error"] == "Cannot transition order from 'pending' to 'delivered'"

    for status in ("confirmed", "processing", "ready_for_pickup", "out_for_delivery", "delivered"):
        res = client.patch(
            f"/api/orders/{order_id}/status",
            json={"status": status, "notes": f"now {status}"},
            headers={"X-User-Id": "staff_7"},
        )
        assert res.status_code == 200, res.text
        assert res.json()["message"] == f"Order status updated to {status}"

    order = res.json()["data"]
    assert order["status"] == "delivered"
    assert order["paymentStatus"] == "captured"
    assert order["actualDeliveryAt"] is not None
    assert [entry["status"] for entry in order["statusHistory"]] == [
        "pending",
        "confirmed",
        "processing",
        "ready_for_pickup",
        "out_for_delivery",
        "delivered",
    ]
    assert order["statusHistory"][-1]["changedBy"] == "staff_7"

    stock = _stock(session_local, product_id)
    assert float(stock.quantity) == 8.0
    assert float(stock.reserved_quantity) == 0.0
    assert float(stock.available_quantity) == 8.0

    again = client.patch(f"/api/orders/{order_id}/status", json={"status": "cancelled"})
    assert again.status_code == 400, again.text

    cancel = client.delete(f"/api/orders/{order_id}")
    assert cancel.status_code == 400, cancel.text
    assert cancel.json()["error"] == "Cannot cancel order with status: delivered"


def test_cancel_order_releases_stock_once(test_context):
    client, session_local = test_context
    product_id = _create_product(client, quantity=10)
    order_id = _place_order(client, [(product_id, 4)]).json()["data"]["id"]
    assert float(_stock(session_local, product_id).available_quantity) == 6.0

    res = client.request("DELETE", f"/api/orders/{order_id}", json={"reason": "Changed my mind"})
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["message"] == "Order cancelled successfully"
    assert body["data"]["status"] == "cancelled"
    assert body["data"]["statusHistory"][-1]["notes"] == "Changed my mind"
    assert float(_stock(session_local, product_id).available_quantity) == 10.0

    second = client.delete(f"/api/orders/{order_id}")
    assert second.status_code == 400, second.text
    assert second.json()["error"] == "Cannot cancel order with status: cancelled"

    stock = _stock(session_local, product_id)
    assert float(stock.available_quantity) == 10.0
    assert float(stock.reserved_quantity) == 0.0

    db = session_local()
    try:
        released = db.execute(
            select(func.count(StockMovement.id)).where(
                StockMovement.type == "released", StockMovement.reference_id == order_id
            )
        ).scalar_one()
        assert released == 1
        history = db.execute(
            select(OrderStatusHistory.status)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.id.asc())
        ).scalars().all()
        assert history == ["pending", "cancelled"]
    finally:
        db.close()


def test_cancel_without_reason_uses_default_note(test_context):
    client, _ = test_context
    order_id = _place_order(client, [("prod_1", 1)]).json()["data"]["id"]

    res = client.delete(f"/api/orders/{order_id}")
    assert res.status_code == 200, res.text
    assert res.json()["data"]["statusHistory"][-1]["notes"] == "Cancelled by user"


def test_get_order_by_id_and_number_and_not_found(test_context):
    client, _ = test_context
    created = _place_order(client, [("prod_2", 1)]).json()["data"]

    by_id = client.get(f"/api/orders/{created['id']}")
    assert by_id.status_code == 200, by_id.text
    assert by_id.json()["data"]["orderNumber"] == created["orderNumber"]

    by_number = client.get(f"/api/orders/number/{created['orderNumber']}")
    assert by_number.status_code == 200, by_number.text
    assert by_number.json()["data"]["id"] == created["id"]

    missing = client.get("/api/orders/order_missing")
    assert missing.status_code == 404, missing.text
    body = missing.json()
    assert body["code"] == "not_found"
    assert body["error"] == "Order not found"
    assert body["path"] == "/api/orders/order_missing"
    assert body["request_id"]


def test_list_orders_filters_and_paginates(test_context):
    client, _ = test_context
    for _ in range(3):
        assert _place_order(client, [("prod_3", 1)]).status_code == 201
    assert _place_order(client, [("prod_3", 1)], user_id="user_2", address_id="addr_3").status_code == 201

    page = client.get("/api/orders", params={"userId": "user_1", "page": 1, "limit": 2})
    assert page.status_code == 200, page.text
    body = page.json()
    assert len(body["data"]) == 2
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "totalPages": 2}

    pending = client.get("/api/orders", params={"status": "pending"})
    assert pending.json()["pagination"]["total"] == 4

    bad_status = client.get("/api/orders", params={"status": "lost"})
    assert bad_status.status_code == 400, bad_status.text


def test_order_stats_count_statuses_and_sales(test_context):
    client, _ = test_context
    product_id = _create_product(client, price=50.0, quantity=20)
    kept = _place_order(client, [(product_id, 2)]).json()["data"]
    cancelled = _place_order(client, [(product_id, 2)]).json()["data"]
    assert client.delete(f"/api/orders/{cancelled['id']}").status_code == 200
    assert client.patch(f"/api/orders/{kept['id']}/status", json={"status": "confirmed"}).status_code == 200

    res = client.get("/api/orders/stats")
    assert res.status_code == 200, res.text
    stats = res.json()["data"]
    assert stats["total"] == 2
    assert stats["confirmed"] == 1
    assert stats["cancelled"] == 1
    assert stats["pending"] == 0
    assert stats["todayOrders"] == 2
    assert stats["todaySales"] == 120.0
    assert stats["averageOrderValue"] == 120.0
