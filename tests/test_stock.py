from sqlalchemy import select

from meatshop.models.inventory import StockMovement
from meatshop.models.notification import Notification


def _stock_update(client, product_id: str, quantity: float, movement_type: str, reason: str = "Count"):
    return client.post(
        "/api/stock/update",
        json={"productId": product_id, "quantity": quantity, "type": movement_type, "reason": reason},
        headers={"X-User-Id": "admin_1"},
    )


def test_list_stock_and_single_product(test_context):
    client, _ = test_context

    res = client.get("/api/stock")
    assert res.status_code == 200, res.text
    rows = res.json()["data"]
    assert len(rows) == 8
    assert rows[0]["productName"] == "Beef Brisket"

    single = client.get("/api/stock/prod_1")
    assert single.status_code == 200, single.text
    stock = single.json()["data"]
    assert stock["productSku"] == "BEEF-STEAK-001"
    assert stock["quantity"] == 40.0
    assert stock["availableQuantity"] == 40.0

    missing = client.get("/api/stock/prod_missing")
    assert missing.status_code == 404, missing.text
    assert missing.json()["error"] == "Stock item not found"


def test_stock_in_out_and_adjustment(test_context):
    client, session_local = test_context

    stock_in = _stock_update(client, "prod_2", 5, "in", "Supplier delivery")
    assert stock_in.status_code == 200, stock_in.text
    assert stock_in.json()["data"]["quantity"] == 40.0

    stock_out = _stock_update(client, "prod_2", 2.5, "out", "Trim waste")
    assert stock_out.status_code == 200, stock_out.text
    assert stock_out.json()["data"]["availableQuantity"] == 37.5

    adjusted = _stock_update(client, "prod_2", 30, "adjustment", "Weekly count")
    assert adjusted.status_code == 200, adjusted.text
    assert adjusted.json()["data"]["quantity"] == 30.0

    db = session_local()
    try:
        movements = db.execute(
            select(StockMovement)
            .where(StockMovement.product_id == "prod_2")
            .order_by(StockMovement.id.asc())
        ).scalars().all()
        assert [movement.type for movement in movements] == ["in", "out", "adjustment"]
        assert [float(movement.quantity) for movement in movements] == [5.0, 2.5, 7.5]
        assert float(movements[-1].previous_quantity) == 37.5
        assert float(movements[-1].new_quantity) == 30.0
        assert movements[0].performed_by == "admin_1"
        assert movements[0].reference_type == "manual"
    finally:
        db.close()


def test_stock_out_beyond_available_is_rejected(test_context):
    client, _ = test_context

    res = _stock_update(client, "prod_6", 13, "out")
    assert res.status_code == 400, res.text
    assert res.json()["code"] == "insufficient_stock"
    assert client.get("/api/stock/prod_6").json()["data"]["quantity"] == 12.0


def test_adjustment_cannot_drop_below_reserved(test_context):
    client, _ = test_context
    order = client.post(
        "/api/orders",
        json={
            "userId": "user_1",
            "addressId": "addr_1",
            "paymentMethod": "cod",
            "items": [{"productId": "prod_6", "quantity": 3}],
        },
    )
    assert order.status_code == 201, order.text

    res = _stock_update(client, "prod_6", 2, "adjustment")
    assert res.status_code == 400, res.text
    assert res.json()["code"] == "business_rule_violation"

    ok = _stock_update(client, "prod_6", 3, "adjustment")
    assert ok.status_code == 200, ok.text
    assert ok.json()["data"]["availableQuantity"] == 0.0
    assert ok.json()["data"]["reservedQuantity"] == 3.0


def test_stock_update_validation(test_context):
    client, _ = test_context

    zero = _stock_update(client, "prod_1", 0, "in")
    assert zero.status_code == 400, zero.text
    assert zero.json()["code"] == "validation_error"

    bad_type = _stock_update(client, "prod_1", 1, "teleport")
    assert bad_type.status_code == 400, bad_type.text

    unknown = _stock_update(client, "prod_missing", 1, "in")
    assert unknown.status_code == 404, unknown.text


def test_bulk_update_applies_what_it_can(test_context):
    client, _ = test_context

    res = client.post(
        "/api/stock/bulk-update",
        json={
            "updates": [
                {"productId": "prod_1", "quantity": 10, "type": "in", "reason": "Delivery"},
                {"productId": "prod_missing", "quantity": 1, "type": "in", "reason": "Delivery"},
                {"productId": "prod_4", "quantity": 100, "type": "out", "reason": "Oops"},
            ]
        },
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["message"] == "1 of 3 updates applied"
    results = body["data"]
    assert results[0] == {"productId": "prod_1", "success": True, "error": None}
    assert results[1]["success"] is False
    assert results[1]["error"] == "Stock item not found for product prod_missing"
    assert results[2]["success"] is False
    assert results[2]["error"].startswith("Insufficient stock for product prod_4")

    assert client.get("/api/stock/prod_1").json()["data"]["quantity"] == 50.0
    assert client.get("/api/stock/prod_4").json()["data"]["quantity"] == 25.0


def test_restock_records_batch_and_movement(test_context):
    client, _ = test_context

    res = client.post(
        "/api/stock/restock/prod_7",
        json={"quantity": 24, "batchNumber": "B-2026-11", "expiryDate": "2026-11-30"},
    )
    assert res.status_code == 200, res.text
    stock = res.json()["data"]
    assert stock["quantity"] == 24.0
    assert stock["batchNumber"] == "B-2026-11"
    assert stock["expiryDate"] == "2026-11-30"
    assert stock["lastRestockedAt"] is not None

    movements = client.get("/api/stock/movements", params={"productId": "prod_7", "type": "in"})
    assert movements.status_code == 200, movements.text
    rows = movements.json()["data"]
    assert len(rows) == 1
    assert rows[0]["reason"] == "Restock - Batch: B-2026-11"
    assert rows[0]["productName"] == "Lamb Leg"


def test_low_stock_alerts_sorted_by_available_quantity(test_context):
    client, _ = test_context
    assert _stock_update(client, "prod_6", 3, "adjustment").status_code == 200
    assert _stock_update(client, "prod_8", 5, "adjustment").status_code == 200

    res = client.get("/api/stock/alerts")
    assert res.status_code == 200, res.text
    alerts = res.json()["data"]
    assert [alert["productId"] for alert in alerts] == ["prod_7", "prod_6", "prod_8"]
    assert [alert["currentQuantity"] for alert in alerts] == [0.0, 3.0, 5.0]
    assert alerts[1]["suggestedReorderQuantity"] == 20.0

    low_only = client.get("/api/stock", params={"lowStock": True})
    assert {row["productId"] for row in low_only.json()["data"]} == {"prod_6", "prod_7", "prod_8"}


def test_low_stock_notifies_admins(test_context):
    client, session_local = test_context

    res = _stock_update(client, "prod_5", 14, "out", "Catering order")
    assert res.status_code == 200, res.text

    db = session_local()
    try:
        rows = db.execute(
            select(Notification).where(Notification.type == "low_stock").order_by(Notification.channel.asc())
        ).scalars().all()
        assert [(row.user_id, row.channel, row.status) for row in rows] == [
            ("admin_1", "email", "sent"),
            ("admin_1", "sms", "sent"),
        ]
        assert "Beef Brisket" in rows[1].message
        assert "4.00" in rows[1].message
    finally:
        db.close()


def test_thresholds_update(test_context):
    client, _ = test_context

    res = client.patch("/api/stock/prod_1/thresholds", json={"lowStockThreshold": 45, "reorderPoint": 50})
    assert res.status_code == 200, res.text
    stock = res.json()["data"]
    assert stock["lowStockThreshold"] == 45.0
    assert stock["reorderPoint"] == 50.0
    assert stock["reorderQuantity"] == 20.0

    alerts = client.get("/api/stock/alerts").json()["data"]
    assert "prod_1" in [alert["productId"] for alert in alerts]
