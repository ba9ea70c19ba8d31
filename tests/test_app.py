from meatshop.main import app


def test_openapi_paths():
    paths = set(app.openapi()["paths"].keys())
    assert {
        "/api/orders",
        "/api/orders/stats",
        "/api/orders/number/{order_number}",
        "/api/orders/{order_id}",
        "/api/orders/{order_id}/status",
        "/api/payments",
        "/api/payments/process",
        "/api/payments/stats",
        "/api/payments/order/{order_id}",
        "/api/payments/{payment_id}",
        "/api/payments/{payment_id}/refund",
        "/api/payments/{payment_id}/capture",
        "/api/stock",
        "/api/stock/alerts",
        "/api/stock/movements",
        "/api/stock/update",
        "/api/stock/bulk-update",
        "/api/stock/restock/{product_id}",
        "/api/stock/{product_id}",
        "/api/stock/{product_id}/thresholds",
        "/api/products",
        "/api/products/{product_id}",
        "/api/notifications",
        "/api/notifications/stats",
        "/health",
        "/ready",
    } <= paths


def test_health_endpoints_and_request_id(test_context):
    client, _ = test_context

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json() == {"ok": True}
    assert health.headers["X-Request-ID"]

    echoed = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert echoed.headers["X-Request-ID"] == "req-123"

    assert client.get("/ready").json() == {"ok": True}


def test_unknown_route_uses_error_envelope(test_context):
    client, _ = test_context

    res = client.get("/api/unknown", headers={"X-Request-ID": "req-404"})
    assert res.status_code == 404
    body = res.json()
    assert body["success"] is False
    assert body["code"] == "not_found"
    assert body["request_id"] == "req-404"
    assert body["path"] == "/api/unknown"


def test_validation_errors_list_fields(test_context):
    client, _ = test_context

    res = client.post("/api/orders", json={"userId": "user_1"})
    assert res.status_code == 400
    body = res.json()
    assert body["code"] == "validation_error"
    fields = {detail["field"] for detail in body["details"]}
    assert {"items", "addressId", "paymentMethod"} <= fields
