from sqlalchemy import select

from meatshop.models.inventory import StockMovement


def test_create_product_creates_stock_record(test_context):
    client, session_local = test_context

    res = client.post(
        "/api/products",
        json={
            "name": "  Wagyu Striploin ",
            "nameAr": "ستريب لوين واغيو",
            "sku": "BEEF-WAGY-001",
            "price": 249,
            "category": "Beef",
            "minOrderQuantity": 0.5,
            "maxOrderQuantity": 5,
            "initialQuantity": 12,
        },
        headers={"X-User-Id": "admin_1"},
    )
    assert res.status_code == 201, res.text
    product = res.json()["data"]
    assert product["name"] == "Wagyu Striploin"
    assert product["price"] == 249.0
    assert product["unit"] == "kg"
    assert product["isActive"] is True

    stock = client.get(f"/api/stock/{product['id']}").json()["data"]
    assert stock["quantity"] == 12.0
    assert stock["lowStockThreshold"] == 5.0

    db = session_local()
    try:
        movement = db.execute(
            select(StockMovement).where(StockMovement.product_id == product["id"])
        ).scalar_one()
        assert movement.reason == "Opening stock"
        assert movement.performed_by == "admin_1"
    finally:
        db.close()


def test_create_product_rejects_duplicate_sku_and_bad_bounds(test_context):
    client, _ = test_context

    duplicate = client.post("/api/products", json={"name": "Copy", "sku": "beef-steak-001", "price": 10})
    assert duplicate.status_code == 400, duplicate.text
    assert duplicate.json()["error"] == "SKU beef-steak-001 already exists"

    bounds = client.post(
        "/api/products",
        json={"name": "Odd", "sku": "ODD-1", "price": 10, "minOrderQuantity": 5, "maxOrderQuantity": 1},
    )
    assert bounds.status_code == 400, bounds.text
    assert bounds.json()["error"] == "minOrderQuantity cannot exceed maxOrderQuantity"

    zero_price = client.post("/api/products", json={"name": "Free", "sku": "FREE-1", "price": 0})
    assert zero_price.status_code == 400, zero_price.text
    assert zero_price.json()["code"] == "validation_error"


def test_list_products_hides_inactive_by_default(test_context):
    client, _ = test_context

    res = client.get("/api/products")
    assert res.status_code == 200, res.text
    ids = [product["id"] for product in res.json()["data"]]
    assert "prod_7" not in ids
    assert res.json()["pagination"]["total"] == 7

    everything = client.get("/api/products", params={"includeInactive": True})
    assert everything.json()["pagination"]["total"] == 8

    lamb = client.get("/api/products", params={"category": "lamb", "includeInactive": True})
    assert {product["id"] for product in lamb.json()["data"]} == {"prod_2", "prod_7"}

    search = client.get("/api/products", params={"q": "ribs"})
    assert [product["id"] for product in search.json()["data"]] == ["prod_8"]


def test_update_product(test_context):
    client, _ = test_context

    res = client.patch("/api/products/prod_7", json={"isActive": True, "price": 130})
    assert res.status_code == 200, res.text
    assert res.json()["data"]["isActive"] is True
    assert res.json()["data"]["price"] == 130.0

    empty = client.patch("/api/products/prod_7", json={})
    assert empty.status_code == 400, empty.text
    assert empty.json()["error"] == "No fields to update"

    null_name = client.patch("/api/products/prod_7", json={"name": None})
    assert null_name.status_code == 400, null_name.text
    assert null_name.json()["error"] == "name cannot be null"

    bounds = client.patch("/api/products/prod_7", json={"minOrderQuantity": 4})
    assert bounds.status_code == 400, bounds.text

    missing = client.patch("/api/products/prod_missing", json={"price": 1})
    assert missing.status_code == 404, missing.text
