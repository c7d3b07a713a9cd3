"""
Unit Tests - HTTP API
"""
import pytest
from httpx import ASGITransport, AsyncClient

from crm_backend.serving.api.dependencies import get_ledger_service
from crm_backend.serving.api.main import create_api_app
from crm_backend.serving.api.routes import purchases as purchase_routes


@pytest.fixture
async def client(service):
    app = create_api_app()
    app.dependency_overrides[get_ledger_service] = lambda: service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def create_customer(client: AsyncClient, phone: str = "+1-555-0199") -> dict:
    response = await client.post("/api/v1/customers", json={"name": "Sam Lee", "phone": phone})
    assert response.status_code == 201
    return response.json()


async def create_product(client: AsyncClient) -> dict:
    response = await client.post("/api/v1/products", json={
        "name": "Wool Scarf",
        "category": "accessories",
        "base_price": "35.00",
        "variants": [
            {"sku": "WS-GRY", "color": "grey", "price": "40.00", "stock": 3},
            {"sku": "WS-RED", "color": "red", "price": "40.00", "stock": 30},
        ],
    })
    assert response.status_code == 201
    return response.json()


class TestPurchaseEndpoints:
    """Ledger flow over HTTP"""

    async def test_purchase_lifecycle(self, client):
        customer = await create_customer(client)
        product = await create_product(client)

        response = await client.post("/api/v1/purchases", json={
            "customer_id": customer["id"],
            "tax_amount": "10",
            "discount_amount": "5",
        })
        assert response.status_code == 201
        purchase = response.json()
        assert purchase["final_amount"] == "5.00"

        response = await client.post(f"/api/v1/purchases/{purchase['id']}/items", json={
            "product_id": product["id"],
            "quantity": 2,
            "unit_price": "100",
            "discount_percentage": "10",
        })
        assert response.status_code == 201
        item = response.json()
        assert item["subtotal"] == "180.00"

        response = await client.get(f"/api/v1/purchases/{purchase['id']}")
        assert response.status_code == 200
        detail = response.json()
        assert detail["total_amount"] == "180.00"
        assert detail["final_amount"] == "185.00"
        assert len(detail["items"]) == 1

        response = await client.patch(f"/api/v1/purchases/items/{item['id']}", json={"quantity": 3})
        assert response.status_code == 200
        assert response.json()["subtotal"] == "270.00"

        response = await client.get(f"/api/v1/customers/{customer['id']}")
        assert response.json()["total_spent"] == "275.00"

        response = await client.delete(f"/api/v1/purchases/items/{item['id']}")
        assert response.status_code == 200
        assert response.json()["final_amount"] == "5.00"

        response = await client.get(f"/api/v1/customers/{customer['id']}/stats")
        assert response.status_code == 200
        assert response.json()["total_spent"] == "5.00"

        response = await client.delete(f"/api/v1/purchases/{purchase['id']}")
        assert response.status_code == 204

        response = await client.get(f"/api/v1/customers/{customer['id']}")
        assert response.json()["total_purchases"] == 0

    async def test_utc_purchase_date(self, client):
        customer = await create_customer(client)

        response = await client.post("/api/v1/purchases", json={
            "customer_id": customer["id"],
            "purchase_date": "2025-03-01T12:00:00+02:00",
        })

        assert response.status_code == 201
        assert response.json()["purchase_date"] == "2025-03-01T10:00:00"

    async def test_item_writes_evict_owning_customer(self, client, monkeypatch):
        customer = await create_customer(client)
        product = await create_product(client)
        purchase = (await client.post("/api/v1/purchases", json={"customer_id": customer["id"]})).json()
        evicted = []

        async def record(*keys):
            evicted.extend(keys)

        async def scan_namespace():
            raise AssertionError("customer namespace scanned")

        monkeypatch.setattr(purchase_routes.customers_cache, "delete", record)
        monkeypatch.setattr(purchase_routes.customers_cache, "invalidate_all", scan_namespace)

        item = (await client.post(f"/api/v1/purchases/{purchase['id']}/items", json={
            "product_id": product["id"], "quantity": 1,
        })).json()
        response = await client.patch(f"/api/v1/purchases/items/{item['id']}", json={"quantity": 2})

        assert response.status_code == 200
        assert evicted == [customer["id"], customer["id"]]

    async def test_negative_final_is_422(self, client):
        customer = await create_customer(client)

        response = await client.post("/api/v1/purchases", json={
            "customer_id": customer["id"],
            "discount_amount": "1",
        })

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "NEGATIVE_AMOUNT"

    async def test_missing_purchase_is_404(self, client):
        response = await client.get("/api/v1/purchases/999")

        assert response.status_code == 404
        body = response.json()
        assert body["error"]["code"] == "NOT_FOUND"
        assert body["error"]["details"] == {"entity": "Purchase", "entity_id": 999}

    async def test_variant_mismatch_is_409(self, client):
        customer = await create_customer(client)
        product = await create_product(client)
        other = (await client.post("/api/v1/products", json={
            "name": "Cap", "category": "accessories", "base_price": "15.00",
        })).json()
        purchase = (await client.post("/api/v1/purchases", json={"customer_id": customer["id"]})).json()

        response = await client.post(f"/api/v1/purchases/{purchase['id']}/items", json={
            "product_id": other["id"],
            "product_variant_id": product["variants"][0]["id"],
            "quantity": 1,
        })

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "REFERENTIAL_FAILURE"

    async def test_ledger_validation_is_400(self, client):
        customer = await create_customer(client)
        product = await create_product(client)
        purchase = (await client.post("/api/v1/purchases", json={"customer_id": customer["id"]})).json()

        response = await client.post(f"/api/v1/purchases/{purchase['id']}/items", json={
            "product_id": product["id"],
            "quantity": 0,
        })

        assert response.status_code == 400
        assert response.json()["error"]["details"]["field"] == "quantity"

    async def test_malformed_body_is_400(self, client):
        response = await client.post("/api/v1/purchases", json={"customer_id": "abc"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_FAILURE"


class TestProductEndpoints:
    """Catalog and stock over HTTP"""

    async def test_bulk_stock(self, client):
        product = await create_product(client)
        variant_id = product["variants"][0]["id"]

        response = await client.put("/api/v1/products/bulk/stock", json=[
            {"variant_id": variant_id, "new_stock": 12},
            {"variant_id": 999, "new_stock": 1},
        ])

        assert response.status_code == 200
        body = response.json()
        assert body["succeeded"] == 1
        assert body["failed"] == 1
        assert body["results"][1]["error_code"] == "NOT_FOUND"

        product = (await client.get(f"/api/v1/products/{product['id']}")).json()
        assert product["variants"][0]["stock"] == 12

    async def test_low_stock(self, client):
        await create_product(client)

        response = await client.get("/api/v1/products/low-stock", params={"threshold": 10})

        assert response.status_code == 200
        assert [v["sku"] for v in response.json()] == ["WS-GRY"]

    async def test_duplicate_sku_is_400(self, client):
        await create_product(client)

        response = await client.post("/api/v1/products", json={
            "name": "Copy", "category": "accessories", "base_price": "1.00",
            "variants": [{"sku": "WS-GRY", "price": "1.00"}],
        })

        assert response.status_code == 400

    async def test_update_and_delete_variant(self, client):
        product = await create_product(client)
        grey, red = product["variants"]

        response = await client.patch(f"/api/v1/products/variants/{grey['id']}", json={"stock": 25})
        assert response.status_code == 200
        assert response.json()["stock"] == 25

        response = await client.delete(f"/api/v1/products/variants/{red['id']}")
        assert response.status_code == 204

        product = (await client.get(f"/api/v1/products/{product['id']}")).json()
        assert [v["sku"] for v in product["variants"]] == ["WS-GRY"]

    async def test_referenced_product_delete_is_409(self, client):
        customer = await create_customer(client)
        product = await create_product(client)
        await client.post("/api/v1/purchases", json={
            "customer_id": customer["id"],
            "items": [{"product_id": product["id"], "quantity": 1}],
        })

        response = await client.delete(f"/api/v1/products/{product['id']}")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "REFERENTIAL_FAILURE"

    async def test_update_product(self, client):
        product = await create_product(client)

        response = await client.patch(f"/api/v1/products/{product['id']}", json={"brand": "Northwind"})

        assert response.status_code == 200
        assert response.json()["brand"] == "Northwind"

    async def test_stats_overview(self, client):
        await create_product(client)

        response = await client.get("/api/v1/products/stats/overview")

        assert response.status_code == 200
        body = response.json()
        assert body["total_products"] == 1
        assert body["total_variants"] == 2
        assert body["categories"] == {"accessories": 1}
        assert body["low_stock_variants"] == 1



class TestCustomerEndpoints:
    """Customer records over HTTP"""

    async def test_duplicate_phone_is_400(self, client):
        await create_customer(client, phone="+1-555-0123")

        response = await client.post("/api/v1/customers", json={"name": "B", "phone": "+1-555-0123"})

        assert response.status_code == 400
        assert response.json()["error"]["details"]["field"] == "phone"

    async def test_deactivate(self, client):
        customer = await create_customer(client)

        response = await client.delete(f"/api/v1/customers/{customer['id']}")

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        listed = (await client.get("/api/v1/customers")).json()
        assert customer["id"] not in [c["id"] for c in listed]

    async def test_security_headers(self, client):
        response = await client.get("/api/v1/health/live")

        assert response.status_code == 200
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Request-ID" in response.headers
