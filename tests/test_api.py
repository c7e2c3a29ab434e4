"""Tests for the HTTP API."""

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from database import to_id
from errors import ExternalServiceError, TransactionConflict
from main import create_app
from payments import EVENT_PAYMENT_SUCCEEDED

ADDRESS = {"street": "1 Main St", "city": "Springfield", "zip_code": "62701", "country": "US"}


@pytest.fixture
def basket(make_product):
    first = make_product(price=10.0, stock=10)
    second = make_product(price=5.0, stock=10)
    return [
        {"product_id": first, "quantity": 2, "price": 10.0},
        {"product_id": second, "quantity": 1, "price": 5.0},
    ]


class TestAuth:
    def test_register_then_me(self, client):
        response = client.post("/api/auth/register", json={"name": "Ann", "email": "ann@mail.com", "password": "hunter22"})
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["role"] == "user"
        assert "hashed_password" not in data["user"]

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "ann@mail.com"

    def test_duplicate_email(self, client, make_user):
        make_user(email="taken@mail.com")
        response = client.post("/api/auth/register", json={"name": "X", "email": "taken@mail.com", "password": "hunter22"})
        assert response.status_code == 409
        assert response.json()["success"] is False

    def test_login(self, client, make_user, password):
        user = make_user()
        response = client.post("/api/auth/login", json={"email": user["email"], "password": password})
        assert response.status_code == 200
        assert response.json()["data"]["token"]

    def test_login_wrong_password(self, client, make_user):
        user = make_user()
        response = client.post("/api/auth/login", json={"email": user["email"], "password": "wrong-one"})
        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Invalid credentials"}

    def test_missing_token(self, client):
        response = client.get("/api/orders")
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_garbage_token(self, client):
        response = client.get("/api/orders", headers={"Authorization": "Bearer not.a.jwt"})
        assert response.status_code == 401

    def test_inactive_user_rejected(self, client, make_user, auth_headers):
        user = make_user(is_active=False)
        assert client.get("/api/auth/me", headers=auth_headers(user)).status_code == 401

    def test_deleted_user_rejected(self, client, db, make_user, auth_headers):
        user = make_user()
        headers = auth_headers(user)
        db["user"].delete_one({"_id": user["_id"]})
        assert client.get("/api/auth/me", headers=headers).status_code == 401


class TestOrdersApi:
    def test_create_order(self, client, make_user, auth_headers, basket):
        response = client.post("/api/orders", json={"items": basket, "shipping_address": ADDRESS},
                               headers=auth_headers(make_user()))
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["subtotal"] == 25.0
        assert body["data"]["tax"] == 2.5
        assert body["data"]["shipping"] == 10.0
        assert body["data"]["total_amount"] == 37.5

    def test_empty_items(self, client, db, make_user, auth_headers):
        response = client.post("/api/orders", json={"items": [], "shipping_address": ADDRESS},
                               headers=auth_headers(make_user()))
        assert response.status_code == 400
        assert response.json()["message"] == "Items are required and must be a non-empty array"
        assert db["order"].count_documents({}) == 0

    def test_missing_shipping_address(self, client, make_user, auth_headers, basket):
        response = client.post("/api/orders", json={"items": basket}, headers=auth_headers(make_user()))
        assert response.status_code == 400
        assert response.json()["message"] == "Shipping address is required"

    def test_invalid_quantity(self, client, make_user, auth_headers, basket):
        basket[0]["quantity"] = 0
        response = client.post("/api/orders", json={"items": basket, "shipping_address": ADDRESS},
                               headers=auth_headers(make_user()))
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_unknown_product(self, client, db, make_user, auth_headers, basket):
        basket.append({"product_id": "0123456789abcdef01234567", "quantity": 1, "price": 1.0})
        response = client.post("/api/orders", json={"items": basket, "shipping_address": ADDRESS},
                               headers=auth_headers(make_user()))
        assert response.status_code == 404
        assert db["order"].count_documents({}) == 0

    def test_persistent_conflict_is_retryable(self, client, db, make_user, auth_headers, basket, monkeypatch):
        def conflict(callback):
            raise TransactionConflict()

        monkeypatch.setattr(db, "run_in_transaction", conflict)
        response = client.post("/api/orders", json={"items": basket, "shipping_address": ADDRESS},
                               headers=auth_headers(make_user()))
        assert response.status_code == 503
        assert response.json()["success"] is False

    def test_list_envelope(self, client, make_user, auth_headers, place_order):
        user = make_user()
        for _ in range(3):
            place_order(user)
        response = client.get("/api/orders?limit=2", headers=auth_headers(user))
        body = response.json()
        assert response.status_code == 200
        assert len(body["data"]) == 2
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}

    def test_invalid_status_filter(self, client, make_user, auth_headers):
        response = client.get("/api/orders?status=lost", headers=auth_headers(make_user()))
        assert response.status_code == 400

    def test_get_other_users_order(self, client, make_user, auth_headers, place_order):
        order = place_order(make_user())
        response = client.get(f"/api/orders/{order['id']}", headers=auth_headers(make_user()))
        assert response.status_code == 404
        assert response.json()["message"] == "Order not found"

    def test_update_other_users_order(self, client, make_user, auth_headers, place_order, stored_order):
        order = place_order(make_user())
        response = client.put(f"/api/orders/{order['id']}", json={"status": "delivered"},
                              headers=auth_headers(make_user()))
        assert response.status_code == 403
        assert stored_order(order["id"])["status"] == "pending"

    def test_admin_updates_status(self, client, make_user, auth_headers, place_order):
        order = place_order(make_user())
        response = client.put(f"/api/orders/{order['id']}", json={"status": "shipped", "tracking_number": "1Z"},
                              headers=auth_headers(make_user(role="admin")))
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "shipped"
        assert response.json()["data"]["tracking_number"] == "1Z"


class TestPaymentsApi:
    def test_payment_flow(self, client, gateway, make_user, auth_headers, place_order):
        user = make_user()
        order = place_order(user)
        headers = auth_headers(user)

        intent = client.post("/api/payments/create-payment-intent", json={"order_id": order["id"]}, headers=headers)
        assert intent.status_code == 200
        data = intent.json()["data"]
        assert data["client_secret"]

        gateway.succeed(data["payment_intent_id"])
        confirmed = client.post("/api/payments/confirm-payment",
                                json={"order_id": order["id"], "payment_intent_id": data["payment_intent_id"]},
                                headers=headers)
        assert confirmed.status_code == 200
        assert confirmed.json()["data"]["payment_status"] == "paid"

    def test_missing_order_id(self, client, make_user, auth_headers):
        response = client.post("/api/payments/create-payment-intent", json={}, headers=auth_headers(make_user()))
        assert response.status_code == 400
        assert response.json()["message"] == "Order ID is required"

    def test_provider_failure_is_generic(self, client, gateway, make_user, auth_headers, place_order):
        user = make_user()
        order = place_order(user)
        gateway.error = ExternalServiceError(detail="secret provider detail")
        response = client.post("/api/payments/create-payment-intent", json={"order_id": order["id"]},
                               headers=auth_headers(user))
        assert response.status_code == 502
        assert "secret provider detail" not in response.text

    def test_webhook_bad_signature(self, client, make_user, place_order, stored_order, intent_event):
        order = place_order(make_user())
        payload = intent_event(EVENT_PAYMENT_SUCCEEDED, order["id"])
        response = client.post("/api/payments/webhook", content=payload,
                               headers={"Stripe-Signature": "t=1,v1=deadbeef", "Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["success"] is False
        assert stored_order(order["id"])["payment_status"] == "pending"

    def test_webhook_success(self, client, make_user, place_order, stored_order, intent_event, sign_webhook):
        order = place_order(make_user())
        payload = intent_event(EVENT_PAYMENT_SUCCEEDED, order["id"])
        response = client.post("/api/payments/webhook", content=payload,
                               headers={"Stripe-Signature": sign_webhook(payload), "Content-Type": "application/json"})
        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert stored_order(order["id"])["payment_status"] == "paid"

    def test_webhook_processing_failure_asks_for_retry(self, client, sign_webhook):
        payload = '{"id": "evt_3", "type": "payment_intent.payment_failed", "data": {}}'
        response = client.post("/api/payments/webhook", content=payload,
                               headers={"Stripe-Signature": sign_webhook(payload)})
        assert response.status_code == 500

    def test_refund_requires_admin(self, client, db, make_user, auth_headers, place_order):
        user = make_user()
        order = place_order(user)
        db["order"].update_one({"_id": to_id(order["id"])}, {"$set": {"payment_status": "paid", "payment_id": "pi_1"}})

        denied = client.post("/api/payments/refund", json={"order_id": order["id"], "reason": "x"},
                             headers=auth_headers(user))
        assert denied.status_code == 403

        allowed = client.post("/api/payments/refund", json={"order_id": order["id"], "reason": "x"},
                              headers=auth_headers(make_user(role="admin")))
        assert allowed.status_code == 200
        assert allowed.json()["data"]["amount"] == 37.5


class TestProductsApi:
    def test_database_outage_is_retryable(self, client, db, monkeypatch):
        def unreachable(*args, **kwargs):
            raise ServerSelectionTimeoutError("localhost:27017: connection refused")

        monkeypatch.setattr(db, "paginate", unreachable)
        response = client.get("/api/products")
        assert response.status_code == 503
        assert response.json() == {"success": False, "message": "Database unavailable, please retry"}

    def test_admin_crud(self, client, make_user, auth_headers):
        headers = auth_headers(make_user(role="admin"))
        created = client.post("/api/products", json={"name": "Phone X", "price": 499.0, "stock": 3, "category": "phones"},
                              headers=headers)
        assert created.status_code == 201
        product = created.json()["data"]
        assert product["created_by"]

        updated = client.put(f"/api/products/{product['id']}", json={"price": 449.0}, headers=headers)
        assert updated.json()["data"]["price"] == 449.0
        assert updated.json()["data"]["stock"] == 3

        assert client.get(f"/api/products/{product['id']}").status_code == 200
        assert client.delete(f"/api/products/{product['id']}", headers=headers).status_code == 200
        assert client.get(f"/api/products/{product['id']}").status_code == 404

    def test_user_cannot_create(self, client, make_user, auth_headers):
        response = client.post("/api/products", json={"name": "X", "price": 1.0, "category": "c"},
                               headers=auth_headers(make_user()))
        assert response.status_code == 403

    def test_negative_price_rejected(self, client, make_user, auth_headers):
        response = client.post("/api/products", json={"name": "X", "price": -1.0, "category": "c"},
                               headers=auth_headers(make_user(role="admin")))
        assert response.status_code == 400

    def test_public_listing_hides_inactive(self, client, make_product):
        make_product(category="phones")
        make_product(category="cases")
        make_product(category="hidden", is_active=False)

        listing = client.get("/api/products").json()
        assert listing["pagination"]["total"] == 2
        assert client.get("/api/products?category=cases").json()["pagination"]["total"] == 1
        assert client.get("/api/products/categories").json()["data"] == ["cases", "phones"]


class TestAdminApi:
    def test_plain_user_forbidden(self, client, make_user, auth_headers):
        headers = auth_headers(make_user())
        for path in ("/api/admin/dashboard", "/api/admin/orders", "/api/admin/users"):
            assert client.get(path, headers=headers).status_code == 403

    def test_dashboard(self, client, db, make_user, auth_headers, place_order):
        user = make_user()
        paid = place_order(user)
        place_order(user)
        db["order"].update_one({"_id": to_id(paid["id"])}, {"$set": {"payment_status": "paid"}})

        data = client.get("/api/admin/dashboard", headers=auth_headers(make_user(role="admin"))).json()["data"]

        assert data["total_users"] == 2
        assert data["total_products"] == 4
        assert data["total_orders"] == 2
        assert data["total_revenue"] == 37.5
        assert len(data["recent_orders"]) == 2
        assert data["recent_orders"][0]["user"]["id"] == str(user["_id"])

    def test_all_orders(self, client, make_user, auth_headers, place_order):
        place_order(make_user())
        place_order(make_user())
        body = client.get("/api/admin/orders", headers=auth_headers(make_user(role="admin"))).json()
        assert body["pagination"]["total"] == 2

    def test_users_list_hides_password(self, client, make_user, auth_headers):
        make_user()
        body = client.get("/api/admin/users?role=user", headers=auth_headers(make_user(role="admin"))).json()
        assert body["pagination"]["total"] == 1
        assert "hashed_password" not in body["data"][0]

    def test_user_detail_lists_orders(self, client, make_user, auth_headers, place_order):
        user = make_user()
        order = place_order(user)
        data = client.get(f"/api/admin/users/{user['_id']}", headers=auth_headers(make_user(role="admin"))).json()["data"]
        assert [o["order_number"] for o in data["orders"]] == [order["order_number"]]

    def test_admin_cannot_touch_super_admin(self, client, make_user, auth_headers):
        boss = make_user(role="super_admin")
        headers = auth_headers(make_user(role="admin"))
        response = client.put(f"/api/admin/users/{boss['_id']}", json={"role": "user"}, headers=headers)
        assert response.status_code == 403

    def test_admin_cannot_grant_super_admin(self, client, make_user, auth_headers):
        user = make_user()
        response = client.put(f"/api/admin/users/{user['_id']}", json={"role": "super_admin"},
                              headers=auth_headers(make_user(role="admin")))
        assert response.status_code == 403

    def test_admin_deactivates_user(self, client, make_user, auth_headers):
        user = make_user()
        response = client.put(f"/api/admin/users/{user['_id']}", json={"is_active": False},
                              headers=auth_headers(make_user(role="admin")))
        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False
        assert client.get("/api/auth/me", headers=auth_headers(user)).status_code == 401

    def test_email_conflict(self, client, make_user, auth_headers):
        make_user(email="one@mail.com")
        other = make_user()
        response = client.put(f"/api/admin/users/{other['_id']}", json={"email": "one@mail.com"},
                              headers=auth_headers(make_user(role="admin")))
        assert response.status_code == 409

    def test_delete_cascades(self, client, db, make_user, auth_headers, place_order):
        victim = make_user()
        place_order(victim)
        db.create_document("product", {"name": "P", "price": 1.0, "stock": 1, "category": "c",
                                       "is_active": True, "created_by": str(victim["_id"])})

        response = client.delete(f"/api/admin/users/{victim['_id']}", headers=auth_headers(make_user(role="super_admin")))

        assert response.status_code == 200
        assert db["user"].find_one({"_id": victim["_id"]}) is None
        assert db["order"].count_documents({"user_id": str(victim["_id"])}) == 0
        assert db["product"].find_one({"name": "P"})["created_by"] is None

    def test_delete_requires_super_admin(self, client, make_user, auth_headers):
        victim = make_user()
        response = client.delete(f"/api/admin/users/{victim['_id']}", headers=auth_headers(make_user(role="admin")))
        assert response.status_code == 403

    def test_super_admin_cannot_be_deleted(self, client, make_user, auth_headers):
        boss = make_user(role="super_admin")
        response = client.delete(f"/api/admin/users/{boss['_id']}", headers=auth_headers(make_user(role="super_admin")))
        assert response.status_code == 403


class TestAppFactory:
    def test_builds_from_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_NAME", "shop_from_env")
        monkeypatch.setenv("JWT_SECRET", "env-secret")
        monkeypatch.setenv("DATABASE_TRANSACTION_ATTEMPTS", "5")

        app = create_app()
        try:
            assert app.state.settings.jwt_secret == "env-secret"
            assert app.state.db.db.name == "shop_from_env"
            assert app.state.db.transaction_attempts == 5
            assert "/api/payments/webhook" in {route.path for route in app.routes}
        finally:
            app.state.db.close()
