"""Integration tests for the catalog, orders and the Khalti checkout."""

from decimal import Decimal

import pytest

CHECKOUT = {
    "items": [
        {"product": {"_id": "jacket-1", "name": "Denim Jacket"}, "quantity": 1, "price": 60},
        {"productId": "scarf-1", "name": "Wool Scarf", "quantity": 2, "price": 20},
    ],
    "shippingAddress": {"firstName": "Asha", "streetAddress": "Thamel 12", "city": "Kathmandu"},
    "contactInfo": {"phone": "9801234567"},
}


@pytest.fixture
def admin(make_account):
    return make_account("admin@example.com")


@pytest.fixture
def shopper(make_account):
    return make_account("shopper@example.com")


@pytest.fixture
def catalog(client, admin):
    for product_id, name, price in (("jacket-1", "Denim Jacket", "60.00"), ("scarf-1", "Wool Scarf", "20.00")):
        resp = client.put(
            f"/v1/admin/products/{product_id}",
            headers=admin["headers"],
            json={"name": name, "price": price},
        )
        assert resp.status_code == 200
    return ["jacket-1", "scarf-1"]


class TestProducts:
    def test_public_product_lookup(self, client, catalog):
        resp = client.get("/v1/products/jacket-1")
        assert resp.status_code == 200
        assert Decimal(str(resp.json()["data"]["price"])) == Decimal("60.00")
        assert client.get("/v1/products/missing").status_code == 404

    def test_only_admins_manage_catalog(self, client, shopper):
        resp = client.put("/v1/admin/products/x", headers=shopper["headers"], json={"name": "X", "price": "1.00"})
        assert resp.status_code == 403


class TestOrders:
    def test_create_and_track(self, client, shopper, admin, catalog):
        resp = client.post(
            "/v1/orders",
            headers=shopper["headers"],
            json={
                "items": [{"product_id": "jacket-1"}, {"product_id": "scarf-1", "quantity": 2}],
                "shipping_address": {"firstName": "Asha", "city": "Kathmandu"},
            },
        )
        assert resp.status_code == 201
        order = resp.json()["data"]
        assert Decimal(str(order["total"])) == Decimal("100.00")
        assert order["order_number"].startswith("ORD-")
        assert order["shipping_address"]["city"] == "Kathmandu"

        resp = client.patch(
            f"/v1/orders/{order['id']}/status",
            headers=admin["headers"],
            json={"status": "shipped", "tracking_number": "NP-42"},
        )
        assert resp.status_code == 200

        tracking = client.get(f"/v1/orders/{order['id']}/track", headers=shopper["headers"]).json()["data"]
        assert tracking["status"] == "shipped"
        assert tracking["tracking_number"] == "NP-42"
        assert [entry["status"] for entry in tracking["timeline"]] == ["pending", "shipped"]

    def test_listing_is_scoped(self, client, shopper, make_account, admin, catalog):
        other = make_account("other@example.com")
        client.post("/v1/orders", headers=shopper["headers"], json={"items": [{"product_id": "jacket-1"}]})
        client.post("/v1/orders", headers=other["headers"], json={"items": [{"product_id": "scarf-1"}]})

        mine = client.get("/v1/orders/mine", headers=shopper["headers"]).json()["data"]
        assert mine["total"] == 1
        assert client.get("/v1/orders", headers=shopper["headers"]).status_code == 403
        everything = client.get("/v1/orders", headers=admin["headers"]).json()["data"]
        assert everything["total"] == 2

    def test_strangers_cannot_read_or_cancel(self, client, shopper, make_account, catalog):
        order = client.post(
            "/v1/orders", headers=shopper["headers"], json={"items": [{"product_id": "jacket-1"}]}
        ).json()["data"]
        other = make_account("nosy@example.com")
        assert client.get(f"/v1/orders/{order['id']}", headers=other["headers"]).status_code == 403
        resp = client.post(f"/v1/orders/{order['id']}/cancel", headers=other["headers"], json={})
        assert resp.status_code == 403

    def test_owner_cancels(self, client, shopper, catalog):
        order = client.post(
            "/v1/orders", headers=shopper["headers"], json={"items": [{"product_id": "jacket-1"}]}
        ).json()["data"]
        resp = client.post(
            f"/v1/orders/{order['id']}/cancel", headers=shopper["headers"], json={"reason": "too big"}
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "cancelled"
        assert resp.json()["data"]["cancellation_reason"] == "too big"

    def test_invalid_transition(self, client, shopper, admin, catalog):
        order = client.post(
            "/v1/orders", headers=shopper["headers"], json={"items": [{"product_id": "jacket-1"}]}
        ).json()["data"]
        client.patch(f"/v1/orders/{order['id']}/status", headers=admin["headers"], json={"status": "delivered"})
        resp = client.patch(
            f"/v1/orders/{order['id']}/status", headers=admin["headers"], json={"status": "processing"}
        )
        assert resp.status_code == 400

    def test_unknown_product(self, client, shopper):
        resp = client.post("/v1/orders", headers=shopper["headers"], json={"items": [{"product_id": "ghost"}]})
        assert resp.status_code == 404


class TestKhaltiCheckout:
    def _initiate(self, client, user, amount=15000, product_info=CHECKOUT, **extra):
        return client.post(
            "/v1/payments/khalti/initiate",
            headers=user["headers"],
            json={"amount": amount, "productInfo": product_info, **extra},
        )

    def test_checkout_creates_exactly_one_order(self, client, shopper, khalti):
        resp = self._initiate(client, shopper)
        assert resp.status_code == 200
        init = resp.json()["data"]
        assert init["pidx"] == "pidx-1"
        assert init["amount"] == 15000
        assert "X-RateLimit-Remaining" in resp.headers

        first = client.post("/v1/payments/khalti/verify", headers=shopper["headers"], json={"pidx": init["pidx"]})
        assert first.status_code == 200
        data = first.json()["data"]
        assert data["order_created"] is True
        assert data["payment"]["status"] == "completed"
        order = data["order"]
        assert order["status"] == "confirmed"
        assert order["payment_status"] == "paid"
        assert Decimal(str(order["total"])) == Decimal("150.00")
        assert sum(Decimal(str(item["subtotal"])) for item in order["items"]) == Decimal("150.00")

        replay = client.post("/v1/payments/khalti/verify", headers=shopper["headers"], json={"pidx": init["pidx"]})
        assert replay.status_code == 200
        assert replay.json()["data"]["order_created"] is False
        assert replay.json()["data"]["order"]["id"] == order["id"]

        mine = client.get("/v1/orders/mine", headers=shopper["headers"]).json()["data"]
        assert mine["total"] == 1

    def test_pending_payment_can_be_retried(self, client, shopper, khalti):
        init = self._initiate(client, shopper).json()["data"]
        khalti.lookup_status = "Pending"
        resp = client.post("/v1/payments/khalti/verify", headers=shopper["headers"], json={"pidx": init["pidx"]})
        assert resp.status_code == 400
        assert resp.json()["error"]["details"] == {"status": "Pending", "paymentStatus": "pending"}

        khalti.lookup_status = "Completed"
        resp = client.post("/v1/payments/khalti/verify", headers=shopper["headers"], json={"pidx": init["pidx"]})
        assert resp.status_code == 200

    def test_cancelled_payment_is_final(self, client, shopper, khalti):
        init = self._initiate(client, shopper).json()["data"]
        khalti.lookup_status = "User canceled"
        assert client.post(
            "/v1/payments/khalti/verify", headers=shopper["headers"], json={"pidx": init["pidx"]}
        ).status_code == 400
        khalti.lookup_status = "Completed"
        resp = client.post("/v1/payments/khalti/verify", headers=shopper["headers"], json={"pidx": init["pidx"]})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_gateway_failure_is_upstream_error(self, client, shopper, khalti):
        khalti.fail_initiate = True
        resp = self._initiate(client, shopper)
        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "upstream_error"
        history = client.get("/v1/payments/history", headers=shopper["headers"]).json()["data"]["items"]
        assert history[0]["status"] == "failed"

    def test_unconfigured_gateway(self, client, shopper):
        resp = self._initiate(client, shopper)
        assert resp.status_code == 502

    def test_amount_validation(self, client, shopper, khalti):
        assert self._initiate(client, shopper, amount=5).status_code == 400
        assert khalti.requests == []

    def test_other_user_cannot_verify_or_read(self, client, shopper, make_account, khalti):
        init = self._initiate(client, shopper).json()["data"]
        other = make_account("thief@example.com")
        resp = client.post("/v1/payments/khalti/verify", headers=other["headers"], json={"pidx": init["pidx"]})
        assert resp.status_code == 403
        assert client.get(f"/v1/payments/{init['payment_id']}", headers=other["headers"]).status_code == 403
        assert client.get(f"/v1/payments/{init['payment_id']}", headers=shopper["headers"]).status_code == 200

    def test_unknown_pidx(self, client, shopper, khalti):
        resp = client.post("/v1/payments/khalti/verify", headers=shopper["headers"], json={"pidx": "nope"})
        assert resp.status_code == 404

    def test_pay_existing_order(self, client, shopper, catalog, khalti):
        order = client.post(
            "/v1/orders", headers=shopper["headers"], json={"items": [{"product_id": "jacket-1"}]}
        ).json()["data"]
        init = self._initiate(client, shopper, amount=6000, product_info=None, orderId=order["id"]).json()["data"]
        data = client.post(
            "/v1/payments/khalti/verify", headers=shopper["headers"], json={"pidx": init["pidx"]}
        ).json()["data"]
        assert data["order_created"] is False
        assert data["order"]["id"] == order["id"]
        assert data["order"]["payment_status"] == "paid"

    def test_admin_refund(self, client, shopper, admin, khalti):
        init = self._initiate(client, shopper).json()["data"]
        verified = client.post(
            "/v1/payments/khalti/verify", headers=shopper["headers"], json={"pidx": init["pidx"]}
        ).json()["data"]

        # the order status alone cannot be flipped to refunded
        resp = client.patch(
            f"/v1/orders/{verified['order']['id']}/status",
            headers=admin["headers"],
            json={"status": "refunded"},
        )
        assert resp.status_code == 400
        payment = client.get(f"/v1/payments/{init['payment_id']}", headers=admin["headers"]).json()["data"]
        assert payment["status"] == "completed"

        assert client.post(
            f"/v1/payments/{init['payment_id']}/refund", headers=shopper["headers"], json={}
        ).status_code == 403
        resp = client.post(
            f"/v1/payments/{init['payment_id']}/refund", headers=admin["headers"], json={"reason": "damaged"}
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "refunded"
        order = client.get(f"/v1/orders/{verified['order']['id']}", headers=shopper["headers"]).json()["data"]
        assert order["status"] == "refunded"
        assert order["payment_status"] == "refunded"

        again = client.post(f"/v1/payments/{init['payment_id']}/refund", headers=admin["headers"], json={})
        assert again.status_code == 409

        listing = client.get("/v1/payments", headers=admin["headers"]).json()["data"]["items"]
        assert [p["id"] for p in listing] == [init["payment_id"]]
