from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from storefront import app as app_module
from storefront.api import schemas
from storefront.config import Settings


def test_security_headers_and_health(client):
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["checks"]["filesystem"] == {"status": "healthy"}
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_api_responses_are_not_cached(client):
    response = client.get("/v1/products/none")
    assert response.status_code == 404
    assert "no-store" in response.headers["Cache-Control"]


def test_request_id_echoed(client):
    response = client.get("/v1/products/none", headers={"X-Request-ID": "trace-123"})
    assert response.headers["X-Request-ID"] == "trace-123"
    assert response.json()["request_id"] == "trace-123"


def test_request_id_generated_when_absent(client):
    response = client.get("/healthz")
    assert response.headers["X-Request-ID"]


def test_configured_cors_origins(tmp_path):
    settings = Settings(
        secret_key="cors-test-secret",
        shared_fs_root=str(tmp_path),
        cors_allow_origins="https://shop.example.com, https://admin.example.com",
    )
    client = TestClient(app_module.create_app(settings))
    response = client.options(
        "/v1/products/x",
        headers={
            "Origin": "https://admin.example.com",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert response.headers["access-control-allow-origin"] == "https://admin.example.com"
    assert response.headers["access-control-allow-credentials"] == "true"


class TestSchemas:
    def test_signup_normalizes_email(self):
        body = schemas.SignupRequest(email="  Shopper@Example.COM ", password="x" * 12)
        assert body.email == "shopper@example.com"

    def test_signup_rejects_malformed_email(self):
        with pytest.raises(ValidationError):
            schemas.SignupRequest(email="not-an-email", password="x" * 12)

    def test_initiate_accepts_both_spellings(self):
        camel = schemas.PaymentInitiateRequest.model_validate(
            {"amount": 1000, "productInfo": {"items": []}, "orderId": "o-1"}
        )
        snake = schemas.PaymentInitiateRequest.model_validate(
            {"amount": 1000, "product_info": {"items": []}, "order_id": "o-1"}
        )
        assert camel == snake

    def test_product_price_must_be_money(self):
        assert schemas.ProductUpsertRequest(name="Coat", price="12.50").price == Decimal("12.50")
        with pytest.raises(ValidationError):
            schemas.ProductUpsertRequest(name="Coat", price="-1")
        with pytest.raises(ValidationError):
            schemas.ProductUpsertRequest(name="Coat", price="1.005")

    def test_order_quantity_bounds(self):
        with pytest.raises(ValidationError):
            schemas.OrderItemRequest(product_id="p1", quantity=0)

    def test_unknown_order_status_rejected(self):
        with pytest.raises(ValidationError):
            schemas.OrderStatusUpdateRequest(status="lost")
