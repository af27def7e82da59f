from decimal import Decimal

import pytest

from storefront.service.audit import AuditSink
from storefront.service.auth import AuthContext
from storefront.service.errors import ForbiddenError, NotFoundError, ValidationError
from storefront.service.orders import OrderService, catalog_price
from storefront.storage.memory import MemoryStore
from storefront.storage.models import Product


@pytest.fixture
def memory_store(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), secret_key="unit-test-secret")
    store.upsert_product(Product(id="p1", name="Linen Shirt", price=Decimal("12.50")))
    store.upsert_product(Product(id="p2", name="Evening Gown", rental_price=Decimal("40.00")))
    store.upsert_product(Product(id="p3", name="Mystery Box"))
    return store


@pytest.fixture
def service(memory_store):
    return OrderService(memory_store, AuditSink(memory_store))


@pytest.fixture
def owner():
    return AuthContext(account_id="owner-1", email="owner@example.com", role="user")


@pytest.fixture
def admin():
    return AuthContext(account_id="admin-1", email="admin@example.com", role="admin")


def test_catalog_price_prefers_sale_price():
    assert catalog_price(Product(id="a", name="a", price=Decimal("5"), rental_price=Decimal("2"))) == Decimal("5")
    assert catalog_price(Product(id="b", name="b", rental_price=Decimal("2"))) == Decimal("2")
    assert catalog_price(Product(id="c", name="c", price=Decimal("0"))) is None
    assert catalog_price(None) is None


def test_order_numbers_are_unique_and_formatted(service):
    first = service.generate_order_number()
    second = service.generate_order_number()
    assert first != second
    prefix, millis, seq = first.split("-")
    assert prefix == "ORD"
    assert millis.isdigit()
    assert len(seq) == 4


class TestCreate:
    def test_prices_come_from_catalog(self, service, owner):
        order = service.create(
            owner,
            [{"product_id": "p1", "quantity": 2, "price": "0.01"}, {"product_id": "p2"}],
        )
        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert [line.subtotal for line in order.items] == [Decimal("25.00"), Decimal("40.00")]
        assert order.subtotal == order.total == Decimal("65.00")

    def test_empty_order_rejected(self, service, owner):
        with pytest.raises(ValidationError):
            service.create(owner, [])

    def test_unknown_product_rejected(self, service, owner):
        with pytest.raises(NotFoundError):
            service.create(owner, [{"product_id": "nope"}])

    def test_unpriced_product_rejected(self, service, owner):
        with pytest.raises(ValidationError):
            service.create(owner, [{"product_id": "p3"}])

    def test_quantity_must_be_positive(self, service, owner):
        with pytest.raises(ValidationError):
            service.create(owner, [{"product_id": "p1", "quantity": -1}])


class TestVisibility:
    def test_owner_and_admin_can_read(self, service, owner, admin):
        order = service.create(owner, [{"product_id": "p1"}])
        assert service.get(order.id, owner).id == order.id
        assert service.get(order.id, admin).id == order.id

    def test_stranger_forbidden(self, service, owner):
        order = service.create(owner, [{"product_id": "p1"}])
        stranger = AuthContext(account_id="someone", email="s@example.com", role="user")
        with pytest.raises(ForbiddenError):
            service.get(order.id, stranger)
        with pytest.raises(ForbiddenError):
            service.cancel(order.id, stranger)

    def test_list_mine_only_returns_own_orders(self, service, owner, admin):
        service.create(owner, [{"product_id": "p1"}])
        service.create(admin, [{"product_id": "p1"}])
        mine, total = service.list_mine(owner)
        assert total == 1
        assert mine[0].account_id == owner.account_id
        everything, total_all = service.list_all()
        assert total_all == 2


class TestStatusTransitions:
    def test_forward_progression_stamps_timestamps(self, service, owner, admin):
        order = service.create(owner, [{"product_id": "p1"}])
        order = service.update_status(order.id, "confirmed", admin)
        assert order.confirmed_at is not None
        order = service.update_status(order.id, "shipped", admin, tracking_number="NP123")
        assert order.shipped_at is not None
        assert order.tracking_number == "NP123"
        order = service.update_status(order.id, "delivered", admin)
        assert all(item.status == "delivered" for item in order.items)

    def test_backwards_move_rejected(self, service, owner, admin):
        order = service.create(owner, [{"product_id": "p1"}])
        service.update_status(order.id, "processing", admin)
        with pytest.raises(ValidationError) as exc:
            service.update_status(order.id, "confirmed", admin)
        assert exc.value.detail == {"from": "processing", "to": "confirmed"}

    def test_terminal_orders_frozen(self, service, owner, admin):
        order = service.create(owner, [{"product_id": "p1"}])
        service.update_status(order.id, "delivered", admin)
        with pytest.raises(ValidationError):
            service.update_status(order.id, "processing", admin)

    def test_shipped_order_cannot_be_cancelled(self, service, owner, admin):
        order = service.create(owner, [{"product_id": "p1"}])
        service.update_status(order.id, "shipped", admin)
        with pytest.raises(ValidationError):
            service.update_status(order.id, "cancelled", admin)
        with pytest.raises(ValidationError):
            service.cancel(order.id, owner)

    def test_refund_status_not_set_directly(self, service, memory_store, owner, admin):
        order = service.create(owner, [{"product_id": "p1"}])
        with pytest.raises(ValidationError) as exc:
            service.update_status(order.id, "refunded", admin)
        assert exc.value.detail == {"to": "refunded"}
        unchanged = memory_store.get_order(order.id)
        assert (unchanged.status, unchanged.payment_status) == ("pending", "pending")

    def test_unknown_status_rejected(self, service, owner, admin):
        order = service.create(owner, [{"product_id": "p1"}])
        with pytest.raises(ValidationError):
            service.update_status(order.id, "teleported", admin)

    def test_missing_order(self, service, admin):
        with pytest.raises(NotFoundError):
            service.update_status("missing", "confirmed", admin)

    def test_rejected_transition_leaves_order_unchanged(self, service, memory_store, owner, admin):
        order = service.create(owner, [{"product_id": "p1"}])
        service.update_status(order.id, "processing", admin)
        with pytest.raises(ValidationError):
            service.update_status(order.id, "pending", admin)
        assert memory_store.get_order(order.id).status == "processing"


class TestCancelAndTrack:
    def test_owner_cancels_with_reason(self, service, memory_store, owner):
        order = service.create(owner, [{"product_id": "p1"}])
        cancelled = service.cancel(order.id, owner, reason="changed my mind")
        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "changed my mind"
        assert cancelled.cancelled_at is not None
        events = memory_store.list_audit_events(action="order_cancelled")
        assert events[0].metadata["reason"] == "changed my mind"

    def test_cannot_cancel_twice(self, service, owner):
        order = service.create(owner, [{"product_id": "p1"}])
        service.cancel(order.id, owner)
        with pytest.raises(ValidationError):
            service.cancel(order.id, owner)

    def test_track_builds_ordered_timeline(self, service, owner, admin):
        order = service.create(owner, [{"product_id": "p1"}])
        service.update_status(order.id, "confirmed", admin)
        service.update_status(order.id, "shipped", admin, tracking_number="NP1")
        tracking = service.track(order.id, owner)
        assert tracking["status"] == "shipped"
        assert tracking["tracking_number"] == "NP1"
        assert [entry["status"] for entry in tracking["timeline"]] == [
            "pending",
            "confirmed",
            "shipped",
        ]
