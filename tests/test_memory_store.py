"""MemoryStore behaviour: uniqueness, compare-and-set helpers and reload."""

from decimal import Decimal

import pytest

from storefront.storage.errors import ConstraintViolation
from storefront.storage.memory import MemoryStore
from storefront.storage.models import (
    CheckoutSnapshot,
    Payment,
    Session,
    ShippingAddress,
    SnapshotItem,
)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), secret_key="unit-test-secret")


def _reload(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), secret_key="unit-test-secret")


class TestAccounts:
    def test_email_is_normalized_and_unique(self, memory_store):
        account = memory_store.create_account("  Mixed@Example.COM ", "hash")
        assert account.email == "mixed@example.com"
        with pytest.raises(ConstraintViolation):
            memory_store.create_account("mixed@example.com", "hash")
        assert memory_store.get_account_by_email("MIXED@example.com").id == account.id

    def test_returned_objects_are_copies(self, memory_store):
        account = memory_store.create_account("copy@example.com", "hash")
        account.role = "admin"
        assert memory_store.get_account(account.id).role == "user"

    def test_update_account_discards_failed_mutation(self, memory_store):
        account = memory_store.create_account("atomic@example.com", "hash")

        def _explode(a):
            a.failed_attempts = 99
            raise ValueError("abort")

        with pytest.raises(ValueError):
            memory_store.update_account(account.id, _explode)
        assert memory_store.get_account(account.id).failed_attempts == 0

    def test_last_admin_cannot_be_demoted_or_deleted(self, memory_store):
        admin = memory_store.create_account("root@example.com", "hash", role="admin")
        with pytest.raises(ConstraintViolation) as exc:
            memory_store.update_role(admin.id, "user")
        assert exc.value.detail == {"lastAdmin": True}
        with pytest.raises(ConstraintViolation):
            memory_store.delete_account(admin.id)

        second = memory_store.create_account("second@example.com", "hash", role="admin")
        assert memory_store.update_role(admin.id, "user").role == "user"
        assert memory_store.get_account(second.id).role == "admin"

    def test_delete_account_drops_sessions(self, memory_store):
        account = memory_store.create_account("gone@example.com", "hash")
        session = memory_store.create_session(Session.new(account.id, account.email, account.role))
        assert memory_store.delete_account(account.id)
        assert memory_store.get_session(session.id) is None
        assert not memory_store.delete_account(account.id)

    def test_token_lookup_by_digest(self, memory_store):
        account = memory_store.create_account(
            "verify@example.com", "hash", verification_token="digest-1"
        )
        assert memory_store.find_account_by_token("verification", "digest-1").id == account.id
        assert memory_store.find_account_by_token("verification", "other") is None


class TestSessions:
    def test_touch_never_moves_backwards(self, memory_store):
        session = memory_store.create_session(Session.new("a1", "a@example.com", "user"))
        earlier = session.last_activity.replace(year=2000)
        touched = memory_store.touch_session(session.id, earlier)
        assert touched.last_activity == session.last_activity

    def test_delete_account_sessions_except_current(self, memory_store):
        keep = memory_store.create_session(Session.new("a1", "a@example.com", "user"))
        memory_store.create_session(Session.new("a1", "a@example.com", "user"))
        memory_store.create_session(Session.new("a2", "b@example.com", "user"))
        assert memory_store.delete_account_sessions("a1", except_session_id=keep.id) == 1
        assert memory_store.get_session(keep.id) is not None


class TestPayments:
    def test_transition_is_compare_and_set(self, memory_store):
        payment = memory_store.create_payment(Payment.new("a1", Decimal("10.00")))
        current, changed = memory_store.transition_payment(payment.id, {"pending"}, "completed")
        assert changed and current.status == "completed"
        current, changed = memory_store.transition_payment(payment.id, {"pending"}, "failed")
        assert not changed and current.status == "completed"
        assert memory_store.transition_payment("missing", {"pending"}, "failed") == (None, False)

    def test_order_link_claimed_once(self, memory_store):
        payment = memory_store.create_payment(Payment.new("a1", Decimal("10.00")))
        assert memory_store.link_payment_order(payment.id, "order-1")
        assert not memory_store.link_payment_order(payment.id, "order-2")
        assert memory_store.get_payment(payment.id).order_id == "order-1"

    def test_transaction_id_unique(self, memory_store):
        first = memory_store.create_payment(Payment.new("a1", Decimal("10.00")))
        second = memory_store.create_payment(Payment.new("a1", Decimal("10.00")))
        memory_store.set_payment_transaction(first.id, "pidx-1")
        with pytest.raises(ConstraintViolation):
            memory_store.set_payment_transaction(second.id, "pidx-1")
        assert memory_store.get_payment_by_transaction("pidx-1").id == first.id

    def test_list_payments_scoped_to_account(self, memory_store):
        memory_store.create_payment(Payment.new("a1", Decimal("1.00")))
        memory_store.create_payment(Payment.new("a2", Decimal("2.00")))
        assert [p.account_id for p in memory_store.list_payments("a1")] == ["a1"]
        assert len(memory_store.list_payments(None)) == 2


def test_state_survives_reload(memory_store, tmp_path):
    account = memory_store.create_account("persist@example.com", "hash", name="Persist")
    snapshot = CheckoutSnapshot(
        items=[SnapshotItem(product_id="p1", name="Coat", quantity=2, unit_price=Decimal("7.25"))],
        shipping_address=ShippingAddress(city="Pokhara", phone="9800000000"),
    )
    payment = memory_store.create_payment(
        Payment.new(account.id, Decimal("14.50"), snapshot=snapshot)
    )
    memory_store.next_order_sequence()

    reloaded = _reload(tmp_path)
    restored = reloaded.get_account(account.id)
    assert restored.name == "Persist"
    assert restored.password_changed_at == account.password_changed_at

    restored_payment = reloaded.get_payment(payment.id)
    assert restored_payment.amount == Decimal("14.50")
    assert isinstance(restored_payment.snapshot, CheckoutSnapshot)
    assert restored_payment.snapshot.items[0].unit_price == Decimal("7.25")
    assert restored_payment.snapshot.shipping_address.city == "Pokhara"
    assert reloaded.next_order_sequence() == 2
