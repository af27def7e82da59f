import json
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from storefront.storage.common import SecretCipher
from storefront.storage.models import Account, CheckoutSnapshot, Order, OrderItem, ShippingAddress
from storefront.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    """Replays scripted cursors and records every statement."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.results.pop(0)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakePool:
    def __init__(self, conn=None):
        self.conn = conn

    def connection(self):
        if self.conn is None:
            raise AssertionError("database access should be stubbed in unit tests")
        return self.conn


NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)


def _store(tmp_path: Path, conn=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.fs_root = tmp_path
    store._cipher = SecretCipher("unit-test-secret")
    return store


def _payment_row(**overrides):
    row = {
        "id": "pay-1",
        "account_id": "acc-1",
        "amount": Decimal("150.00"),
        "currency": "NPR",
        "method": "khalti",
        "status": "pending",
        "external_transaction_id": "pidx-1",
        "order_id": None,
        "snapshot": {
            "kind": "checkout",
            "items": [{"product_id": "p1", "name": "Coat", "quantity": 1, "unit_price": "150.00"}],
            "shipping_address": {"city": "Lalitpur"},
        },
        "failure_reason": None,
        "verification_response": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_account_row_decrypts_totp_secret(tmp_path):
    store = _store(tmp_path)
    row = {
        "id": "acc-1",
        "email": "row@example.com",
        "password_hash": "hash",
        "role": "admin",
        "created_at": NOW,
        "email_verified": True,
        "failed_attempts": None,
        "two_factor_enabled": True,
        "two_factor_secret": store._cipher.encrypt("JBSWY3DPEHPK3PXP"),
        "backup_code_hashes": ["h1"],
        "password_history": None,
        "password_changed_at": NOW,
    }
    account = store._account_from_row(row)
    assert account.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert account.failed_attempts == 0
    assert account.password_history == []
    assert account.backup_code_hashes == ["h1"]


def test_account_params_encrypt_and_encode_lists(tmp_path):
    store = _store(tmp_path)
    account = Account(
        id="acc-1",
        email="p@example.com",
        password_hash="hash",
        two_factor_secret="JBSWY3DPEHPK3PXP",
        password_history=["old"],
    )
    params = store._account_params(account)
    assert params["two_factor_secret"] != "JBSWY3DPEHPK3PXP"
    assert store._cipher.decrypt(params["two_factor_secret"]) == "JBSWY3DPEHPK3PXP"
    assert json.loads(params["password_history"]) == ["old"]
    assert "email" not in params


def test_payment_row_restores_snapshot(tmp_path):
    payment = PostgresStore._payment_from_row(_payment_row(order_id="ord-1"))
    assert payment.amount == Decimal("150.00")
    assert payment.order_id == "ord-1"
    assert isinstance(payment.snapshot, CheckoutSnapshot)
    assert payment.snapshot.shipping_address.city == "Lalitpur"


def test_order_params_round_trip_through_row(tmp_path):
    order = Order(
        id="ord-1",
        order_number="ORD-1-0001",
        account_id="acc-1",
        items=[OrderItem("p1", "Coat", 2, Decimal("10.00"), Decimal("20.00"))],
        subtotal=Decimal("20.00"),
        total=Decimal("20.00"),
        shipping_address=ShippingAddress(city="Bhaktapur"),
        created_at=NOW,
        updated_at=NOW,
    )
    params = PostgresStore._order_params(order)
    row = {
        **params,
        "id": order.id,
        "order_number": order.order_number,
        "account_id": order.account_id,
        "items": json.loads(params["items"]),
        "shipping_address": json.loads(params["shipping_address"]),
        "created_at": NOW,
    }
    restored = PostgresStore._order_from_row(row)
    assert restored.items == order.items
    assert restored.shipping_address.city == "Bhaktapur"
    assert restored.total == Decimal("20.00")


def test_transition_payment_applies_when_status_allowed(tmp_path):
    conn = FakeConnection([FakeCursor(_payment_row(status="completed"))])
    store = _store(tmp_path, conn)
    current, changed = store.transition_payment(
        "pay-1", {"pending"}, "completed", verification_response={"status": "Completed"}
    )
    assert changed
    assert current.status == "completed"
    sql, params = conn.statements[0]
    assert "status = ANY(%(allowed)s)" in sql
    assert params["allowed"] == ["pending"]
    assert json.loads(params["verification_response"]) == {"status": "Completed"}


def test_transition_payment_reports_current_when_rejected(tmp_path):
    conn = FakeConnection([FakeCursor(None), FakeCursor(_payment_row(status="failed"))])
    store = _store(tmp_path, conn)
    current, changed = store.transition_payment("pay-1", {"pending"}, "completed")
    assert not changed
    assert current.status == "failed"


def test_link_payment_order_only_when_unlinked(tmp_path):
    conn = FakeConnection([FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
    store = _store(tmp_path, conn)
    assert store.link_payment_order("pay-1", "ord-1")
    assert not store.link_payment_order("pay-1", "ord-2")
    assert "order_id IS NULL" in conn.statements[0][0]


def test_unstubbed_access_fails_loudly(tmp_path):
    store = _store(tmp_path)
    with pytest.raises(AssertionError):
        store.get_payment("pay-1")
