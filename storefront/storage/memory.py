from __future__ import annotations

import copy
import json
import threading
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from storefront.logging import get_logger
from storefront.storage.common import (
    SecretCipher,
    deserialize_datetime,
    generate_uuid,
    normalize_email,
    optional_money,
    serialize_datetime,
    to_money,
)
from storefront.storage.errors import ConstraintViolation
from storefront.storage.models import (
    Account,
    AuditEvent,
    Order,
    OrderItem,
    Payment,
    Product,
    Session,
    ShippingAddress,
    snapshot_from_dict,
    snapshot_to_dict,
    utcnow,
)

_TOKEN_FIELDS = {
    "verification": ("verification_token", "verification_expires_at"),
    "reset": ("reset_token", "reset_expires_at"),
}

_MAX_AUDIT_EVENTS = 10000


class MemoryStore:
    """In-process store persisted as a JSON snapshot under the shared fs root.

    Every public method takes ``_data_lock``; read-modify-write helpers
    (``update_account``, ``transition_payment`` ...) apply the mutation to a
    copy and only commit it when the callback returns without raising.
    """

    def __init__(self, fs_root: str = "/tmp/storefront", *, secret_key: str) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.payments: Dict[str, Payment] = {}
        self.orders: Dict[str, Order] = {}
        self.products: Dict[str, Product] = {}
        self.audit_events: List[AuditEvent] = []
        self._order_seq: int = 0
        # RLock so helpers can re-enter while a mutation is in progress
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(secret_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        with self._data_lock:
            self._state_path()

    # ------------------------------------------------------------------
    # accounts
    # ------------------------------------------------------------------
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        name: Optional[str] = None,
        email_verified: bool = False,
        verification_token: Optional[str] = None,
        verification_expires_at: Optional[datetime] = None,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(a.email == normalized for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=generate_uuid(),
                email=normalized,
                password_hash=password_hash,
                role=role,
                name=name,
                email_verified=email_verified,
                verification_token=verification_token,
                verification_expires_at=verification_expires_at,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return copy.deepcopy(account) if account else None

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            results = sorted(
                self.accounts.values(), key=lambda a: a.created_at, reverse=True
            )
            return [copy.deepcopy(a) for a in results[:limit]]

    def update_account(
        self, account_id: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        with self._data_lock:
            current = self.accounts.get(account_id)
            if not current:
                return None
            working = copy.deepcopy(current)
            mutate(working)
            self.accounts[account_id] = working
            self._persist_state()
            return copy.deepcopy(working)

    def find_account_by_token(self, kind: str, digest: str) -> Optional[Account]:
        token_field, _ = _TOKEN_FIELDS[kind]
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if getattr(a, token_field) and getattr(a, token_field) == digest
                ),
                None,
            )
            return copy.deepcopy(account) if account else None

    def update_account_by_token(
        self, kind: str, digest: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        with self._data_lock:
            match = self.find_account_by_token(kind, digest)
            if not match:
                return None
            return self.update_account(match.id, mutate)

    def _admin_count(self) -> int:
        return sum(1 for a in self.accounts.values() if a.role == "admin")

    def update_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if account.role == "admin" and role != "admin" and self._admin_count() <= 1:
                raise ConstraintViolation(
                    "cannot demote the last admin", {"lastAdmin": True}
                )
            return self.update_account(account_id, lambda a: setattr(a, "role", role))

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            if account.role == "admin" and self._admin_count() <= 1:
                raise ConstraintViolation(
                    "cannot delete the last admin", {"lastAdmin": True}
                )
            self.accounts.pop(account_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.account_id == account_id:
                    self.sessions.pop(sess_id, None)
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            self.sessions[session.id] = copy.deepcopy(session)
            self._persist_state()
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.deepcopy(sess) if sess else None

    def touch_session(self, session_id: str, at: Optional[datetime] = None) -> Optional[Session]:
        at = at or utcnow()
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            # last_activity never moves backwards
            if at > sess.last_activity:
                sess.last_activity = at
                self._persist_state()
            return copy.deepcopy(sess)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_account_sessions(
        self, account_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            doomed = [
                sid
                for sid, sess in self.sessions.items()
                if sess.account_id == account_id and sid != except_session_id
            ]
            for sid in doomed:
                self.sessions.pop(sid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # ------------------------------------------------------------------
    # payments
    # ------------------------------------------------------------------
    def create_payment(self, payment: Payment) -> Payment:
        with self._data_lock:
            if payment.id in self.payments:
                raise ConstraintViolation("payment already exists", {"field": "id"})
            if payment.external_transaction_id and self._payment_for_transaction(
                payment.external_transaction_id
            ):
                raise ConstraintViolation(
                    "transaction already registered",
                    {"field": "external_transaction_id"},
                )
            self.payments[payment.id] = copy.deepcopy(payment)
            self._persist_state()
            return copy.deepcopy(payment)

    def _payment_for_transaction(self, transaction_id: str) -> Optional[Payment]:
        return next(
            (
                p
                for p in self.payments.values()
                if p.external_transaction_id == transaction_id
            ),
            None,
        )

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self._data_lock:
            payment = self.payments.get(payment_id)
            return copy.deepcopy(payment) if payment else None

    def get_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        with self._data_lock:
            payment = self._payment_for_transaction(transaction_id)
            return copy.deepcopy(payment) if payment else None

    def set_payment_transaction(
        self, payment_id: str, transaction_id: str
    ) -> Optional[Payment]:
        with self._data_lock:
            payment = self.payments.get(payment_id)
            if not payment:
                return None
            other = self._payment_for_transaction(transaction_id)
            if other and other.id != payment_id:
                raise ConstraintViolation(
                    "transaction already registered",
                    {"field": "external_transaction_id"},
                )
            payment.external_transaction_id = transaction_id
            payment.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(payment)

    def list_payments(
        self, account_id: Optional[str] = None, limit: int = 50
    ) -> List[Payment]:
        with self._data_lock:
            results = [
                p
                for p in self.payments.values()
                if account_id is None or p.account_id == account_id
            ]
            results.sort(key=lambda p: p.created_at, reverse=True)
            return [copy.deepcopy(p) for p in results[:limit]]

    def transition_payment(
        self,
        payment_id: str,
        allowed_from: Iterable[str],
        to_status: str,
        **fields: Any,
    ) -> Tuple[Optional[Payment], bool]:
        """Compare-and-set a payment status.

        Returns the current payment and whether this call applied the change.
        """
        allowed = set(allowed_from)
        with self._data_lock:
            payment = self.payments.get(payment_id)
            if not payment:
                return None, False
            if payment.status not in allowed:
                return copy.deepcopy(payment), False
            payment.status = to_status
            for key, value in fields.items():
                setattr(payment, key, value)
            payment.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(payment), True

    def link_payment_order(self, payment_id: str, order_id: str) -> bool:
        with self._data_lock:
            payment = self.payments.get(payment_id)
            if not payment or payment.order_id is not None:
                return False
            payment.order_id = order_id
            payment.updated_at = utcnow()
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # orders
    # ------------------------------------------------------------------
    def next_order_sequence(self) -> int:
        with self._data_lock:
            self._order_seq += 1
            self._persist_state()
            return self._order_seq

    def create_order(self, order: Order) -> Order:
        with self._data_lock:
            if order.id in self.orders:
                raise ConstraintViolation("order already exists", {"field": "id"})
            if any(o.order_number == order.order_number for o in self.orders.values()):
                raise ConstraintViolation(
                    "order number already exists", {"field": "order_number"}
                )
            self.orders[order.id] = copy.deepcopy(order)
            self._persist_state()
            return copy.deepcopy(order)

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._data_lock:
            order = self.orders.get(order_id)
            return copy.deepcopy(order) if order else None

    def list_orders(
        self,
        account_id: Optional[str] = None,
        *,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Order], int]:
        with self._data_lock:
            results = [
                o
                for o in self.orders.values()
                if (account_id is None or o.account_id == account_id)
                and (status is None or o.status == status)
            ]
            results.sort(key=lambda o: o.created_at, reverse=True)
            page = results[offset : offset + limit]
            return [copy.deepcopy(o) for o in page], len(results)

    def update_order(
        self, order_id: str, mutate: Callable[[Order], None]
    ) -> Optional[Order]:
        with self._data_lock:
            current = self.orders.get(order_id)
            if not current:
                return None
            working = copy.deepcopy(current)
            mutate(working)
            working.updated_at = utcnow()
            self.orders[order_id] = working
            self._persist_state()
            return copy.deepcopy(working)

    # ------------------------------------------------------------------
    # products
    # ------------------------------------------------------------------
    def upsert_product(self, product: Product) -> Product:
        with self._data_lock:
            product.updated_at = utcnow()
            self.products[product.id] = copy.deepcopy(product)
            self._persist_state()
            return copy.deepcopy(product)

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._data_lock:
            product = self.products.get(product_id)
            return copy.deepcopy(product) if product else None

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------
    def record_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(copy.deepcopy(event))
            if len(self.audit_events) > _MAX_AUDIT_EVENTS:
                self.audit_events = self.audit_events[-_MAX_AUDIT_EVENTS:]
            self._persist_state()
            return event

    def list_audit_events(
        self,
        *,
        account_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._data_lock:
            results = [
                e
                for e in reversed(self.audit_events)
                if (account_id is None or e.account_id == account_id)
                and (action is None or e.action == action)
            ]
            return [copy.deepcopy(e) for e in results[:limit]]

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "payments": [self._serialize_payment(p) for p in self.payments.values()],
            "orders": [self._serialize_order(o) for o in self.orders.values()],
            "products": [self._serialize_product(p) for p in self.products.values()],
            "audit_events": [self._serialize_audit(e) for e in self.audit_events],
            "order_seq": self._order_seq,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=str))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.payments = {
            p["id"]: self._deserialize_payment(p) for p in data.get("payments", [])
        }
        self.orders = {o["id"]: self._deserialize_order(o) for o in data.get("orders", [])}
        self.products = {
            p["id"]: self._deserialize_product(p) for p in data.get("products", [])
        }
        self.audit_events = [
            self._deserialize_audit(e) for e in data.get("audit_events", [])
        ]
        self._order_seq = int(data.get("order_seq", 0))
        return True

    def _serialize_account(self, account: Account) -> dict:
        data = asdict(account)
        data["two_factor_secret"] = self._cipher.encrypt(account.two_factor_secret)
        data["two_factor_temp_secret"] = self._cipher.encrypt(
            account.two_factor_temp_secret
        )
        for key in (
            "created_at",
            "verification_expires_at",
            "reset_expires_at",
            "locked_until",
            "last_failed_at",
            "lock_notified_at",
            "last_login_at",
            "password_changed_at",
        ):
            data[key] = serialize_datetime(data[key])
        return data

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            role=data.get("role", "user"),
            name=data.get("name"),
            created_at=deserialize_datetime(data["created_at"]),
            email_verified=data.get("email_verified", False),
            verification_token=data.get("verification_token"),
            verification_expires_at=deserialize_datetime(data.get("verification_expires_at")),
            reset_token=data.get("reset_token"),
            reset_expires_at=deserialize_datetime(data.get("reset_expires_at")),
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=deserialize_datetime(data.get("locked_until")),
            last_failed_at=deserialize_datetime(data.get("last_failed_at")),
            lock_notified_at=deserialize_datetime(data.get("lock_notified_at")),
            last_login_at=deserialize_datetime(data.get("last_login_at")),
            two_factor_enabled=data.get("two_factor_enabled", False),
            two_factor_secret=self._cipher.decrypt(data.get("two_factor_secret")),
            two_factor_temp_secret=self._cipher.decrypt(data.get("two_factor_temp_secret")),
            backup_code_hashes=list(data.get("backup_code_hashes") or []),
            password_history=list(data.get("password_history") or []),
            password_changed_at=deserialize_datetime(data["password_changed_at"]),
            password_expiry_warned=data.get("password_expiry_warned", False),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "account_id": session.account_id,
            "email": session.email,
            "role": session.role,
            "created_at": serialize_datetime(session.created_at),
            "last_activity": serialize_datetime(session.last_activity),
            "expires_at": serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            email=data["email"],
            role=data.get("role", "user"),
            created_at=deserialize_datetime(data["created_at"]),
            last_activity=deserialize_datetime(data["last_activity"]),
            expires_at=deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )

    def _serialize_payment(self, payment: Payment) -> dict:
        return {
            "id": payment.id,
            "account_id": payment.account_id,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "method": payment.method,
            "status": payment.status,
            "external_transaction_id": payment.external_transaction_id,
            "order_id": payment.order_id,
            "snapshot": snapshot_to_dict(payment.snapshot),
            "failure_reason": payment.failure_reason,
            "verification_response": payment.verification_response,
            "created_at": serialize_datetime(payment.created_at),
            "updated_at": serialize_datetime(payment.updated_at),
            "completed_at": serialize_datetime(payment.completed_at),
            "refunded_at": serialize_datetime(payment.refunded_at),
        }

    def _deserialize_payment(self, data: dict) -> Payment:
        return Payment(
            id=data["id"],
            account_id=data["account_id"],
            amount=to_money(data["amount"]),
            currency=data.get("currency", "NPR"),
            method=data.get("method", "khalti"),
            status=data.get("status", "pending"),
            external_transaction_id=data.get("external_transaction_id"),
            order_id=data.get("order_id"),
            snapshot=snapshot_from_dict(data.get("snapshot")),
            failure_reason=data.get("failure_reason"),
            verification_response=data.get("verification_response"),
            created_at=deserialize_datetime(data["created_at"]),
            updated_at=deserialize_datetime(data["updated_at"]),
            completed_at=deserialize_datetime(data.get("completed_at")),
            refunded_at=deserialize_datetime(data.get("refunded_at")),
        )

    def _serialize_order(self, order: Order) -> dict:
        data = asdict(order)
        for key, value in list(data.items()):
            if isinstance(value, Decimal):
                data[key] = str(value)
            elif isinstance(value, datetime):
                data[key] = serialize_datetime(value)
        data["items"] = [
            {
                **item,
                "unit_price": str(item["unit_price"]),
                "subtotal": str(item["subtotal"]),
            }
            for item in data["items"]
        ]
        return data

    def _deserialize_order(self, data: dict) -> Order:
        address = data.get("shipping_address")
        return Order(
            id=data["id"],
            order_number=data["order_number"],
            account_id=data["account_id"],
            items=[
                OrderItem(
                    product_id=item.get("product_id"),
                    name=item["name"],
                    quantity=int(item["quantity"]),
                    unit_price=to_money(item["unit_price"]),
                    subtotal=to_money(item["subtotal"]),
                    status=item.get("status", "pending"),
                )
                for item in data.get("items", [])
            ],
            subtotal=to_money(data["subtotal"]),
            total=to_money(data["total"]),
            tax=to_money(data.get("tax", "0")),
            shipping_cost=to_money(data.get("shipping_cost", "0")),
            discount=to_money(data.get("discount", "0")),
            status=data.get("status", "pending"),
            payment_status=data.get("payment_status", "pending"),
            payment_method=data.get("payment_method"),
            payment_id=data.get("payment_id"),
            order_type=data.get("order_type", "standard"),
            source=data.get("source", "web"),
            shipping_address=ShippingAddress(**address) if address else None,
            tracking_number=data.get("tracking_number"),
            notes=data.get("notes"),
            cancellation_reason=data.get("cancellation_reason"),
            created_at=deserialize_datetime(data["created_at"]),
            updated_at=deserialize_datetime(data["updated_at"]),
            confirmed_at=deserialize_datetime(data.get("confirmed_at")),
            processed_at=deserialize_datetime(data.get("processed_at")),
            shipped_at=deserialize_datetime(data.get("shipped_at")),
            delivered_at=deserialize_datetime(data.get("delivered_at")),
            cancelled_at=deserialize_datetime(data.get("cancelled_at")),
        )

    def _serialize_product(self, product: Product) -> dict:
        return {
            "id": product.id,
            "name": product.name,
            "price": str(product.price) if product.price is not None else None,
            "rental_price": (
                str(product.rental_price) if product.rental_price is not None else None
            ),
            "updated_at": serialize_datetime(product.updated_at),
        }

    def _deserialize_product(self, data: dict) -> Product:
        return Product(
            id=data["id"],
            name=data["name"],
            price=optional_money(data.get("price")),
            rental_price=optional_money(data.get("rental_price")),
            updated_at=deserialize_datetime(data["updated_at"]),
        )

    def _serialize_audit(self, event: AuditEvent) -> dict:
        data = asdict(event)
        data["created_at"] = serialize_datetime(event.created_at)
        return data

    def _deserialize_audit(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            action=data["action"],
            result=data["result"],
            severity=data["severity"],
            account_id=data.get("account_id"),
            resource=data.get("resource"),
            ip=data.get("ip"),
            user_agent=data.get("user_agent"),
            metadata=data.get("metadata") or {},
            created_at=deserialize_datetime(data["created_at"]),
        )
