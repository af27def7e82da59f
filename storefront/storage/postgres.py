from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from storefront.logging import get_logger
from storefront.storage.common import (
    SecretCipher,
    generate_uuid,
    normalize_email,
    optional_money,
    safe_row_value,
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

_TOKEN_COLUMNS = {
    "verification": "verification_token",
    "reset": "reset_token",
}

# Account columns rewritten by update_account; id/email/created_at are immutable
_ACCOUNT_MUTABLE_COLUMNS = (
    "password_hash",
    "role",
    "name",
    "email_verified",
    "verification_token",
    "verification_expires_at",
    "reset_token",
    "reset_expires_at",
    "failed_attempts",
    "locked_until",
    "last_failed_at",
    "lock_notified_at",
    "last_login_at",
    "two_factor_enabled",
    "two_factor_secret",
    "two_factor_temp_secret",
    "backup_code_hashes",
    "password_history",
    "password_changed_at",
    "password_expiry_warned",
)

_ORDER_MUTABLE_COLUMNS = (
    "items",
    "subtotal",
    "tax",
    "shipping_cost",
    "discount",
    "total",
    "status",
    "payment_status",
    "payment_method",
    "payment_id",
    "shipping_address",
    "tracking_number",
    "notes",
    "cancellation_reason",
    "updated_at",
    "confirmed_at",
    "processed_at",
    "shipped_at",
    "delivered_at",
    "cancelled_at",
)


class PostgresStore:
    """Postgres-backed store; see scripts/schema.sql for the table layout."""

    def __init__(self, dsn: str, fs_root: str, *, secret_key: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(secret_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure tables exist before serving requests."""

        required_tables = [
            "account",
            "auth_session",
            "product",
            "customer_order",
            "payment",
            "audit_event",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # row mapping
    # ------------------------------------------------------------------
    def _account_from_row(self, row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role") or "user",
            name=row.get("name"),
            created_at=row["created_at"],
            email_verified=bool(row.get("email_verified")),
            verification_token=row.get("verification_token"),
            verification_expires_at=row.get("verification_expires_at"),
            reset_token=row.get("reset_token"),
            reset_expires_at=row.get("reset_expires_at"),
            failed_attempts=int(safe_row_value(row, "failed_attempts", 0)),
            locked_until=row.get("locked_until"),
            last_failed_at=row.get("last_failed_at"),
            lock_notified_at=row.get("lock_notified_at"),
            last_login_at=row.get("last_login_at"),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret")),
            two_factor_temp_secret=self._cipher.decrypt(row.get("two_factor_temp_secret")),
            backup_code_hashes=list(safe_row_value(row, "backup_code_hashes", [])),
            password_history=list(safe_row_value(row, "password_history", [])),
            password_changed_at=row["password_changed_at"],
            password_expiry_warned=bool(row.get("password_expiry_warned")),
        )

    def _account_params(self, account: Account) -> Dict[str, Any]:
        params = {col: getattr(account, col) for col in _ACCOUNT_MUTABLE_COLUMNS}
        params["two_factor_secret"] = self._cipher.encrypt(account.two_factor_secret)
        params["two_factor_temp_secret"] = self._cipher.encrypt(
            account.two_factor_temp_secret
        )
        params["backup_code_hashes"] = json.dumps(account.backup_code_hashes)
        params["password_history"] = json.dumps(account.password_history)
        return params

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            account_id=str(row["account_id"]),
            email=row["email"],
            role=row["role"],
            created_at=row["created_at"],
            last_activity=row["last_activity"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    @staticmethod
    def _payment_from_row(row: Dict[str, Any]) -> Payment:
        order_id = row.get("order_id")
        return Payment(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            amount=to_money(row["amount"]),
            currency=row.get("currency") or "NPR",
            method=row.get("method") or "khalti",
            status=row["status"],
            external_transaction_id=row.get("external_transaction_id"),
            order_id=str(order_id) if order_id else None,
            snapshot=snapshot_from_dict(row.get("snapshot")),
            failure_reason=row.get("failure_reason"),
            verification_response=row.get("verification_response"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row.get("completed_at"),
            refunded_at=row.get("refunded_at"),
        )

    @staticmethod
    def _order_from_row(row: Dict[str, Any]) -> Order:
        address = row.get("shipping_address")
        payment_id = row.get("payment_id")
        return Order(
            id=str(row["id"]),
            order_number=row["order_number"],
            account_id=str(row["account_id"]),
            items=[
                OrderItem(
                    product_id=item.get("product_id"),
                    name=item["name"],
                    quantity=int(item["quantity"]),
                    unit_price=to_money(item["unit_price"]),
                    subtotal=to_money(item["subtotal"]),
                    status=item.get("status", "pending"),
                )
                for item in row.get("items") or []
            ],
            subtotal=to_money(row["subtotal"]),
            tax=to_money(safe_row_value(row, "tax", 0)),
            shipping_cost=to_money(safe_row_value(row, "shipping_cost", 0)),
            discount=to_money(safe_row_value(row, "discount", 0)),
            total=to_money(row["total"]),
            status=row["status"],
            payment_status=row["payment_status"],
            payment_method=row.get("payment_method"),
            payment_id=str(payment_id) if payment_id else None,
            order_type=row.get("order_type") or "standard",
            source=row.get("source") or "web",
            shipping_address=ShippingAddress(**address) if address else None,
            tracking_number=row.get("tracking_number"),
            notes=row.get("notes"),
            cancellation_reason=row.get("cancellation_reason"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            confirmed_at=row.get("confirmed_at"),
            processed_at=row.get("processed_at"),
            shipped_at=row.get("shipped_at"),
            delivered_at=row.get("delivered_at"),
            cancelled_at=row.get("cancelled_at"),
        )

    @staticmethod
    def _order_params(order: Order) -> Dict[str, Any]:
        params = {col: getattr(order, col) for col in _ORDER_MUTABLE_COLUMNS}
        params["items"] = json.dumps(
            [
                {
                    "product_id": item.product_id,
                    "name": item.name,
                    "quantity": item.quantity,
                    "unit_price": str(item.unit_price),
                    "subtotal": str(item.subtotal),
                    "status": item.status,
                }
                for item in order.items
            ]
        )
        params["shipping_address"] = (
            json.dumps(asdict(order.shipping_address)) if order.shipping_address else None
        )
        return params

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
        account = Account(
            id=generate_uuid(),
            email=normalize_email(email),
            password_hash=password_hash,
            role=role,
            name=name,
            email_verified=email_verified,
            verification_token=verification_token,
            verification_expires_at=verification_expires_at,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (
                        id, email, password_hash, role, name, created_at, email_verified,
                        verification_token, verification_expires_at, password_changed_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.role,
                        account.name,
                        account.created_at,
                        account.email_verified,
                        account.verification_token,
                        account.verification_expires_at,
                        account.password_changed_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._account_from_row(r) for r in rows]

    def _write_account(self, conn, account: Account) -> None:
        params = self._account_params(account)
        assignments = ", ".join(f"{col} = %({col})s" for col in _ACCOUNT_MUTABLE_COLUMNS)
        conn.execute(
            f"UPDATE account SET {assignments} WHERE id = %(id)s",
            {**params, "id": account.id},
        )

    def update_account(
        self, account_id: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s FOR UPDATE", (account_id,)
            ).fetchone()
            if not row:
                return None
            account = self._account_from_row(row)
            mutate(account)
            self._write_account(conn, account)
        return account

    def find_account_by_token(self, kind: str, digest: str) -> Optional[Account]:
        column = _TOKEN_COLUMNS[kind]
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM account WHERE {column} = %s", (digest,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account_by_token(
        self, kind: str, digest: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        column = _TOKEN_COLUMNS[kind]
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                f"SELECT * FROM account WHERE {column} = %s FOR UPDATE", (digest,)
            ).fetchone()
            if not row:
                return None
            account = self._account_from_row(row)
            mutate(account)
            self._write_account(conn, account)
        return account

    def update_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._connect() as conn, conn.transaction():
            admins = conn.execute(
                "SELECT id FROM account WHERE role = 'admin' FOR UPDATE"
            ).fetchall()
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s FOR UPDATE", (account_id,)
            ).fetchone()
            if not row:
                return None
            account = self._account_from_row(row)
            if account.role == "admin" and role != "admin" and len(admins) <= 1:
                raise ConstraintViolation(
                    "cannot demote the last admin", {"lastAdmin": True}
                )
            account.role = role
            conn.execute(
                "UPDATE account SET role = %s WHERE id = %s", (role, account_id)
            )
        return account

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            admins = conn.execute(
                "SELECT id FROM account WHERE role = 'admin' FOR UPDATE"
            ).fetchall()
            row = conn.execute(
                "SELECT role FROM account WHERE id = %s FOR UPDATE", (account_id,)
            ).fetchone()
            if not row:
                return False
            if row["role"] == "admin" and len(admins) <= 1:
                raise ConstraintViolation(
                    "cannot delete the last admin", {"lastAdmin": True}
                )
            conn.execute("DELETE FROM auth_session WHERE account_id = %s", (account_id,))
            conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
        return True

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, account_id, email, role, created_at, last_activity,
                        expires_at, user_agent, ip_addr
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.email,
                        session.role,
                        session.created_at,
                        session.last_activity,
                        session.expires_at,
                        session.user_agent,
                        session.ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for session", {"account_id": session.account_id}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, at: Optional[datetime] = None) -> Optional[Session]:
        at = at or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET last_activity = GREATEST(last_activity, %s)
                WHERE id = %s
                RETURNING *
                """,
                (at, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return cur.rowcount > 0

    def delete_account_sessions(
        self, account_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE account_id = %s AND id <> %s",
                    (account_id, except_session_id),
                )
            else:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE account_id = %s", (account_id,)
                )
            return cur.rowcount

    # ------------------------------------------------------------------
    # payments
    # ------------------------------------------------------------------
    def create_payment(self, payment: Payment) -> Payment:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO payment (
                        id, account_id, amount, currency, method, status,
                        external_transaction_id, order_id, snapshot, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        payment.id,
                        payment.account_id,
                        payment.amount,
                        payment.currency,
                        payment.method,
                        payment.status,
                        payment.external_transaction_id,
                        payment.order_id,
                        json.dumps(snapshot_to_dict(payment.snapshot)),
                        payment.created_at,
                        payment.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "transaction already registered", {"field": "external_transaction_id"}
            )
        return payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM payment WHERE id = %s", (payment_id,)
            ).fetchone()
        return self._payment_from_row(row) if row else None

    def get_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM payment WHERE external_transaction_id = %s",
                (transaction_id,),
            ).fetchone()
        return self._payment_from_row(row) if row else None

    def set_payment_transaction(
        self, payment_id: str, transaction_id: str
    ) -> Optional[Payment]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE payment
                    SET external_transaction_id = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (transaction_id, payment_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "transaction already registered", {"field": "external_transaction_id"}
            )
        return self._payment_from_row(row) if row else None

    def list_payments(
        self, account_id: Optional[str] = None, limit: int = 50
    ) -> List[Payment]:
        with self._connect() as conn:
            if account_id:
                rows = conn.execute(
                    """
                    SELECT * FROM payment WHERE account_id = %s
                    ORDER BY created_at DESC LIMIT %s
                    """,
                    (account_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM payment ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._payment_from_row(r) for r in rows]

    def transition_payment(
        self,
        payment_id: str,
        allowed_from: Iterable[str],
        to_status: str,
        **fields: Any,
    ) -> Tuple[Optional[Payment], bool]:
        allowed = list(allowed_from)
        assignments = ["status = %(to_status)s", "updated_at = now()"]
        params: Dict[str, Any] = {
            "to_status": to_status,
            "payment_id": payment_id,
            "allowed": allowed,
        }
        for key, value in fields.items():
            assignments.append(f"{key} = %({key})s")
            params[key] = json.dumps(value) if isinstance(value, dict) else value
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE payment SET {", ".join(assignments)}
                WHERE id = %(payment_id)s AND status = ANY(%(allowed)s)
                RETURNING *
                """,
                params,
            ).fetchone()
            if row:
                return self._payment_from_row(row), True
            current = conn.execute(
                "SELECT * FROM payment WHERE id = %s", (payment_id,)
            ).fetchone()
        return (self._payment_from_row(current) if current else None), False

    def link_payment_order(self, payment_id: str, order_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE payment SET order_id = %s, updated_at = now()
                WHERE id = %s AND order_id IS NULL
                """,
                (order_id, payment_id),
            )
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # orders
    # ------------------------------------------------------------------
    def next_order_sequence(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT nextval('order_number_seq') AS seq").fetchone()
        return int(row["seq"])

    def create_order(self, order: Order) -> Order:
        params = self._order_params(order)
        columns = ("id", "order_number", "account_id", "order_type", "source", "created_at")
        params.update({col: getattr(order, col) for col in columns})
        names = list(columns) + list(_ORDER_MUTABLE_COLUMNS)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO customer_order ({}) VALUES ({})".format(
                        ", ".join(names), ", ".join(f"%({n})s" for n in names)
                    ),
                    params,
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("order already exists", {"field": "id"})
        return order

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM customer_order WHERE id = %s", (order_id,)
            ).fetchone()
        return self._order_from_row(row) if row else None

    def list_orders(
        self,
        account_id: Optional[str] = None,
        *,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Order], int]:
        clauses = []
        params: List[Any] = []
        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if status:
            clauses.append("status = %s")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM customer_order {where}", params
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT * FROM customer_order {where}
                ORDER BY created_at DESC LIMIT %s OFFSET %s
                """,
                [*params, limit, offset],
            ).fetchall()
        return [self._order_from_row(r) for r in rows], int(total_row["total"])

    def update_order(
        self, order_id: str, mutate: Callable[[Order], None]
    ) -> Optional[Order]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT * FROM customer_order WHERE id = %s FOR UPDATE", (order_id,)
            ).fetchone()
            if not row:
                return None
            order = self._order_from_row(row)
            mutate(order)
            order.updated_at = utcnow()
            params = self._order_params(order)
            assignments = ", ".join(f"{col} = %({col})s" for col in _ORDER_MUTABLE_COLUMNS)
            conn.execute(
                f"UPDATE customer_order SET {assignments} WHERE id = %(id)s",
                {**params, "id": order.id},
            )
        return order

    # ------------------------------------------------------------------
    # products
    # ------------------------------------------------------------------
    def upsert_product(self, product: Product) -> Product:
        product.updated_at = utcnow()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO product (id, name, price, rental_price, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    price = EXCLUDED.price,
                    rental_price = EXCLUDED.rental_price,
                    updated_at = EXCLUDED.updated_at
                """,
                (product.id, product.name, product.price, product.rental_price, product.updated_at),
            )
        return product

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM product WHERE id = %s", (product_id,)
            ).fetchone()
        if not row:
            return None
        return Product(
            id=row["id"],
            name=row["name"],
            price=optional_money(row.get("price")),
            rental_price=optional_money(row.get("rental_price")),
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------
    def record_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (
                    id, action, result, severity, account_id, resource, ip,
                    user_agent, metadata, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.action,
                    event.result,
                    event.severity,
                    event.account_id,
                    event.resource,
                    event.ip,
                    event.user_agent,
                    json.dumps(event.metadata, default=str),
                    event.created_at,
                ),
            )
        return event

    def list_audit_events(
        self,
        *,
        account_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses = []
        params: List[Any] = []
        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if action:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY created_at DESC LIMIT %s",
                [*params, limit],
            ).fetchall()
        return [
            AuditEvent(
                id=str(r["id"]),
                action=r["action"],
                result=r["result"],
                severity=r["severity"],
                account_id=str(r["account_id"]) if r.get("account_id") else None,
                resource=r.get("resource"),
                ip=r.get("ip"),
                user_agent=r.get("user_agent"),
                metadata=r.get("metadata") or {},
                created_at=r["created_at"],
            )
            for r in rows
        ]
