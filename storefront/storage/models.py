from __future__ import annotations

import secrets
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


ROLES = frozenset({"user", "admin"})

PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")

ORDER_STATUSES = (
    "pending",
    "confirmed",
    "processing",
    "shipped",
    "delivered",
    "cancelled",
    "refunded",
)
ORDER_PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
ORDER_TYPES = ("standard", "express", "rental", "purchase")


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    role: str = "user"
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    # email verification
    email_verified: bool = False
    verification_token: Optional[str] = None
    verification_expires_at: Optional[datetime] = None
    # password reset
    reset_token: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    # lockout
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None
    lock_notified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    # two-factor
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    two_factor_temp_secret: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    # password lifecycle
    password_history: List[str] = field(default_factory=list)
    password_changed_at: datetime = field(default_factory=utcnow)
    password_expiry_warned: bool = False

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        return self.locked_until is not None and self.locked_until > (now or utcnow())


@dataclass
class Session:
    id: str
    account_id: str
    email: str
    role: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        email: str,
        role: str,
        *,
        absolute_ttl_hours: int = 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            account_id=account_id,
            email=email,
            role=role,
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(hours=absolute_ttl_hours),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )


@dataclass
class SnapshotItem:
    product_id: Optional[str]
    name: Optional[str] = None
    quantity: int = 1
    unit_price: Optional[Decimal] = None


@dataclass
class ShippingAddress:
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Optional[str] = None
    apartment: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "Nepal"
    phone: Optional[str] = None


@dataclass
class CheckoutSnapshot:
    """Cart items plus the shipping details captured at checkout."""

    items: List[SnapshotItem]
    shipping_address: Optional[ShippingAddress] = None
    kind: str = field(default="checkout", init=False)


@dataclass
class ItemListSnapshot:
    """A bare list of purchased items with no checkout context."""

    items: List[SnapshotItem]
    kind: str = field(default="items", init=False)


@dataclass
class NoSnapshot:
    kind: str = field(default="none", init=False)

    @property
    def items(self) -> List[SnapshotItem]:
        return []


PaymentSnapshot = Union[CheckoutSnapshot, ItemListSnapshot, NoSnapshot]


def _item_to_dict(item: SnapshotItem) -> Dict[str, Any]:
    return {
        "product_id": item.product_id,
        "name": item.name,
        "quantity": item.quantity,
        "unit_price": str(item.unit_price) if item.unit_price is not None else None,
    }


def _item_from_dict(data: Dict[str, Any]) -> SnapshotItem:
    price = data.get("unit_price")
    return SnapshotItem(
        product_id=data.get("product_id"),
        name=data.get("name"),
        quantity=int(data.get("quantity") or 1),
        unit_price=Decimal(str(price)) if price is not None else None,
    )


def snapshot_to_dict(snapshot: PaymentSnapshot) -> Dict[str, Any]:
    if isinstance(snapshot, CheckoutSnapshot):
        address = snapshot.shipping_address
        return {
            "kind": "checkout",
            "items": [_item_to_dict(i) for i in snapshot.items],
            "shipping_address": asdict(address) if address else None,
        }
    if isinstance(snapshot, ItemListSnapshot):
        return {"kind": "items", "items": [_item_to_dict(i) for i in snapshot.items]}
    return {"kind": "none"}


def snapshot_from_dict(data: Optional[Dict[str, Any]]) -> PaymentSnapshot:
    if not data:
        return NoSnapshot()
    kind = data.get("kind")
    items = [_item_from_dict(i) for i in data.get("items") or []]
    if kind == "checkout":
        address = data.get("shipping_address")
        return CheckoutSnapshot(
            items=items,
            shipping_address=ShippingAddress(**address) if address else None,
        )
    if kind == "items":
        return ItemListSnapshot(items=items)
    return NoSnapshot()


@dataclass
class Payment:
    id: str
    account_id: str
    amount: Decimal
    currency: str = "NPR"
    method: str = "khalti"
    status: str = "pending"
    external_transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    snapshot: PaymentSnapshot = field(default_factory=NoSnapshot)
    failure_reason: Optional[str] = None
    verification_response: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        amount: Decimal,
        *,
        currency: str = "NPR",
        snapshot: PaymentSnapshot | None = None,
        order_id: str | None = None,
    ) -> "Payment":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            amount=amount,
            currency=currency,
            snapshot=snapshot or NoSnapshot(),
            order_id=order_id,
        )


@dataclass
class OrderItem:
    product_id: Optional[str]
    name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    status: str = "pending"


@dataclass
class Order:
    id: str
    order_number: str
    account_id: str
    items: List[OrderItem]
    subtotal: Decimal
    total: Decimal
    tax: Decimal = Decimal("0.00")
    shipping_cost: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    status: str = "pending"
    payment_status: str = "pending"
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None
    order_type: str = "standard"
    source: str = "web"
    shipping_address: Optional[ShippingAddress] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


@dataclass
class Product:
    id: str
    name: str
    price: Optional[Decimal] = None
    rental_price: Optional[Decimal] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEvent:
    id: str
    action: str
    result: str
    severity: str
    account_id: Optional[str] = None
    resource: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
