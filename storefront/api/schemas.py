from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from storefront.storage.models import (
    Account,
    AuditEvent,
    Order,
    Payment,
    Product,
    ShippingAddress,
    snapshot_to_dict,
)

MAX_PASSWORD_LENGTH = 128

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "password_expired",
    "not_found",
    "locked",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "upstream_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailPayload(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


# ---------------------------------------------------------------------------
# auth
# ---------------------------------------------------------------------------
class SignupRequest(_EmailPayload):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(_EmailPayload):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    two_factor_code: Optional[str] = Field(default=None, max_length=16)
    captcha_id: Optional[str] = Field(default=None, max_length=128)
    captcha_text: Optional[str] = Field(default=None, max_length=16)


class TwoFactorLoginRequest(BaseModel):
    challenge_id: str = Field(..., max_length=128)
    code: str = Field(..., max_length=16)


class EmailRequest(_EmailPayload):
    pass


class AccountProfile(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    email_verified: bool
    two_factor_enabled: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None
    password_changed_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountProfile":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            role=account.role,
            email_verified=account.email_verified,
            two_factor_enabled=account.two_factor_enabled,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
            password_changed_at=account.password_changed_at,
        )


class AuthResponse(BaseModel):
    session_id: str
    session_expires_at: datetime
    account: AccountProfile
    second_factor_method: Optional[str] = None
    backup_codes_remaining: Optional[int] = None


class TwoFactorChallengeResponse(BaseModel):
    require2FA: bool = True
    challenge_id: str
    message: str = "two-factor code required"


class CaptchaResponse(BaseModel):
    captcha_id: str
    captcha_text: str
    expires_in: int


class SessionResponse(BaseModel):
    session_expires_at: datetime
    account_id: str
    role: str


class MessageResponse(BaseModel):
    message: str


class PasswordResetConfirmRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


# ---------------------------------------------------------------------------
# password lifecycle
# ---------------------------------------------------------------------------
class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordStrengthRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    email: Optional[str] = Field(default=None, max_length=254)
    name: Optional[str] = Field(default=None, max_length=100)


class PasswordStrengthResponse(BaseModel):
    score: int
    label: str
    warning: str = ""
    suggestions: List[str] = Field(default_factory=list)
    crack_time_display: str = ""
    meets_requirements: Optional[bool] = None
    errors: List[str] = Field(default_factory=list)


class ExpiryStatusResponse(BaseModel):
    is_expired: bool
    days_remaining: int
    password_changed_at: datetime
    expires_at: datetime
    requires_change: bool
    in_warning_window: bool
    days_overdue: int = 0


# ---------------------------------------------------------------------------
# two-factor
# ---------------------------------------------------------------------------
class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    pending_setup: bool
    backup_codes_remaining: int


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_url: str


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., max_length=16)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]
    message: str = "Store these codes somewhere safe. They will not be shown again."


# ---------------------------------------------------------------------------
# admin
# ---------------------------------------------------------------------------
class RoleUpdateRequest(BaseModel):
    role: Literal["user", "admin"]


class AccountListResponse(BaseModel):
    items: List[AccountProfile]


class AuditEventResponse(BaseModel):
    id: str
    action: str
    result: str
    severity: str
    account_id: Optional[str] = None
    resource: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(**event.__dict__)


# ---------------------------------------------------------------------------
# products and orders
# ---------------------------------------------------------------------------
class ProductUpsertRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    rental_price: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)


class ProductResponse(BaseModel):
    id: str
    name: str
    price: Optional[Decimal] = None
    rental_price: Optional[Decimal] = None
    updated_at: datetime

    @classmethod
    def from_product(cls, product: Product) -> "ProductResponse":
        return cls(**product.__dict__)


class ShippingAddressPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)
    address: Optional[str] = Field(default=None, alias="streetAddress", max_length=300)
    apartment: Optional[str] = Field(default=None, alias="apartmentSuite", max_length=100)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, alias="zipCode", max_length=20)
    country: str = Field(default="Nepal", max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)

    def to_model(self) -> ShippingAddress:
        return ShippingAddress(**self.model_dump(by_alias=False))


class OrderItemRequest(BaseModel):
    product_id: str = Field(..., max_length=128)
    quantity: int = Field(default=1, ge=1, le=100)


class CreateOrderRequest(BaseModel):
    items: List[OrderItemRequest] = Field(default_factory=list, max_length=100)
    shipping_address: Optional[ShippingAddressPayload] = None
    order_type: Literal["standard", "express", "rental", "purchase"] = "standard"
    payment_method: Optional[str] = Field(default=None, max_length=32)
    notes: Optional[str] = Field(default=None, max_length=1000)


class OrderItemResponse(BaseModel):
    product_id: Optional[str] = None
    name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    status: str


class OrderResponse(BaseModel):
    id: str
    order_number: str
    account_id: str
    items: List[OrderItemResponse]
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total: Decimal
    status: str
    payment_status: str
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None
    order_type: str
    shipping_address: Optional[Dict[str, Any]] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            id=order.id,
            order_number=order.order_number,
            account_id=order.account_id,
            items=[OrderItemResponse(**item.__dict__) for item in order.items],
            subtotal=order.subtotal,
            tax=order.tax,
            shipping_cost=order.shipping_cost,
            discount=order.discount,
            total=order.total,
            status=order.status,
            payment_status=order.payment_status,
            payment_method=order.payment_method,
            payment_id=order.payment_id,
            order_type=order.order_type,
            shipping_address=(
                order.shipping_address.__dict__ if order.shipping_address else None
            ),
            tracking_number=order.tracking_number,
            notes=order.notes,
            cancellation_reason=order.cancellation_reason,
            created_at=order.created_at,
            updated_at=order.updated_at,
            confirmed_at=order.confirmed_at,
            shipped_at=order.shipped_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
        )


class OrderListResponse(BaseModel):
    items: List[OrderResponse]
    total: int
    limit: int
    offset: int


class OrderStatusUpdateRequest(BaseModel):
    status: Literal[
        "pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"
    ]
    tracking_number: Optional[str] = Field(default=None, max_length=64)


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# payments
# ---------------------------------------------------------------------------
class PaymentInitiateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: int = Field(..., description="Amount in paisa (1 NPR = 100 paisa)")
    product_info: Optional[Any] = Field(default=None, alias="productInfo")
    order_id: Optional[str] = Field(default=None, alias="orderId", max_length=128)


class PaymentInitiateResponse(BaseModel):
    payment_id: str
    amount: int
    pidx: str
    payment_url: Optional[str] = None
    public_key: Optional[str] = None


class PaymentVerifyRequest(BaseModel):
    pidx: str = Field(..., min_length=1, max_length=128)


class PaymentResponse(BaseModel):
    id: str
    account_id: str
    amount: Decimal
    currency: str
    method: str
    status: str
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    snapshot: Dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            id=payment.id,
            account_id=payment.account_id,
            amount=payment.amount,
            currency=payment.currency,
            method=payment.method,
            status=payment.status,
            transaction_id=payment.external_transaction_id,
            order_id=payment.order_id,
            snapshot=snapshot_to_dict(payment.snapshot),
            failure_reason=payment.failure_reason,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            completed_at=payment.completed_at,
            refunded_at=payment.refunded_at,
        )


class PaymentVerifyResponse(BaseModel):
    message: str
    payment: PaymentResponse
    order: Optional[OrderResponse] = None
    order_created: bool = False


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
