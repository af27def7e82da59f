from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from storefront.config import Settings
from storefront.logging import get_logger
from storefront.service.audit import AuditAction, AuditResult, AuditSeverity, AuditSink
from storefront.service.auth import AuthContext
from storefront.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from storefront.service.gateway import KhaltiGateway
from storefront.service.orders import OrderService, catalog_price
from storefront.storage.common import CENT, to_money
from storefront.storage.errors import ConstraintViolation
from storefront.storage.models import (
    Account,
    CheckoutSnapshot,
    ItemListSnapshot,
    NoSnapshot,
    Order,
    OrderItem,
    Payment,
    PaymentSnapshot,
    ShippingAddress,
    SnapshotItem,
    utcnow,
)

logger = get_logger(__name__)

DEFAULT_PURCHASE_NAME = "Thrift Store Purchase"
DEFAULT_CUSTOMER_PHONE = "9800000001"
MIN_AMOUNT_PAISA = 10


def _price_or_none(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return price if price.is_finite() and price > 0 else None


def _parse_item(raw: Any) -> SnapshotItem:
    if not isinstance(raw, dict):
        return SnapshotItem(product_id=None)
    product = raw.get("product")
    product_id = None
    name = raw.get("name")
    if isinstance(product, dict):
        product_id = product.get("_id") or product.get("id")
        name = name or product.get("name")
    elif product:
        product_id = product
    product_id = product_id or raw.get("productId") or raw.get("_id") or raw.get("id")
    try:
        quantity = max(1, int(raw.get("quantity") or 1))
    except (TypeError, ValueError):
        quantity = 1
    price = raw.get("price", raw.get("unit_price", raw.get("unitPrice")))
    return SnapshotItem(
        product_id=str(product_id) if product_id else None,
        name=name,
        quantity=quantity,
        unit_price=_price_or_none(price),
    )


def _parse_address(raw: Any, contact: Any) -> Optional[ShippingAddress]:
    if not isinstance(raw, dict):
        return None
    phone = None
    if isinstance(contact, dict):
        phone = contact.get("phone")
    return ShippingAddress(
        first_name=raw.get("firstName"),
        last_name=raw.get("lastName"),
        address=raw.get("streetAddress") or raw.get("address"),
        apartment=raw.get("apartmentSuite") or raw.get("apartment"),
        city=raw.get("city"),
        state=raw.get("state"),
        postal_code=raw.get("zipCode") or raw.get("postalCode"),
        country=raw.get("country") or "Nepal",
        phone=phone or raw.get("phone"),
    )


def parse_snapshot(raw: Any) -> PaymentSnapshot:
    """Map the checkout payload captured at initiation onto a snapshot variant."""
    if isinstance(raw, list):
        return ItemListSnapshot(items=[_parse_item(item) for item in raw])
    if isinstance(raw, dict) and isinstance(raw.get("items"), list):
        return CheckoutSnapshot(
            items=[_parse_item(item) for item in raw["items"]],
            shipping_address=_parse_address(
                raw.get("shippingAddress") or raw.get("shipping_address"),
                raw.get("contactInfo"),
            ),
        )
    return NoSnapshot()


def _to_cents(value: Decimal) -> int:
    return int(to_money(value) * 100)


def reconcile_lines(lines: List[OrderItem], amount: Decimal) -> List[OrderItem]:
    """Allocate ``amount`` over the lines so the subtotals sum to it exactly.

    The paid amount is split in whole cents in proportion to the existing
    subtotals (largest remainder; ties go to the later line). Every line
    keeps at least one cent whenever the amount covers one cent per line, and
    no line ever goes negative.
    """
    if not lines:
        return lines
    total_cents = _to_cents(amount)
    weights = [max(_to_cents(line.subtotal), 0) for line in lines]
    if sum(weights) == total_cents:
        return lines
    if not any(weights):
        weights = [1] * len(lines)
    weight_total = sum(weights)

    alloc: List[int] = []
    remainders: List[tuple[int, int]] = []
    for index, weight in enumerate(weights):
        share, rem = divmod(total_cents * weight, weight_total)
        alloc.append(share)
        remainders.append((rem, index))
    leftover = total_cents - sum(alloc)
    for _, index in sorted(remainders, reverse=True)[:leftover]:
        alloc[index] += 1

    if total_cents >= len(lines):
        for index, cents in enumerate(alloc):
            if cents > 0:
                continue
            donor = max(range(len(alloc)), key=lambda i: alloc[i])
            alloc[donor] -= 1
            alloc[index] = 1

    for line, cents in zip(lines, alloc):
        line.subtotal = to_money(Decimal(cents) / 100)
        unit_price = to_money(line.subtotal / line.quantity)
        line.unit_price = max(unit_price, CENT) if cents else unit_price
    return lines


@dataclass
class PaymentInitiation:
    payment: Payment
    pidx: str
    payment_url: Optional[str]
    public_key: Optional[str]
    amount_paisa: int


@dataclass
class VerificationResult:
    payment: Payment
    order: Optional[Order]
    order_created: bool = False


class PaymentReconciler:
    """Khalti payment initiation and idempotent verification.

    Verification is keyed by the gateway pidx. The payment moves
    pending -> completed with a compare-and-set, and the order is claimed by
    linking a pre-generated id to the payment before it is written, so a
    replayed callback racing a client poll still yields one order.
    """

    def __init__(
        self,
        store: Any,
        settings: Settings,
        *,
        gateway: KhaltiGateway,
        orders: OrderService,
        audit: AuditSink,
    ) -> None:
        self.store = store
        self.settings = settings
        self.gateway = gateway
        self.orders = orders
        self.audit = audit

    # ------------------------------------------------------------------
    # initiation
    # ------------------------------------------------------------------
    def _customer_phone(self, snapshot: PaymentSnapshot) -> str:
        phone = None
        if isinstance(snapshot, CheckoutSnapshot) and snapshot.shipping_address:
            phone = snapshot.shipping_address.phone
        digits = re.sub(r"\D", "", phone or "")
        return digits or DEFAULT_CUSTOMER_PHONE

    def _gateway_amount(self, amount_paisa: int) -> int:
        cap = self.settings.gateway_amount_cap_paisa
        if cap and amount_paisa > cap:
            return cap
        return amount_paisa

    async def initiate(
        self,
        account: Account,
        amount_paisa: int,
        product_info: Any = None,
        *,
        order_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PaymentInitiation:
        if not isinstance(amount_paisa, int) or amount_paisa < MIN_AMOUNT_PAISA:
            raise ValidationError(
                f"invalid amount; minimum is {MIN_AMOUNT_PAISA} paisa",
                detail={"field": "amount"},
            )
        if order_id:
            order = self.store.get_order(order_id)
            if not order:
                raise NotFoundError("order not found")
            if order.account_id != account.id:
                raise ForbiddenError("not allowed to pay for this order")
            if order.payment_status == "paid":
                raise ConflictError("order is already paid")

        snapshot = parse_snapshot(product_info)
        payment = self.store.create_payment(
            Payment.new(
                account.id,
                to_money(Decimal(amount_paisa) / 100),
                currency=self.settings.default_currency,
                snapshot=snapshot,
                order_id=order_id,
            )
        )
        first_name = next((item.name for item in snapshot.items if item.name), None)
        frontend = self.settings.frontend_url.rstrip("/")
        payload = {
            "return_url": f"{frontend}/payment/success",
            "website_url": frontend,
            "amount": self._gateway_amount(amount_paisa),
            "purchase_order_id": payment.id,
            "purchase_order_name": first_name or DEFAULT_PURCHASE_NAME,
            "customer_info": {
                "name": account.name or account.email.split("@", 1)[0],
                "email": account.email,
                "phone": self._customer_phone(snapshot),
            },
        }
        try:
            initiation = await self.gateway.initiate(payload)
        except UpstreamError as exc:
            self.store.transition_payment(
                payment.id, {"pending"}, "failed", failure_reason="initiation_failed"
            )
            self.audit.record(
                AuditAction.PAYMENT_FAILED,
                account_id=account.id,
                resource=f"payment:{payment.id}",
                ip=ip,
                user_agent=user_agent,
                result=AuditResult.FAILURE,
                metadata={"stage": "initiate", "error": exc.message},
                severity=AuditSeverity.MEDIUM,
            )
            raise

        payment = self.store.set_payment_transaction(payment.id, initiation.pidx) or payment
        self.audit.record(
            AuditAction.PAYMENT_INITIATED,
            account_id=account.id,
            resource=f"payment:{payment.id}",
            ip=ip,
            user_agent=user_agent,
            metadata={"amount": str(payment.amount), "pidx": initiation.pidx},
        )
        logger.info("payment_initiated", payment_id=payment.id, pidx=initiation.pidx)
        return PaymentInitiation(
            payment=payment,
            pidx=initiation.pidx,
            payment_url=initiation.payment_url,
            public_key=self.settings.khalti_public_key,
            amount_paisa=amount_paisa,
        )

    # ------------------------------------------------------------------
    # verification
    # ------------------------------------------------------------------
    async def verify(
        self,
        ctx: AuthContext,
        pidx: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VerificationResult:
        if not pidx:
            raise ValidationError("missing required field: pidx", detail={"field": "pidx"})
        payment = self.store.get_payment_by_transaction(pidx)
        if not payment:
            raise NotFoundError("payment record not found")
        if ctx.role != "admin" and payment.account_id != ctx.account_id:
            raise ForbiddenError("not allowed to verify this payment")
        if payment.status in ("failed", "refunded"):
            raise ConflictError(
                f"payment is already {payment.status}",
                detail={"paymentStatus": payment.status},
            )

        # transport errors propagate and leave the payment untouched
        lookup = await self.gateway.lookup(pidx)

        if lookup.status != "Completed":
            return self._reject(payment, lookup.status, ctx, ip=ip, user_agent=user_agent)

        if lookup.total_amount is not None:
            expected = self._gateway_amount(int(payment.amount * 100))
            if lookup.total_amount != expected:
                logger.warning(
                    "payment_amount_mismatch",
                    payment_id=payment.id,
                    expected=expected,
                    reported=lookup.total_amount,
                )

        current, changed = self.store.transition_payment(
            payment.id,
            {"pending"},
            "completed",
            completed_at=utcnow(),
            verification_response=lookup.raw,
        )
        if current is None:
            raise NotFoundError("payment record not found")
        if current.status != "completed":
            raise ConflictError(
                f"payment is already {current.status}",
                detail={"paymentStatus": current.status},
            )
        if changed:
            self.audit.record(
                AuditAction.PAYMENT_VERIFIED,
                account_id=current.account_id,
                resource=f"payment:{current.id}",
                ip=ip,
                user_agent=user_agent,
                metadata={"pidx": pidx, "amount": str(current.amount)},
            )
            logger.info("payment_completed", payment_id=current.id)

        order, created = self._ensure_order(current)
        refreshed = self.store.get_payment(current.id) or current
        return VerificationResult(payment=refreshed, order=order, order_created=created)

    def _reject(
        self,
        payment: Payment,
        upstream_status: str,
        ctx: AuthContext,
        *,
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> VerificationResult:
        current = payment
        if upstream_status != "Pending":
            updated, changed = self.store.transition_payment(
                payment.id, {"pending"}, "failed", failure_reason=upstream_status
            )
            current = updated or payment
            if changed:
                self.audit.record(
                    AuditAction.PAYMENT_FAILED,
                    account_id=payment.account_id,
                    resource=f"payment:{payment.id}",
                    ip=ip,
                    user_agent=user_agent,
                    result=AuditResult.FAILURE,
                    metadata={"upstream_status": upstream_status, "actor_id": ctx.account_id},
                    severity=AuditSeverity.MEDIUM,
                )
        logger.info(
            "payment_not_completed",
            payment_id=payment.id,
            upstream_status=upstream_status,
            payment_status=current.status,
        )
        raise BadRequestError(
            f"payment not completed: {upstream_status}",
            detail={"status": upstream_status, "paymentStatus": current.status},
        )

    def _ensure_order(self, payment: Payment) -> tuple[Optional[Order], bool]:
        if payment.order_id:
            existing = self.store.get_order(payment.order_id)
            if existing:
                return self._mark_order_paid(existing, payment), False
            # linked id with no order behind it: a previous attempt failed, repair it
            return self._create_order(payment, payment.order_id)

        order_id = str(uuid.uuid4())
        if not self.store.link_payment_order(payment.id, order_id):
            # another request claimed the order slot first
            linked = self.store.get_payment(payment.id)
            if linked and linked.order_id:
                existing = self.store.get_order(linked.order_id)
                if existing:
                    return existing, False
                return self._create_order(linked, linked.order_id)
            return None, False
        return self._create_order(payment, order_id)

    def _mark_order_paid(self, order: Order, payment: Payment) -> Order:
        if order.payment_status == "paid" and order.payment_id == payment.id:
            return order
        now = utcnow()

        def _paid(o: Order) -> None:
            o.payment_status = "paid"
            o.payment_id = payment.id
            o.payment_method = payment.method
            if o.status == "pending":
                o.status = "confirmed"
                o.confirmed_at = now

        return self.store.update_order(order.id, _paid) or order

    def _create_order(self, payment: Payment, order_id: str) -> tuple[Optional[Order], bool]:
        snapshot = payment.snapshot
        address = snapshot.shipping_address if isinstance(snapshot, CheckoutSnapshot) else None
        try:
            lines = reconcile_lines(self.build_lines(payment), payment.amount)
            order = self.orders.build_order(
                payment.account_id,
                lines,
                order_id=order_id,
                total=payment.amount,
                status="confirmed",
                payment_status="paid",
                payment_method=payment.method,
                payment_id=payment.id,
                shipping_address=address,
            )
            created = self.store.create_order(order)
        except ConstraintViolation:
            existing = self.store.get_order(order_id)
            if existing:
                return existing, False
            self._record_reconciliation_failure(payment, order_id, "constraint_violation")
            return None, False
        except Exception as exc:
            # the payment stays completed; the next verify call repairs the order
            logger.exception(
                "order_reconciliation_failed",
                payment_id=payment.id,
                order_id=order_id,
                error_type=type(exc).__name__,
            )
            self._record_reconciliation_failure(payment, order_id, type(exc).__name__)
            return None, False

        self.audit.record(
            AuditAction.ORDER_CREATED,
            account_id=payment.account_id,
            resource=f"order:{created.id}",
            metadata={
                "order_number": created.order_number,
                "payment_id": payment.id,
                "total": str(created.total),
            },
        )
        logger.info("order_reconciled", order_id=created.id, payment_id=payment.id)
        return created, True

    def _record_reconciliation_failure(self, payment: Payment, order_id: str, reason: str) -> None:
        self.audit.record(
            AuditAction.ORDER_RECONCILIATION_FAILED,
            account_id=payment.account_id,
            resource=f"payment:{payment.id}",
            result=AuditResult.FAILURE,
            metadata={"order_id": order_id, "reason": reason},
            severity=AuditSeverity.HIGH,
        )

    def build_lines(self, payment: Payment) -> List[OrderItem]:
        """Order lines from the snapshot, priced snapshot > catalog > even split."""
        items = payment.snapshot.items
        if not items:
            return [
                OrderItem(
                    product_id=None,
                    name=DEFAULT_PURCHASE_NAME,
                    quantity=1,
                    unit_price=payment.amount,
                    subtotal=payment.amount,
                )
            ]
        share = payment.amount / len(items)
        lines: List[OrderItem] = []
        for item in items:
            product = self.store.get_product(item.product_id) if item.product_id else None
            price = item.unit_price or catalog_price(product)
            if price is None:
                price = share / item.quantity
            unit_price = max(to_money(price), CENT)
            lines.append(
                OrderItem(
                    product_id=item.product_id,
                    name=item.name or (product.name if product else "Item"),
                    quantity=item.quantity,
                    unit_price=unit_price,
                    subtotal=to_money(unit_price * item.quantity),
                )
            )
        return lines

    # ------------------------------------------------------------------
    # queries and refunds
    # ------------------------------------------------------------------
    def history(self, ctx: AuthContext, limit: int = 50) -> List[Payment]:
        return self.store.list_payments(ctx.account_id, limit=limit)

    def list_all(self, limit: int = 100) -> List[Payment]:
        return self.store.list_payments(None, limit=limit)

    def get(self, payment_id: str, ctx: AuthContext) -> Payment:
        payment = self.store.get_payment(payment_id)
        if not payment:
            raise NotFoundError("payment not found")
        if ctx.role != "admin" and payment.account_id != ctx.account_id:
            raise ForbiddenError("not allowed to access this payment")
        return payment

    def refund(self, payment_id: str, ctx: AuthContext, *, reason: Optional[str] = None) -> Payment:
        current, changed = self.store.transition_payment(
            payment_id, {"completed"}, "refunded", refunded_at=utcnow()
        )
        if current is None:
            raise NotFoundError("payment not found")
        if not changed:
            raise ConflictError(
                "only completed payments can be refunded",
                detail={"paymentStatus": current.status},
            )
        if current.order_id:

            def _refund(order: Order) -> None:
                order.payment_status = "refunded"
                order.status = "refunded"

            self.store.update_order(current.order_id, _refund)
        self.audit.record(
            AuditAction.PAYMENT_REFUNDED,
            account_id=current.account_id,
            resource=f"payment:{payment_id}",
            metadata={"actor_id": ctx.account_id, "reason": reason, "amount": str(current.amount)},
            severity=AuditSeverity.HIGH,
        )
        return current
