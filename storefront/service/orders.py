from __future__ import annotations

import time
import uuid
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from storefront.logging import get_logger
from storefront.service.audit import AuditAction, AuditSink
from storefront.service.auth import AuthContext
from storefront.service.errors import ForbiddenError, NotFoundError, ValidationError
from storefront.storage.common import to_money
from storefront.storage.models import (
    ORDER_STATUSES,
    Order,
    OrderItem,
    Product,
    ShippingAddress,
    utcnow,
)

logger = get_logger(__name__)

# Forward progression; cancelled and refunded sit outside the ladder
_STATUS_RANK = {
    "pending": 0,
    "confirmed": 1,
    "processing": 2,
    "shipped": 3,
    "delivered": 4,
}
_TERMINAL = {"delivered", "cancelled", "refunded"}
_TIMESTAMP_FIELDS = {
    "confirmed": "confirmed_at",
    "processing": "processed_at",
    "shipped": "shipped_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
}


def catalog_price(product: Optional[Product]) -> Optional[Decimal]:
    """Sale price, falling back to the rental price."""
    if product is None:
        return None
    if product.price is not None and product.price > 0:
        return product.price
    if product.rental_price is not None and product.rental_price > 0:
        return product.rental_price
    return None


class OrderService:
    def __init__(self, store: Any, audit: AuditSink) -> None:
        self.store = store
        self.audit = audit

    def generate_order_number(self) -> str:
        seq = self.store.next_order_sequence() % 10000
        return f"ORD-{int(time.time() * 1000)}-{seq:04d}"

    def build_order(
        self,
        account_id: str,
        items: List[OrderItem],
        *,
        order_id: Optional[str] = None,
        total: Optional[Decimal] = None,
        status: str = "pending",
        payment_status: str = "pending",
        payment_method: Optional[str] = None,
        payment_id: Optional[str] = None,
        order_type: str = "standard",
        shipping_address: Optional[ShippingAddress] = None,
        notes: Optional[str] = None,
    ) -> Order:
        subtotal = to_money(sum((item.subtotal for item in items), Decimal("0")))
        now = utcnow()
        order = Order(
            id=order_id or str(uuid.uuid4()),
            order_number=self.generate_order_number(),
            account_id=account_id,
            items=items,
            subtotal=subtotal,
            total=to_money(total) if total is not None else subtotal,
            status=status,
            payment_status=payment_status,
            payment_method=payment_method,
            payment_id=payment_id,
            order_type=order_type,
            shipping_address=shipping_address,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        stamp = _TIMESTAMP_FIELDS.get(status)
        if stamp:
            setattr(order, stamp, now)
        return order

    def create(
        self,
        ctx: AuthContext,
        items: Iterable[Dict[str, Any]],
        *,
        shipping_address: Optional[ShippingAddress] = None,
        order_type: str = "standard",
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """Create a pending order priced from the catalog, never from the client."""
        requested = list(items or [])
        if not requested:
            raise ValidationError("order must contain at least one item")
        lines: List[OrderItem] = []
        for entry in requested:
            product_id = entry.get("product_id")
            quantity = int(entry.get("quantity") or 1)
            if quantity < 1:
                raise ValidationError("quantity must be at least 1", detail={"product_id": product_id})
            product = self.store.get_product(product_id) if product_id else None
            if not product:
                raise NotFoundError("product not found", detail={"product_id": product_id})
            price = catalog_price(product)
            if price is None:
                raise ValidationError("product has no price", detail={"product_id": product_id})
            lines.append(
                OrderItem(
                    product_id=product.id,
                    name=product.name,
                    quantity=quantity,
                    unit_price=to_money(price),
                    subtotal=to_money(price * quantity),
                )
            )
        order = self.store.create_order(
            self.build_order(
                ctx.account_id,
                lines,
                order_type=order_type,
                payment_method=payment_method,
                shipping_address=shipping_address,
                notes=notes,
            )
        )
        self.audit.record(
            AuditAction.ORDER_CREATED,
            account_id=ctx.account_id,
            resource=f"order:{order.id}",
            metadata={"order_number": order.order_number, "total": str(order.total)},
        )
        logger.info("order_created", order_id=order.id, account_id=ctx.account_id)
        return order

    def _load_visible(self, order_id: str, ctx: AuthContext) -> Order:
        order = self.store.get_order(order_id)
        if not order:
            raise NotFoundError("order not found")
        if ctx.role != "admin" and order.account_id != ctx.account_id:
            raise ForbiddenError("not allowed to access this order")
        return order

    def get(self, order_id: str, ctx: AuthContext) -> Order:
        return self._load_visible(order_id, ctx)

    def list_mine(
        self, ctx: AuthContext, *, status: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> Tuple[List[Order], int]:
        return self.store.list_orders(ctx.account_id, status=status, limit=limit, offset=offset)

    def list_all(
        self, *, status: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Order], int]:
        return self.store.list_orders(None, status=status, limit=limit, offset=offset)

    def update_status(
        self,
        order_id: str,
        status: str,
        ctx: AuthContext,
        *,
        tracking_number: Optional[str] = None,
    ) -> Order:
        if status not in ORDER_STATUSES:
            raise ValidationError("invalid order status", detail={"allowed": list(ORDER_STATUSES)})
        if status == "refunded":
            # the payment record owns refunds; PaymentReconciler.refund updates the order
            raise ValidationError(
                "refunds are issued through the order's payment",
                detail={"to": status},
            )
        now = utcnow()
        previous: Dict[str, str] = {}

        def _advance(order: Order) -> None:
            current = order.status
            previous["status"] = current
            if current in _TERMINAL:
                raise ValidationError(
                    f"order is already {current}", detail={"from": current, "to": status}
                )
            if status == "cancelled":
                if _STATUS_RANK[current] >= _STATUS_RANK["shipped"]:
                    raise ValidationError(
                        "shipped orders cannot be cancelled",
                        detail={"from": current, "to": status},
                    )
            elif _STATUS_RANK[status] <= _STATUS_RANK[current]:
                raise ValidationError(
                    "invalid status transition", detail={"from": current, "to": status}
                )
            order.status = status
            stamp = _TIMESTAMP_FIELDS.get(status)
            if stamp:
                setattr(order, stamp, now)
            if status in ("cancelled", "delivered"):
                for item in order.items:
                    item.status = status
            if tracking_number:
                order.tracking_number = tracking_number

        updated = self.store.update_order(order_id, _advance)
        if not updated:
            raise NotFoundError("order not found")
        self.audit.record(
            AuditAction.ORDER_STATUS_CHANGED,
            account_id=updated.account_id,
            resource=f"order:{order_id}",
            metadata={"from": previous.get("status"), "to": status, "actor_id": ctx.account_id},
        )
        return updated

    def cancel(self, order_id: str, ctx: AuthContext, *, reason: Optional[str] = None) -> Order:
        self._load_visible(order_id, ctx)
        now = utcnow()

        def _cancel(order: Order) -> None:
            if order.status in ("shipped", "delivered"):
                raise ValidationError("order has already shipped and cannot be cancelled")
            if order.status in ("cancelled", "refunded"):
                raise ValidationError(f"order is already {order.status}")
            order.status = "cancelled"
            order.cancelled_at = now
            order.cancellation_reason = reason
            for item in order.items:
                item.status = "cancelled"

        updated = self.store.update_order(order_id, _cancel)
        if not updated:
            raise NotFoundError("order not found")
        self.audit.record(
            AuditAction.ORDER_CANCELLED,
            account_id=updated.account_id,
            resource=f"order:{order_id}",
            metadata={"actor_id": ctx.account_id, "reason": reason},
        )
        return updated

    def track(self, order_id: str, ctx: AuthContext) -> Dict[str, Any]:
        order = self._load_visible(order_id, ctx)
        timeline = [{"status": "pending", "at": order.created_at}]
        for status, attr in _TIMESTAMP_FIELDS.items():
            at = getattr(order, attr)
            if at:
                timeline.append({"status": status, "at": at})
        timeline.sort(key=lambda entry: entry["at"])
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "payment_status": order.payment_status,
            "tracking_number": order.tracking_number,
            "timeline": timeline,
        }
