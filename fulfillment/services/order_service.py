"""
OrderTransactionManager - cart to order conversion

Checkout is one unit of work: stock checks, coupon bookkeeping, pricing,
order persistence, stock decrement and cart cleanup either all commit or all
roll back. Products and the coupon are locked with SELECT ... FOR UPDATE and
every decrement/increment is a conditional UPDATE whose rowcount is checked,
so two concurrent checkouts can never oversell stock or overrun a coupon.

Invoice rendering and the confirmation email run after commit, in background
tasks, and can never undo a placed order.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set

from sqlalchemy import select, update, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.config import settings
from fulfillment.core.exceptions import (
    ConflictError,
    CouponExhaustedError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from fulfillment.models import CartItem, Coupon, Order, OrderItem, OrderStatus, PaymentStatus, Product

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
ORDER_NUMBER_ATTEMPTS = 5

# Post-commit tasks are referenced here until they finish
_background_tasks: Set[asyncio.Task] = set()


def dollars(amount: Any) -> Decimal:
    """Quantize to cents with half-up rounding."""
    if amount is None:
        return ZERO
    return Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)


def calculate_shipping(subtotal: Decimal) -> Decimal:
    """Flat rate: free strictly above the threshold, flat fee otherwise."""
    if subtotal > settings.FREE_SHIPPING_THRESHOLD:
        return ZERO
    return dollars(settings.FLAT_SHIPPING_FEE)


def generate_order_number() -> str:
    """Order number in format ORD-YYYYMMDD-XXXXXXXX."""
    return f"ORD-{datetime.now(timezone.utc).strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"


# ==================== Post-commit hooks ====================

class OrderNotifier(Protocol):
    """Protocol for post-commit order side effects."""

    async def render_invoice(self, order: Order) -> None:
        """Render and store the invoice for a placed order."""
        ...

    async def send_confirmation(self, order: Order) -> None:
        """Send the order confirmation email."""
        ...


class LoggingOrderNotifier:
    """Default notifier for development - logs instead of rendering/sending."""

    async def render_invoice(self, order: Order) -> None:
        logger.info(f"[INVOICE] {order.order_number} total=${order.total_amount}")

    async def send_confirmation(self, order: Order) -> None:
        logger.info(
            f"[CONFIRMATION EMAIL] {order.order_number}\n"
            f"  Items: {len(order.items or [])}\n"
            f"  Total: ${order.total_amount}"
        )


async def run_post_commit_hooks(order: Order, notifiers: Sequence[OrderNotifier]) -> None:
    """Run every hook; failures are logged and never raised."""
    for notifier in notifiers:
        for hook in (notifier.render_invoice, notifier.send_confirmation):
            try:
                await hook(order)
            except Exception as e:
                logger.error(
                    f"Post-commit hook {type(notifier).__name__}.{hook.__name__} "
                    f"failed for {order.order_number}: {e}"
                )


def schedule_post_commit_hooks(order: Order, notifiers: Sequence[OrderNotifier]) -> asyncio.Task:
    task = asyncio.create_task(run_post_commit_hooks(order, notifiers))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


# ==================== Transaction manager ====================

class OrderTransactionManager:
    """Converts a user's cart into a pending order in a single transaction."""

    def __init__(
        self,
        db: AsyncSession,
        notifiers: Optional[Sequence[OrderNotifier]] = None,
        order_number_factory=generate_order_number,
    ):
        self.db = db
        self.notifiers = list(notifiers) if notifiers is not None else [LoggingOrderNotifier()]
        self.order_number_factory = order_number_factory

    async def checkout(
        self,
        user_id: int,
        shipping_address: Dict[str, Any],
        payment_method: str,
        coupon_code: Optional[str] = None,
    ) -> Order:
        try:
            order = await self._place_order(user_id, shipping_address, payment_method, coupon_code)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Order {order.order_number} placed for user {user_id}: "
            f"subtotal=${order.subtotal} discount=${order.discount_amount} total=${order.total_amount}"
        )
        schedule_post_commit_hooks(order, self.notifiers)
        return order

    async def _place_order(
        self,
        user_id: int,
        shipping_address: Dict[str, Any],
        payment_method: str,
        coupon_code: Optional[str],
    ) -> Order:
        # 1. Cart
        cart_items = await self._load_cart(user_id)
        if not cart_items:
            raise ValidationError("Cart is empty", code="EMPTY_CART")

        # 2. Products, locked; first violation in cart order wins
        products = await self._lock_products([item.product_id for item in cart_items])
        subtotal = ZERO
        for item in cart_items:
            product = products.get(item.product_id)
            if product is None:
                raise NotFoundError(
                    f"Product {item.product_id} not found",
                    details={"product_id": item.product_id},
                )
            if not product.is_active:
                raise ValidationError(
                    f"{product.name} is no longer available",
                    code="PRODUCT_INACTIVE",
                    details={"product_id": product.id},
                )
            if product.stock < item.quantity:
                raise InsufficientStockError(
                    f"Insufficient stock for {product.name}",
                    product_id=product.id,
                    requested=item.quantity,
                    available=product.stock,
                )
            subtotal += dollars(product.price) * item.quantity
        subtotal = dollars(subtotal)

        # 3. Coupon
        coupon = None
        discount = ZERO
        if coupon_code:
            coupon = await self._lock_coupon(coupon_code)
            discount = self._check_coupon(coupon, subtotal)

        # 4. Pricing
        shipping_cost = calculate_shipping(subtotal)
        tax = ZERO
        total = dollars(subtotal + shipping_cost + tax - discount)

        # 5. Persist
        order_number = await self._unique_order_number()
        now = datetime.now(timezone.utc)
        order = Order(
            user_id=user_id,
            order_number=order_number,
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            discount_amount=discount,
            tax_amount=tax,
            total_amount=total,
            coupon_code=coupon.code if coupon else None,
            payment_method=payment_method,
            payment_status=PaymentStatus.PENDING.value,
            order_status=OrderStatus.PENDING.value,
            status_history=[{"status": OrderStatus.PENDING.value, "timestamp": now.isoformat(), "note": None}],
            shipping_address=dict(shipping_address),
            tracking_history=[],
            timeline=[],
            created_at=now,
            items=[
                OrderItem(
                    product_id=item.product_id,
                    product_name=products[item.product_id].name,
                    medium=products[item.product_id].medium,
                    price_at_order=dollars(products[item.product_id].price),
                    quantity=item.quantity,
                )
                for item in cart_items
            ],
        )
        self.db.add(order)
        await self.db.flush()

        for item in cart_items:
            await self._decrement_stock(products[item.product_id], item.quantity)
        if coupon is not None:
            await self._increment_coupon_usage(coupon)

        await self.db.execute(delete(CartItem).where(CartItem.user_id == user_id))
        order.add_timeline_entry("Order placed successfully", status=OrderStatus.PENDING.value, timestamp=now)
        return order

    # ==================== Queries ====================

    async def _load_cart(self, user_id: int) -> List[CartItem]:
        result = await self.db.execute(
            select(CartItem).where(CartItem.user_id == user_id).order_by(CartItem.id)
        )
        return list(result.scalars().all())

    async def _lock_products(self, product_ids: List[int]) -> Dict[int, Product]:
        # Locked in id order so concurrent checkouts acquire rows the same way
        result = await self.db.execute(
            select(Product)
            .where(Product.id.in_(set(product_ids)))
            .order_by(Product.id)
            .with_for_update()  # Pessimistic lock
        )
        return {product.id: product for product in result.scalars().all()}

    async def _lock_coupon(self, code: str) -> Coupon:
        normalized = Coupon.normalize_code(code)
        result = await self.db.execute(
            select(Coupon).where(Coupon.code == normalized).with_for_update()
        )
        coupon = result.scalar_one_or_none()
        if coupon is None:
            raise NotFoundError("Invalid coupon code", code="COUPON_NOT_FOUND", details={"code": normalized})
        return coupon

    def _check_coupon(self, coupon: Coupon, subtotal: Decimal) -> Decimal:
        if not coupon.is_active:
            raise ValidationError("This coupon is no longer active", code="COUPON_INACTIVE")
        if coupon.is_expired():
            raise ValidationError("This coupon has expired", code="COUPON_EXPIRED")
        if coupon.is_exhausted:
            raise CouponExhaustedError("This coupon has reached its usage limit", details={"code": coupon.code})
        minimum = dollars(coupon.minimum_order_value)
        if subtotal < minimum:
            raise ValidationError(
                f"Minimum order of ${minimum} required for this coupon",
                code="COUPON_MIN_ORDER",
                details={"minimum": str(minimum), "subtotal": str(subtotal)},
            )
        return coupon.calculate_discount(subtotal)

    async def _unique_order_number(self) -> str:
        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            candidate = self.order_number_factory()
            result = await self.db.execute(select(Order.id).where(Order.order_number == candidate))
            if result.scalar_one_or_none() is None:
                return candidate
            logger.warning(f"Order number collision on {candidate} (attempt {attempt + 1})")
        raise ConflictError(
            "Could not generate a unique order number",
            code="ORDER_NUMBER_COLLISION",
            severity="P1",
        )

    async def _decrement_stock(self, product: Product, quantity: int) -> None:
        result = await self.db.execute(
            update(Product)
            .where(Product.id == product.id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
        )
        if result.rowcount == 0:
            raise InsufficientStockError(
                f"Insufficient stock for {product.name}",
                product_id=product.id,
                requested=quantity,
                available=product.stock,
            )

    async def _increment_coupon_usage(self, coupon: Coupon) -> None:
        result = await self.db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                or_(
                    Coupon.usage_limit_total.is_(None),
                    Coupon.usage_count < Coupon.usage_limit_total,
                ),
            )
            .values(usage_count=Coupon.usage_count + 1)
        )
        if result.rowcount == 0:
            raise CouponExhaustedError("This coupon has reached its usage limit", details={"code": coupon.code})

    # ==================== Preview ====================

    async def preview_coupon(self, code: str, subtotal: Decimal) -> Dict[str, Any]:
        """Same checks as checkout, without locking or incrementing usage."""
        normalized = Coupon.normalize_code(code)
        if not normalized:
            raise ValidationError("Coupon code is required")
        result = await self.db.execute(select(Coupon).where(Coupon.code == normalized))
        coupon = result.scalar_one_or_none()
        if coupon is None:
            raise NotFoundError("Invalid coupon code", code="COUPON_NOT_FOUND", details={"code": normalized})

        subtotal = dollars(subtotal)
        discount = self._check_coupon(coupon, subtotal)
        return {
            "code": coupon.code,
            "discount_type": coupon.discount_type,
            "discount_value": dollars(coupon.discount_value),
            "discount_amount": discount,
            "subtotal": subtotal,
            "subtotal_after_discount": dollars(subtotal - discount),
        }
