"""
Tests for checkout: pricing, stock and coupon bookkeeping, rollback.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from fulfillment.core.exceptions import (
    ConflictError,
    CouponExhaustedError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from fulfillment.models import CartItem, Coupon, DiscountType, Product
from fulfillment.services import order_service
from fulfillment.services.order_service import (
    OrderTransactionManager,
    calculate_shipping,
    generate_order_number,
    run_post_commit_hooks,
)
from tests.conftest import make_order, rowcount_result, scalar_result, scalars_result

ADDRESS = {
    "name": "Jane Collector",
    "street": "742 Evergreen Terrace",
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62704",
    "phone": "2175550134",
}


def product(id, price, stock=5, is_active=True, medium="Print"):
    return Product(id=id, name=f"Artwork {id}", price=Decimal(price), stock=stock, is_active=is_active, medium=medium)


def cart(*lines):
    return [CartItem(id=i + 1, user_id=7, product_id=pid, quantity=qty) for i, (pid, qty) in enumerate(lines)]


def coupon(**kwargs):
    fields = dict(
        id=3,
        code="SAVE20",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=Decimal("20"),
        minimum_order_value=Decimal("50"),
        maximum_discount=Decimal("30"),
        usage_limit_total=100,
        usage_count=10,
        expires_at=datetime.now(timezone.utc) + timedelta(days=7),
        is_active=True,
    )
    fields.update(kwargs)
    return Coupon(**fields)


class FailingNotifier:
    async def render_invoice(self, order):
        raise RuntimeError("PDF renderer down")

    async def send_confirmation(self, order):
        raise RuntimeError("SMTP down")


async def drain_hooks():
    if order_service._background_tasks:
        await asyncio.gather(*list(order_service._background_tasks))


@pytest.fixture
def notifier():
    n = MagicMock()
    n.render_invoice = AsyncMock()
    n.send_confirmation = AsyncMock()
    return n


@pytest.fixture
def manager(mock_db, notifier):
    return OrderTransactionManager(mock_db, notifiers=[notifier], order_number_factory=lambda: "ORD-20261019-0000AAAA")


class TestPricingHelpers:

    @pytest.mark.parametrize("subtotal,expected", [
        ("250.00", "0.00"),
        ("200.01", "0.00"),
        ("200.00", "15.00"),
        ("50.00", "15.00"),
    ])
    def test_flat_shipping(self, subtotal, expected):
        assert calculate_shipping(Decimal(subtotal)) == Decimal(expected)

    def test_order_number_format(self):
        number = generate_order_number()
        prefix, day, suffix = number.split("-")
        assert prefix == "ORD"
        assert len(day) == 8 and day.isdigit()
        assert len(suffix) == 8 and suffix == suffix.upper()


class TestCheckout:

    @pytest.mark.asyncio
    async def test_free_shipping_over_threshold(self, manager, mock_db, notifier):
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 1), (2, 2))),
            scalars_result([product(1, "150.00"), product(2, "50.00")]),
            scalar_result(None),
            rowcount_result(1),
            rowcount_result(1),
            MagicMock(),
        ]

        order = await manager.checkout(7, ADDRESS, "card")
        await drain_hooks()

        assert order.subtotal == Decimal("250.00")
        assert order.shipping_cost == Decimal("0.00")
        assert order.total_amount == Decimal("250.00")
        assert order.order_number == "ORD-20261019-0000AAAA"
        assert order.order_status == "pending"
        assert [i.quantity for i in order.items] == [1, 2]
        assert order.timeline[0]["message"] == "Order placed successfully"
        mock_db.add.assert_called_once_with(order)
        mock_db.commit.assert_awaited_once()
        mock_db.rollback.assert_not_called()
        notifier.render_invoice.assert_awaited_once_with(order)
        notifier.send_confirmation.assert_awaited_once_with(order)

    @pytest.mark.asyncio
    async def test_flat_fee_under_threshold(self, manager, mock_db):
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 1))),
            scalars_result([product(1, "50.00")]),
            scalar_result(None),
            rowcount_result(1),
            MagicMock(),
        ]

        order = await manager.checkout(7, ADDRESS, "card")
        await drain_hooks()

        assert order.shipping_cost == Decimal("15.00")
        assert order.total_amount == Decimal("65.00")

    @pytest.mark.asyncio
    async def test_percentage_coupon_capped(self, manager, mock_db):
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 1))),
            scalars_result([product(1, "250.00")]),
            scalar_result(coupon()),
            scalar_result(None),
            rowcount_result(1),
            rowcount_result(1),
            MagicMock(),
        ]

        order = await manager.checkout(7, ADDRESS, "card", coupon_code=" save20 ")
        await drain_hooks()

        assert order.discount_amount == Decimal("30.00")
        assert order.shipping_cost == Decimal("0.00")
        assert order.total_amount == Decimal("220.00")
        assert order.coupon_code == "SAVE20"
        assert mock_db.execute.await_count == 7

    @pytest.mark.asyncio
    async def test_stock_race_rolls_back(self, manager, mock_db, notifier):
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 1), (2, 1))),
            scalars_result([product(1, "80.00"), product(2, "80.00", stock=1)]),
            scalar_result(None),
            rowcount_result(1),
            rowcount_result(0),
        ]

        with pytest.raises(InsufficientStockError) as exc_info:
            await manager.checkout(7, ADDRESS, "card")

        assert exc_info.value.details["product_id"] == 2
        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_called()
        await drain_hooks()
        notifier.render_invoice.assert_not_called()

    @pytest.mark.asyncio
    async def test_coupon_race_rolls_back(self, manager, mock_db):
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 1))),
            scalars_result([product(1, "100.00")]),
            scalar_result(coupon(usage_limit_total=1, usage_count=0)),
            scalar_result(None),
            rowcount_result(1),
            rowcount_result(0),
        ]

        with pytest.raises(CouponExhaustedError):
            await manager.checkout(7, ADDRESS, "card", coupon_code="SAVE20")

        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_cart(self, manager, mock_db):
        mock_db.execute.side_effect = [scalars_result([])]

        with pytest.raises(ValidationError) as exc_info:
            await manager.checkout(7, ADDRESS, "card")
        assert exc_info.value.code == "EMPTY_CART"
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_first_violation_in_cart_order_wins(self, manager, mock_db):
        # Item 1 is short on stock, item 2 no longer exists
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 3), (2, 1))),
            scalars_result([product(1, "10.00", stock=1)]),
        ]

        with pytest.raises(InsufficientStockError):
            await manager.checkout(7, ADDRESS, "card")

    @pytest.mark.asyncio
    async def test_missing_product(self, manager, mock_db):
        mock_db.execute.side_effect = [
            scalars_result(cart((9, 1))),
            scalars_result([]),
        ]

        with pytest.raises(NotFoundError):
            await manager.checkout(7, ADDRESS, "card")

    @pytest.mark.asyncio
    async def test_inactive_product(self, manager, mock_db):
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 1))),
            scalars_result([product(1, "10.00", is_active=False)]),
        ]

        with pytest.raises(ValidationError) as exc_info:
            await manager.checkout(7, ADDRESS, "card")
        assert exc_info.value.code == "PRODUCT_INACTIVE"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides,error,code", [
        ({"is_active": False}, ValidationError, "COUPON_INACTIVE"),
        ({"expires_at": datetime(2020, 1, 1, tzinfo=timezone.utc)}, ValidationError, "COUPON_EXPIRED"),
        ({"usage_limit_total": 10, "usage_count": 10}, CouponExhaustedError, "COUPON_EXHAUSTED"),
        ({"minimum_order_value": Decimal("500")}, ValidationError, "COUPON_MIN_ORDER"),
    ])
    async def test_coupon_rules(self, manager, mock_db, overrides, error, code):
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 1))),
            scalars_result([product(1, "100.00")]),
            scalar_result(coupon(**overrides)),
        ]

        with pytest.raises(error) as exc_info:
            await manager.checkout(7, ADDRESS, "card", coupon_code="SAVE20")
        assert exc_info.value.code == code

    @pytest.mark.asyncio
    async def test_unknown_coupon(self, manager, mock_db):
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 1))),
            scalars_result([product(1, "100.00")]),
            scalar_result(None),
        ]

        with pytest.raises(NotFoundError) as exc_info:
            await manager.checkout(7, ADDRESS, "card", coupon_code="NOPE")
        assert exc_info.value.code == "COUPON_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_order_number_collision_retried(self, mock_db, notifier):
        numbers = iter(["ORD-20261019-TAKEN000", "ORD-20261019-FREE0000"])
        manager = OrderTransactionManager(mock_db, notifiers=[notifier], order_number_factory=lambda: next(numbers))
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 1))),
            scalars_result([product(1, "100.00")]),
            scalar_result(41),
            scalar_result(None),
            rowcount_result(1),
            MagicMock(),
        ]

        order = await manager.checkout(7, ADDRESS, "card")
        await drain_hooks()

        assert order.order_number == "ORD-20261019-FREE0000"

    @pytest.mark.asyncio
    async def test_order_number_collisions_exhausted(self, mock_db, notifier):
        manager = OrderTransactionManager(mock_db, notifiers=[notifier], order_number_factory=lambda: "ORD-X")
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 1))),
            scalars_result([product(1, "100.00")]),
        ] + [scalar_result(1)] * 5

        with pytest.raises(ConflictError) as exc_info:
            await manager.checkout(7, ADDRESS, "card")
        assert exc_info.value.code == "ORDER_NUMBER_COLLISION"

    @pytest.mark.asyncio
    async def test_hook_failure_does_not_fail_checkout(self, mock_db, notifier):
        manager = OrderTransactionManager(mock_db, notifiers=[FailingNotifier(), notifier])
        mock_db.execute.side_effect = [
            scalars_result(cart((1, 1))),
            scalars_result([product(1, "100.00")]),
            scalar_result(None),
            rowcount_result(1),
            MagicMock(),
        ]

        order = await manager.checkout(7, ADDRESS, "card")
        await drain_hooks()

        assert order.order_status == "pending"
        mock_db.commit.assert_awaited_once()
        notifier.send_confirmation.assert_awaited_once_with(order)


class TestPostCommitHooks:

    @pytest.mark.asyncio
    async def test_every_hook_runs_even_after_failures(self, notifier):
        order = make_order()

        await run_post_commit_hooks(order, [FailingNotifier(), notifier])

        notifier.render_invoice.assert_awaited_once_with(order)
        notifier.send_confirmation.assert_awaited_once_with(order)


class TestCouponPreview:

    @pytest.mark.asyncio
    async def test_preview(self, manager, mock_db):
        mock_db.execute.return_value = scalar_result(coupon(maximum_discount=None))

        preview = await manager.preview_coupon("save20", Decimal("80"))

        assert preview["code"] == "SAVE20"
        assert preview["discount_amount"] == Decimal("16.00")
        assert preview["subtotal_after_discount"] == Decimal("64.00")
        mock_db.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_preview_below_minimum(self, manager, mock_db):
        mock_db.execute.return_value = scalar_result(coupon())

        with pytest.raises(ValidationError) as exc_info:
            await manager.preview_coupon("SAVE20", Decimal("20"))
        assert exc_info.value.code == "COUPON_MIN_ORDER"

    @pytest.mark.asyncio
    async def test_blank_code(self, manager):
        with pytest.raises(ValidationError):
            await manager.preview_coupon("   ", Decimal("20"))
