"""
Tests for order status rules, timeline, tracking history and coupon math.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fulfillment.core.exceptions import ConflictError, InvalidTransitionError, ValidationError
from fulfillment.models import Coupon, DiscountType, OrderStatus
from fulfillment.models.order import can_transition, parse_status
from tests.conftest import make_order

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class TestTransitions:

    @pytest.mark.parametrize("current,new", [
        ("pending", "confirmed"),
        ("confirmed", "processing"),
        ("processing", "shipped"),
        ("confirmed", "shipped"),
        ("shipped", "out_for_delivery"),
        ("shipped", "delivered"),
        ("out_for_delivery", "delivered"),
        ("pending", "cancelled"),
        ("shipped", "returned"),
        ("delivered", "refunded"),
        ("cancelled", "refunded"),
    ])
    def test_allowed(self, current, new):
        assert can_transition(current, new) is True

    @pytest.mark.parametrize("current,new", [
        ("delivered", "shipped"),
        ("out_for_delivery", "shipped"),
        ("shipped", "processing"),
        ("delivered", "cancelled"),
        ("cancelled", "shipped"),
        ("refunded", "delivered"),
        ("shipped", "shipped"),
        ("shipped", "cancelled"),
        ("out_for_delivery", "cancelled"),
    ])
    def test_rejected(self, current, new):
        assert can_transition(current, new) is False


class TestSetStatus:

    def test_same_status_is_noop(self):
        order = make_order(order_status="shipped")

        assert order.set_status(OrderStatus.SHIPPED) is False
        assert order.status_history == []

    def test_forward_move_records_history_and_stamp(self):
        order = make_order(order_status="confirmed")

        assert order.set_status(OrderStatus.SHIPPED, note="label printed", now=NOW) is True

        assert order.order_status == "shipped"
        assert order.shipped_at == NOW
        assert order.status_history == [{"status": "shipped", "timestamp": NOW.isoformat(), "note": "label printed"}]

    def test_backward_move_raises(self):
        order = make_order(order_status="delivered")

        with pytest.raises(InvalidTransitionError) as exc_info:
            order.set_status(OrderStatus.SHIPPED)
        assert exc_info.value.details == {"current": "delivered", "requested": "shipped"}
        assert order.order_status == "delivered"

    def test_override_allows_backward_move(self):
        order = make_order(order_status="shipped")

        assert order.set_status(OrderStatus.PROCESSING, override=True, now=NOW) is True
        assert order.order_status == "processing"
        assert order.processed_at == NOW

    def test_existing_stamp_kept(self):
        first = NOW - timedelta(days=2)
        order = make_order(order_status="shipped", processed_at=first)

        order.set_status(OrderStatus.PROCESSING, override=True, now=NOW)

        assert order.processed_at == first

    def test_unknown_status_is_validation_error(self):
        order = make_order(order_status="shipped")

        with pytest.raises(ValidationError) as exc_info:
            order.set_status("lost", override=True)

        assert exc_info.value.code == "INVALID_STATUS"
        assert "returned" in exc_info.value.details["allowed"]
        assert order.order_status == "shipped"

    def test_parse_status(self):
        assert parse_status("out_for_delivery") is OrderStatus.OUT_FOR_DELIVERY
        assert parse_status(OrderStatus.SHIPPED) is OrderStatus.SHIPPED
        with pytest.raises(ValidationError):
            parse_status(None)


class TestTimeline:

    def test_repeat_of_last_entry_skipped(self):
        order = make_order()

        assert order.add_timeline_entry("Payment confirmed", status="confirmed", timestamp=NOW) is True
        assert order.add_timeline_entry("Payment confirmed", status="confirmed") is False
        assert len(order.timeline) == 1

    def test_entries_sorted_by_time(self):
        order = make_order()
        order.add_timeline_entry("Later", timestamp=NOW)
        order.add_timeline_entry("Earlier", timestamp=NOW - timedelta(hours=1))

        assert [e["message"] for e in order.timeline] == ["Earlier", "Later"]


class TestTrackingHistory:

    def test_merge_dedupes_by_timestamp(self):
        order = make_order()
        scan = {"timestamp": NOW, "status_code": "PU", "description": "Picked up", "location": "COLLIERVILLE, TN"}

        assert order.merge_tracking_events([scan]) == 1
        assert order.merge_tracking_events([scan, {**scan, "timestamp": NOW + timedelta(hours=3)}]) == 1

        assert len(order.tracking_history) == 2
        assert order.tracking_history[0]["timestamp"] == NOW.isoformat()

    def test_nothing_new_leaves_history_untouched(self):
        order = make_order(tracking_history=[{"timestamp": NOW.isoformat(), "status_code": "PU"}])

        assert order.merge_tracking_events([{"timestamp": NOW, "status_code": "PU"}]) == 0
        assert len(order.tracking_history) == 1

    def test_needs_refresh(self):
        order = make_order(order_status="shipped", tracking_number="794644790138")
        assert order.needs_tracking_refresh(now=NOW) is True

        order.last_tracking_update = NOW - timedelta(minutes=10)
        assert order.needs_tracking_refresh(now=NOW) is False

        order.last_tracking_update = NOW - timedelta(minutes=45)
        assert order.needs_tracking_refresh(now=NOW) is True

    def test_delivered_orders_not_refreshed(self):
        order = make_order(order_status="delivered", tracking_number="794644790138")
        assert order.needs_tracking_refresh(now=NOW) is False

    def test_tracking_url(self):
        assert make_order().tracking_url is None
        order = make_order(tracking_number="794644790138")
        assert order.tracking_url == "https://www.fedex.com/fedextrack/?trknbr=794644790138"

    def test_clear_carrier_shipment(self):
        order = make_order(
            tracking_number="794644790138",
            label_url="https://labels.fedex.com/x.pdf",
            pickup_confirmation="NQAA97",
            tracking_history=[{"timestamp": NOW.isoformat()}],
        )

        order.clear_carrier_shipment()

        assert order.tracking_number is None
        assert order.label_url is None
        assert order.pickup_confirmation is None
        assert order.tracking_history == []


class TestPricingLock:

    def test_paid_order_pricing_immutable(self):
        order = make_order(payment_status="paid")

        with pytest.raises(ConflictError) as exc_info:
            order.total_amount = Decimal("1.00")
        assert exc_info.value.code == "PRICING_LOCKED"

    def test_unpaid_order_pricing_editable(self):
        order = make_order()
        order.shipping_cost = Decimal("0.00")
        assert order.shipping_cost == Decimal("0.00")


class TestCouponDiscount:

    def _coupon(self, **kwargs):
        fields = dict(
            code="SAVE20",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("20"),
            minimum_order_value=Decimal("0"),
            usage_count=0,
            expires_at=NOW + timedelta(days=30),
            is_active=True,
        )
        fields.update(kwargs)
        return Coupon(**fields)

    def test_percentage(self):
        assert self._coupon().calculate_discount(Decimal("100.00")) == Decimal("20.00")

    def test_percentage_capped(self):
        coupon = self._coupon(maximum_discount=Decimal("30"))
        assert coupon.calculate_discount(Decimal("250.00")) == Decimal("30.00")

    def test_fixed_never_exceeds_subtotal(self):
        coupon = self._coupon(discount_type=DiscountType.FIXED, discount_value=Decimal("25"))
        assert coupon.calculate_discount(Decimal("80.00")) == Decimal("25.00")
        assert coupon.calculate_discount(Decimal("10.00")) == Decimal("10.00")

    def test_rounding(self):
        coupon = self._coupon(discount_value=Decimal("15"))
        assert coupon.calculate_discount(Decimal("33.33")) == Decimal("5.00")

    def test_exhausted_and_expired(self):
        assert self._coupon(usage_limit_total=5, usage_count=5).is_exhausted is True
        assert self._coupon(usage_limit_total=None, usage_count=500).is_exhausted is False
        assert self._coupon(expires_at=NOW - timedelta(seconds=1)).is_expired(now=NOW) is True

    def test_code_normalized(self):
        assert Coupon.normalize_code("  save20 ") == "SAVE20"
