"""
Order models

The carrier shipment is embedded in the order row: tracking number, label,
package snapshot, pickup confirmation and the deduplicated tracking history.
The timeline is an append-only JSON list of fulfillment events.
"""
import enum
from datetime import datetime, timezone, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, JSON, Numeric, Index
from sqlalchemy.orm import relationship, validates

from fulfillment.core.database import Base
from fulfillment.core.exceptions import InvalidTransitionError, ConflictError, ValidationError

FEDEX_TRACKING_URL = "https://www.fedex.com/fedextrack/?trknbr="


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


# Fulfillment progress; terminal states share the top rank
STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.READY_TO_SHIP: 3,
    OrderStatus.SHIPPED: 4,
    OrderStatus.OUT_FOR_DELIVERY: 5,
    OrderStatus.DELIVERED: 6,
    OrderStatus.CANCELLED: 7,
    OrderStatus.RETURNED: 7,
    OrderStatus.REFUNDED: 8,
}

TERMINAL_STATUSES = {OrderStatus.CANCELLED, OrderStatus.RETURNED, OrderStatus.REFUNDED}

# Non-forward moves that are still legal
EXTRA_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.CANCELLED},
    OrderStatus.READY_TO_SHIP: {OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.RETURNED},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.RETURNED},
    OrderStatus.DELIVERED: {OrderStatus.RETURNED, OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: {OrderStatus.REFUNDED},
    OrderStatus.RETURNED: {OrderStatus.REFUNDED},
}

STATUS_TIMESTAMP_FIELDS = {
    OrderStatus.PROCESSING: "processed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

PRICING_FIELDS = ("subtotal", "shipping_cost", "discount_amount", "tax_amount", "total_amount")


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unknown order status: {value}",
            code="INVALID_STATUS",
            details={"status": value, "allowed": [s.value for s in OrderStatus]},
        )


def status_rank(status) -> int:
    return STATUS_RANK[OrderStatus(status)]


def can_transition(current, new) -> bool:
    """Forward moves between non-terminal states, plus the explicit extras."""
    current, new = OrderStatus(current), OrderStatus(new)
    if current == new:
        return False
    if current not in TERMINAL_STATUSES and new not in TERMINAL_STATUSES:
        return STATUS_RANK[new] > STATUS_RANK[current]
    return new in EXTRA_TRANSITIONS.get(current, set())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    order_number = Column(String(32), unique=True, index=True, nullable=False)

    # Pricing - frozen once payment_status is paid
    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False)
    coupon_code = Column(String(50), nullable=True)

    # Payment
    payment_method = Column(String(50))
    payment_id = Column(String(255))
    payment_status = Column(String(30), default=PaymentStatus.PENDING.value, nullable=False)

    order_status = Column(String(30), default=OrderStatus.PENDING.value, nullable=False, index=True)
    status_history = Column(JSON, default=list)

    shipping_address = Column(JSON, nullable=False)
    notes = Column(Text)

    # Carrier shipment (embedded)
    tracking_number = Column(String(64), unique=True, nullable=True)
    label_url = Column(Text)
    carrier_shipment_id = Column(String(128))
    service_type = Column(String(64))
    package_weight = Column(JSON)
    package_dimensions = Column(JSON)
    insured_value = Column(Numeric(12, 2))
    shipping_charge = Column(JSON)
    pickup_confirmation = Column(String(64))
    pickup_date = Column(String(10))
    pickup_location = Column(String(64))
    tracking_history = Column(JSON, default=list)
    carrier_status = Column(String(10))
    estimated_delivery = Column(DateTime(timezone=True))
    actual_delivery = Column(DateTime(timezone=True))
    last_tracking_update = Column(DateTime(timezone=True))

    timeline = Column(JSON, default=list)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    paid_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True))
    shipped_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))

    items = relationship("OrderItem", back_populates="order", lazy="selectin")

    __table_args__ = (
        Index("ix_orders_tracking_refresh", "order_status", "last_tracking_update"),
    )

    @validates(*PRICING_FIELDS)
    def _guard_pricing(self, key, value):
        if self.payment_status == PaymentStatus.PAID.value:
            raise ConflictError(
                f"Pricing of paid order {self.order_number} is immutable",
                code="PRICING_LOCKED",
                details={"field": key},
            )
        return value

    # ==================== Status ====================

    def set_status(
        self,
        new_status,
        note: Optional[str] = None,
        override: bool = False,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Move order_status, recording history and the matching *_at stamp.

        Returns False when the order is already in `new_status`. Illegal moves
        raise InvalidTransitionError unless `override` is set (admin edits).
        """
        new_status = parse_status(new_status)
        current = OrderStatus(self.order_status or OrderStatus.PENDING)
        if current == new_status:
            return False
        if not override and not can_transition(current, new_status):
            raise InvalidTransitionError(current.value, new_status.value)

        now = now or _utcnow()
        self.order_status = new_status.value
        self.status_history = list(self.status_history or []) + [{
            "status": new_status.value,
            "timestamp": _iso(now),
            "note": note,
        }]
        stamp = STATUS_TIMESTAMP_FIELDS.get(new_status)
        if stamp and getattr(self, stamp) is None:
            setattr(self, stamp, now)
        return True

    # ==================== Timeline ====================

    def add_timeline_entry(
        self,
        message: str,
        status: Optional[str] = None,
        location: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Append a timeline entry; an entry repeating the last one is skipped."""
        timeline = list(self.timeline or [])
        if timeline:
            last = timeline[-1]
            if last.get("message") == message and last.get("status") == status:
                return False

        timeline.append({
            "message": message,
            "status": status,
            "location": location,
            "timestamp": _iso(timestamp or _utcnow()),
        })
        timeline.sort(key=lambda e: e["timestamp"])
        self.timeline = timeline
        return True

    # ==================== Tracking ====================

    def merge_tracking_events(self, events: Iterable[dict]) -> int:
        """
        Merge scan events keyed by timestamp.

        Events whose timestamp already exists in tracking_history are not
        re-appended. Returns the number of events added.
        """
        history: List[dict] = list(self.tracking_history or [])
        seen = {entry["timestamp"] for entry in history}
        added = 0

        for event in events:
            key = _iso(event["timestamp"]) if isinstance(event["timestamp"], datetime) else event["timestamp"]
            if key in seen:
                continue
            seen.add(key)
            history.append({**event, "timestamp": key})
            added += 1

        if added:
            history.sort(key=lambda e: e["timestamp"])
            self.tracking_history = history
        return added

    def needs_tracking_refresh(self, now: Optional[datetime] = None, stale_minutes: int = 30) -> bool:
        if not self.tracking_number:
            return False
        if self.order_status not in (OrderStatus.SHIPPED.value, OrderStatus.OUT_FOR_DELIVERY.value):
            return False
        if self.last_tracking_update is None:
            return True
        now = now or _utcnow()
        last = self.last_tracking_update
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return now - last > timedelta(minutes=stale_minutes)

    @property
    def tracking_url(self) -> Optional[str]:
        if not self.tracking_number:
            return None
        return f"{FEDEX_TRACKING_URL}{self.tracking_number}"

    def clear_carrier_shipment(self) -> None:
        for name in (
            "tracking_number", "label_url", "carrier_shipment_id", "service_type",
            "package_weight", "package_dimensions", "insured_value", "shipping_charge",
            "pickup_confirmation", "pickup_date", "pickup_location", "carrier_status",
            "estimated_delivery", "last_tracking_update",
        ):
            setattr(self, name, None)
        self.tracking_history = []


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True)

    # Snapshot of product at time of order
    product_name = Column(String(500), nullable=False)
    medium = Column(String(100))
    price_at_order = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")
