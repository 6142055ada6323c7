"""
Coupon model

Percentage or fixed discounts with a minimum order value, an optional cap,
an optional total usage limit and an expiry.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import Column, String, Boolean, Integer, DateTime, Numeric, CheckConstraint

from fulfillment.core.database import Base

CENTS = Decimal("0.01")


def utcnow():
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class DiscountType:
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Stored upper-case; lookups normalize the input the same way
    code = Column(String(50), unique=True, nullable=False, index=True)

    discount_type = Column(String(20), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)

    # Constraints
    minimum_order_value = Column(Numeric(10, 2), default=0)
    maximum_discount = Column(Numeric(10, 2))  # Cap for percentage discounts

    # Usage limits
    usage_limit_total = Column(Integer)  # NULL = unlimited
    usage_count = Column(Integer, nullable=False, default=0)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("usage_count >= 0", name="check_usage_count_non_negative"),
        CheckConstraint(
            "usage_limit_total IS NULL OR usage_count <= usage_limit_total",
            name="check_usage_within_limit",
        ),
    )

    @staticmethod
    def normalize_code(code: str) -> str:
        return (code or "").strip().upper()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now

    @property
    def is_exhausted(self) -> bool:
        return self.usage_limit_total is not None and (self.usage_count or 0) >= self.usage_limit_total

    def calculate_discount(self, subtotal: Decimal) -> Decimal:
        """min(raw discount, maximum_discount, subtotal), rounded to cents."""
        value = Decimal(str(self.discount_value))
        if self.discount_type == DiscountType.PERCENTAGE:
            discount = subtotal * value / Decimal("100")
            if self.maximum_discount is not None:
                discount = min(discount, Decimal(str(self.maximum_discount)))
        else:
            discount = value
        discount = min(discount, subtotal)
        return discount.quantize(CENTS, rounding=ROUND_HALF_UP)
