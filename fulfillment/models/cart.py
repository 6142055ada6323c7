"""
Cart model

Owned by the cart service; checkout reads it and empties it.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, ForeignKey, DateTime, Index
from sqlalchemy.orm import relationship

from fulfillment.core.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity = Column(Integer, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    product = relationship("Product")

    __table_args__ = (
        Index('ix_cart_items_user_product', 'user_id', 'product_id'),
    )
