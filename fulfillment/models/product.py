"""
Product model

Owned by the catalog; checkout only reads price/active and decrements stock.
"""
from sqlalchemy import Column, Integer, String, Boolean, Numeric, CheckConstraint

from fulfillment.core.database import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    medium = Column(String(100))  # e.g. "Oil on canvas - Large"

    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, index=True)

    __table_args__ = (
        CheckConstraint('stock >= 0', name='check_stock_non_negative'),
        CheckConstraint('price > 0', name='check_price_positive'),
    )
