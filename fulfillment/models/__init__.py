from fulfillment.models.product import Product
from fulfillment.models.cart import CartItem
from fulfillment.models.coupon import Coupon, DiscountType
from fulfillment.models.order import Order, OrderItem, OrderStatus, PaymentStatus

__all__ = [
    "Product",
    "CartItem",
    "Coupon",
    "DiscountType",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentStatus",
]
