"""
Order schemas
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from fulfillment.models.order import OrderStatus


class ShippingAddress(BaseModel):
    name: str
    street: str
    street2: Optional[str] = None
    city: str
    state: str = Field(..., min_length=2, max_length=2)
    postal_code: str
    country_code: str = "US"
    phone: Optional[str] = None
    email: Optional[str] = None


class CheckoutRequest(BaseModel):
    shipping_address: ShippingAddress
    payment_method: str
    coupon_code: Optional[str] = None


class CouponPreviewRequest(BaseModel):
    code: str
    subtotal: Decimal = Field(..., ge=0)


class CouponPreviewResponse(BaseModel):
    code: str
    discount_type: str
    discount_value: Decimal
    discount_amount: Decimal
    subtotal: Decimal
    subtotal_after_discount: Decimal


class PaymentConfirmedRequest(BaseModel):
    payment_id: Optional[str] = None


class TimelineEntryRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=500)
    status: Optional[OrderStatus] = None
    location: Optional[str] = None
    override: bool = False


class OrderItemResponse(BaseModel):
    id: int
    product_id: Optional[int]
    product_name: str
    medium: Optional[str]
    price_at_order: Decimal
    quantity: int

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: int
    order_number: str
    order_status: str
    payment_status: str
    subtotal: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    coupon_code: Optional[str]
    shipping_address: Dict[str, Any]
    tracking_number: Optional[str]
    tracking_url: Optional[str]
    label_url: Optional[str]
    service_type: Optional[str]
    carrier_status: Optional[str]
    pickup_confirmation: Optional[str]
    pickup_date: Optional[str]
    estimated_delivery: Optional[datetime]
    actual_delivery: Optional[datetime]
    timeline: Optional[List[Dict[str, Any]]] = None
    tracking_history: Optional[List[Dict[str, Any]]] = None
    items: List[OrderItemResponse]
    created_at: datetime
    paid_at: Optional[datetime]
    shipped_at: Optional[datetime]
    delivered_at: Optional[datetime]

    class Config:
        from_attributes = True
