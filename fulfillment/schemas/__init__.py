from fulfillment.schemas.order import (
    ShippingAddress,
    CheckoutRequest,
    CouponPreviewRequest,
    CouponPreviewResponse,
    PaymentConfirmedRequest,
    TimelineEntryRequest,
    OrderItemResponse,
    OrderResponse,
)
from fulfillment.schemas.shipping import (
    AddressRequest,
    AddressValidationResponse,
    PackageRequest,
    RateRequest,
    RateResponse,
    ShipmentRequest,
    PickupRequest,
    LocationSearchRequest,
)
