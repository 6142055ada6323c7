"""
Checkout API Routes

Cart -> pending order conversion and coupon preview.
"""
import logging

from fastapi import APIRouter, Depends, status

from fulfillment.api.deps import get_current_user_id, get_order_manager
from fulfillment.schemas.order import (
    CheckoutRequest,
    CouponPreviewRequest,
    CouponPreviewResponse,
    OrderResponse,
)
from fulfillment.services.order_service import OrderTransactionManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/checkout", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def checkout(
    request: CheckoutRequest,
    user_id: int = Depends(get_current_user_id),
    manager: OrderTransactionManager = Depends(get_order_manager),
):
    """Place an order from the current user's cart."""
    logger.info(f"[checkout] User {user_id} checkout (coupon={request.coupon_code or '-'})")
    return await manager.checkout(
        user_id=user_id,
        shipping_address=request.shipping_address.model_dump(),
        payment_method=request.payment_method,
        coupon_code=request.coupon_code,
    )


@router.post("/coupons/preview", response_model=CouponPreviewResponse)
async def preview_coupon(
    request: CouponPreviewRequest,
    user_id: int = Depends(get_current_user_id),
    manager: OrderTransactionManager = Depends(get_order_manager),
):
    return await manager.preview_coupon(request.code, request.subtotal)
