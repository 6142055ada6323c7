"""
Order routes
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.api.deps import get_current_admin, get_current_user_id, get_orchestrator
from fulfillment.core.database import get_db
from fulfillment.models.order import Order
from fulfillment.schemas.order import OrderResponse, PaymentConfirmedRequest, TimelineEntryRequest
from fulfillment.services.shipment_orchestrator import ShipmentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Get single order"""
    result = await db.execute(
        select(Order).where(Order.id == order_id, Order.user_id == user_id)
    )
    order = result.scalar_one_or_none()

    if not order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )

    return order


@router.post("/{order_id}/payment-confirmed", response_model=OrderResponse)
async def payment_confirmed(
    order_id: int,
    request: PaymentConfirmedRequest,
    admin_id: int = Depends(get_current_admin),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
):
    """
    Payment confirmation signal from the payment collaborator.

    Promotes pending -> confirmed; repeating the call is a no-op.
    """
    return await orchestrator.confirm_payment(order_id, request.payment_id)


@router.post("/{order_id}/timeline", response_model=OrderResponse)
async def add_timeline_entry(
    order_id: int,
    request: TimelineEntryRequest,
    admin_id: int = Depends(get_current_admin),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
):
    logger.info(f"[orders] Admin {admin_id} timeline edit on order {order_id} (override={request.override})")
    return await orchestrator.add_timeline_entry(
        order_id,
        request.message,
        status=request.status.value if request.status else None,
        location=request.location,
        override=request.override,
    )
