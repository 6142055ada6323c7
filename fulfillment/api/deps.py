"""
API dependencies

Authentication is done upstream; the gateway forwards the authenticated user
id and role as headers. Service objects are built per request on the
request's session.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.database import get_db
from fulfillment.services.fedex.client import CarrierClient, get_carrier_client
from fulfillment.services.order_service import OrderTransactionManager
from fulfillment.services.shipment_orchestrator import ShipmentOrchestrator

ADMIN_ROLES = {"admin", "fulfillment"}


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> int:
    """Authenticated user id forwarded by the gateway."""
    if not x_user_id or not x_user_id.isdigit():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return int(x_user_id)


def get_current_admin(
    user_id: int = Depends(get_current_user_id),
    x_user_role: Optional[str] = Header(None),
) -> int:
    if (x_user_role or "").lower() not in ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user_id


def get_order_manager(db: AsyncSession = Depends(get_db)) -> OrderTransactionManager:
    return OrderTransactionManager(db)


def get_orchestrator(db: AsyncSession = Depends(get_db)) -> ShipmentOrchestrator:
    return ShipmentOrchestrator(db)


def get_fedex_client() -> CarrierClient:
    return get_carrier_client()
