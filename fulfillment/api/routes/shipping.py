"""
Shipping API Routes for FedEx Integration

Provides endpoints for:
- Address validation
- Rate quoting (get shipping options)
- Shipment creation and cancellation (generate / void labels)
- Tracking (refresh an order, or look up a tracking number)
- Pickup scheduling
- Drop-off location search
"""
import logging
from dataclasses import asdict
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from fulfillment.api.deps import get_current_admin, get_current_user_id, get_fedex_client, get_orchestrator
from fulfillment.schemas.order import OrderResponse
from fulfillment.schemas.shipping import (
    AddressRequest,
    AddressValidationResponse,
    LocationSearchRequest,
    PickupRequest,
    RateRequest,
    RateResponse,
    ShipmentRequest,
)
from fulfillment.services.fedex.address_validator import AddressValidator
from fulfillment.services.fedex.client import CarrierClient, get_track_client
from fulfillment.services.fedex.locations import LocationFinder
from fulfillment.services.fedex.rate_quoter import RateQuoter
from fulfillment.services.fedex.tracking import TrackingPoller
from fulfillment.services.shipment_orchestrator import ShipmentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])


# ==================== Addresses & Rates ====================

@router.post("/validate-address", response_model=AddressValidationResponse)
async def validate_address(
    request: AddressRequest,
    user_id: int = Depends(get_current_user_id),
    client: CarrierClient = Depends(get_fedex_client),
):
    """Advisory only: a failed validation never blocks checkout."""
    result = await AddressValidator(client).validate(request.to_input())
    return AddressValidationResponse(
        success=result.success,
        is_valid=result.is_valid,
        classification=result.classification,
        normalized_address=asdict(result.normalized_address) if result.normalized_address else None,
        messages=result.messages,
        requires_manual_verification=result.requires_manual_verification,
        error=result.error,
    )


@router.post("/rates", response_model=List[RateResponse])
async def get_rates(
    request: RateRequest,
    user_id: int = Depends(get_current_user_id),
    client: CarrierClient = Depends(get_fedex_client),
):
    rates = await RateQuoter(client).quote(
        request.destination.to_input(),
        [p.to_package() for p in request.packages],
        currency=request.currency,
        insured_value=request.insured_value,
        residential=request.residential,
    )
    return [asdict(rate) for rate in rates]


# ==================== Shipments ====================

@router.post("/orders/{order_id}/shipment", response_model=OrderResponse)
async def create_shipment(
    order_id: int,
    request: ShipmentRequest,
    admin_id: int = Depends(get_current_admin),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
):
    logger.info(f"[shipping] Admin {admin_id} creating {request.service_type} shipment for order {order_id}")
    return await orchestrator.create_shipment(order_id, request.to_options())


@router.delete("/orders/{order_id}/shipment", response_model=OrderResponse)
async def cancel_shipment(
    order_id: int,
    admin_id: int = Depends(get_current_admin),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
):
    logger.info(f"[shipping] Admin {admin_id} cancelling shipment for order {order_id}")
    return await orchestrator.cancel_shipment(order_id)


# ==================== Tracking ====================

@router.post("/orders/{order_id}/tracking/refresh", response_model=OrderResponse)
async def refresh_tracking(
    order_id: int,
    admin_id: int = Depends(get_current_admin),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.refresh_tracking(order_id)


@router.get("/track/{tracking_number}")
async def track(tracking_number: str) -> Dict[str, Any]:
    """Public tracking lookup; nothing is persisted."""
    snapshot = await TrackingPoller(get_track_client()).track(tracking_number)
    return asdict(snapshot)


# ==================== Pickups ====================

@router.post("/orders/{order_id}/pickup", response_model=OrderResponse)
async def schedule_pickup(
    order_id: int,
    request: PickupRequest,
    admin_id: int = Depends(get_current_admin),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.schedule_pickup(order_id, request.to_window())


@router.delete("/orders/{order_id}/pickup", response_model=OrderResponse)
async def cancel_pickup(
    order_id: int,
    admin_id: int = Depends(get_current_admin),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.cancel_pickup(order_id)


# ==================== Locations ====================

@router.post("/locations")
async def search_locations(
    request: LocationSearchRequest,
    client: CarrierClient = Depends(get_fedex_client),
) -> List[Dict[str, Any]]:
    return await LocationFinder(client).search(
        request.address.to_input(),
        radius_miles=request.radius_miles,
        max_results=request.max_results,
    )
