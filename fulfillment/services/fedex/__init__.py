"""
FedEx Carrier Integration

Components:
- auth: OAuth token cache with single-flight refresh
- client: authenticated request executor (401 refresh, 429 backoff, timeouts)
- address_validator: advisory address resolution
- rate_quoter: rate shopping with warehouse origin selection
- shipment_creator: label creation and cancellation
- tracking / status_mapper: scan polling and status normalization
- pickup: pickup scheduling
- locations: drop-off location search
"""
from fulfillment.services.fedex.auth import CarrierAuthCache, CarrierToken
from fulfillment.services.fedex.client import (
    CarrierClient,
    get_carrier_client,
    get_track_client,
    close_carrier_clients,
)
from fulfillment.services.fedex.address_validator import AddressValidator
from fulfillment.services.fedex.rate_quoter import RateQuoter, select_origin, service_for_method
from fulfillment.services.fedex.shipment_creator import ShipmentCreator, estimate_package_weight
from fulfillment.services.fedex.status_mapper import StatusMapper
from fulfillment.services.fedex.tracking import TrackingPoller
from fulfillment.services.fedex.pickup import PickupScheduler
from fulfillment.services.fedex.locations import LocationFinder
from fulfillment.services.fedex.types import (
    AddressClassification,
    AddressInput,
    AddressValidationResult,
    Package,
    PickupWindow,
    Rate,
    ShipmentOptions,
    ShipmentResult,
    TrackingEvent,
    TrackingSnapshot,
    TrackingStatus,
    Warehouse,
)

__all__ = [
    "CarrierAuthCache",
    "CarrierToken",
    "CarrierClient",
    "get_carrier_client",
    "get_track_client",
    "close_carrier_clients",
    "AddressValidator",
    "RateQuoter",
    "select_origin",
    "service_for_method",
    "ShipmentCreator",
    "estimate_package_weight",
    "StatusMapper",
    "TrackingPoller",
    "PickupScheduler",
    "LocationFinder",
    "AddressClassification",
    "AddressInput",
    "AddressValidationResult",
    "Package",
    "PickupWindow",
    "Rate",
    "ShipmentOptions",
    "ShipmentResult",
    "TrackingEvent",
    "TrackingSnapshot",
    "TrackingStatus",
    "Warehouse",
]
