"""
FedEx data classes

Inputs and normalized results passed between the carrier operations and the
order services. Money is Decimal; weights are pounds unless `weight_units` says otherwise.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


class AddressClassification:
    RESIDENTIAL = "RESIDENTIAL"
    BUSINESS = "BUSINESS"
    UNKNOWN = "UNKNOWN"


@dataclass
class AddressInput:
    """Address as entered by a customer or stored on an order."""
    street: str
    city: str
    state: str
    postal_code: str
    country_code: str = "US"
    street2: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @property
    def street_lines(self) -> List[str]:
        lines = [self.street.strip()] if self.street and self.street.strip() else []
        if self.street2 and self.street2.strip():
            lines.append(self.street2.strip())
        return lines

    def to_fedex_format(self) -> Dict[str, Any]:
        return {
            "streetLines": self.street_lines,
            "city": self.city,
            "stateOrProvinceCode": self.state,
            "postalCode": self.postal_code,
            "countryCode": self.country_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AddressInput":
        """Build from an order's shipping_address snapshot."""
        return cls(
            street=data.get("street") or "",
            street2=data.get("street2"),
            city=data.get("city") or "",
            state=data.get("state") or "",
            postal_code=data.get("postal_code") or data.get("zip_code") or "",
            country_code=data.get("country_code") or "US",
            name=data.get("name"),
            phone=data.get("phone"),
            email=data.get("email"),
        )


@dataclass
class AddressValidationResult:
    success: bool
    is_valid: bool = False
    classification: str = AddressClassification.UNKNOWN
    normalized_address: Optional[AddressInput] = None
    messages: List[str] = field(default_factory=list)
    requires_manual_verification: bool = False
    error: Optional[str] = None


@dataclass
class Package:
    weight: float = 5.0
    length: float = 12.0
    width: float = 12.0
    height: float = 6.0
    weight_units: str = "LB"
    dimension_units: str = "IN"


@dataclass
class Warehouse:
    name: str
    street: str
    city: str
    state: str
    postal_code: str
    country_code: str = "US"

    def to_address(self) -> AddressInput:
        return AddressInput(
            street=self.street,
            city=self.city,
            state=self.state,
            postal_code=self.postal_code,
            country_code=self.country_code,
            name=self.name,
        )


@dataclass
class Rate:
    service_type: str
    service_name: str
    price: Decimal
    currency: str = "USD"
    transit_days: Optional[int] = None
    delivery_date: Optional[str] = None
    is_estimated: bool = False


@dataclass
class ShipmentOptions:
    service_type: str = "STANDARD_OVERNIGHT"
    weight: Optional[float] = None           # kg; estimated from items when omitted
    insured_value: Optional[Decimal] = None  # defaults to the order total
    signature_required: bool = False
    currency: str = "USD"


@dataclass
class ShipmentResult:
    tracking_number: str
    label_url: Optional[str]
    shipment_id: Optional[str]
    total_charge: Optional[Decimal] = None
    currency: str = "USD"
    delivery_date: Optional[str] = None
    weight: Optional[Dict[str, Any]] = None
    dimensions: Optional[Dict[str, Any]] = None
    insured_value: Optional[Decimal] = None
    service_type: Optional[str] = None


@dataclass
class TrackingEvent:
    timestamp: datetime
    status_code: Optional[str]
    description: str
    event_type: Optional[str] = None
    location: Optional[str] = None
    exception_code: Optional[str] = None

    def to_history_entry(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "status_code": self.status_code,
            "description": self.description,
            "event_type": self.event_type,
            "location": self.location,
        }


@dataclass
class TrackingStatus:
    code: Optional[str]
    description: str
    location: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass
class TrackingSnapshot:
    tracking_number: str
    current_status: TrackingStatus
    events: List[TrackingEvent] = field(default_factory=list)
    estimated_delivery_begins: Optional[datetime] = None
    estimated_delivery_ends: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    signed_by: Optional[str] = None
    delivery_attempts: int = 0
    has_exception: bool = False


@dataclass
class PickupWindow:
    date: str                   # YYYY-MM-DD
    ready_time: str = "09:00"
    close_time: str = "17:00"
    package_count: int = 1
    total_weight: Optional[float] = None  # lb
    location: str = "FRONT"
