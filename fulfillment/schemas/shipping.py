"""
Shipping schemas
"""
import re
from decimal import Decimal
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator

from fulfillment.services.fedex.types import AddressInput, Package, PickupWindow, ShipmentOptions


class AddressRequest(BaseModel):
    street: str = ""
    street2: Optional[str] = None
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country_code: str = "US"

    def to_input(self) -> AddressInput:
        return AddressInput(
            street=self.street,
            street2=self.street2,
            city=self.city,
            state=self.state,
            postal_code=self.postal_code,
            country_code=self.country_code,
        )


class AddressValidationResponse(BaseModel):
    success: bool
    is_valid: bool
    classification: str
    normalized_address: Optional[Dict[str, Any]] = None
    messages: List[str] = []
    requires_manual_verification: bool
    error: Optional[str] = None


class PackageRequest(BaseModel):
    weight: float = Field(5.0, gt=0)
    length: float = Field(12.0, gt=0)
    width: float = Field(12.0, gt=0)
    height: float = Field(6.0, gt=0)

    def to_package(self) -> Package:
        return Package(weight=self.weight, length=self.length, width=self.width, height=self.height)


class RateRequest(BaseModel):
    destination: AddressRequest
    packages: List[PackageRequest] = Field(default_factory=lambda: [PackageRequest()])
    currency: str = "USD"
    insured_value: Optional[Decimal] = None
    residential: bool = True


class RateResponse(BaseModel):
    service_type: str
    service_name: str
    price: Decimal
    currency: str
    transit_days: Optional[int] = None
    delivery_date: Optional[str] = None
    is_estimated: bool = False


class ShipmentRequest(BaseModel):
    service_type: str = "STANDARD_OVERNIGHT"
    weight: Optional[float] = Field(None, gt=0, description="Package weight in kg")
    insured_value: Optional[Decimal] = None
    signature_required: bool = False

    def to_options(self) -> ShipmentOptions:
        return ShipmentOptions(
            service_type=self.service_type,
            weight=self.weight,
            insured_value=self.insured_value,
            signature_required=self.signature_required,
        )


class PickupRequest(BaseModel):
    date: str
    ready_time: str = "09:00"
    close_time: str = "17:00"
    package_count: int = Field(1, ge=1)
    total_weight: Optional[float] = Field(None, gt=0)
    location: str = "FRONT"

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str) -> str:
        if not re.match(r"^\d{4}-\d{2}-\d{2}$", v):
            raise ValueError("date must be YYYY-MM-DD")
        return v

    @field_validator("ready_time", "close_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        if not re.match(r"^\d{2}:\d{2}$", v):
            raise ValueError("time must be HH:MM")
        return v

    def to_window(self) -> PickupWindow:
        return PickupWindow(
            date=self.date,
            ready_time=self.ready_time,
            close_time=self.close_time,
            package_count=self.package_count,
            total_weight=self.total_weight,
            location=self.location,
        )


class LocationSearchRequest(BaseModel):
    address: AddressRequest
    radius_miles: int = Field(25, ge=1, le=100)
    max_results: int = Field(10, ge=1, le=50)
