"""
FedEx shipment creation and cancellation

Builds a label request from an order snapshot. Status and duplicate checks are
the orchestrator's job and happen before this module is called.
"""
import logging
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from fulfillment.core.config import settings
from fulfillment.core.exceptions import CarrierError, ValidationError
from fulfillment.services.fedex.client import CarrierClient
from fulfillment.services.fedex.rate_quoter import select_origin
from fulfillment.services.fedex.types import AddressInput, ShipmentOptions, ShipmentResult

logger = logging.getLogger(__name__)

SHIP_PATH = "/ship/v1/shipments"
CANCEL_SHIPMENT_PATH = "/ship/v1/shipments/cancel"

# Item weight heuristic by medium keyword, kg per unit
LARGE_ITEM_WEIGHT_KG = 10
MEDIUM_ITEM_WEIGHT_KG = 5
SMALL_ITEM_WEIGHT_KG = 2
MIN_PACKAGE_WEIGHT_KG = 1

PACKAGE_DIMENSIONS = {"length": 60, "width": 60, "height": 10, "units": "CM"}

CENTS = Decimal("0.01")


def estimate_item_weight(medium: Optional[str]) -> int:
    medium = (medium or "").lower()
    if "large" in medium:
        return LARGE_ITEM_WEIGHT_KG
    if "medium" in medium:
        return MEDIUM_ITEM_WEIGHT_KG
    return SMALL_ITEM_WEIGHT_KG


def estimate_package_weight(items: Iterable[Any]) -> int:
    """Sum of per-item weight times quantity, floored at 1 kg."""
    total = sum(estimate_item_weight(item.medium) * item.quantity for item in items)
    return max(total, MIN_PACKAGE_WEIGHT_KG)


def clean_phone(phone: Optional[str]) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        raise ValidationError("Valid 10-digit phone number is required", details={"phone": phone})
    return digits


class ShipmentCreator:
    def __init__(self, client: CarrierClient):
        self.client = client

    def build_payload(self, order, options: ShipmentOptions) -> Dict[str, Any]:
        address = AddressInput.from_dict(order.shipping_address or {})
        if not address.street_lines:
            raise ValidationError("Recipient street address is required")
        phone = clean_phone(address.phone)

        origin = select_origin(address.state)
        weight = options.weight if options.weight is not None else estimate_package_weight(order.items)
        weight = max(weight, MIN_PACKAGE_WEIGHT_KG)
        insured = options.insured_value if options.insured_value is not None else order.total_amount
        insured = Decimal(str(insured)).quantize(CENTS, rounding=ROUND_HALF_UP)

        recipient_address = address.to_fedex_format()
        recipient_address["stateOrProvinceCode"] = address.state.strip().upper()
        recipient_address["city"] = address.city.strip()[:35]
        recipient_address["residential"] = True

        shipper_address = origin.to_address().to_fedex_format()
        shipper_address["residential"] = False

        package = {
            "sequenceNumber": 1,
            "weight": {"value": weight, "units": "KG"},
            "dimensions": dict(PACKAGE_DIMENSIONS),
            "customerReferences": [{
                "customerReferenceType": "INVOICE_NUMBER",
                "value": order.order_number[:30],
            }],
        }
        if insured > 0:
            package["declaredValue"] = {"amount": float(insured), "currency": options.currency}

        payload = {
            "labelResponseOptions": "URL_ONLY",
            "accountNumber": {"value": self.client.account_number},
            "requestedShipment": {
                "shipper": {
                    "contact": {
                        "personName": settings.SHIPPER_CONTACT_NAME,
                        "phoneNumber": settings.SHIPPER_PHONE,
                        "companyName": settings.SHIPPER_COMPANY,
                    },
                    "address": shipper_address,
                },
                "recipients": [{
                    "contact": {
                        "personName": (address.name or "Customer")[:35],
                        "phoneNumber": phone,
                        "emailAddress": address.email,
                    },
                    "address": recipient_address,
                }],
                "pickupType": "USE_SCHEDULED_PICKUP",
                "serviceType": options.service_type,
                "packagingType": "YOUR_PACKAGING",
                "shippingChargesPayment": {
                    "paymentType": "SENDER",
                    "payor": {"responsibleParty": {"accountNumber": {"value": self.client.account_number}}},
                },
                "labelSpecification": {
                    "labelFormatType": "COMMON2D",
                    "imageType": "PDF",
                    "labelStockType": "PAPER_85X11_TOP_HALF_LABEL",
                },
                "requestedPackageLineItems": [package],
            },
        }

        if options.signature_required:
            payload["requestedShipment"]["shipmentSpecialServices"] = {
                "specialServiceTypes": ["SIGNATURE_OPTION"],
                "signatureOptionType": "DIRECT",
            }
        return payload

    async def create(self, order, options: Optional[ShipmentOptions] = None) -> ShipmentResult:
        options = options or ShipmentOptions()
        payload = self.build_payload(order, options)
        package = payload["requestedShipment"]["requestedPackageLineItems"][0]

        try:
            data = await self.client.request(SHIP_PATH, body=payload)
        except CarrierError:
            raise
        except Exception as e:
            logger.error(f"FedEx create shipment failed for {order.order_number}: {e}")
            raise CarrierError(f"Shipment creation failed: {e}")

        shipments = (data.get("output") or {}).get("transactionShipments") or []
        if not shipments or not shipments[0].get("masterTrackingNumber"):
            raise CarrierError("Failed to create shipment - no tracking number from FedEx", body=data.get("output"))

        shipment = shipments[0]
        completed = shipment.get("completedShipmentDetail") or {}
        package_details = (completed.get("completedPackageDetails") or [{}])[0]
        rating = ((completed.get("shipmentRating") or {}).get("shipmentRateDetails") or [{}])[0]
        charge = rating.get("totalNetCharge")
        if isinstance(charge, dict):
            charge = charge.get("amount")

        result = ShipmentResult(
            tracking_number=shipment["masterTrackingNumber"],
            label_url=(package_details.get("label") or {}).get("url"),
            shipment_id=shipment.get("jobId"),
            total_charge=Decimal(str(charge)) if charge not in (None, "") else None,
            currency=rating.get("currency") or options.currency,
            delivery_date=(completed.get("operationalDetail") or {}).get("deliveryDate"),
            weight=package["weight"],
            dimensions=package["dimensions"],
            insured_value=Decimal(str(package.get("declaredValue", {}).get("amount", 0))),
            service_type=options.service_type,
        )
        logger.info(f"FedEx shipment created for {order.order_number}: {result.tracking_number}")
        return result

    async def cancel(self, tracking_number: str) -> bool:
        payload = {
            "accountNumber": {"value": self.client.account_number},
            "trackingNumber": tracking_number,
            "deletionControl": "DELETE_ALL_PACKAGES",
        }
        try:
            data = await self.client.request(CANCEL_SHIPMENT_PATH, method="PUT", body=payload)
        except CarrierError:
            raise
        except Exception as e:
            logger.error(f"FedEx cancel shipment failed for {tracking_number}: {e}")
            raise CarrierError(f"Shipment cancellation failed: {e}")

        cancelled = bool((data.get("output") or {}).get("cancelledShipment", True))
        logger.info(f"FedEx shipment {tracking_number} cancelled: {cancelled}")
        return cancelled
