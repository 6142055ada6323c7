"""
FedEx scan code -> order status mapping

Total over its input: unknown, empty or None codes map to SHIPPED.
"""
import logging
from typing import Optional

from fulfillment.models.order import OrderStatus

logger = logging.getLogger(__name__)

FEDEX_STATUS_MAP = {
    # Picked up / in transit
    "PU": OrderStatus.SHIPPED,
    "OC": OrderStatus.SHIPPED,
    "IT": OrderStatus.SHIPPED,
    "IX": OrderStatus.SHIPPED,
    "DP": OrderStatus.SHIPPED,
    "AR": OrderStatus.SHIPPED,
    "AD": OrderStatus.SHIPPED,
    "OF": OrderStatus.SHIPPED,
    "FD": OrderStatus.SHIPPED,
    "CC": OrderStatus.SHIPPED,
    "CD": OrderStatus.SHIPPED,
    "ED": OrderStatus.SHIPPED,
    "LO": OrderStatus.SHIPPED,
    "TR": OrderStatus.SHIPPED,
    "PL": OrderStatus.SHIPPED,
    "PX": OrderStatus.SHIPPED,
    "AF": OrderStatus.SHIPPED,
    "CP": OrderStatus.SHIPPED,
    # Exceptions still in the carrier's hands
    "DE": OrderStatus.SHIPPED,
    "HL": OrderStatus.SHIPPED,
    "SE": OrderStatus.SHIPPED,
    # Out for delivery
    "OD": OrderStatus.OUT_FOR_DELIVERY,
    # Delivered
    "DL": OrderStatus.DELIVERED,
    # Terminal
    "CA": OrderStatus.CANCELLED,
    "RS": OrderStatus.RETURNED,
}

DEFAULT_STATUS = OrderStatus.SHIPPED

STATUS_DESCRIPTIONS = {
    "PU": "Package picked up",
    "OC": "Shipment information sent to FedEx",
    "IT": "In transit",
    "IX": "In transit - potential delay",
    "DP": "Departed FedEx location",
    "AR": "Arrived at FedEx location",
    "AD": "At local FedEx facility",
    "OF": "At FedEx origin facility",
    "FD": "At FedEx destination facility",
    "OD": "On FedEx vehicle for delivery",
    "DL": "Delivered",
    "DE": "Delivery exception",
    "CA": "Shipment cancelled",
    "RS": "Returning to shipper",
    "HL": "Held at FedEx location",
    "SE": "Shipment exception",
    "CC": "Customs clearance",
    "CD": "Clearance delay",
    "ED": "Enroute to delivery",
    "LO": "Left origin",
    "TR": "Transfer",
    "PL": "Plane landed",
    "PX": "Picked up",
    "AF": "At FedEx facility",
    "CP": "Clearance in progress",
}


class StatusMapper:
    @staticmethod
    def map(carrier_code: Optional[str]) -> OrderStatus:
        code = (carrier_code or "").strip().upper() if isinstance(carrier_code, str) else ""
        status = FEDEX_STATUS_MAP.get(code)
        if status is None:
            if code:
                logger.warning(f"Unknown FedEx status code: {carrier_code}, defaulting to {DEFAULT_STATUS.value}")
            return DEFAULT_STATUS
        return status

    @staticmethod
    def describe(carrier_code: Optional[str]) -> str:
        code = (carrier_code or "").strip().upper() if isinstance(carrier_code, str) else ""
        return STATUS_DESCRIPTIONS.get(code, "Status update")
