"""
FedEx pickup scheduling

Pickups are requested at the warehouse that shipped the order. Guard checks
(tracking number present, no existing confirmation) live in the orchestrator.
"""
import logging
from typing import Any, Dict

from fulfillment.core.config import settings
from fulfillment.core.exceptions import CarrierError
from fulfillment.services.fedex.client import CarrierClient
from fulfillment.services.fedex.rate_quoter import select_origin
from fulfillment.services.fedex.types import PickupWindow

logger = logging.getLogger(__name__)

PICKUP_PATH = "/pickup/v1/pickups"
CANCEL_PICKUP_PATH = "/pickup/v1/pickups/cancel"
KG_TO_LB = 2.20462


def _order_weight_lb(order) -> float:
    weight = order.package_weight or {}
    value = float(weight.get("value") or 5)
    if (weight.get("units") or "LB").upper() == "KG":
        value = round(value * KG_TO_LB, 1)
    return value


class PickupScheduler:
    def __init__(self, client: CarrierClient):
        self.client = client

    def build_payload(self, order, window: PickupWindow) -> Dict[str, Any]:
        state = (order.shipping_address or {}).get("state")
        origin_address = select_origin(state).to_address().to_fedex_format()

        return {
            "associatedAccountNumber": {"value": self.client.account_number},
            "originDetail": {
                "pickupLocation": {
                    "contact": {
                        "personName": settings.SHIPPER_CONTACT_NAME,
                        "phoneNumber": settings.SHIPPER_PHONE,
                        "companyName": settings.SHIPPER_COMPANY,
                    },
                    "address": origin_address,
                },
                "readyDateTimestamp": f"{window.date}T{window.ready_time}:00",
                "customerCloseTime": f"{window.close_time}:00",
                "pickupDateType": "SAME_DAY",
                "packageLocation": window.location,
            },
            "packageDetails": {
                "packageCount": window.package_count,
                "totalWeight": {
                    "units": "LB",
                    "value": window.total_weight if window.total_weight is not None else _order_weight_lb(order),
                },
            },
            "carrierCode": "FDXG",
            "accountAddressOfRecord": origin_address,
        }

    async def schedule(self, order, window: PickupWindow) -> str:
        """Request a pickup; returns the carrier confirmation code."""
        payload = self.build_payload(order, window)
        try:
            data = await self.client.request(PICKUP_PATH, body=payload)
        except CarrierError:
            raise
        except Exception as e:
            logger.error(f"FedEx pickup request failed for {order.order_number}: {e}")
            raise CarrierError(f"Pickup scheduling failed: {e}")

        confirmation = (data.get("output") or {}).get("pickupConfirmationCode")
        if not confirmation:
            raise CarrierError("Failed to schedule pickup - no confirmation code", body=data.get("output"))

        logger.info(f"FedEx pickup scheduled for {order.order_number} on {window.date}: {confirmation}")
        return confirmation

    async def cancel(self, order) -> bool:
        state = (order.shipping_address or {}).get("state")
        payload = {
            "associatedAccountNumber": {"value": self.client.account_number},
            "pickupConfirmationCode": order.pickup_confirmation,
            "scheduledDate": order.pickup_date,
            "location": order.pickup_location,
            "carrierCode": "FDXG",
            "accountAddressOfRecord": select_origin(state).to_address().to_fedex_format(),
        }
        try:
            await self.client.request(CANCEL_PICKUP_PATH, method="PUT", body=payload)
        except CarrierError:
            raise
        except Exception as e:
            logger.error(f"FedEx pickup cancel failed for {order.order_number}: {e}")
            raise CarrierError(f"Pickup cancellation failed: {e}")

        logger.info(f"FedEx pickup {order.pickup_confirmation} cancelled for {order.order_number}")
        return True
