"""
FedEx drop-off location search
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from fulfillment.core.exceptions import CarrierError, ValidationError
from fulfillment.services.fedex.client import CarrierClient
from fulfillment.services.fedex.types import AddressInput

logger = logging.getLogger(__name__)

LOCATIONS_PATH = "/location/v1/locations"
DEFAULT_LOCATION_TYPES = ("FEDEX_OFFICE", "FEDEX_SHIP_CENTER")


class LocationFinder:
    def __init__(self, client: CarrierClient):
        self.client = client

    async def search(
        self,
        address: AddressInput,
        radius_miles: int = 25,
        max_results: int = 10,
        location_types: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        if not address.postal_code:
            raise ValidationError("ZIP code is required")

        payload = {
            "locationsSummaryRequestControlParameters": {
                "maxResults": max_results,
                "distance": {"value": radius_miles, "units": "MI"},
            },
            "locationSearchCriterion": "ADDRESS",
            "location": {
                "address": {
                    "city": (address.city or "").strip(),
                    "stateOrProvinceCode": (address.state or "").strip().upper(),
                    "postalCode": address.postal_code.strip(),
                    "countryCode": address.country_code or "US",
                }
            },
            "locationTypes": list(location_types or DEFAULT_LOCATION_TYPES),
        }

        try:
            data = await self.client.request(LOCATIONS_PATH, body=payload)
        except CarrierError:
            raise
        except Exception as e:
            logger.error(f"FedEx location search failed near {address.postal_code}: {e}")
            raise CarrierError(f"Location search failed: {e}")

        locations = []
        for loc in (data.get("output") or {}).get("locationDetailList") or []:
            contact_address = (loc.get("locationContactAndAddress") or {}).get("address") or {}
            distance = loc.get("distance") or {}
            locations.append({
                "location_id": loc.get("locationId"),
                "location_type": loc.get("locationType"),
                "name": loc.get("locationName") or loc.get("locationType"),
                "address": {
                    "street_lines": contact_address.get("streetLines") or [],
                    "city": contact_address.get("city"),
                    "state": contact_address.get("stateOrProvinceCode"),
                    "postal_code": contact_address.get("postalCode"),
                },
                "distance": {"value": distance.get("value"), "units": distance.get("units")} if distance else None,
                "hours": loc.get("normalHours") or loc.get("storeHours"),
            })
        return locations
