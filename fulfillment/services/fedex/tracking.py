"""
FedEx tracking

Polls the Track API (which may use separate credentials) and normalizes the
reply into a TrackingSnapshot with chronologically ordered scan events.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fulfillment.core.exceptions import AuthError, CarrierError, NotFoundError, ValidationError
from fulfillment.services.fedex.client import CarrierClient
from fulfillment.services.fedex.status_mapper import StatusMapper
from fulfillment.services.fedex.types import TrackingEvent, TrackingSnapshot, TrackingStatus

logger = logging.getLogger(__name__)

TRACK_PATH = "/track/v1/trackingnumbers"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 from FedEx; naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable FedEx timestamp: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_location(location: Any) -> Optional[str]:
    if not location:
        return None
    if isinstance(location, str):
        return location
    parts = [
        location.get("city"),
        location.get("stateOrProvinceCode"),
        location.get("postalCode"),
    ]
    country = location.get("countryCode")
    if country and country != "US":
        parts.append(country)
    return ", ".join(p for p in parts if p) or None


class TrackingPoller:
    def __init__(self, client: CarrierClient):
        self.client = client

    async def track(self, tracking_number: str) -> TrackingSnapshot:
        tracking_number = (tracking_number or "").strip()
        if not tracking_number:
            raise ValidationError("Tracking number is required")

        payload = {
            "includeDetailedScans": True,
            "trackingInfo": [{"trackingNumberInfo": {"trackingNumber": tracking_number}}],
        }

        try:
            data = await self.client.request(TRACK_PATH, body=payload)
        except CarrierError as e:
            if e.status == 403 and self._is_forbidden(e.body):
                logger.warning("FedEx Track API permission denied - check track credentials")
                raise AuthError(
                    "Track API not authorized for these credentials",
                    code="TRACK_API_NOT_AUTHORIZED",
                    status=403,
                    body=e.body,
                )
            raise
        except Exception as e:
            logger.error(f"FedEx tracking request failed for {tracking_number}: {e}")
            raise CarrierError(f"Tracking request failed: {e}")

        complete = (data.get("output") or {}).get("completeTrackResults") or []
        results = complete[0].get("trackResults") if complete else None
        if not results:
            raise NotFoundError(f"No tracking information found for {tracking_number}")

        track_result = results[0]
        if track_result.get("error"):
            message = track_result["error"].get("message") or "Tracking number not found"
            raise NotFoundError(f"{message} ({tracking_number})", details={"error": track_result["error"]})

        return self.parse(track_result, tracking_number)

    @staticmethod
    def _is_forbidden(body: Any) -> bool:
        if not isinstance(body, dict):
            return False
        errors = body.get("errors") or []
        return bool(errors) and isinstance(errors[0], dict) and errors[0].get("code") == "FORBIDDEN.ERROR"

    def parse(self, track_result: Dict[str, Any], tracking_number: str) -> TrackingSnapshot:
        latest = track_result.get("latestStatusDetail") or {}
        code = latest.get("code")

        events = []
        for scan in track_result.get("scanEvents") or []:
            timestamp = parse_timestamp(scan.get("date"))
            if timestamp is None:
                continue
            events.append(TrackingEvent(
                timestamp=timestamp,
                status_code=scan.get("derivedStatusCode") or scan.get("eventType"),
                description=scan.get("eventDescription") or StatusMapper.describe(scan.get("eventType")),
                event_type=scan.get("eventType"),
                location=format_location(scan.get("scanLocation")),
                exception_code=scan.get("exceptionCode") or None,
            ))
        events.sort(key=lambda e: e.timestamp)

        window = (track_result.get("estimatedDeliveryTimeWindow") or {}).get("window") or {}
        delivery = track_result.get("actualDeliveryDetail") or {}

        return TrackingSnapshot(
            tracking_number=tracking_number,
            current_status=TrackingStatus(
                code=code,
                description=latest.get("description") or StatusMapper.describe(code),
                location=format_location(latest.get("scanLocation")),
                timestamp=parse_timestamp(latest.get("date")) or (events[-1].timestamp if events else None),
            ),
            events=events,
            estimated_delivery_begins=parse_timestamp(window.get("begins")),
            estimated_delivery_ends=parse_timestamp(window.get("ends")),
            actual_delivery=parse_timestamp(delivery.get("actualDeliveryTimestamp")),
            signed_by=delivery.get("signedByName"),
            delivery_attempts=int(track_result.get("numberOfDeliveryAttempts") or 0),
            has_exception=code == "DE" or any(e.exception_code for e in events),
        )
