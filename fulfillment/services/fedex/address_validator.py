"""
FedEx address validation

Advisory only: checkout must not block on the carrier, so every failure is
returned as a result with requires_manual_verification=True instead of raised.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from fulfillment.core.exceptions import CarrierError
from fulfillment.services.fedex.client import CarrierClient
from fulfillment.services.fedex.types import (
    AddressClassification,
    AddressInput,
    AddressValidationResult,
)

logger = logging.getLogger(__name__)

ADDRESS_RESOLVE_PATH = "/address/v1/addresses/resolve"

ZIP_CODE_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")

# Customer message codes that make an address invalid whatever the resolved state says
INVALIDATING_MESSAGE_CODES = {
    "UNABLE.TO.MATCH",
    "INVALID.STATE.CODE",
    "INVALID.POSTAL.CODE",
    "MISSING.APARTMENT.NUMBER",
}

INVALID_RESOLVED_STATES = {"INVALID", "UNABLE_TO_MATCH"}


def _manual(error: str, messages: Optional[List[str]] = None) -> AddressValidationResult:
    return AddressValidationResult(
        success=False,
        is_valid=False,
        error=error,
        messages=messages or [],
        requires_manual_verification=True,
    )


def classify(attributes: Dict[str, Any]) -> str:
    if str(attributes.get("Residential", "")).lower() == "true":
        return AddressClassification.RESIDENTIAL
    if str(attributes.get("Business", "")).lower() == "true":
        return AddressClassification.BUSINESS
    return AddressClassification.UNKNOWN


class AddressValidator:
    def __init__(self, client: CarrierClient):
        self.client = client

    def precheck(self, address: AddressInput) -> Optional[AddressValidationResult]:
        """Local checks that do not need the carrier; returns None when they pass."""
        if not address.street_lines:
            return _manual("Street address is required")
        if not (address.city or "").strip() or not (address.state or "").strip() or not (address.postal_code or "").strip():
            return _manual("City, state, and ZIP code are required")
        if not ZIP_CODE_PATTERN.match(address.postal_code.strip()):
            return _manual("Invalid ZIP code format")
        return None

    async def validate(self, address: AddressInput) -> AddressValidationResult:
        failed = self.precheck(address)
        if failed is not None:
            return failed

        request_address = AddressInput(
            street=address.street,
            street2=address.street2,
            city=address.city.strip(),
            state=address.state.strip().upper(),
            postal_code=address.postal_code.strip(),
            country_code=address.country_code or "US",
        )
        payload = {"addressesToValidate": [{"address": request_address.to_fedex_format()}]}

        try:
            data = await self.client.request(ADDRESS_RESOLVE_PATH, body=payload)
        except CarrierError as e:
            logger.error(f"FedEx address validation failed: {e.message}")
            return _manual(e.message or "Address validation service unavailable")
        except Exception as e:
            logger.error(f"FedEx address validation error: {e}")
            return _manual("Address validation service unavailable")

        resolved_list = (data.get("output") or {}).get("resolvedAddresses") or []
        if not resolved_list:
            return AddressValidationResult(
                success=True,
                is_valid=False,
                error="No matching addresses found",
                messages=["Address could not be validated by FedEx"],
                requires_manual_verification=True,
            )

        return self._parse_resolved(resolved_list[0], request_address)

    def _parse_resolved(self, resolved: Dict[str, Any], original: AddressInput) -> AddressValidationResult:
        customer_messages = resolved.get("customerMessages") or []
        codes = {m.get("code") for m in customer_messages if isinstance(m, dict)}
        is_valid = not (codes & INVALIDATING_MESSAGE_CODES) and resolved.get("state") not in INVALID_RESOLVED_STATES

        normalized = None
        effective = resolved.get("effectiveAddress")
        if effective:
            lines = effective.get("streetLines") or original.street_lines
            normalized = AddressInput(
                street=lines[0] if lines else original.street,
                street2=lines[1] if len(lines) > 1 else None,
                city=effective.get("city") or original.city,
                state=effective.get("stateOrProvinceCode") or original.state,
                postal_code=effective.get("postalCode") or original.postal_code,
                country_code=effective.get("countryCode") or original.country_code,
            )

        return AddressValidationResult(
            success=True,
            is_valid=is_valid,
            classification=classify(resolved.get("attributes") or {}),
            normalized_address=normalized,
            messages=[m.get("message") or m.get("code") for m in customer_messages if isinstance(m, dict)],
            requires_manual_verification=not is_valid,
        )
