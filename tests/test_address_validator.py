"""
Tests for FedEx address validation.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from fulfillment.core.exceptions import CarrierError, CarrierTimeoutError
from fulfillment.services.fedex.address_validator import AddressValidator
from fulfillment.services.fedex.types import AddressClassification, AddressInput


def resolved_reply(**resolved):
    base = {
        "streetLinesToken": ["742 EVERGREEN TER"],
        "state": "STANDARDIZED",
        "attributes": {"Residential": "true", "Business": "false"},
        "customerMessages": [],
        "effectiveAddress": {
            "streetLines": ["742 EVERGREEN TER", "APT 2"],
            "city": "SPRINGFIELD",
            "stateOrProvinceCode": "IL",
            "postalCode": "62704-1234",
            "countryCode": "US",
        },
    }
    base.update(resolved)
    return {"output": {"resolvedAddresses": [base]}}


@pytest.fixture
def carrier():
    client = MagicMock()
    client.request = AsyncMock()
    return client


@pytest.fixture
def address(sample_address_data):
    return AddressInput(**sample_address_data)


class TestPrechecks:

    @pytest.mark.asyncio
    async def test_missing_street_needs_manual_verification(self, carrier, address):
        address.street = " "
        address.street2 = None

        result = await AddressValidator(carrier).validate(address)

        assert result.success is False
        assert result.requires_manual_verification is True
        assert result.error == "Street address is required"
        carrier.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_city_state_zip(self, carrier, address):
        address.city = ""

        result = await AddressValidator(carrier).validate(address)

        assert result.success is False
        assert "required" in result.error
        carrier.request.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("zip_code", ["6270", "627041", "62704-12", "ABCDE"])
    async def test_malformed_zip(self, carrier, address, zip_code):
        address.postal_code = zip_code

        result = await AddressValidator(carrier).validate(address)

        assert result.error == "Invalid ZIP code format"
        carrier.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_zip_plus_four_is_accepted(self, carrier, address):
        address.postal_code = "62704-1234"
        carrier.request.return_value = resolved_reply()

        result = await AddressValidator(carrier).validate(address)

        assert result.success is True


class TestCarrierResolution:

    @pytest.mark.asyncio
    async def test_standardized_residential_address(self, carrier, address):
        carrier.request.return_value = resolved_reply()

        result = await AddressValidator(carrier).validate(address)

        assert result.success is True
        assert result.is_valid is True
        assert result.classification == AddressClassification.RESIDENTIAL
        assert result.requires_manual_verification is False
        assert result.normalized_address.street == "742 EVERGREEN TER"
        assert result.normalized_address.street2 == "APT 2"
        assert result.normalized_address.postal_code == "62704-1234"

    @pytest.mark.asyncio
    async def test_payload_includes_second_line_only_when_present(self, carrier, address):
        carrier.request.return_value = resolved_reply()
        validator = AddressValidator(carrier)

        await validator.validate(address)
        lines = carrier.request.call_args.kwargs["body"]["addressesToValidate"][0]["address"]["streetLines"]
        assert lines == ["742 Evergreen Terrace", "Apt 2"]

        address.street2 = "  "
        await validator.validate(address)
        lines = carrier.request.call_args.kwargs["body"]["addressesToValidate"][0]["address"]["streetLines"]
        assert lines == ["742 Evergreen Terrace"]

    @pytest.mark.asyncio
    async def test_business_classification(self, carrier, address):
        carrier.request.return_value = resolved_reply(attributes={"Residential": "false", "Business": "true"})

        result = await AddressValidator(carrier).validate(address)

        assert result.classification == AddressClassification.BUSINESS

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [
        "UNABLE.TO.MATCH",
        "INVALID.STATE.CODE",
        "INVALID.POSTAL.CODE",
        "MISSING.APARTMENT.NUMBER",
    ])
    async def test_invalidating_message_codes(self, carrier, address, code):
        carrier.request.return_value = resolved_reply(
            customerMessages=[{"code": code, "message": "Address problem"}]
        )

        result = await AddressValidator(carrier).validate(address)

        assert result.success is True
        assert result.is_valid is False
        assert result.requires_manual_verification is True
        assert result.messages == ["Address problem"]

    @pytest.mark.asyncio
    async def test_unable_to_match_state(self, carrier, address):
        carrier.request.return_value = resolved_reply(state="UNABLE_TO_MATCH", attributes={})

        result = await AddressValidator(carrier).validate(address)

        assert result.is_valid is False
        assert result.classification == AddressClassification.UNKNOWN

    @pytest.mark.asyncio
    async def test_no_resolved_addresses(self, carrier, address):
        carrier.request.return_value = {"output": {"resolvedAddresses": []}}

        result = await AddressValidator(carrier).validate(address)

        assert result.is_valid is False
        assert result.requires_manual_verification is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        CarrierError("FedEx API error 503", status=503),
        CarrierTimeoutError("timed out"),
        RuntimeError("connection reset"),
    ])
    async def test_carrier_failures_fail_soft(self, carrier, address, error):
        carrier.request.side_effect = error

        result = await AddressValidator(carrier).validate(address)

        assert result.success is False
        assert result.is_valid is False
        assert result.requires_manual_verification is True
