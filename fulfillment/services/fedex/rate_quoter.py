"""
FedEx rate shopping

The origin is never caller-supplied: the destination state picks the
warehouse. The rate reply comes in several shapes, so the price is pulled by an
ordered list of extractors. When the carrier returns zero for every service
(a known sandbox degeneracy) a static estimate table is used instead.
"""
import logging
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Sequence

from fulfillment.core.config import settings
from fulfillment.core.exceptions import CarrierError, ValidationError
from fulfillment.services.fedex.client import CarrierClient
from fulfillment.services.fedex.types import AddressInput, Package, Rate, Warehouse

logger = logging.getLogger(__name__)

RATE_QUOTE_PATH = "/rate/v1/rates/quotes"

CENTS = Decimal("0.01")
ZERO = Decimal("0")

WEST_STATES = frozenset({
    "WA", "OR", "CA", "NV", "AZ", "UT", "ID", "MT", "WY", "CO", "NM", "AK", "HI",
})

MAX_PACKAGE_WEIGHT = 150
SPLIT_PACKAGE_WEIGHT = 50
MAX_DIMENSION = 119
MAX_HEIGHT = 70

ACCOUNT_RATE_TYPES = ("ACCOUNT", "PAYOR_ACCOUNT_PACKAGE", "PAYOR_ACCOUNT_SHIPMENT")
LIST_RATE_TYPES = ("LIST", "PAYOR_LIST_PACKAGE", "PAYOR_LIST_SHIPMENT")

SERVICE_NAMES = {
    "FEDEX_GROUND": "FedEx Ground",
    "GROUND_HOME_DELIVERY": "FedEx Home Delivery",
    "FEDEX_HOME_DELIVERY": "FedEx Home Delivery",
    "FEDEX_EXPRESS_SAVER": "FedEx Express Saver",
    "FEDEX_2_DAY": "FedEx 2Day",
    "FEDEX_2_DAY_AM": "FedEx 2Day A.M.",
    "STANDARD_OVERNIGHT": "FedEx Standard Overnight",
    "PRIORITY_OVERNIGHT": "FedEx Priority Overnight",
    "FIRST_OVERNIGHT": "FedEx First Overnight",
    "SMART_POST": "FedEx SmartPost",
}

SHIPPING_METHOD_TO_SERVICE = {
    "ground": "FEDEX_GROUND",
    "home_delivery": "GROUND_HOME_DELIVERY",
    "express_saver": "FEDEX_EXPRESS_SAVER",
    "2_day": "FEDEX_2_DAY",
    "2_day_am": "FEDEX_2_DAY_AM",
    "overnight": "STANDARD_OVERNIGHT",
    "priority_overnight": "PRIORITY_OVERNIGHT",
    "first_overnight": "FIRST_OVERNIGHT",
}

ESTIMATED_PRICES = {
    "FIRST_OVERNIGHT": Decimal("75.00"),
    "PRIORITY_OVERNIGHT": Decimal("55.00"),
    "STANDARD_OVERNIGHT": Decimal("45.00"),
    "FEDEX_2_DAY_AM": Decimal("35.00"),
    "FEDEX_2_DAY": Decimal("28.00"),
    "FEDEX_EXPRESS_SAVER": Decimal("22.00"),
    "GROUND_HOME_DELIVERY": Decimal("15.00"),
    "FEDEX_HOME_DELIVERY": Decimal("15.00"),
    "FEDEX_GROUND": Decimal("12.00"),
}
DEFAULT_ESTIMATED_PRICE = Decimal("25.00")

TRANSIT_DAYS = {
    "ONE_DAY": 1, "TWO_DAYS": 2, "THREE_DAYS": 3, "FOUR_DAYS": 4, "FIVE_DAYS": 5,
    "SIX_DAYS": 6, "SEVEN_DAYS": 7, "EIGHT_DAYS": 8, "NINE_DAYS": 9, "TEN_DAYS": 10,
}


# ==================== Origin ====================

def primary_warehouse() -> Warehouse:
    return Warehouse(
        name=settings.PRIMARY_WAREHOUSE_NAME,
        street=settings.PRIMARY_WAREHOUSE_STREET,
        city=settings.PRIMARY_WAREHOUSE_CITY,
        state=settings.PRIMARY_WAREHOUSE_STATE,
        postal_code=settings.PRIMARY_WAREHOUSE_ZIP,
    )


def west_warehouse() -> Warehouse:
    return Warehouse(
        name=settings.WEST_WAREHOUSE_NAME,
        street=settings.WEST_WAREHOUSE_STREET,
        city=settings.WEST_WAREHOUSE_CITY,
        state=settings.WEST_WAREHOUSE_STATE,
        postal_code=settings.WEST_WAREHOUSE_ZIP,
    )


def select_origin(destination_state: Optional[str]) -> Warehouse:
    """West-coast states ship from the west warehouse, all others from primary."""
    state = (destination_state or "").strip().upper()
    if state in WEST_STATES:
        return west_warehouse()
    return primary_warehouse()


def service_name(service_type: Optional[str]) -> str:
    if not service_type:
        return "FedEx Service"
    return SERVICE_NAMES.get(service_type) or service_type.replace("_", " ")


def service_for_method(shipping_method: str, residential: bool = True) -> str:
    service = SHIPPING_METHOD_TO_SERVICE.get(shipping_method, "FEDEX_GROUND")
    if service == "FEDEX_GROUND" and residential:
        return "GROUND_HOME_DELIVERY"
    return service


# ==================== Packages ====================

def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def normalize_packages(packages: Sequence[Package]) -> List[Dict[str, Any]]:
    """Round dimensions up to whole units, clamp to carrier limits, split heavy packages."""
    line_items = []
    for pkg in packages:
        length = _clamp(math.ceil(pkg.length or 12), 1, MAX_DIMENSION)
        width = _clamp(math.ceil(pkg.width or 12), 1, MAX_DIMENSION)
        height = _clamp(math.ceil(pkg.height or 6), 1, MAX_HEIGHT)
        total_weight = _clamp(pkg.weight or 5, 1, MAX_PACKAGE_WEIGHT)

        split_count = math.ceil(total_weight / SPLIT_PACKAGE_WEIGHT) if total_weight > SPLIT_PACKAGE_WEIGHT else 1
        part_weight = _clamp(math.ceil(total_weight / split_count), 1, MAX_PACKAGE_WEIGHT)

        for _ in range(split_count):
            line_items.append({
                "subPackagingType": "BOX",
                "groupPackageCount": 1,
                "weight": {"value": part_weight, "units": pkg.weight_units.upper()},
                "dimensions": {
                    "length": length,
                    "width": width,
                    "height": height,
                    "units": pkg.dimension_units.upper(),
                },
            })
    return line_items


# ==================== Price extraction ====================

def _amount(charge: Any) -> Optional[Decimal]:
    """Charges arrive either as bare numbers or as {amount, currency}."""
    raw = charge.get("amount") if isinstance(charge, dict) else charge
    if raw in (None, "") or isinstance(raw, bool):
        return None
    try:
        return Decimal(str(raw))
    except ArithmeticError:
        return None


def _total_net_charge(detail: Dict[str, Any]) -> Optional[Decimal]:
    return _amount(detail.get("totalNetCharge"))


def _total_net_fedex_charge(detail: Dict[str, Any]) -> Optional[Decimal]:
    return _amount(detail.get("totalNetFedExCharge"))


def _shipment_rate_detail_charge(detail: Dict[str, Any]) -> Optional[Decimal]:
    srd = detail.get("shipmentRateDetail") or {}
    return _amount(srd.get("totalNetCharge")) or _amount(srd.get("totalNetFedExCharge"))


def _rated_packages_sum(detail: Dict[str, Any]) -> Optional[Decimal]:
    total = ZERO
    for pkg in detail.get("ratedPackages") or []:
        prd = pkg.get("packageRateDetail") or {}
        net = _amount(prd.get("netCharge")) or _amount(prd.get("netFedExCharge"))
        if net:
            total += net
    return total or None


def _breakdown_total(detail: Dict[str, Any]) -> Optional[Decimal]:
    srd = detail.get("shipmentRateDetail") or {}
    base = _amount(srd.get("totalBaseCharge")) or ZERO
    surcharges = _amount(srd.get("totalSurcharges")) or ZERO
    discounts = _amount(srd.get("totalDiscounts")) or ZERO
    if not (base or surcharges or discounts):
        return None
    return base + surcharges - discounts


# Tried in order; first non-zero amount wins. New reply shapes go at the end.
PRICE_EXTRACTORS: List[Callable[[Dict[str, Any]], Optional[Decimal]]] = [
    _total_net_charge,
    _total_net_fedex_charge,
    _shipment_rate_detail_charge,
    _rated_packages_sum,
    _breakdown_total,
]


def select_rated_detail(rate_reply: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """ACCOUNT-tier detail if present, else LIST-tier, else the first one."""
    details = rate_reply.get("ratedShipmentDetails") or []
    if not details:
        return None
    for rate_types in (ACCOUNT_RATE_TYPES, LIST_RATE_TYPES):
        for detail in details:
            if detail.get("rateType") in rate_types:
                return detail
    return details[0]


def extract_price(rate_reply: Dict[str, Any]) -> Decimal:
    detail = select_rated_detail(rate_reply)
    if detail is None:
        return ZERO
    for extractor in PRICE_EXTRACTORS:
        amount = extractor(detail)
        if amount:
            return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    return ZERO


def extract_currency(rate_reply: Dict[str, Any], default: str = "USD") -> str:
    detail = select_rated_detail(rate_reply) or {}
    for charge in (
        detail.get("totalNetCharge"),
        detail.get("totalNetFedExCharge"),
        (detail.get("shipmentRateDetail") or {}).get("totalNetCharge"),
    ):
        if isinstance(charge, dict) and charge.get("currency"):
            return charge["currency"]
    return default


# ==================== Transit ====================

def parse_transit_days(commit: Optional[Dict[str, Any]]) -> Optional[int]:
    if not commit:
        return None
    transit = commit.get("transitDays")
    if isinstance(transit, int):
        return transit
    if isinstance(transit, str):
        if transit.isdigit():
            return int(transit)
        return TRANSIT_DAYS.get(transit)
    if isinstance(transit, dict):
        mapped = TRANSIT_DAYS.get(transit.get("minimumTransitTime"))
        if mapped:
            return mapped
        value = str(transit.get("value") or "")
        if value.isdigit():
            return int(value)
    return TRANSIT_DAYS.get(commit.get("transitTime"))


def parse_delivery_date(rate_reply: Dict[str, Any]) -> Optional[str]:
    commit = rate_reply.get("commit") or {}
    if (commit.get("dateDetail") or {}).get("dayFormat"):
        return commit["dateDetail"]["dayFormat"]
    if commit.get("commitDates"):
        return commit["commitDates"][0]
    operational = rate_reply.get("operationalDetail") or {}
    return operational.get("deliveryDate") or operational.get("commitDate")


def estimated_rates(rates: List[Rate], packages: Sequence[Package]) -> List[Rate]:
    total_weight = sum(Decimal(str(pkg.weight or 5)) for pkg in packages)
    multiplier = max(Decimal("1"), total_weight / Decimal("10"))
    for rate in rates:
        base = ESTIMATED_PRICES.get(rate.service_type, DEFAULT_ESTIMATED_PRICE)
        rate.price = (base * multiplier).quantize(CENTS, rounding=ROUND_HALF_UP)
        rate.is_estimated = True
    return rates


class RateQuoter:
    def __init__(self, client: CarrierClient):
        self.client = client

    def build_payload(
        self,
        destination: AddressInput,
        packages: Sequence[Package],
        currency: str,
        insured_value: Optional[Decimal],
        residential: bool,
    ) -> Dict[str, Any]:
        origin = select_origin(destination.state)
        recipient = destination.to_fedex_format()
        recipient["stateOrProvinceCode"] = (destination.state or "").strip().upper()
        recipient["residential"] = residential
        if not recipient["streetLines"]:
            recipient["streetLines"] = ["Address"]

        payload = {
            "accountNumber": {"value": self.client.account_number},
            "rateRequestControlParameters": {
                "returnTransitTimes": True,
                "servicesNeededOnRateFailure": True,
            },
            "requestedShipment": {
                "shipper": {"address": origin.to_address().to_fedex_format()},
                "recipient": {"address": recipient},
                "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
                "rateRequestType": ["ACCOUNT", "LIST"],
                "requestedPackageLineItems": normalize_packages(packages),
            },
        }
        if insured_value is not None:
            payload["requestedShipment"]["totalInsuredValue"] = {
                "amount": float(insured_value),
                "currency": currency,
            }
        return payload

    async def quote(
        self,
        destination: AddressInput,
        packages: Sequence[Package],
        currency: str = "USD",
        insured_value: Optional[Decimal] = None,
        residential: bool = True,
    ) -> List[Rate]:
        """Rates for every available service, cheapest first."""
        if not destination.postal_code:
            raise ValidationError("Destination address with ZIP code is required")
        if not packages:
            raise ValidationError("At least one package is required")

        payload = self.build_payload(destination, packages, currency, insured_value, residential)

        try:
            data = await self.client.request(RATE_QUOTE_PATH, body=payload)
        except CarrierError:
            raise
        except Exception as e:
            logger.error(f"FedEx rate request failed: {e}")
            raise CarrierError(f"Rate request failed: {e}")

        replies = (data.get("output") or {}).get("rateReplyDetails") or []
        if not replies:
            raise CarrierError("No rates available for this shipment", body=data.get("output"))

        rates = [
            Rate(
                service_type=reply.get("serviceType"),
                service_name=reply.get("serviceName") or service_name(reply.get("serviceType")),
                price=extract_price(reply),
                currency=extract_currency(reply, currency),
                transit_days=parse_transit_days(reply.get("commit")),
                delivery_date=parse_delivery_date(reply),
            )
            for reply in replies
        ]

        priced = [r for r in rates if r.price > 0]
        if not priced:
            logger.warning(
                f"FedEx returned $0 for all {len(rates)} services to {destination.postal_code}; using estimates"
            )
            priced = estimated_rates(rates, packages)

        return sorted(priced, key=lambda r: r.price)
