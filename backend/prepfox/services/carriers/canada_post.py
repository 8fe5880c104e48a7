from __future__ import annotations

import base64
from typing import Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET
from xml.sax.saxutils import escape

import httpx
from fastapi import HTTPException, status

from prepfox.services.carriers.base import Address, CarrierClient, LabelResult, PackageDetails, Rate
from prepfox.utils.logger import carrier_logger, logger


RATE_NS = "http://www.canadapost.ca/ws/ship/rate-v4"
RATE_MEDIA_TYPE = "application/vnd.cpc.ship.rate-v4+xml"

LBS_TO_KG = 0.453592
IN_TO_CM = 2.54
MIN_WEIGHT_KG = 0.1

# service code -> (service type, estimated delivery)
SERVICE_DETAILS: Dict[str, Tuple[str, str]] = {
    "DOM.RP": ("standard", "5-7 business days"),
    "DOM.EP": ("expedited", "2-3 business days"),
    "DOM.XP": ("expedited", "1-2 business days"),
    "DOM.PC": ("overnight", "1 business day"),
    "USA.EP": ("expedited", "3-5 business days"),
    "USA.XP": ("expedited", "2-3 business days"),
}

US_FALLBACK_RATES = (
    ("USA.SP.AIR", "Small Packet USA Air", 8.99),
    ("USA.TP", "Tracked Packet - USA", 12.99),
    ("USA.EP", "Expedited Parcel USA", 24.99),
    ("USA.XP", "Xpresspost USA", 32.99),
)

DOMESTIC_FALLBACK_RATES = (
    ("DOM.RP", "Regular Parcel", 15.99),
    ("DOM.EP", "Expedited Parcel", 22.99),
    ("DOM.PC", "Priority", 35.99),
)


def weight_kg(weight_lbs: float) -> float:
    return max(MIN_WEIGHT_KG, (weight_lbs or 0) * LBS_TO_KG)


def normalize_postal_code(value: Optional[str]) -> str:
    return (value or "").replace(" ", "").upper()


def service_details(code: str) -> Tuple[str, str]:
    if code in SERVICE_DETAILS:
        return SERVICE_DETAILS[code]
    if code.startswith("INT."):
        return ("international", "7-14 business days")
    return ("standard", "3-7 business days")


def build_mailing_scenario(
    customer_number: str,
    from_address: Address,
    to_address: Address,
    package: PackageDetails,
) -> str:
    country = (to_address.country or "CA").upper()
    destination_postal = escape(normalize_postal_code(to_address.postal_code))
    if country == "CA":
        destination = f"<domestic><postal-code>{destination_postal}</postal-code></domestic>"
    elif country == "US":
        destination = f"<united-states><zip-code>{destination_postal}</zip-code></united-states>"
    else:
        destination = f"<international><country-code>{escape(country)}</country-code></international>"

    dimensions = ""
    if package.length and package.width and package.height:
        dimensions = (
            "<dimensions>"
            f"<length>{package.length * IN_TO_CM:.2f}</length>"
            f"<width>{package.width * IN_TO_CM:.2f}</width>"
            f"<height>{package.height * IN_TO_CM:.2f}</height>"
            "</dimensions>"
        )

    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<mailing-scenario xmlns="{RATE_NS}">'
        f"<customer-number>{escape(customer_number or '')}</customer-number>"
        "<parcel-characteristics>"
        f"<weight>{weight_kg(package.weight):.3f}</weight>"
        f"{dimensions}"
        "</parcel-characteristics>"
        f"<origin-postal-code>{escape(normalize_postal_code(from_address.postal_code))}</origin-postal-code>"
        f"<destination>{destination}</destination>"
        "</mailing-scenario>"
    )


def parse_price_quotes(xml_text: str) -> List[Rate]:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        logger.warning(f"Canada Post returned unparseable XML: {e}")
        return []

    ns = {"cp": RATE_NS}
    rates: List[Rate] = []
    for quote in root.iter(f"{{{RATE_NS}}}price-quote"):
        code = quote.findtext("cp:service-code", default="", namespaces=ns).strip()
        name = quote.findtext("cp:service-name", default="", namespaces=ns).strip()
        due = quote.findtext("cp:price-details/cp:due", default="", namespaces=ns).strip()
        if not code or not due:
            continue
        try:
            amount = float(due)
        except ValueError:
            continue
        svc_type, days = service_details(code)
        rates.append(
            Rate(
                carrier="Canada Post",
                service_code=code,
                service_name=name or code,
                service_type=svc_type,
                rate=amount,
                currency="CAD",
                estimated_days=days,
            )
        )
    return rates


def fallback_rates(to_address: Address, package: PackageDetails) -> List[Rate]:
    """Estimated rates used when the live API cannot be reached."""
    multiplier = max(1.0, weight_kg(package.weight) * 0.5 + 0.5)
    table = US_FALLBACK_RATES if (to_address.country or "").upper() == "US" else DOMESTIC_FALLBACK_RATES
    rates = []
    for code, name, base in table:
        svc_type, days = service_details(code)
        rates.append(
            Rate(
                carrier="Canada Post",
                service_code=code,
                service_name=name,
                service_type=svc_type,
                rate=round(base * multiplier, 2),
                currency="CAD",
                estimated_days=days,
            )
        )
    return rates


class CanadaPostClient(CarrierClient):
    carrier_name = "canada_post"

    def __init__(
        self,
        username: Optional[str],
        password: Optional[str],
        customer_number: Optional[str],
        *,
        base_url: str = "https://ct.soa-gw.canadapost.ca",
        timeout: float = 30.0,
    ):
        self.username = username
        self.password = password
        self.customer_number = customer_number
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password and self.customer_number)

    def _headers(self) -> Dict[str, str]:
        basic = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")
        return {
            "Authorization": f"Basic {basic}",
            "Content-Type": RATE_MEDIA_TYPE,
            "Accept": RATE_MEDIA_TYPE,
            "Accept-Language": "en-CA",
        }

    async def get_rates(
        self,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
    ) -> List[Rate]:
        if not self.has_credentials:
            logger.info("Canada Post credentials missing; returning estimated rates")
            return fallback_rates(to_address, package)

        body = build_mailing_scenario(self.customer_number, from_address, to_address, package)
        url = f"{self.base_url}/rs/ship/price"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, content=body.encode("utf-8"), headers=self._headers())
        except httpx.HTTPError as e:
            carrier_logger.log_carrier_event(
                event_type="canada_post_rating_failed",
                description="Canada Post request failed",
                request_data={"url": url},
                status="error",
                error=f"{type(e).__name__}: {e}",
            )
            return fallback_rates(to_address, package)

        if response.status_code != 200:
            carrier_logger.log_carrier_event(
                event_type="canada_post_rating_failed",
                description=f"Canada Post rating failed with HTTP {response.status_code}",
                request_data={"url": url},
                response_data={"body": response.text[:2000]},
                status="error",
                error=f"HTTP {response.status_code}",
            )
            return fallback_rates(to_address, package)

        rates = parse_price_quotes(response.text)
        if not rates:
            logger.warning("Canada Post response contained no price quotes; using estimated rates")
            return fallback_rates(to_address, package)
        return rates

    async def create_label(
        self,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
        service_code: str,
    ) -> LabelResult:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "carrier_error",
                "carrier": "canada_post",
                "message": "Label creation is not available for Canada Post",
            },
        )
