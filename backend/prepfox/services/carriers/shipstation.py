from __future__ import annotations

import asyncio
import base64
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
from fastapi import HTTPException, status

from prepfox.services.carriers.base import Address, CarrierClient, LabelResult, PackageDetails, Rate
from prepfox.utils.logger import carrier_logger, logger


SHIPSTATION_API_URL = "https://ssapi.shipstation.com"
SHIPSTATION_API_HOST = "ssapi.shipstation.com"

AVAILABLE_CARRIERS = (
    ("stamps_com", "USPS"),
    ("ups", "UPS"),
    ("fedex", "FedEx"),
    ("dhl_express", "DHL Express"),
    ("canada_post", "Canada Post"),
)

WEBHOOK_RESOURCE_TYPES = ("ORDER_NOTIFY", "SHIP_NOTIFY", "ITEM_ORDER_NOTIFY", "ITEM_SHIP_NOTIFY")


def is_shipstation_resource_url(resource_url: str) -> bool:
    """True only for https URLs on the ShipStation API host itself."""
    try:
        url = httpx.URL(resource_url)
    except (httpx.InvalidURL, TypeError):
        return False
    return (
        url.scheme == "https"
        and url.host == SHIPSTATION_API_HOST
        and not url.userinfo
        and url.port in (None, 443)
    )


def classify_service(service_name: str) -> str:
    name = (service_name or "").lower()
    if "overnight" in name or "next day" in name or "priority mail express" in name:
        return "overnight"
    if "2nd day" in name or "2 day" in name or "express" in name or "expedited" in name or "priority" in name:
        return "expedited"
    return "standard"


def fallback_rate() -> Rate:
    return Rate(
        carrier="ShipStation",
        service_code="STANDARD",
        service_name="Standard Shipping",
        service_type="standard",
        rate=9.99,
        currency="USD",
        estimated_days="5-7 business days",
    )


def _ss_address(address: Address) -> Dict[str, Any]:
    return {
        "name": address.name,
        "company": address.company or "",
        "street1": address.address_line1,
        "street2": address.address_line2 or "",
        "city": address.city,
        "state": address.state,
        "postalCode": address.postal_code,
        "country": address.country,
        "phone": address.phone or "",
    }


class ShipStationClient(CarrierClient):
    carrier_name = "shipstation"

    def __init__(
        self,
        api_key: Optional[str],
        api_secret: Optional[str],
        *,
        base_url: str = SHIPSTATION_API_URL,
        carrier_codes: Optional[List[str]] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.carrier_codes = carrier_codes
        self.timeout = timeout

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _headers(self) -> Dict[str, str]:
        basic = base64.b64encode(f"{self.api_key}:{self.api_secret}".encode("utf-8")).decode("ascii")
        return {
            "Authorization": f"Basic {basic}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _carriers(self):
        if not self.carrier_codes:
            return AVAILABLE_CARRIERS
        return tuple(c for c in AVAILABLE_CARRIERS if c[0] in self.carrier_codes)

    async def _rates_for_carrier(
        self,
        client: httpx.AsyncClient,
        carrier_code: str,
        carrier_label: str,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
    ) -> List[Rate]:
        payload = {
            "carrierCode": carrier_code,
            "fromPostalCode": from_address.postal_code,
            "toState": to_address.state or "",
            "toCountry": to_address.country or "US",
            "toPostalCode": to_address.postal_code,
            "toCity": to_address.city or "",
            "weight": {"value": package.weight, "units": "pounds"},
            "dimensions": {
                "units": "inches",
                "length": package.length,
                "width": package.width,
                "height": package.height,
            },
            "confirmation": "signature" if package.signature_required else "none",
            "residential": True,
        }
        try:
            response = await client.post(
                f"{self.base_url}/shipments/getrates",
                json=payload,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.warning(f"ShipStation {carrier_label} rates request failed: {type(e).__name__}: {e}")
            return []

        if response.status_code != 200:
            carrier_logger.log_carrier_event(
                event_type="shipstation_rating_failed",
                description=f"ShipStation {carrier_label} rates failed with HTTP {response.status_code}",
                request_data={"carrierCode": carrier_code},
                status="error",
                error=response.text[:500],
            )
            return []

        try:
            data = response.json()
        except ValueError:
            return []
        if isinstance(data, dict):
            data = data.get("rates") or []

        if not isinstance(data, list):
            return []

        rates = []
        for item in data:
            if not isinstance(item, dict):
                continue
            try:
                amount = float(item.get("shipmentCost") or item.get("rate") or 0) + float(item.get("otherCost") or 0)
            except (TypeError, ValueError):
                continue
            name = item.get("serviceName") or item.get("serviceCode") or "Unknown"
            rates.append(
                Rate(
                    carrier=f"ShipStation ({carrier_label})",
                    service_code=item.get("serviceCode") or "",
                    service_name=name,
                    service_type=classify_service(name),
                    rate=round(amount, 2),
                    currency="USD",
                )
            )
        return rates

    async def get_rates(
        self,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
    ) -> List[Rate]:
        if not self.has_credentials:
            logger.info("ShipStation credentials missing; returning fallback rate")
            return [fallback_rate()]

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            results = await asyncio.gather(
                *(
                    self._rates_for_carrier(client, code, label, from_address, to_address, package)
                    for code, label in self._carriers()
                )
            )

        rates = [rate for carrier_rates in results for rate in carrier_rates]
        if not rates:
            return [fallback_rate()]
        rates.sort(key=lambda r: r.rate)
        return rates

    def build_label_request(
        self,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
        service_code: str,
        carrier_code: str = "stamps_com",
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "carrierCode": carrier_code,
            "serviceCode": service_code,
            "packageCode": "package",
            "confirmation": "signature" if package.signature_required else "none",
            "shipDate": date.today().isoformat(),
            "weight": {"value": package.weight, "units": "pounds"},
            "dimensions": {
                "units": "inches",
                "length": package.length,
                "width": package.width,
                "height": package.height,
            },
            "shipFrom": _ss_address(from_address),
            "shipTo": _ss_address(to_address),
            "testLabel": False,
        }
        if package.value:
            payload["insuranceOptions"] = {
                "provider": "carrier",
                "insureShipment": True,
                "insuredValue": package.value,
            }
        return payload

    async def create_label(
        self,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
        service_code: str,
        carrier_code: str = "stamps_com",
    ) -> LabelResult:
        if not self.has_credentials:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "missing_credentials", "carrier": "shipstation", "message": "ShipStation API credentials not configured"},
            )

        payload = self.build_label_request(from_address, to_address, package, service_code, carrier_code)
        response = await self._send("POST", f"{self.base_url}/shipments/createlabel", json=payload)

        if response.status_code not in (200, 201):
            carrier_logger.log_carrier_event(
                event_type="shipstation_label_failed",
                description=f"ShipStation label failed with HTTP {response.status_code}",
                request_data={"serviceCode": service_code, "carrierCode": carrier_code},
                status="error",
                error=response.text[:500],
            )
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={"code": "carrier_error", "carrier": "shipstation", "message": response.text[:500]},
            )

        data = response.json()
        return LabelResult(
            carrier="ShipStation",
            service_code=service_code,
            tracking_number=data.get("trackingNumber"),
            label_data=data.get("labelData"),
            label_format="PDF",
            cost=float(data["shipmentCost"]) if data.get("shipmentCost") is not None else None,
            currency="USD",
        )

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"ShipStation {method} {url} failed: {type(e).__name__}: {e}")
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={"code": "carrier_error", "carrier": "shipstation", "message": f"ShipStation request failed: {type(e).__name__}"},
            )

    async def fetch_resource(self, resource_url: str) -> Dict[str, Any]:
        """GET a webhook ``resource_url``; credentials are only ever sent to the ShipStation API host."""
        if not is_shipstation_resource_url(resource_url):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "invalid_payload", "message": "resource_url is not a ShipStation API URL"},
            )
        response = await self._send("GET", resource_url)
        if response.status_code != 200:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={"code": "carrier_error", "carrier": "shipstation", "message": f"HTTP {response.status_code}"},
            )
        return response.json()
