from __future__ import annotations

from typing import Any, Dict, List, Optional
import uuid

import httpx
from fastapi import HTTPException, status

from prepfox.services.carriers.base import Address, CarrierClient, LabelResult, PackageDetails, Rate
from prepfox.utils.logger import carrier_logger, logger


UPS_SERVICE_NAMES: Dict[str, str] = {
    "01": "UPS Next Day Air",
    "02": "UPS 2nd Day Air",
    "03": "UPS Ground",
    "07": "UPS Worldwide Express",
    "08": "UPS Worldwide Expedited",
    "11": "UPS Standard",
    "12": "UPS 3 Day Select",
    "13": "UPS Next Day Air Saver",
    "14": "UPS Next Day Air Early A.M.",
    "54": "UPS Worldwide Express Plus",
    "59": "UPS 2nd Day Air A.M.",
    "65": "UPS Saver",
}

UPS_ESTIMATED_DAYS: Dict[str, str] = {
    "01": "1 business day",
    "02": "2 business days",
    "03": "1-5 business days",
    "07": "1-3 business days",
    "08": "3-5 business days",
    "11": "1-5 business days",
    "12": "3 business days",
    "13": "1 business day",
    "14": "1 business day",
    "54": "1-2 business days",
    "59": "2 business days",
    "65": "1-3 business days",
}

_OVERNIGHT_CODES = {"01", "13", "14"}
_EXPEDITED_CODES = {"02", "59", "12"}

# Services UPS offers for shipments originating in Canada.
CANADA_SERVICE_CODES = {"07", "08", "11", "54", "65"}

# UPS error code returned when the bearer token is no longer accepted.
TOKEN_EXPIRED_ERROR_CODE = "250002"


def service_name(code: str) -> str:
    return UPS_SERVICE_NAMES.get(code, f"UPS Service {code}")


def service_type(code: str) -> str:
    if code in _OVERNIGHT_CODES:
        return "overnight"
    if code in _EXPEDITED_CODES:
        return "expedited"
    return "standard"


def estimated_days(code: str) -> str:
    return UPS_ESTIMATED_DAYS.get(code, "3-5 business days")


def extract_error_message(body: Any, status_code: int) -> str:
    """Pull the human readable message out of either UPS error envelope."""
    if isinstance(body, dict):
        errors = (body.get("response") or {}).get("errors") or []
        if errors and isinstance(errors[0], dict) and errors[0].get("message"):
            return errors[0]["message"]
        fault_detail = (
            ((body.get("Fault") or {}).get("detail") or {}).get("Errors") or {}
        ).get("ErrorDetail") or {}
        description = (fault_detail.get("PrimaryErrorCode") or {}).get("Description")
        if description:
            return description
    return f"UPS API error: HTTP {status_code}"


def _extract_error_code(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    errors = (body.get("response") or {}).get("errors") or []
    if errors and isinstance(errors[0], dict):
        return str(errors[0].get("code") or "") or None
    return None


def _ups_address(address: Address) -> Dict[str, Any]:
    lines = [line for line in (address.address_line1, address.address_line2) if line]
    return {
        "AddressLine": lines or [""],
        "City": address.city or "",
        "StateProvinceCode": address.state or "",
        "PostalCode": (address.postal_code or "").replace(" ", ""),
        "CountryCode": address.country or "US",
    }


def _package(package: PackageDetails) -> Dict[str, Any]:
    return {
        "PackagingType": {"Code": "02", "Description": "Package"},
        "Dimensions": {
            "UnitOfMeasurement": {"Code": "IN", "Description": "Inches"},
            "Length": str(package.length),
            "Width": str(package.width),
            "Height": str(package.height),
        },
        "PackageWeight": {
            "UnitOfMeasurement": {"Code": "LBS", "Description": "Pounds"},
            "Weight": str(package.weight),
        },
    }


def build_rate_request(
    from_address: Address,
    to_address: Address,
    package: PackageDetails,
    account_number: str,
    negotiated_rates: bool = False,
) -> Dict[str, Any]:
    shipment: Dict[str, Any] = {
        "Shipper": {
            "Name": from_address.name or "Shipper",
            "ShipperNumber": account_number,
            "Address": _ups_address(from_address),
        },
        "ShipTo": {
            "Name": to_address.name or "Consignee",
            "Address": _ups_address(to_address),
        },
        "ShipFrom": {
            "Name": from_address.name or "Shipper",
            "Address": _ups_address(from_address),
        },
        "Package": _package(package),
    }
    if negotiated_rates:
        shipment["ShipmentRatingOptions"] = {"NegotiatedRatesIndicator": ""}

    return {
        "RateRequest": {
            "Request": {
                "RequestOption": "Shop",
                "TransactionReference": {"CustomerContext": "Rating and Service Selection"},
            },
            "Shipment": shipment,
        }
    }


def parse_rated_shipments(
    body: Dict[str, Any],
    *,
    canadian_origin: bool = False,
) -> List[Rate]:
    rated = ((body or {}).get("RateResponse") or {}).get("RatedShipment") or []
    if isinstance(rated, dict):
        rated = [rated]

    rates: List[Rate] = []
    for shipment in rated:
        code = str((shipment.get("Service") or {}).get("Code") or "")
        if not code:
            continue
        if canadian_origin and code not in CANADA_SERVICE_CODES:
            continue

        negotiated = (shipment.get("NegotiatedRateCharges") or {}).get("TotalCharge")
        charges = negotiated or shipment.get("TotalCharges") or {}
        try:
            amount = float(charges.get("MonetaryValue") or 0)
        except (TypeError, ValueError):
            continue

        rates.append(
            Rate(
                carrier="UPS",
                service_code=code,
                service_name=service_name(code),
                service_type=service_type(code),
                rate=amount,
                currency=charges.get("CurrencyCode") or "USD",
                estimated_days=estimated_days(code),
            )
        )
    return rates


class UPSClient(CarrierClient):
    """UPS REST client bound to one already-valid OAuth access token."""

    carrier_name = "ups"

    def __init__(
        self,
        access_token: str,
        account_number: str,
        *,
        base_url: str = "https://onlinetools.ups.com",
        negotiated_rates: bool = False,
        account_country: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.access_token = access_token
        self.account_number = account_number
        self.base_url = base_url.rstrip("/")
        self.negotiated_rates = negotiated_rates
        self.account_country = (account_country or "").upper() or None
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "transId": uuid.uuid4().hex[:32],
            "transactionSrc": "PrepFox",
        }

    async def _post(self, url: str, payload: Dict[str, Any], failure_event: str) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            carrier_logger.log_carrier_event(
                event_type=failure_event,
                description="UPS request failed",
                request_data={"url": url},
                status="error",
                error=f"{type(e).__name__}: {e}",
            )
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={"code": "carrier_error", "carrier": "ups", "message": f"UPS request failed: {type(e).__name__}"},
            )

    def _is_canadian(self, from_address: Address) -> bool:
        return (from_address.country or "").upper() == "CA" or self.account_country == "CA"

    async def get_rates(
        self,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
    ) -> List[Rate]:
        payload = build_rate_request(
            from_address,
            to_address,
            package,
            self.account_number,
            negotiated_rates=self.negotiated_rates,
        )
        url = f"{self.base_url}/api/rating/v1/Shop"

        response = await self._post(url, payload, "ups_rating_failed")

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}

        if response.status_code != 200:
            message = extract_error_message(body, response.status_code)
            carrier_logger.log_carrier_event(
                event_type="ups_rating_failed",
                description=f"UPS rating failed with HTTP {response.status_code}",
                request_data={"url": url, "to_country": to_address.country},
                response_data=body if isinstance(body, dict) else None,
                status="error",
                error=message,
            )
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={"code": "carrier_error", "carrier": "ups", "message": message},
            )

        rates = parse_rated_shipments(body, canadian_origin=self._is_canadian(from_address))
        logger.info(f"UPS returned {len(rates)} rates for {from_address.country}->{to_address.country}")
        return rates

    def build_shipment_request(
        self,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
        service_code: str,
    ) -> Dict[str, Any]:
        shipper_address = _ups_address(from_address)
        shipment: Dict[str, Any] = {
            "Description": "PrepFox shipment",
            "Shipper": {
                "Name": from_address.company or from_address.name or "Shipper",
                "AttentionName": from_address.name or "Shipping",
                "ShipperNumber": self.account_number,
                "Phone": {"Number": from_address.phone or ""},
                "Address": shipper_address,
            },
            "ShipTo": {
                "Name": to_address.company or to_address.name or "Consignee",
                "AttentionName": to_address.name or "",
                "Phone": {"Number": to_address.phone or ""},
                "Address": _ups_address(to_address),
            },
            "ShipFrom": {
                "Name": from_address.company or from_address.name or "Shipper",
                "Address": shipper_address,
            },
            "PaymentInformation": {
                "ShipmentCharge": {
                    "Type": "01",
                    "BillShipper": {"AccountNumber": self.account_number},
                }
            },
            "Service": {"Code": service_code, "Description": service_name(service_code)},
            "Package": {
                "Description": "Package",
                "Packaging": {"Code": "02", "Description": "Package"},
                "Dimensions": _package(package)["Dimensions"],
                "PackageWeight": _package(package)["PackageWeight"],
            },
        }
        if package.signature_required:
            shipment["ShipmentServiceOptions"] = {"DeliveryConfirmation": {"DCISType": "1"}}

        return {
            "ShipmentRequest": {
                "Request": {"RequestOption": "nonvalidate"},
                "Shipment": shipment,
                "LabelSpecification": {
                    "LabelImageFormat": {"Code": "GIF", "Description": "GIF"},
                    "HTTPUserAgent": "Mozilla/4.5",
                },
            }
        }

    async def create_label(
        self,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
        service_code: str,
    ) -> LabelResult:
        payload = self.build_shipment_request(from_address, to_address, package, service_code)
        url = f"{self.base_url}/api/shipments/v2409/ship"

        response = await self._post(url, payload, "ups_shipment_failed")

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}

        if response.status_code != 200:
            message = extract_error_message(body, response.status_code)
            error_code = _extract_error_code(body)
            carrier_logger.log_carrier_event(
                event_type="ups_shipment_failed",
                description=f"UPS shipment failed with HTTP {response.status_code}",
                request_data={"url": url, "service_code": service_code},
                response_data=body if isinstance(body, dict) else None,
                status="error",
                error=message,
            )
            if error_code == TOKEN_EXPIRED_ERROR_CODE or response.status_code == 401:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail={"code": "token_expired", "carrier": "ups", "message": message},
                )
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={"code": "carrier_error", "carrier": "ups", "message": message},
            )

        results = ((body.get("ShipmentResponse") or {}).get("ShipmentResults")) or {}
        package_results = results.get("PackageResults") or {}
        if isinstance(package_results, list):
            package_results = package_results[0] if package_results else {}
        label_image = (package_results.get("ShippingLabel") or {}).get("GraphicImage")
        charges = (results.get("ShipmentCharges") or {}).get("TotalCharges") or {}

        tracking_number = results.get("ShipmentIdentificationNumber") or package_results.get("TrackingNumber")
        carrier_logger.log_carrier_event(
            event_type="ups_shipment_created",
            description=f"UPS label created {tracking_number}",
            status="success",
        )
        return LabelResult(
            carrier="UPS",
            service_code=service_code,
            tracking_number=tracking_number,
            label_data=label_image,
            label_format="GIF",
            cost=float(charges["MonetaryValue"]) if charges.get("MonetaryValue") else None,
            currency=charges.get("CurrencyCode") or "USD",
        )
