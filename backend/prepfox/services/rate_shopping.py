from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session, selectinload

from prepfox.config import settings
from prepfox.models_sqlalchemy.models import (
    CarrierConfiguration,
    CarrierName,
    Order,
    StoreConfiguration,
    User,
)
from prepfox.services.carriers.base import Address, CarrierClient, PackageDetails, Rate
from prepfox.services.carriers.canada_post import CanadaPostClient
from prepfox.services.carriers.shipstation import ShipStationClient
from prepfox.services.carriers.ups import UPSClient
from prepfox.services import ups_auth
from prepfox.utils.logger import logger


DEFAULT_SHIP_FROM = {
    "name": "Your Store",
    "address_line1": "123 Store Street",
    "city": "Your City",
    "state": "Your State",
    "postal_code": "12345",
    "country": "US",
}

ESTIMATE_MULTIPLIERS = {
    "overnight": 3.0,
    "expedited": 1.8,
    "standard": 1.0,
}
ESTIMATE_OTHER_MULTIPLIER = 1.2


@dataclass
class _CarrierEntry:
    label: str
    client: CarrierClient
    markup_percent: float = 0.0
    is_managed: bool = False
    configuration_id: Optional[str] = None
    allowed_service_codes: Optional[set] = None


class CarrierRateService:
    """Fans a rate request out to every registered carrier at once.

    A carrier that raises contributes no rates; the others still answer.
    """

    def __init__(self) -> None:
        self.carriers: List[_CarrierEntry] = []

    def add_carrier(
        self,
        label: str,
        client: CarrierClient,
        *,
        markup_percent: float = 0.0,
        is_managed: bool = False,
        configuration_id: Optional[str] = None,
        allowed_service_codes: Optional[set] = None,
    ) -> None:
        self.carriers.append(
            _CarrierEntry(
                label=label,
                client=client,
                markup_percent=markup_percent or 0.0,
                is_managed=is_managed,
                configuration_id=configuration_id,
                allowed_service_codes=allowed_service_codes,
            )
        )

    async def _rates_for(
        self,
        entry: _CarrierEntry,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
    ) -> List[Rate]:
        try:
            rates = await entry.client.get_rates(from_address, to_address, package)
        except Exception as e:
            logger.warning(f"Rate request to {entry.label} failed: {type(e).__name__}: {e}")
            return []

        if entry.allowed_service_codes:
            rates = [r for r in rates if r.service_code in entry.allowed_service_codes]
        return [
            r.with_markup(
                entry.markup_percent,
                is_prepfox_managed=entry.is_managed,
                carrier_configuration_id=entry.configuration_id,
            )
            for r in rates
        ]

    async def get_all_rates(
        self,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
    ) -> Dict[str, Any]:
        results = await asyncio.gather(
            *(self._rates_for(entry, from_address, to_address, package) for entry in self.carriers)
        )

        rates: List[Rate] = []
        carriers_used: List[str] = []
        for entry, carrier_rates in zip(self.carriers, results):
            if carrier_rates:
                carriers_used.append(entry.label)
            rates.extend(carrier_rates)

        rates.sort(key=lambda r: r.total_rate)
        return {"rates": rates, "carriers_used": carriers_used}


async def client_for_configuration(db: Session, config: CarrierConfiguration) -> Optional[CarrierClient]:
    """Build a live client for a stored configuration, or None if unsupported."""
    creds = config.api_credentials
    carrier = (config.carrier_name or "").lower()

    if carrier == CarrierName.ups.value:
        ups_creds = await ups_auth.ensure_valid_ups_token(db, config)
        return UPSClient(
            ups_creds.access_token,
            ups_creds.account_number,
            base_url=ups_creds.base_url,
            negotiated_rates=ups_creds.negotiated_rates,
            account_country=ups_creds.country,
        )
    if carrier == CarrierName.canada_post.value:
        base_url = "https://ct.soa-gw.canadapost.ca" if config.test_mode else "https://soa-gw.canadapost.ca"
        return CanadaPostClient(
            creds.get("username"),
            creds.get("password"),
            creds.get("customer_number") or config.account_number,
            base_url=base_url,
        )
    if carrier == CarrierName.shipstation.value:
        return ShipStationClient(creds.get("api_key"), creds.get("api_secret"))
    return None


def _enabled_service_codes(config: CarrierConfiguration) -> Optional[set]:
    codes = {s.service_code for s in config.services if s.is_enabled}
    return codes or None


async def _managed_ups_client() -> Optional[UPSClient]:
    if not settings.UPS_ACCOUNT_NUMBER:
        return None
    token = await ups_auth.get_managed_ups_token()
    if not token:
        return None
    return UPSClient(token, settings.UPS_ACCOUNT_NUMBER, base_url=settings.ups_base_url)


def _managed_canada_post_client() -> Optional[CanadaPostClient]:
    if not settings.CANADA_POST_USERNAME:
        return None
    return CanadaPostClient(
        settings.CANADA_POST_USERNAME,
        settings.CANADA_POST_PASSWORD,
        settings.CANADA_POST_CUSTOMER_NUMBER,
        base_url=settings.canada_post_base_url,
    )


def active_configurations(db: Session, user_id: str) -> List[CarrierConfiguration]:
    return (
        db.query(CarrierConfiguration)
        .options(selectinload(CarrierConfiguration.services))
        .filter(
            CarrierConfiguration.user_id == user_id,
            CarrierConfiguration.is_active.is_(True),
        )
        .all()
    )


async def build_rate_service(
    db: Session,
    user: User,
    *,
    include_managed: bool = True,
    include_user_carriers: bool = True,
) -> CarrierRateService:
    service = CarrierRateService()

    if include_managed:
        markup = settings.MANAGED_CARRIER_MARKUP_PERCENT
        try:
            managed_ups = await _managed_ups_client()
        except HTTPException as e:
            logger.warning(f"Managed UPS account unavailable: {e.detail}")
            managed_ups = None
        if managed_ups:
            service.add_carrier("PrepFox UPS", managed_ups, markup_percent=markup, is_managed=True)
        managed_cp = _managed_canada_post_client()
        if managed_cp:
            service.add_carrier("PrepFox Canada Post", managed_cp, markup_percent=markup, is_managed=True)

    if include_user_carriers:
        for config in active_configurations(db, user.id):
            try:
                client = await client_for_configuration(db, config)
            except HTTPException as e:
                logger.warning(f"Skipping carrier configuration {config.id}: {e.detail}")
                continue
            if client is None:
                continue
            service.add_carrier(
                config.display_name or config.carrier_name,
                client,
                markup_percent=config.markup_percent or 0.0,
                configuration_id=config.id,
                allowed_service_codes=_enabled_service_codes(config),
            )

    return service


def estimated_rates(config: CarrierConfiguration, package: PackageDetails) -> List[Rate]:
    """Rates for carriers without a live API, priced from the enabled services."""
    base_rate = 5.0 + max(package.weight, 0) * 1.0
    rates = []
    for svc in config.services:
        if not svc.is_enabled:
            continue
        multiplier = ESTIMATE_MULTIPLIERS.get((svc.service_type or "").lower(), ESTIMATE_OTHER_MULTIPLIER)
        rates.append(
            Rate(
                carrier=config.display_name or config.carrier_name,
                service_code=svc.service_code,
                service_name=svc.service_name,
                service_type=svc.service_type,
                rate=round(base_rate * multiplier, 2),
                currency="USD",
                estimated_days="3-5 business days",
                carrier_configuration_id=config.id,
            )
        )
    return rates


def _resolve_ship_from(db: Session, user: User, order: Order, requested: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if requested:
        return requested
    query = db.query(StoreConfiguration).filter(
        StoreConfiguration.user_id == user.id,
        StoreConfiguration.is_active.is_(True),
    )
    if order.store_configuration_id:
        query = query.filter(StoreConfiguration.id == order.store_configuration_id)
    store = query.first()
    if store and store.ship_from_address:
        return store.ship_from_address
    return DEFAULT_SHIP_FROM


def _resolve_package(order: Order, requested: Optional[Dict[str, Any]]) -> PackageDetails:
    requested = requested or {}
    defaults = PackageDetails()

    def pick(key: str, order_value: Optional[float], default: float) -> float:
        return float(requested.get(key) or order_value or default)

    return PackageDetails(
        weight=pick("weight", order.package_weight, defaults.weight),
        length=pick("length", order.package_length, defaults.length),
        width=pick("width", order.package_width, defaults.width),
        height=pick("height", order.package_height, defaults.height),
        value=pick("value", order.package_value or (float(order.total_price) if order.total_price else None), defaults.value),
        signature_required=bool(requested.get("signature_required")),
    )


async def calculate_rates_for_order(
    db: Session,
    user: User,
    order_id: str,
    *,
    ship_from: Optional[Dict[str, Any]] = None,
    package: Optional[Dict[str, Any]] = None,
    service_preferences: Optional[List[str]] = None,
) -> Dict[str, Any]:
    order = db.query(Order).filter(Order.id == order_id, Order.user_id == user.id).first()
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    from_address = Address.from_dict(_resolve_ship_from(db, user, order, ship_from))
    to_address = Address.from_dict(order.shipping_address or {})
    if not to_address.name:
        to_address.name = order.customer_name or ""
    package_details = _resolve_package(order, package)

    rate_service = CarrierRateService()
    rates: List[Rate] = []
    for config in active_configurations(db, user.id):
        try:
            client = await client_for_configuration(db, config)
        except HTTPException as e:
            logger.warning(f"Skipping carrier configuration {config.id}: {e.detail}")
            continue
        if client is None:
            rates.extend(r.with_markup(config.markup_percent or 0.0, carrier_configuration_id=config.id)
                         for r in estimated_rates(config, package_details))
            continue
        rate_service.add_carrier(
            config.display_name or config.carrier_name,
            client,
            markup_percent=config.markup_percent or 0.0,
            configuration_id=config.id,
            allowed_service_codes=_enabled_service_codes(config),
        )

    live = await rate_service.get_all_rates(from_address, to_address, package_details)
    rates.extend(live["rates"])

    if service_preferences:
        wanted = {p.lower() for p in service_preferences}
        rates = [r for r in rates if (r.service_type or "").lower() in wanted]

    rates.sort(key=lambda r: r.total_rate)
    return {
        "rates": [r.to_dict() for r in rates],
        "order_details": {
            "order_number": order.order_number,
            "ship_from": from_address.to_dict(),
            "ship_to": to_address.to_dict(),
            "package": {
                "weight": package_details.weight,
                "length": package_details.length,
                "width": package_details.width,
                "height": package_details.height,
                "value": package_details.value,
            },
        },
    }


async def get_carrier_rates(
    db: Session,
    user: User,
    carrier: str,
    from_address: Address,
    to_address: Address,
    package: PackageDetails,
) -> List[Rate]:
    """Rate one carrier, preferring the user's own account over the managed one.

    Unlike the aggregate quote, carrier errors propagate to the caller.
    """
    config = next((c for c in active_configurations(db, user.id) if c.carrier_name == carrier), None)
    if config is not None:
        client = await client_for_configuration(db, config)
        rates = await client.get_rates(from_address, to_address, package)
        allowed = _enabled_service_codes(config)
        if allowed:
            rates = [r for r in rates if r.service_code in allowed]
        rates = [r.with_markup(config.markup_percent or 0.0, carrier_configuration_id=config.id) for r in rates]
    else:
        client = None
        if carrier == CarrierName.ups.value:
            client = await _managed_ups_client()
        elif carrier == CarrierName.canada_post.value:
            client = _managed_canada_post_client()
        elif carrier == CarrierName.shipstation.value and settings.SHIPSTATION_API_KEY:
            client = ShipStationClient(settings.SHIPSTATION_API_KEY, settings.SHIPSTATION_API_SECRET)
        if client is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "missing_credentials", "message": f"No {carrier} account is configured"},
            )
        rates = await client.get_rates(from_address, to_address, package)
        rates = [
            r.with_markup(settings.MANAGED_CARRIER_MARKUP_PERCENT, is_prepfox_managed=True)
            for r in rates
        ]

    rates.sort(key=lambda r: r.total_rate)
    return rates
