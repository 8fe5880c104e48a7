from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session, selectinload

from prepfox.models_sqlalchemy.models import CarrierConfiguration, CarrierName, ShippingService, User
from prepfox.services.carriers import canada_post, ups
from prepfox.utils.logger import logger, mask_secret
from prepfox.utils.timeutils import utcnow


# Credential keys each carrier needs before it can be used.
REQUIRED_CREDENTIALS: Dict[str, tuple] = {
    CarrierName.ups.value: ("client_id", "client_secret"),
    CarrierName.canada_post.value: ("username", "password"),
    CarrierName.shipstation.value: ("api_key", "api_secret"),
}


def default_services(carrier_name: str) -> List[Dict[str, str]]:
    if carrier_name == CarrierName.ups.value:
        return [
            {"service_code": code, "service_name": name, "service_type": ups.service_type(code)}
            for code, name in ups.UPS_SERVICE_NAMES.items()
        ]
    if carrier_name == CarrierName.canada_post.value:
        return [
            {"service_code": code, "service_name": name, "service_type": canada_post.service_details(code)[0]}
            for code, name, _ in canada_post.DOMESTIC_FALLBACK_RATES + canada_post.US_FALLBACK_RATES
        ]
    # ShipStation services depend on the carriers connected to the account.
    return []


def _normalize_carrier(value: str) -> str:
    carrier = (value or "").strip().lower().replace(" ", "_")
    if carrier not in REQUIRED_CREDENTIALS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "unsupported_carrier", "message": f"Unsupported carrier: {value}"},
        )
    return carrier


def _check_credentials(carrier: str, credentials: Dict[str, Any]) -> None:
    missing = [key for key in REQUIRED_CREDENTIALS[carrier] if not credentials.get(key)]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "missing_credentials", "message": f"Missing credentials: {', '.join(missing)}"},
        )


def list_configurations(db: Session, user: User) -> List[CarrierConfiguration]:
    return (
        db.query(CarrierConfiguration)
        .options(selectinload(CarrierConfiguration.services))
        .filter(CarrierConfiguration.user_id == user.id)
        .order_by(CarrierConfiguration.created_at.asc())
        .all()
    )


def get_configuration(db: Session, user: User, configuration_id: str) -> CarrierConfiguration:
    config = (
        db.query(CarrierConfiguration)
        .filter(CarrierConfiguration.id == configuration_id, CarrierConfiguration.user_id == user.id)
        .first()
    )
    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Carrier configuration not found")
    return config


def _apply_services(config: CarrierConfiguration, services: List[Dict[str, Any]]) -> None:
    existing = {s.service_code: s for s in config.services}
    for item in services:
        code = item.get("service_code")
        if not code:
            continue
        svc = existing.get(code)
        if svc is None:
            svc = ShippingService(
                service_code=code,
                service_name=item.get("service_name") or code,
                service_type=item.get("service_type") or "standard",
            )
            config.services.append(svc)
            existing[code] = svc
        if item.get("service_name"):
            svc.service_name = item["service_name"]
        if item.get("service_type"):
            svc.service_type = item["service_type"]
        if "is_enabled" in item and item["is_enabled"] is not None:
            svc.is_enabled = bool(item["is_enabled"])


def create_configuration(db: Session, user: User, data: Dict[str, Any]) -> CarrierConfiguration:
    carrier = _normalize_carrier(data.get("carrier_name"))
    credentials = data.get("api_credentials") or {}
    _check_credentials(carrier, credentials)

    config = CarrierConfiguration(
        user_id=user.id,
        carrier_name=carrier,
        display_name=data.get("display_name") or carrier.replace("_", " ").title(),
        account_number=data.get("account_number"),
        country=(data.get("country") or "").upper() or None,
        markup_percent=float(data.get("markup_percent") or 0.0),
        negotiated_rates=bool(data.get("negotiated_rates")),
        test_mode=bool(data.get("test_mode")),
        is_active=data.get("is_active", True),
    )
    config.api_credentials = credentials
    _apply_services(config, data.get("services") or default_services(carrier))
    db.add(config)
    db.commit()
    db.refresh(config)
    logger.info(f"Carrier configuration {config.id} ({carrier}) created for user {user.id}")
    return config


def update_configuration(db: Session, user: User, configuration_id: str, data: Dict[str, Any]) -> CarrierConfiguration:
    config = get_configuration(db, user, configuration_id)

    for field in ("display_name", "account_number", "markup_percent", "negotiated_rates", "test_mode", "is_active"):
        if field in data and data[field] is not None:
            setattr(config, field, data[field])
    if data.get("country") is not None:
        config.country = data["country"].upper() or None

    if data.get("api_credentials"):
        # Partial updates keep secrets the client did not resend.
        merged = {**config.api_credentials, **{k: v for k, v in data["api_credentials"].items() if v}}
        _check_credentials(config.carrier_name, merged)
        config.api_credentials = merged
        if config.carrier_name == CarrierName.ups.value:
            # New client credentials invalidate the stored token pair.
            config.access_token = None
            config.refresh_token = None
            config.token_expires_at = None

    if data.get("services"):
        _apply_services(config, data["services"])

    config.updated_at = utcnow()
    db.commit()
    db.refresh(config)
    return config


def delete_configuration(db: Session, user: User, configuration_id: str) -> None:
    config = get_configuration(db, user, configuration_id)
    db.delete(config)
    db.commit()
    logger.info(f"Carrier configuration {configuration_id} deleted by user {user.id}")


def configuration_to_row(config: CarrierConfiguration) -> Dict[str, Any]:
    """Serialize a configuration; secrets are only ever returned masked."""
    creds = config.api_credentials
    return {
        "id": config.id,
        "carrier_name": config.carrier_name,
        "display_name": config.display_name,
        "account_number": config.account_number,
        "country": config.country,
        "markup_percent": config.markup_percent,
        "negotiated_rates": config.negotiated_rates,
        "test_mode": config.test_mode,
        "is_active": config.is_active,
        "credentials_preview": {key: mask_secret(str(value)) for key, value in creds.items() if value},
        "has_access_token": bool(config.access_token),
        "token_expires_at": config.token_expires_at.isoformat() if config.token_expires_at else None,
        "services": [
            {
                "id": s.id,
                "service_code": s.service_code,
                "service_name": s.service_name,
                "service_type": s.service_type,
                "is_enabled": s.is_enabled,
            }
            for s in config.services
        ],
        "created_at": config.created_at.isoformat() if config.created_at else None,
        "updated_at": config.updated_at.isoformat() if config.updated_at else None,
    }
