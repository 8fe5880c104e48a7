"""UPS OAuth token lifecycle for carrier configurations.

Tokens live (encrypted) on ``carrier_configurations``. Every caller that
needs to talk to UPS goes through :func:`ensure_valid_ups_token`, which
refreshes the token when it is within five minutes of expiry. The refresh
runs under a row lock and re-checks expiry after acquiring it, so two
requests racing on an expiring token only refresh it once.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from prepfox.config import settings
from prepfox.models_sqlalchemy.models import CarrierConfiguration, CarrierName, User
from prepfox.utils.logger import carrier_logger, logger
from prepfox.utils.timeutils import as_utc, utcnow


UPS_SANDBOX_URL = "https://wwwcie.ups.com"
UPS_PRODUCTION_URL = "https://onlinetools.ups.com"

REFRESH_SKEW = timedelta(minutes=5)

# Expiry written when a token is cleared; always in the past.
CLEARED_TOKEN_EXPIRES_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)

_managed_token_cache: Dict[str, tuple] = {}


@dataclass
class UpsCredentials:
    access_token: str
    account_number: Optional[str]
    client_id: Optional[str]
    base_url: str
    token_expires_at: Optional[datetime] = None
    configuration_id: Optional[str] = None
    country: Optional[str] = None
    negotiated_rates: bool = False


def base_url_for(config: CarrierConfiguration) -> str:
    return UPS_SANDBOX_URL if config.test_mode else UPS_PRODUCTION_URL


def token_is_fresh(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    expires_at = as_utc(expires_at)
    if expires_at is None:
        return False
    return expires_at > (now or utcnow()) + REFRESH_SKEW


def _basic_auth(client_id: str, client_secret: str) -> str:
    return base64.b64encode(f"{client_id}:{client_secret}".encode("utf-8")).decode("ascii")


def _credentials_from(config: CarrierConfiguration) -> UpsCredentials:
    creds = config.api_credentials
    return UpsCredentials(
        access_token=config.access_token,
        account_number=config.account_number or creds.get("account_number"),
        client_id=creds.get("client_id"),
        base_url=base_url_for(config),
        token_expires_at=as_utc(config.token_expires_at),
        configuration_id=config.id,
        country=config.country,
        negotiated_rates=bool(config.negotiated_rates),
    )


async def _post_token_request(
    url: str,
    client_id: str,
    client_secret: str,
    form: Dict[str, str],
    *,
    error_code: str,
) -> Dict[str, Any]:
    headers = {
        "Content-Type": "application/x-www-form-urlencoded",
        "Authorization": f"Basic {_basic_auth(client_id, client_secret)}",
        "x-merchant-id": client_id,
    }
    try:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(url, data=form, headers=headers)
    except httpx.HTTPError as e:
        carrier_logger.log_carrier_event(
            event_type=error_code,
            description=f"UPS token request to {url} failed",
            request_data={"grant_type": form.get("grant_type"), "client_id": client_id},
            status="error",
            error=f"{type(e).__name__}: {e}",
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": error_code, "message": f"UPS token request failed: {e}"},
        )

    try:
        body = response.json()
    except ValueError:
        body = {"raw": response.text}

    if response.status_code != 200 or not body.get("access_token"):
        carrier_logger.log_carrier_event(
            event_type=error_code,
            description=f"UPS token request returned HTTP {response.status_code}",
            request_data={"grant_type": form.get("grant_type"), "client_id": client_id},
            response_data=body,
            status="error",
            error=response.text[:500],
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": error_code, "message": response.text[:500] or f"HTTP {response.status_code}"},
        )

    carrier_logger.log_carrier_event(
        event_type="ups_token_issued",
        description=f"UPS issued a token via {form.get('grant_type')}",
        request_data={"client_id": client_id},
        status="success",
    )
    return body


async def refresh_access_token(base_url: str, client_id: str, client_secret: str, refresh_token: str) -> Dict[str, Any]:
    return await _post_token_request(
        f"{base_url}/security/v1/oauth/refresh",
        client_id,
        client_secret,
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
        error_code="token_refresh_failed",
    )


async def fetch_client_credentials_token(base_url: str, client_id: str, client_secret: str) -> Dict[str, Any]:
    return await _post_token_request(
        f"{base_url}/security/v1/oauth/token",
        client_id,
        client_secret,
        {"grant_type": "client_credentials"},
        error_code="token_refresh_failed",
    )


async def exchange_authorization_code(
    code: str,
    redirect_uri: str,
    *,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    base_url: Optional[str] = None,
) -> Dict[str, Any]:
    client_id = client_id or settings.UPS_CLIENT_ID
    client_secret = client_secret or settings.UPS_CLIENT_SECRET
    if not client_id or not client_secret:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "missing_credentials", "message": "UPS OAuth client is not configured"},
        )
    return await _post_token_request(
        f"{base_url or settings.ups_base_url}/security/v1/oauth/token",
        client_id,
        client_secret,
        {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
        error_code="token_exchange_failed",
    )


def apply_token_response(config: CarrierConfiguration, token_data: Dict[str, Any], now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    expires_in = int(token_data.get("expires_in") or 0)
    config.access_token = token_data["access_token"]
    # UPS does not always rotate the refresh token.
    if token_data.get("refresh_token"):
        config.refresh_token = token_data["refresh_token"]
    config.token_expires_at = now + timedelta(seconds=expires_in)
    config.updated_at = now


async def ensure_valid_ups_token(db: Session, config: CarrierConfiguration, *, force: bool = False) -> UpsCredentials:
    """Return usable credentials for ``config``, refreshing the token if needed."""

    if not force and config.access_token and token_is_fresh(config.token_expires_at):
        return _credentials_from(config)

    locked = (
        db.query(CarrierConfiguration)
        .filter(CarrierConfiguration.id == config.id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if locked is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "not_found", "message": "UPS configuration not found"},
        )
    if not force and locked.access_token and token_is_fresh(locked.token_expires_at):
        # Another request refreshed while we waited for the lock.
        db.commit()
        return _credentials_from(locked)

    creds = locked.api_credentials
    client_id = creds.get("client_id")
    client_secret = creds.get("client_secret")
    if not client_id or not client_secret:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "missing_credentials", "message": "UPS client credentials are not configured"},
        )

    base_url = base_url_for(locked)
    try:
        if locked.refresh_token:
            token_data = await refresh_access_token(base_url, client_id, client_secret, locked.refresh_token)
        else:
            token_data = await fetch_client_credentials_token(base_url, client_id, client_secret)
    except HTTPException:
        db.rollback()
        raise

    apply_token_response(locked, token_data)
    db.commit()
    db.refresh(locked)
    logger.info(f"UPS token refreshed for configuration {locked.id}; expires_at={locked.token_expires_at}")
    return _credentials_from(locked)


def clear_ups_token(db: Session, config: CarrierConfiguration) -> CarrierConfiguration:
    config.access_token = None
    config.token_expires_at = CLEARED_TOKEN_EXPIRES_AT
    config.updated_at = utcnow()
    db.commit()
    db.refresh(config)
    logger.info(f"UPS token cleared for configuration {config.id}")
    return config


def get_active_ups_configurations(db: Session, user_id: str):
    return (
        db.query(CarrierConfiguration)
        .filter(
            CarrierConfiguration.user_id == user_id,
            CarrierConfiguration.carrier_name == CarrierName.ups.value,
            CarrierConfiguration.is_active.is_(True),
        )
        .order_by(CarrierConfiguration.created_at.asc())
        .all()
    )


def store_oauth_tokens(db: Session, user_id: str, token_data: Dict[str, Any]) -> int:
    """Attach an authorization-code grant to the user's UPS configurations.

    Only configurations whose token is missing or already expired are
    touched. Returns the number of rows updated.
    """
    now = utcnow()
    updated = 0
    for config in get_active_ups_configurations(db, user_id):
        expires_at = as_utc(config.token_expires_at)
        if config.access_token and expires_at and expires_at > now:
            continue
        apply_token_response(config, token_data, now)
        updated += 1
    db.commit()
    logger.info(f"UPS OAuth tokens stored on {updated} configuration(s) for user {user_id}")
    return updated


async def setup_ups_credentials(
    db: Session,
    user: User,
    *,
    client_id: str,
    client_secret: str,
    account_number: str,
    test_mode: bool = False,
    country: Optional[str] = None,
    negotiated_rates: bool = False,
    display_name: Optional[str] = None,
) -> CarrierConfiguration:
    """Validate UPS API credentials and save them on the user's UPS configuration."""

    base_url = UPS_SANDBOX_URL if test_mode else UPS_PRODUCTION_URL
    token_data = await fetch_client_credentials_token(base_url, client_id, client_secret)

    config = (
        db.query(CarrierConfiguration)
        .filter(
            CarrierConfiguration.user_id == user.id,
            CarrierConfiguration.carrier_name == CarrierName.ups.value,
        )
        .first()
    )
    if config is None:
        config = CarrierConfiguration(user_id=user.id, carrier_name=CarrierName.ups.value)
        db.add(config)

    new_credentials = {"client_id": client_id, "client_secret": client_secret}
    if config.api_credentials != new_credentials:
        # A refresh token is bound to the client that issued it.
        config.refresh_token = None

    config.display_name = display_name or config.display_name or "UPS"
    config.api_credentials = new_credentials
    config.account_number = account_number
    config.test_mode = test_mode
    config.country = (country or "").upper() or None
    config.negotiated_rates = negotiated_rates
    config.is_active = True
    apply_token_response(config, token_data)
    db.commit()
    db.refresh(config)
    logger.info(f"UPS credentials configured for user {user.id} (config {config.id})")
    return config


async def get_managed_ups_token() -> Optional[str]:
    """Client-credentials token for the PrepFox-managed UPS account.

    Cached in-process until it is within the refresh skew of expiring.
    Returns None when the managed account is not configured.
    """
    client_id = settings.UPS_CLIENT_ID
    client_secret = settings.UPS_CLIENT_SECRET
    if not client_id or not client_secret:
        return None

    cached = _managed_token_cache.get(client_id)
    if cached and token_is_fresh(cached[1]):
        return cached[0]

    token_data = await fetch_client_credentials_token(settings.ups_base_url, client_id, client_secret)
    expires_at = utcnow() + timedelta(seconds=int(token_data.get("expires_in") or 0))
    _managed_token_cache[client_id] = (token_data["access_token"], expires_at)
    return token_data["access_token"]
