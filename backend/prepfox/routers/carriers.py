import html
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from prepfox.config import settings
from prepfox.models_sqlalchemy import get_db
from prepfox.models_sqlalchemy.models import CarrierName, User
from prepfox.services import carrier_configurations, ups_auth
from prepfox.services.auth import get_current_active_user
from prepfox.utils.logger import logger
from prepfox.utils.oauth_state import create_oauth_state, decode_oauth_state

router = APIRouter(prefix="/api/carriers", tags=["carriers"])


class ShippingServiceIn(BaseModel):
    service_code: str
    service_name: Optional[str] = None
    service_type: Optional[str] = None
    is_enabled: Optional[bool] = True


class CarrierConfigurationCreate(BaseModel):
    carrier_name: str
    display_name: Optional[str] = None
    api_credentials: Dict[str, Any] = Field(default_factory=dict)
    account_number: Optional[str] = None
    country: Optional[str] = None
    markup_percent: float = 0.0
    negotiated_rates: bool = False
    test_mode: bool = False
    is_active: bool = True
    services: Optional[List[ShippingServiceIn]] = None


class CarrierConfigurationUpdate(BaseModel):
    display_name: Optional[str] = None
    api_credentials: Optional[Dict[str, Any]] = None
    account_number: Optional[str] = None
    country: Optional[str] = None
    markup_percent: Optional[float] = None
    negotiated_rates: Optional[bool] = None
    test_mode: Optional[bool] = None
    is_active: Optional[bool] = None
    services: Optional[List[ShippingServiceIn]] = None


class UpsSetupRequest(BaseModel):
    client_id: str
    client_secret: str
    account_number: str
    test_mode: bool = False
    country: Optional[str] = None
    negotiated_rates: bool = False
    display_name: Optional[str] = None


class UpsOAuthStartRequest(BaseModel):
    redirect_to: Optional[str] = None


@router.get("/configurations")
async def list_configurations(
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    configs = carrier_configurations.list_configurations(db, current_user)
    return {"configurations": [carrier_configurations.configuration_to_row(c) for c in configs]}


@router.post("/configurations", status_code=status.HTTP_201_CREATED)
async def create_configuration(
    payload: CarrierConfigurationCreate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    data = payload.model_dump()
    if payload.services is None:
        data.pop("services")
    config = carrier_configurations.create_configuration(db, current_user, data)
    return carrier_configurations.configuration_to_row(config)


@router.get("/configurations/{configuration_id}")
async def get_configuration(
    configuration_id: str,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    config = carrier_configurations.get_configuration(db, current_user, configuration_id)
    return carrier_configurations.configuration_to_row(config)


@router.patch("/configurations/{configuration_id}")
async def update_configuration(
    configuration_id: str,
    payload: CarrierConfigurationUpdate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    config = carrier_configurations.update_configuration(
        db, current_user, configuration_id, payload.model_dump(exclude_unset=True)
    )
    return carrier_configurations.configuration_to_row(config)


@router.delete("/configurations/{configuration_id}")
async def delete_configuration(
    configuration_id: str,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    carrier_configurations.delete_configuration(db, current_user, configuration_id)
    return {"success": True}


def _ups_configuration(db: Session, user: User, configuration_id: str):
    config = carrier_configurations.get_configuration(db, user, configuration_id)
    if config.carrier_name != CarrierName.ups.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "unsupported_carrier", "message": "Configuration is not a UPS account"},
        )
    return config


@router.post("/ups/setup")
async def setup_ups(
    payload: UpsSetupRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    logger.info(f"UPS credential setup for user {current_user.id} test_mode={payload.test_mode}")
    config = await ups_auth.setup_ups_credentials(
        db,
        current_user,
        client_id=payload.client_id,
        client_secret=payload.client_secret,
        account_number=payload.account_number,
        test_mode=payload.test_mode,
        country=payload.country,
        negotiated_rates=payload.negotiated_rates,
        display_name=payload.display_name,
    )
    return {"success": True, "configuration": carrier_configurations.configuration_to_row(config)}


@router.post("/ups/{configuration_id}/refresh-token")
async def refresh_ups_token(
    configuration_id: str,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    config = _ups_configuration(db, current_user, configuration_id)
    creds = await ups_auth.ensure_valid_ups_token(db, config, force=True)
    return {
        "success": True,
        "configuration_id": config.id,
        "token_expires_at": creds.token_expires_at.isoformat() if creds.token_expires_at else None,
    }


@router.post("/ups/{configuration_id}/clear-token")
async def clear_ups_token(
    configuration_id: str,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    config = _ups_configuration(db, current_user, configuration_id)
    ups_auth.clear_ups_token(db, config)
    return {"success": True, "message": "UPS token cleared; it will be refreshed on next use"}


@router.post("/ups/oauth/start")
async def start_ups_oauth(
    payload: UpsOAuthStartRequest,
    current_user: User = Depends(get_current_active_user),
):
    if not settings.UPS_CLIENT_ID or not settings.UPS_REDIRECT_URI:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "missing_credentials", "message": "UPS OAuth client is not configured"},
        )
    state = create_oauth_state(current_user.id, "ups", payload.redirect_to)
    query = urlencode(
        {
            "client_id": settings.UPS_CLIENT_ID,
            "redirect_uri": settings.UPS_REDIRECT_URI,
            "response_type": "code",
            "state": state,
        }
    )
    return {"authorization_url": f"{settings.ups_base_url}/security/v1/oauth/authorize?{query}"}


def _html_error(title: str, message: str, status_code: int) -> HTMLResponse:
    return HTMLResponse(
        f"<html><body><h1>{html.escape(title)}</h1><p>{html.escape(message or '')}</p></body></html>",
        status_code=status_code,
    )


@router.get("/ups/oauth/callback")
async def ups_oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    if error:
        logger.error(f"UPS OAuth error: {error}")
        return _html_error("Authorization Failed", f"Error: {error}", 400)
    if not code:
        return _html_error("Authorization Failed", "No authorization code received", 400)

    try:
        user_id, redirect_to = decode_oauth_state(state, "ups")
        token_data = await ups_auth.exchange_authorization_code(code, settings.UPS_REDIRECT_URI or "")
    except HTTPException as e:
        message = e.detail.get("message") if isinstance(e.detail, dict) else str(e.detail)
        return _html_error("Authorization Failed", message, e.status_code)

    updated = ups_auth.store_oauth_tokens(db, user_id, token_data)
    if updated == 0:
        return _html_error(
            "No Configuration Found",
            "No UPS configuration needs authorization. Please set up UPS credentials first.",
            400,
        )
    return RedirectResponse(redirect_to or f"{settings.FRONTEND_URL.rstrip('/')}/shipping", status_code=302)
