from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from prepfox.config import settings
from prepfox.models_sqlalchemy import get_db
from prepfox.models_sqlalchemy.models import User
from prepfox.services import shopify
from prepfox.services.auth import get_current_active_user
from prepfox.utils.logger import logger
from prepfox.utils.oauth_state import create_oauth_state, decode_oauth_state

router = APIRouter(prefix="/api/shopify", tags=["shopify"])


class SyncRequest(BaseModel):
    store_id: Optional[str] = None
    max_pages: Optional[int] = None


class OAuthStartRequest(BaseModel):
    shop: str
    redirect_to: Optional[str] = None


@router.post("/sync-products")
async def sync_products(
    payload: SyncRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    store = shopify.get_store(db, current_user, payload.store_id)
    return await shopify.sync_products(db, current_user, store, max_pages=payload.max_pages)


@router.post("/sync-orders")
async def sync_orders(
    payload: SyncRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    store = shopify.get_store(db, current_user, payload.store_id)
    return await shopify.sync_orders(db, current_user, store, max_pages=payload.max_pages)


@router.get("/sync-status")
async def get_sync_status(
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return {"syncs": shopify.sync_status(db, current_user)}


@router.post("/oauth/start")
async def start_oauth(
    payload: OAuthStartRequest,
    current_user: User = Depends(get_current_active_user),
):
    if not settings.shopify_configured or not settings.SHOPIFY_REDIRECT_URI:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "missing_credentials", "message": "Shopify app credentials are not configured"},
        )
    shop = shopify.normalize_shop_domain(payload.shop)
    query = urlencode(
        {
            "client_id": settings.SHOPIFY_CLIENT_ID,
            "scope": settings.SHOPIFY_SCOPES,
            "redirect_uri": settings.SHOPIFY_REDIRECT_URI,
            "state": create_oauth_state(current_user.id, "shopify", payload.redirect_to),
        }
    )
    return {"authorization_url": f"https://{shop}/admin/oauth/authorize?{query}"}


@router.get("/oauth/callback")
async def oauth_callback(request: Request, db: Session = Depends(get_db)):
    params = dict(request.query_params)
    code = params.get("code")
    shop = params.get("shop")
    if not code or not shop:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_request", "message": "Missing code or shop parameter"},
        )
    if not shopify.verify_oauth_hmac(params):
        logger.warning(f"Shopify OAuth callback for {shop} failed HMAC verification")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_signature", "message": "Shopify HMAC verification failed"},
        )

    user_id, redirect_to = decode_oauth_state(params.get("state"), "shopify")
    store = await shopify.complete_oauth(db, user_id, shop, code)
    target = redirect_to or f"{settings.FRONTEND_URL.rstrip('/')}/settings/integrations"
    separator = "&" if "?" in target else "?"
    return RedirectResponse(f"{target}{separator}shopify=connected&store_id={store.id}", status_code=302)
