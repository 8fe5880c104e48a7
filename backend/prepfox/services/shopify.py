"""Shopify Admin REST sync for products and orders.

Tokens are stored encrypted on ``store_configurations``. Historically some
rows were saved as JSON blobs or with stray whitespace, so every read goes
through :func:`clean_access_token` before it is sent to Shopify.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from prepfox.config import settings
from prepfox.models_sqlalchemy.models import (
    Order,
    OrderItem,
    Product,
    ShopifySyncStatus,
    StoreConfiguration,
    SyncStatus,
    User,
)
from prepfox.utils.logger import carrier_logger, logger
from prepfox.utils.timeutils import utcnow


PAGE_SIZE = 250
MAX_PAGE_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 2.0
GRAMS_PER_POUND = 453.592

PRODUCT_FIELDS = (
    "id,title,handle,vendor,product_type,tags,status,variants,images,body_html,created_at,updated_at"
)

_SHPAT_RE = re.compile(r"shpat_[a-zA-Z0-9]+")
_NEXT_LINK_RE = re.compile(r'<[^>]*[?&]page_info=([^&>]+)[^>]*>;\s*rel="next"')


def clean_access_token(raw: Optional[str]) -> str:
    token = (raw or "").strip()
    try:
        parsed = json.loads(token)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict) and parsed.get("access_token"):
        token = str(parsed["access_token"])
    elif isinstance(parsed, str):
        token = parsed

    token = re.sub(r"[\s\u2028\u2029]", "", token)
    token = re.sub(r"[^\w-]", "", token)

    match = _SHPAT_RE.search(token)
    if match:
        token = match.group(0)
    if not token.startswith("shpat_"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_access_token", "message": "Stored Shopify access token is not a valid shpat_ token"},
        )
    return token


def normalize_shop_domain(domain: str) -> str:
    shop = re.sub(r"^https?://", "", (domain or "").strip()).rstrip("/")
    if "_" in shop:
        shop = shop.split("_")[0]
    if shop and "." not in shop:
        shop = f"{shop}.myshopify.com"
    return shop.lower()


def next_page_info(link_header: Optional[str]) -> Optional[str]:
    if not link_header:
        return None
    match = _NEXT_LINK_RE.search(link_header)
    return match.group(1) if match else None


def api_base(domain: str) -> str:
    return f"https://{normalize_shop_domain(domain)}/admin/api/{settings.SHOPIFY_API_VERSION}"


async def _get_page(client: httpx.AsyncClient, url: str, params: Dict[str, Any], token: str) -> httpx.Response:
    last_error: Optional[str] = None
    for attempt in range(1, MAX_PAGE_ATTEMPTS + 1):
        try:
            response = await client.get(url, params=params, headers={"X-Shopify-Access-Token": token})
            if response.status_code == 200:
                return response
            last_error = f"HTTP {response.status_code}: {response.text[:300]}"
            if response.status_code in (401, 403, 404):
                break
        except httpx.HTTPError as e:
            last_error = f"{type(e).__name__}: {e}"
        logger.warning(f"Shopify page fetch failed (attempt {attempt}/{MAX_PAGE_ATTEMPTS}): {last_error}")
        if attempt < MAX_PAGE_ATTEMPTS:
            await asyncio.sleep(RETRY_DELAY_SECONDS)

    carrier_logger.log_carrier_event(
        event_type="shopify_fetch_failed",
        description=f"Shopify request to {url} failed",
        status="error",
        error=last_error,
    )
    raise HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"code": "shopify_error", "message": last_error or "Shopify request failed"},
    )


async def fetch_paginated(
    domain: str,
    token: str,
    resource: str,
    params: Dict[str, Any],
    *,
    start_page_info: Optional[str] = None,
    max_pages: Optional[int] = None,
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """Fetch ``resource`` pages following the ``Link: rel="next"`` cursor.

    Returns the records and the cursor of the next unfetched page (None when
    the listing is exhausted).
    """
    url = f"{api_base(domain)}/{resource}.json"
    records: List[Dict[str, Any]] = []
    page_info = start_page_info
    pages = 0

    async with httpx.AsyncClient(timeout=30.0) as client:
        while True:
            # Shopify rejects filter params alongside page_info.
            page_params = {"limit": PAGE_SIZE, "page_info": page_info} if page_info else dict(params)
            response = await _get_page(client, url, page_params, token)
            records.extend(response.json().get(resource) or [])
            pages += 1
            page_info = next_page_info(response.headers.get("Link"))
            if not page_info or (max_pages and pages >= max_pages):
                break

    return records, page_info


def _sync_status_row(db: Session, user: User, store: StoreConfiguration, sync_type: str) -> ShopifySyncStatus:
    row = (
        db.query(ShopifySyncStatus)
        .filter(ShopifySyncStatus.user_id == user.id, ShopifySyncStatus.sync_type == sync_type)
        .first()
    )
    if row is None:
        row = ShopifySyncStatus(user_id=user.id, sync_type=sync_type)
        db.add(row)
    row.store_configuration_id = store.id
    row.status = SyncStatus.in_progress.value
    row.started_at = utcnow()
    row.error_message = None
    db.commit()
    return row


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def product_record(product: Dict[str, Any]) -> Dict[str, Any]:
    variant = (product.get("variants") or [{}])[0]
    image = (product.get("images") or [{}])[0]
    return {
        "shopify_product_id": str(product.get("id")),
        "handle": product.get("handle") or str(product.get("id")),
        "title": product.get("title") or "",
        "description": product.get("body_html"),
        "product_type": product.get("product_type"),
        "vendor": product.get("vendor"),
        "tags": product.get("tags"),
        "status": product.get("status"),
        "price": _to_float(variant.get("price")),
        "compare_at_price": _to_float(variant.get("compare_at_price")),
        "sku": variant.get("sku"),
        "weight": _to_float(variant.get("weight")),
        "weight_unit": variant.get("weight_unit"),
        "inventory_quantity": variant.get("inventory_quantity"),
        "image_url": image.get("src"),
    }


def upsert_products(db: Session, user: User, products: List[Dict[str, Any]]) -> int:
    count = 0
    for raw in products:
        record = product_record(raw)
        existing = (
            db.query(Product)
            .filter(Product.user_id == user.id, Product.handle == record["handle"])
            .first()
        )
        if existing is None:
            db.add(Product(user_id=user.id, **record))
            db.flush()
        else:
            for key, value in record.items():
                setattr(existing, key, value)
        count += 1
    db.commit()
    return count


def order_record(order: Dict[str, Any]) -> Dict[str, Any]:
    customer = order.get("customer") or {}
    shipping = order.get("shipping_address") or {}
    name = shipping.get("name") or " ".join(
        part for part in (customer.get("first_name"), customer.get("last_name")) if part
    )
    grams = _to_float(order.get("total_weight"))
    return {
        "order_number": order.get("name") or str(order.get("order_number") or ""),
        "customer_name": name or None,
        "customer_email": order.get("email") or customer.get("email"),
        "shipping_address": shipping or None,
        "total_price": _to_float(order.get("total_price")),
        "currency": order.get("currency"),
        "financial_status": order.get("financial_status"),
        "fulfillment_status": order.get("fulfillment_status") or "unfulfilled",
        "package_weight": round(grams / GRAMS_PER_POUND, 2) if grams else None,
    }


def upsert_orders(db: Session, user: User, store: StoreConfiguration, orders: List[Dict[str, Any]]) -> int:
    count = 0
    for raw in orders:
        external_id = str(raw.get("id"))
        record = order_record(raw)
        order = (
            db.query(Order)
            .filter(Order.user_id == user.id, Order.external_order_id == external_id)
            .first()
        )
        if order is None:
            order = Order(user_id=user.id, external_order_id=external_id, store_configuration_id=store.id)
            db.add(order)
            db.flush()
        for key, value in record.items():
            setattr(order, key, value)

        order.items = [
            OrderItem(
                external_line_item_id=str(item.get("id")),
                sku=item.get("sku"),
                title=item.get("title"),
                quantity=int(item.get("quantity") or 1),
                price=_to_float(item.get("price")),
            )
            for item in raw.get("line_items") or []
        ]
        count += 1
    db.commit()
    return count


def get_store(db: Session, user: User, store_id: Optional[str] = None) -> StoreConfiguration:
    query = db.query(StoreConfiguration).filter(
        StoreConfiguration.user_id == user.id,
        StoreConfiguration.platform == "shopify",
        StoreConfiguration.is_active.is_(True),
    )
    if store_id:
        query = query.filter(StoreConfiguration.id == store_id)
    store = query.first()
    if store is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shopify store not connected")
    return store


async def _run_sync(db: Session, user: User, store: StoreConfiguration, sync_type: str, max_pages: Optional[int]) -> Dict[str, Any]:
    token = clean_access_token(store.access_token)
    row = _sync_status_row(db, user, store, sync_type)
    resource = "products" if sync_type == "products" else "orders"
    params: Dict[str, Any] = {"limit": PAGE_SIZE}
    if resource == "products":
        params["fields"] = PRODUCT_FIELDS
    else:
        params["status"] = "any"

    try:
        records, cursor = await fetch_paginated(
            store.store_domain,
            token,
            resource,
            params,
            start_page_info=row.last_page_info,
            max_pages=max_pages,
        )
        if resource == "products":
            synced = upsert_products(db, user, records)
        else:
            synced = upsert_orders(db, user, store, records)
    except HTTPException as e:
        db.rollback()
        row.status = SyncStatus.failed.value
        row.error_message = e.detail.get("message") if isinstance(e.detail, dict) else str(e.detail)
        db.commit()
        raise

    row.items_synced = (row.items_synced or 0) + synced if row.last_page_info else synced
    row.last_page_info = cursor
    row.status = SyncStatus.in_progress.value if cursor else SyncStatus.completed.value
    row.last_sync_at = utcnow()
    db.commit()
    logger.info(f"Shopify {resource} sync for user {user.id}: {synced} records, more={bool(cursor)}")
    return {
        "success": True,
        "synced": synced,
        "has_more": bool(cursor),
        "status": row.status,
    }


async def sync_products(db: Session, user: User, store: StoreConfiguration, max_pages: Optional[int] = None) -> Dict[str, Any]:
    return await _run_sync(db, user, store, "products", max_pages)


async def sync_orders(db: Session, user: User, store: StoreConfiguration, max_pages: Optional[int] = None) -> Dict[str, Any]:
    return await _run_sync(db, user, store, "orders", max_pages)


async def complete_oauth(db: Session, user_id: str, shop: str, code: str) -> StoreConfiguration:
    """Exchange an OAuth ``code`` for an offline token and save the store."""
    if not settings.shopify_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "missing_credentials", "message": "Shopify app credentials are not configured"},
        )
    shop = normalize_shop_domain(shop)

    async with httpx.AsyncClient(timeout=30.0) as client:
        token_resp = await client.post(
            f"https://{shop}/admin/oauth/access_token",
            json={
                "client_id": settings.SHOPIFY_CLIENT_ID,
                "client_secret": settings.SHOPIFY_CLIENT_SECRET,
                "code": code,
            },
        )
        if token_resp.status_code != 200:
            carrier_logger.log_carrier_event(
                event_type="shopify_oauth_failed",
                description=f"Shopify token exchange for {shop} failed",
                status="error",
                error=token_resp.text[:500],
            )
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "token_exchange_failed", "message": token_resp.text[:500]},
            )
        access_token = token_resp.json().get("access_token")

        shop_resp = await client.get(
            f"https://{shop}/admin/api/{settings.SHOPIFY_API_VERSION}/shop.json",
            headers={"X-Shopify-Access-Token": access_token},
        )
        shop_info = shop_resp.json().get("shop", {}) if shop_resp.status_code == 200 else {}

    store = (
        db.query(StoreConfiguration)
        .filter(
            StoreConfiguration.user_id == user_id,
            StoreConfiguration.platform == "shopify",
            StoreConfiguration.store_domain == shop,
        )
        .first()
    )
    if store is None:
        store = StoreConfiguration(user_id=user_id, platform="shopify", store_domain=shop)
        db.add(store)
    store.access_token = access_token
    store.store_name = shop_info.get("name") or store.store_name or shop
    store.is_active = True
    if not store.ship_from_address and shop_info.get("address1"):
        store.ship_from_address = {
            "name": shop_info.get("name"),
            "address_line1": shop_info.get("address1"),
            "address_line2": shop_info.get("address2"),
            "city": shop_info.get("city"),
            "state": shop_info.get("province_code"),
            "postal_code": shop_info.get("zip"),
            "country": shop_info.get("country_code"),
            "phone": shop_info.get("phone"),
        }
    db.commit()
    db.refresh(store)
    logger.info(f"Shopify store {shop} connected for user {user_id}")
    return store


def verify_oauth_hmac(params: Dict[str, str]) -> bool:
    """Check the ``hmac`` Shopify appends to OAuth redirects."""
    received = params.get("hmac")
    if not received or not settings.SHOPIFY_CLIENT_SECRET:
        return False
    message = "&".join(f"{key}={value}" for key, value in sorted(params.items()) if key not in ("hmac", "signature"))
    digest = hmac.new(settings.SHOPIFY_CLIENT_SECRET.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, received)


def sync_status(db: Session, user: User) -> List[Dict[str, Any]]:
    rows = db.query(ShopifySyncStatus).filter(ShopifySyncStatus.user_id == user.id).all()
    return [
        {
            "sync_type": row.sync_type,
            "status": row.status,
            "items_synced": row.items_synced or 0,
            "has_more": bool(row.last_page_info),
            "error_message": row.error_message,
            "started_at": row.started_at.isoformat() if row.started_at else None,
            "last_sync_at": row.last_sync_at.isoformat() if row.last_sync_at else None,
        }
        for row in rows
    ]
