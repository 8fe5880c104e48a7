import hashlib
import hmac

import httpx
import pytest
from fastapi import HTTPException

from prepfox.config import settings
from prepfox.models_sqlalchemy.models import Order, Product, ShopifySyncStatus, StoreConfiguration
from prepfox.services import shopify

from conftest import FakeResponse


@pytest.fixture(autouse=True)
def _no_retry_delay(monkeypatch):
    monkeypatch.setattr(shopify, "RETRY_DELAY_SECONDS", 0)


@pytest.fixture
def store(db, user):
    store = StoreConfiguration(user_id=user.id, platform="shopify", store_domain="demo-shop.myshopify.com")
    store.access_token = "shpat_abc123"
    db.add(store)
    db.commit()
    db.refresh(store)
    return store


def _link(page_info):
    return {"Link": f'<https://demo-shop.myshopify.com/admin/api/2023-10/products.json?limit=250&page_info={page_info}>; rel="next"'}


def _product(pid, handle, price="19.99"):
    return {
        "id": pid,
        "title": f"Product {pid}",
        "handle": handle,
        "tags": "summer, sale",
        "variants": [{"price": price, "sku": f"SKU-{pid}", "weight": 1.5, "weight_unit": "lb", "inventory_quantity": 4}],
        "images": [{"src": f"https://cdn.example.com/{pid}.jpg"}],
    }


@pytest.mark.parametrize("raw, expected", [
    ("shpat_abc123", "shpat_abc123"),
    ("  shpat_abc123\n", "shpat_abc123"),
    ('{"access_token": "shpat_fromjson"}', "shpat_fromjson"),
    ('"shpat_quoted"', "shpat_quoted"),
    ("Bearer shpat_xyz789", "shpat_xyz789"),
])
def test_clean_access_token(raw, expected):
    assert shopify.clean_access_token(raw) == expected


def test_clean_access_token_rejects_garbage():
    with pytest.raises(HTTPException) as exc:
        shopify.clean_access_token("not-a-token")

    assert exc.value.detail["code"] == "invalid_access_token"


@pytest.mark.parametrize("domain, expected", [
    ("https://Demo-Shop.myshopify.com/", "demo-shop.myshopify.com"),
    ("demo-shop", "demo-shop.myshopify.com"),
    ("demo-shop.myshopify.com_extra", "demo-shop.myshopify.com"),
])
def test_normalize_shop_domain(domain, expected):
    assert shopify.normalize_shop_domain(domain) == expected


def test_next_page_info():
    header = (
        '<https://x.myshopify.com/admin/api/2023-10/orders.json?page_info=prev1>; rel="previous", '
        '<https://x.myshopify.com/admin/api/2023-10/orders.json?limit=250&page_info=next2>; rel="next"'
    )

    assert shopify.next_page_info(header) == "next2"
    assert shopify.next_page_info(None) is None


@pytest.mark.asyncio
async def test_product_sync_follows_pages_and_upserts(db, user, store, fake_http):
    fake_http.add("GET", "/products.json", [
        FakeResponse(200, {"products": [_product(1, "one"), _product(2, "two")]}, headers=_link("cursor2")),
        FakeResponse(200, {"products": [_product(1, "one", price="24.00")]}),
    ])

    result = await shopify.sync_products(db, user, store)

    assert result == {"success": True, "synced": 3, "has_more": False, "status": "completed"}
    products = {p.handle: p for p in db.query(Product).all()}
    assert set(products) == {"one", "two"}
    assert float(products["one"].price) == 24.0
    assert products["two"].image_url == "https://cdn.example.com/2.jpg"

    first, second = fake_http.calls
    assert first["headers"]["X-Shopify-Access-Token"] == "shpat_abc123"
    assert first["params"]["fields"] == shopify.PRODUCT_FIELDS
    assert second["params"] == {"limit": 250, "page_info": "cursor2"}


@pytest.mark.asyncio
async def test_sync_with_page_cap_resumes_from_saved_cursor(db, user, store, fake_http):
    fake_http.add("GET", "/products.json", [
        FakeResponse(200, {"products": [_product(1, "one")]}, headers=_link("cursor2")),
        FakeResponse(200, {"products": [_product(2, "two")]}),
    ])

    partial = await shopify.sync_products(db, user, store, max_pages=1)
    status_row = db.query(ShopifySyncStatus).one()
    assert partial["has_more"] is True
    assert status_row.last_page_info == "cursor2"
    assert status_row.status == "in_progress"

    final = await shopify.sync_products(db, user, store, max_pages=1)

    db.refresh(status_row)
    assert final["status"] == "completed"
    assert fake_http.calls[1]["params"]["page_info"] == "cursor2"
    assert status_row.items_synced == 2
    assert status_row.last_page_info is None


@pytest.mark.asyncio
async def test_transient_failures_are_retried(db, user, store, fake_http):
    fake_http.add("GET", "/products.json", [
        httpx.ReadTimeout("slow"),
        FakeResponse(500, text="oops"),
        FakeResponse(200, {"products": [_product(1, "one")]}),
    ])

    result = await shopify.sync_products(db, user, store)

    assert result["synced"] == 1
    assert len(fake_http.calls) == 3


@pytest.mark.asyncio
async def test_auth_failure_is_not_retried_and_marks_sync_failed(db, user, store, fake_http):
    fake_http.add("GET", "/orders.json", FakeResponse(401, text="Invalid API key or access token"))

    with pytest.raises(HTTPException) as exc:
        await shopify.sync_orders(db, user, store)

    assert exc.value.status_code == 502
    assert len(fake_http.calls) == 1
    row = db.query(ShopifySyncStatus).one()
    assert row.status == "failed"
    assert "401" in row.error_message
    assert shopify.sync_status(db, user)[0]["status"] == "failed"


@pytest.mark.asyncio
async def test_order_sync_maps_customer_weight_and_items(db, user, store, fake_http):
    fake_http.add("GET", "/orders.json", FakeResponse(200, {"orders": [{
        "id": 900,
        "name": "#1001",
        "email": "buyer@example.com",
        "total_price": "55.10",
        "currency": "USD",
        "financial_status": "paid",
        "fulfillment_status": None,
        "total_weight": 907,
        "customer": {"first_name": "Jane", "last_name": "Buyer"},
        "shipping_address": {"address1": "9 Elm", "city": "Denver", "zip": "80202", "country_code": "US"},
        "line_items": [{"id": 1, "sku": "SKU-1", "title": "Mug", "quantity": 2, "price": "12.50"}],
    }]}))

    await shopify.sync_orders(db, user, store)

    order = db.query(Order).one()
    assert order.external_order_id == "900"
    assert order.customer_name == "Jane Buyer"
    assert order.fulfillment_status == "unfulfilled"
    assert order.package_weight == 2.0
    assert order.store_configuration_id == store.id
    assert [(i.sku, i.quantity) for i in order.items] == [("SKU-1", 2)]
    assert fake_http.calls[0]["params"]["status"] == "any"


@pytest.mark.asyncio
async def test_complete_oauth_saves_store_with_ship_from(db, user, fake_http, monkeypatch):
    monkeypatch.setattr(settings, "SHOPIFY_CLIENT_ID", "app-id")
    monkeypatch.setattr(settings, "SHOPIFY_CLIENT_SECRET", "app-secret")
    fake_http.add("POST", "/admin/oauth/access_token", FakeResponse(200, {"access_token": "shpat_new"}))
    fake_http.add("GET", "/shop.json", FakeResponse(200, {"shop": {"name": "Demo", "address1": "1 Shop St", "city": "Reno", "zip": "89501", "country_code": "US"}}))

    store = await shopify.complete_oauth(db, user.id, "demo-shop", "auth-code")

    assert store.store_domain == "demo-shop.myshopify.com"
    assert store.access_token == "shpat_new"
    assert store.store_name == "Demo"
    assert store.ship_from_address["city"] == "Reno"
    assert fake_http.calls[0]["json"]["code"] == "auth-code"


def test_verify_oauth_hmac(monkeypatch):
    monkeypatch.setattr(settings, "SHOPIFY_CLIENT_SECRET", "app-secret")
    params = {"code": "abc", "shop": "demo-shop.myshopify.com", "state": "s", "timestamp": "1700000000"}
    message = "&".join(f"{k}={v}" for k, v in sorted(params.items()))
    params["hmac"] = hmac.new(b"app-secret", message.encode(), hashlib.sha256).hexdigest()

    assert shopify.verify_oauth_hmac(params) is True
    assert shopify.verify_oauth_hmac({**params, "code": "tampered"}) is False
    assert shopify.verify_oauth_hmac({k: v for k, v in params.items() if k != "hmac"}) is False
