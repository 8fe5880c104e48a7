from datetime import timedelta

import pytest
from fastapi import HTTPException

from prepfox.models_sqlalchemy.models import CarrierConfiguration
from prepfox.services import ups_auth
from prepfox.utils import crypto
from prepfox.utils.logger import carrier_logger
from prepfox.utils.timeutils import as_utc, utcnow

from conftest import FakeResponse


def _ups_config(db, user, *, access_token="old-token", refresh_token="refresh-1", expires_in_minutes=60, **kwargs):
    config = CarrierConfiguration(
        user_id=user.id,
        carrier_name="ups",
        display_name="UPS",
        account_number="A1B2C3",
        test_mode=True,
        **kwargs,
    )
    config.api_credentials = {"client_id": "cid", "client_secret": "csecret"}
    config.access_token = access_token
    config.refresh_token = refresh_token
    config.token_expires_at = utcnow() + timedelta(minutes=expires_in_minutes)
    db.add(config)
    db.commit()
    db.refresh(config)
    return config


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_http(db, user, fake_http):
    config = _ups_config(db, user, expires_in_minutes=30)

    creds = await ups_auth.ensure_valid_ups_token(db, config)

    assert creds.access_token == "old-token"
    assert creds.account_number == "A1B2C3"
    assert creds.base_url == ups_auth.UPS_SANDBOX_URL
    assert fake_http.calls == []


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_with_refresh_grant(db, user, fake_http):
    config = _ups_config(db, user, expires_in_minutes=2)
    fake_http.add(
        "POST",
        "/security/v1/oauth/refresh",
        FakeResponse(200, {"access_token": "new-token", "refresh_token": "refresh-2", "expires_in": 14399}),
    )

    creds = await ups_auth.ensure_valid_ups_token(db, config)

    assert creds.access_token == "new-token"
    call = fake_http.calls_to("/security/v1/oauth/refresh")[0]
    assert call["url"].startswith(ups_auth.UPS_SANDBOX_URL)
    assert call["data"] == {"grant_type": "refresh_token", "refresh_token": "refresh-1"}
    assert call["headers"]["Authorization"].startswith("Basic ")
    assert call["headers"]["x-merchant-id"] == "cid"

    db.refresh(config)
    assert config.access_token == "new-token"
    assert config.refresh_token == "refresh-2"
    assert as_utc(config.token_expires_at) > utcnow() + timedelta(hours=3)


@pytest.mark.asyncio
async def test_refresh_keeps_existing_refresh_token_when_not_rotated(db, user, fake_http):
    config = _ups_config(db, user, expires_in_minutes=-10)
    fake_http.add("POST", "/oauth/refresh", FakeResponse(200, {"access_token": "new-token", "expires_in": 3600}))

    await ups_auth.ensure_valid_ups_token(db, config)

    db.refresh(config)
    assert config.refresh_token == "refresh-1"


@pytest.mark.asyncio
async def test_missing_refresh_token_falls_back_to_client_credentials(db, user, fake_http):
    config = _ups_config(db, user, refresh_token=None, access_token=None)
    fake_http.add("POST", "/security/v1/oauth/token", FakeResponse(200, {"access_token": "cc-token", "expires_in": 3600}))

    creds = await ups_auth.ensure_valid_ups_token(db, config)

    assert creds.access_token == "cc-token"
    assert fake_http.calls[0]["data"] == {"grant_type": "client_credentials"}


@pytest.mark.asyncio
async def test_force_refreshes_a_fresh_token(db, user, fake_http):
    config = _ups_config(db, user, expires_in_minutes=120)
    fake_http.add("POST", "/oauth/refresh", FakeResponse(200, {"access_token": "forced", "expires_in": 3600}))

    creds = await ups_auth.ensure_valid_ups_token(db, config, force=True)

    assert creds.access_token == "forced"


@pytest.mark.asyncio
async def test_rejected_refresh_raises_token_refresh_failed_and_keeps_token(db, user, fake_http):
    config = _ups_config(db, user, expires_in_minutes=1)
    fake_http.add("POST", "/oauth/refresh", FakeResponse(401, {"response": {"errors": [{"code": "250002"}]}}, text="invalid"))

    with pytest.raises(HTTPException) as exc:
        await ups_auth.ensure_valid_ups_token(db, config)

    assert exc.value.status_code == 400
    assert exc.value.detail["code"] == "token_refresh_failed"
    db.refresh(config)
    assert config.access_token == "old-token"
    assert carrier_logger.get_logs(5)[-1]["status"] == "error"


@pytest.mark.asyncio
async def test_missing_client_credentials(db, user, fake_http):
    config = _ups_config(db, user, expires_in_minutes=-1)
    config.api_credentials = {"client_id": "cid"}
    db.commit()

    with pytest.raises(HTTPException) as exc:
        await ups_auth.ensure_valid_ups_token(db, config)

    assert exc.value.detail["code"] == "missing_credentials"
    assert fake_http.calls == []


def test_clear_token_marks_configuration_expired(db, user):
    config = _ups_config(db, user)

    ups_auth.clear_ups_token(db, config)

    assert config.access_token is None
    assert as_utc(config.token_expires_at) == ups_auth.CLEARED_TOKEN_EXPIRES_AT
    assert config.refresh_token == "refresh-1"
    assert not ups_auth.token_is_fresh(config.token_expires_at)


def test_store_oauth_tokens_only_touches_expired_configurations(db, user, other_user):
    live = _ups_config(db, user, expires_in_minutes=60)
    expired = _ups_config(db, user, access_token=None, expires_in_minutes=-60)
    foreign = _ups_config(db, other_user, access_token=None, expires_in_minutes=-60)

    updated = ups_auth.store_oauth_tokens(
        db, user.id, {"access_token": "oauth-token", "refresh_token": "oauth-refresh", "expires_in": 3600}
    )

    assert updated == 1
    db.refresh(live)
    db.refresh(expired)
    db.refresh(foreign)
    assert live.access_token == "old-token"
    assert expired.access_token == "oauth-token"
    assert expired.refresh_token == "oauth-refresh"
    assert foreign.access_token is None


@pytest.mark.asyncio
async def test_setup_validates_and_saves_credentials(db, user, fake_http):
    fake_http.add("POST", "/security/v1/oauth/token", FakeResponse(200, {"access_token": "setup-token", "expires_in": 3600}))

    config = await ups_auth.setup_ups_credentials(
        db,
        user,
        client_id="new-cid",
        client_secret="new-secret",
        account_number="XYZ789",
        country="ca",
    )

    assert config.carrier_name == "ups"
    assert config.account_number == "XYZ789"
    assert config.country == "CA"
    assert config.access_token == "setup-token"
    assert config.api_credentials == {"client_id": "new-cid", "client_secret": "new-secret"}
    assert fake_http.calls[0]["url"].startswith(ups_auth.UPS_PRODUCTION_URL)


@pytest.mark.asyncio
async def test_setup_with_bad_credentials_saves_nothing(db, user, fake_http):
    fake_http.add("POST", "/oauth/token", FakeResponse(401, {"error": "invalid_client"}, text="invalid_client"))

    with pytest.raises(HTTPException):
        await ups_auth.setup_ups_credentials(db, user, client_id="x", client_secret="y", account_number="Z")

    assert db.query(CarrierConfiguration).count() == 0


@pytest.mark.asyncio
async def test_managed_token_is_cached(monkeypatch, fake_http):
    from prepfox.config import settings

    monkeypatch.setattr(settings, "UPS_CLIENT_ID", "managed-cid")
    monkeypatch.setattr(settings, "UPS_CLIENT_SECRET", "managed-secret")
    monkeypatch.setattr(ups_auth, "_managed_token_cache", {})
    fake_http.add("POST", "/oauth/token", FakeResponse(200, {"access_token": "managed", "expires_in": 3600}))

    assert await ups_auth.get_managed_ups_token() == "managed"
    assert await ups_auth.get_managed_ups_token() == "managed"
    assert len(fake_http.calls) == 1


@pytest.mark.asyncio
async def test_managed_token_without_configuration(monkeypatch):
    from prepfox.config import settings

    monkeypatch.setattr(settings, "UPS_CLIENT_ID", None)

    assert await ups_auth.get_managed_ups_token() is None


@pytest.mark.asyncio
async def test_setup_with_new_client_drops_old_refresh_token(db, user, fake_http):
    config = _ups_config(db, user, refresh_token="old-client-refresh", expires_in_minutes=-5)
    fake_http.add("POST", "/security/v1/oauth/token", FakeResponse(200, {"access_token": "new-client-token", "expires_in": 3600}))

    await ups_auth.setup_ups_credentials(db, user, client_id="new-id", client_secret="new-secret", account_number="A1B2C3")

    db.refresh(config)
    assert config.refresh_token is None
    assert config.access_token == "new-client-token"


@pytest.mark.asyncio
async def test_setup_with_same_client_keeps_refresh_token(db, user, fake_http):
    config = _ups_config(db, user, refresh_token="refresh-1")
    fake_http.add("POST", "/security/v1/oauth/token", FakeResponse(200, {"access_token": "same-client-token", "expires_in": 3600}))

    await ups_auth.setup_ups_credentials(db, user, client_id="cid", client_secret="csecret", account_number="A1B2C3")

    db.refresh(config)
    assert config.refresh_token == "refresh-1"


@pytest.mark.asyncio
async def test_token_refreshed_while_waiting_for_lock_is_reused(db, user, fake_http):
    config = _ups_config(db, user, expires_in_minutes=-5)
    # Simulate a concurrent refresh: the stored row changes, the in-memory instance stays stale.
    db.query(CarrierConfiguration).filter(CarrierConfiguration.id == config.id).update(
        {
            CarrierConfiguration._access_token: crypto.encrypt("fresh-from-other-request"),
            CarrierConfiguration.token_expires_at: utcnow() + timedelta(hours=4),
        },
        synchronize_session=False,
    )

    creds = await ups_auth.ensure_valid_ups_token(db, config)

    assert creds.access_token == "fresh-from-other-request"
    assert fake_http.calls == []
