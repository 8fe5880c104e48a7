from datetime import timedelta

import pytest

from prepfox.models_sqlalchemy.models import CarrierConfiguration, CarrierTokenRefreshLog
from prepfox.services import carrier_token_refresh
from prepfox.utils.timeutils import utcnow
from prepfox.workers import run_once

from conftest import FakeResponse


def _config(db, user, *, minutes_left, carrier="ups", is_active=True, client_secret="csecret"):
    config = CarrierConfiguration(user_id=user.id, carrier_name=carrier, is_active=is_active, account_number="A1")
    config.api_credentials = {"client_id": "cid", "client_secret": client_secret}
    config.access_token = "old"
    config.refresh_token = "refresh"
    config.token_expires_at = utcnow() + timedelta(minutes=minutes_left)
    db.add(config)
    db.commit()
    db.refresh(config)
    return config


def test_selects_active_ups_configurations_expiring_soon(db, user):
    soon = _config(db, user, minutes_left=10)
    expired = _config(db, user, minutes_left=-30)
    _config(db, user, minutes_left=120)
    _config(db, user, minutes_left=5, is_active=False)
    _config(db, user, minutes_left=5, carrier="shipstation")

    ids = {c.id for c in carrier_token_refresh.get_configurations_needing_refresh(db)}

    assert ids == {soon.id, expired.id}


@pytest.mark.asyncio
async def test_job_refreshes_and_logs_each_attempt(db, user, fake_http):
    ok = _config(db, user, minutes_left=5)
    broken = _config(db, user, minutes_left=5, client_secret=None)
    fake_http.add("POST", "/oauth/refresh", FakeResponse(200, {"access_token": "fresh", "expires_in": 14400}))

    result = await carrier_token_refresh.run_carrier_token_refresh_job(db, triggered_by="admin")

    assert result["status"] == "completed"
    assert result["configs_checked"] == 2
    assert result["configs_refreshed"] == 1
    assert result["errors"][0]["configuration_id"] == broken.id

    logs = {row.carrier_configuration_id: row for row in db.query(CarrierTokenRefreshLog).all()}
    assert logs[ok.id].success is True
    assert logs[ok.id].new_expires_at is not None
    assert logs[ok.id].finished_at is not None
    assert logs[ok.id].triggered_by == "admin"
    assert logs[broken.id].success is False
    assert logs[broken.id].error_code == "missing_credentials"

    db.refresh(ok)
    assert ok.access_token == "fresh"


@pytest.mark.asyncio
async def test_force_all_includes_fresh_tokens(db, user, fake_http):
    _config(db, user, minutes_left=600)
    fake_http.add("POST", "/oauth/refresh", FakeResponse(200, {"access_token": "fresh", "expires_in": 14400}))

    idle = await carrier_token_refresh.run_carrier_token_refresh_job(db)
    forced = await carrier_token_refresh.run_carrier_token_refresh_job(db, force_all=True)

    assert idle["configs_checked"] == 0
    assert forced["configs_refreshed"] == 1


@pytest.mark.asyncio
async def test_worker_run_once_uses_its_own_session(db, user, fake_http):
    _config(db, user, minutes_left=1)
    fake_http.add("POST", "/oauth/refresh", FakeResponse(400, {"error": "invalid_grant"}, text="invalid_grant"))

    result = await run_once()

    assert result["configs_checked"] == 1
    assert result["configs_refreshed"] == 0
    assert db.query(CarrierTokenRefreshLog).one().error_code == "token_refresh_failed"
