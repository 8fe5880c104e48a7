"""Scheduled refresh of UPS tokens stored on carrier configurations.

Used by the background worker loop and by the admin "refresh now" action.
Each attempt writes a ``carrier_token_refresh_log`` row so failures stay
visible after the fact.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List

from fastapi import HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session

from prepfox.models_sqlalchemy.models import CarrierConfiguration, CarrierName, CarrierTokenRefreshLog
from prepfox.services import ups_auth
from prepfox.utils.logger import logger
from prepfox.utils.timeutils import as_utc, utcnow


def get_configurations_needing_refresh(
    db: Session,
    threshold_minutes: int = 15,
) -> List[CarrierConfiguration]:
    cutoff = utcnow() + timedelta(minutes=threshold_minutes)
    return (
        db.query(CarrierConfiguration)
        .filter(
            CarrierConfiguration.carrier_name == CarrierName.ups.value,
            CarrierConfiguration.is_active.is_(True),
            or_(
                CarrierConfiguration.token_expires_at.is_(None),
                CarrierConfiguration.token_expires_at <= cutoff,
            ),
        )
        .all()
    )


async def refresh_configuration(
    db: Session,
    config: CarrierConfiguration,
    *,
    triggered_by: str = "scheduled",
) -> Dict[str, Any]:
    log_row = CarrierTokenRefreshLog(
        carrier_configuration_id=config.id,
        old_expires_at=as_utc(config.token_expires_at),
        triggered_by=triggered_by,
    )
    db.add(log_row)
    db.commit()

    try:
        creds = await ups_auth.ensure_valid_ups_token(db, config, force=True)
    except HTTPException as e:
        detail = e.detail if isinstance(e.detail, dict) else {"message": str(e.detail)}
        log_row.success = False
        log_row.error_code = detail.get("code")
        log_row.error_message = detail.get("message")
        log_row.finished_at = utcnow()
        db.commit()
        return {"success": False, "error": detail.get("message") or detail.get("code")}

    log_row.success = True
    log_row.new_expires_at = creds.token_expires_at
    log_row.finished_at = utcnow()
    db.commit()
    return {"success": True, "expires_at": creds.token_expires_at.isoformat() if creds.token_expires_at else None}


async def run_carrier_token_refresh_job(
    db: Session,
    *,
    force_all: bool = False,
    triggered_by: str = "scheduled",
) -> Dict[str, Any]:
    logger.info(f"Starting carrier token refresh job (force_all={force_all}, triggered_by={triggered_by})")

    if force_all:
        configs = (
            db.query(CarrierConfiguration)
            .filter(
                CarrierConfiguration.carrier_name == CarrierName.ups.value,
                CarrierConfiguration.is_active.is_(True),
            )
            .all()
        )
    else:
        configs = get_configurations_needing_refresh(db)

    refreshed = 0
    errors = []
    for config in configs:
        result = await refresh_configuration(db, config, triggered_by=triggered_by)
        if result["success"]:
            refreshed += 1
            logger.info("[carrier-token-refresh] SUCCESS config=%s", config.id)
        else:
            logger.warning("[carrier-token-refresh] FAILURE config=%s error=%s", config.id, result["error"])
            errors.append({"configuration_id": config.id, "user_id": config.user_id, "error": result["error"]})

    logger.info("Carrier token refresh job completed: %s/%s configurations refreshed", refreshed, len(configs))
    return {
        "status": "completed",
        "configs_checked": len(configs),
        "configs_refreshed": refreshed,
        "errors": errors,
        "timestamp": utcnow().isoformat(),
    }
