from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from prepfox.models.user import UserResponse
from prepfox.models_sqlalchemy import get_db
from prepfox.models_sqlalchemy.models import CarrierConfiguration, CarrierTokenRefreshLog, User
from prepfox.services import ups_auth
from prepfox.services.auth import require_admin_user
from prepfox.services.carrier_token_refresh import run_carrier_token_refresh_job
from prepfox.utils.logger import carrier_logger, logger

router = APIRouter(prefix="/api/admin", tags=["admin"])


class RefreshJobRequest(BaseModel):
    force_all: bool = False


@router.post("/carrier-tokens/refresh")
async def run_token_refresh(
    payload: Optional[RefreshJobRequest] = None,
    current_user: User = Depends(require_admin_user),
    db: Session = Depends(get_db),
):
    force_all = payload.force_all if payload else False
    logger.info(f"Admin {current_user.email} triggered carrier token refresh (force_all={force_all})")
    return await run_carrier_token_refresh_job(db, force_all=force_all, triggered_by="admin")


@router.get("/carrier-tokens/logs")
async def list_refresh_logs(
    limit: int = Query(50, ge=1, le=500),
    configuration_id: Optional[str] = None,
    current_user: User = Depends(require_admin_user),
    db: Session = Depends(get_db),
):
    query = db.query(CarrierTokenRefreshLog)
    if configuration_id:
        query = query.filter(CarrierTokenRefreshLog.carrier_configuration_id == configuration_id)
    rows = query.order_by(CarrierTokenRefreshLog.started_at.desc()).limit(limit).all()
    return {
        "logs": [
            {
                "id": row.id,
                "carrier_configuration_id": row.carrier_configuration_id,
                "started_at": row.started_at.isoformat() if row.started_at else None,
                "finished_at": row.finished_at.isoformat() if row.finished_at else None,
                "success": row.success,
                "error_code": row.error_code,
                "error_message": row.error_message,
                "old_expires_at": row.old_expires_at.isoformat() if row.old_expires_at else None,
                "new_expires_at": row.new_expires_at.isoformat() if row.new_expires_at else None,
                "triggered_by": row.triggered_by,
            }
            for row in rows
        ]
    }


@router.post("/carrier-tokens/{configuration_id}/clear")
async def clear_carrier_token(
    configuration_id: str,
    current_user: User = Depends(require_admin_user),
    db: Session = Depends(get_db),
):
    config = db.query(CarrierConfiguration).filter(CarrierConfiguration.id == configuration_id).first()
    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Carrier configuration not found")
    ups_auth.clear_ups_token(db, config)
    logger.info(f"Admin {current_user.email} cleared token for configuration {configuration_id}")
    return {"success": True}


@router.get("/carrier-events")
async def get_carrier_events(
    limit: int = Query(100, ge=1, le=1000),
    current_user: User = Depends(require_admin_user),
):
    return {"events": carrier_logger.get_logs(limit)}


@router.delete("/carrier-events")
async def clear_carrier_events(current_user: User = Depends(require_admin_user)):
    carrier_logger.clear_logs()
    return {"success": True}


@router.get("/users")
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(require_admin_user),
    db: Session = Depends(get_db),
):
    users = db.query(User).order_by(User.created_at.desc()).offset(offset).limit(limit).all()
    return {"users": [UserResponse.model_validate(u).model_dump(mode="json") for u in users]}
