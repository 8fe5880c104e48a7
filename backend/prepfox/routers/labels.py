from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from prepfox.models_sqlalchemy import get_db
from prepfox.models_sqlalchemy.models import User
from prepfox.services import labels as labels_service
from prepfox.services.auth import get_current_active_user
from prepfox.services.carriers.base import Address, PackageDetails

router = APIRouter(prefix="/api/labels", tags=["labels"])


class CreateLabelRequest(BaseModel):
    carrier: str
    service_code: str
    service_name: Optional[str] = None
    from_address: Dict[str, Any]
    to_address: Dict[str, Any]
    package: Dict[str, Any] = Field(default_factory=dict)
    order_id: Optional[str] = None
    carrier_configuration_id: Optional[str] = None
    carrier_code: Optional[str] = None


@router.post("")
async def create_label(
    payload: CreateLabelRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    label = await labels_service.create_label(
        db,
        current_user,
        carrier=payload.carrier,
        service_code=payload.service_code,
        service_name=payload.service_name,
        from_address=Address.from_dict(payload.from_address),
        to_address=Address.from_dict(payload.to_address),
        package=PackageDetails.from_dict(payload.package),
        order_id=payload.order_id,
        configuration_id=payload.carrier_configuration_id,
        carrier_code=payload.carrier_code,
    )
    return {"success": True, "label": labels_service.label_to_row(label, include_data=True)}


@router.get("")
async def list_labels(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    rows = labels_service.list_labels(db, current_user, limit=limit, offset=offset)
    return {"labels": [labels_service.label_to_row(label) for label in rows], "limit": limit, "offset": offset}


@router.post("/{label_id}/void")
async def void_label(
    label_id: str,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    label = labels_service.void_label(db, current_user, label_id)
    return {"success": True, "label": labels_service.label_to_row(label)}
