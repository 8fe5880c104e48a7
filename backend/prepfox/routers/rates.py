from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from prepfox.models_sqlalchemy import get_db
from prepfox.models_sqlalchemy.models import CarrierName, User
from prepfox.services import rate_shopping
from prepfox.services.auth import get_current_active_user
from prepfox.services.carriers.base import Address, PackageDetails
from prepfox.utils.logger import logger

router = APIRouter(prefix="/api/rates", tags=["rates"])


class RateRequest(BaseModel):
    from_address: Dict[str, Any] = Field(default_factory=dict)
    to_address: Dict[str, Any]
    package: Dict[str, Any] = Field(default_factory=dict)
    include_managed: bool = True
    include_user_carriers: bool = True


class OrderRateRequest(BaseModel):
    ship_from: Optional[Dict[str, Any]] = None
    package: Optional[Dict[str, Any]] = None
    service_preferences: Optional[List[str]] = None


def _parse(payload: RateRequest):
    return (
        Address.from_dict(payload.from_address),
        Address.from_dict(payload.to_address),
        PackageDetails.from_dict(payload.package),
    )


@router.post("/carrier-rates")
async def get_carrier_rates(
    payload: RateRequest,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    rid = getattr(request.state, "rid", "unknown")
    from_address, to_address, package = _parse(payload)
    service = await rate_shopping.build_rate_service(
        db,
        current_user,
        include_managed=payload.include_managed,
        include_user_carriers=payload.include_user_carriers,
    )
    result = await service.get_all_rates(from_address, to_address, package)
    logger.info(
        f"Rate shop rid={rid} user={current_user.id} carriers={result['carriers_used']} rates={len(result['rates'])}"
    )
    return {
        "success": True,
        "rates": [r.to_dict() for r in result["rates"]],
        "carriers_used": result["carriers_used"],
    }


@router.post("/orders/{order_id}")
async def get_order_rates(
    order_id: str,
    payload: OrderRateRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    result = await rate_shopping.calculate_rates_for_order(
        db,
        current_user,
        order_id,
        ship_from=payload.ship_from,
        package=payload.package,
        service_preferences=payload.service_preferences,
    )
    return {"success": True, **result}


async def _single_carrier(carrier: str, payload: RateRequest, user: User, db: Session) -> Dict[str, Any]:
    from_address, to_address, package = _parse(payload)
    rates = await rate_shopping.get_carrier_rates(db, user, carrier, from_address, to_address, package)
    return {"success": True, "carrier": carrier, "rates": [r.to_dict() for r in rates]}


@router.post("/ups")
async def get_ups_rates(
    payload: RateRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return await _single_carrier(CarrierName.ups.value, payload, current_user, db)


@router.post("/canada-post")
async def get_canada_post_rates(
    payload: RateRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return await _single_carrier(CarrierName.canada_post.value, payload, current_user, db)


@router.post("/shipstation")
async def get_shipstation_rates(
    payload: RateRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return await _single_carrier(CarrierName.shipstation.value, payload, current_user, db)
