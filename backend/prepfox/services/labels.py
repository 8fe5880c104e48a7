from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from prepfox.models_sqlalchemy.models import (
    CarrierConfiguration,
    CarrierName,
    Order,
    ShippingLabel,
    ShippingLabelStatus,
    User,
)
from prepfox.services import ups_auth
from prepfox.services.carriers.base import Address, PackageDetails
from prepfox.services.carriers.shipstation import ShipStationClient
from prepfox.services.carriers.ups import UPSClient
from prepfox.utils.logger import logger
from prepfox.utils.timeutils import utcnow


LABEL_CARRIERS = (CarrierName.ups.value, CarrierName.shipstation.value)


def _find_configuration(db: Session, user: User, carrier: str, configuration_id: Optional[str]) -> CarrierConfiguration:
    query = db.query(CarrierConfiguration).filter(
        CarrierConfiguration.user_id == user.id,
        CarrierConfiguration.carrier_name == carrier,
        CarrierConfiguration.is_active.is_(True),
    )
    if configuration_id:
        query = query.filter(CarrierConfiguration.id == configuration_id)
    config = query.first()
    if config is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "missing_credentials", "message": f"No active {carrier} configuration"},
        )
    return config


async def create_label(
    db: Session,
    user: User,
    *,
    carrier: str,
    service_code: str,
    from_address: Address,
    to_address: Address,
    package: PackageDetails,
    order_id: Optional[str] = None,
    configuration_id: Optional[str] = None,
    carrier_code: Optional[str] = None,
    service_name: Optional[str] = None,
) -> ShippingLabel:
    carrier = (carrier or "").lower()
    if carrier not in LABEL_CARRIERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "carrier_error", "message": f"Label creation is not supported for {carrier or 'unknown carrier'}"},
        )

    order = None
    if order_id:
        order = db.query(Order).filter(Order.id == order_id, Order.user_id == user.id).first()
        if order is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    config = _find_configuration(db, user, carrier, configuration_id)

    if carrier == CarrierName.ups.value:
        creds = await ups_auth.ensure_valid_ups_token(db, config)
        client = UPSClient(
            creds.access_token,
            creds.account_number,
            base_url=creds.base_url,
            account_country=creds.country,
        )
        try:
            result = await client.create_label(from_address, to_address, package, service_code)
        except HTTPException as e:
            if isinstance(e.detail, dict) and e.detail.get("code") == "token_expired":
                # UPS rejected a token we believed valid; force a refresh next time.
                ups_auth.clear_ups_token(db, config)
            raise
    else:
        creds = config.api_credentials
        client = ShipStationClient(creds.get("api_key"), creds.get("api_secret"))
        result = await client.create_label(
            from_address, to_address, package, service_code, carrier_code=carrier_code or "stamps_com"
        )

    label = ShippingLabel(
        user_id=user.id,
        order_id=order.id if order else None,
        carrier_configuration_id=config.id,
        carrier=carrier,
        service_code=result.service_code,
        service_name=service_name or result.service_code,
        tracking_number=result.tracking_number,
        label_data=result.label_data,
        label_format=result.label_format,
        cost=result.cost,
        currency=result.currency,
        status=ShippingLabelStatus.created.value,
    )
    db.add(label)

    if order is not None:
        order.tracking_number = result.tracking_number
        order.carrier = result.carrier
        order.fulfillment_status = "fulfilled"
        order.shipped_at = utcnow()

    db.commit()
    db.refresh(label)
    logger.info(f"Label {label.id} created via {carrier} tracking={label.tracking_number}")
    return label


def list_labels(db: Session, user: User, limit: int = 50, offset: int = 0) -> List[ShippingLabel]:
    return (
        db.query(ShippingLabel)
        .filter(ShippingLabel.user_id == user.id)
        .order_by(ShippingLabel.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def void_label(db: Session, user: User, label_id: str) -> ShippingLabel:
    label = (
        db.query(ShippingLabel)
        .filter(ShippingLabel.id == label_id, ShippingLabel.user_id == user.id)
        .first()
    )
    if label is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Label not found")
    if label.status == ShippingLabelStatus.voided.value:
        return label
    label.status = ShippingLabelStatus.voided.value
    label.voided_at = utcnow()
    db.commit()
    db.refresh(label)
    return label


def label_to_row(label: ShippingLabel, include_data: bool = False) -> Dict[str, Any]:
    row = {
        "id": label.id,
        "order_id": label.order_id,
        "carrier": label.carrier,
        "service_code": label.service_code,
        "service_name": label.service_name,
        "tracking_number": label.tracking_number,
        "label_format": label.label_format,
        "cost": float(label.cost) if label.cost is not None else None,
        "currency": label.currency,
        "status": label.status,
        "created_at": label.created_at.isoformat() if label.created_at else None,
        "voided_at": label.voided_at.isoformat() if label.voided_at else None,
    }
    if include_data:
        row["label_data"] = label.label_data
    return row


def apply_shipment_notifications(db: Session, shipments: List[Dict[str, Any]]) -> int:
    """Mark orders shipped for ShipStation shipments whose tracking we know.

    Only shipments matching a label we created (by tracking number) are
    applied, so a notification can never touch another tenant's orders.
    """
    updated = 0
    for shipment in shipments:
        tracking = shipment.get("trackingNumber")
        if not tracking:
            continue
        label = db.query(ShippingLabel).filter(ShippingLabel.tracking_number == tracking).first()
        if label is None or label.order_id is None:
            continue
        order = db.query(Order).filter(Order.id == label.order_id).first()
        if order is None:
            continue
        order.tracking_number = tracking
        order.carrier = shipment.get("carrierCode") or order.carrier
        order.fulfillment_status = "fulfilled"
        order.shipped_at = order.shipped_at or utcnow()
        updated += 1
    db.commit()
    return updated
