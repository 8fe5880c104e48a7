from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from prepfox.config import settings
from prepfox.models_sqlalchemy import get_db
from prepfox.services import billing, labels
from prepfox.services.carriers.shipstation import WEBHOOK_RESOURCE_TYPES, ShipStationClient, is_shipstation_resource_url
from prepfox.utils.logger import carrier_logger, logger

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    return await billing.handle_subscription_webhook(db, payload, signature)


@router.post("/shipstation")
async def shipstation_webhook(request: Request, db: Session = Depends(get_db)):
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_payload", "message": "Webhook body is not JSON"},
        )

    resource_type = data.get("resource_type")
    resource_url = data.get("resource_url") or ""
    carrier_logger.log_carrier_event(
        event_type="shipstation_webhook",
        description=f"ShipStation {resource_type} notification",
        request_data={"resource_url": resource_url},
    )

    if resource_type not in WEBHOOK_RESOURCE_TYPES:
        logger.info(f"Unhandled ShipStation webhook type: {resource_type}")
        return {"success": True, "handled": False}
    if resource_type != "SHIP_NOTIFY":
        return {"success": True, "handled": False}

    if not is_shipstation_resource_url(resource_url):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_payload", "message": "resource_url is not a ShipStation API URL"},
        )
    if not settings.SHIPSTATION_API_KEY:
        logger.warning("ShipStation SHIP_NOTIFY received but no ShipStation API key is configured")
        return {"success": True, "handled": False}

    client = ShipStationClient(settings.SHIPSTATION_API_KEY, settings.SHIPSTATION_API_SECRET)
    resource = await client.fetch_resource(resource_url)
    updated = labels.apply_shipment_notifications(db, resource.get("shipments") or [])
    logger.info(f"ShipStation SHIP_NOTIFY applied to {updated} order(s)")
    return {"success": True, "handled": True, "orders_updated": updated}
