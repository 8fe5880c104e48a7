from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from prepfox.models_sqlalchemy import get_db
from prepfox.models_sqlalchemy.models import User
from prepfox.services import billing
from prepfox.services.auth import get_current_active_user

router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    plan_id: str
    billing_cycle: str = "monthly"


class VerifyPaymentRequest(BaseModel):
    session_id: str


def _origin(request: Request) -> Optional[str]:
    return request.headers.get("origin")


@router.post("/checkout")
async def create_checkout(
    payload: CheckoutRequest,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return billing.create_checkout_session(
        db,
        current_user,
        plan_id=payload.plan_id,
        billing_cycle=payload.billing_cycle,
        origin=_origin(request),
    )


@router.get("/subscription")
async def get_subscription(
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return billing.get_subscription_status(db, current_user)


@router.post("/submissions/{submission_id}/payment")
async def create_submission_payment(
    submission_id: str,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return billing.create_submission_payment(db, current_user, submission_id, origin=_origin(request))


@router.post("/submissions/verify")
async def verify_submission_payment(
    payload: VerifyPaymentRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return await billing.verify_submission_payment(db, current_user, payload.session_id)
