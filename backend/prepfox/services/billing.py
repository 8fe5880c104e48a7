"""Stripe billing: plan checkout, subscription webhooks and submission payments."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from prepfox.config import settings
from prepfox.models_sqlalchemy.models import (
    AuditLog,
    BillingCustomer,
    InventorySubmission,
    Plan,
    SubmissionInvoice,
    SubmissionPayment,
    SubmissionPaymentStatus,
    SubmissionStatus,
    Subscription,
    SubscriptionEntitlement,
    User,
)
from prepfox.services import email_service
from prepfox.utils.logger import carrier_logger, logger
from prepfox.utils.timeutils import utcnow


YEARLY_DISCOUNT = 0.8
TRIAL_DAYS = 30

PLAN_ENTITLEMENTS: Dict[str, List[str]] = {
    "starter": ["shipping"],
    "pro": ["shipping", "repricing", "fulfillment"],
    "business": ["shipping", "repricing", "fulfillment", "product_management"],
}

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)

# Subscriptions in these states no longer carry plan features.
ENDED_STATUSES = ("canceled", "incomplete_expired")


def _stripe_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict view of a Stripe API object (or an already plain mapping)."""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _configure_stripe() -> None:
    if not settings.STRIPE_SECRET_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "payment_error", "message": "Stripe is not configured"},
        )
    stripe.api_key = settings.STRIPE_SECRET_KEY


def _stripe_failure(action: str, e: Exception) -> HTTPException:
    carrier_logger.log_carrier_event(
        event_type="stripe_error",
        description=f"Stripe {action} failed",
        status="error",
        error=f"{type(e).__name__}: {e}",
    )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"code": "payment_error", "message": str(e)},
    )


def entitlements_for_plan(plan_id: Optional[str]) -> List[str]:
    return list(PLAN_ENTITLEMENTS.get((plan_id or "").lower(), []))


def plan_unit_amount(monthly_price: float, billing_cycle: str) -> int:
    """Price in cents; yearly billing is twelve months at a 20% discount."""
    if billing_cycle == "yearly":
        return int(round(monthly_price * 12 * YEARLY_DISCOUNT * 100))
    return int(round(monthly_price * 100))


def get_or_create_customer(db: Session, user: User) -> str:
    existing = db.query(BillingCustomer).filter(BillingCustomer.user_id == user.id).first()
    if existing is not None:
        return existing.stripe_customer_id

    try:
        found = _stripe_dict(stripe.Customer.list(email=user.email, limit=1))
        data = found.get("data") or []
        if data:
            customer_id = data[0]["id"]
        else:
            customer_id = _stripe_dict(stripe.Customer.create(email=user.email, metadata={"userId": user.id}))["id"]
    except stripe.StripeError as e:
        raise _stripe_failure("customer lookup", e)

    db.add(BillingCustomer(user_id=user.id, stripe_customer_id=customer_id, email=user.email))
    db.commit()
    return customer_id


def create_checkout_session(
    db: Session,
    user: User,
    *,
    plan_id: str,
    billing_cycle: str = "monthly",
    origin: Optional[str] = None,
) -> Dict[str, Any]:
    if billing_cycle not in ("monthly", "yearly"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="billing_cycle must be monthly or yearly")

    plan = db.query(Plan).filter(Plan.id == plan_id, Plan.is_active.is_(True)).first()
    if plan is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found")

    _configure_stripe()
    customer_id = get_or_create_customer(db, user)
    origin = (origin or settings.FRONTEND_URL).rstrip("/")

    subscription_data: Dict[str, Any] = {
        "metadata": {"userId": user.id, "planId": plan.id, "billingCycle": billing_cycle},
    }
    if plan.id != "free":
        subscription_data["trial_period_days"] = TRIAL_DAYS

    try:
        session = stripe.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {"name": f"PrepFox {plan.name}"},
                        "unit_amount": plan_unit_amount(float(plan.monthly_price or 0), billing_cycle),
                        "recurring": {"interval": "year" if billing_cycle == "yearly" else "month"},
                    },
                    "quantity": 1,
                }
            ],
            subscription_data=subscription_data,
            metadata={"userId": user.id, "planId": plan.id, "billingCycle": billing_cycle},
            success_url=f"{origin}/dashboard?session_id={{CHECKOUT_SESSION_ID}}&success=true",
            cancel_url=f"{origin}/pricing?canceled=true",
        )
    except stripe.StripeError as e:
        raise _stripe_failure("checkout session", e)

    logger.info(f"Checkout session {session['id']} created for user {user.id} plan={plan.id}/{billing_cycle}")
    return {"url": session["url"], "session_id": session["id"]}


def _resolve_user_for_subscription(db: Session, sub: Dict[str, Any]) -> Optional[User]:
    metadata = sub.get("metadata") or {}
    if metadata.get("userId"):
        user = db.query(User).filter(User.id == metadata["userId"]).first()
        if user is not None:
            return user

    customer_id = sub.get("customer")
    billing = db.query(BillingCustomer).filter(BillingCustomer.stripe_customer_id == customer_id).first()
    if billing is not None:
        return db.query(User).filter(User.id == billing.user_id).first()

    try:
        customer = _stripe_dict(stripe.Customer.retrieve(customer_id))
    except stripe.StripeError as e:
        logger.error(f"Could not load Stripe customer {customer_id}: {e}")
        return None
    email = (customer.get("email") or "").lower()
    if not email:
        return None
    return db.query(User).filter(User.email == email).first()


def _replace_entitlements(db: Session, subscription: Subscription) -> List[str]:
    features = [] if subscription.status in ENDED_STATUSES else entitlements_for_plan(subscription.plan_id)
    subscription.entitlements = [
        SubscriptionEntitlement(user_id=subscription.user_id, feature=feature) for feature in features
    ]
    return features


def construct_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "payment_error", "message": "Stripe webhook secret is not configured"},
        )
    try:
        return stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_payload", "message": "Invalid payload"},
        )
    except stripe.SignatureVerificationError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_signature", "message": "Invalid signature"},
        )


async def handle_subscription_webhook(db: Session, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    event = _stripe_dict(construct_event(payload, signature))
    event_type = event["type"]

    if event_type not in SUBSCRIPTION_EVENTS:
        logger.info(f"Ignoring Stripe event {event_type}")
        return {"received": True, "handled": False}

    sub = event["data"]["object"]
    metadata = sub.get("metadata") or {}
    subscription = (
        db.query(Subscription)
        .filter(Subscription.stripe_subscription_id == sub["id"])
        .first()
    )

    if subscription is None:
        user = _resolve_user_for_subscription(db, sub)
        if user is None:
            logger.warning(f"No user found for Stripe subscription {sub['id']}")
            db.add(AuditLog(event_type="stripe_webhook", event_data={"event": event_type, "subscription": sub["id"], "error": "user_not_found"}))
            db.commit()
            return {"received": True, "handled": False}
        subscription = Subscription(user_id=user.id, stripe_subscription_id=sub["id"], status=sub.get("status") or "incomplete")
        db.add(subscription)

    subscription.stripe_customer_id = sub.get("customer")
    subscription.status = "canceled" if event_type == "customer.subscription.deleted" else (sub.get("status") or subscription.status)
    subscription.plan_id = metadata.get("planId") or subscription.plan_id
    subscription.billing_cycle = metadata.get("billingCycle") or subscription.billing_cycle
    subscription.cancel_at_period_end = bool(sub.get("cancel_at_period_end"))
    if sub.get("current_period_end"):
        subscription.current_period_end = datetime.fromtimestamp(int(sub["current_period_end"]), tz=timezone.utc)

    features = _replace_entitlements(db, subscription)
    db.add(
        AuditLog(
            user_id=subscription.user_id,
            event_type="stripe_webhook",
            event_data={
                "event": event_type,
                "subscription": sub["id"],
                "status": subscription.status,
                "plan": subscription.plan_id,
                "features": features,
            },
        )
    )
    db.commit()
    logger.info(f"Subscription {sub['id']} -> {subscription.status} plan={subscription.plan_id} features={features}")

    user = db.query(User).filter(User.id == subscription.user_id).first()
    if user is not None:
        await email_service.send_email(
            user.email,
            "Your PrepFox subscription was updated",
            email_service.subscription_change_html(subscription.plan_id or "unknown", subscription.status),
        )

    return {"received": True, "handled": True, "status": subscription.status, "features": features}


def get_subscription_status(db: Session, user: User) -> Dict[str, Any]:
    subscription = (
        db.query(Subscription)
        .filter(Subscription.user_id == user.id)
        .order_by(Subscription.updated_at.desc())
        .first()
    )
    if subscription is None:
        return {"subscribed": False, "plan_id": None, "status": None, "features": []}
    return {
        "subscribed": subscription.status in ("active", "trialing"),
        "plan_id": subscription.plan_id,
        "status": subscription.status,
        "billing_cycle": subscription.billing_cycle,
        "current_period_end": subscription.current_period_end.isoformat() if subscription.current_period_end else None,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "features": [e.feature for e in subscription.entitlements],
    }


# ---------------------------------------------------------------------------
# Inventory submission payments
# ---------------------------------------------------------------------------

def _get_submission(db: Session, user: User, submission_id: str) -> InventorySubmission:
    submission = (
        db.query(InventorySubmission)
        .filter(InventorySubmission.id == submission_id, InventorySubmission.user_id == user.id)
        .first()
    )
    if submission is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Submission not found")
    return submission


def validate_submission_totals(submission: InventorySubmission) -> None:
    line_total = sum(item.quantity or 0 for item in submission.items)
    if line_total != (submission.total_items or 0):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "submission_mismatch",
                "message": f"Submission lists {submission.total_items} items but line items add up to {line_total}",
            },
        )


def create_submission_payment(
    db: Session,
    user: User,
    submission_id: str,
    *,
    origin: Optional[str] = None,
) -> Dict[str, Any]:
    submission = _get_submission(db, user, submission_id)
    validate_submission_totals(submission)

    amount_cents = int(round(float(submission.total_prep_cost or 0) * 100))
    if amount_cents <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_amount", "message": "Submission has no prep cost to pay"},
        )

    _configure_stripe()
    origin = (origin or settings.FRONTEND_URL).rstrip("/")
    label = submission.submission_number or submission.id
    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            customer_email=user.email,
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {
                            "name": f"Prep services - submission {label}",
                            "description": f"{submission.total_items} items",
                        },
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            metadata={"userId": user.id, "submissionId": submission.id},
            success_url=f"{origin}/submissions/{submission.id}?session_id={{CHECKOUT_SESSION_ID}}&payment=success",
            cancel_url=f"{origin}/submissions/{submission.id}?payment=canceled",
        )
    except stripe.StripeError as e:
        raise _stripe_failure("submission checkout", e)

    db.add(
        SubmissionPayment(
            submission_id=submission.id,
            user_id=user.id,
            stripe_session_id=session["id"],
            amount_cents=amount_cents,
            currency="usd",
            status=SubmissionPaymentStatus.pending.value,
        )
    )
    submission.status = SubmissionStatus.payment_pending.value
    submission.payment_status = SubmissionPaymentStatus.pending.value
    db.commit()
    logger.info(f"Payment session {session['id']} created for submission {submission.id} ({amount_cents} cents)")
    return {"url": session["url"], "session_id": session["id"], "amount_cents": amount_cents}


async def verify_submission_payment(db: Session, user: User, session_id: str) -> Dict[str, Any]:
    payment = (
        db.query(SubmissionPayment)
        .filter(SubmissionPayment.stripe_session_id == session_id, SubmissionPayment.user_id == user.id)
        .first()
    )
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    submission = _get_submission(db, user, payment.submission_id)
    if payment.status == SubmissionPaymentStatus.paid.value:
        invoice = db.query(SubmissionInvoice).filter(SubmissionInvoice.payment_id == payment.id).first()
        return {"paid": True, "invoice_number": invoice.invoice_number if invoice else None}

    _configure_stripe()
    try:
        session = _stripe_dict(stripe.checkout.Session.retrieve(session_id))
    except stripe.StripeError as e:
        raise _stripe_failure("session lookup", e)

    if session["payment_status"] != "paid":
        payment.status = SubmissionPaymentStatus.failed.value
        submission.status = SubmissionStatus.draft.value
        submission.payment_status = SubmissionPaymentStatus.failed.value
        db.commit()
        logger.warning(f"Submission {submission.id} payment {session_id} not paid ({session['payment_status']})")
        return {"paid": False, "payment_status": session["payment_status"]}

    now = utcnow()
    payment.status = SubmissionPaymentStatus.paid.value
    payment.paid_at = now
    payment.stripe_payment_intent_id = session.get("payment_intent")
    submission.status = SubmissionStatus.pending_approval.value
    submission.payment_status = SubmissionPaymentStatus.paid.value

    amount = payment.amount_cents / 100
    invoice = SubmissionInvoice(
        submission_id=submission.id,
        user_id=user.id,
        payment_id=payment.id,
        invoice_number=f"INV-{int(now.timestamp() * 1000)}",
        amount=amount,
        currency=payment.currency,
        status="paid",
        issued_at=now,
    )
    db.add(invoice)
    db.commit()
    logger.info(f"Submission {submission.id} paid; invoice {invoice.invoice_number}")

    await email_service.send_email(
        user.email,
        "PrepFox payment received",
        email_service.payment_confirmation_html(submission.submission_number or submission.id, invoice.invoice_number, amount),
    )
    return {"paid": True, "invoice_number": invoice.invoice_number, "amount": amount}
