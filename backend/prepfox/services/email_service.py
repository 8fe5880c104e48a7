from __future__ import annotations

from typing import Any, Dict, List, Union

import httpx

from prepfox.config import settings
from prepfox.utils.logger import logger


RESEND_API_URL = "https://api.resend.com/emails"


async def send_email(to: Union[str, List[str]], subject: str, html: str) -> Dict[str, Any]:
    """Send a transactional email through Resend.

    Email is best-effort: a missing key or a Resend error is logged and
    reported in the return value, never raised.
    """
    if not settings.RESEND_API_KEY:
        logger.info(f"RESEND_API_KEY not configured; skipping email '{subject}'")
        return {"sent": False, "skipped": True}

    recipients = [to] if isinstance(to, str) else list(to)
    payload = {"from": settings.EMAIL_FROM, "to": recipients, "subject": subject, "html": html}
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            response = await client.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
            )
    except httpx.HTTPError as e:
        logger.error(f"Resend request failed: {type(e).__name__}: {e}")
        return {"sent": False, "error": str(e)}

    if response.status_code >= 400:
        logger.error(f"Resend rejected email '{subject}': HTTP {response.status_code} {response.text[:300]}")
        return {"sent": False, "error": f"HTTP {response.status_code}"}

    return {"sent": True, "id": response.json().get("id")}


def payment_confirmation_html(submission_number: str, invoice_number: str, amount: float) -> str:
    return (
        f"<h2>Payment received</h2>"
        f"<p>Thanks! We received ${amount:.2f} for submission <strong>{submission_number}</strong>.</p>"
        f"<p>Invoice: {invoice_number}</p>"
    )


def subscription_change_html(plan_id: str, status: str) -> str:
    return (
        f"<h2>Your PrepFox subscription was updated</h2>"
        f"<p>Plan: <strong>{plan_id}</strong><br/>Status: {status}</p>"
    )
