from __future__ import annotations

import json
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from prepfox.config import settings
from prepfox.models_sqlalchemy.models import Product, ProductEditHistory, User, UserEditPattern
from prepfox.utils.logger import logger
from prepfox.utils.timeutils import utcnow


_JSON_BLOCK_RE = re.compile(r"\{[\s\S]*\}")

REQUIRED_FIELDS = ("title", "description", "tags")
DEFAULT_TYPE = "General"
DEFAULT_CATEGORY = "Health & Beauty > Personal Care"
MANUAL_EDIT_WINDOW = timedelta(minutes=10)

# optimizer output key -> Product column
FIELD_MAP = {
    "title": "title",
    "description": "description",
    "tags": "tags",
    "type": "product_type",
    "category": "category",
    "seo_title": "seo_title",
    "seo_description": "seo_description",
}

SYSTEM_PROMPT = (
    "You optimize Shopify product listings. Answer with a single JSON object and "
    "nothing else: no markdown, no commentary. Write in English. Use HTML tags "
    "(<p>, <strong>, <ul>, <li>, <ol>) in the description, never markdown."
)

OUTPUT_CONTRACT = """
Respond with ONLY this JSON object (every field is required):
{
  "title": "optimized title, at most 60 characters",
  "description": "HTML description body without section headings",
  "tags": "comma-separated tags",
  "type": "specific product type, e.g. Leave-In Hair Conditioner",
  "category": "Google Shopping category path, e.g. Health & Beauty > Personal Care > ...",
  "seo_title": "SEO title different from the main title, at most 60 characters",
  "seo_description": "meta description with a call to action, at most 160 characters"
}"""


def _product_placeholders(product: Product) -> Dict[str, str]:
    return {
        "title": product.title or "No title",
        "type": product.product_type or "Not specified",
        "description": product.description or "No description",
        "tags": product.tags or "No tags",
        "vendor": product.vendor or "Not specified",
    }


def build_prompt(product: Product, custom_template: Optional[str] = None, patterns: Optional[List[UserEditPattern]] = None) -> str:
    values = _product_placeholders(product)
    if custom_template:
        body = custom_template
        for key, value in values.items():
            body = body.replace("{" + key + "}", value)
    else:
        body = (
            "Rewrite this product listing to convert better and rank well in search.\n\n"
            f"Title: {values['title']}\n"
            f"Type: {values['type']}\n"
            f"Description: {values['description']}\n"
            f"Tags: {values['tags']}\n"
            f"Vendor: {values['vendor']}\n"
        )
    prompt = body + "\n" + OUTPUT_CONTRACT

    if patterns:
        lines = "\n".join(f"- {p.field_name}: {p.pattern_description}" for p in patterns)
        prompt += f"\n\nThis seller's learned preferences (apply them):\n{lines}"
    return prompt


def parse_optimization(content: str) -> Dict[str, Any]:
    match = _JSON_BLOCK_RE.search(content or "")
    if not match:
        logger.error("AI optimizer did not return JSON: %s", (content or "")[:500])
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "ai_error", "message": "AI provider did not return JSON"},
        )
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "ai_error", "message": "AI provider returned malformed JSON"},
        ) from exc

    missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "ai_error", "message": f"AI response missing fields: {', '.join(missing)}"},
        )

    if isinstance(data["tags"], list):
        data["tags"] = ", ".join(str(t) for t in data["tags"])
    data["type"] = data.get("type") or DEFAULT_TYPE
    data["category"] = data.get("category") or DEFAULT_CATEGORY
    data["seo_title"] = data.get("seo_title") or data["title"]
    data["seo_description"] = data.get("seo_description") or re.sub(r"<[^>]+>", "", data["description"])[:160]
    return data


async def request_completion(prompt: str) -> str:
    api_key = settings.OPENAI_API_KEY
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "ai_unavailable", "message": "OPENAI_API_KEY is not configured on the backend"},
        )

    payload: Dict[str, Any] = {
        "model": settings.OPENAI_MODEL,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        "temperature": 0.7,
        "max_tokens": 1000,
    }
    url = f"{settings.OPENAI_API_BASE_URL.rstrip('/')}/v1/chat/completions"
    try:
        async with httpx.AsyncClient(timeout=60.0) as client:
            resp = await client.post(
                url,
                headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
                json=payload,
            )
    except httpx.HTTPError as exc:
        logger.error("AI optimizer request failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "ai_error", "message": "Failed to contact AI provider"},
        ) from exc

    if resp.status_code >= 400:
        logger.error("AI optimizer HTTP %s: %s", resp.status_code, resp.text[:500])
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "ai_error", "message": f"AI provider returned HTTP {resp.status_code}"},
        )

    try:
        return resp.json()["choices"][0]["message"]["content"] or ""
    except (ValueError, KeyError, IndexError) as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "ai_error", "message": "Unexpected AI provider response"},
        ) from exc


def recently_edited_fields(db: Session, product_id: str) -> set:
    since = utcnow() - MANUAL_EDIT_WINDOW
    rows = (
        db.query(ProductEditHistory.field_name)
        .filter(
            ProductEditHistory.product_id == product_id,
            ProductEditHistory.edit_source == "manual",
            ProductEditHistory.created_at >= since,
        )
        .all()
    )
    return {row[0] for row in rows}


def apply_optimization(db: Session, user: User, product: Product, data: Dict[str, Any]) -> Tuple[List[str], List[str]]:
    """Write optimizer output onto the product, leaving fresh manual edits alone."""
    protected = recently_edited_fields(db, product.id)
    updated, skipped = [], []
    for key, column in FIELD_MAP.items():
        value = data.get(key)
        if value is None:
            continue
        if column in protected or key in protected:
            skipped.append(column)
            continue
        old = getattr(product, column)
        if old == value:
            continue
        setattr(product, column, value)
        db.add(
            ProductEditHistory(
                product_id=product.id,
                user_id=user.id,
                field_name=column,
                old_value=None if old is None else str(old),
                new_value=str(value),
                edit_source="ai",
            )
        )
        updated.append(column)
    product.ai_optimized_at = utcnow()
    db.commit()
    return updated, skipped


async def optimize_product(
    db: Session,
    user: User,
    product_id: str,
    *,
    custom_prompt: Optional[str] = None,
    apply: bool = True,
) -> Dict[str, Any]:
    product = db.query(Product).filter(Product.id == product_id, Product.user_id == user.id).first()
    if product is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")

    patterns = (
        db.query(UserEditPattern)
        .filter(UserEditPattern.user_id == user.id, UserEditPattern.is_approved.is_(True))
        .order_by(UserEditPattern.confidence.desc())
        .all()
    )
    prompt = build_prompt(product, custom_prompt, patterns)
    content = await request_completion(prompt)
    optimization = parse_optimization(content)

    updated: List[str] = []
    skipped: List[str] = []
    if apply:
        updated, skipped = apply_optimization(db, user, product, optimization)
    logger.info(f"Product {product.id} optimized; updated={updated} skipped={skipped}")
    return {"optimization": optimization, "updated_fields": updated, "skipped_fields": skipped}
