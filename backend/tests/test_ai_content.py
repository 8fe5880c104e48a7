import json
from datetime import timedelta

import pytest
from fastapi import HTTPException

from prepfox.config import settings
from prepfox.models_sqlalchemy.models import Product, ProductEditHistory, UserEditPattern
from prepfox.services import ai_content
from prepfox.utils.timeutils import utcnow

from conftest import FakeResponse


OPTIMIZED = {
    "title": "Hydrating Leave-In Conditioner",
    "description": "<p>Soft, <strong>frizz-free</strong> hair all day.</p>",
    "tags": ["hair care", "conditioner"],
    "type": "Leave-In Hair Conditioner",
    "category": "Health & Beauty > Personal Care > Hair Care",
    "seo_title": "Leave-In Conditioner for Frizz",
    "seo_description": "Tame frizz in seconds. Shop now.",
}


@pytest.fixture(autouse=True)
def _openai_key(monkeypatch):
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(settings, "OPENAI_API_BASE_URL", "https://api.openai.com")


@pytest.fixture
def product(db, user):
    product = Product(user_id=user.id, handle="conditioner", title="conditioner", tags="hair", vendor="Acme")
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


def _completion(content):
    return FakeResponse(200, {"choices": [{"message": {"content": content}}]})


def test_prompt_fills_template_and_appends_learned_preferences(product):
    patterns = [UserEditPattern(field_name="title", pattern_description="Always start with the brand")]

    prompt = ai_content.build_prompt(product, "Improve {title} by {vendor}; type {type}", patterns)

    assert prompt.startswith("Improve conditioner by Acme; type Not specified")
    assert '"seo_description"' in prompt
    assert "- title: Always start with the brand" in prompt


def test_parse_extracts_json_from_chatty_reply():
    content = "Sure! Here it is:\n```json\n" + json.dumps({"title": "T", "description": "<p>Hello <b>world</b></p>", "tags": "a, b"}) + "\n```"

    data = ai_content.parse_optimization(content)

    assert data["type"] == ai_content.DEFAULT_TYPE
    assert data["category"] == ai_content.DEFAULT_CATEGORY
    assert data["seo_title"] == "T"
    assert data["seo_description"] == "Hello world"


@pytest.mark.parametrize("content", [
    "I cannot help with that.",
    "{not json}",
    json.dumps({"title": "T", "description": "D"}),
])
def test_parse_rejects_unusable_replies(content):
    with pytest.raises(HTTPException) as exc:
        ai_content.parse_optimization(content)

    assert exc.value.status_code == 502
    assert exc.value.detail["code"] == "ai_error"


@pytest.mark.asyncio
async def test_missing_key_is_reported_as_unavailable(monkeypatch):
    monkeypatch.setattr(settings, "OPENAI_API_KEY", None)

    with pytest.raises(HTTPException) as exc:
        await ai_content.request_completion("prompt")

    assert exc.value.status_code == 503
    assert exc.value.detail["code"] == "ai_unavailable"


@pytest.mark.asyncio
async def test_provider_error_is_reported_as_ai_error(fake_http):
    fake_http.add("POST", "/v1/chat/completions", FakeResponse(429, {"error": "rate limited"}))

    with pytest.raises(HTTPException) as exc:
        await ai_content.request_completion("prompt")

    assert exc.value.detail["code"] == "ai_error"


@pytest.mark.asyncio
async def test_optimize_applies_fields_and_records_history(db, user, product, fake_http):
    fake_http.add("POST", "/v1/chat/completions", _completion(json.dumps(OPTIMIZED)))

    result = await ai_content.optimize_product(db, user, product.id)

    db.refresh(product)
    assert product.title == OPTIMIZED["title"]
    assert product.tags == "hair care, conditioner"
    assert product.product_type == "Leave-In Hair Conditioner"
    assert product.ai_optimized_at is not None
    assert "product_type" in result["updated_fields"]
    assert result["skipped_fields"] == []
    history = db.query(ProductEditHistory).filter(ProductEditHistory.field_name == "title").one()
    assert (history.old_value, history.edit_source) == ("conditioner", "ai")

    request = fake_http.calls[0]
    assert request["headers"]["Authorization"] == "Bearer sk-test"
    assert request["json"]["temperature"] == 0.7
    assert request["json"]["messages"][0]["role"] == "system"


@pytest.mark.asyncio
async def test_recent_manual_edits_are_not_overwritten(db, user, product, fake_http):
    db.add_all([
        ProductEditHistory(product_id=product.id, user_id=user.id, field_name="title", new_value="My title", edit_source="manual"),
        ProductEditHistory(
            product_id=product.id,
            user_id=user.id,
            field_name="tags",
            new_value="old",
            edit_source="manual",
            created_at=utcnow() - timedelta(hours=1),
        ),
    ])
    db.commit()
    fake_http.add("POST", "/v1/chat/completions", _completion(json.dumps(OPTIMIZED)))

    result = await ai_content.optimize_product(db, user, product.id)

    db.refresh(product)
    assert product.title == "conditioner"
    assert product.tags == "hair care, conditioner"
    assert result["skipped_fields"] == ["title"]


@pytest.mark.asyncio
async def test_preview_mode_leaves_product_untouched(db, user, product, fake_http):
    fake_http.add("POST", "/v1/chat/completions", _completion(json.dumps(OPTIMIZED)))

    result = await ai_content.optimize_product(db, user, product.id, apply=False)

    db.refresh(product)
    assert product.title == "conditioner"
    assert result["optimization"]["title"] == OPTIMIZED["title"]
    assert result["updated_fields"] == []


@pytest.mark.asyncio
async def test_other_users_product_is_not_found(db, other_user, product):
    with pytest.raises(HTTPException) as exc:
        await ai_content.optimize_product(db, other_user, product.id)

    assert exc.value.status_code == 404
