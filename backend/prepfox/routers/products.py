from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from prepfox.models_sqlalchemy import get_db
from prepfox.models_sqlalchemy.models import User
from prepfox.services import ai_content
from prepfox.services.auth import get_current_active_user

router = APIRouter(prefix="/api/products", tags=["products"])


class OptimizeRequest(BaseModel):
    custom_prompt: Optional[str] = None
    apply: bool = True


@router.post("/{product_id}/optimize")
async def optimize_product(
    product_id: str,
    payload: Optional[OptimizeRequest] = None,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    payload = payload or OptimizeRequest()
    result = await ai_content.optimize_product(
        db,
        current_user,
        product_id,
        custom_prompt=payload.custom_prompt,
        apply=payload.apply,
    )
    return {"success": True, **result}
