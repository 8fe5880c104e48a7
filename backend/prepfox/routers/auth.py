from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from prepfox.models.user import UserCreate, UserLogin, UserResponse, Token
from prepfox.models_sqlalchemy import get_db
from prepfox.models_sqlalchemy.models import User
from prepfox.services.auth import (
    authenticate_user,
    create_access_token,
    get_current_active_user,
    register_user,
)
from prepfox.utils.logger import logger

router = APIRouter(prefix="/auth", tags=["authentication"])


@router.post("/register", response_model=UserResponse)
async def register(user_data: UserCreate, db: Session = Depends(get_db)):
    logger.info(f"Registration attempt for email: {user_data.email}")
    user = register_user(db, user_data)
    return UserResponse.model_validate(user)


@router.post("/login", response_model=Token)
async def login(user_credentials: UserLogin, request: Request, db: Session = Depends(get_db)):
    rid = getattr(request.state, "rid", "unknown")
    logger.info(f"Login attempt email={user_credentials.email} rid={rid}")

    user = authenticate_user(db, user_credentials.email, user_credentials.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is inactive")

    access_token = create_access_token(data={"sub": user.id})
    return Token(access_token=access_token, token_type="bearer")


@router.get("/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_active_user)):
    return UserResponse.model_validate(current_user)
