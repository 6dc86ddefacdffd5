"""Authentication router for registration, login and the current user."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.home import Home
from app.models.user import User
from app.services.auth import (
    authenticate_user,
    get_password_hash,
    require_user,
    token_for_user,
)
from app.services import app_settings as cfg

router = APIRouter()


# Request/Response models

class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str
    display_name: Optional[str] = None
    # Creates a home owned by the new user
    home_name: Optional[str] = None
    timezone: str = "Asia/Kolkata"


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


def _user_to_dict(user: User) -> dict:
    """Convert user model to response dict."""
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "display_name": user.display_name or user.username,
        "is_admin": user.is_admin,
        "home_id": user.home_id,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


@router.post("/register", response_model=TokenResponse)
async def register(request: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Register a new user, optionally with a new home."""
    await cfg.ensure_cache(db)

    count_result = await db.execute(select(func.count(User.id)))
    user_count = count_result.scalar() or 0

    # The first account can always be created
    if user_count > 0 and not cfg.get_bool("registration_enabled", True):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Registration is disabled",
        )

    existing = await db.execute(
        select(User).where(
            (func.lower(User.username) == request.username.lower())
            | (func.lower(User.email) == request.email.lower())
        )
    )
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username or email already registered",
        )

    home = None
    if request.home_name:
        home = Home(name=request.home_name, timezone=request.timezone)
        db.add(home)
        await db.flush()

    user = User(
        username=request.username,
        email=request.email,
        hashed_password=get_password_hash(request.password),
        display_name=request.display_name or request.username,
        is_admin=user_count == 0,  # First user is admin
        home_id=home.id if home else None,
        last_login_at=datetime.utcnow(),
    )
    db.add(user)
    await db.flush()

    if home is not None:
        home.owner_id = user.id

    await db.commit()
    await db.refresh(user)

    return TokenResponse(
        access_token=token_for_user(user),
        user=_user_to_dict(user),
    )


@router.post("/login", response_model=TokenResponse)
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Authenticate and get access token."""
    user = await authenticate_user(db, request.username, request.password)
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user.last_login_at = datetime.utcnow()
    await db.commit()

    return TokenResponse(
        access_token=token_for_user(user),
        user=_user_to_dict(user),
    )


@router.get("/me")
async def get_profile(current_user: User = Depends(require_user)):
    """Get current user profile."""
    return _user_to_dict(current_user)
