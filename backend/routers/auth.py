# routers/auth.py — Authentication endpoints and GitHub token linking
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, ACCESS_TOKEN_EXPIRE_MINUTES,
    get_current_user, CurrentUser,
)
from database import get_db_session
from exceptions import AppError
from jobs.dispatcher import JobDispatcher, get_job_dispatcher
from models import User, UserRole

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])
logger = logging.getLogger("collabute.auth")


class GitHubTokenUpdate(BaseModel):
    access_token: str = Field(..., min_length=1)
    github_username: Optional[str] = None


def _build_token_response(user_obj: User) -> TokenResponse:
    """Build token response from a user ORM instance"""
    role = user_obj.role.value if isinstance(user_obj.role, UserRole) else user_obj.role
    access_token = AuthService.create_access_token({
        "sub": user_obj.id,
        "email": user_obj.email,
        "role": role,
    })
    return TokenResponse(
        access_token=access_token,
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user_obj.id,
            "email": user_obj.email,
            "display_name": user_obj.display_name or "",
            "role": role,
        },
    )


@router.post("/register", response_model=TokenResponse)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
):
    """Register a new user account"""
    user = await AuthService.register_user(user_data, db)
    try:
        await dispatcher.send_welcome_email(user.email, user.display_name or user.email)
    except AppError as e:
        # Registration stands even when the welcome email cannot be queued
        logger.warning(f"Could not queue welcome email for {user.email}: {e}")
    return _build_token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive an access token"""
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _build_token_response(user)


@router.get("/me")
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Get current authenticated user information"""
    return user.model_dump()


@router.put("/github-token")
async def set_github_token(
    data: GitHubTokenUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Store the caller's GitHub access token for repository sync"""
    user_obj = (await db.execute(select(User).where(User.id == user.id))).scalar_one()
    user_obj.github_access_token = data.access_token
    if data.github_username:
        user_obj.github_username = data.github_username
    await db.commit()
    return {"status": "connected", "github_username": user_obj.github_username}
