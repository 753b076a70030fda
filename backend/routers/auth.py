# routers/auth.py — Registration, email verification, login, password reset
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, PlayerRegister, PlayerLogin, VerifyRequest, ForgotPasswordRequest,
    ResetPasswordRequest, TokenResponse, CurrentPlayer, get_current_player,
    load_player, player_to_dict,
)
from database import get_db_session
from services import GamificationServices, get_services

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


@router.post("/register", status_code=201)
async def register(
    data: PlayerRegister,
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    """Create an unverified account and mail a verification code"""
    player = await AuthService.register_player(data, db, services.xp_engine, services.notifier)
    return {
        "status": "registered",
        "message": "Check your email for the verification code.",
        "player": player_to_dict(player),
    }


@router.post("/verify", response_model=TokenResponse)
async def verify(data: VerifyRequest, db: AsyncSession = Depends(get_db_session)):
    """Confirm the emailed code and receive an access token"""
    player = await AuthService.verify_email(data, db)
    return AuthService.build_token_response(player)


@router.post("/login", response_model=TokenResponse)
async def login(credentials: PlayerLogin, db: AsyncSession = Depends(get_db_session)):
    """Authenticate and receive an access token"""
    player = await AuthService.authenticate_player(credentials.email, credentials.password, db)
    if not player:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return AuthService.build_token_response(player)


@router.post("/forgot-password")
async def forgot_password(
    data: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    await AuthService.forgot_password(data, db, services.notifier)
    return {"status": "code_sent", "message": "Check your email for the reset code."}


@router.post("/reset-password")
async def reset_password(data: ResetPasswordRequest, db: AsyncSession = Depends(get_db_session)):
    await AuthService.reset_password(data, db)
    return {"status": "password_changed", "message": "Password updated successfully"}


@router.get("/me")
async def me(
    user: CurrentPlayer = Depends(get_current_player),
    db: AsyncSession = Depends(get_db_session),
):
    """Current player's profile, read fresh from the database"""
    player = await load_player(db, user.id)
    return player_to_dict(player)
