# auth.py — Player authentication for RankForge
# Features:
# - HS256 JWT carrying id, role, rank, groups and verified flag
# - 4-tier role hierarchy (owner, admin, moderator, user)
# - Username / password policy enforcement
# - 5-digit email codes for verification and password reset
# - Brute force protection

import os
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import Conflict, Forbidden, NotFound, ValidationError
from models import (
    AuditAction, AuditLog, CodePurpose, Player, PlayerRole, VerificationCode, utcnow,
)
from notifier import NotificationPurpose, Notifier, notify_safely

logger = logging.getLogger("rankforge.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "⚠️  JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "7200"))
CODE_TTL_MINUTES = 5
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

USERNAME_PATTERN = re.compile(r"^[a-z0-9_-]{3,15}$")
PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*\d).{8,}$")

security = HTTPBearer()

# In-memory brute force tracker, per worker
_login_attempts: Dict[str, list] = defaultdict(list)


# ============================================================
# ROLE HIERARCHY
# ============================================================

ROLE_HIERARCHY = {
    PlayerRole.OWNER: 4,
    PlayerRole.ADMIN: 3,
    PlayerRole.MODERATOR: 2,
    PlayerRole.USER: 1,
}


def _check_password(v: str) -> str:
    if not PASSWORD_PATTERN.match(v):
        raise ValueError("Password must be at least 8 characters with a lowercase letter and a digit")
    return v


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class PlayerRegister(BaseModel):
    username: str
    email: EmailStr
    password: str

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not USERNAME_PATTERN.match(v):
            raise ValueError("Username must be 3-15 characters of a-z, 0-9, '_' or '-'")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _check_password(v)


class PlayerLogin(BaseModel):
    email: EmailStr
    password: str


class VerifyRequest(BaseModel):
    email: EmailStr
    code: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    code: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _check_password(v)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    player: Dict[str, Any]


class CurrentPlayer(BaseModel):
    id: str
    username: str
    role: str
    rank: Optional[str] = None
    groups: List[str] = []
    verified: bool = False

    @property
    def level(self) -> int:
        return ROLE_HIERARCHY.get(PlayerRole(self.role), 0)

    @property
    def is_staff(self) -> bool:
        return self.level >= ROLE_HIERARCHY[PlayerRole.MODERATOR]


async def load_player(db: AsyncSession, player_id: str) -> Player:
    stmt = select(Player).where(Player.id == player_id).execution_options(populate_existing=True)
    player = (await db.execute(stmt)).scalar_one_or_none()
    if player is None:
        raise NotFound("Player not found.", player_id=player_id)
    return player


def player_to_dict(player: Player) -> Dict[str, Any]:
    return {
        "id": player.id,
        "username": player.username,
        "email": player.email,
        "role": PlayerRole(player.role).value,
        "verified": player.verified,
        "rank": player.rank.name if player.rank else None,
        "groups": sorted(player.group_names),
        "total_xp": player.total_xp,
        "last_updated": player.last_updated.isoformat() if player.last_updated else None,
    }


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Registration, email codes, login and token handling"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def create_access_token(player: Player, expires_delta: Optional[timedelta] = None) -> str:
        now = datetime.now(timezone.utc)
        to_encode = {
            "sub": player.id,
            "username": player.username,
            "role": PlayerRole(player.role).value,
            "rank": player.rank.name if player.rank else None,
            "groups": sorted(player.group_names),
            "verified": bool(player.verified),
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
        }
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def build_token_response(player: Player) -> TokenResponse:
        return TokenResponse(
            access_token=AuthService.create_access_token(player),
            expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            player=player_to_dict(player),
        )

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def _check_brute_force(email: str) -> None:
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        recent = [t for t in _login_attempts.get(email, ()) if t > cutoff]
        if not recent:
            _login_attempts.pop(email, None)
            return
        _login_attempts[email] = recent
        if len(recent) >= MAX_LOGIN_ATTEMPTS:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    def generate_code() -> str:
        return str(10000 + secrets.randbelow(90000))

    @staticmethod
    async def _issue_code(db: AsyncSession, player: Player, purpose: CodePurpose) -> str:
        await db.execute(delete(VerificationCode).where(
            VerificationCode.player_id == player.id,
            VerificationCode.purpose == purpose,
        ))
        code = AuthService.generate_code()
        db.add(VerificationCode(
            player_id=player.id,
            email=player.email,
            code=code,
            purpose=purpose,
            expires_at=utcnow() + timedelta(minutes=CODE_TTL_MINUTES),
        ))
        return code

    @staticmethod
    async def _consume_code(db: AsyncSession, email: str, code: str, purpose: CodePurpose) -> Player:
        stmt = select(VerificationCode).where(
            VerificationCode.email == email,
            VerificationCode.code == code,
            VerificationCode.purpose == purpose,
        )
        record = (await db.execute(stmt)).scalar_one_or_none()
        if record is None or record.expires_at < utcnow():
            raise ValidationError("Invalid or expired code.")
        player = await db.get(Player, record.player_id)
        if player is None:
            raise NotFound("Player not found.")
        await db.delete(record)
        return player

    @staticmethod
    async def register_player(data: PlayerRegister, db: AsyncSession, xp_engine, notifier: Notifier) -> Player:
        stmt = select(Player).where(or_(Player.email == data.email, Player.username == data.username))
        if (await db.execute(stmt)).scalars().first():
            raise Conflict("Username or email already registered.")

        lowest = await xp_engine.lowest_rank(db)
        player = Player(
            username=data.username,
            email=data.email,
            password_hash=AuthService.hash_password(data.password),
            verified=False,
            role=PlayerRole.USER,
            rank_id=lowest.id,
            total_xp=0,
            groups=[],
        )
        db.add(player)
        await db.flush()
        code = await AuthService._issue_code(db, player, CodePurpose.VERIFY)
        db.add(AuditLog(action=AuditAction.PLAYER_REGISTERED, player_id=player.id,
                        details={"username": player.username}))
        await db.commit()

        # Code is persisted before delivery; a failed mail is only logged.
        await notify_safely(notifier, player.email, NotificationPurpose.VERIFY,
                            f"Your verification code is {code}. It expires in {CODE_TTL_MINUTES} minutes.")
        logger.info(f"Player registered: {player.username}")
        return await load_player(db, player.id)

    @staticmethod
    async def verify_email(data: VerifyRequest, db: AsyncSession) -> Player:
        player = await AuthService._consume_code(db, data.email, data.code, CodePurpose.VERIFY)
        player.verified = True
        db.add(AuditLog(action=AuditAction.PLAYER_VERIFIED, player_id=player.id, details={}))
        await db.commit()
        return await load_player(db, player.id)

    @staticmethod
    async def authenticate_player(email: str, password: str, db: AsyncSession) -> Optional[Player]:
        AuthService._check_brute_force(email)

        player = (await db.execute(select(Player).where(Player.email == email))).scalar_one_or_none()
        if not player or not AuthService.verify_password(password, player.password_hash):
            AuthService._record_failed_attempt(email)
            return None

        AuthService._clear_attempts(email)
        if not player.verified:
            raise Forbidden("Email not verified.")
        return player

    @staticmethod
    async def forgot_password(data: ForgotPasswordRequest, db: AsyncSession, notifier: Notifier) -> None:
        player = (await db.execute(select(Player).where(Player.email == data.email))).scalar_one_or_none()
        if player is None:
            raise NotFound("No player registered with this email.")
        code = await AuthService._issue_code(db, player, CodePurpose.RESET)
        await db.commit()
        await notify_safely(notifier, player.email, NotificationPurpose.RESET,
                            f"Your password reset code is {code}. It expires in {CODE_TTL_MINUTES} minutes.")

    @staticmethod
    async def reset_password(data: ResetPasswordRequest, db: AsyncSession) -> Player:
        player = await AuthService._consume_code(db, data.email, data.code, CodePurpose.RESET)
        player.password_hash = AuthService.hash_password(data.new_password)
        db.add(AuditLog(action=AuditAction.PASSWORD_RESET, player_id=player.id, details={}))
        await db.commit()
        AuthService._clear_attempts(data.email)
        return player


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

def current_player_from_token(token: str) -> CurrentPlayer:
    payload = AuthService.verify_token(token)
    if payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    try:
        return CurrentPlayer(
            id=payload["sub"],
            username=payload.get("username", ""),
            role=PlayerRole(payload.get("role", PlayerRole.USER.value)).value,
            rank=payload.get("rank"),
            groups=payload.get("groups") or [],
            verified=bool(payload.get("verified", False)),
        )
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token claims")


async def get_current_player(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentPlayer:
    """Claims are trusted as presented once the signature and expiry check out."""
    return current_player_from_token(credentials.credentials)


async def require_verified(player: CurrentPlayer = Depends(get_current_player)) -> CurrentPlayer:
    if not player.verified:
        raise HTTPException(status_code=403, detail="Email verification required")
    return player


def require_min_role(min_role: PlayerRole):
    """Dependency factory: require role level >= min_role (implies verified)"""
    async def _check(player: CurrentPlayer = Depends(require_verified)) -> CurrentPlayer:
        if player.level < ROLE_HIERARCHY.get(min_role, 0):
            raise HTTPException(status_code=403, detail="Insufficient role level")
        return player
    return _check
