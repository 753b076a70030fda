# routers/players.py — Player progress, rank lookups and staff edits
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    CurrentPlayer, ROLE_HIERARCHY, load_player, player_to_dict, require_min_role, require_verified,
)
from cache import CacheKeys
from database import get_db_session
from errors import Forbidden, ValidationError
from leaderboard_engine import is_significant_change
from models import AuditAction, AuditLog, Group, Player, PlayerRole
from notifier import NotificationPurpose, notify_safely
from services import GamificationServices, get_services

router = APIRouter(prefix="/api/v1/players", tags=["Players"])


# --- Schemas ---

class PlayerUpdate(BaseModel):
    role: Optional[PlayerRole] = None
    groups: Optional[List[str]] = None
    total_xp: Optional[int] = Field(default=None, ge=0)


# --- Helpers ---

def _ensure_self_or_staff(user: CurrentPlayer, player_id: str) -> None:
    if user.id != player_id and not user.is_staff:
        raise HTTPException(status_code=403, detail="You can only view your own progress")


# --- Endpoints ---

@router.get("")
async def list_players(
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.MODERATOR)),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
    role: Optional[PlayerRole] = None,
):
    stmt = select(Player).order_by(Player.created_at.desc(), Player.id).offset(offset).limit(limit)
    if role:
        stmt = stmt.where(Player.role == role)
    players = (await db.execute(stmt)).scalars().all()
    return [player_to_dict(p) for p in players]


@router.get("/{player_id}/progress")
async def player_progress(
    player_id: str,
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    _ensure_self_or_staff(user, player_id)
    return await services.completions.progress_summary(db, player_id, datetime.now(timezone.utc))


@router.get("/{player_id}/rank")
async def player_rank(
    player_id: str,
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    _ensure_self_or_staff(user, player_id)
    return await services.completions.rank_summary(db, player_id)


@router.patch("/{player_id}")
async def update_player(
    player_id: str,
    data: PlayerUpdate,
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.MODERATOR)),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    """Staff edit of role, groups and total XP; XP changes re-rank the player"""
    now = datetime.now(timezone.utc)
    target = await load_player(db, player_id)
    if not target.verified:
        raise Forbidden("Player has not verified their email.")

    changes = {}
    if data.role is not None and data.role != PlayerRole(target.role):
        if user.level < ROLE_HIERARCHY[PlayerRole.ADMIN]:
            raise Forbidden("Only admins can change roles.")
        if ROLE_HIERARCHY[data.role] > user.level or ROLE_HIERARCHY[PlayerRole(target.role)] > user.level:
            raise Forbidden("Cannot assign a role above your own.")
        changes["role"] = {"old": PlayerRole(target.role).value, "new": data.role.value}
        target.role = data.role

    if data.groups is not None:
        names = sorted(set(data.groups))
        groups = (await db.execute(select(Group).where(Group.name.in_(names)))).scalars().all()
        missing = set(names) - {g.name for g in groups}
        if missing:
            raise ValidationError("Unknown group(s).", groups=sorted(missing))
        changes["groups"] = {"old": sorted(target.group_names), "new": names}
        target.groups = list(groups)

    xp_result = None
    significant = False
    previous_xp = target.total_xp
    if data.total_xp is not None and data.total_xp != previous_xp:
        await db.flush()
        xp_result = await services.xp_engine.set_total_xp(db, player_id, data.total_xp, now)
        significant = is_significant_change(previous_xp, data.total_xp)
        changes["total_xp"] = {"old": previous_xp, "new": data.total_xp}

    if not changes:
        return player_to_dict(target)

    db.add(AuditLog(
        action=AuditAction.PLAYER_UPDATED,
        player_id=player_id,
        details={"by": user.id, "changes": changes},
        timestamp=now,
    ))
    await db.commit()

    await services.leaderboard.invalidate_for_player(player_id, significant=significant)
    await services.cache.safe_delete(CacheKeys.assigned_tasks(player_id))
    if xp_result is not None and xp_result.rank_change is not None:
        await services.dispatcher.dispatch(xp_result.rank_change)

    player = await load_player(db, player_id)
    await notify_safely(
        services.notifier, player.email, NotificationPurpose.PROFILE_CHANGED,
        f"Your profile was updated by staff: {', '.join(sorted(changes))}.",
    )
    return player_to_dict(player)
