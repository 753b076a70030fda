# routers/leaderboards.py — Ranked views over currently competing players
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentPlayer, require_min_role, require_verified
from database import get_db_session
from leaderboard_engine import LeaderboardView
from models import AuditAction, AuditLog, PlayerRole
from notifier import NotificationPurpose, notify_safely
from services import GamificationServices, get_services

router = APIRouter(prefix="/api/v1/leaderboards", tags=["Leaderboards"])


@router.get("")
async def leaderboard(
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    """Top 20 by total XP"""
    return await services.leaderboard.build_top(db, LeaderboardView.XP, datetime.now(timezone.utc))


@router.get("/historical")
async def historical_leaderboard(
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    """Top 10 by total XP"""
    return await services.leaderboard.build_top(db, LeaderboardView.HISTORICAL, datetime.now(timezone.utc))


@router.get("/position/{player_id}")
async def leaderboard_position(
    player_id: str,
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    return await services.leaderboard.find_position(db, player_id, datetime.now(timezone.utc))


@router.post("/reset")
async def reset_leaderboard_cache(
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    """Drop cached views and rebuild the primary leaderboard"""
    now = datetime.now(timezone.utc)
    entries = await services.leaderboard.reset(db, now)
    db.add(AuditLog(action=AuditAction.LEADERBOARD_CACHE_RESET, player_id=user.id,
                    details={"entries": len(entries)}, timestamp=now))
    await db.commit()
    await services.push.broadcast("leaderboard.update", {"reset": True, "entries": len(entries)})
    await notify_safely(services.notifier, services.admin_email, NotificationPurpose.ANOMALY_ALERT,
                        f"Leaderboard cache reset by {user.username}.")
    return {"status": "reset", "leaderboard": entries}
