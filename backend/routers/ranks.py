# routers/ranks.py — Rank tiers and XP groups
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentPlayer, require_min_role, require_verified
from database import get_db_session
from errors import Conflict
from models import AuditAction, AuditLog, Group, PlayerRole, Rank
from services import GamificationServices, get_services

router = APIRouter(prefix="/api/v1", tags=["Ranks & Groups"])


class RankCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=32)
    min_xp: int = Field(..., ge=0)
    xp_booster: float = Field(default=1.0, ge=1.0)


class GroupCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=32)
    xp_booster: float = Field(default=1.0, ge=1.0)


def _rank_to_dict(rank: Rank) -> dict:
    return {"id": rank.id, "name": rank.name, "min_xp": rank.min_xp, "xp_booster": rank.xp_booster}


def _group_to_dict(group: Group) -> dict:
    return {"id": group.id, "name": group.name, "xp_booster": group.xp_booster}


@router.get("/ranks")
async def list_ranks(
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
):
    ranks = (await db.execute(select(Rank).order_by(Rank.min_xp))).scalars().all()
    return [_rank_to_dict(r) for r in ranks]


@router.post("/ranks", status_code=201)
async def create_rank(
    data: RankCreate,
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    """Add a tier and re-rank every player against the new table"""
    clash = (await db.execute(
        select(Rank).where(or_(Rank.name == data.name, Rank.min_xp == data.min_xp))
    )).scalars().first()
    if clash:
        raise Conflict("A rank with this name or threshold already exists.")

    now = datetime.now(timezone.utc)
    rank = Rank(name=data.name, min_xp=data.min_xp, xp_booster=data.xp_booster)
    db.add(rank)
    await db.flush()
    db.add(AuditLog(action=AuditAction.RANK_CREATED, player_id=user.id,
                    details={"rank": data.name, "min_xp": data.min_xp}, timestamp=now))
    events = await services.xp_engine.reconcile_all(db, now)
    await db.commit()

    for event in events:
        await services.dispatcher.dispatch(event)
    return {**_rank_to_dict(rank), "players_reranked": len(events)}


@router.get("/groups")
async def list_groups(
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
):
    groups = (await db.execute(select(Group).order_by(Group.name))).scalars().all()
    return [_group_to_dict(g) for g in groups]


@router.post("/groups", status_code=201)
async def create_group(
    data: GroupCreate,
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    if (await db.execute(select(Group).where(Group.name == data.name))).scalars().first():
        raise Conflict("A group with this name already exists.")
    group = Group(name=data.name, xp_booster=data.xp_booster)
    db.add(group)
    await db.flush()
    db.add(AuditLog(action=AuditAction.GROUP_CREATED, player_id=user.id,
                    details={"group": data.name, "xp_booster": data.xp_booster}))
    await db.commit()
    return _group_to_dict(group)
