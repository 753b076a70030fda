# routers/tasks.py — Assigned tasks, completion, and staff task management
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentPlayer, require_min_role, require_verified, load_player
from cache import CacheKeys
from database import get_db_session
from errors import NotFound, ValidationError
from models import (
    AuditAction, AuditLog, GLOBAL_GROUP, Group, PlayerRole, PlayerTaskProgress,
    Task, TaskCategory, Tournament,
)
from services import GamificationServices, get_services
from task_completion import task_to_dict

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


# --- Schemas ---

def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_variant(category: TaskCategory, tournament_id: Optional[str], max_completions: int,
                   start_time: Optional[datetime], end_time: Optional[datetime]) -> None:
    if category == TaskCategory.TOURNAMENT:
        if not tournament_id:
            raise ValueError("Tournament tasks must reference a tournament")
        if max_completions > 1:
            raise ValueError("Tournament tasks can be completed at most once")
    elif tournament_id:
        raise ValueError("Only tournament tasks may reference a tournament")
    if start_time and end_time and start_time >= end_time:
        raise ValueError("start_time must be before end_time")


class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=32)
    xp_reward: int = Field(..., gt=0)
    category: TaskCategory = TaskCategory.DAILY
    max_completions: int = Field(default=0, ge=0)
    cooldown_seconds: int = Field(default=0, ge=0)
    groups: List[str] = Field(default_factory=lambda: [GLOBAL_GROUP])
    players_bypass: List[str] = Field(default_factory=list)
    tournament_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def normalise_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @model_validator(mode="after")
    def validate_variant(self):
        _check_variant(self.category, self.tournament_id, self.max_completions,
                       self.start_time, self.end_time)
        return self


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=32)
    xp_reward: Optional[int] = Field(default=None, gt=0)
    max_completions: Optional[int] = Field(default=None, ge=0)
    cooldown_seconds: Optional[int] = Field(default=None, ge=0)
    groups: Optional[List[str]] = None
    players_bypass: Optional[List[str]] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def normalise_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


# --- Helpers ---

async def _check_groups(db: AsyncSession, names: List[str]) -> List[str]:
    names = sorted(set(names))
    wanted = [n for n in names if n != GLOBAL_GROUP]
    if wanted:
        known = set((await db.execute(select(Group.name).where(Group.name.in_(wanted)))).scalars().all())
        missing = set(wanted) - known
        if missing:
            raise ValidationError("Unknown group(s).", groups=sorted(missing))
    return names


async def _invalidate_task_views(services: GamificationServices, task: Task) -> None:
    await services.cache.safe_delete_prefix(CacheKeys.ASSIGNED_PREFIX)
    if task.is_tournament_task:
        await services.cache.safe_delete(CacheKeys.TOURNAMENTS_ACTIVE)


# --- Player endpoints ---

@router.get("")
async def list_assigned_tasks(
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    """Tasks the player may complete right now, with their own progress"""
    player = await load_player(db, user.id)
    return await services.completions.assigned_tasks(db, player, datetime.now(timezone.utc))


@router.get("/all")
async def list_all_tasks(
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.MODERATOR)),
    db: AsyncSession = Depends(get_db_session),
    category: Optional[TaskCategory] = None,
    limit: int = Query(default=100, le=500),
    offset: int = Query(default=0, ge=0),
):
    stmt = select(Task).order_by(Task.created_at.desc(), Task.id).offset(offset).limit(limit)
    if category is not None:
        stmt = stmt.where(Task.category == int(category))
    tasks = (await db.execute(stmt)).scalars().all()
    return [task_to_dict(t) for t in tasks]


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    player = await load_player(db, user.id)
    return await services.completions.task_details(db, player, task_id, datetime.now(timezone.utc))


@router.post("/{task_id}/complete")
async def complete_task(
    task_id: str,
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    result = await services.completions.complete(db, user.id, task_id, datetime.now(timezone.utc))
    return result.to_dict()


# --- Staff endpoints ---

@router.post("", status_code=201)
async def create_task(
    data: TaskCreate,
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.MODERATOR)),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    if data.tournament_id and await db.get(Tournament, data.tournament_id) is None:
        raise NotFound("Tournament not found.", tournament_id=data.tournament_id)
    groups = await _check_groups(db, data.groups)

    task = Task(
        title=data.title,
        xp_reward=data.xp_reward,
        category=data.category,
        max_completions=data.max_completions,
        cooldown_seconds=data.cooldown_seconds,
        groups=groups,
        players_bypass=sorted(set(data.players_bypass)),
        tournament_id=data.tournament_id,
        start_time=data.start_time,
        end_time=data.end_time,
    )
    db.add(task)
    await db.flush()
    db.add(AuditLog(action=AuditAction.TASK_CREATED, player_id=user.id,
                    details={"task_id": task.id, "title": task.title}))
    await db.commit()
    await _invalidate_task_views(services, task)
    return task_to_dict(task)


@router.patch("/{task_id}")
async def update_task(
    task_id: str,
    data: TaskUpdate,
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.MODERATOR)),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    task = await services.completions.get_task(db, task_id)
    changes: Dict[str, Any] = data.model_dump(exclude_unset=True)
    if "groups" in changes and changes["groups"] is not None:
        changes["groups"] = await _check_groups(db, changes["groups"])
    if "players_bypass" in changes and changes["players_bypass"] is not None:
        changes["players_bypass"] = sorted(set(changes["players_bypass"]))

    merged = {
        "max_completions": changes.get("max_completions", task.max_completions),
        "start_time": changes.get("start_time", task.start_time),
        "end_time": changes.get("end_time", task.end_time),
    }
    try:
        _check_variant(task.task_category, task.tournament_id, merged["max_completions"] or 0,
                       merged["start_time"], merged["end_time"])
    except ValueError as e:
        raise ValidationError(str(e), task_id=task_id)

    for field, value in changes.items():
        if value is None and field not in ("start_time", "end_time"):
            continue
        setattr(task, field, value)
    db.add(AuditLog(action=AuditAction.TASK_UPDATED, player_id=user.id,
                    details={"task_id": task_id, "fields": sorted(changes)}))
    await db.commit()
    await _invalidate_task_views(services, task)
    return task_to_dict(task)


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.MODERATOR)),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    task = await services.completions.get_task(db, task_id)
    await db.execute(delete(PlayerTaskProgress).where(PlayerTaskProgress.task_id == task_id))
    await db.delete(task)
    db.add(AuditLog(action=AuditAction.TASK_DELETED, player_id=user.id,
                    details={"task_id": task_id, "title": task.title}))
    await db.commit()
    await _invalidate_task_views(services, task)
    return {"status": "deleted", "task_id": task_id}
