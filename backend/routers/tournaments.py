# routers/tournaments.py — Active tournaments, joining, tournament task completion
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentPlayer, load_player, require_min_role, require_verified
from database import get_db_session
from models import PlayerRole
from services import GamificationServices, get_services
from tournament_manager import tournament_to_dict

router = APIRouter(prefix="/api/v1/tournaments", tags=["Tournaments"])


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TournamentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    start_time: datetime
    end_time: datetime
    max_participants: int = Field(..., ge=1)
    eligible_rank_ids: List[str] = Field(default_factory=list)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalise_times(cls, v: datetime) -> datetime:
        return _as_utc(v)


class TournamentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    max_participants: Optional[int] = Field(default=None, ge=1)
    eligible_rank_ids: Optional[List[str]] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def normalise_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


@router.get("/active")
async def list_active_tournaments(
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    """Tournaments running now, with their tasks"""
    return await services.tournaments.list_active(db, datetime.now(timezone.utc))


@router.post("/{tournament_id}/join")
async def join_tournament(
    tournament_id: str,
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    player = await load_player(db, user.id)
    tournament = await services.tournaments.join(db, player, tournament_id, datetime.now(timezone.utc))
    return {"status": "joined", "tournament": tournament_to_dict(tournament)}


@router.post("/{tournament_id}/tasks/{task_id}/complete")
async def complete_tournament_task(
    tournament_id: str,
    task_id: str,
    user: CurrentPlayer = Depends(require_verified),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    result = await services.completions.complete(
        db, user.id, task_id, datetime.now(timezone.utc), tournament_id=tournament_id,
    )
    return result.to_dict()


# --- Admin ---

@router.post("", status_code=201)
async def create_tournament(
    data: TournamentCreate,
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    actor = await load_player(db, user.id)
    tournament = await services.tournaments.create(
        db, actor, data.name, data.start_time, data.end_time,
        data.max_participants, data.eligible_rank_ids, datetime.now(timezone.utc),
    )
    return tournament_to_dict(tournament)


@router.patch("/{tournament_id}")
async def update_tournament(
    tournament_id: str,
    data: TournamentUpdate,
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    actor = await load_player(db, user.id)
    tournament = await services.tournaments.update(
        db, actor, tournament_id, data.model_dump(exclude_unset=True), datetime.now(timezone.utc),
    )
    return tournament_to_dict(tournament)


@router.delete("/{tournament_id}")
async def delete_tournament(
    tournament_id: str,
    user: CurrentPlayer = Depends(require_min_role(PlayerRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
    services: GamificationServices = Depends(get_services),
):
    actor = await load_player(db, user.id)
    deleted_tasks = await services.tournaments.delete(db, actor, tournament_id, datetime.now(timezone.utc))
    return {"status": "deleted", "tournament_id": tournament_id, "tasks_deleted": deleted_tasks}
