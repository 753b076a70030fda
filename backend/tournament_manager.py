"""
RankForge — Tournament Membership Manager

Roster joins, participation checks, the cached active-tournament listing
and tournament administration.

Joins are serialised per tournament inside this worker by a keyed lock.
Across workers the tournament row is locked (SELECT ... FOR UPDATE) before
the roster is counted, so a second joiner waits for the first to commit and
then sees its seat taken. The capacity check itself travels with the roster
insert (INSERT ... SELECT ... WHERE count < max_participants).
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, literal, select
from sqlalchemy.ext.asyncio import AsyncSession

from cache import CACHE_TTL, CacheKeys, CacheStore
from database import dialect_insert
from errors import (
    AlreadyJoined, Forbidden, Full, NotActive, NotEligible, NotFound,
    NotParticipant, ValidationError,
)
from locks import KeyedLock
from models import (
    AuditAction, AuditLog, Player, PlayerTaskProgress, Rank, Task, TaskCategory,
    Tournament, UTCDateTime, tournament_participants,
)
from notifier import ALL_PLAYERS_EMAIL, NotificationPurpose, Notifier, notify_safely
from telemetry import span

logger = logging.getLogger("rankforge.tournaments")


def tournament_to_dict(tournament: Tournament, tasks: Optional[Iterable[Task]] = None) -> Dict[str, Any]:
    data = {
        "id": tournament.id,
        "name": tournament.name,
        "start_time": tournament.start_time.isoformat(),
        "end_time": tournament.end_time.isoformat(),
        "max_participants": tournament.max_participants,
        "participant_count": len(tournament.participants),
        "eligible_ranks": sorted(r.name for r in tournament.eligible_ranks),
    }
    if tasks is not None:
        data["tasks"] = [
            {"id": t.id, "title": t.title, "xp_reward": t.xp_reward}
            for t in tasks
        ]
    return data


class TournamentManager:
    def __init__(self, cache: CacheStore, notifier: Notifier,
                 broadcast_email: str = ALL_PLAYERS_EMAIL, ttl: int = CACHE_TTL):
        self.cache = cache
        self.notifier = notifier
        self.broadcast_email = broadcast_email
        self.ttl = ttl
        self._locks = KeyedLock()

    async def get(self, db: AsyncSession, tournament_id: str) -> Tournament:
        stmt = (
            select(Tournament)
            .where(Tournament.id == tournament_id)
            .execution_options(populate_existing=True)
        )
        tournament = (await db.execute(stmt)).scalar_one_or_none()
        if tournament is None:
            raise NotFound("Tournament not found.", tournament_id=tournament_id)
        return tournament

    async def is_participant(self, db: AsyncSession, tournament_id: str, player_id: str) -> bool:
        stmt = select(tournament_participants.c.player_id).where(
            tournament_participants.c.tournament_id == tournament_id,
            tournament_participants.c.player_id == player_id,
        )
        return (await db.execute(stmt)).first() is not None

    @staticmethod
    def roster_lock(tournament_id: str):
        """Row lock held until commit; no-op on SQLite, whose writers are serial."""
        return select(Tournament.id).where(Tournament.id == tournament_id).with_for_update()

    async def ensure_participant(self, db: AsyncSession, tournament_id: str, player_id: str) -> None:
        if not await self.is_participant(db, tournament_id, player_id):
            raise NotParticipant("You are not a participant of this tournament.",
                                 tournament_id=tournament_id)

    # ------------------------------------------------------------
    # Join
    # ------------------------------------------------------------

    async def join(self, db: AsyncSession, player: Player, tournament_id: str, now: datetime) -> Tournament:
        """Add the player to the roster and commit, or raise a denial."""
        with span("tournament.join", player_id=player.id, tournament_id=tournament_id):
            return await self._join(db, player, tournament_id, now)

    async def _join(self, db: AsyncSession, player: Player, tournament_id: str, now: datetime) -> Tournament:
        if not player.verified:
            raise Forbidden("Verify your email before joining tournaments.")

        async with self._locks.hold(tournament_id):
            await db.execute(self.roster_lock(tournament_id))
            tournament = await self.get(db, tournament_id)
            if not tournament.is_active(now):
                raise NotActive("Tournament is not active.", tournament_id=tournament_id)
            eligible_rank_ids = {r.id for r in tournament.eligible_ranks}
            if not player.is_staff and player.rank_id not in eligible_rank_ids:
                raise NotEligible("Your rank is not eligible for this tournament.",
                                  tournament_id=tournament_id)
            if await self.is_participant(db, tournament_id, player.id):
                raise AlreadyJoined("Already joined this tournament.", tournament_id=tournament_id)

            if not await self._insert_if_room(db, tournament, player.id, now):
                if await self.is_participant(db, tournament_id, player.id):
                    raise AlreadyJoined("Already joined this tournament.", tournament_id=tournament_id)
                raise Full("Tournament is full.", tournament_id=tournament_id,
                           max_participants=tournament.max_participants)

            db.add(AuditLog(
                action=AuditAction.TOURNAMENT_JOINED,
                player_id=player.id,
                details={"tournament_id": tournament_id, "tournament": tournament.name},
                timestamp=now,
            ))
            await db.commit()

        await self.cache.safe_delete(
            CacheKeys.TOURNAMENTS_ACTIVE,
            CacheKeys.tournament(tournament_id),
            CacheKeys.assigned_tasks(player.id),
        )
        await notify_safely(
            self.notifier, player.email, NotificationPurpose.TOURNAMENT_UPDATE,
            f"You joined the tournament {tournament.name}.",
        )
        logger.info(f"Player {player.id[:8]} joined tournament {tournament_id[:8]}")
        return await self.get(db, tournament_id)

    async def _insert_if_room(self, db: AsyncSession, tournament: Tournament,
                              player_id: str, now: datetime) -> bool:
        roster_size = (
            select(func.count())
            .select_from(tournament_participants)
            .where(tournament_participants.c.tournament_id == tournament.id)
            .scalar_subquery()
        )
        source = select(
            literal(tournament.id),
            literal(player_id),
            literal(now, UTCDateTime()),
        ).where(roster_size < tournament.max_participants)
        stmt = (
            dialect_insert(db, tournament_participants)
            .from_select(["tournament_id", "player_id", "joined_at"], source)
            .on_conflict_do_nothing(index_elements=["tournament_id", "player_id"])
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    # ------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------

    async def list_active(self, db: AsyncSession, now: datetime) -> List[Dict[str, Any]]:
        cached = await self.cache.safe_get(CacheKeys.TOURNAMENTS_ACTIVE)
        if cached is not None:
            return cached

        tournaments = (await db.execute(
            select(Tournament)
            .where(Tournament.start_time <= now, Tournament.end_time > now)
            .order_by(Tournament.start_time, Tournament.id)
        )).scalars().all()

        tasks_by_tournament: Dict[str, List[Task]] = {t.id: [] for t in tournaments}
        if tournaments:
            tasks = (await db.execute(
                select(Task)
                .where(Task.category == int(TaskCategory.TOURNAMENT))
                .where(Task.tournament_id.in_(list(tasks_by_tournament)))
                .order_by(Task.created_at, Task.id)
            )).scalars().all()
            for task in tasks:
                tasks_by_tournament[task.tournament_id].append(task)

        listing = [tournament_to_dict(t, tasks_by_tournament[t.id]) for t in tournaments]
        await self.cache.safe_set(CacheKeys.TOURNAMENTS_ACTIVE, listing, self.ttl)
        return listing

    # ------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------

    async def _load_ranks(self, db: AsyncSession, rank_ids: Iterable[str]) -> List[Rank]:
        rank_ids = list(dict.fromkeys(rank_ids))
        if not rank_ids:
            return []
        ranks = (await db.execute(select(Rank).where(Rank.id.in_(rank_ids)))).scalars().all()
        missing = set(rank_ids) - {r.id for r in ranks}
        if missing:
            raise ValidationError("Unknown rank id(s).", rank_ids=sorted(missing))
        return list(ranks)

    @staticmethod
    def _check_window(start_time: datetime, end_time: datetime) -> None:
        if start_time >= end_time:
            raise ValidationError("Tournament must start before it ends.")

    async def create(self, db: AsyncSession, actor: Player, name: str, start_time: datetime,
                     end_time: datetime, max_participants: int, eligible_rank_ids: Iterable[str],
                     now: datetime) -> Tournament:
        self._check_window(start_time, end_time)
        if max_participants < 1:
            raise ValidationError("max_participants must be at least 1.")
        ranks = await self._load_ranks(db, eligible_rank_ids)

        tournament = Tournament(
            name=name,
            start_time=start_time,
            end_time=end_time,
            max_participants=max_participants,
            eligible_ranks=ranks,
            participants=[],
        )
        db.add(tournament)
        await db.flush()
        db.add(AuditLog(
            action=AuditAction.TOURNAMENT_CREATED,
            player_id=actor.id,
            details={"tournament_id": tournament.id, "name": name},
            timestamp=now,
        ))
        await db.commit()

        await self.cache.safe_delete(CacheKeys.TOURNAMENTS_ACTIVE)
        if self.broadcast_email:
            await notify_safely(
                self.notifier, self.broadcast_email, NotificationPurpose.TOURNAMENT_UPDATE,
                f"New tournament {name} runs from {start_time.isoformat()} to {end_time.isoformat()}.",
            )
        logger.info(f"Tournament created: {name} ({tournament.id[:8]})")
        return await self.get(db, tournament.id)

    async def update(self, db: AsyncSession, actor: Player, tournament_id: str,
                     changes: Dict[str, Any], now: datetime) -> Tournament:
        tournament = await self.get(db, tournament_id)
        started = tournament.start_time <= now
        reschedule = {k for k in ("start_time", "end_time") if changes.get(k) is not None}
        if started and reschedule:
            raise ValidationError("Cannot change the schedule of a tournament that has started.")

        start_time = changes.get("start_time") or tournament.start_time
        end_time = changes.get("end_time") or tournament.end_time
        self._check_window(start_time, end_time)

        if changes.get("max_participants") is not None:
            if changes["max_participants"] < max(1, len(tournament.participants)):
                raise ValidationError("max_participants cannot drop below the current roster size.")
            tournament.max_participants = changes["max_participants"]
        if changes.get("name"):
            tournament.name = changes["name"]
        if changes.get("eligible_rank_ids") is not None:
            tournament.eligible_ranks = await self._load_ranks(db, changes["eligible_rank_ids"])
        tournament.start_time = start_time
        tournament.end_time = end_time

        db.add(AuditLog(
            action=AuditAction.TOURNAMENT_UPDATED,
            player_id=actor.id,
            details={"tournament_id": tournament_id, "fields": sorted(k for k, v in changes.items() if v is not None)},
            timestamp=now,
        ))
        await db.commit()
        await self.cache.safe_delete(CacheKeys.TOURNAMENTS_ACTIVE, CacheKeys.tournament(tournament_id))
        return await self.get(db, tournament_id)

    async def delete(self, db: AsyncSession, actor: Player, tournament_id: str, now: datetime) -> int:
        """Delete the tournament together with its tasks; returns the task count."""
        tournament = await self.get(db, tournament_id)
        task_ids = (await db.execute(
            select(Task.id).where(Task.tournament_id == tournament_id)
        )).scalars().all()
        if task_ids:
            await db.execute(delete(PlayerTaskProgress).where(PlayerTaskProgress.task_id.in_(task_ids)))
            await db.execute(delete(Task).where(Task.id.in_(task_ids)))
        await db.delete(tournament)
        db.add(AuditLog(
            action=AuditAction.TOURNAMENT_DELETED,
            player_id=actor.id,
            details={"tournament_id": tournament_id, "name": tournament.name, "tasks_deleted": len(task_ids)},
            timestamp=now,
        ))
        await db.commit()

        await self.cache.safe_delete(CacheKeys.TOURNAMENTS_ACTIVE, CacheKeys.tournament(tournament_id))
        await self.cache.safe_delete_prefix(CacheKeys.ASSIGNED_PREFIX)
        logger.info(f"Tournament deleted: {tournament_id[:8]} with {len(task_ids)} task(s)")
        return len(task_ids)
