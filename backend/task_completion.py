"""
RankForge — Task completion flow

Ties the engine components together for one completion request:

    eligibility → ledger bump → booster resolution → XP apply → grant row

all inside one transaction, so the ledger increment and the XP it pays for
commit together or not at all. Cache invalidation, rank-change handlers and
the leaderboard push happen after the commit and never undo it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booster_resolver import BoosterResolver, XpBreakdown
from cache import CACHE_TTL, CacheKeys
from completion_ledger import CompletionLedger
from errors import Conflict, Forbidden, GamificationError, NotEligible, NotFound, TaskInactive
from leaderboard_engine import POSITION_CACHE_TTL, LeaderboardViewBuilder
from models import AuditAction, AuditLog, Player, PlayerTaskProgress, Task, XpGrant
from notifier import PushChannel
from rank_events import RankEventDispatcher
from task_eligibility import TaskEligibilityChecker
from telemetry import span
from tournament_manager import TournamentManager
from xp_engine import XpRankEngine, next_rank

logger = logging.getLogger("rankforge.completion")

PROGRESS_WINDOW = timedelta(days=30)


@dataclass
class CompletionResult:
    task_id: str
    player_id: str
    xp_awarded: int
    total_xp: int
    completions: int
    rank_name: str
    rank_changed: bool
    breakdown: XpBreakdown
    handler_outcome: Dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "xp_awarded": self.xp_awarded,
            "total_xp": self.total_xp,
            "completions": self.completions,
            "rank": self.rank_name,
            "rank_changed": self.rank_changed,
            "breakdown": self.breakdown.to_dict(),
        }


def task_to_dict(task: Task, progress: Optional[PlayerTaskProgress] = None) -> Dict[str, Any]:
    data = {
        "id": task.id,
        "title": task.title,
        "xp_reward": task.xp_reward,
        "category": task.task_category.name.lower(),
        "max_completions": task.max_completions,
        "cooldown_seconds": task.cooldown_seconds,
        "groups": list(task.groups or []),
        "tournament_id": task.tournament_id,
        "start_time": task.start_time.isoformat() if task.start_time else None,
        "end_time": task.end_time.isoformat() if task.end_time else None,
    }
    data["completions"] = progress.completions if progress else 0
    data["last_completed"] = (
        progress.last_completed.isoformat() if progress and progress.last_completed else None
    )
    return data


class TaskCompletionService:
    def __init__(
        self,
        ledger: CompletionLedger,
        eligibility: TaskEligibilityChecker,
        boosters: BoosterResolver,
        xp_engine: XpRankEngine,
        tournaments: TournamentManager,
        leaderboard: LeaderboardViewBuilder,
        dispatcher: RankEventDispatcher,
        push: PushChannel,
    ):
        self.ledger = ledger
        self.eligibility = eligibility
        self.boosters = boosters
        self.xp_engine = xp_engine
        self.tournaments = tournaments
        self.leaderboard = leaderboard
        self.dispatcher = dispatcher
        self.push = push

    @property
    def cache(self):
        return self.leaderboard.cache

    async def get_task(self, db: AsyncSession, task_id: str) -> Task:
        task = await db.get(Task, task_id)
        if task is None:
            raise NotFound("Task not found.", task_id=task_id)
        return task

    async def complete(self, db: AsyncSession, player_id: str, task_id: str, now: datetime,
                       tournament_id: Optional[str] = None) -> CompletionResult:
        with span("task.complete", player_id=player_id, task_id=task_id):
            player = await self.xp_engine.get_player(db, player_id)
            if not player.verified:
                raise Forbidden("Verify your email before completing tasks.")
            task = await self.get_task(db, task_id)
            if tournament_id is not None and task.tournament_id != tournament_id:
                raise NotFound("Task not found in this tournament.", task_id=task_id)
            if not task.in_window(now):
                raise TaskInactive("Task is not available at this time.", task_id=task_id)
            if task.is_tournament_task:
                await self.tournaments.ensure_participant(db, task.tournament_id, player.id)
            elif not await self.eligibility.is_eligible(db, player, task, now):
                raise NotEligible("You are not eligible for this task.", task_id=task_id)

            try:
                entry = await self.ledger.record_completion(db, player.id, task, now)
                breakdown = await self.boosters.resolve(db, task, player, now)
                xp = await self.xp_engine.apply_xp(db, player.id, breakdown.total, now)
                db.add(XpGrant(
                    player_id=player.id,
                    task_id=task.id,
                    completion_number=entry.completions,
                    amount=breakdown.total,
                    granted_at=now,
                ))
                db.add(AuditLog(
                    action=(AuditAction.TOURNAMENT_TASK_COMPLETED if task.is_tournament_task
                            else AuditAction.TASK_COMPLETED),
                    player_id=player.id,
                    details={
                        "task_id": task.id,
                        "title": task.title,
                        "completion": entry.completions,
                        "xp": breakdown.to_dict(),
                    },
                    timestamp=now,
                ))
                await db.flush()
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                logger.warning(f"Duplicate completion {player_id}:{task_id} rejected: {e.orig}")
                raise Conflict("Completion already recorded.", task_id=task_id)
            except GamificationError:
                await db.rollback()
                raise

        logger.info(
            f"Task {task.id[:8]} completed by {player.id[:8]}: +{breakdown.total} XP "
            f"(completion #{entry.completions})"
        )
        await self.leaderboard.invalidate_for_player(player.id)
        await self.cache.safe_delete(CacheKeys.assigned_tasks(player.id))

        outcome: Dict[str, bool] = {}
        if xp.rank_change is not None:
            outcome = await self.dispatcher.dispatch(xp.rank_change)
        await self._push_leaderboard(player.id, xp.player.total_xp)

        return CompletionResult(
            task_id=task.id,
            player_id=player.id,
            xp_awarded=breakdown.total,
            total_xp=xp.player.total_xp,
            completions=entry.completions,
            rank_name=xp.rank.name,
            rank_changed=xp.rank_changed,
            breakdown=breakdown,
            handler_outcome=outcome,
        )

    async def _push_leaderboard(self, player_id: str, total_xp: int) -> None:
        try:
            await self.push.broadcast("leaderboard.update", {"player_id": player_id, "total_xp": total_xp})
        except Exception as e:
            logger.warning(f"Leaderboard push failed: {e}")

    # ------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------

    async def assigned_tasks(self, db: AsyncSession, player: Player, now: datetime) -> List[Dict[str, Any]]:
        key = CacheKeys.assigned_tasks(player.id)
        cached = await self.cache.safe_get(key)
        if cached is not None:
            return cached

        tasks = await self.eligibility.list_assigned(db, player, now)
        progress_rows = (await db.execute(
            select(PlayerTaskProgress).where(PlayerTaskProgress.player_id == player.id)
        )).scalars().all()
        progress = {p.task_id: p for p in progress_rows}
        listing = [task_to_dict(t, progress.get(t.id)) for t in tasks]
        await self.cache.safe_set(key, listing, POSITION_CACHE_TTL)
        return listing

    async def task_details(self, db: AsyncSession, player: Player, task_id: str, now: datetime) -> Dict[str, Any]:
        task = await self.get_task(db, task_id)
        if not player.is_staff and not await self.eligibility.is_eligible(db, player, task, now):
            raise NotEligible("You are not eligible for this task.", task_id=task_id)
        progress = await self.ledger.get_progress(db, player.id, task.id)
        return task_to_dict(task, progress)

    async def progress_summary(self, db: AsyncSession, player_id: str, now: datetime) -> Dict[str, Any]:
        key = CacheKeys.player_progress(player_id)
        cached = await self.cache.safe_get(key)
        if cached is not None:
            return cached

        player = await self.xp_engine.get_player(db, player_id)
        since = now - PROGRESS_WINDOW
        total_completions = (await db.execute(
            select(func.coalesce(func.sum(PlayerTaskProgress.completions), 0))
            .where(PlayerTaskProgress.player_id == player_id)
        )).scalar_one()
        recent_xp, recent_count = (await db.execute(
            select(func.coalesce(func.sum(XpGrant.amount), 0), func.count(XpGrant.id))
            .where(XpGrant.player_id == player_id, XpGrant.granted_at >= since)
        )).one()

        summary = {
            "player_id": player.id,
            "username": player.username,
            "total_xp": player.total_xp,
            "rank": player.rank.name if player.rank else None,
            "groups": sorted(player.group_names),
            "total_completions": int(total_completions),
            "xp_last_30_days": int(recent_xp),
            "tasks_completed_last_30_days": int(recent_count),
        }
        await self.cache.safe_set(key, summary, CACHE_TTL)
        return summary

    async def rank_summary(self, db: AsyncSession, player_id: str) -> Dict[str, Any]:
        key = CacheKeys.player_rank(player_id)
        cached = await self.cache.safe_get(key)
        if cached is not None:
            return cached

        player = await self.xp_engine.get_player(db, player_id)
        ranks = await self.xp_engine.load_ranks(db)
        current = next((r for r in ranks if r.id == player.rank_id), None)
        upcoming = next_rank(ranks, player.total_xp)
        summary = {
            "player_id": player.id,
            "rank": current.name if current else None,
            "xp_booster": current.xp_booster if current else 1.0,
            "total_xp": player.total_xp,
            "next_rank": upcoming.name if upcoming else None,
            "xp_to_next_rank": upcoming.min_xp - player.total_xp if upcoming else 0,
        }
        await self.cache.safe_set(key, summary, CACHE_TTL)
        return summary
