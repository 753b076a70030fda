# completion_ledger.py — Per (player, task) completion counter
#
# One logical row per pair, upserted. Limit and cooldown are enforced inside
# the UPDATE's WHERE clause so two concurrent attempts cannot both pass the
# check and both increment. The caller owns the transaction: the ledger bump
# and the XP award it pays for commit together.

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from database import dialect_insert
from errors import LimitReached, OnCooldown, TaskInactive
from locks import KeyedLock
from models import PlayerTaskProgress, Task, new_uuid

logger = logging.getLogger("rankforge.ledger")

MAX_ATTEMPTS = 3


@dataclass
class LedgerEntry:
    player_id: str
    task_id: str
    completions: int
    last_completed: Optional[datetime]

    @property
    def idempotency_key(self) -> str:
        return f"{self.player_id}:{self.task_id}:{self.completions}"


class CompletionLedger:
    def __init__(self):
        self._locks = KeyedLock()

    async def get_progress(self, db: AsyncSession, player_id: str, task_id: str) -> Optional[PlayerTaskProgress]:
        stmt = (
            select(PlayerTaskProgress)
            .where(PlayerTaskProgress.player_id == player_id, PlayerTaskProgress.task_id == task_id)
            .execution_options(populate_existing=True)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def record_completion(self, db: AsyncSession, player_id: str, task: Task, now: datetime) -> LedgerEntry:
        """Count one completion or raise TaskInactive / LimitReached / OnCooldown."""
        if not task.in_window(now):
            raise TaskInactive("Task is not available at this time.", task_id=task.id)

        async with self._locks.hold((player_id, task.id)):
            for _ in range(MAX_ATTEMPTS):
                if await self._conditional_bump(db, player_id, task, now):
                    break
                existing = await self.get_progress(db, player_id, task.id)
                if existing is None:
                    if await self._insert_first(db, player_id, task, now):
                        break
                    continue
                self._raise_denial(existing, task, now)
            else:
                raise RuntimeError(f"Ledger contention on task {task.id} for player {player_id}")

            progress = await self.get_progress(db, player_id, task.id)
            logger.info(
                f"Ledger: player {player_id[:8]} task {task.id[:8]} → {progress.completions} completion(s)"
            )
            return LedgerEntry(
                player_id=player_id,
                task_id=task.id,
                completions=progress.completions,
                last_completed=progress.last_completed,
            )

    # --- internals ---

    def _cooldown(self, task: Task) -> int:
        return 0 if task.is_tournament_task else (task.cooldown_seconds or 0)

    async def _conditional_bump(self, db: AsyncSession, player_id: str, task: Task, now: datetime) -> bool:
        conditions = [
            PlayerTaskProgress.player_id == player_id,
            PlayerTaskProgress.task_id == task.id,
        ]
        limit = task.completion_limit
        if limit:
            conditions.append(PlayerTaskProgress.completions < limit)
        cooldown = self._cooldown(task)
        if cooldown:
            ready_at = now - timedelta(seconds=cooldown)
            conditions.append(or_(
                PlayerTaskProgress.last_completed.is_(None),
                PlayerTaskProgress.last_completed <= ready_at,
            ))

        completions = 1 if task.is_tournament_task else PlayerTaskProgress.completions + 1
        stmt = (
            update(PlayerTaskProgress)
            .where(*conditions)
            .values(completions=completions, last_completed=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def _insert_first(self, db: AsyncSession, player_id: str, task: Task, now: datetime) -> bool:
        stmt = (
            dialect_insert(db, PlayerTaskProgress.__table__)
            .values(
                id=new_uuid(),
                player_id=player_id,
                task_id=task.id,
                completions=1,
                last_completed=now,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["player_id", "task_id"])
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    def _raise_denial(self, progress: PlayerTaskProgress, task: Task, now: datetime) -> None:
        limit = task.completion_limit
        if limit and progress.completions >= limit:
            raise LimitReached(
                "Task completion limit reached.",
                task_id=task.id, completions=progress.completions, limit=limit,
            )
        cooldown = self._cooldown(task)
        if cooldown and progress.last_completed is not None:
            remaining = cooldown - (now - progress.last_completed).total_seconds()
            if remaining > 0:
                raise OnCooldown(
                    "Task is on cooldown.",
                    task_id=task.id, retry_after=int(remaining) + 1,
                )
