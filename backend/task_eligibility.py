# task_eligibility.py — Who may see / complete which task, and when
#
# A task is eligible when its time window contains `now` AND one of:
#   - task.groups holds "global" or one of the player's group names
#   - the player id is on task.players_bypass
#   - it is a tournament task and the player is on that tournament's roster

import logging
from datetime import datetime
from typing import AbstractSet, Iterable, List, Set

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from models import GLOBAL_GROUP, Player, Task, TaskCategory, tournament_participants

logger = logging.getLogger("rankforge.eligibility")


def group_match(task: Task, group_names: AbstractSet[str]) -> bool:
    task_groups = set(task.groups or [])
    return GLOBAL_GROUP in task_groups or bool(task_groups & set(group_names))


def evaluate(
    task: Task,
    player_id: str,
    group_names: AbstractSet[str],
    tournament_ids: AbstractSet[str],
    now: datetime,
) -> bool:
    """Pure eligibility rule; callers supply the player's roster memberships."""
    if not task.in_window(now):
        return False
    if group_match(task, group_names):
        return True
    if player_id in (task.players_bypass or []):
        return True
    return task.is_tournament_task and task.tournament_id in tournament_ids


class TaskEligibilityChecker:
    async def tournament_ids_for(self, db: AsyncSession, player_id: str) -> Set[str]:
        stmt = select(tournament_participants.c.tournament_id).where(
            tournament_participants.c.player_id == player_id
        )
        return set((await db.execute(stmt)).scalars().all())

    async def is_eligible(self, db: AsyncSession, player: Player, task: Task, now: datetime) -> bool:
        tournament_ids: Set[str] = set()
        if task.is_tournament_task:
            tournament_ids = await self.tournament_ids_for(db, player.id)
        return evaluate(task, player.id, player.group_names, tournament_ids, now)

    async def list_assigned(self, db: AsyncSession, player: Player, now: datetime) -> List[Task]:
        """Group/bypass tasks plus tasks of every tournament the player is in."""
        window = [
            or_(Task.start_time.is_(None), Task.start_time <= now),
            or_(Task.end_time.is_(None), Task.end_time >= now),
        ]
        regular = (await db.execute(
            select(Task)
            .where(Task.category != int(TaskCategory.TOURNAMENT))
            .where(*window)
            .order_by(Task.created_at, Task.id)
        )).scalars().all()

        tournament_ids = await self.tournament_ids_for(db, player.id)
        tournament_tasks: Iterable[Task] = []
        if tournament_ids:
            tournament_tasks = (await db.execute(
                select(Task)
                .where(Task.category == int(TaskCategory.TOURNAMENT))
                .where(Task.tournament_id.in_(tournament_ids))
                .where(*window)
                .order_by(Task.created_at, Task.id)
            )).scalars().all()

        assigned: List[Task] = []
        seen: Set[str] = set()
        group_names = player.group_names
        for task in [*regular, *tournament_tasks]:
            if task.id in seen:
                continue
            if evaluate(task, player.id, group_names, tournament_ids, now):
                seen.add(task.id)
                assigned.append(task)
        logger.debug(f"{len(assigned)} tasks assigned to player {player.id[:8]}")
        return assigned
