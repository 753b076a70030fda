"""
RankForge — Booster Resolver

Turns a task's base XP reward into the amount actually awarded:

- non-tournament task: base × (1 + Σ group boosters)
- non-tournament task while the player is in an active tournament:
  additionally + base × (Σ group boosters + rank booster)
- tournament task: base, untouched

Σ group boosters runs over every group the player belongs to, whether or
not the group is one the task targets.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Player, Rank, Task, TaskCategory, Tournament, tournament_participants


@dataclass
class XpBreakdown:
    base: int
    group_booster_sum: float
    rank_booster: float
    in_tournament: bool
    group_bonus: float
    tournament_bonus: float
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base": self.base,
            "group_booster_sum": self.group_booster_sum,
            "rank_booster": self.rank_booster,
            "in_tournament": self.in_tournament,
            "group_bonus": self.group_bonus,
            "tournament_bonus": self.tournament_bonus,
            "total": self.total,
        }


def resolve_xp(
    base_reward: int,
    category: TaskCategory,
    group_boosters: Iterable[float],
    rank_booster: float = 1.0,
    in_active_tournament: bool = False,
) -> XpBreakdown:
    if base_reward <= 0:
        raise ValueError("base_reward must be positive")

    booster_sum = float(sum(group_boosters))
    if TaskCategory(category) == TaskCategory.TOURNAMENT:
        return XpBreakdown(
            base=base_reward, group_booster_sum=booster_sum, rank_booster=rank_booster,
            in_tournament=in_active_tournament, group_bonus=0.0, tournament_bonus=0.0,
            total=base_reward,
        )

    group_bonus = base_reward * booster_sum
    tournament_bonus = base_reward * (booster_sum + rank_booster) if in_active_tournament else 0.0
    total = round(base_reward + group_bonus + tournament_bonus)
    return XpBreakdown(
        base=base_reward,
        group_booster_sum=booster_sum,
        rank_booster=rank_booster,
        in_tournament=in_active_tournament,
        group_bonus=group_bonus,
        tournament_bonus=tournament_bonus,
        total=max(int(total), 0),
    )


class BoosterResolver:
    async def active_tournament_for(
        self, db: AsyncSession, player_id: str, now: datetime
    ) -> Optional[Tournament]:
        stmt = (
            select(Tournament)
            .join(tournament_participants, tournament_participants.c.tournament_id == Tournament.id)
            .where(tournament_participants.c.player_id == player_id)
            .where(Tournament.start_time <= now, Tournament.end_time > now)
            .order_by(Tournament.start_time)
            .limit(1)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def rank_booster_for(self, db: AsyncSession, player: Player) -> float:
        if not player.rank_id:
            return 1.0
        rank = await db.get(Rank, player.rank_id)
        return rank.xp_booster if rank else 1.0

    async def resolve(
        self, db: AsyncSession, task: Task, player: Player, now: datetime
    ) -> XpBreakdown:
        category = task.task_category
        if category == TaskCategory.TOURNAMENT:
            return resolve_xp(task.xp_reward, category, [])

        group_boosters = [g.xp_booster for g in player.groups]
        active = await self.active_tournament_for(db, player.id, now)
        rank_booster = await self.rank_booster_for(db, player) if active else 1.0
        return resolve_xp(
            task.xp_reward,
            category,
            group_boosters,
            rank_booster=rank_booster,
            in_active_tournament=active is not None,
        )
