"""
RankForge — XP / Rank Engine

Single writer of Player.total_xp and Player.rank_id.

Invariant kept after every mutation: a player's rank is the highest tier
whose min_xp does not exceed their total XP (the lowest tier when none
qualifies). XP deltas are applied with an atomic UPDATE; rank side effects
are returned as a RankChanged event for the caller to dispatch once its
transaction has committed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ConfigurationError, NotFound, ValidationError
from models import Player, Rank
from rank_events import RankChanged
from telemetry import span

logger = logging.getLogger("rankforge.xp")


@dataclass
class RankReconciliation:
    changed: bool
    rank: Rank
    event: Optional[RankChanged] = None


@dataclass
class XpResult:
    player: Player
    delta: int
    rank: Rank
    rank_change: Optional[RankChanged] = None

    @property
    def rank_changed(self) -> bool:
        return self.rank_change is not None


def resolve_rank(ranks: Sequence[Rank], total_xp: int) -> Rank:
    """Highest tier with min_xp <= total_xp; ranks must be sorted ascending."""
    if not ranks:
        raise ConfigurationError("Rank table is empty")
    current = ranks[0]
    for rank in ranks:
        if rank.min_xp <= total_xp:
            current = rank
        else:
            break
    return current


def next_rank(ranks: Sequence[Rank], total_xp: int) -> Optional[Rank]:
    for rank in ranks:
        if rank.min_xp > total_xp:
            return rank
    return None


class XpRankEngine:
    async def load_ranks(self, db: AsyncSession) -> List[Rank]:
        ranks = list((await db.execute(select(Rank).order_by(Rank.min_xp))).scalars().all())
        if not ranks:
            logger.critical("Rank table is empty — cannot assign player ranks")
            raise ConfigurationError("Rank table is empty")
        return ranks

    async def lowest_rank(self, db: AsyncSession) -> Rank:
        return (await self.load_ranks(db))[0]

    async def get_player(self, db: AsyncSession, player_id: str) -> Player:
        stmt = select(Player).where(Player.id == player_id).execution_options(populate_existing=True)
        player = (await db.execute(stmt)).scalar_one_or_none()
        if player is None:
            raise NotFound("Player not found.", player_id=player_id)
        return player

    async def apply_xp(self, db: AsyncSession, player_id: str, delta: int, now: datetime) -> XpResult:
        """Add delta to the player's total, stamp last_updated, then re-rank."""
        with span("xp.apply", player_id=player_id, delta=int(delta)):
            return await self._apply_xp(db, player_id, delta, now)

    async def _apply_xp(self, db: AsyncSession, player_id: str, delta: int, now: datetime) -> XpResult:
        delta = int(delta)
        before = await self.get_player(db, player_id)
        previous_last_updated = before.last_updated

        stmt = (
            update(Player)
            .where(Player.id == player_id, Player.total_xp + delta >= 0)
            .values(total_xp=Player.total_xp + delta, last_updated=now)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            raise ValidationError("Total XP cannot become negative.", player_id=player_id, delta=delta)

        player = await self.get_player(db, player_id)
        reconciliation = await self.reconcile_rank(db, player, now, previous_last_updated)
        logger.info(f"XP: player {player_id[:8]} {delta:+d} → {player.total_xp}")
        return XpResult(player=player, delta=delta, rank=reconciliation.rank, rank_change=reconciliation.event)

    async def set_total_xp(self, db: AsyncSession, player_id: str, total_xp: int, now: datetime) -> XpResult:
        """Administrative overwrite; may lower XP but never below zero."""
        if total_xp < 0:
            raise ValidationError("Total XP cannot be negative.", player_id=player_id)
        before = await self.get_player(db, player_id)
        return await self.apply_xp(db, player_id, int(total_xp) - before.total_xp, now)

    async def reconcile_all(self, db: AsyncSession, now: datetime) -> List[RankChanged]:
        """Re-rank every player, e.g. after the tier table changed.

        No XP moves here, so last_updated is left alone and the events are
        flagged as not carrying an XP gain.
        """
        player_ids = (await db.execute(select(Player.id).order_by(Player.id))).scalars().all()
        events = []
        for player_id in player_ids:
            player = await self.get_player(db, player_id)
            reconciliation = await self.reconcile_rank(db, player, now, player.last_updated, xp_changed=False)
            if reconciliation.event is not None:
                events.append(reconciliation.event)
        return events

    async def reconcile_rank(
        self,
        db: AsyncSession,
        player: Player,
        now: datetime,
        previous_last_updated: Optional[datetime] = None,
        xp_changed: bool = True,
    ) -> RankReconciliation:
        ranks = await self.load_ranks(db)
        target = resolve_rank(ranks, player.total_xp)
        if target.id is None:
            raise ConfigurationError("Resolved rank has no identifier", rank=target.name)

        if player.rank_id == target.id:
            return RankReconciliation(changed=False, rank=target)

        old_rank = next((r for r in ranks if r.id == player.rank_id), None)
        if player.rank_id is not None and old_rank is None:
            logger.error(f"Player {player.id} referenced unknown rank {player.rank_id}; repairing")

        await db.execute(
            update(Player)
            .where(Player.id == player.id)
            .values(rank_id=target.id)
            .execution_options(synchronize_session=False)
        )
        player.rank_id = target.id

        event = RankChanged(
            player_id=player.id,
            username=player.username,
            email=player.email,
            old_rank_id=old_rank.id if old_rank else None,
            old_rank_name=old_rank.name if old_rank else None,
            new_rank_id=target.id,
            new_rank_name=target.name,
            new_rank_booster=target.xp_booster,
            total_xp=player.total_xp,
            previous_last_updated=previous_last_updated or now,
            occurred_at=now,
            xp_changed=xp_changed,
        )
        logger.info(
            f"Rank: player {player.id[:8]} {event.old_rank_name or '-'} → {target.name} "
            f"at {player.total_xp} XP"
        )
        return RankReconciliation(changed=True, rank=target, event=event)
