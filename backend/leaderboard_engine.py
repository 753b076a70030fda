"""
RankForge — Leaderboard View Builder

Ranked views over players who are *currently competing*:

    last_updated within the trailing window (LEADERBOARD_WINDOW_DAYS)
    AND (participant of an active tournament OR staff role)

Views are cached with a TTL and invalidated by every write path that
changes a player's XP or rank. Cache failures fall through to the
database; a stale hit within the TTL is acceptable.
"""

import os
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cache import CACHE_TTL, CacheKeys, CacheStore
from errors import NotFound
from models import Player, Rank, STAFF_ROLES, Tournament, tournament_participants
from telemetry import span

logger = logging.getLogger("rankforge.leaderboard")

LEADERBOARD_WINDOW_DAYS = int(os.getenv("LEADERBOARD_WINDOW_DAYS", "30"))
POSITION_CACHE_TTL = int(os.getenv("POSITION_CACHE_TTL", "60"))
SIGNIFICANT_CHANGE_RATIO = 0.10


class LeaderboardView(Enum):
    XP = ("xp", 20, CacheKeys.LEADERBOARD)
    HISTORICAL = ("historical", 10, CacheKeys.LEADERBOARD_HISTORICAL)

    def __init__(self, label: str, size: int, cache_key: str):
        self.label = label
        self.size = size
        self.cache_key = cache_key


def is_significant_change(previous_xp: int, new_xp: int) -> bool:
    """Admin adjustments above 10% of the previous total flush every position."""
    if previous_xp <= 0:
        return new_xp != previous_xp
    return abs(new_xp - previous_xp) > previous_xp * SIGNIFICANT_CHANGE_RATIO


class LeaderboardViewBuilder:
    def __init__(self, cache: CacheStore, window_days: int = LEADERBOARD_WINDOW_DAYS,
                 ttl: int = CACHE_TTL, position_ttl: int = POSITION_CACHE_TTL):
        self.cache = cache
        self.window = timedelta(days=window_days)
        self.ttl = ttl
        self.position_ttl = position_ttl

    # --- Scoping ---

    def recency_clause(self, now: datetime):
        return Player.last_updated >= now - self.window

    def competing_clause(self, now: datetime):
        in_active_tournament = exists(
            select(tournament_participants.c.player_id)
            .join(Tournament, Tournament.id == tournament_participants.c.tournament_id)
            .where(tournament_participants.c.player_id == Player.id)
            .where(Tournament.start_time <= now, Tournament.end_time > now)
        )
        return or_(in_active_tournament, Player.role.in_(STAFF_ROLES))

    def scope_clause(self, now: datetime):
        return and_(self.recency_clause(now), self.competing_clause(now))

    # --- Views ---

    async def build_top(self, db: AsyncSession, view: LeaderboardView, now: datetime,
                        use_cache: bool = True) -> List[Dict[str, Any]]:
        with span("leaderboard.build", view=view.label, use_cache=use_cache):
            return await self._build_top(db, view, now, use_cache)

    async def _build_top(self, db: AsyncSession, view: LeaderboardView, now: datetime,
                         use_cache: bool) -> List[Dict[str, Any]]:
        if use_cache:
            cached = await self.cache.safe_get(view.cache_key)
            if cached is not None:
                return cached

        stmt = (
            select(Player.id, Player.username, Player.total_xp, Player.last_updated, Rank.name)
            .outerjoin(Rank, Rank.id == Player.rank_id)
            .where(self.scope_clause(now))
            .order_by(Player.total_xp.desc(), Player.created_at.asc(), Player.id.asc())
            .limit(view.size)
        )
        rows = (await db.execute(stmt)).all()
        entries = [
            {
                "position": index,
                "player_id": row[0],
                "username": row[1],
                "total_xp": row[2],
                "rank_name": row[4],
                "last_updated": row[3].isoformat() if row[3] else None,
            }
            for index, row in enumerate(rows, start=1)
        ]
        await self.cache.safe_set(view.cache_key, entries, self.ttl)
        logger.debug(f"Leaderboard {view.label} rebuilt with {len(entries)} entries")
        return entries

    async def find_position(self, db: AsyncSession, player_id: str, now: datetime) -> Dict[str, Any]:
        """Position = players ahead + 1; percentile over the recency scope."""
        key = CacheKeys.position(player_id)
        cached = await self.cache.safe_get(key)
        if cached is not None:
            return cached

        player = await db.get(Player, player_id)
        if player is None:
            raise NotFound("Player not found.", player_id=player_id)

        recent = self.recency_clause(now)
        ahead = (await db.execute(
            select(func.count(Player.id)).where(recent, Player.total_xp > player.total_xp)
        )).scalar_one()
        total = (await db.execute(select(func.count(Player.id)).where(recent))).scalar_one()

        position = ahead + 1
        percentile = round((total - position) / total * 100) if total else 0
        result = {
            "player_id": player.id,
            "username": player.username,
            "total_xp": player.total_xp,
            "position": position,
            "total_players": total,
            "percentile": max(percentile, 0),
        }
        await self.cache.safe_set(key, result, self.position_ttl)
        return result

    # --- Invalidation ---

    async def invalidate_for_player(self, player_id: str, significant: bool = False) -> None:
        await self.cache.safe_delete(
            CacheKeys.LEADERBOARD,
            CacheKeys.LEADERBOARD_HISTORICAL,
            CacheKeys.position(player_id),
            CacheKeys.player_rank(player_id),
            CacheKeys.player_progress(player_id),
        )
        if significant:
            await self.cache.safe_delete_prefix(CacheKeys.POSITION_PREFIX)

    async def reset(self, db: AsyncSession, now: datetime) -> List[Dict[str, Any]]:
        """Drop every leaderboard key and rebuild the primary view."""
        await self.cache.safe_delete(CacheKeys.LEADERBOARD, CacheKeys.LEADERBOARD_HISTORICAL)
        await self.cache.safe_delete_prefix(CacheKeys.POSITION_PREFIX)
        entries = await self.build_top(db, LeaderboardView.XP, now, use_cache=False)
        logger.info(f"Leaderboard cache reset; primary view has {len(entries)} entries")
        return entries
