# rank_events.py — Rank-change event and its independent side effects
#
# A rank change is recorded by the XP engine as a RankChanged value. Once the
# triggering transaction has committed, the dispatcher runs each registered
# handler; one handler failing is logged and never stops the others.

import os
import math
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select

from database import get_db_context
from models import AuditAction, AuditLog, Player
from notifier import NotificationPurpose, notify_safely

logger = logging.getLogger("rankforge.rank_events")

ANOMALY_FACTOR = float(os.getenv("ANOMALY_FACTOR", "5"))
TOP_SHARE = 0.10
MIN_ELAPSED_HOURS = 1 / 3600


@dataclass
class RankChanged:
    player_id: str
    username: str
    email: str
    old_rank_id: Optional[str]
    old_rank_name: Optional[str]
    new_rank_id: str
    new_rank_name: str
    new_rank_booster: float
    total_xp: int
    previous_last_updated: datetime
    occurred_at: datetime
    xp_changed: bool = True

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("email")
        payload["previous_last_updated"] = self.previous_last_updated.isoformat()
        payload["occurred_at"] = self.occurred_at.isoformat()
        return payload


@dataclass
class AnomalyReport:
    xp_per_hour: float
    top_average: float
    threshold: float


def detect_anomaly(total_xp: int, previous_last_updated: datetime, now: datetime,
                   top_average: float, factor: float = ANOMALY_FACTOR) -> Optional[AnomalyReport]:
    """Flag XP gain rates above factor × the top-10% average XP."""
    hours = max((now - previous_last_updated).total_seconds() / 3600, MIN_ELAPSED_HOURS)
    xp_per_hour = total_xp / hours
    threshold = factor * top_average
    if xp_per_hour > threshold:
        return AnomalyReport(xp_per_hour=round(xp_per_hour, 2), top_average=round(top_average, 2),
                             threshold=round(threshold, 2))
    return None


Handler = Callable[[RankChanged], Awaitable[None]]


class RankEventDispatcher:
    def __init__(self):
        self._handlers: List[Tuple[str, Handler]] = []

    def register(self, name: str, handler: Handler) -> None:
        self._handlers.append((name, handler))

    @property
    def handler_names(self) -> List[str]:
        return [name for name, _ in self._handlers]

    async def dispatch(self, event: RankChanged) -> Dict[str, bool]:
        outcome: Dict[str, bool] = {}
        for name, handler in self._handlers:
            try:
                await handler(event)
                outcome[name] = True
            except Exception as e:
                logger.error(f"Rank handler '{name}' failed for player {event.player_id}: {e}", exc_info=True)
                outcome[name] = False
        return outcome


class RankChangeHandlers:
    """notify / audit / invalidate-cache / check-anomaly / broadcast."""

    def __init__(self, session_factory, leaderboard, notifier, push,
                 admin_email: str, anomaly_factor: float = ANOMALY_FACTOR):
        self.session_factory = session_factory
        self.leaderboard = leaderboard
        self.notifier = notifier
        self.push = push
        self.admin_email = admin_email
        self.anomaly_factor = anomaly_factor

    def register_all(self, dispatcher: RankEventDispatcher) -> RankEventDispatcher:
        dispatcher.register("notify", self.notify)
        dispatcher.register("audit", self.audit)
        dispatcher.register("invalidate-cache", self.invalidate_cache)
        dispatcher.register("check-anomaly", self.check_anomaly)
        dispatcher.register("broadcast", self.broadcast)
        return dispatcher

    async def notify(self, event: RankChanged) -> None:
        await notify_safely(
            self.notifier, event.email, NotificationPurpose.RANK_UP,
            f"Congratulations {event.username}! You are now {event.new_rank_name} "
            f"with {event.total_xp} XP.",
        )

    async def audit(self, event: RankChanged) -> None:
        async with get_db_context(self.session_factory) as db:
            db.add(AuditLog(
                action=AuditAction.RANK_UPDATED,
                player_id=event.player_id,
                details={
                    "old_rank": event.old_rank_name,
                    "new_rank": event.new_rank_name,
                    "total_xp": event.total_xp,
                },
                timestamp=event.occurred_at,
            ))

    async def invalidate_cache(self, event: RankChanged) -> None:
        await self.leaderboard.invalidate_for_player(event.player_id)

    async def check_anomaly(self, event: RankChanged) -> None:
        if not event.xp_changed:
            return
        async with get_db_context(self.session_factory) as db:
            top_average = await self._top_average(db)
            report = detect_anomaly(event.total_xp, event.previous_last_updated, event.occurred_at,
                                    top_average, self.anomaly_factor)
            if report is None:
                return
            logger.warning(
                f"Anomaly: player {event.player_id} gaining {report.xp_per_hour} XP/h "
                f"(threshold {report.threshold})"
            )
            db.add(AuditLog(
                action=AuditAction.ANOMALY_DETECTED,
                player_id=event.player_id,
                details={
                    "xp_per_hour": report.xp_per_hour,
                    "threshold": report.threshold,
                    "top_average": report.top_average,
                },
                timestamp=event.occurred_at,
            ))
        await notify_safely(
            self.notifier, self.admin_email, NotificationPurpose.ANOMALY_ALERT,
            f"Suspicious XP gain for {event.username}: {report.xp_per_hour} XP/h "
            f"exceeds threshold {report.threshold}.",
        )

    async def broadcast(self, event: RankChanged) -> None:
        await self.push.broadcast("rank.update", event.to_payload())

    async def _top_average(self, db) -> float:
        total = (await db.execute(select(func.count(Player.id)))).scalar_one()
        if not total:
            return 0.0
        top_n = max(1, math.ceil(total * TOP_SHARE))
        top = (
            select(Player.total_xp)
            .order_by(Player.total_xp.desc())
            .limit(top_n)
            .subquery()
        )
        average = (await db.execute(select(func.avg(top.c.total_xp)))).scalar_one()
        return float(average or 0.0)
