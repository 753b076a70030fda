# services.py — Process-wide wiring of the engine components
#
# Components receive their collaborators explicitly; routers reach the
# container through get_services(), which tests override with fakes.

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from booster_resolver import BoosterResolver
from cache import CacheStore, create_cache
from completion_ledger import CompletionLedger
from database import async_session_maker
from leaderboard_engine import LeaderboardViewBuilder
from notifier import ADMIN_EMAIL, ALL_PLAYERS_EMAIL, Notifier, PushChannel, create_notifier
from rank_events import RankChangeHandlers, RankEventDispatcher
from task_completion import TaskCompletionService
from task_eligibility import TaskEligibilityChecker
from tournament_manager import TournamentManager
from xp_engine import XpRankEngine

logger = logging.getLogger("rankforge.services")


@dataclass
class GamificationServices:
    session_factory: object
    cache: CacheStore
    notifier: Notifier
    push: PushChannel
    boosters: BoosterResolver
    eligibility: TaskEligibilityChecker
    ledger: CompletionLedger
    xp_engine: XpRankEngine
    leaderboard: LeaderboardViewBuilder
    tournaments: TournamentManager
    dispatcher: RankEventDispatcher
    completions: TaskCompletionService
    admin_email: str = ADMIN_EMAIL

    async def close(self) -> None:
        await self.notifier.close()
        await self.cache.close()


def build_services(
    session_factory=None,
    cache: Optional[CacheStore] = None,
    notifier: Optional[Notifier] = None,
    push: Optional[PushChannel] = None,
    admin_email: str = ADMIN_EMAIL,
    broadcast_email: str = ALL_PLAYERS_EMAIL,
) -> GamificationServices:
    session_factory = session_factory or async_session_maker
    cache = cache or create_cache()
    notifier = notifier or create_notifier()
    push = push or PushChannel()

    boosters = BoosterResolver()
    eligibility = TaskEligibilityChecker()
    ledger = CompletionLedger()
    xp_engine = XpRankEngine()
    leaderboard = LeaderboardViewBuilder(cache)
    tournaments = TournamentManager(cache, notifier, broadcast_email=broadcast_email)
    dispatcher = RankChangeHandlers(
        session_factory, leaderboard, notifier, push, admin_email=admin_email,
    ).register_all(RankEventDispatcher())
    completions = TaskCompletionService(
        ledger, eligibility, boosters, xp_engine, tournaments, leaderboard, dispatcher, push,
    )
    logger.info(f"Engine wired with rank handlers: {', '.join(dispatcher.handler_names)}")
    return GamificationServices(
        session_factory=session_factory,
        cache=cache,
        notifier=notifier,
        push=push,
        boosters=boosters,
        eligibility=eligibility,
        ledger=ledger,
        xp_engine=xp_engine,
        leaderboard=leaderboard,
        tournaments=tournaments,
        dispatcher=dispatcher,
        completions=completions,
        admin_email=admin_email,
    )


def get_services(request: Request) -> GamificationServices:
    """FastAPI dependency; the container is created by the app lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services
