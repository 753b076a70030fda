"""Tests for tournament joins, listings and administration."""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql

from cache import CacheKeys
from errors import (
    AlreadyJoined, Forbidden, Full, NotActive, NotEligible, NotParticipant, ValidationError,
)
from models import AuditAction, AuditLog, PlayerRole, Task, TaskCategory, tournament_participants
from notifier import NotificationPurpose, Notifier, notify_safely
from tests.conftest import ALL_PLAYERS_EMAIL
from tournament_manager import TournamentManager


async def _roster_size(db, tournament_id):
    return (await db.execute(
        select(func.count()).select_from(tournament_participants)
        .where(tournament_participants.c.tournament_id == tournament_id)
    )).scalar_one()


@pytest.mark.asyncio
async def test_join_adds_player_and_notifies(db_session, services, notifier, player, ranks,
                                             make_tournament, now):
    tournament = await make_tournament(eligible=[ranks["bronze"]])
    joined = await services.tournaments.join(db_session, player, tournament.id, now)

    assert player.id in joined.participant_ids
    assert notifier.for_purpose("tournament-update")[0]["to"] == player.email
    audit = (await db_session.execute(
        select(AuditLog).where(AuditLog.action == AuditAction.TOURNAMENT_JOINED)
    )).scalar_one()
    assert audit.details["tournament_id"] == tournament.id


@pytest.mark.asyncio
async def test_join_requires_verified_player(db_session, services, make_player, ranks, make_tournament, now):
    pending = await make_player("pending", verified=False)
    tournament = await make_tournament(eligible=[ranks["bronze"]])
    with pytest.raises(Forbidden):
        await services.tournaments.join(db_session, pending, tournament.id, now)


@pytest.mark.asyncio
async def test_join_outside_window_is_not_active(db_session, services, player, ranks, make_tournament, now):
    upcoming = await make_tournament(eligible=[ranks["bronze"]],
                                     start_time=now + timedelta(hours=1),
                                     end_time=now + timedelta(days=2))
    with pytest.raises(NotActive):
        await services.tournaments.join(db_session, player, upcoming.id, now)

    # end bound is exclusive
    with pytest.raises(NotActive):
        await services.tournaments.join(db_session, player, upcoming.id, now + timedelta(days=2))


@pytest.mark.asyncio
async def test_join_rank_gate_and_staff_bypass(db_session, services, player, moderator, ranks,
                                               make_tournament, now):
    tournament = await make_tournament(eligible=[ranks["gold"]])
    with pytest.raises(NotEligible):
        await services.tournaments.join(db_session, player, tournament.id, now)

    joined = await services.tournaments.join(db_session, moderator, tournament.id, now)
    assert joined.participant_ids == {moderator.id}


@pytest.mark.asyncio
async def test_join_twice_is_already_joined(db_session, services, player, ranks, make_tournament, now):
    tournament = await make_tournament(eligible=[ranks["bronze"]])
    await services.tournaments.join(db_session, player, tournament.id, now)
    with pytest.raises(AlreadyJoined):
        await services.tournaments.join(db_session, player, tournament.id, now)


@pytest.mark.asyncio
async def test_join_full_tournament(db_session, services, make_player, ranks, make_tournament, now):
    first = await make_player("first")
    late = await make_player("late")
    tournament = await make_tournament(max_participants=1, eligible=[ranks["bronze"]], participants=[first])

    with pytest.raises(Full):
        await services.tournaments.join(db_session, late, tournament.id, now)
    assert await _roster_size(db_session, tournament.id) == 1


@pytest.mark.asyncio
async def test_insert_if_room_respects_capacity(db_session, services, make_player, ranks, make_tournament, now):
    first = await make_player("first")
    second = await make_player("second")
    tournament = await make_tournament(max_participants=1, eligible=[ranks["bronze"]])

    assert await services.tournaments._insert_if_room(db_session, tournament, first.id, now) is True
    assert await services.tournaments._insert_if_room(db_session, tournament, second.id, now) is False
    await db_session.commit()
    assert await _roster_size(db_session, tournament.id) == 1


@pytest.mark.asyncio
async def test_concurrent_joins_for_last_seat(session_factory, services, make_player, ranks,
                                              make_tournament, now):
    racers = [await make_player("racer1"), await make_player("racer2")]
    tournament = await make_tournament(max_participants=1, eligible=[ranks["bronze"]])

    async def attempt(racer):
        async with session_factory() as session:
            try:
                await services.tournaments.join(session, racer, tournament.id, now)
                return "joined"
            except Full:
                return "full"

    outcomes = await asyncio.gather(*(attempt(r) for r in racers))
    assert sorted(outcomes) == ["full", "joined"]

    async with session_factory() as session:
        assert await _roster_size(session, tournament.id) == 1


@pytest.mark.asyncio
async def test_ensure_participant(db_session, services, player, make_player, make_tournament):
    outsider = await make_player("outsider")
    tournament = await make_tournament(participants=[player])

    await services.tournaments.ensure_participant(db_session, tournament.id, player.id)
    with pytest.raises(NotParticipant):
        await services.tournaments.ensure_participant(db_session, tournament.id, outsider.id)


@pytest.mark.asyncio
async def test_list_active_includes_tasks_and_is_cached(db_session, services, cache, make_tournament,
                                                        make_task, now):
    live = await make_tournament(name="Live Cup")
    await make_tournament(name="Old Cup", start_time=now - timedelta(days=5), end_time=now - timedelta(days=4))
    await make_task(title="Cup run", category=TaskCategory.TOURNAMENT, groups=(),
                    max_completions=1, tournament=live)

    listing = await services.tournaments.list_active(db_session, now)
    assert [t["name"] for t in listing] == ["Live Cup"]
    assert [t["title"] for t in listing[0]["tasks"]] == ["Cup run"]
    assert await cache.get(CacheKeys.TOURNAMENTS_ACTIVE) == listing

    await make_tournament(name="Late Cup")
    assert await services.tournaments.list_active(db_session, now) == listing


@pytest.mark.asyncio
async def test_create_validates_and_broadcasts(db_session, services, notifier, admin, ranks, now):
    with pytest.raises(ValidationError):
        await services.tournaments.create(db_session, admin, "Backwards", now + timedelta(days=1), now,
                                          5, [], now)
    with pytest.raises(ValidationError):
        await services.tournaments.create(db_session, admin, "Ghost ranks", now, now + timedelta(days=1),
                                          5, ["missing"], now)

    created = await services.tournaments.create(db_session, admin, "Summer Cup", now, now + timedelta(days=1),
                                                8, [ranks["silver"].id], now)
    assert created.max_participants == 8
    assert [r.name for r in created.eligible_ranks] == ["silver"]
    assert notifier.for_purpose("tournament-update")[0]["to"] == ALL_PLAYERS_EMAIL


@pytest.mark.asyncio
async def test_update_rules(db_session, services, admin, make_player, make_tournament, now):
    roster = [await make_player("p1"), await make_player("p2")]
    started = await make_tournament(max_participants=5, participants=roster)

    with pytest.raises(ValidationError):
        await services.tournaments.update(db_session, admin, started.id,
                                          {"end_time": now + timedelta(days=9)}, now)
    with pytest.raises(ValidationError):
        await services.tournaments.update(db_session, admin, started.id, {"max_participants": 1}, now)

    updated = await services.tournaments.update(db_session, admin, started.id,
                                                {"max_participants": 2, "name": "Renamed"}, now)
    assert updated.max_participants == 2
    assert updated.name == "Renamed"


@pytest.mark.asyncio
async def test_delete_removes_tasks(db_session, services, admin, player, make_tournament, make_task, now):
    tournament = await make_tournament(participants=[player])
    await make_task(category=TaskCategory.TOURNAMENT, groups=(), max_completions=1, tournament=tournament)
    await make_task(title="Second run", category=TaskCategory.TOURNAMENT, groups=(),
                    max_completions=1, tournament=tournament)

    assert await services.tournaments.delete(db_session, admin, tournament.id, now) == 2
    remaining = (await db_session.execute(select(func.count(Task.id)))).scalar_one()
    assert remaining == 0
    assert await _roster_size(db_session, tournament.id) == 0


@pytest.mark.asyncio
async def test_owner_role_counts_as_staff(db_session, services, make_player, ranks, make_tournament, now):
    owner = await make_player("root", role=PlayerRole.OWNER)
    tournament = await make_tournament(eligible=[ranks["diamond"]])
    joined = await services.tournaments.join(db_session, owner, tournament.id, now)
    assert owner.id in joined.participant_ids


@pytest.mark.asyncio
async def test_last_seat_race_between_workers(session_factory, cache, notifier, make_player, ranks,
                                              make_tournament, now):
    racers = [await make_player("worker1"), await make_player("worker2")]
    tournament = await make_tournament(max_participants=1, eligible=[ranks["bronze"]])
    tournament_id = tournament.id
    # one manager per worker, so no in-process lock is shared
    managers = [TournamentManager(cache, notifier), TournamentManager(cache, notifier)]

    async def attempt(manager, racer):
        async with session_factory() as session:
            try:
                await manager.join(session, racer, tournament_id, now)
                return "joined"
            except Full:
                return "full"

    outcomes = await asyncio.gather(*(attempt(m, r) for m, r in zip(managers, racers)))
    assert sorted(outcomes) == ["full", "joined"]

    async with session_factory() as session:
        assert await _roster_size(session, tournament_id) == 1


def test_roster_lock_is_a_row_lock_on_postgres():
    stmt = TournamentManager.roster_lock("t-1")
    sql = str(stmt.compile(dialect=postgresql.dialect()))
    assert sql.rstrip().endswith("FOR UPDATE")
    assert "tournaments.id" in sql


class BrokenRelay(Notifier):
    async def send(self, recipient, purpose, content):
        raise RuntimeError("relay returned garbage")


@pytest.mark.asyncio
async def test_join_survives_unexpected_notifier_error(db_session, cache, player, ranks, make_tournament, now):
    tournament = await make_tournament(eligible=[ranks["bronze"]])
    manager = TournamentManager(cache, BrokenRelay())

    joined = await manager.join(db_session, player, tournament.id, now)
    assert player.id in joined.participant_ids
    assert await notify_safely(BrokenRelay(), player.email, NotificationPurpose.TOURNAMENT_UPDATE, "hi") is False
