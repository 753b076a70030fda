"""Tests for task eligibility rules."""
from datetime import timedelta

import pytest

from models import Task, TaskCategory
from task_eligibility import TaskEligibilityChecker, evaluate


def _task(**overrides):
    fields = dict(
        id="task-1", title="t", xp_reward=10, category=int(TaskCategory.DAILY),
        groups=["special"], players_bypass=[], tournament_id=None,
        start_time=None, end_time=None,
    )
    fields.update(overrides)
    return Task(**fields)


def test_group_mismatch_is_not_eligible(now):
    task = _task()
    assert evaluate(task, "p1", {"dedicated"}, set(), now) is False


def test_bypass_list_grants_eligibility(now):
    task = _task(players_bypass=["p1"])
    assert evaluate(task, "p1", {"dedicated"}, set(), now) is True


def test_global_group_matches_everyone(now):
    task = _task(groups=["global"])
    assert evaluate(task, "p1", set(), set(), now) is True


def test_shared_group_matches(now):
    task = _task(groups=["special", "dedicated"])
    assert evaluate(task, "p1", {"dedicated"}, set(), now) is True


def test_tournament_participation_grants_tournament_task(now):
    task = _task(category=int(TaskCategory.TOURNAMENT), groups=[], tournament_id="t-1")
    assert evaluate(task, "p1", set(), {"t-1"}, now) is True
    assert evaluate(task, "p1", set(), {"t-2"}, now) is False


def test_window_closes_eligibility_even_for_bypass(now):
    expired = _task(players_bypass=["p1"], end_time=now - timedelta(minutes=1))
    upcoming = _task(groups=["global"], start_time=now + timedelta(minutes=1))
    assert evaluate(expired, "p1", set(), set(), now) is False
    assert evaluate(upcoming, "p1", set(), set(), now) is False


def test_window_bounds_are_inclusive(now):
    task = _task(groups=["global"], start_time=now, end_time=now)
    assert evaluate(task, "p1", set(), set(), now) is True


@pytest.mark.asyncio
async def test_is_eligible_reads_roster(db_session, make_player, make_task, make_tournament, now):
    player = await make_player("roster")
    outsider = await make_player("outsider")
    tournament = await make_tournament(participants=[player])
    task = await make_task(category=TaskCategory.TOURNAMENT, groups=(), max_completions=1,
                           tournament=tournament)

    checker = TaskEligibilityChecker()
    assert await checker.is_eligible(db_session, player, task, now) is True
    assert await checker.is_eligible(db_session, outsider, task, now) is False


@pytest.mark.asyncio
async def test_list_assigned_combines_sources(db_session, make_player, make_task, make_tournament, now):
    player = await make_player("lister", group_names=("dedicated",))
    tournament = await make_tournament(participants=[player])

    everyone = await make_task(title="Everyone")
    dedicated = await make_task(title="Dedicated only", groups=("dedicated",))
    await make_task(title="Special only", groups=("special",))
    bypass = await make_task(title="Bypass", groups=("special",), players_bypass=(player.id,))
    cup = await make_task(title="Cup task", category=TaskCategory.TOURNAMENT, groups=(),
                          max_completions=1, tournament=tournament)
    await make_task(title="Expired", end_time=now - timedelta(days=1))

    assigned = await TaskEligibilityChecker().list_assigned(db_session, player, now)
    assert {t.id for t in assigned} == {everyone.id, dedicated.id, bypass.id, cup.id}
