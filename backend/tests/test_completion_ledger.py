"""Tests for the per (player, task) completion ledger."""
from datetime import timedelta

import pytest

from completion_ledger import CompletionLedger
from errors import LimitReached, OnCooldown, TaskInactive
from models import TaskCategory


@pytest.mark.asyncio
async def test_first_completion_creates_row(db_session, player, make_task, now):
    task = await make_task()
    entry = await CompletionLedger().record_completion(db_session, player.id, task, now)
    await db_session.commit()

    assert entry.completions == 1
    assert entry.last_completed == now
    assert entry.idempotency_key == f"{player.id}:{task.id}:1"


@pytest.mark.asyncio
async def test_unlimited_task_keeps_counting(db_session, player, make_task, now):
    ledger = CompletionLedger()
    task = await make_task(max_completions=0)
    for expected in range(1, 4):
        entry = await ledger.record_completion(db_session, player.id, task, now)
        assert entry.completions == expected
    await db_session.commit()


@pytest.mark.asyncio
async def test_limit_reached(db_session, player, make_task, now):
    ledger = CompletionLedger()
    task = await make_task(max_completions=2)
    await ledger.record_completion(db_session, player.id, task, now)
    await ledger.record_completion(db_session, player.id, task, now + timedelta(seconds=1))
    await db_session.commit()

    with pytest.raises(LimitReached):
        await ledger.record_completion(db_session, player.id, task, now + timedelta(seconds=2))

    progress = await ledger.get_progress(db_session, player.id, task.id)
    assert progress.completions == 2


@pytest.mark.asyncio
async def test_cooldown_blocks_until_elapsed(db_session, player, make_task, now):
    ledger = CompletionLedger()
    task = await make_task(cooldown_seconds=3600)
    await ledger.record_completion(db_session, player.id, task, now)
    await db_session.commit()

    with pytest.raises(OnCooldown) as exc_info:
        await ledger.record_completion(db_session, player.id, task, now + timedelta(minutes=10))
    assert exc_info.value.details["retry_after"] == 3001

    entry = await ledger.record_completion(db_session, player.id, task, now + timedelta(hours=1))
    assert entry.completions == 2


@pytest.mark.asyncio
async def test_tournament_task_is_single_shot(db_session, player, make_task, make_tournament, now):
    tournament = await make_tournament(participants=[player])
    task = await make_task(category=TaskCategory.TOURNAMENT, groups=(), max_completions=0,
                           tournament=tournament, cooldown_seconds=0)
    ledger = CompletionLedger()
    entry = await ledger.record_completion(db_session, player.id, task, now)
    await db_session.commit()
    assert entry.completions == 1

    with pytest.raises(LimitReached):
        await ledger.record_completion(db_session, player.id, task, now + timedelta(days=1))


@pytest.mark.asyncio
async def test_outside_window_is_inactive(db_session, player, make_task, now):
    task = await make_task(start_time=now + timedelta(hours=1))
    with pytest.raises(TaskInactive):
        await CompletionLedger().record_completion(db_session, player.id, task, now)
    assert await CompletionLedger().get_progress(db_session, player.id, task.id) is None


@pytest.mark.asyncio
async def test_counters_are_per_player(db_session, make_player, make_task, now):
    first = await make_player("first")
    second = await make_player("second")
    task = await make_task(max_completions=1)
    ledger = CompletionLedger()

    await ledger.record_completion(db_session, first.id, task, now)
    entry = await ledger.record_completion(db_session, second.id, task, now)
    await db_session.commit()
    assert entry.completions == 1
