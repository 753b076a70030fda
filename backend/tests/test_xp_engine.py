"""Tests for XP application and rank reconciliation."""
import random
from datetime import timedelta

import pytest
from sqlalchemy import delete, select

from errors import ConfigurationError, NotFound, ValidationError
from leaderboard_engine import LeaderboardView, LeaderboardViewBuilder
from models import Player, PlayerRole, Rank
from xp_engine import XpRankEngine, next_rank


@pytest.mark.asyncio
async def test_rank_tracks_total_under_random_deltas(db_session, player, ranks, now):
    engine = XpRankEngine()
    rng = random.Random(20240501)
    player_id = player.id
    tiers = sorted((r.min_xp, r.id) for r in ranks.values())

    def expected_rank(xp):
        return [rank_id for min_xp, rank_id in tiers if min_xp <= xp][-1]

    total = 0
    for step in range(60):
        delta = rng.randint(-800, 1500)
        at = now + timedelta(minutes=step)
        if total + delta < 0:
            with pytest.raises(ValidationError):
                await engine.apply_xp(db_session, player_id, delta, at)
            continue
        result = await engine.apply_xp(db_session, player_id, delta, at)
        await db_session.commit()
        total += delta

        assert result.player.total_xp == total
        assert result.player.rank_id == expected_rank(total)
        stored = await engine.get_player(db_session, player_id)
        assert stored.rank_id == expected_rank(stored.total_xp)


@pytest.mark.asyncio
async def test_apply_xp_sets_last_updated_and_reports_rank_change(db_session, player, ranks, now):
    engine = XpRankEngine()
    result = await engine.apply_xp(db_session, player.id, 1200, now)
    await db_session.commit()

    assert result.player.last_updated == now
    assert result.rank_changed
    event = result.rank_change
    assert event.old_rank_name == "bronze"
    assert event.new_rank_name == "silver"
    assert event.total_xp == 1200


@pytest.mark.asyncio
async def test_no_event_when_rank_unchanged(db_session, player, now):
    result = await XpRankEngine().apply_xp(db_session, player.id, 10, now)
    assert result.rank_change is None
    assert result.rank.name == "bronze"


@pytest.mark.asyncio
async def test_missing_player(db_session, ranks, now):
    with pytest.raises(NotFound):
        await XpRankEngine().apply_xp(db_session, "no-such-player", 10, now)


@pytest.mark.asyncio
async def test_total_cannot_go_negative(db_session, player, now):
    with pytest.raises(ValidationError):
        await XpRankEngine().apply_xp(db_session, player.id, -1, now)


@pytest.mark.asyncio
async def test_set_total_xp_can_demote(db_session, make_player, ranks, now):
    engine = XpRankEngine()
    veteran = await make_player("veteran", total_xp=3000)
    assert veteran.rank_id == ranks["gold"].id

    result = await engine.set_total_xp(db_session, veteran.id, 900, now)
    await db_session.commit()
    assert result.player.total_xp == 900
    assert result.rank.name == "bronze"
    assert result.rank_change.old_rank_name == "gold"


@pytest.mark.asyncio
async def test_dangling_rank_reference_is_repaired(db_session, player, ranks, now):
    await db_session.execute(
        Player.__table__.update().where(Player.id == player.id).values(rank_id="gone")
    )
    await db_session.commit()
    engine = XpRankEngine()
    stale = await engine.get_player(db_session, player.id)

    reconciliation = await engine.reconcile_rank(db_session, stale, now)
    assert reconciliation.changed
    assert reconciliation.rank.name == "bronze"
    assert reconciliation.event.old_rank_name is None


@pytest.mark.asyncio
async def test_empty_rank_table_is_configuration_error(db_session, player, now):
    await db_session.execute(delete(Rank))
    await db_session.commit()
    with pytest.raises(ConfigurationError):
        await XpRankEngine().apply_xp(db_session, player.id, 10, now)


def test_next_rank_distance(ranks):
    ordered = sorted(ranks.values(), key=lambda r: r.min_xp)
    assert next_rank(ordered, 1200).name == "gold"
    assert next_rank(ordered, 9000) is None


@pytest.mark.asyncio
async def test_reconcile_all_after_new_tier(db_session, make_player, ranks, now):
    engine = XpRankEngine()
    await make_player("climber", total_xp=1800)
    db_session.add(Rank(name="platinum", min_xp=1500, xp_booster=1.8))
    await db_session.flush()

    events = await engine.reconcile_all(db_session, now)
    await db_session.commit()

    assert [e.new_rank_name for e in events] == ["platinum"]
    climber = (await db_session.execute(select(Player).where(Player.username == "climber"))).scalar_one()
    assert climber.rank_id == events[0].new_rank_id


@pytest.mark.asyncio
async def test_new_tier_keeps_idle_players_off_the_leaderboard(db_session, make_player, cache, now):
    idle_since = now - timedelta(days=40)
    idle = await make_player("idlemod", role=PlayerRole.MODERATOR, total_xp=1500, last_updated=idle_since)
    idle_id = idle.id
    builder = LeaderboardViewBuilder(cache, window_days=30)
    db_session.add(Rank(name="copper", min_xp=1200, xp_booster=1.1))
    await db_session.flush()

    events = await XpRankEngine().reconcile_all(db_session, now)
    await db_session.commit()

    assert [e.new_rank_name for e in events] == ["copper"]
    assert events[0].xp_changed is False
    stored = await XpRankEngine().get_player(db_session, idle_id)
    assert stored.last_updated == idle_since
    assert await builder.build_top(db_session, LeaderboardView.XP, now) == []


@pytest.mark.asyncio
async def test_xp_award_still_stamps_last_updated(db_session, player, now):
    result = await XpRankEngine().apply_xp(db_session, player.id, 1200, now)
    await db_session.commit()
    assert result.player.last_updated == now
    assert result.rank_change.xp_changed is True
