# tests/test_telemetry.py — Engine operations open spans
from contextlib import contextmanager

import pytest

import telemetry
from leaderboard_engine import LeaderboardView, LeaderboardViewBuilder
from xp_engine import XpRankEngine


class RecordingTracer:
    def __init__(self):
        self.spans = []

    @contextmanager
    def start_as_current_span(self, name, attributes=None):
        self.spans.append((name, attributes or {}))
        yield None


@pytest.fixture
def tracer(monkeypatch):
    recorder = RecordingTracer()
    monkeypatch.setattr(telemetry, "get_tracer", lambda name="rankforge": recorder)
    return recorder


def test_span_without_sdk_is_a_noop(monkeypatch):
    monkeypatch.setattr(telemetry, "get_tracer", lambda name="rankforge": None)
    with telemetry.span("anything", key="value") as opened:
        assert opened is None


@pytest.mark.asyncio
async def test_engine_operations_open_spans(tracer, db_session, services, cache, player, ranks,
                                            make_tournament, now):
    player_id = player.id
    tournament = await make_tournament(eligible=[ranks["bronze"]])

    await services.tournaments.join(db_session, player, tournament.id, now)
    await XpRankEngine().apply_xp(db_session, player_id, 50, now)
    await db_session.commit()
    await LeaderboardViewBuilder(cache).build_top(db_session, LeaderboardView.XP, now)

    names = [name for name, _ in tracer.spans]
    assert names == ["tournament.join", "xp.apply", "leaderboard.build"]
    assert tracer.spans[1][1] == {"player_id": player_id, "delta": 50}
