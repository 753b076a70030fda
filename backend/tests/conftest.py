# tests/conftest.py — Shared test fixtures
import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("REDIS_URL", None)
os.environ.pop("MAIL_WEBHOOK_URL", None)

from models import (
    Base, Group, Player, PlayerRole, Rank, Task, TaskCategory, Tournament, utcnow,
)
from auth import AuthService, load_player
from cache import CacheStore, MemoryCache
from database import get_db_session
from errors import DeliveryError
from notifier import Notifier, PushChannel
from services import build_services, get_services
from xp_engine import resolve_rank
from main import app

TEST_PASSWORD = "password123"
# bcrypt is slow; hash once for every fixture player
TEST_PASSWORD_HASH = AuthService.hash_password(TEST_PASSWORD)

ADMIN_EMAIL = "ops@example.com"
ALL_PLAYERS_EMAIL = "everyone@example.com"

RANK_TABLE = [
    ("bronze", 0, 1.0),
    ("silver", 1000, 1.5),
    ("gold", 2500, 2.0),
    ("diamond", 5000, 3.0),
]

GROUP_TABLE = [
    ("dedicated", 1.2),
    ("special", 1.5),
]


# ============================================================
# FAKE COLLABORATORS
# ============================================================

class FakeNotifier(Notifier):
    """Records every message; fails delivery when `fail` is set."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, recipient, purpose, content):
        if self.fail:
            raise DeliveryError(f"relay down for {recipient}")
        self.sent.append({"to": recipient, "purpose": getattr(purpose, "value", purpose), "content": content})

    def for_purpose(self, purpose: str):
        return [m for m in self.sent if m["purpose"] == purpose]


class FakePush(PushChannel):
    def __init__(self):
        self.events = []

    async def broadcast(self, event_type, payload):
        self.events.append((event_type, payload))

    def of_type(self, event_type: str):
        return [p for t, p in self.events if t == event_type]


class FailingCache(CacheStore):
    """Cache backend whose every call fails, like an unreachable Redis."""

    def __init__(self):
        self.calls = 0

    async def get(self, key):
        self.calls += 1
        raise ConnectionError("cache unreachable")

    async def set(self, key, value, ttl=600):
        self.calls += 1
        raise ConnectionError("cache unreachable")

    async def delete(self, *keys):
        self.calls += 1
        raise ConnectionError("cache unreachable")

    async def delete_prefix(self, prefix):
        self.calls += 1
        raise ConnectionError("cache unreachable")

    async def ping(self):
        raise ConnectionError("cache unreachable")


# ============================================================
# DATABASE
# ============================================================

@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ============================================================
# ENGINE SERVICES
# ============================================================

@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def push():
    return FakePush()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def services(session_factory, cache, notifier, push):
    return build_services(
        session_factory=session_factory,
        cache=cache,
        notifier=notifier,
        push=push,
        admin_email=ADMIN_EMAIL,
        broadcast_email=ALL_PLAYERS_EMAIL,
    )


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, services):
    """HTTP test client with overridden DB and engine dependencies"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_services] = lambda: services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def now():
    return datetime.now(timezone.utc).replace(microsecond=0)


# ============================================================
# SEED DATA
# ============================================================

@pytest_asyncio.fixture
async def ranks(db_session):
    """bronze 0 / silver 1000 / gold 2500 / diamond 5000"""
    rows = [Rank(name=name, min_xp=min_xp, xp_booster=booster) for name, min_xp, booster in RANK_TABLE]
    db_session.add_all(rows)
    await db_session.commit()
    return {r.name: r for r in rows}


@pytest_asyncio.fixture
async def groups(db_session):
    rows = [Group(name=name, xp_booster=booster) for name, booster in GROUP_TABLE]
    db_session.add_all(rows)
    await db_session.commit()
    return {g.name: g for g in rows}


@pytest_asyncio.fixture
async def make_player(db_session, ranks, groups):
    """Factory: persisted player with rank derived from total_xp"""
    ordered = sorted(ranks.values(), key=lambda r: r.min_xp)

    async def _make(username, role=PlayerRole.USER, verified=True, total_xp=0,
                    group_names=(), last_updated=None, email=None):
        player = Player(
            username=username,
            email=email or f"{username}@example.com",
            password_hash=TEST_PASSWORD_HASH,
            verified=verified,
            role=role,
            total_xp=total_xp,
            rank_id=resolve_rank(ordered, total_xp).id,
            last_updated=last_updated or utcnow(),
            groups=[groups[name] for name in group_names],
        )
        db_session.add(player)
        await db_session.commit()
        return await load_player(db_session, player.id)

    return _make


@pytest_asyncio.fixture
async def player(make_player):
    return await make_player("alice")


@pytest_asyncio.fixture
async def moderator(make_player):
    return await make_player("mod", role=PlayerRole.MODERATOR)


@pytest_asyncio.fixture
async def admin(make_player):
    return await make_player("boss", role=PlayerRole.ADMIN)


@pytest_asyncio.fixture
async def make_task(db_session):
    async def _make(title="Daily check-in", xp_reward=50, category=TaskCategory.DAILY,
                    max_completions=0, cooldown_seconds=0, groups=("global",), players_bypass=(),
                    tournament=None, start_time=None, end_time=None):
        task = Task(
            title=title,
            xp_reward=xp_reward,
            category=category,
            max_completions=max_completions,
            cooldown_seconds=cooldown_seconds,
            groups=list(groups),
            players_bypass=list(players_bypass),
            tournament_id=tournament.id if tournament is not None else None,
            start_time=start_time,
            end_time=end_time,
        )
        db_session.add(task)
        await db_session.commit()
        return task

    return _make


@pytest_asyncio.fixture
async def make_tournament(db_session, now):
    async def _make(name="Spring Cup", max_participants=10, eligible=(), participants=(),
                    start_time=None, end_time=None):
        tournament = Tournament(
            name=name,
            start_time=start_time or now - timedelta(hours=1),
            end_time=end_time or now + timedelta(days=1),
            max_participants=max_participants,
            eligible_ranks=list(eligible),
            participants=list(participants),
        )
        db_session.add(tournament)
        await db_session.commit()
        return tournament

    return _make


def get_auth_headers(player: Player) -> dict:
    """Generate auth headers for a player"""
    token = AuthService.create_access_token(player)
    return {"Authorization": f"Bearer {token}"}
