# tests/test_auth.py — Registration, verification, login and password reset
import re
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from httpx import AsyncClient
from sqlalchemy import delete

import auth
from auth import AuthService
from models import Rank
from tests.conftest import TEST_PASSWORD, get_auth_headers


def _code_from(notifier, purpose):
    message = notifier.for_purpose(purpose)[-1]["content"]
    return re.search(r"\b(\d{5})\b", message).group(1)


async def _register(client, username="newbie", email="newbie@example.com", password="hunter2hunter"):
    return await client.post("/api/v1/auth/register", json={
        "username": username,
        "email": email,
        "password": password,
    })


@pytest.mark.asyncio
class TestRegistration:
    async def test_register_verify_login(self, client: AsyncClient, ranks, notifier):
        res = await _register(client)
        assert res.status_code == 201
        player = res.json()["player"]
        assert player["verified"] is False
        assert player["rank"] == "bronze"
        assert player["total_xp"] == 0

        res = await client.post("/api/v1/auth/verify", json={
            "email": "newbie@example.com",
            "code": _code_from(notifier, "verify"),
        })
        assert res.status_code == 200
        assert res.json()["player"]["verified"] is True

        res = await client.post("/api/v1/auth/login", json={
            "email": "newbie@example.com",
            "password": "hunter2hunter",
        })
        assert res.status_code == 200
        data = res.json()
        assert data["token_type"] == "bearer"
        assert data["player"]["username"] == "newbie"

    async def test_username_policy(self, client: AsyncClient, ranks):
        res = await _register(client, username="Bad Name!")
        assert res.status_code == 422

    async def test_password_policy(self, client: AsyncClient, ranks):
        res = await _register(client, password="nodigitshere")
        assert res.status_code == 422

    async def test_duplicate_username(self, client: AsyncClient, ranks):
        await _register(client)
        res = await _register(client, email="other@example.com")
        assert res.status_code == 409

    async def test_wrong_code_rejected(self, client: AsyncClient, ranks):
        await _register(client)
        res = await client.post("/api/v1/auth/verify", json={"email": "newbie@example.com", "code": "00000"})
        assert res.status_code == 400
        assert res.json()["code"] == "RF-VAL-001"

    async def test_empty_rank_table_is_server_error(self, client: AsyncClient, db_session):
        await db_session.execute(delete(Rank))
        await db_session.commit()
        res = await _register(client)
        assert res.status_code == 500
        assert res.json()["code"] == "RF-SYS-001"
        assert res.json()["detail"] == "Internal server error"

    async def test_mail_outage_does_not_block_registration(self, client: AsyncClient, ranks, notifier):
        notifier.fail = True
        res = await _register(client)
        assert res.status_code == 201


@pytest.mark.asyncio
class TestLogin:
    async def test_unverified_login_forbidden(self, client: AsyncClient, make_player):
        await make_player("waiting", verified=False)
        res = await client.post("/api/v1/auth/login", json={
            "email": "waiting@example.com",
            "password": TEST_PASSWORD,
        })
        assert res.status_code == 403

    async def test_wrong_password(self, client: AsyncClient, player):
        res = await client.post("/api/v1/auth/login", json={
            "email": "alice@example.com",
            "password": "wrongpass1",
        })
        assert res.status_code == 401

    async def test_me(self, client: AsyncClient, player):
        res = await client.get("/api/v1/auth/me", headers=get_auth_headers(player))
        assert res.status_code == 200
        assert res.json()["username"] == "alice"

    async def test_me_requires_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me")
        assert res.status_code in (401, 403)

    async def test_garbage_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401


@pytest.mark.asyncio
class TestPasswordReset:
    async def test_reset_flow(self, client: AsyncClient, player, notifier):
        res = await client.post("/api/v1/auth/forgot-password", json={"email": "alice@example.com"})
        assert res.status_code == 200

        res = await client.post("/api/v1/auth/reset-password", json={
            "email": "alice@example.com",
            "code": _code_from(notifier, "reset"),
            "new_password": "brandnew42",
        })
        assert res.status_code == 200

        res = await client.post("/api/v1/auth/login", json={
            "email": "alice@example.com",
            "password": "brandnew42",
        })
        assert res.status_code == 200

    async def test_unknown_email(self, client: AsyncClient, ranks):
        res = await client.post("/api/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert res.status_code == 404


class TestLoginAttemptTracker:
    @pytest.fixture(autouse=True)
    def fresh_tracker(self, monkeypatch):
        monkeypatch.setattr(auth, "_login_attempts", defaultdict(list))

    def test_clean_logins_leave_no_entry(self):
        for i in range(3):
            AuthService._check_brute_force(f"quiet{i}@example.com")
        assert dict(auth._login_attempts) == {}

    def test_expired_failures_are_dropped(self):
        stale = datetime.now(timezone.utc) - timedelta(minutes=auth.LOGIN_LOCKOUT_MINUTES + 1)
        auth._login_attempts["old@example.com"] = [stale]
        AuthService._check_brute_force("old@example.com")
        assert "old@example.com" not in auth._login_attempts

    def test_lockout_after_repeated_failures(self):
        for _ in range(auth.MAX_LOGIN_ATTEMPTS):
            AuthService._record_failed_attempt("guess@example.com")
        with pytest.raises(HTTPException) as exc:
            AuthService._check_brute_force("guess@example.com")
        assert exc.value.status_code == 429
