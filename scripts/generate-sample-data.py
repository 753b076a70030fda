#!/usr/bin/env python3
"""
RankForge — Sample Data Generator
Generates a playable data set aligned with the current database models:
rank tiers, groups, players, tasks and tournaments.
Used for development and demo environments.

Usage:
    python scripts/generate-sample-data.py
    python scripts/generate-sample-data.py --players 50 --tasks 20 --output sample-data.json
    python scripts/generate-sample-data.py --apply      # insert into DATABASE_URL
"""

import os
import sys
import json
import random
import uuid
import asyncio
import argparse
from datetime import datetime, timedelta, timezone
from typing import Any


# ── Configuration ───────────────────────────────────────────

RANK_TIERS = [
    {"name": "bronze", "min_xp": 0, "xp_booster": 1.0},
    {"name": "silver", "min_xp": 1000, "xp_booster": 1.2},
    {"name": "gold", "min_xp": 2500, "xp_booster": 1.5},
    {"name": "platinum", "min_xp": 5000, "xp_booster": 1.8},
    {"name": "diamond", "min_xp": 10000, "xp_booster": 2.0},
]

GROUPS = [
    {"name": "dedicated", "xp_booster": 1.2},
    {"name": "special", "xp_booster": 1.5},
    {"name": "founders", "xp_booster": 1.1},
]

TASK_TEMPLATES = [
    ("Daily check-in", 1, 25, 0, 86400),
    ("Win a match", 1, 50, 5, 3600),
    ("Weekly raid", 2, 300, 1, 0),
    ("Invite a friend", 3, 500, 3, 0),
    ("Community event", 3, 200, 1, 0),
]

ROLES = ["user"] * 17 + ["moderator"] * 2 + ["admin"]
NAMES = ["alex", "jordan", "taylor", "morgan", "casey", "riley", "quinn", "avery", "sage", "river",
         "kai", "rowan", "phoenix", "skyler", "dakota", "reese", "finley", "harper", "emery", "blake"]
DOMAIN = "example.com"
DEMO_PASSWORD = "rankforge1"


class SampleDataGenerator:
    """Generates sample data for RankForge."""

    def __init__(self, seed: int = 42):
        self.seed = seed
        random.seed(seed)
        self.now = datetime.now(timezone.utc)

    def _uuid(self) -> str:
        return str(uuid.uuid4())

    def _past(self, max_days: int = 60) -> datetime:
        return self.now - timedelta(days=random.randint(0, max_days), hours=random.randint(0, 23))

    # ── Generators ──────────────────────────────────────────

    def generate_ranks(self) -> list:
        return [{"id": self._uuid(), **tier} for tier in RANK_TIERS]

    def generate_groups(self) -> list:
        return [{"id": self._uuid(), **group} for group in GROUPS]

    def generate_player(self, index: int, ranks: list, groups: list) -> dict:
        name = f"{random.choice(NAMES)}{index}"[:15]
        total_xp = int(random.paretovariate(1.6) * 300) - 300
        rank = [r for r in ranks if r["min_xp"] <= total_xp][-1]
        return {
            "id": self._uuid(),
            "username": name,
            "email": f"{name}@{DOMAIN}",
            "verified": random.random() > 0.1,
            "role": random.choice(ROLES),
            "rank_id": rank["id"],
            "total_xp": total_xp,
            "groups": [g["name"] for g in groups if random.random() < 0.25],
            "last_updated": self._past(45),
        }

    def generate_task(self, template: tuple, groups: list) -> dict:
        title, category, reward, max_completions, cooldown = template
        audience = ["global"] if random.random() < 0.6 else [random.choice(groups)["name"]]
        return {
            "id": self._uuid(),
            "title": title,
            "category": category,
            "xp_reward": reward,
            "max_completions": max_completions,
            "cooldown_seconds": cooldown,
            "groups": audience,
            "players_bypass": [],
            "tournament_id": None,
            "start_time": None,
            "end_time": None,
        }

    def generate_tournament(self, index: int, ranks: list, players: list) -> dict:
        start = self.now - timedelta(days=random.randint(0, 3))
        capacity = random.choice([8, 16, 32])
        eligible = random.sample(ranks, k=random.randint(1, len(ranks)))
        eligible_ids = {r["id"] for r in eligible}
        candidates = [p for p in players if p["verified"] and p["rank_id"] in eligible_ids]
        roster = random.sample(candidates, k=min(len(candidates), capacity // 2))
        return {
            "id": self._uuid(),
            "name": f"Season Cup {index + 1}",
            "start_time": start,
            "end_time": start + timedelta(days=7),
            "max_participants": capacity,
            "eligible_rank_ids": sorted(eligible_ids),
            "participant_ids": [p["id"] for p in roster],
        }

    def generate_tournament_task(self, tournament: dict, index: int) -> dict:
        return {
            "id": self._uuid(),
            "title": f"Cup stage {index + 1}",
            "category": 0,
            "xp_reward": random.choice([100, 150, 250]),
            "max_completions": 1,
            "cooldown_seconds": 0,
            "groups": [],
            "players_bypass": [],
            "tournament_id": tournament["id"],
            "start_time": tournament["start_time"],
            "end_time": tournament["end_time"],
        }

    # ── Main Generator ──────────────────────────────────────

    def generate_all(self, counts: dict[str, int] | None = None) -> dict[str, Any]:
        c = counts or {"players": 40, "tasks": len(TASK_TEMPLATES), "tournaments": 2}

        ranks = self.generate_ranks()
        groups = self.generate_groups()
        players = [self.generate_player(i, ranks, groups) for i in range(c["players"])]
        tasks = [
            self.generate_task(TASK_TEMPLATES[i % len(TASK_TEMPLATES)], groups)
            for i in range(c["tasks"])
        ]
        tournaments = [self.generate_tournament(i, ranks, players) for i in range(c["tournaments"])]
        for tournament in tournaments:
            tasks.extend(self.generate_tournament_task(tournament, i) for i in range(3))

        return {
            "generated_at": self.now.isoformat(),
            "generator": "RankForge Sample Data Generator v1.0",
            "seed": self.seed,
            "counts": {
                "ranks": len(ranks),
                "groups": len(groups),
                "players": len(players),
                "tasks": len(tasks),
                "tournaments": len(tournaments),
            },
            "data": {
                "ranks": ranks,
                "groups": groups,
                "players": players,
                "tasks": tasks,
                "tournaments": tournaments,
            },
        }


# ── Database seeding ────────────────────────────────────────

async def apply_to_database(data: dict) -> None:
    sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "backend"))
    from auth import AuthService
    from database import get_db_context, init_db
    from models import Group, Player, PlayerRole, Rank, Task, Tournament

    await init_db()
    password_hash = AuthService.hash_password(DEMO_PASSWORD)
    async with get_db_context() as db:
        ranks = {r["id"]: Rank(**r) for r in data["ranks"]}
        groups = {g["name"]: Group(**g) for g in data["groups"]}
        db.add_all(ranks.values())
        db.add_all(groups.values())

        players = {}
        for p in data["players"]:
            players[p["id"]] = Player(
                id=p["id"], username=p["username"], email=p["email"], password_hash=password_hash,
                verified=p["verified"], role=PlayerRole(p["role"]), rank_id=p["rank_id"],
                total_xp=p["total_xp"], last_updated=p["last_updated"],
                groups=[groups[name] for name in p["groups"]],
            )
        db.add_all(players.values())

        for t in data["tournaments"]:
            db.add(Tournament(
                id=t["id"], name=t["name"], start_time=t["start_time"], end_time=t["end_time"],
                max_participants=t["max_participants"],
                eligible_ranks=[ranks[rid] for rid in t["eligible_rank_ids"]],
                participants=[players[pid] for pid in t["participant_ids"]],
            ))
        await db.flush()
        db.add_all(Task(**t) for t in data["tasks"])


# ── CLI ─────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="RankForge Sample Data Generator")
    parser.add_argument("--players", type=int, default=40, help="Number of players")
    parser.add_argument("--tasks", type=int, default=len(TASK_TEMPLATES), help="Number of regular tasks")
    parser.add_argument("--tournaments", type=int, default=2, help="Number of active tournaments")
    parser.add_argument("--output", type=str, default="sample-data.json", help="Output file")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--apply", action="store_true", help="Insert the data into DATABASE_URL")
    args = parser.parse_args()

    generator = SampleDataGenerator(seed=args.seed)
    data = generator.generate_all({
        "players": args.players,
        "tasks": args.tasks,
        "tournaments": args.tournaments,
    })

    with open(args.output, "w") as f:
        json.dump(data, f, indent=2, default=str)

    if args.apply:
        asyncio.run(apply_to_database(data["data"]))

    counts = data["counts"]
    print(f"✅ Sample data generated: {args.output}")
    for name, count in counts.items():
        print(f"   {name.capitalize()}: {count}")
    print(f"   Total Records: {sum(counts.values())}")
    if args.apply:
        print(f"   Seeded into database; demo password is '{DEMO_PASSWORD}'")


if __name__ == "__main__":
    main()
