#!/usr/bin/env python3
"""
seed_observations.py — Populate MongoDB with synthetic civic-issue observations.

Usage (from apps/backend/):
    python scripts/seed_observations.py                # replace existing observations
    python scripts/seed_observations.py --append       # add without clearing first
    python scripts/seed_observations.py --days 14 --per-hour 3

Prerequisites:
    • MONGO_URI env var set (or .env file present)
    • `pip install -e .` from the repository root

On the next API start the most recent observations are replayed into the
training store (warm start), so the learned model trains right away instead
of waiting for 100 live reports.

What this script creates
────────────────────────
  observations  ← hourly reports around a handful of neighbourhoods, with a
                  daytime peak (~17:00 UTC), quieter weekends, rain dampening
                  and the occasional spike so anomaly alerts have something
                  to find
  indexes       ← ts_desc + geo_2dsphere (same as the API creates)
"""

import argparse
import asyncio
import math
import os
import random
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

load_dotenv(ROOT / ".env")

from civicpulse.core.database import OBSERVATIONS, ensure_indexes  # noqa: E402
from civicpulse.models.observation import Demographics, EventInfo, Observation, Weather  # noqa: E402

import certifi
from motor.motor_asyncio import AsyncIOMotorClient

MONGO_URI = os.environ.get("MONGO_URI", "")
MONGO_DB_NAME = os.environ.get("MONGO_DB_NAME", "civicpulse")

if not MONGO_URI:
    print("ERROR: MONGO_URI not set. Add it to apps/backend/.env")
    sys.exit(1)

# ── Neighbourhoods ────────────────────────────────────────────────────────────
# Columns: name, lon, lat, base level, density / km², dominant category
_AREAS = [
    ("MG Road",       77.6101, 12.9756, 55, 9_500, "traffic"),
    ("Koramangala",   77.6245, 12.9352, 48, 12_000, "waste"),
    ("Whitefield",    77.7500, 12.9698, 40, 6_200, "pothole"),
    ("Jayanagar",     77.5838, 12.9250, 35, 11_000, "streetlight"),
    ("Hebbal",        77.5970, 13.0358, 30, 4_800, "water"),
    ("Electronic City", 77.6700, 12.8399, 42, 5_500, "traffic"),
]


def _diurnal(hour: int) -> float:
    """0 at 05:00, 1 at 17:00 (UTC)."""
    return (1 - math.cos((hour - 5) / 24 * 2 * math.pi)) / 2


def _make_observation(area: tuple, at: datetime) -> Observation:
    name, lon, lat, base, density, category = area
    rain = max(0.0, random.gauss(0.5, 2.0))
    level = base * (0.5 + _diurnal(at.hour))
    if at.weekday() >= 5:
        level *= 0.8
    if rain > 5:
        level *= 0.7
    if random.random() < 0.01:
        level *= 2.5
    events = ()
    if random.random() < 0.1:
        events = (EventInfo(
            type=random.choice(["festival", "meeting", "construction", "sports"]),
            distance=random.randint(200, 3_000),
            capacity=random.randint(200, 5_000),
            duration=random.randint(60, 300),
        ),)
    return Observation(
        timestamp=int(at.timestamp() * 1000),
        location=(lon + random.gauss(0, 0.004), lat + random.gauss(0, 0.004)),
        value=round(min(max(level + random.gauss(0, 4), 0), 100), 1),
        category=category,
        weather=Weather(temperature=round(random.uniform(18, 33), 1), precipitation=round(rain, 1)),
        events=events,
        demographics=Demographics(density=density),
    )


def _document(observation: Observation) -> dict:
    doc = observation.model_dump(mode="json", by_alias=True)
    doc["pointId"] = uuid.uuid4().hex
    doc["geo"] = {"type": "Point", "coordinates": list(observation.location)}
    return doc


async def seed(days: int, per_hour: int, append: bool = False) -> None:
    client = AsyncIOMotorClient(MONGO_URI, tlsCAFile=certifi.where())
    db = client[MONGO_DB_NAME]

    try:
        await client.admin.command("ping")
        print(f"Connected to MongoDB ({MONGO_DB_NAME})")
    except Exception as exc:
        print(f"ERROR: Cannot connect to MongoDB: {exc}")
        return

    if not append:
        print("\nClearing existing observations…")
        result = await db[OBSERVATIONS].delete_many({})
        print(f"  Deleted {result.deleted_count} existing documents")

    print("\nGenerating observations…")
    now = datetime.now(tz=timezone.utc).replace(minute=0, second=0, microsecond=0)
    docs = []
    for hours_ago in range(days * 24, 0, -1):
        at = now - timedelta(hours=hours_ago)
        for _ in range(per_hour):
            minute = timedelta(minutes=random.randint(0, 59))
            docs.append(_document(_make_observation(random.choice(_AREAS), at + minute)))

    result = await db[OBSERVATIONS].insert_many(docs)
    print(f"  Inserted {len(result.inserted_ids)} observations across {len(_AREAS)} areas")

    print("\nEnsuring indexes…")
    await ensure_indexes(db)

    total = await db[OBSERVATIONS].count_documents({})
    categories = await db[OBSERVATIONS].distinct("category")
    print("\n✓ Done")
    print(f"  observations total : {total}")
    print(f"  Categories         : {sorted(categories)}")

    client.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed CivicPulse observations into MongoDB")
    parser.add_argument("--days", type=int, default=7, help="How many days of history to generate")
    parser.add_argument("--per-hour", type=int, default=2, help="Observations per hour")
    parser.add_argument(
        "--append",
        action="store_true",
        help="Add observations without clearing existing data first",
    )
    args = parser.parse_args()

    print(f"CivicPulse Observation Seeder  (db: {MONGO_DB_NAME})")
    print(f"Mode: {'append' if args.append else 'replace'}, {args.days} day(s) × {args.per_hour}/hour\n")

    asyncio.run(seed(days=args.days, per_hour=args.per_hour, append=args.append))
