#!/usr/bin/env python3
"""Seed the database with a sample plan catalog.

Usage:
    python scripts/seed_plans.py
"""

import asyncio
import sys
from pathlib import Path

# Ensure src/ is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from planward_engine.billing.models import PriceModel, ServiceModel
from planward_engine.common.config import get_settings
from planward_engine.common.database import DatabaseManager

PLAN_SEEDS = [
    {
        "id": "plan_free",
        "name": "Free",
        "features": ["api_keys"],
        "metadata": {"tier": "personal", "planLevel": 0, "isDefault": True},
        "prices": [("price_free_monthly", 0)],
    },
    {
        "id": "plan_basic",
        "name": "Basic",
        "features": ["webhooks"],
        "metadata": {
            "tier": "business",
            "planLevel": 0,
            "limits": {"team_members": 5},
        },
        "prices": [("price_basic_monthly", 900)],
    },
    {
        "id": "plan_pro",
        "name": "Pro",
        "features": [],
        "metadata": {
            "tier": "business",
            "planLevel": 1,
            "featureFlags": {"sso": True, "team_audit_log": True},
            "limits": {"team_members": 20},
        },
        "prices": [("price_pro_monthly", 2900)],
    },
    {
        "id": "plan_enterprise",
        "name": "Enterprise",
        "features": ["directory_sync"],
        "metadata": {
            "tier": "business",
            "planLevel": 2,
            "limits": {"team_members": 100},
        },
        "prices": [("price_enterprise_monthly", 9900)],
    },
]


async def seed_plans() -> None:
    db = DatabaseManager(get_settings())
    await db.init()
    await db.create_all()

    async with db.get_session() as session:
        for seed in PLAN_SEEDS:
            if await session.get(ServiceModel, seed["id"]):
                print(f"  [skip] {seed['id']} ({seed['name']}) already exists")
                continue
            session.add(ServiceModel(
                id=seed["id"],
                name=seed["name"],
                features=seed["features"],
                metadata_=seed["metadata"],
            ))
            for price_id, amount in seed["prices"]:
                session.add(PriceModel(
                    id=price_id, service_id=seed["id"], amount=amount, interval="month"
                ))
            print(f"  [created] {seed['id']} ({seed['name']})")

    await db.close()
    print(f"\nDone. {len(PLAN_SEEDS)} plans seeded.")


if __name__ == "__main__":
    asyncio.run(seed_plans())
