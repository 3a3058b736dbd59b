"""Shared test fixtures for Planward-Engine."""

import os
from dataclasses import dataclass, field
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from planward_engine.billing.catalog import Plan
from planward_engine.billing.stores import BillingScope, Subscription
from planward_engine.common.config import PlanwardSettings
from planward_engine.common.exceptions import ProviderUnavailableError, TeamNotFoundError


API_KEY = "test-admin-api-key"


def make_settings(**overrides) -> PlanwardSettings:
    defaults = {
        "api_key": API_KEY,
        "db_url": "sqlite+aiosqlite://",
        "payments_enabled": True,
    }
    defaults.update(overrides)
    return PlanwardSettings(**defaults)


def plan(plan_id: str, name: str, features=(), **metadata: Any) -> Plan:
    return Plan(id=plan_id, name=name, features=tuple(features), metadata=metadata)


@dataclass
class FakeCatalogStore:
    plans: list[Plan] = field(default_factory=list)

    async def list_plans(self, session):
        return list(self.plans)


@dataclass
class FakeSubscriptionStore:
    subscriptions: list[Subscription] = field(default_factory=list)
    price_services: dict[str, str] = field(default_factory=dict)
    error: Exception | None = None

    async def list_by_billing_scope(self, session, team_id, organization_id=None):
        if self.error is not None:
            raise self.error
        return [
            s for s in self.subscriptions
            if s.team_id == team_id
            or (organization_id and s.organization_id == organization_id)
        ]

    async def find_price_service_id(self, session, price_id):
        return self.price_services.get(price_id)


@dataclass
class FakeScopeResolver:
    organizations: dict[str, str] = field(default_factory=dict)
    unknown: set[str] = field(default_factory=set)

    async def resolve(self, session, team_id):
        if team_id in self.unknown:
            raise TeamNotFoundError(f"Team not found while resolving billing scope: {team_id}")
        return BillingScope(team_id=team_id, organization_id=self.organizations.get(team_id))


@dataclass
class FakeProvider:
    products: dict[str, dict[str, str]] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)

    async def get_product_metadata(self, product_id):
        self.calls.append(product_id)
        if product_id not in self.products:
            raise ProviderUnavailableError(f"No such product: {product_id}")
        return dict(self.products[product_id])


@pytest.fixture
def api_key():
    return API_KEY


@pytest.fixture
def app():
    """Create a test app with in-memory DB and billing gating on."""
    os.environ["PLANWARD_DB_URL"] = "sqlite+aiosqlite://"
    os.environ["PLANWARD_API_KEY"] = API_KEY
    os.environ["PLANWARD_PAYMENTS_ENABLED"] = "true"

    # Clear caches and singletons so new env vars take effect
    from planward_engine.common.config import get_settings
    get_settings.cache_clear()

    from planward_engine.deps import reset_singletons
    reset_singletons()

    from planward_engine.app import create_app
    return create_app()


@pytest.fixture
async def client(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from planward_engine.deps import get_db
    db = get_db()
    await db.init()
    await db.create_all()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await db.close()


@pytest.fixture
def admin_headers():
    return {"X-Planward-Api-Key": API_KEY}
