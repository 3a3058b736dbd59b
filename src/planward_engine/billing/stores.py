"""Read-side stores for the plan catalog, subscriptions, and billing scope.

The entitlement engine only depends on the async methods below. The
SQLAlchemy implementations are the defaults; tests and embedders may pass
any object with the same methods.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from planward_engine.billing.catalog import Plan, is_business_plan, plan_from_provider_product
from planward_engine.billing.models import (
    PriceModel,
    ServiceModel,
    SubscriptionModel,
    TeamModel,
)
from planward_engine.common.exceptions import CatalogInconsistencyError, TeamNotFoundError

ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due"})


@dataclass(frozen=True)
class Subscription:
    id: str
    team_id: str
    status: str
    organization_id: str | None = None
    quantity: int | None = None
    price_id: str | None = None
    product_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SUBSCRIPTION_STATUSES


@dataclass(frozen=True)
class BillingScope:
    team_id: str
    organization_id: str | None = None


class PlanCatalogStore(Protocol):
    async def list_plans(self, session: AsyncSession | None) -> list[Plan]: ...


class SubscriptionStore(Protocol):
    async def list_by_billing_scope(
        self, session: AsyncSession | None, team_id: str, organization_id: str | None = None
    ) -> list[Subscription]: ...

    async def find_price_service_id(
        self, session: AsyncSession | None, price_id: str
    ) -> str | None: ...


class BillingScopeResolver(Protocol):
    async def resolve(self, session: AsyncSession | None, team_id: str) -> BillingScope: ...


def _plan_from_model(service: ServiceModel) -> Plan:
    return Plan(
        id=service.id,
        name=service.name,
        features=tuple(f for f in (service.features or []) if isinstance(f, str)),
        metadata=service.metadata_ or {},
        description=service.description or "",
    )


def _subscription_from_model(row: SubscriptionModel) -> Subscription:
    return Subscription(
        id=row.id,
        team_id=row.team_id,
        status=row.status,
        organization_id=row.organization_id,
        quantity=row.quantity,
        price_id=row.price_id,
        product_id=row.product_id,
    )


class SqlPlanCatalogStore:
    """Plan catalog backed by the ``services`` table."""

    async def list_plans(self, session: AsyncSession) -> list[Plan]:
        result = await session.execute(select(ServiceModel).order_by(ServiceModel.id))
        return [_plan_from_model(s) for s in result.scalars().all()]

    async def list_price_amounts(self, session: AsyncSession) -> dict[str, list[int | None]]:
        result = await session.execute(select(PriceModel.service_id, PriceModel.amount))
        amounts: dict[str, list[int | None]] = {}
        for service_id, amount in result.all():
            amounts.setdefault(service_id, []).append(amount)
        return amounts

    async def upsert_from_product(
        self, session: AsyncSession, product: Mapping[str, Any]
    ) -> Plan:
        """Create or refresh a catalog plan from a provider product."""
        plan = plan_from_provider_product(product)
        service = await session.get(ServiceModel, plan.id)
        if service is None:
            service = ServiceModel(id=plan.id)
            session.add(service)
        service.name = plan.name
        service.description = plan.description
        service.features = list(plan.features)
        service.metadata_ = dict(plan.metadata)
        await session.flush()
        return plan

    async def assert_business_tier_price(
        self, session: AsyncSession, price_id: str
    ) -> tuple[str, str, str]:
        """Check that a price belongs to a business-tier plan.

        Returns ``(price_id, plan_id, plan_name)``.
        """
        price = await session.get(PriceModel, price_id)
        service = await session.get(ServiceModel, price.service_id) if price else None
        if price is None or service is None:
            raise CatalogInconsistencyError(
                "Price not found in local catalog, sync the catalog first."
            )
        if not is_business_plan(service.metadata_):
            raise CatalogInconsistencyError(
                "Team billing only supports business tier plans."
            )
        return price.id, service.id, service.name


class SqlSubscriptionStore:
    async def list_by_billing_scope(
        self, session: AsyncSession, team_id: str, organization_id: str | None = None
    ) -> list[Subscription]:
        condition = SubscriptionModel.team_id == team_id
        if organization_id:
            condition = or_(condition, SubscriptionModel.organization_id == organization_id)
        result = await session.execute(
            select(SubscriptionModel).where(condition).order_by(SubscriptionModel.id)
        )
        return [_subscription_from_model(row) for row in result.scalars().all()]

    async def find_price_service_id(
        self, session: AsyncSession, price_id: str
    ) -> str | None:
        result = await session.execute(
            select(PriceModel.service_id).where(PriceModel.id == price_id)
        )
        return result.scalar_one_or_none()


class SqlBillingScopeResolver:
    async def resolve(self, session: AsyncSession, team_id: str) -> BillingScope:
        team = await session.get(TeamModel, team_id)
        if team is None:
            raise TeamNotFoundError(
                f"Team not found while resolving billing scope: {team_id}"
            )
        return BillingScope(team_id=team.id, organization_id=team.organization_id)
