"""Team entitlement aggregation and requirement enforcement."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from planward_engine.billing.catalog import CatalogIndex, InheritanceResolver, select_default_plan
from planward_engine.billing.metadata import (
    EntitlementValues,
    Number,
    merge_values,
    normalize_feature_key,
    normalize_key,
    parse_provider_entitlements,
)
from planward_engine.billing.provider import BillingProvider, StripeProvider
from planward_engine.billing.stores import (
    BillingScopeResolver,
    PlanCatalogStore,
    SqlBillingScopeResolver,
    SqlPlanCatalogStore,
    SqlSubscriptionStore,
    Subscription,
    SubscriptionStore,
)
from planward_engine.common.config import PlanwardSettings
from planward_engine.common.exceptions import EntitlementDeniedError, ProviderUnavailableError

logger = logging.getLogger(__name__)

SOURCE_DATABASE = "database"
SOURCE_STRIPE = "stripe"
SOURCE_FREE_TIER = "free_tier"

# Only the member ceiling scales with purchased seats.
SEAT_LIMIT_KEY = "team_members"


@dataclass
class TeamEntitlements(EntitlementValues):
    """Merged entitlements for a team plus where they came from."""

    plan_ids: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)

    def absorb(self, values: EntitlementValues, plan_id: str | None, source: str) -> None:
        merge_values(self, values)
        if plan_id and plan_id not in self.plan_ids:
            self.plan_ids.append(plan_id)
        if source not in self.sources:
            self.sources.append(source)

    def copy(self) -> "TeamEntitlements":
        return TeamEntitlements(
            features=dict(self.features),
            limits=dict(self.limits),
            plan_ids=list(self.plan_ids),
            sources=list(self.sources),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "features": dict(self.features),
            "limits": dict(self.limits),
            "plan_ids": list(self.plan_ids),
            "sources": list(self.sources),
        }


@dataclass
class LimitRequirement:
    key: str
    minimum: Number | None = None


@dataclass
class EntitlementRequirement:
    """A feature that must be granted and/or a limit that must be high enough."""
    feature: str | None = None
    limit: LimitRequirement | None = None

    @classmethod
    def for_feature(cls, feature: str) -> "EntitlementRequirement":
        return cls(feature=feature)

    @classmethod
    def for_limit(cls, key: str, minimum: Number | None = None) -> "EntitlementRequirement":
        return cls(limit=LimitRequirement(key=key, minimum=minimum))


def scale_for_quantity(values: EntitlementValues, quantity: int | None) -> EntitlementValues:
    """Multiply the seat limit by the purchased quantity, in place."""
    if quantity is not None and quantity > 1 and SEAT_LIMIT_KEY in values.limits:
        values.limits[SEAT_LIMIT_KEY] = values.limits[SEAT_LIMIT_KEY] * quantity
    return values


def check_requirement(
    entitlements: EntitlementValues, requirement: EntitlementRequirement
) -> None:
    """Raise :class:`EntitlementDeniedError` unless ``requirement`` is met."""
    if requirement.feature:
        if not entitlements.features.get(normalize_feature_key(requirement.feature)):
            raise EntitlementDeniedError(
                f"Plan does not include required feature: {requirement.feature}"
            )

    if requirement.limit is not None and requirement.limit.minimum is not None:
        value = entitlements.limits.get(normalize_key(requirement.limit.key))
        if value is None or value < requirement.limit.minimum:
            raise EntitlementDeniedError(
                f"Plan limit insufficient for {requirement.limit.key}"
            )


@dataclass
class _Contribution:
    """How one active subscription will contribute entitlements."""
    subscription: Subscription
    plan_id: str | None = None
    product_id: str | None = None


class _EntitlementCache:
    """Process-local TTL cache keyed by team id."""

    def __init__(self, ttl: int):
        self.ttl = ttl
        self._entries: dict[str, tuple[float, TeamEntitlements]] = {}

    def get(self, team_id: str) -> TeamEntitlements | None:
        entry = self._entries.get(team_id)
        if entry is None:
            return None
        expires_at, entitlements = entry
        if time.monotonic() >= expires_at:
            self._entries.pop(team_id, None)
            return None
        return entitlements.copy()

    def put(self, team_id: str, entitlements: TeamEntitlements) -> None:
        now = time.monotonic()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self._entries[team_id] = (now + self.ttl, entitlements.copy())

    def __len__(self) -> int:
        return len(self._entries)

    def invalidate(self, team_id: str | None = None) -> None:
        if team_id is None:
            self._entries.clear()
        else:
            self._entries.pop(team_id, None)


class EntitlementService:
    """Resolves what a team may use from its subscriptions and the plan catalog."""

    def __init__(
        self,
        settings: PlanwardSettings,
        catalog_store: PlanCatalogStore | None = None,
        subscription_store: SubscriptionStore | None = None,
        scope_resolver: BillingScopeResolver | None = None,
        provider: BillingProvider | None = None,
    ):
        self.settings = settings
        self.catalog_store = catalog_store or SqlPlanCatalogStore()
        self.subscription_store = subscription_store or SqlSubscriptionStore()
        self.scope_resolver = scope_resolver or SqlBillingScopeResolver()
        self.provider = provider or StripeProvider(
            settings.stripe_secret_key,
            api_base=settings.stripe_api_base,
            timeout=settings.stripe_timeout,
        )
        self._cache = (
            _EntitlementCache(settings.entitlement_cache_ttl)
            if settings.entitlement_cache_ttl > 0 else None
        )

    def invalidate(self, team_id: str | None = None) -> None:
        """Drop cached entitlements for one team, or for all teams."""
        if self._cache is not None:
            self._cache.invalidate(team_id)

    # ── Aggregation ──

    async def get_team_entitlements(
        self, session: AsyncSession | None, team_id: str
    ) -> TeamEntitlements:
        if self._cache is not None:
            cached = self._cache.get(team_id)
            if cached is not None:
                return cached

        entitlements = await self._compute(session, team_id)

        if self._cache is not None:
            self._cache.put(team_id, entitlements)
        return entitlements

    async def _compute(self, session: AsyncSession | None, team_id: str) -> TeamEntitlements:
        entitlements = TeamEntitlements()

        index = CatalogIndex(await self.catalog_store.list_plans(session))
        resolver = InheritanceResolver(index)

        scope = await self.scope_resolver.resolve(session, team_id)
        subscriptions = await self.subscription_store.list_by_billing_scope(
            session, scope.team_id, scope.organization_id
        )
        active = [s for s in subscriptions if s.is_active]

        if not active:
            default_plan = select_default_plan(index)
            if default_plan is not None:
                entitlements.absorb(
                    resolver.resolve(default_plan.id), default_plan.id, SOURCE_FREE_TIER
                )
            return entitlements

        # Store lookups share one session, so mapping stays sequential.
        contributions = [
            await self._map_subscription(session, subscription, index)
            for subscription in active
        ]

        provider_results = await asyncio.gather(*(
            self._fetch_provider_entitlements(c.subscription, c.product_id)
            for c in contributions if c.plan_id is None and c.product_id
        ))
        provider_iter = iter(provider_results)

        for contribution in contributions:
            subscription = contribution.subscription
            if contribution.plan_id is not None:
                values = resolver.resolve(contribution.plan_id)
                plan_id, source = contribution.plan_id, SOURCE_DATABASE
            elif contribution.product_id:
                values = next(provider_iter)
                if values is None:
                    continue
                plan_id, source = contribution.product_id, SOURCE_STRIPE
            else:
                logger.info(
                    "Subscription %s has no catalog plan or product, skipping",
                    subscription.id,
                )
                continue

            scale_for_quantity(values, subscription.quantity)
            entitlements.absorb(values, plan_id, source)

        return entitlements

    async def _map_subscription(
        self, session: AsyncSession | None, subscription: Subscription, index: CatalogIndex
    ) -> _Contribution:
        """Map a subscription to a catalog plan, or mark it for a provider lookup."""
        if subscription.product_id and subscription.product_id in index:
            return _Contribution(subscription, plan_id=subscription.product_id)

        if subscription.price_id:
            service_id = await self.subscription_store.find_price_service_id(
                session, subscription.price_id
            )
            if service_id and service_id in index:
                return _Contribution(subscription, plan_id=service_id)
            if service_id:
                logger.debug(
                    "Price %s maps to unknown plan %s", subscription.price_id, service_id
                )

        return _Contribution(subscription, product_id=subscription.product_id)

    async def _fetch_provider_entitlements(
        self, subscription: Subscription, product_id: str
    ) -> EntitlementValues | None:
        try:
            metadata = await self.provider.get_product_metadata(product_id)
        except ProviderUnavailableError as exc:
            logger.warning(
                "Skipping subscription %s: %s",
                subscription.id,
                exc.message,
                extra={"subscription_id": subscription.id, "product_id": product_id},
            )
            return None
        return parse_provider_entitlements(metadata)

    # ── Enforcement ──

    async def require_team_entitlement(
        self,
        session: AsyncSession | None,
        team_id: str,
        requirement: EntitlementRequirement,
    ) -> TeamEntitlements:
        """Return the team's entitlements, or raise if ``requirement`` is unmet.

        When billing is disabled nothing is gated and an empty value is
        returned without touching any store.
        """
        if not self.settings.billing_enabled:
            return TeamEntitlements()

        entitlements = await self.get_team_entitlements(session, team_id)
        check_requirement(entitlements, requirement)
        return entitlements

    async def has_team_entitlement(
        self,
        session: AsyncSession | None,
        team_id: str,
        requirement: EntitlementRequirement,
    ) -> bool:
        try:
            await self.require_team_entitlement(session, team_id, requirement)
        except EntitlementDeniedError:
            return False
        return True
