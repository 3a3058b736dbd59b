"""Plan catalog: lookup index, inheritance resolution, default plan selection."""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from planward_engine.billing.metadata import (
    EntitlementValues,
    PlanMetadata,
    merge_values,
    normalize_key,
    parse_plan_entitlements,
    parse_plan_metadata,
    parse_provider_metadata,
)

logger = logging.getLogger(__name__)

DEFAULT_PLAN_NAMES = frozenset({"free", "free_plan"})
BUSINESS_TIER = "business"


@dataclass(frozen=True)
class Plan:
    """A catalog entry as read from the plan store."""
    id: str
    name: str
    features: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""


class CatalogIndex:
    """Id- and name-keyed lookup over the full plan catalog.

    Structured metadata is parsed once per plan at build time.
    """

    def __init__(self, plans: Iterable[Plan]):
        self.plans: list[Plan] = list(plans)
        self.by_id: dict[str, Plan] = {}
        self.by_name: dict[str, Plan] = {}
        self._metadata: dict[str, PlanMetadata] = {}
        for plan in self.plans:
            self.by_id.setdefault(plan.id, plan)
            self.by_name.setdefault(normalize_key(plan.name), plan)
            self._metadata.setdefault(plan.id, parse_plan_metadata(plan.metadata))

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self.by_id

    def __len__(self) -> int:
        return len(self.plans)

    def get(self, plan_id: str) -> Plan | None:
        return self.by_id.get(plan_id)

    def metadata_for(self, plan_id: str) -> PlanMetadata:
        return self._metadata.get(plan_id) or PlanMetadata()

    def lookup(self, reference: str) -> Plan | None:
        """Resolve an ``inherits`` reference given as a plan id or name."""
        plan = self.by_id.get(reference)
        if plan is not None:
            return plan
        normalized = normalize_key(reference)
        return self.by_id.get(normalized) or self.by_name.get(normalized)

    def parent_ids(self, plan_id: str) -> list[str]:
        """Plans whose entitlements ``plan_id`` inherits.

        Explicit ``inherits`` wins. Otherwise a plan with both a tier and a
        level inherits every same-tier plan with a strictly lower level,
        lowest level first.
        """
        metadata = self.metadata_for(plan_id)

        if metadata.inherits:
            parents = []
            for reference in metadata.inherits:
                parent = self.lookup(reference)
                if parent is None:
                    logger.debug(
                        "Plan %s inherits unknown plan %r, skipping", plan_id, reference
                    )
                    continue
                parents.append(parent.id)
            return parents

        if metadata.tier is None or metadata.plan_level is None:
            return []

        lower = []
        for plan in self.plans:
            if plan.id == plan_id:
                continue
            candidate = self.metadata_for(plan.id)
            if (
                candidate.tier == metadata.tier
                and candidate.plan_level is not None
                and candidate.plan_level < metadata.plan_level
            ):
                lower.append((candidate.plan_level, plan.id))
        lower.sort(key=lambda entry: entry[0])
        return [plan_id for _, plan_id in lower]

    def own_entitlements(self, plan_id: str) -> EntitlementValues:
        plan = self.by_id.get(plan_id)
        if plan is None:
            return EntitlementValues()
        return parse_plan_entitlements(list(plan.features), self.metadata_for(plan_id))


@dataclass
class ResolutionContext:
    """Memo and recursion stack for one top-level resolution."""
    cache: dict[str, EntitlementValues] = field(default_factory=dict)
    stack: set[str] = field(default_factory=set)


class InheritanceResolver:
    """Computes a plan's fully inherited entitlements."""

    def __init__(self, index: CatalogIndex):
        self.index = index

    def resolve(self, plan_id: str) -> EntitlementValues:
        """Resolve ``plan_id`` with a fresh memo and cycle stack.

        The returned value is a copy the caller may mutate freely.
        """
        return self._resolve(plan_id, ResolutionContext()).copy()

    def _resolve(self, plan_id: str, ctx: ResolutionContext) -> EntitlementValues:
        cached = ctx.cache.get(plan_id)
        if cached is not None:
            return cached

        if plan_id in ctx.stack:
            logger.debug("Inheritance cycle through plan %s, edge ignored", plan_id)
            return EntitlementValues()

        if plan_id not in self.index:
            logger.debug("Plan %s not found in catalog", plan_id)
            return EntitlementValues()

        ctx.stack.add(plan_id)
        try:
            merged = self.index.own_entitlements(plan_id)
            for parent_id in self.index.parent_ids(plan_id):
                merge_values(merged, self._resolve(parent_id, ctx))
        finally:
            ctx.stack.discard(plan_id)

        ctx.cache[plan_id] = merged
        return merged


def select_default_plan(index: CatalogIndex) -> Plan | None:
    """Plan granted to teams without an active subscription.

    Priority: an ``isDefault`` plan, then a plan named ``free``/``free_plan``,
    then the plan with the lowest declared level.
    """
    for plan in index.plans:
        if index.metadata_for(plan.id).is_default:
            return plan

    for plan in index.plans:
        if normalize_key(plan.name) in DEFAULT_PLAN_NAMES:
            return plan

    leveled = [
        plan for plan in index.plans
        if index.metadata_for(plan.id).plan_level is not None
    ]
    if not leveled:
        return None
    return min(leveled, key=lambda plan: index.metadata_for(plan.id).plan_level)


def get_plan_tier(metadata: Any) -> str | None:
    return parse_plan_metadata(metadata).tier


def is_business_plan(metadata: Any) -> bool:
    return get_plan_tier(metadata) == BUSINESS_TIER


@dataclass
class CatalogEntry:
    """A tiered plan with its fully inherited feature list."""
    plan: Plan
    tier: str
    plan_level: int | float | None
    features: list[str]
    limits: dict[str, int | float]
    lowest_price: int | None = None


def list_catalog(
    plans: Iterable[Plan],
    prices_by_plan: Mapping[str, list[int | None]] | None = None,
) -> list[CatalogEntry]:
    """List the tiered plans for display, with inherited features resolved.

    Ordered by tier, then plan level (unlevelled last), then lowest price,
    then name.
    """
    tiered = [
        plan for plan in plans if parse_plan_metadata(plan.metadata).tier is not None
    ]
    index = CatalogIndex(tiered)
    resolver = InheritanceResolver(index)
    prices_by_plan = prices_by_plan or {}

    entries = []
    for plan in tiered:
        metadata = index.metadata_for(plan.id)
        resolved = resolver.resolve(plan.id)
        amounts = [a for a in prices_by_plan.get(plan.id, []) if a is not None]
        entries.append(CatalogEntry(
            plan=plan,
            tier=metadata.tier or "",
            plan_level=metadata.plan_level,
            features=[name for name, enabled in resolved.features.items() if enabled],
            limits=resolved.limits,
            lowest_price=min(amounts) if amounts else None,
        ))

    entries.sort(key=lambda e: (
        e.tier,
        e.plan_level is None,
        e.plan_level if e.plan_level is not None else 0,
        e.lowest_price is None,
        e.lowest_price if e.lowest_price is not None else 0,
        e.plan.name,
    ))
    return entries


def plan_from_provider_product(product: Mapping[str, Any]) -> Plan:
    """Build a catalog plan from a billing provider product object."""
    parsed = parse_provider_metadata(product.get("metadata"))
    return Plan(
        id=product["id"],
        name=product.get("name") or product["id"],
        features=tuple(parsed.features),
        metadata=parsed.to_dict(),
        description=product.get("description") or "",
    )
