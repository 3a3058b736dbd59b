"""Entitlement and catalog API router."""

from fastapi import APIRouter, Depends, HTTPException

from planward_engine.billing.entitlements import (
    EntitlementRequirement,
    LimitRequirement,
    TeamEntitlements,
)
from planward_engine.billing.catalog import list_catalog
from planward_engine.billing.schemas import (
    CatalogPlanResponse,
    EntitlementCheckRequest,
    EntitlementCheckResponse,
    TeamEntitlementsResponse,
)
from planward_engine.common.exceptions import EntitlementDeniedError, PlanwardError
from planward_engine.common.security import require_api_key

router = APIRouter()


def _get_service():
    from planward_engine.deps import get_entitlement_service
    return get_entitlement_service()


def _get_db():
    from planward_engine.deps import get_db
    return get_db()


def _to_response(team_id: str, entitlements: TeamEntitlements) -> TeamEntitlementsResponse:
    return TeamEntitlementsResponse(team_id=team_id, **entitlements.to_dict())


def entitlement_required(
    feature: str | None = None,
    limit: str | None = None,
    minimum: int | float | None = None,
):
    """Build a dependency enforcing a requirement for the ``team_id`` path param.

    The dependency resolves to the team's entitlements so handlers can read
    numeric ceilings.
    """
    requirement = EntitlementRequirement(
        feature=feature,
        limit=LimitRequirement(key=limit, minimum=minimum) if limit else None,
    )

    async def dependency(team_id: str) -> TeamEntitlements:
        svc = _get_service()
        db = _get_db()
        try:
            async with db.get_session() as session:
                return await svc.require_team_entitlement(session, team_id, requirement)
        except PlanwardError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return dependency


@router.get("/teams/{team_id}/entitlements", response_model=TeamEntitlementsResponse)
async def get_team_entitlements(team_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            entitlements = await svc.get_team_entitlements(session, team_id)
    except PlanwardError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return _to_response(team_id, entitlements)


@router.post("/teams/{team_id}/entitlements/check", response_model=EntitlementCheckResponse)
async def check_team_entitlement(
    team_id: str, body: EntitlementCheckRequest, _=Depends(require_api_key)
):
    svc = _get_service()
    db = _get_db()
    requirement = EntitlementRequirement(
        feature=body.feature,
        limit=LimitRequirement(key=body.limit.key, minimum=body.limit.minimum)
        if body.limit else None,
    )
    try:
        async with db.get_session() as session:
            entitlements = await svc.require_team_entitlement(session, team_id, requirement)
    except EntitlementDeniedError as e:
        return EntitlementCheckResponse(allowed=False, detail=e.message)
    except PlanwardError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return EntitlementCheckResponse(
        allowed=True, entitlements=_to_response(team_id, entitlements)
    )


@router.get("/catalog", response_model=list[CatalogPlanResponse])
async def get_catalog(_=Depends(require_api_key)):
    from planward_engine.deps import get_catalog_store
    store = get_catalog_store()
    db = _get_db()
    async with db.get_session() as session:
        plans = await store.list_plans(session)
        prices = await store.list_price_amounts(session)
    return [
        CatalogPlanResponse(
            id=entry.plan.id,
            name=entry.plan.name,
            description=entry.plan.description,
            tier=entry.tier,
            plan_level=entry.plan_level,
            features=entry.features,
            limits=entry.limits,
            lowest_price=entry.lowest_price,
            metadata=dict(entry.plan.metadata),
        )
        for entry in list_catalog(plans, prices)
    ]


@router.post("/catalog/sync/{product_id}", response_model=CatalogPlanResponse)
async def sync_catalog_plan(product_id: str, _=Depends(require_api_key)):
    from planward_engine.deps import get_catalog_store, get_provider
    store = get_catalog_store()
    db = _get_db()
    try:
        product = await get_provider().get_product(product_id)
    except PlanwardError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    async with db.get_session() as session:
        plan = await store.upsert_from_product(session, product)
    _get_service().invalidate()
    metadata = dict(plan.metadata)
    return CatalogPlanResponse(
        id=plan.id,
        name=plan.name,
        description=plan.description,
        tier=metadata.get("tier") or "",
        plan_level=metadata.get("planLevel"),
        features=list(plan.features),
        limits=metadata.get("limits") or {},
        metadata=metadata,
    )
