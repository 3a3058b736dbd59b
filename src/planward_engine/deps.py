"""Dependency injection singletons for Planward-Engine."""

from planward_engine.billing.entitlements import EntitlementService
from planward_engine.billing.provider import StripeProvider
from planward_engine.billing.stores import (
    SqlBillingScopeResolver,
    SqlPlanCatalogStore,
    SqlSubscriptionStore,
)
from planward_engine.common.config import get_settings
from planward_engine.common.database import DatabaseManager

_db: DatabaseManager | None = None
_provider: StripeProvider | None = None
_catalog: SqlPlanCatalogStore | None = None
_entitlements: EntitlementService | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_provider() -> StripeProvider:
    global _provider
    if _provider is None:
        settings = get_settings()
        _provider = StripeProvider(
            settings.stripe_secret_key,
            api_base=settings.stripe_api_base,
            timeout=settings.stripe_timeout,
        )
    return _provider


def get_catalog_store() -> SqlPlanCatalogStore:
    global _catalog
    if _catalog is None:
        _catalog = SqlPlanCatalogStore()
    return _catalog


def get_entitlement_service() -> EntitlementService:
    global _entitlements
    if _entitlements is None:
        _entitlements = EntitlementService(
            get_settings(),
            catalog_store=get_catalog_store(),
            subscription_store=SqlSubscriptionStore(),
            scope_resolver=SqlBillingScopeResolver(),
            provider=get_provider(),
        )
    return _entitlements


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _provider, _catalog, _entitlements
    _db = None
    _provider = None
    _catalog = None
    _entitlements = None
