"""Tests for team entitlement aggregation and requirement enforcement."""

import itertools
import logging

import httpx
import pytest

from planward_engine.billing import entitlements as entitlements_module
from planward_engine.billing.entitlements import (
    _EntitlementCache,
    EntitlementRequirement,
    EntitlementService,
    TeamEntitlements,
    check_requirement,
    scale_for_quantity,
)
from planward_engine.billing.metadata import EntitlementValues
from planward_engine.billing.provider import StripeProvider
from planward_engine.billing.stores import Subscription
from planward_engine.common.exceptions import EntitlementDeniedError, TeamNotFoundError
from tests.conftest import (
    FakeCatalogStore,
    FakeProvider,
    FakeScopeResolver,
    FakeSubscriptionStore,
    make_settings,
    plan,
)


def sub(sub_id, status="active", team_id="team_1", **kwargs) -> Subscription:
    return Subscription(id=sub_id, team_id=team_id, status=status, **kwargs)


FREE = plan("service_free", "Free", ["api_keys"], tier="personal", planLevel=0, isDefault=True)
BASIC = plan("service_basic", "Basic", ["more_storage"], tier="personal", planLevel=1,
             inherits=["Free"])
PRO = plan("service_pro", "Pro", ["advanced_analytics"], tier="personal", planLevel=2,
           inherits=["Basic"])
TEAM = plan("service_2", "Team", ["Webhook"], tier="business", planLevel=10,
            featureFlags={"Dsync": True}, limits={"members": 10})


def make_service(
    plans=(),
    subscriptions=(),
    price_services=None,
    products=None,
    settings=None,
    **store_kwargs,
):
    provider = FakeProvider(products=dict(products or {}))
    subscription_store = FakeSubscriptionStore(
        subscriptions=list(subscriptions),
        price_services=dict(price_services or {}),
        **store_kwargs,
    )
    svc = EntitlementService(
        settings or make_settings(),
        catalog_store=FakeCatalogStore(plans=list(plans)),
        subscription_store=subscription_store,
        scope_resolver=FakeScopeResolver(),
        provider=provider,
    )
    return svc, provider, subscription_store


class TestGetTeamEntitlements:
    async def test_merges_provider_and_catalog_subscriptions(self):
        svc, provider, _ = make_service(
            plans=[FREE, TEAM],
            subscriptions=[
                sub("sub_1", "active", product_id="prod_1", price_id="price_1"),
                sub("sub_2", "trialing", price_id="price_2"),
                sub("sub_3", "canceled", product_id="prod_2", price_id="price_3"),
            ],
            price_services={"price_2": "service_2"},
            products={"prod_1": {
                "features": "Sso,Audit Logs",
                "limits": "members=3",
                "limit_projects": "5",
            }},
        )

        result = await svc.get_team_entitlements(None, "team_1")

        assert result == TeamEntitlements(
            features={
                "sso": True,
                "team_audit_log": True,
                "webhooks": True,
                "directory_sync": True,
            },
            limits={"members": 10, "projects": 5},
            plan_ids=["prod_1", "service_2"],
            sources=["stripe", "database"],
        )
        assert provider.calls == ["prod_1"]

    async def test_default_plan_when_no_active_subscription(self):
        svc, _, _ = make_service(
            plans=[FREE, BASIC],
            subscriptions=[sub("sub_old", "canceled", product_id="service_basic")],
        )
        result = await svc.get_team_entitlements(None, "team_1")
        assert result == TeamEntitlements(
            features={"api_keys": True},
            plan_ids=["service_free"],
            sources=["free_tier"],
        )

    async def test_default_plan_includes_inherited_plans(self):
        starter = plan("starter", "Starter", ["webhooks"], tier="t", planLevel=0)
        default = plan("std", "Standard", ["api_keys"], tier="t", planLevel=1,
                       isDefault=True, limits={"projects": 2})
        svc, _, _ = make_service(plans=[starter, default])
        result = await svc.get_team_entitlements(None, "team_1")
        assert result.features == {"api_keys": True, "webhooks": True}
        assert result.limits == {"projects": 2}
        assert result.sources == ["free_tier"]

    async def test_no_default_plan_yields_empty(self):
        svc, _, _ = make_service(plans=[plan("x", "Enterprise")])
        result = await svc.get_team_entitlements(None, "team_1")
        assert result == TeamEntitlements()

    async def test_inherited_catalog_plan_via_price(self):
        svc, provider, _ = make_service(
            plans=[FREE, BASIC, PRO],
            subscriptions=[sub("sub_1", price_id="price_pro")],
            price_services={"price_pro": "service_pro"},
        )
        result = await svc.get_team_entitlements(None, "team_1")
        assert result == TeamEntitlements(
            features={"api_keys": True, "more_storage": True, "advanced_analytics": True},
            plan_ids=["service_pro"],
            sources=["database"],
        )
        assert provider.calls == []

    async def test_product_id_matching_catalog_skips_provider(self):
        svc, provider, _ = make_service(
            plans=[TEAM],
            subscriptions=[sub("sub_1", "past_due", product_id="service_2")],
        )
        result = await svc.get_team_entitlements(None, "team_1")
        assert result.sources == ["database"]
        assert result.plan_ids == ["service_2"]
        assert provider.calls == []

    async def test_price_mapped_to_unknown_plan_falls_back_to_provider(self):
        svc, provider, _ = make_service(
            plans=[TEAM],
            subscriptions=[sub("sub_1", product_id="prod_9", price_id="price_9")],
            price_services={"price_9": "service_deleted"},
            products={"prod_9": {"feature_sso": "true"}},
        )
        result = await svc.get_team_entitlements(None, "team_1")
        assert result.features == {"sso": True}
        assert result.sources == ["stripe"]
        assert provider.calls == ["prod_9"]

    async def test_provider_failure_skips_only_that_subscription(self, caplog, monkeypatch):
        # setup_logging() may have detached the package logger from root
        monkeypatch.setattr(logging.getLogger("planward_engine"), "propagate", True)
        svc, provider, _ = make_service(
            plans=[TEAM],
            subscriptions=[
                sub("sub_broken", product_id="prod_missing"),
                sub("sub_ok", product_id="service_2"),
            ],
        )
        with caplog.at_level("WARNING"):
            result = await svc.get_team_entitlements(None, "team_1")
        assert result.plan_ids == ["service_2"]
        assert result.sources == ["database"]
        assert provider.calls == ["prod_missing"]
        assert "sub_broken" in caplog.text

    async def test_unmapped_subscription_without_product_contributes_nothing(self):
        svc, provider, _ = make_service(
            plans=[FREE],
            subscriptions=[sub("sub_1", price_id="price_unknown")],
        )
        result = await svc.get_team_entitlements(None, "team_1")
        assert result == TeamEntitlements()
        assert provider.calls == []

    async def test_duplicate_plans_recorded_once(self):
        svc, _, _ = make_service(
            plans=[TEAM],
            subscriptions=[
                sub("sub_1", product_id="service_2"),
                sub("sub_2", product_id="service_2"),
            ],
        )
        result = await svc.get_team_entitlements(None, "team_1")
        assert result.plan_ids == ["service_2"]
        assert result.sources == ["database"]

    async def test_organization_subscriptions_are_in_scope(self):
        svc, _, _ = make_service(
            plans=[TEAM],
            subscriptions=[
                sub("sub_org", team_id="other_team", organization_id="org_1",
                    product_id="service_2"),
            ],
        )
        svc.scope_resolver = FakeScopeResolver(organizations={"team_1": "org_1"})
        result = await svc.get_team_entitlements(None, "team_1")
        assert result.plan_ids == ["service_2"]

    async def test_aggregation_is_order_independent(self):
        plans = [
            plan("a", "A", ["x"], limits={"team_members": 3, "projects": 9}),
            plan("b", "B", ["y"], inherits=["c"], limits={"projects": 2}),
            plan("c", "C", ["z"], inherits=["b"], limits={"team_members": 7}),
        ]
        subscriptions = [
            sub("s1", product_id="a", quantity=4),
            sub("s2", product_id="b"),
            sub("s3", product_id="prod_remote"),
        ]
        products = {"prod_remote": {"features": "x", "feature_beta": "false",
                                    "limit_projects": "11"}}

        results = []
        for order in itertools.permutations(subscriptions):
            svc, _, _ = make_service(plans=plans, subscriptions=order, products=products)
            results.append(await svc.get_team_entitlements(None, "team_1"))

        first = results[0]
        assert first.features == {"x": True, "y": True, "z": True, "beta": False}
        assert first.limits == {"team_members": 12, "projects": 11}
        for other in results[1:]:
            assert other.features == first.features
            assert other.limits == first.limits
            assert set(other.plan_ids) == set(first.plan_ids)
            assert set(other.sources) == set(first.sources)

    async def test_scope_errors_propagate(self):
        svc, _, _ = make_service()
        svc.scope_resolver = FakeScopeResolver(unknown={"ghost"})
        with pytest.raises(TeamNotFoundError):
            await svc.get_team_entitlements(None, "ghost")


class TestQuantityScaling:
    def test_seat_limit_scales(self):
        values = EntitlementValues(limits={"team_members": 3, "projects": 5})
        scale_for_quantity(values, 4)
        assert values.limits == {"team_members": 12, "projects": 5}

    @pytest.mark.parametrize("quantity", [None, 0, 1])
    def test_small_quantity_leaves_limit(self, quantity):
        values = EntitlementValues(limits={"team_members": 3})
        scale_for_quantity(values, quantity)
        assert values.limits == {"team_members": 3}

    def test_missing_seat_limit_untouched(self):
        values = EntitlementValues(limits={"projects": 5})
        scale_for_quantity(values, 10)
        assert values.limits == {"projects": 5}

    async def test_catalog_subscription_quantity(self):
        seat_plan = plan("seats", "Seats", limits={"team_members": 3})
        svc, _, _ = make_service(
            plans=[seat_plan],
            subscriptions=[sub("s1", product_id="seats", quantity=4)],
        )
        result = await svc.get_team_entitlements(None, "team_1")
        assert result.limits == {"team_members": 12}

    async def test_scaling_does_not_leak_between_subscriptions(self):
        seat_plan = plan("seats", "Seats", limits={"team_members": 3})
        svc, _, _ = make_service(
            plans=[seat_plan],
            subscriptions=[
                sub("s1", product_id="seats", quantity=2),
                sub("s2", product_id="seats", quantity=3),
            ],
        )
        result = await svc.get_team_entitlements(None, "team_1")
        assert result.limits == {"team_members": 9}


class TestRequirements:
    async def test_missing_feature_denied(self):
        svc, _, _ = make_service()
        with pytest.raises(EntitlementDeniedError) as exc_info:
            await svc.require_team_entitlement(
                None, "team_2", EntitlementRequirement.for_feature("SSO")
            )
        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Plan does not include required feature: SSO"

    async def test_feature_granted_returns_entitlements(self):
        svc, _, _ = make_service(plans=[TEAM], subscriptions=[sub("s", product_id="service_2")])
        result = await svc.require_team_entitlement(
            None, "team_1", EntitlementRequirement.for_feature("team-webhook")
        )
        assert result.limits["members"] == 10

    async def test_limit_requirements(self):
        svc, _, _ = make_service(plans=[TEAM], subscriptions=[sub("s", product_id="service_2")])
        assert await svc.has_team_entitlement(
            None, "team_1", EntitlementRequirement.for_limit("Members", 10)
        ) is True
        assert await svc.has_team_entitlement(
            None, "team_1", EntitlementRequirement.for_limit("members", 11)
        ) is False
        with pytest.raises(EntitlementDeniedError, match="Plan limit insufficient for projects"):
            await svc.require_team_entitlement(
                None, "team_1", EntitlementRequirement.for_limit("projects", 1)
            )

    async def test_limit_without_minimum_always_passes(self):
        svc, _, _ = make_service()
        assert await svc.has_team_entitlement(
            None, "team_1", EntitlementRequirement.for_limit("members")
        ) is True

    async def test_has_entitlement_maps_denial_to_false(self):
        svc, _, _ = make_service()
        assert await svc.has_team_entitlement(
            None, "team_3", EntitlementRequirement.for_limit("members", 1)
        ) is False

    async def test_has_entitlement_rethrows_unexpected_errors(self):
        svc, _, _ = make_service(error=ConnectionError("storage-down"))
        with pytest.raises(ConnectionError, match="storage-down"):
            await svc.has_team_entitlement(
                None, "team_4", EntitlementRequirement.for_feature("sso")
            )

    async def test_billing_disabled_bypasses_checks(self):
        svc, provider, _ = make_service(
            settings=make_settings(payments_enabled=False),
            error=ConnectionError("never touched"),
        )
        assert await svc.has_team_entitlement(
            None, "team_5", EntitlementRequirement.for_limit("members", 100)
        ) is True
        result = await svc.require_team_entitlement(
            None, "team_5", EntitlementRequirement.for_feature("sso")
        )
        assert result == TeamEntitlements()

    def test_check_requirement_feature_explicitly_false(self):
        with pytest.raises(EntitlementDeniedError):
            check_requirement(
                EntitlementValues(features={"sso": False}),
                EntitlementRequirement.for_feature("sso"),
            )


class TestEntitlementCache:
    async def test_cache_disabled_by_default(self):
        svc, provider, store = make_service(
            subscriptions=[sub("s", product_id="prod_1")],
            products={"prod_1": {"feature_sso": "true"}},
        )
        await svc.get_team_entitlements(None, "team_1")
        await svc.get_team_entitlements(None, "team_1")
        assert provider.calls == ["prod_1", "prod_1"]

    async def test_cache_hits_and_invalidation(self):
        svc, provider, _ = make_service(
            subscriptions=[sub("s", product_id="prod_1")],
            products={"prod_1": {"feature_sso": "true"}},
            settings=make_settings(entitlement_cache_ttl=60),
        )
        first = await svc.get_team_entitlements(None, "team_1")
        first.features["tampered"] = True
        second = await svc.get_team_entitlements(None, "team_1")
        assert provider.calls == ["prod_1"]
        assert second.features == {"sso": True}

        svc.invalidate("team_1")
        await svc.get_team_entitlements(None, "team_1")
        assert provider.calls == ["prod_1", "prod_1"]

    def test_expired_entries_are_pruned_on_write(self, monkeypatch):
        clock = [1000.0]
        monkeypatch.setattr(entitlements_module.time, "monotonic", lambda: clock[0])
        cache = _EntitlementCache(ttl=60)

        cache.put("team_1", TeamEntitlements(features={"sso": True}))
        cache.put("team_2", TeamEntitlements())
        assert len(cache) == 2

        clock[0] += 61
        cache.put("team_3", TeamEntitlements())
        assert len(cache) == 1
        assert cache.get("team_1") is None
        assert cache.get("team_3") == TeamEntitlements()


def stripe_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.raw_path.decode()
    if path == "/v1/products/prod_ok":
        return httpx.Response(200, json={
            "id": "prod_ok",
            "metadata": {"feature_advanced_analytics": "true"},
        })
    if path == "/v1/products/prod_down":
        return httpx.Response(500, json={"error": {"message": "internal"}})
    if path == "/v1/products/prod_list_metadata":
        return httpx.Response(200, json={"id": "prod_list_metadata", "metadata": ["a"]})
    if path == "/v1/products/prod_not_json":
        return httpx.Response(200, content=b"<html>gateway</html>")
    return httpx.Response(404, json={"error": {"message": "No such product"}})


class TestStripeProviderFailures:
    """A failing provider lookup drops only the affected subscription."""

    SEATS = plan("seats", "Seats", ["sso"])

    def make_stripe_service(self, product_id):
        provider = StripeProvider("sk_test_123", transport=httpx.MockTransport(stripe_handler))
        svc = EntitlementService(
            make_settings(),
            catalog_store=FakeCatalogStore(plans=[self.SEATS]),
            subscription_store=FakeSubscriptionStore(subscriptions=[
                sub("sub_seats", product_id="seats"),
                sub("sub_remote", product_id=product_id),
            ]),
            scope_resolver=FakeScopeResolver(),
            provider=provider,
        )
        return svc, provider

    @pytest.mark.parametrize("product_id", [
        "prod_down",
        "prod_list_metadata",
        "prod_not_json",
        "prod\x01bad",
        "../customers/cus_1",
    ])
    async def test_broken_product_keeps_healthy_subscriptions(self, product_id):
        svc, provider = self.make_stripe_service(product_id)
        result = await svc.get_team_entitlements(None, "team_1")
        await provider.close()

        assert result.features == {"sso": True}
        assert result.plan_ids == ["seats"]
        assert result.sources == ["database"]

    async def test_healthy_product_still_contributes(self):
        svc, provider = self.make_stripe_service("prod_ok")
        result = await svc.get_team_entitlements(None, "team_1")
        await provider.close()

        assert result.features == {"sso": True, "advanced_analytics": True}
        assert result.plan_ids == ["seats", "prod_ok"]
        assert result.sources == ["database", "stripe"]
