"""
Unit tests for the plan catalog.
"""
import pytest
from sqlalchemy.exc import OperationalError

from stashbox.core.errors import MetadataStoreError
from stashbox.models import Plan, PlanOverride
from stashbox.storage.plans import EffectiveLimits, PlanCatalog, builtin_free_plan


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.unit
class TestEffectiveLimits:
    """Test limit merging."""

    def test_merge_non_null_fields_win(self):
        base = builtin_free_plan()
        merged = base.merge({"storage_limit": 1000, "max_file_size": None, "custom": True})

        assert merged.storage_limit == 1000
        assert merged.max_file_size == base.max_file_size
        assert merged.custom is True
        assert merged.plan_id == "free"

    def test_merge_without_override_returns_same(self):
        base = builtin_free_plan()
        assert base.merge(None) is base
        assert base.merge({"storage_limit": None}) is base


@pytest.mark.unit
class TestPlanCatalog:
    """Test plan resolution and caching."""

    def test_resolve_seeded_plan(self, db, tenant_factory):
        tenant, _ = tenant_factory(plan_id="paid")
        limits = PlanCatalog().resolve(db, tenant)

        assert limits.plan_id == "paid"
        assert limits.max_file_size == 50 * 1024 * 1024
        assert limits.max_requests_per_day == 100000

    def test_unknown_plan_falls_back_to_default(self, db, tenant_factory):
        tenant, _ = tenant_factory(plan_id="enterprise-gold")
        limits = PlanCatalog().resolve(db, tenant)
        assert limits.plan_id == "free"

    def test_missing_default_uses_builtin_free_plan(self, db, tenant_factory):
        tenant, _ = tenant_factory(plan_id="ghost")
        limits = PlanCatalog(default_plan="also-missing").resolve(db, tenant)
        assert limits == builtin_free_plan()

    def test_override_merges_into_base_plan(self, db, tenant_factory):
        tenant, _ = tenant_factory()
        db.add(PlanOverride(tenant_id=tenant.id, storage_limit=1000, max_requests_per_day=None))
        db.commit()

        limits = PlanCatalog().resolve(db, tenant)

        assert limits.storage_limit == 1000
        assert limits.max_requests_per_day == 500

    def test_plans_cached_until_ttl(self, db, tenant_factory):
        clock = FakeClock()
        catalog = PlanCatalog(ttl_seconds=60, clock=clock)
        tenant, _ = tenant_factory()
        assert catalog.resolve(db, tenant).storage_limit == 5 * 1024 ** 3

        db.get(Plan, "free").storage_limit = 42
        db.commit()
        assert catalog.resolve(db, tenant).storage_limit == 5 * 1024 ** 3

        clock.now += 61
        assert catalog.resolve(db, tenant).storage_limit == 42

    def test_override_cache_invalidation(self, db, tenant_factory):
        catalog = PlanCatalog(override_ttl_seconds=3600)
        tenant, _ = tenant_factory()
        catalog.resolve(db, tenant)

        db.add(PlanOverride(tenant_id=tenant.id, storage_limit=7))
        db.commit()
        assert catalog.resolve(db, tenant).storage_limit != 7

        catalog.invalidate_override(tenant.id)
        assert catalog.resolve(db, tenant).storage_limit == 7

    def test_cold_catalog_failure_raises(self, db, monkeypatch):
        def broken_query(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database down"))

        monkeypatch.setattr(db, "query", broken_query)
        with pytest.raises(MetadataStoreError):
            PlanCatalog().refresh(db)

    def test_warm_catalog_serves_stale_plans(self, db, monkeypatch):
        clock = FakeClock()
        catalog = PlanCatalog(ttl_seconds=1, clock=clock)
        plans = catalog.refresh(db)
        assert catalog.is_warm

        def broken_query(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database down"))

        monkeypatch.setattr(db, "query", broken_query)
        clock.now += 10

        assert catalog.refresh(db) == plans
        assert isinstance(plans["free"], EffectiveLimits)
