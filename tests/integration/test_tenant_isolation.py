"""Tenant context resolution and cross-tenant access control."""

import pytest

from src.core.database.models import InventoryAlert
from src.core.exceptions import ForbiddenError, TenantNotFound
from src.core.tenant_context import Principal, open_tenant_context
from src.services.inventory_alert_service import InventoryAlertService
from tests.fixtures import TenantFactory, UserFactory
from tests.utils.database_helpers import audit_rows


class TestResolution:
    def test_user_resolves_to_home_tenant(self, make_ctx, sales_user):
        ctx = make_ctx(sales_user)

        assert ctx.tenant_id == "acme"
        assert ctx.override is False
        assert ctx.principal.principal_id == sales_user.user_id

    def test_explicit_home_tenant_is_not_an_override(self, make_ctx, db_session, sales_user):
        ctx = make_ctx(sales_user, tenant_id="acme")

        assert ctx.override is False
        assert audit_rows(db_session, "tenant_context") == []

    def test_system_context_for_jobs(self, make_ctx, tenant):
        ctx = make_ctx(tenant_id=tenant.tenant_id)

        assert ctx.principal.principal_id == "system:test"
        assert ctx.principal.is_admin

    def test_inactive_tenant_is_not_found(self, make_ctx, db_session):
        dormant = TenantFactory.create(db_session, tenant_id="dormant", is_active=False)
        user = UserFactory.create(db_session, dormant.tenant_id)

        with pytest.raises(TenantNotFound):
            make_ctx(user)

    def test_inactive_user_is_forbidden(self, make_ctx, db_session, tenant):
        user = UserFactory.create(db_session, tenant.tenant_id, is_active=False)

        with pytest.raises(ForbiddenError, match="inactive"):
            make_ctx(user)

    def test_open_tenant_context_uses_a_managed_session(self, clock, sales_user):
        with open_tenant_context(Principal.from_user(sales_user), clock=clock) as ctx:
            assert ctx.tenant_id == "acme"
            assert ctx.now() == clock.now()
            assert ctx.all(InventoryAlert) == []


class TestCrossTenantAccess:
    def test_non_master_override_is_refused_and_recorded(self, make_ctx, db_session, admin_user, other_tenant):
        with pytest.raises(ForbiddenError) as exc_info:
            make_ctx(admin_user, tenant_id=other_tenant.tenant_id, operation="list_alerts")

        assert not isinstance(exc_info.value, TenantNotFound)
        [row] = audit_rows(db_session, "SECURITY_VIOLATION:tenant_context.list_alerts")
        assert row.principal_id == admin_user.user_id
        assert row.tenant_id == other_tenant.tenant_id
        assert row.actor_tenant_id == "acme"
        assert row.success is False

    def test_master_override_is_audited(self, make_ctx, db_session, master_user, other_tenant):
        ctx = make_ctx(master_user, tenant_id=other_tenant.tenant_id, operation="run_audit")

        assert ctx.tenant_id == other_tenant.tenant_id
        assert ctx.override is True
        [row] = audit_rows(db_session, "tenant_context.cross_tenant_access")
        assert row.operation == "tenant_context.cross_tenant_access:run_audit"
        assert row.tenant_id == other_tenant.tenant_id
        assert row.actor_tenant_id == "acme"
        assert row.success is True

    def test_master_override_of_unknown_tenant(self, make_ctx, db_session, master_user):
        with pytest.raises(TenantNotFound):
            make_ctx(master_user, tenant_id="initech")

        assert audit_rows(db_session, "tenant_context.cross_tenant_access") == []


class TestScopedAccess:
    def test_queries_only_see_own_rows(self, make_ctx, admin_user, tenant, other_tenant):
        mine = InventoryAlertService(make_ctx(admin_user))
        theirs = InventoryAlertService(make_ctx(tenant_id=other_tenant.tenant_id))
        mine.create("drift", "high", details={"message": "acme drift"})
        theirs.create("drift", "low", details={"message": "globex drift"})

        assert [a.details["message"] for a in mine.list_alerts()] == ["acme drift"]
        assert [a.details["message"] for a in theirs.list_alerts()] == ["globex drift"]

    def test_get_treats_other_tenants_rows_as_missing(self, make_ctx, admin_user, other_tenant):
        foreign = InventoryAlertService(make_ctx(tenant_id=other_tenant.tenant_id)).create("drift", "low")

        assert make_ctx(admin_user).get(InventoryAlert, foreign.alert_id) is None

    def test_writes_for_another_tenant_are_refused(self, make_ctx, admin_user, other_tenant):
        ctx = make_ctx(admin_user)
        row = InventoryAlert(tenant_id=other_tenant.tenant_id, alert_type="drift", severity="low")

        with pytest.raises(ForbiddenError, match="Refusing to write"):
            ctx.add(row)
