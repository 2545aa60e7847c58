"""
Integration test specific fixtures.

These fixtures seed one tenant with a show, an episode with counters, a
campaign and users of each role, on top of the ``integration_db`` engine
from ``tests/conftest_db.py``.
"""

import pytest

from src.admin.app import create_app
from tests.fixtures import CampaignFactory, EpisodeFactory, ShowFactory, TenantFactory, UserFactory


@pytest.fixture
def tenant(db_session):
    return TenantFactory.create(db_session, tenant_id="acme", name="Acme Audio")


@pytest.fixture
def other_tenant(db_session):
    return TenantFactory.create(db_session, tenant_id="globex", name="Globex Radio")


@pytest.fixture
def admin_user(db_session, tenant):
    return UserFactory.create(db_session, tenant.tenant_id, role="admin", name="Ada Admin")


@pytest.fixture
def sales_user(db_session, tenant):
    return UserFactory.create(db_session, tenant.tenant_id, role="sales", name="Sam Sales")


@pytest.fixture
def master_user(db_session, tenant):
    """Platform operator whose home tenant is ``acme``."""
    return UserFactory.create(db_session, tenant.tenant_id, role="master", name="Morgan Master")


@pytest.fixture
def show(db_session, tenant):
    return ShowFactory.create(db_session, tenant.tenant_id, name="Morning Brew")


@pytest.fixture
def episode(db_session, tenant, show):
    """Episode with 3 mid-roll slots and 1 pre-roll slot."""
    return EpisodeFactory.create(db_session, tenant.tenant_id, show.show_id, slots={"mid_roll": 3, "pre_roll": 1})


@pytest.fixture
def campaign(db_session, tenant, sales_user):
    return CampaignFactory.create(db_session, tenant.tenant_id, name="Spring Push", created_by=sales_user.user_id)


@pytest.fixture
def admin_ctx(make_ctx, admin_user):
    return make_ctx(admin_user)


@pytest.fixture
def api_client(integration_db, clock):
    """Flask test client for the HTTP API, sharing the test clock."""
    app = create_app({"TESTING": True, "INVENTORY_CLOCK": clock})
    return app.test_client()


def auth_headers(user, tenant_id: str | None = None) -> dict:
    headers = {"Authorization": f"Bearer {user.access_token}"}
    if tenant_id:
        headers["X-Tenant-Id"] = tenant_id
    return headers


@pytest.fixture
def headers_for():
    return auth_headers
