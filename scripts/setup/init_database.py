import os
import secrets
import sys

# Add project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))

from sqlalchemy import select

from src.core.database.database_session import get_db_session, get_engine
from src.core.database.models import Base, Tenant, User


def init_db(create_demo_tenant: bool | None = None):
    """Create all tables directly (local development) and optionally a demo tenant.

    Production databases are migrated with ``scripts/ops/migrate.py`` instead.
    """
    print("Creating database tables...")
    Base.metadata.create_all(bind=get_engine())

    if create_demo_tenant is None:
        create_demo_tenant = os.environ.get("CREATE_DEMO_TENANT", "false").lower() == "true"
    if not create_demo_tenant:
        print("✅ Tables ready (demo tenant disabled; set CREATE_DEMO_TENANT=true to create one)")
        return

    with get_db_session() as session:
        existing = session.scalars(select(Tenant).filter_by(tenant_id="default")).first()
        if existing:
            print(f"ℹ️  Default tenant already exists: {existing.name}")
            return

        session.add(Tenant(tenant_id="default", name="Default Network", subdomain="default", is_active=True))
        admin_token = secrets.token_urlsafe(32)
        session.add(
            User(
                tenant_id="default",
                email="admin@example.com",
                name="Network Admin",
                role="admin",
                access_token=admin_token,
            )
        )
        session.commit()

        print(
            f"""
✅ Demo tenant created

  Tenant:       default
  Admin token:  {admin_token}

Use it as: Authorization: Bearer <token>
"""
        )


if __name__ == "__main__":
    init_db()
