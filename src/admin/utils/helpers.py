"""Utility functions shared across the HTTP API blueprints."""

import logging
from functools import wraps

from flask import current_app, g, jsonify, request
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.core.database.database_session import get_db_session
from src.core.database.models import User
from src.core.exceptions import ForbiddenError
from src.core.tenant_context import Principal, TenantContextResolver

logger = logging.getLogger(__name__)

TENANT_OVERRIDE_HEADER = "X-Tenant-Id"


def get_bearer_token() -> str | None:
    """Token from ``Authorization: Bearer <token>``, or None."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def load_principal(db_session: Session, token: str) -> Principal | None:
    """Resolve an access token to an active user principal."""
    user = db_session.scalars(select(User).filter_by(access_token=token)).first()
    if user is None or not user.is_active:
        return None
    return Principal.from_user(user)


def require_tenant_context(roles=None, operation=None):
    """Decorator authenticating the caller and opening a tenant context.

    The view receives the resolved ``TenantContext`` as its first argument.
    ``X-Tenant-Id`` asks for another tenant; only master users may, and every
    such access is audit-logged before the view runs.

    Args:
        roles: Roles allowed to call the view (``None`` allows any role)
        operation: Name recorded in the audit log (defaults to the view name)
    """

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            token = get_bearer_token()
            if token is None:
                return jsonify({"error": "Authentication required"}), 401

            with get_db_session() as db_session:
                principal = load_principal(db_session, token)
                if principal is None:
                    logger.warning(f"Rejected unknown or inactive token on {request.path}")
                    return jsonify({"error": "Invalid or expired token"}), 401

                if roles is not None and principal.role not in roles and not principal.is_master:
                    raise ForbiddenError(
                        "Insufficient role for this operation",
                        details={"role": principal.role, "allowed": list(roles)},
                    )

                resolver = TenantContextResolver(clock=current_app.config.get("INVENTORY_CLOCK"))
                ctx = resolver.resolve(
                    db_session,
                    principal,
                    target_tenant_id=request.headers.get(TENANT_OVERRIDE_HEADER),
                    operation=operation or f.__name__,
                )
                g.principal = principal
                g.tenant_id = ctx.tenant_id
                return f(ctx, *args, **kwargs)

        return decorated_function

    return decorator
