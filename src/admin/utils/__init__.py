"""Admin utilities package."""

from src.admin.utils.helpers import (
    get_bearer_token,
    load_principal,
    require_tenant_context,
)

__all__ = [
    "get_bearer_token",
    "load_principal",
    "require_tenant_context",
]
