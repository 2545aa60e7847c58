"""
Audit trail for privileged inventory operations.

Cross-tenant access by master users, counter repairs and forced releases
each leave a row in ``audit_logs`` and a line on the ``inventory.audit``
logger. Denied cross-tenant attempts are recorded with a
``SECURITY_VIOLATION:`` prefix so they can be queried separately.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from src.core.database.models import AuditLog

audit_logger = logging.getLogger("inventory.audit")

SECURITY_VIOLATION_PREFIX = "SECURITY_VIOLATION:"


class AuditLogger:
    """Writes audit rows for one component (``reconciliation``, ``tenant_context``)."""

    def __init__(self, component: str, tenant_id: str | None = None):
        self.component = component
        self.tenant_id = tenant_id

    def _row(self, operation: str, tenant_id: str | None, **fields: Any) -> AuditLog:
        return AuditLog(operation=operation, tenant_id=tenant_id or self.tenant_id, **fields)

    def log_operation(
        self,
        session: Session,
        operation: str,
        principal_id: str | None,
        principal_name: str | None = None,
        success: bool = True,
        details: dict[str, Any] | None = None,
        error: str | None = None,
        tenant_id: str | None = None,
        actor_tenant_id: str | None = None,
        timestamp: datetime | None = None,
        commit: bool = False,
    ) -> AuditLog:
        """Record ``component.operation`` against ``tenant_id`` (default: this logger's tenant).

        The row joins the caller's transaction unless ``commit`` is set.
        ``actor_tenant_id`` differs from ``tenant_id`` only for master users
        acting across tenants.
        """
        row = self._row(
            f"{self.component}.{operation}",
            tenant_id,
            actor_tenant_id=actor_tenant_id,
            timestamp=timestamp or datetime.now(UTC),
            principal_id=principal_id,
            principal_name=principal_name,
            success=success,
            error_message=None if success else error,
            details=details or {},
        )

        crossed = f" from tenant '{actor_tenant_id}'" if actor_tenant_id and actor_tenant_id != row.tenant_id else ""
        summary = f"{row.operation} by '{principal_name or principal_id}' on tenant '{row.tenant_id}'{crossed}"
        if success:
            audit_logger.info(summary, extra={"details": details})
        else:
            audit_logger.error(f"{summary} failed: {error}")

        session.add(row)
        if commit:
            session.commit()
        return row

    def log_security_violation(
        self,
        session: Session,
        operation: str,
        principal_id: str | None,
        resource_id: str,
        reason: str,
        tenant_id: str | None = None,
        actor_tenant_id: str | None = None,
    ) -> None:
        """Persist a denied access attempt immediately, independent of the caller's outcome."""
        row = self._row(
            f"{SECURITY_VIOLATION_PREFIX}{self.component}.{operation}",
            tenant_id,
            actor_tenant_id=actor_tenant_id,
            timestamp=datetime.now(UTC),
            principal_id=principal_id,
            success=False,
            error_message=f"Denied access to '{resource_id}': {reason}",
            details={"resource_id": resource_id, "reason": reason},
        )
        audit_logger.error(f"{row.operation}: principal '{principal_id}' denied access to '{resource_id}' ({reason})")
        session.add(row)
        session.commit()
