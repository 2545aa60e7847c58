"""Tenant-scoped data access.

A ``TenantContext`` is the only way services reach tenant-owned rows. It is
resolved once per request (or per job run) from an authenticated principal,
binds exactly one tenant, and filters every query it builds by that tenant.
Cross-tenant access is limited to ``master`` principals and is written to the
audit log before the handle is handed out.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import Select, Update, select, update
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Session

from src.core.audit_logger import AuditLogger
from src.core.clock import Clock, SystemClock
from src.core.database.database_session import get_db_session
from src.core.database.models import Tenant, User
from src.core.exceptions import ForbiddenError, NotFoundError, TenantNotFound

logger = logging.getLogger(__name__)

M = TypeVar("M")

ADMIN_ROLES = frozenset({"master", "admin"})


@dataclass(frozen=True)
class Principal:
    """An authenticated actor: a user, or the system running a periodic job."""

    principal_id: str
    name: str
    role: str
    tenant_id: str | None
    is_active: bool = True

    @property
    def is_master(self) -> bool:
        return self.role == "master"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(
            principal_id=user.user_id,
            name=user.name,
            role=user.role,
            tenant_id=user.tenant_id,
            is_active=bool(user.is_active),
        )

    @classmethod
    def system(cls, job_name: str, tenant_id: str) -> "Principal":
        return cls(principal_id=f"system:{job_name}", name=job_name, role="admin", tenant_id=tenant_id)


class TenantContext:
    """Handle bound to one tenant. Every query built through it is filtered by ``tenant_id``."""

    def __init__(
        self,
        session: Session,
        tenant: Tenant,
        principal: Principal,
        clock: Clock | None = None,
        override: bool = False,
    ):
        self.session = session
        self.tenant = tenant
        self.principal = principal
        self.clock = clock or SystemClock()
        self.override = override

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id

    @property
    def dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def now(self) -> datetime:
        return self.clock.now()

    def select(self, model: type[M], *criteria: Any) -> Select:
        """``SELECT`` over ``model`` restricted to this tenant."""
        return select(model).where(model.tenant_id == self.tenant_id, *criteria)

    def update(self, model: type[M], *criteria: Any) -> Update:
        """``UPDATE`` over ``model`` restricted to this tenant."""
        return update(model).where(model.tenant_id == self.tenant_id, *criteria)

    def all(self, model: type[M], *criteria: Any, order_by: Any = None) -> list[M]:
        stmt = self.select(model, *criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        return list(self.session.scalars(stmt).all())

    def first(self, model: type[M], *criteria: Any) -> M | None:
        return self.session.scalars(self.select(model, *criteria)).first()

    def get(self, model: type[M], ident: Any) -> M | None:
        """Primary-key lookup; rows of other tenants are treated as missing."""
        if ident is None:
            return None
        obj = self.session.get(model, ident)
        if obj is None or obj.tenant_id != self.tenant_id:
            return None
        return obj

    def get_or_404(self, model: type[M], ident: Any, label: str | None = None) -> M:
        obj = self.get(model, ident)
        if obj is None:
            name = label or model.__name__
            raise NotFoundError(f"{name} '{ident}' not found", details={"id": ident})
        return obj

    def get_for_update(self, model: type[M], *criteria: Any) -> M | None:
        """Load a single row with a row-level lock (``FOR UPDATE``).

        The row is re-read even if the session already holds it, so callers
        see the state committed by whoever held the lock before them.
        """
        if self.dialect_name == "sqlite":
            # SQLite ignores FOR UPDATE; a no-op write takes its database write lock until commit.
            # Columns with an onupdate default are assigned to themselves so the write changes nothing.
            unchanged = {c: c for c in sa_inspect(model).columns if c.primary_key or c.onupdate is not None}
            touch = self.update(model, *criteria).values(unchanged).execution_options(synchronize_session=False)
            self.session.execute(touch)
        stmt = self.select(model, *criteria).with_for_update().execution_options(populate_existing=True)
        return self.session.scalars(stmt).first()

    def add(self, obj: Any) -> Any:
        """Add ``obj`` to the session, stamping or checking its tenant."""
        current = getattr(obj, "tenant_id", None)
        if current is None:
            obj.tenant_id = self.tenant_id
        elif current != self.tenant_id:
            raise ForbiddenError(
                f"Refusing to write {type(obj).__name__} for tenant '{current}' through context of '{self.tenant_id}'"
            )
        self.session.add(obj)
        return obj

    def delete(self, obj: Any) -> None:
        if obj.tenant_id != self.tenant_id:
            raise ForbiddenError(f"Refusing to delete {type(obj).__name__} of another tenant")
        self.session.delete(obj)

    def flush(self) -> None:
        self.session.flush()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def __repr__(self) -> str:
        return f"TenantContext(tenant_id={self.tenant_id!r}, principal={self.principal.principal_id!r})"


class TenantContextResolver:
    """Resolves the tenant a principal may act on."""

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self.audit = AuditLogger("tenant_context")

    def resolve(
        self,
        session: Session,
        principal: Principal,
        target_tenant_id: str | None = None,
        operation: str = "access",
    ) -> TenantContext:
        """Return a handle for the principal's tenant, or for ``target_tenant_id``.

        Raises:
            TenantNotFound: The principal has no active tenant, or the target does not exist
            ForbiddenError: A non-master principal asked for another tenant
        """
        if not principal.is_active:
            raise ForbiddenError(f"Principal '{principal.principal_id}' is inactive")

        home_tenant_id = principal.tenant_id
        wants_other = target_tenant_id is not None and target_tenant_id != home_tenant_id

        if not wants_other:
            if home_tenant_id is None:
                raise TenantNotFound(f"Principal '{principal.principal_id}' is not bound to a tenant")
            tenant = self._load_active_tenant(session, home_tenant_id)
            return TenantContext(session, tenant, principal, self.clock)

        if not principal.is_master:
            self.audit.log_security_violation(
                session,
                operation=operation,
                principal_id=principal.principal_id,
                resource_id=f"tenant:{target_tenant_id}",
                reason="cross-tenant access requires the master role",
                tenant_id=target_tenant_id,
                actor_tenant_id=home_tenant_id,
            )
            raise ForbiddenError(
                "Cross-tenant access is restricted to master users",
                details={"target_tenant_id": target_tenant_id},
            )

        tenant = self._load_active_tenant(session, target_tenant_id)
        # The audit row is durable before the caller can touch the tenant's data
        self.audit.log_operation(
            session,
            operation=f"cross_tenant_access:{operation}",
            principal_id=principal.principal_id,
            principal_name=principal.name,
            tenant_id=tenant.tenant_id,
            actor_tenant_id=home_tenant_id,
            timestamp=self.clock.now(),
            details={"operation": operation},
            commit=True,
        )
        logger.warning(
            f"Master principal {principal.principal_id} accessing tenant {tenant.tenant_id} for {operation}"
        )
        return TenantContext(session, tenant, principal, self.clock, override=True)

    def for_job(self, session: Session, tenant_id: str, job_name: str) -> TenantContext:
        """Build a system handle for a periodic job running against one tenant."""
        tenant = self._load_active_tenant(session, tenant_id)
        return TenantContext(session, tenant, Principal.system(job_name, tenant_id), self.clock)

    def _load_active_tenant(self, session: Session, tenant_id: str) -> Tenant:
        tenant = session.scalars(select(Tenant).filter_by(tenant_id=tenant_id)).first()
        if tenant is None or not tenant.is_active:
            raise TenantNotFound(f"Tenant '{tenant_id}' not found or inactive", details={"tenant_id": tenant_id})
        return tenant


@contextmanager
def open_tenant_context(
    principal: Principal,
    target_tenant_id: str | None = None,
    operation: str = "access",
    clock: Clock | None = None,
) -> Generator[TenantContext, None, None]:
    """Open a database session and resolve a tenant handle on it.

    Usage:
        with open_tenant_context(principal) as ctx:
            service = ReservationService(ctx)
            service.hold(...)
    """
    with get_db_session() as session:
        yield TenantContextResolver(clock).resolve(session, principal, target_tenant_id, operation)


@contextmanager
def open_job_context(tenant_id: str, job_name: str, clock: Clock | None = None) -> Generator[TenantContext, None, None]:
    """Open a database session bound to one tenant for a background job."""
    with get_db_session() as session:
        yield TenantContextResolver(clock).for_job(session, tenant_id, job_name)
