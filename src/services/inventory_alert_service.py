"""Inventory alerts: creation, lifecycle and listing.

Lifecycle: active -> acknowledged -> resolved, or active -> resolved.
Alerts carrying a fingerprint are deduplicated: while an alert with the same
fingerprint is unresolved, a repeated finding refreshes it instead of
creating a new one.
"""

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import case, func

from src.core.database.models import AlertSeverity, AlertStatus, AlertType, InventoryAlert
from src.core.exceptions import InvalidTransition, ValidationError
from src.core.tenant_context import TenantContext
from src.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

SEVERITY_RANK = {
    AlertSeverity.CRITICAL.value: 0,
    AlertSeverity.HIGH.value: 1,
    AlertSeverity.MEDIUM.value: 2,
    AlertSeverity.LOW.value: 3,
}


def _check_choice(value: str, enum_cls, field_name: str) -> str:
    allowed = [e.value for e in enum_cls]
    if value not in allowed:
        raise ValidationError(
            f"Invalid {field_name} '{value}'. Must be one of: {', '.join(allowed)}", details={field_name: value}
        )
    return value


class InventoryAlertService:
    """Alerts of the context's tenant."""

    def __init__(self, ctx: TenantContext, notifications: NotificationService | None = None):
        self.ctx = ctx
        self._notifications = notifications
        self._pending: list[InventoryAlert] = []

    @property
    def notifications(self) -> NotificationService:
        if self._notifications is None:
            self._notifications = NotificationService(self.ctx)
        return self._notifications

    def create(
        self,
        alert_type: str,
        severity: str,
        details: dict[str, Any] | None = None,
        episode_id: str | None = None,
        show_id: str | None = None,
        affected_orders: Iterable[str] = (),
        affected_schedules: Iterable[str] = (),
        fingerprint: str | None = None,
        commit: bool = True,
    ) -> InventoryAlert:
        """Create an alert, or refresh the unresolved alert with the same fingerprint.

        With ``commit=False`` the alert joins the caller's transaction and its
        fan-out waits for ``dispatch_pending()`` after the caller commits.
        """
        _check_choice(alert_type, AlertType, "alert_type")
        _check_choice(severity, AlertSeverity, "severity")
        now = self.ctx.now()
        orders = sorted(set(affected_orders))
        schedules = sorted(set(affected_schedules))

        if fingerprint:
            existing = self.ctx.first(
                InventoryAlert,
                InventoryAlert.fingerprint == fingerprint,
                InventoryAlert.status != AlertStatus.RESOLVED.value,
            )
            if existing is not None:
                if SEVERITY_RANK[severity] < SEVERITY_RANK[existing.severity]:
                    existing.severity = severity
                existing.details = details or {}
                existing.affected_orders = orders
                existing.affected_schedules = schedules
                existing.last_seen_at = now
                if commit:
                    self.ctx.commit()
                logger.debug(f"Refreshed alert {existing.alert_id} ({fingerprint})")
                return existing

        alert = InventoryAlert(
            alert_type=alert_type,
            severity=severity,
            status=AlertStatus.ACTIVE.value,
            episode_id=episode_id,
            show_id=show_id,
            affected_orders=orders,
            affected_schedules=schedules,
            details=details or {},
            fingerprint=fingerprint,
            created_at=now,
            last_seen_at=now,
        )
        self.ctx.add(alert)
        self.ctx.flush()
        self._pending.append(alert)
        logger.info(f"Created {severity} {alert_type} alert {alert.alert_id} for tenant {self.ctx.tenant_id}")

        if commit:
            self.ctx.commit()
            self.dispatch_pending()
        return alert

    def dispatch_pending(self) -> None:
        """Fan out alerts created since the last dispatch. Call only after commit."""
        pending, self._pending = self._pending, []
        for alert in pending:
            self.notifications.dispatch_alert(alert)

    def discard_pending(self) -> None:
        """Forget queued fan-out, e.g. after the creating transaction rolled back."""
        self._pending = []

    def acknowledge(self, alert_id: str, actor: str | None = None) -> InventoryAlert:
        alert = self.ctx.get_or_404(InventoryAlert, alert_id, "Alert")
        if alert.status != AlertStatus.ACTIVE.value:
            raise InvalidTransition(
                f"Cannot acknowledge alert in status '{alert.status}'",
                details={"alert_id": alert_id, "status": alert.status},
            )
        alert.status = AlertStatus.ACKNOWLEDGED.value
        alert.acknowledged_by = actor or self.ctx.principal.principal_id
        alert.acknowledged_at = self.ctx.now()
        self.ctx.commit()
        logger.info(f"Alert {alert_id} acknowledged by {alert.acknowledged_by}")
        return alert

    def resolve(self, alert_id: str, actor: str | None = None, resolution: str | None = None) -> InventoryAlert:
        alert = self.ctx.get_or_404(InventoryAlert, alert_id, "Alert")
        if alert.status not in (AlertStatus.ACTIVE.value, AlertStatus.ACKNOWLEDGED.value):
            raise InvalidTransition(
                f"Cannot resolve alert in status '{alert.status}'",
                details={"alert_id": alert_id, "status": alert.status},
            )
        alert.status = AlertStatus.RESOLVED.value
        alert.resolved_by = actor or self.ctx.principal.principal_id
        alert.resolved_at = self.ctx.now()
        alert.resolution = resolution
        self.ctx.commit()
        logger.info(f"Alert {alert_id} resolved by {alert.resolved_by}")
        return alert

    def list_alerts(
        self,
        status: str = "active",
        severity: str | None = None,
        alert_type: str | None = None,
        limit: int | None = None,
    ) -> list[InventoryAlert]:
        """Alerts ordered by severity (critical first), then newest first."""
        criteria = []
        if status != "all":
            criteria.append(InventoryAlert.status == _check_choice(status, AlertStatus, "status"))
        if severity:
            criteria.append(InventoryAlert.severity == _check_choice(severity, AlertSeverity, "severity"))
        if alert_type:
            criteria.append(InventoryAlert.alert_type == _check_choice(alert_type, AlertType, "alert_type"))

        stmt = self.ctx.select(InventoryAlert, *criteria).order_by(
            case(SEVERITY_RANK, value=InventoryAlert.severity, else_=len(SEVERITY_RANK)),
            InventoryAlert.created_at.desc(),
            InventoryAlert.alert_id,
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(self.ctx.session.scalars(stmt).all())

    def summary(self, status: str = "active") -> dict[str, Any]:
        """Counts by severity and by type."""
        criteria = []
        if status != "all":
            criteria.append(InventoryAlert.status == _check_choice(status, AlertStatus, "status"))

        by_severity = {s.value: 0 for s in AlertSeverity}
        by_type = {t.value: 0 for t in AlertType}

        base = self.ctx.select(InventoryAlert, *criteria)
        for value, count in self.ctx.session.execute(
            base.with_only_columns(InventoryAlert.severity, func.count()).group_by(InventoryAlert.severity)
        ):
            by_severity[value] = count
        for value, count in self.ctx.session.execute(
            base.with_only_columns(InventoryAlert.alert_type, func.count()).group_by(InventoryAlert.alert_type)
        ):
            by_type[value] = count

        return {"total": sum(by_severity.values()), "by_severity": by_severity, "by_type": by_type}
