"""In-app and Slack notification fan-out.

Fan-out always runs after the triggering transaction has committed and is
best-effort: failures are logged and never undo or block the triggering
change.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from src.core.database.models import InventoryAlert, Notification, Order, User
from src.core.tenant_context import TenantContext
from src.services.slack_notifier import SlackNotifier, get_slack_notifier

logger = logging.getLogger(__name__)

ALERT_RECIPIENT_ROLES = ("admin", "master")


@dataclass
class PendingNotification:
    """A notification decided during a transaction, delivered after commit."""

    notification_type: str
    title: str
    message: str
    roles: tuple[str, ...] = ()
    user_ids: tuple[str, ...] = ()
    data: dict[str, Any] = field(default_factory=dict)
    slack: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "roles": list(self.roles),
            "user_ids": list(self.user_ids),
            "data": self.data,
        }


class NotificationService:
    """Delivers notifications to the users of the context's tenant."""

    def __init__(self, ctx: TenantContext, slack_notifier: SlackNotifier | None = None):
        self.ctx = ctx
        self.slack = slack_notifier or get_slack_notifier(ctx.tenant.slack_webhook_url)

    def users_with_roles(self, roles: tuple[str, ...] | list[str]) -> list[User]:
        if not roles:
            return []
        return self.ctx.all(User, User.role.in_(list(roles)), User.is_active.is_(True), order_by=User.user_id)

    def dispatch(self, pending: list[PendingNotification]) -> int:
        """Deliver notifications collected during a committed transaction. Returns rows written."""
        if not pending:
            return 0

        written = 0
        try:
            for item in pending:
                recipients = {u.user_id for u in self.users_with_roles(item.roles)}
                recipients.update(item.user_ids)
                for user_id in sorted(recipients):
                    self._add(user_id, item.notification_type, item.title, item.message, item.data)
                    written += 1
            self.ctx.commit()
        except Exception as e:
            logger.warning(f"Failed to write notifications for tenant {self.ctx.tenant_id}: {e}")
            self.ctx.rollback()
            written = 0

        for item in pending:
            if item.slack:
                self._send_slack(lambda item=item: self.slack.notify_workflow_event(item.title, item.message))
        return written

    def dispatch_alert(self, alert: InventoryAlert) -> int:
        """Notify tenant admins and the submitters of affected orders about a new alert."""
        payload = alert.to_dict()
        written = 0
        try:
            recipients = {u.user_id for u in self.users_with_roles(ALERT_RECIPIENT_ROLES)}
            recipients.update(self._order_submitters(payload["affected_orders"]))
            title = f"Inventory alert: {alert.alert_type.replace('_', ' ')}"
            message = payload["details"].get("message") or f"{alert.severity} {alert.alert_type} alert raised"
            for user_id in sorted(recipients):
                self._add(
                    user_id,
                    "inventory_alert",
                    title,
                    message,
                    {"alert_id": alert.alert_id, "severity": alert.severity, "episode_id": alert.episode_id},
                )
                written += 1
            self.ctx.commit()
        except Exception as e:
            logger.warning(f"Failed to fan out alert {alert.alert_id}: {e}")
            self.ctx.rollback()
            written = 0

        self._send_slack(lambda: self.slack.notify_inventory_alert(payload, tenant_name=self.ctx.tenant.name))
        return written

    def _order_submitters(self, order_ids: list[str]) -> set[str]:
        if not order_ids:
            return set()
        orders = self.ctx.all(Order, Order.order_id.in_(order_ids), Order.submitted_by.is_not(None))
        return {o.submitted_by for o in orders if o.submitted_by}

    def _add(self, user_id: str, notification_type: str, title: str, message: str, data: dict) -> None:
        self.ctx.add(
            Notification(
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                data=data,
                is_read=False,
                created_at=self.ctx.now(),
            )
        )

    def _send_slack(self, send) -> None:
        if not self.slack.enabled:
            return
        try:
            send()
        except Exception as e:
            # Don't let Slack failures affect core functionality
            logger.warning(f"Slack notification failed for tenant {self.ctx.tenant_id}: {e}")
