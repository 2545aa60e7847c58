"""Inventory alert lifecycle, deduplication and fan-out."""

from unittest.mock import Mock, patch

import pytest
import requests
from sqlalchemy import update

from src.core.database.models import Tenant
from src.core.exceptions import InvalidTransition, NotFoundError, ValidationError
from src.services.inventory_alert_service import InventoryAlertService
from tests.fixtures import OrderFactory
from tests.utils.database_helpers import alerts_for, notifications_for


@pytest.fixture
def alerts(admin_ctx):
    return InventoryAlertService(admin_ctx)


class TestLifecycle:
    def test_acknowledge_then_resolve(self, alerts, db_session, clock, admin_user, tenant):
        alert = alerts.create("drift", "high", details={"message": "counter off by one"})

        alerts.acknowledge(alert.alert_id)
        clock.advance(minutes=5)
        alerts.resolve(alert.alert_id, resolution="Repaired")

        [stored] = alerts_for(db_session, tenant.tenant_id)
        assert stored.status == "resolved"
        assert stored.acknowledged_by == admin_user.user_id
        assert stored.resolved_by == admin_user.user_id
        assert stored.resolution == "Repaired"

    def test_active_alert_can_be_resolved_directly(self, alerts):
        alert = alerts.create("overbooking", "critical")

        assert alerts.resolve(alert.alert_id).status == "resolved"

    def test_invalid_transitions(self, alerts):
        alert = alerts.create("drift", "low")
        alerts.acknowledge(alert.alert_id)

        with pytest.raises(InvalidTransition):
            alerts.acknowledge(alert.alert_id)

        alerts.resolve(alert.alert_id)
        with pytest.raises(InvalidTransition):
            alerts.resolve(alert.alert_id)
        with pytest.raises(InvalidTransition):
            alerts.acknowledge(alert.alert_id)

    def test_unknown_alert(self, alerts):
        with pytest.raises(NotFoundError):
            alerts.acknowledge("alert_missing")

    @pytest.mark.parametrize(
        "alert_type,severity",
        [("flood", "high"), ("drift", "urgent")],
    )
    def test_rejects_unknown_type_or_severity(self, alerts, alert_type, severity):
        with pytest.raises(ValidationError):
            alerts.create(alert_type, severity)


class TestDeduplication:
    def test_same_fingerprint_refreshes_and_escalates(self, alerts, db_session, clock, tenant):
        first = alerts.create("drift", "medium", details={"gap": 1}, fingerprint="drift:ep_1:mid_roll")
        clock.advance(hours=1)
        second = alerts.create("drift", "high", details={"gap": 2}, fingerprint="drift:ep_1:mid_roll")
        third = alerts.create("drift", "low", details={"gap": 3}, fingerprint="drift:ep_1:mid_roll")

        assert first.alert_id == second.alert_id == third.alert_id
        [stored] = alerts_for(db_session, tenant.tenant_id)
        assert stored.severity == "high"
        assert stored.details == {"gap": 3}

    def test_resolved_alert_is_not_reused(self, alerts, db_session, tenant):
        first = alerts.create("drift", "high", fingerprint="drift:ep_1:mid_roll")
        alerts.resolve(first.alert_id)

        second = alerts.create("drift", "high", fingerprint="drift:ep_1:mid_roll")

        assert second.alert_id != first.alert_id
        assert len(alerts_for(db_session, tenant.tenant_id)) == 2


class TestListing:
    def test_list_orders_by_severity_then_age(self, alerts, clock):
        low = alerts.create("drift", "low")
        clock.advance(minutes=1)
        critical = alerts.create("overbooking", "critical")
        clock.advance(minutes=1)
        newer_low = alerts.create("status_inconsistency", "low")

        assert [a.alert_id for a in alerts.list_alerts()] == [critical.alert_id, newer_low.alert_id, low.alert_id]

    def test_list_filters(self, alerts):
        drift = alerts.create("drift", "high")
        alerts.create("overbooking", "critical")
        alerts.resolve(drift.alert_id)

        assert [a.alert_type for a in alerts.list_alerts()] == ["overbooking"]
        assert [a.alert_id for a in alerts.list_alerts(status="resolved")] == [drift.alert_id]
        assert len(alerts.list_alerts(status="all")) == 2
        assert alerts.list_alerts(status="all", severity="high")[0].alert_id == drift.alert_id
        assert len(alerts.list_alerts(status="all", limit=1)) == 1
        with pytest.raises(ValidationError):
            alerts.list_alerts(status="snoozed")

    def test_summary(self, alerts):
        alerts.create("drift", "high")
        alerts.create("drift", "low")
        alerts.create("overbooking", "critical")

        summary = alerts.summary()

        assert summary["total"] == 3
        assert summary["by_severity"] == {"critical": 1, "high": 1, "medium": 0, "low": 1}
        assert summary["by_type"]["drift"] == 2
        assert summary["by_type"]["deletion_impact"] == 0


class TestFanOut:
    def test_new_alert_notifies_admins_only(self, alerts, db_session, admin_user, sales_user, master_user):
        alerts.create("overbooking", "critical", details={"message": "Morning Brew is overbooked"})

        [note] = notifications_for(db_session, admin_user.user_id, "inventory_alert")
        assert note.message == "Morning Brew is overbooked"
        assert note.title == "Inventory alert: overbooking"
        assert notifications_for(db_session, master_user.user_id, "inventory_alert")
        assert notifications_for(db_session, sales_user.user_id) == []

    def test_submitters_of_affected_orders_are_notified(self, alerts, db_session, tenant, sales_user, campaign):
        order = OrderFactory.create(db_session, tenant.tenant_id, campaign.campaign_id, submitted_by=sales_user.user_id)

        alerts.create("overbooking", "critical", affected_orders=[order.order_id])

        [note] = notifications_for(db_session, sales_user.user_id, "inventory_alert")
        assert note.data["severity"] == "critical"

    def test_refresh_does_not_notify_again(self, alerts, db_session, admin_user):
        alerts.create("drift", "high", fingerprint="drift:ep_1:mid_roll")
        alerts.create("drift", "high", fingerprint="drift:ep_1:mid_roll")

        assert len(notifications_for(db_session, admin_user.user_id, "inventory_alert")) == 1

    def test_deferred_alerts_wait_for_dispatch(self, alerts, admin_ctx, db_session, admin_user):
        alerts.create("drift", "high", commit=False)
        admin_ctx.commit()
        assert notifications_for(db_session, admin_user.user_id) == []

        alerts.dispatch_pending()

        assert len(notifications_for(db_session, admin_user.user_id, "inventory_alert")) == 1

    def test_discarded_alerts_are_not_sent(self, alerts, admin_ctx, db_session, admin_user):
        alerts.create("drift", "high", commit=False)
        admin_ctx.rollback()
        alerts.discard_pending()

        alerts.dispatch_pending()

        assert notifications_for(db_session, admin_user.user_id) == []

    def test_slack_delivery_and_failures(self, make_ctx, db_session, admin_user, tenant):
        db_session.execute(
            update(Tenant)
            .where(Tenant.tenant_id == tenant.tenant_id)
            .values(slack_webhook_url="https://hooks.slack.com/services/T000/B000/XXXX")
        )
        db_session.commit()

        with patch("src.services.slack_notifier.requests.post") as mock_post:
            mock_post.return_value = Mock(status_code=200, raise_for_status=Mock(return_value=None))
            InventoryAlertService(make_ctx(admin_user)).create("overbooking", "critical")
            assert mock_post.call_count == 1
            assert "Overbooking" in mock_post.call_args.kwargs["json"]["text"]

            mock_post.reset_mock()
            mock_post.side_effect = requests.exceptions.ConnectionError("slack down")
            alert = InventoryAlertService(make_ctx(admin_user)).create("drift", "high")

        assert alert.status == "active"
        assert len(notifications_for(db_session, admin_user.user_id, "inventory_alert")) == 2
