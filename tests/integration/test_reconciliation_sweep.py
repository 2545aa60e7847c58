"""Integration tests for the inventory audit, the sweep and the admin repairs.

Reconciliation always runs on a fresh tenant context so it reads the rows the
test changed behind the services' backs.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from src.core.database.models import Campaign, EpisodeInventory, Show
from src.core.exceptions import ForbiddenError, LedgerCorruption
from src.services.reconciliation_service import ReconciliationService
from src.services.reservation_service import ReservationService
from tests.fixtures import (
    CampaignFactory,
    EpisodeFactory,
    OrderFactory,
    ReservationFactory,
    ShowFactory,
    SpotFactory,
)
from tests.utils.database_helpers import (
    alerts_for,
    audit_rows,
    notifications_for,
    read_counter,
    read_reservation,
)


def _set_counter(db_session, episode_id, placement_type="mid_roll", **values):
    db_session.execute(
        update(EpisodeInventory)
        .where(EpisodeInventory.episode_id == episode_id, EpisodeInventory.placement_type == placement_type)
        .values(**values)
    )
    db_session.commit()


def _set_campaign(db_session, campaign_id, **values):
    db_session.execute(update(Campaign).where(Campaign.campaign_id == campaign_id).values(**values))
    db_session.commit()


@pytest.fixture
def reconcile(make_ctx, admin_user):
    """A reconciliation service on a fresh admin context."""
    return lambda user=admin_user: ReconciliationService(make_ctx(user))


@pytest.fixture
def sweep(make_ctx, tenant):
    return lambda: ReconciliationService(make_ctx(tenant_id=tenant.tenant_id)).sweep()


class TestAudit:
    def test_clean_tenant_has_no_findings(self, reconcile, admin_ctx, campaign, episode):
        ReservationService(admin_ctx).hold(campaign.campaign_id, episode.episode_id, "mid_roll")

        report = reconcile().run_audit()

        assert set(report.summary().values()) == {0}
        assert report.tenant_id == "acme"

    def test_reports_every_section(self, reconcile, db_session, clock, tenant, show, episode):
        no_advertiser = CampaignFactory.create(db_session, tenant.tenant_id, advertiser_id=None)
        bogus_status = CampaignFactory.create(db_session, tenant.tenant_id, status="zombie")
        OrderFactory.create(db_session, tenant.tenant_id, "camp_gone")
        OrderFactory.create(db_session, tenant.tenant_id, bogus_status.campaign_id, status="lost")
        ghost_hold = ReservationFactory.create(
            db_session, tenant.tenant_id, "camp_gone", episode.episode_id, show.show_id
        )
        stalled = CampaignFactory.create(
            db_session,
            tenant.tenant_id,
            stage=90,
            status="in_reservations",
            stage_changed_at=clock.now() - timedelta(days=5),
        )
        CampaignFactory.create(db_session, tenant.tenant_id, stage=100, status="approved", stage_changed_at=clock.now())
        doomed = ShowFactory.create(db_session, tenant.tenant_id, deletion_requested_at=clock.now())
        EpisodeFactory.create(db_session, tenant.tenant_id, doomed.show_id)

        report = reconcile().run_audit()

        invisible = {c.campaign_id: c.reasons for c in report.invisible_campaigns}
        assert invisible == {
            no_advertiser.campaign_id: ["missing_advertiser"],
            bogus_status.campaign_id: ["invalid_status"],
        }
        assert sorted(o.reason for o in report.orphaned_orders) == ["campaign_not_found", "invalid_status"]
        assert [(d.reservation_id, d.reasons) for d in report.dangling_reservations] == [
            (ghost_hold.reservation_id, ["campaign_not_found"])
        ]
        [mismatch] = report.inventory_mismatches
        assert (mismatch.cached_reserved, mismatch.actual_reserved, mismatch.overbooked) == (0, 1, False)
        [blocked] = report.blocked_deletions
        assert blocked.show_id == doomed.show_id
        assert [b.kind for b in blocked.blockers] == ["episode"]
        issues = {(s.campaign_id, s.issue) for s in report.status_inconsistencies}
        assert (stalled.campaign_id, "stage_sla_exceeded") in issues
        assert any(issue == "approved_without_order" for _, issue in issues)

    def test_lapsed_and_closed_holds_are_dangling(self, reconcile, admin_ctx, db_session, clock, campaign, episode):
        service = ReservationService(admin_ctx)
        lapsed = service.hold(campaign.campaign_id, episode.episode_id, "pre_roll", ttl=timedelta(hours=1))
        live = service.hold(campaign.campaign_id, episode.episode_id, "mid_roll")
        _set_campaign(db_session, campaign.campaign_id, status="cancelled")
        clock.advance(hours=2)

        reasons = {d.reservation_id: d.reasons for d in reconcile().run_audit().dangling_reservations}

        assert reasons[lapsed.reservation_id] == ["expired_but_locked", "campaign_cancelled"]
        assert reasons[live.reservation_id] == ["campaign_cancelled"]

    def test_deletion_blockers_are_classified(self, reconcile, admin_ctx, db_session, clock, tenant, show, episode):
        buyer = CampaignFactory.create(db_session, tenant.tenant_id)
        SpotFactory.create(db_session, buyer, episode)
        hold = ReservationService(admin_ctx).hold(buyer.campaign_id, episode.episode_id, "mid_roll")
        db_session.execute(update(Show).where(Show.show_id == show.show_id).values(deletion_requested_at=clock.now()))
        db_session.commit()

        [blocked] = reconcile().run_audit().blocked_deletions

        by_kind = {b.kind: b for b in blocked.blockers}
        assert by_kind["reservation"].id == hold.reservation_id
        assert by_kind["reservation"].recommended_action == "valid_dependency"
        assert by_kind["episode"].recommended_action == "migrate_or_delete_episodes"
        assert by_kind["scheduled_spot"].recommended_action == "cancel_future_spots"
        assert blocked.stale_count == 0


class TestSweep:
    def test_drift_alert_is_deduplicated_then_repaired(
        self, sweep, reconcile, admin_ctx, db_session, tenant, campaign, episode
    ):
        ReservationService(admin_ctx).hold(campaign.campaign_id, episode.episode_id, "mid_roll")
        _set_counter(db_session, episode.episode_id, reserved_slots=0)

        first = sweep()
        second = sweep()

        drift = alerts_for(db_session, tenant.tenant_id, alert_type="drift")
        assert len(drift) == 1
        assert drift[0].fingerprint == f"drift:{episode.episode_id}:mid_roll"
        assert drift[0].severity == "high"
        assert first.alerts_created == [drift[0].alert_id]
        assert second.alerts_created == []
        assert second.alerts_refreshed == [drift[0].alert_id]
        # The sweep reports drift but never rewrites counters
        assert read_counter(db_session, episode.episode_id).reserved_slots == 0

        snapshot = reconcile().repair_counter(episode.episode_id, "mid_roll")

        assert snapshot.repaired is True
        assert read_counter(db_session, episode.episode_id).reserved_slots == 1
        assert alerts_for(db_session, tenant.tenant_id, alert_type="drift")[0].status == "resolved"
        [row] = audit_rows(db_session, "reconciliation.repair_counter")
        assert row.success is True

    def test_overbooking_is_critical_and_blocks_repair(self, sweep, reconcile, db_session, tenant, episode):
        for _ in range(2):
            buyer = CampaignFactory.create(db_session, tenant.tenant_id)
            ReservationFactory.create(
                db_session, tenant.tenant_id, buyer.campaign_id, episode.episode_id, episode.show_id, "pre_roll"
            )

        sweep()

        [overbooking] = alerts_for(db_session, tenant.tenant_id, alert_type="overbooking")
        assert overbooking.severity == "critical"
        assert overbooking.fingerprint == f"overbooking:{episode.episode_id}:pre_roll"

        with pytest.raises(LedgerCorruption):
            reconcile().repair_counter(episode.episode_id, "pre_roll")
        [row] = audit_rows(db_session, "reconciliation.repair_counter")
        assert row.success is False
        assert read_counter(db_session, episode.episode_id, "pre_roll").reserved_slots == 0

    def test_resolved_alert_is_raised_again(self, sweep, reconcile, db_session, tenant, episode):
        ghost = ReservationFactory.create(
            db_session, tenant.tenant_id, "camp_gone", episode.episode_id, episode.show_id
        )
        sweep()
        [first] = alerts_for(db_session, tenant.tenant_id, fingerprint=f"dangling:{ghost.reservation_id}")
        reconcile().alerts.resolve(first.alert_id, resolution="Investigating")

        result = sweep()

        alerts = alerts_for(db_session, tenant.tenant_id, fingerprint=f"dangling:{ghost.reservation_id}")
        assert [a.status for a in alerts] == ["resolved", "active"]
        assert alerts[1].alert_id in result.alerts_created
        assert first.alert_id not in result.alerts_refreshed

    def test_status_findings_become_alerts(self, sweep, db_session, clock, tenant):
        approved = CampaignFactory.create(db_session, tenant.tenant_id, stage=100, status="approved")

        result = sweep()

        [alert] = alerts_for(db_session, tenant.tenant_id, alert_type="status_inconsistency")
        assert alert.fingerprint == f"status:{approved.campaign_id}:approved_without_order"
        assert alert.severity == "medium"
        assert result.alerts_created == [alert.alert_id]

    def test_new_alerts_notify_admins(self, sweep, db_session, admin_user, sales_user, tenant, episode):
        ReservationFactory.create(db_session, tenant.tenant_id, "camp_gone", episode.episode_id, episode.show_id)

        sweep()

        assert notifications_for(db_session, admin_user.user_id, "inventory_alert")
        assert notifications_for(db_session, sales_user.user_id, "inventory_alert") == []


class TestReleaseStale:
    @pytest.fixture
    def orphaned(self, admin_ctx, db_session, campaign, episode):
        hold = ReservationService(admin_ctx).hold(campaign.campaign_id, episode.episode_id, "mid_roll", 2)
        _set_campaign(db_session, campaign.campaign_id, status="cancelled")
        return hold

    def test_dry_run_lists_candidates_only(self, reconcile, db_session, episode, orphaned):
        result = reconcile().release_stale(release_all_orphaned=True)

        assert result.dry_run is True
        assert result.candidates == [orphaned.reservation_id]
        assert result.released == []
        assert read_reservation(db_session, orphaned.reservation_id).status == "reserved"
        assert read_counter(db_session, episode.episode_id).reserved_slots == 2

    def test_release_returns_capacity_and_is_audited(self, reconcile, db_session, episode, orphaned):
        result = reconcile().release_stale(
            reservation_ids=["res_missing"], release_all_orphaned=True, dry_run=False
        )

        assert result.released == [orphaned.reservation_id]
        assert result.skipped == [{"reservation_id": "res_missing", "reason": "not_found"}]
        stored = read_reservation(db_session, orphaned.reservation_id)
        assert (stored.status, stored.release_reason) == ("released", "stale_release")
        assert read_counter(db_session, episode.episode_id).reserved_slots == 0
        [row] = audit_rows(db_session, "reconciliation.release_stale")
        assert row.details["released"] == [orphaned.reservation_id]

    def test_already_released_ids_are_skipped(self, reconcile, admin_ctx, orphaned):
        ReservationService(admin_ctx).release(orphaned.reservation_id)

        result = reconcile().release_stale(reservation_ids=[orphaned.reservation_id], dry_run=False)

        assert result.released == []
        assert result.skipped == [{"reservation_id": orphaned.reservation_id, "reason": "already_released"}]

    def test_requires_admin(self, reconcile, sales_user):
        with pytest.raises(ForbiddenError):
            reconcile(sales_user).release_stale(release_all_orphaned=True)
        with pytest.raises(ForbiddenError):
            reconcile(sales_user).repair_counter("ep_any", "mid_roll")
