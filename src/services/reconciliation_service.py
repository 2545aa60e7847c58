"""Reconciliation: the read-only inventory audit, the periodic sweep and the explicit repairs.

The audit reports six kinds of findings for one tenant:
- invisible campaigns (soft-deleted, missing advertiser, unknown status)
- orphaned orders (campaign missing or deleted, unknown status)
- dangling reservations (broken references, lapsed but still locked, closed campaign)
- inventory mismatches (cached counters vs reservation rows, overbooking)
- blocked show deletions (what still references a show marked for deletion)
- status inconsistencies (stage SLA breaches, approved campaigns without an order)

The sweep expires lapsed holds one transaction at a time, runs the audit and
files one alert per finding fingerprint. It never repairs counters; that is
``repair_counter``, an explicit and audit-logged admin action.
"""

import logging
import time
from collections import defaultdict
from datetime import datetime

from sqlalchemy import and_, func, or_

from src.core.audit_logger import AuditLogger
from src.core.clock import ensure_utc
from src.core.database.models import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    Campaign,
    CampaignStatus,
    Episode,
    EpisodeInventory,
    InventoryAlert,
    Order,
    Reservation,
    ReservationStatus,
    ScheduledSpot,
    Show,
)
from src.core.exceptions import ForbiddenError, InventoryError, LedgerCorruption
from src.core.logging_config import inventory_ops_logger
from src.core.retry_utils import retry_busy
from src.core.schemas import (
    AuditReport,
    BlockedDeletion,
    DanglingReservation,
    DeletionBlocker,
    InventoryMismatch,
    InvisibleCampaign,
    OrphanedOrder,
    ReleaseStaleResult,
    StatusInconsistency,
    SweepResult,
)
from src.core.tenant_context import TenantContext
from src.services.inventory_alert_service import InventoryAlertService
from src.services.inventory_ledger import CounterSnapshot
from src.services.reservation_service import CLOSED_CAMPAIGN_STATUSES, ReservationService
from src.services.workflow_settings_service import WorkflowSettingsService

logger = logging.getLogger(__name__)

VALID_CAMPAIGN_STATUSES = frozenset(s.value for s in CampaignStatus)
VALID_ORDER_STATUSES = frozenset({"pending", "confirmed", "approved", "completed", "cancelled"})
ACTIVE_STATUSES = (ReservationStatus.RESERVED.value, ReservationStatus.CONFIRMED.value)

# Reasons meaning a reservation points at something that no longer exists
MISSING_REFERENCE_REASONS = frozenset(
    {"null_show", "show_not_found", "episode_not_found", "campaign_not_found", "schedule_not_found"}
)

SLA_ACTIONS = {90: "approve_or_reject", 65: "advance_or_revise", 35: "follow_up_or_close"}


def _days_between(start: datetime | None, end: datetime) -> float | None:
    if start is None:
        return None
    return round((end - ensure_utc(start)).total_seconds() / 86400, 2)


class ReconciliationService:
    """Audit, sweep and repairs for one tenant."""

    def __init__(
        self,
        ctx: TenantContext,
        reservations: ReservationService | None = None,
        alerts: InventoryAlertService | None = None,
    ):
        self.ctx = ctx
        self.alerts = alerts or InventoryAlertService(ctx)
        self.reservations = reservations or ReservationService(ctx, alerts=self.alerts)
        self.ledger = self.reservations.ledger
        self.audit = AuditLogger("reconciliation", ctx.tenant_id)

    # -- audit ---------------------------------------------------------------

    def run_audit(self) -> AuditReport:
        """Collect every finding for the tenant. Writes nothing."""
        started = time.monotonic()
        now = self.ctx.now()

        campaigns = {c.campaign_id: c for c in self.ctx.all(Campaign, order_by=Campaign.created_at.desc())}
        shows = {s.show_id: s for s in self.ctx.all(Show)}
        episodes = {e.episode_id: e for e in self.ctx.all(Episode)}
        spots = self.ctx.all(ScheduledSpot, order_by=ScheduledSpot.spot_id)
        orders = self.ctx.all(Order, order_by=Order.created_at.desc())
        active = self.ctx.all(
            Reservation, Reservation.status.in_(ACTIVE_STATUSES), order_by=Reservation.created_at.desc()
        )

        report = AuditReport(
            tenant_id=self.ctx.tenant_id,
            timestamp=now,
            invisible_campaigns=self._invisible_campaigns(campaigns, spots, orders),
            orphaned_orders=self._orphaned_orders(campaigns, orders),
            dangling_reservations=self._dangling_reservations(active, campaigns, shows, episodes, spots, now),
            inventory_mismatches=self._inventory_mismatches(active, episodes, orders),
            blocked_deletions=self._blocked_deletions(active, campaigns, shows, episodes, spots, now),
            status_inconsistencies=self._status_inconsistencies(campaigns, orders, now),
        )
        report.execution_time_ms = round((time.monotonic() - started) * 1000, 2)
        logger.info(f"Audit for tenant {self.ctx.tenant_id}: {report.summary()} in {report.execution_time_ms}ms")
        return report

    def _invisible_campaigns(self, campaigns, spots, orders) -> list[InvisibleCampaign]:
        scheduled = {s.campaign_id for s in spots}
        ordered = {o.campaign_id for o in orders}
        reserved = set(
            self.ctx.session.scalars(
                self.ctx.select(Reservation).with_only_columns(Reservation.campaign_id).distinct()
            ).all()
        )

        findings = []
        for campaign in campaigns.values():
            reasons = []
            if campaign.deleted_at is not None:
                reasons.append("soft_deleted")
            if not campaign.advertiser_id:
                reasons.append("missing_advertiser")
            if campaign.status not in VALID_CAMPAIGN_STATUSES:
                reasons.append("invalid_status")
            if not reasons:
                continue
            findings.append(
                InvisibleCampaign(
                    campaign_id=campaign.campaign_id,
                    name=campaign.name,
                    status=campaign.status,
                    stage=campaign.stage,
                    reasons=reasons,
                    has_schedule=campaign.campaign_id in scheduled,
                    has_order=campaign.campaign_id in ordered,
                    has_reservation=campaign.campaign_id in reserved,
                )
            )
        return findings

    def _orphaned_orders(self, campaigns, orders) -> list[OrphanedOrder]:
        findings = []
        for order in orders:
            campaign = campaigns.get(order.campaign_id)
            if campaign is None:
                reason = "campaign_not_found"
            elif campaign.deleted_at is not None:
                reason = "campaign_deleted"
            elif order.status not in VALID_ORDER_STATUSES:
                reason = "invalid_status"
            else:
                continue
            findings.append(
                OrphanedOrder(
                    order_id=order.order_id, campaign_id=order.campaign_id, status=order.status, reason=reason
                )
            )
        return findings

    def _dangling_reservations(self, active, campaigns, shows, episodes, spots, now) -> list[DanglingReservation]:
        spot_ids = {s.spot_id for s in spots}
        findings = []
        for reservation in active:
            reasons = self._reservation_problems(reservation, campaigns, shows, episodes, spot_ids, now)
            if not reasons:
                continue
            findings.append(
                DanglingReservation(
                    reservation_id=reservation.reservation_id,
                    campaign_id=reservation.campaign_id,
                    show_id=reservation.show_id,
                    episode_id=reservation.episode_id,
                    placement_type=reservation.placement_type,
                    status=reservation.status,
                    quantity=reservation.quantity,
                    reasons=reasons,
                    expires_at=ensure_utc(reservation.expires_at),
                )
            )
        return findings

    @staticmethod
    def _reservation_problems(reservation, campaigns, shows, episodes, spot_ids, now) -> list[str]:
        reasons = []
        show = shows.get(reservation.show_id) if reservation.show_id else None
        if reservation.show_id is None:
            reasons.append("null_show")
        elif show is None or show.deleted_at is not None:
            reasons.append("show_not_found")

        episode = episodes.get(reservation.episode_id)
        if episode is None or episode.deleted_at is not None:
            reasons.append("episode_not_found")

        campaign = campaigns.get(reservation.campaign_id)
        if campaign is None:
            reasons.append("campaign_not_found")
        if reservation.schedule_id and reservation.schedule_id not in spot_ids:
            reasons.append("schedule_not_found")

        if (
            reservation.status == ReservationStatus.RESERVED.value
            and reservation.locked
            and reservation.expires_at is not None
            and ensure_utc(reservation.expires_at) <= now
        ):
            reasons.append("expired_but_locked")

        if campaign is not None:
            if campaign.status == CampaignStatus.CANCELLED.value:
                reasons.append("campaign_cancelled")
            elif campaign.status == CampaignStatus.REJECTED.value:
                reasons.append("campaign_rejected")
            if campaign.deleted_at is not None:
                reasons.append("campaign_deleted")
        return reasons

    def _inventory_mismatches(self, active, episodes, orders) -> list[InventoryMismatch]:
        actual: dict[tuple[str, str, str], int] = defaultdict(int)
        stmt = (
            self.ctx.select(Reservation)
            .with_only_columns(
                Reservation.episode_id,
                Reservation.placement_type,
                Reservation.status,
                func.coalesce(func.sum(Reservation.quantity), 0),
            )
            .where(
                or_(
                    and_(
                        Reservation.status == ReservationStatus.RESERVED.value,
                        Reservation.locked.is_(True),
                    ),
                    Reservation.status == ReservationStatus.CONFIRMED.value,
                )
            )
            .group_by(Reservation.episode_id, Reservation.placement_type, Reservation.status)
        )
        for episode_id, placement_type, status, quantity in self.ctx.session.execute(stmt):
            actual[(episode_id, placement_type, status)] = int(quantity)

        orders_by_campaign = defaultdict(list)
        for order in orders:
            orders_by_campaign[order.campaign_id].append(order.order_id)
        by_slot = defaultdict(list)
        for reservation in active:
            by_slot[(reservation.episode_id, reservation.placement_type)].append(reservation)

        findings = []
        for row in self.ctx.all(EpisodeInventory, order_by=EpisodeInventory.inventory_id):
            snapshot = CounterSnapshot(
                episode_id=row.episode_id,
                placement_type=row.placement_type,
                total_slots=row.total_slots,
                cached_reserved=row.reserved_slots,
                cached_booked=row.booked_slots,
                actual_reserved=actual[(row.episode_id, row.placement_type, ReservationStatus.RESERVED.value)],
                actual_booked=actual[(row.episode_id, row.placement_type, ReservationStatus.CONFIRMED.value)],
            )
            if not snapshot.drifted and not snapshot.overbooked:
                continue

            holders = by_slot[(row.episode_id, row.placement_type)]
            episode = episodes.get(row.episode_id)
            findings.append(
                InventoryMismatch(
                    episode_id=row.episode_id,
                    show_id=episode.show_id if episode else None,
                    placement_type=row.placement_type,
                    total_slots=snapshot.total_slots,
                    cached_reserved=snapshot.cached_reserved,
                    cached_booked=snapshot.cached_booked,
                    actual_reserved=snapshot.actual_reserved,
                    actual_booked=snapshot.actual_booked,
                    drifted=snapshot.drifted,
                    overbooked=snapshot.overbooked,
                    affected_orders=sorted({o for r in holders for o in orders_by_campaign[r.campaign_id]}),
                    affected_schedules=sorted({r.schedule_id for r in holders if r.schedule_id}),
                )
            )
        return findings

    def _blocked_deletions(self, active, campaigns, shows, episodes, spots, now) -> list[BlockedDeletion]:
        findings = []
        for show in shows.values():
            if show.deletion_requested_at is None or show.deleted_at is not None:
                continue

            blockers = []
            for reservation in active:
                if reservation.show_id != show.show_id:
                    continue
                campaign = campaigns.get(reservation.campaign_id)
                lapsed = (
                    reservation.status == ReservationStatus.RESERVED.value
                    and reservation.expires_at is not None
                    and ensure_utc(reservation.expires_at) <= now
                )
                orphaned = (
                    campaign is None
                    or campaign.deleted_at is not None
                    or campaign.status in CLOSED_CAMPAIGN_STATUSES
                )
                if lapsed:
                    action = "release_expired"
                elif orphaned:
                    action = "release_orphaned"
                else:
                    action = "valid_dependency"
                blockers.append(
                    DeletionBlocker(
                        kind="reservation",
                        id=reservation.reservation_id,
                        stale=lapsed or orphaned,
                        recommended_action=action,
                        details={"campaign_id": reservation.campaign_id, "status": reservation.status},
                    )
                )

            show_episodes = [
                e for e in episodes.values() if e.show_id == show.show_id and e.deleted_at is None
            ]
            episode_ids = {e.episode_id for e in show_episodes}
            for episode in sorted(show_episodes, key=lambda e: e.episode_id):
                blockers.append(
                    DeletionBlocker(
                        kind="episode",
                        id=episode.episode_id,
                        stale=False,
                        recommended_action="migrate_or_delete_episodes",
                        details={"title": episode.title},
                    )
                )
            for spot in spots:
                if spot.episode_id not in episode_ids:
                    continue
                past = spot.air_date is not None and ensure_utc(spot.air_date) < now
                blockers.append(
                    DeletionBlocker(
                        kind="scheduled_spot",
                        id=spot.spot_id,
                        stale=past,
                        recommended_action="archive_past_spots" if past else "cancel_future_spots",
                        details={"campaign_id": spot.campaign_id, "episode_id": spot.episode_id},
                    )
                )

            if blockers:
                findings.append(
                    BlockedDeletion(
                        show_id=show.show_id,
                        show_name=show.name,
                        deletion_requested_at=ensure_utc(show.deletion_requested_at),
                        blockers=blockers,
                    )
                )
        return findings

    def _status_inconsistencies(self, campaigns, orders, now) -> list[StatusInconsistency]:
        sla_days = WorkflowSettingsService(self.ctx).get().status_sla_days
        ordered = {o.campaign_id for o in orders if o.status != "cancelled"}

        findings = []
        for campaign in campaigns.values():
            if campaign.deleted_at is not None or campaign.status in CLOSED_CAMPAIGN_STATUSES:
                continue
            days = _days_between(campaign.stage_changed_at or campaign.updated_at or campaign.created_at, now)

            def finding(issue: str, action: str) -> StatusInconsistency:
                return StatusInconsistency(
                    campaign_id=campaign.campaign_id,
                    name=campaign.name,
                    stage=campaign.stage,
                    status=campaign.status,
                    issue=issue,
                    recommended_action=action,
                    days_in_stage=days,
                )

            limit = sla_days.get(campaign.stage)
            if limit is not None and days is not None and days > limit:
                findings.append(finding("stage_sla_exceeded", SLA_ACTIONS.get(campaign.stage, "review_manually")))
            if campaign.status == CampaignStatus.APPROVED.value and campaign.campaign_id not in ordered:
                findings.append(finding("approved_without_order", "create_order"))
            if campaign.status == CampaignStatus.IN_RESERVATIONS.value and campaign.stage < 90:
                findings.append(finding("status_stage_mismatch", "update_stage"))
        return findings

    # -- sweep ---------------------------------------------------------------

    def lapsed_holds(self) -> list[str]:
        """Ids of holds whose TTL has passed and that still hold capacity."""
        stmt = (
            self.ctx.select(
                Reservation,
                Reservation.status == ReservationStatus.RESERVED.value,
                Reservation.locked.is_(True),
                Reservation.expires_at <= self.ctx.now(),
            )
            .with_only_columns(Reservation.reservation_id)
            .order_by(Reservation.expires_at, Reservation.reservation_id)
        )
        return list(self.ctx.session.scalars(stmt).all())

    def sweep(self) -> SweepResult:
        """Expire lapsed holds, audit, and file alerts for the findings."""
        started = time.monotonic()
        expired, failures = [], []
        for reservation_id in self.lapsed_holds():
            try:
                if self.reservations.expire(reservation_id):
                    expired.append(reservation_id)
            except InventoryError as e:
                logger.warning(f"Could not expire {reservation_id}: {e.message}")
                failures.append({"reservation_id": reservation_id, "error": e.message})

        report = self.run_audit()
        created, refreshed = [], []
        for finding in self._alert_findings(report):
            existing = self.ctx.first(
                InventoryAlert,
                InventoryAlert.fingerprint == finding["fingerprint"],
                InventoryAlert.status != AlertStatus.RESOLVED.value,
            )
            alert = self.alerts.create(**finding)
            (refreshed if existing is not None else created).append(alert.alert_id)

        result = SweepResult(
            tenant_id=self.ctx.tenant_id,
            expired=expired,
            expire_failures=failures,
            alerts_created=created,
            alerts_refreshed=refreshed,
            report=report,
        )
        inventory_ops_logger.log_inventory_operation(
            operation="reconciliation.sweep",
            success=not failures,
            tenant_id=self.ctx.tenant_id,
            details={
                "expired": len(expired),
                "alerts_created": len(created),
                "alerts_refreshed": len(refreshed),
                **report.summary(),
            },
            error=f"{len(failures)} hold(s) could not be expired" if failures else None,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return result

    def _alert_findings(self, report: AuditReport) -> list[dict]:
        findings = []
        for m in report.inventory_mismatches:
            common = {
                "episode_id": m.episode_id,
                "show_id": m.show_id,
                "affected_orders": m.affected_orders,
                "affected_schedules": m.affected_schedules,
            }
            if m.overbooked:
                findings.append(
                    {
                        "alert_type": AlertType.OVERBOOKING.value,
                        "severity": AlertSeverity.CRITICAL.value,
                        "details": {
                            "message": f"{m.episode_id}/{m.placement_type} holds "
                            f"{m.actual_reserved + m.actual_booked} of {m.total_slots} slots",
                            **m.model_dump(mode="json"),
                        },
                        "fingerprint": f"overbooking:{m.episode_id}:{m.placement_type}",
                        **common,
                    }
                )
            if m.drifted:
                findings.append(
                    {
                        "alert_type": AlertType.DRIFT.value,
                        "severity": AlertSeverity.HIGH.value,
                        "details": {
                            "message": f"Counters for {m.episode_id}/{m.placement_type} do not match reservations",
                            **m.model_dump(mode="json"),
                        },
                        "fingerprint": f"drift:{m.episode_id}:{m.placement_type}",
                        **common,
                    }
                )

        for r in report.dangling_reservations:
            missing = MISSING_REFERENCE_REASONS.intersection(r.reasons)
            findings.append(
                {
                    "alert_type": (AlertType.DELETION_IMPACT if missing else AlertType.STATUS_INCONSISTENCY).value,
                    "severity": (
                        AlertSeverity.HIGH if r.status == ReservationStatus.CONFIRMED.value else AlertSeverity.MEDIUM
                    ).value,
                    "details": {
                        "message": f"Reservation {r.reservation_id} is dangling: {', '.join(r.reasons)}",
                        **r.model_dump(mode="json"),
                    },
                    "episode_id": r.episode_id,
                    "show_id": r.show_id,
                    "affected_schedules": [],
                    "fingerprint": f"dangling:{r.reservation_id}",
                }
            )

        for d in report.blocked_deletions:
            valid = [b for b in d.blockers if b.kind == "reservation" and not b.stale]
            findings.append(
                {
                    "alert_type": AlertType.DELETION_IMPACT.value,
                    "severity": (AlertSeverity.HIGH if valid else AlertSeverity.MEDIUM).value,
                    "details": {
                        "message": f"Deletion of show {d.show_name} is blocked by {len(d.blockers)} item(s)",
                        "stale_blockers": d.stale_count,
                        **d.model_dump(mode="json"),
                    },
                    "show_id": d.show_id,
                    "affected_schedules": sorted(b.id for b in d.blockers if b.kind == "scheduled_spot"),
                    "fingerprint": f"deletion:{d.show_id}",
                }
            )

        for s in report.status_inconsistencies:
            findings.append(
                {
                    "alert_type": AlertType.STATUS_INCONSISTENCY.value,
                    "severity": (
                        AlertSeverity.MEDIUM if s.issue == "approved_without_order" else AlertSeverity.LOW
                    ).value,
                    "details": {
                        "message": f"Campaign {s.name}: {s.issue.replace('_', ' ')}",
                        **s.model_dump(mode="json"),
                    },
                    "fingerprint": f"status:{s.campaign_id}:{s.issue}",
                }
            )
        return findings

    # -- repairs -------------------------------------------------------------

    def repair_counter(self, episode_id: str, placement_type: str) -> CounterSnapshot:
        """Overwrite one cached counter with the values recounted from reservations.

        Refuses (``LedgerCorruption``) when the reservations themselves exceed
        capacity. Both outcomes are written to the audit log.
        """
        self._require_admin("repair_counter")
        principal = self.ctx.principal

        def repair() -> CounterSnapshot:
            snapshot = self.ledger.recount(episode_id, placement_type, repair=True)
            self._audit("repair_counter", True, snapshot.to_dict())
            self.ctx.commit()
            return snapshot

        try:
            snapshot = retry_busy(repair, on_retry=lambda _e: self.ctx.rollback(), name="reconciliation.repair")
        except LedgerCorruption as e:
            self.ctx.rollback()
            self._audit("repair_counter", False, e.details, error=e.message)
            self.ctx.commit()
            raise
        except Exception:
            self.ctx.rollback()
            raise

        if snapshot.repaired:
            drift = self.ctx.first(
                InventoryAlert,
                InventoryAlert.fingerprint == f"drift:{snapshot.episode_id}:{snapshot.placement_type}",
                InventoryAlert.status != AlertStatus.RESOLVED.value,
            )
            if drift is not None:
                self.alerts.resolve(drift.alert_id, resolution=f"Counter repaired by {principal.name}")
        return snapshot

    def release_stale(
        self,
        reservation_ids: list[str] | None = None,
        release_all_orphaned: bool = False,
        dry_run: bool = True,
    ) -> ReleaseStaleResult:
        """Release the given reservations and/or every dangling one.

        With ``dry_run`` (the default) only the candidate list is returned.
        """
        self._require_admin("release_stale")

        candidates: list[str] = []
        skipped: list[dict] = []
        for reservation_id in reservation_ids or []:
            reservation = self.ctx.get(Reservation, reservation_id)
            if reservation is None:
                skipped.append({"reservation_id": reservation_id, "reason": "not_found"})
            elif reservation.status not in ACTIVE_STATUSES:
                skipped.append({"reservation_id": reservation_id, "reason": f"already_{reservation.status}"})
            elif reservation_id not in candidates:
                candidates.append(reservation_id)

        if release_all_orphaned:
            for dangling in self.run_audit().dangling_reservations:
                if dangling.reservation_id not in candidates:
                    candidates.append(dangling.reservation_id)

        if dry_run:
            return ReleaseStaleResult(dry_run=True, candidates=candidates, skipped=skipped)

        released = []
        for reservation_id in candidates:
            try:
                self.reservations.release(reservation_id, reason="stale_release")
                released.append(reservation_id)
            except InventoryError as e:
                skipped.append({"reservation_id": reservation_id, "reason": e.error_type.value, "error": e.message})

        self._audit(
            "release_stale",
            not any("error" in s for s in skipped),
            {"released": released, "skipped": skipped, "release_all_orphaned": release_all_orphaned},
        )
        self.ctx.commit()
        logger.info(f"Released {len(released)} stale reservation(s) for tenant {self.ctx.tenant_id}")
        return ReleaseStaleResult(dry_run=False, candidates=candidates, released=released, skipped=skipped)

    def _require_admin(self, operation: str) -> None:
        if not self.ctx.principal.is_admin:
            raise ForbiddenError(f"{operation} requires an admin", details={"role": self.ctx.principal.role})

    def _audit(self, operation: str, success: bool, details: dict, error: str | None = None) -> None:
        principal = self.ctx.principal
        self.audit.log_operation(
            self.ctx.session,
            operation=operation,
            principal_id=principal.principal_id,
            principal_name=principal.name,
            success=success,
            details=details,
            error=error,
            tenant_id=self.ctx.tenant_id,
            actor_tenant_id=principal.tenant_id,
            timestamp=self.ctx.now(),
        )
