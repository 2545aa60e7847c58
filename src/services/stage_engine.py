"""Campaign stage engine.

A campaign's ``stage`` is its sales progress (0-100). Crossing a checkpoint
runs that checkpoint's named steps:

    10   enable_schedule_builder
    35   validate_schedule, track_rate_card_delta
    65   request_talent_approval, check_exclusivity
    90   reserve_inventory, request_admin_approval
    100  confirm_reservations, create_order, generate_ad_requests,
         generate_contract, create_billing_schedule

Each step commits together with a ``WorkflowEffect`` row keyed by
(campaign, stage, step). A step whose key exists is skipped, so re-running a
transition, or resuming one that failed halfway, never repeats an effect.
Moving a campaign backwards releases its holds and clears the keys of the
checkpoints above the new stage, except those of 100.
"""

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from src.core.clock import ensure_utc
from src.core.config import get_inventory_config
from src.core.database.models import (
    AdRequest,
    AlertSeverity,
    AlertType,
    Approval,
    BillingSchedule,
    Campaign,
    CampaignStatus,
    Contract,
    Episode,
    EpisodeInventory,
    Order,
    PlacementType,
    Reservation,
    ReservationStatus,
    ScheduledSpot,
    User,
    WorkflowEffect,
)
from src.core.exceptions import ConflictError, ForbiddenError, ValidationError
from src.core.logging_config import inventory_ops_logger
from src.core.retry_utils import retry_busy
from src.core.schemas import EffectRecord, TransitionResult
from src.core.tenant_context import TenantContext
from src.services.notification_service import NotificationService, PendingNotification
from src.services.reservation_service import CLOSED_CAMPAIGN_STATUSES, ReservationService
from src.services.workflow_settings_service import WorkflowSettings, WorkflowSettingsService

logger = logging.getLogger(__name__)

CHECKPOINTS = (10, 35, 65, 90, 100)

STAGE_STEPS: dict[int, tuple[str, ...]] = {
    10: ("enable_schedule_builder",),
    35: ("validate_schedule", "track_rate_card_delta"),
    65: ("request_talent_approval", "check_exclusivity"),
    90: ("reserve_inventory", "request_admin_approval"),
    100: (
        "confirm_reservations",
        "create_order",
        "generate_ad_requests",
        "generate_contract",
        "create_billing_schedule",
    ),
}

# Campaign status once a checkpoint is reached
STAGE_STATUS = {
    10: CampaignStatus.ACTIVE_PRESALE.value,
    90: CampaignStatus.IN_RESERVATIONS.value,
    100: CampaignStatus.APPROVED.value,
}

REJECTION_STAGE = 65
ADMIN_ROLES = ("admin", "master")


def _money(value: Decimal | None) -> Decimal:
    return Decimal(value) if value is not None else Decimal("0")


class SpotGroup:
    """Scheduled spots of one campaign that share an (episode, placement) slot."""

    def __init__(self, episode_id: str, placement_type: str, show_id: str):
        self.episode_id = episode_id
        self.placement_type = placement_type
        self.show_id = show_id
        self.quantity = 0
        self.spot_ids: list[str] = []

    def add(self, spot: ScheduledSpot) -> None:
        self.quantity += spot.quantity
        self.spot_ids.append(spot.spot_id)


class StageEngine:
    """Drives stage transitions for the campaigns of one tenant."""

    def __init__(
        self,
        ctx: TenantContext,
        reservations: ReservationService | None = None,
        notifications: NotificationService | None = None,
    ):
        self.ctx = ctx
        self.reservations = reservations or ReservationService(ctx)
        self.alerts = self.reservations.alerts
        self.notifications = notifications or NotificationService(ctx)
        self.settings_service = WorkflowSettingsService(ctx)

    # -- public operations -----------------------------------------------------

    def transition(self, campaign_id: str, target_stage: int, dry_run: bool = False) -> TransitionResult:
        """Move a campaign to ``target_stage``, running every checkpoint up to it.

        With ``dry_run`` the same steps run against the open transaction, which
        is then rolled back: the returned plan and notification list match a
        real run, and nothing is written.
        """
        if not isinstance(target_stage, int) or isinstance(target_stage, bool) or not 0 <= target_stage <= 100:
            raise ValidationError("target_stage must be an integer between 0 and 100", details={"stage": target_stage})

        started = time.monotonic()
        campaign = self._load_open_campaign(campaign_id)
        previous = campaign.stage
        settings = self.settings_service.get()
        effects: list[EffectRecord] = []
        pending: list[PendingNotification] = []

        try:
            if target_stage < previous:
                self._in_step(
                    lambda: self._regress(campaign, target_stage, effects, pending, dry_run),
                    dry_run,
                    name="regress",
                )
            else:
                if target_stage >= 100 and settings.admin_approval_required and not self._admin_approved(campaign_id):
                    raise ForbiddenError(
                        "Admin approval is required before a campaign can reach 100%",
                        details={"campaign_id": campaign_id},
                    )
                for stage in CHECKPOINTS:
                    if stage > target_stage:
                        break
                    for step in STAGE_STEPS[stage]:
                        self._run_step(campaign, stage, step, settings, effects, pending, dry_run)
                advance_notes: list[PendingNotification] = []
                self._in_step(lambda: self._advance(campaign, target_stage, advance_notes), dry_run, name="advance")
                pending.extend(advance_notes)

            final_status = campaign.status
            final_stage = campaign.stage
            if dry_run:
                self.ctx.rollback()
        except Exception as e:
            self.ctx.rollback()
            self.alerts.discard_pending()
            inventory_ops_logger.log_inventory_operation(
                operation="workflow.transition",
                success=False,
                tenant_id=self.ctx.tenant_id,
                details={"campaign_id": campaign_id, "from": previous, "to": target_stage, "dry_run": dry_run},
                error=str(e),
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            raise

        result = TransitionResult(
            campaign_id=campaign_id,
            previous_stage=previous,
            current_stage=final_stage,
            status=final_status,
            effects=effects,
            notifications=[n.to_dict() for n in pending],
            dry_run=dry_run,
        )

        if dry_run:
            self.alerts.discard_pending()
        else:
            self.alerts.dispatch_pending()
            self.notifications.dispatch(pending)

        inventory_ops_logger.log_inventory_operation(
            operation="workflow.transition",
            success=True,
            tenant_id=self.ctx.tenant_id,
            details={
                "campaign_id": campaign_id,
                "from": previous,
                "to": final_stage,
                "dry_run": dry_run,
                "effects": [f"{e.stage}:{e.name}:{e.status}" for e in effects],
            },
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        logger.info(
            f"Campaign {campaign_id} {'planned' if dry_run else 'moved'} {previous} -> {final_stage} "
            f"({len(effects)} effects)"
        )
        return result

    def decide_admin_approval(self, campaign_id: str, approved: bool, reason: str | None = None) -> dict:
        """Record the admin decision for a campaign.

        Rejection releases the campaign's holds and sends it back to 65 with
        status ``needs_revision``.
        """
        settings = self.settings_service.get()
        principal = self.ctx.principal
        if principal.role not in settings.admin_approval_roles:
            raise ForbiddenError(
                "Only admins can decide campaign approvals", details={"role": principal.role}
            )

        pending: list[PendingNotification] = []

        def decide() -> dict:
            campaign = self._load_open_campaign(campaign_id)
            approval = self.ctx.first(
                Approval,
                Approval.campaign_id == campaign_id,
                Approval.approval_type == "admin",
                Approval.status == "pending",
            )
            if approval is None:
                decided = self.ctx.first(
                    Approval,
                    Approval.campaign_id == campaign_id,
                    Approval.approval_type == "admin",
                    Approval.status == ("approved" if approved else "rejected"),
                )
                if decided is not None:
                    return self._decision_payload(campaign, decided, [])
                approval = Approval(
                    campaign_id=campaign_id,
                    approval_type="admin",
                    stage=campaign.stage,
                    status="pending",
                    requested_by=principal.principal_id,
                    created_at=self.ctx.now(),
                )
                self.ctx.add(approval)

            now = self.ctx.now()
            approval.status = "approved" if approved else "rejected"
            approval.decided_by = principal.principal_id
            approval.decided_at = now
            approval.details = {"reason": reason} if reason else None

            released: list[str] = []
            if approved:
                pending.append(
                    PendingNotification(
                        "campaign_approved",
                        "Campaign approved",
                        f"{campaign.name} was approved by {principal.name}",
                        user_ids=self._owner_ids(campaign),
                        data={"campaign_id": campaign_id},
                    )
                )
            else:
                released = [
                    r.reservation_id
                    for r in self.reservations.release_for_campaign_in_transaction(
                        campaign_id, reason="admin_rejected"
                    )
                ]
                self._clear_keys_above(campaign_id, REJECTION_STAGE)
                self._set_stage(campaign, REJECTION_STAGE)
                campaign.status = CampaignStatus.NEEDS_REVISION.value
                pending.append(
                    PendingNotification(
                        "campaign_rejected",
                        "Campaign needs revision",
                        f"{campaign.name} was rejected by {principal.name}"
                        + (f": {reason}" if reason else ""),
                        roles=("sales",),
                        user_ids=self._owner_ids(campaign),
                        data={"campaign_id": campaign_id, "released": released},
                    )
                )

            self.ctx.commit()
            return self._decision_payload(campaign, approval, released)

        try:
            payload = retry_busy(decide, on_retry=lambda _e: self.ctx.rollback(), name="workflow.decide_admin_approval")
        except Exception:
            self.ctx.rollback()
            pending.clear()
            raise

        logger.info(f"Admin {'approved' if approved else 'rejected'} campaign {campaign_id}")
        self.notifications.dispatch(pending)
        return payload

    def cancel(self, campaign_id: str, status: str = CampaignStatus.CANCELLED.value) -> dict:
        """Cancel or reject a campaign, releasing all of its holds and bookings."""
        if status not in CLOSED_CAMPAIGN_STATUSES:
            raise ValidationError(
                f"Invalid cancellation status '{status}'. Must be one of: {', '.join(CLOSED_CAMPAIGN_STATUSES)}"
            )

        def apply() -> dict:
            campaign = self.ctx.get_or_404(Campaign, campaign_id, "Campaign")
            released = [
                r.reservation_id
                for r in self.reservations.release_for_campaign_in_transaction(
                    campaign_id, reason=f"campaign_{status}", include_confirmed=True
                )
            ]
            campaign.status = status
            campaign.updated_at = self.ctx.now()
            self.ctx.commit()
            return {"campaign_id": campaign_id, "status": status, "released": released}

        try:
            payload = retry_busy(apply, on_retry=lambda _e: self.ctx.rollback(), name="workflow.cancel")
        except Exception:
            self.ctx.rollback()
            raise

        logger.info(f"Campaign {campaign_id} {status}; released {len(payload['released'])} reservation(s)")
        self.notifications.dispatch(
            [
                PendingNotification(
                    "campaign_status_changed",
                    f"Campaign {status}",
                    f"Campaign {campaign_id} was {status}",
                    roles=ADMIN_ROLES,
                    data=payload,
                )
            ]
        )
        return payload

    # -- step execution ----------------------------------------------------------

    def _in_step(self, work: Callable[[], None], dry_run: bool, name: str) -> None:
        """Run ``work`` and end its transaction: flush for a dry run, commit with Busy retries otherwise."""
        if dry_run:
            work()
            self.ctx.flush()
            return

        def attempt() -> None:
            work()
            self.ctx.commit()

        retry_busy(attempt, on_retry=lambda _e: self.ctx.rollback(), name=f"workflow.{name}")

    def _run_step(
        self,
        campaign: Campaign,
        stage: int,
        step: str,
        settings: WorkflowSettings,
        effects: list[EffectRecord],
        pending: list[PendingNotification],
        dry_run: bool,
    ) -> None:
        done = self._effect(campaign.campaign_id, stage, step)
        if done is not None:
            effects.append(EffectRecord(stage=stage, name=step, status="skipped", result=done.result or {}))
            return

        handler = getattr(self, f"_step_{step}")
        outcome: dict = {}

        def work() -> None:
            notes: list[PendingNotification] = []
            result = handler(campaign, settings, notes)
            self.ctx.add(
                WorkflowEffect(
                    campaign_id=campaign.campaign_id,
                    stage=stage,
                    effect_name=step,
                    result=result,
                    created_at=self.ctx.now(),
                )
            )
            outcome["result"] = result
            outcome["notes"] = notes

        try:
            self._in_step(work, dry_run, name=step)
        except IntegrityError:
            # Another worker recorded this step first; its transaction carried the effect
            self.ctx.rollback()
            done = self._effect(campaign.campaign_id, stage, step)
            effects.append(
                EffectRecord(stage=stage, name=step, status="skipped", result=(done.result if done else None) or {})
            )
            return

        effects.append(
            EffectRecord(stage=stage, name=step, status="planned" if dry_run else "applied", result=outcome["result"])
        )
        pending.extend(outcome["notes"])
        logger.debug(f"Step {stage}:{step} {'planned' if dry_run else 'applied'} for {campaign.campaign_id}")

    def _advance(self, campaign: Campaign, target_stage: int, pending: list[PendingNotification]) -> None:
        pending.clear()
        previous_status = campaign.status
        self._set_stage(campaign, target_stage)
        reached = [c for c in STAGE_STATUS if c <= target_stage]
        if reached:
            campaign.status = STAGE_STATUS[max(reached)]
        if campaign.status != previous_status:
            pending.append(
                PendingNotification(
                    "campaign_status_changed",
                    "Campaign status changed",
                    f"{campaign.name} moved from {previous_status} to {campaign.status}",
                    user_ids=self._owner_ids(campaign),
                    data={"campaign_id": campaign.campaign_id, "stage": target_stage, "status": campaign.status},
                )
            )

    def _regress(
        self,
        campaign: Campaign,
        target_stage: int,
        effects: list[EffectRecord],
        pending: list[PendingNotification],
        dry_run: bool,
    ) -> None:
        effects.clear()
        pending.clear()
        previous = campaign.stage
        released = self.reservations.release_for_campaign_in_transaction(
            campaign.campaign_id, reason=f"stage_regression:{previous}->{target_stage}"
        )
        cleared = self._clear_keys_above(campaign.campaign_id, target_stage)
        status = "planned" if dry_run else "applied"
        effects.append(
            EffectRecord(
                stage=target_stage,
                name="release_reservations",
                status=status,
                result={"released": [r.reservation_id for r in released]},
            )
        )
        effects.append(
            EffectRecord(stage=target_stage, name="clear_idempotency_keys", status=status, result={"cleared": cleared})
        )

        previous_status = campaign.status
        self._set_stage(campaign, target_stage)
        campaign.schedule_editable = target_stage >= 10
        if campaign.status in (CampaignStatus.IN_RESERVATIONS.value, CampaignStatus.APPROVED.value):
            campaign.status = (
                CampaignStatus.ACTIVE_PRESALE.value if target_stage >= 10 else CampaignStatus.DRAFT.value
            )

        pending.append(
            PendingNotification(
                "campaign_status_changed",
                "Campaign moved back",
                f"{campaign.name} moved from {previous}% to {target_stage}%",
                user_ids=self._owner_ids(campaign),
                data={
                    "campaign_id": campaign.campaign_id,
                    "stage": target_stage,
                    "previous_status": previous_status,
                    "status": campaign.status,
                },
            )
        )
        if released:
            pending.append(
                PendingNotification(
                    "inventory_released",
                    "Inventory released",
                    f"{len(released)} hold(s) of {campaign.name} were released",
                    roles=ADMIN_ROLES,
                    data={"campaign_id": campaign.campaign_id, "released": [r.reservation_id for r in released]},
                )
            )

    # -- steps -----------------------------------------------------------------

    def _step_enable_schedule_builder(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        campaign.schedule_editable = True
        if campaign.status in (CampaignStatus.DRAFT.value, CampaignStatus.NEEDS_REVISION.value):
            campaign.status = CampaignStatus.ACTIVE_PRESALE.value
        return {"schedule_editable": True, "status": campaign.status}

    def _step_validate_schedule(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        spots = self._spots(campaign)
        if not spots:
            raise ValidationError(
                "Campaign has no scheduled spots", details={"campaign_id": campaign.campaign_id}
            )

        problems = []
        for spot in spots:
            episode = self.ctx.get(Episode, spot.episode_id)
            if episode is None or episode.deleted_at is not None:
                problems.append({"spot_id": spot.spot_id, "issue": "episode_not_found"})
                continue
            if episode.show_id != spot.show_id:
                problems.append({"spot_id": spot.spot_id, "issue": "show_mismatch"})
            try:
                placement = PlacementType.parse(spot.placement_type)
            except ValidationError:
                problems.append({"spot_id": spot.spot_id, "issue": "invalid_placement"})
                continue
            inventory = self.ctx.first(
                EpisodeInventory,
                EpisodeInventory.episode_id == spot.episode_id,
                EpisodeInventory.placement_type == placement.value,
            )
            if inventory is None:
                problems.append({"spot_id": spot.spot_id, "issue": "no_inventory"})

        if problems:
            raise ValidationError("Campaign schedule is invalid", details={"problems": problems})
        return {"spot_count": len(spots), "total_quantity": sum(s.quantity for s in spots)}

    def _step_track_rate_card_delta(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        if not settings.rate_card.enabled:
            return {"enabled": False}

        baseline = Decimal("0")
        negotiated = Decimal("0")
        for spot in self._spots(campaign):
            rate = _money(spot.rate_card_price)
            baseline += rate * spot.quantity
            negotiated += (rate if spot.negotiated_price is None else _money(spot.negotiated_price)) * spot.quantity

        delta = ((negotiated - baseline) / baseline * 100) if baseline else Decimal("0")
        delta = delta.quantize(Decimal("0.01"))
        campaign.rate_card_delta_percent = delta
        exceeds = abs(delta) > Decimal(str(settings.rate_delta_threshold_percent))
        requires_approval = abs(delta) > Decimal(str(settings.rate_card.require_approval_above))

        if exceeds:
            notes.append(
                PendingNotification(
                    "rate_delta_exceeded",
                    "Rate card delta above threshold",
                    f"{campaign.name} is {delta}% off the rate card",
                    roles=ADMIN_ROLES,
                    data={"campaign_id": campaign.campaign_id, "delta_percent": float(delta)},
                )
            )
        return {
            "baseline_total": str(baseline),
            "negotiated_total": str(negotiated),
            "delta_percent": float(delta),
            "exceeds_threshold": exceeds,
            "requires_approval": requires_approval,
        }

    def _step_request_talent_approval(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        if not settings.talent_approval.enabled:
            return {"enabled": False, "requested": []}

        requested, existing = [], []
        for spot in self._spots(campaign):
            if spot.spot_type not in settings.talent_approval.types:
                continue
            current = self.ctx.first(
                Approval,
                Approval.campaign_id == campaign.campaign_id,
                Approval.approval_type == "talent",
                Approval.spot_id == spot.spot_id,
            )
            if current is not None:
                existing.append(current.approval_id)
                continue
            approval = Approval(
                campaign_id=campaign.campaign_id,
                approval_type="talent",
                stage=65,
                spot_id=spot.spot_id,
                status="pending",
                requested_by=self.ctx.principal.principal_id,
                details={"spot_type": spot.spot_type, "show_id": spot.show_id},
                created_at=self.ctx.now(),
            )
            self.ctx.add(approval)
            self.ctx.flush()
            requested.append(approval.approval_id)

        if requested:
            has_talent = self.ctx.first(User, User.role == "talent", User.is_active.is_(True)) is not None
            notes.append(
                PendingNotification(
                    "talent_approval_requested",
                    "Talent approval requested",
                    f"{len(requested)} spot(s) of {campaign.name} need talent approval",
                    roles=("talent",) if has_talent else (settings.talent_approval.fallback_role,),
                    data={"campaign_id": campaign.campaign_id, "approval_ids": requested},
                )
            )
        return {"requested": requested, "existing": existing}

    def _step_check_exclusivity(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        mode = settings.exclusivity_mode
        if mode == "off" or not campaign.category_id:
            return {"mode": mode, "conflicts": []}

        competitors = self.ctx.all(
            Campaign,
            Campaign.category_id == campaign.category_id,
            Campaign.campaign_id != campaign.campaign_id,
            Campaign.deleted_at.is_(None),
            Campaign.status.not_in(CLOSED_CAMPAIGN_STATUSES),
            order_by=Campaign.campaign_id,
        )
        buffer = timedelta(days=settings.exclusivity.buffer_days)
        my_spots = self._spots(campaign)
        conflicts = []
        for other in competitors:
            if campaign.advertiser_id and other.advertiser_id == campaign.advertiser_id:
                continue
            for theirs in self._spots(other):
                for mine in my_spots:
                    if self._spots_collide(mine, theirs, buffer):
                        conflicts.append(
                            {
                                "campaign_id": other.campaign_id,
                                "show_id": theirs.show_id,
                                "episode_id": theirs.episode_id,
                            }
                        )
                        break

        if conflicts and mode == "block":
            raise ValidationError(
                "Competitive category conflict", details={"category_id": campaign.category_id, "conflicts": conflicts}
            )
        if conflicts:
            notes.append(
                PendingNotification(
                    "exclusivity_conflict",
                    "Competitive category conflict",
                    f"{campaign.name} shares category {campaign.category_id} with {len(conflicts)} booked spot(s)",
                    roles=ADMIN_ROLES,
                    data={"campaign_id": campaign.campaign_id, "conflicts": conflicts},
                )
            )
        return {"mode": mode, "conflicts": conflicts}

    def _step_reserve_inventory(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        if not settings.auto_reserve:
            return {"auto_reserve": False, "held": [], "existing": [], "conflicts": []}

        ttl = timedelta(hours=settings.reservation_ttl_hours)
        held, existing, conflicts = [], [], []
        for group in self._spot_groups(campaign):
            needed = self._unbooked(campaign.campaign_id, group)
            if needed <= 0:
                continue
            live = self.reservations.active_hold(campaign.campaign_id, group.episode_id, group.placement_type)
            if live is not None and ensure_utc(live.expires_at) <= self.ctx.now():
                self.reservations.expire_in_transaction(live.reservation_id)

            # A live hold is resized to the group, which may have gained spots since it was placed
            try:
                reservation, created = self.reservations.hold_in_transaction(
                    campaign.campaign_id,
                    group.episode_id,
                    group.placement_type,
                    needed,
                    ttl=ttl,
                    schedule_id=group.spot_ids[0],
                )
            except ConflictError as e:
                if not (settings.degrade_conflicts_to_alerts or get_inventory_config().degrade_conflicts_to_alerts):
                    raise
                conflict = {
                    "episode_id": group.episode_id,
                    "placement_type": group.placement_type,
                    "requested": needed,
                    "remaining": e.remaining,
                }
                conflicts.append(conflict)
                self.alerts.create(
                    AlertType.OVERBOOKING.value,
                    AlertSeverity.HIGH.value,
                    details={
                        "message": f"Not enough inventory to hold {needed} slot(s) for {campaign.name}",
                        "campaign_id": campaign.campaign_id,
                        **conflict,
                    },
                    episode_id=group.episode_id,
                    show_id=group.show_id,
                    affected_schedules=group.spot_ids,
                    fingerprint=f"overbooking:{campaign.campaign_id}:{group.episode_id}:{group.placement_type}",
                    commit=False,
                )
                continue
            (held if created else existing).append(reservation.reservation_id)

        if held:
            notes.append(
                PendingNotification(
                    "inventory_reserved",
                    "Inventory reserved",
                    f"{len(held)} hold(s) placed for {campaign.name}",
                    roles=ADMIN_ROLES,
                    user_ids=self._owner_ids(campaign),
                    data={"campaign_id": campaign.campaign_id, "reservation_ids": held},
                )
            )
        return {"held": held, "existing": existing, "conflicts": conflicts}

    def _step_request_admin_approval(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        if not settings.admin_approval_required:
            return {"required": False}

        current = self.ctx.first(
            Approval,
            Approval.campaign_id == campaign.campaign_id,
            Approval.approval_type == "admin",
            Approval.status.in_(["pending", "approved"]),
        )
        if current is not None:
            return {"required": True, "approval_id": current.approval_id, "status": current.status}

        approval = Approval(
            campaign_id=campaign.campaign_id,
            approval_type="admin",
            stage=90,
            status="pending",
            requested_by=self.ctx.principal.principal_id,
            created_at=self.ctx.now(),
        )
        self.ctx.add(approval)
        self.ctx.flush()
        notes.append(
            PendingNotification(
                "admin_approval_requested",
                "Campaign approval requested",
                f"{campaign.name} reached 90% and needs admin approval",
                roles=tuple(settings.admin_approval_roles),
                data={"campaign_id": campaign.campaign_id, "approval_id": approval.approval_id},
                slack=settings.notifications.slack,
            )
        )
        return {"required": True, "approval_id": approval.approval_id, "status": "pending"}

    def _step_confirm_reservations(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        ttl = timedelta(hours=settings.reservation_ttl_hours)
        confirmed, already = [], []
        for group in self._spot_groups(campaign):
            already.extend(r.reservation_id for r in self._confirmed(campaign.campaign_id, group))
            needed = self._unbooked(campaign.campaign_id, group)
            if needed <= 0:
                continue
            live = self.reservations.active_hold(campaign.campaign_id, group.episode_id, group.placement_type)
            if live is not None and ensure_utc(live.expires_at) <= self.ctx.now():
                self.reservations.expire_in_transaction(live.reservation_id)

            # Spots added after the 90% hold are topped up here
            live, _ = self.reservations.hold_in_transaction(
                campaign.campaign_id,
                group.episode_id,
                group.placement_type,
                needed,
                ttl=ttl,
                schedule_id=group.spot_ids[0],
            )
            self.reservations.confirm_in_transaction(live.reservation_id)
            confirmed.append(live.reservation_id)

        # The schedule is frozen once inventory is booked
        campaign.schedule_editable = False
        return {"confirmed": confirmed, "already_confirmed": already, "schedule_editable": False}

    def _step_create_order(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        total = self._negotiated_total(campaign)
        now = self.ctx.now()
        order = Order(
            campaign_id=campaign.campaign_id,
            order_number=f"ORD-{now:%Y%m%d}-{uuid4().hex[:6].upper()}",
            status="confirmed",
            total_amount=total,
            submitted_by=self.ctx.principal.principal_id,
            created_at=now,
        )
        self.ctx.add(order)
        self.ctx.flush()
        return {"order_id": order.order_id, "order_number": order.order_number, "total_amount": str(total)}

    def _step_generate_ad_requests(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        order = self._latest_order(campaign.campaign_id)
        if order is None:
            raise ValidationError(
                "Cannot generate ad requests without an order", details={"campaign_id": campaign.campaign_id}
            )

        per_show: OrderedDict[str, int] = OrderedDict()
        for spot in self._spots(campaign):
            per_show[spot.show_id] = per_show.get(spot.show_id, 0) + spot.quantity

        request_ids = []
        for show_id, spot_count in per_show.items():
            ad_request = AdRequest(
                order_id=order.order_id,
                campaign_id=campaign.campaign_id,
                show_id=show_id,
                spot_count=spot_count,
                status="pending",
                created_at=self.ctx.now(),
            )
            self.ctx.add(ad_request)
            self.ctx.flush()
            request_ids.append(ad_request.request_id)
        return {"order_id": order.order_id, "ad_request_ids": request_ids, "shows": list(per_show)}

    def _step_generate_contract(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        if not settings.contracts_auto_generate:
            return {"generated": False}
        order = self._latest_order(campaign.campaign_id)
        contract = Contract(
            campaign_id=campaign.campaign_id,
            order_id=order.order_id if order else None,
            template=settings.contract_template,
            status="draft",
            total_amount=self._negotiated_total(campaign),
            created_at=self.ctx.now(),
        )
        self.ctx.add(contract)
        self.ctx.flush()
        notes.append(
            PendingNotification(
                "contract_generated",
                "Contract generated",
                f"A {settings.contract_template} contract was generated for {campaign.name}",
                roles=ADMIN_ROLES,
                user_ids=self._owner_ids(campaign),
                data={"campaign_id": campaign.campaign_id, "contract_id": contract.contract_id},
            )
        )
        return {"generated": True, "contract_id": contract.contract_id, "template": settings.contract_template}

    def _step_create_billing_schedule(self, campaign: Campaign, settings: WorkflowSettings, notes) -> dict:
        if not settings.billing.enabled:
            return {"created": False}
        order = self._latest_order(campaign.campaign_id)
        schedule = BillingSchedule(
            campaign_id=campaign.campaign_id,
            order_id=order.order_id if order else None,
            invoice_day=settings.billing.invoice_day,
            timezone=settings.billing.timezone,
            prebill=settings.billing.prebill,
            total_amount=self._negotiated_total(campaign),
            created_at=self.ctx.now(),
        )
        self.ctx.add(schedule)
        self.ctx.flush()
        return {
            "created": True,
            "billing_schedule_id": schedule.billing_schedule_id,
            "invoice_day": schedule.invoice_day,
            "timezone": schedule.timezone,
            "prebill": schedule.prebill,
        }

    # -- helpers -----------------------------------------------------------------

    def _load_open_campaign(self, campaign_id: str) -> Campaign:
        campaign = self.ctx.get_or_404(Campaign, campaign_id, "Campaign")
        if campaign.deleted_at is not None or campaign.status in CLOSED_CAMPAIGN_STATUSES:
            raise ValidationError(
                f"Campaign '{campaign_id}' is closed",
                details={"campaign_id": campaign_id, "status": campaign.status},
            )
        return campaign

    def _set_stage(self, campaign: Campaign, stage: int) -> None:
        if campaign.stage != stage:
            campaign.stage = stage
            campaign.stage_changed_at = self.ctx.now()
        campaign.updated_at = self.ctx.now()

    def _effect(self, campaign_id: str, stage: int, step: str) -> WorkflowEffect | None:
        return self.ctx.first(
            WorkflowEffect,
            WorkflowEffect.campaign_id == campaign_id,
            WorkflowEffect.stage == stage,
            WorkflowEffect.effect_name == step,
        )

    def _clear_keys_above(self, campaign_id: str, stage: int) -> list[str]:
        keys = self.ctx.all(
            WorkflowEffect,
            WorkflowEffect.campaign_id == campaign_id,
            WorkflowEffect.stage > stage,
            # Booking re-runs so a reopened schedule is topped up; orders and contracts stay
            or_(WorkflowEffect.stage != 100, WorkflowEffect.effect_name == "confirm_reservations"),
            order_by=WorkflowEffect.effect_id,
        )
        cleared = [f"{k.stage}:{k.effect_name}" for k in keys]
        for key in keys:
            self.ctx.delete(key)
        self.ctx.flush()
        return cleared

    def _admin_approved(self, campaign_id: str) -> bool:
        return (
            self.ctx.first(
                Approval,
                Approval.campaign_id == campaign_id,
                Approval.approval_type == "admin",
                Approval.status == "approved",
            )
            is not None
        )

    def _spots(self, campaign: Campaign) -> list[ScheduledSpot]:
        return self.ctx.all(
            ScheduledSpot, ScheduledSpot.campaign_id == campaign.campaign_id, order_by=ScheduledSpot.spot_id
        )

    def _spot_groups(self, campaign: Campaign) -> list[SpotGroup]:
        groups: OrderedDict[tuple[str, str], SpotGroup] = OrderedDict()
        for spot in self._spots(campaign):
            placement = PlacementType.parse(spot.placement_type).value
            key = (spot.episode_id, placement)
            if key not in groups:
                groups[key] = SpotGroup(spot.episode_id, placement, spot.show_id)
            groups[key].add(spot)
        return list(groups.values())

    def _confirmed(self, campaign_id: str, group: SpotGroup) -> list[Reservation]:
        return self.ctx.all(
            Reservation,
            Reservation.campaign_id == campaign_id,
            Reservation.episode_id == group.episode_id,
            Reservation.placement_type == group.placement_type,
            Reservation.status == ReservationStatus.CONFIRMED.value,
            order_by=Reservation.reservation_id,
        )

    def _unbooked(self, campaign_id: str, group: SpotGroup) -> int:
        """Slots of the group not yet covered by confirmed bookings."""
        return group.quantity - sum(r.quantity for r in self._confirmed(campaign_id, group))

    def _negotiated_total(self, campaign: Campaign) -> Decimal:
        total = Decimal("0")
        for spot in self._spots(campaign):
            price = spot.negotiated_price if spot.negotiated_price is not None else spot.rate_card_price
            total += _money(price) * spot.quantity
        return total.quantize(Decimal("0.01"))

    def _latest_order(self, campaign_id: str) -> Order | None:
        orders = self.ctx.all(Order, Order.campaign_id == campaign_id, order_by=Order.created_at.desc())
        return orders[0] if orders else None

    def _owner_ids(self, campaign: Campaign) -> tuple[str, ...]:
        return (campaign.created_by,) if campaign.created_by else ()

    @staticmethod
    def _spots_collide(mine: ScheduledSpot, theirs: ScheduledSpot, buffer: timedelta) -> bool:
        if mine.episode_id == theirs.episode_id:
            return True
        if mine.show_id != theirs.show_id or mine.air_date is None or theirs.air_date is None:
            return False
        return abs(ensure_utc(mine.air_date) - ensure_utc(theirs.air_date)) <= buffer

    def _decision_payload(self, campaign: Campaign, approval: Approval, released: list[str]) -> dict:
        return {
            "campaign_id": campaign.campaign_id,
            "approval_id": approval.approval_id,
            "decision": approval.status,
            "stage": campaign.stage,
            "status": campaign.status,
            "released": released,
        }



