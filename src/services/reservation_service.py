"""Reservation lifecycle: hold, extend, confirm, release and expire.

Every public operation runs in its own transaction and retries lock
contention (``Busy``) a bounded number of times. The ``*_in_transaction``
variants leave the transaction open so the stage engine can compose several
holds into one atomic step.

Counter invariants are enforced by the inventory ledger. When the ledger
reports corruption, the transaction is rolled back, the affected counter is
recounted and a drift alert is filed before the error propagates.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TypeVar

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError

from src.core.clock import ensure_utc
from src.core.database.models import (
    AlertSeverity,
    AlertType,
    Campaign,
    CampaignStatus,
    Episode,
    PlacementType,
    Reservation,
    ReservationStatus,
    ReservationStatusHistory,
    ScheduledSpot,
)
from src.core.exceptions import (
    Busy,
    ConflictError,
    ExpiredError,
    InventoryError,
    LedgerCorruption,
    NotFoundError,
    ValidationError,
)
from src.core.logging_config import inventory_ops_logger
from src.core.retry_utils import retry_busy
from src.core.tenant_context import TenantContext
from src.services.inventory_alert_service import InventoryAlertService
from src.services.inventory_ledger import InventoryLedger, is_lock_contention
from src.services.workflow_settings_service import WorkflowSettingsService

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED_CAMPAIGN_STATUSES = (CampaignStatus.CANCELLED.value, CampaignStatus.REJECTED.value)


class ReservationService:
    """Reservation operations for one tenant."""

    def __init__(
        self,
        ctx: TenantContext,
        ledger: InventoryLedger | None = None,
        alerts: InventoryAlertService | None = None,
    ):
        self.ctx = ctx
        self.ledger = ledger or InventoryLedger(ctx)
        self.alerts = alerts or InventoryAlertService(ctx)

    # -- public operations (own transaction) -----------------------------

    def hold(
        self,
        campaign_id: str,
        episode_id: str,
        placement_type: str | PlacementType,
        quantity: int = 1,
        ttl: timedelta | None = None,
        schedule_id: str | None = None,
    ) -> Reservation:
        """Hold slots for a campaign. Returns the existing hold if one is live."""
        reservation, _ = self.place_hold(campaign_id, episode_id, placement_type, quantity, ttl, schedule_id)
        return reservation

    def place_hold(
        self,
        campaign_id: str,
        episode_id: str,
        placement_type: str | PlacementType,
        quantity: int = 1,
        ttl: timedelta | None = None,
        schedule_id: str | None = None,
    ) -> tuple[Reservation, bool]:
        """Like ``hold`` but also reports whether a new hold was created."""
        return self._run(
            "hold",
            lambda: self.hold_in_transaction(campaign_id, episode_id, placement_type, quantity, ttl, schedule_id),
            details={"campaign_id": campaign_id, "episode_id": episode_id, "quantity": quantity},
        )

    def extend(self, reservation_id: str, ttl: timedelta) -> Reservation:
        return self._run(
            "extend",
            lambda: self.extend_in_transaction(reservation_id, ttl),
            details={"reservation_id": reservation_id},
        )

    def confirm(self, reservation_id: str) -> Reservation:
        return self._run(
            "confirm",
            lambda: self.confirm_in_transaction(reservation_id),
            details={"reservation_id": reservation_id},
        )

    def release(self, reservation_id: str, reason: str = "released") -> Reservation:
        return self._run(
            "release",
            lambda: self.release_in_transaction(reservation_id, reason),
            details={"reservation_id": reservation_id, "reason": reason},
        )

    def expire(self, reservation_id: str) -> bool:
        """Expire one lapsed hold. Used by the reconciliation sweep."""
        return self._run(
            "expire",
            lambda: self.expire_in_transaction(reservation_id),
            details={"reservation_id": reservation_id},
        )

    def release_for_campaign(self, campaign_id: str, reason: str) -> list[Reservation]:
        return self._run(
            "release_for_campaign",
            lambda: self.release_for_campaign_in_transaction(campaign_id, reason),
            details={"campaign_id": campaign_id, "reason": reason},
        )

    def list_reservations(
        self, campaign_id: str | None = None, status: str | None = None, episode_id: str | None = None
    ) -> list[Reservation]:
        criteria = []
        if campaign_id:
            criteria.append(Reservation.campaign_id == campaign_id)
        if episode_id:
            criteria.append(Reservation.episode_id == episode_id)
        if status:
            allowed = [s.value for s in ReservationStatus]
            if status not in allowed:
                raise ValidationError(f"Invalid status '{status}'. Must be one of: {', '.join(allowed)}")
            criteria.append(Reservation.status == status)
        return self.ctx.all(Reservation, *criteria, order_by=Reservation.created_at)

    def get(self, reservation_id: str) -> Reservation:
        return self.ctx.get_or_404(Reservation, reservation_id, "Reservation")

    def stats(self, created_from: datetime | None = None, created_to: datetime | None = None) -> dict:
        """Reservation counts and slot quantities per status, optionally for a creation window."""
        stmt = self.ctx.select(Reservation).with_only_columns(
            Reservation.status, func.count(), func.coalesce(func.sum(Reservation.quantity), 0)
        )
        if created_from is not None:
            stmt = stmt.where(Reservation.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(Reservation.created_at <= created_to)

        by_status = {s.value: {"count": 0, "quantity": 0} for s in ReservationStatus}
        for status, count, quantity in self.ctx.session.execute(stmt.group_by(Reservation.status)):
            by_status[status] = {"count": count, "quantity": int(quantity)}

        return {
            "total": sum(s["count"] for s in by_status.values()),
            "slots_held": by_status[ReservationStatus.RESERVED.value]["quantity"],
            "slots_booked": by_status[ReservationStatus.CONFIRMED.value]["quantity"],
            "by_status": by_status,
        }

    # -- in-transaction variants ------------------------------------------

    def hold_in_transaction(
        self,
        campaign_id: str,
        episode_id: str,
        placement_type: str | PlacementType,
        quantity: int = 1,
        ttl: timedelta | None = None,
        schedule_id: str | None = None,
    ) -> tuple[Reservation, bool]:
        placement = PlacementType.parse(placement_type)
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer", details={"quantity": quantity})
        if ttl is None:
            ttl = timedelta(hours=WorkflowSettingsService(self.ctx).get().reservation_ttl_hours)
        if ttl <= timedelta(0):
            raise ValidationError("ttl must be positive", details={"ttl_seconds": ttl.total_seconds()})

        campaign = self.ctx.get_or_404(Campaign, campaign_id, "Campaign")
        if campaign.deleted_at is not None or campaign.status in CLOSED_CAMPAIGN_STATUSES:
            raise ValidationError(
                f"Campaign '{campaign_id}' is {campaign.status if campaign.deleted_at is None else 'deleted'}",
                details={"campaign_id": campaign_id},
            )
        episode = self.ctx.get(Episode, episode_id)
        if episode is None or episode.deleted_at is not None:
            raise NotFoundError(f"Episode '{episode_id}' not found", details={"episode_id": episode_id})
        if schedule_id is not None:
            spot = self.ctx.get_or_404(ScheduledSpot, schedule_id, "Scheduled spot")
            if spot.campaign_id != campaign_id:
                raise ValidationError(
                    f"Scheduled spot '{schedule_id}' belongs to another campaign", details={"schedule_id": schedule_id}
                )

        now = self.ctx.now()
        existing = self.active_hold(campaign_id, episode_id, placement)
        if existing is not None:
            existing = self._lock(existing.reservation_id)
        if existing is not None and existing.status == ReservationStatus.RESERVED.value and existing.locked:
            if ensure_utc(existing.expires_at) <= now:
                raise ExpiredError(
                    f"Existing hold {existing.reservation_id} has lapsed and is awaiting expiry",
                    details={"reservation_id": existing.reservation_id},
                )
            if existing.quantity != quantity:
                self._resize(existing, quantity)
            logger.info(f"Returning existing hold {existing.reservation_id} for {campaign_id}/{episode_id}")
            return existing, False

        result = self.ledger.try_reserve(episode_id, placement, quantity)
        if not result.ok:
            raise ConflictError(
                "Not enough inventory",
                remaining=result.remaining,
                details={"episode_id": episode_id, "placement_type": placement.value, "requested": quantity},
            )

        reservation = Reservation(
            show_id=episode.show_id,
            episode_id=episode_id,
            placement_type=placement.value,
            campaign_id=campaign_id,
            schedule_id=schedule_id,
            quantity=quantity,
            status=ReservationStatus.RESERVED.value,
            expires_at=now + ttl,
            locked=True,
            created_by=self.ctx.principal.principal_id,
            created_at=now,
            updated_at=now,
        )
        self.ctx.add(reservation)
        self._record(reservation, None, ReservationStatus.RESERVED.value, "hold")
        try:
            self.ctx.flush()
        except IntegrityError as e:
            # A concurrent hold for the same campaign and slot won the unique index; retrying returns it
            raise Busy(
                "Concurrent hold for the same campaign and slot",
                details={"campaign_id": campaign_id, "episode_id": episode_id, "placement_type": placement.value},
            ) from e
        return reservation, True

    def extend_in_transaction(self, reservation_id: str, ttl: timedelta) -> Reservation:
        if ttl <= timedelta(0):
            raise ValidationError("ttl must be positive", details={"ttl_seconds": ttl.total_seconds()})
        reservation = self._lock(reservation_id)
        now = self.ctx.now()
        if not self._is_live(reservation):
            raise ExpiredError(
                f"Reservation {reservation_id} is no longer held",
                details={"reservation_id": reservation_id, "status": reservation.status},
            )
        reservation.expires_at = now + ttl
        reservation.updated_at = now
        self.ctx.flush()
        return reservation

    def confirm_in_transaction(self, reservation_id: str) -> Reservation:
        reservation = self._lock(reservation_id)
        if reservation.status == ReservationStatus.CONFIRMED.value:
            return reservation
        if not self._is_live(reservation):
            raise ExpiredError(
                f"Reservation {reservation_id} can no longer be confirmed",
                details={"reservation_id": reservation_id, "status": reservation.status},
            )

        self.ledger.confirm(reservation.episode_id, reservation.placement_type, reservation.quantity)
        now = self.ctx.now()
        reservation.status = ReservationStatus.CONFIRMED.value
        reservation.expires_at = None
        reservation.locked = False
        reservation.confirmed_at = now
        reservation.updated_at = now
        self._record(reservation, ReservationStatus.RESERVED.value, ReservationStatus.CONFIRMED.value, "confirmed")
        self.ctx.flush()
        return reservation

    def release_in_transaction(self, reservation_id: str, reason: str = "released") -> Reservation:
        reservation = self._lock(reservation_id)
        previous = reservation.status
        if previous in (ReservationStatus.RELEASED.value, ReservationStatus.EXPIRED.value):
            return reservation

        if previous == ReservationStatus.CONFIRMED.value:
            self.ledger.unbook(reservation.episode_id, reservation.placement_type, reservation.quantity)
        else:
            self.ledger.release(reservation.episode_id, reservation.placement_type, reservation.quantity)

        now = self.ctx.now()
        reservation.status = ReservationStatus.RELEASED.value
        reservation.locked = False
        reservation.released_at = now
        reservation.release_reason = reason
        reservation.updated_at = now
        self._record(reservation, previous, ReservationStatus.RELEASED.value, reason)
        self.ctx.flush()
        return reservation

    def expire_in_transaction(self, reservation_id: str) -> bool:
        reservation = self._lock(reservation_id)
        now = self.ctx.now()
        if reservation.status != ReservationStatus.RESERVED.value:
            return False
        if reservation.expires_at is None or ensure_utc(reservation.expires_at) > now:
            return False

        self.ledger.release(reservation.episode_id, reservation.placement_type, reservation.quantity)
        reservation.status = ReservationStatus.EXPIRED.value
        reservation.locked = False
        reservation.released_at = now
        reservation.release_reason = "ttl_expired"
        reservation.updated_at = now
        self._record(reservation, ReservationStatus.RESERVED.value, ReservationStatus.EXPIRED.value, "ttl_expired")
        self.ctx.flush()
        return True

    def release_for_campaign_in_transaction(
        self, campaign_id: str, reason: str, include_confirmed: bool = False
    ) -> list[Reservation]:
        statuses = [ReservationStatus.RESERVED.value]
        if include_confirmed:
            statuses.append(ReservationStatus.CONFIRMED.value)
        active = self.ctx.all(
            Reservation,
            Reservation.campaign_id == campaign_id,
            Reservation.status.in_(statuses),
            order_by=Reservation.reservation_id,
        )
        return [self.release_in_transaction(r.reservation_id, reason) for r in active]

    # -- helpers ------------------------------------------------------------

    def active_hold(
        self, campaign_id: str, episode_id: str, placement: str | PlacementType
    ) -> Reservation | None:
        """The campaign's live or lapsed-but-unexpired hold on a slot, if any."""
        return self.ctx.first(
            Reservation,
            Reservation.campaign_id == campaign_id,
            Reservation.episode_id == episode_id,
            Reservation.placement_type == PlacementType.parse(placement).value,
            Reservation.status == ReservationStatus.RESERVED.value,
            Reservation.locked.is_(True),
        )

    def _lock(self, reservation_id: str) -> Reservation:
        """Re-read a reservation under a row lock before deciding on a status change.

        Status checks on an unlocked read could let two overlapping requests
        both move the same hold and both adjust the counter.
        """
        try:
            self.ledger.set_lock_timeout()
            reservation = self.ctx.get_for_update(Reservation, Reservation.reservation_id == reservation_id)
        except OperationalError as e:
            if is_lock_contention(e):
                raise Busy("Reservation is busy, please retry", details={"reservation_id": reservation_id}) from e
            raise
        if reservation is None:
            raise NotFoundError(f"Reservation '{reservation_id}' not found", details={"id": reservation_id})
        return reservation

    def _resize(self, reservation: Reservation, quantity: int) -> None:
        """Grow or shrink a locked live hold to ``quantity`` slots."""
        delta = quantity - reservation.quantity
        if delta > 0:
            result = self.ledger.try_reserve(reservation.episode_id, reservation.placement_type, delta)
            if not result.ok:
                raise ConflictError(
                    "Not enough inventory",
                    remaining=result.remaining,
                    details={
                        "reservation_id": reservation.reservation_id,
                        "held": reservation.quantity,
                        "requested": quantity,
                    },
                )
        else:
            self.ledger.release(reservation.episode_id, reservation.placement_type, -delta)

        logger.info(f"Resized hold {reservation.reservation_id} from {reservation.quantity} to {quantity}")
        reason = f"resized {reservation.quantity}->{quantity}"
        reservation.quantity = quantity
        reservation.updated_at = self.ctx.now()
        self._record(reservation, ReservationStatus.RESERVED.value, ReservationStatus.RESERVED.value, reason)
        self.ctx.flush()

    def _is_live(self, reservation: Reservation) -> bool:
        return (
            reservation.status == ReservationStatus.RESERVED.value
            and reservation.locked
            and reservation.expires_at is not None
            and ensure_utc(reservation.expires_at) > self.ctx.now()
        )

    def _record(self, reservation: Reservation, from_status: str | None, to_status: str, reason: str) -> None:
        reservation.history.append(
            ReservationStatusHistory(
                tenant_id=self.ctx.tenant_id,
                from_status=from_status,
                to_status=to_status,
                reason=reason,
                changed_by=self.ctx.principal.principal_id,
                changed_at=self.ctx.now(),
            )
        )

    def _run(self, operation: str, work: Callable[[], T], details: dict | None = None) -> T:
        """Run ``work`` in its own transaction with Busy retries and corruption handling."""
        started = time.monotonic()

        def attempt() -> T:
            result = work()
            self.ctx.commit()
            return result

        try:
            result = retry_busy(attempt, on_retry=lambda _e: self.ctx.rollback(), name=f"reservation.{operation}")
        except LedgerCorruption as e:
            self.ctx.rollback()
            self._handle_corruption(e)
            self._log(operation, False, details, started, error=str(e))
            raise
        except InventoryError as e:
            self.ctx.rollback()
            self._log(operation, False, details, started, error=str(e), level=_outcome_level(e))
            raise
        except Exception as e:
            self.ctx.rollback()
            self._log(operation, False, details, started, error=str(e))
            raise

        self._log(operation, True, details, started)
        return result

    def _handle_corruption(self, error: LedgerCorruption) -> None:
        """Recount the affected counter and file a drift alert in a fresh transaction."""
        episode_id = error.details.get("episode_id")
        placement_type = error.details.get("placement_type")
        if not episode_id or not placement_type:
            return
        try:
            snapshot = self.ledger.recount(episode_id, placement_type)
            self.alerts.create(
                AlertType.DRIFT.value,
                AlertSeverity.HIGH.value,
                details={
                    "message": f"Counter mismatch detected during {error.details.get('operation')}",
                    "error": error.message,
                    **snapshot.to_dict(),
                },
                episode_id=episode_id,
                fingerprint=f"drift:{episode_id}:{placement_type}",
            )
        except Exception as alert_error:
            self.ctx.rollback()
            logger.error(f"Failed to file drift alert for {episode_id}/{placement_type}: {alert_error}")

    def _log(
        self,
        operation: str,
        success: bool,
        details: dict | None,
        started: float,
        error: str | None = None,
        level: int | None = None,
    ):
        inventory_ops_logger.log_inventory_operation(
            operation=f"reservation.{operation}",
            success=success,
            tenant_id=self.ctx.tenant_id,
            details=details,
            error=error,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            level=level,
        )


def _outcome_level(error: InventoryError) -> int:
    """Conflicts, expiries and bad input are expected outcomes; lock exhaustion is a warning."""
    if error.retryable:
        return logging.WARNING
    return logging.ERROR if error.http_status >= 500 else logging.INFO
