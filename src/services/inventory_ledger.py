"""Inventory ledger: the slot counters of each (episode, placement type).

All counter changes go through this module. Each change locks the counter row
(``SELECT ... FOR UPDATE`` with a bounded ``lock_timeout`` on PostgreSQL) and
is applied as a conditional ``UPDATE`` whose ``WHERE`` clause re-checks the
capacity rule, so ``reserved + booked <= total`` holds even if two writers
race past the lock.

The ledger never commits. The caller owns the transaction.
"""

import logging
from dataclasses import dataclass, replace

from sqlalchemy import func
from sqlalchemy.exc import OperationalError

from src.core.config import get_inventory_config
from src.core.database.models import EpisodeInventory, PlacementType, Reservation, ReservationStatus
from src.core.exceptions import Busy, LedgerCorruption, NotFoundError, ValidationError
from src.core.tenant_context import TenantContext

logger = logging.getLogger(__name__)

# PostgreSQL lock_not_available
LOCK_NOT_AVAILABLE = "55P03"
DEADLOCK_DETECTED = "40P01"


@dataclass(frozen=True)
class ReserveResult:
    ok: bool
    remaining: int


@dataclass(frozen=True)
class CounterSnapshot:
    """Cached counters next to the values recomputed from reservation rows."""

    episode_id: str
    placement_type: str
    total_slots: int
    cached_reserved: int
    cached_booked: int
    actual_reserved: int
    actual_booked: int
    repaired: bool = False

    @property
    def drifted(self) -> bool:
        return self.cached_reserved != self.actual_reserved or self.cached_booked != self.actual_booked

    @property
    def overbooked(self) -> bool:
        return self.actual_reserved + self.actual_booked > self.total_slots

    def to_dict(self) -> dict:
        return {
            "episode_id": self.episode_id,
            "placement_type": self.placement_type,
            "total_slots": self.total_slots,
            "cached_reserved": self.cached_reserved,
            "cached_booked": self.cached_booked,
            "actual_reserved": self.actual_reserved,
            "actual_booked": self.actual_booked,
            "drifted": self.drifted,
            "overbooked": self.overbooked,
            "repaired": self.repaired,
        }


def is_lock_contention(error: OperationalError) -> bool:
    """True for lock waits that timed out or deadlocked (PostgreSQL) or a locked database (SQLite)."""
    if getattr(error.orig, "pgcode", None) in (LOCK_NOT_AVAILABLE, DEADLOCK_DETECTED):
        return True
    message = str(error.orig).lower()
    return "database is locked" in message or "lock timeout" in message or "could not obtain lock" in message


class InventoryLedger:
    """Counter operations for one tenant."""

    def __init__(self, ctx: TenantContext):
        self.ctx = ctx

    def try_reserve(self, episode_id: str, placement_type: str | PlacementType, quantity: int) -> ReserveResult:
        """Hold ``quantity`` slots if capacity allows. The only path that increments capacity use."""
        placement = PlacementType.parse(placement_type)
        self._check_quantity(quantity)

        row = self._lock_row(episode_id, placement)
        applied = self._apply(
            row,
            EpisodeInventory.reserved_slots + EpisodeInventory.booked_slots + quantity <= EpisodeInventory.total_slots,
            reserved_slots=EpisodeInventory.reserved_slots + quantity,
        )
        if not applied:
            logger.info(
                f"Capacity exhausted for {episode_id}/{placement.value}: "
                f"requested {quantity}, available {row.available_slots}"
            )
            return ReserveResult(ok=False, remaining=max(row.available_slots, 0))

        logger.debug(f"Reserved {quantity} slot(s) on {episode_id}/{placement.value}")
        return ReserveResult(ok=True, remaining=row.available_slots)

    def release(self, episode_id: str, placement_type: str | PlacementType, quantity: int) -> None:
        """Return held slots. Never clamps: a shortfall is ledger corruption."""
        placement = PlacementType.parse(placement_type)
        self._check_quantity(quantity)

        row = self._lock_row(episode_id, placement)
        applied = self._apply(
            row,
            EpisodeInventory.reserved_slots >= quantity,
            reserved_slots=EpisodeInventory.reserved_slots - quantity,
        )
        if not applied:
            self._corruption("release", row, quantity)

    def confirm(self, episode_id: str, placement_type: str | PlacementType, quantity: int) -> None:
        """Move held slots to booked."""
        placement = PlacementType.parse(placement_type)
        self._check_quantity(quantity)

        row = self._lock_row(episode_id, placement)
        applied = self._apply(
            row,
            EpisodeInventory.reserved_slots >= quantity,
            reserved_slots=EpisodeInventory.reserved_slots - quantity,
            booked_slots=EpisodeInventory.booked_slots + quantity,
        )
        if not applied:
            self._corruption("confirm", row, quantity)

    def unbook(self, episode_id: str, placement_type: str | PlacementType, quantity: int) -> None:
        """Return booked slots of a confirmed reservation that was cancelled."""
        placement = PlacementType.parse(placement_type)
        self._check_quantity(quantity)

        row = self._lock_row(episode_id, placement)
        applied = self._apply(
            row,
            EpisodeInventory.booked_slots >= quantity,
            booked_slots=EpisodeInventory.booked_slots - quantity,
        )
        if not applied:
            self._corruption("unbook", row, quantity)

    def recount(self, episode_id: str, placement_type: str | PlacementType, repair: bool = False) -> CounterSnapshot:
        """Recompute counters from reservation rows.

        Read-only unless ``repair`` is set, in which case the cached counters
        are overwritten with the recomputed values.

        Raises:
            LedgerCorruption: ``repair`` would write counts exceeding the total
        """
        placement = PlacementType.parse(placement_type)
        if repair:
            row = self._lock_row(episode_id, placement)
        else:
            row = self._get_row(episode_id, placement)

        actual_reserved = self._sum_quantity(
            episode_id, placement, Reservation.status == ReservationStatus.RESERVED.value, Reservation.locked.is_(True)
        )
        actual_booked = self._sum_quantity(
            episode_id, placement, Reservation.status == ReservationStatus.CONFIRMED.value
        )

        snapshot = CounterSnapshot(
            episode_id=episode_id,
            placement_type=placement.value,
            total_slots=row.total_slots,
            cached_reserved=row.reserved_slots,
            cached_booked=row.booked_slots,
            actual_reserved=actual_reserved,
            actual_booked=actual_booked,
        )

        if not repair or not snapshot.drifted:
            return snapshot

        if snapshot.overbooked:
            logger.error(
                f"Refusing to repair {episode_id}/{placement.value}: reservations total "
                f"{actual_reserved + actual_booked} exceed {row.total_slots} slots"
            )
            raise LedgerCorruption(
                "Reservations exceed total capacity; manual release required before repair",
                details=snapshot.to_dict(),
            )

        self._apply(row, None, reserved_slots=actual_reserved, booked_slots=actual_booked)
        logger.warning(
            f"Repaired counters for {episode_id}/{placement.value}: reserved "
            f"{snapshot.cached_reserved}->{actual_reserved}, booked {snapshot.cached_booked}->{actual_booked}"
        )
        return replace(snapshot, repaired=True)

    def availability(self, episode_id: str) -> list[dict]:
        """Counters for every placement of an episode, in placement order."""
        rows = self.ctx.all(EpisodeInventory, EpisodeInventory.episode_id == episode_id)
        if not rows:
            raise NotFoundError(
                f"No inventory configured for episode '{episode_id}'", details={"episode_id": episode_id}
            )
        order = {p.value: i for i, p in enumerate(PlacementType)}
        return [row.to_dict() for row in sorted(rows, key=lambda r: order.get(r.placement_type, len(order)))]

    def set_capacity(self, episode_id: str, placement_type: str | PlacementType, total_slots: int) -> EpisodeInventory:
        """Create or resize a counter row. Shrinking below current use is rejected."""
        placement = PlacementType.parse(placement_type)
        if total_slots < 0:
            raise ValidationError("total_slots must not be negative", details={"total_slots": total_slots})

        row = self._lock_row(episode_id, placement, missing_ok=True)
        if row is None:
            row = EpisodeInventory(
                episode_id=episode_id,
                placement_type=placement.value,
                total_slots=total_slots,
                reserved_slots=0,
                booked_slots=0,
                updated_at=self.ctx.now(),
            )
            self.ctx.add(row)
            self.ctx.flush()
            return row

        applied = self._apply(
            row,
            EpisodeInventory.reserved_slots + EpisodeInventory.booked_slots <= total_slots,
            total_slots=total_slots,
        )
        if not applied:
            raise ValidationError(
                f"Cannot shrink {episode_id}/{placement.value} to {total_slots}: "
                f"{row.reserved_slots + row.booked_slots} slot(s) in use",
                details=row.to_dict(),
            )
        return row

    # -- internals -------------------------------------------------------

    def _check_quantity(self, quantity: int) -> None:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer", details={"quantity": quantity})

    def set_lock_timeout(self) -> None:
        """Bound row-lock waits for the rest of the transaction (PostgreSQL only)."""
        if self.ctx.dialect_name == "postgresql":
            timeout_ms = int(get_inventory_config().lock_timeout_ms)
            self.ctx.session.execute(func.set_config("lock_timeout", f"{timeout_ms}ms", True).select())

    def _get_row(self, episode_id: str, placement: PlacementType) -> EpisodeInventory:
        row = self.ctx.first(
            EpisodeInventory,
            EpisodeInventory.episode_id == episode_id,
            EpisodeInventory.placement_type == placement.value,
        )
        if row is None:
            raise NotFoundError(
                f"No {placement.value} inventory for episode '{episode_id}'",
                details={"episode_id": episode_id, "placement_type": placement.value},
            )
        return row

    def _lock_row(self, episode_id: str, placement: PlacementType, missing_ok: bool = False) -> EpisodeInventory:
        try:
            self.set_lock_timeout()
            row = self.ctx.get_for_update(
                EpisodeInventory,
                EpisodeInventory.episode_id == episode_id,
                EpisodeInventory.placement_type == placement.value,
            )
        except OperationalError as e:
            if is_lock_contention(e):
                raise self._busy(e, episode_id, placement.value) from e
            raise

        if row is None and not missing_ok:
            raise NotFoundError(
                f"No {placement.value} inventory for episode '{episode_id}'",
                details={"episode_id": episode_id, "placement_type": placement.value},
            )
        return row

    def _apply(self, row: EpisodeInventory, guard, **values) -> bool:
        """Run a guarded counter ``UPDATE`` and reload the row. Returns False if the guard failed."""
        criteria = [EpisodeInventory.inventory_id == row.inventory_id]
        if guard is not None:
            criteria.append(guard)
        stmt = (
            self.ctx.update(EpisodeInventory, *criteria)
            .values(updated_at=self.ctx.now(), **values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.ctx.session.execute(stmt)
        except OperationalError as e:
            if is_lock_contention(e):
                raise self._busy(e, row.episode_id, row.placement_type) from e
            raise
        self.ctx.session.refresh(row)
        return result.rowcount == 1

    def _sum_quantity(self, episode_id: str, placement: PlacementType, *criteria) -> int:
        stmt = self.ctx.select(Reservation).with_only_columns(func.coalesce(func.sum(Reservation.quantity), 0))
        stmt = stmt.where(
            Reservation.episode_id == episode_id,
            Reservation.placement_type == placement.value,
            *criteria,
        )
        return int(self.ctx.session.execute(stmt).scalar_one())

    def _busy(self, error: OperationalError, episode_id: str, placement_type: str) -> Busy:
        logger.warning(f"Counter row {episode_id}/{placement_type} busy: {error.orig}")
        return Busy(
            "Inventory is busy, please retry",
            details={"episode_id": episode_id, "placement_type": placement_type},
        )

    def _corruption(self, operation: str, row: EpisodeInventory, quantity: int) -> None:
        logger.error(
            f"Ledger corruption on {operation} for {row.episode_id}/{row.placement_type}: "
            f"quantity {quantity}, reserved {row.reserved_slots}, booked {row.booked_slots}, total {row.total_slots}"
        )
        raise LedgerCorruption(
            f"Counter for {row.episode_id}/{row.placement_type} cannot {operation} {quantity} slot(s)",
            details={
                "operation": operation,
                "quantity": quantity,
                "episode_id": row.episode_id,
                "placement_type": row.placement_type,
                "reserved_slots": row.reserved_slots,
                "booked_slots": row.booked_slots,
                "total_slots": row.total_slots,
            },
        )
