"""SQLAlchemy models for database schema."""

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    DECIMAL,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from src.core.database.json_type import JSONType
from src.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def _new_id(prefix: str):
    return lambda: f"{prefix}_{uuid4().hex[:16]}"


class PlacementType(str, Enum):
    """Ad placement within an episode. Values are stored verbatim in rows."""

    PRE_ROLL = "pre_roll"
    MID_ROLL = "mid_roll"
    POST_ROLL = "post_roll"

    @classmethod
    def parse(cls, value: "str | PlacementType") -> "PlacementType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError:
            allowed = ", ".join(p.value for p in cls)
            raise ValidationError(
                f"Invalid placement type '{value}'. Must be one of: {allowed}",
                details={"placement_type": value},
            ) from None


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    EXPIRED = "expired"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE_PRESALE = "active_presale"
    IN_RESERVATIONS = "in_reservations"
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class AlertType(str, Enum):
    OVERBOOKING = "overbooking"
    DELETION_IMPACT = "deletion_impact"
    DRIFT = "drift"
    STATUS_INCONSISTENCY = "status_inconsistency"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models using SQLAlchemy 2.0 declarative style."""

    pass


class Tenant(Base):
    __tablename__ = "tenants"

    tenant_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    subdomain: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Per-tenant workflow settings; see WorkflowSettings for the structure and defaults
    workflow_settings: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    slack_webhook_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    users = relationship("User", back_populates="tenant", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_subdomain", "subdomain"),)


class User(Base):
    """A principal. ``master`` is the platform super-admin role."""

    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("user"))
    tenant_id: Mapped[str | None] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=True
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    access_token: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Relationships
    tenant = relationship("Tenant", back_populates="users")

    __table_args__ = (
        CheckConstraint("role IN ('master', 'admin', 'sales', 'producer', 'talent')", name="ck_users_role"),
        UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
        Index("idx_users_tenant", "tenant_id"),
        Index("idx_users_token", "access_token"),
    )

    @property
    def is_master(self) -> bool:
        return self.role == "master"


class Show(Base):
    __tablename__ = "shows"

    show_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("show"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set when an operator asks to delete the show; the audit reports what blocks it
    deletion_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_shows_tenant", "tenant_id"),)


class Episode(Base):
    __tablename__ = "episodes"

    episode_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("ep"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    show_id: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    air_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_episodes_tenant", "tenant_id"),
        Index("idx_episodes_show", "tenant_id", "show_id"),
    )


class EpisodeInventory(Base):
    """Capacity counters for one (episode, placement type).

    The counters are a cache of the Reservation rows; ``recount()`` in the
    inventory ledger recomputes them.
    """

    __tablename__ = "episode_inventory"

    inventory_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    episode_id: Mapped[str] = mapped_column(String(50), nullable=False)
    placement_type: Mapped[str] = mapped_column(String(20), nullable=False)
    total_slots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_slots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    booked_slots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "episode_id", "placement_type", name="uq_episode_inventory_slot"),
        CheckConstraint("placement_type IN ('pre_roll', 'mid_roll', 'post_roll')", name="ck_inventory_placement"),
        CheckConstraint("total_slots >= 0", name="ck_inventory_total_non_negative"),
        CheckConstraint("reserved_slots >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("booked_slots >= 0", name="ck_inventory_booked_non_negative"),
        CheckConstraint("reserved_slots + booked_slots <= total_slots", name="ck_inventory_capacity"),
    )

    @hybrid_property
    def available_slots(self) -> int:
        return self.total_slots - self.reserved_slots - self.booked_slots

    def to_dict(self) -> dict:
        return {
            "episode_id": self.episode_id,
            "placement_type": self.placement_type,
            "total_slots": self.total_slots,
            "reserved_slots": self.reserved_slots,
            "booked_slots": self.booked_slots,
            "available_slots": self.available_slots,
        }


class Campaign(Base):
    __tablename__ = "campaigns"

    campaign_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("camp"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    advertiser_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    # Competitive category used by exclusivity checks
    category_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    stage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=CampaignStatus.DRAFT.value)
    schedule_editable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    budget: Mapped[Decimal | None] = mapped_column(DECIMAL(12, 2), nullable=True)
    rate_card_delta_percent: Mapped[Decimal | None] = mapped_column(DECIMAL(8, 2), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    stage_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("stage >= 0 AND stage <= 100", name="ck_campaigns_stage_range"),
        Index("idx_campaigns_tenant", "tenant_id"),
        Index("idx_campaigns_status", "tenant_id", "status"),
    )


class ScheduledSpot(Base):
    """One line of a campaign schedule: ``quantity`` slots on an episode placement."""

    __tablename__ = "scheduled_spots"

    spot_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("spot"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    campaign_id: Mapped[str] = mapped_column(String(50), nullable=False)
    show_id: Mapped[str] = mapped_column(String(50), nullable=False)
    episode_id: Mapped[str] = mapped_column(String(50), nullable=False)
    placement_type: Mapped[str] = mapped_column(String(20), nullable=False)
    spot_type: Mapped[str] = mapped_column(String(20), nullable=False, default="standard")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    rate_card_price: Mapped[Decimal | None] = mapped_column(DECIMAL(12, 2), nullable=True)
    negotiated_price: Mapped[Decimal | None] = mapped_column(DECIMAL(12, 2), nullable=True)
    air_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_scheduled_spots_quantity_positive"),
        CheckConstraint("spot_type IN ('standard', 'host_read', 'endorsement')", name="ck_scheduled_spots_type"),
        Index("idx_scheduled_spots_campaign", "tenant_id", "campaign_id"),
        Index("idx_scheduled_spots_episode", "tenant_id", "episode_id"),
    )


class Reservation(Base):
    """A hold (or confirmed booking) of slots on an episode placement.

    show/episode/campaign/schedule references are not foreign keys: the
    catalog soft-deletes rows and the reconciliation audit reports
    reservations whose references went missing.
    """

    __tablename__ = "reservations"

    reservation_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("res"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    show_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    episode_id: Mapped[str] = mapped_column(String(50), nullable=False)
    placement_type: Mapped[str] = mapped_column(String(20), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(50), nullable=False)
    schedule_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ReservationStatus.RESERVED.value)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    release_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Relationships
    history = relationship(
        "ReservationStatusHistory",
        back_populates="reservation",
        cascade="all, delete-orphan",
        order_by="ReservationStatusHistory.history_id",
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
        CheckConstraint(
            "status IN ('reserved', 'confirmed', 'released', 'expired')",
            name="ck_reservations_status",
        ),
        Index("idx_reservations_slot", "tenant_id", "episode_id", "placement_type"),
        Index("idx_reservations_campaign", "tenant_id", "campaign_id"),
        Index("idx_reservations_expiry", "status", "expires_at"),
        # At most one live hold per campaign and slot
        Index(
            "uq_reservations_active_hold",
            "tenant_id",
            "campaign_id",
            "episode_id",
            "placement_type",
            unique=True,
            postgresql_where=text("status = 'reserved' AND locked"),
            sqlite_where=text("status = 'reserved' AND locked"),
        ),
    )

    def to_dict(self) -> dict:
        return {
            "reservation_id": self.reservation_id,
            "campaign_id": self.campaign_id,
            "show_id": self.show_id,
            "episode_id": self.episode_id,
            "placement_type": self.placement_type,
            "schedule_id": self.schedule_id,
            "quantity": self.quantity,
            "status": self.status,
            "locked": self.locked,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "release_reason": self.release_reason,
            "created_by": self.created_by,
        }


class ReservationStatusHistory(Base):
    __tablename__ = "reservation_status_history"

    history_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reservation_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("reservations.reservation_id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(String(50), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    changed_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    reservation = relationship("Reservation", back_populates="history")

    __table_args__ = (Index("idx_reservation_history_reservation", "reservation_id"),)


class InventoryAlert(Base):
    __tablename__ = "inventory_alerts"

    alert_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("alert"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    alert_type: Mapped[str] = mapped_column(String(30), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AlertStatus.ACTIVE.value)
    episode_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    show_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    affected_orders: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    affected_schedules: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    # Stable identity of the underlying finding; repeated sweeps update instead of duplicating
    fingerprint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    acknowledged_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "alert_type IN ('overbooking', 'deletion_impact', 'drift', 'status_inconsistency')",
            name="ck_inventory_alerts_type",
        ),
        CheckConstraint("severity IN ('critical', 'high', 'medium', 'low')", name="ck_inventory_alerts_severity"),
        CheckConstraint("status IN ('active', 'acknowledged', 'resolved')", name="ck_inventory_alerts_status"),
        Index("idx_inventory_alerts_status", "tenant_id", "status"),
        Index("idx_inventory_alerts_severity", "severity"),
        Index("idx_inventory_alerts_fingerprint", "tenant_id", "fingerprint"),
    )

    def to_dict(self) -> dict:
        return {
            "alert_id": self.alert_id,
            "alert_type": self.alert_type,
            "severity": self.severity,
            "status": self.status,
            "episode_id": self.episode_id,
            "show_id": self.show_id,
            "affected_orders": self.affected_orders or [],
            "affected_schedules": self.affected_schedules or [],
            "details": self.details or {},
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
        }


class Notification(Base):
    __tablename__ = "notifications"

    notification_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("ntf"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(50), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_notifications_user", "tenant_id", "user_id"),)


class Order(Base):
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("ord"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    campaign_id: Mapped[str] = mapped_column(String(50), nullable=False)
    order_number: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    total_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False, default=Decimal("0"))
    submitted_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_orders_campaign", "tenant_id", "campaign_id"),)


class AdRequest(Base):
    """Production request sent to a show for the spots of one order."""

    __tablename__ = "ad_requests"

    request_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("adreq"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    order_id: Mapped[str] = mapped_column(String(50), ForeignKey("orders.order_id", ondelete="CASCADE"))
    campaign_id: Mapped[str] = mapped_column(String(50), nullable=False)
    show_id: Mapped[str] = mapped_column(String(50), nullable=False)
    spot_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Contract(Base):
    __tablename__ = "contracts"

    contract_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("ctr"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    campaign_id: Mapped[str] = mapped_column(String(50), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    template: Mapped[str] = mapped_column(String(100), nullable=False, default="standard_insertion_order")
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="draft")
    total_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class BillingSchedule(Base):
    __tablename__ = "billing_schedules"

    billing_schedule_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("bill"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    campaign_id: Mapped[str] = mapped_column(String(50), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    invoice_day: Mapped[int] = mapped_column(Integer, nullable=False, default=15)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/Los_Angeles")
    prebill: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    total_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Approval(Base):
    """Talent or admin approval requested by the workflow."""

    __tablename__ = "approvals"

    approval_id: Mapped[str] = mapped_column(String(50), primary_key=True, default=_new_id("appr"))
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    campaign_id: Mapped[str] = mapped_column(String(50), nullable=False)
    approval_type: Mapped[str] = mapped_column(String(20), nullable=False)  # talent, admin
    stage: Mapped[int] = mapped_column(Integer, nullable=False)
    spot_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending, approved, rejected
    requested_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    decided_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("approval_type IN ('talent', 'admin')", name="ck_approvals_type"),
        CheckConstraint("status IN ('pending', 'approved', 'rejected')", name="ck_approvals_status"),
        Index("idx_approvals_campaign", "tenant_id", "campaign_id"),
    )


class WorkflowEffect(Base):
    """Idempotency record for one stage side effect of one campaign."""

    __tablename__ = "workflow_effects"

    effect_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    campaign_id: Mapped[str] = mapped_column(String(50), nullable=False)
    stage: Mapped[int] = mapped_column(Integer, nullable=False)
    effect_name: Mapped[str] = mapped_column(String(50), nullable=False)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "campaign_id", "stage", "effect_name", name="uq_workflow_effects_key"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    log_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Tenant the operation acted on
    tenant_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    # Tenant the actor belongs to; differs from tenant_id for cross-tenant access
    actor_tenant_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    operation: Mapped[str] = mapped_column(String(100), nullable=False)
    principal_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    principal_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index("idx_audit_logs_tenant", "tenant_id"),
        Index("idx_audit_logs_timestamp", "timestamp"),
    )
