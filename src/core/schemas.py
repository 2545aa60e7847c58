"""Pydantic models for HTTP requests and for reports returned by the services.

Request bodies use camelCase keys on the wire; snake_case names are accepted too.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from src.core.exceptions import ValidationError


class ApiModel(BaseModel):
    """Base for request bodies: camelCase aliases, unknown keys rejected."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    @classmethod
    def parse_body(cls, body: Any) -> "ApiModel":
        """Validate a JSON body, raising the domain ValidationError on failure."""
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        try:
            return cls.model_validate(body)
        except PydanticValidationError as e:
            errors = [{"field": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]} for err in e.errors()]
            raise ValidationError("Invalid request body", details={"errors": errors}) from e


# --- Requests ----------------------------------------------------------------


class HoldRequest(ApiModel):
    campaign_id: str = Field(min_length=1)
    episode_id: str = Field(min_length=1)
    placement_type: str = Field(min_length=1)
    quantity: int = Field(default=1, gt=0)
    ttl_hours: float | None = Field(default=None, gt=0)
    schedule_id: str | None = None


class ReleaseRequest(ApiModel):
    reason: str = "released"


class ExtendRequest(ApiModel):
    ttl_hours: float = Field(gt=0)


class AlertActionRequest(ApiModel):
    alert_id: str = Field(min_length=1)
    action: Literal["acknowledge", "resolve"]
    resolution: str | None = None


class CapacityRequest(ApiModel):
    placement_type: str = Field(min_length=1)
    total_slots: int = Field(ge=0)


class RepairCounterRequest(ApiModel):
    episode_id: str = Field(min_length=1)
    placement_type: str = Field(min_length=1)


class ReleaseStaleRequest(ApiModel):
    reservation_ids: list[str] = Field(default_factory=list)
    release_all_orphaned: bool = False
    dry_run: bool = True


class SimulateTransitionRequest(ApiModel):
    campaign_id: str = Field(min_length=1)
    target_stage: int = Field(ge=0, le=100)
    dry_run: bool = True


class ApprovalDecisionRequest(ApiModel):
    campaign_id: str = Field(min_length=1)
    approved: bool
    reason: str | None = None


class CancelCampaignRequest(ApiModel):
    campaign_id: str = Field(min_length=1)
    status: Literal["cancelled", "rejected"] = "cancelled"


# --- Stage engine ------------------------------------------------------------


class EffectRecord(BaseModel):
    """One side effect of a transition, in execution order."""

    stage: int
    name: str
    status: Literal["applied", "skipped", "planned"]
    result: dict[str, Any] = Field(default_factory=dict)


class TransitionResult(BaseModel):
    campaign_id: str
    previous_stage: int
    current_stage: int
    status: str
    effects: list[EffectRecord] = Field(default_factory=list)
    notifications: list[dict[str, Any]] = Field(default_factory=list)
    dry_run: bool = False

    @property
    def effect_names(self) -> list[str]:
        return [e.name for e in self.effects]


# --- Reconciliation ----------------------------------------------------------


class InvisibleCampaign(BaseModel):
    campaign_id: str
    name: str
    status: str
    stage: int
    reasons: list[str]
    has_schedule: bool
    has_order: bool
    has_reservation: bool


class OrphanedOrder(BaseModel):
    order_id: str
    campaign_id: str
    status: str
    reason: str


class DanglingReservation(BaseModel):
    reservation_id: str
    campaign_id: str
    show_id: str | None
    episode_id: str
    placement_type: str
    status: str
    quantity: int
    reasons: list[str]
    expires_at: datetime | None = None


class InventoryMismatch(BaseModel):
    episode_id: str
    show_id: str | None
    placement_type: str
    total_slots: int
    cached_reserved: int
    cached_booked: int
    actual_reserved: int
    actual_booked: int
    drifted: bool
    overbooked: bool
    affected_orders: list[str] = Field(default_factory=list)
    affected_schedules: list[str] = Field(default_factory=list)


class DeletionBlocker(BaseModel):
    kind: Literal["reservation", "episode", "scheduled_spot"]
    id: str
    stale: bool
    recommended_action: str
    details: dict[str, Any] = Field(default_factory=dict)


class BlockedDeletion(BaseModel):
    show_id: str
    show_name: str
    deletion_requested_at: datetime | None
    blockers: list[DeletionBlocker]

    @property
    def stale_count(self) -> int:
        return sum(1 for b in self.blockers if b.stale)


class StatusInconsistency(BaseModel):
    campaign_id: str
    name: str
    stage: int
    status: str
    issue: str
    recommended_action: str
    days_in_stage: float | None = None


class AuditReport(BaseModel):
    """Findings of one read-only audit pass over a tenant."""

    tenant_id: str
    timestamp: datetime
    execution_time_ms: float = 0.0
    invisible_campaigns: list[InvisibleCampaign] = Field(default_factory=list)
    orphaned_orders: list[OrphanedOrder] = Field(default_factory=list)
    dangling_reservations: list[DanglingReservation] = Field(default_factory=list)
    inventory_mismatches: list[InventoryMismatch] = Field(default_factory=list)
    blocked_deletions: list[BlockedDeletion] = Field(default_factory=list)
    status_inconsistencies: list[StatusInconsistency] = Field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "invisible_campaigns": len(self.invisible_campaigns),
            "orphaned_orders": len(self.orphaned_orders),
            "dangling_reservations": len(self.dangling_reservations),
            "inventory_mismatches": len(self.inventory_mismatches),
            "blocked_deletions": len(self.blocked_deletions),
            "status_inconsistencies": len(self.status_inconsistencies),
        }

    def to_response(self) -> dict[str, Any]:
        return {
            "summary": self.summary(),
            "details": self.model_dump(
                mode="json",
                include={
                    "invisible_campaigns",
                    "orphaned_orders",
                    "dangling_reservations",
                    "inventory_mismatches",
                    "blocked_deletions",
                    "status_inconsistencies",
                },
            ),
            "metadata": {
                "tenant_id": self.tenant_id,
                "timestamp": self.timestamp.isoformat(),
                "execution_time_ms": self.execution_time_ms,
            },
        }


class SweepResult(BaseModel):
    tenant_id: str
    expired: list[str] = Field(default_factory=list)
    expire_failures: list[dict[str, Any]] = Field(default_factory=list)
    alerts_created: list[str] = Field(default_factory=list)
    alerts_refreshed: list[str] = Field(default_factory=list)
    report: AuditReport

    def to_response(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "expired": self.expired,
            "expire_failures": self.expire_failures,
            "alerts_created": self.alerts_created,
            "alerts_refreshed": self.alerts_refreshed,
            "summary": self.report.summary(),
        }


class ReleaseStaleResult(BaseModel):
    dry_run: bool
    candidates: list[str] = Field(default_factory=list)
    released: list[str] = Field(default_factory=list)
    skipped: list[dict[str, Any]] = Field(default_factory=list)
