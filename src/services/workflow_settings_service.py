"""Per-tenant workflow settings.

Settings live in ``tenants.workflow_settings`` as JSON and are validated with
pydantic. Missing keys take the defaults below. Loaded settings are cached per
tenant for ``INVENTORY_SETTINGS_CACHE_SECONDS`` (60 by default).
"""

import logging
import threading
import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from src.core.config import get_inventory_config
from src.core.exceptions import ValidationError
from src.core.tenant_context import TenantContext

logger = logging.getLogger(__name__)


class TalentApprovalSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    types: list[str] = Field(default_factory=lambda: ["host_read", "endorsement"])
    # Role notified when a show has no talent user
    fallback_role: str = "producer"


class RateCardSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    threshold_percent: float = Field(default=10, ge=0, le=100)
    require_approval_above: float = Field(default=20, ge=0, le=100)


class ExclusivitySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mode: Literal["off", "warn", "block"] = "warn"
    buffer_days: int = Field(default=30, ge=0, le=365)


class BillingSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    invoice_day: int = Field(default=15, ge=1, le=28)
    timezone: str = "America/Los_Angeles"
    prebill: bool = True


class NotificationSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    in_app: bool = True
    slack: bool = True


class WorkflowSettings(BaseModel):
    """Workflow behaviour for one tenant."""

    model_config = ConfigDict(extra="ignore")

    reservation_ttl_hours: int = Field(default=72, gt=0, le=24 * 90)
    auto_reserve: bool = True
    admin_approval_required: bool = True
    admin_approval_roles: list[str] = Field(default_factory=lambda: ["admin", "master"])
    talent_approval: TalentApprovalSettings = Field(default_factory=TalentApprovalSettings)
    rate_card: RateCardSettings = Field(default_factory=RateCardSettings)
    exclusivity: ExclusivitySettings = Field(default_factory=ExclusivitySettings)
    contracts_auto_generate: bool = True
    contract_template: str = "standard_insertion_order"
    billing: BillingSettings = Field(default_factory=BillingSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    degrade_conflicts_to_alerts: bool = False
    # Days a campaign may sit at a checkpoint before the audit flags it
    status_sla_days: dict[int, int] = Field(default_factory=lambda: {90: 3, 65: 7, 35: 14})

    @field_validator("status_sla_days")
    @classmethod
    def validate_sla(cls, v: dict[int, int]) -> dict[int, int]:
        for stage, days in v.items():
            if not 0 <= stage <= 100 or days <= 0:
                raise ValueError(f"invalid SLA entry {stage}: {days}")
        return v

    @property
    def exclusivity_mode(self) -> str:
        return self.exclusivity.mode

    @property
    def rate_delta_threshold_percent(self) -> float:
        return self.rate_card.threshold_percent


_cache: dict[str, tuple[float, WorkflowSettings]] = {}
_cache_lock = threading.Lock()


def invalidate_settings_cache(tenant_id: str | None = None) -> None:
    """Drop cached settings for one tenant, or for all tenants."""
    with _cache_lock:
        if tenant_id is None:
            _cache.clear()
        else:
            _cache.pop(tenant_id, None)


def parse_settings(raw: dict[str, Any] | None) -> WorkflowSettings:
    """Validate stored settings, raising ValidationError with the offending fields."""
    try:
        return WorkflowSettings.model_validate(raw or {})
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid workflow settings",
            details={"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]},
        ) from e


class WorkflowSettingsService:
    """Loads and updates the workflow settings of the context's tenant."""

    def __init__(self, ctx: TenantContext):
        self.ctx = ctx

    def get(self) -> WorkflowSettings:
        tenant_id = self.ctx.tenant_id
        ttl = get_inventory_config().settings_cache_seconds
        now = time.monotonic()

        with _cache_lock:
            cached = _cache.get(tenant_id)
            if cached and now - cached[0] < ttl:
                return cached[1]

        try:
            settings = parse_settings(self.ctx.tenant.workflow_settings)
        except ValidationError:
            # Stored settings that no longer validate fall back to defaults
            logger.error(f"Invalid workflow settings stored for tenant {tenant_id}; using defaults", exc_info=True)
            settings = WorkflowSettings()

        with _cache_lock:
            _cache[tenant_id] = (now, settings)
        return settings

    def update(self, changes: dict[str, Any]) -> WorkflowSettings:
        """Merge ``changes`` into the stored settings and commit."""
        current = self.get().model_dump(mode="json")
        merged = _deep_merge(current, changes)
        settings = parse_settings(merged)

        self.ctx.tenant.workflow_settings = settings.model_dump(mode="json")
        self.ctx.commit()
        invalidate_settings_cache(self.ctx.tenant_id)
        logger.info(f"Updated workflow settings for tenant {self.ctx.tenant_id}: {sorted(changes)}")
        return settings


def _deep_merge(base: dict, changes: dict) -> dict:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
