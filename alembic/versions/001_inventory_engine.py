"""Inventory engine schema

Revision ID: 001_inventory_engine
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_inventory_engine"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSON = sa.JSON(none_as_null=True).with_variant(postgresql.JSONB(none_as_null=True), "postgresql")
TZ = sa.DateTime(timezone=True)


def _tenant_fk():
    return sa.Column(
        "tenant_id", sa.String(50), sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("tenant_id", sa.String(50), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("subdomain", sa.String(100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("workflow_settings", JSON, nullable=True),
        sa.Column("slack_webhook_url", sa.String(500), nullable=True),
        sa.Column("created_at", TZ, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", TZ, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_subdomain", "tenants", ["subdomain"])

    op.create_table(
        "users",
        sa.Column("user_id", sa.String(50), primary_key=True),
        sa.Column(
            "tenant_id", sa.String(50), sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=True
        ),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("access_token", sa.String(255), nullable=True, unique=True),
        sa.Column("created_at", TZ, server_default=sa.func.now()),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.CheckConstraint("role IN ('master', 'admin', 'sales', 'producer', 'talent')", name="ck_users_role"),
        sa.UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
    )
    op.create_index("idx_users_tenant", "users", ["tenant_id"])
    op.create_index("idx_users_token", "users", ["access_token"])

    op.create_table(
        "shows",
        sa.Column("show_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("deleted_at", TZ, nullable=True),
        sa.Column("deletion_requested_at", TZ, nullable=True),
        sa.Column("created_at", TZ, server_default=sa.func.now()),
    )
    op.create_index("idx_shows_tenant", "shows", ["tenant_id"])

    op.create_table(
        "episodes",
        sa.Column("episode_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("show_id", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("air_date", TZ, nullable=True),
        sa.Column("deleted_at", TZ, nullable=True),
        sa.Column("created_at", TZ, server_default=sa.func.now()),
    )
    op.create_index("idx_episodes_tenant", "episodes", ["tenant_id"])
    op.create_index("idx_episodes_show", "episodes", ["tenant_id", "show_id"])

    op.create_table(
        "episode_inventory",
        sa.Column("inventory_id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column("episode_id", sa.String(50), nullable=False),
        sa.Column("placement_type", sa.String(20), nullable=False),
        sa.Column("total_slots", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_slots", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("booked_slots", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", TZ, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "episode_id", "placement_type", name="uq_episode_inventory_slot"),
        sa.CheckConstraint("placement_type IN ('pre_roll', 'mid_roll', 'post_roll')", name="ck_inventory_placement"),
        sa.CheckConstraint("total_slots >= 0", name="ck_inventory_total_non_negative"),
        sa.CheckConstraint("reserved_slots >= 0", name="ck_inventory_reserved_non_negative"),
        sa.CheckConstraint("booked_slots >= 0", name="ck_inventory_booked_non_negative"),
        sa.CheckConstraint("reserved_slots + booked_slots <= total_slots", name="ck_inventory_capacity"),
    )

    op.create_table(
        "campaigns",
        sa.Column("campaign_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("advertiser_id", sa.String(50), nullable=True),
        sa.Column("category_id", sa.String(50), nullable=True),
        sa.Column("stage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(30), nullable=False, server_default="draft"),
        sa.Column("schedule_editable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("budget", sa.DECIMAL(12, 2), nullable=True),
        sa.Column("rate_card_delta_percent", sa.DECIMAL(8, 2), nullable=True),
        sa.Column("created_by", sa.String(50), nullable=True),
        sa.Column("stage_changed_at", TZ, nullable=True),
        sa.Column("deleted_at", TZ, nullable=True),
        sa.Column("created_at", TZ, server_default=sa.func.now()),
        sa.Column("updated_at", TZ, server_default=sa.func.now()),
        sa.CheckConstraint("stage >= 0 AND stage <= 100", name="ck_campaigns_stage_range"),
    )
    op.create_index("idx_campaigns_tenant", "campaigns", ["tenant_id"])
    op.create_index("idx_campaigns_status", "campaigns", ["tenant_id", "status"])

    op.create_table(
        "scheduled_spots",
        sa.Column("spot_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("campaign_id", sa.String(50), nullable=False),
        sa.Column("show_id", sa.String(50), nullable=False),
        sa.Column("episode_id", sa.String(50), nullable=False),
        sa.Column("placement_type", sa.String(20), nullable=False),
        sa.Column("spot_type", sa.String(20), nullable=False, server_default="standard"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("rate_card_price", sa.DECIMAL(12, 2), nullable=True),
        sa.Column("negotiated_price", sa.DECIMAL(12, 2), nullable=True),
        sa.Column("air_date", TZ, nullable=True),
        sa.Column("created_at", TZ, server_default=sa.func.now()),
        sa.CheckConstraint("quantity > 0", name="ck_scheduled_spots_quantity_positive"),
        sa.CheckConstraint("spot_type IN ('standard', 'host_read', 'endorsement')", name="ck_scheduled_spots_type"),
    )
    op.create_index("idx_scheduled_spots_campaign", "scheduled_spots", ["tenant_id", "campaign_id"])
    op.create_index("idx_scheduled_spots_episode", "scheduled_spots", ["tenant_id", "episode_id"])

    op.create_table(
        "reservations",
        sa.Column("reservation_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("show_id", sa.String(50), nullable=True),
        sa.Column("episode_id", sa.String(50), nullable=False),
        sa.Column("placement_type", sa.String(20), nullable=False),
        sa.Column("campaign_id", sa.String(50), nullable=False),
        sa.Column("schedule_id", sa.String(50), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(20), nullable=False, server_default="reserved"),
        sa.Column("expires_at", TZ, nullable=True),
        sa.Column("locked", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(50), nullable=True),
        sa.Column("created_at", TZ, server_default=sa.func.now()),
        sa.Column("updated_at", TZ, nullable=True),
        sa.Column("confirmed_at", TZ, nullable=True),
        sa.Column("released_at", TZ, nullable=True),
        sa.Column("release_reason", sa.String(255), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
        sa.CheckConstraint(
            "status IN ('reserved', 'confirmed', 'released', 'expired')", name="ck_reservations_status"
        ),
    )
    op.create_index("idx_reservations_slot", "reservations", ["tenant_id", "episode_id", "placement_type"])
    op.create_index("idx_reservations_campaign", "reservations", ["tenant_id", "campaign_id"])
    op.create_index("idx_reservations_expiry", "reservations", ["status", "expires_at"])
    op.create_index(
        "uq_reservations_active_hold",
        "reservations",
        ["tenant_id", "campaign_id", "episode_id", "placement_type"],
        unique=True,
        postgresql_where=sa.text("status = 'reserved' AND locked"),
        sqlite_where=sa.text("status = 'reserved' AND locked"),
    )

    op.create_table(
        "reservation_status_history",
        sa.Column("history_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "reservation_id",
            sa.String(50),
            sa.ForeignKey("reservations.reservation_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(50), nullable=False),
        sa.Column("from_status", sa.String(20), nullable=True),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("changed_by", sa.String(50), nullable=True),
        sa.Column("changed_at", TZ, nullable=False),
    )
    op.create_index("idx_reservation_history_reservation", "reservation_status_history", ["reservation_id"])

    op.create_table(
        "inventory_alerts",
        sa.Column("alert_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("alert_type", sa.String(30), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("episode_id", sa.String(50), nullable=True),
        sa.Column("show_id", sa.String(50), nullable=True),
        sa.Column("affected_orders", JSON, nullable=False),
        sa.Column("affected_schedules", JSON, nullable=False),
        sa.Column("details", JSON, nullable=False),
        sa.Column("fingerprint", sa.String(255), nullable=True),
        sa.Column("acknowledged_by", sa.String(50), nullable=True),
        sa.Column("acknowledged_at", TZ, nullable=True),
        sa.Column("resolved_by", sa.String(50), nullable=True),
        sa.Column("resolved_at", TZ, nullable=True),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("last_seen_at", TZ, nullable=True),
        sa.CheckConstraint(
            "alert_type IN ('overbooking', 'deletion_impact', 'drift', 'status_inconsistency')",
            name="ck_inventory_alerts_type",
        ),
        sa.CheckConstraint("severity IN ('critical', 'high', 'medium', 'low')", name="ck_inventory_alerts_severity"),
        sa.CheckConstraint("status IN ('active', 'acknowledged', 'resolved')", name="ck_inventory_alerts_status"),
    )
    op.create_index("idx_inventory_alerts_status", "inventory_alerts", ["tenant_id", "status"])
    op.create_index("idx_inventory_alerts_severity", "inventory_alerts", ["severity"])
    op.create_index("idx_inventory_alerts_fingerprint", "inventory_alerts", ["tenant_id", "fingerprint"])

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("user_id", sa.String(50), nullable=False),
        sa.Column("notification_type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", JSON, nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", TZ, nullable=False),
    )
    op.create_index("idx_notifications_user", "notifications", ["tenant_id", "user_id"])

    op.create_table(
        "orders",
        sa.Column("order_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("campaign_id", sa.String(50), nullable=False),
        sa.Column("order_number", sa.String(50), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("total_amount", sa.DECIMAL(12, 2), nullable=False, server_default="0"),
        sa.Column("submitted_by", sa.String(50), nullable=True),
        sa.Column("created_at", TZ, nullable=False),
    )
    op.create_index("idx_orders_campaign", "orders", ["tenant_id", "campaign_id"])

    op.create_table(
        "ad_requests",
        sa.Column("request_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("order_id", sa.String(50), sa.ForeignKey("orders.order_id", ondelete="CASCADE")),
        sa.Column("campaign_id", sa.String(50), nullable=False),
        sa.Column("show_id", sa.String(50), nullable=False),
        sa.Column("spot_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("created_at", TZ, nullable=False),
    )

    op.create_table(
        "contracts",
        sa.Column("contract_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("campaign_id", sa.String(50), nullable=False),
        sa.Column("order_id", sa.String(50), nullable=True),
        sa.Column("template", sa.String(100), nullable=False, server_default="standard_insertion_order"),
        sa.Column("status", sa.String(30), nullable=False, server_default="draft"),
        sa.Column("total_amount", sa.DECIMAL(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", TZ, nullable=False),
    )

    op.create_table(
        "billing_schedules",
        sa.Column("billing_schedule_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("campaign_id", sa.String(50), nullable=False),
        sa.Column("order_id", sa.String(50), nullable=True),
        sa.Column("invoice_day", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="America/Los_Angeles"),
        sa.Column("prebill", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("total_amount", sa.DECIMAL(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", TZ, nullable=False),
    )

    op.create_table(
        "approvals",
        sa.Column("approval_id", sa.String(50), primary_key=True),
        _tenant_fk(),
        sa.Column("campaign_id", sa.String(50), nullable=False),
        sa.Column("approval_type", sa.String(20), nullable=False),
        sa.Column("stage", sa.Integer(), nullable=False),
        sa.Column("spot_id", sa.String(50), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("requested_by", sa.String(50), nullable=True),
        sa.Column("decided_by", sa.String(50), nullable=True),
        sa.Column("decided_at", TZ, nullable=True),
        sa.Column("details", JSON, nullable=True),
        sa.Column("created_at", TZ, nullable=False),
        sa.CheckConstraint("approval_type IN ('talent', 'admin')", name="ck_approvals_type"),
        sa.CheckConstraint("status IN ('pending', 'approved', 'rejected')", name="ck_approvals_status"),
    )
    op.create_index("idx_approvals_campaign", "approvals", ["tenant_id", "campaign_id"])

    op.create_table(
        "workflow_effects",
        sa.Column("effect_id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column("campaign_id", sa.String(50), nullable=False),
        sa.Column("stage", sa.Integer(), nullable=False),
        sa.Column("effect_name", sa.String(50), nullable=False),
        sa.Column("result", JSON, nullable=True),
        sa.Column("created_at", TZ, nullable=False),
        sa.UniqueConstraint("tenant_id", "campaign_id", "stage", "effect_name", name="uq_workflow_effects_key"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("log_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(50), nullable=True),
        sa.Column("actor_tenant_id", sa.String(50), nullable=True),
        sa.Column("timestamp", TZ, nullable=False),
        sa.Column("operation", sa.String(100), nullable=False),
        sa.Column("principal_id", sa.String(50), nullable=True),
        sa.Column("principal_name", sa.String(255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("details", JSON, nullable=True),
    )
    op.create_index("idx_audit_logs_tenant", "audit_logs", ["tenant_id"])
    op.create_index("idx_audit_logs_timestamp", "audit_logs", ["timestamp"])


def downgrade() -> None:
    for table in (
        "audit_logs",
        "workflow_effects",
        "approvals",
        "billing_schedules",
        "contracts",
        "ad_requests",
        "orders",
        "notifications",
        "inventory_alerts",
        "reservation_status_history",
        "reservations",
        "scheduled_spots",
        "campaigns",
        "episode_inventory",
        "episodes",
        "shows",
        "users",
        "tenants",
    ):
        op.drop_table(table)
