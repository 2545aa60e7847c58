"""Integration tests for campaign stage transitions and their side effects."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from src.core.config import reset_config
from src.core.database.models import (
    AdRequest,
    Approval,
    BillingSchedule,
    Campaign,
    Contract,
    Order,
    Reservation,
    WorkflowEffect,
)
from src.core.exceptions import ConflictError, ForbiddenError, ValidationError
from src.services.reservation_service import ReservationService
from src.services.stage_engine import StageEngine
from src.services.workflow_settings_service import WorkflowSettingsService
from tests.fixtures import CampaignFactory, SpotFactory
from tests.utils.database_helpers import (
    alerts_for,
    assert_counter_matches_reservations,
    notifications_for,
    read_counter,
)


def _count(session, model, **filters) -> int:
    session.expire_all()
    return session.execute(select(func.count()).select_from(model).filter_by(**filters)).scalar_one()


def _campaign(session, campaign_id) -> Campaign:
    session.expire_all()
    return session.get(Campaign, campaign_id)


def _reservations(session, campaign_id, status=None) -> list[Reservation]:
    session.expire_all()
    stmt = select(Reservation).filter_by(campaign_id=campaign_id)
    if status:
        stmt = stmt.filter_by(status=status)
    return list(session.scalars(stmt))


def _effects(result) -> list[tuple[int, str, str]]:
    return [(e.stage, e.name, e.status) for e in result.effects]


@pytest.fixture
def scheduled(db_session, campaign, episode):
    """Two discounted mid-roll spots and one host-read pre-roll."""
    SpotFactory.create(db_session, campaign, episode, "mid_roll", quantity=2, negotiated_price="400.00")
    SpotFactory.create(db_session, campaign, episode, "pre_roll", spot_type="host_read")
    return campaign


@pytest.fixture
def engine(admin_ctx):
    return StageEngine(admin_ctx)


def _advance_to(engine, campaign_id, *stages):
    return [engine.transition(campaign_id, stage) for stage in stages]


class TestForwardTransitions:
    def test_checkpoint_steps_run_in_order(self, engine, db_session, admin_user, scheduled, episode):
        r10, r35, r65, r90 = _advance_to(engine, scheduled.campaign_id, 10, 35, 65, 90)

        assert _effects(r10) == [(10, "enable_schedule_builder", "applied")]
        assert _effects(r35) == [
            (10, "enable_schedule_builder", "skipped"),
            (35, "validate_schedule", "applied"),
            (35, "track_rate_card_delta", "applied"),
        ]
        assert r35.effects[2].result["delta_percent"] == pytest.approx(-13.33)
        assert r35.effects[2].result["exceeds_threshold"] is True
        assert [e.name for e in r65.effects if e.status == "applied"] == [
            "request_talent_approval",
            "check_exclusivity",
        ]
        assert r90.current_stage == 90
        assert r90.status == "in_reservations"

        reserve = next(e for e in r90.effects if e.name == "reserve_inventory")
        assert len(reserve.result["held"]) == 2
        assert read_counter(db_session, episode.episode_id, "mid_roll").reserved_slots == 2
        assert read_counter(db_session, episode.episode_id, "pre_roll").reserved_slots == 1
        assert _count(db_session, Approval, campaign_id=scheduled.campaign_id, approval_type="admin") == 1
        assert _count(db_session, Approval, campaign_id=scheduled.campaign_id, approval_type="talent") == 1
        assert notifications_for(db_session, admin_user.user_id, "admin_approval_requested")
        assert notifications_for(db_session, admin_user.user_id, "rate_delta_exceeded")

    def test_stage_status_follows_checkpoints(self, engine, db_session, scheduled):
        engine.transition(scheduled.campaign_id, 20)

        stored = _campaign(db_session, scheduled.campaign_id)
        assert stored.stage == 20
        assert stored.status == "active_presale"
        assert stored.schedule_editable is True

    def test_full_stage_needs_admin_approval(self, engine, db_session, scheduled):
        _advance_to(engine, scheduled.campaign_id, 10, 35, 65, 90)

        with pytest.raises(ForbiddenError, match="Admin approval"):
            engine.transition(scheduled.campaign_id, 100)

        assert _campaign(db_session, scheduled.campaign_id).stage == 90
        assert _count(db_session, Order, campaign_id=scheduled.campaign_id) == 0

    def test_approved_campaign_books_inventory(self, engine, db_session, sales_user, scheduled, episode):
        _advance_to(engine, scheduled.campaign_id, 10, 35, 65, 90)
        decision = engine.decide_admin_approval(scheduled.campaign_id, approved=True)

        result = engine.transition(scheduled.campaign_id, 100)

        assert decision["decision"] == "approved"
        assert result.status == "approved"
        assert [e.name for e in result.effects if e.stage == 100] == [
            "confirm_reservations",
            "create_order",
            "generate_ad_requests",
            "generate_contract",
            "create_billing_schedule",
        ]
        assert len(_reservations(db_session, scheduled.campaign_id, status="confirmed")) == 2
        mid = read_counter(db_session, episode.episode_id, "mid_roll")
        assert (mid.reserved_slots, mid.booked_slots) == (0, 2)
        assert_counter_matches_reservations(db_session, episode.episode_id, "pre_roll")

        order = db_session.scalars(select(Order).filter_by(campaign_id=scheduled.campaign_id)).one()
        assert order.total_amount == Decimal("1300.00")
        assert order.status == "confirmed"
        assert _count(db_session, AdRequest, order_id=order.order_id) == 1
        assert _count(db_session, Contract, campaign_id=scheduled.campaign_id) == 1
        assert _count(db_session, BillingSchedule, campaign_id=scheduled.campaign_id) == 1
        assert notifications_for(db_session, sales_user.user_id, "campaign_approved")

    def test_repeating_a_transition_skips_recorded_steps(self, engine, db_session, scheduled):
        _advance_to(engine, scheduled.campaign_id, 10, 35, 65, 90)
        engine.decide_admin_approval(scheduled.campaign_id, approved=True)
        engine.transition(scheduled.campaign_id, 100)

        again = engine.transition(scheduled.campaign_id, 100)

        assert {e.status for e in again.effects} == {"skipped"}
        assert _count(db_session, Order, campaign_id=scheduled.campaign_id) == 1
        assert _count(db_session, Contract, campaign_id=scheduled.campaign_id) == 1

    def test_failed_step_resumes_where_it_stopped(self, engine, db_session, campaign, episode):
        with pytest.raises(ValidationError, match="no scheduled spots"):
            engine.transition(campaign.campaign_id, 35)

        assert _campaign(db_session, campaign.campaign_id).stage == 0
        assert _count(db_session, WorkflowEffect, campaign_id=campaign.campaign_id) == 1

        SpotFactory.create(db_session, campaign, episode)
        result = engine.transition(campaign.campaign_id, 35)

        assert _effects(result)[0] == (10, "enable_schedule_builder", "skipped")
        assert result.current_stage == 35

    @pytest.mark.parametrize("stage", [-1, 101, "50"])
    def test_target_stage_bounds(self, engine, campaign, stage):
        with pytest.raises(ValidationError):
            engine.transition(campaign.campaign_id, stage)


class TestDryRun:
    def test_dry_run_plans_without_writing(self, engine, db_session, scheduled, episode):
        result = engine.transition(scheduled.campaign_id, 90, dry_run=True)

        assert result.dry_run is True
        assert result.current_stage == 90
        assert {e.status for e in result.effects} == {"planned"}
        assert "admin_approval_requested" in [n["type"] for n in result.notifications]

        stored = _campaign(db_session, scheduled.campaign_id)
        assert (stored.stage, stored.status) == (0, "draft")
        assert _reservations(db_session, scheduled.campaign_id) == []
        assert read_counter(db_session, episode.episode_id).reserved_slots == 0
        assert _count(db_session, WorkflowEffect, campaign_id=scheduled.campaign_id) == 0
        assert _count(db_session, Approval, campaign_id=scheduled.campaign_id) == 0

    def test_dry_run_surfaces_conflicts(self, engine, db_session, tenant, scheduled, episode):
        rival = CampaignFactory.create(db_session, tenant.tenant_id, name="Rival")
        ReservationService(engine.ctx).hold(rival.campaign_id, episode.episode_id, "mid_roll", 2)

        with pytest.raises(ConflictError):
            engine.transition(scheduled.campaign_id, 90, dry_run=True)

        assert read_counter(db_session, episode.episode_id).reserved_slots == 2


class TestConflicts:
    @pytest.fixture
    def rival_hold(self, admin_ctx, db_session, tenant, episode):
        rival = CampaignFactory.create(db_session, tenant.tenant_id, name="Rival")
        return ReservationService(admin_ctx).hold(rival.campaign_id, episode.episode_id, "mid_roll", 2)

    def test_conflict_aborts_the_whole_step(self, engine, db_session, scheduled, episode, rival_hold):
        _advance_to(engine, scheduled.campaign_id, 10, 35, 65)

        with pytest.raises(ConflictError) as exc_info:
            engine.transition(scheduled.campaign_id, 90)

        assert exc_info.value.remaining == 1
        assert _campaign(db_session, scheduled.campaign_id).stage == 65
        assert _reservations(db_session, scheduled.campaign_id) == []
        assert read_counter(db_session, episode.episode_id, "pre_roll").reserved_slots == 0

    def test_tenant_setting_degrades_conflicts_to_alerts(
        self, engine, admin_ctx, db_session, tenant, scheduled, episode, rival_hold
    ):
        WorkflowSettingsService(admin_ctx).update({"degrade_conflicts_to_alerts": True})

        result = engine.transition(scheduled.campaign_id, 90)

        reserve = next(e for e in result.effects if e.name == "reserve_inventory")
        assert reserve.result["conflicts"] == [
            {"episode_id": episode.episode_id, "placement_type": "mid_roll", "requested": 2, "remaining": 1}
        ]
        assert len(reserve.result["held"]) == 1
        assert result.current_stage == 90
        alerts = alerts_for(db_session, tenant.tenant_id, alert_type="overbooking")
        assert [a.fingerprint for a in alerts] == [
            f"overbooking:{scheduled.campaign_id}:{episode.episode_id}:mid_roll"
        ]
        assert_counter_matches_reservations(db_session, episode.episode_id)

    def test_platform_flag_degrades_conflicts(self, monkeypatch, engine, db_session, tenant, scheduled, rival_hold):
        monkeypatch.setenv("INVENTORY_DEGRADE_CONFLICTS_TO_ALERTS", "true")
        reset_config()

        result = engine.transition(scheduled.campaign_id, 90)

        assert result.current_stage == 90
        assert len(alerts_for(db_session, tenant.tenant_id, alert_type="overbooking")) == 1


class TestRegressionAndDecisions:
    def test_moving_back_releases_holds_and_clears_keys(self, engine, db_session, scheduled, episode):
        _advance_to(engine, scheduled.campaign_id, 10, 35, 65, 90)

        result = engine.transition(scheduled.campaign_id, 35)

        released = next(e for e in result.effects if e.name == "release_reservations")
        cleared = next(e for e in result.effects if e.name == "clear_idempotency_keys")
        assert len(released.result["released"]) == 2
        assert sorted(cleared.result["cleared"]) == [
            "65:check_exclusivity",
            "65:request_talent_approval",
            "90:request_admin_approval",
            "90:reserve_inventory",
        ]
        stored = _campaign(db_session, scheduled.campaign_id)
        assert (stored.stage, stored.status) == (35, "active_presale")
        assert read_counter(db_session, episode.episode_id).reserved_slots == 0

        again = engine.transition(scheduled.campaign_id, 90)
        reserve = next(e for e in again.effects if e.name == "reserve_inventory")
        assert reserve.status == "applied"
        assert len(reserve.result["held"]) == 2

    def test_spots_added_after_the_hold_are_booked(self, engine, db_session, scheduled, episode):
        _advance_to(engine, scheduled.campaign_id, 10, 35, 65, 90)
        SpotFactory.create(db_session, scheduled, episode, "mid_roll")
        engine.decide_admin_approval(scheduled.campaign_id, approved=True)

        result = engine.transition(scheduled.campaign_id, 100)

        confirm = next(e for e in result.effects if e.name == "confirm_reservations")
        assert confirm.result["schedule_editable"] is False
        mid = read_counter(db_session, episode.episode_id, "mid_roll")
        assert (mid.reserved_slots, mid.booked_slots) == (0, 3)
        assert_counter_matches_reservations(db_session, episode.episode_id, "mid_roll")
        assert _campaign(db_session, scheduled.campaign_id).schedule_editable is False

    def test_spots_added_after_booking_are_topped_up(self, engine, db_session, scheduled, episode):
        _advance_to(engine, scheduled.campaign_id, 10, 35, 65, 90)
        engine.decide_admin_approval(scheduled.campaign_id, approved=True)
        engine.transition(scheduled.campaign_id, 100)

        engine.transition(scheduled.campaign_id, 65)
        assert _campaign(db_session, scheduled.campaign_id).schedule_editable is True
        SpotFactory.create(db_session, scheduled, episode, "mid_roll")
        _advance_to(engine, scheduled.campaign_id, 90, 100)

        mid = read_counter(db_session, episode.episode_id, "mid_roll")
        assert (mid.reserved_slots, mid.booked_slots) == (0, 3)
        assert len(_reservations(db_session, scheduled.campaign_id, status="confirmed")) == 3
        assert_counter_matches_reservations(db_session, episode.episode_id, "mid_roll")

    def test_moving_back_keeps_bookings_and_final_keys(self, engine, db_session, scheduled, episode):
        _advance_to(engine, scheduled.campaign_id, 10, 35, 65, 90)
        engine.decide_admin_approval(scheduled.campaign_id, approved=True)
        engine.transition(scheduled.campaign_id, 100)

        engine.transition(scheduled.campaign_id, 65)
        _advance_to(engine, scheduled.campaign_id, 90, 100)

        assert _count(db_session, WorkflowEffect, campaign_id=scheduled.campaign_id, stage=100) == 5
        assert _count(db_session, Order, campaign_id=scheduled.campaign_id) == 1
        assert read_counter(db_session, episode.episode_id).booked_slots == 2
        assert_counter_matches_reservations(db_session, episode.episode_id)

    def test_rejection_sends_campaign_back_for_revision(self, engine, db_session, sales_user, scheduled, episode):
        _advance_to(engine, scheduled.campaign_id, 10, 35, 65, 90)

        payload = engine.decide_admin_approval(scheduled.campaign_id, approved=False, reason="Rate too low")

        assert payload["decision"] == "rejected"
        assert len(payload["released"]) == 2
        stored = _campaign(db_session, scheduled.campaign_id)
        assert (stored.stage, stored.status) == (65, "needs_revision")
        assert read_counter(db_session, episode.episode_id).reserved_slots == 0
        assert _count(db_session, WorkflowEffect, campaign_id=scheduled.campaign_id, stage=90) == 0
        rejected = notifications_for(db_session, sales_user.user_id, "campaign_rejected")
        assert len(rejected) == 1
        assert "Rate too low" in rejected[0].message

    def test_resubmission_requests_a_new_approval(self, engine, db_session, scheduled):
        _advance_to(engine, scheduled.campaign_id, 10, 35, 65, 90)
        engine.decide_admin_approval(scheduled.campaign_id, approved=False)

        engine.transition(scheduled.campaign_id, 90)

        assert _count(db_session, Approval, campaign_id=scheduled.campaign_id, approval_type="admin") == 2
        pending = _count(
            db_session, Approval, campaign_id=scheduled.campaign_id, approval_type="admin", status="pending"
        )
        assert pending == 1

    def test_only_admins_decide(self, make_ctx, sales_user, scheduled):
        with pytest.raises(ForbiddenError):
            StageEngine(make_ctx(sales_user)).decide_admin_approval(scheduled.campaign_id, approved=True)

    def test_cancel_releases_bookings(self, engine, db_session, admin_user, scheduled, episode):
        _advance_to(engine, scheduled.campaign_id, 10, 35, 65, 90)
        engine.decide_admin_approval(scheduled.campaign_id, approved=True)
        engine.transition(scheduled.campaign_id, 100)

        payload = engine.cancel(scheduled.campaign_id)

        assert len(payload["released"]) == 2
        mid = read_counter(db_session, episode.episode_id, "mid_roll")
        assert (mid.reserved_slots, mid.booked_slots) == (0, 0)
        assert _campaign(db_session, scheduled.campaign_id).status == "cancelled"
        assert notifications_for(db_session, admin_user.user_id, "campaign_status_changed")
        with pytest.raises(ValidationError, match="closed"):
            engine.transition(scheduled.campaign_id, 90)

    def test_cancel_rejects_unknown_status(self, engine, campaign):
        with pytest.raises(ValidationError):
            engine.cancel(campaign.campaign_id, status="paused")


class TestExclusivity:
    @pytest.fixture
    def competitor(self, db_session, tenant, episode):
        rival = CampaignFactory.create(
            db_session, tenant.tenant_id, name="Cola Wars", advertiser_id="adv_2", category_id="beverages"
        )
        SpotFactory.create(db_session, rival, episode)
        return rival

    @pytest.fixture
    def beverage_campaign(self, db_session, tenant, episode):
        mine = CampaignFactory.create(db_session, tenant.tenant_id, advertiser_id="adv_1", category_id="beverages")
        SpotFactory.create(db_session, mine, episode)
        return mine

    def test_warn_mode_notifies(self, engine, db_session, admin_user, competitor, beverage_campaign):
        result = engine.transition(beverage_campaign.campaign_id, 65)

        check = next(e for e in result.effects if e.name == "check_exclusivity")
        assert [c["campaign_id"] for c in check.result["conflicts"]] == [competitor.campaign_id]
        assert notifications_for(db_session, admin_user.user_id, "exclusivity_conflict")

    def test_block_mode_stops_the_transition(self, engine, admin_ctx, db_session, competitor, beverage_campaign):
        WorkflowSettingsService(admin_ctx).update({"exclusivity": {"mode": "block"}})

        with pytest.raises(ValidationError, match="Competitive category"):
            engine.transition(beverage_campaign.campaign_id, 65)
        assert _campaign(db_session, beverage_campaign.campaign_id).stage == 0
