"""Concurrent holds and status changes against one counter row.

Each worker thread gets its own tenant context (and so its own session and
connection), built up front because the context factory is not thread-safe.
"""

import threading
from datetime import timedelta

import pytest

from src.core.exceptions import ConflictError, ExpiredError
from src.services.reservation_service import ReservationService
from tests.fixtures import CampaignFactory
from tests.utils.database_helpers import alerts_for, assert_counter_matches_reservations, read_counter

pytestmark = pytest.mark.slow


def _race(contexts, work):
    """Run ``work(ctx)`` in one thread per context, released together."""
    barrier = threading.Barrier(len(contexts))
    outcomes: list = [None] * len(contexts)

    def run(index, ctx):
        barrier.wait(timeout=10)
        try:
            outcomes[index] = work(index, ctx)
        except Exception as e:
            outcomes[index] = e

    threads = [threading.Thread(target=run, args=(i, ctx)) for i, ctx in enumerate(contexts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes


def test_last_slot_goes_to_exactly_one_campaign(make_ctx, db_session, tenant, admin_user, episode):
    campaigns = [CampaignFactory.create(db_session, tenant.tenant_id, name=f"Racer {i}") for i in range(4)]
    contexts = [make_ctx(admin_user) for _ in campaigns]

    outcomes = _race(
        contexts,
        lambda i, ctx: ReservationService(ctx).hold(campaigns[i].campaign_id, episode.episode_id, "mid_roll"),
    )

    conflicts = [o for o in outcomes if isinstance(o, ConflictError)]
    successes = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(successes) == 3, outcomes
    assert len(conflicts) == 1, outcomes
    assert conflicts[0].remaining == 0
    assert read_counter(db_session, episode.episode_id).reserved_slots == 3
    assert_counter_matches_reservations(db_session, episode.episode_id)


def test_same_campaign_racing_gets_one_hold(make_ctx, db_session, admin_user, campaign, episode):
    contexts = [make_ctx(admin_user) for _ in range(3)]

    outcomes = _race(
        contexts,
        lambda i, ctx: ReservationService(ctx).hold(campaign.campaign_id, episode.episode_id, "mid_roll"),
    )

    assert not [o for o in outcomes if isinstance(o, Exception)], outcomes
    assert len({o.reservation_id for o in outcomes}) == 1
    assert read_counter(db_session, episode.episode_id).reserved_slots == 1
    assert_counter_matches_reservations(db_session, episode.episode_id)


def test_mixed_status_changes_keep_the_counter_consistent(
    make_ctx, db_session, clock, tenant, admin_user, episode
):
    campaigns = [CampaignFactory.create(db_session, tenant.tenant_id, name=f"Mixer {i}") for i in range(3)]
    seeding = ReservationService(make_ctx(admin_user))
    lapsing = seeding.hold(campaigns[0].campaign_id, episode.episode_id, "mid_roll", ttl=timedelta(hours=1))
    live = [seeding.hold(c.campaign_id, episode.episode_id, "mid_roll") for c in campaigns[1:]]
    clock.advance(hours=2)

    ids = [lapsing.reservation_id, *(r.reservation_id for r in live)]
    work = [
        ("release", ids[1]),
        ("confirm", ids[1]),
        ("confirm", ids[2]),
        ("release", ids[2]),
        ("expire", ids[0]),
        ("expire", ids[0]),
        ("confirm", ids[0]),
        ("release", ids[0]),
    ]
    contexts = [make_ctx(admin_user) for _ in work]

    def change(i, ctx):
        action, reservation_id = work[i]
        return getattr(ReservationService(ctx), action)(reservation_id)

    outcomes = _race(contexts, change)

    unexpected = [o for o in outcomes if isinstance(o, Exception) and not isinstance(o, ExpiredError)]
    assert not unexpected, outcomes
    assert outcomes[4:6].count(True) <= 1
    counter = read_counter(db_session, episode.episode_id)
    assert counter.reserved_slots + counter.booked_slots <= counter.total_slots
    assert counter.reserved_slots == 0
    assert_counter_matches_reservations(db_session, episode.episode_id)
    assert alerts_for(db_session, tenant.tenant_id, alert_type="drift") == []
