"""Reservation API: place, inspect, confirm, release and extend holds, plus per-status stats."""

import logging
from datetime import datetime, timedelta

from flask import Blueprint, jsonify, request

from src.admin.utils import require_tenant_context
from src.core.clock import ensure_utc
from src.core.exceptions import ValidationError
from src.core.schemas import ExtendRequest, HoldRequest, ReleaseRequest
from src.services.reservation_service import ReservationService

logger = logging.getLogger(__name__)

reservations_bp = Blueprint("reservations", __name__)

WRITE_ROLES = ("admin", "sales", "master")


@reservations_bp.route("", methods=["POST"])
@require_tenant_context(roles=WRITE_ROLES, operation="reservations.hold")
def create_reservation(ctx):
    """Hold slots for a campaign. 201 for a new hold, 200 when a live hold is returned."""
    body = HoldRequest.parse_body(request.get_json(silent=True))
    ttl = timedelta(hours=body.ttl_hours) if body.ttl_hours else None

    reservation, created = ReservationService(ctx).place_hold(
        body.campaign_id,
        body.episode_id,
        body.placement_type,
        quantity=body.quantity,
        ttl=ttl,
        schedule_id=body.schedule_id,
    )
    return jsonify({"reservation": reservation.to_dict(), "created": created}), 201 if created else 200


@reservations_bp.route("", methods=["GET"])
@require_tenant_context(operation="reservations.list")
def list_reservations(ctx):
    reservations = ReservationService(ctx).list_reservations(
        campaign_id=request.args.get("campaignId"),
        status=request.args.get("status"),
        episode_id=request.args.get("episodeId"),
    )
    return jsonify({"reservations": [r.to_dict() for r in reservations], "count": len(reservations)})


@reservations_bp.route("/stats", methods=["GET"])
@require_tenant_context(operation="reservations.stats")
def reservation_stats(ctx):
    """Counts and slot quantities per status. ``from`` and ``to`` bound the creation time (ISO 8601)."""
    stats = ReservationService(ctx).stats(
        created_from=_parse_time_arg("from"),
        created_to=_parse_time_arg("to"),
    )
    return jsonify({"stats": stats})


@reservations_bp.route("/<reservation_id>", methods=["GET"])
@require_tenant_context(operation="reservations.get")
def get_reservation(ctx, reservation_id):
    reservation = ReservationService(ctx).get(reservation_id)
    payload = reservation.to_dict()
    payload["history"] = [
        {
            "from_status": h.from_status,
            "to_status": h.to_status,
            "reason": h.reason,
            "changed_by": h.changed_by,
            "changed_at": h.changed_at.isoformat() if h.changed_at else None,
        }
        for h in reservation.history
    ]
    return jsonify({"reservation": payload})


@reservations_bp.route("/<reservation_id>/confirm", methods=["POST"])
@require_tenant_context(roles=WRITE_ROLES, operation="reservations.confirm")
def confirm_reservation(ctx, reservation_id):
    reservation = ReservationService(ctx).confirm(reservation_id)
    return jsonify({"reservation": reservation.to_dict()})


@reservations_bp.route("/<reservation_id>/release", methods=["POST"])
@require_tenant_context(roles=WRITE_ROLES, operation="reservations.release")
def release_reservation(ctx, reservation_id):
    body = ReleaseRequest.parse_body(request.get_json(silent=True))
    reservation = ReservationService(ctx).release(reservation_id, reason=body.reason)
    return jsonify({"reservation": reservation.to_dict()})


@reservations_bp.route("/<reservation_id>/extend", methods=["POST"])
@require_tenant_context(roles=WRITE_ROLES, operation="reservations.extend")
def extend_reservation(ctx, reservation_id):
    body = ExtendRequest.parse_body(request.get_json(silent=True))
    reservation = ReservationService(ctx).extend(reservation_id, timedelta(hours=body.ttl_hours))
    return jsonify({"reservation": reservation.to_dict()})


def _parse_time_arg(name: str) -> datetime | None:
    value = request.args.get(name)
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError as e:
        raise ValidationError(f"'{name}' must be an ISO 8601 timestamp", details={name: value}) from e
