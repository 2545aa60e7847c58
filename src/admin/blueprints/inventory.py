"""Inventory counters and alert management blueprint."""

import logging

from flask import Blueprint, jsonify, request

from src.admin.utils import require_tenant_context
from src.core.database.models import Episode
from src.core.schemas import AlertActionRequest, CapacityRequest
from src.services.inventory_alert_service import InventoryAlertService
from src.services.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)

inventory_bp = Blueprint("inventory", __name__)


@inventory_bp.route("/episodes/<episode_id>", methods=["GET"])
@require_tenant_context(operation="inventory.availability")
def episode_availability(ctx, episode_id):
    """Counters for every placement of an episode."""
    placements = InventoryLedger(ctx).availability(episode_id)
    return jsonify({"episode_id": episode_id, "placements": placements})


@inventory_bp.route("/alerts", methods=["GET"])
@require_tenant_context(operation="inventory.alerts.list")
def list_alerts(ctx):
    """List alerts with a summary.

    Query params:
        status: active (default), acknowledged, resolved or all
        severity: critical, high, medium or low
        type: overbooking, drift, deletion_impact or status_inconsistency
    """
    status = request.args.get("status", "active")
    service = InventoryAlertService(ctx)
    alerts = service.list_alerts(
        status=status,
        severity=request.args.get("severity"),
        alert_type=request.args.get("type"),
    )
    return jsonify({"alerts": [a.to_dict() for a in alerts], "summary": service.summary(status=status)})


@inventory_bp.route("/alerts", methods=["PUT"])
@require_tenant_context(roles=("admin", "sales", "master"), operation="inventory.alerts.update")
def update_alert(ctx):
    body = AlertActionRequest.parse_body(request.get_json(silent=True))
    service = InventoryAlertService(ctx)
    if body.action == "acknowledge":
        alert = service.acknowledge(body.alert_id)
    else:
        alert = service.resolve(body.alert_id, resolution=body.resolution)
    return jsonify({"alert": alert.to_dict()})


@inventory_bp.route("/episodes/<episode_id>/capacity", methods=["PUT"])
@require_tenant_context(roles=("admin", "master"), operation="inventory.capacity")
def set_capacity(ctx, episode_id):
    """Create or resize a placement counter; shrinking below the slots in use is rejected."""
    body = CapacityRequest.parse_body(request.get_json(silent=True))
    episode = ctx.get_or_404(Episode, episode_id, "Episode")
    counter = InventoryLedger(ctx).set_capacity(episode.episode_id, body.placement_type, body.total_slots)
    ctx.commit()
    logger.info(f"Set {episode_id}/{counter.placement_type} capacity to {counter.total_slots}")
    return jsonify({"counter": counter.to_dict()})
