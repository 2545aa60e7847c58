"""Administrative audit and repair endpoints.

Findings here are only visible to admins; regular users never see them.
"""

import logging

from flask import Blueprint, jsonify, request

from src.admin.utils import require_tenant_context
from src.core.schemas import ReleaseStaleRequest, RepairCounterRequest
from src.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

audit_bp = Blueprint("audit", __name__)

ADMIN_ROLES = ("admin", "master")


@audit_bp.route("/audit/inventory", methods=["GET"])
@require_tenant_context(roles=ADMIN_ROLES, operation="audit.inventory")
def inventory_audit(ctx):
    """Read-only consistency report for the tenant."""
    report = ReconciliationService(ctx).run_audit()
    return jsonify(report.to_response())


@audit_bp.route("/audit/inventory/sweep", methods=["POST"])
@require_tenant_context(roles=ADMIN_ROLES, operation="audit.sweep")
def inventory_sweep(ctx):
    """Run the reconciliation sweep now instead of waiting for the scheduler."""
    result = ReconciliationService(ctx).sweep()
    return jsonify(result.to_response())


@audit_bp.route("/audit/inventory/repair", methods=["POST"])
@require_tenant_context(roles=ADMIN_ROLES, operation="audit.repair")
def repair_counter(ctx):
    body = RepairCounterRequest.parse_body(request.get_json(silent=True))
    snapshot = ReconciliationService(ctx).repair_counter(body.episode_id, body.placement_type)
    return jsonify({"counter": snapshot.to_dict()})


@audit_bp.route("/fix/release-reservations", methods=["POST"])
@require_tenant_context(roles=ADMIN_ROLES, operation="audit.release_stale")
def release_reservations(ctx):
    body = ReleaseStaleRequest.parse_body(request.get_json(silent=True))
    if not body.reservation_ids and not body.release_all_orphaned:
        return jsonify({"error": "Provide reservationIds or set releaseAllOrphaned"}), 400

    result = ReconciliationService(ctx).release_stale(
        reservation_ids=body.reservation_ids,
        release_all_orphaned=body.release_all_orphaned,
        dry_run=body.dry_run,
    )
    return jsonify(result.model_dump())
