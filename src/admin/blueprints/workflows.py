"""Campaign workflow endpoints: stage transitions, admin approval, cancellation and tenant settings."""

import logging

from flask import Blueprint, jsonify, request

from src.admin.utils import require_tenant_context
from src.core.exceptions import ValidationError
from src.core.schemas import ApprovalDecisionRequest, CancelCampaignRequest, SimulateTransitionRequest
from src.services.stage_engine import StageEngine
from src.services.workflow_settings_service import WorkflowSettingsService

logger = logging.getLogger(__name__)

workflows_bp = Blueprint("workflows", __name__)


@workflows_bp.route("/simulate", methods=["POST"])
@require_tenant_context(roles=("admin", "sales", "master"), operation="workflow.transition")
def simulate_transition(ctx):
    """Move a campaign to ``targetStage``. With ``dryRun`` nothing is persisted."""
    body = SimulateTransitionRequest.parse_body(request.get_json(silent=True))
    result = StageEngine(ctx).transition(body.campaign_id, body.target_stage, dry_run=body.dry_run)
    return jsonify(result.model_dump(mode="json"))


@workflows_bp.route("/approval", methods=["POST"])
@require_tenant_context(roles=("admin", "master"), operation="workflow.approval")
def decide_approval(ctx):
    body = ApprovalDecisionRequest.parse_body(request.get_json(silent=True))
    decision = StageEngine(ctx).decide_admin_approval(body.campaign_id, body.approved, reason=body.reason)
    return jsonify(decision)


@workflows_bp.route("/cancel", methods=["POST"])
@require_tenant_context(roles=("admin", "sales", "master"), operation="workflow.cancel")
def cancel_campaign(ctx):
    body = CancelCampaignRequest.parse_body(request.get_json(silent=True))
    outcome = StageEngine(ctx).cancel(body.campaign_id, status=body.status)
    return jsonify(outcome)


@workflows_bp.route("/settings", methods=["GET"])
@require_tenant_context(operation="workflow.settings.get")
def get_settings(ctx):
    return jsonify({"settings": WorkflowSettingsService(ctx).get().model_dump(mode="json")})


@workflows_bp.route("/settings", methods=["PUT"])
@require_tenant_context(roles=("admin", "master"), operation="workflow.settings.update")
def update_settings(ctx):
    """Merge a partial settings document, e.g. ``{"exclusivity": {"mode": "block"}}``, into the tenant's settings."""
    changes = request.get_json(silent=True)
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("Request body must be a non-empty JSON object")
    settings = WorkflowSettingsService(ctx).update(changes)
    return jsonify({"settings": settings.model_dump(mode="json")})
