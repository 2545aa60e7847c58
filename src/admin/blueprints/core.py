"""Liveness and configuration health checks for the inventory API."""

import logging

from flask import Blueprint, jsonify

from src.core.config import get_inventory_config, validate_configuration
from src.core.database.database_session import check_database_health
from src.services.reconciliation_scheduler import get_reconciliation_scheduler

logger = logging.getLogger(__name__)

core_bp = Blueprint("core", __name__)


@core_bp.route("/health")
def health():
    """Database reachability plus whether the reconciliation loop is running in this process."""
    db_ok, db_message = check_database_health(force=True)
    body = {
        "status": "healthy" if db_ok else "unhealthy",
        "database": db_message,
        "reconciliation_scheduler": "running" if get_reconciliation_scheduler().is_running else "stopped",
    }
    return jsonify(body), 200 if db_ok else 500


@core_bp.route("/health/config")
def health_config():
    """Report the effective reservation tuning, or why it failed to load."""
    try:
        validate_configuration()
        inventory = get_inventory_config()
    except RuntimeError as e:
        logger.error(f"Configuration health check failed: {e}")
        return jsonify({"status": "unhealthy", "error": str(e)}), 500

    return jsonify(
        {
            "status": "healthy",
            "lock_timeout_ms": inventory.lock_timeout_ms,
            "default_reservation_ttl_hours": inventory.default_reservation_ttl_hours,
            "reconciliation_interval_seconds": inventory.reconciliation_interval_seconds,
        }
    )
