"""Flask application factory for the inventory HTTP API."""

import logging
import os
import secrets

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix as WerkzeugProxyFix

from src.admin.blueprints.audit import audit_bp
from src.admin.blueprints.core import core_bp
from src.admin.blueprints.inventory import inventory_bp
from src.admin.blueprints.reservations import reservations_bp
from src.admin.blueprints.workflows import workflows_bp
from src.core.exceptions import InventoryError

logger = logging.getLogger(__name__)


def register_error_handlers(app: Flask) -> None:
    """Map domain errors to JSON responses with their HTTP status."""

    @app.errorhandler(InventoryError)
    def handle_inventory_error(e: InventoryError):
        if e.http_status >= 500:
            logger.error(f"{e.error_type.value} on request: {e.message}", extra={"details": e.details})
        else:
            logger.info(f"{e.error_type.value}: {e.message}")
        response = jsonify(e.to_dict())
        if e.retryable:
            response.headers["Retry-After"] = "1"
        return response, e.http_status

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify({"error": e.name, "message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e: Exception):
        logger.error(f"Unhandled error: {e}", exc_info=True)
        return jsonify({"error": "internal_error", "message": "Internal server error"}), 500


def create_app(config=None):
    """Create and configure the Flask application.

    ``config`` may carry ``INVENTORY_CLOCK``, a ``Clock`` used for every
    tenant context the API opens (tests pass a ``FrozenClock``).
    """
    app = Flask(__name__)

    # Configuration
    app.secret_key = os.environ.get("FLASK_SECRET_KEY", secrets.token_hex(32))
    app.config["JSON_SORT_KEYS"] = False

    # Trust proxy headers in production
    if os.environ.get("PRODUCTION") == "true":
        app.config["PREFERRED_URL_SCHEME"] = "https"
        app.wsgi_app = WerkzeugProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=0)

    # Apply any additional config
    if config:
        app.config.update(config)

    register_error_handlers(app)

    # Register blueprints
    app.register_blueprint(core_bp)  # /health
    app.register_blueprint(reservations_bp, url_prefix="/api/v1/reservations")
    app.register_blueprint(inventory_bp, url_prefix="/api/v1/inventory")
    app.register_blueprint(audit_bp, url_prefix="/api/v1/admin")
    app.register_blueprint(workflows_bp, url_prefix="/api/v1/workflow")

    return app
