#!/usr/bin/env python
"""Process entry point: the inventory API plus the reconciliation loop.

Waitress serves the API unless ``API_SERVER_TYPE=werkzeug`` or
``FLASK_DEBUG=1``. The reconciliation scheduler gets its own event loop on a
daemon thread; set ``RUN_RECONCILIATION=false`` when a separate worker owns
the sweeps.
"""

import asyncio
import logging
import os
import sys
import threading

from src.core.config import get_config, validate_configuration
from src.core.logging_config import setup_structured_logging
from src.services.reconciliation_scheduler import start_reconciliation_scheduler

logger = logging.getLogger(__name__)

WAITRESS_THREADS = 8


def serve_forever(app, port: int, use_werkzeug: bool) -> None:
    if use_werkzeug:
        from werkzeug.serving import run_simple

        logger.info(f"Inventory API on port {port} (werkzeug)")
        run_simple("0.0.0.0", port, app, threaded=True, use_reloader=False)
        return

    from waitress import serve

    logger.info(f"Inventory API on port {port} (waitress, {WAITRESS_THREADS} threads)")
    serve(app, host="0.0.0.0", port=port, threads=WAITRESS_THREADS)


def start_scheduler_thread() -> threading.Thread:
    """Run the reconciliation scheduler forever on a dedicated event loop."""

    def run():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        loop.run_until_complete(start_reconciliation_scheduler())
        loop.run_forever()

    thread = threading.Thread(target=run, name="reconciliation-scheduler", daemon=True)
    thread.start()
    return thread


def main():
    setup_structured_logging()

    try:
        validate_configuration()
    except RuntimeError as e:
        logger.error(f"Refusing to start: {e}")
        sys.exit(1)

    from src.admin.app import create_app

    config = get_config()
    app = create_app()
    port = int(os.environ.get("API_PORT", config.server.api_port))
    use_werkzeug = os.environ.get("FLASK_DEBUG") == "1" or os.environ.get("API_SERVER_TYPE", "").lower() == "werkzeug"

    if config.server.run_reconciliation:
        start_scheduler_thread()
        logger.info(f"Reconciliation every {config.inventory.reconciliation_interval_seconds}s")

    serve_forever(app, port, use_werkzeug)


if __name__ == "__main__":
    main()
