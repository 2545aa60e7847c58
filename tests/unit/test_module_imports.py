"""Every service and blueprint module imports cleanly on a fresh interpreter."""

import importlib
import subprocess
import sys
from pathlib import Path

import pytest

from src.services.inventory_alert_service import InventoryAlertService
from src.services.reservation_service import ReservationService

ROOT = Path(__file__).resolve().parents[2]

MODULES = [
    "src.services.inventory_alert_service",
    "src.services.inventory_ledger",
    "src.services.notification_service",
    "src.services.reconciliation_scheduler",
    "src.services.reconciliation_service",
    "src.services.reservation_service",
    "src.services.stage_engine",
    "src.services.workflow_settings_service",
    "src.admin.blueprints.audit",
    "src.admin.blueprints.core",
    "src.admin.blueprints.inventory",
    "src.admin.blueprints.reservations",
    "src.admin.blueprints.workflows",
    "src.admin.app",
]


@pytest.mark.parametrize("module", MODULES)
def test_module_imports(module):
    assert importlib.import_module(module) is not None


def test_service_modules_import_in_a_fresh_process():
    # Class bodies are evaluated at import, so a method named after a builtin breaks later annotations
    result = subprocess.run(
        [sys.executable, "-c", "; ".join(f"import {m}" for m in MODULES)],
        cwd=ROOT,
        capture_output=True,
        text=True,
        timeout=60,
    )
    assert result.returncode == 0, result.stderr


@pytest.mark.parametrize("service", [ReservationService, InventoryAlertService])
def test_services_do_not_shadow_builtins(service):
    assert not hasattr(service, "list")
