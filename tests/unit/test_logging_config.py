"""Tests for JSON log formatting and the operations logger."""

import json
import logging
import sys

from src.core.logging_config import InventoryOpsLogger, JSONFormatter


def _record(msg="hold created", **extra):
    record = logging.makeLogRecord({"name": "inventory.ops", "levelno": logging.INFO, "levelname": "INFO", "msg": msg})
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_context_fields_are_top_level(self):
        line = JSONFormatter().format(
            _record(tenant_id="acme", operation="reservation.hold", details={"episode_id": "ep_1"})
        )

        entry = json.loads(line)
        assert entry["message"] == "hold created"
        assert entry["tenant_id"] == "acme"
        assert entry["operation"] == "reservation.hold"
        assert entry["extra"] == {"details": {"episode_id": "ep_1"}}

    def test_plain_record_has_no_extra(self):
        entry = json.loads(JSONFormatter().format(_record()))

        assert "extra" not in entry
        assert entry["level"] == "INFO"

    def test_exception_is_kept_on_one_line(self):
        try:
            raise RuntimeError("lock timeout")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        line = JSONFormatter().format(record)

        assert "\n" not in line
        assert "lock timeout" in json.loads(line)["exception"]


class TestInventoryOpsLogger:
    def test_success_logs_info_with_fields(self, caplog):
        with caplog.at_level(logging.INFO, logger="inventory.ops"):
            InventoryOpsLogger().log_inventory_operation(
                "reservation.hold", True, tenant_id="acme", details={"quantity": 2}, duration_ms=3.5
            )

        record = caplog.records[-1]
        assert record.levelno == logging.INFO
        assert record.getMessage() == "reservation.hold [acme] ok"
        assert record.details == {"quantity": 2}
        assert record.duration_ms == 3.5

    def test_failure_logs_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="inventory.ops"):
            InventoryOpsLogger().log_inventory_operation("reconciliation.sweep", False, error="busy")

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.getMessage() == "reconciliation.sweep [-] failed: busy"
        assert record.error == "busy"

    def test_expected_failure_can_log_below_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="inventory.ops"):
            InventoryOpsLogger().log_inventory_operation(
                "reservation.hold", False, tenant_id="acme", error="Not enough inventory", level=logging.INFO
            )

        record = caplog.records[-1]
        assert record.levelno == logging.INFO
        assert record.success is False
