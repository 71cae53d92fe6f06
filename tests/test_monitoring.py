"""
Tests for logging helpers, the audit trail, metrics and health checks.
"""

import asyncio
import json
import logging

import pytest
from structlog.contextvars import get_contextvars

from monitoring import (
    AuditLogger,
    HealthCheck,
    JSONFormatter,
    MetricsCollector,
    create_metrics_collector,
    estimate_cost,
    log_context,
    mask_dict,
    setup_logging,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestMasking:
    def test_masks_nested_secrets(self):
        masked = mask_dict({
            "accessKeyId": "AKIAABCDEFGHIJKL",
            "externalId": "short",
            "user": "ops@example.com",
            "credentials": {"sessionToken": "FQoGZXIvYXdzEJr"},
        })
        assert masked["accessKeyId"] == "AKIA****IJKL"
        assert masked["externalId"] == "****"
        assert masked["user"] == "ops@example.com"
        assert masked["credentials"] == "****"

    def test_json_formatter(self):
        record = logging.LogRecord("cost_scheduler", logging.INFO, __file__, 1, "api_key=%s", ("x",), None)
        record.execution_id = "exec-1"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["event"] == "api_key=x"
        assert entry["execution_id"] == "exec-1"
        assert entry["level"] == "INFO"

    def test_masks_inside_lists(self):
        masked = mask_dict({"accounts": [{"accountId": "1", "externalId": "nucleus-abcdefghijk"}]})
        assert masked["accounts"][0] == {"accountId": "1", "externalId": "nucl****hijk"}

    def test_json_formatter_includes_bound_context(self):
        record = logging.LogRecord("cost_scheduler", logging.INFO, __file__, 1, "scan", (), None)
        with log_context(execution_id="exec-2", mode="partial"):
            entry = json.loads(JSONFormatter().format(record))
        assert entry["execution_id"] == "exec-2"
        assert entry["mode"] == "partial"


def test_log_context_binds_and_unbinds():
    with log_context(execution_id="exec-1", mode="full"):
        assert get_contextvars()["execution_id"] == "exec-1"
        with log_context(execution_id="exec-inner"):
            assert get_contextvars()["execution_id"] == "exec-inner"
        assert get_contextvars()["execution_id"] == "exec-1"
    assert "execution_id" not in get_contextvars()


def test_setup_logging_writes_file(tmp_path, restore_root_logger):
    root = setup_logging(level="DEBUG", fmt="json", log_dir=str(tmp_path))

    logging.getLogger("cost_scheduler.test").info("scan finished")
    for handler in root.handlers:
        handler.flush()

    lines = (tmp_path / "cost-scheduler.log").read_text().splitlines()
    assert json.loads(lines[-1])["event"] == "scan finished"
    assert logging.getLogger("botocore").level == logging.WARNING


def test_audit_trail(tmp_path):
    path = tmp_path / "audit" / "trail.jsonl"
    trail = AuditLogger(str(path))

    trail.log_scheduler_run("exec-1", "full", 2, 1, 1, 0, 1200, "cli")
    trail.log_resource_action("exec-1", "office-hours", "ec2", "arn:aws:ec2:...", "stop", "success")
    for handler in logging.getLogger("cost_scheduler.audit_trail").handlers:
        handler.flush()

    events = [json.loads(line) for line in path.read_text().splitlines()]
    assert [e["event_type"] for e in events][-2:] == ["scheduler_run", "resource_action"]
    assert events[-2]["triggered_by"] == "cli"


class TestMetrics:
    def test_snapshot_totals(self):
        metrics = MetricsCollector()
        metrics.record_scheduler_run("full", "success", 1.5, started=2, stopped=1, failed=0)
        metrics.record_http_request("GET", "/health", 200, 0.01)
        metrics.record_error("scheduler", "RuntimeError")

        snapshot = metrics.snapshot()
        assert snapshot["scheduler_runs"] == 1
        assert snapshot["resources_started"] == 2
        assert snapshot["http_requests"] == 1
        assert snapshot["errors"] == 1
        assert snapshot["last_scheduler_run"] is not None

    def test_export(self):
        metrics = create_metrics_collector({"namespace": "nucleus"}, environment="test")
        metrics.record_resource_action("ec2", "stop", "success")

        body = metrics.export().decode()
        assert "nucleus_scheduler_resource_actions_total" in body
        assert metrics.content_type.startswith("text/plain")

    def test_collectors_are_independent(self):
        MetricsCollector().record_http_request("GET", "/", 200, 0.1)
        assert MetricsCollector().snapshot()["http_requests"] == 0

    def test_estimate_cost(self):
        assert estimate_cost("gpt-4o", 1000, 1000) == pytest.approx(0.02)
        assert estimate_cost("llama3.1", 1000, 1000) == 0.0


class TestHealthCheck:
    async def test_all_healthy(self):
        health = HealthCheck()

        async def ok():
            return {"healthy": True}

        health.register("app_table", ok)
        result = await health.check_all()
        assert result["status"] == "healthy"
        assert result["checks"]["app_table"] == {"healthy": True}

    async def test_non_critical_failure_degrades(self):
        health = HealthCheck()

        async def ok():
            return {"healthy": True}

        async def broken():
            raise ConnectionError("unreachable")

        health.register("app_table", ok)
        health.register("audit_table", broken, critical=False)

        result = await health.check_all()
        assert result["status"] == "degraded"
        assert result["healthy"] is True
        assert result["checks"]["audit_table"]["error"] == "unreachable"

    async def test_critical_failure(self):
        health = HealthCheck()

        async def down():
            return {"healthy": False}

        health.register("app_table", down)
        assert (await health.check_all())["status"] == "unhealthy"
        assert (await health.check_one("nope"))["healthy"] is False

    async def test_slow_check_times_out(self):
        health = HealthCheck(timeout=0.01)

        async def hangs():
            await asyncio.sleep(1)
            return {"healthy": True}

        health.register("app_table", hangs)
        result = await health.check_all()
        assert result["status"] == "unhealthy"
        assert result["checks"]["app_table"]["error"].startswith("timed out")
