"""
Tests for the audit log service.
"""

from unittest.mock import AsyncMock

from cost_scheduler.store.audit import (
    AuditService,
    event_type_for,
    generate_audit_id,
    severity_for_status,
)
from cost_scheduler.store.table import MemoryTable, TableError


class TestHelpers:
    def test_event_type(self):
        assert event_type_for("account", "Create Account") == "account.create_account"

    def test_severity(self):
        assert severity_for_status("error") == "high"
        assert severity_for_status("warning") == "medium"
        assert severity_for_status("success") == "info"

    def test_audit_id_format(self):
        audit_id = generate_audit_id()
        assert audit_id.startswith("audit-")
        assert len(audit_id.split("-")[-1]) == 9


class TestWrites:
    async def test_create_fills_defaults_and_index_keys(self, audit, audit_table):
        audit_id = await audit.create_audit_log({"eventType": "test.event", "details": "hello"})

        items = await audit_table.scan()
        assert len(items) == 1
        item = items[0]
        assert item["id"] == audit_id
        assert item["pk"] == f"LOG#{audit_id}"
        assert item["sk"] == item["timestamp"]
        assert item["action"] == "Unknown Action"
        assert item["user"] == "system"
        assert item["gsi2pk"] == "USER#system"
        assert item["gsi3pk"] == "EVENT#test.event"
        assert item["expire_at"] > 0

    async def test_empty_entry_is_ignored(self, audit, audit_table):
        assert await audit.create_audit_log({}) is None
        assert await audit_table.scan() == []

    async def test_write_failure_does_not_raise(self):
        table = MemoryTable()
        table.put_item = AsyncMock(side_effect=TableError("boom"))
        assert await AuditService(table).create_audit_log({"action": "x"}) is None

    async def test_log_user_action(self, audit):
        await audit.log_user_action(
            action="Create Account",
            resource_type="account",
            resource_id="123",
            resource_name="Prod",
            user="ops@example.com",
            status="error",
            details="failed",
        )
        logs = (await audit.get_audit_logs())["logs"]
        assert logs[0]["eventType"] == "account.create_account"
        assert logs[0]["severity"] == "high"
        assert logs[0]["source"] == "web-ui"
        assert logs[0]["resource"] == "Prod"

    async def test_log_resource_action_defaults_to_system(self, audit):
        await audit.log_resource_action("Stop Instance", "ec2", "i-1")
        log = (await audit.get_audit_logs())["logs"][0]
        assert log["user"] == "system"
        assert log["userType"] == "system"
        assert log["source"] == "system"

    async def test_delete(self, audit, audit_table):
        audit_id = await audit.create_audit_log({"action": "x"})
        log = (await audit.get_audit_logs())["logs"][0]
        await audit.delete_audit_log(audit_id, log["timestamp"])
        assert await audit_table.scan() == []


class TestReads:
    async def seed(self, audit):
        await audit.log_user_action("Create Account", "account", "1", user="alice@example.com")
        await audit.log_user_action("Delete Account", "account", "1", user="bob@example.com", status="error")
        await audit.log_user_action("Create Schedule", "schedule", "office", user="alice@example.com")

    async def test_newest_first(self, audit):
        await self.seed(audit)
        logs = (await audit.get_audit_logs())["logs"]
        assert len(logs) == 3
        timestamps = [log["timestamp"] for log in logs]
        assert timestamps == sorted(timestamps, reverse=True)

    async def test_filter_by_user(self, audit):
        await self.seed(audit)
        logs = (await audit.get_audit_logs({"user": "alice@example.com"}))["logs"]
        assert {log["action"] for log in logs} == {"Create Account", "Create Schedule"}

    async def test_filter_by_event_type(self, audit):
        await self.seed(audit)
        logs = (await audit.get_audit_logs({"eventType": "account.delete_account"}))["logs"]
        assert [log["user"] for log in logs] == ["bob@example.com"]

    async def test_post_filters(self, audit):
        await self.seed(audit)
        assert len((await audit.get_audit_logs({"status": "error"}))["logs"]) == 1
        assert len((await audit.get_audit_logs({"resourceType": "schedule"}))["logs"]) == 1
        assert len((await audit.get_audit_logs({"searchTerm": "bob"}))["logs"]) == 1

    async def test_pagination(self, audit):
        await self.seed(audit)
        first = await audit.get_audit_logs({"limit": 2})
        assert len(first["logs"]) == 2
        assert first["nextPageToken"]

        second = await audit.get_audit_logs({"limit": 2, "nextPageToken": first["nextPageToken"]})
        assert len(second["logs"]) == 1
        assert second["nextPageToken"] is None

    async def test_correlation_id(self, audit):
        await audit.create_audit_log({"action": "a", "correlationId": "run-1"})
        await audit.create_audit_log({"action": "b", "correlationId": "run-1"})
        await audit.create_audit_log({"action": "c", "correlationId": "run-2"})
        logs = await audit.get_logs_by_correlation_id("run-1")
        assert {log["action"] for log in logs} == {"a", "b"}

    async def test_stats(self, audit):
        await self.seed(audit)
        stats = await audit.get_audit_log_stats()
        assert stats["totalLogs"] == 3
        assert stats["successCount"] == 2
        assert stats["errorCount"] == 1
        assert stats["userEvents"] == 3
        assert stats["byResourceType"] == {"account": 2, "schedule": 1}
