"""
Tests for execution history records.
"""

import time

import pytest

from cost_scheduler.scheduler import executions as executions_module
from cost_scheduler.scheduler.executions import empty_metadata
from tests.conftest import ECS_ARN


@pytest.fixture
def clock(monkeypatch):
    """Deterministic, strictly increasing timestamps."""
    stamps = iter(f"2024-01-10T12:00:{second:02d}.000Z" for second in range(60))
    monkeypatch.setattr(executions_module, "utc_now_iso", lambda: next(stamps))


async def test_create_execution(history, app_table, clock):
    record = await history.create_execution("office-hours", "office-hours", "123456789012", "web-ui", "exec-1")

    assert record["pk"] == "SCHEDULE#office-hours"
    assert record["sk"] == "EXECUTION#2024-01-10T12:00:00.000Z#exec-1"
    assert record["gsi1pk"] == "TYPE#EXECUTION"
    assert record["status"] == "running"
    assert record["triggeredBy"] == "web-ui"
    assert record["ttl"] > int(time.time()) + 29 * 24 * 3600

    assert await app_table.get_item({"pk": record["pk"], "sk": record["sk"]}) == record


async def test_complete_execution(history, clock):
    record = await history.create_execution("office-hours", "office-hours", "123456789012")
    metadata = empty_metadata()
    metadata["ec2"].append({"arn": "arn", "action": "stop", "status": "success", "last_state": {}})

    done = await history.complete_execution(record, "partial", 0, 1, 1, metadata, error_message="boom")

    assert done["status"] == "partial"
    assert done["endTime"] == "2024-01-10T12:00:01.000Z"
    assert done["duration"] == 1000
    assert done["resourcesStopped"] == 1
    assert done["resourcesFailed"] == 1
    assert done["errorMessage"] == "boom"
    assert done["schedule_metadata"]["ec2"][0]["action"] == "stop"


async def test_list_newest_first(history, clock):
    for n in range(3):
        await history.create_execution("office-hours", "office-hours", "1", execution_id=f"exec-{n}")
    await history.create_execution("other", "other", "1", execution_id="elsewhere")

    listed = await history.list_executions("office-hours")
    assert [e["executionId"] for e in listed] == ["exec-2", "exec-1", "exec-0"]
    assert len(await history.list_executions("office-hours", limit=2)) == 2


async def test_last_resource_state(history, clock):
    older = await history.create_execution("office-hours", "office-hours", "1")
    metadata = empty_metadata()
    metadata["ecs"].append({"arn": ECS_ARN, "action": "stop", "status": "success", "last_state": {"desiredCount": 3}})
    await history.complete_execution(older, "success", 0, 1, 0, metadata)

    # a newer run that did not record this service must not hide the older state
    newer = await history.create_execution("office-hours", "office-hours", "1")
    await history.complete_execution(newer, "success", 1, 0, 0, empty_metadata())

    assert await history.get_last_resource_state("office-hours", ECS_ARN, "ecs") == {"desiredCount": 3}
    assert await history.get_last_resource_state("office-hours", ECS_ARN, "ec2") is None
    assert await history.get_last_resource_state("nothing", ECS_ARN, "ecs") is None


async def test_last_resource_state_ignores_skips(history, clock):
    stopped = await history.create_execution("office-hours", "office-hours", "1")
    metadata = empty_metadata()
    metadata["ecs"].append({"arn": ECS_ARN, "action": "stop", "status": "success", "last_state": {"desiredCount": 3}})
    await history.complete_execution(stopped, "success", 0, 1, 0, metadata)

    # the next run found the service already at zero
    skipped = await history.create_execution("office-hours", "office-hours", "1")
    metadata = empty_metadata()
    metadata["ecs"].append({"arn": ECS_ARN, "action": "skip", "status": "success", "last_state": {"desiredCount": 0}})
    await history.complete_execution(skipped, "success", 0, 0, 0, metadata)

    assert await history.get_last_resource_state("office-hours", ECS_ARN, "ecs") == {"desiredCount": 3}
