"""
Tests for the schedule service and payload validation.
"""

import pytest

from cost_scheduler.store.schedules import (
    ScheduleExistsError,
    ScheduleNotFoundError,
    ScheduleValidationError,
    normalize_time,
    to_ui_schedule,
    validate_schedule_payload,
)
from tests.conftest import EC2_ARN, make_schedule_payload


class TestValidation:
    def test_valid_payload(self):
        validate_schedule_payload(make_schedule_payload())

    @pytest.mark.parametrize("missing", ["name", "starttime", "endtime", "timezone", "days"])
    def test_missing_required_field(self, missing):
        payload = make_schedule_payload()
        del payload[missing]
        with pytest.raises(ScheduleValidationError, match="Missing required fields"):
            validate_schedule_payload(payload)

    def test_account_required(self):
        with pytest.raises(ScheduleValidationError, match="Account ID is required"):
            validate_schedule_payload(make_schedule_payload(accountId=None))

    def test_days_must_be_known(self):
        with pytest.raises(ScheduleValidationError, match="Invalid day names"):
            validate_schedule_payload(make_schedule_payload(days=["Mon", "Funday"]))

    def test_days_must_be_a_list(self):
        with pytest.raises(ScheduleValidationError, match="Days must be a non-empty array"):
            validate_schedule_payload(make_schedule_payload(days="Mon"))

    def test_timezone(self):
        with pytest.raises(ScheduleValidationError, match="Invalid timezone"):
            validate_schedule_payload(make_schedule_payload(timezone="Mars/Olympus"))

    def test_time_format(self):
        with pytest.raises(ScheduleValidationError, match="Invalid starttime"):
            validate_schedule_payload(make_schedule_payload(starttime="25:00"))

    def test_normalize_time(self):
        assert normalize_time("09:00") == "09:00:00"
        assert normalize_time("09:00:30") == "09:00:30"


class TestCrud:
    async def test_create(self, schedules, app_table):
        resources = [{"arn": EC2_ARN, "type": "ec2", "id": "i-0abc"}]
        schedule = await schedules.create_schedule(make_schedule_payload(resources=resources))

        assert schedule["id"] == "office-hours"
        assert schedule["starttime"] == "09:00:00"
        assert schedule["active"] is True
        assert schedule["resources"] == resources
        assert schedule["executionCount"] == 0

        item = await app_table.get_item({"pk": "SCHEDULE#office-hours", "sk": "METADATA"})
        assert item["gsi1pk"] == "TYPE#SCHEDULE"
        assert item["type"] == "schedule"

    async def test_protected_fields_are_not_copied(self, schedules, app_table):
        await schedules.create_schedule(make_schedule_payload(pk="HACK", type="account"))
        item = await app_table.get_item({"pk": "SCHEDULE#office-hours", "sk": "METADATA"})
        assert item["type"] == "schedule"
        assert await app_table.get_item({"pk": "HACK", "sk": "METADATA"}) is None

    async def test_duplicate(self, schedules, audit):
        await schedules.create_schedule(make_schedule_payload())
        with pytest.raises(ScheduleExistsError):
            await schedules.create_schedule(make_schedule_payload())

        errors = (await audit.get_audit_logs({"status": "error"}))["logs"]
        assert errors[0]["action"] == "Create Schedule"

    async def test_list_and_filters(self, schedules):
        await schedules.create_schedule(make_schedule_payload(resourceTypes=["EC2"]))
        await schedules.create_schedule(make_schedule_payload(
            name="weekend-batch", days=["Sat", "Sun"], active=False,
            description="batch jobs", resourceTypes=["ECS"],
        ))

        assert [s["name"] for s in await schedules.list_schedules()] == ["office-hours", "weekend-batch"]
        assert [s["name"] for s in await schedules.list_schedules(status_filter="active")] == ["office-hours"]
        assert [s["name"] for s in await schedules.list_schedules(status_filter="inactive")] == ["weekend-batch"]
        assert [s["name"] for s in await schedules.list_schedules(search="BATCH")] == ["weekend-batch"]
        assert [s["name"] for s in await schedules.list_schedules(resource_filter="ECS")] == ["weekend-batch"]

    async def test_active_schedules(self, schedules):
        await schedules.create_schedule(make_schedule_payload())
        await schedules.create_schedule(make_schedule_payload(name="off", active=False))
        active = await schedules.get_active_schedules()
        assert [s["name"] for s in active] == ["office-hours"]

    async def test_update(self, schedules):
        await schedules.create_schedule(make_schedule_payload())
        updated = await schedules.update_schedule(
            "office-hours", {"endtime": "20:00", "name": "renamed", "description": "later"}, "ops@example.com"
        )
        assert updated["name"] == "office-hours"
        assert updated["endtime"] == "20:00:00"
        assert updated["description"] == "later"

    async def test_update_validates_time(self, schedules):
        await schedules.create_schedule(make_schedule_payload())
        with pytest.raises(ScheduleValidationError):
            await schedules.update_schedule("office-hours", {"starttime": "9am"})

    async def test_update_missing(self, schedules):
        with pytest.raises(ScheduleNotFoundError):
            await schedules.update_schedule("nope", {"description": "x"})

    async def test_toggle(self, schedules):
        await schedules.create_schedule(make_schedule_payload())
        toggled = await schedules.toggle_schedule_status("office-hours", "ops@example.com")
        assert toggled["active"] is False
        assert toggled["updatedBy"] == "ops@example.com"

    async def test_delete(self, schedules):
        await schedules.create_schedule(make_schedule_payload())
        await schedules.delete_schedule("office-hours")
        assert await schedules.get_schedule("office-hours") is None
        with pytest.raises(ScheduleNotFoundError):
            await schedules.delete_schedule("office-hours")

    async def test_record_execution(self, schedules, audit):
        await schedules.create_schedule(make_schedule_payload())
        await schedules.record_execution("office-hours", "2024-01-10T12:00:00.000Z")
        schedule = await schedules.record_execution("office-hours", "2024-01-10T13:00:00.000Z")

        assert schedule["executionCount"] == 2
        assert schedule["lastExecution"] == "2024-01-10T13:00:00.000Z"
        actions = [log["action"] for log in (await audit.get_audit_logs())["logs"]]
        assert "Update Schedule" not in actions

    async def test_record_execution_can_activate(self, schedules):
        await schedules.create_schedule(make_schedule_payload())
        await schedules.toggle_schedule_status("office-hours")

        schedule = await schedules.record_execution("office-hours", activate=True)

        assert schedule["active"] is True
        assert schedule["executionCount"] == 1


class TestRepresentation:
    def test_zero_success_rate_is_kept(self):
        item = {"pk": "SCHEDULE#office-hours", "name": "office-hours", "successRate": 0}
        assert to_ui_schedule(item)["successRate"] == 0

    def test_missing_success_rate_defaults(self):
        assert to_ui_schedule({"name": "office-hours"})["successRate"] == 100
