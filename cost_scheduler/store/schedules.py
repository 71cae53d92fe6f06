# =============================================================================
# COST OPTIMIZATION SCHEDULER - SCHEDULE SERVICE
# =============================================================================
"""
Schedule Service

CRUD operations over schedules stored in the app table.

Item layout:
    pk=SCHEDULE#<name>  sk=METADATA
    GSI1: TYPE#SCHEDULE / <name>

A schedule names a daily time window (``starttime``..``endtime`` in
``timezone`` on ``days``) during which its resources should be running.
Outside that window the scheduler stops them.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from cost_scheduler.scheduler.time_window import DAY_NAMES, ensure_timezone
from cost_scheduler.store.audit import AuditService, utc_now_iso
from cost_scheduler.store.table import (
    ConditionalCheckError,
    ItemNotFoundError,
    StoreError,
    TableInterface,
)


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class ScheduleError(StoreError):
    """Base exception for schedule operations."""
    pass


class ScheduleExistsError(ScheduleError):
    """Raised when creating a schedule whose name is already taken."""
    pass


class ScheduleNotFoundError(ScheduleError):
    """Raised when a schedule name is unknown."""
    pass


class ScheduleValidationError(ScheduleError):
    """Raised when a schedule payload is malformed."""
    pass


# =============================================================================
# CONSTANTS
# =============================================================================

REQUIRED_FIELDS = ("name", "starttime", "endtime", "timezone", "days")
PROTECTED_FIELDS = frozenset({"name", "type", "pk", "sk", "gsi1pk", "gsi1sk"})
DEFAULT_RESOURCE_TYPES = ["EC2", "RDS", "ECS"]

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")


def schedule_key(name: str) -> Dict[str, str]:
    return {"pk": f"SCHEDULE#{name}", "sk": "METADATA"}


def to_ui_schedule(item: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a stored schedule item to its API representation."""
    name = item.get("name") or str(item.get("pk", "")).replace("SCHEDULE#", "", 1)
    return {
        "id": name,
        "name": name,
        "starttime": item.get("starttime"),
        "endtime": item.get("endtime"),
        "timezone": item.get("timezone"),
        "active": bool(item.get("active")),
        "days": item.get("days") or [],
        "description": item.get("description") or "",
        "accountId": item.get("accountId"),
        "resources": item.get("resources") or [],
        "createdAt": item.get("createdAt"),
        "updatedAt": item.get("updatedAt"),
        "createdBy": item.get("createdBy"),
        "updatedBy": item.get("updatedBy"),
        "accounts": item.get("accounts") or [],
        "resourceTypes": item.get("resourceTypes") or list(DEFAULT_RESOURCE_TYPES),
        "lastExecution": item.get("lastExecution"),
        "nextExecution": item.get("nextExecution"),
        "executionCount": item.get("executionCount") or 0,
        "successRate": 100 if item.get("successRate") is None else item["successRate"],
        "estimatedSavings": item.get("estimatedSavings") or 0,
    }


def validate_schedule_payload(data: Dict[str, Any]) -> None:
    """
    Check a schedule creation payload.

    Raises:
        ScheduleValidationError: With a message suitable for a 400 response
    """
    if not all(data.get(field) for field in REQUIRED_FIELDS):
        raise ScheduleValidationError(
            "Missing required fields: name, starttime, endtime, timezone, and days are required"
        )
    if not data.get("accountId"):
        raise ScheduleValidationError("Account ID is required")

    days = data["days"]
    if not isinstance(days, list) or not days:
        raise ScheduleValidationError("Days must be a non-empty array")
    unknown = [d for d in days if d not in DAY_NAMES]
    if unknown:
        raise ScheduleValidationError(f"Invalid day names: {', '.join(map(str, unknown))}")

    if not ensure_timezone(data["timezone"]):
        raise ScheduleValidationError("Invalid timezone")

    for field in ("starttime", "endtime"):
        if not TIME_PATTERN.match(str(data[field])):
            raise ScheduleValidationError(f"Invalid {field}: expected HH:MM or HH:MM:SS")


def normalize_time(value: str) -> str:
    """Pad ``HH:MM`` to ``HH:MM:SS``."""
    return value if value.count(":") == 2 else f"{value}:00"


# =============================================================================
# SCHEDULE SERVICE
# =============================================================================

class ScheduleService:
    """
    Manages schedule records.

    Attributes:
        table: App table backend
        audit: Audit log service
    """

    def __init__(self, table: TableInterface, audit: AuditService):
        self.table = table
        self.audit = audit
        self.logger = logging.getLogger("cost_scheduler.store.schedules")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def list_schedules(
        self,
        status_filter: Optional[str] = None,
        search: Optional[str] = None,
        resource_filter: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        start_key = None
        while True:
            page = await self.table.query("TYPE#SCHEDULE", index="GSI1", start_key=start_key)
            items.extend(page.items)
            if not page.has_more:
                break
            start_key = page.last_key

        schedules = [to_ui_schedule(item) for item in items]
        self.logger.debug(f"Fetched {len(schedules)} schedules")

        if status_filter == "active":
            schedules = [s for s in schedules if s["active"]]
        elif status_filter == "inactive":
            schedules = [s for s in schedules if not s["active"]]

        if search:
            term = search.lower()
            schedules = [
                s for s in schedules
                if term in s["name"].lower()
                or term in (s.get("description") or "").lower()
                or term in (s.get("createdBy") or "").lower()
            ]

        if resource_filter and resource_filter != "all":
            schedules = [s for s in schedules if resource_filter in s["resourceTypes"]]

        return schedules

    async def get_schedule(self, name: str) -> Optional[Dict[str, Any]]:
        item = await self.table.get_item(schedule_key(name))
        return to_ui_schedule(item) if item else None

    async def get_active_schedules(self) -> List[Dict[str, Any]]:
        """Raw stored items of every active schedule (used by the scheduler)."""
        items: List[Dict[str, Any]] = []
        start_key = None
        while True:
            page = await self.table.query(
                "TYPE#SCHEDULE", index="GSI1", filters={"active": True}, start_key=start_key
            )
            items.extend(page.items)
            if not page.has_more:
                return items
            start_key = page.last_key

    async def get_schedule_item(self, name: str) -> Optional[Dict[str, Any]]:
        return await self.table.get_item(schedule_key(name))

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create_schedule(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a schedule from a validated payload.

        Raises:
            ScheduleValidationError: If the payload is malformed
            ScheduleExistsError: If the name is already taken
        """
        validate_schedule_payload(data)

        name = data["name"]
        created_by = data.get("createdBy") or "system"
        now = utc_now_iso()

        item = {
            **{k: v for k, v in data.items() if k not in PROTECTED_FIELDS and k != "id"},
            **schedule_key(name),
            "gsi1pk": "TYPE#SCHEDULE",
            "gsi1sk": name,
            "type": "schedule",
            "name": name,
            "starttime": normalize_time(data["starttime"]),
            "endtime": normalize_time(data["endtime"]),
            "active": bool(data.get("active", True)),
            "resources": data.get("resources") or [],
            "createdBy": created_by,
            "updatedBy": data.get("updatedBy") or created_by,
            "createdAt": now,
            "updatedAt": now,
        }

        try:
            await self.table.put_item(item, if_not_exists=True)
        except ConditionalCheckError:
            await self._audit_schedule(
                "Create Schedule", name, created_by, "error",
                f'Failed to create schedule "{name}": Schedule with this name already exists',
            )
            raise ScheduleExistsError(f'Schedule "{name}" already exists')

        await self._audit_schedule(
            "Create Schedule", name, created_by, "success",
            f'Created schedule "{name}" with {", ".join(item["days"])} '
            f'from {item["starttime"]} to {item["endtime"]}',
            {"scheduleName": name, "active": item["active"], "accountId": item.get("accountId")},
        )
        self.logger.info(f"Created schedule {name}")
        return to_ui_schedule(item)

    async def update_schedule(
        self,
        name: str,
        updates: Dict[str, Any],
        updated_by: str = "system",
        audit: bool = True,
    ) -> Dict[str, Any]:
        """
        Update schedule attributes. Key and type fields are ignored.

        Raises:
            ScheduleNotFoundError: If the schedule does not exist
        """
        changes = {
            k: v for k, v in updates.items()
            if v is not None and k not in PROTECTED_FIELDS and k != "id"
        }
        for field in ("starttime", "endtime"):
            if field in changes:
                if not TIME_PATTERN.match(str(changes[field])):
                    raise ScheduleValidationError(f"Invalid {field}: expected HH:MM or HH:MM:SS")
                changes[field] = normalize_time(changes[field])
        if "timezone" in changes and not ensure_timezone(changes["timezone"]):
            raise ScheduleValidationError("Invalid timezone")
        changes["updatedAt"] = utc_now_iso()

        try:
            item = await self.table.update_item(schedule_key(name), changes)
        except ItemNotFoundError:
            raise ScheduleNotFoundError("Schedule not found")

        if audit:
            await self._audit_schedule(
                "Update Schedule", name, updated_by, "success", f'Updated schedule "{name}"',
                {"fields": sorted(k for k in changes if k != "updatedAt")},
            )
        return to_ui_schedule(item)

    async def delete_schedule(self, name: str, deleted_by: str = "system") -> None:
        existing = await self.table.get_item(schedule_key(name))
        if existing is None:
            raise ScheduleNotFoundError("Schedule not found")

        await self.table.delete_item(schedule_key(name))
        await self._audit_schedule(
            "Delete Schedule", name, deleted_by, "success", f'Deleted schedule "{name}"'
        )
        self.logger.info(f"Deleted schedule {name}")

    async def toggle_schedule_status(self, name: str, updated_by: str = "system") -> Dict[str, Any]:
        schedule = await self.get_schedule(name)
        if schedule is None:
            raise ScheduleNotFoundError("Schedule not found")
        return await self.update_schedule(
            name, {"active": not schedule["active"], "updatedBy": updated_by}, updated_by
        )

    async def record_execution(
        self, name: str, executed_at: Optional[str] = None, activate: bool = False
    ) -> Dict[str, Any]:
        """Stamp ``lastExecution`` and bump ``executionCount``; ``activate`` also sets ``active``."""
        schedule = await self.get_schedule(name)
        if schedule is None:
            raise ScheduleNotFoundError("Schedule not found")
        updates: Dict[str, Any] = {
            "lastExecution": executed_at or utc_now_iso(),
            "executionCount": int(schedule.get("executionCount") or 0) + 1,
        }
        if activate:
            updates["active"] = True
        return await self.update_schedule(
            name,
            updates,
            audit=False,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _audit_schedule(
        self,
        action: str,
        name: str,
        user: str,
        status: str,
        details: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.audit.log_user_action(
            action=action,
            resource_type="schedule",
            resource_id=name,
            resource_name=name,
            user=user,
            user_type="user",
            status=status,
            details=details,
            metadata=metadata,
        )


__all__ = [
    "ScheduleService",
    "to_ui_schedule",
    "schedule_key",
    "validate_schedule_payload",
    "normalize_time",
    "ScheduleError",
    "ScheduleExistsError",
    "ScheduleNotFoundError",
    "ScheduleValidationError",
]
