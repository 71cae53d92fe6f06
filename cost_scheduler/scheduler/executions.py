# =============================================================================
# COST OPTIMIZATION SCHEDULER - EXECUTION HISTORY
# =============================================================================
"""
Execution History

Execution records live in the schedule's partition of the app table:

    pk=SCHEDULE#<scheduleId>  sk=EXECUTION#<startTime>#<executionId>
    GSI1: TYPE#EXECUTION / <startTime>
    ttl:  epoch seconds, 30 days after creation

Each record keeps the per-resource outcome of the run in
``schedule_metadata``; later runs read it back to restore state (for
example the desired count of a scaled-down ECS service).
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from cost_scheduler.store.audit import utc_now_iso
from cost_scheduler.store.table import TableInterface


EXECUTION_TTL_DAYS = 30
LAST_STATE_LOOKBACK = 10

RESOURCE_TYPES = ("ec2", "ecs", "rds")


def empty_metadata() -> Dict[str, List[Dict[str, Any]]]:
    return {resource_type: [] for resource_type in RESOURCE_TYPES}


def _elapsed_ms(start_iso: str, end_iso: str) -> int:
    start = datetime.fromisoformat(start_iso.replace("Z", "+00:00"))
    end = datetime.fromisoformat(end_iso.replace("Z", "+00:00"))
    return int((end - start).total_seconds() * 1000)


class ExecutionHistory:
    """
    Reads and writes schedule execution records.

    Usage:
        history = ExecutionHistory(app_table)
        record = await history.create_execution(schedule_id, name, account_id, "system")
        await history.complete_execution(record, "success", 2, 0, 0, metadata)
    """

    def __init__(self, table: TableInterface, ttl_days: int = EXECUTION_TTL_DAYS):
        self.table = table
        self.ttl_days = ttl_days
        self.logger = logging.getLogger("cost_scheduler.scheduler.executions")

    async def create_execution(
        self,
        schedule_id: str,
        schedule_name: str,
        account_id: str,
        triggered_by: str = "system",
        execution_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write a ``running`` execution record and return it."""
        execution_id = execution_id or str(uuid.uuid4())
        start_time = utc_now_iso()

        record = {
            "pk": f"SCHEDULE#{schedule_id}",
            "sk": f"EXECUTION#{start_time}#{execution_id}",
            "gsi1pk": "TYPE#EXECUTION",
            "gsi1sk": start_time,
            "type": "execution",
            "executionId": execution_id,
            "scheduleId": schedule_id,
            "scheduleName": schedule_name,
            "accountId": account_id,
            "status": "running",
            "triggeredBy": triggered_by,
            "startTime": start_time,
            "resourcesStarted": 0,
            "resourcesStopped": 0,
            "resourcesFailed": 0,
            "ttl": int(time.time()) + self.ttl_days * 24 * 60 * 60,
        }
        await self.table.put_item(record)
        self.logger.debug(f"Created execution record {execution_id} for schedule {schedule_id}")
        return record

    async def complete_execution(
        self,
        record: Dict[str, Any],
        status: str,
        started: int,
        stopped: int,
        failed: int,
        schedule_metadata: Dict[str, List[Dict[str, Any]]],
        error_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Stamp the final counts, status and per-resource metadata."""
        end_time = utc_now_iso()
        updates: Dict[str, Any] = {
            "status": status,
            "endTime": end_time,
            "duration": _elapsed_ms(record["startTime"], end_time),
            "resourcesStarted": started,
            "resourcesStopped": stopped,
            "resourcesFailed": failed,
            "schedule_metadata": schedule_metadata,
        }
        if error_message:
            updates["errorMessage"] = error_message

        updated = await self.table.update_item({"pk": record["pk"], "sk": record["sk"]}, updates)
        self.logger.info(
            f"Execution {record['executionId']} {status}: "
            f"{started} started, {stopped} stopped, {failed} failed"
        )
        return updated

    async def list_executions(self, schedule_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent executions of a schedule, newest first."""
        page = await self.table.query(
            f"SCHEDULE#{schedule_id}",
            sk_prefix="EXECUTION#",
            ascending=False,
            limit=limit,
        )
        return page.items

    async def get_last_resource_state(
        self,
        schedule_id: str,
        arn: str,
        resource_type: str,
    ) -> Optional[Dict[str, Any]]:
        """
        ``last_state`` recorded for ``arn`` by the newest execution that
        acted on it, or None. Skipped entries are passed over.
        """
        for execution in await self.list_executions(schedule_id, limit=LAST_STATE_LOOKBACK):
            entries = (execution.get("schedule_metadata") or {}).get(resource_type) or []
            for entry in entries:
                if entry.get("action") == "skip":
                    continue
                if entry.get("arn") == arn and entry.get("last_state"):
                    return entry["last_state"]
        return None


__all__ = ["ExecutionHistory", "empty_metadata", "EXECUTION_TTL_DAYS", "RESOURCE_TYPES"]
