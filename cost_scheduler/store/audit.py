# =============================================================================
# COST OPTIMIZATION SCHEDULER - AUDIT LOG SERVICE
# =============================================================================
"""
Audit Log Service

Records and queries the audit trail kept in the audit table. Every console
mutation, scheduler run and agent credential request lands here.

Item layout:
    pk=LOG#<id>  sk=<timestamp>
    GSI1: TYPE#LOG        / timestamp   (global time line)
    GSI2: USER#<user>     / timestamp   (per user)
    GSI3: EVENT#<type>    / timestamp   (per event type)
    expire_at: epoch seconds, 90 days after creation (table TTL)

Audit writes never raise: a failed write is logged and swallowed so that
the audited operation itself is not disrupted.
"""

from __future__ import annotations

import logging
import random
import string
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from cost_scheduler.store.table import (
    StoreError,
    TableInterface,
    decode_page_token,
    encode_page_token,
)


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

AUDIT_RETENTION_DAYS = 90
DEFAULT_PAGE_SIZE = 20
STATS_SAMPLE_SIZE = 1000

AUDIT_FIELDS = (
    "id", "timestamp", "eventType", "action", "user", "userType", "resource",
    "resourceType", "resourceId", "status", "severity", "details", "metadata",
    "ipAddress", "userAgent", "sessionId", "correlationId", "source", "region",
    "accountId", "duration", "errorCode",
)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_audit_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"audit-{int(time.time() * 1000)}-{suffix}"


def severity_for_status(status: str) -> str:
    if status == "error":
        return "high"
    if status == "warning":
        return "medium"
    return "info"


def event_type_for(resource_type: str, action: str) -> str:
    return f"{resource_type}.{'_'.join(action.lower().split())}"


# =============================================================================
# AUDIT SERVICE
# =============================================================================

class AuditService:
    """
    Reads and writes audit log entries.

    Usage:
        audit = AuditService(create_table(store_config, "audit-table"))
        await audit.log_user_action(action="Create Account", resource_type="account", ...)
        page = await audit.get_audit_logs({"user": "ops@example.com"})
    """

    def __init__(self, table: TableInterface, retention_days: int = AUDIT_RETENTION_DAYS):
        self.table = table
        self.retention_days = retention_days
        self.logger = logging.getLogger("cost_scheduler.store.audit")

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create_audit_log(self, entry: Dict[str, Any]) -> Optional[str]:
        """
        Write an audit entry.

        Returns:
            The generated audit id, or None when the write failed or the
            entry was empty
        """
        if not entry or not isinstance(entry, dict):
            return None

        data = dict(entry)
        data["action"] = data.get("action") or "Unknown Action"
        data["status"] = data.get("status") or "info"
        data["user"] = data.get("user") or "system"
        data.setdefault("userType", "system")
        data.setdefault("severity", severity_for_status(data["status"]))

        audit_id = generate_audit_id()
        timestamp = utc_now_iso()
        event_type = data.get("eventType") or "unknown"

        item = {
            "pk": f"LOG#{audit_id}",
            "sk": timestamp,
            "gsi1pk": "TYPE#LOG",
            "gsi1sk": timestamp,
            "gsi2pk": f"USER#{data['user']}",
            "gsi2sk": timestamp,
            "gsi3pk": f"EVENT#{event_type}",
            "gsi3sk": timestamp,
            "expire_at": int(time.time()) + self.retention_days * 24 * 60 * 60,
            "type": "audit_log",
            **data,
            "id": audit_id,
            "timestamp": timestamp,
        }

        try:
            await self.table.put_item(item)
        except StoreError as e:
            self.logger.error(f"Failed to write audit log {audit_id}: {e}")
            return None

        self.logger.debug(f"Created audit log {audit_id} ({event_type})")
        return audit_id

    async def log_user_action(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        resource_name: str = "",
        user: str = "system",
        user_type: str = "user",
        status: str = "success",
        details: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        **extra: Any,
    ) -> Optional[str]:
        """Record an action performed through the console."""
        return await self.create_audit_log({
            "eventType": event_type_for(resource_type, action),
            "action": action,
            "resourceType": resource_type,
            "resourceId": resource_id,
            "resource": resource_name or resource_id,
            "user": user,
            "userType": user_type,
            "status": status,
            "severity": severity_for_status(status),
            "details": details,
            "metadata": metadata or {},
            "source": "web-ui",
            **extra,
        })

    async def log_resource_action(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        resource_name: str = "",
        status: str = "success",
        details: str = "",
        user: Optional[str] = None,
        user_type: Optional[str] = None,
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **extra: Any,
    ) -> Optional[str]:
        """Record an action performed by the system on a resource."""
        return await self.create_audit_log({
            "eventType": event_type_for(resource_type, action),
            "action": action,
            "resourceType": resource_type,
            "resourceId": resource_id,
            "resource": resource_name or resource_id,
            "status": status,
            "severity": severity_for_status(status),
            "details": details,
            "user": user or "system",
            "userType": user_type or "system",
            "source": source or "system",
            "metadata": metadata or {},
            **extra,
        })

    async def delete_audit_log(self, audit_id: str, timestamp: str) -> None:
        await self.table.delete_item({"pk": f"LOG#{audit_id}", "sk": timestamp})
        self.logger.info(f"Deleted audit log {audit_id}")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_audit_logs(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Fetch audit logs, newest first.

        The index is chosen from the filters: ``user`` selects GSI2,
        ``eventType`` selects GSI3, otherwise the global GSI1 time line is
        used. ``status``, ``severity``, ``resourceType`` and ``searchTerm``
        are applied to the fetched page.

        Returns:
            ``{"logs": [...], "nextPageToken": str | None}``
        """
        filters = filters or {}
        limit = int(filters.get("limit") or DEFAULT_PAGE_SIZE)
        start_key = decode_page_token(filters.get("nextPageToken"))

        user = filters.get("user")
        event_type = filters.get("eventType")
        if user and user != "all":
            index, partition = "GSI2", f"USER#{user}"
        elif event_type and event_type != "all":
            index, partition = "GSI3", f"EVENT#{event_type}"
        else:
            index, partition = "GSI1", "TYPE#LOG"

        end_date = filters.get("endDate") or utc_now_iso()
        start_date = filters.get("startDate") if filters.get("endDate") else None

        try:
            page = await self.table.query(
                partition,
                index=index,
                sk_range=(start_date, end_date),
                ascending=False,
                limit=limit,
                start_key=start_key,
            )
        except StoreError as e:
            self.logger.error(f"Error fetching audit logs: {e}")
            return {"logs": [], "nextPageToken": None}

        logs = [self._to_audit_log(item) for item in page.items]
        logs = self._apply_filters(logs, filters)

        return {"logs": logs, "nextPageToken": encode_page_token(page.last_key)}

    async def get_logs_by_correlation_id(self, correlation_id: str) -> List[Dict[str, Any]]:
        """All entries sharing a correlation id, newest first."""
        try:
            items = await self.table.scan(filters={"correlationId": correlation_id})
        except StoreError as e:
            self.logger.error(f"Error fetching correlated audit logs: {e}")
            return []
        logs = [self._to_audit_log(item) for item in items]
        logs.sort(key=lambda log: log.get("timestamp") or "", reverse=True)
        return logs

    async def get_audit_log_stats(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Aggregate counts over the most recent logs matching the filters."""
        query_filters = dict(filters or {})
        query_filters["limit"] = STATS_SAMPLE_SIZE
        query_filters.pop("nextPageToken", None)
        logs = (await self.get_audit_logs(query_filters))["logs"]

        def group_by(key: str) -> Dict[str, int]:
            return dict(Counter(log.get(key) or "unknown" for log in logs))

        return {
            "totalLogs": len(logs),
            "successCount": sum(1 for log in logs if log.get("status") == "success"),
            "errorCount": sum(1 for log in logs if log.get("status") == "error"),
            "warningCount": sum(1 for log in logs if log.get("status") == "warning"),
            "systemEvents": sum(1 for log in logs if log.get("userType") == "system"),
            "userEvents": sum(1 for log in logs if log.get("userType") in ("user", "admin")),
            "criticalEvents": sum(1 for log in logs if log.get("severity") == "critical"),
            "byEventType": group_by("eventType"),
            "byStatus": group_by("status"),
            "bySeverity": group_by("severity"),
            "byResourceType": group_by("resourceType"),
        }

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_audit_log(item: Dict[str, Any]) -> Dict[str, Any]:
        log = {name: item.get(name) for name in AUDIT_FIELDS}
        log["id"] = item.get("id") or str(item.get("pk", "")).replace("LOG#", "", 1)
        log["type"] = "audit_log"
        return log

    @staticmethod
    def _apply_filters(logs: List[Dict[str, Any]], filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        status = filters.get("status")
        if status and status != "all":
            logs = [log for log in logs if log.get("status") == status]
        if filters.get("severity"):
            logs = [log for log in logs if log.get("severity") == filters["severity"]]
        if filters.get("resourceType"):
            logs = [log for log in logs if log.get("resourceType") == filters["resourceType"]]
        if filters.get("userType"):
            logs = [log for log in logs if log.get("userType") == filters["userType"]]
        if filters.get("correlationId"):
            logs = [log for log in logs if log.get("correlationId") == filters["correlationId"]]
        if filters.get("searchTerm"):
            term = str(filters["searchTerm"]).lower()
            logs = [
                log for log in logs
                if term in (log.get("action") or "").lower()
                or term in (log.get("details") or "").lower()
                or term in (log.get("user") or "").lower()
            ]
        return logs


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "AuditService",
    "utc_now_iso",
    "generate_audit_id",
    "severity_for_status",
    "event_type_for",
    "AUDIT_RETENTION_DAYS",
]
