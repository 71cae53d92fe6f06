# =============================================================================
# COST OPTIMIZATION SCHEDULER - SCHEDULER SERVICE
# =============================================================================
"""
Scheduler Service

The periodic routine that enforces schedules. A run is either:

- **full**: every active schedule is evaluated against its time window and
  its resources are started (inside the window) or stopped (outside it).
- **partial**: a single schedule, addressed by id or name, is processed.
  Used by the console's "execute now" action.

Resources are grouped by the account and region in their ARN; the account's
cross-account role is assumed once per region and the per-type handlers in
:mod:`cost_scheduler.scheduler.resources` do the work. Every schedule that
changed something gets an execution record and a summarized audit entry.

Entry points:
    SchedulerService.run(event)     Async API used by the CLI and web API
    lambda_handler(event, context)  AWS Lambda entry point
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from cost_scheduler.scheduler.executions import ExecutionHistory, empty_metadata
from cost_scheduler.scheduler.resources import (
    ACTION_START,
    ACTION_STOP,
    ResourceExecution,
    get_handler,
    parse_arn,
)
from cost_scheduler.scheduler.sts import assume_role
from cost_scheduler.scheduler.time_window import is_current_time_in_range
from cost_scheduler.store.accounts import AccountService
from cost_scheduler.store.audit import AuditService
from cost_scheduler.store.schedules import ScheduleService
from cost_scheduler.store.table import TableInterface, create_table
from monitoring.logger import AuditLogger, log_context
from monitoring.metrics import MetricsCollector


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class SchedulerError(Exception):
    """Base exception for scheduler runs."""
    pass


class ScheduleLookupError(SchedulerError):
    """Raised when a partial scan names a schedule that does not exist."""
    pass


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class ScheduleOutcome:
    """Resource counts for one processed schedule."""
    started: int = 0
    stopped: int = 0
    failed: int = 0

    @property
    def acted(self) -> bool:
        return bool(self.started or self.stopped or self.failed)

    def add(self, result: ResourceExecution) -> None:
        if result.failed:
            self.failed += 1
        elif result.action == ACTION_START:
            self.started += 1
        elif result.action == ACTION_STOP:
            self.stopped += 1


@dataclass
class SchedulerResult:
    """Outcome of one scheduler run."""
    execution_id: str
    mode: str
    schedules_processed: int = 0
    resources_started: int = 0
    resources_stopped: int = 0
    resources_failed: int = 0
    duration: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.resources_failed == 0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "executionId": self.execution_id,
            "mode": self.mode,
            "schedulesProcessed": self.schedules_processed,
            "resourcesStarted": self.resources_started,
            "resourcesStopped": self.resources_stopped,
            "resourcesFailed": self.resources_failed,
            "duration": self.duration,
        }
        if self.errors:
            data["errors"] = list(self.errors)
        return data


def schedule_id_of(schedule: Dict[str, Any]) -> str:
    return schedule.get("scheduleId") or schedule["name"]


def overall_status(started: int, stopped: int, failed: int) -> str:
    if failed > 0:
        return "warning" if started + stopped > 0 else "error"
    return "success"


# =============================================================================
# SCHEDULER SERVICE
# =============================================================================

class SchedulerService:
    """
    Evaluates schedules and drives resource state.

    Attributes:
        schedules: Schedule service (active schedules, single lookups)
        accounts: Account service (active accounts)
        audit: Audit table service
        history: Execution history
        metrics: Optional metrics collector
        audit_trail: Optional local JSONL audit trail

    Usage:
        service = SchedulerService(schedules, accounts, audit, history)
        result = await service.run({})                         # full scan
        result = await service.run({"scheduleName": "office"}) # partial scan
    """

    def __init__(
        self,
        schedules: ScheduleService,
        accounts: AccountService,
        audit: AuditService,
        history: ExecutionHistory,
        metrics: Optional[MetricsCollector] = None,
        audit_trail: Optional[AuditLogger] = None,
        assume_role_fn: Callable[..., Any] = assume_role,
        client_factory: Optional[Callable[[str, Any], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.schedules = schedules
        self.accounts = accounts
        self.audit = audit
        self.history = history
        self.metrics = metrics
        self.audit_trail = audit_trail
        self._assume_role = assume_role_fn
        self._client_factory = client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger("cost_scheduler.scheduler")

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def run(self, event: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run the scheduler for an invocation event.

        Args:
            event: ``{scheduleId?, scheduleName?, force?, triggeredBy?, userEmail?}``.
                A schedule id or name selects a partial scan.

        Returns:
            Result dict (see :class:`SchedulerResult`)
        """
        event = event or {}
        partial = bool(event.get("scheduleId") or event.get("scheduleName"))
        triggered_by = event.get("triggeredBy") or ("web-ui" if partial else "system")

        if partial:
            result = await self.run_partial_scan(event, triggered_by)
        else:
            result = await self.run_full_scan(triggered_by)
        return result.to_dict()

    # -------------------------------------------------------------------------
    # Scans
    # -------------------------------------------------------------------------

    async def run_full_scan(self, triggered_by: str = "system") -> SchedulerResult:
        """Process every active schedule."""
        result = SchedulerResult(execution_id=str(uuid.uuid4()), mode="full")
        started_at = time.monotonic()

        with log_context(execution_id=result.execution_id, mode="full"):
            self.logger.info("Starting full scan")

            schedules = await self.schedules.get_active_schedules()
            accounts = await self.accounts.get_active_accounts()
            self.logger.info(
                f"Found {len(schedules)} active schedules and {len(accounts)} active accounts"
            )

            if not schedules:
                self.logger.info("No active schedules to process")
                return self._finish(result, started_at, triggered_by)

            details: List[Dict[str, Any]] = []
            for schedule in schedules:
                schedule_id = schedule_id_of(schedule)
                try:
                    outcome = await self.process_schedule(schedule, accounts, triggered_by)
                except Exception as e:
                    self.logger.error(f"Error processing schedule {schedule_id}: {e}", exc_info=True)
                    outcome = ScheduleOutcome(failed=1)
                    result.errors.append(f"{schedule_id}: {e}")
                    status = "error"
                    if self.metrics:
                        self.metrics.record_error("scheduler", type(e).__name__)
                else:
                    status = "partial" if outcome.failed else "success"

                result.resources_started += outcome.started
                result.resources_stopped += outcome.stopped
                result.resources_failed += outcome.failed
                details.append({
                    "scheduleId": schedule_id,
                    "scheduleName": schedule.get("name"),
                    "started": outcome.started,
                    "stopped": outcome.stopped,
                    "failed": outcome.failed,
                    "status": status,
                })

            result.schedules_processed = len(schedules)

            await self.audit.create_audit_log({
                "eventType": "scheduler.complete",
                "action": "full_scan",
                "user": "system",
                "userType": "system",
                "resourceType": "scheduler",
                "resourceId": result.execution_id,
                "status": overall_status(
                    result.resources_started, result.resources_stopped, result.resources_failed
                ),
                "severity": "medium" if result.resources_failed else "info",
                "source": "scheduler",
                "details": (
                    f"Full scan completed: {result.resources_started} started, "
                    f"{result.resources_stopped} stopped, {result.resources_failed} failed"
                ),
                "metadata": {
                    "schedulesProcessed": result.schedules_processed,
                    "resourcesStarted": result.resources_started,
                    "resourcesStopped": result.resources_stopped,
                    "resourcesFailed": result.resources_failed,
                    "scheduleDetails": details,
                },
            })

            return self._finish(result, started_at, triggered_by)

    async def run_partial_scan(
        self,
        event: Dict[str, Any],
        triggered_by: str = "web-ui",
    ) -> SchedulerResult:
        """
        Process the single schedule named by the event.

        Raises:
            ValueError: If the event names no schedule
            ScheduleLookupError: If the schedule does not exist
        """
        schedule_ref = event.get("scheduleId") or event.get("scheduleName")
        if not schedule_ref:
            raise ValueError("scheduleId or scheduleName is required for partial scan")

        result = SchedulerResult(execution_id=str(uuid.uuid4()), mode="partial")
        started_at = time.monotonic()
        user_email = event.get("userEmail")
        force = bool(event.get("force"))

        with log_context(execution_id=result.execution_id, mode="partial", schedule_id=schedule_ref):
            self.logger.info(f"Starting partial scan for schedule: {schedule_ref} (user={user_email or 'system'})")

            schedule = await self.schedules.get_schedule_item(schedule_ref)
            if schedule is None:
                raise ScheduleLookupError(f"Schedule not found: {schedule_ref}")

            if not schedule.get("active") and not force:
                self.logger.info(f"Schedule {schedule_ref} is inactive and force is not set, skipping")
                return self._finish(result, started_at, triggered_by)

            accounts = await self.accounts.get_active_accounts()
            outcome = await self.process_schedule(
                schedule, accounts, triggered_by, user_email=user_email, force=force
            )

            result.schedules_processed = 1
            result.resources_started = outcome.started
            result.resources_stopped = outcome.stopped
            result.resources_failed = outcome.failed
            return self._finish(result, started_at, triggered_by)

    # -------------------------------------------------------------------------
    # Schedule processing
    # -------------------------------------------------------------------------

    async def process_schedule(
        self,
        schedule: Dict[str, Any],
        accounts: List[Dict[str, Any]],
        triggered_by: str = "system",
        user_email: Optional[str] = None,
        force: bool = False,
    ) -> ScheduleOutcome:
        """
        Bring one schedule's resources to the state its time window asks for.

        ``force`` lets an inactive schedule run; it never changes the action.
        """
        resources = schedule.get("resources") or []
        schedule_id = schedule_id_of(schedule)
        name = schedule.get("name") or schedule_id
        outcome = ScheduleOutcome()

        self.logger.info(f"Processing schedule: {name} ({schedule_id}) with {len(resources)} resources")
        if not resources:
            self.logger.info(f"Schedule {name} has no resources, skipping")
            return outcome

        in_range = is_current_time_in_range(
            schedule["starttime"],
            schedule["endtime"],
            schedule["timezone"],
            schedule.get("days") or [],
            now=self._clock(),
        )
        action = ACTION_START if in_range else ACTION_STOP
        self.logger.info(f"Schedule {name}: inRange={in_range}, action={action}, force={force}")

        execution_id = str(uuid.uuid4())
        metadata = empty_metadata()
        accounts_by_id = {str(a.get("account_id")): a for a in accounts}
        started_at = time.monotonic()

        for account_id, by_region in self._group_resources(resources).items():
            account = accounts_by_id.get(account_id)
            if account is None:
                count = sum(len(items) for items in by_region.values())
                self.logger.warning(
                    f"Account {account_id} not found in active accounts, {count} resources failed"
                )
                outcome.failed += count
                continue

            for region, region_resources in by_region.items():
                try:
                    credentials = await asyncio.to_thread(
                        self._assume_role,
                        account["role_arn"],
                        account_id,
                        region,
                        account.get("external_id"),
                    )
                except Exception as e:
                    self.logger.error(
                        f"Failed to assume role for account {account_id} in region {region}: {e}"
                    )
                    outcome.failed += len(region_resources)
                    if self.metrics:
                        self.metrics.record_error("sts", type(e).__name__)
                    continue

                clients: Dict[str, Any] = {}
                for resource in region_resources:
                    resource_type = resource.get("type")
                    try:
                        service_name, handler = get_handler(resource_type)
                        if service_name not in clients:
                            clients[service_name] = await asyncio.to_thread(
                                self._make_client, service_name, credentials
                            )
                        last_state = None
                        if action == ACTION_START:
                            last_state = await self.history.get_last_resource_state(
                                schedule_id, resource["arn"], resource_type
                            )
                        execution = await asyncio.to_thread(
                            handler, resource, action, clients[service_name], last_state
                        )
                    except Exception as e:
                        self.logger.error(f"Error processing resource {resource.get('arn')}: {e}")
                        outcome.failed += 1
                        continue

                    metadata[resource_type].append(execution.to_dict())
                    outcome.add(execution)
                    self._record_resource(execution_id, schedule_id, resource_type, execution)

        if outcome.acted:
            await self._record_execution(
                execution_id, schedule, triggered_by, user_email, outcome, metadata,
                int((time.monotonic() - started_at) * 1000),
            )
            self.logger.info(
                f"Schedule {name} execution recorded: {outcome.started} started, "
                f"{outcome.stopped} stopped, {outcome.failed} failed"
            )
        else:
            self.logger.info(f"Schedule {name}: no actions performed, skipping execution record")

        return outcome

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _group_resources(
        self, resources: List[Dict[str, Any]]
    ) -> Dict[str, Dict[str, List[Dict[str, Any]]]]:
        """account id -> region -> resources, taken from each ARN."""
        grouped: Dict[str, Dict[str, List[Dict[str, Any]]]] = defaultdict(lambda: defaultdict(list))
        for resource in resources:
            parsed = parse_arn(resource.get("arn", ""))
            if parsed is None:
                self.logger.warning(f"Could not parse ARN: {resource.get('arn')}, skipping")
                continue
            grouped[parsed.account][parsed.region].append(resource)
        return grouped

    def _make_client(self, service_name: str, credentials) -> Any:
        if self._client_factory:
            return self._client_factory(service_name, credentials)
        return credentials.client(service_name)

    def _record_resource(
        self,
        execution_id: str,
        schedule_id: str,
        resource_type: str,
        execution: ResourceExecution,
    ) -> None:
        if self.metrics:
            self.metrics.record_resource_action(resource_type, execution.action, execution.status)
        if self.audit_trail:
            self.audit_trail.log_resource_action(
                execution_id, schedule_id, resource_type, execution.arn,
                execution.action, execution.status, execution.error,
            )

    async def _record_execution(
        self,
        execution_id: str,
        schedule: Dict[str, Any],
        triggered_by: str,
        user_email: Optional[str],
        outcome: ScheduleOutcome,
        metadata: Dict[str, List[Dict[str, Any]]],
        duration_ms: int,
    ) -> None:
        schedule_id = schedule_id_of(schedule)
        name = schedule.get("name") or schedule_id

        record = await self.history.create_execution(
            schedule_id,
            name,
            schedule.get("accountId") or "system",
            triggered_by,
            execution_id=execution_id,
        )
        if outcome.failed and not (outcome.started or outcome.stopped):
            status = "failed"
        elif outcome.failed:
            status = "partial"
        else:
            status = "success"
        await self.history.complete_execution(
            record, status, outcome.started, outcome.stopped, outcome.failed, metadata
        )

        summary = {rtype: _type_summary(entries) for rtype, entries in metadata.items()}
        details = " ".join(
            [f'Execution {execution_id} for schedule "{name}" completed.']
            + [
                f"{rtype.upper()}: {s['started']} started, {s['stopped']} stopped, "
                f"{s['failed']} failed, {s['skipped']} skipped."
                for rtype, s in summary.items()
            ]
            + [f"Duration: {duration_ms}ms"]
        )

        await self.audit.create_audit_log({
            "eventType": "scheduler.execution.complete",
            "action": "execution_complete",
            "user": user_email or "system",
            "userType": "user" if user_email else "system",
            "resourceType": "scheduler",
            "resourceId": execution_id,
            "resource": name,
            "status": overall_status(outcome.started, outcome.stopped, outcome.failed),
            "severity": "medium" if outcome.failed else "info",
            "source": "scheduler",
            "accountId": schedule.get("accountId"),
            "details": details,
            "metadata": {
                "executionId": execution_id,
                "scheduleId": schedule_id,
                "scheduleName": name,
                "triggeredBy": triggered_by,
                "duration": duration_ms,
                "summary": {
                    "total": {
                        "started": outcome.started,
                        "stopped": outcome.stopped,
                        "failed": outcome.failed,
                    },
                    **summary,
                },
                "schedule_metadata": metadata,
            },
        })

    def _finish(self, result: SchedulerResult, started_at: float, triggered_by: str) -> SchedulerResult:
        elapsed = time.monotonic() - started_at
        result.duration = int(elapsed * 1000)
        self.logger.info(
            f"{result.mode.capitalize()} scan completed: {result.resources_started} started, "
            f"{result.resources_stopped} stopped, {result.resources_failed} failed "
            f"in {result.duration}ms"
        )
        if self.metrics:
            self.metrics.record_scheduler_run(
                result.mode,
                "success" if result.success else "failure",
                elapsed,
                started=result.resources_started,
                stopped=result.resources_stopped,
                failed=result.resources_failed,
            )
        if self.audit_trail:
            self.audit_trail.log_scheduler_run(
                result.execution_id, result.mode, result.schedules_processed,
                result.resources_started, result.resources_stopped, result.resources_failed,
                result.duration, triggered_by,
            )
        return result


def _type_summary(entries: List[Dict[str, Any]]) -> Dict[str, int]:
    return {
        "started": sum(1 for e in entries if e["action"] == "start" and e["status"] == "success"),
        "stopped": sum(1 for e in entries if e["action"] == "stop" and e["status"] == "success"),
        "failed": sum(1 for e in entries if e["status"] == "failed"),
        "skipped": sum(1 for e in entries if e["action"] == "skip"),
    }


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def create_scheduler_service(
    config: Dict[str, Any],
    metrics: Optional[MetricsCollector] = None,
    app_table: Optional[TableInterface] = None,
    audit_table: Optional[TableInterface] = None,
) -> SchedulerService:
    """
    Build a SchedulerService and its stores from configuration.

    Args:
        config: Full application configuration (see ``cost_scheduler.main.load_config``)
        metrics: Optional metrics collector
        app_table: Existing app table backend to share (built from config if omitted)
        audit_table: Existing audit table backend to share
    """
    store_config = config.get("store", {})
    if app_table is None:
        app_table = create_table(store_config, store_config.get("app_table", "cost-optimization-scheduler-app-table"))
    if audit_table is None:
        audit_table = create_table(store_config, store_config.get("audit_table", "cost-optimization-scheduler-audit-table"))

    audit = AuditService(audit_table, store_config.get("audit_retention_days", 90))
    scheduler_config = config.get("scheduler", {})
    audit_trail = None
    if scheduler_config.get("audit_trail"):
        audit_trail = AuditLogger(scheduler_config["audit_trail"])

    return SchedulerService(
        schedules=ScheduleService(app_table, audit),
        accounts=AccountService(app_table, audit),
        audit=audit,
        history=ExecutionHistory(app_table, scheduler_config.get("execution_ttl_days", 30)),
        metrics=metrics,
        audit_trail=audit_trail,
    )


# =============================================================================
# LAMBDA ENTRY POINT
# =============================================================================

def lambda_handler(event: Optional[Dict[str, Any]], context: Any = None) -> Dict[str, Any]:
    """
    AWS Lambda handler.

    Configuration comes from the environment (``APP_TABLE_NAME``,
    ``AUDIT_TABLE_NAME``, ``AWS_REGION``, ...).
    """
    from cost_scheduler.main import load_config

    config = load_config()
    service = create_scheduler_service(config)
    request_id = getattr(context, "aws_request_id", None)
    logger.info(f"Scheduler invoked (request_id={request_id}, event={event})")
    return asyncio.run(service.run(event or {}))


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "SchedulerService",
    "SchedulerResult",
    "ScheduleOutcome",
    "SchedulerError",
    "ScheduleLookupError",
    "create_scheduler_service",
    "lambda_handler",
    "overall_status",
    "schedule_id_of",
]
