# =============================================================================
# COST OPTIMIZATION SCHEDULER - HTTP API
# =============================================================================
"""
Console HTTP API

JSON API over accounts, schedules and the audit log, plus the agent chat
endpoints, health and Prometheus metrics.

Routes:
    GET    /api/health
    GET    /api/accounts                     POST /api/accounts
    GET    /api/accounts/template            POST /api/accounts/template
    POST   /api/accounts/validate
    GET    /api/accounts/{accountId}         PUT / DELETE
    POST   /api/accounts/{accountId}/toggle
    POST   /api/accounts/{accountId}/validate
    GET    /api/schedules                    POST /api/schedules
    GET    /api/schedules/{scheduleId}       PUT / DELETE
    POST   /api/schedules/{scheduleId}/toggle
    POST   /api/schedules/{scheduleId}/execute
    GET    /api/audit                        POST / DELETE
    GET    /api/audit/stats
    POST   /api/chat
    GET    /api/chat/{threadId}
    POST   /api/chat/{threadId}/approve
    GET    /metrics

Errors are returned as JSON: 400 for invalid input, 404 for unknown
records, 409 for duplicates and 500 (``{"error", "details"}``) otherwise.
The acting user is read from the ``x-user-email`` header.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web

from cost_scheduler.agent.service import (
    AgentRunError,
    AgentService,
    AgentSessionError,
    ThreadNotFoundError,
)
from cost_scheduler.scheduler.service import ScheduleLookupError, SchedulerService
from cost_scheduler.store.accounts import (
    AccountExistsError,
    AccountNotFoundError,
    AccountService,
    AccountValidationError,
)
from cost_scheduler.store.audit import AuditService
from cost_scheduler.store.schedules import (
    ScheduleExistsError,
    ScheduleNotFoundError,
    ScheduleService,
    ScheduleValidationError,
)
from cost_scheduler.store.templates import generate_external_id, generate_onboarding_template
from monitoring.metrics import HealthCheck, MetricsCollector


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class ApiError(Exception):
    """Base exception for API request errors."""
    pass


class ApiValidationError(ApiError):
    """Raised when a request is missing parameters or carries bad JSON."""
    pass


class ApiConfigError(ApiError):
    """Raised when the server lacks configuration a route needs."""
    pass


# =============================================================================
# CONSTANTS
# =============================================================================

HEADER_USER = "x-user-email"
SERVICE_NAME = "cost-optimization-scheduler"

DEFAULT_SCHEDULE_PAGE_SIZE = 10

VALIDATION_ERRORS = (
    ApiValidationError,
    AccountValidationError,
    ScheduleValidationError,
    AgentSessionError,
    ValueError,
)
NOT_FOUND_ERRORS = (
    AccountNotFoundError,
    ScheduleNotFoundError,
    ScheduleLookupError,
    ThreadNotFoundError,
)
CONFLICT_ERRORS = (AccountExistsError, ScheduleExistsError)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


# =============================================================================
# APP SERVICES
# =============================================================================

@dataclass
class ApiServices:
    """Everything the request handlers need."""
    accounts: AccountService
    schedules: ScheduleService
    audit: AuditService
    scheduler: SchedulerService
    agent: Optional[AgentService] = None
    metrics: Optional[MetricsCollector] = None
    health: HealthCheck = field(default_factory=HealthCheck)
    config: Dict[str, Any] = field(default_factory=dict)


SERVICES_KEY = web.AppKey("services", ApiServices)


# =============================================================================
# HELPERS
# =============================================================================

def current_user(request: web.Request) -> str:
    return request.headers.get(HEADER_USER) or "system"


def client_ip(request: web.Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or request.remote or "unknown"


async def read_json(request: web.Request) -> Dict[str, Any]:
    """Request body as a dict; an empty body is ``{}``."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise ApiValidationError(f"Invalid JSON body: {e}")
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ApiValidationError("Request body must be a JSON object")
    return body


def query_int(request: web.Request, name: str, default: Optional[int] = None) -> Optional[int]:
    value = request.query.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ApiValidationError(f"Query parameter {name} must be an integer")


def services_of(request: web.Request) -> ApiServices:
    return request.app[SERVICES_KEY]


def error_response(status: int, error: str, details: Optional[str] = None) -> web.Response:
    body: Dict[str, Any] = {"success": False, "error": error}
    if details is not None:
        body["details"] = details
    return web.json_response(body, status=status)


# =============================================================================
# MIDDLEWARES
# =============================================================================

@web.middleware
async def metrics_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Record request count and latency per route template."""
    metrics = services_of(request).metrics
    start_time = time.time()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    finally:
        if metrics is not None:
            resource = request.match_info.route.resource
            route = resource.canonical if resource is not None else "unmatched"
            metrics.record_http_request(request.method, route, status, time.time() - start_time)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Map service exceptions to JSON error responses."""
    try:
        return await handler(request)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        return error_response(e.status, e.reason)
    except NOT_FOUND_ERRORS as e:
        return error_response(404, str(e))
    except CONFLICT_ERRORS as e:
        return error_response(409, str(e))
    except VALIDATION_ERRORS as e:
        logger.info(f"Rejected {request.method} {request.path}: {e}")
        return error_response(400, str(e))
    except AgentRunError as e:
        logger.error(f"Agent failure on {request.method} {request.path}: {e}")
        return error_response(500, "Agent run failed", str(e))
    except Exception as e:
        logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        metrics = services_of(request).metrics
        if metrics is not None:
            metrics.record_error("web", type(e).__name__)
        return error_response(500, "Internal server error", str(e))


# =============================================================================
# HEALTH AND METRICS
# =============================================================================

async def handle_health(request: web.Request) -> web.Response:
    services = services_of(request)
    store_config = services.config.get("store", {})
    result = await services.health.check_all()

    app_check = result["checks"].get("app_table", {})
    if app_check.get("healthy"):
        dynamodb: Any = "connected"
    else:
        dynamodb = {"status": "error", "error": app_check.get("error") or "unavailable"}

    body = {
        "status": result["status"],
        "timestamp": result["timestamp"],
        "service": SERVICE_NAME,
        "environment": services.config.get("app", {}).get("environment", "development"),
        "aws": {
            "region": store_config.get("region"),
            "tableName": store_config.get("app_table"),
            "dynamodb": dynamodb,
        },
        "checks": result["checks"],
    }
    status = {"healthy": 200, "degraded": 207}.get(result["status"], 500)
    return web.json_response(body, status=status)


async def handle_metrics(request: web.Request) -> web.Response:
    metrics = services_of(request).metrics
    if metrics is None:
        raise web.HTTPNotFound(reason="Metrics are disabled")
    # the exposition content type carries parameters, so it goes in as a raw header
    return web.Response(body=metrics.export(), headers={"Content-Type": metrics.content_type})


# =============================================================================
# ACCOUNT HANDLERS
# =============================================================================

async def list_accounts(request: web.Request) -> web.Response:
    accounts = services_of(request).accounts
    result = await accounts.list_accounts(
        limit=query_int(request, "limit", 50),
        next_token=request.query.get("nextToken"),
        status_filter=request.query.get("status"),
        connection_filter=request.query.get("connection"),
        search=request.query.get("search"),
    )
    return web.json_response({
        "success": True,
        "data": result["accounts"],
        "nextToken": result["nextToken"],
    })


async def create_account(request: web.Request) -> web.Response:
    body = await read_json(request)
    body["createdBy"] = body.get("createdBy") or current_user(request)
    account = await services_of(request).accounts.create_account(body)
    return web.json_response(
        {"success": True, "data": account, "message": "Account created successfully"},
        status=201,
    )


async def get_account(request: web.Request) -> web.Response:
    account_id = request.match_info["accountId"]
    account = await services_of(request).accounts.get_account(account_id)
    if account is None:
        raise AccountNotFoundError("Account not found")
    return web.json_response({"success": True, "data": account})


async def update_account(request: web.Request) -> web.Response:
    account_id = request.match_info["accountId"]
    body = await read_json(request)
    body["updatedBy"] = current_user(request)
    account = await services_of(request).accounts.update_account(account_id, body)
    return web.json_response(
        {"success": True, "data": account, "message": "Account updated successfully"}
    )


async def delete_account(request: web.Request) -> web.Response:
    account_id = request.match_info["accountId"]
    await services_of(request).accounts.delete_account(account_id, current_user(request))
    return web.json_response({"success": True, "message": "Account deleted successfully"})


async def toggle_account(request: web.Request) -> web.Response:
    account_id = request.match_info["accountId"]
    account = await services_of(request).accounts.toggle_account_status(
        account_id, current_user(request)
    )
    state = "active" if account["active"] else "inactive"
    return web.json_response({
        "success": True,
        "data": account,
        "message": f"Account status toggled to {state}",
    })


async def validate_account(request: web.Request) -> web.Response:
    account_id = request.match_info["accountId"]
    account = await services_of(request).accounts.validate_account(
        account_id, current_user(request)
    )
    return web.json_response({
        "success": True,
        "valid": account.get("connectionStatus") == "connected",
        "data": account,
    })


async def validate_credentials(request: web.Request) -> web.Response:
    body = await read_json(request)
    role_arn = body.get("roleArn")
    region = body.get("region")
    if not role_arn or not region:
        raise ApiValidationError("Missing required parameters: roleArn, region")

    result = await services_of(request).accounts.validate_credentials(
        role_arn, body.get("externalId"), region
    )
    return web.json_response({"success": True, "data": result})


def _onboarding_response(request: web.Request, external_id: Optional[str]) -> web.Response:
    hub_account_id = services_of(request).config.get("web", {}).get("hub_account_id")
    if not hub_account_id:
        raise ApiConfigError("HUB_ACCOUNT_ID is not configured")

    external_id = external_id or generate_external_id()
    return web.json_response({
        "success": True,
        "template": generate_onboarding_template(str(hub_account_id), external_id),
        "externalId": external_id,
    })


async def get_account_template(request: web.Request) -> web.Response:
    return _onboarding_response(request, request.query.get("externalId"))


async def post_account_template(request: web.Request) -> web.Response:
    body = await read_json(request)
    return _onboarding_response(request, body.get("externalId"))


# =============================================================================
# SCHEDULE HANDLERS
# =============================================================================

async def list_schedules(request: web.Request) -> web.Response:
    schedules = await services_of(request).schedules.list_schedules(
        status_filter=request.query.get("status"),
        search=request.query.get("search"),
        resource_filter=request.query.get("resource"),
    )

    page = max(query_int(request, "page", 1), 1)
    limit = max(query_int(request, "limit", DEFAULT_SCHEDULE_PAGE_SIZE), 1)
    total = len(schedules)
    start = (page - 1) * limit
    data = schedules[start:start + limit]

    return web.json_response({
        "success": True,
        "data": data,
        "count": len(data),
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit),
        },
    })


async def create_schedule(request: web.Request) -> web.Response:
    body = await read_json(request)
    body["createdBy"] = body.get("createdBy") or current_user(request)
    body["updatedBy"] = body.get("updatedBy") or body["createdBy"]
    schedule = await services_of(request).schedules.create_schedule(body)
    return web.json_response(
        {
            "success": True,
            "data": schedule,
            "message": f'Schedule "{schedule["name"]}" created successfully',
        },
        status=201,
    )


async def get_schedule(request: web.Request) -> web.Response:
    name = request.match_info["scheduleId"]
    schedule = await services_of(request).schedules.get_schedule(name)
    if schedule is None:
        raise ScheduleNotFoundError("Schedule not found")
    return web.json_response({"success": True, "data": schedule})


async def update_schedule(request: web.Request) -> web.Response:
    name = request.match_info["scheduleId"]
    body = await read_json(request)
    user = current_user(request)
    body["updatedBy"] = user
    schedule = await services_of(request).schedules.update_schedule(name, body, updated_by=user)
    return web.json_response({
        "success": True,
        "data": schedule,
        "message": f'Schedule "{name}" updated successfully',
    })


async def delete_schedule(request: web.Request) -> web.Response:
    name = request.match_info["scheduleId"]
    await services_of(request).schedules.delete_schedule(name, current_user(request))
    return web.json_response({
        "success": True,
        "message": f'Schedule "{name}" deleted successfully',
    })


async def toggle_schedule(request: web.Request) -> web.Response:
    name = request.match_info["scheduleId"]
    schedule = await services_of(request).schedules.toggle_schedule_status(
        name, current_user(request)
    )
    state = "active" if schedule["active"] else "inactive"
    return web.json_response({
        "success": True,
        "data": schedule,
        "message": f"Schedule status toggled to {state}",
    })


async def execute_schedule(request: web.Request) -> web.Response:
    """
    Run a partial scan for one schedule now.

    A manual run is forced so inactive schedules are processed too, and it
    leaves the schedule active.

    The scan itself failing is reported in the body (``executionStatus:
    failed``) rather than as an HTTP error, so the execution counters and
    the audit entry are always written.
    """
    services = services_of(request)
    name = request.match_info["scheduleId"]
    user = current_user(request)

    schedule = await services.schedules.get_schedule(name)
    if schedule is None:
        raise ScheduleNotFoundError("Schedule not found")

    execution_time = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    scheduler_result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    try:
        scheduler_result = await services.scheduler.run({
            "scheduleId": name,
            "scheduleName": schedule["name"],
            "triggeredBy": "web-ui",
            "userEmail": user,
            "force": True,
        })
    except Exception as e:
        logger.error(f"Manual execution of schedule {name} failed: {e}", exc_info=True)
        error = str(e)

    if error is not None:
        execution_status = "failed"
    elif scheduler_result and scheduler_result.get("resourcesFailed", 0) > 0:
        execution_status = "partial"
    else:
        execution_status = "success"

    await services.schedules.record_execution(name, execution_time, activate=True)

    await services.audit.log_resource_action(
        action="Execute Schedule",
        resource_type="schedule",
        resource_id=name,
        resource_name=schedule["name"],
        status="error" if execution_status == "failed" else (
            "warning" if execution_status == "partial" else "success"
        ),
        details=f'Manually executed schedule "{schedule["name"]}": {execution_status}',
        user=user,
        user_type="user",
        source="web-ui",
        metadata={
            "executionStatus": execution_status,
            "schedulerResult": scheduler_result,
            "error": error,
        },
    )

    body: Dict[str, Any] = {
        "success": execution_status != "failed",
        "message": (
            f'Schedule "{schedule["name"]}" executed'
            if error is None else f'Schedule "{schedule["name"]}" execution failed: {error}'
        ),
        "executionTime": execution_time,
        "executionStatus": execution_status,
        "schedulerResult": scheduler_result,
    }
    return web.json_response(body)


# =============================================================================
# AUDIT HANDLERS
# =============================================================================

AUDIT_QUERY_FILTERS = (
    "startDate", "endDate", "eventType", "status", "severity", "userType",
    "resourceType", "user", "correlationId", "nextPageToken", "searchTerm",
)


def audit_filters(request: web.Request) -> Dict[str, Any]:
    filters: Dict[str, Any] = {
        name: request.query[name] for name in AUDIT_QUERY_FILTERS if request.query.get(name)
    }
    limit = query_int(request, "limit")
    if limit:
        filters["limit"] = limit
    return filters


async def list_audit_logs(request: web.Request) -> web.Response:
    result = await services_of(request).audit.get_audit_logs(audit_filters(request))
    return web.json_response({
        "success": True,
        "data": result["logs"],
        "nextPageToken": result["nextPageToken"],
        "count": len(result["logs"]),
    })


async def create_audit_log(request: web.Request) -> web.Response:
    body = await read_json(request)
    entry = {
        **body,
        "user": body.get("user") or current_user(request),
        "userAgent": request.headers.get("user-agent", "unknown"),
        "ipAddress": client_ip(request),
        "source": "web-ui",
    }
    audit_id = await services_of(request).audit.create_audit_log(entry)
    if audit_id is None:
        raise ApiError("Failed to create audit log")
    return web.json_response({"success": True, "id": audit_id}, status=201)


async def delete_audit_log(request: web.Request) -> web.Response:
    audit_id = request.query.get("id")
    timestamp = request.query.get("timestamp")
    if not audit_id or not timestamp:
        raise ApiValidationError("Missing required parameters: id, timestamp")
    await services_of(request).audit.delete_audit_log(audit_id, timestamp)
    return web.json_response({"success": True, "message": "Audit log deleted successfully"})


async def audit_stats(request: web.Request) -> web.Response:
    stats = await services_of(request).audit.get_audit_log_stats(audit_filters(request))
    return web.json_response({"success": True, "data": stats})


# =============================================================================
# CHAT HANDLERS
# =============================================================================

def agent_of(request: web.Request) -> AgentService:
    agent = services_of(request).agent
    if agent is None:
        raise web.HTTPServiceUnavailable(reason="Agent is not enabled")
    return agent


async def chat(request: web.Request) -> web.Response:
    body = await read_json(request)
    if not body.get("message") and not body.get("messages"):
        raise ApiValidationError("Missing or invalid messages")
    messages = body.get("messages")
    if messages is not None and not isinstance(messages, list):
        raise ApiValidationError("Missing or invalid messages")

    reply = await agent_of(request).chat(
        message=body.get("message"),
        messages=messages,
        thread_id=body.get("threadId"),
        auto_approve=bool(body.get("autoApprove", False)),
        mode=body.get("mode"),
        account_id=body.get("accountId"),
        account_name=body.get("accountName"),
    )
    return web.json_response(reply)


async def approve_chat(request: web.Request) -> web.Response:
    body = await read_json(request)
    reply = await agent_of(request).approve(
        request.match_info["threadId"],
        approved=bool(body.get("approved", True)),
        mode=body.get("mode"),
    )
    return web.json_response(reply)


async def get_chat_thread(request: web.Request) -> web.Response:
    reply = await agent_of(request).get_thread(
        request.match_info["threadId"], mode=request.query.get("mode")
    )
    return web.json_response(reply)


# =============================================================================
# APPLICATION
# =============================================================================

def setup_routes(app: web.Application) -> None:
    router = app.router
    router.add_get("/api/health", handle_health)
    router.add_get("/metrics", handle_metrics)

    # literal account paths before /{accountId}
    router.add_get("/api/accounts", list_accounts)
    router.add_post("/api/accounts", create_account)
    router.add_get("/api/accounts/template", get_account_template)
    router.add_post("/api/accounts/template", post_account_template)
    router.add_post("/api/accounts/validate", validate_credentials)
    router.add_get("/api/accounts/{accountId}", get_account)
    router.add_put("/api/accounts/{accountId}", update_account)
    router.add_delete("/api/accounts/{accountId}", delete_account)
    router.add_post("/api/accounts/{accountId}/toggle", toggle_account)
    router.add_post("/api/accounts/{accountId}/validate", validate_account)

    router.add_get("/api/schedules", list_schedules)
    router.add_post("/api/schedules", create_schedule)
    router.add_get("/api/schedules/{scheduleId}", get_schedule)
    router.add_put("/api/schedules/{scheduleId}", update_schedule)
    router.add_delete("/api/schedules/{scheduleId}", delete_schedule)
    router.add_post("/api/schedules/{scheduleId}/toggle", toggle_schedule)
    router.add_post("/api/schedules/{scheduleId}/execute", execute_schedule)

    router.add_get("/api/audit", list_audit_logs)
    router.add_post("/api/audit", create_audit_log)
    router.add_delete("/api/audit", delete_audit_log)
    router.add_get("/api/audit/stats", audit_stats)

    router.add_post("/api/chat", chat)
    router.add_get("/api/chat/{threadId}", get_chat_thread)
    router.add_post("/api/chat/{threadId}/approve", approve_chat)


def create_app(services: ApiServices) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        services: Shared service instances

    Returns:
        Configured application (not yet running)
    """
    app = web.Application(middlewares=[metrics_middleware, error_middleware])
    app[SERVICES_KEY] = services
    setup_routes(app)

    async def on_cleanup(app: web.Application) -> None:
        if services.agent is not None:
            await services.agent.close()

    app.on_cleanup.append(on_cleanup)
    return app


class ApiServer:
    """
    Runs the API application on a TCP site.

    Attributes:
        host: Bind address
        port: Bind port
    """

    def __init__(self, services: ApiServices, host: str = "0.0.0.0", port: int = 8080):
        self.services = services
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        if self._runner is not None:
            logger.warning("API server already running")
            return

        self._runner = web.AppRunner(create_app(self.services))
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info(f"API server started on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner is None:
            return

        logger.info("Stopping API server...")
        await self._runner.cleanup()
        self._runner = None
        self._site = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        return self._runner is not None


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_api_server(services: ApiServices, config: Optional[Dict[str, Any]] = None) -> ApiServer:
    """Create an API server from the ``web`` config section."""
    config = config or {}
    return ApiServer(
        services,
        host=config.get("host", "0.0.0.0"),
        port=int(config.get("port", 8080)),
    )


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "ApiServices",
    "ApiServer",
    "create_app",
    "create_api_server",
    "setup_routes",
    "current_user",
    "ApiError",
    "ApiValidationError",
    "ApiConfigError",
    "HEADER_USER",
    "SERVICE_NAME",
]
