# =============================================================================
# COST OPTIMIZATION SCHEDULER - METRICS COLLECTION
# =============================================================================
"""
Metrics Collection Module

Collects and exports Prometheus metrics for the console API, the scheduler
and the agent. Each collector owns its ``CollectorRegistry`` so several
collectors (one per test, for instance) never clash on metric names.

Metric Categories:
    - HTTP metrics: Request counts and latency per route
    - Scheduler metrics: Scan runs, durations, per-resource actions
    - LLM metrics: Token usage, costs, latency
    - Agent metrics: Chat sessions, iterations, tool calls
    - System metrics: Errors, uptime
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

logger = logging.getLogger(__name__)


# =============================================================================
# LLM COST ESTIMATOR
# =============================================================================

# Pricing per 1K tokens (USD) - update as providers adjust rates
LLM_PRICING: Dict[str, Dict[str, float]] = {
    # Anthropic (direct API and Bedrock model ids)
    "claude-sonnet-4-20250514": {"input": 0.003, "output": 0.015},
    "claude-3-5-sonnet-20241022": {"input": 0.003, "output": 0.015},
    "claude-3-5-haiku-20241022": {"input": 0.001, "output": 0.005},
    "anthropic.claude-3-5-sonnet-20241022-v2:0": {"input": 0.003, "output": 0.015},
    "anthropic.claude-3-haiku-20240307-v1:0": {"input": 0.00025, "output": 0.00125},
    # OpenAI
    "gpt-4o": {"input": 0.005, "output": 0.015},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
}

# Local models (ollama) and unknown ids
_DEFAULT_PRICING = {"input": 0.0, "output": 0.0}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """
    Estimate the dollar cost of an LLM call.

    Args:
        model: Model identifier.
        input_tokens: Number of input tokens.
        output_tokens: Number of output tokens.

    Returns:
        Estimated cost in USD.
    """
    rates = LLM_PRICING.get(model)
    if rates is None:
        for key in LLM_PRICING:
            if model.startswith(key.rsplit("-", 1)[0]):
                rates = LLM_PRICING[key]
                break
    if rates is None:
        rates = _DEFAULT_PRICING

    return (input_tokens * rates["input"] + output_tokens * rates["output"]) / 1000


# =============================================================================
# METRICS COLLECTOR
# =============================================================================


class MetricsCollector:
    """
    Central metrics collector.

    Usage::

        metrics = MetricsCollector()
        metrics.record_http_request("GET", "/api/accounts", 200, 0.012)
        metrics.record_scheduler_run("full", "success", 2.4, started=3, stopped=1, failed=0)
        metrics.record_llm_call("gpt-4o", "planner", 1500, 800, 3.2)
        body = metrics.export()
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.namespace = self.config.get("namespace", "cost_scheduler")
        self.registry = CollectorRegistry()
        self._start_time = time.monotonic()
        self._lock = threading.Lock()

        # Plain totals mirrored for snapshot()
        self._totals: Dict[str, int] = {
            "scheduler_runs": 0,
            "resources_started": 0,
            "resources_stopped": 0,
            "resources_failed": 0,
            "http_requests": 0,
            "llm_requests": 0,
            "errors": 0,
        }
        self._last_scheduler_run: Optional[str] = None

        self._init_prometheus()

    # -----------------------------------------------------------------
    # Prometheus initialization
    # -----------------------------------------------------------------

    def _init_prometheus(self) -> None:
        ns = self.namespace
        reg = self.registry

        # HTTP metrics
        self.http_requests = Counter(
            "http_requests_total",
            "Total HTTP API requests",
            ["method", "route", "status"],
            namespace=ns, registry=reg,
        )
        self.http_latency = Histogram(
            "http_request_duration_seconds",
            "HTTP API request duration",
            ["route"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
            namespace=ns, registry=reg,
        )

        # Scheduler metrics
        self.scheduler_runs = Counter(
            "scheduler_runs_total",
            "Total scheduler scans",
            ["mode", "result"],
            namespace=ns, registry=reg,
        )
        self.scheduler_duration = Histogram(
            "scheduler_run_duration_seconds",
            "Scheduler scan duration",
            ["mode"],
            buckets=[1, 5, 10, 30, 60, 120, 300, 600],
            namespace=ns, registry=reg,
        )
        self.resource_actions = Counter(
            "scheduler_resource_actions_total",
            "Resource start/stop/skip outcomes",
            ["resource_type", "action", "status"],
            namespace=ns, registry=reg,
        )
        self.last_run_timestamp = Gauge(
            "scheduler_last_run_timestamp_seconds",
            "Unix time of the last completed scan",
            namespace=ns, registry=reg,
        )

        # LLM metrics
        self.llm_requests = Counter(
            "llm_requests_total",
            "Total LLM API requests",
            ["model", "node"],
            namespace=ns, registry=reg,
        )
        self.llm_tokens = Counter(
            "llm_tokens_total",
            "Total tokens used",
            ["model", "token_type"],
            namespace=ns, registry=reg,
        )
        self.llm_latency = Histogram(
            "llm_request_duration_seconds",
            "LLM request duration",
            ["model"],
            buckets=[1, 2, 5, 10, 30, 60, 120],
            namespace=ns, registry=reg,
        )
        self.llm_cost = Counter(
            "llm_cost_dollars",
            "Estimated LLM cost in dollars",
            ["model"],
            namespace=ns, registry=reg,
        )

        # Agent metrics
        self.agent_sessions = Counter(
            "agent_sessions_total",
            "Agent chat turns by outcome",
            ["mode", "status"],
            namespace=ns, registry=reg,
        )
        self.agent_iterations = Histogram(
            "agent_iterations_count",
            "Iterations used per agent run",
            buckets=[1, 2, 3, 5, 8, 13, 21, 30],
            namespace=ns, registry=reg,
        )
        self.tool_calls = Counter(
            "agent_tool_calls_total",
            "Agent tool invocations",
            ["tool", "result"],
            namespace=ns, registry=reg,
        )

        # System metrics
        self.errors_total = Counter(
            "errors_total",
            "Total errors",
            ["component", "error_type"],
            namespace=ns, registry=reg,
        )
        self.system_info = Info(
            "system",
            "System information",
            namespace=ns, registry=reg,
        )

    # =====================================================================
    # RECORDING METHODS
    # =====================================================================

    # -- HTTP metrics -----------------------------------------------------

    def record_http_request(self, method: str, route: str, status: int, duration: float) -> None:
        self.http_requests.labels(method=method, route=route, status=str(status)).inc()
        self.http_latency.labels(route=route).observe(duration)
        with self._lock:
            self._totals["http_requests"] += 1

    # -- Scheduler metrics ------------------------------------------------

    def record_scheduler_run(
        self,
        mode: str,
        result: str,
        duration: float,
        started: int = 0,
        stopped: int = 0,
        failed: int = 0,
    ) -> None:
        """Record one completed scan."""
        self.scheduler_runs.labels(mode=mode, result=result).inc()
        self.scheduler_duration.labels(mode=mode).observe(duration)
        self.last_run_timestamp.set(time.time())
        with self._lock:
            self._totals["scheduler_runs"] += 1
            self._totals["resources_started"] += started
            self._totals["resources_stopped"] += stopped
            self._totals["resources_failed"] += failed
            self._last_scheduler_run = datetime.now(timezone.utc).isoformat()

    def record_resource_action(self, resource_type: str, action: str, status: str) -> None:
        """Record a single resource handler outcome."""
        self.resource_actions.labels(
            resource_type=resource_type, action=action, status=status
        ).inc()

    # -- LLM metrics ------------------------------------------------------

    def record_llm_call(
        self,
        model: str,
        node: str,
        input_tokens: int,
        output_tokens: int,
        duration: float,
    ) -> None:
        """Record an LLM API call with token counts and latency."""
        self.llm_requests.labels(model=model, node=node).inc()
        self.llm_tokens.labels(model=model, token_type="input").inc(input_tokens)
        self.llm_tokens.labels(model=model, token_type="output").inc(output_tokens)
        self.llm_latency.labels(model=model).observe(duration)

        cost = estimate_cost(model, input_tokens, output_tokens)
        self.llm_cost.labels(model=model).inc(cost)
        with self._lock:
            self._totals["llm_requests"] += 1

    # -- Agent metrics ----------------------------------------------------

    def record_agent_session(self, mode: str, status: str, iterations: int = 0) -> None:
        self.agent_sessions.labels(mode=mode, status=status).inc()
        if iterations:
            self.agent_iterations.observe(float(iterations))

    def record_tool_call(self, tool: str, success: bool) -> None:
        self.tool_calls.labels(tool=tool, result="success" if success else "error").inc()

    # -- System metrics ----------------------------------------------------

    def record_error(self, component: str, error_type: str) -> None:
        """Record an error occurrence."""
        self.errors_total.labels(component=component, error_type=error_type).inc()
        with self._lock:
            self._totals["errors"] += 1

    def set_system_info(self, **info: str) -> None:
        """Set system information labels."""
        self.system_info.info({k: str(v) for k, v in info.items()})

    def get_uptime(self) -> float:
        """Return seconds since this collector was created."""
        return time.monotonic() - self._start_time

    # =====================================================================
    # EXPORT / SNAPSHOT
    # =====================================================================

    def export(self) -> bytes:
        """Prometheus text exposition of this collector's registry."""
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def snapshot(self) -> Dict[str, Any]:
        """
        Return a plain dict snapshot of the headline counters.

        Useful for logging and health checks.
        """
        with self._lock:
            result: Dict[str, Any] = dict(self._totals)
            result["last_scheduler_run"] = self._last_scheduler_run
        result["uptime_seconds"] = round(self.get_uptime(), 1)
        return result


# =============================================================================
# HEALTH CHECK
# =============================================================================


class HealthCheck:
    """
    System health checker that aggregates component statuses.

    Usage::

        health = HealthCheck()
        health.register("app_table", app_table.health_check)
        health.register("audit_table", audit_table.health_check, critical=False)
        result = await health.check_all()
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._checks: Dict[str, Tuple[Callable[[], Awaitable[Dict[str, Any]]], bool]] = {}

    def register(self, name: str, check_fn, critical: bool = True) -> None:
        """
        Register a health check.

        Args:
            name: Component name (``app_table``, ``audit_table``, ...).
            check_fn: Async callable returning a dict with at least
                ``{"healthy": bool}``.
            critical: Whether failure of this check means the system
                is unhealthy overall. Non-critical failures only mark
                the system as degraded.
        """
        self._checks[name] = (check_fn, critical)

    async def _run(self, name: str) -> Dict[str, Any]:
        check_fn, _ = self._checks[name]
        try:
            return await asyncio.wait_for(check_fn(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Health check {name} timed out after {self.timeout}s")
            return {"healthy": False, "error": f"timed out after {self.timeout}s"}
        except Exception as e:
            logger.warning(f"Health check {name} raised: {e}")
            return {"healthy": False, "error": str(e)}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all registered health checks concurrently.

        Returns:
            ``{healthy, status, timestamp, checks}`` where ``status`` is
            ``healthy``, ``degraded`` (only non-critical checks failed) or
            ``unhealthy``.
        """
        names = list(self._checks)
        outcomes = await asyncio.gather(*(self._run(name) for name in names))
        results = dict(zip(names, outcomes))

        failed = [name for name, result in results.items() if not result.get("healthy", False)]
        critical_failed = any(self._checks[name][1] for name in failed)

        if critical_failed:
            status = "unhealthy"
        elif failed:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "healthy": not critical_failed,
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": results,
        }

    async def check_one(self, name: str) -> Dict[str, Any]:
        """Run a single named health check."""
        if name not in self._checks:
            return {"healthy": False, "error": f"Unknown check: {name}"}
        return await self._run(name)


# =============================================================================
# FACTORY
# =============================================================================


def create_metrics_collector(
    config: Optional[Dict[str, Any]] = None,
    service_name: str = "cost-scheduler",
    environment: str = "development",
) -> MetricsCollector:
    """
    Create a MetricsCollector from configuration.

    Args:
        config: ``metrics`` section of settings.yaml.
        service_name: Reported in the system info metric.
        environment: Reported in the system info metric.

    Returns:
        Configured MetricsCollector.
    """
    collector = MetricsCollector(config or {})
    collector.set_system_info(service=service_name, environment=environment)
    return collector


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Core
    "MetricsCollector",
    "create_metrics_collector",
    # Cost estimation
    "estimate_cost",
    "LLM_PRICING",
    # Health checks
    "HealthCheck",
]
