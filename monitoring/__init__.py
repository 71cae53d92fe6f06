# =============================================================================
# COST OPTIMIZATION SCHEDULER - MONITORING PACKAGE
# =============================================================================
"""
Monitoring Package

Logging, metrics and health infrastructure shared by the console API, the
scheduler and the agent.

Components:
    - Logger: structlog-rendered stdlib logging with context binding
    - Metrics: Prometheus metrics collection
    - Audit: Local JSONL trail of scheduler runs
    - Health: Aggregated component health checks

Usage:
    from monitoring import setup_logging, MetricsCollector, AuditLogger

    setup_logging(level="INFO", fmt="json", log_dir="./logs")

    metrics = MetricsCollector()
    metrics.record_scheduler_run("full", "success", 2.4, started=3)

    audit = AuditLogger("./logs/audit.jsonl")
    audit.log_scheduler_run(execution_id, "full", 3, 2, 1, 0, 1532)

    health = HealthCheck()
    health.register("app_table", app_table.health_check)
    result = await health.check_all()
"""

# Logger
from monitoring.logger import (
    setup_logging,
    AuditLogger,
    log_context,
    JSONFormatter,
    mask_sensitive_data,
    mask_dict,
)

# Metrics
from monitoring.metrics import (
    MetricsCollector,
    create_metrics_collector,
    estimate_cost,
    LLM_PRICING,
    HealthCheck,
)


__all__ = [
    # Logger
    "setup_logging",
    "AuditLogger",
    "log_context",
    "JSONFormatter",
    "mask_sensitive_data",
    "mask_dict",
    # Metrics
    "MetricsCollector",
    "create_metrics_collector",
    "estimate_cost",
    "LLM_PRICING",
    # Health
    "HealthCheck",
]
