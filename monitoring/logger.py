# =============================================================================
# COST OPTIMIZATION SCHEDULER - STRUCTURED LOGGING
# =============================================================================
"""
Structured Logging Module

Provides consistent, structured logging across the console API, the
scheduler and the agent.

Application modules log through stdlib ``logging.getLogger(...)``; the
records are rendered by structlog's ``ProcessorFormatter`` so that values
bound with :func:`log_context` (``execution_id``, ``thread_id``, ...) show up
on every line.

Features:
    - JSON or console rendering
    - Context variables merged into every log line
    - Sensitive data masking (AWS credentials, external ids, API keys)
    - File output with rotation
    - Local JSONL audit trail of scheduler runs
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import structlog
from structlog.contextvars import bound_contextvars, get_contextvars, merge_contextvars


# =============================================================================
# SENSITIVE DATA MASKING
# =============================================================================

# Keys whose values should be masked
SENSITIVE_KEYS = frozenset([
    "access_token", "refresh_token", "api_key", "apikey", "password", "secret", "credential",
    "authorization", "access_key", "accesskeyid", "session_token",
    "sessiontoken", "external_id", "externalid",
    "anthropic_api_key", "openai_api_key", "tavily_api_key",
])


def _is_sensitive(key: str) -> bool:
    key_lower = key.lower().replace("-", "_")
    return any(s in key_lower for s in SENSITIVE_KEYS)


def _mask_value(value: Any) -> str:
    """Mask a sensitive value, keeping first/last 4 chars if long enough."""
    if not isinstance(value, str):
        return "****"
    if len(value) > 8:
        return value[:4] + "****" + value[-4:]
    return "****"


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: _mask_value(item) if _is_sensitive(str(key)) else _mask(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_mask(item) for item in value]
    return value


def mask_sensitive_data(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Structlog processor that masks sensitive data in log events.

    Walks nested dicts and lists (assumed-role credentials, account
    listings) and masks values whose keys look like secrets.
    """
    return _mask(event_dict)


def mask_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Mask sensitive data in an arbitrary dict (audit events, API echoes)."""
    return mask_sensitive_data(None, "", data)


# =============================================================================
# FILE FORMATTER
# =============================================================================


RECORD_CONTEXT_FIELDS = ("execution_id", "schedule_id", "thread_id", "account_id", "component")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record, used for the rotating log file.

    Values bound with :func:`log_context` are included, as are the
    ``RECORD_CONTEXT_FIELDS`` passed through ``extra=``.
    """

    def __init__(self, mask_sensitive: bool = True):
        super().__init__()
        self.mask_sensitive = mask_sensitive

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            **get_contextvars(),
        }
        entry.update({
            name: getattr(record, name)
            for name in RECORD_CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        })

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if self.mask_sensitive:
            entry = mask_dict(entry)
        return json.dumps(entry, default=str)


# =============================================================================
# LOGGING SETUP
# =============================================================================


def setup_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: Optional[str] = None,
    log_dir: Optional[str] = None,
    mask_sensitive: bool = True,
    max_bytes: int = 100 * 1024 * 1024,  # 100 MB
    backup_count: int = 10,
) -> logging.Logger:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: Output format, ``"json"`` or ``"text"``.
        log_file: Explicit log file path.  Overrides *log_dir*.
        log_dir: Directory for log files.  When set (and *log_file* is
            ``None``), logs are written to ``<log_dir>/cost-scheduler.log``.
        mask_sensitive: Mask sensitive values in logs.
        max_bytes: Max file size before rotation.
        backup_count: Number of rotated files to keep.

    Returns:
        Root logger instance.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    resolved_log_file: Optional[str] = log_file
    if resolved_log_file is None and log_dir is not None:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        resolved_log_file = str(Path(log_dir) / "cost-scheduler.log")

    shared_processors: list = [
        merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    render_processors: list = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if mask_sensitive:
        render_processors.append(mask_sensitive_data)
    if fmt == "json":
        render_processors.append(structlog.processors.format_exc_info)
        render_processors.append(structlog.processors.JSONRenderer())
    else:
        render_processors.append(structlog.dev.ConsoleRenderer())

    root = logging.getLogger()
    root.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates on re-init
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(numeric_level)
    console.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=render_processors,
        )
    )
    root.addHandler(console)

    if resolved_log_file:
        Path(resolved_log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            resolved_log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter(mask_sensitive=mask_sensitive))
        root.addHandler(file_handler)

    # Suppress noisy third-party loggers
    for name in ("botocore", "boto3", "urllib3", "aiohttp.access", "httpx", "httpcore", "anthropic", "openai"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


# =============================================================================
# LOG CONTEXT
# =============================================================================


@contextmanager
def log_context(**values: Any) -> Iterator[Dict[str, Any]]:
    """
    Bind key-value pairs to every log line emitted inside the block.

    Values bound by an enclosing block are restored on exit, so nested
    scans (a partial scan inside a web request) keep their own ids.

    Usage::

        with log_context(execution_id=run_id, mode="full"):
            logger.info("Starting full scan")
    """
    with bound_contextvars(**values):
        yield values


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Local audit trail of scheduler activity.

    Records structured events to a JSONL file (one JSON object per line).
    This complements the audit table: it is written even when the table is
    unreachable and is handy for post-mortems of a single host.

    Event categories:
        - ``scheduler_run``: One full or partial scan
        - ``resource_action``: A start/stop/skip on one resource
        - ``error``: Failures worth keeping outside the main log

    Usage::

        audit = AuditLogger("./logs/audit.jsonl")
        audit.log_scheduler_run(execution_id, "full", 3, 2, 1, 0, 1532)
    """

    def __init__(
        self,
        output_path: str = "./logs/audit.jsonl",
        max_bytes: int = 500 * 1024 * 1024,  # 500 MB
        backup_count: int = 30,
    ):
        self.output_path = output_path
        self._logger = logging.getLogger("cost_scheduler.audit_trail")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False

        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        if not any(
            isinstance(h, logging.handlers.RotatingFileHandler)
            and h.baseFilename == str(Path(output_path).resolve())
            for h in self._logger.handlers
        ):
            handler = logging.handlers.RotatingFileHandler(
                output_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)

    def _write_event(self, event_type: str, data: Dict[str, Any]) -> None:
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            **mask_dict(data),
        }
        self._logger.info(json.dumps(event, default=str))

    def log_scheduler_run(
        self,
        execution_id: str,
        mode: str,
        schedules_processed: int,
        started: int,
        stopped: int,
        failed: int,
        duration_ms: int,
        triggered_by: str = "system",
    ) -> None:
        """Log the outcome of one scan."""
        self._write_event("scheduler_run", {
            "execution_id": execution_id,
            "mode": mode,
            "triggered_by": triggered_by,
            "schedules_processed": schedules_processed,
            "resources_started": started,
            "resources_stopped": stopped,
            "resources_failed": failed,
            "duration_ms": duration_ms,
        })

    def log_resource_action(
        self,
        execution_id: str,
        schedule_id: str,
        resource_type: str,
        arn: str,
        action: str,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        self._write_event("resource_action", {
            "execution_id": execution_id,
            "schedule_id": schedule_id,
            "resource_type": resource_type,
            "arn": arn,
            "action": action,
            "status": status,
            "error": error,
        })

    def log_error(
        self,
        component: str,
        error_type: str,
        message: str,
        execution_id: Optional[str] = None,
    ) -> None:
        """Log an error event."""
        self._write_event("error", {
            "component": component,
            "error_type": error_type,
            "message": message,
            "execution_id": execution_id,
        })


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Setup
    "setup_logging",
    # Data masking
    "mask_sensitive_data",
    "mask_dict",
    # Context
    "log_context",
    # Formatters
    "JSONFormatter",
    # Audit
    "AuditLogger",
]
