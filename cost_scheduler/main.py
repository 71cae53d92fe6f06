# =============================================================================
# COST OPTIMIZATION SCHEDULER - MAIN ENTRY POINT
# =============================================================================
"""
Main Module

Entry point for the cost optimization scheduler. It loads configuration,
wires the stores, the scheduler, the agent and the HTTP API together and
runs them.

Commands:
    serve   Start the HTTP API only
    scan    Run one scheduler pass (all active schedules, or one with --schedule)
    run     Start the HTTP API and the periodic scheduler loop

Usage:
    python -m cost_scheduler.main run
    python -m cost_scheduler.main scan --schedule office-hours
    python -m cost_scheduler.main serve --config config/settings.yaml --debug
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from cost_scheduler.agent.llm import LLMError
from cost_scheduler.agent.service import AgentService, create_agent_service
from cost_scheduler.scheduler.service import SchedulerService, create_scheduler_service
from cost_scheduler.store.table import TableInterface, create_table
from cost_scheduler.web.server import ApiServer, ApiServices, create_api_server
from monitoring.logger import setup_logging
from monitoring.metrics import HealthCheck, MetricsCollector, create_metrics_collector


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_CONFIG_PATH = "config/settings.yaml"

ENV_MAPPINGS = {
    # Store
    "APP_TABLE_NAME": ("store", "app_table"),
    "AUDIT_TABLE_NAME": ("store", "audit_table"),
    "AWS_REGION": ("store", "region"),
    "TABLE_BACKEND": ("store", "backend"),
    "DYNAMODB_ENDPOINT_URL": ("store", "endpoint_url"),
    # Scheduler
    "SCHEDULER_INTERVAL": ("scheduler", "interval"),
    "AUDIT_TRAIL_PATH": ("scheduler", "audit_trail"),
    # Web
    "HOST": ("web", "host"),
    "PORT": ("web", "port"),
    "HUB_ACCOUNT_ID": ("web", "hub_account_id"),
    # LLM
    "LLM_PROVIDER": ("llm", "provider"),
    "LLM_MODEL": ("llm", "model"),
    "LLM_API_BASE": ("llm", "api_base"),
    "BEDROCK_REGION": ("llm", "region"),
    # Agent
    "DATA_DIR": ("agent", "data_dir"),
    "DYNAMODB_CHECKPOINT_TABLE": ("agent", "checkpoint_table"),
    "MAX_ITERATIONS": ("agent", "max_iterations"),
    "AGENT_MODE": ("agent", "default_mode"),
    # Logging
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FORMAT": ("logging", "format"),
    "LOG_DIR": ("logging", "log_dir"),
    # App
    "ENVIRONMENT": ("app", "environment"),
}

# Settings converted to int when they come from the environment. Account ids
# stay strings.
INTEGER_SETTINGS = {
    ("scheduler", "interval"),
    ("web", "port"),
    ("agent", "max_iterations"),
}

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "app": {
        "environment": "development",
    },
    "store": {
        "backend": "dynamodb",
        "region": "ap-south-1",
        "app_table": "cost-optimization-scheduler-app-table",
        "audit_table": "cost-optimization-scheduler-audit-table",
        "audit_retention_days": 90,
    },
    "scheduler": {
        "interval": 300,
        "execution_ttl_days": 30,
        "audit_trail": None,
    },
    "web": {
        "host": "0.0.0.0",
        "port": 8080,
        "hub_account_id": "",
    },
    "llm": {
        "provider": "bedrock",
        "model": None,
        "temperature": 0.0,
        "max_tokens": 4096,
        "timeout": 120,
    },
    "agent": {
        "enabled": True,
        "default_mode": "reflection",
        "max_iterations": 30,
        "data_dir": None,
        "checkpoint_table": None,
    },
    "logging": {
        "level": "INFO",
        "format": "json",
        "log_dir": None,
        "mask_sensitive": True,
    },
    "metrics": {
        "enabled": True,
        "namespace": "cost_scheduler",
    },
}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file and environment variables.

    Environment variables override YAML values; missing keys get defaults.

    Args:
        config_path: Path to settings.yaml (defaults to ``CONFIG_PATH`` or
            ``config/settings.yaml``)

    Returns:
        Merged configuration dictionary
    """
    config_path = config_path or os.environ.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)
    config: Dict[str, Any] = {}

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded config from {config_path}")
    else:
        logger.warning(f"Config file not found: {config_path}, using defaults")

    for env_var, (section, key) in ENV_MAPPINGS.items():
        value: Any = os.environ.get(env_var)
        if value is None or value == "":
            continue
        if (section, key) in INTEGER_SETTINGS:
            try:
                value = int(value)
            except ValueError:
                logger.warning(f"Ignoring non-integer {env_var}={value}")
                continue
        config.setdefault(section, {})
        config[section][key] = value

    for section, section_defaults in DEFAULTS.items():
        if not isinstance(config.get(section), dict):
            config[section] = {}
        for key, default_value in section_defaults.items():
            if key not in config[section]:
                config[section][key] = default_value

    return config


def configure_logging(config: Dict[str, Any], debug: bool = False) -> None:
    log_config = config.get("logging", {})
    setup_logging(
        level="DEBUG" if debug else log_config.get("level", "INFO"),
        fmt=log_config.get("format", "json"),
        log_dir=log_config.get("log_dir"),
        mask_sensitive=log_config.get("mask_sensitive", True),
    )


# =============================================================================
# APPLICATION CLASS
# =============================================================================

class Application:
    """
    Wires the components together and runs the selected services.

    Components:
        app_table / audit_table: shared table backends
        scheduler: scan routine (owns the account, schedule and audit services)
        agent: chat agent (optional)
        api: HTTP API server
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

        # Components (initialized in setup())
        self.metrics: Optional[MetricsCollector] = None
        self.health: Optional[HealthCheck] = None
        self.app_table: Optional[TableInterface] = None
        self.audit_table: Optional[TableInterface] = None
        self.scheduler: Optional[SchedulerService] = None
        self.agent: Optional[AgentService] = None
        self.api: Optional[ApiServer] = None

    def setup(self) -> None:
        """Initialize all components. Must be called before any run method."""
        logger.info("Initializing components...")

        if self.config.get("metrics", {}).get("enabled", True):
            self.metrics = create_metrics_collector(
                self.config.get("metrics"),
                environment=self.config.get("app", {}).get("environment", "development"),
            )

        store_config = self.config.get("store", {})
        self.app_table = create_table(store_config, store_config["app_table"])
        self.audit_table = create_table(store_config, store_config["audit_table"])

        self.scheduler = create_scheduler_service(
            self.config,
            metrics=self.metrics,
            app_table=self.app_table,
            audit_table=self.audit_table,
        )
        logger.info("Scheduler service initialized")

        self.health = HealthCheck()
        self.health.register("app_table", self.app_table.health_check)
        self.health.register("audit_table", self.audit_table.health_check, critical=False)

        if self.config.get("agent", {}).get("enabled", True):
            try:
                self.agent = create_agent_service(
                    self.config,
                    account_service=self.scheduler.accounts,
                    metrics=self.metrics,
                )
                logger.info("Agent service initialized")
            except LLMError as e:
                logger.warning(f"Agent disabled: {e}")

        services = ApiServices(
            accounts=self.scheduler.accounts,
            schedules=self.scheduler.schedules,
            audit=self.scheduler.audit,
            scheduler=self.scheduler,
            agent=self.agent,
            metrics=self.metrics,
            health=self.health,
            config=self.config,
        )
        self.api = create_api_server(services, self.config.get("web", {}))
        logger.info("All components initialized")

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def scan(self, schedule: Optional[str] = None, force: bool = False) -> Dict[str, Any]:
        """Run one scheduler pass."""
        event: Dict[str, Any] = {"triggeredBy": "cli"}
        if schedule:
            event["scheduleName"] = schedule
            event["force"] = force
        return await self.scheduler.run(event)

    async def serve(self, with_scheduler: bool = False) -> None:
        """
        Run the HTTP API (and optionally the scheduler loop) until stop().
        """
        self._running = True
        await self.api.start()

        try:
            if with_scheduler:
                await self._scheduler_loop()
            else:
                await self._shutdown_event.wait()
        finally:
            await self._cleanup()

        logger.info("Application stopped")

    async def stop(self) -> None:
        """Gracefully stop the application."""
        logger.info("Stopping application...")
        self._running = False
        self._shutdown_event.set()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    async def _scheduler_loop(self) -> None:
        interval = int(self.config.get("scheduler", {}).get("interval", 300))
        logger.info(f"Starting scheduler loop (interval={interval}s)")

        while self._running:
            try:
                result = await self.scheduler.run({"triggeredBy": "system"})
                logger.info(
                    f"Scheduler pass {result['executionId']}: "
                    f"{result['schedulesProcessed']} schedules, "
                    f"{result['resourcesStarted']} started, "
                    f"{result['resourcesStopped']} stopped, "
                    f"{result['resourcesFailed']} failed"
                )
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}", exc_info=True)
                if self.metrics is not None:
                    self.metrics.record_error("scheduler", type(e).__name__)

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                continue

    async def _cleanup(self) -> None:
        logger.info("Cleaning up resources...")

        try:
            if self.api:
                await self.api.stop()
        except Exception as e:
            logger.warning(f"API server cleanup failed: {e}")

        logger.info("Cleanup complete")


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Cost Optimization Scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("serve", help="Start the HTTP API")
    scan_parser = commands.add_parser("scan", help="Run one scheduler pass")
    scan_parser.add_argument("--schedule", help="Only process this schedule")
    scan_parser.add_argument(
        "--force",
        action="store_true",
        help="Process the schedule even if it is inactive (with --schedule)",
    )
    commands.add_parser("run", help="Start the HTTP API and the periodic scheduler")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
    return args


# =============================================================================
# SIGNAL HANDLING
# =============================================================================

def setup_signal_handlers(application: Application, loop: asyncio.AbstractEventLoop) -> None:
    """Setup signal handlers for graceful shutdown."""

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, initiating shutdown...")
        loop.call_soon_threadsafe(lambda: loop.create_task(application.stop()))

    if sys.platform != "win32":
        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

async def async_main(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    """Async entry point; returns the process exit code."""
    application = Application(config)
    application.setup()

    if args.command == "scan":
        result = await application.scan(args.schedule, force=args.force)
        print(json.dumps(result, indent=2))
        return 0 if result.get("success") else 1

    setup_signal_handlers(application, asyncio.get_running_loop())
    try:
        await application.serve(with_scheduler=args.command == "run")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        await application.stop()
        raise
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    config = load_config(args.config)
    configure_logging(config, debug=args.debug)

    logger.info("=" * 60)
    logger.info(f"Cost Optimization Scheduler - {args.command}")
    logger.info("=" * 60)

    try:
        exit_code = asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        exit_code = 0
    except Exception as e:
        logger.critical(f"Scheduler application failed: {e}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
