# =============================================================================
# COST OPTIMIZATION SCHEDULER - WEB PACKAGE
# =============================================================================
"""
Web Package

aiohttp JSON API for the console: accounts, schedules, audit log, agent
chat, health and metrics.

Usage:
    from cost_scheduler.web import ApiServices, create_app

    app = create_app(ApiServices(accounts, schedules, audit, scheduler))
"""

from cost_scheduler.web.server import (
    ApiServices,
    ApiServer,
    create_app,
    create_api_server,
    ApiError,
    ApiValidationError,
    ApiConfigError,
)

__all__ = [
    "ApiServices",
    "ApiServer",
    "create_app",
    "create_api_server",
    "ApiError",
    "ApiValidationError",
    "ApiConfigError",
]
