# =============================================================================
# COST OPTIMIZATION SCHEDULER - APPLICATION PACKAGE
# =============================================================================
"""
Cost Optimization Scheduler

Starts and stops AWS resources (EC2 instances, RDS instances, ECS services)
in managed accounts according to time-window schedules, to cut the cost of
non-production environments.

Package Structure:
    - store/: Table backends, accounts, schedules, audit log, onboarding template
    - scheduler/: Time windows, role assumption, resource handlers, scan routine
    - agent/: Experimental DevOps chat agent (LangGraph) with tool approval
    - web/: HTTP JSON API (aiohttp)
    - main.py: Configuration loading, CLI and service loop

Usage:
    python -m cost_scheduler.main run            # API + periodic scheduler
    python -m cost_scheduler.main scan           # one full scan
    python -m cost_scheduler.main scan --schedule office-hours

Environment Variables:
    - APP_TABLE_NAME / AUDIT_TABLE_NAME: DynamoDB tables
    - AWS_REGION: Region of the tables
    - HUB_ACCOUNT_ID: Account trusted by the onboarding template
    - LLM_PROVIDER / LLM_MODEL: Agent model selection

For detailed configuration, see config/settings.yaml
"""

__version__ = "1.0.0"

__all__ = [
    "store",
    "scheduler",
    "agent",
    "web",
]
