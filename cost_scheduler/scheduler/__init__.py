# =============================================================================
# COST OPTIMIZATION SCHEDULER - SCHEDULER PACKAGE
# =============================================================================
"""
Scheduler Package

Everything the scheduler function needs to start and stop resources:

1. time_window: is "now" inside a schedule's running window
2. sts: cross-account role assumption
3. resources: EC2 / RDS / ECS start-stop handlers
4. executions: execution history records
5. service: the scan routine and the Lambda entry point

The service module depends on the store package and is imported directly:

    from cost_scheduler.scheduler.service import SchedulerService, lambda_handler
"""

from cost_scheduler.scheduler.time_window import (
    DAY_NAMES,
    ensure_timezone,
    is_current_time_in_range,
)

from cost_scheduler.scheduler.sts import (
    AssumedCredentials,
    AssumeRoleError,
    assume_role,
)

from cost_scheduler.scheduler.resources import (
    ResourceExecution,
    parse_arn,
    process_ec2_resource,
    process_rds_resource,
    process_ecs_resource,
)

from cost_scheduler.scheduler.executions import ExecutionHistory

__all__ = [
    # Time window
    "DAY_NAMES",
    "ensure_timezone",
    "is_current_time_in_range",
    # STS
    "AssumedCredentials",
    "AssumeRoleError",
    "assume_role",
    # Resources
    "ResourceExecution",
    "parse_arn",
    "process_ec2_resource",
    "process_rds_resource",
    "process_ecs_resource",
    # Executions
    "ExecutionHistory",
]
