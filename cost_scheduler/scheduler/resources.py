# =============================================================================
# COST OPTIMIZATION SCHEDULER - RESOURCE HANDLERS
# =============================================================================
"""
Resource Handlers

Start/stop logic for each schedulable resource type. Each handler looks up
the current state of a single resource, takes the requested action when the
resource is not already in the desired state, and reports what it did.

Handlers are synchronous (boto3); the scheduler service runs them in a
worker thread.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, NamedTuple, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError


logger = logging.getLogger(__name__)

ACTION_START = "start"
ACTION_STOP = "stop"
ACTION_SKIP = "skip"

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class ParsedArn(NamedTuple):
    partition: str
    service: str
    region: str
    account: str
    resource: str


@dataclass
class ResourceExecution:
    """Outcome of one handler call."""
    arn: str
    resource_id: str
    action: str
    status: str
    last_state: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    cluster_arn: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "arn": self.arn,
            "resourceId": self.resource_id,
            "action": self.action,
            "status": self.status,
            "last_state": self.last_state,
        }
        if self.cluster_arn:
            data["clusterArn"] = self.cluster_arn
        if self.error:
            data["error"] = self.error
        return data


# =============================================================================
# ARN HELPERS
# =============================================================================

def parse_arn(arn: str) -> Optional[ParsedArn]:
    """Split ``arn:partition:service:region:account:resource``; None if malformed."""
    if not arn or not isinstance(arn, str):
        return None
    parts = arn.split(":", 5)
    if len(parts) != 6 or parts[0] != "arn" or not parts[4] or not parts[3]:
        return None
    return ParsedArn(*parts[1:])


def resource_id_from_arn(arn: str) -> str:
    parsed = parse_arn(arn)
    tail = parsed.resource if parsed else arn
    return tail.replace(":", "/").rsplit("/", 1)[-1]


def ecs_cluster_from_arn(arn: str) -> Optional[str]:
    """Cluster name from a long-form ECS service ARN (``service/<cluster>/<name>``)."""
    parsed = parse_arn(arn)
    if not parsed:
        return None
    segments = parsed.resource.split("/")
    return segments[1] if len(segments) == 3 else None


def _error_message(error: Exception) -> str:
    if isinstance(error, ClientError):
        err = error.response.get("Error", {})
        return f"{err.get('Code', 'ClientError')}: {err.get('Message', str(error))}"
    return str(error)


# =============================================================================
# EC2
# =============================================================================

def process_ec2_resource(
    resource: Dict[str, Any],
    action: str,
    client,
    last_state: Optional[Dict[str, Any]] = None,
) -> ResourceExecution:
    """
    Start or stop one EC2 instance.

    ``last_state`` is the state recorded by a previous run; it is logged
    for traceability but does not change the decision.
    """
    arn = resource["arn"]
    instance_id = resource.get("id") or resource_id_from_arn(arn)
    observed: Dict[str, Any] = {}

    try:
        response = client.describe_instances(InstanceIds=[instance_id])
        reservations = response.get("Reservations") or []
        instances = reservations[0].get("Instances", []) if reservations else []
        if not instances:
            raise LookupError(f"Instance {instance_id} not found")
        instance = instances[0]
        state = instance.get("State", {}).get("Name", "unknown")
        observed = {"instanceState": state, "instanceType": instance.get("InstanceType")}

        if last_state:
            logger.debug(f"EC2 {instance_id}: last recorded state {last_state.get('instanceState')}")

        if action == ACTION_STOP:
            if state != "running":
                logger.info(f"EC2 {instance_id} already {state}, skipping stop")
                return ResourceExecution(arn, instance_id, ACTION_SKIP, STATUS_SUCCESS, observed)
            client.stop_instances(InstanceIds=[instance_id])
            logger.info(f"Stopped EC2 instance {instance_id}")
        else:
            if state in ("running", "pending"):
                logger.info(f"EC2 {instance_id} already {state}, skipping start")
                return ResourceExecution(arn, instance_id, ACTION_SKIP, STATUS_SUCCESS, observed)
            client.start_instances(InstanceIds=[instance_id])
            logger.info(f"Started EC2 instance {instance_id}")

        return ResourceExecution(arn, instance_id, action, STATUS_SUCCESS, observed)

    except (ClientError, BotoCoreError, LookupError) as e:
        logger.error(f"EC2 {action} failed for {instance_id}: {e}")
        return ResourceExecution(
            arn, instance_id, action, STATUS_FAILED,
            observed or {"instanceState": "unknown"}, error=_error_message(e),
        )


# =============================================================================
# RDS
# =============================================================================

def process_rds_resource(
    resource: Dict[str, Any],
    action: str,
    client,
    last_state: Optional[Dict[str, Any]] = None,
) -> ResourceExecution:
    """Start or stop one RDS DB instance."""
    arn = resource["arn"]
    db_id = resource.get("id") or resource_id_from_arn(arn)
    observed: Dict[str, Any] = {}

    try:
        response = client.describe_db_instances(DBInstanceIdentifier=db_id)
        instances = response.get("DBInstances") or []
        if not instances:
            raise LookupError(f"DB instance {db_id} not found")
        instance = instances[0]
        status = instance.get("DBInstanceStatus", "unknown")
        observed = {"dbInstanceStatus": status, "dbInstanceClass": instance.get("DBInstanceClass")}

        if last_state:
            logger.debug(f"RDS {db_id}: last recorded status {last_state.get('dbInstanceStatus')}")

        if action == ACTION_STOP:
            if status != "available":
                logger.info(f"RDS {db_id} is {status}, skipping stop")
                return ResourceExecution(arn, db_id, ACTION_SKIP, STATUS_SUCCESS, observed)
            client.stop_db_instance(DBInstanceIdentifier=db_id)
            logger.info(f"Stopped RDS instance {db_id}")
        else:
            if status != "stopped":
                logger.info(f"RDS {db_id} is {status}, skipping start")
                return ResourceExecution(arn, db_id, ACTION_SKIP, STATUS_SUCCESS, observed)
            client.start_db_instance(DBInstanceIdentifier=db_id)
            logger.info(f"Started RDS instance {db_id}")

        return ResourceExecution(arn, db_id, action, STATUS_SUCCESS, observed)

    except (ClientError, BotoCoreError, LookupError) as e:
        logger.error(f"RDS {action} failed for {db_id}: {e}")
        return ResourceExecution(
            arn, db_id, action, STATUS_FAILED,
            observed or {"dbInstanceStatus": "unknown"}, error=_error_message(e),
        )


# =============================================================================
# ECS
# =============================================================================

def process_ecs_resource(
    resource: Dict[str, Any],
    action: str,
    client,
    last_state: Optional[Dict[str, Any]] = None,
) -> ResourceExecution:
    """
    Scale one ECS service down to zero or back up.

    Starting restores the desired count recorded when the service was last
    stopped, falling back to 1.
    """
    arn = resource["arn"]
    service_id = resource.get("id") or resource_id_from_arn(arn)
    cluster = resource.get("clusterArn") or ecs_cluster_from_arn(arn)
    observed: Dict[str, Any] = {}

    try:
        if not cluster:
            raise LookupError(f"No cluster known for ECS service {service_id}")

        response = client.describe_services(cluster=cluster, services=[arn])
        services = response.get("services") or []
        if not services:
            raise LookupError(f"ECS service {service_id} not found")
        service = services[0]
        desired = int(service.get("desiredCount", 0))
        observed = {
            "desiredCount": desired,
            "runningCount": int(service.get("runningCount", 0)),
            "pendingCount": int(service.get("pendingCount", 0)),
            "status": service.get("status"),
        }

        if action == ACTION_STOP:
            if desired == 0:
                logger.info(f"ECS {service_id} already at 0, skipping stop")
                return ResourceExecution(arn, service_id, ACTION_SKIP, STATUS_SUCCESS, observed, cluster_arn=cluster)
            client.update_service(cluster=cluster, service=arn, desiredCount=0)
            logger.info(f"Scaled ECS service {service_id} to 0 (was {desired})")
        else:
            if desired > 0:
                logger.info(f"ECS {service_id} already at {desired}, skipping start")
                return ResourceExecution(arn, service_id, ACTION_SKIP, STATUS_SUCCESS, observed, cluster_arn=cluster)
            target = int((last_state or {}).get("desiredCount") or 0) or 1
            client.update_service(cluster=cluster, service=arn, desiredCount=target)
            logger.info(f"Scaled ECS service {service_id} to {target}")

        return ResourceExecution(arn, service_id, action, STATUS_SUCCESS, observed, cluster_arn=cluster)

    except (ClientError, BotoCoreError, LookupError) as e:
        logger.error(f"ECS {action} failed for {service_id}: {e}")
        return ResourceExecution(
            arn, service_id, action, STATUS_FAILED,
            observed or {"desiredCount": 0, "runningCount": 0}, error=_error_message(e),
            cluster_arn=cluster,
        )


# =============================================================================
# REGISTRY
# =============================================================================

# resource type -> (boto3 service name, handler)
RESOURCE_HANDLERS: Dict[str, Tuple[str, Any]] = {
    "ec2": ("ec2", process_ec2_resource),
    "rds": ("rds", process_rds_resource),
    "ecs": ("ecs", process_ecs_resource),
}


def get_handler(resource_type: str) -> Tuple[str, Any]:
    """
    Look up the boto3 service and handler for a resource type.

    Raises:
        ValueError: For unsupported resource types
    """
    try:
        return RESOURCE_HANDLERS[resource_type]
    except KeyError:
        raise ValueError(f"Unsupported resource type: {resource_type}")


__all__ = [
    "ResourceExecution",
    "ParsedArn",
    "parse_arn",
    "resource_id_from_arn",
    "ecs_cluster_from_arn",
    "process_ec2_resource",
    "process_rds_resource",
    "process_ecs_resource",
    "RESOURCE_HANDLERS",
    "get_handler",
    "ACTION_START",
    "ACTION_STOP",
    "ACTION_SKIP",
]
