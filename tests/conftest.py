# =============================================================================
# COST OPTIMIZATION SCHEDULER - TEST FIXTURES
# =============================================================================
"""
Shared fixtures: in-memory tables, services wired to them, and sample
account / schedule payloads.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Union
from unittest.mock import MagicMock

import pytest

from cost_scheduler.agent.llm import LLMClientInterface, LLMConfig, LLMProviderError, LLMResponse, ToolCall
from cost_scheduler.scheduler.executions import ExecutionHistory
from cost_scheduler.scheduler.service import SchedulerService
from cost_scheduler.scheduler.sts import AssumedCredentials
from cost_scheduler.store.accounts import AccountService
from cost_scheduler.store.audit import AuditService
from cost_scheduler.store.schedules import ScheduleService
from cost_scheduler.store.table import MemoryTable
from monitoring.metrics import MetricsCollector


ACCOUNT_ID = "123456789012"
ROLE_ARN = f"arn:aws:iam::{ACCOUNT_ID}:role/NucleusCrossAccountCheckRole"
EC2_ARN = f"arn:aws:ec2:us-east-1:{ACCOUNT_ID}:instance/i-0abc"
RDS_ARN = f"arn:aws:rds:us-east-1:{ACCOUNT_ID}:db:orders-db"
ECS_ARN = f"arn:aws:ecs:us-east-1:{ACCOUNT_ID}:service/prod-cluster/web"

# Wednesday 2024-01-10 12:00 UTC
MIDDAY_WEDNESDAY = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def make_account_payload(**overrides: Any) -> Dict[str, Any]:
    payload = {
        "accountId": ACCOUNT_ID,
        "name": "Production",
        "roleArn": ROLE_ARN,
        "externalId": "nucleus-abc123",
        "regions": ["us-east-1"],
        "description": "Main production account",
        "createdBy": "ops@example.com",
    }
    payload.update(overrides)
    return payload


def make_schedule_payload(**overrides: Any) -> Dict[str, Any]:
    payload = {
        "name": "office-hours",
        "starttime": "09:00",
        "endtime": "18:00",
        "timezone": "UTC",
        "days": ["Mon", "Tue", "Wed", "Thu", "Fri"],
        "accountId": ACCOUNT_ID,
        "description": "Business hours only",
        "resources": [],
        "createdBy": "ops@example.com",
    }
    payload.update(overrides)
    return payload


def fake_credentials(region: str = "us-east-1") -> AssumedCredentials:
    return AssumedCredentials("AKIA", "secret", "token", region)


@pytest.fixture
def app_table():
    return MemoryTable("app-table")


@pytest.fixture
def audit_table():
    return MemoryTable("audit-table")


@pytest.fixture
def audit(audit_table):
    return AuditService(audit_table)


@pytest.fixture
def sts_client():
    client = MagicMock()
    client.assume_role.return_value = {
        "Credentials": {
            "AccessKeyId": "AKIA",
            "SecretAccessKey": "secret",
            "SessionToken": "token",
            "Expiration": "2030-01-01T00:00:00Z",
        }
    }
    return client


@pytest.fixture
def service_clients():
    """boto3 service clients handed out by the account service, keyed by name."""
    return {"ecs": MagicMock(), "rds": MagicMock()}


@pytest.fixture
def accounts(app_table, audit, sts_client, service_clients):
    return AccountService(
        app_table,
        audit,
        sts_client_factory=lambda: sts_client,
        service_client_factory=lambda name, credentials: service_clients[name],
    )


@pytest.fixture
def schedules(app_table, audit):
    return ScheduleService(app_table, audit)


@pytest.fixture
def history(app_table):
    return ExecutionHistory(app_table)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def aws_clients():
    """boto3 clients handed to the resource handlers, keyed by service."""
    return {"ec2": MagicMock(), "rds": MagicMock(), "ecs": MagicMock()}


@pytest.fixture
def assume_role_calls():
    return []


@pytest.fixture
def scheduler(schedules, accounts, audit, history, metrics, aws_clients, assume_role_calls):
    def fake_assume_role(role_arn, account_id, region, external_id=None):
        assume_role_calls.append((role_arn, account_id, region, external_id))
        return fake_credentials(region)

    return SchedulerService(
        schedules=schedules,
        accounts=accounts,
        audit=audit,
        history=history,
        metrics=metrics,
        assume_role_fn=fake_assume_role,
        client_factory=lambda name, credentials: aws_clients[name],
        clock=lambda: MIDDAY_WEDNESDAY,
    )


# =============================================================================
# AGENT HELPERS
# =============================================================================

class ScriptedLLM(LLMClientInterface):
    """
    LLM client that replays canned replies in order.

    A reply is either a string (text answer), a list of ``(name, arguments)``
    tuples (tool calls) or an exception to raise.
    """

    def __init__(self, replies: List[Union[str, list, Exception]]):
        self.config = LLMConfig(provider="bedrock", model="scripted")
        self.replies = list(replies)
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def invoke(self, messages, tools=None, **kwargs) -> LLMResponse:
        self.calls.append({"messages": messages, "tools": tools})
        if not self.replies:
            raise LLMProviderError("No scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, list):
            calls = [ToolCall(id=f"call_{len(self.calls)}_{n}", name=name, arguments=args)
                     for n, (name, args) in enumerate(reply)]
            return LLMResponse(content="", tool_calls=calls, model="scripted")
        return LLMResponse(content=reply, input_tokens=10, output_tokens=5, model="scripted")

    async def close(self):
        self.closed = True
