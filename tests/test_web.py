"""
Tests for the console HTTP API.
"""

from unittest.mock import AsyncMock

import pytest
from botocore.exceptions import ClientError
from langgraph.checkpoint.memory import InMemorySaver

from cost_scheduler.agent.graph import AgentGraphBuilder
from cost_scheduler.agent.llm import ToolRegistry
from cost_scheduler.agent.service import AgentService
from cost_scheduler.web import ApiServices, create_app
from tests.conftest import ACCOUNT_ID, EC2_ARN, ScriptedLLM, make_account_payload, make_schedule_payload

USER = {"x-user-email": "ops@example.com"}
HUB_ACCOUNT_ID = "044656767899"


@pytest.fixture
def services(accounts, schedules, audit, scheduler, metrics, app_table):
    services = ApiServices(
        accounts=accounts,
        schedules=schedules,
        audit=audit,
        scheduler=scheduler,
        metrics=metrics,
        config={
            "app": {"environment": "test"},
            "store": {"region": "ap-south-1", "app_table": "app-table"},
            "web": {"hub_account_id": HUB_ACCOUNT_ID},
        },
    )
    services.health.register("app_table", app_table.health_check)
    return services


@pytest.fixture
async def client(aiohttp_client, services):
    return await aiohttp_client(create_app(services))


def with_agent(services, replies):
    llm = ScriptedLLM(replies)
    builder = AgentGraphBuilder(llm, ToolRegistry(), InMemorySaver())
    services.agent = AgentService(builder, default_mode="fast")
    return llm


# =============================================================================
# HEALTH, METRICS, ERRORS
# =============================================================================

class TestHealth:
    async def test_healthy(self, client):
        resp = await client.get("/api/health")
        body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "healthy"
        assert body["service"] == "cost-optimization-scheduler"
        assert body["environment"] == "test"
        assert body["aws"] == {"region": "ap-south-1", "tableName": "app-table", "dynamodb": "connected"}

    async def test_degraded(self, aiohttp_client, services):
        async def audit_down():
            return {"healthy": False, "error": "timeout"}

        services.health.register("audit_table", audit_down, critical=False)
        client = await aiohttp_client(create_app(services))

        resp = await client.get("/api/health")
        assert resp.status == 207
        assert (await resp.json())["status"] == "degraded"

    async def test_unhealthy(self, aiohttp_client, services):
        async def table_down():
            raise ConnectionError("no route to DynamoDB")

        services.health.register("app_table", table_down)
        client = await aiohttp_client(create_app(services))

        resp = await client.get("/api/health")
        body = await resp.json()
        assert resp.status == 500
        assert body["aws"]["dynamodb"] == {"status": "error", "error": "no route to DynamoDB"}


class TestMetricsEndpoint:
    async def test_exposition(self, client):
        await client.get("/api/accounts")
        resp = await client.get("/metrics")

        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/plain")
        text = await resp.text()
        assert 'route="/api/accounts"' in text

    async def test_disabled(self, aiohttp_client, services):
        services.metrics = None
        client = await aiohttp_client(create_app(services))

        resp = await client.get("/metrics")
        assert resp.status == 404
        assert await resp.json() == {"success": False, "error": "Metrics are disabled"}


async def test_unknown_route_is_json(client):
    resp = await client.get("/api/nothing")
    assert resp.status == 404
    assert (await resp.json())["success"] is False


async def test_invalid_json(client):
    resp = await client.post("/api/accounts", data="{not json", headers={"Content-Type": "application/json"})
    assert resp.status == 400
    assert (await resp.json())["error"].startswith("Invalid JSON body")


async def test_body_must_be_object(client):
    resp = await client.post("/api/schedules", json=["office-hours"])
    assert resp.status == 400


# =============================================================================
# ACCOUNTS
# =============================================================================

class TestAccounts:
    async def test_create_and_get(self, client):
        payload = make_account_payload()
        del payload["createdBy"]

        resp = await client.post("/api/accounts", json=payload, headers=USER)
        body = await resp.json()
        assert resp.status == 201
        assert body["message"] == "Account created successfully"
        assert body["data"]["createdBy"] == "ops@example.com"

        resp = await client.get(f"/api/accounts/{ACCOUNT_ID}")
        assert (await resp.json())["data"]["name"] == "Production"

    async def test_duplicate(self, client):
        await client.post("/api/accounts", json=make_account_payload())
        resp = await client.post("/api/accounts", json=make_account_payload())
        assert resp.status == 409

    async def test_missing_fields(self, client):
        resp = await client.post("/api/accounts", json={"name": "x"})
        assert resp.status == 400

    async def test_not_found(self, client):
        resp = await client.get("/api/accounts/000000000000")
        assert resp.status == 404
        assert (await resp.json())["error"] == "Account not found"

    async def test_list(self, client):
        await client.post("/api/accounts", json=make_account_payload())
        body = await (await client.get("/api/accounts?status=active")).json()
        assert [a["accountId"] for a in body["data"]] == [ACCOUNT_ID]
        assert body["nextToken"] is None

    async def test_update_toggle_delete(self, client):
        await client.post("/api/accounts", json=make_account_payload())

        resp = await client.put(f"/api/accounts/{ACCOUNT_ID}", json={"description": "EU"}, headers=USER)
        assert (await resp.json())["data"]["description"] == "EU"

        resp = await client.post(f"/api/accounts/{ACCOUNT_ID}/toggle", headers=USER)
        assert (await resp.json())["message"] == "Account status toggled to inactive"

        resp = await client.delete(f"/api/accounts/{ACCOUNT_ID}", headers=USER)
        assert (await resp.json())["message"] == "Account deleted successfully"
        assert (await client.get(f"/api/accounts/{ACCOUNT_ID}")).status == 404

    async def test_validate_account(self, client):
        await client.post("/api/accounts", json=make_account_payload())
        body = await (await client.post(f"/api/accounts/{ACCOUNT_ID}/validate")).json()
        assert body["valid"] is True
        assert body["data"]["connectionStatus"] == "connected"

    async def test_validate_credentials(self, client):
        resp = await client.post("/api/accounts/validate", json={"roleArn": "arn:aws:iam::1:role/x"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "Missing required parameters: roleArn, region"

        resp = await client.post(
            "/api/accounts/validate", json={"roleArn": "arn:aws:iam::1:role/x", "region": "us-east-1"}
        )
        assert (await resp.json())["data"] == {"isValid": True}

    async def test_onboarding_template(self, client):
        body = await (await client.get("/api/accounts/template?externalId=nucleus-fixed")).json()
        assert body["externalId"] == "nucleus-fixed"
        assert body["template"]["Parameters"]["HubAccountId"]["Default"] == HUB_ACCOUNT_ID

        body = await (await client.post("/api/accounts/template", json={})).json()
        assert body["externalId"].startswith("nucleus-")

    async def test_template_requires_hub_account(self, aiohttp_client, services):
        services.config["web"] = {}
        client = await aiohttp_client(create_app(services))
        resp = await client.get("/api/accounts/template")
        assert resp.status == 500
        assert "HUB_ACCOUNT_ID" in (await resp.json())["details"]


# =============================================================================
# SCHEDULES
# =============================================================================

class TestSchedules:
    async def test_create(self, client):
        resp = await client.post("/api/schedules", json=make_schedule_payload(), headers=USER)
        body = await resp.json()
        assert resp.status == 201
        assert body["message"] == 'Schedule "office-hours" created successfully'
        assert body["data"]["starttime"] == "09:00:00"

    async def test_invalid(self, client):
        resp = await client.post("/api/schedules", json=make_schedule_payload(days=["Funday"]))
        assert resp.status == 400

    async def test_pagination(self, client):
        for n in range(3):
            await client.post("/api/schedules", json=make_schedule_payload(name=f"schedule-{n}"))

        body = await (await client.get("/api/schedules?page=2&limit=2")).json()
        assert [s["name"] for s in body["data"]] == ["schedule-2"]
        assert body["count"] == 1
        assert body["meta"] == {"total": 3, "page": 2, "limit": 2, "totalPages": 2}

    async def test_bad_page_parameter(self, client):
        resp = await client.get("/api/schedules?page=two")
        assert resp.status == 400

    async def test_get_update_toggle_delete(self, client):
        await client.post("/api/schedules", json=make_schedule_payload())

        assert (await client.get("/api/schedules/missing")).status == 404

        resp = await client.put("/api/schedules/office-hours", json={"endtime": "19:00"}, headers=USER)
        body = await resp.json()
        assert body["data"]["endtime"] == "19:00:00"
        assert body["data"]["updatedBy"] == "ops@example.com"

        resp = await client.post("/api/schedules/office-hours/toggle")
        assert (await resp.json())["message"] == "Schedule status toggled to inactive"

        resp = await client.delete("/api/schedules/office-hours")
        assert (await resp.json())["message"] == 'Schedule "office-hours" deleted successfully'
        assert (await client.delete("/api/schedules/office-hours")).status == 404


class TestExecute:
    async def seed(self, client, aws_clients):
        await client.post("/api/accounts", json=make_account_payload())
        resources = [{"arn": EC2_ARN, "type": "ec2", "id": "i-0abc"}]
        await client.post("/api/schedules", json=make_schedule_payload(resources=resources))
        aws_clients["ec2"].describe_instances.return_value = {
            "Reservations": [{"Instances": [{"State": {"Name": "stopped"}}]}]
        }

    async def test_execute(self, client, aws_clients, audit):
        await self.seed(client, aws_clients)

        resp = await client.post("/api/schedules/office-hours/execute", headers=USER)
        body = await resp.json()

        assert resp.status == 200
        assert body["executionStatus"] == "success"
        assert body["schedulerResult"]["resourcesStarted"] == 1
        aws_clients["ec2"].start_instances.assert_called_once()

        schedule = (await (await client.get("/api/schedules/office-hours")).json())["data"]
        assert schedule["executionCount"] == 1
        assert schedule["lastExecution"] == body["executionTime"]

        logs = (await audit.get_audit_logs({"user": "ops@example.com"}))["logs"]
        assert "Execute Schedule" in [log["action"] for log in logs]

    async def test_execute_inactive_schedule(self, client, aws_clients):
        await self.seed(client, aws_clients)
        await client.post("/api/schedules/office-hours/toggle", headers=USER)
        schedule = (await (await client.get("/api/schedules/office-hours")).json())["data"]
        assert schedule["active"] is False

        body = await (await client.post("/api/schedules/office-hours/execute", headers=USER)).json()

        assert body["executionStatus"] == "success"
        assert body["schedulerResult"]["schedulesProcessed"] == 1
        aws_clients["ec2"].start_instances.assert_called_once()
        schedule = (await (await client.get("/api/schedules/office-hours")).json())["data"]
        assert schedule["active"] is True
        assert schedule["executionCount"] == 1

    async def test_partial(self, client, aws_clients):
        await self.seed(client, aws_clients)
        aws_clients["ec2"].describe_instances.side_effect = ClientError(
            {"Error": {"Code": "UnauthorizedOperation", "Message": "denied"}}, "DescribeInstances"
        )
        body = await (await client.post("/api/schedules/office-hours/execute")).json()
        assert body["executionStatus"] == "partial"

    async def test_scan_failure_is_reported(self, client, aws_clients, services):
        await self.seed(client, aws_clients)
        services.scheduler.run = AsyncMock(side_effect=RuntimeError("boom"))

        resp = await client.post("/api/schedules/office-hours/execute")
        body = await resp.json()

        assert resp.status == 200
        assert body["success"] is False
        assert body["executionStatus"] == "failed"
        assert body["message"].endswith("execution failed: boom")

    async def test_unknown_schedule(self, client):
        assert (await client.post("/api/schedules/ghost/execute")).status == 404


# =============================================================================
# AUDIT
# =============================================================================

class TestAudit:
    async def test_create_list_delete(self, client):
        resp = await client.post(
            "/api/audit",
            json={"eventType": "ui.login", "action": "Login", "status": "success"},
            headers={**USER, "x-forwarded-for": "10.0.0.1, 10.0.0.2", "user-agent": "pytest"},
        )
        assert resp.status == 201
        audit_id = (await resp.json())["id"]

        body = await (await client.get("/api/audit?eventType=ui.login")).json()
        assert body["count"] == 1
        log = body["data"][0]
        assert log["id"] == audit_id
        assert log["ipAddress"] == "10.0.0.1"
        assert log["userAgent"] == "pytest"
        assert log["user"] == "ops@example.com"
        assert log["source"] == "web-ui"

        resp = await client.delete(f"/api/audit?id={audit_id}&timestamp={log['timestamp']}")
        assert resp.status == 200
        assert (await (await client.get("/api/audit?eventType=ui.login")).json())["count"] == 0

    async def test_delete_requires_keys(self, client):
        resp = await client.delete("/api/audit?id=abc")
        assert resp.status == 400
        assert (await resp.json())["error"] == "Missing required parameters: id, timestamp"

    async def test_stats(self, client):
        await client.post("/api/audit", json={"action": "A", "status": "success"})
        await client.post("/api/audit", json={"action": "B", "status": "error"})

        stats = (await (await client.get("/api/audit/stats")).json())["data"]
        assert stats["totalLogs"] == 2
        assert stats["errorCount"] == 1


# =============================================================================
# CHAT
# =============================================================================

class TestChat:
    async def test_agent_disabled(self, client):
        resp = await client.post("/api/chat", json={"message": "hi"})
        assert resp.status == 503
        assert (await resp.json())["error"] == "Agent is not enabled"

    async def test_missing_message(self, aiohttp_client, services):
        with_agent(services, [])
        client = await aiohttp_client(create_app(services))
        resp = await client.post("/api/chat", json={"messages": "hi"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "Missing or invalid messages"

    async def test_chat_round_trip(self, aiohttp_client, services):
        with_agent(services, ["Hello from the agent.", "COMPLETE"])
        client = await aiohttp_client(create_app(services))

        resp = await client.post("/api/chat", json={"message": "hi", "autoApprove": True})
        reply = await resp.json()
        assert resp.status == 200
        assert reply["status"] == "complete"
        assert reply["messages"][1]["content"] == "Hello from the agent."

        thread = await (await client.get(f"/api/chat/{reply['threadId']}")).json()
        assert thread["threadId"] == reply["threadId"]
        assert len(thread["messages"]) == 3

    async def test_unknown_thread(self, aiohttp_client, services):
        with_agent(services, [])
        client = await aiohttp_client(create_app(services))
        resp = await client.post("/api/chat/missing/approve", json={"approved": True})
        assert resp.status == 404

    async def test_llm_failure(self, aiohttp_client, services):
        with_agent(services, [])
        client = await aiohttp_client(create_app(services))
        resp = await client.post("/api/chat", json={"message": "hi", "autoApprove": True})
        assert resp.status == 500
        assert (await resp.json())["error"] == "Agent run failed"
