"""
Tests for cross-account role assumption.
"""

from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from cost_scheduler.scheduler.sts import AssumeRoleError, assume_role, is_access_denied
from tests.conftest import ACCOUNT_ID, ROLE_ARN


def test_assume_role(sts_client):
    sts_client.assume_role.return_value = {
        "Credentials": {
            "AccessKeyId": "AKIA",
            "SecretAccessKey": "secret",
            "SessionToken": "token",
            "Expiration": datetime(2030, 1, 1, tzinfo=timezone.utc),
        }
    }

    credentials = assume_role(ROLE_ARN, ACCOUNT_ID, "eu-west-1", "nucleus-x", sts_client=sts_client)

    sts_client.assume_role.assert_called_once_with(
        RoleArn=ROLE_ARN,
        RoleSessionName=f"scheduler-session-{ACCOUNT_ID}-eu-west-1",
        DurationSeconds=3600,
        ExternalId="nucleus-x",
    )
    assert credentials.region == "eu-west-1"
    assert credentials.expiration == "2030-01-01T00:00:00+00:00"
    assert credentials.to_dict()["sessionToken"] == "token"


def test_external_id_is_optional(sts_client):
    assume_role(ROLE_ARN, ACCOUNT_ID, "us-east-1", sts_client=sts_client)
    assert "ExternalId" not in sts_client.assume_role.call_args.kwargs


def test_access_denied(sts_client):
    sts_client.assume_role.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "no trust"}}, "AssumeRole"
    )
    with pytest.raises(AssumeRoleError) as excinfo:
        assume_role(ROLE_ARN, ACCOUNT_ID, "us-east-1", sts_client=sts_client)

    assert excinfo.value.code == "AccessDenied"
    assert excinfo.value.access_denied
    assert is_access_denied(excinfo.value)


def test_missing_credentials(sts_client):
    sts_client.assume_role.return_value = {}
    with pytest.raises(AssumeRoleError, match="No credentials"):
        assume_role(ROLE_ARN, ACCOUNT_ID, "us-east-1", sts_client=sts_client)


def test_is_access_denied_on_other_errors():
    throttled = ClientError({"Error": {"Code": "Throttling", "Message": "slow down"}}, "AssumeRole")
    assert not is_access_denied(throttled)
    assert is_access_denied(RuntimeError("AccessDenied when calling AssumeRole"))
