# =============================================================================
# COST OPTIMIZATION SCHEDULER - CROSS-ACCOUNT ROLE ASSUMPTION
# =============================================================================
"""
STS Module

Assumes the cross-account role registered for a managed account and hands
out boto3 clients bound to the temporary credentials.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError


logger = logging.getLogger(__name__)

DEFAULT_SESSION_DURATION = 3600


# =============================================================================
# EXCEPTIONS
# =============================================================================

class AssumeRoleError(Exception):
    """Raised when a cross-account role cannot be assumed."""

    def __init__(self, message: str, code: str = "", access_denied: bool = False):
        super().__init__(message)
        self.code = code
        self.access_denied = access_denied


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class AssumedCredentials:
    """Temporary credentials for one account and region."""
    access_key_id: str
    secret_access_key: str
    session_token: str
    region: str
    expiration: Optional[str] = None

    def client(self, service: str):
        """Create a boto3 client for ``service`` using these credentials."""
        return boto3.client(
            service,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            aws_session_token=self.session_token,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessKeyId": self.access_key_id,
            "secretAccessKey": self.secret_access_key,
            "sessionToken": self.session_token,
            "region": self.region,
            "expiration": self.expiration,
        }


# =============================================================================
# ROLE ASSUMPTION
# =============================================================================

def get_sts_client(region: Optional[str] = None):
    return boto3.client(
        "sts",
        region_name=region or os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or "ap-south-1",
    )


def is_access_denied(error: BaseException) -> bool:
    if isinstance(error, AssumeRoleError):
        return error.access_denied
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        if code in ("AccessDenied", "AccessDeniedException"):
            return True
    return "AccessDenied" in str(error)


def assume_role(
    role_arn: str,
    account_id: str,
    region: str,
    external_id: Optional[str] = None,
    session_name: Optional[str] = None,
    duration: int = DEFAULT_SESSION_DURATION,
    sts_client=None,
) -> AssumedCredentials:
    """
    Assume ``role_arn`` and return credentials scoped to ``region``.

    Args:
        role_arn: Cross-account role ARN
        account_id: Account the role lives in (used for the session name)
        region: Region the returned credentials will target
        external_id: External id required by the role trust policy
        session_name: Override for the role session name
        duration: Session duration in seconds
        sts_client: Optional pre-built STS client

    Raises:
        AssumeRoleError: If STS rejects the request
    """
    session_name = session_name or f"scheduler-session-{account_id}-{region}"
    client = sts_client or get_sts_client()

    params: Dict[str, Any] = {
        "RoleArn": role_arn,
        "RoleSessionName": session_name,
        "DurationSeconds": duration,
    }
    if external_id:
        params["ExternalId"] = external_id

    logger.info(
        f"Assuming role {role_arn} for account {account_id} in {region} "
        f"(session={session_name}, external_id={'yes' if external_id else 'no'})"
    )

    try:
        response = client.assume_role(**params)
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "ClientError")
        message = e.response.get("Error", {}).get("Message", str(e))
        logger.error(f"Failed to assume role {role_arn}: {code} {message}")
        raise AssumeRoleError(message, code=code, access_denied=is_access_denied(e)) from e
    except BotoCoreError as e:
        logger.error(f"Failed to assume role {role_arn}: {e}")
        raise AssumeRoleError(str(e)) from e

    credentials = response.get("Credentials")
    if not credentials:
        raise AssumeRoleError("No credentials returned from AssumeRole")

    expiration = credentials.get("Expiration")
    if isinstance(expiration, datetime):
        expiration = expiration.isoformat()

    return AssumedCredentials(
        access_key_id=credentials["AccessKeyId"],
        secret_access_key=credentials["SecretAccessKey"],
        session_token=credentials["SessionToken"],
        region=region,
        expiration=expiration,
    )


__all__ = [
    "AssumedCredentials",
    "AssumeRoleError",
    "assume_role",
    "get_sts_client",
    "is_access_denied",
    "DEFAULT_SESSION_DURATION",
]
