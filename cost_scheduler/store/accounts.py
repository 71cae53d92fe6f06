# =============================================================================
# COST OPTIMIZATION SCHEDULER - ACCOUNT SERVICE
# =============================================================================
"""
Account Service

CRUD operations over managed AWS accounts stored in the app table, plus
connection validation through the account's cross-account role.

Item layout:
    pk=ACCOUNT#<accountId>  sk=METADATA
    GSI1: TYPE#ACCOUNT / <account name>

Attributes are stored in snake_case and exposed to API callers in
camelCase through ``to_ui_account``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from cost_scheduler.scheduler.sts import assume_role, is_access_denied
from cost_scheduler.store.audit import AuditService, utc_now_iso
from cost_scheduler.store.table import (
    ConditionalCheckError,
    ItemNotFoundError,
    StoreError,
    TableInterface,
    decode_page_token,
    encode_page_token,
)


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class AccountError(StoreError):
    """Base exception for account operations."""
    pass


class AccountExistsError(AccountError):
    """Raised when creating an account whose id is already registered."""
    pass


class AccountNotFoundError(AccountError):
    """Raised when an account id is unknown."""
    pass


class AccountValidationError(AccountError):
    """Raised when an account cannot be validated (bad input or config)."""
    pass


# =============================================================================
# FIELD MAPPING
# =============================================================================

# API field -> stored attribute
UI_TO_DB_FIELDS = {
    "name": "account_name",
    "roleArn": "role_arn",
    "externalId": "external_id",
    "active": "active",
    "description": "description",
    "connectionStatus": "connection_status",
    "updatedBy": "updated_by",
    "regions": "regions",
    "lastValidated": "updated_at",
}

VALIDATION_SESSION_NAME = "NucleusValidationSession"
DEFAULT_VALIDATION_REGION = "us-east-1"


def account_key(account_id: str) -> Dict[str, str]:
    return {"pk": f"ACCOUNT#{account_id}", "sk": "METADATA"}


def to_ui_account(item: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a stored account item to its API representation."""
    account_id = item.get("account_id") or str(item.get("pk", "")).replace("ACCOUNT#", "", 1)
    return {
        "id": account_id,
        "accountId": account_id,
        "name": item.get("account_name") or item.get("gsi1sk"),
        "roleArn": item.get("role_arn"),
        "externalId": item.get("external_id"),
        "regions": item.get("regions") or [],
        "active": bool(item.get("active")),
        "description": item.get("description") or "",
        "connectionStatus": item.get("connection_status") or "unknown",
        "lastValidated": item.get("updated_at"),
        "resourceCount": 0,
        "schedulesCount": 0,
        "monthlySavings": 0,
        "createdAt": item.get("created_at"),
        "updatedAt": item.get("updated_at"),
        "createdBy": item.get("created_by"),
        "updatedBy": item.get("updated_by"),
        "tags": [],
    }


# =============================================================================
# ACCOUNT SERVICE
# =============================================================================

class AccountService:
    """
    Manages account records and their connection status.

    Attributes:
        table: App table backend
        audit: Audit log service
    """

    def __init__(
        self,
        table: TableInterface,
        audit: AuditService,
        sts_client_factory=None,
        service_client_factory=None,
    ):
        self.table = table
        self.audit = audit
        self.logger = logging.getLogger("cost_scheduler.store.accounts")
        self._sts_client_factory = sts_client_factory
        self._service_client_factory = service_client_factory

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def list_accounts(
        self,
        limit: int = 50,
        next_token: Optional[str] = None,
        status_filter: Optional[str] = None,
        connection_filter: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        List accounts sorted by name.

        Returns:
            ``{"accounts": [...], "nextToken": str | None}``
        """
        page = await self.table.query(
            "TYPE#ACCOUNT",
            index="GSI1",
            limit=limit,
            start_key=decode_page_token(next_token),
        )
        accounts = [to_ui_account(item) for item in page.items]

        if status_filter and status_filter != "all":
            wanted = status_filter == "active"
            accounts = [a for a in accounts if a["active"] == wanted]

        if connection_filter and connection_filter != "all":
            accounts = [a for a in accounts if a["connectionStatus"] == connection_filter]

        if search:
            term = search.lower()
            accounts = [
                a for a in accounts
                if term in (a.get("name") or "").lower()
                or term in (a.get("accountId") or "").lower()
                or term in (a.get("description") or "").lower()
                or term in (a.get("createdBy") or "").lower()
            ]

        return {"accounts": accounts, "nextToken": encode_page_token(page.last_key)}

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        item = await self.table.get_item(account_key(account_id))
        return to_ui_account(item) if item else None

    async def get_active_accounts(self) -> List[Dict[str, Any]]:
        """Raw stored items of every active account (used by the scheduler)."""
        items: List[Dict[str, Any]] = []
        start_key = None
        while True:
            page = await self.table.query(
                "TYPE#ACCOUNT", index="GSI1", filters={"active": True}, start_key=start_key
            )
            items.extend(page.items)
            if not page.has_more:
                return items
            start_key = page.last_key

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create_account(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Register a new account.

        Raises:
            AccountValidationError: If required fields are missing
            AccountExistsError: If the account id is already registered
        """
        account_id = str(data.get("accountId") or "").strip()
        name = data.get("name") or ""
        if not account_id or not name or not data.get("roleArn"):
            raise AccountValidationError("accountId, name and roleArn are required")

        created_by = data.get("createdBy") or "system"
        now = utc_now_iso()
        regions = data.get("regions") or []
        if isinstance(regions, str):
            regions = [r.strip() for r in regions.split(",") if r.strip()]

        item = {
            **account_key(account_id),
            "gsi1pk": "TYPE#ACCOUNT",
            "gsi1sk": name,
            "account_id": account_id,
            "account_name": name,
            "role_arn": data.get("roleArn"),
            "external_id": data.get("externalId"),
            "regions": regions,
            "active": bool(data.get("active", True)),
            "description": data.get("description") or "",
            "connection_status": "unknown",
            "created_at": now,
            "updated_at": now,
            "created_by": created_by,
            "updated_by": data.get("updatedBy") or "system",
            "type": "account",
        }

        try:
            await self.table.put_item(item, if_not_exists=True)
        except ConditionalCheckError:
            await self._audit_account(
                "Create Account", account_id, name, created_by, "error",
                f'Failed to create AWS account "{name}" ({account_id})',
                {"error": "Account with this ID already exists"},
            )
            raise AccountExistsError("Account with this ID already exists")
        except StoreError as e:
            await self._audit_account(
                "Create Account", account_id, name, created_by, "error",
                f'Failed to create AWS account "{name}" ({account_id})',
                {"error": str(e)},
            )
            raise

        await self._audit_account(
            "Create Account", account_id, name, created_by, "success",
            f'Created AWS account "{name}" ({account_id})',
            {"accountId": account_id, "roleArn": data.get("roleArn")},
        )
        self.logger.info(f"Created account {account_id} ({name})")
        return to_ui_account(item)

    async def update_account(
        self, account_id: str, updates: Dict[str, Any], audit: bool = True
    ) -> Dict[str, Any]:
        """
        Update account fields given in API (camelCase) form.

        ``audit=False`` skips the "Update Account" entry, for callers that
        write their own.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        db_updates: Dict[str, Any] = {}
        for ui_field, db_field in UI_TO_DB_FIELDS.items():
            if ui_field in updates and updates[ui_field] is not None:
                db_updates[db_field] = updates[ui_field]
        if "account_name" in db_updates:
            db_updates["gsi1sk"] = db_updates["account_name"]
        if "updated_at" not in db_updates:
            db_updates["updated_at"] = utc_now_iso()

        try:
            item = await self.table.update_item(account_key(account_id), db_updates)
        except ItemNotFoundError:
            raise AccountNotFoundError(f"Account {account_id} not found")

        account = to_ui_account(item)
        if audit:
            changed = ", ".join(k for k in updates if k in UI_TO_DB_FIELDS)
            await self._audit_account(
                "Update Account", account_id, account["name"], account.get("updatedBy") or "system",
                "success", f'Updated AWS account "{account["name"]}" ({changed or "no fields"})',
                {"accountId": account_id, "fields": sorted(db_updates)},
            )
        return account

    async def delete_account(self, account_id: str, deleted_by: str = "system") -> None:
        existing = await self.get_account(account_id)
        if existing is None:
            raise AccountNotFoundError(f"Account {account_id} not found")

        await self.table.delete_item(account_key(account_id))
        await self._audit_account(
            "Delete Account", account_id, existing["name"], deleted_by, "success",
            f'Deleted AWS account "{existing["name"]}" ({account_id})',
            {"accountId": account_id},
        )
        self.logger.info(f"Deleted account {account_id}")

    async def toggle_account_status(self, account_id: str, updated_by: str = "system") -> Dict[str, Any]:
        account = await self.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return await self.update_account(
            account_id, {"active": not account["active"], "updatedBy": updated_by}
        )

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _check_credentials(self, role_arn: str, external_id: Optional[str], region: str) -> None:
        sts_client = self._sts_client_factory() if self._sts_client_factory else None
        credentials = assume_role(
            role_arn,
            account_id=role_arn.split(":")[4] if role_arn.count(":") >= 5 else "unknown",
            region=region,
            external_id=external_id,
            session_name=VALIDATION_SESSION_NAME,
            sts_client=sts_client,
        )

        if self._service_client_factory:
            ecs = self._service_client_factory("ecs", credentials)
            rds = self._service_client_factory("rds", credentials)
        else:
            ecs = credentials.client("ecs")
            rds = credentials.client("rds")

        ecs.list_clusters(maxResults=1)
        self.logger.debug("ECS ListClusters succeeded")
        rds.describe_db_instances(MaxRecords=1)
        self.logger.debug("RDS DescribeDBInstances succeeded")

    async def validate_credentials(
        self,
        role_arn: str,
        external_id: Optional[str] = None,
        region: str = DEFAULT_VALIDATION_REGION,
    ) -> Dict[str, Any]:
        """
        Check that the role can be assumed and grants the read calls the
        scheduler relies on.

        Returns:
            ``{"isValid": True}`` or ``{"isValid": False, "error": str}``
        """
        self.logger.info(f"Validating credentials for {role_arn} in {region}")
        try:
            await asyncio.to_thread(self._check_credentials, role_arn, external_id, region)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            if is_access_denied(e):
                message = f"Access Denied: {message}"
            self.logger.warning(f"Credential validation failed for {role_arn}: {message}")
            return {"isValid": False, "error": message}
        return {"isValid": True}

    async def validate_account(self, account_id: str, user: str = "system") -> Dict[str, Any]:
        """
        Validate a stored account and persist the resulting connection status.

        Returns:
            The refreshed account; ``validationError`` is set when the
            check failed
        """
        account = await self.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        if not account.get("roleArn"):
            raise AccountValidationError("No Role ARN configured for this account")

        await self.update_account(account_id, {"connectionStatus": "validating"}, audit=False)

        regions = account.get("regions") or []
        result = await self.validate_credentials(
            account["roleArn"],
            account.get("externalId"),
            regions[0] if regions else DEFAULT_VALIDATION_REGION,
        )

        status = "connected" if result["isValid"] else "error"
        updated = await self.update_account(account_id, {
            "connectionStatus": status,
            "lastValidated": utc_now_iso(),
            "updatedBy": user,
        }, audit=False)

        await self._audit_account(
            "Validate Account", account_id, account["name"], user,
            "success" if result["isValid"] else "error",
            "Account connection validated successfully" if result["isValid"]
            else f"Account connection validation failed: {result.get('error')}",
            {"accountId": account_id, "roleArn": account["roleArn"], "error": result.get("error")},
        )

        if not result["isValid"]:
            updated["validationError"] = result.get("error")
        return updated

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _audit_account(
        self,
        action: str,
        account_id: str,
        name: str,
        user: str,
        status: str,
        details: str,
        metadata: Dict[str, Any],
    ) -> None:
        await self.audit.log_user_action(
            action=action,
            resource_type="account",
            resource_id=account_id,
            resource_name=name,
            user=user,
            user_type="user",
            status=status,
            details=details,
            metadata=metadata,
        )


__all__ = [
    "AccountService",
    "to_ui_account",
    "account_key",
    "UI_TO_DB_FIELDS",
    "AccountError",
    "AccountExistsError",
    "AccountNotFoundError",
    "AccountValidationError",
]
