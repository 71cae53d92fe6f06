# =============================================================================
# COST OPTIMIZATION SCHEDULER - STORE PACKAGE
# =============================================================================
"""
Store Package

Persistence for the console and the scheduler:

1. table: key-value table backends (DynamoDB, in-memory)
2. audit: audit log service over the audit table
3. accounts: managed AWS accounts and their connection validation
4. schedules: schedule definitions
5. templates: CloudFormation onboarding template for new accounts

Usage:
    from cost_scheduler.store import create_table, AuditService, AccountService

    app_table = create_table({"backend": "dynamodb", "region": "ap-south-1"}, "app-table")
    audit = AuditService(create_table(store_config, "audit-table"))
    accounts = AccountService(app_table, audit)
"""

from cost_scheduler.store.table import (
    # Backends
    TableInterface,
    DynamoTable,
    MemoryTable,
    create_table,
    # Pagination
    QueryPage,
    encode_page_token,
    decode_page_token,
    # Exceptions
    StoreError,
    TableError,
    ConditionalCheckError,
    ItemNotFoundError,
)

from cost_scheduler.store.audit import (
    AuditService,
    utc_now_iso,
)

from cost_scheduler.store.accounts import (
    AccountService,
    to_ui_account,
    AccountError,
    AccountExistsError,
    AccountNotFoundError,
    AccountValidationError,
)

from cost_scheduler.store.schedules import (
    ScheduleService,
    to_ui_schedule,
    validate_schedule_payload,
    ScheduleError,
    ScheduleExistsError,
    ScheduleNotFoundError,
    ScheduleValidationError,
)

from cost_scheduler.store.templates import (
    generate_onboarding_template,
    generate_external_id,
    render_template,
)

__all__ = [
    # Table backends
    "TableInterface",
    "DynamoTable",
    "MemoryTable",
    "create_table",
    "QueryPage",
    "encode_page_token",
    "decode_page_token",
    # Audit
    "AuditService",
    "utc_now_iso",
    # Accounts
    "AccountService",
    "to_ui_account",
    # Schedules
    "ScheduleService",
    "to_ui_schedule",
    "validate_schedule_payload",
    # Templates
    "generate_onboarding_template",
    "generate_external_id",
    "render_template",
    # Exceptions
    "StoreError",
    "TableError",
    "ConditionalCheckError",
    "ItemNotFoundError",
    "AccountError",
    "AccountExistsError",
    "AccountNotFoundError",
    "AccountValidationError",
    "ScheduleError",
    "ScheduleExistsError",
    "ScheduleNotFoundError",
    "ScheduleValidationError",
]
