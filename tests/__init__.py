# =============================================================================
# COST OPTIMIZATION SCHEDULER - TEST PACKAGE
# =============================================================================
"""
Test Package

Test Structure:
    tests/
    ├── conftest.py                 # Shared fixtures (in-memory tables, services)
    ├── test_table.py               # Table backends
    ├── test_audit.py               # Audit log service
    ├── test_accounts.py            # Account service
    ├── test_schedules.py           # Schedule service
    ├── test_templates.py           # Onboarding template
    ├── test_time_window.py         # Schedule windows
    ├── test_sts.py                 # Role assumption
    ├── test_resources.py           # EC2 / RDS / ECS handlers
    ├── test_executions.py          # Execution history
    ├── test_scheduler_service.py   # Full and partial scans
    ├── test_monitoring.py          # Logging, metrics, health
    ├── test_llm.py                 # LLM clients and tool registry
    ├── test_agent_tools.py         # Agent tools
    ├── test_agent.py               # Agent graph, checkpoints and service
    ├── test_web.py                 # HTTP API
    └── test_main.py                # Configuration and CLI

Running Tests:
    # Run all tests
    pytest

    # Run specific test file
    pytest tests/test_scheduler_service.py -v

    # Run with coverage
    pytest tests/ --cov=cost_scheduler --cov=monitoring

AWS is never contacted: tables are in-memory and boto3 clients are mocks.
"""
