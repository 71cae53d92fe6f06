# =============================================================================
# COST OPTIMIZATION SCHEDULER - AGENT TOOLS
# =============================================================================
"""
Agent Tools

Tools the DevOps agent may call. Every tool returns text for the model;
failures are reported in the returned text instead of being raised, so a
failing command never aborts the conversation.

Tools:
    - execute_command: run a shell command (30 s timeout)
    - read_file / write_file / list_directory: local file access
    - web_search: Tavily search
    - get_aws_credentials: temporary credentials for a managed account
"""

import asyncio
import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp

from cost_scheduler.agent.llm import ToolRegistry
from cost_scheduler.scheduler.sts import AssumeRoleError, assume_role


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

COMMAND_TIMEOUT = 30
TAVILY_URL = "https://api.tavily.com/search"
AGENT_SESSION_NAME = "NucleusDevOpsAgentSession"
AGENT_SESSION_DURATION = 3600


# =============================================================================
# TOOL SCHEMAS
# =============================================================================

TOOL_SCHEMAS = {
    "execute_command": {
        "description": (
            "Execute a shell command on the system. Use this to check system status, "
            "list files, inspect processes, or run AWS CLI commands."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute"},
            },
            "required": ["command"],
        },
    },
    "read_file": {
        "description": "Read the contents of a file at the given path.",
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "The absolute path to the file to read"},
            },
            "required": ["file_path"],
        },
    },
    "write_file": {
        "description": (
            "Write content to a file at the given path. Creates the file and parent "
            "directories if they do not exist. Overwrites existing content."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "The absolute path to the file to write"},
                "content": {"type": "string", "description": "The content to write to the file"},
            },
            "required": ["file_path", "content"],
        },
    },
    "list_directory": {
        "description": "List the contents of a directory at the given path.",
        "parameters": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path to the directory to list", "default": "."},
            },
        },
    },
    "web_search": {
        "description": "Search the web for information using Tavily. Returns an answer and relevant sources.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query"},
            },
            "required": ["query"],
        },
    },
    "get_aws_credentials": {
        "description": (
            "Fetch temporary AWS credentials for a managed AWS account by assuming the "
            "IAM role stored in the account configuration. You MUST call this tool before "
            "executing any AWS CLI commands when an account is selected, then export the "
            "returned credentials as environment variables."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "account_id": {
                    "type": "string",
                    "description": "The AWS account ID (12-digit number) to get credentials for",
                },
            },
            "required": ["account_id"],
        },
    },
}


# =============================================================================
# SHELL AND FILE TOOLS
# =============================================================================

def execute_command(command: str) -> str:
    """Run ``command`` through the shell and return its output."""
    logger.info(f"Executing command: {command}")
    try:
        result = subprocess.run(
            command,
            shell=True,
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT,
            check=True,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
        stderr = e.stderr or ""
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", errors="replace")
        logger.warning(f"Command failed: {e}")
        return f"Command failed: {e}\n{stderr}"
    except OSError as e:
        logger.warning(f"Command failed: {e}")
        return f"Command failed: {e}\n"

    output = result.stdout or result.stderr or "Command executed successfully (no output)"
    logger.debug(f"Command output length: {len(output)}")
    return output


def read_file(file_path: str) -> str:
    logger.info(f"Reading file: {file_path}")
    try:
        return Path(file_path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        return f"Error reading file: {e}"


def write_file(file_path: str, content: str) -> str:
    logger.info(f"Writing file: {file_path}")
    path = Path(file_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as e:
        return f"Error writing file: {e}"
    return f"Successfully written to '{file_path}'."


def list_directory(path: str = ".") -> str:
    logger.info(f"Listing directory: {path}")
    try:
        entries = sorted(Path(path).iterdir(), key=lambda p: p.name)
    except OSError as e:
        return f"Error listing directory: {e}"

    lines = [f"{'[DIR]' if entry.is_dir() else '[FILE]'} {entry.name}" for entry in entries]
    return "\n".join(lines) or "(Empty directory)"


# =============================================================================
# WEB SEARCH
# =============================================================================

def format_search_results(data: Dict[str, Any]) -> str:
    """Render a Tavily response as markdown: answer plus up to three sources."""
    result = ""
    if data.get("answer"):
        result += f"**Answer:** {data['answer']}\n\n"

    sources = data.get("results") or []
    if sources:
        result += "**Sources:**\n"
        for source in sources[:3]:
            snippet = (source.get("content") or "")[:200]
            result += f"- [{source.get('title')}]({source.get('url')})\n  {snippet}...\n\n"

    return result or "No results found."


async def web_search(query: str) -> str:
    logger.info(f"Web search: {query}")

    api_key = os.environ.get("TAVILY_API_KEY")
    if not api_key:
        return "Error: TAVILY_API_KEY not configured in environment variables."

    payload = {
        "api_key": api_key,
        "query": query,
        "max_results": 5,
        "include_answer": True,
        "include_raw_content": False,
    }

    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30)) as session:
            async with session.post(TAVILY_URL, json=payload) as response:
                if response.status != 200:
                    return f"Web search error: Tavily API error: {response.status} {response.reason}"
                data = await response.json()
    except aiohttp.ClientError as e:
        logger.warning(f"Web search failed: {e}")
        return f"Web search error: {e}"

    logger.debug(f"Search completed, {len(data.get('results') or [])} results")
    return format_search_results(data)


# =============================================================================
# AWS CREDENTIALS
# =============================================================================

def _credentials_error(message: str) -> str:
    return json.dumps({"error": message, "success": False})


def make_aws_credentials_tool(account_service=None, sts_client_factory=None):
    """
    Build the ``get_aws_credentials`` handler bound to an account service.

    The handler looks the account up, assumes its role with the agent
    session name and returns the credentials together with shell export
    lines the model can prepend to AWS CLI commands.
    """

    async def get_aws_credentials(account_id: str) -> str:
        logger.info(f"Getting AWS credentials for account: {account_id}")

        if not account_id or not str(account_id).strip():
            return _credentials_error(
                "No account ID provided. Please select an AWS account before performing AWS operations."
            )
        if account_service is None:
            return _credentials_error("Account lookup is not configured for this agent.")

        account = await account_service.get_account(account_id)
        if account is None:
            return _credentials_error(
                f"Account {account_id} not found in the system. Please ensure the account is registered."
            )
        if not account.get("roleArn"):
            return _credentials_error(
                f"Account {account_id} does not have an IAM Role ARN configured. "
                "Please update the account configuration."
            )
        if not account.get("active"):
            return _credentials_error(
                f"Account {account_id} is currently inactive. Please activate the account before use."
            )

        region = (
            (account.get("regions") or [None])[0]
            or os.environ.get("AWS_REGION")
            or "us-east-1"
        )

        try:
            credentials = await asyncio.to_thread(
                assume_role,
                account["roleArn"],
                account_id,
                region,
                external_id=account.get("externalId"),
                session_name=AGENT_SESSION_NAME,
                duration=AGENT_SESSION_DURATION,
                sts_client=sts_client_factory() if sts_client_factory else None,
            )
        except AssumeRoleError as e:
            logger.error(f"Error getting credentials for account {account_id}: {e}")
            if e.access_denied:
                message = (
                    f"Access denied when assuming role for account {account_id}. "
                    "Verify that the trust policy allows this role to be assumed."
                )
            elif e.code == "MalformedPolicyDocument":
                message = f"Invalid role configuration for account {account_id}. Check the IAM role ARN format."
            else:
                message = str(e) or "Unknown error occurred"
            return _credentials_error(message)

        account_name = account.get("name") or account_id
        expires_at = credentials.expiration or ""
        payload = {
            "accessKeyId": credentials.access_key_id,
            "secretAccessKey": credentials.secret_access_key,
            "sessionToken": credentials.session_token,
            "region": region,
            "accountId": account_id,
            "accountName": account_name,
            "expiresAt": expires_at,
        }
        logger.info(f"Obtained credentials for account {account_id} (expire at {expires_at})")

        return json.dumps({
            "success": True,
            "credentials": payload,
            "message": (
                f'Successfully obtained temporary AWS credentials for account "{account_name}" '
                f"({account_id}). These credentials are valid until {expires_at}."
            ),
            "usage": (
                "To use these credentials with AWS CLI, set the following environment "
                "variables before running commands:\n"
                f'export AWS_ACCESS_KEY_ID="{credentials.access_key_id}"\n'
                f'export AWS_SECRET_ACCESS_KEY="{credentials.secret_access_key}"\n'
                f'export AWS_SESSION_TOKEN="{credentials.session_token}"\n'
                f'export AWS_REGION="{region}"'
            ),
        })

    return get_aws_credentials


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def build_tool_registry(account_service=None, sts_client_factory=None) -> ToolRegistry:
    """Create a registry holding every agent tool."""
    handlers = {
        "execute_command": execute_command,
        "read_file": read_file,
        "write_file": write_file,
        "list_directory": list_directory,
        "web_search": web_search,
        "get_aws_credentials": make_aws_credentials_tool(account_service, sts_client_factory),
    }

    registry = ToolRegistry()
    for name, handler in handlers.items():
        schema = TOOL_SCHEMAS[name]
        registry.register(name, schema["description"], schema["parameters"], handler)
    return registry


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "TOOL_SCHEMAS",
    "COMMAND_TIMEOUT",
    "AGENT_SESSION_NAME",
    "execute_command",
    "read_file",
    "write_file",
    "list_directory",
    "web_search",
    "format_search_results",
    "make_aws_credentials_tool",
    "build_tool_registry",
]
