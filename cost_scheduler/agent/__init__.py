# =============================================================================
# COST OPTIMIZATION SCHEDULER - AGENT PACKAGE
# =============================================================================
"""
Agent Package

Experimental DevOps chat agent built on LangGraph:

1. llm: LLM clients (Bedrock, Anthropic, OpenAI, Ollama) and the tool registry
2. tools: shell, file, web search and AWS credential tools
3. messages: context-window selection and state reducers
4. checkpoint: file / DynamoDB backed conversation checkpoints
5. graph: reflection (plan, execute, reflect, revise, finalize) and fast graphs
6. service: chat sessions with human approval of tool calls

Usage:
    from cost_scheduler.agent import create_agent_service

    agent = create_agent_service(config, account_service=accounts, metrics=metrics)
    reply = await agent.chat("Which instances are running?")
"""

from cost_scheduler.agent.llm import (
    LLMConfig,
    LLMResponse,
    ToolCall,
    ToolResult,
    ToolRegistry,
    LLMClientInterface,
    create_llm_client,
    LLMError,
    LLMProviderError,
    ConfigurationError,
)

from cost_scheduler.agent.tools import build_tool_registry

from cost_scheduler.agent.messages import (
    get_recent_messages,
    truncate_output,
)

from cost_scheduler.agent.checkpoint import (
    PersistentSaver,
    FileCheckpointStore,
    DynamoCheckpointStore,
    create_checkpointer,
)

from cost_scheduler.agent.graph import (
    AgentState,
    AgentGraphBuilder,
    create_reflection_graph,
    create_fast_graph,
    AgentError,
)

from cost_scheduler.agent.service import (
    AgentService,
    create_agent_service,
    AgentSessionError,
    AgentRunError,
    ThreadNotFoundError,
)

__all__ = [
    # LLM
    "LLMConfig",
    "LLMResponse",
    "ToolCall",
    "ToolResult",
    "ToolRegistry",
    "LLMClientInterface",
    "create_llm_client",
    # Tools
    "build_tool_registry",
    # Messages
    "get_recent_messages",
    "truncate_output",
    # Checkpoints
    "PersistentSaver",
    "FileCheckpointStore",
    "DynamoCheckpointStore",
    "create_checkpointer",
    # Graphs
    "AgentState",
    "AgentGraphBuilder",
    "create_reflection_graph",
    "create_fast_graph",
    # Service
    "AgentService",
    "create_agent_service",
    # Exceptions
    "AgentError",
    "AgentSessionError",
    "AgentRunError",
    "ThreadNotFoundError",
    "LLMError",
    "LLMProviderError",
    "ConfigurationError",
]
