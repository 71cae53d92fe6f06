# =============================================================================
# COST OPTIMIZATION SCHEDULER - AGENT SERVICE
# =============================================================================
"""
Agent Service

Chat sessions over the agent graphs. A session is a LangGraph thread; its
state lives in the checkpointer so a conversation interrupted for tool
approval can be resumed by a later request.

Usage:
    service = create_agent_service(config, account_service=accounts)

    reply = await service.chat("List the running EC2 instances", account_id="123456789012")
    if reply["status"] == "awaiting_approval":
        reply = await service.approve(reply["threadId"], approved=True)
"""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Union

from cost_scheduler.agent.checkpoint import create_checkpointer
from cost_scheduler.agent.graph import AgentError, AgentGraphBuilder, AgentGraphError, MAX_ITERATIONS
from cost_scheduler.agent.llm import LLMClientInterface, LLMError, create_llm_client
from cost_scheduler.agent.messages import Message, user_message
from cost_scheduler.agent.tools import build_tool_registry
from monitoring.logger import log_context


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

MODES = ("reflection", "fast")

STATUS_COMPLETE = "complete"
STATUS_AWAITING_APPROVAL = "awaiting_approval"
STATUS_RUNNING = "running"

REJECTED_TOOL_MESSAGE = "Tool call rejected by user. Do not retry it; explain what you would have done instead."


# =============================================================================
# EXCEPTIONS
# =============================================================================

class AgentSessionError(AgentError):
    """Error in a chat session request."""
    pass


class ThreadNotFoundError(AgentSessionError):
    """Raised when a thread id has no saved state."""
    pass


class AgentRunError(AgentError):
    """Raised when the model fails during a graph run."""
    pass


# =============================================================================
# AGENT SERVICE
# =============================================================================

class AgentService:
    """
    Runs chat turns against the reflection or fast agent graph.

    Compiled graphs are cached per (mode, auto_approve); all of them share
    one checkpointer, so a thread can be continued in either mode.
    """

    def __init__(
        self,
        builder: AgentGraphBuilder,
        default_mode: str = "reflection",
    ):
        self.builder = builder
        self.default_mode = default_mode
        self.metrics = builder.metrics
        self._graphs: Dict[tuple, Any] = {}
        self.logger = logging.getLogger("cost_scheduler.agent.service")

    def _graph(self, mode: str, auto_approve: bool):
        if mode not in MODES:
            raise AgentGraphError(f"Unknown agent mode: {mode}")
        key = (mode, auto_approve)
        if key not in self._graphs:
            if mode == "fast":
                self._graphs[key] = self.builder.build_fast_graph(auto_approve)
            else:
                self._graphs[key] = self.builder.build_reflection_graph(auto_approve)
        return self._graphs[key]

    @staticmethod
    def _thread_config(thread_id: str) -> Dict[str, Any]:
        return {
            "configurable": {"thread_id": thread_id},
            "recursion_limit": 200,
        }

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def chat(
        self,
        message: Union[str, Message, List[Message], None] = None,
        thread_id: Optional[str] = None,
        auto_approve: bool = False,
        mode: Optional[str] = None,
        account_id: Optional[str] = None,
        account_name: Optional[str] = None,
        messages: Optional[List[Message]] = None,
    ) -> Dict[str, Any]:
        """
        Send a user turn and run the graph until it finishes or pauses.

        Args:
            message: User text (or a message dict / list of dicts)
            thread_id: Existing thread to continue; a new one is created when absent
            auto_approve: Run tools without pausing for approval
            mode: ``reflection`` (default) or ``fast``
            account_id: Managed AWS account the agent should work in
            account_name: Display name for that account
            messages: Alternative to ``message`` for a batch of messages

        Returns:
            ``{threadId, status, messages, pendingToolCalls}``
        """
        new_messages = self._normalize_messages(message if message is not None else messages)
        if not new_messages:
            raise AgentSessionError("message or messages is required")

        mode = mode or self.default_mode
        thread_id = thread_id or str(uuid.uuid4())
        graph = self._graph(mode, auto_approve)

        # A new user turn is a new task: the iteration budget restarts.
        graph_input: Dict[str, Any] = {
            "messages": new_messages,
            "iterationCount": 0,
            "isComplete": False,
            "agentMode": mode,
        }
        if account_id:
            graph_input["accountId"] = account_id
            graph_input["accountName"] = account_name or account_id

        return await self._run(graph, graph_input, thread_id, mode)

    async def approve(
        self,
        thread_id: str,
        approved: bool = True,
        mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Resume a thread paused before its tool calls.

        When rejected, a tool message is recorded for every pending call so
        the model sees the rejection, and the graph resumes after the tools
        step.
        """
        mode = await self._thread_mode(thread_id, mode)
        graph = self._graph(mode, auto_approve=False)
        config = self._thread_config(thread_id)

        snapshot = await graph.aget_state(config)
        if not snapshot or not snapshot.values:
            raise ThreadNotFoundError(f"Thread not found: {thread_id}")
        if "tools" not in (snapshot.next or ()):
            raise AgentSessionError(f"Thread {thread_id} has no tool calls awaiting approval")

        if not approved:
            pending = self._pending_tool_calls(snapshot.values)
            rejected = [
                {
                    "role": "tool",
                    "tool_call_id": tc["id"],
                    "name": tc["name"],
                    "content": REJECTED_TOOL_MESSAGE,
                }
                for tc in pending
            ]
            self.logger.info(f"Rejected {len(rejected)} tool call(s) on thread {thread_id}")
            if self.metrics is not None:
                for tc in pending:
                    self.metrics.record_tool_call(tc["name"], success=False)
            await graph.aupdate_state(config, {"messages": rejected}, as_node="tools")
        else:
            self.logger.info(f"Approved tool calls on thread {thread_id}")

        return await self._run(graph, None, thread_id, mode)

    async def get_thread(self, thread_id: str, mode: Optional[str] = None) -> Dict[str, Any]:
        graph = self._graph(await self._thread_mode(thread_id, mode), auto_approve=False)
        snapshot = await graph.aget_state(self._thread_config(thread_id))
        if not snapshot or not snapshot.values:
            raise ThreadNotFoundError(f"Thread not found: {thread_id}")
        return self._response(thread_id, snapshot)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _thread_mode(self, thread_id: str, mode: Optional[str]) -> str:
        """Explicit mode, else the one the thread was last run in, else the default."""
        if mode:
            return mode
        graph = self._graph(self.default_mode, auto_approve=False)
        snapshot = await graph.aget_state(self._thread_config(thread_id))
        stored = (snapshot.values or {}).get("agentMode") if snapshot else None
        return stored if stored in MODES else self.default_mode

    @staticmethod
    def _normalize_messages(value) -> List[Message]:
        if value is None:
            return []
        if isinstance(value, str):
            return [user_message(value)] if value.strip() else []
        if isinstance(value, dict):
            value = [value]
        normalized = []
        for item in value:
            if isinstance(item, str):
                normalized.append(user_message(item))
            elif item.get("content"):
                normalized.append({"role": item.get("role", "user"), "content": item["content"]})
        return normalized

    @staticmethod
    def _pending_tool_calls(values: Dict[str, Any]) -> List[Dict[str, Any]]:
        messages = values.get("messages") or []
        if messages and messages[-1].get("role") == "assistant":
            return list(messages[-1].get("tool_calls") or [])
        return []

    def _response(self, thread_id: str, snapshot) -> Dict[str, Any]:
        values = snapshot.values or {}
        pending_next = snapshot.next or ()

        if "tools" in pending_next:
            status = STATUS_AWAITING_APPROVAL
            pending = self._pending_tool_calls(values)
        elif pending_next:
            status = STATUS_RUNNING
            pending = []
        else:
            status = STATUS_COMPLETE
            pending = []

        return {
            "threadId": thread_id,
            "status": status,
            "messages": values.get("messages") or [],
            "pendingToolCalls": pending,
            "plan": values.get("plan") or [],
            "iterationCount": values.get("iterationCount", 0),
        }

    async def _run(self, graph, graph_input, thread_id: str, mode: str) -> Dict[str, Any]:
        config = self._thread_config(thread_id)
        start_time = time.time()

        with log_context(thread_id=thread_id, agent_mode=mode):
            self.logger.info(f"Running {mode} agent on thread {thread_id}")
            try:
                await graph.ainvoke(graph_input, config)
            except LLMError as e:
                self.logger.error(f"Agent run failed on thread {thread_id}: {e}")
                if self.metrics is not None:
                    self.metrics.record_agent_session(mode, "error")
                    self.metrics.record_error("agent", type(e).__name__)
                raise AgentRunError(f"Agent run failed: {e}") from e

            snapshot = await graph.aget_state(config)
            response = self._response(thread_id, snapshot)
            self.logger.info(
                f"Agent run on thread {thread_id} ended with status {response['status']} "
                f"after {time.time() - start_time:.1f}s"
            )

        if self.metrics is not None:
            self.metrics.record_agent_session(mode, response["status"], response["iterationCount"])
        return response

    async def close(self):
        await self.builder.llm.close()


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def create_agent_service(
    config: Dict[str, Any],
    account_service=None,
    metrics=None,
    llm: Optional[LLMClientInterface] = None,
    checkpointer=None,
) -> AgentService:
    """
    Create an agent service from the application config.

    Args:
        config: Application config (``llm`` and ``agent`` sections)
        account_service: AccountService used by ``get_aws_credentials``
        metrics: Optional MetricsCollector
        llm: Pre-built LLM client (defaults to ``create_llm_client(config)``)
        checkpointer: Pre-built checkpointer (defaults to ``create_checkpointer(config)``)
    """
    agent_config = config.get("agent", {})
    builder = AgentGraphBuilder(
        llm=llm or create_llm_client(config),
        registry=build_tool_registry(account_service),
        checkpointer=checkpointer if checkpointer is not None else create_checkpointer(config),
        metrics=metrics,
        max_iterations=agent_config.get("max_iterations", MAX_ITERATIONS),
    )
    return AgentService(builder, default_mode=agent_config.get("default_mode", "reflection"))


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "AgentService",
    "create_agent_service",
    "MODES",
    "STATUS_COMPLETE",
    "STATUS_AWAITING_APPROVAL",
    "STATUS_RUNNING",
    "AgentSessionError",
    "AgentRunError",
    "ThreadNotFoundError",
]
