# =============================================================================
# COST OPTIMIZATION SCHEDULER - AGENT GRAPH DEFINITION
# =============================================================================
"""
Agent Graph Module

LangGraph state machines for the DevOps chat agent.

Reflection graph:

    START ─▶ planner ─▶ generate ──(tool calls)──▶ tools ──▶ generate
                          │                          │ (max iterations)
                          │ (first answer)           ▼
                          ├──────────▶ final ◀─── reflect ◀──┐
                          │                          │        │
                          └──(later answers)────────▶┘        │
                                                     │ (not complete)
                                                     ▼        │
                                                  revise ─────┘
                                                     │ (tool calls)
                                                     ▼
                                                   tools

Fast graph:

    START ─▶ agent ──(tool calls)──▶ tools ─▶ agent
               │
               ├──(max iterations)──▶ END
               ▼
            reflect ──(COMPLETE)──▶ END
               │
               └──(critique)──▶ agent

Both graphs are compiled with a checkpointer and, unless auto-approve is
requested, interrupt before the ``tools`` node so a human can approve the
pending tool calls.
"""

import json
import logging
import re
from typing import Annotated, Any, Dict, List, Optional, TypedDict

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.graph import END, START, StateGraph

from cost_scheduler.agent.llm import LLMClientInterface, LLMResponse, ToolCall, ToolRegistry
from cost_scheduler.agent.messages import (
    Message,
    add_messages,
    append_output,
    assistant_message,
    get_recent_messages,
    has_tool_calls,
    last_non_empty,
    message_text,
    replace_if_non_empty,
    system_message,
    truncate_output,
    user_message,
)


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

MAX_ITERATIONS = 30
FALLBACK_PLAN_STEP = "Analyze and respond to user request"
TOOL_RESULT_LIMIT = 1000


# =============================================================================
# EXCEPTIONS
# =============================================================================

class AgentError(Exception):
    """Base exception for agent errors."""
    pass


class AgentGraphError(AgentError):
    """Error while building or running an agent graph."""
    pass


# =============================================================================
# GRAPH STATE
# =============================================================================

class AgentState(TypedDict, total=False):
    """
    State passed through the agent graphs.

    Annotated channels carry their reducer; plain channels keep the last
    value written.
    """
    messages: Annotated[List[Message], add_messages]
    taskDescription: Annotated[str, last_non_empty]
    plan: Annotated[List[Dict[str, str]], replace_if_non_empty]
    code: Annotated[str, last_non_empty]
    executionOutput: Annotated[str, append_output]
    errors: Annotated[List[str], replace_if_non_empty]
    reflection: Annotated[str, last_non_empty]
    nextAction: Annotated[str, last_non_empty]
    toolResults: Annotated[List[str], add_messages]
    accountId: Annotated[str, last_non_empty]
    accountName: Annotated[str, last_non_empty]
    agentMode: Annotated[str, last_non_empty]
    iterationCount: int
    isComplete: bool


# =============================================================================
# PROMPT TEMPLATES
# =============================================================================

PLANNER_PROMPT = """You are an expert DevOps and Cloud Infrastructure planning agent.
Given a task, create a clear step-by-step plan to accomplish it, utilizing your expertise in AWS, Docker, Kubernetes, and CI/CD.
Focus on actionable steps that can be executed using available tools:
{tool_list}

Be specific and practical. Each step should be executable.

IMPORTANT: Return your plan as a JSON array of step descriptions.
Example: ["Step 1: List directory contents", "Step 2: Read config file", "Step 3: Execute tests"]

Only return the JSON array, nothing else."""

EXECUTOR_PROMPT = """You are an expert DevOps and Cloud Infrastructure executor agent.
Your goal is to execute technical tasks with precision, utilizing tools like AWS CLI, git, bash, and more.
Based on the plan, execute the current step using available tools.

Current Step: {current_step}
Full Plan: {plan}

Available tools:
{tool_list}
{account_context}

You should use tools to accomplish the task if necessary. If the task is a simple question or greeting that doesn't require tools, you may answer directly.
After using tools (or if no tools are needed), provide a brief summary of what you accomplished or the answer."""

REFLECTOR_PROMPT = """You are a Senior DevOps Engineer reviewing work for best practices, security, and correctness.

Original Task: {task}

Current Plan Status:
{plan}

Current Iteration: {iteration}/{max_iterations}

Tool Execution Results Summary:
{tool_results}

Review the conversation history and tool outputs. Provide your analysis in the following JSON format:
{{
    "analysis": "Brief analysis of what was done and the results",
    "issues": "Any issues or errors found, or 'None' if no issues",
    "suggestions": "Suggestions for improvement, or 'None' if no suggestions",
    "isComplete": true or false
}}

Be specific and actionable in your feedback.
Only return the JSON object, nothing else."""

REVISER_PROMPT = """You are a revision agent.
Based on the feedback provided, make improvements to address the issues.

Recent Feedback: {reflection}
Issues to Address: {issues}

Use the available tools to fix problems and improve the solution.
Focus on addressing the specific issues mentioned in the feedback.

Available tools: {tool_names}
{account_context}"""

SUMMARY_PROMPT = """You are a helpful assistant summarizing the results of a completed task.

Original Task: {task}

Execution Summary:
- Total Iterations: {iteration}
- Plan Steps: {plan_steps}

Tool Execution Results (most recent):
{tool_results}

Final Reflection: {reflection}

Based on the above, provide a clear, helpful summary for the user that:
1. States what was accomplished
2. Highlights key findings or results
3. Notes any important information from tool outputs
4. Suggests next steps if applicable

Be concise but comprehensive. Format nicely with markdown."""

FAST_AGENT_PROMPT = """You are a capable DevOps and Cloud Infrastructure assistant.
You have access to tools: {tool_names}.
You are proficient with AWS CLI, git, shell scripting, and infrastructure management.
{account_context}

Answer the user's request directly.
If you receive a critique from the Reflector, update your previous answer to address the critique.
Be concise and effective."""

CRITIC_PROMPT = """You are a strict critic reviewing an AI assistant's response.

Analyze the response for:
1. Correctness
2. Completeness (did it answer the user's request?)
3. Missing details

If the response is good and complete, respond with "COMPLETE".
If there are issues, list them clearly and concisely as feedback for the assistant to fix.
Do not generate the fixed answer yourself, just the analysis."""

CRITIQUE_REQUEST = """Here is the interaction to review:

<USER_QUERY>
{query}
</USER_QUERY>

<ASSISTANT_RESPONSE>
{response}
</ASSISTANT_RESPONSE>

Please provide your critique."""


# =============================================================================
# PARSING HELPERS
# =============================================================================

def parse_plan(content: str) -> List[Dict[str, str]]:
    """Extract plan steps from a JSON array in the planner's reply."""
    steps: List[Dict[str, str]] = []
    match = re.search(r"\[[\s\S]*\]", content or "")
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning(f"Plan parsing failed: {e}")
            parsed = []
        if isinstance(parsed, list):
            steps = [{"step": str(step), "status": "pending"} for step in parsed]

    if not steps:
        steps = [{"step": FALLBACK_PLAN_STEP, "status": "pending"}]
    return steps


def format_plan(plan: List[Dict[str, str]], with_status: bool = True) -> str:
    if with_status:
        return "\n".join(f"{i}. [{s['status']}] {s['step']}" for i, s in enumerate(plan, 1))
    return "\n".join(f"{i}. {s['step']}" for i, s in enumerate(plan, 1))


def parse_reflection(content: str, iteration: int, max_iterations: int) -> Dict[str, Any]:
    """
    Parse the reflector's JSON verdict.

    Without a JSON object the raw text becomes the analysis and the task
    stays open. Only an explicit ``"isComplete": true`` ends the loop early.
    """
    analysis = ""
    issues = "None"
    suggestions = "None"
    is_complete = False

    match = re.search(r"\{[\s\S]*\}", content or "")
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning(f"Reflection parsing failed: {e}")
            return {
                "analysis": "Completed current iteration (Parsing Error)",
                "issues": issues,
                "suggestions": suggestions,
                "isComplete": iteration >= max_iterations,
            }
        analysis = str(parsed.get("analysis") or "")
        issues = str(parsed.get("issues") or "None")
        suggestions = str(parsed.get("suggestions") or "None")
        is_complete = parsed.get("isComplete") is True
    else:
        analysis = content or ""

    return {
        "analysis": analysis,
        "issues": issues,
        "suggestions": suggestions,
        "isComplete": is_complete,
    }


def account_context(state: AgentState) -> str:
    account_id = state.get("accountId")
    if not account_id:
        return (
            "\nNOTE: No AWS account is selected. If the user asks to perform AWS operations, "
            "inform them that they need to select an AWS account first."
        )
    name = state.get("accountName") or account_id
    return (
        f"\nIMPORTANT - AWS ACCOUNT CONTEXT:\n"
        f"You are operating in the context of AWS account: {name} (ID: {account_id}).\n"
        f'Before executing any AWS CLI commands, you MUST first call the get_aws_credentials tool '
        f'with account_id="{account_id}" to obtain temporary credentials.\n'
        f"Then export those credentials as environment variables before running AWS commands.\n"
        f"NEVER use the host's default credentials - always use the credentials from get_aws_credentials."
    )


def last_user_text(messages: List[Message]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return message_text(message)
    return "Unknown query"


# =============================================================================
# GRAPH BUILDER
# =============================================================================

class AgentGraphBuilder:
    """
    Builds the agent graphs around one LLM client and tool registry.

    Attributes:
        llm: LLM client used by every node
        registry: Tool registry (schemas and handlers)
        checkpointer: LangGraph checkpointer shared by compiled graphs
        metrics: Optional MetricsCollector
        max_iterations: Iteration cap per task
    """

    def __init__(
        self,
        llm: LLMClientInterface,
        registry: ToolRegistry,
        checkpointer: Optional[BaseCheckpointSaver] = None,
        metrics=None,
        max_iterations: int = MAX_ITERATIONS,
    ):
        self.llm = llm
        self.registry = registry
        self.checkpointer = checkpointer
        self.metrics = metrics
        self.max_iterations = max_iterations
        self.logger = logging.getLogger("cost_scheduler.agent.graph")

    # =========================================================================
    # GRAPH CONSTRUCTION
    # =========================================================================

    def build_reflection_graph(self, auto_approve: bool = False):
        graph = StateGraph(AgentState)

        graph.add_node("planner", self._planner_node)
        graph.add_node("generate", self._generate_node)
        graph.add_node("tools", self._tools_node)
        graph.add_node("reflect", self._reflect_node)
        graph.add_node("revise", self._revise_node)
        graph.add_node("final", self._final_node)

        graph.add_edge(START, "planner")
        graph.add_edge("planner", "generate")

        graph.add_conditional_edges(
            "generate",
            self._generate_router,
            {"tools": "tools", "reflect": "reflect", "final": "final"},
        )
        graph.add_conditional_edges(
            "tools",
            self._tools_router,
            {"generate": "generate", "reflect": "reflect"},
        )
        graph.add_conditional_edges(
            "reflect",
            self._reflect_router,
            {"revise": "revise", "final": "final"},
        )
        graph.add_conditional_edges(
            "revise",
            self._revise_router,
            {"tools": "tools", "reflect": "reflect"},
        )
        graph.add_edge("final", END)

        return self._compile(graph, auto_approve)

    def build_fast_graph(self, auto_approve: bool = False):
        graph = StateGraph(AgentState)

        graph.add_node("agent", self._fast_agent_node)
        graph.add_node("tools", self._fast_tools_node)
        graph.add_node("reflect", self._fast_reflect_node)

        graph.add_edge(START, "agent")
        graph.add_conditional_edges(
            "agent",
            self._fast_agent_router,
            {"tools": "tools", "reflect": "reflect", "end": END},
        )
        graph.add_conditional_edges(
            "reflect",
            self._fast_reflect_router,
            {"agent": "agent", "end": END},
        )
        graph.add_edge("tools", "agent")

        return self._compile(graph, auto_approve)

    def _compile(self, graph: StateGraph, auto_approve: bool):
        if auto_approve:
            self.logger.debug("Compiling graph with auto-approve (no interrupts)")
            return graph.compile(checkpointer=self.checkpointer)
        self.logger.debug("Compiling graph with interrupt before tools")
        return graph.compile(checkpointer=self.checkpointer, interrupt_before=["tools"])

    # =========================================================================
    # MODEL AND TOOL HELPERS
    # =========================================================================

    @property
    def tool_names(self) -> str:
        return ", ".join(self.registry.names)

    @property
    def tool_list(self) -> str:
        return "\n".join(
            f"- {tool['name']}: {tool['description'].splitlines()[0]}"
            for tool in self.registry.get_tools()
        )

    async def _invoke(
        self,
        node: str,
        messages: List[Message],
        with_tools: bool = True,
    ) -> LLMResponse:
        tools = self.registry.get_tools() if with_tools else None
        response = await self.llm.invoke(messages, tools=tools)

        if self.metrics is not None:
            self.metrics.record_llm_call(
                model=response.model or self.llm.get_model_name(),
                node=node,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                duration=response.latency_ms / 1000,
            )

        if response.has_tool_calls:
            for tc in response.tool_calls:
                self.logger.info(f"[{node}] tool call {tc.name} args={json.dumps(tc.arguments, default=str)}")
        else:
            self.logger.info(f"[{node}] text response ({len(response.content)} chars)")
        return response

    async def _run_tool_calls(self, message: Message):
        results = []
        for tc in message.get("tool_calls") or []:
            call = ToolCall(id=tc["id"], name=tc["name"], arguments=tc.get("arguments") or {})
            result = await self.registry.execute(call)
            if self.metrics is not None:
                self.metrics.record_tool_call(call.name, result.success)
            self.logger.info(f"[tools] {call.name}: {truncate_output(result.content, 200)}")
            results.append(result)
        return results

    # =========================================================================
    # REFLECTION GRAPH NODES
    # =========================================================================

    async def _planner_node(self, state: AgentState) -> Dict[str, Any]:
        last_message = state["messages"][-1]
        task = message_text(last_message)
        self.logger.info(f"[planner] Planning task: {truncate_output(task, 100)}")

        prompt = PLANNER_PROMPT.format(tool_list=self.tool_list)
        response = await self._invoke(
            "planner",
            [system_message(prompt), user_message(task)],
            with_tools=False,
        )

        plan = parse_plan(response.content)
        plan_text = format_plan(plan, with_status=False)
        self.logger.info(f"[planner] Plan with {len(plan)} step(s)")

        return {
            "plan": plan,
            "taskDescription": task,
            "messages": [assistant_message(f"📋 **Plan Created:**\n{plan_text}")],
            "nextAction": "generate",
        }

    async def _generate_node(self, state: AgentState) -> Dict[str, Any]:
        plan = state.get("plan") or []
        iteration = state.get("iterationCount", 0)

        pending = [s for s in plan if s["status"] in ("pending", "in_progress")]
        current_step = pending[0]["step"] if pending else "Complete the task"
        self.logger.info(f"[generate] Iteration {iteration + 1}/{self.max_iterations}: {current_step}")

        prompt = EXECUTOR_PROMPT.format(
            current_step=current_step,
            plan=format_plan(plan),
            tool_list=self.tool_list,
            account_context=account_context(state),
        )
        response = await self._invoke(
            "generate",
            [system_message(prompt)] + get_recent_messages(state["messages"], 10),
        )

        return {
            "messages": [response.to_message()],
            "iterationCount": iteration + 1,
        }

    async def _tools_node(self, state: AgentState) -> Dict[str, Any]:
        results = await self._run_tool_calls(state["messages"][-1])
        outputs = [truncate_output(result.content, TOOL_RESULT_LIMIT) for result in results]
        return {
            "messages": [result.to_message() for result in results],
            "toolResults": outputs,
            "executionOutput": "\n---\n".join(outputs),
        }

    async def _reflect_node(self, state: AgentState) -> Dict[str, Any]:
        iteration = state.get("iterationCount", 0)
        plan = state.get("plan") or []
        tool_results = state.get("toolResults") or []
        self.logger.info(f"[reflect] Analyzing iteration {iteration}/{self.max_iterations}")

        prompt = REFLECTOR_PROMPT.format(
            task=state.get("taskDescription", ""),
            plan=format_plan(plan),
            iteration=iteration,
            max_iterations=self.max_iterations,
            tool_results="\n---\n".join(tool_results[-5:]),
        )
        response = await self._invoke(
            "reflect",
            [system_message(prompt)] + get_recent_messages(state["messages"], 12),
        )

        verdict = parse_reflection(response.content, iteration, self.max_iterations)
        analysis = verdict["analysis"]
        issues = verdict["issues"]
        suggestions = verdict["suggestions"]
        is_complete = verdict["isComplete"]

        feedback = f"🔍 **Reflection Analysis:**\n{analysis}\n\n"
        if issues != "None":
            feedback += f"⚠️ **Issues Found:** {issues}\n"
        if suggestions != "None":
            feedback += f"💡 **Suggestions:** {suggestions}\n"
        feedback += f"\n**Task Complete:** {'✅ Yes' if is_complete else '❌ No, continuing...'}"

        if iteration >= self.max_iterations and not is_complete:
            self.logger.warning(f"Max iterations ({self.max_iterations}) reached, forcing completion")
            is_complete = True

        self.logger.info(f"[reflect] {'complete' if is_complete else 'continuing'}; issues: {issues}")

        return {
            "messages": [assistant_message(feedback)],
            "reflection": analysis,
            "errors": [issues] if issues != "None" else [],
            "isComplete": is_complete,
            "nextAction": "complete" if is_complete else "revise",
        }

    async def _revise_node(self, state: AgentState) -> Dict[str, Any]:
        self.logger.info("[revise] Applying feedback")
        prompt = REVISER_PROMPT.format(
            reflection=state.get("reflection", ""),
            issues=", ".join(state.get("errors") or []) or "None",
            tool_names=self.tool_names,
            account_context=account_context(state),
        )
        response = await self._invoke(
            "revise",
            [system_message(prompt)] + get_recent_messages(state["messages"], 10),
        )
        return {
            "messages": [response.to_message()],
            "nextAction": "generate",
        }

    async def _final_node(self, state: AgentState) -> Dict[str, Any]:
        task = state.get("taskDescription", "")
        iteration = state.get("iterationCount", 0)
        plan = state.get("plan") or []
        tool_results = state.get("toolResults") or []
        self.logger.info("[final] Generating summary")

        prompt = SUMMARY_PROMPT.format(
            task=task,
            iteration=iteration,
            plan_steps=", ".join(f"{s['step']} ({s['status']})" for s in plan),
            tool_results="\n\n".join(truncate_output(r, 500) for r in tool_results[-3:]),
            reflection=state.get("reflection", ""),
        )
        response = await self._invoke(
            "final",
            [system_message(prompt)] + get_recent_messages(state["messages"], 5),
        )

        final_message = (
            f"✅ **Task Complete**\n\n"
            f"**Original Task:** {task}\n\n"
            f"**Iterations Used:** {iteration}\n\n"
            f"---\n\n"
            f"{response.content}"
        )
        return {
            "messages": [assistant_message(final_message)],
            "isComplete": True,
        }

    # =========================================================================
    # REFLECTION GRAPH ROUTERS
    # =========================================================================

    def _generate_router(self, state: AgentState) -> str:
        """
        Returns:
            - "tools" if the model requested tool calls
            - "final" for a first answer without tools (skips reflection)
            - "reflect" otherwise
        """
        if has_tool_calls(state["messages"][-1]):
            return "tools"
        if state.get("iterationCount", 0) <= 1:
            return "final"
        return "reflect"

    def _tools_router(self, state: AgentState) -> str:
        if state.get("iterationCount", 0) >= self.max_iterations:
            self.logger.warning(f"Max iterations ({self.max_iterations}) reached after tools")
            return "reflect"
        return "generate"

    def _reflect_router(self, state: AgentState) -> str:
        if state.get("isComplete") or state.get("iterationCount", 0) >= self.max_iterations:
            return "final"
        return "revise"

    def _revise_router(self, state: AgentState) -> str:
        if has_tool_calls(state["messages"][-1]):
            return "tools"
        return "reflect"

    # =========================================================================
    # FAST GRAPH
    # =========================================================================

    async def _fast_agent_node(self, state: AgentState) -> Dict[str, Any]:
        iteration = state.get("iterationCount", 0)
        self.logger.info(f"[agent] Iteration {iteration + 1}/{self.max_iterations}")

        prompt = FAST_AGENT_PROMPT.format(
            tool_names=self.tool_names,
            account_context=account_context(state),
        )
        response = await self._invoke(
            "agent",
            [system_message(prompt)] + get_recent_messages(state["messages"], 20),
        )
        return {
            "messages": [response.to_message()],
            "iterationCount": iteration + 1,
        }

    async def _fast_tools_node(self, state: AgentState) -> Dict[str, Any]:
        results = await self._run_tool_calls(state["messages"][-1])
        return {"messages": [result.to_message() for result in results]}

    async def _fast_reflect_node(self, state: AgentState) -> Dict[str, Any]:
        messages = state["messages"]
        last_message = messages[-1]
        if has_tool_calls(last_message):
            return {}

        self.logger.info("[reflect] Critiquing response")
        critique_input = CRITIQUE_REQUEST.format(
            query=last_user_text(messages),
            response=message_text(last_message),
        )
        # No tools and a fresh context so the critic only produces text.
        response = await self._invoke(
            "critic",
            [system_message(CRITIC_PROMPT), user_message(critique_input)],
            with_tools=False,
        )
        content = response.content
        if not content:
            self.logger.warning("[reflect] Empty critique received")
        self.logger.info(f"[reflect] Critique: {truncate_output(content, 200)}")

        if "COMPLETE" in content:
            return {"messages": [response.to_message()], "isComplete": True}

        return {
            "messages": [user_message(f"Critique: {content}\nPlease update your answer.")],
            "isComplete": False,
        }

    def _fast_agent_router(self, state: AgentState) -> str:
        if has_tool_calls(state["messages"][-1]):
            return "tools"
        if state.get("iterationCount", 0) >= self.max_iterations:
            self.logger.warning(f"Max iterations ({self.max_iterations}) reached, stopping")
            return "end"
        return "reflect"

    def _fast_reflect_router(self, state: AgentState) -> str:
        if state.get("isComplete"):
            return "end"
        return "agent"


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_reflection_graph(
    llm: LLMClientInterface,
    registry: ToolRegistry,
    checkpointer: Optional[BaseCheckpointSaver] = None,
    auto_approve: bool = False,
    max_iterations: int = MAX_ITERATIONS,
    metrics=None,
):
    builder = AgentGraphBuilder(llm, registry, checkpointer, metrics, max_iterations)
    return builder.build_reflection_graph(auto_approve)


def create_fast_graph(
    llm: LLMClientInterface,
    registry: ToolRegistry,
    checkpointer: Optional[BaseCheckpointSaver] = None,
    auto_approve: bool = False,
    max_iterations: int = MAX_ITERATIONS,
    metrics=None,
):
    builder = AgentGraphBuilder(llm, registry, checkpointer, metrics, max_iterations)
    return builder.build_fast_graph(auto_approve)


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # State
    "AgentState",
    "MAX_ITERATIONS",
    # Builder
    "AgentGraphBuilder",
    "create_reflection_graph",
    "create_fast_graph",
    # Helpers
    "parse_plan",
    "parse_reflection",
    "format_plan",
    "account_context",
    # Exceptions
    "AgentError",
    "AgentGraphError",
]
