# =============================================================================
# COST OPTIMIZATION SCHEDULER - LLM SETUP
# =============================================================================
"""
LLM Setup Module

This module configures the language model clients used by the DevOps agent.
It provides:
- LLM client initialization (Bedrock, Anthropic, OpenAI, Ollama)
- Conversion between provider-neutral message dicts and provider formats
- Tool registry with schemas and handlers
- Per-client request metrics

Messages flowing through the agent are plain dictionaries::

    {"role": "system" | "user" | "assistant" | "tool",
     "content": str,
     "tool_calls": [{"id": str, "name": str, "arguments": dict}],  # assistant
     "tool_call_id": str, "name": str}                              # tool

Supported LLM Providers:
    - bedrock (Claude models on Amazon Bedrock, default)
    - anthropic (Anthropic API)
    - openai (OpenAI or any compatible endpoint)
    - ollama (local models)
"""

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import anthropic
import openai


# =============================================================================
# ENUMS AND DATA STRUCTURES
# =============================================================================

class LLMProvider(Enum):
    """Supported LLM providers."""
    BEDROCK = "bedrock"
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OLLAMA = "ollama"


DEFAULT_MODELS = {
    "bedrock": "anthropic.claude-3-5-sonnet-20240620-v1:0",
    "anthropic": "claude-3-5-sonnet-20240620",
    "openai": "gpt-4o",
    "ollama": "llama3.1",
}


@dataclass
class LLMConfig:
    """Configuration for LLM client."""
    provider: str = "bedrock"
    model: str = DEFAULT_MODELS["bedrock"]
    temperature: float = 0.0
    max_tokens: int = 4096
    timeout: int = 120
    max_retries: int = 3

    # Provider-specific settings
    api_base: Optional[str] = None
    region: Optional[str] = None

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'LLMConfig':
        """Create config from the ``llm`` section of the application config."""
        llm_config = config.get("llm", {})
        provider = llm_config.get("provider", "bedrock")
        return cls(
            provider=provider,
            model=llm_config.get("model") or DEFAULT_MODELS.get(provider, DEFAULT_MODELS["bedrock"]),
            temperature=llm_config.get("temperature", 0.0),
            max_tokens=llm_config.get("max_tokens", 4096),
            timeout=llm_config.get("timeout", 120),
            max_retries=llm_config.get("max_retries", 3),
            api_base=llm_config.get("api_base"),
            region=llm_config.get("region"),
        )


@dataclass
class ToolCall:
    """Represents a tool call from the LLM."""
    id: str
    name: str
    arguments: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ToolResult:
    """Result of a tool execution."""
    tool_call_id: str
    name: str
    output: Any
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def content(self) -> str:
        """Text handed back to the model."""
        if self.error is not None:
            return f"Error: {self.error}"
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output, default=str)

    def to_message(self) -> Dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "content": self.content,
        }


@dataclass
class LLMResponse:
    """Response from LLM invocation."""
    content: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    def to_message(self) -> Dict[str, Any]:
        """Assistant message dict for the conversation history."""
        message: Dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return message


@dataclass
class LLMMetrics:
    """Collected metrics from LLM operations."""
    total_requests: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_latency_ms: float = 0.0
    errors: int = 0

    def record(self, response: LLMResponse):
        """Record metrics from a response."""
        self.total_requests += 1
        self.total_input_tokens += response.input_tokens
        self.total_output_tokens += response.output_tokens
        self.total_latency_ms += response.latency_ms

    def record_error(self):
        self.errors += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_latency_ms": self.total_latency_ms,
            "avg_latency_ms": self.total_latency_ms / max(self.total_requests, 1),
            "errors": self.errors,
        }


# =============================================================================
# EXCEPTIONS
# =============================================================================

class LLMError(Exception):
    """Base exception for LLM errors."""
    pass


class LLMProviderError(LLMError):
    """Error returned by or while reaching an LLM provider."""
    pass


class ToolExecutionError(LLMError):
    """Error during tool registration or execution."""
    pass


class ConfigurationError(LLMError):
    """Error in LLM configuration."""
    pass


# =============================================================================
# LLM CLIENT INTERFACE
# =============================================================================

class LLMClientInterface(ABC):
    """Abstract interface for LLM clients."""

    config: LLMConfig

    @abstractmethod
    async def invoke(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> LLMResponse:
        """Invoke the LLM with messages and optional tools."""
        pass

    def get_model_name(self) -> str:
        return self.config.model

    async def close(self):
        """Release network resources held by the client."""
        pass


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"input": raw}


# =============================================================================
# ANTHROPIC CLIENT (Anthropic API and Bedrock)
# =============================================================================

class AnthropicClient(LLMClientInterface):
    """
    Client for Claude models.

    With ``provider == "bedrock"`` requests go through Amazon Bedrock using
    the ambient AWS credentials; otherwise the Anthropic API is used and
    ``ANTHROPIC_API_KEY`` must be set.
    """

    def __init__(self, config: LLMConfig, client=None):
        self.config = config
        self.logger = logging.getLogger(f"cost_scheduler.llm.{config.provider}")
        self._client = client

    def _get_client(self):
        if self._client is None:
            if self.config.provider == LLMProvider.BEDROCK.value:
                region = (
                    self.config.region
                    or os.environ.get("AWS_REGION")
                    or os.environ.get("AWS_DEFAULT_REGION")
                    or "us-east-1"
                )
                self._client = anthropic.AsyncAnthropicBedrock(
                    aws_region=region,
                    timeout=self.config.timeout,
                    max_retries=self.config.max_retries,
                )
            else:
                api_key = os.environ.get("ANTHROPIC_API_KEY")
                if not api_key:
                    raise ConfigurationError("ANTHROPIC_API_KEY not set")
                self._client = anthropic.AsyncAnthropic(
                    api_key=api_key,
                    timeout=self.config.timeout,
                    max_retries=self.config.max_retries,
                )
        return self._client

    def _convert_tools(self, tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Convert tools to Anthropic format."""
        return [
            {
                "name": tool["name"],
                "description": tool["description"],
                "input_schema": tool["parameters"],
            }
            for tool in tools
        ]

    @staticmethod
    def _convert_messages(messages: List[Dict[str, Any]]):
        """
        Split out the system prompt and convert the rest to content blocks.

        Tool results become ``tool_result`` blocks in a user turn, and
        consecutive turns of the same role are merged since the API
        requires alternating roles.
        """
        system_parts: List[str] = []
        converted: List[Dict[str, Any]] = []

        for msg in messages:
            role = msg["role"]
            if role == "system":
                system_parts.append(msg.get("content") or "")
                continue

            if role == "tool":
                api_role = "user"
                blocks = [{
                    "type": "tool_result",
                    "tool_use_id": msg["tool_call_id"],
                    "content": msg.get("content") or "",
                }]
            elif role == "assistant":
                api_role = "assistant"
                blocks = []
                if msg.get("content"):
                    blocks.append({"type": "text", "text": msg["content"]})
                for tc in msg.get("tool_calls") or []:
                    blocks.append({
                        "type": "tool_use",
                        "id": tc["id"],
                        "name": tc["name"],
                        "input": tc.get("arguments") or {},
                    })
            else:
                api_role = "user"
                blocks = [{"type": "text", "text": msg.get("content") or ""}]

            if not blocks:
                continue
            if converted and converted[-1]["role"] == api_role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": api_role, "content": blocks})

        system = "\n\n".join(p for p in system_parts if p) or None
        return system, converted

    async def invoke(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> LLMResponse:
        """Invoke Claude with messages."""
        client = self._get_client()
        start_time = time.time()

        system_message, api_messages = self._convert_messages(messages)

        request_kwargs = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": api_messages,
        }
        if system_message:
            request_kwargs["system"] = system_message
        if tools:
            request_kwargs["tools"] = self._convert_tools(tools)

        try:
            response = await client.messages.create(**request_kwargs)
        except anthropic.APIError as e:
            self.logger.error(f"{self.config.provider} API error: {e}")
            raise LLMProviderError(f"{self.config.provider} API error: {e}") from e

        latency = (time.time() - start_time) * 1000

        texts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=block.input))

        return LLMResponse(
            content="\n".join(texts),
            tool_calls=tool_calls,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=response.model,
            latency_ms=latency,
        )

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None


# =============================================================================
# OPENAI CLIENT
# =============================================================================

class OpenAIClient(LLMClientInterface):
    """Client for OpenAI GPT models (or an OpenAI-compatible endpoint)."""

    def __init__(self, config: LLMConfig, client=None):
        self.config = config
        self.logger = logging.getLogger("cost_scheduler.llm.openai")
        self._client = client

    def _get_client(self):
        if self._client is None:
            api_key = os.environ.get("OPENAI_API_KEY")
            if not api_key:
                raise ConfigurationError("OPENAI_API_KEY not set")

            kwargs = {
                "api_key": api_key,
                "timeout": self.config.timeout,
                "max_retries": self.config.max_retries,
            }
            if self.config.api_base:
                kwargs["base_url"] = self.config.api_base

            self._client = openai.AsyncOpenAI(**kwargs)
        return self._client

    def _convert_tools(self, tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Convert tools to OpenAI function format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["parameters"],
                },
            }
            for tool in tools
        ]

    @staticmethod
    def _convert_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        converted = []
        for msg in messages:
            role = msg["role"]
            if role == "tool":
                converted.append({
                    "role": "tool",
                    "tool_call_id": msg["tool_call_id"],
                    "content": msg.get("content") or "",
                })
            elif role == "assistant" and msg.get("tool_calls"):
                converted.append({
                    "role": "assistant",
                    "content": msg.get("content") or None,
                    "tool_calls": [
                        {
                            "id": tc["id"],
                            "type": "function",
                            "function": {
                                "name": tc["name"],
                                "arguments": json.dumps(tc.get("arguments") or {}),
                            },
                        }
                        for tc in msg["tool_calls"]
                    ],
                })
            else:
                converted.append({"role": role, "content": msg.get("content") or ""})
        return converted

    async def invoke(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> LLMResponse:
        """Invoke OpenAI with messages."""
        client = self._get_client()
        start_time = time.time()

        request_kwargs = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": self._convert_messages(messages),
        }
        if tools:
            request_kwargs["tools"] = self._convert_tools(tools)

        try:
            response = await client.chat.completions.create(**request_kwargs)
        except openai.OpenAIError as e:
            self.logger.error(f"OpenAI API error: {e}")
            raise LLMProviderError(f"OpenAI API error: {e}") from e

        latency = (time.time() - start_time) * 1000

        message = response.choices[0].message
        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=_parse_arguments(tc.function.arguments),
            )
            for tc in message.tool_calls or []
        ]

        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            input_tokens=response.usage.prompt_tokens if response.usage else 0,
            output_tokens=response.usage.completion_tokens if response.usage else 0,
            model=response.model,
            latency_ms=latency,
        )

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None


# =============================================================================
# OLLAMA CLIENT
# =============================================================================

class OllamaClient(LLMClientInterface):
    """Client for local Ollama models."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self.logger = logging.getLogger("cost_scheduler.llm.ollama")
        self.base_url = config.api_base or os.environ.get("OLLAMA_HOST", "http://localhost:11434")
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout)
            )
        return self._session

    def _convert_tools(self, tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["parameters"],
                },
            }
            for tool in tools
        ]

    @staticmethod
    def _convert_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        converted = []
        for msg in messages:
            entry = {"role": msg["role"], "content": msg.get("content") or ""}
            if msg.get("tool_calls"):
                entry["tool_calls"] = [
                    {"function": {"name": tc["name"], "arguments": tc.get("arguments") or {}}}
                    for tc in msg["tool_calls"]
                ]
            converted.append(entry)
        return converted

    async def invoke(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> LLMResponse:
        """Invoke Ollama with messages."""
        session = await self._get_session()
        start_time = time.time()

        request_data = {
            "model": self.config.model,
            "messages": self._convert_messages(messages),
            "stream": False,
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_tokens,
            },
        }
        if tools:
            request_data["tools"] = self._convert_tools(tools)

        try:
            async with session.post(f"{self.base_url}/api/chat", json=request_data) as response:
                if response.status != 200:
                    text = await response.text()
                    raise LLMProviderError(f"Ollama error {response.status}: {text}")
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Ollama API error: {e}")
            raise LLMProviderError(f"Ollama API error: {e}") from e

        latency = (time.time() - start_time) * 1000

        message = data.get("message", {})
        tool_calls = []
        for tc in message.get("tool_calls") or []:
            func = tc.get("function", {})
            tool_calls.append(ToolCall(
                id=tc.get("id", f"call_{len(tool_calls)}"),
                name=func.get("name", ""),
                arguments=_parse_arguments(func.get("arguments")),
            ))

        return LLMResponse(
            content=message.get("content", ""),
            tool_calls=tool_calls,
            input_tokens=data.get("prompt_eval_count", 0),
            output_tokens=data.get("eval_count", 0),
            model=self.config.model,
            latency_ms=latency,
        )

    async def close(self):
        if self._session:
            await self._session.close()
            self._session = None


# =============================================================================
# TOOL REGISTRY
# =============================================================================

class ToolRegistry:
    """Registry of agent tools: JSON schemas plus handler callables."""

    def __init__(self):
        self.tools: Dict[str, Dict[str, Any]] = {}
        self.handlers: Dict[str, Callable] = {}
        self.logger = logging.getLogger("cost_scheduler.agent.tools")

    def register(
        self,
        name: str,
        description: str,
        parameters: Dict[str, Any],
        handler: Callable,
    ):
        """Register a tool schema together with its handler."""
        self.tools[name] = {"name": name, "description": description, "parameters": parameters}
        self.handlers[name] = handler
        self.logger.debug(f"Registered tool: {name}")

    def get_tool(self, name: str) -> Optional[Dict[str, Any]]:
        return self.tools.get(name)

    def get_tools(self, names: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Get tool schemas, optionally filtered by names."""
        if names is None:
            return list(self.tools.values())
        return [self.tools[name] for name in names if name in self.tools]

    @property
    def names(self) -> List[str]:
        return list(self.tools)

    async def execute(self, tool_call: ToolCall) -> ToolResult:
        """
        Execute a tool call.

        Synchronous handlers run in a worker thread. Handler exceptions are
        returned to the model as an error result rather than raised.
        """
        handler = self.handlers.get(tool_call.name)

        if handler is None:
            return ToolResult(
                tool_call_id=tool_call.id,
                name=tool_call.name,
                output=None,
                error=f"No handler registered for tool: {tool_call.name}",
            )

        try:
            if asyncio.iscoroutinefunction(handler):
                result = await handler(**tool_call.arguments)
            else:
                result = await asyncio.to_thread(handler, **tool_call.arguments)
        except Exception as e:
            self.logger.error(f"Tool execution error ({tool_call.name}): {e}")
            return ToolResult(
                tool_call_id=tool_call.id,
                name=tool_call.name,
                output=None,
                error=str(e),
            )

        return ToolResult(tool_call_id=tool_call.id, name=tool_call.name, output=result)


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def create_llm_client(config: Dict[str, Any]) -> LLMClientInterface:
    """
    Create the LLM client selected by ``config["llm"]["provider"]``.

    Raises:
        ConfigurationError: If the provider is unknown
    """
    llm_config = LLMConfig.from_dict(config)

    if llm_config.provider in (LLMProvider.BEDROCK.value, LLMProvider.ANTHROPIC.value):
        return AnthropicClient(llm_config)
    if llm_config.provider == LLMProvider.OPENAI.value:
        return OpenAIClient(llm_config)
    if llm_config.provider == LLMProvider.OLLAMA.value:
        return OllamaClient(llm_config)

    raise ConfigurationError(f"Unknown LLM provider: {llm_config.provider}")


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Configuration
    "LLMProvider",
    "LLMConfig",
    "DEFAULT_MODELS",
    # Data structures
    "ToolCall",
    "ToolResult",
    "LLMResponse",
    "LLMMetrics",
    # Clients
    "LLMClientInterface",
    "AnthropicClient",
    "OpenAIClient",
    "OllamaClient",
    "create_llm_client",
    # Tools
    "ToolRegistry",
    # Exceptions
    "LLMError",
    "LLMProviderError",
    "ToolExecutionError",
    "ConfigurationError",
]
