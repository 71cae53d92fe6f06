"""
Tests for LLM clients (message conversion, response parsing) and the tool registry.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from cost_scheduler.agent.llm import (
    AnthropicClient,
    ConfigurationError,
    LLMConfig,
    LLMResponse,
    OllamaClient,
    OpenAIClient,
    ToolCall,
    ToolRegistry,
    create_llm_client,
)

CONVERSATION = [
    {"role": "system", "content": "You are a DevOps agent."},
    {"role": "user", "content": "List my buckets"},
    {
        "role": "assistant",
        "content": "Checking.",
        "tool_calls": [{"id": "call_1", "name": "execute_command", "arguments": {"command": "aws s3 ls"}}],
    },
    {"role": "tool", "tool_call_id": "call_1", "name": "execute_command", "content": "bucket-a"},
    {"role": "user", "content": "Thanks"},
]


class TestConfig:
    def test_defaults_follow_provider(self):
        config = LLMConfig.from_dict({"llm": {"provider": "openai"}})
        assert config.model == "gpt-4o"
        assert LLMConfig.from_dict({}).provider == "bedrock"

    def test_factory(self):
        assert isinstance(create_llm_client({"llm": {"provider": "bedrock"}}), AnthropicClient)
        assert isinstance(create_llm_client({"llm": {"provider": "openai"}}), OpenAIClient)
        assert isinstance(create_llm_client({"llm": {"provider": "ollama"}}), OllamaClient)
        with pytest.raises(ConfigurationError):
            create_llm_client({"llm": {"provider": "palm"}})

    def test_anthropic_key_required(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        client = AnthropicClient(LLMConfig(provider="anthropic"))
        with pytest.raises(ConfigurationError):
            client._get_client()


class TestAnthropic:
    def test_convert_messages(self):
        system, messages = AnthropicClient._convert_messages(CONVERSATION)

        assert system == "You are a DevOps agent."
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"][1] == {
            "type": "tool_use", "id": "call_1", "name": "execute_command", "input": {"command": "aws s3 ls"},
        }
        # tool result and the following user text share one user turn
        assert messages[2]["content"][0]["type"] == "tool_result"
        assert messages[2]["content"][1] == {"type": "text", "text": "Thanks"}

    async def test_invoke(self):
        api = MagicMock()
        api.messages.create = AsyncMock(return_value=SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="Let me look."),
                SimpleNamespace(type="tool_use", id="toolu_1", name="list_files", input={"path": "."}),
            ],
            usage=SimpleNamespace(input_tokens=120, output_tokens=30),
            model="claude",
        ))
        client = AnthropicClient(LLMConfig(provider="bedrock", model="claude"), client=api)
        tools = [{"name": "list_files", "description": "List", "parameters": {"type": "object"}}]

        response = await client.invoke(CONVERSATION, tools=tools)

        kwargs = api.messages.create.call_args.kwargs
        assert kwargs["system"] == "You are a DevOps agent."
        assert kwargs["tools"][0]["input_schema"] == {"type": "object"}
        assert response.content == "Let me look."
        assert response.tool_calls == [ToolCall("toolu_1", "list_files", {"path": "."})]
        assert response.input_tokens == 120


class TestOpenAI:
    def test_convert_messages(self):
        messages = OpenAIClient._convert_messages(CONVERSATION)

        assert messages[0] == {"role": "system", "content": "You are a DevOps agent."}
        call = messages[2]["tool_calls"][0]
        assert call["function"]["arguments"] == '{"command": "aws s3 ls"}'
        assert messages[3] == {"role": "tool", "tool_call_id": "call_1", "content": "bucket-a"}

    async def test_invoke_parses_tool_arguments(self):
        api = MagicMock()
        api.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(
                content=None,
                tool_calls=[SimpleNamespace(
                    id="call_9",
                    function=SimpleNamespace(name="read_file", arguments='{"path": "main.tf"}'),
                )],
            ))],
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5),
            model="gpt-4o",
        ))
        client = OpenAIClient(LLMConfig(provider="openai", model="gpt-4o"), client=api)

        response = await client.invoke([{"role": "user", "content": "hi"}])

        assert response.content == ""
        assert response.tool_calls[0].arguments == {"path": "main.tf"}
        assert response.output_tokens == 5


def test_response_to_message():
    response = LLMResponse(content="ok", tool_calls=[ToolCall("c1", "read_file", {"path": "a"})])
    assert response.to_message() == {
        "role": "assistant",
        "content": "ok",
        "tool_calls": [{"id": "c1", "name": "read_file", "arguments": {"path": "a"}}],
    }
    assert "tool_calls" not in LLMResponse(content="done").to_message()


class TestToolRegistry:
    @pytest.fixture
    def registry(self):
        registry = ToolRegistry()
        registry.register("echo", "Echo", {"type": "object"}, lambda text: {"echo": text})

        async def fail(**kwargs):
            raise RuntimeError("broken")

        registry.register("fail", "Always fails", {"type": "object"}, fail)
        return registry

    async def test_sync_handler(self, registry):
        result = await registry.execute(ToolCall("c1", "echo", {"text": "hi"}))
        assert result.success
        assert result.content == '{"echo": "hi"}'
        assert result.to_message()["tool_call_id"] == "c1"

    async def test_handler_error_is_returned(self, registry):
        result = await registry.execute(ToolCall("c2", "fail", {}))
        assert not result.success
        assert result.content == "Error: broken"

    async def test_unknown_tool(self, registry):
        result = await registry.execute(ToolCall("c3", "nope", {}))
        assert "No handler registered" in result.error

    def test_schemas(self, registry):
        assert registry.names == ["echo", "fail"]
        assert [t["name"] for t in registry.get_tools(["fail", "missing"])] == ["fail"]
