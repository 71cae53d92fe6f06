# =============================================================================
# COST OPTIMIZATION SCHEDULER - AGENT MESSAGE HELPERS
# =============================================================================
"""
Message Helpers

Context-window selection for the agent's model calls and the reducers used
by the graph state channels.

Messages are provider-neutral dicts (see ``cost_scheduler.agent.llm``).
"""

import json
from typing import Any, Dict, List, Optional

Message = Dict[str, Any]


# =============================================================================
# TEXT HELPERS
# =============================================================================

def truncate_output(text: Optional[str], max_length: int = 500) -> str:
    if not text:
        return ""
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def message_text(message: Optional[Message]) -> str:
    """Content of a message as plain text."""
    if not message:
        return ""
    content = message.get("content")
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text") or json.dumps(part) if isinstance(part, dict) else str(part)
            for part in content
        )
    return json.dumps(content, default=str)


def has_tool_calls(message: Optional[Message]) -> bool:
    return bool(message and message.get("role") == "assistant" and message.get("tool_calls"))


def user_message(content: str) -> Message:
    return {"role": "user", "content": content}


def assistant_message(content: str) -> Message:
    return {"role": "assistant", "content": content}


def system_message(content: str) -> Message:
    return {"role": "system", "content": content}


# =============================================================================
# CONTEXT WINDOW
# =============================================================================

def _is_valid(message: Message) -> bool:
    if has_tool_calls(message):
        return True
    return bool(message_text(message).strip())


def get_recent_messages(messages: List[Message], max_messages: int = 8) -> List[Message]:
    """
    Select a window of recent messages that models accept.

    Empty messages are dropped (assistant messages carrying tool calls are
    kept). Long histories are cut from the tail, keeping every tool-result
    batch together with the assistant message that requested it; the first
    message (the task) is always kept. The result alternates user and
    assistant turns.
    """
    valid = [m for m in messages if _is_valid(m)]
    if not valid:
        return []

    first = valid[0]

    if len(valid) <= max_messages:
        window = list(valid)
    else:
        window: List[Message] = []
        i = len(valid) - 1
        while i >= 0 and len(window) < max_messages * 2:
            msg = valid[i]
            if msg["role"] != "tool":
                window.insert(0, msg)
                i -= 1
                continue

            j = i - 1
            while j >= 0 and valid[j]["role"] == "tool":
                j -= 1
            if j >= 0 and has_tool_calls(valid[j]):
                window[:0] = valid[j:i + 1]
                i = j - 1
            else:
                # orphan tool results
                i = j

    if window and window[0] is not first:
        while window and window[0]["role"] == "tool":
            window.pop(0)
        if not window or window[0] is not first:
            window.insert(0, first)
    elif not window:
        window.append(first)

    formatted = [window[0]]
    for current in window[1:]:
        previous = formatted[-1]
        if previous["role"] == "assistant" and current["role"] == "assistant":
            formatted.append(user_message("Proceed."))
        elif previous["role"] == "user" and current["role"] == "user":
            formatted.append(assistant_message("Acknowledged."))
        formatted.append(current)

    if formatted[0]["role"] == "assistant":
        formatted.insert(0, user_message("Start session."))

    return formatted


# =============================================================================
# STATE REDUCERS
# =============================================================================

def add_messages(current: Optional[List[Any]], update: Optional[List[Any]]) -> List[Any]:
    return list(current or []) + list(update or [])


def last_non_empty(current: Any, update: Any) -> Any:
    return update or current


def replace_if_non_empty(current: Optional[List[Any]], update: Optional[List[Any]]) -> List[Any]:
    return update if update else (current or [])


def append_output(current: Optional[str], update: Optional[str]) -> str:
    if not update:
        return current or ""
    return f"{current or ''}\n{update}"


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "Message",
    "truncate_output",
    "message_text",
    "has_tool_calls",
    "user_message",
    "assistant_message",
    "system_message",
    "get_recent_messages",
    "add_messages",
    "last_non_empty",
    "replace_if_non_empty",
    "append_output",
]
