"""
Tool Converter - OpenAI function calling format conversion.

This module converts the loop's domain types to the chat-completions wire
format understood by litellm (OpenAI-compatible):
- ToolDefinition → function tool definitions
- Message transcript → role/content messages with ``tool_calls`` and
  ``tool`` responses paired by id
- Oversized tool outputs are truncated on the way out; the stored
  transcript keeps the full text
"""

import json
from collections.abc import Iterable
from typing import Any

from toolrelay.core.domain.models import (
    MediaContent,
    Message,
    TextContent,
    ToolDefinition,
    ToolResultContent,
    ToolUseContent,
)


def tools_to_openai_format(tools: Iterable[ToolDefinition]) -> list[dict[str, Any]]:
    """
    Convert tool definitions to OpenAI function calling format.

    Args:
        tools: Resolved tool definitions (approval markers already applied)

    Returns:
        List of tool definitions in OpenAI format:
        [
            {
                "type": "function",
                "function": {
                    "name": "tool_name",
                    "description": "Tool description",
                    "parameters": { JSON Schema }
                }
            },
            ...
        ]
    """
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.input_schema,
            },
        }
        for tool in tools
    ]


def messages_to_openai_format(
    system_prompt: str,
    messages: Iterable[Message],
    max_output_chars: int = 20000,
) -> list[dict[str, Any]]:
    """
    Convert the transcript to chat-completions messages.

    Consecutive tool_use messages are merged into a single assistant message
    with ``tool_calls``, as the API expects all calls of one turn together.

    Args:
        system_prompt: Prompt placed in the leading system message
        messages: Conversation transcript
        max_output_chars: Max characters per large field of a tool result

    Returns:
        List of message dicts starting with the system message
    """
    converted: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    pending_calls: list[dict[str, Any]] = []

    def flush_calls() -> None:
        if pending_calls:
            converted.append(assistant_tool_calls_to_message(list(pending_calls)))
            pending_calls.clear()

    for message in messages:
        content = message.content
        if isinstance(content, ToolUseContent):
            pending_calls.append(
                {
                    "id": content.id,
                    "type": "function",
                    "function": {
                        "name": content.name,
                        "arguments": json.dumps(content.input, ensure_ascii=False),
                    },
                }
            )
            continue

        flush_calls()
        if isinstance(content, ToolResultContent):
            converted.append(tool_result_to_message(content, max_output_chars))
        elif isinstance(content, TextContent):
            converted.append({"role": message.role.value, "content": content.text})
        elif isinstance(content, MediaContent):
            converted.append({"role": message.role.value, "content": _media_parts(content)})

    flush_calls()
    return converted


def tool_result_to_message(
    result: ToolResultContent,
    max_output_chars: int = 20000,
) -> dict[str, Any]:
    """
    Convert a tool result to an OpenAI tool message.

    IMPORTANT: Large outputs are automatically truncated to prevent token
    overflow errors. The default limit is 20,000 chars (~5,000 tokens).

    Returns:
        {"role": "tool", "tool_call_id": "...", "content": "..."}
    """
    try:
        parsed = json.loads(result.content)
    except json.JSONDecodeError:
        parsed = None

    if isinstance(parsed, dict):
        content = json.dumps(
            _truncate_tool_result(parsed, max_output_chars), ensure_ascii=False, default=str
        )
    else:
        content = _truncate_text(result.content, max_output_chars)

    return {
        "role": "tool",
        "tool_call_id": result.tool_use_id,
        "content": content,
    }


def assistant_tool_calls_to_message(
    tool_calls: list[dict[str, Any]],
) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": None,
        "tool_calls": tool_calls,
    }


def _truncate_text(value: str, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    overflow = len(value) - max_chars
    return value[:max_chars] + f"\n\n[... TRUNCATED - {overflow} more chars ...]"


def _truncate_tool_result(
    result: dict[str, Any],
    max_chars: int,
) -> dict[str, Any]:
    """
    Truncate large fields in tool result to prevent token overflow.

    Specifically handles:
    - output: Main output string (most common large field)
    - result/data/content: Structured or raw payloads
    - stdout/stderr: Command outputs

    Args:
        result: Original tool result dictionary
        max_chars: Maximum characters per large field

    Returns:
        Result dictionary with truncated fields
    """
    truncated = result.copy()

    large_fields = ["output", "result", "content", "stdout", "stderr", "data", "response"]

    for field in large_fields:
        if field not in truncated:
            continue
        value = truncated[field]
        if isinstance(value, str):
            truncated[field] = _truncate_text(value, max_chars)
        elif isinstance(value, (list, dict)):
            value_str = json.dumps(value, ensure_ascii=False, default=str)
            if len(value_str) > max_chars:
                truncated[field] = _truncate_text(value_str, max_chars)

    return truncated


def _media_parts(media: MediaContent) -> list[dict[str, Any]]:
    if not media.content_type.startswith("image/"):
        return [{"type": "text", "text": f"[Attached {media.content_type} content omitted]"}]
    if media.content.startswith(("http://", "https://", "data:")):
        url = media.content
    else:
        url = f"data:{media.content_type};base64,{media.content}"
    return [{"type": "image_url", "image_url": {"url": url}}]
