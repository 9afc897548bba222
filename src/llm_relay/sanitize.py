"""
Message clean-up applied right before a conversation goes upstream.

Nothing here mutates the caller's message dicts; every function returns
fresh copies.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Optional, Sequence

from llm_relay.types import Message, ToolCallContext

__all__ = [
    "optimize_text",
    "optimize_content",
    "optimize_messages",
    "filter_orphaned_tool_messages",
    "build_outbound_messages",
    "append_format_instructions",
]

log = logging.getLogger(__name__)

_TRAILING_WHITESPACE = re.compile(r"[ \t]+$", re.MULTILINE)
_EXCESS_BLANK_LINES = re.compile(r"\n\s*\n\s*\n\s*\n+")


def optimize_text(text: str) -> str:
    text = _TRAILING_WHITESPACE.sub("", text)
    text = _EXCESS_BLANK_LINES.sub("\n\n\n", text)
    return text.strip()


def optimize_content(content: Any) -> Any:
    """Optimize string content or the ``text`` parts of multi-part content."""
    if not content:
        return content
    if isinstance(content, str):
        return optimize_text(content)
    if isinstance(content, list):
        return [
            {**part, "text": optimize_text(part.get("text", ""))}
            if isinstance(part, dict) and part.get("type") == "text"
            else part
            for part in content
        ]
    return content


def optimize_messages(messages: Iterable[Message]) -> list[Message]:
    return [{**message, "content": optimize_content(message.get("content"))} for message in messages]


def filter_orphaned_tool_messages(
    messages: Iterable[Message], *, logger: Optional[logging.Logger] = None
) -> list[Message]:
    """
    Drop tool messages that upstream providers would reject.

    A tool message survives only if it has a name and answers an id from the
    most recent assistant ``tool_calls`` set before it.
    """
    logger = logger or log
    valid_ids: set[str] = set()
    filtered: list[Message] = []

    for message in messages:
        role = message.get("role")

        if role == "assistant" and "tool_calls" in message:
            calls = [dict(call) for call in message.get("tool_calls") or [] if call.get("id")]
            valid_ids = {call["id"] for call in calls}
            cleaned = dict(message)
            if calls:
                cleaned["tool_calls"] = calls
            else:
                cleaned.pop("tool_calls")
                if cleaned.get("content") is None:
                    cleaned["content"] = ""
            filtered.append(cleaned)
            continue

        if role == "tool":
            if not (message.get("name") or "").strip():
                logger.warning(
                    "Dropping tool message with empty name: %s", message.get("tool_call_id")
                )
                continue
            if message.get("tool_call_id") not in valid_ids:
                logger.warning(
                    "Dropping orphaned tool message: %s %s",
                    message.get("name"),
                    message.get("tool_call_id"),
                )
                continue

        filtered.append(dict(message))

    return filtered


def build_outbound_messages(
    messages: Sequence[Message],
    context: Optional[ToolCallContext] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> list[Message]:
    """The exact message list to transmit for one round."""
    outbound = optimize_messages(messages)
    if context is not None and context.messages:
        outbound.extend(filter_orphaned_tool_messages(context.messages, logger=logger))
    return outbound


def append_format_instructions(messages: list[Message], instructions: str) -> list[Message]:
    """Append output-format instructions to the last message."""
    if not messages or not instructions:
        return messages

    last = messages[-1]
    content = last.get("content")
    if isinstance(content, str):
        updated = f"{content}\n\n{instructions}"
    elif isinstance(content, list):
        updated = [
            {**part, "text": f"{part.get('text', '')}\n\n{instructions}"}
            if isinstance(part, dict) and part.get("type") == "text"
            else part
            for part in content
        ]
    else:
        updated = instructions
    return [*messages[:-1], {**last, "content": updated}]
