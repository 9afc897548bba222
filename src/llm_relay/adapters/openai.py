"""OpenAI-compatible adapter for pure request/response transformations."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Sequence

from openai.types.chat import ChatCompletion

from llm_relay.response import ModelTurn
from llm_relay.types import Message, ToolCallRequest, ToolCallResult

log = logging.getLogger(__name__)


def assistant_message(content: str, tool_calls: Sequence[ToolCallRequest]) -> Message:
    """Assistant message carrying the tool calls it issued."""
    message: Message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = [call.to_message_dict() for call in tool_calls]
    return message


def tool_result_message(result: ToolCallResult) -> Message:
    """Convert a ToolCallResult to an OpenAI ``tool`` message."""
    if result.is_error:
        content = json.dumps({"error": result.error})
    elif result.result is None:
        content = "done"
    else:
        content = json.dumps(result.result, default=str)
    return {
        "role": "tool",
        "content": content,
        "name": result.name,
        "tool_call_id": result.id,
    }


class OpenAIRequestAdapter:
    """Adapter for converting between the internal format and OpenAI format."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or log

    def build_messages(self, messages: Sequence[Message]) -> list[dict[str, Any]]:
        openai_messages: list[dict[str, Any]] = []
        for msg in messages:
            openai_msg: dict[str, Any] = {"role": msg["role"]}

            if msg.get("content") is not None:
                openai_msg["content"] = msg["content"]

            # Handle tool calls (for assistant messages with function calls)
            if msg.get("tool_calls"):
                openai_msg["tool_calls"] = msg["tool_calls"]
                if not openai_msg.get("content"):
                    # content must be null when tool_calls is present
                    openai_msg["content"] = None

            # Handle tool call ID (for tool response messages)
            if msg.get("tool_call_id"):
                openai_msg["tool_call_id"] = msg["tool_call_id"]

            if msg.get("name"):
                openai_msg["name"] = msg["name"]

            # Ensure content is set for messages that require it
            if "content" not in openai_msg:
                openai_msg["content"] = ""

            openai_messages.append(openai_msg)
        return openai_messages

    def to_provider(
        self, messages: Sequence[Message], params: dict[str, Any]
    ) -> dict[str, Any]:
        """Convert messages and normalized params to ``chat.completions.create`` kwargs."""
        base_params = dict(params)
        extras = base_params.pop("extra", {})

        request = {"messages": self.build_messages(messages), **base_params}
        if extras:
            request["extra_body"] = {**request.get("extra_body", {}), **extras}
        return request

    def from_provider(self, raw: ChatCompletion) -> ModelTurn:
        """Convert a non-streamed completion to a ModelTurn."""
        if not raw.choices or not raw.choices[0].message:
            return ModelTurn(content="", raw=raw)

        message = raw.choices[0].message
        tool_calls: list[ToolCallRequest] = []
        dropped = 0
        for tc in message.tool_calls or []:
            function = getattr(tc, "function", None)
            name = getattr(function, "name", None) or ""
            if not name.strip():
                dropped += 1
                continue
            raw_args = function.arguments
            if isinstance(raw_args, dict):
                raw_args = json.dumps(raw_args)
            tool_calls.append(ToolCallRequest(id=tc.id, name=name, arguments=raw_args or ""))

        if dropped:
            self.logger.warning("Dropping %d tool call(s) without function name", dropped)

        usage = getattr(raw, "usage", None)
        if usage is not None:
            self.logger.debug("Total tokens used: %s", usage.total_tokens)

        return ModelTurn(content=message.content or "", tool_calls=tool_calls, raw=raw)
