"""Gemini adapter for the native ``generateContent`` API.

The native endpoint has no tool calling, so the conversation is flattened
into a single prompt and the model answers with a JSON envelope::

    {"thought": "...", "action": {"tool": "name", "args": {...}}, "final": ...}

An ``action`` is the in-band equivalent of one tool call.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from pydantic import BaseModel

from llm_relay.structured import SchemaFormat, format_instructions
from llm_relay.types import Message, ToolCallRequest

log = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an autonomous agent. You MUST output valid JSON only."

DEFAULT_TEMPERATURE = 0.2
DEFAULT_MAX_OUTPUT_TOKENS = 8192


@dataclass(slots=True)
class Envelope:
    thought: Optional[str] = None
    action: Optional[ToolCallRequest] = None
    final: Any = None
    has_final: bool = False


def native_tool_call_id() -> str:
    return f"native_{time.time_ns() // 1_000_000}_{uuid.uuid4().hex[:8]}"


def _content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return json.dumps(content, default=str)


class GeminiRequestAdapter:
    """Builds ``generateContent`` bodies and reads the envelope back."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or log

    def tool_instructions(self, tools: Sequence[Any]) -> str:
        if not tools:
            return ""
        lines = [
            "You can use these tools. To call one, respond with "
            '{"thought": "...", "action": {"tool": "<name>", "args": {...}}}.',
            "When you are finished, respond with "
            '{"thought": "...", "final": <your answer>}.',
            "",
            "Tools:",
        ]
        for tool in tools:
            schema = json.dumps(tool.json_schema())
            description = f": {tool.description}" if tool.description else ""
            lines.append(f"- {tool.name}{description} Arguments schema: {schema}")
        return "\n".join(lines)

    def build_prompt(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[Any] = (),
        schema: Optional[type[BaseModel]] = None,
        schema_format: SchemaFormat = "json",
    ) -> str:
        sections = [SYSTEM_PROMPT]
        if schema is not None:
            sections.append(
                "The value of \"final\" must be a JSON object.\n"
                + format_instructions(schema, schema_format)
            )
        tool_text = self.tool_instructions(tools)
        if tool_text:
            sections.append(tool_text)

        conversation = []
        for message in messages:
            role = str(message.get("role", "user")).upper()
            text = _content_text(message.get("content"))
            if role == "TOOL":
                conversation.append(f"TOOL ({message.get('name', '')}): {text}")
            elif message.get("tool_calls"):
                lines = [text] if text else []
                for call in message["tool_calls"]:
                    function = call.get("function") or {}
                    action = {"tool": function.get("name"), "args": function.get("arguments")}
                    lines.append(json.dumps({"action": action}))
                body = "\n".join(lines)
                conversation.append(f"{role}: {body}")
            else:
                conversation.append(f"{role}: {text}")
        sections.append("\n\n".join(conversation))
        return "\n\n".join(sections)

    def to_provider(
        self,
        prompt: str,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": DEFAULT_TEMPERATURE if temperature is None else temperature,
                "maxOutputTokens": max_tokens or DEFAULT_MAX_OUTPUT_TOKENS,
                "responseMimeType": "application/json",
            },
        }

    def response_text(self, body: Any) -> str:
        """Text of the first candidate part, or an empty string."""
        try:
            return body["candidates"][0]["content"]["parts"][0].get("text") or ""
        except (KeyError, IndexError, TypeError, AttributeError):
            return ""

    def parse_envelope(self, data: Any) -> Envelope:
        if not isinstance(data, dict):
            return Envelope(final=data, has_final=True)

        envelope = Envelope(thought=data.get("thought"))
        action = data.get("action")
        if isinstance(action, dict) and action.get("tool"):
            args = action.get("args")
            envelope.action = ToolCallRequest(
                id=native_tool_call_id(),
                name=str(action["tool"]),
                arguments=json.dumps(args if args is not None else {}),
            )
        if "final" in data:
            envelope.final = data["final"]
            envelope.has_final = True
        elif envelope.action is None and "thought" not in data:
            # Bare object: the model skipped the envelope.
            envelope.final = data
            envelope.has_final = True
        return envelope
