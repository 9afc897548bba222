from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from llm_relay.structured import SchemaFormat
from llm_relay.types import ToolCallRequest


@dataclass
class ModelTurn:
    """One provider round, normalised across transports."""

    content: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    raw: Any = None
    streamed: bool = False
    # Already-decoded output (native transport envelopes)
    payload: Any = None
    # Format the output instructions were given in, if any
    output_format: Optional[SchemaFormat] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.tool_calls
