"""
Core types for llm-relay.
"""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field, replace
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Generic,
    Literal,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
)

from pydantic import BaseModel

if TYPE_CHECKING:
    from llm_relay.cancellation import CancelToken
    from llm_relay.structured import ArrayRepairRule, SchemaFormat
    from llm_relay.tools import CompletionConfig, ToolDefinition

__all__ = [
    "Message",
    "ReasoningEffort",
    "Routing",
    "ToolCallRequest",
    "ToolCallResult",
    "CompletionSignal",
    "ToolCallContext",
    "StreamSink",
    "InferenceMetadata",
    "RuntimeOverrides",
    "InferenceRequest",
    "InferenceResult",
]


# Type alias for chat messages
Message = dict[str, Any]

ReasoningEffort = Literal["minimal", "low", "medium", "high"]
Routing = Literal["gateway", "direct"]

M = TypeVar("M", bound=BaseModel)


@dataclass(slots=True)
class ToolCallRequest:
    """A model‑agnostic request emitted by the LLM to call a local tool.

    ``arguments`` is kept as the raw string the provider produced and only
    decoded right before the tool runs.
    """

    id: str
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> Any:
        """Decode ``arguments``; an empty string means "no arguments"."""
        if not self.arguments.strip():
            return {}
        return json.loads(self.arguments)

    def to_message_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(slots=True)
class ToolCallResult:
    """Outcome of running one tool call.

    ``error`` is set when the call itself failed (unknown tool, bad JSON,
    executor raised). ``result is None`` without an error is a void ack.
    """

    id: str  # must match the request id
    name: str
    result: Any = None
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_void(self) -> bool:
        return self.result is None and self.error is None


@dataclass(frozen=True, slots=True)
class CompletionSignal:
    signaled: bool
    tool_name: str
    summary: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ToolCallContext:
    """
    History of one tool-calling chain.

    Never mutated: every round derives a new value with :meth:`advance`.
    """

    messages: tuple[Message, ...] = ()
    depth: int = 0
    completion_signal: Optional[CompletionSignal] = None
    warning_injected: bool = False

    def advance(
        self,
        new_messages: Sequence[Message],
        completion_signal: Optional[CompletionSignal] = None,
    ) -> "ToolCallContext":
        # An already-set signal is never replaced.
        return ToolCallContext(
            messages=(*self.messages, *new_messages),
            depth=self.depth + 1,
            completion_signal=self.completion_signal or completion_signal,
            warning_injected=self.warning_injected,
        )

    def with_warning(self, message: Message) -> "ToolCallContext":
        return replace(
            self, messages=(*self.messages, message), warning_injected=True
        )


@dataclass(slots=True)
class StreamSink:
    """Receives newly streamed text in pieces of at least ``chunk_size`` chars."""

    on_chunk: Callable[[str], Any]
    chunk_size: int = 256

    async def emit(self, text: str) -> None:
        result = self.on_chunk(text)
        if inspect.isawaitable(result):
            await result


@dataclass(frozen=True, slots=True)
class InferenceMetadata:
    agent_id: str
    user_id: str


@dataclass(frozen=True, slots=True)
class RuntimeOverrides:
    """Per-request credentials and gateway settings supplied by the caller."""

    user_api_keys: Mapping[str, str] = field(default_factory=dict)
    gateway_base_url: Optional[str] = None
    gateway_token: Optional[str] = None


@dataclass(slots=True)
class InferenceRequest:
    """Everything the engine needs for one logical inference call."""

    model: str
    provider: str
    action_key: str = "default"
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    reasoning_effort: Optional[ReasoningEffort] = None
    frequency_penalty: Optional[float] = None
    tools: Optional[Sequence["ToolDefinition"]] = None
    stream: Optional[StreamSink] = None
    cancel: Optional["CancelToken"] = None
    overrides: Optional[RuntimeOverrides] = None
    routing: Routing = "gateway"
    metadata: Optional[InferenceMetadata] = None
    # Structured output
    schema: Optional[type[BaseModel]] = None
    schema_name: Optional[str] = None
    schema_format: Optional["SchemaFormat"] = None
    repair_rules: Optional[Sequence["ArrayRepairRule"]] = None
    # Tool loop control
    completion: Optional["CompletionConfig"] = None
    on_assistant_message: Optional[Callable[[Message], Awaitable[None] | None]] = None

    @property
    def is_structured(self) -> bool:
        return self.schema is not None

    @property
    def output_name(self) -> Optional[str]:
        if self.schema is None:
            return None
        return self.schema_name or self.schema.__name__


@dataclass(slots=True)
class InferenceResult(Generic[M]):
    """Terminal value of an inference call.

    Free-text calls fill ``text``; structured calls also fill ``value``.
    ``aborted`` marks a partial result produced after a cancelled tool round.
    """

    text: str = ""
    value: Optional[M] = None
    context: Optional[ToolCallContext] = None
    aborted: bool = False
