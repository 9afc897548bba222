"""Streaming utilities: tool-call reconstruction and chunk aggregation."""

from __future__ import annotations

import json
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Iterable, Optional

from llm_relay.types import StreamSink, ToolCallRequest

__all__ = [
    "ToolCallFragment",
    "ToolCallAccumulator",
    "StreamedTurn",
    "aggregate_stream",
    "synthesize_tool_call_id",
]

log = logging.getLogger(__name__)


def synthesize_tool_call_id(index: int) -> str:
    """Provisional id for a call the provider has not named yet."""
    return f"tool_{time.time_ns() // 1_000_000}_{index}_{uuid.uuid4().hex[:10]}"


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


@dataclass(slots=True)
class ToolCallFragment:
    """One streamed piece of a tool call; every field may be missing."""

    index: Optional[int] = None
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None

    @classmethod
    def from_delta(cls, delta: Any) -> "ToolCallFragment":
        """Build from an OpenAI ``ChoiceDeltaToolCall`` or its dict form."""
        function = _field(delta, "function")
        return cls(
            index=_field(delta, "index"),
            id=_field(delta, "id"),
            name=_field(function, "name") if function is not None else None,
            arguments=_field(function, "arguments") if function is not None else None,
        )


@dataclass(slots=True)
class _Entry:
    id: str
    order: int
    synthetic: bool
    index: Optional[int] = None
    name: str = ""
    arguments: str = ""


def _is_complete_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


class ToolCallAccumulator:
    """
    Rebuilds complete tool calls from streamed fragments.

    Fragments are matched to an entry by id first, then by index. Once an
    entry's arguments parse as complete JSON, later argument fragments for
    it are ignored; some providers keep emitting trailing noise. This is a
    heuristic: a payload that legitimately continues after a complete JSON
    prefix would be cut short.
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or log
        self._by_index: dict[int, _Entry] = {}
        self._by_id: dict[str, _Entry] = {}
        self._order = 0

    def __len__(self) -> int:
        return len(self._by_id)

    def _lookup(self, fragment: ToolCallFragment) -> Optional[_Entry]:
        if fragment.id and fragment.id in self._by_id:
            return self._by_id[fragment.id]
        if fragment.index is not None and fragment.index in self._by_index:
            return self._by_index[fragment.index]
        return None

    def add(self, fragment: ToolCallFragment) -> None:
        index = fragment.index
        entry = self._lookup(fragment)

        if entry is None:
            provisional = fragment.id or synthesize_tool_call_id(
                index if index is not None else len(self._by_id)
            )
            entry = _Entry(
                id=provisional,
                order=self._order,
                synthetic=not fragment.id,
                index=index,
            )
            self._order += 1
            if index is not None:
                self._by_index[index] = entry
            self._by_id[provisional] = entry
            self.logger.debug("New tool call entry id=%s index=%s", provisional, index)

        if fragment.id and entry.id != fragment.id:
            self._by_id.pop(entry.id, None)
            entry.id = fragment.id
            entry.synthetic = False
            self._by_id[entry.id] = entry

        if index is not None and entry.index is None:
            entry.index = index
            self._by_index[index] = entry

        if fragment.name:
            entry.name = fragment.name

        if fragment.arguments:
            if entry.arguments and _is_complete_json(entry.arguments):
                self.logger.warning(
                    "Already have complete JSON for %s, ignoring additional chunk: %r",
                    entry.name or entry.id,
                    fragment.arguments,
                )
            else:
                entry.arguments += fragment.arguments

    def extend(self, fragments: Iterable[ToolCallFragment]) -> None:
        for fragment in fragments:
            self.add(fragment)

    def assemble(self) -> list[ToolCallRequest]:
        """Completed calls in stream-index order, else first-seen order."""
        entries = list(self._by_id.values())
        if self._by_index:
            entries.sort(
                key=lambda e: (e.index if e.index is not None else math.inf, e.order)
            )
        else:
            entries.sort(key=lambda e: e.order)

        named = [e for e in entries if e.name.strip()]
        dropped = len(entries) - len(named)
        if dropped:
            self.logger.warning(
                "Dropping %d streamed tool call(s) without function name", dropped
            )

        requests = [ToolCallRequest(id=e.id, name=e.name, arguments=e.arguments) for e in named]
        for request in requests:
            if request.arguments and not _is_complete_json(request.arguments):
                self.logger.error(
                    "Invalid JSON in tool call arguments for %s: %r",
                    request.name,
                    request.arguments,
                )
        return requests


@dataclass
class StreamedTurn:
    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    finish_reason: Optional[str] = None


async def aggregate_stream(
    chunks: AsyncIterable[Any],
    sink: Optional[StreamSink] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> StreamedTurn:
    """
    Consume a stream of ``ChatCompletionChunk`` objects.

    The sink only ever receives text it has not seen, flushed once the
    unsent tail reaches ``sink.chunk_size`` or the stream reports a finish
    reason.
    """
    logger = logger or log
    accumulator = ToolCallAccumulator(logger=logger)
    content = ""
    sent = 0
    finish_reason: Optional[str] = None

    async for chunk in chunks:
        choices = _field(chunk, "choices")
        if not choices:
            continue
        choice = choices[0]
        delta = _field(choice, "delta")

        for delta_call in _field(delta, "tool_calls") or ():
            try:
                accumulator.add(ToolCallFragment.from_delta(delta_call))
            except (TypeError, ValueError, AttributeError):
                logger.exception("Error processing streamed tool call delta")

        content += _field(delta, "content") or ""
        chunk_finish = _field(choice, "finish_reason")
        if chunk_finish is not None:
            finish_reason = chunk_finish

        if sink is not None:
            pending = content[sent:]
            if pending and (len(pending) >= sink.chunk_size or chunk_finish is not None):
                await sink.emit(pending)
                sent += len(pending)

    if sink is not None and sent < len(content):
        await sink.emit(content[sent:])

    return StreamedTurn(
        content=content,
        tool_calls=accumulator.assemble(),
        finish_reason=finish_reason,
    )
