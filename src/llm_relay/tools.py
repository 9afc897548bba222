"""
Tool definitions and the dependency-aware execution engine.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Literal, Optional, Sequence

from pydantic import BaseModel

from llm_relay.adapters.openai import tool_result_message
from llm_relay.cancellation import CancelToken
from llm_relay.errors import AbortedError, RateLimitedError, SecurityError
from llm_relay.types import (
    CompletionSignal,
    Message,
    ToolCallContext,
    ToolCallRequest,
    ToolCallResult,
)

__all__ = [
    "ToolDefinition",
    "ToolExecutionAborted",
    "CompletionDetector",
    "CompletionConfig",
    "execute_tool_calls",
    "update_tool_call_context",
]

log = logging.getLogger(__name__)

ToolExecutor = Callable[[Any], Any]


@dataclass(slots=True)
class ToolDefinition:
    """
    A locally executable tool.

    ``executor`` receives the decoded arguments (validated through
    ``args_model`` when one is given) and may be sync or async.
    ``depends_on`` names tools whose calls in the same batch must finish
    before this one runs.
    """

    name: str
    executor: ToolExecutor
    description: str = ""
    parameters: Optional[dict[str, Any]] = None
    args_model: Optional[type[BaseModel]] = None
    depends_on: tuple[str, ...] = ()

    def json_schema(self) -> dict[str, Any]:
        if self.parameters is not None:
            return self.parameters
        if self.args_model is not None:
            return self.args_model.model_json_schema()
        return {"type": "object", "properties": {}}

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.json_schema(),
            },
        }

    async def invoke(self, arguments: Any) -> Any:
        if self.args_model is not None:
            arguments = self.args_model.model_validate(arguments)
        result = self.executor(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


class ToolExecutionAborted(AbortedError):
    """A tool round was cancelled; ``results`` holds the calls that finished."""

    def __init__(self, results: list[ToolCallResult]) -> None:
        super().__init__("Tool execution aborted")
        self.results = results


class CompletionDetector:
    """Recognises the tools that mean "the model is done"."""

    def __init__(self, completion_tools: Iterable[str]) -> None:
        self.completion_tools = frozenset(completion_tools)

    def is_completion_tool(self, name: Optional[str]) -> bool:
        return bool(name) and name in self.completion_tools

    def detect_completion(self, results: Sequence[ToolCallResult]) -> Optional[CompletionSignal]:
        # first completion tool in the batch wins
        for result in results:
            if self.is_completion_tool(result.name) and not result.is_error:
                return CompletionSignal(
                    signaled=True,
                    tool_name=result.name,
                    summary=self._summary(result.result),
                )
        return None

    @staticmethod
    def _summary(value: Any) -> Optional[str]:
        if isinstance(value, str):
            return value or None
        if isinstance(value, dict):
            for key in ("summary", "message"):
                if isinstance(value.get(key), str):
                    return value[key]
        return None


@dataclass(slots=True)
class CompletionConfig:
    detector: Optional[CompletionDetector] = None
    operational_mode: Literal["initial", "followup"] = "initial"
    allow_warning_injection: bool = False


async def _run_call(
    request: ToolCallRequest,
    definition: Optional[ToolDefinition],
    cancel: Optional[CancelToken],
    logger: logging.Logger,
) -> ToolCallResult:
    if definition is None:
        return ToolCallResult(request.id, request.name, error=f"Unknown tool: {request.name}")

    try:
        arguments = request.parsed_arguments()
    except ValueError as exc:
        logger.error("Invalid JSON arguments for %s: %s", request.name, exc)
        return ToolCallResult(request.id, request.name, error=f"Invalid JSON arguments: {exc}")

    try:
        invocation = definition.invoke(arguments)
        if cancel is not None:
            result = await cancel.race(invocation)
        else:
            result = await invocation
    except (AbortedError, RateLimitedError, SecurityError):
        raise
    except Exception as exc:
        logger.error("Tool %s failed: %s", request.name, exc, exc_info=exc)
        return ToolCallResult(request.id, request.name, error=f"{type(exc).__name__}: {exc}")

    return ToolCallResult(request.id, request.name, result=result)


async def execute_tool_calls(
    requests: Sequence[ToolCallRequest],
    definitions: Sequence[ToolDefinition],
    *,
    cancel: Optional[CancelToken] = None,
    logger: Optional[logging.Logger] = None,
) -> list[ToolCallResult]:
    """
    Run *requests* in dependency waves.

    Calls whose dependencies are satisfied run concurrently. A failing call
    yields an error result and never aborts its siblings. Rate limits and
    security refusals raised by a tool propagate unchanged. Cancellation stops
    further waves and raises :class:`ToolExecutionAborted` with the results
    that completed. Results come back in request order.
    """
    logger = logger or log
    registry = {definition.name: definition for definition in definitions}
    results: dict[int, ToolCallResult] = {}
    remaining = list(range(len(requests)))

    def blocking(i: int) -> list[str]:
        definition = registry.get(requests[i].name)
        if definition is None:
            return []
        return [
            dep
            for dep in definition.depends_on
            if any(requests[j].name == dep for j in remaining if j != i)
        ]

    def failed_dependency(i: int) -> Optional[str]:
        definition = registry.get(requests[i].name)
        for dep in definition.depends_on if definition else ():
            if any(r.name == dep and r.is_error for r in results.values()):
                return dep
        return None

    while remaining:
        if cancel is not None and cancel.cancelled:
            raise ToolExecutionAborted([results[i] for i in sorted(results)])

        wave = [i for i in remaining if not blocking(i)]
        if not wave:
            for i in remaining:
                results[i] = ToolCallResult(
                    requests[i].id,
                    requests[i].name,
                    error=f"Unresolvable tool dependencies: {', '.join(blocking(i))}",
                )
            logger.error("Dependency cycle among tool calls: %s", [requests[i].name for i in remaining])
            break

        runnable = []
        for i in wave:
            dep = failed_dependency(i)
            if dep is not None:
                results[i] = ToolCallResult(
                    requests[i].id, requests[i].name, error=f"Dependency {dep} failed"
                )
            else:
                runnable.append(i)

        outcomes = await asyncio.gather(
            *(
                _run_call(requests[i], registry.get(requests[i].name), cancel, logger)
                for i in runnable
            ),
            return_exceptions=True,
        )

        aborted = False
        for i, outcome in zip(runnable, outcomes):
            if isinstance(outcome, ToolCallResult):
                results[i] = outcome
            elif isinstance(outcome, (AbortedError, asyncio.CancelledError)):
                aborted = True
            else:
                raise outcome
        remaining = [i for i in remaining if i not in wave]

        if aborted:
            logger.warning("Tool call was aborted, ending tool call chain")
            raise ToolExecutionAborted([results[i] for i in sorted(results)])

    return [results[i] for i in sorted(results)]


def update_tool_call_context(
    context: Optional[ToolCallContext],
    assistant_message: Message,
    results: Sequence[ToolCallResult],
    detector: Optional[CompletionDetector] = None,
) -> ToolCallContext:
    """Fold one executed round into a new context one level deeper."""
    context = context or ToolCallContext()
    tool_messages = [
        tool_result_message(result) for result in results if result.name and result.name.strip()
    ]
    signal = None
    if detector is not None and context.completion_signal is None:
        signal = detector.detect_completion(results)
    return context.advance([assistant_message, *tool_messages], completion_signal=signal)
