"""
The recursive inference loop.

One call to :meth:`InferenceEngine.infer` drives rounds of
request, tool execution and recursion until a terminal result is reached.
Each round is :meth:`InferenceEngine._step`; it returns either the terminal
:class:`InferenceResult` or the context for the next round.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from llm_relay.adapters import assistant_message
from llm_relay.client import BaseTransport, create_transport
from llm_relay.config import Settings, get_max_tool_calling_depth
from llm_relay.errors import (
    CompletionSignaledError,
    MaxDepthExceededError,
    MessageLimitExceededError,
    serialize_call_chain,
)
from llm_relay.providers import TransportKind, select_transport
from llm_relay.response import ModelTurn
from llm_relay.structured import parse_structured, validate_payload
from llm_relay.tools import (
    ToolExecutionAborted,
    execute_tool_calls,
    update_tool_call_context,
)
from llm_relay.types import InferenceRequest, InferenceResult, Message, ToolCallContext

__all__ = ["InferenceEngine", "infer", "MAX_DEPTH_NOTICE", "DEPTH_WARNING"]

MAX_DEPTH_NOTICE = "[System: Maximum tool calling depth reached.]"

DEPTH_WARNING = (
    "[System: You are about to reach the maximum number of tool calls for this "
    "task. Do not call any more tools unless strictly necessary; finish the task "
    "and give your final response now.]"
)

RateLimiter = Callable[[InferenceRequest], Union[Awaitable[None], None]]
TransportFactory = Callable[..., BaseTransport]


class InferenceEngine:
    """
    Runs inference calls against any configured provider.

    Transports are created lazily, one per kind, and closed by
    :meth:`aclose`. ``rate_limiter`` is awaited before every network round
    and may raise ``RateLimitedError`` to refuse it.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        rate_limiter: Optional[RateLimiter] = None,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.logger = logger or logging.getLogger(__name__)
        self.name = name or self.__class__.__name__
        self._transport_factory = transport_factory or create_transport
        self._rate_limiter = rate_limiter
        self._transports: dict[str, BaseTransport] = {}

    def _log(self, message: str, level: int = logging.INFO) -> None:
        self.logger.log(level, f"[{self.name}] {message}")

    def transport_for(self, provider: str) -> BaseTransport:
        kind: TransportKind = select_transport(provider)
        transport = self._transports.get(kind)
        if transport is None:
            transport = self._transport_factory(kind, self.settings, logger=self.logger)
            self._transports[kind] = transport
        return transport

    async def infer(
        self,
        request: InferenceRequest,
        messages: Sequence[Message],
        context: Optional[ToolCallContext] = None,
    ) -> InferenceResult[Any]:
        """
        Run *request* to a terminal result.

        Raises the classified errors from ``llm_relay.errors``; a tool round
        interrupted by cancellation instead returns a result with
        ``aborted=True`` carrying the partial transcript.
        """
        context = context or ToolCallContext()
        while True:
            outcome = await self._step(request, messages, context)
            if isinstance(outcome, InferenceResult):
                return outcome
            context = outcome

    async def _step(
        self,
        request: InferenceRequest,
        messages: Sequence[Message],
        context: ToolCallContext,
    ) -> Union[InferenceResult[Any], ToolCallContext]:
        max_depth = get_max_tool_calling_depth(request.action_key)
        if context.depth >= max_depth:
            self._log(
                f"Maximum tool calling depth ({max_depth}) reached for {request.action_key}",
                logging.WARNING,
            )
            if request.is_structured:
                raise MaxDepthExceededError(max_depth, context)
            return InferenceResult(text=MAX_DEPTH_NOTICE, context=context)

        total = len(messages) + len(context.messages)
        if total > self.settings.max_llm_messages:
            raise MessageLimitExceededError(total, self.settings.max_llm_messages)

        completion = request.completion
        if (
            completion is not None
            and completion.allow_warning_injection
            and not context.warning_injected
            and context.depth > 0
            and context.depth >= max_depth - 1
        ):
            self._log(
                f"Injecting depth warning at depth {context.depth} ({completion.operational_mode})",
                logging.WARNING,
            )
            context = context.with_warning({"role": "user", "content": DEPTH_WARNING})

        if self._rate_limiter is not None:
            limited = self._rate_limiter(request)
            if inspect.isawaitable(limited):
                await limited

        if request.cancel is not None:
            request.cancel.raise_if_cancelled(context=context)

        turn = await self.transport_for(request.provider).send(request, messages, context)

        if turn.is_empty and not turn.streamed:
            self._log("Model returned an empty turn", logging.WARNING)
            return InferenceResult(context=context)

        assistant = assistant_message(turn.content, turn.tool_calls)
        if request.on_assistant_message is not None:
            hook = request.on_assistant_message(assistant)
            if inspect.isawaitable(hook):
                await hook

        if not turn.has_tool_calls:
            return self._finish(request, turn, context)

        detector = completion.detector if completion is not None else None
        self._log(f"Executing {len(turn.tool_calls)} tool call(s) at depth {context.depth}")
        try:
            results = await execute_tool_calls(
                turn.tool_calls,
                request.tools or (),
                cancel=request.cancel,
                logger=self.logger,
            )
        except ToolExecutionAborted as exc:
            partial = update_tool_call_context(context, assistant, exc.results, detector)
            return InferenceResult(
                text=serialize_call_chain(partial, turn.content),
                context=partial,
                aborted=True,
            )

        next_context = update_tool_call_context(context, assistant, results, detector)

        signal = next_context.completion_signal
        if signal is not None and signal.signaled:
            self._log(f"Completion signaled by {signal.tool_name}")
            if request.is_structured:
                raise CompletionSignaledError(signal, next_context)
            return InferenceResult(
                text=turn.content or signal.summary or "Task complete",
                context=next_context,
            )

        usable = [
            result
            for result in results
            if not result.is_error
            and not (detector is not None and detector.is_completion_tool(result.name))
        ]
        if not usable:
            self._log("No tool call produced a usable result, ending chain", logging.WARNING)
            return InferenceResult(text=turn.content, context=next_context)

        return next_context

    def _finish(
        self, request: InferenceRequest, turn: ModelTurn, context: ToolCallContext
    ) -> InferenceResult[Any]:
        if request.schema is None:
            return InferenceResult(text=turn.content, context=context)

        if turn.payload is not None:
            value = validate_payload(
                turn.payload,
                request.schema,
                turn.content,
                rules=request.repair_rules,
                context=context,
                logger=self.logger,
            )
        else:
            value = parse_structured(
                turn.content,
                request.schema,
                fmt=turn.output_format,
                rules=request.repair_rules,
                context=context,
                logger=self.logger,
            )
        return InferenceResult(text=turn.content, value=value, context=context)

    # --- lifecycle ---------------------------------------------------------
    async def aclose(self) -> None:
        """Close every transport created so far. Safe to call multiple times."""
        transports, self._transports = self._transports, {}
        for transport in transports.values():
            await transport.aclose()

    async def __aenter__(self) -> "InferenceEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


async def infer(
    request: InferenceRequest,
    messages: Sequence[Message],
    context: Optional[ToolCallContext] = None,
    *,
    settings: Optional[Settings] = None,
    logger: Optional[logging.Logger] = None,
) -> InferenceResult[Any]:
    """One-shot convenience wrapper around a short-lived :class:`InferenceEngine`."""
    async with InferenceEngine(settings, logger=logger) as engine:
        return await engine.infer(request, messages, context)
