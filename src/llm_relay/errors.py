"""
Error taxonomy for llm-relay and the transport error classifier.

Provider SDKs and raw HTTP clients encode cancellation and rate limiting in
different ways. :func:`classify_transport_error` maps them onto a small set
of typed errors so callers never inspect provider-specific shapes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import TYPE_CHECKING, Any, Final, Mapping, Optional, Type

import anthropic
import openai

if TYPE_CHECKING:
    from llm_relay.types import CompletionSignal, InferenceResult, ToolCallContext

__all__ = [
    "InferenceError",
    "RateLimitedError",
    "MessageLimitExceededError",
    "AbortedError",
    "MaxDepthExceededError",
    "CompletionSignaledError",
    "ParseFailureError",
    "ConfigurationError",
    "SecurityError",
    "serialize_call_chain",
    "is_abort_error",
    "extract_status",
    "parse_retry_after",
    "parse_retry_info",
    "retry_delay_ms",
    "classify_transport_error",
]

log = logging.getLogger(__name__)


class InferenceError(RuntimeError):
    """Base error; keeps the raw model text and the tool-call chain so far."""

    def __init__(
        self,
        message: str,
        response: str = "",
        context: Optional[ToolCallContext] = None,
    ) -> None:
        super().__init__(message)
        self.response = response
        self.context = context

    def partial_transcript(self) -> str:
        if self.context is None:
            return self.response
        return serialize_call_chain(self.context, self.response)

    def partial_response(self) -> InferenceResult:
        from llm_relay.types import InferenceResult

        return InferenceResult(text=self.response, context=self.context, aborted=True)


class RateLimitedError(InferenceError):
    """Upstream refused the call; retry after ``retry_delay_ms``."""

    def __init__(
        self, message: str, retry_delay_ms: int, provider: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.retry_delay_ms = retry_delay_ms
        self.provider = provider


class MessageLimitExceededError(RateLimitedError):
    def __init__(self, count: int, limit: int) -> None:
        super().__init__(
            f"Message limit exceeded: {count} messages (max: {limit}). "
            "Please use context compactification.",
            retry_delay_ms=0,
        )
        self.count = count
        self.limit = limit


class AbortedError(InferenceError):
    """The chain stopped early; ``response`` holds whatever text exists."""

    def __init__(
        self,
        response: str = "",
        context: Optional[ToolCallContext] = None,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(message or response or "Inference aborted", response, context)


class MaxDepthExceededError(AbortedError):
    def __init__(self, max_depth: int, context: Optional[ToolCallContext] = None) -> None:
        message = (
            f"Maximum tool calling depth ({max_depth}) exceeded. "
            "Tools may be calling each other recursively."
        )
        super().__init__(message, context)
        self.max_depth = max_depth


class CompletionSignaledError(AbortedError):
    """A completion tool ended the chain before any structured output was produced."""

    def __init__(self, signal: CompletionSignal, context: ToolCallContext) -> None:
        super().__init__(f"Completion signaled: {signal.summary or 'Task complete'}", context)
        self.signal = signal


class ParseFailureError(InferenceError):
    def __init__(
        self,
        message: str,
        response: str,
        context: Optional[ToolCallContext] = None,
        *,
        parsed: Any = None,
        detail: Optional[str] = None,
    ) -> None:
        super().__init__(message, response, context)
        self.parsed = parsed
        self.detail = detail


class ConfigurationError(InferenceError):
    pass


class SecurityError(InferenceError):
    pass


def serialize_call_chain(context: ToolCallContext, final_response: str) -> str:
    """Render the last five messages of a chain for a cancelled request."""
    transcript = (
        "**Request terminated by user, partial response transcript "
        "(last 5 messages):**\n\n<call_chain_transcript>"
    )
    for message in context.messages[-5:]:
        content = message.get("content")
        if not isinstance(content, str):
            content = json.dumps(content) if content is not None else ""
        if message.get("role") in ("tool", "function"):
            content = content[:100]
        transcript += f'<message role="{message.get("role")}">{content}</message>'
    transcript += f"<final_response>{final_response or '**cancelled**'}</final_response>"
    transcript += "</call_chain_transcript>"
    return transcript


# --- classification ---------------------------------------------------------

ABORT_ERRORS: Final[tuple[Type[BaseException], ...]] = (
    asyncio.CancelledError,
    AbortedError,
)

RATE_LIMIT_ERRORS: Final[tuple[Type[Exception], ...]] = (
    openai.RateLimitError,
    anthropic.RateLimitError,
)

DEFAULT_RETRY_DELAY_MS: Final[int] = 60_000

# Providers whose 429s arrive without usable hints get their own default.
PROVIDER_RETRY_DELAY_MS: Final[dict[str, int]] = {
    "google-ai-studio": 34_000,
}

RETRY_INFO_TYPE: Final = "type.googleapis.com/google.rpc.RetryInfo"


def is_abort_error(exc: BaseException) -> bool:
    if isinstance(exc, ABORT_ERRORS):
        return True
    if type(exc).__name__ == "AbortError":
        return True
    return "abort" in str(exc).lower()


def extract_status(exc: BaseException) -> Optional[int]:
    """Find an HTTP status wherever the client library put it."""
    response = getattr(exc, "response", None)
    candidates = (
        getattr(exc, "status_code", None),
        getattr(exc, "status", None),
        getattr(response, "status_code", None),
        getattr(response, "status", None),
        getattr(exc, "statusCode", None),
    )
    for candidate in candidates:
        if isinstance(candidate, int) and not isinstance(candidate, bool):
            return candidate
    return None


def _to_seconds(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("s"):
            text = text[:-1]
        try:
            seconds = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return seconds


def parse_retry_after(headers: Optional[Mapping[str, Any]]) -> Optional[float]:
    """Seconds from a ``Retry-After`` header, fractional values allowed."""
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        value = headers.get("Retry-After")
    return _to_seconds(value)


def parse_retry_info(body: Any) -> Optional[float]:
    """Seconds from a ``google.rpc.RetryInfo`` detail embedded in an error body."""
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except ValueError:
            return None
    if isinstance(body, list) and body:
        body = body[0]
    if not isinstance(body, dict):
        return None

    error = body.get("error", body)
    details = error.get("details") if isinstance(error, dict) else None
    if not isinstance(details, list):
        return None

    for detail in details:
        if not isinstance(detail, dict):
            continue
        if not str(detail.get("@type", "")).endswith("RetryInfo"):
            continue
        delay = detail.get("retryDelay")
        if isinstance(delay, dict):
            seconds = _to_seconds(delay.get("seconds"))
            nanos = delay.get("nanos")
            if seconds is not None and isinstance(nanos, (int, float)):
                seconds += nanos / 1e9
            return seconds
        return _to_seconds(delay)
    return None


def _error_headers(exc: BaseException) -> Optional[Mapping[str, Any]]:
    headers = getattr(exc, "headers", None)
    if headers is None:
        headers = getattr(getattr(exc, "response", None), "headers", None)
    return headers


def _error_body(exc: BaseException) -> Any:
    body = getattr(exc, "body", None)
    if body is not None:
        return body
    response = getattr(exc, "response", None)
    text = getattr(response, "text", None)
    return text if isinstance(text, str) else None


def retry_delay_ms(exc: BaseException, provider: Optional[str] = None) -> int:
    """Whole milliseconds to wait: header, then RetryInfo body, then default."""
    seconds = parse_retry_after(_error_headers(exc))
    if seconds is None:
        seconds = _to_seconds(getattr(exc, "retry_after", None))
    if seconds is None:
        seconds = parse_retry_info(_error_body(exc))
    if seconds is None:
        return PROVIDER_RETRY_DELAY_MS.get(str(provider), DEFAULT_RETRY_DELAY_MS)
    return math.ceil(seconds * 1000)


def classify_transport_error(
    exc: BaseException,
    provider: Optional[str] = None,
    *,
    context: Optional[ToolCallContext] = None,
    logger: Optional[logging.Logger] = None,
) -> BaseException:
    """
    Map a transport failure onto the package taxonomy.

    Returns the classified error, or *exc* itself when nothing more specific
    applies; callers re-raise the original in that case.
    """
    logger = logger or log

    if isinstance(exc, AbortedError):
        return exc
    if is_abort_error(exc):
        logger.info("Inference cancelled by user")
        return AbortedError("**User cancelled inference**", context)
    if isinstance(exc, InferenceError):
        return exc

    status = extract_status(exc)
    if status == 429 or isinstance(exc, RATE_LIMIT_ERRORS):
        delay = retry_delay_ms(exc, provider)
        logger.warning("Rate limited by %s, retry in %sms", provider or "provider", delay)
        return RateLimitedError(
            f"API rate limit exceeded. Retry after {delay / 1000:g}s",
            retry_delay_ms=delay,
            provider=provider,
        )

    logger.error(
        "Inference transport failure (provider=%s, status=%s): %s",
        provider,
        status,
        exc,
        exc_info=exc,
    )
    return exc
