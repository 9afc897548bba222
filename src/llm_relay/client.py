"""
Transports: one network round against a provider, returned as a ModelTurn.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, ClassVar, Final, NoReturn, Optional, Sequence

import httpx
from openai import AsyncOpenAI

from llm_relay.accumulator import aggregate_stream
from llm_relay.adapters import GeminiRequestAdapter, OpenAIRequestAdapter
from llm_relay.config import Settings
from llm_relay.errors import ParseFailureError, classify_transport_error
from llm_relay.params import normalize_params
from llm_relay.providers import (
    Provider,
    ProviderConfig,
    TransportKind,
    normalize_model_name,
    resolve_provider_config,
)
from llm_relay.response import ModelTurn
from llm_relay.sanitize import append_format_instructions, build_outbound_messages
from llm_relay.structured import (
    SchemaFormat,
    extract_payload,
    format_instructions,
    response_format_for,
)
from llm_relay.types import InferenceRequest, Message, ToolCallContext

__all__ = [
    "BaseTransport",
    "StandardTransport",
    "NativeTransport",
    "create_transport",
    "DEFAULT_MAX_COMPLETION_TOKENS",
    "THINKING_BUDGETS",
]

DEFAULT_MAX_COMPLETION_TOKENS: Final[int] = 150_000

THINKING_BUDGETS: Final[dict[str, int]] = {
    "minimal": 1000,
    "low": 4000,
    "medium": 8000,
    "high": 16000,
}

METADATA_HEADER: Final = "cf-aig-metadata"

ClientFactory = Callable[[ProviderConfig], Any]


def _default_client(config: ProviderConfig) -> AsyncOpenAI:
    # Retries belong to the caller, who sees RateLimitedError.retry_delay_ms.
    return AsyncOpenAI(
        api_key=config.api_key,
        base_url=config.base_url,
        default_headers=dict(config.headers),
        max_retries=0,
    )


class BaseTransport(ABC):
    """
    Abstract base class for transports.
    """

    kind: ClassVar[TransportKind]

    def __init__(
        self,
        settings: Settings,
        *,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.name = name or self.__class__.__name__

    @abstractmethod
    async def send(
        self,
        request: InferenceRequest,
        messages: Sequence[Message],
        context: ToolCallContext,
    ) -> ModelTurn:
        """
        Perform one network round.

        Failures are classified before they leave: cancellation raises
        ``AbortedError``, throttling raises ``RateLimitedError``, anything
        else propagates unchanged.
        """
        ...

    def _log(self, message: str, level: int = logging.INFO) -> None:
        self.logger.log(level, f"[{self.name}] {message}")

    def _resolve(self, request: InferenceRequest) -> ProviderConfig:
        return resolve_provider_config(
            request.provider,
            self.settings,
            request.overrides,
            request.routing,
            logger=self.logger,
        )

    def _raise_classified(
        self, exc: Exception, request: InferenceRequest, context: ToolCallContext
    ) -> NoReturn:
        classified = classify_transport_error(
            exc, request.provider, context=context, logger=self.logger
        )
        if classified is exc:
            raise exc
        raise classified from exc

    # --- lifecycle ---------------------------------------------------------
    async def aclose(self) -> None:
        """
        Close underlying async HTTP clients. Safe to call multiple times.
        """
        client = getattr(self, "_client", None)
        close = getattr(client, "aclose", None)
        if close:
            await close()

    async def __aenter__(self) -> "BaseTransport":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class StandardTransport(BaseTransport):
    """
    OpenAI-compatible chat completions, through the gateway or direct.

    A client is built per call from the resolved ``ProviderConfig`` because
    credentials and base URL can change with every request's overrides.
    """

    kind = "standard"

    def __init__(
        self,
        settings: Settings,
        *,
        client_factory: Optional[ClientFactory] = None,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(settings, logger=logger, name=name)
        self._client_factory = client_factory or _default_client
        self._adapter = OpenAIRequestAdapter(logger=self.logger)

    def _output_plan(
        self, request: InferenceRequest, params: dict[str, Any]
    ) -> Optional[SchemaFormat]:
        """
        Decide how structured output is requested from this model.

        Returns the format instructions were given in, or None when the
        provider enforces the schema itself.
        """
        model = request.model.lower()
        is_claude = "claude" in model

        if is_claude and request.reasoning_effort:
            params.pop("reasoning_effort", None)
            params["thinking"] = {
                "type": "enabled",
                "budget_tokens": THINKING_BUDGETS[request.reasoning_effort],
            }

        if request.schema is None:
            return None
        if request.schema_format is not None:
            return request.schema_format
        if is_claude:
            return "markdown"
        if request.provider == Provider.DEEPSEEK or "deepseek" in model:
            params["response_format"] = {"type": "json_object"}
            return "markdown"
        params["response_format"] = response_format_for(request.schema, request.output_name)
        return None

    def _metadata_headers(self, request: InferenceRequest) -> dict[str, str]:
        if request.metadata is None:
            return {}
        metadata = {
            "chatId": request.metadata.agent_id,
            "userId": request.metadata.user_id,
            "schemaName": request.output_name,
            "actionKey": request.action_key,
        }
        return {METADATA_HEADER: json.dumps({k: v for k, v in metadata.items() if v})}

    def build_request(
        self,
        request: InferenceRequest,
        messages: Sequence[Message],
        context: ToolCallContext,
    ) -> tuple[dict[str, Any], Optional[SchemaFormat]]:
        """Keyword arguments for ``chat.completions.create`` and the output format."""
        raw_params: dict[str, Any] = {
            "temperature": request.temperature,
            "max_completion_tokens": request.max_tokens or DEFAULT_MAX_COMPLETION_TOKENS,
            "frequency_penalty": request.frequency_penalty,
            "reasoning_effort": request.reasoning_effort,
            "stream": request.stream is not None,
        }
        if request.tools:
            raw_params["tools"] = [tool.to_openai_tool() for tool in request.tools]
            raw_params["tool_choice"] = "auto"
        output_format = self._output_plan(request, raw_params)

        outbound = build_outbound_messages(messages, context, logger=self.logger)
        if output_format is not None and request.schema is not None:
            outbound = append_format_instructions(
                outbound, format_instructions(request.schema, output_format)
            )

        kwargs = self._adapter.to_provider(outbound, normalize_params(raw_params))
        kwargs["model"] = normalize_model_name(request.model, request.provider)
        headers = self._metadata_headers(request)
        if headers:
            kwargs["extra_headers"] = headers
        return kwargs, output_format

    async def send(
        self,
        request: InferenceRequest,
        messages: Sequence[Message],
        context: ToolCallContext,
    ) -> ModelTurn:
        config = self._resolve(request)
        kwargs, output_format = self.build_request(request, messages, context)
        client = self._client_factory(config)
        cancel = request.cancel

        self._log(
            f"Sending request to {request.provider} model {kwargs['model']} "
            f"(Stream: {kwargs['stream']}, depth: {context.depth})"
        )

        stream = None
        try:
            call = client.chat.completions.create(**kwargs)
            raw = await (cancel.race(call, context=context) if cancel else call)

            if request.stream is None:
                turn = self._adapter.from_provider(raw)
            else:
                stream = raw
                aggregation = aggregate_stream(stream, request.stream, logger=self.logger)
                streamed = await (
                    cancel.race(aggregation, context=context) if cancel else aggregation
                )
                turn = ModelTurn(
                    content=streamed.content,
                    tool_calls=streamed.tool_calls,
                    streamed=True,
                )
        except Exception as exc:
            self._raise_classified(exc, request, context)
        finally:
            close_stream = getattr(stream, "close", None)
            if close_stream is not None:
                await close_stream()
            close_client = getattr(client, "close", None)
            if close_client is not None:
                await close_client()

        turn.output_format = output_format
        return turn


class NativeTransport(BaseTransport):
    """
    Providers without an OpenAI-compatible surface (Gemini ``generateContent``).
    """

    kind = "native"

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 300.0,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(settings, logger=logger, name=name)
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._adapter = GeminiRequestAdapter(logger=self.logger)

    async def _post(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> Any:
        response = await self._client.post(url, headers=headers, json=body)
        response.raise_for_status()
        return response.json()

    async def send(
        self,
        request: InferenceRequest,
        messages: Sequence[Message],
        context: ToolCallContext,
    ) -> ModelTurn:
        config = self._resolve(request)
        model = normalize_model_name(request.model, request.provider)
        tools = list(request.tools or ())

        outbound = build_outbound_messages(messages, context, logger=self.logger)
        prompt = self._adapter.build_prompt(
            outbound,
            tools=tools,
            schema=request.schema,
            schema_format=request.schema_format or "json",
        )
        body = self._adapter.to_provider(
            prompt, temperature=request.temperature, max_tokens=request.max_tokens
        )
        url = f"{config.base_url.rstrip('/')}/models/{model}:generateContent"
        headers = {"x-goog-api-key": config.api_key, **config.headers}

        self._log(f"Sending native request to {request.provider} model {model} (depth: {context.depth})")

        cancel = request.cancel
        try:
            call = self._post(url, headers, body)
            data = await (cancel.race(call, context=context) if cancel else call)
        except Exception as exc:
            self._raise_classified(exc, request, context)

        text = self._adapter.response_text(data)
        if not text.strip():
            raise ParseFailureError("Empty response from native provider", "", context)
        try:
            parsed = extract_payload(text, "markdown")
        except ValueError as exc:
            self._log(f"Native response is not valid JSON: {exc}", logging.ERROR)
            raise ParseFailureError(
                "Failed to parse native response", text, context, detail=str(exc)
            ) from exc

        envelope = self._adapter.parse_envelope(parsed)
        tool_calls = []
        if envelope.action is not None and tools:
            known = {tool.name for tool in tools}
            if envelope.action.name not in known:
                raise ParseFailureError(
                    f"Native response requested unknown tool: {envelope.action.name}",
                    text,
                    context,
                    parsed=parsed,
                )
            tool_calls.append(envelope.action)

        payload = None
        if envelope.has_final:
            if isinstance(envelope.final, str):
                content = envelope.final
            else:
                content = json.dumps(envelope.final)
                payload = envelope.final
        else:
            content = envelope.thought or ""

        if request.stream is not None and content:
            await request.stream.emit(content)

        return ModelTurn(
            content=content,
            tool_calls=tool_calls,
            raw=data,
            payload=payload,
            output_format="json",
        )


# Factory for creating transports

_TRANSPORT_REGISTRY: Final[dict[str, type[BaseTransport]]] = {
    "standard": StandardTransport,
    "native": NativeTransport,
}


def create_transport(
    kind: TransportKind,
    settings: Settings,
    *,
    logger: Optional[logging.Logger] = None,
    **transport_kwargs: Any,
) -> BaseTransport:
    """
    Factory for creating a transport.

    Args:
        kind: ``"standard"`` or ``"native"``, see ``providers.select_transport``.
        settings: Process configuration used to resolve credentials per call.
        logger: Optional custom logger.
        **transport_kwargs: Passed through (``client_factory``, ``http_client``).
    """
    try:
        transport_cls = _TRANSPORT_REGISTRY[kind]
    except KeyError as exc:
        raise ValueError(f"Unsupported transport: {kind}") from exc
    return transport_cls(settings, logger=logger, **transport_kwargs)
