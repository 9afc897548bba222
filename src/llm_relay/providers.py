"""
Provider routing: transport selection, credentials and base URLs.

The result of routing is an immutable :class:`ProviderConfig`; callers can
substitute one directly in tests instead of touching the environment.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Final, Literal, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

from llm_relay.config import Settings
from llm_relay.errors import ConfigurationError
from llm_relay.types import Routing, RuntimeOverrides

__all__ = [
    "Provider",
    "ProviderCapabilities",
    "ProviderConfig",
    "PROVIDER_CAPABILITIES",
    "TransportKind",
    "requires_native_inference",
    "select_transport",
    "env_var_for",
    "is_valid_api_key",
    "resolve_api_key",
    "build_gateway_url",
    "resolve_provider_config",
    "normalize_model_name",
]

log = logging.getLogger(__name__)

TransportKind = Literal["standard", "native"]


class Provider(StrEnum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GROK = "grok"
    DEEPSEEK = "deepseek"
    OPENROUTER = "openrouter"
    GOOGLE_AI_STUDIO = "google-ai-studio"
    WORKERS_AI = "workers-ai"


@dataclass(frozen=True, slots=True)
class ProviderCapabilities:
    openai_compatible: bool
    requires_native_inference: bool = False


PROVIDER_CAPABILITIES: Final[dict[str, ProviderCapabilities]] = {
    Provider.OPENAI: ProviderCapabilities(openai_compatible=True),
    Provider.GROK: ProviderCapabilities(openai_compatible=True),
    Provider.ANTHROPIC: ProviderCapabilities(openai_compatible=False),
    Provider.GOOGLE_AI_STUDIO: ProviderCapabilities(
        openai_compatible=False, requires_native_inference=True
    ),
    Provider.DEEPSEEK: ProviderCapabilities(openai_compatible=True),
}

# Providers whose terms forbid proxying through the shared gateway.
GATEWAY_FORBIDDEN: Final[frozenset[str]] = frozenset({Provider.DEEPSEEK})

DIRECT_ENDPOINTS: Final[dict[str, str]] = {
    Provider.OPENROUTER: "https://openrouter.ai/api/v1",
    Provider.ANTHROPIC: "https://api.anthropic.com/v1/",
    Provider.GROK: "https://api.x.ai/v1",
    Provider.OPENAI: "https://api.openai.com/v1",
    Provider.DEEPSEEK: "https://api.deepseek.com/v1",
}

NATIVE_ENDPOINTS: Final[dict[str, str]] = {
    Provider.GOOGLE_AI_STUDIO: "https://generativelanguage.googleapis.com/v1beta",
}

DEFAULT_GATEWAY_HOST: Final = "https://gateway.ai.cloudflare.com/v1"
GATEWAY_AUTH_HEADER: Final = "cf-aig-authorization"

_ENV_VARS: Final[dict[str, str]] = {
    # grok is served through Groq credentials
    Provider.GROK: "GROQ_API_KEY",
    Provider.DEEPSEEK: "DEEPSEEK_API_KEY",
}

_PLACEHOLDER_KEYS: Final = frozenset({"default", "none"})
_MIN_KEY_LENGTH: Final = 10

_MODEL_PREFIXES: Final[dict[str, tuple[str, ...]]] = {
    Provider.DEEPSEEK: ("deepseek/",),
    Provider.GROK: ("grok/",),
    Provider.GOOGLE_AI_STUDIO: ("google-ai-studio/", "gemini/"),
}
_MODEL_TAG = re.compile(r"\[.*?\]")


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    """Resolved connection settings for one call."""

    base_url: str
    api_key: str
    headers: Mapping[str, str] = field(default_factory=dict)


def requires_native_inference(provider: str) -> bool:
    capabilities = PROVIDER_CAPABILITIES.get(provider)
    return capabilities is not None and capabilities.requires_native_inference


def select_transport(provider: str) -> TransportKind:
    return "native" if requires_native_inference(provider) else "standard"


def env_var_for(provider: str) -> str:
    try:
        return _ENV_VARS[provider]
    except KeyError:
        return f"{provider.upper().replace('-', '_')}_API_KEY"


def is_valid_api_key(api_key: Optional[str]) -> bool:
    if not api_key:
        return False
    key = api_key.strip()
    if key.lower() in _PLACEHOLDER_KEYS:
        return False
    return len(key) >= _MIN_KEY_LENGTH


def _provider_key(
    provider: str, settings: Settings, overrides: Optional[RuntimeOverrides]
) -> Optional[str]:
    """Runtime override first, then the environment."""
    if overrides is not None:
        runtime_key = overrides.user_api_keys.get(provider)
        if is_valid_api_key(runtime_key):
            return runtime_key
    env_key = settings.api_key(env_var_for(provider))
    if is_valid_api_key(env_key):
        return env_key
    return None


def resolve_api_key(
    provider: str,
    settings: Settings,
    overrides: Optional[RuntimeOverrides] = None,
) -> str:
    """Credential for *provider*, falling back to the gateway token where allowed."""
    key = _provider_key(provider, settings, overrides)
    if key is not None:
        return key

    if provider in GATEWAY_FORBIDDEN:
        raise ConfigurationError(
            f"{env_var_for(provider)} is required and must be a valid {provider} API key. "
            f"{provider} does not support AI Gateway tokens."
        )

    token = (overrides.gateway_token if overrides else None) or settings.gateway_token
    if not token:
        raise ConfigurationError(
            f"No credential for {provider}: set {env_var_for(provider)} or AI_GATEWAY_TOKEN"
        )
    return token


def _is_http_url(value: str) -> bool:
    parts = urlsplit(value)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def _append_gateway_segment(url: str, provider_override: Optional[str]) -> str:
    parts = urlsplit(url)
    path = parts.path.rstrip("/")
    path = f"{path}/{provider_override}" if provider_override else f"{path}/compat"
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


def build_gateway_url(
    settings: Settings,
    provider_override: Optional[str] = None,
    gateway_override_url: Optional[str] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> str:
    """
    Gateway base URL, ending in the provider segment or ``compat``.

    Malformed overrides are logged and skipped, never fatal.
    """
    logger = logger or log

    for source, candidate in (
        ("runtime gateway override", gateway_override_url),
        ("AI_GATEWAY_URL", settings.gateway_url),
    ):
        if not candidate or candidate.strip().lower() == "none":
            continue
        if _is_http_url(candidate.strip()):
            return _append_gateway_segment(candidate.strip(), provider_override)
        logger.warning("Invalid %s provided: %s. Falling back.", source, candidate)

    if not settings.gateway_account_id or not settings.gateway_name:
        raise ConfigurationError(
            "AI gateway is not configured: set AI_GATEWAY_URL or "
            "AI_GATEWAY_ACCOUNT_ID and AI_GATEWAY_NAME"
        )
    default_url = (
        f"{DEFAULT_GATEWAY_HOST}/{settings.gateway_account_id}/{settings.gateway_name}"
    )
    return _append_gateway_segment(default_url, provider_override)


def _resolve_direct(
    provider: str, settings: Settings, overrides: Optional[RuntimeOverrides]
) -> ProviderConfig:
    base_url = NATIVE_ENDPOINTS.get(provider) or DIRECT_ENDPOINTS[provider]
    key = _provider_key(provider, settings, overrides)
    if key is None:
        raise ConfigurationError(
            f"{env_var_for(provider)} is required for direct access to {provider}"
        )
    return ProviderConfig(base_url=base_url, api_key=key)


def resolve_provider_config(
    provider: str,
    settings: Settings,
    overrides: Optional[RuntimeOverrides] = None,
    routing: Routing = "gateway",
    *,
    logger: Optional[logging.Logger] = None,
) -> ProviderConfig:
    """Base URL, credential and extra headers for a call to *provider*."""
    if provider in NATIVE_ENDPOINTS:
        return _resolve_direct(provider, settings, overrides)

    provider_override: Optional[str] = None
    if routing == "direct":
        if provider in DIRECT_ENDPOINTS:
            return _resolve_direct(provider, settings, overrides)
        # No public endpoint: go through the gateway's provider route instead.
        provider_override = provider

    gateway_override_url = overrides.gateway_base_url if overrides else None
    base_url = build_gateway_url(
        settings, provider_override, gateway_override_url, logger=logger
    )
    api_key = resolve_api_key(provider, settings, overrides)

    gateway_token = (overrides.gateway_token if overrides else None) or settings.gateway_token
    headers: dict[str, str] = {}
    if gateway_token and api_key != gateway_token:
        # BYOK key upstream, gateway token for billing
        headers[GATEWAY_AUTH_HEADER] = f"Bearer {gateway_token}"
    return ProviderConfig(base_url=base_url, api_key=api_key, headers=headers)


def normalize_model_name(model: str, provider: str) -> str:
    """Strip internal ``[...]`` tags and prefixes the provider API rejects."""
    name = _MODEL_TAG.sub("", model, count=1)
    for prefix in _MODEL_PREFIXES.get(provider, ()):
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    return name
