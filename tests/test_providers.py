"""Tests for provider routing and credential resolution."""

import logging

import pytest

from llm_relay.config import Settings
from llm_relay.errors import ConfigurationError
from llm_relay.providers import (
    GATEWAY_AUTH_HEADER,
    build_gateway_url,
    env_var_for,
    is_valid_api_key,
    normalize_model_name,
    requires_native_inference,
    resolve_api_key,
    resolve_provider_config,
    select_transport,
)
from llm_relay.types import RuntimeOverrides

GATEWAY = "https://gateway.example.com/v1/acct/gw"
TOKEN = "gateway-token-0123456789"
OPENAI_KEY = "sk-openai-0123456789"


@pytest.fixture
def settings():
    return Settings.from_env(
        {
            "AI_GATEWAY_URL": GATEWAY,
            "AI_GATEWAY_TOKEN": TOKEN,
            "OPENAI_API_KEY": OPENAI_KEY,
        }
    )


class TestCapabilities:
    def test_native_provider(self):
        assert requires_native_inference("google-ai-studio")
        assert select_transport("google-ai-studio") == "native"

    def test_unknown_provider_defaults_to_standard(self):
        assert not requires_native_inference("some-new-provider")
        assert select_transport("some-new-provider") == "standard"

    def test_env_var_names(self):
        assert env_var_for("openai") == "OPENAI_API_KEY"
        assert env_var_for("google-ai-studio") == "GOOGLE_AI_STUDIO_API_KEY"
        assert env_var_for("grok") == "GROQ_API_KEY"


class TestApiKeys:
    @pytest.mark.parametrize("key", [None, "", "default", "None", "short"])
    def test_invalid_keys(self, key):
        assert not is_valid_api_key(key)

    def test_valid_key(self):
        assert is_valid_api_key("sk-0123456789")

    def test_runtime_override_wins(self, settings):
        overrides = RuntimeOverrides(user_api_keys={"openai": "sk-user-0123456789"})

        assert resolve_api_key("openai", settings, overrides) == "sk-user-0123456789"

    def test_placeholder_override_is_ignored(self, settings):
        overrides = RuntimeOverrides(user_api_keys={"openai": "default"})

        assert resolve_api_key("openai", settings, overrides) == OPENAI_KEY

    def test_falls_back_to_gateway_token(self, settings):
        assert resolve_api_key("anthropic", settings) == TOKEN

    def test_gateway_forbidden_provider_fails_fast(self, settings):
        with pytest.raises(ConfigurationError, match="DEEPSEEK_API_KEY"):
            resolve_api_key("deepseek", settings)

    def test_no_credential_at_all(self):
        with pytest.raises(ConfigurationError):
            resolve_api_key("anthropic", Settings())


class TestGatewayUrl:
    def test_compat_segment_by_default(self, settings):
        assert build_gateway_url(settings) == f"{GATEWAY}/compat"

    def test_provider_segment(self, settings):
        assert build_gateway_url(settings, "workers-ai") == f"{GATEWAY}/workers-ai"

    def test_runtime_override_used_first(self, settings):
        url = build_gateway_url(settings, None, "https://other.example.com/gw/")

        assert url == "https://other.example.com/gw/compat"

    def test_malformed_override_is_logged_and_bypassed(self, settings, caplog):
        with caplog.at_level(logging.WARNING):
            url = build_gateway_url(settings, None, "not a url")

        assert url == f"{GATEWAY}/compat"
        assert "Invalid runtime gateway override" in caplog.text

    def test_default_gateway_from_account(self):
        settings = Settings(gateway_account_id="acct", gateway_name="gw", gateway_url="ftp://x")

        url = build_gateway_url(settings)

        assert url == "https://gateway.ai.cloudflare.com/v1/acct/gw/compat"

    def test_unconfigured_gateway(self):
        with pytest.raises(ConfigurationError):
            build_gateway_url(Settings())


class TestResolveProviderConfig:
    def test_gateway_with_byok_adds_auth_header(self, settings):
        config = resolve_provider_config("openai", settings)

        assert config.base_url == f"{GATEWAY}/compat"
        assert config.api_key == OPENAI_KEY
        assert config.headers == {GATEWAY_AUTH_HEADER: f"Bearer {TOKEN}"}

    def test_gateway_token_only_has_no_extra_header(self, settings):
        config = resolve_provider_config("anthropic", settings)

        assert config.api_key == TOKEN
        assert config.headers == {}

    def test_direct_routing(self, settings):
        config = resolve_provider_config("openai", settings, routing="direct")

        assert config.base_url == "https://api.openai.com/v1"
        assert config.api_key == OPENAI_KEY
        assert config.headers == {}

    def test_direct_routing_without_endpoint_uses_provider_route(self, settings):
        config = resolve_provider_config("workers-ai", settings, routing="direct")

        assert config.base_url == f"{GATEWAY}/workers-ai"

    def test_direct_routing_without_key(self, settings):
        with pytest.raises(ConfigurationError):
            resolve_provider_config("anthropic", settings, routing="direct")

    def test_native_provider_goes_direct(self):
        settings = Settings(api_keys={"GOOGLE_AI_STUDIO_API_KEY": "AIza-0123456789"})

        config = resolve_provider_config("google-ai-studio", settings)

        assert config.base_url == "https://generativelanguage.googleapis.com/v1beta"
        assert config.api_key == "AIza-0123456789"

    def test_runtime_gateway_token(self, settings):
        overrides = RuntimeOverrides(gateway_token="runtime-token-0123456789")

        config = resolve_provider_config("anthropic", settings, overrides)

        assert config.api_key == "runtime-token-0123456789"


class TestModelNames:
    @pytest.mark.parametrize(
        "model, provider, expected",
        [
            ("[fast]gpt-4o", "openai", "gpt-4o"),
            ("deepseek/deepseek-chat", "deepseek", "deepseek-chat"),
            ("gemini/gemini-2.5-pro", "google-ai-studio", "gemini-2.5-pro"),
            ("anthropic/claude-sonnet-4", "anthropic", "anthropic/claude-sonnet-4"),
        ],
    )
    def test_normalize(self, model, provider, expected):
        assert normalize_model_name(model, provider) == expected
