"""
Environment-derived configuration.

Everything here is read once into an immutable :class:`Settings` snapshot
that is handed to the engine; nothing in the package reads ``os.environ``
after that.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Final, Mapping, Optional

from dotenv import load_dotenv

__all__ = [
    "Settings",
    "DEFAULT_MAX_TOOL_CALLING_DEPTH",
    "DEFAULT_MAX_LLM_MESSAGES",
    "get_max_tool_calling_depth",
]

DEFAULT_MAX_TOOL_CALLING_DEPTH: Final[int] = 7
DEFAULT_MAX_LLM_MESSAGES: Final[int] = 200

# Agentic actions legitimately run long tool chains.
_ACTION_DEPTH_LIMITS: Final[dict[str, int]] = {
    "deepDebugger": 100,
    "agenticProjectBuilder": 100,
}


def get_max_tool_calling_depth(action_key: str) -> int:
    return _ACTION_DEPTH_LIMITS.get(action_key, DEFAULT_MAX_TOOL_CALLING_DEPTH)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    """Gateway and credential configuration for one process."""

    gateway_url: Optional[str] = None
    gateway_token: Optional[str] = None
    gateway_account_id: Optional[str] = None
    gateway_name: Optional[str] = None
    api_keys: Mapping[str, str] = field(default_factory=dict)
    max_llm_messages: int = DEFAULT_MAX_LLM_MESSAGES

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from *environ*, or from ``os.environ`` after loading
        a ``.env`` file when *environ* is omitted.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        max_messages = _clean(environ.get("MAX_LLM_MESSAGES"))
        return cls(
            gateway_url=_clean(environ.get("AI_GATEWAY_URL")),
            gateway_token=_clean(environ.get("AI_GATEWAY_TOKEN")),
            gateway_account_id=_clean(environ.get("AI_GATEWAY_ACCOUNT_ID")),
            gateway_name=_clean(environ.get("AI_GATEWAY_NAME")),
            api_keys={
                name: value
                for name, value in environ.items()
                if name.endswith("_API_KEY") and value
            },
            max_llm_messages=int(max_messages) if max_messages else DEFAULT_MAX_LLM_MESSAGES,
        )

    def api_key(self, env_var: str) -> Optional[str]:
        return self.api_keys.get(env_var)
