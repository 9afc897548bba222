"""
Parameter normalization for chat-completion requests.

Contract
- Standard keys are sent as top-level arguments of
  ``chat.completions.create``:
  temperature: float
  max_completion_tokens: int
  frequency_penalty: float
  reasoning_effort: "minimal" | "low" | "medium" | "high"
  stream: bool
  tools: list
  tool_choice: str | dict
  response_format: dict

- Anything else is provider specific and travels in ``extra`` (sent as
  ``extra_body``). Examples:
    extra.thinking: {"type": "enabled", "budget_tokens": 8000}

Unknown top-level keys are moved into extra.
None values are dropped.
"""

from __future__ import annotations

from typing import Any

STANDARD_KEYS = {
    "temperature",
    "max_completion_tokens",
    "max_tokens",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
    "reasoning_effort",
    "stream",
    "tools",
    "tool_choice",
    "response_format",
    "stop",
    "seed",
    "parallel_tool_calls",
}


def normalize_params(params: dict[str, Any] | None) -> dict[str, Any]:
    """
    Normalize a params dict to a single internal shape.

    Returns a dict with only standard keys plus an `extra` dict.
    Defaults:
      stream defaults to False
      extra defaults to {}

    Example
    -------
    >>> normalize_params({
    ...   "temperature": 0.2,
    ...   "max_completion_tokens": 4000,
    ...   "reasoning_effort": None,
    ...   "thinking": {"type": "enabled", "budget_tokens": 8000},
    ... })
    {'temperature': 0.2, 'max_completion_tokens': 4000, 'stream': False,
     'extra': {'thinking': {'type': 'enabled', 'budget_tokens': 8000}}}
    """
    if params is None:
        return {"stream": False, "extra": {}}
    if not isinstance(params, dict):
        raise TypeError(f"params must be a dict, got {type(params).__name__}")

    user_extra = params.get("extra") or {}
    if not isinstance(user_extra, dict):
        raise TypeError("params['extra'] must be a dict")

    std: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in params.items():
        if key == "extra" or value is None:
            continue
        if key in STANDARD_KEYS:
            std[key] = value
        else:
            extra[key] = value

    std.setdefault("stream", False)
    std["extra"] = {**extra, **{k: v for k, v in user_extra.items() if v is not None}}
    return std
