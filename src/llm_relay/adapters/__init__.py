"""Pure request/response adapters."""

from .gemini import GeminiRequestAdapter
from .openai import OpenAIRequestAdapter, assistant_message, tool_result_message

__all__ = [
    "OpenAIRequestAdapter",
    "GeminiRequestAdapter",
    "assistant_message",
    "tool_result_message",
]
