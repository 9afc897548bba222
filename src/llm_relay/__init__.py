"""
LLM Relay - Multi-provider inference engine with tool calling and structured output.
"""

from .cancellation import CancelToken
from .client import BaseTransport, NativeTransport, StandardTransport, create_transport
from .config import Settings, get_max_tool_calling_depth
from .engine import InferenceEngine, infer
from .errors import (
    AbortedError,
    CompletionSignaledError,
    ConfigurationError,
    InferenceError,
    MaxDepthExceededError,
    MessageLimitExceededError,
    ParseFailureError,
    RateLimitedError,
    SecurityError,
)
from .providers import Provider, ProviderConfig, resolve_provider_config
from .structured import ArrayRepairRule, BLUEPRINT_REPAIR_RULES, parse_structured
from .tools import CompletionConfig, CompletionDetector, ToolDefinition
from .types import (
    InferenceMetadata,
    InferenceRequest,
    InferenceResult,
    RuntimeOverrides,
    StreamSink,
    ToolCallContext,
    ToolCallRequest,
    ToolCallResult,
)

__version__ = "0.1.0"

__all__ = [
    "CancelToken",
    "BaseTransport",
    "StandardTransport",
    "NativeTransport",
    "create_transport",
    "Settings",
    "get_max_tool_calling_depth",
    "InferenceEngine",
    "infer",
    "InferenceError",
    "RateLimitedError",
    "MessageLimitExceededError",
    "AbortedError",
    "MaxDepthExceededError",
    "CompletionSignaledError",
    "ParseFailureError",
    "ConfigurationError",
    "SecurityError",
    "Provider",
    "ProviderConfig",
    "resolve_provider_config",
    "ArrayRepairRule",
    "BLUEPRINT_REPAIR_RULES",
    "parse_structured",
    "ToolDefinition",
    "CompletionDetector",
    "CompletionConfig",
    "InferenceRequest",
    "InferenceResult",
    "InferenceMetadata",
    "RuntimeOverrides",
    "StreamSink",
    "ToolCallContext",
    "ToolCallRequest",
    "ToolCallResult",
]
