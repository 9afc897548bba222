"""
Structured output: format instructions, payload extraction, collection
repair and schema validation.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Final, Literal, Optional, Sequence, TypeVar

from pydantic import BaseModel, ValidationError

from llm_relay.errors import ParseFailureError
from llm_relay.types import ToolCallContext

__all__ = [
    "SchemaFormat",
    "ArrayRepairRule",
    "BLUEPRINT_REPAIR_RULES",
    "repair_collections",
    "format_instructions",
    "extract_payload",
    "validate_payload",
    "parse_structured",
    "response_format_for",
]

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

SchemaFormat = Literal["json", "markdown"]

_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?[ \t]*\n(.*?)```", re.DOTALL)


@dataclass(frozen=True, slots=True)
class ArrayRepairRule:
    """
    A field that must be an array but that models sometimes return as an
    object keyed by item.

    With ``key_field`` the object's keys are injected into items missing
    that field; without it the field is a plain string array.
    """

    field: str
    key_field: Optional[str] = None


BLUEPRINT_REPAIR_RULES: Final[tuple[ArrayRepairRule, ...]] = (
    ArrayRepairRule("views", "name"),
    ArrayRepairRule("implementationRoadmap", "phase"),
    ArrayRepairRule("files", "path"),
    ArrayRepairRule("pitfalls"),
    ArrayRepairRule("frameworks"),
    ArrayRepairRule("colorPalette"),
)


def _string_array(value: Any) -> Any:
    if isinstance(value, dict):
        return [v for v in value.values() if isinstance(v, str)]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str)]
    return value


def repair_collections(value: Any, rules: Sequence[ArrayRepairRule] = BLUEPRINT_REPAIR_RULES) -> Any:
    """
    Turn object-shaped collections back into arrays, recursively.

    Returns a new structure; running it on its own output changes nothing.
    """
    by_field = {rule.field: rule for rule in rules}

    def repair(node: Any) -> Any:
        if isinstance(node, list):
            return [repair(item) for item in node]
        if not isinstance(node, dict):
            return node

        repaired: dict[str, Any] = {}
        for key, item in node.items():
            rule = by_field.get(key)
            if rule is None:
                repaired[key] = repair(item)
            elif rule.key_field is None:
                repaired[key] = _string_array(item)
            elif isinstance(item, dict):
                repaired[key] = [_keyed(k, v, rule.key_field) for k, v in item.items()]
            else:
                repaired[key] = repair(item)
        return repaired

    def _keyed(key: str, item: Any, key_field: str) -> Any:
        item = repair(item)
        if isinstance(item, dict) and key_field not in item:
            return {key_field: key, **item}
        return item

    return repair(value)


def format_instructions(schema: type[BaseModel], fmt: SchemaFormat = "markdown") -> str:
    """Prompt text asking for output matching *schema* in *fmt*."""
    schema_json = json.dumps(schema.model_json_schema(), indent=2)
    if fmt == "markdown":
        return (
            "Respond with a single JSON object inside a ```json fenced code block. "
            "The object must conform to this JSON Schema:\n"
            f"```json\n{schema_json}\n```"
        )
    return (
        "Respond with only a JSON object, no prose and no code fences. "
        f"The object must conform to this JSON Schema:\n{schema_json}"
    )


def _first_json_value(text: str) -> Any:
    start = min((i for i in (text.find("{"), text.find("[")) if i >= 0), default=-1)
    if start < 0:
        raise ValueError("No JSON object found in response")
    value, _ = json.JSONDecoder().raw_decode(text[start:])
    return value


def extract_payload(text: str, fmt: Optional[SchemaFormat] = None) -> Any:
    """
    Decode the JSON payload in *text*.

    Plain JSON is tried first; when that fails, a fenced block and then the
    first embedded JSON value are tried.
    """
    stripped = text.strip()
    try:
        return json.loads(stripped)
    except ValueError:
        if fmt is None:
            for match in _FENCED_BLOCK.finditer(stripped):
                return json.loads(match.group(1))
            raise

    for match in _FENCED_BLOCK.finditer(stripped):
        try:
            return json.loads(match.group(1))
        except ValueError:
            continue
    return _first_json_value(stripped)


def validate_payload(
    parsed: Any,
    schema: type[M],
    raw_text: str,
    *,
    rules: Optional[Sequence[ArrayRepairRule]] = None,
    context: Optional[ToolCallContext] = None,
    logger: Optional[logging.Logger] = None,
) -> M:
    logger = logger or log
    repaired = repair_collections(parsed, BLUEPRINT_REPAIR_RULES if rules is None else rules)
    try:
        return schema.model_validate(repaired)
    except ValidationError as exc:
        logger.error(
            "Schema validation failed for %s: %s\nRaw content: %s",
            schema.__name__,
            exc,
            raw_text,
        )
        raise ParseFailureError(
            f"Failed to validate AI response against schema: {exc}",
            raw_text,
            context,
            parsed=parsed,
            detail=str(exc),
        ) from exc


def parse_structured(
    text: str,
    schema: type[M],
    *,
    fmt: Optional[SchemaFormat] = None,
    rules: Optional[Sequence[ArrayRepairRule]] = None,
    context: Optional[ToolCallContext] = None,
    logger: Optional[logging.Logger] = None,
) -> M:
    """Parse, repair and validate *text*; never returns unvalidated data."""
    try:
        parsed = extract_payload(text, fmt)
    except ValueError as exc:
        (logger or log).error("Error parsing response: %s", exc)
        raise ParseFailureError(
            "Failed to parse response", text, context, detail=str(exc)
        ) from exc
    return validate_payload(parsed, schema, text, rules=rules, context=context, logger=logger)


def response_format_for(schema: type[BaseModel], name: str) -> dict[str, Any]:
    """OpenAI ``json_schema`` response format for *schema*."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": name,
            "schema": schema.model_json_schema(),
        },
    }
