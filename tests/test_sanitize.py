"""Tests for outbound message clean-up."""

import copy

from llm_relay.sanitize import (
    append_format_instructions,
    build_outbound_messages,
    filter_orphaned_tool_messages,
    optimize_messages,
    optimize_text,
)
from llm_relay.types import ToolCallContext


def _assistant(*ids):
    return {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {"id": call_id, "type": "function", "function": {"name": "t", "arguments": "{}"}}
            for call_id in ids
        ],
    }


def _tool(call_id, name="t"):
    return {"role": "tool", "tool_call_id": call_id, "name": name, "content": "done"}


class TestOptimizeText:
    def test_strips_trailing_whitespace_per_line(self):
        assert optimize_text("a  \nb\t\nc") == "a\nb\nc"

    def test_collapses_excess_blank_lines(self):
        assert optimize_text("a\n\n\n\n\n\nb") == "a\n\n\nb"

    def test_keeps_short_blank_runs(self):
        assert optimize_text("a\n\nb") == "a\n\nb"

    def test_only_text_parts_are_touched(self):
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "hello   "},
                    {"type": "image_url", "image_url": {"url": "data:  "}},
                ],
            }
        ]

        optimized = optimize_messages(messages)

        assert optimized[0]["content"][0]["text"] == "hello"
        assert optimized[0]["content"][1]["image_url"]["url"] == "data:  "
        assert messages[0]["content"][0]["text"] == "hello   "


class TestOrphanFiltering:
    def test_drops_tool_message_with_unknown_id(self, caplog):
        messages = [_assistant("a"), _tool("a"), _tool("zzz")]

        filtered = filter_orphaned_tool_messages(messages)

        assert [m.get("tool_call_id") for m in filtered] == [None, "a"]
        assert "orphaned" in caplog.text

    def test_drops_tool_message_with_empty_name(self):
        filtered = filter_orphaned_tool_messages([_assistant("a"), _tool("a", name="  ")])

        assert len(filtered) == 1

    def test_only_most_recent_assistant_ids_count(self):
        messages = [_assistant("a"), _tool("a"), _assistant("b"), _tool("a"), _tool("b")]

        filtered = filter_orphaned_tool_messages(messages)

        assert [m.get("tool_call_id") for m in filtered] == [None, "a", None, "b"]

    def test_empty_tool_calls_becomes_plain_text(self):
        message = {"role": "assistant", "content": None, "tool_calls": [{"type": "function"}]}

        filtered = filter_orphaned_tool_messages([message])

        assert "tool_calls" not in filtered[0]
        assert filtered[0]["content"] == ""
        assert "tool_calls" in message

    def test_does_not_mutate_input(self):
        messages = [_assistant("a", ""), _tool("a"), _tool("b")]
        snapshot = copy.deepcopy(messages)

        filter_orphaned_tool_messages(messages)

        assert messages == snapshot


class TestBuildOutbound:
    def test_without_context(self):
        base = [{"role": "user", "content": "hi  "}]

        assert build_outbound_messages(base) == [{"role": "user", "content": "hi"}]

    def test_context_messages_are_filtered_and_appended(self):
        base = [{"role": "user", "content": "hi"}]
        context = ToolCallContext(messages=(_assistant("a"), _tool("a"), _tool("orphan")), depth=1)

        outbound = build_outbound_messages(base, context)

        assert len(outbound) == 3
        assert outbound[0] == base[0]
        assert outbound[2]["tool_call_id"] == "a"

    def test_append_format_instructions(self):
        messages = [{"role": "system", "content": "s"}, {"role": "user", "content": "q"}]

        updated = append_format_instructions(messages, "Reply in JSON")

        assert updated[-1]["content"] == "q\n\nReply in JSON"
        assert messages[-1]["content"] == "q"
        assert updated[0] is messages[0]
