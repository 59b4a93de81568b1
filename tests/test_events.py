"""Tests for stream event classification."""

from __future__ import annotations

from chatrelay.process.events import (
    AssistantEvent,
    InitEvent,
    ResultEvent,
    ToolResultEvent,
    parse_event,
)


class TestParseEvent:
    def test_system_init(self) -> None:
        event = parse_event(
            {"type": "system", "subtype": "init", "session_id": "s1", "model": "m"}
        )
        assert isinstance(event, InitEvent)
        assert event.session_id == "s1"
        assert event.model == "m"

    def test_other_system_subtypes_ignored(self) -> None:
        assert parse_event({"type": "system", "subtype": "compact"}) is None

    def test_assistant_text_and_tool_use(self) -> None:
        event = parse_event(
            {
                "type": "assistant",
                "session_id": "s1",
                "message": {
                    "content": [
                        {"type": "text", "text": "Looking..."},
                        {
                            "type": "tool_use",
                            "id": "tu_1",
                            "name": "Bash",
                            "input": {"command": "ls"},
                        },
                    ]
                },
            }
        )
        assert isinstance(event, AssistantEvent)
        assert event.text == "Looking..."
        assert len(event.tool_uses) == 1
        assert event.tool_uses[0].name == "Bash"
        assert event.tool_uses[0].input == {"command": "ls"}

    def test_assistant_without_content_ignored(self) -> None:
        assert parse_event({"type": "assistant", "message": {"content": []}}) is None
        assert parse_event({"type": "assistant"}) is None

    def test_assistant_skips_malformed_blocks(self) -> None:
        event = parse_event(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "tool_use", "name": "Bash", "input": "not a dict"},
                        {"type": "tool_use", "name": "Edit", "input": {}},
                    ]
                },
            }
        )
        assert isinstance(event, AssistantEvent)
        assert [t.name for t in event.tool_uses] == ["Edit"]

    def test_user_tool_results(self) -> None:
        event = parse_event(
            {
                "type": "user",
                "session_id": "s1",
                "message": {
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": "tu_1",
                            "content": "file.txt",
                            "is_error": True,
                        }
                    ]
                },
            }
        )
        assert isinstance(event, ToolResultEvent)
        (result,) = event.results
        assert result.tool_use_id == "tu_1"
        assert result.text == "file.txt"
        assert result.is_error is True

    def test_tool_result_list_content_flattened(self) -> None:
        event = parse_event(
            {
                "type": "user",
                "message": {
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": "tu_1",
                            "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
                        }
                    ]
                },
            }
        )
        assert isinstance(event, ToolResultEvent)
        assert event.results[0].text == "a\nb"

    def test_result_success(self) -> None:
        event = parse_event(
            {
                "type": "result",
                "subtype": "success",
                "session_id": "s1",
                "num_turns": 3,
                "result": "done",
                "total_cost_usd": 0.02,
            }
        )
        assert isinstance(event, ResultEvent)
        assert event.success is True
        assert event.num_turns == 3
        assert event.result == "done"

    def test_result_error_subtype(self) -> None:
        event = parse_event({"type": "result", "subtype": "error_max_turns"})
        assert isinstance(event, ResultEvent)
        assert event.success is False

    def test_result_without_subtype_invalid(self) -> None:
        assert parse_event({"type": "result", "result": "x"}) is None

    def test_unknown_type_ignored(self) -> None:
        assert parse_event({"type": "stream_event"}) is None
        assert parse_event({}) is None

    def test_extra_fields_preserved(self) -> None:
        event = parse_event(
            {"type": "result", "subtype": "success", "usage": {"input_tokens": 5}}
        )
        assert isinstance(event, ResultEvent)
        assert event.model_extra == {"usage": {"input_tokens": 5}}
