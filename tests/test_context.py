"""Tests for the transcript, token estimate and summary compression."""

import json

import pytest

from zai_cli.context import (
    CHARS_PER_TOKEN,
    KEEP_RECENT,
    MAX_ENTRIES,
    SUMMARY_PREFIX,
    ContextManager,
    ConversationEntry,
    EntryKind,
    ToolCallRequest,
    ToolResult,
    estimate_tokens,
    summarize_entries,
)
from zai_cli.errors import ToolArgumentError


def _user(text):
    return ConversationEntry(kind=EntryKind.USER, content=text)


def _assistant(text):
    return ConversationEntry(kind=EntryKind.ASSISTANT, content=text)


def _call(name, args, call_id=None):
    tc = ToolCallRequest(id=call_id or f"call_{name}", name=name, arguments=json.dumps(args))
    return tc, ConversationEntry(kind=EntryKind.TOOL_CALL, tool_calls=[tc])


def _result(tc, result):
    return ConversationEntry(
        kind=EntryKind.TOOL_RESULT, content=result.as_text(), tool_call=tc, tool_result=result
    )


class TestToolCallRequest:
    def test_parse_object(self):
        tc = ToolCallRequest(id="1", name="x", arguments='{"a": 1}')
        assert tc.parse_arguments() == {"a": 1}

    def test_empty_arguments_are_empty_object(self):
        assert ToolCallRequest(id="1", name="x", arguments="").parse_arguments() == {}
        assert ToolCallRequest(id="1", name="x", arguments="  ").parse_arguments() == {}

    def test_invalid_json(self):
        with pytest.raises(ToolArgumentError, match="invalid JSON"):
            ToolCallRequest(id="1", name="x", arguments="{not json").parse_arguments()

    def test_non_object(self):
        with pytest.raises(ToolArgumentError, match="JSON object"):
            ToolCallRequest(id="1", name="x", arguments="[1, 2]").parse_arguments()

    def test_new_generates_id_and_serializes(self):
        tc = ToolCallRequest.new("view_file", {"path": "a.py"})
        assert tc.id.startswith("call_")
        assert json.loads(tc.arguments) == {"path": "a.py"}


class TestToolResult:
    def test_as_text_success(self):
        assert ToolResult.ok("hello").as_text() == "hello"
        assert ToolResult.ok("").as_text() == "(empty result)"

    def test_as_text_failure(self):
        assert ToolResult.fail("boom").as_text() == "error: boom"


class TestEstimate:
    def test_counts_content_and_tool_text(self):
        tc, call = _call("bash", {"command": "ls"})
        entries = [_user("a" * 40), call, _result(tc, ToolResult.ok("b" * 40))]
        total = 40 + len("bash") + len(tc.arguments) + 40
        assert estimate_tokens(entries) == total // CHARS_PER_TOKEN

    def test_monotonic(self):
        cm = ContextManager()
        previous = cm.estimate_tokens()
        for i in range(5):
            cm.append(_user("word " * i))
            assert cm.estimate_tokens() >= previous
            previous = cm.estimate_tokens()


class TestSummarize:
    def test_collects_requests_files_and_tools(self):
        tc1, call1 = _call("view_file", {"path": "src/main.py"}, "c1")
        tc2, call2 = _call("bash", {"command": "pytest"}, "c2")
        entries = [
            _user("please fix the bug in utils/helpers.py"),
            call1,
            _result(tc1, ToolResult.ok("print(1)")),
            call2,
            _result(tc2, ToolResult.fail("Exit code: 1\n2 failed")),
            _assistant("The helper divides by zero when the list is empty."),
        ]
        text = summarize_entries(entries)
        assert text.startswith(SUMMARY_PREFIX)
        assert "please fix the bug" in text
        assert "src/main.py" in text
        assert "utils/helpers.py" in text
        assert "view_file (1 ok, 0 failed)" in text
        assert "bash (0 ok, 1 failed)" in text
        assert "bash: Exit code: 1" in text
        assert "divides by zero" in text

    def test_tracks_open_todo_items(self):
        _, add1 = _call("todo", {"action": "add", "task": "write tests"}, "t1")
        _, add2 = _call("todo", {"action": "add", "task": "update docs"}, "t2")
        _, done = _call("todo", {"action": "done", "task": "write tests"}, "t3")
        text = summarize_entries([add1, add2, done])
        assert "Open tasks:" in text
        assert "- update docs" in text
        assert "- write tests" not in text

    def test_carries_forward_earlier_summary(self):
        earlier = ConversationEntry(
            kind=EntryKind.SUMMARY, content=f"{SUMMARY_PREFIX}\nUser requests:\n- old request"
        )
        text = summarize_entries([earlier, _user("new request")])
        assert "old request" in text
        assert "new request" in text

    def test_malformed_arguments_are_skipped(self):
        tc = ToolCallRequest(id="x", name="view_file", arguments="{oops")
        entry = ConversationEntry(kind=EntryKind.TOOL_CALL, tool_calls=[tc])
        assert summarize_entries([entry]).startswith(SUMMARY_PREFIX)


class TestContextManager:
    def test_rejects_bad_limits(self):
        with pytest.raises(ValueError):
            ContextManager(max_entries=10, keep_recent=0)
        with pytest.raises(ValueError):
            ContextManager(max_entries=5, keep_recent=5)

    def test_no_compression_under_budget(self):
        cm = ContextManager(max_entries=10, keep_recent=3)
        for i in range(10):
            cm.append(_user(f"m{i}"))
        assert cm.check_and_compress() is None
        assert len(cm) == 10
        assert cm.summary == ""

    def test_compresses_oldest_keeps_system_and_recent(self):
        cm = ContextManager(max_entries=10, keep_recent=3)
        cm.append(ConversationEntry(kind=EntryKind.SYSTEM, content="sys"))
        for i in range(12):
            cm.append(_user(f"message {i}"))

        text = cm.check_and_compress()

        assert text is not None
        entries = cm.entries
        assert entries[0].kind == EntryKind.SYSTEM
        assert entries[1].kind == EntryKind.SUMMARY
        assert [e.content for e in entries[2:]] == ["message 9", "message 10", "message 11"]
        assert len(entries) == 5
        assert cm.summary == text
        assert cm.compressions == 1

    def test_default_limits_sixty_entries(self):
        cm = ContextManager()
        assert (cm.max_entries, cm.keep_recent) == (MAX_ENTRIES, KEEP_RECENT) == (50, 10)
        for i in range(60):
            cm.append(_user(f"message {i}"))

        assert cm.check_and_compress() is not None
        assert len(cm) == 11
        assert cm.entries[0].kind == EntryKind.SUMMARY
        assert [e.content for e in cm.entries[1:]] == [f"message {i}" for i in range(50, 60)]

        before = cm.entries
        assert cm.check_and_compress() is None
        assert cm.entries == before
        assert cm.compressions == 1

    def test_token_budget_triggers_compression(self):
        cm = ContextManager(max_entries=100, keep_recent=2, max_tokens=50)
        for _ in range(5):
            cm.append(_user("x" * 100))
        assert cm.over_budget()
        assert cm.check_and_compress() is not None
        assert len(cm) == 3

    def test_forced_compression_and_idempotence(self):
        cm = ContextManager(max_entries=50, keep_recent=2)
        for i in range(5):
            cm.append(_user(f"m{i}"))
        assert cm.check_and_compress(force=True) is not None
        before = cm.entries
        # Only the summary precedes the recent window now.
        assert cm.check_and_compress(force=True) is None
        assert cm.entries == before

    def test_clear_keeps_system(self):
        cm = ContextManager()
        cm.append(ConversationEntry(kind=EntryKind.SYSTEM, content="sys"))
        cm.append(_user("hi"))
        assert cm.clear() == 1
        assert [e.kind for e in cm.entries] == [EntryKind.SYSTEM]

    def test_clear_everything(self):
        cm = ContextManager()
        cm.append(ConversationEntry(kind=EntryKind.SYSTEM, content="sys"))
        cm.append(_user("hi"))
        assert cm.clear(keep_system=False) == 2
        assert len(cm) == 0


class TestToMessages:
    def test_roles_and_tool_pairing(self):
        cm = ContextManager()
        cm.append(ConversationEntry(kind=EntryKind.SYSTEM, content="sys"))
        cm.append(_user("hi"))
        tc, call = _call("bash", {"command": "ls"}, "c1")
        cm.append(call)
        cm.append(_result(tc, ToolResult.ok("a.txt")))
        cm.append(_assistant("done"))

        msgs = cm.to_messages()

        assert [m["role"] for m in msgs] == ["system", "user", "assistant", "tool", "assistant"]
        assert msgs[2]["tool_calls"][0]["id"] == "c1"
        assert msgs[3] == {"role": "tool", "tool_call_id": "c1", "content": "a.txt"}

    def test_agent_activity_is_not_sent(self):
        cm = ContextManager()
        cm.append(_user("hi"))
        cm.append(ConversationEntry(kind=EntryKind.AGENT_ACTIVITY, content="sub agent done"))
        assert [m["role"] for m in cm.to_messages()] == ["user"]

    def test_orphaned_result_becomes_user_note(self):
        cm = ContextManager(max_entries=3, keep_recent=1)
        tc, call = _call("view_file", {"path": "a.py"}, "c1")
        cm.append(_user("look"))
        cm.append(call)
        cm.append(_result(tc, ToolResult.ok("contents")))
        cm.append(_user("next"))
        cm.check_and_compress(force=True)
        cm.append(_result(tc, ToolResult.fail("late")))

        msgs = cm.to_messages()

        assert not any(m["role"] == "tool" for m in msgs)
        assert msgs[-1]["role"] == "user"
        assert msgs[-1]["content"].startswith("[earlier result of view_file]")

    def test_summary_is_system_message(self):
        cm = ContextManager(max_entries=3, keep_recent=1)
        for i in range(5):
            cm.append(_user(f"m{i}"))
        cm.check_and_compress()
        msgs = cm.to_messages()
        assert msgs[0]["role"] == "system"
        assert msgs[0]["content"].startswith(SUMMARY_PREFIX)
