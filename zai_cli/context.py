"""Conversation transcript, size estimation and summary-based compression.

The transcript is an append-only list of ConversationEntry values. When it
grows past a high-water mark, the oldest entries are replaced in place by a
single synthetic summary entry whose text is derived deterministically from
the discarded entries (tool names, file paths, success/failure flags). No
model call is involved, so compression cannot fail.
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .errors import ToolArgumentError

logger = logging.getLogger(__name__)

MAX_ENTRIES = 50
KEEP_RECENT = 10
CHARS_PER_TOKEN = 4

SUMMARY_PREFIX = "[Context summary of earlier conversation]"
MAX_SUMMARY_ITEMS = 8
MAX_SNIPPET = 160

_PATH_ARG_KEYS = ("path", "file_path", "filename", "target", "directory")
_PATH_IN_TEXT_RE = re.compile(
    r"(?<![\w/.-])((?:\.{0,2}/)?(?:[\w.-]+/)*[\w-]+\.[A-Za-z][A-Za-z0-9]{0,7})(?![\w/])"
)


class EntryKind(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    AGENT_ACTIVITY = "agent_activity"
    SUMMARY = "summary"


@dataclass
class ToolCallRequest:
    """One tool invocation requested by the model.

    ``arguments`` is the raw JSON text as produced by the model; the target
    tool validates its content, the core only checks that it parses.
    """

    id: str
    name: str
    arguments: str = "{}"

    @classmethod
    def new(cls, name: str, arguments: dict | str | None = None) -> "ToolCallRequest":
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        return cls(id=f"call_{uuid.uuid4().hex[:24]}", name=name, arguments=arguments or "{}")

    def parse_arguments(self) -> dict:
        raw = self.arguments
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return {}
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise ToolArgumentError(f"invalid JSON in tool arguments: {e}") from e
        if not isinstance(parsed, dict):
            raise ToolArgumentError(
                f"tool arguments must be a JSON object, got {type(parsed).__name__}"
            )
        return parsed

    def to_openai(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }


@dataclass
class ToolResult:
    success: bool
    output: str = ""
    error: str = ""
    data: Any = None

    @classmethod
    def ok(cls, output: str, data: Any = None) -> "ToolResult":
        return cls(success=True, output=output, data=data)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)

    def as_text(self) -> str:
        """Model-facing rendering of the result."""
        if self.success:
            return self.output if self.output else "(empty result)"
        return f"error: {self.error}" if self.error else "error: tool failed"


@dataclass
class ConversationEntry:
    kind: EntryKind
    content: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    tool_calls: list[ToolCallRequest] | None = None
    tool_call: ToolCallRequest | None = None
    tool_result: ToolResult | None = None
    aborted: bool = False
    agent_info: dict | None = None


def _entry_text(entry: ConversationEntry) -> str:
    if entry.tool_result is not None:
        return entry.tool_result.output or entry.tool_result.error or ""
    parts = [entry.content or ""]
    for tc in entry.tool_calls or ():
        parts.append(tc.name)
        parts.append(tc.arguments or "")
    return "".join(parts)


def estimate_tokens(entries) -> int:
    """Coarse token estimate: total characters divided by CHARS_PER_TOKEN."""
    return sum(len(_entry_text(e)) for e in entries) // CHARS_PER_TOKEN


def _snippet(text: str, limit: int = MAX_SNIPPET) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _add_unique(items: list, value) -> None:
    if value and value not in items:
        items.append(value)


def summarize_entries(entries: list[ConversationEntry]) -> str:
    """Build the summary text for a run of discarded entries.

    Facts kept: user requests, files touched, tool usage with
    success/failure counts, failures, open todo items, assistant
    conclusions and the body of any earlier summary.
    """
    requests: list[str] = []
    files: list[str] = []
    tool_stats: dict[str, list[int]] = {}
    failures: list[str] = []
    conclusions: list[str] = []
    todos: list[str] = []
    earlier: list[str] = []

    for entry in entries:
        if entry.kind == EntryKind.SUMMARY:
            body = entry.content.removeprefix(SUMMARY_PREFIX).strip()
            if body:
                earlier.append(body)
        elif entry.kind == EntryKind.USER:
            _add_unique(requests, _snippet(entry.content))
            for m in _PATH_IN_TEXT_RE.findall(entry.content or ""):
                _add_unique(files, m)
        elif entry.kind == EntryKind.ASSISTANT:
            if entry.content and entry.content.strip():
                conclusions.append(_snippet(entry.content))
        elif entry.kind == EntryKind.TOOL_CALL:
            for tc in entry.tool_calls or ():
                try:
                    args = tc.parse_arguments()
                except ToolArgumentError:
                    continue
                for key in _PATH_ARG_KEYS:
                    if isinstance(args.get(key), str):
                        _add_unique(files, args[key])
                if tc.name == "todo":
                    task = str(args.get("task", "")).strip()
                    action = args.get("action")
                    if action == "add":
                        _add_unique(todos, task)
                    elif action in ("done", "remove") and task in todos:
                        todos.remove(task)
                    elif action == "clear":
                        todos.clear()
        elif entry.kind == EntryKind.TOOL_RESULT:
            result = entry.tool_result
            name = entry.tool_call.name if entry.tool_call else "unknown"
            stats = tool_stats.setdefault(name, [0, 0])
            if result is not None and result.success:
                stats[0] += 1
            else:
                stats[1] += 1
                reason = (result.error if result is not None else "") or "no result"
                _add_unique(failures, f"{name}: {_snippet(reason.splitlines()[0])}")

    lines = [SUMMARY_PREFIX, f"{len(entries)} earlier entries were compressed."]
    if earlier:
        lines.append("Earlier context:")
        carried = [line for body in earlier for line in body.splitlines()]
        lines.extend(f"  {line}" for line in carried[-MAX_SUMMARY_ITEMS * 4 :])
    if requests:
        lines.append("User requests:")
        lines.extend(f"- {r}" for r in requests[-MAX_SUMMARY_ITEMS:])
    if files:
        lines.append("Files touched: " + ", ".join(files[-MAX_SUMMARY_ITEMS * 2 :]))
    if tool_stats:
        usage = ", ".join(
            f"{name} ({ok} ok, {bad} failed)" for name, (ok, bad) in tool_stats.items()
        )
        lines.append(f"Tools used: {usage}")
    if failures:
        lines.append("Failures encountered:")
        lines.extend(f"- {f}" for f in failures[-MAX_SUMMARY_ITEMS:])
    if todos:
        lines.append("Open tasks:")
        lines.extend(f"- {t}" for t in todos[-MAX_SUMMARY_ITEMS:])
    if conclusions:
        lines.append("Decisions and findings:")
        lines.extend(f"- {c}" for c in conclusions[-(MAX_SUMMARY_ITEMS // 2) :])
    return "\n".join(lines)


class ContextManager:
    """Owns the transcript and keeps it within budget."""

    def __init__(
        self,
        max_entries: int = MAX_ENTRIES,
        keep_recent: int = KEEP_RECENT,
        max_tokens: int | None = None,
    ):
        if keep_recent < 1:
            raise ValueError("keep_recent must be at least 1")
        if keep_recent >= max_entries:
            raise ValueError("keep_recent must be smaller than max_entries")
        self.max_entries = max_entries
        self.keep_recent = keep_recent
        self.max_tokens = max_tokens
        self._entries: list[ConversationEntry] = []
        self._summary = ""
        self.compressions = 0

    @property
    def entries(self) -> tuple[ConversationEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def summary(self) -> str:
        """Text of the most recently produced summary ("" if none)."""
        return self._summary

    def append(self, entry: ConversationEntry) -> None:
        self._entries.append(entry)

    def estimate_tokens(self, entries=None) -> int:
        return estimate_tokens(self._entries if entries is None else entries)

    def over_budget(self) -> bool:
        if len(self._entries) > self.max_entries:
            return True
        return self.max_tokens is not None and self.estimate_tokens() > self.max_tokens

    def check_and_compress(self, force: bool = False) -> str | None:
        """Compress the oldest entries into a summary if over budget.

        Returns the summary text when a compression happened, else None.
        """
        if not force and not self.over_budget():
            return None

        start = 1 if self._entries and self._entries[0].kind == EntryKind.SYSTEM else 0
        cut = max(start, len(self._entries) - self.keep_recent)
        discarded = self._entries[start:cut]
        if not any(e.kind != EntryKind.SUMMARY for e in discarded):
            return None

        tokens_before = self.estimate_tokens()
        text = summarize_entries(discarded)
        self._entries[start:cut] = [ConversationEntry(kind=EntryKind.SUMMARY, content=text)]
        self._summary = text
        self.compressions += 1
        logger.debug(
            "compressed %d entries into a summary (~%d -> ~%d tokens)",
            len(discarded),
            tokens_before,
            self.estimate_tokens(),
        )
        return text

    def clear(self, keep_system: bool = True) -> int:
        """Drop the conversation, optionally keeping the leading system entry."""
        keep = []
        if keep_system and self._entries and self._entries[0].kind == EntryKind.SYSTEM:
            keep = self._entries[:1]
        dropped = len(self._entries) - len(keep)
        self._entries[:] = keep
        self._summary = ""
        return dropped

    def to_messages(self) -> list[dict]:
        """Render the transcript as OpenAI chat messages."""
        messages: list[dict] = []
        open_calls: set[str] = set()
        for entry in self._entries:
            kind = entry.kind
            if kind == EntryKind.SYSTEM:
                messages.append({"role": "system", "content": entry.content})
            elif kind == EntryKind.SUMMARY:
                messages.append({"role": "system", "content": entry.content})
            elif kind == EntryKind.USER:
                messages.append({"role": "user", "content": entry.content})
            elif kind == EntryKind.ASSISTANT:
                messages.append({"role": "assistant", "content": entry.content or ""})
            elif kind == EntryKind.TOOL_CALL:
                calls = entry.tool_calls or []
                messages.append(
                    {
                        "role": "assistant",
                        "content": entry.content or None,
                        "tool_calls": [tc.to_openai() for tc in calls],
                    }
                )
                open_calls.update(tc.id for tc in calls)
            elif kind == EntryKind.TOOL_RESULT:
                tc = entry.tool_call
                text = entry.tool_result.as_text() if entry.tool_result else "error: no result"
                if tc is not None and tc.id in open_calls:
                    messages.append({"role": "tool", "tool_call_id": tc.id, "content": text})
                else:
                    name = tc.name if tc else "unknown"
                    messages.append(
                        {"role": "user", "content": f"[earlier result of {name}]\n{text}"}
                    )
        return messages
