"""Todo list tool for tracking work items across an agent session."""

import json
from dataclasses import dataclass
from pathlib import Path

from . import fmt
from .context import ToolResult

MAX_ITEMS = 50
MAX_ITEM_TEXT = 500
VALID_ACTIONS = {"add", "done", "remove", "clear", "list"}


@dataclass
class TodoItem:
    text: str
    done: bool = False


def _safe_todo_path(notes_dir: str) -> Path:
    """Build the todo file path and verify it resolves inside notes_dir."""
    base = Path(notes_dir).resolve()
    todo_path = (Path(notes_dir) / ".zai" / "todo.md").resolve()
    if not todo_path.is_relative_to(base):
        raise ValueError(f"todo path {todo_path} escapes base directory {base}")
    return todo_path


class TodoState:
    """Session todo list, mirrored to ``.zai/todo.md`` when notes_dir is set."""

    def __init__(self, notes_dir: str | None = None, verbose: bool = False):
        self.items: list[TodoItem] = []
        self.notes_dir = notes_dir
        self.verbose = verbose
        self.add_count = 0
        self.done_count = 0
        self._total_actions = 0

        # A todo file left by a previous session is stale.
        if notes_dir is not None:
            try:
                _safe_todo_path(notes_dir).unlink()
            except FileNotFoundError:
                pass
            except ValueError:
                self.notes_dir = None

    @property
    def remaining(self) -> int:
        return sum(1 for i in self.items if not i.done)

    def process(self, args: dict) -> ToolResult:
        action = args.get("action", "")
        if action not in VALID_ACTIONS:
            return ToolResult.fail(
                f"invalid action {action!r}, expected one of: {', '.join(sorted(VALID_ACTIONS))}"
            )

        self._total_actions += 1
        if action == "list":
            return self._response("list")
        if action == "clear":
            count = len(self.items)
            self.items.clear()
            self._save()
            self._report("cleared", f"{count} items removed")
            return self._response("clear")

        task = str(args.get("task") or "").strip()
        if not task:
            return ToolResult.fail(f"'{action}' requires a non-empty 'task' parameter")

        if action == "add":
            return self._add(task)
        if action == "done":
            return self._done(task)
        return self._remove(task)

    def _add(self, task: str) -> ToolResult:
        if len(task) > MAX_ITEM_TEXT:
            return ToolResult.fail(
                f"task text exceeds {MAX_ITEM_TEXT} character limit, please shorten it"
            )
        key = task.casefold()
        if any(i.text.casefold() == key for i in self.items):
            return self._response("add", note="already in list, no change made")
        if len(self.items) >= MAX_ITEMS:
            return ToolResult.fail(f"todo list full ({MAX_ITEMS} items max)")
        self.items.append(TodoItem(text=task))
        self.add_count += 1
        self._save()
        self._report("add", f"{task[:80]} ({self.remaining} remaining)")
        return self._response("add")

    def _done(self, task: str) -> ToolResult:
        match = self._match_item(task)
        if isinstance(match, ToolResult):
            return match
        if not match.done:
            match.done = True
            self.done_count += 1
            self._save()
        self._report("done", f"{match.text[:80]} ({self.remaining} remaining)")
        return self._response("done")

    def _remove(self, task: str) -> ToolResult:
        match = self._match_item(task)
        if isinstance(match, ToolResult):
            return match
        self.items.remove(match)
        self._save()
        self._report("remove", f"Removed: {match.text[:80]} ({self.remaining} remaining)")
        return self._response("remove")

    def _match_item(self, task: str) -> TodoItem | ToolResult:
        """Exact, then prefix, then substring match (case-insensitive)."""
        key = task.casefold()
        passes = (
            [i for i in self.items if i.text.casefold() == key],
            [i for i in self.items if i.text.casefold().startswith(key)],
            [i for i in self.items if key in i.text.casefold()],
        )
        for candidates in passes:
            if len(candidates) == 1:
                return candidates[0]
        ambiguous = next((c for c in passes if c), None)
        if ambiguous is None:
            return ToolResult.fail(f"no task matching '{task}'")
        items_str = "; ".join(f"'{i.text}'" for i in ambiguous[:5])
        return ToolResult.fail(
            f"'{task}' matches multiple items, be more specific: {items_str}"
        )

    def _response(self, action: str, note: str | None = None) -> ToolResult:
        payload = {
            "action": action,
            "total": len(self.items),
            "remaining": self.remaining,
            "items": [{"task": i.text, "done": i.done} for i in self.items],
        }
        if note:
            payload["note"] = note
        return ToolResult.ok(json.dumps(payload), data=payload)

    def _report(self, action: str, detail: str) -> None:
        if self.verbose:
            fmt.todo_update(action, detail)

    def _save(self) -> None:
        if self.notes_dir is None:
            return
        try:
            todo_path = _safe_todo_path(self.notes_dir)
            todo_path.parent.mkdir(parents=True, exist_ok=True)
            lines = [f"- [{'x' if i.done else ' '}] {i.text}" for i in self.items]
            todo_path.write_text(
                ("\n".join(lines) + "\n") if lines else "", encoding="utf-8"
            )
        except (ValueError, OSError):
            return

    def reset(self) -> None:
        """Reset all state. Used by REPL /clear."""
        self.items.clear()
        self.add_count = 0
        self.done_count = 0
        self._total_actions = 0
        if self.notes_dir is not None:
            try:
                _safe_todo_path(self.notes_dir).unlink(missing_ok=True)
            except ValueError:
                pass

    def summary_line(self) -> str | None:
        """One-line usage summary, or None if todo was never called."""
        if self._total_actions == 0:
            return None
        return f"todo: {self.add_count} added, {self.done_count} done, {self.remaining} remaining"
