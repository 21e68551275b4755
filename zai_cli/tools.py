"""Local tool definitions and implementations, sandboxed to a base directory."""

import fnmatch
import os
import re
import subprocess
import sys
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Callable

from .context import ToolResult

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "view_file",
            "description": (
                "View the contents of a file or list a directory. "
                "For files, returns lines prefixed with line numbers. "
                "Use start_line/end_line to view a range. "
                "If output is truncated, a continuation hint shows the next line to view. "
                "For directories, returns a listing with / suffix for subdirectories."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path to the file or directory to view.",
                    },
                    "start_line": {
                        "type": "integer",
                        "description": "1-based first line to show. Defaults to 1.",
                        "minimum": 1,
                    },
                    "end_line": {
                        "type": "integer",
                        "description": "1-based last line to show (inclusive).",
                        "minimum": 1,
                    },
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "create_file",
            "description": (
                "Create a file with the given content, creating parent directories as needed. "
                "Overwrites an existing file; for targeted edits use str_replace_editor."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path to the file to create.",
                    },
                    "content": {
                        "type": "string",
                        "description": "The content to write to the file.",
                    },
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "str_replace_editor",
            "description": (
                "Make a targeted edit to an existing file by replacing old_str with new_str. "
                "Whitespace and indentation differences are tolerated when the exact text "
                "is not found."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path to the file to edit.",
                    },
                    "old_str": {
                        "type": "string",
                        "description": "The text to find and replace.",
                    },
                    "new_str": {
                        "type": "string",
                        "description": "The replacement text.",
                    },
                    "replace_all": {
                        "type": "boolean",
                        "description": "Replace all occurrences.",
                        "default": False,
                    },
                },
                "required": ["path", "old_str", "new_str"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search",
            "description": (
                "Search the project. search_type 'text' finds lines matching a regex, "
                "'files' finds files whose path contains the query, 'both' does both. "
                "Results are sorted by file modification time (newest first)."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "Regex (text search) or name fragment (file search).",
                    },
                    "search_type": {
                        "type": "string",
                        "enum": ["text", "files", "both"],
                        "default": "both",
                    },
                    "include_pattern": {
                        "type": "string",
                        "description": 'Glob pattern to filter filenames, e.g. "*.py".',
                    },
                    "case_sensitive": {
                        "type": "boolean",
                        "default": False,
                    },
                    "path": {
                        "type": "string",
                        "description": 'Directory to search in. Defaults to ".".',
                        "default": ".",
                    },
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "bash",
            "description": (
                "Run a shell command in the base directory and return its combined "
                "stdout/stderr. A non-zero exit status is reported as a failure."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The shell command to run.",
                    },
                    "timeout": {
                        "type": "integer",
                        "description": "Timeout in seconds (1-120). Defaults to 30.",
                        "default": 30,
                    },
                },
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "todo",
            "description": (
                "Track work items for this session. Actions: add, done, remove, clear, list. "
                "Items are matched case-insensitively by exact text, prefix or substring."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "action": {
                        "type": "string",
                        "enum": ["add", "done", "remove", "clear", "list"],
                    },
                    "task": {
                        "type": "string",
                        "description": "Task text (required for add, done, remove).",
                    },
                },
                "required": ["action"],
            },
        },
    },
]

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
DEFAULT_VIEW_LINES = 2000
MAX_SEARCH_RESULTS = 100

MAX_INLINE_OUTPUT = 10 * 1024  # 10KB, max output returned inline
MAX_FILE_OUTPUT = 1 * 1024 * 1024  # 1MB, max output saved to file
SCRATCH_DIR = ".zai"
OUTPUT_FILE_TTL = 600  # seconds before temp file cleanup
MAX_TIMEOUT = 120
_KILL_WAIT_TIMEOUT = 5


@dataclass
class LocalTool:
    """A tool executed in-process; ``handler`` maps an args dict to a ToolResult."""

    name: str
    schema: dict
    handler: Callable[[dict], ToolResult]

    def execute(self, args: dict) -> ToolResult:
        return self.handler(args)

    @property
    def required(self) -> list[str]:
        return self.schema["function"]["parameters"].get("required", [])


def safe_resolve(file_path: str, base_dir: str, unrestricted: bool = False) -> Path:
    """Resolve a file path, ensuring it stays within base_dir.

    Symlinks are resolved for both the base directory and the target.

    Raises:
        ValueError: If the resolved path escapes base_dir (when not unrestricted).
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if unrestricted:
        if resolved == Path(resolved.anchor):
            raise ValueError(
                f"Path {file_path!r} resolves to the filesystem root, "
                f"which is not allowed even in unrestricted mode"
            )
        return resolved

    if resolved.is_relative_to(base):
        return resolved
    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def _check_pattern(pattern: str) -> str | None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        return f"pattern {pattern!r} must be relative, not absolute"
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        return f"pattern {pattern!r} contains '..', which is not allowed"
    return None


def _rel(path: Path, base: Path) -> str:
    try:
        return str(path.relative_to(base))
    except ValueError:
        return str(path)


def _walk_files(root: Path, base: Path, unrestricted: bool):
    """Yield files under root, pruning .git and anything escaping base."""
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            filepath = Path(dirpath) / filename
            if not unrestricted:
                try:
                    if not filepath.resolve().is_relative_to(base):
                        continue
                except (OSError, ValueError):
                    continue
            yield filepath


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _join_capped(parts: list[str], note: str) -> str:
    """Join lines until MAX_OUTPUT_BYTES, appending ``note`` if cut short."""
    out: list[str] = []
    total = 0
    for part in parts:
        encoded_len = len(part.encode("utf-8")) + 1
        if total + encoded_len > MAX_OUTPUT_BYTES:
            out.append(note)
            break
        out.append(part)
        total += encoded_len
    return "\n".join(out)


# --- view_file / create_file / str_replace_editor --------------------------


def view_file(
    path: str,
    base_dir: str,
    start_line: int = 1,
    end_line: int | None = None,
    unrestricted: bool = False,
) -> ToolResult:
    """Read a file with line numbers, or list a directory."""
    try:
        resolved = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return ToolResult.fail(str(exc))

    if not resolved.exists():
        return ToolResult.fail(f"path does not exist: {path}")

    if resolved.is_dir():
        try:
            names = [
                child.name + ("/" if child.is_dir() else "")
                for child in sorted(resolved.iterdir())
            ]
        except PermissionError as exc:
            return ToolResult.fail(str(exc))
        return ToolResult.ok(_join_capped(names, "[truncated at 50KB]"))

    try:
        if _is_binary(resolved):
            return ToolResult.fail(f"binary file detected: {path}")
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        return ToolResult.fail(f"failed to decode {path} as UTF-8: {exc}")
    except OSError as exc:
        return ToolResult.fail(str(exc))

    lines = text.splitlines()
    start = max(int(start_line) - 1, 0)
    if end_line is None:
        end = start + DEFAULT_VIEW_LINES
    else:
        end = int(end_line)
        if end < start + 1:
            return ToolResult.fail(
                f"end_line ({end_line}) must not be before start_line ({start_line})"
            )

    output_parts = []
    total_bytes = 0
    emitted = 0
    for i, line in enumerate(lines[start:end], start=start + 1):
        numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
        encoded_len = len(numbered.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            break
        output_parts.append(numbered)
        total_bytes += encoded_len
        emitted += 1

    result = "\n".join(output_parts)
    remaining = len(lines) - (start + emitted)
    if remaining > 0:
        result += f"\n[{remaining} more lines, use start_line={start + emitted + 1} to continue]"
    return ToolResult.ok(result, data={"path": str(resolved), "lines": len(lines)})


def create_file(
    path: str, content: str, base_dir: str, unrestricted: bool = False
) -> ToolResult:
    """Create or overwrite a file with content."""
    try:
        resolved = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return ToolResult.fail(str(exc))
    if resolved.is_dir():
        return ToolResult.fail(f"path is a directory: {path}")

    existed = resolved.exists()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    verb = "Overwrote" if existed else "Created"
    return ToolResult.ok(f"{verb} {path} ({len(data)} bytes)", data={"path": str(resolved)})


def str_replace_editor(
    path: str,
    old_str: str,
    new_str: str,
    base_dir: str,
    replace_all: bool = False,
    unrestricted: bool = False,
) -> ToolResult:
    """Replace old_str with new_str in an existing file."""
    from .edit import replace

    try:
        resolved = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return ToolResult.fail(str(exc))

    if not resolved.is_file():
        return ToolResult.fail(f"file does not exist: {path}")
    if not old_str:
        return ToolResult.fail("old_str must not be empty")

    try:
        content = resolved.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        return ToolResult.fail(str(exc))

    try:
        new_content = replace(content, old_str, new_str, replace_all=replace_all)
    except ValueError as exc:
        return ToolResult.fail(str(exc))

    resolved.write_text(new_content, encoding="utf-8")
    return ToolResult.ok(f"Edited {path}", data={"path": str(resolved)})


# --- search -----------------------------------------------------------------


def _search_text(regex, root: Path, base: Path, include, unrestricted) -> list[str]:
    matches: list[tuple[Path, int, str, float]] = []
    for filepath in _walk_files(root, base, unrestricted):
        if include and not fnmatch.fnmatch(filepath.name, include):
            continue
        try:
            if _is_binary(filepath):
                continue
            text = filepath.read_text(encoding="utf-8")
            mtime = filepath.stat().st_mtime
        except (UnicodeDecodeError, OSError):
            continue
        for line_no, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                matches.append((filepath, line_no, line, mtime))

    if not matches:
        return []

    # Newest files first, so the cap keeps the most recently touched code.
    matches.sort(key=lambda m: (-m[3], m[0], m[1]))
    total_found = len(matches)
    matches = matches[:MAX_SEARCH_RESULTS]

    grouped: OrderedDict[Path, list[tuple[int, str]]] = OrderedDict()
    for filepath, line_no, line_text, _ in matches:
        grouped.setdefault(filepath, []).append((line_no, line_text))

    parts = [f"Found {total_found} matches"]
    for filepath, file_matches in grouped.items():
        parts.append(f"\n{_rel(filepath, base)}:")
        for line_no, line_text in file_matches:
            parts.append(f"  Line {line_no}: {line_text[:MAX_LINE_LENGTH]}")
    if total_found > MAX_SEARCH_RESULTS:
        parts.append(
            f"(Results truncated: showing first {MAX_SEARCH_RESULTS} matches. "
            "Use a more specific query or path.)"
        )
    return parts


def _search_files(query: str, root: Path, base: Path, include, case_sensitive, unrestricted) -> list[str]:
    needle = query if case_sensitive else query.casefold()
    found: list[tuple[Path, float]] = []
    for filepath in _walk_files(root, base, unrestricted):
        rel = _rel(filepath, base)
        if include and not fnmatch.fnmatch(filepath.name, include):
            continue
        hay = rel if case_sensitive else rel.casefold()
        if needle in hay:
            try:
                found.append((filepath, filepath.stat().st_mtime))
            except OSError:
                continue
    if not found:
        return []
    found.sort(key=lambda f: f[1], reverse=True)
    parts = [f"Found {len(found)} files"]
    parts.extend(_rel(f, base) for f, _ in found[:MAX_SEARCH_RESULTS])
    if len(found) > MAX_SEARCH_RESULTS:
        parts.append(f"(Results truncated: showing first {MAX_SEARCH_RESULTS} files.)")
    return parts


def search(
    query: str,
    base_dir: str,
    search_type: str = "both",
    include_pattern: str | None = None,
    case_sensitive: bool = False,
    path: str = ".",
    unrestricted: bool = False,
) -> ToolResult:
    """Search file contents and/or file names under path."""
    if not query:
        return ToolResult.fail("query must not be empty")
    if search_type not in ("text", "files", "both"):
        return ToolResult.fail(
            f"invalid search_type {search_type!r}, expected text, files or both"
        )
    if include_pattern is not None and not unrestricted:
        err = _check_pattern(include_pattern)
        if err:
            return ToolResult.fail(err)

    try:
        root = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return ToolResult.fail(str(exc))
    if not root.is_dir():
        return ToolResult.fail(f"path is not a directory: {path}")
    base = Path(base_dir).resolve()

    sections: list[str] = []
    if search_type in ("text", "both"):
        try:
            regex = re.compile(query, 0 if case_sensitive else re.IGNORECASE)
        except re.error:
            if search_type == "text":
                return ToolResult.fail(f"invalid regex {query!r}")
            regex = re.compile(re.escape(query), 0 if case_sensitive else re.IGNORECASE)
        sections.extend(_search_text(regex, root, base, include_pattern, unrestricted))
    if search_type in ("files", "both"):
        file_parts = _search_files(
            query, root, base, include_pattern, case_sensitive, unrestricted
        )
        if sections and file_parts:
            sections.append("")
        sections.extend(file_parts)

    if not sections:
        return ToolResult.ok(f"No results found for {query!r}.")
    return ToolResult.ok(_join_capped(sections, "[truncated at 50KB]"))


# --- bash -------------------------------------------------------------------


def cleanup_old_cmd_outputs(base_dir: str) -> int:
    """Remove cmd_output_* files older than OUTPUT_FILE_TTL from .zai/."""
    import time

    scratch = Path(base_dir) / SCRATCH_DIR
    if not scratch.is_dir():
        return 0
    cutoff = time.time() - OUTPUT_FILE_TTL
    removed = 0
    for f in scratch.glob("cmd_output_*.txt"):
        try:
            if f.stat().st_mtime < cutoff:
                f.unlink()
                removed += 1
        except OSError:
            continue
    return removed


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _save_large_output(output: str, base_dir: str) -> str:
    """Save large command output under .zai/ and return a pointer to it."""
    size_kb = len(output.encode("utf-8")) / 1024
    scratch = Path(base_dir) / SCRATCH_DIR
    filepath = scratch / f"cmd_output_{uuid.uuid4().hex[:12]}.txt"
    try:
        scratch.mkdir(parents=True, exist_ok=True)
        filepath.write_text(output, encoding="utf-8")
    except OSError:
        truncated = output.encode("utf-8")[:MAX_INLINE_OUTPUT].decode(
            "utf-8", errors="replace"
        )
        return truncated + "\n[output truncated, failed to save full output]"

    timer = threading.Timer(OUTPUT_FILE_TTL, lambda: filepath.unlink(missing_ok=True))
    timer.daemon = True
    timer.start()

    return (
        f"Command output too large for context ({size_kb:.1f}KB).\n"
        f"Full output saved to: {SCRATCH_DIR}/{filepath.name}\n"
        f"Use view_file to examine it (supports start_line and end_line)."
    )


def _capture_process(proc: subprocess.Popen, timeout: int) -> tuple[str, bool, bool]:
    """Drain a subprocess with timeout enforcement.

    Returns (output, timed_out, truncated).
    """
    chunks: list[bytes] = []
    total = 0
    truncated = False

    def _reader():
        nonlocal total, truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if truncated:
                    continue  # keep draining to prevent pipe backpressure
                chunks.append(chunk[: MAX_FILE_OUTPUT - total])
                total += len(chunks[-1])
                truncated = total >= MAX_FILE_OUTPUT
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    reader_thread.join(timeout=2)
    proc.stdout.close()
    return b"".join(chunks).decode("utf-8", errors="replace"), timed_out, truncated


def bash(command: str, base_dir: str, timeout: int = 30) -> ToolResult:
    """Run a shell string via sh -c (Unix) or cmd.exe /c (Windows)."""
    if not command or not command.strip():
        return ToolResult.fail("command must not be empty")
    base_path = Path(base_dir)
    if not base_path.is_dir():
        return ToolResult.fail(f"base directory is not a directory: {base_dir}")

    timeout = max(1, min(int(timeout), MAX_TIMEOUT))
    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return ToolResult.fail(f"failed to start shell command: {e}")

    output, timed_out, truncated = _capture_process(proc, timeout)
    if truncated:
        output += "\n[output truncated at 1MB]"
    if len(output.encode("utf-8")) > MAX_INLINE_OUTPUT:
        output = _save_large_output(output, base_dir)

    if timed_out:
        return ToolResult.fail(f"command timed out after {timeout}s\n{output}".rstrip())
    if proc.returncode != 0:
        return ToolResult.fail(f"Exit code: {proc.returncode}\n{output}".rstrip())
    return ToolResult.ok(output or "(no output)", data={"exit_code": 0})


# --- registry ---------------------------------------------------------------


def build_local_tools(base_dir: str, todo_state, unrestricted: bool = False) -> dict[str, LocalTool]:
    """Bind every local tool to ``base_dir`` and the session's todo list."""
    schemas = {t["function"]["name"]: t for t in TOOLS}
    handlers = {
        "view_file": lambda a: view_file(
            a["path"],
            base_dir,
            start_line=a.get("start_line") or 1,
            end_line=a.get("end_line"),
            unrestricted=unrestricted,
        ),
        "create_file": lambda a: create_file(
            a["path"], a["content"], base_dir, unrestricted=unrestricted
        ),
        "str_replace_editor": lambda a: str_replace_editor(
            a["path"],
            a["old_str"],
            a["new_str"],
            base_dir,
            replace_all=bool(a.get("replace_all", False)),
            unrestricted=unrestricted,
        ),
        "search": lambda a: search(
            a["query"],
            base_dir,
            search_type=a.get("search_type", "both"),
            include_pattern=a.get("include_pattern"),
            case_sensitive=bool(a.get("case_sensitive", False)),
            path=a.get("path", "."),
            unrestricted=unrestricted,
        ),
        "bash": lambda a: bash(a["command"], base_dir, timeout=a.get("timeout", 30)),
        "todo": todo_state.process,
    }
    return {
        name: LocalTool(name=name, schema=schemas[name], handler=handler)
        for name, handler in handlers.items()
    }
