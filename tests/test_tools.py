"""Tests for the local tools in tools.py."""

import os
import sys
import time

import pytest

from zai_cli.todo import TodoState
from zai_cli.tools import (
    MAX_INLINE_OUTPUT,
    MAX_LINE_LENGTH,
    MAX_OUTPUT_BYTES,
    SCRATCH_DIR,
    TOOLS,
    bash,
    build_local_tools,
    cleanup_old_cmd_outputs,
    create_file,
    safe_resolve,
    search,
    str_replace_editor,
    view_file,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")


# =========================================================================
# view_file
# =========================================================================


class TestViewFile:
    def test_read_existing_text_file(self, tmp_path):
        (tmp_path / "hello.txt").write_text("alpha\nbeta\ngamma\n", encoding="utf-8")
        result = view_file("hello.txt", str(tmp_path))
        assert result.success
        assert result.output == "1: alpha\n2: beta\n3: gamma"
        assert result.data["lines"] == 3

    def test_directory_listing(self, tmp_path):
        (tmp_path / "subdir").mkdir()
        (tmp_path / "file.txt").write_text("hi", encoding="utf-8")
        lines = view_file(".", str(tmp_path)).output.split("\n")
        assert "file.txt" in lines
        assert "subdir/" in lines

    def test_line_range_with_continuation_hint(self, tmp_path):
        (tmp_path / "nums.txt").write_text(
            "\n".join(f"line{i}" for i in range(1, 11)) + "\n", encoding="utf-8"
        )
        result = view_file("nums.txt", str(tmp_path), start_line=3, end_line=6)
        assert result.output.startswith("3: line3\n4: line4\n5: line5\n6: line6")
        assert "4 more lines, use start_line=7 to continue" in result.output

    def test_end_before_start(self, tmp_path):
        (tmp_path / "f.txt").write_text("a\nb\n")
        result = view_file("f.txt", str(tmp_path), start_line=5, end_line=2)
        assert not result.success
        assert "must not be before" in result.error

    def test_missing_path(self, tmp_path):
        result = view_file("nope.txt", str(tmp_path))
        assert not result.success
        assert "does not exist" in result.error

    def test_binary_file(self, tmp_path):
        (tmp_path / "bin.dat").write_bytes(b"abc\x00def")
        result = view_file("bin.dat", str(tmp_path))
        assert not result.success
        assert "binary" in result.error

    def test_non_utf8(self, tmp_path):
        (tmp_path / "latin.txt").write_bytes(b"caf\xe9\n")
        result = view_file("latin.txt", str(tmp_path))
        assert not result.success
        assert "UTF-8" in result.error

    def test_long_lines_truncated(self, tmp_path):
        (tmp_path / "long.txt").write_text("x" * (MAX_LINE_LENGTH + 500) + "\n")
        output = view_file("long.txt", str(tmp_path)).output
        assert len(output) == len("1: ") + MAX_LINE_LENGTH

    def test_output_capped(self, tmp_path):
        line = "y" * 100
        (tmp_path / "big.txt").write_text("\n".join([line] * 1000) + "\n")
        result = view_file("big.txt", str(tmp_path))
        body = result.output.rsplit("\n[", 1)[0]
        assert len(body.encode("utf-8")) <= MAX_OUTPUT_BYTES
        assert "more lines, use start_line=" in result.output


# =========================================================================
# create_file / str_replace_editor
# =========================================================================


class TestCreateFile:
    def test_create_new_file_with_parents(self, tmp_path):
        result = create_file("a/b/new.txt", "hello", str(tmp_path))
        assert result.success
        assert result.output.startswith("Created a/b/new.txt")
        assert (tmp_path / "a" / "b" / "new.txt").read_text() == "hello"

    def test_overwrite(self, tmp_path):
        (tmp_path / "f.txt").write_text("old")
        result = create_file("f.txt", "new", str(tmp_path))
        assert result.output.startswith("Overwrote")
        assert (tmp_path / "f.txt").read_text() == "new"

    def test_directory_target(self, tmp_path):
        (tmp_path / "d").mkdir()
        assert not create_file("d", "x", str(tmp_path)).success


class TestStrReplaceEditor:
    def test_simple_edit(self, tmp_path):
        (tmp_path / "code.py").write_text("x = 1\ny = 2\n")
        result = str_replace_editor("code.py", "x = 1", "x = 10", str(tmp_path))
        assert result.success
        assert (tmp_path / "code.py").read_text() == "x = 10\ny = 2\n"

    def test_replace_all(self, tmp_path):
        (tmp_path / "code.py").write_text("a\nb\na\n")
        str_replace_editor("code.py", "a", "c", str(tmp_path), replace_all=True)
        assert (tmp_path / "code.py").read_text() == "c\nb\nc\n"

    def test_missing_file(self, tmp_path):
        result = str_replace_editor("nope.py", "a", "b", str(tmp_path))
        assert not result.success
        assert "does not exist" in result.error

    def test_empty_old_str(self, tmp_path):
        (tmp_path / "f.txt").write_text("abc")
        assert "empty" in str_replace_editor("f.txt", "", "x", str(tmp_path)).error

    def test_not_found_and_multiple(self, tmp_path):
        (tmp_path / "f.txt").write_text("dup\ndup\n")
        assert str_replace_editor("f.txt", "zzz", "x", str(tmp_path)).error == "not found"
        assert "multiple matches" in str_replace_editor("f.txt", "dup", "x", str(tmp_path)).error
        assert (tmp_path / "f.txt").read_text() == "dup\ndup\n"


# =========================================================================
# Sandbox
# =========================================================================


class TestSandbox:
    def test_dotdot_escape_rejected(self, tmp_path):
        base = tmp_path / "base"
        base.mkdir()
        result = view_file("../secret.txt", str(base))
        assert not result.success
        assert "outside base directory" in result.error

    def test_symlink_escape_rejected(self, tmp_path):
        base = tmp_path / "base"
        base.mkdir()
        outside = tmp_path / "outside.txt"
        outside.write_text("secret")
        (base / "link.txt").symlink_to(outside)
        assert not view_file("link.txt", str(base)).success

    def test_absolute_path_outside_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            safe_resolve("/etc/passwd", str(tmp_path))

    def test_unrestricted_allows_outside(self, tmp_path):
        base = tmp_path / "base"
        base.mkdir()
        (tmp_path / "outside.txt").write_text("ok")
        result = view_file("../outside.txt", str(base), unrestricted=True)
        assert result.success

    def test_unrestricted_still_rejects_root(self, tmp_path):
        with pytest.raises(ValueError, match="filesystem root"):
            safe_resolve("/", str(tmp_path), unrestricted=True)

    def test_write_outside_rejected(self, tmp_path):
        base = tmp_path / "base"
        base.mkdir()
        assert not create_file("../evil.txt", "x", str(base)).success
        assert not (tmp_path / "evil.txt").exists()


# =========================================================================
# search
# =========================================================================


class TestSearch:
    def _tree(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.py").write_text("def main():\n    return helper()\n")
        (tmp_path / "src" / "helper.py").write_text("def helper():\n    return 1\n")
        (tmp_path / "README.md").write_text("Call helper() from main.\n")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "config").write_text("helper = true\n")

    def test_text_search(self, tmp_path):
        self._tree(tmp_path)
        result = search("def \\w+", str(tmp_path), search_type="text")
        assert result.output.startswith("Found 2 matches")
        assert "Line 1: def main():" in result.output
        assert ".git" not in result.output

    def test_include_pattern(self, tmp_path):
        self._tree(tmp_path)
        result = search("helper", str(tmp_path), search_type="text", include_pattern="*.md")
        assert "README.md" in result.output
        assert "main.py" not in result.output

    def test_file_search(self, tmp_path):
        self._tree(tmp_path)
        result = search("HELPER", str(tmp_path), search_type="files")
        assert result.output.startswith("Found 1 files")
        assert os.path.join("src", "helper.py") in result.output

    def test_case_sensitive(self, tmp_path):
        self._tree(tmp_path)
        result = search("HELPER", str(tmp_path), search_type="both", case_sensitive=True)
        assert result.output == "No results found for 'HELPER'."

    def test_newest_file_first(self, tmp_path):
        (tmp_path / "old.txt").write_text("needle\n")
        (tmp_path / "new.txt").write_text("needle\n")
        past = time.time() - 1000
        os.utime(tmp_path / "old.txt", (past, past))
        output = search("needle", str(tmp_path), search_type="text").output
        assert output.index("new.txt") < output.index("old.txt")

    def test_invalid_regex(self, tmp_path):
        result = search("(unclosed", str(tmp_path), search_type="text")
        assert not result.success
        assert "invalid regex" in result.error

    def test_invalid_regex_falls_back_to_literal_for_both(self, tmp_path):
        (tmp_path / "f.txt").write_text("call (unclosed here\n")
        result = search("(unclosed", str(tmp_path))
        assert "Line 1: call (unclosed here" in result.output

    def test_rejects_escaping_pattern(self, tmp_path):
        result = search("x", str(tmp_path), include_pattern="../*.py")
        assert not result.success
        assert "'..'" in result.error

    def test_invalid_search_type(self, tmp_path):
        assert not search("x", str(tmp_path), search_type="fuzzy").success

    def test_empty_query(self, tmp_path):
        assert not search("", str(tmp_path)).success


# =========================================================================
# bash
# =========================================================================


@posix_only
class TestBash:
    def test_success(self, tmp_path):
        result = bash("echo hello", str(tmp_path))
        assert result.success
        assert result.output.strip() == "hello"
        assert result.data == {"exit_code": 0}

    def test_runs_in_base_dir(self, tmp_path):
        (tmp_path / "marker.txt").write_text("")
        assert "marker.txt" in bash("ls", str(tmp_path)).output

    def test_non_zero_exit_is_failure(self, tmp_path):
        result = bash("echo oops >&2; exit 3", str(tmp_path))
        assert not result.success
        assert result.error.startswith("Exit code: 3")
        assert "oops" in result.error

    def test_timeout(self, tmp_path):
        result = bash("sleep 5", str(tmp_path), timeout=1)
        assert not result.success
        assert "timed out after 1s" in result.error

    def test_empty_command(self, tmp_path):
        assert not bash("  ", str(tmp_path)).success

    def test_large_output_saved_to_file(self, tmp_path):
        result = bash(f"head -c {MAX_INLINE_OUTPUT * 2} /dev/zero | tr '\\0' a", str(tmp_path))
        assert result.success
        assert "Full output saved to: .zai/cmd_output_" in result.output
        saved = list((tmp_path / SCRATCH_DIR).glob("cmd_output_*.txt"))
        assert len(saved) == 1
        assert saved[0].stat().st_size == MAX_INLINE_OUTPUT * 2

    def test_cleanup_old_outputs(self, tmp_path):
        scratch = tmp_path / SCRATCH_DIR
        scratch.mkdir()
        old = scratch / "cmd_output_old.txt"
        old.write_text("x")
        past = time.time() - 3600
        os.utime(old, (past, past))
        (scratch / "cmd_output_new.txt").write_text("y")

        assert cleanup_old_cmd_outputs(str(tmp_path)) == 1
        assert not old.exists()
        assert (scratch / "cmd_output_new.txt").exists()


# =========================================================================
# Registry
# =========================================================================


class TestRegistry:
    def test_every_schema_has_a_tool(self, tmp_path):
        tools = build_local_tools(str(tmp_path), TodoState())
        assert set(tools) == {t["function"]["name"] for t in TOOLS}
        assert set(tools) == {
            "view_file",
            "create_file",
            "str_replace_editor",
            "search",
            "bash",
            "todo",
        }

    def test_execute_binds_base_dir(self, tmp_path):
        tools = build_local_tools(str(tmp_path), TodoState())
        tools["create_file"].execute({"path": "x.txt", "content": "hi"})
        result = tools["view_file"].execute({"path": "x.txt"})
        assert result.output == "1: hi"

    def test_yolo_flag_reaches_tools(self, tmp_path):
        base = tmp_path / "base"
        base.mkdir()
        (tmp_path / "outside.txt").write_text("ok")
        strict = build_local_tools(str(base), TodoState())
        loose = build_local_tools(str(base), TodoState(), unrestricted=True)
        assert not strict["view_file"].execute({"path": "../outside.txt"}).success
        assert loose["view_file"].execute({"path": "../outside.txt"}).success
