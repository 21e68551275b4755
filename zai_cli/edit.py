"""String replacement engine behind the str_replace_editor tool.

``replace()`` tries exact matching first, then a line-window match that
ignores leading/trailing whitespace, then the same window with Unicode
punctuation folded to ASCII.
"""

from __future__ import annotations

import re
from typing import Callable

_UNICODE_SINGLE_QUOTES = re.compile(r"[\u2018\u2019\u201a\u201b]")
_UNICODE_DOUBLE_QUOTES = re.compile(r"[\u201c\u201d\u201e\u201f]")
_UNICODE_DASHES = re.compile(r"[\u2010\u2011\u2012\u2013\u2014\u2015]")


def _fold_unicode(s: str) -> str:
    """Map Unicode quotes, dashes, ellipsis and nbsp to ASCII."""
    s = _UNICODE_SINGLE_QUOTES.sub("'", s)
    s = _UNICODE_DOUBLE_QUOTES.sub('"', s)
    s = _UNICODE_DASHES.sub("-", s)
    return s.replace("\u2026", "...").replace("\u00a0", " ")


def _trimmed(line: str) -> str:
    return line.strip()


def _trimmed_folded(line: str) -> str:
    return _fold_unicode(line.strip())


def _line_window_spans(
    content: str, old_str: str, key: Callable[[str], str]
) -> list[tuple[int, int]]:
    """Character spans of every non-overlapping line window matching old_str.

    Lines are compared through ``key``. A span excludes the final newline
    unless old_str itself ends with one.
    """
    content_lines = content.split("\n")
    wanted = [key(line) for line in old_str.split("\n")]
    width = len(wanted)

    offsets = [0]
    for line in content_lines:
        offsets.append(offsets[-1] + len(line) + 1)

    spans = []
    i = 0
    while i <= len(content_lines) - width:
        if all(key(content_lines[i + j]) == wanted[j] for j in range(width)):
            start, end = offsets[i], offsets[i + width]
            if not old_str.endswith("\n"):
                end -= 1
            spans.append((start, min(end, len(content))))
            i += width
        else:
            i += 1
    return spans


def _splice(content: str, spans: list[tuple[int, int]], new_str: str) -> str:
    for start, end in reversed(spans):
        content = content[:start] + new_str + content[end:]
    return content


def replace(
    content: str,
    old_str: str,
    new_str: str,
    replace_all: bool = False,
) -> str:
    """Replace old_str with new_str in content.

    Raises ValueError with "no changes", "not found" or "multiple matches"
    (the latter only when replace_all is False). Fuzzy passes replace the
    matched region of the original text and insert new_str verbatim.
    """
    if old_str == new_str:
        raise ValueError("no changes")
    if not old_str:
        raise ValueError("old_str must not be empty")

    exact = content.count(old_str)
    if exact:
        if exact > 1 and not replace_all:
            raise ValueError(
                f"multiple matches ({exact}); add surrounding context or set replace_all"
            )
        return content.replace(old_str, new_str, -1 if replace_all else 1)

    for key in (_trimmed, _trimmed_folded):
        spans = _line_window_spans(content, old_str, key)
        if not spans:
            continue
        if len(spans) > 1 and not replace_all:
            raise ValueError(
                f"multiple matches ({len(spans)}); add surrounding context or set replace_all"
            )
        return _splice(content, spans if replace_all else spans[:1], new_str)

    raise ValueError("not found")
