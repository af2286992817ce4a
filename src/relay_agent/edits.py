"""Line-range replacement on in-memory documents.

`replace_lines` is the pure text operation. `LineEditor` pairs it with a
per-conversation LineOffsetTracker so that a batch of replacements, all
addressed in the document's original line numbers, land in the right
place as earlier ones shift the text.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from relay_agent.offsets import LineOffsetTracker

logger = logging.getLogger(__name__)

ELLIPSIS = "..."


@dataclass(frozen=True)
class LineReplaceResult:
    """Outcome of one replacement. ``content`` is unchanged on failure."""

    success: bool
    content: str
    first_line: int
    last_line: int
    lines_removed: int = 0
    lines_added: int = 0
    already_present: bool = False
    error: str | None = None


def replace_lines(
    content: str,
    first_line: int,
    last_line: int,
    replacement: str,
    *,
    search: str | None = None,
) -> LineReplaceResult:
    """Replace lines ``first_line..last_line`` (1-based, inclusive).

    If ``search`` is given it must match the target lines, ignoring
    indentation and blank lines; a line consisting of ``...`` matches any
    run of lines. When the search fails but the replacement text already
    sits at ``first_line``, the edit is reported as already applied.
    """
    lines = content.splitlines(keepends=True)

    def _fail(error: str) -> LineReplaceResult:
        logger.warning("Line replace %d-%d failed: %s", first_line, last_line, error)
        return LineReplaceResult(
            success=False, content=content, first_line=first_line, last_line=last_line, error=error
        )

    if first_line < 1 or last_line < first_line or last_line > len(lines):
        return _fail(f"invalid line range {first_line}-{last_line} for {len(lines)}-line document")

    if replacement and not replacement.endswith("\n"):
        replacement += "\n"
    new_lines = replacement.splitlines(keepends=True)
    target = lines[first_line - 1 : last_line]

    if search is not None and not _pattern_matches(search, "".join(target)):
        if lines[first_line - 1 : first_line - 1 + len(new_lines)] == new_lines and new_lines:
            logger.info("Replacement already present at line %d; no change", first_line)
            return LineReplaceResult(
                success=True,
                content=content,
                first_line=first_line,
                last_line=last_line,
                already_present=True,
            )
        return _fail("search pattern does not match target lines")

    updated = "".join(lines[: first_line - 1] + new_lines + lines[last_line:])
    return LineReplaceResult(
        success=True,
        content=updated,
        first_line=first_line,
        last_line=last_line,
        lines_removed=len(target),
        lines_added=len(new_lines),
    )


def _normalise(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def _pattern_matches(pattern: str, target: str) -> bool:
    wanted = _normalise(pattern)
    actual = _normalise(target)
    if ELLIPSIS not in wanted:
        return wanted == actual

    segments: list[list[str]] = [[]]
    for line in wanted:
        if line == ELLIPSIS:
            segments.append([])
        else:
            segments[-1].append(line)
    head, *middle, tail = segments

    if actual[: len(head)] != head:
        return False
    pos = len(head)
    for segment in middle:
        found = _find(actual, segment, pos)
        if found < 0:
            return False
        pos = found + len(segment)
    if not tail:
        return True
    start = len(actual) - len(tail)
    return start >= pos and actual[start:] == tail


def _find(haystack: list[str], needle: list[str], start: int) -> int:
    if not needle:
        return start
    for i in range(start, len(haystack) - len(needle) + 1):
        if haystack[i : i + len(needle)] == needle:
            return i
    return -1


class LineEditor:
    """Applies original-coordinate replacements through an offset tracker.

    A replacement is recorded only after it succeeds, so a failed or
    cancelled edit never leaves a partial record behind.
    """

    def __init__(self, tracker: LineOffsetTracker | None = None) -> None:
        self.tracker = tracker if tracker is not None else LineOffsetTracker()

    def replace(
        self,
        file_id: str,
        content: str,
        first_line: int,
        last_line: int,
        replacement: str,
        *,
        search: str | None = None,
    ) -> LineReplaceResult:
        current_first, current_last = first_line, last_line
        if self.tracker.is_tracking(file_id):
            current_first, current_last = self.tracker.adjust_range(file_id, first_line, last_line)
            if (current_first, current_last) != (first_line, last_line):
                logger.info(
                    "Line numbers adjusted for %s: %d-%d -> %d-%d",
                    file_id,
                    first_line,
                    last_line,
                    current_first,
                    current_last,
                )

        result = replace_lines(content, current_first, current_last, replacement, search=search)
        if result.success and not result.already_present:
            self.tracker.record(file_id, first_line, last_line, result.lines_added)
        return result

    def rewrite(self, file_id: str) -> None:
        """The file is being replaced wholesale; its offsets no longer apply."""
        self.tracker.clear(file_id)
