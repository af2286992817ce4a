"""Line offset tracking for sequential partial edits.

When the model issues several line-range replacements against one file in
a single pass, every range is expressed in the file's *original* line
numbers. Each applied replacement shifts everything below it, so later
ranges must be remapped before they are applied. This module does that
remapping. It is pure: no I/O, no file contents, just coordinates.

A reference that lands inside an already replaced range cannot be mapped
exactly. It snaps to the first line of the replacement region and an
OffsetAmbiguityWarning is issued. Overlapping replacement ranges are not
handled beyond that snap.
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field
from typing import Any

from relay_stream.errors import OffsetAmbiguityWarning

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EditRecord:
    """One completed replacement. Never mutated once stored."""

    file_id: str
    original_first: int
    original_last: int
    adjusted_first: int
    adjusted_last: int
    line_delta: int
    timestamp: float = field(default_factory=time.time)

    @property
    def label(self) -> str:
        return f"L{self.original_first}-{self.original_last}({self.line_delta:+d})"


class LineOffsetTracker:
    """Maps original line numbers to current ones, per file.

    Records are kept in insertion order but always walked in ascending
    order of their original first line.
    """

    def __init__(self) -> None:
        self._records: dict[str, list[EditRecord]] = {}

    def record(
        self, file_id: str, original_first: int, original_last: int, new_line_count: int
    ) -> EditRecord:
        """Store a completed replacement of ``original_first..original_last``.

        The range is remapped through the records that already exist for
        this file; the new record does not take part in its own remap.
        """
        if original_last < original_first:
            raise ValueError(f"invalid line range {original_first}-{original_last}")
        if new_line_count < 0:
            raise ValueError("new_line_count must be >= 0")

        prior = self._records.get(file_id, [])
        record = EditRecord(
            file_id=file_id,
            original_first=original_first,
            original_last=original_last,
            adjusted_first=self._adjust(file_id, prior, original_first),
            adjusted_last=self._adjust(file_id, prior, original_last),
            line_delta=new_line_count - (original_last - original_first + 1),
        )
        self._records.setdefault(file_id, []).append(record)

        logger.info(
            "Recorded replacement for %s: original %d-%d, adjusted %d-%d, delta %+d",
            file_id,
            record.original_first,
            record.original_last,
            record.adjusted_first,
            record.adjusted_last,
            record.line_delta,
        )
        return record

    def adjust(self, file_id: str, line_number: int) -> int:
        """Map an original line number to its current position."""
        return self._adjust(file_id, self._records.get(file_id, []), line_number)

    def adjust_range(self, file_id: str, first_line: int, last_line: int) -> tuple[int, int]:
        return self.adjust(file_id, first_line), self.adjust(file_id, last_line)

    def cumulative_offset(self, file_id: str, line_number: int) -> int:
        """Sum of deltas from every replacement that ends above ``line_number``.

        Unlike `adjust`, this never snaps.
        """
        return sum(
            r.line_delta for r in self._records.get(file_id, []) if line_number > r.original_last
        )

    def is_tracking(self, file_id: str) -> bool:
        return file_id in self._records

    def records(self, file_id: str) -> list[EditRecord]:
        """Records for a file, in insertion order."""
        return list(self._records.get(file_id, []))

    def summary(self, file_id: str) -> dict[str, Any] | None:
        records = self._records.get(file_id)
        if records is None:
            return None
        return {
            "file_id": file_id,
            "replacement_count": len(records),
            "total_line_change": sum(r.line_delta for r in records),
            "replacements": list(records),
        }

    def clear(self, file_id: str) -> None:
        """Forget a file, e.g. before a whole-file rewrite."""
        if self._records.pop(file_id, None) is not None:
            logger.info("Cleared offsets for %s", file_id)

    def clear_all(self) -> None:
        self._records.clear()
        logger.info("Cleared all offset tracking")

    # ------------------------------------------------------------------ #

    def _adjust(self, file_id: str, records: list[EditRecord], line_number: int) -> int:
        if not records:
            return line_number

        adjusted = line_number
        ordered = sorted(records, key=lambda r: r.original_first)
        for record in ordered:
            if line_number > record.original_last:
                adjusted += record.line_delta
            elif record.original_first <= line_number <= record.original_last:
                message = (
                    f"{file_id}: line {line_number} is inside replaced range "
                    f"{record.original_first}-{record.original_last}; "
                    f"snapping to {record.adjusted_first}"
                )
                logger.warning(message)
                warnings.warn(message, OffsetAmbiguityWarning, stacklevel=3)
                adjusted = record.adjusted_first
                break

        if adjusted != line_number:
            logger.debug(
                "%s: adjusted line %d -> %d (%s)",
                file_id,
                line_number,
                adjusted,
                ", ".join(r.label for r in ordered),
            )
        return adjusted
