"""
The bounded list of summaries owned by one context governor.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True)
class CompressionEntry:
    """One summary.

    ``merged_from`` lists the sequence numbers folded into a merged entry.
    """

    sequence: int
    summary: str
    merged_from: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "summary": self.summary,
            "merged_from": list(self.merged_from),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompressionEntry":
        return cls(
            sequence=int(data["sequence"]),
            summary=str(data["summary"]),
            merged_from=tuple(data.get("merged_from") or ()),
        )


@dataclass
class CompressionRecord:
    """Ordered summaries, oldest first, never longer than ``max_count``."""

    max_count: int = 5
    entries: list[CompressionEntry] = field(default_factory=list)
    compression_count: int = 0
    merge_count: int = 0
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.max_count < 2:
            raise ValueError("max_count must be at least 2")
        if len(self.entries) > self.max_count:
            raise ValueError(
                f"Record holds {len(self.entries)} entries, more than max_count={self.max_count}"
            )

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def is_full(self) -> bool:
        return len(self.entries) >= self.max_count

    @property
    def summaries(self) -> list[str]:
        return [entry.summary for entry in self.entries]

    @property
    def next_sequence(self) -> int:
        return self.compression_count + 1

    def appended(self, summary: str) -> "CompressionRecord":
        """Return a copy with a new entry; the record must not be full."""
        if self.is_full:
            raise ValueError("Record is full; merge the oldest entries first")
        entry = CompressionEntry(sequence=self.next_sequence, summary=summary)
        return replace(
            self,
            entries=[*self.entries, entry],
            compression_count=self.compression_count + 1,
            updated_at=datetime.now(timezone.utc),
        )

    def merged_oldest(self, summary: str) -> "CompressionRecord":
        """Return a copy with the two oldest entries replaced by ``summary``."""
        if len(self.entries) < 2:
            raise ValueError("Need at least two entries to merge")
        first, second = self.entries[0], self.entries[1]
        merged = CompressionEntry(
            sequence=first.sequence,
            summary=summary,
            merged_from=(
                *(first.merged_from or (first.sequence,)),
                *(second.merged_from or (second.sequence,)),
            ),
        )
        return replace(
            self,
            entries=[merged, *self.entries[2:]],
            merge_count=self.merge_count + 1,
            updated_at=datetime.now(timezone.utc),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_count": self.max_count,
            "entries": [entry.to_dict() for entry in self.entries],
            "compression_count": self.compression_count,
            "merge_count": self.merge_count,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], max_count: int | None = None) -> "CompressionRecord":
        """Rebuild a record; ``max_count`` overrides the stored bound.

        When the new bound is smaller than the stored entry count, the
        newest entries are kept.
        """
        bound = max_count or int(data.get("max_count", 5))
        entries = [CompressionEntry.from_dict(e) for e in data.get("entries", [])]
        updated_at = data.get("updated_at")
        return cls(
            max_count=bound,
            entries=entries[-bound:],
            compression_count=int(data.get("compression_count", len(entries))),
            merge_count=int(data.get("merge_count", 0)),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )
