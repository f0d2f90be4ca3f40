"""Planning domain entities: narrative stages and the per-chapter outline."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional


@dataclass(frozen=True)
class NarrativeStage:
    """One stage of the macro blueprint, covering an inclusive chapter range."""

    name: str
    start_chapter: int
    end_chapter: int
    core_summary: str = ""
    key_elements: List[str] = field(default_factory=list)

    def contains(self, chapter_number: int) -> bool:
        return self.start_chapter <= chapter_number <= self.end_chapter

    @property
    def length(self) -> int:
        return max(self.end_chapter - self.start_chapter + 1, 1)


@dataclass(frozen=True)
class ChapterOutlineEntry:
    number: int
    title: str
    summary: str
    key_events: List[str] = field(default_factory=list)
    text: str = ""

    def render(self) -> str:
        body = self.text or self.summary
        return f"第{self.number}章: {body}".rstrip()


@dataclass
class Plan:
    """Structured form of a novel's plan.

    ``macro`` keeps the blueprint text verbatim so it survives a round trip
    untouched; ``entries`` is keyed by chapter number and kept sorted.
    """

    macro: str = ""
    stages: List[NarrativeStage] = field(default_factory=list)
    entries: Dict[int, ChapterOutlineEntry] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.entries = dict(sorted(self.entries.items()))

    def get(self, chapter_number: int) -> Optional[ChapterOutlineEntry]:
        return self.entries.get(chapter_number)

    @property
    def last_chapter_number(self) -> int:
        return max(self.entries) if self.entries else 0

    def remaining_after(self, chapter_number: int) -> int:
        return sum(1 for number in self.entries if number > chapter_number)

    def future_entries(self, after_chapter: int) -> List[ChapterOutlineEntry]:
        return [entry for number, entry in self.entries.items() if number > after_chapter]

    def recent_entries(self, limit: int) -> List[ChapterOutlineEntry]:
        if limit <= 0:
            return []
        return list(self.entries.values())[-limit:]

    def with_entries(self, entries: Iterable[ChapterOutlineEntry]) -> "Plan":
        """Return a copy with ``entries`` added; existing numbers are kept."""
        merged = dict(self.entries)
        for entry in entries:
            merged.setdefault(entry.number, entry)
        return Plan(macro=self.macro, stages=list(self.stages), entries=merged)

    def with_future(
        self,
        after_chapter: int,
        revised: Iterable[ChapterOutlineEntry],
        keep_beyond: Optional[int] = None,
    ) -> "Plan":
        """Return a copy whose entries after ``after_chapter`` are ``revised``.

        Entries numbered above ``keep_beyond`` survive the replacement so that
        chapters appended after the revision was prepared are not lost.
        """
        merged = {number: entry for number, entry in self.entries.items() if number <= after_chapter}
        for entry in revised:
            if entry.number > after_chapter:
                merged[entry.number] = entry
        if keep_beyond is not None:
            for number, entry in self.entries.items():
                if number > keep_beyond and number not in merged:
                    merged[number] = entry
        return Plan(macro=self.macro, stages=list(self.stages), entries=merged)
