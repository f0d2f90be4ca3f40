"""Text outline codec.

A plan is stored as one text blob: the macro blueprint (narrative stages)
and the detailed outline (one ``第N章:`` entry per chapter) joined by a
literal separator. The entries are written by a language model, so markers
are matched tolerantly and mis-numbered markers are repaired when the
surrounding sequence makes the intended number obvious.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
import logging
import re

from narrative_engine.domains.planning.domain.entities import (
    ChapterOutlineEntry,
    NarrativeStage,
    Plan,
)


logger = logging.getLogger(__name__)

DETAILED_HEADER = "**逐章细纲**"
LEGACY_MACRO_HEADER = "**宏观叙事规划**"
CURRENT_SEPARATOR = f"\n\n---\n{DETAILED_HEADER}\n---\n\n"

_CURRENT_SPLIT = re.compile(r"\s*---\s*\*\*逐章细纲\*\*\s*---\s*")
_LEGACY_SPLIT = re.compile(r"\s*---\s*\*\*宏观叙事规划\*\*\s*---\s*")

_MARKER_BODY = r"第\s*(\d+)\s*\.?\s*章[ \t]*[:：]?[ \t]*"
_LINE_MARKER = re.compile(r"(?m)^[ \t>#*\-]*" + _MARKER_BODY)
_ANY_MARKER = re.compile(_MARKER_BODY)
_LOOSE_MARKER = re.compile(
    r"第[^\d\n章]{0,4}(?:\d+|[一二三四五六七八九十百零〇两]+)[^\d\n章]{0,4}章[ \t]*[:：]?[ \t]*"
)

_STAGE_HEADER = re.compile(
    r"\*\*([^:：*\n]+)[:：]\s*([^(（*\n]+?)\s*[(（]\s*第\s*(\d+)\s*[-–~至到]\s*(\d+)\s*章\s*[)）]\s*\*\*"
)
_CORE_SUMMARY = re.compile(r"核心概述\s*[:：]\s*\**\s*([\s\S]*?)(?=\n\s*\n|\n\s*[-*]|$)")
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.、)])\s+")
_EXTRA_NEWLINES = re.compile(r"\n{3,}")
_TITLE_SEPARATORS = ("：", ":", " - ", "——", " — ")
_MAX_TITLE_CHARS = 30


@dataclass(frozen=True)
class _Marker:
    number: int
    start: int
    end: int


def mapping_score(number: int, target: int) -> int:
    """Score how plausibly a marker numbered ``number`` was meant to be ``target``."""
    if number == target:
        return 100
    if abs(number - target) == 1:
        return 80
    number_str, target_str = str(number), str(target)
    if len(number_str) >= 2 and number_str.startswith(target_str) and number_str.endswith(target_str):
        return 70
    if target >= 7 and number in (target * 10, target * 11):
        return 50
    if target >= 10 and number_str.startswith(target_str) and len(number_str) > len(target_str):
        return 30
    return 0


class OutlineCodec:
    """Parse and serialize plan text."""

    # --- plan segments -------------------------------------------------

    @staticmethod
    def split(plan_text: Optional[str]) -> Tuple[str, str]:
        """Return ``(macro, detailed)``."""
        text = plan_text or ""
        parts = _CURRENT_SPLIT.split(text, maxsplit=1)
        if len(parts) == 2:
            return parts[0].strip(), parts[1].strip()
        parts = _LEGACY_SPLIT.split(text, maxsplit=1)
        if len(parts) == 2:
            return parts[1].strip(), parts[0].strip()
        return "", text.strip()

    @staticmethod
    def join(macro: Optional[str], detailed: Optional[str]) -> str:
        macro = (macro or "").strip()
        detailed = (detailed or "").strip()
        if not macro:
            return detailed
        return f"{macro}{CURRENT_SEPARATOR}{detailed}"

    @classmethod
    def normalize(cls, plan_text: Optional[str]) -> str:
        return cls.join(*cls.split(plan_text))

    # --- macro blueprint ---------------------------------------------------

    @staticmethod
    def extract_stages(macro: Optional[str]) -> List[NarrativeStage]:
        text = macro or ""
        headers = list(_STAGE_HEADER.finditer(text))
        stages: List[NarrativeStage] = []
        for index, match in enumerate(headers):
            body_end = headers[index + 1].start() if index + 1 < len(headers) else len(text)
            body = text[match.end():body_end]
            start, end = int(match.group(3)), int(match.group(4))
            if end < start:
                start, end = end, start
            summary_match = _CORE_SUMMARY.search(body)
            core_summary = summary_match.group(1).strip().strip("*").strip() if summary_match else ""
            key_elements = [
                _BULLET.sub("", line).strip()
                for line in body.splitlines()
                if _BULLET.match(line) and "核心概述" not in line
            ]
            stages.append(
                NarrativeStage(
                    name=f"{match.group(1).strip()}: {match.group(2).strip()}",
                    start_chapter=start,
                    end_chapter=end,
                    core_summary=core_summary,
                    key_elements=[item for item in key_elements if item],
                )
            )
        return stages

    # --- detailed outline ------------------------------------------------

    @staticmethod
    def _find_markers(detailed: str) -> List[_Marker]:
        matches = list(_LINE_MARKER.finditer(detailed))
        if not matches:
            matches = list(_ANY_MARKER.finditer(detailed))
        return [_Marker(int(match.group(1)), match.start(), match.end()) for match in matches]

    @staticmethod
    def _in_sequence(number: int, previous: Optional[int], following: Optional[int]) -> bool:
        if previous is None and following is None:
            return True
        if previous is not None and number == previous + 1:
            return True
        if following is not None and number == following - 1:
            return True
        return previous is None and following is not None and number < following

    @classmethod
    def _resolve_numbers(cls, markers: List[_Marker]) -> List[int]:
        """Repair out-of-sequence marker numbers pinned down by their neighbours."""
        raw = [marker.number for marker in markers]
        resolved = list(raw)
        for index, number in enumerate(raw):
            previous = resolved[index - 1] if index > 0 else None
            following = raw[index + 1] if index + 1 < len(raw) else None
            if cls._in_sequence(number, previous, following):
                continue
            if previous is None:
                continue
            expected = previous + 1
            if following is not None and following != expected + 1:
                continue
            if following is None and abs(number - expected) == 1:
                continue
            if mapping_score(number, expected) > 0:
                logger.debug("Outline marker %s read as chapter %s", number, expected)
                resolved[index] = expected
        return resolved

    @staticmethod
    def _clean_body(body: str) -> str:
        return _EXTRA_NEWLINES.sub("\n\n", body).strip()

    @classmethod
    def make_entry(cls, number: int, body: str) -> ChapterOutlineEntry:
        text = cls._clean_body(body)
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        headline = lines[0] if lines else ""
        title = ""
        for separator in _TITLE_SEPARATORS:
            if separator in headline:
                head = headline.split(separator, 1)[0].strip(" *#")
                if 0 < len(head) <= _MAX_TITLE_CHARS:
                    title = head
                break
        if not title and len(lines) > 1 and len(headline) <= _MAX_TITLE_CHARS:
            title = headline.strip(" *#")
        events = [_BULLET.sub("", line).strip() for line in lines[1:] if _BULLET.match(line)]
        summary_lines = [line for line in lines if not _BULLET.match(line)]
        return ChapterOutlineEntry(
            number=number,
            title=title,
            summary="\n".join(summary_lines),
            key_events=[event for event in events if event],
            text=text,
        )

    @classmethod
    def _bodies(cls, detailed: str, markers: List[_Marker]) -> List[str]:
        bodies = []
        for index, marker in enumerate(markers):
            end = markers[index + 1].start if index + 1 < len(markers) else len(detailed)
            bodies.append(detailed[marker.end:end])
        return bodies

    @classmethod
    def parse_entries(cls, detailed: Optional[str]) -> Dict[int, ChapterOutlineEntry]:
        """Parse every entry of a detailed outline, keyed by chapter number."""
        text = detailed or ""
        markers = cls._find_markers(text)
        if not markers:
            return {}
        numbers = cls._resolve_numbers(markers)
        if any(b <= a for a, b in zip(numbers, numbers[1:])):
            # Numbering is corrupt: the Nth marker is chapter N, counted from
            # the first marker.
            first = max(numbers[0], 1)
            logger.info("Outline numbering %s is not increasing; entries numbered by position", numbers)
            numbers = [first + offset for offset in range(len(markers))]
        bodies = cls._bodies(text, markers)
        ordered = list(zip(numbers, bodies))

        # A chapter whose marker the tolerant pattern missed hides inside the
        # previous body; recover it when both neighbours are present.
        expanded: List[Tuple[int, str]] = []
        present = set(numbers)
        for index, (number, body) in enumerate(ordered):
            following = ordered[index + 1][0] if index + 1 < len(ordered) else None
            missing = number + 1
            if following == number + 2 and missing not in present:
                loose = _LOOSE_MARKER.search(body)
                if loose:
                    expanded.append((number, body[:loose.start()]))
                    expanded.append((missing, body[loose.end():]))
                    present.add(missing)
                    continue
            expanded.append((number, body))

        entries: Dict[int, ChapterOutlineEntry] = {}
        for number, body in expanded:
            if number < 1:
                continue
            entries[number] = cls.make_entry(number, body)
        return dict(sorted(entries.items()))

    @classmethod
    def extract_entry(cls, detailed: Optional[str], chapter_number: int) -> Optional[ChapterOutlineEntry]:
        """Look up one chapter, tolerating mis-rendered markers.

        Order: exact or tolerant marker, fuzzy renumbering, positional
        inference between neighbours, then the Nth marker when the numbering
        is corrupt. All of it happens in ``parse_entries`` so that a parsed
        ``Plan`` sees the same entries.
        """
        return cls.parse_entries(detailed).get(chapter_number)

    @staticmethod
    def render_entries(entries: Iterable[ChapterOutlineEntry]) -> str:
        return "\n\n".join(entry.render() for entry in sorted(entries, key=lambda item: item.number))

    # --- whole plan --------------------------------------------------------

    @classmethod
    def parse_plan(cls, plan_text: Optional[str]) -> Plan:
        macro, detailed = cls.split(plan_text)
        return Plan(
            macro=macro,
            stages=cls.extract_stages(macro),
            entries=cls.parse_entries(detailed),
        )

    @classmethod
    def render_plan(cls, plan: Plan) -> str:
        return cls.join(plan.macro, cls.render_entries(plan.entries.values()))
