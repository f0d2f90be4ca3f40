"""Events emitted on the outbound generation stream."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict
import json


@dataclass(frozen=True)
class GenerationEvent:
    type: ClassVar[str] = "event"

    def _payload(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, **self._payload()}

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.to_dict(), ensure_ascii=False)}\n\n"


@dataclass(frozen=True)
class StatusEvent(GenerationEvent):
    type: ClassVar[str] = "status"
    message: str = ""

    def _payload(self) -> Dict[str, Any]:
        return {"message": self.message}


@dataclass(frozen=True)
class ContentEvent(GenerationEvent):
    type: ClassVar[str] = "content"
    chunk: str = ""
    scene_index: int = 0

    def _payload(self) -> Dict[str, Any]:
        return {"chunk": self.chunk, "scene_index": self.scene_index}


@dataclass(frozen=True)
class ChapterEndEvent(GenerationEvent):
    type: ClassVar[str] = "chapter_end"
    chapter: Dict[str, Any] = field(default_factory=dict)

    def _payload(self) -> Dict[str, Any]:
        return {"data": self.chapter}


@dataclass(frozen=True)
class ErrorEvent(GenerationEvent):
    type: ClassVar[str] = "error"
    message: str = ""

    def _payload(self) -> Dict[str, Any]:
        return {"message": self.message}


TERMINAL_EVENT_TYPES = frozenset({ChapterEndEvent.type, ErrorEvent.type})
