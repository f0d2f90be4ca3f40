"""Generation progress: immutable task snapshots published to subscribers."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID
import logging


logger = logging.getLogger(__name__)


class GenerationTaskState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    DONE = "done"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GenerationTask:
    novel_id: UUID
    state: GenerationTaskState = GenerationTaskState.IDLE
    progress: int = 0
    step: str = ""
    current_chapter: Optional[int] = None
    total_chapters: int = 0
    message: Optional[str] = None
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "novel_id": self.novel_id,
            "state": self.state.value,
            "progress": self.progress,
            "step": self.step,
            "current_chapter": self.current_chapter,
            "total_chapters": self.total_chapters,
            "message": self.message,
            "updated_at": self.updated_at,
        }


TaskListener = Callable[[GenerationTask], None]


class GenerationTaskRegistry:
    """Process-wide store of the latest task snapshot per novel."""

    def __init__(self) -> None:
        self._tasks: Dict[UUID, GenerationTask] = {}
        self._listeners: Dict[UUID, List[TaskListener]] = {}

    def get(self, novel_id: UUID) -> GenerationTask:
        return self._tasks.get(novel_id) or GenerationTask(novel_id=novel_id)

    def subscribe(self, novel_id: UUID, listener: TaskListener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""
        self._listeners.setdefault(novel_id, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(novel_id, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def _publish(self, task: GenerationTask) -> GenerationTask:
        self._tasks[task.novel_id] = task
        for listener in list(self._listeners.get(task.novel_id, [])):
            try:
                listener(task)
            except Exception:
                logger.warning("Progress listener failed for novel %s", task.novel_id, exc_info=True)
        return task

    def start(self, novel_id: UUID, total_chapters: int) -> GenerationTask:
        return self._publish(
            GenerationTask(
                novel_id=novel_id,
                state=GenerationTaskState.ACTIVE,
                total_chapters=total_chapters,
                step="准备生成",
            )
        )

    def update(
        self,
        novel_id: UUID,
        step: str,
        progress: Optional[int] = None,
        current_chapter: Optional[int] = None,
    ) -> GenerationTask:
        task = self.get(novel_id)
        return self._publish(
            replace(
                task,
                state=GenerationTaskState.ACTIVE,
                step=step,
                progress=task.progress if progress is None else max(0, min(progress, 100)),
                current_chapter=task.current_chapter if current_chapter is None else current_chapter,
                updated_at=_now(),
            )
        )

    def finish(self, novel_id: UUID) -> GenerationTask:
        task = self.get(novel_id)
        return self._publish(
            replace(task, state=GenerationTaskState.DONE, progress=100, step="生成完成", updated_at=_now())
        )

    def fail(self, novel_id: UUID, message: str) -> GenerationTask:
        task = self.get(novel_id)
        return self._publish(
            replace(task, state=GenerationTaskState.FAILED, message=message, updated_at=_now())
        )

    def reporter(self, novel_id: UUID) -> Callable[..., GenerationTask]:
        """Callback bound to one novel, handed to the pipeline."""

        def report(step: str, progress: Optional[int] = None, current_chapter: Optional[int] = None) -> GenerationTask:
            return self.update(novel_id, step, progress=progress, current_chapter=current_chapter)

        return report


generation_tasks = GenerationTaskRegistry()
