"""Schemas for chapter generation requests and task snapshots."""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class GenerateChaptersRequest(BaseModel):
    """Generate ``count`` consecutive chapters, optionally starting at ``chapter_number``."""
    count: int = Field(default=1, ge=1, le=20)
    chapter_number: Optional[int] = Field(default=None, ge=1)
    instruction: Optional[str] = None


class GenerationTaskResponse(BaseModel):
    novel_id: UUID
    state: str
    progress: int = 0
    step: str = ""
    current_chapter: Optional[int] = None
    total_chapters: int = 0
    message: Optional[str] = None
    updated_at: Optional[datetime] = None
