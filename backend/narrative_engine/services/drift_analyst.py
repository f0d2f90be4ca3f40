"""Drift analyst: extract facts established by written prose."""
from __future__ import annotations

from typing import Optional
import logging

from pydantic import ValidationError as PydanticValidationError

from narrative_engine.core.config import settings
from narrative_engine.domains.world.domain.entities import DriftReport
from narrative_engine.schemas.drift import DRIFT_JSON_SHAPE, DriftReportPayload
from narrative_engine.services.llm_client import DeepSeekClient
from narrative_engine.services.llm_output import extract_json_object
from narrative_engine.shared_kernel.exceptions import MalformedOutputError


logger = logging.getLogger(__name__)


def clip_text(text: str, limit: int) -> str:
    """Keep the last ``limit`` characters of ``text``."""
    if limit <= 0 or len(text) <= limit:
        return text
    return text[-limit:]


class DriftAnalyst:
    """Ask the model for a DriftReport and validate it."""

    def __init__(self, llm_client: Optional[DeepSeekClient] = None) -> None:
        self.llm_client = llm_client or DeepSeekClient()

    async def analyze(self, chapter_text: str) -> DriftReport:
        """Single extraction call. Raises ``MalformedOutputError`` on unusable output."""
        prompt = self._build_prompt(clip_text(chapter_text, settings.RECONCILIATION_CHAPTER_MAX_CHARS))
        response = await self.llm_client.chat(
            messages=[{"role": "user", "content": prompt}],
            temperature=0.3,
            max_tokens=settings.DRIFT_MAX_TOKENS,
            response_format={"type": "json_object"},
        )
        return self.parse(response)

    @staticmethod
    def parse(response: Optional[str]) -> DriftReport:
        payload = extract_json_object(response)
        if payload is None:
            raise MalformedOutputError("Drift report is not a JSON object", code="MALFORMED_JSON")
        try:
            return DriftReportPayload.model_validate(payload).to_report()
        except PydanticValidationError as exc:
            raise MalformedOutputError(
                "Drift report failed validation",
                code="INVALID_DRIFT_REPORT",
                details={"errors": exc.errors(include_url=False)},
            ) from exc

    @staticmethod
    def _build_prompt(chapter_text: str) -> str:
        return (
            "你是一位专业的剧情分析师。请仔细阅读以下小说内容，识别其中新出现的、"
            "或者与已知设定相比发生了显著变化的世界元素，以及可能影响后续走向的关键变化。\n\n"
            "【分析重点】\n"
            "1. 新角色/场景/线索: 本文中首次出现的角色、场景或线索，给出名称和完整描述。\n"
            "2. 更新的角色/场景/线索: 已存在但在本文中得到显著补充或改变的元素，给出名称和更新后的完整描述。\n"
            "3. 情节转折: 与原计划有明显出入或意料之外的转折，以及对后续的影响。\n"
            "4. 关系变化: 两个角色之间关系的具体变化。\n\n"
            "【输出要求】\n"
            "只输出JSON对象，不要包含解释性文字或代码块标记；某个类别没有内容时返回空数组 []。\n"
            f"{DRIFT_JSON_SHAPE}\n\n"
            f"【待分析的内容】\n---\n{chapter_text}\n---"
        )
