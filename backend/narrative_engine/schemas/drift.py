"""Schemas validating drift reports returned by the language model."""
from __future__ import annotations

from typing import Any, List

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from narrative_engine.domains.world.domain.entities import (
    DriftReport,
    EntityChange,
    EntityKind,
    PlotTwist,
    RelationshipChange,
)


class DriftElement(BaseModel):
    """A named world element; ``updatedDescription`` is read as the description."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    description: str = Field(
        default="",
        validation_alias=AliasChoices("description", "updatedDescription", "updated_description"),
    )

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        return data


class DriftClue(DriftElement):
    """Plot clues may arrive as ``{content, details}`` instead of ``{name, description}``."""

    @model_validator(mode="before")
    @classmethod
    def _clue_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("name") and data.get("content"):
            data["name"] = data["content"]
        if not any(data.get(key) for key in ("description", "updatedDescription", "updated_description")):
            data["description"] = data.get("details") or data.get("content") or ""
        return data


class DriftPlotTwist(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    description: str = ""
    impact_on_future: str = Field(default="", alias="impactOnFuture")


class DriftRelationshipChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    characters_involved: List[str] = Field(default_factory=list, alias="charactersInvolved")
    change_description: str = Field(default="", alias="changeDescription")


class DriftReportPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    new_characters: List[DriftElement] = Field(default_factory=list, alias="newCharacters")
    updated_characters: List[DriftElement] = Field(default_factory=list, alias="updatedCharacters")
    new_scenes: List[DriftElement] = Field(default_factory=list, alias="newScenes")
    updated_scenes: List[DriftElement] = Field(default_factory=list, alias="updatedScenes")
    new_plot_clues: List[DriftClue] = Field(default_factory=list, alias="newPlotClues")
    updated_plot_clues: List[DriftClue] = Field(default_factory=list, alias="updatedPlotClues")
    plot_twists: List[DriftPlotTwist] = Field(default_factory=list, alias="plotTwists")
    relationship_changes: List[DriftRelationshipChange] = Field(
        default_factory=list,
        alias="relationshipChanges",
    )

    @model_validator(mode="before")
    @classmethod
    def _null_lists(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data

    def to_report(self) -> DriftReport:
        def changes(kind: EntityKind, items: List[DriftElement]) -> List[EntityChange]:
            return [
                EntityChange(kind=kind, name=item.name.strip(), description=item.description.strip())
                for item in items
                if item.name.strip()
            ]

        return DriftReport(
            new_entities=[
                *changes(EntityKind.CHARACTER, self.new_characters),
                *changes(EntityKind.SCENE, self.new_scenes),
                *changes(EntityKind.PLOT_CLUE, self.new_plot_clues),
            ],
            updated_entities=[
                *changes(EntityKind.CHARACTER, self.updated_characters),
                *changes(EntityKind.SCENE, self.updated_scenes),
                *changes(EntityKind.PLOT_CLUE, self.updated_plot_clues),
            ],
            plot_twists=[
                PlotTwist(description=twist.description.strip(), impact_on_future=twist.impact_on_future.strip())
                for twist in self.plot_twists
                if twist.description.strip()
            ],
            relationship_changes=[
                RelationshipChange(
                    characters=tuple(name.strip() for name in change.characters_involved if name.strip()),
                    change_description=change.change_description.strip(),
                )
                for change in self.relationship_changes
                if change.change_description.strip()
            ],
        )


DRIFT_JSON_SHAPE = """{
  "newCharacters": [{"name": "角色名", "description": "完整描述"}],
  "updatedCharacters": [{"name": "已有角色名", "updatedDescription": "更新后的完整描述"}],
  "newScenes": [{"name": "场景名", "description": "完整描述"}],
  "updatedScenes": [{"name": "已有场景名", "updatedDescription": "更新后的完整描述"}],
  "newPlotClues": [{"name": "线索名", "description": "完整描述"}],
  "updatedPlotClues": [{"name": "已有线索名", "updatedDescription": "更新后的完整描述"}],
  "plotTwists": [{"description": "意料之外的情节转折", "impactOnFuture": "对后续走向的影响"}],
  "relationshipChanges": [{"charactersInvolved": ["角色A", "角色B"], "changeDescription": "关系变化"}]
}"""
