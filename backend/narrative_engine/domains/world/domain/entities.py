"""World domain entities and the drift report."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple
from uuid import UUID


class EntityKind(Enum):
    CHARACTER = "character"
    SCENE = "scene"
    PLOT_CLUE = "plot_clue"

    @property
    def collection_suffix(self) -> str:
        return {
            EntityKind.CHARACTER: "characters",
            EntityKind.SCENE: "scenes",
            EntityKind.PLOT_CLUE: "clues",
        }[self]

    @property
    def heading(self) -> str:
        return {
            EntityKind.CHARACTER: "相关角色",
            EntityKind.SCENE: "相关场景",
            EntityKind.PLOT_CLUE: "相关线索",
        }[self]


@dataclass(frozen=True)
class WorldEntity:
    id: UUID
    novel_id: UUID
    kind: EntityKind
    name: str
    content: str

    @property
    def document(self) -> str:
        return f"{self.name}: {self.content}"


@dataclass(frozen=True)
class EntityChange:
    kind: EntityKind
    name: str
    description: str


@dataclass(frozen=True)
class PlotTwist:
    description: str
    impact_on_future: str = ""


@dataclass(frozen=True)
class RelationshipChange:
    characters: Tuple[str, ...]
    change_description: str


@dataclass
class DriftReport:
    """Facts established by written prose that the plan did not carry."""

    new_entities: List[EntityChange] = field(default_factory=list)
    updated_entities: List[EntityChange] = field(default_factory=list)
    plot_twists: List[PlotTwist] = field(default_factory=list)
    relationship_changes: List[RelationshipChange] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.new_entities
            or self.updated_entities
            or self.plot_twists
            or self.relationship_changes
        )

    def has_entity_changes(self) -> bool:
        return bool(self.new_entities or self.updated_entities)

    def undescribed_names(self) -> List[str]:
        """Names left out of ``merged_entities`` for lack of a description."""
        return [
            change.name.strip()
            for change in [*self.new_entities, *self.updated_entities]
            if change.name.strip() and not change.description.strip()
        ]

    def merged_entities(self) -> Dict[EntityKind, Dict[str, str]]:
        """Collapse new and updated items into one ``{name: content}`` map per kind.

        Updated items are applied after new ones, so a name present in both
        lists ends up with the updated description.
        """
        merged: Dict[EntityKind, Dict[str, str]] = {}
        for change in [*self.new_entities, *self.updated_entities]:
            name = change.name.strip()
            if not name or not change.description.strip():
                continue
            merged.setdefault(change.kind, {})[name] = change.description.strip()
        return merged
