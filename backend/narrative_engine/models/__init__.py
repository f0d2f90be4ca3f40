"""ORM models."""

from .novel import NovelModel
from .chapter import ChapterModel
from .world import CharacterModel, SceneModel, PlotClueModel, WORLD_MODELS

__all__ = [
    "NovelModel",
    "ChapterModel",
    "CharacterModel",
    "SceneModel",
    "PlotClueModel",
    "WORLD_MODELS",
]
