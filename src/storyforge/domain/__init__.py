"""Project domain records and collaborator contracts."""

from .memory_store import InMemoryProjectStore, new_id
from .models import (
    ChapterOutline,
    ChapterRecord,
    CharacterRecord,
    CharacterRole,
    Foreshadowing,
    LocationRecord,
    ProjectInfo,
    ProjectStats,
    Relationship,
    SceneRecord,
)
from .protocols import Notifier, ProjectMutator, ProjectReader

__all__ = [
    "InMemoryProjectStore",
    "new_id",
    "ChapterOutline",
    "ChapterRecord",
    "CharacterRecord",
    "CharacterRole",
    "Foreshadowing",
    "LocationRecord",
    "ProjectInfo",
    "ProjectStats",
    "Relationship",
    "SceneRecord",
    "Notifier",
    "ProjectMutator",
    "ProjectReader",
]
