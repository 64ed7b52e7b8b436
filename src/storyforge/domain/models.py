"""Project records read by the context builder and written by the update applier."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

CharacterRole = Literal["protagonist", "antagonist", "supporting", "minor"]

__all__ = [
    "CharacterRole",
    "ProjectInfo",
    "Relationship",
    "CharacterRecord",
    "LocationRecord",
    "SceneRecord",
    "ChapterRecord",
    "ChapterOutline",
    "Foreshadowing",
    "ProjectStats",
]


@dataclass(slots=True)
class ProjectInfo:
    id: str
    title: str
    description: str = ""
    genre: list[str] = field(default_factory=list)
    target_platform: str | None = None
    target_length: int | None = None


@dataclass(slots=True)
class Relationship:
    target_name: str
    relation_type: str
    description: str = ""


@dataclass(slots=True)
class CharacterRecord:
    id: str
    project_id: str
    name: str
    role: CharacterRole = "supporting"
    description: str = ""
    age: str | None = None
    gender: str | None = None
    occupation: str | None = None
    personality: str = ""
    background: str = ""
    motivation: str = ""
    appearance: dict[str, str] = field(default_factory=dict)
    relationships: list[Relationship] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class LocationRecord:
    id: str
    project_id: str
    name: str
    description: str = ""
    location_type: str = "other"
    region: str | None = None
    features: str = ""
    atmosphere: str = ""
    significance: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class SceneRecord:
    id: str
    project_id: str
    chapter_id: str
    title: str
    plain_text: str = ""
    chapter_title: str = ""
    order: int = 0
    updated_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class ChapterRecord:
    id: str
    project_id: str
    title: str
    number: int
    volume_number: int = 1
    summary: str = ""
    updated_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class ChapterOutline:
    id: str
    project_id: str
    chapter_number: int
    title: str
    summary: str
    key_events: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class Foreshadowing:
    id: str
    project_id: str
    description: str
    planted_in: str | None = None
    payoff_plan: str = ""
    resolved: bool = False
    resolution: str = ""
    created_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class ProjectStats:
    total_char_count: int = 0
    total_chapter_count: int = 0
    total_scene_count: int = 0
    extra: dict[str, Any] = field(default_factory=dict)
