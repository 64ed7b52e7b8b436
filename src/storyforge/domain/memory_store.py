"""In-process project store implementing the reader and mutator contracts."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import fields, replace
from typing import Any, Iterable, Mapping, Sequence, TypeVar

from .models import (
    ChapterOutline,
    ChapterRecord,
    CharacterRecord,
    Foreshadowing,
    LocationRecord,
    ProjectInfo,
    ProjectStats,
    SceneRecord,
)

__all__ = ["InMemoryProjectStore", "new_id"]

LOGGER = logging.getLogger(__name__)
_T = TypeVar("_T")


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


class InMemoryProjectStore:
    """Dictionary-backed store used by embedders without a database and by tests."""

    def __init__(self) -> None:
        self.projects: dict[str, ProjectInfo] = {}
        self.synopses: dict[str, str] = {}
        self.characters: dict[str, CharacterRecord] = {}
        self.locations: dict[str, LocationRecord] = {}
        self.scenes: dict[str, SceneRecord] = {}
        self.chapters: dict[str, ChapterRecord] = {}
        self.outlines: dict[str, ChapterOutline] = {}
        self.foreshadowing: dict[str, Foreshadowing] = {}

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def add_project(self, project: ProjectInfo, *, synopsis: str | None = None) -> ProjectInfo:
        self.projects[project.id] = project
        if synopsis is not None:
            self.synopses[project.id] = synopsis
        return project

    def add_characters(self, characters: Iterable[CharacterRecord]) -> None:
        for character in characters:
            self.characters[character.id] = character

    def add_locations(self, locations: Iterable[LocationRecord]) -> None:
        for location in locations:
            self.locations[location.id] = location

    def add_chapters(self, chapters: Iterable[ChapterRecord]) -> None:
        for chapter in chapters:
            self.chapters[chapter.id] = chapter

    def add_scenes(self, scenes: Iterable[SceneRecord]) -> None:
        for scene in scenes:
            self.scenes[scene.id] = scene

    # ------------------------------------------------------------------
    # ProjectReader
    # ------------------------------------------------------------------

    async def get_project(self, project_id: str) -> ProjectInfo | None:
        return self.projects.get(project_id)

    async def get_synopsis(self, project_id: str) -> str:
        if project_id in self.synopses:
            return self.synopses[project_id]
        project = self.projects.get(project_id)
        return project.description if project else ""

    async def list_characters(self, project_id: str) -> Sequence[CharacterRecord]:
        return _owned(self.characters.values(), project_id)

    async def list_locations(self, project_id: str) -> Sequence[LocationRecord]:
        return _owned(self.locations.values(), project_id)

    async def get_recent_scenes(self, project_id: str, limit: int) -> Sequence[SceneRecord]:
        scenes = sorted(_owned(self.scenes.values(), project_id), key=lambda s: s.updated_at, reverse=True)
        return scenes[: max(0, limit)]

    async def list_recent_chapters(self, project_id: str, limit: int) -> Sequence[ChapterRecord]:
        chapters = sorted(_owned(self.chapters.values(), project_id), key=lambda c: c.updated_at, reverse=True)
        return chapters[: max(0, limit)]

    async def list_foreshadowing(self, project_id: str, *, include_resolved: bool = False) -> Sequence[Foreshadowing]:
        items = _owned(self.foreshadowing.values(), project_id)
        if include_resolved:
            return items
        return [item for item in items if not item.resolved]

    async def get_stats(self, project_id: str) -> ProjectStats:
        scenes = _owned(self.scenes.values(), project_id)
        return ProjectStats(
            total_char_count=sum(len(scene.plain_text) for scene in scenes),
            total_chapter_count=len(_owned(self.chapters.values(), project_id)),
            total_scene_count=len(scenes),
        )

    # ------------------------------------------------------------------
    # ProjectMutator
    # ------------------------------------------------------------------

    async def create_character(self, character: CharacterRecord) -> str:
        self.characters[character.id] = character
        return character.id

    async def update_character(self, character_id: str, changes: Mapping[str, Any]) -> CharacterRecord | None:
        existing = self.characters.get(character_id)
        if existing is None:
            return None
        updated = _apply_changes(existing, changes)
        self.characters[character_id] = updated
        return updated

    async def create_location(self, location: LocationRecord) -> str:
        self.locations[location.id] = location
        return location.id

    async def update_location(self, location_id: str, changes: Mapping[str, Any]) -> LocationRecord | None:
        existing = self.locations.get(location_id)
        if existing is None:
            return None
        updated = _apply_changes(existing, changes)
        self.locations[location_id] = updated
        return updated

    async def update_synopsis(self, project_id: str, synopsis: str) -> None:
        if project_id not in self.projects:
            raise KeyError(f"Unknown project '{project_id}'")
        self.synopses[project_id] = synopsis

    async def create_chapter_outline(self, outline: ChapterOutline) -> str:
        self.outlines[outline.id] = outline
        return outline.id

    async def add_foreshadowing(self, item: Foreshadowing) -> str:
        self.foreshadowing[item.id] = item
        return item.id

    async def resolve_foreshadowing(self, foreshadowing_id: str, resolution: str) -> Foreshadowing | None:
        existing = self.foreshadowing.get(foreshadowing_id)
        if existing is None:
            return None
        updated = replace(existing, resolved=True, resolution=resolution)
        self.foreshadowing[foreshadowing_id] = updated
        return updated


def _owned(records: Iterable[_T], project_id: str) -> list[_T]:
    return [record for record in records if getattr(record, "project_id", None) == project_id]


def _apply_changes(record: _T, changes: Mapping[str, Any]) -> _T:
    allowed = {item.name for item in fields(record)}  # type: ignore[arg-type]
    filtered = {key: value for key, value in changes.items() if key in allowed}
    for key, value in filtered.items():
        current = getattr(record, key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            filtered[key] = {**current, **value}
    ignored = sorted(set(changes) - set(filtered))
    if ignored:
        LOGGER.debug("Ignoring unknown fields for %s: %s", type(record).__name__, ignored)
    if "updated_at" in allowed:
        filtered.setdefault("updated_at", time.time())
    return replace(record, **filtered)  # type: ignore[type-var]
