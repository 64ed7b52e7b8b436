"""Contracts for the document/world stores the AI layer collaborates with."""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

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

__all__ = ["ProjectReader", "ProjectMutator", "Notifier"]


@runtime_checkable
class ProjectReader(Protocol):
    """Read-only accessors used to rebuild prompt context."""

    async def get_project(self, project_id: str) -> ProjectInfo | None:
        ...

    async def get_synopsis(self, project_id: str) -> str:
        ...

    async def list_characters(self, project_id: str) -> Sequence[CharacterRecord]:
        ...

    async def list_locations(self, project_id: str) -> Sequence[LocationRecord]:
        ...

    async def get_recent_scenes(self, project_id: str, limit: int) -> Sequence[SceneRecord]:
        """Most recently edited scenes first."""
        ...

    async def list_recent_chapters(self, project_id: str, limit: int) -> Sequence[ChapterRecord]:
        """Most recently edited chapters first."""
        ...

    async def list_foreshadowing(self, project_id: str, *, include_resolved: bool = False) -> Sequence[Foreshadowing]:
        ...

    async def get_stats(self, project_id: str) -> ProjectStats:
        ...


@runtime_checkable
class ProjectMutator(Protocol):
    """Mutation entry points consumed by the update applier.

    ``update_*``/``resolve_*`` return ``None`` when the target id does not exist.
    """

    async def create_character(self, character: CharacterRecord) -> str:
        ...

    async def update_character(self, character_id: str, changes: Mapping[str, Any]) -> CharacterRecord | None:
        ...

    async def create_location(self, location: LocationRecord) -> str:
        ...

    async def update_location(self, location_id: str, changes: Mapping[str, Any]) -> LocationRecord | None:
        ...

    async def update_synopsis(self, project_id: str, synopsis: str) -> None:
        ...

    async def create_chapter_outline(self, outline: ChapterOutline) -> str:
        ...

    async def add_foreshadowing(self, item: Foreshadowing) -> str:
        ...

    async def resolve_foreshadowing(self, foreshadowing_id: str, resolution: str) -> Foreshadowing | None:
        ...


class Notifier(Protocol):
    """Fire-and-forget UI notification sink (toasts)."""

    def __call__(self, level: str, message: str) -> None:
        ...
