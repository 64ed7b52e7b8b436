"""Apply parsed update blocks to the project through the mutation contract."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping

from ...domain.memory_store import new_id
from ...domain.models import ChapterOutline, CharacterRecord, CharacterRole, Foreshadowing, LocationRecord, Relationship
from ...domain.protocols import Notifier, ProjectMutator
from ..errors import AIError, ApplyError, ValidationError
from .protocol import StoryforgeUpdate, UpdateType
from .validation import validate_update_data

__all__ = [
    "UpdateResult",
    "UpdateSummary",
    "UpdateApplier",
    "apply_storyforge_update",
    "apply_storyforge_updates",
    "summarize_update_results",
    "map_role",
]

LOGGER = logging.getLogger(__name__)

_ROLE_ALIASES: Mapping[str, CharacterRole] = {
    "protagonist": "protagonist",
    "main": "protagonist",
    "주인공": "protagonist",
    "antagonist": "antagonist",
    "villain": "antagonist",
    "악역": "antagonist",
    "supporting": "supporting",
    "조연": "supporting",
    "minor": "minor",
    "extra": "minor",
    "단역": "minor",
}

_APPEARANCE_FIELDS: Mapping[str, str] = {
    "height": "height",
    "bodyType": "body_type",
    "hairColor": "hair_color",
    "eyeColor": "eye_color",
    "distinguishingFeatures": "distinguishing_features",
}
_CHARACTER_TEXT_FIELDS = ("name", "description", "gender", "occupation", "personality", "background", "motivation")
_LOCATION_FIELDS: Mapping[str, str] = {
    "name": "name",
    "description": "description",
    "locationType": "location_type",
    "region": "region",
    "features": "features",
    "atmosphere": "atmosphere",
    "significance": "significance",
}


@dataclass(slots=True)
class UpdateResult:
    success: bool
    type: str
    message: str
    created_id: str | None = None


@dataclass(slots=True)
class UpdateSummary:
    total: int
    succeeded: int

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def message(self) -> str:
        return f"{self.succeeded} of {self.total} changes applied"


def map_role(value: Any) -> CharacterRole:
    """Normalize free-form role labels (English or Korean); unknown labels become ``supporting``."""

    key = str(value or "").strip().lower()
    return _ROLE_ALIASES.get(key, "supporting")


def summarize_update_results(results: Iterable[UpdateResult]) -> UpdateSummary:
    items = list(results)
    return UpdateSummary(total=len(items), succeeded=sum(1 for item in items if item.success))


Handler = Callable[[Mapping[str, Any], str], Awaitable[UpdateResult]]


class UpdateApplier:
    """Maps each update type onto one :class:`ProjectMutator` call."""

    def __init__(
        self,
        mutator: ProjectMutator,
        *,
        notifier: Notifier | None = None,
        id_factory: Callable[[str], str] = new_id,
    ) -> None:
        self._mutator = mutator
        self._notifier = notifier
        self._new_id = id_factory
        self._handlers: Dict[UpdateType, Handler] = {
            UpdateType.CREATE_CHARACTER: self._create_character,
            UpdateType.UPDATE_CHARACTER: self._update_character,
            UpdateType.CREATE_LOCATION: self._create_location,
            UpdateType.UPDATE_LOCATION: self._update_location,
            UpdateType.UPDATE_SYNOPSIS: self._update_synopsis,
            UpdateType.CREATE_CHAPTER_OUTLINE: self._create_chapter_outline,
            UpdateType.ADD_FORESHADOWING: self._add_foreshadowing,
            UpdateType.RESOLVE_FORESHADOWING: self._resolve_foreshadowing,
        }

    async def apply(self, update: StoryforgeUpdate, project_id: str) -> UpdateResult:
        type_name = update.type_name
        try:
            update_type = UpdateType(type_name)
        except ValueError:
            LOGGER.warning("Unknown update type %r", type_name)
            return UpdateResult(success=False, type=type_name, message=f"Unknown update type: {type_name}")

        try:
            validation = validate_update_data(update_type, update.data)
            if not validation.valid:
                raise ValidationError(type_name, validation.missing_fields, validation.message)
            result = await self._run(update_type, update.data, project_id)
        except (ValidationError, ApplyError) as exc:
            LOGGER.warning("Update %s not applied: %s", type_name, exc)
            return UpdateResult(success=False, type=type_name, message=str(exc))

        if result.success:
            LOGGER.info("Applied %s: %s", type_name, result.message)
            self._notify("success", result.message)
        else:
            LOGGER.warning("Update %s not applied: %s", type_name, result.message)
        return result

    async def apply_all(self, updates: Iterable[StoryforgeUpdate], project_id: str) -> List[UpdateResult]:
        """Apply in source order; a failed update never stops the ones after it."""

        results = [await self.apply(update, project_id) for update in updates]
        if results:
            LOGGER.info("Update batch for %s: %s", project_id, summarize_update_results(results).message)
        return results

    async def _run(self, update_type: UpdateType, data: Mapping[str, Any], project_id: str) -> UpdateResult:
        try:
            return await self._handlers[update_type](data, project_id)
        except AIError:
            raise
        except Exception as exc:
            raise ApplyError(update_type.value, f"{update_type.value} failed: {exc}") from exc

    def _notify(self, level: str, message: str) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier(level, message)
        except Exception:  # pragma: no cover - notifier is fire-and-forget
            LOGGER.exception("Update notifier raised")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _create_character(self, data: Mapping[str, Any], project_id: str) -> UpdateResult:
        record = CharacterRecord(
            id=self._new_id("char"),
            project_id=project_id,
            name=str(data["name"]).strip(),
            role=map_role(data.get("role")),
            description=_text(data.get("description")),
            age=_optional_text(data.get("age")),
            gender=_optional_text(data.get("gender")),
            occupation=_optional_text(data.get("occupation")),
            personality=_text(data.get("personality")),
            background=_text(data.get("background")),
            motivation=_text(data.get("motivation")),
            appearance=_appearance(data),
            relationships=_relationships(data.get("relationships")),
        )
        created_id = await self._mutator.create_character(record)
        return UpdateResult(
            success=True,
            type=UpdateType.CREATE_CHARACTER.value,
            message=f"Created character '{record.name}'",
            created_id=created_id,
        )

    async def _update_character(self, data: Mapping[str, Any], project_id: str) -> UpdateResult:
        character_id = str(data["id"])
        changes: Dict[str, Any] = {}
        for name in _CHARACTER_TEXT_FIELDS:
            if name in data and data[name] is not None:
                changes[name] = _text(data[name])
        if data.get("age") is not None:
            changes["age"] = _optional_text(data["age"])
        if data.get("role") is not None:
            changes["role"] = map_role(data["role"])
        appearance = _appearance(data)
        if appearance:
            changes["appearance"] = appearance
        if "relationships" in data:
            changes["relationships"] = _relationships(data.get("relationships"))

        updated = await self._mutator.update_character(character_id, changes)
        if updated is None:
            return UpdateResult(
                success=False, type=UpdateType.UPDATE_CHARACTER.value, message=f"Character not found: {character_id}"
            )
        return UpdateResult(
            success=True, type=UpdateType.UPDATE_CHARACTER.value, message=f"Updated character '{updated.name}'"
        )

    async def _create_location(self, data: Mapping[str, Any], project_id: str) -> UpdateResult:
        fields = _location_fields(data)
        record = LocationRecord(
            id=self._new_id("loc"),
            project_id=project_id,
            name=fields.pop("name"),
            location_type=fields.pop("location_type", None) or "other",
            **fields,
        )
        created_id = await self._mutator.create_location(record)
        return UpdateResult(
            success=True,
            type=UpdateType.CREATE_LOCATION.value,
            message=f"Created location '{record.name}'",
            created_id=created_id,
        )

    async def _update_location(self, data: Mapping[str, Any], project_id: str) -> UpdateResult:
        location_id = str(data["id"])
        updated = await self._mutator.update_location(location_id, _location_fields(data))
        if updated is None:
            return UpdateResult(
                success=False, type=UpdateType.UPDATE_LOCATION.value, message=f"Location not found: {location_id}"
            )
        return UpdateResult(
            success=True, type=UpdateType.UPDATE_LOCATION.value, message=f"Updated location '{updated.name}'"
        )

    async def _update_synopsis(self, data: Mapping[str, Any], project_id: str) -> UpdateResult:
        await self._mutator.update_synopsis(project_id, str(data["synopsis"]).strip())
        return UpdateResult(success=True, type=UpdateType.UPDATE_SYNOPSIS.value, message="Updated synopsis")

    async def _create_chapter_outline(self, data: Mapping[str, Any], project_id: str) -> UpdateResult:
        outline = ChapterOutline(
            id=self._new_id("outline"),
            project_id=project_id,
            chapter_number=int(data["chapterNumber"]),
            title=str(data["title"]).strip(),
            summary=str(data["summary"]).strip(),
            key_events=[str(item) for item in data.get("keyEvents") or []],
        )
        created_id = await self._mutator.create_chapter_outline(outline)
        return UpdateResult(
            success=True,
            type=UpdateType.CREATE_CHAPTER_OUTLINE.value,
            message=f"Created outline for chapter {outline.chapter_number}: {outline.title}",
            created_id=created_id,
        )

    async def _add_foreshadowing(self, data: Mapping[str, Any], project_id: str) -> UpdateResult:
        item = Foreshadowing(
            id=self._new_id("fs"),
            project_id=project_id,
            description=str(data["description"]).strip(),
            planted_in=_optional_text(data.get("plantedIn")),
            payoff_plan=_text(data.get("payoffPlan")),
        )
        created_id = await self._mutator.add_foreshadowing(item)
        return UpdateResult(
            success=True, type=UpdateType.ADD_FORESHADOWING.value, message="Added foreshadowing", created_id=created_id
        )

    async def _resolve_foreshadowing(self, data: Mapping[str, Any], project_id: str) -> UpdateResult:
        item_id = str(data["id"])
        resolved = await self._mutator.resolve_foreshadowing(item_id, _text(data.get("resolution")))
        if resolved is None:
            return UpdateResult(
                success=False,
                type=UpdateType.RESOLVE_FORESHADOWING.value,
                message=f"Foreshadowing not found: {item_id}",
            )
        return UpdateResult(success=True, type=UpdateType.RESOLVE_FORESHADOWING.value, message="Resolved foreshadowing")


async def apply_storyforge_update(
    update: StoryforgeUpdate,
    project_id: str,
    *,
    mutator: ProjectMutator,
    notifier: Notifier | None = None,
) -> UpdateResult:
    return await UpdateApplier(mutator, notifier=notifier).apply(update, project_id)


async def apply_storyforge_updates(
    updates: Iterable[StoryforgeUpdate],
    project_id: str,
    *,
    mutator: ProjectMutator,
    notifier: Notifier | None = None,
) -> List[UpdateResult]:
    return await UpdateApplier(mutator, notifier=notifier).apply_all(updates, project_id)


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _optional_text(value: Any) -> str | None:
    text = _text(value)
    return text or None


def _appearance(data: Mapping[str, Any]) -> Dict[str, str]:
    return {
        target: _text(data[source])
        for source, target in _APPEARANCE_FIELDS.items()
        if _text(data.get(source))
    }


def _relationships(value: Any) -> List[Relationship]:
    if not isinstance(value, list):
        return []
    result: List[Relationship] = []
    for item in value:
        if not isinstance(item, Mapping) or not _text(item.get("targetName")):
            continue
        result.append(
            Relationship(
                target_name=_text(item["targetName"]),
                relation_type=_text(item.get("type")) or "related",
                description=_text(item.get("description")),
            )
        )
    return result


def _location_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for source, target in _LOCATION_FIELDS.items():
        if data.get(source) is not None:
            fields[target] = _text(data[source])
    if "region" in fields:
        fields["region"] = fields["region"] or None
    return fields
