"""Wire format of the structured update blocks embedded in agent replies."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping

__all__ = [
    "UPDATE_BLOCK_TAG",
    "UpdateType",
    "StoryforgeUpdate",
    "REQUIRED_FIELDS",
    "UPDATE_ENVELOPE_SCHEMA",
    "UPDATE_DATA_SCHEMAS",
]

UPDATE_BLOCK_TAG = "storyforge-update"


class UpdateType(str, Enum):
    CREATE_CHARACTER = "create_character"
    UPDATE_CHARACTER = "update_character"
    CREATE_LOCATION = "create_location"
    UPDATE_LOCATION = "update_location"
    UPDATE_SYNOPSIS = "update_synopsis"
    CREATE_CHAPTER_OUTLINE = "create_chapter_outline"
    ADD_FORESHADOWING = "add_foreshadowing"
    RESOLVE_FORESHADOWING = "resolve_foreshadowing"


@dataclass(slots=True)
class StoryforgeUpdate:
    """One parsed update block; ``index`` is its position in the source reply."""

    type: UpdateType | str
    data: Dict[str, Any] = field(default_factory=dict)
    index: int = 0

    @property
    def type_name(self) -> str:
        return str(getattr(self.type, "value", self.type))

    def as_payload(self) -> Dict[str, Any]:
        return {"type": self.type_name, "data": dict(self.data)}


REQUIRED_FIELDS: Mapping[UpdateType, tuple[str, ...]] = {
    UpdateType.CREATE_CHARACTER: ("name", "role"),
    UpdateType.UPDATE_CHARACTER: ("id",),
    UpdateType.CREATE_LOCATION: ("name",),
    UpdateType.UPDATE_LOCATION: ("id",),
    UpdateType.UPDATE_SYNOPSIS: ("synopsis",),
    UpdateType.CREATE_CHAPTER_OUTLINE: ("chapterNumber", "title", "summary"),
    UpdateType.ADD_FORESHADOWING: ("description",),
    UpdateType.RESOLVE_FORESHADOWING: ("id",),
}

_TEXT: Dict[str, Any] = {"type": "string"}
# Whole chapter numbers only; "4" is accepted, 2.5 and "2.5" are not.
_CHAPTER_NUMBER: Dict[str, Any] = {
    "anyOf": [
        {"type": "integer", "minimum": 1},
        {"type": "string", "pattern": r"^\s*[1-9][0-9]*\s*$"},
    ]
}
_NULLABLE_TEXT: Dict[str, Any] = {"type": ["string", "null"]}

_CHARACTER_PROPERTIES: Dict[str, Any] = {
    "id": _TEXT,
    "name": _TEXT,
    "role": _TEXT,
    "description": _NULLABLE_TEXT,
    "age": {"type": ["string", "number", "null"]},
    "gender": _NULLABLE_TEXT,
    "occupation": _NULLABLE_TEXT,
    "height": _NULLABLE_TEXT,
    "bodyType": _NULLABLE_TEXT,
    "hairColor": _NULLABLE_TEXT,
    "eyeColor": _NULLABLE_TEXT,
    "distinguishingFeatures": _NULLABLE_TEXT,
    "personality": _NULLABLE_TEXT,
    "background": _NULLABLE_TEXT,
    "motivation": _NULLABLE_TEXT,
    "relationships": {
        "type": "array",
        "items": {
            "type": "object",
            "required": ["targetName"],
            "properties": {
                "targetName": _TEXT,
                "type": _TEXT,
                "description": _NULLABLE_TEXT,
            },
        },
    },
}

_LOCATION_PROPERTIES: Dict[str, Any] = {
    "id": _TEXT,
    "name": _TEXT,
    "description": _NULLABLE_TEXT,
    "locationType": _NULLABLE_TEXT,
    "region": _NULLABLE_TEXT,
    "features": _NULLABLE_TEXT,
    "atmosphere": _NULLABLE_TEXT,
    "significance": _NULLABLE_TEXT,
}


def _object_schema(properties: Mapping[str, Any], required: tuple[str, ...]) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": dict(properties),
        "required": list(required),
        "additionalProperties": True,
    }


UPDATE_DATA_SCHEMAS: Mapping[UpdateType, Dict[str, Any]] = {
    UpdateType.CREATE_CHARACTER: _object_schema(_CHARACTER_PROPERTIES, REQUIRED_FIELDS[UpdateType.CREATE_CHARACTER]),
    UpdateType.UPDATE_CHARACTER: _object_schema(_CHARACTER_PROPERTIES, REQUIRED_FIELDS[UpdateType.UPDATE_CHARACTER]),
    UpdateType.CREATE_LOCATION: _object_schema(_LOCATION_PROPERTIES, REQUIRED_FIELDS[UpdateType.CREATE_LOCATION]),
    UpdateType.UPDATE_LOCATION: _object_schema(_LOCATION_PROPERTIES, REQUIRED_FIELDS[UpdateType.UPDATE_LOCATION]),
    UpdateType.UPDATE_SYNOPSIS: _object_schema({"synopsis": _TEXT}, REQUIRED_FIELDS[UpdateType.UPDATE_SYNOPSIS]),
    UpdateType.CREATE_CHAPTER_OUTLINE: _object_schema(
        {
            "chapterNumber": _CHAPTER_NUMBER,
            "title": _TEXT,
            "summary": _TEXT,
            "keyEvents": {"type": "array", "items": _TEXT},
        },
        REQUIRED_FIELDS[UpdateType.CREATE_CHAPTER_OUTLINE],
    ),
    UpdateType.ADD_FORESHADOWING: _object_schema(
        {"description": _TEXT, "plantedIn": _NULLABLE_TEXT, "payoffPlan": _NULLABLE_TEXT},
        REQUIRED_FIELDS[UpdateType.ADD_FORESHADOWING],
    ),
    UpdateType.RESOLVE_FORESHADOWING: _object_schema(
        {"id": _TEXT, "resolution": _NULLABLE_TEXT},
        REQUIRED_FIELDS[UpdateType.RESOLVE_FORESHADOWING],
    ),
}

UPDATE_ENVELOPE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["type", "data"],
    "properties": {
        "type": {"type": "string", "enum": [item.value for item in UpdateType]},
        "data": {"type": "object"},
    },
}
