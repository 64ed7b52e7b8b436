"""Structured update protocol: parse, validate and apply agent-proposed changes."""

from .applier import (
    UpdateApplier,
    UpdateResult,
    UpdateSummary,
    apply_storyforge_update,
    apply_storyforge_updates,
    map_role,
    summarize_update_results,
)
from .parser import ParsedAgentResponse, RejectedBlock, UpdateBlockParser, parse_agent_response, strip_update_blocks
from .protocol import REQUIRED_FIELDS, UPDATE_BLOCK_TAG, StoryforgeUpdate, UpdateType
from .validation import UpdateValidation, validate_update_data

__all__ = [
    "UpdateApplier",
    "UpdateResult",
    "UpdateSummary",
    "apply_storyforge_update",
    "apply_storyforge_updates",
    "map_role",
    "summarize_update_results",
    "ParsedAgentResponse",
    "RejectedBlock",
    "UpdateBlockParser",
    "parse_agent_response",
    "strip_update_blocks",
    "REQUIRED_FIELDS",
    "UPDATE_BLOCK_TAG",
    "StoryforgeUpdate",
    "UpdateType",
    "UpdateValidation",
    "validate_update_data",
]
