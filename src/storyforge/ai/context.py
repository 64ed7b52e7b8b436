"""Token-bounded project context and system prompt builders."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence

from ..domain.models import CharacterRecord, ProjectInfo, ProjectStats
from ..domain.protocols import ProjectReader
from .ai_types import TokenCounterProtocol
from .errors import ContextOverflowError
from .updates.protocol import REQUIRED_FIELDS, UPDATE_BLOCK_TAG, UpdateType
from .utils.tokens import TokenCounterRegistry

if TYPE_CHECKING:  # pragma: no cover
    from ..services.settings import ContextBudgetSettings

__all__ = [
    "ContextBudget",
    "ContextSection",
    "CharacterSummary",
    "ProjectContext",
    "CharacterDetail",
    "RelationshipContext",
    "LocationContext",
    "ChapterSummaryContext",
    "FullProjectContext",
    "AgentSessionState",
    "ContextBudgetManager",
    "truncate_to_token_budget",
    "format_context_as_system_prompt",
    "format_agent_system_prompt",
    "optimize_history_for_token_budget",
    "calculate_history_tokens",
    "BASE_SYSTEM_PROMPT",
]

LOGGER = logging.getLogger(__name__)

TokenCount = Callable[[str], int]

_ROLE_PRIORITY: Mapping[str, int] = {
    "protagonist": 0,
    "antagonist": 1,
    "supporting": 2,
    "minor": 3,
}
_ROLE_LABELS: Mapping[str, str] = {
    "protagonist": "Protagonist",
    "antagonist": "Antagonist",
    "supporting": "Supporting",
    "minor": "Minor",
}
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_END = re.compile(r"[.!?。！？…]+[\"'”’)\]]*(?=\s|$)")
_DETAIL_CLIP = 200
_CHAPTER_CLIP = 300

BASE_SYSTEM_PROMPT = """You are an AI co-writer helping an author create a serialized web novel.

## Role
- Support the author's writing; the author always keeps creative control.
- Offer suggestions without forcing them.
- Respect the author's intent and the story's tone and mood.

## Style
- Answer in the language the author writes in.
- Understand what web-novel readers enjoy.
- Give concrete, practical advice and propose sample sentences or dialogue when useful.

## Constraints
- Never reproduce copyrighted works verbatim.
- Treat the settings and context the author provided as authoritative.
- Avoid suggestions that contradict established settings."""

_SESSION_FOCUS: Mapping[str, str] = {
    "plot_setting": (
        "Focus on plot structure: the premise, the central conflict, story arcs and pacing "
        "across chapters. Ask one question at a time when the author's intent is unclear."
    ),
    "character_setting": (
        "Focus on characters: motivation, personality, backstory, voice and relationships. "
        "Keep every proposal consistent with the existing roster."
    ),
    "writing_assist": (
        "Focus on prose: continue or revise scenes, improve rhythm and dialogue, and match "
        "the voice of the recent content."
    ),
    "world_building": (
        "Focus on the setting: places, history, rules of the world and how they constrain "
        "the plot."
    ),
}


# ----------------------------------------------------------------------
# Budget and context types
# ----------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ContextBudget:
    """Per-category token ceilings plus the history and reply reserves."""

    total: int = 8_000
    system: int = 1_000
    synopsis: int = 600
    characters: int = 1_200
    recent_content: int = 1_200
    history: int = 3_000
    response: int = 4_096
    max_characters: int = 10
    recent_scene_limit: int = 3
    recent_chapter_limit: int = 5

    @classmethod
    def from_settings(cls, settings: "ContextBudgetSettings | None") -> "ContextBudget":
        if settings is None:
            return cls()
        return cls(
            total=max(1, int(settings.total)),
            system=max(0, int(settings.system)),
            synopsis=max(0, int(settings.synopsis)),
            characters=max(0, int(settings.characters)),
            recent_content=max(0, int(settings.recent_content)),
            history=max(0, int(settings.history)),
            response=max(1, int(settings.response)),
            max_characters=max(0, int(settings.max_characters)),
            recent_scene_limit=max(0, int(settings.recent_scene_limit)),
            recent_chapter_limit=max(0, int(settings.recent_chapter_limit)),
        )

    @property
    def context(self) -> int:
        return self.synopsis + self.characters + self.recent_content


@dataclass(slots=True)
class ContextSection:
    text: str = ""
    tokens: int = 0
    truncated: bool = False


@dataclass(slots=True)
class CharacterSummary:
    id: str
    name: str
    role: str
    role_label: str
    description: str

    def render(self) -> str:
        if self.description:
            return f"- **{self.name}** ({self.role_label}): {self.description}"
        return f"- **{self.name}** ({self.role_label})"


@dataclass(slots=True)
class ProjectContext:
    """Derived, never persisted; rebuilt for every request."""

    project_id: str
    project: ProjectInfo | None
    synopsis: ContextSection
    characters: list[CharacterSummary]
    characters_truncated: bool
    characters_tokens: int
    recent_content: ContextSection
    token_estimate: int

    @property
    def truncated(self) -> bool:
        return self.synopsis.truncated or self.characters_truncated or self.recent_content.truncated

    def as_payload(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "synopsis": self.synopsis.text,
            "characters": [summary.render() for summary in self.characters],
            "recent_content": self.recent_content.text,
            "token_estimate": self.token_estimate,
            "truncated": self.truncated,
        }


@dataclass(slots=True)
class CharacterDetail:
    id: str
    name: str
    role_label: str
    age: str | None = None
    gender: str | None = None
    occupation: str | None = None
    appearance: str | None = None
    personality: str | None = None
    background: str | None = None


@dataclass(slots=True)
class RelationshipContext:
    first: str
    second: str
    relation_type: str
    description: str = ""


@dataclass(slots=True)
class LocationContext:
    id: str
    name: str
    description: str = ""
    significance: str = ""


@dataclass(slots=True)
class ChapterSummaryContext:
    volume_number: int
    chapter_number: int
    title: str
    summary: str


@dataclass(slots=True)
class FullProjectContext:
    project_id: str
    project: ProjectInfo | None
    synopsis: ContextSection
    characters: list[CharacterDetail] = field(default_factory=list)
    relationships: list[RelationshipContext] = field(default_factory=list)
    locations: list[LocationContext] = field(default_factory=list)
    foreshadowing: list[tuple[str, str]] = field(default_factory=list)
    recent_chapters: list[ChapterSummaryContext] = field(default_factory=list)
    stats: ProjectStats = field(default_factory=ProjectStats)


@dataclass(slots=True)
class AgentSessionState:
    """Live session facts surfaced to the model in agent mode."""

    session_type: str = "general"
    turn_count: int = 0
    last_update_summary: str | None = None


# ----------------------------------------------------------------------
# Manager
# ----------------------------------------------------------------------


class ContextBudgetManager:
    """Gathers project facts from the reader and fits them to a :class:`ContextBudget`."""

    def __init__(
        self,
        reader: ProjectReader,
        *,
        budget: ContextBudget | None = None,
        token_counter: TokenCounterProtocol | None = None,
    ) -> None:
        self._reader = reader
        self._budget = budget or ContextBudget()
        self._counter = token_counter or TokenCounterRegistry.global_instance().get(None)

    @property
    def budget(self) -> ContextBudget:
        return self._budget

    def count_tokens(self, text: str) -> int:
        return self._counter.count(text) if text else 0

    async def build_project_context(self, project_id: str, budget: ContextBudget | None = None) -> ProjectContext:
        active = budget or self._budget
        project = await self._reader.get_project(project_id)
        synopsis_text = await self._reader.get_synopsis(project_id)
        characters = await self._reader.list_characters(project_id)
        scenes = await self._reader.get_recent_scenes(project_id, active.recent_scene_limit)

        synopsis = self._fit(synopsis_text or "", active.synopsis)
        summaries, characters_tokens, characters_truncated = self._fit_characters(characters, active)
        recent_text = "\n\n".join(
            f"[{scene.chapter_title or 'Untitled'} / {scene.title}]\n{scene.plain_text.strip()}"
            for scene in scenes
            if scene.plain_text and scene.plain_text.strip()
        )
        recent = self._fit(recent_text, active.recent_content)

        context = ProjectContext(
            project_id=project_id,
            project=project,
            synopsis=synopsis,
            characters=summaries,
            characters_truncated=characters_truncated,
            characters_tokens=characters_tokens,
            recent_content=recent,
            token_estimate=synopsis.tokens + characters_tokens + recent.tokens,
        )
        LOGGER.debug(
            "Built project context for %s: %d character(s), ~%d tokens, truncated=%s",
            project_id,
            len(summaries),
            context.token_estimate,
            context.truncated,
        )
        return context

    async def build_full_agent_context(self, project_id: str, budget: ContextBudget | None = None) -> FullProjectContext:
        active = budget or self._budget
        project = await self._reader.get_project(project_id)
        synopsis = self._fit(await self._reader.get_synopsis(project_id) or "", active.synopsis)
        characters = list(await self._reader.list_characters(project_id))
        locations = await self._reader.list_locations(project_id)
        chapters = await self._reader.list_recent_chapters(project_id, active.recent_chapter_limit)
        foreshadowing = await self._reader.list_foreshadowing(project_id)
        stats = await self._reader.get_stats(project_id)

        context = FullProjectContext(
            project_id=project_id,
            project=project,
            synopsis=synopsis,
            characters=[_character_detail(character) for character in _by_role(characters)],
            relationships=_collect_relationships(characters),
            locations=[
                LocationContext(
                    id=location.id,
                    name=location.name,
                    description=_clip(location.description, _DETAIL_CLIP),
                    significance=_clip(location.significance, 100),
                )
                for location in locations
            ],
            foreshadowing=[(item.id, _clip(item.description, _DETAIL_CLIP)) for item in foreshadowing],
            recent_chapters=[
                ChapterSummaryContext(
                    volume_number=chapter.volume_number,
                    chapter_number=chapter.number,
                    title=chapter.title,
                    summary=_clip(chapter.summary, _CHAPTER_CLIP),
                )
                for chapter in chapters
                if chapter.summary
            ],
            stats=stats,
        )
        LOGGER.debug(
            "Built agent context for %s: characters=%d locations=%d relationships=%d chapters=%d",
            project_id,
            len(context.characters),
            len(context.locations),
            len(context.relationships),
            len(context.recent_chapters),
        )
        return context

    def format_context_as_system_prompt(
        self,
        context: ProjectContext,
        *,
        session_type: Any = None,
        additional_instructions: str | None = None,
    ) -> str:
        return format_context_as_system_prompt(
            context,
            session_type=session_type,
            additional_instructions=additional_instructions,
        )

    def format_agent_system_prompt(
        self, context: FullProjectContext, session_state: AgentSessionState | None = None
    ) -> str:
        return format_agent_system_prompt(context, session_state)

    def optimize_history_for_token_budget(
        self, messages: Sequence[Any], budget: int | None = None, *, reserved_tokens: int = 0
    ) -> list[Any]:
        limit = self._budget.history if budget is None else budget
        return optimize_history_for_token_budget(
            messages, limit, reserved_tokens=reserved_tokens, count=self.count_tokens
        )

    def _fit(self, text: str, ceiling: int) -> ContextSection:
        fitted, truncated = truncate_to_token_budget(text, ceiling, count=self.count_tokens)
        return ContextSection(text=fitted, tokens=self.count_tokens(fitted), truncated=truncated)

    def _fit_characters(
        self, characters: Sequence[CharacterRecord], budget: ContextBudget
    ) -> tuple[list[CharacterSummary], int, bool]:
        ordered = _by_role(characters)
        truncated = len(ordered) > budget.max_characters
        kept: list[CharacterSummary] = []
        used = 0
        for character in ordered[: budget.max_characters]:
            summary = _summarize_character(character)
            cost = self.count_tokens(summary.render()) + 1
            if used + cost > budget.characters:
                truncated = True
                break
            kept.append(summary)
            used += cost
        return kept, used, truncated


# ----------------------------------------------------------------------
# Pure helpers
# ----------------------------------------------------------------------


def truncate_to_token_budget(text: str, budget: int, *, count: TokenCount | None = None) -> tuple[str, bool]:
    """Trim *text* to *budget* tokens at the paragraph boundary closest to the limit.

    Falls back to a sentence boundary when the first paragraph alone is too long.
    Text is never cut mid-sentence: when even the first sentence does not fit the
    result is empty. Returns ``(text, truncated)``.
    """

    counter = count or TokenCounterRegistry.global_instance().estimate
    if not text:
        return "", False
    if counter(text) <= budget:
        return text, False
    if budget <= 0:
        return "", True

    for pattern, use_end in ((_PARAGRAPH_BREAK, False), (_SENTENCE_END, True)):
        best: str | None = None
        for match in pattern.finditer(text):
            candidate = text[: match.end() if use_end else match.start()].rstrip()
            if not candidate:
                continue
            if counter(candidate) > budget:
                break
            best = candidate
        if best:
            return best, True
    return "", True


def format_context_as_system_prompt(
    context: ProjectContext,
    *,
    session_type: Any = None,
    additional_instructions: str | None = None,
) -> str:
    """Chat-assist prompt: persona plus read-only project context."""

    parts: list[str] = [BASE_SYSTEM_PROMPT]
    context_lines = _project_lines(context.project)
    if context.characters:
        context_lines += ["", "## Main characters", *(summary.render() for summary in context.characters)]
    if context.synopsis.text:
        context_lines += ["", "## Synopsis", context.synopsis.text]
    if context.recent_content.text:
        context_lines += ["", "## Recent content", context.recent_content.text]
    if context_lines:
        parts += ["", "---", "", "# Current work", *context_lines]

    focus = _SESSION_FOCUS.get(str(getattr(session_type, "value", session_type or "")))
    instructions = "\n\n".join(item for item in (focus, additional_instructions) if item)
    if instructions:
        parts += ["", "---", "", "# Additional instructions", instructions]
    return "\n".join(parts)


def format_agent_system_prompt(context: FullProjectContext, session_state: AgentSessionState | None = None) -> str:
    """Agent-mode prompt: full project facts plus the update-block protocol."""

    title = context.project.title if context.project else "Untitled"
    parts: list[str] = [
        f'You are the dedicated AI co-writer for the web novel "{title}".',
        "",
        "## Role",
        "- Support every part of the author's creative work.",
        "- Understand the settings completely and keep the story consistent.",
        "- You can create and update characters, locations, outlines and foreshadowing directly.",
        "- Make concrete suggestions that fit the story's world.",
        "",
        "## Response format",
        "- Answer in the language the author writes in.",
        "- When creating or modifying data, append update blocks at the end of the reply.",
        "- Never contradict established settings.",
        "",
        "---",
    ]
    project_lines = _project_lines(context.project)
    if project_lines:
        parts += ["", *project_lines]
    if context.synopsis.text:
        parts += ["", "# Synopsis", context.synopsis.text]
    if context.characters:
        parts += ["", "# Characters"]
        for character in context.characters:
            parts += ["", f"## {character.name} ({character.role_label}) [id: {character.id}]"]
            basics = [value for value in (character.age, character.gender, character.occupation) if value]
            if basics:
                parts.append(f"Basics: {', '.join(basics)}")
            if character.personality:
                parts.append(f"Personality: {character.personality}")
            if character.appearance:
                parts.append(f"Appearance: {character.appearance}")
            if character.background:
                parts.append(f"Background: {character.background}")
    if context.relationships:
        parts += ["", "# Relationships"]
        for rel in context.relationships:
            parts.append(f"- {rel.first} <-> {rel.second}: {rel.relation_type}")
            if rel.description:
                parts.append(f"  ({rel.description})")
    if context.locations:
        parts += ["", "# Locations"]
        for location in context.locations:
            parts.append(f"- **{location.name}** [id: {location.id}]: {location.description or 'No description'}")
    if context.foreshadowing:
        parts += ["", "# Open foreshadowing"]
        parts += [f"- [id: {item_id}] {description}" for item_id, description in context.foreshadowing]
    if context.recent_chapters:
        parts += ["", "# Recent chapters"]
        for chapter in context.recent_chapters:
            parts += ["", f"## Chapter {chapter.chapter_number}: {chapter.title}", chapter.summary]
    parts += [
        "",
        "# Statistics",
        f"- Total characters written: {context.stats.total_char_count:,}",
        f"- Chapters: {context.stats.total_chapter_count}",
        f"- Scenes: {context.stats.total_scene_count}",
    ]
    if session_state is not None:
        parts += [
            "",
            "# Current session",
            f"- Session type: {session_state.session_type}",
            f"- Turns so far: {session_state.turn_count}",
        ]
        if session_state.last_update_summary:
            parts.append(f"- Last applied changes: {session_state.last_update_summary}")
    parts += ["", "---", "", _update_instructions()]
    return "\n".join(parts)


def optimize_history_for_token_budget(
    messages: Sequence[Any],
    budget: int,
    *,
    reserved_tokens: int = 0,
    count: TokenCount | None = None,
) -> list[Any]:
    """Drop the oldest turns until the history fits *budget*.

    The final user turn is the one being answered and is always kept; if it
    alone exceeds the budget, :class:`ContextOverflowError` is raised instead of
    truncating the author's input. Only completed turns are otherwise eligible.
    """

    counter = count or TokenCounterRegistry.global_instance().estimate
    available = budget - max(0, reserved_tokens)
    if not messages:
        return []

    last = messages[-1]
    in_progress = last if _field(last, "role") == "user" else None
    earlier = messages[:-1] if in_progress is not None else messages
    used = counter(str(_field(in_progress, "content") or "")) if in_progress is not None else 0
    if used > available:
        raise ContextOverflowError(used, max(0, available))

    kept: list[Any] = []
    for message in reversed(earlier):
        if _status_value(message) != "complete":
            continue
        tokens = counter(str(_field(message, "content") or ""))
        if used + tokens > available:
            break
        kept.append(message)
        used += tokens
    kept.reverse()
    while kept and _field(kept[0], "role") != "user":
        kept.pop(0)
    dropped = len(earlier) - len(kept)
    if dropped:
        LOGGER.debug("History optimization dropped %d message(s) to fit %d tokens", dropped, available)
    if in_progress is not None:
        kept.append(in_progress)
    return kept


def calculate_history_tokens(messages: Sequence[Any], *, count: TokenCount | None = None) -> int:
    counter = count or TokenCounterRegistry.global_instance().estimate
    return sum(counter(str(_field(message, "content") or "")) for message in messages)


def _update_instructions() -> str:
    lines = [
        "# Updating project data",
        "",
        "When you create or modify characters, locations, the synopsis, outlines or foreshadowing,",
        "append one JSON block per change at the very end of your reply, in this format:",
        "",
        f"```{UPDATE_BLOCK_TAG}",
        "{",
        '  "type": "create_character",',
        '  "data": {',
        '    "name": "Name",',
        '    "role": "protagonist|antagonist|supporting|minor",',
        '    "age": "Age",',
        '    "gender": "Gender",',
        '    "occupation": "Occupation",',
        '    "personality": "Personality",',
        '    "background": "Backstory"',
        "  }",
        "}",
        "```",
        "",
        "Supported types and their required data fields:",
    ]
    for update_type in UpdateType:
        required = ", ".join(REQUIRED_FIELDS[update_type]) or "none"
        lines.append(f"- {update_type.value}: {required}")
    lines += [
        "",
        "Use the ids listed above when updating existing records. Blocks are applied in the order",
        "they appear, so create a character before any block that refers to it.",
        "Do not include these blocks unless the author asks for a change.",
    ]
    return "\n".join(lines)


def _project_lines(project: ProjectInfo | None) -> list[str]:
    if project is None:
        return []
    lines = ["## Project", f"- Title: {project.title}"]
    if project.description:
        lines.append(f"- Description: {project.description}")
    if project.genre:
        lines.append(f"- Genre: {', '.join(project.genre)}")
    if project.target_platform:
        lines.append(f"- Platform: {project.target_platform}")
    if project.target_length:
        lines.append(f"- Target length: {project.target_length:,} characters per chapter")
    return lines


def _by_role(characters: Sequence[CharacterRecord]) -> list[CharacterRecord]:
    # sorted() is stable, so ties keep the store's order.
    return sorted(characters, key=lambda character: _ROLE_PRIORITY.get(character.role, len(_ROLE_PRIORITY)))


def _summarize_character(character: CharacterRecord) -> CharacterSummary:
    parts = [value for value in (character.age, character.gender, character.occupation) if value]
    if character.personality:
        parts.append(character.personality[:50])
    description = ", ".join(parts) or _clip(character.description, 100)
    return CharacterSummary(
        id=character.id,
        name=character.name,
        role=character.role,
        role_label=_ROLE_LABELS.get(character.role, character.role),
        description=description,
    )


def _character_detail(character: CharacterRecord) -> CharacterDetail:
    appearance = ", ".join(f"{key}: {value}" for key, value in character.appearance.items() if value)
    return CharacterDetail(
        id=character.id,
        name=character.name,
        role_label=_ROLE_LABELS.get(character.role, character.role),
        age=character.age,
        gender=character.gender,
        occupation=character.occupation,
        appearance=_clip(appearance, _DETAIL_CLIP) or None,
        personality=_clip(character.personality, _DETAIL_CLIP) or None,
        background=_clip(character.background, _DETAIL_CLIP) or None,
    )


def _collect_relationships(characters: Sequence[CharacterRecord]) -> list[RelationshipContext]:
    seen: set[frozenset[str]] = set()
    result: list[RelationshipContext] = []
    for character in characters:
        for rel in character.relationships:
            pair = frozenset((character.name, rel.target_name))
            if pair in seen:
                continue
            seen.add(pair)
            result.append(
                RelationshipContext(
                    first=character.name,
                    second=rel.target_name,
                    relation_type=rel.relation_type,
                    description=rel.description,
                )
            )
    return result


def _clip(text: str | None, limit: int) -> str:
    value = (text or "").strip()
    if len(value) <= limit:
        return value
    return value[:limit].rstrip() + "..."


def _field(message: Any, name: str) -> Any:
    if isinstance(message, Mapping):
        return message.get(name)
    return getattr(message, name, None)


def _status_value(message: Any) -> str:
    status = _field(message, "status")
    if status is None:
        return "complete"
    return str(getattr(status, "value", status))
