"""Reusable prompt templates for one-shot writing tasks.

Templates use a small mustache-like syntax: ``{{name}}`` is replaced with the
variable's value (blank when absent) and ``{{#if name}}...{{/if}}`` keeps its
body only when the variable is non-blank.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping

from .errors import PromptTemplateError

__all__ = [
    "BuiltPrompt",
    "PROMPT_TEMPLATES",
    "PromptTemplate",
    "TemplateCategory",
    "build_prompt_from_template",
    "get_prompt_preview",
    "get_required_variables",
    "get_template",
    "list_templates",
    "render_template",
]


class TemplateCategory(str, Enum):
    WRITING = "writing"
    ANALYSIS = "analysis"
    BRAINSTORM = "brainstorm"
    EDITING = "editing"


@dataclass(slots=True, frozen=True)
class PromptTemplate:
    id: str
    name: str
    description: str
    system_prompt: str
    user_prompt_template: str
    category: TemplateCategory
    required_variables: tuple[str, ...] = ()
    optional_variables: tuple[str, ...] = ()
    suggested_temperature: float = 0.7


@dataclass(slots=True, frozen=True)
class BuiltPrompt:
    """Rendered prompt pair ready for :meth:`UnifiedClient.send`."""

    system: str
    user: str
    temperature: float
    template_id: str = ""


_NOVELIST = "You are an experienced novelist and writing coach."

_TEMPLATES: tuple[PromptTemplate, ...] = (
    PromptTemplate(
        id="continue_writing",
        name="Continue writing",
        description="Continue the story naturally from the given passage.",
        system_prompt=(
            f"{_NOVELIST} Continue the story in the same voice, tense and point of view as the passage. "
            "Keep characters consistent and move the scene forward instead of summarizing it."
        ),
        user_prompt_template=(
            "Continue the following passage.\n\n"
            "{{#if characters}}Characters in this scene:\n{{characters}}\n\n{{/if}}"
            "{{#if style}}Style notes: {{style}}\n\n{{/if}}"
            "Passage:\n{{content}}"
        ),
        category=TemplateCategory.WRITING,
        required_variables=("content",),
        optional_variables=("characters", "style"),
        suggested_temperature=0.8,
    ),
    PromptTemplate(
        id="rewrite",
        name="Rewrite",
        description="Rewrite a passage while keeping its meaning.",
        system_prompt=(
            f"{_NOVELIST} Rewrite the passage so it reads more vividly and smoothly. "
            "Preserve every plot fact; change only the prose."
        ),
        user_prompt_template=(
            "Rewrite this passage.\n\n"
            "{{#if direction}}Direction: {{direction}}\n\n{{/if}}"
            "Passage:\n{{content}}"
        ),
        category=TemplateCategory.EDITING,
        required_variables=("content",),
        optional_variables=("direction",),
        suggested_temperature=0.7,
    ),
    PromptTemplate(
        id="improve_dialogue",
        name="Improve dialogue",
        description="Make dialogue sound natural and characterful.",
        system_prompt=(
            f"{_NOVELIST} Improve the dialogue so each speaker has a distinct voice, "
            "subtext carries the tension and the exchange sounds like real speech."
        ),
        user_prompt_template=(
            "Improve this dialogue.\n\n"
            "{{#if character}}Speakers: {{character}}\n{{/if}}"
            "{{#if situation}}Situation: {{situation}}\n{{/if}}"
            "\nDialogue:\n{{dialogue}}"
        ),
        category=TemplateCategory.EDITING,
        required_variables=("dialogue",),
        optional_variables=("character", "situation"),
        suggested_temperature=0.7,
    ),
    PromptTemplate(
        id="describe_scene",
        name="Describe scene",
        description="Write a sensory description of a scene.",
        system_prompt=(
            f"{_NOVELIST} Describe the scene through concrete sensory detail. "
            "Show rather than tell and keep the description in service of the mood."
        ),
        user_prompt_template=(
            "Describe this scene.\n\n"
            "Scene: {{scene}}\n"
            "{{#if mood}}Mood: {{mood}}\n{{/if}}"
            "{{#if focus}}Focus on: {{focus}}\n{{/if}}"
        ),
        category=TemplateCategory.WRITING,
        required_variables=("scene",),
        optional_variables=("mood", "focus"),
        suggested_temperature=0.8,
    ),
    PromptTemplate(
        id="character_voice",
        name="Character voice",
        description="Write lines or inner monologue in a character's voice.",
        system_prompt=(
            f"{_NOVELIST} Write in the voice of the described character. "
            "Their word choice, rhythm and concerns must follow from their personality and history."
        ),
        user_prompt_template=(
            "Write how this character would react.\n\n"
            "Character:\n{{characterInfo}}\n\n"
            "Situation: {{situation}}\n"
            "{{#if emotion}}Emotional state: {{emotion}}\n{{/if}}"
        ),
        category=TemplateCategory.WRITING,
        required_variables=("characterInfo", "situation"),
        optional_variables=("emotion",),
        suggested_temperature=0.8,
    ),
    PromptTemplate(
        id="brainstorm",
        name="Brainstorm",
        description="Generate several distinct story ideas.",
        system_prompt=(
            f"{_NOVELIST} Offer several distinct, concrete ideas. "
            "Favor surprising options over obvious ones and say briefly why each could work."
        ),
        user_prompt_template=(
            "Brainstorm ideas for the following.\n\n"
            "Context:\n{{context}}\n\n"
            "{{#if constraints}}Constraints: {{constraints}}\n{{/if}}"
            "{{#if direction}}Preferred direction: {{direction}}\n{{/if}}"
        ),
        category=TemplateCategory.BRAINSTORM,
        required_variables=("context",),
        optional_variables=("constraints", "direction"),
        suggested_temperature=0.9,
    ),
    PromptTemplate(
        id="summarize",
        name="Summarize",
        description="Summarize a passage or chapter.",
        system_prompt=(
            "You are a precise editor. Summarize the key events, character changes and open threads. "
            "Do not add anything the text does not contain."
        ),
        user_prompt_template=(
            "Summarize the following text.\n\n"
            "{{#if length}}Target length: {{length}}\n\n{{/if}}"
            "Text:\n{{content}}"
        ),
        category=TemplateCategory.ANALYSIS,
        required_variables=("content",),
        optional_variables=("length",),
        suggested_temperature=0.3,
    ),
    PromptTemplate(
        id="check_consistency",
        name="Check consistency",
        description="Find contradictions with established settings.",
        system_prompt=(
            "You are a meticulous continuity editor. List every contradiction between the text "
            "and the established settings, quoting the conflicting lines. Say so plainly when there are none."
        ),
        user_prompt_template=(
            "Check this text for consistency problems.\n\n"
            "{{#if settings}}Established settings:\n{{settings}}\n\n{{/if}}"
            "Text:\n{{content}}"
        ),
        category=TemplateCategory.ANALYSIS,
        required_variables=("content",),
        optional_variables=("settings",),
        suggested_temperature=0.2,
    ),
    PromptTemplate(
        id="suggest_hooking",
        name="Suggest chapter hook",
        description="Suggest endings that make readers turn the page.",
        system_prompt=(
            f"{_NOVELIST} Suggest chapter endings that leave a strong hook. "
            "Each suggestion should raise a question the next chapter can answer."
        ),
        user_prompt_template=(
            "Suggest hooks for the end of this chapter.\n\n"
            "Chapter:\n{{content}}\n\n"
            "{{#if nextChapter}}The next chapter covers: {{nextChapter}}\n{{/if}}"
        ),
        category=TemplateCategory.WRITING,
        required_variables=("content",),
        optional_variables=("nextChapter",),
        suggested_temperature=0.8,
    ),
    PromptTemplate(
        id="analyze_pacing",
        name="Analyze pacing",
        description="Analyze the pacing of a passage.",
        system_prompt=(
            "You are a developmental editor. Assess where the text drags or rushes, "
            "point to specific paragraphs and suggest concrete fixes."
        ),
        user_prompt_template=(
            "Analyze the pacing of this text.\n\n"
            "{{#if genre}}Genre: {{genre}}\n\n{{/if}}"
            "Text:\n{{content}}"
        ),
        category=TemplateCategory.ANALYSIS,
        required_variables=("content",),
        optional_variables=("genre",),
        suggested_temperature=0.3,
    ),
    PromptTemplate(
        id="custom",
        name="Custom",
        description="Caller-supplied system and user prompts.",
        system_prompt="{{systemPrompt}}",
        user_prompt_template="{{userPrompt}}",
        category=TemplateCategory.WRITING,
        required_variables=("systemPrompt", "userPrompt"),
        suggested_temperature=0.7,
    ),
)

PROMPT_TEMPLATES: Dict[str, PromptTemplate] = {template.id: template for template in _TEMPLATES}

_IF_BLOCK = re.compile(r"\{\{#if\s+(\w+)\}\}((?:(?!\{\{#if\s).)*?)\{\{/if\}\}", re.DOTALL)
_VARIABLE = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")


# ----------------------------------------------------------------------
# Lookup
# ----------------------------------------------------------------------


def get_template(template_id: str) -> PromptTemplate:
    template = PROMPT_TEMPLATES.get(template_id)
    if template is None:
        raise PromptTemplateError(template_id, message=f"Unknown prompt template: {template_id}")
    return template


def list_templates(category: TemplateCategory | str | None = None) -> list[PromptTemplate]:
    if category is None:
        return list(_TEMPLATES)
    wanted = TemplateCategory(category)
    return [template for template in _TEMPLATES if template.category is wanted]


def get_required_variables(template_id: str) -> tuple[str, ...]:
    return get_template(template_id).required_variables


# ----------------------------------------------------------------------
# Rendering
# ----------------------------------------------------------------------


def _is_blank(value: object) -> bool:
    return value is None or not str(value).strip()


def render_template(text: str, variables: Mapping[str, object]) -> str:
    """Substitute *variables* into *text*.

    Conditional blocks are resolved innermost first so nested ``{{#if}}``
    blocks work. Runs of blank lines left by dropped blocks collapse to one.
    """

    def _resolve(match: re.Match[str]) -> str:
        return "" if _is_blank(variables.get(match.group(1))) else match.group(2)

    previous = None
    while previous != text:
        previous = text
        text = _IF_BLOCK.sub(_resolve, text)

    def _substitute(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    text = _VARIABLE.sub(_substitute, text)
    return _EXTRA_BLANK_LINES.sub("\n\n", text).strip()


def build_prompt_from_template(template_id: str, variables: Mapping[str, object]) -> BuiltPrompt:
    """Render *template_id* with *variables*.

    Raises :class:`PromptTemplateError` for an unknown template or when any
    required variable is missing or blank; nothing is rendered in that case.
    """

    template = get_template(template_id)
    missing = [name for name in template.required_variables if _is_blank(variables.get(name))]
    if missing:
        raise PromptTemplateError(template_id, missing)
    return BuiltPrompt(
        system=render_template(template.system_prompt, variables),
        user=render_template(template.user_prompt_template, variables),
        temperature=template.suggested_temperature,
        template_id=template_id,
    )


def get_prompt_preview(template_id: str) -> str:
    """User prompt with placeholders shown as ``[name]`` and conditionals unwrapped."""

    text = get_template(template_id).user_prompt_template
    text = re.sub(r"\{\{#if\s+\w+\}\}|\{\{/if\}\}", "", text)
    return _VARIABLE.sub(lambda match: f"[{match.group(1)}]", text).strip()
