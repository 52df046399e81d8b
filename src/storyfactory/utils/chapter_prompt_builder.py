"""
Chapter prompt builder for serialized fiction generation.

Builds the system prompt (author persona), the chapter request, the rewrite
request and the summary request sent to the text-generation provider.

Key Components:
- TensionLevel: Type-safe tension bands derived from a 0-100 target
- ChapterPromptParams: Parameter object for chapter prompts
- build_tracker_context(): Progression and inventory context for the protagonist
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ..models import ArcOutline, AuthorProfile, Blueprint, Production, WriteTask
from .repository import ContentStore
from .word_count import MIN_WORD_COUNT, TARGET_WORD_COUNT

logger = logging.getLogger(__name__)

HIGH_TENSION_THRESHOLD = 70
MEDIUM_TENSION_THRESHOLD = 40

DEFAULT_PERSONA = (
    "You are a seasoned web-novel author who writes gripping, fast-paced "
    "serialized fiction with vivid action and sharp dialogue."
)
FIRST_CHAPTER_CONTEXT = "This is the first chapter."
DEFAULT_OBJECTIVE = "Move the story forward."

SUMMARY_EXCERPT_CHARS = 6000


class TensionLevel(str, Enum):
    """Tension bands for a chapter."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def tension_level(tension_target: int) -> TensionLevel:
    """
    Map a 0-100 tension target to a band.

    Args:
        tension_target: Target tension score

    Returns:
        HIGH above 70, MEDIUM above 40, LOW otherwise
    """
    if tension_target > HIGH_TENSION_THRESHOLD:
        return TensionLevel.HIGH
    if tension_target > MEDIUM_TENSION_THRESHOLD:
        return TensionLevel.MEDIUM
    return TensionLevel.LOW


def get_current_arc(blueprint: Blueprint, chapter_number: int) -> Optional[ArcOutline]:
    """Arc whose chapter range contains chapter_number, if any."""
    for arc in blueprint.arcs:
        if arc.start_chapter <= chapter_number <= arc.end_chapter:
            return arc
    return None


@dataclass
class ChapterPromptParams:
    """
    Parameter object for a chapter prompt.

    Attributes:
        blueprint: Story outline the chapter is written against
        production: Production record (last summary, progress)
        task: Write-task describing the chapter to produce
        tracker_context: Progression/inventory block for the protagonist
    """
    blueprint: Blueprint
    production: Production
    task: WriteTask
    tracker_context: str = ""


def build_system_prompt(author: Optional[AuthorProfile], blueprint: Optional[Blueprint] = None) -> str:
    """Persona prompt for the assigned author, or a generic persona."""
    parts = [author.persona_prompt.strip() if author and author.persona_prompt.strip() else DEFAULT_PERSONA]
    if author and author.writing_style:
        parts.append(f"Writing style: {author.writing_style}")
    if blueprint and blueprint.genre:
        parts.append(f"You specialize in {blueprint.genre} stories.")
    return "\n".join(parts)


def build_chapter_prompt(params: ChapterPromptParams) -> str:
    """
    Build the user prompt asking for one chapter.

    Args:
        params: ChapterPromptParams

    Returns:
        Prompt text
    """
    blueprint = params.blueprint
    task = params.task
    arc = get_current_arc(blueprint, task.chapter_number)
    level = tension_level(task.tension_target)

    arc_text = f"{arc.title}: {arc.summary}".strip() if arc else f"Arc {task.arc_number or 1}"
    plot_points = [p.event for p in blueprint.plot_points if p.chapter == task.chapter_number]
    twists = [t.event for t in blueprint.twists if t.chapter == task.chapter_number]

    sections: List[str] = [
        f"WRITE CHAPTER {task.chapter_number} - {blueprint.title}",
        "",
        "=== STORY ===",
        f"Genre: {blueprint.genre}",
        f"Protagonist: {blueprint.protagonist_name or 'N/A'}",
        f"World: {blueprint.world_name or 'N/A'}",
    ]
    if blueprint.power_system_name:
        sections.append(f"Power system: {blueprint.power_system_name}")

    sections.extend([
        "",
        "=== PREVIOUSLY ===",
        params.production.last_chapter_summary or FIRST_CHAPTER_CONTEXT,
        "",
        "=== CURRENT ARC ===",
        arc_text,
        "",
        "=== OBJECTIVES ===",
        task.plot_objectives or DEFAULT_OBJECTIVE,
    ])
    for event in plot_points:
        sections.append(f"- Plot point: {event}")
    for event in twists:
        sections.append(f"- Twist: {event}")

    sections.extend([
        "",
        f"=== TENSION: {level.value.upper()} ===",
        f"Tension target: {task.tension_target}/100",
    ])

    if params.tracker_context:
        sections.extend(["", "=== CONTINUITY ===", params.tracker_context])

    sections.extend([
        "",
        "=== REQUIREMENTS ===",
        f"1. Length: about {TARGET_WORD_COUNT} words (at least {MIN_WORD_COUNT})",
        f'2. Start with the line "Chapter {task.chapter_number}: [Title]"',
        "3. Dialogue should make up 35-50% of the text",
        "4. End on a hook or cliffhanger",
        "5. Keep power levels and items consistent with the continuity notes",
    ])

    if task.special_instructions:
        sections.extend(["", "=== EXTRA INSTRUCTIONS ===", task.special_instructions])

    sections.extend(["", "Write the full chapter:"])
    return "\n".join(sections)


def build_rewrite_prompt(content: str, issues: List[str], suggestions: Optional[List[str]] = None) -> str:
    """Ask for a rewrite of a draft that addresses the scorer's issues."""
    issue_text = "\n".join(f"- {issue}" for issue in issues) or "- Overall quality is below the bar"
    lines = [
        "REWRITE the chapter below.",
        "",
        "=== ISSUES ===",
        issue_text,
    ]
    if suggestions:
        lines.extend(["", "=== SUGGESTIONS ==="])
        lines.extend(f"- {suggestion}" for suggestion in suggestions)
    lines.extend([
        "",
        "=== REQUIREMENTS ===",
        "- Fix every issue listed above",
        "- Keep the plot events and the chapter heading line",
        "- Raise reader engagement",
        "",
        "=== DRAFT ===",
        content,
        "",
        "Write the full rewritten chapter:",
    ])
    return "\n".join(lines)


def build_summary_prompt(content: str, chapter_number: int) -> str:
    return (
        f"Summarize chapter {chapter_number} in 2-3 sentences "
        f"(key events, changes to characters):\n\n{content[:SUMMARY_EXCERPT_CHARS]}"
    )


def build_tracker_context(
    store: Optional[ContentStore],
    production: Production,
    blueprint: Blueprint,
    at_chapter: int
) -> str:
    """
    Progression and inventory context for the blueprint's protagonist.

    Read-only: trackers are loaded from the store and only queried. Any
    failure degrades to an empty context.

    Args:
        store: Content store backing the trackers
        production: Production being written
        blueprint: Blueprint naming the protagonist
        at_chapter: Chapter about to be written

    Returns:
        Context block, or "" when nothing is known
    """
    protagonist = blueprint.protagonist_name
    if store is None or not protagonist:
        return ""

    from ..item_tracker import create_item_tracker
    from ..progression_tracker import create_progression_tracker

    try:
        progression = create_progression_tracker(
            production.project_id,
            store=store,
            power_system=blueprint.power_system or None,
            total_chapters=production.total_chapters,
        )
        items = create_item_tracker(
            production.project_id, store=store, total_chapters=production.total_chapters
        )
        parts = []
        if progression.get_power_state(protagonist) is not None:
            expected = progression.get_expected_realm(at_chapter)
            parts.append(f"## Power: {progression.get_progression_summary(protagonist)}")
            parts.append(f"Expected at this point: {expected.realm} level {expected.level}")
        if items.get_items_by_owner(protagonist):
            parts.append(items.build_item_context(protagonist, at_chapter))
        return "\n".join(parts)
    except Exception as e:
        logger.warning(f"Tracker context unavailable for production {production.id}: {e}", exc_info=True)
        return ""
