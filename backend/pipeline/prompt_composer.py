"""
Scene prompt composer.

Turns one scene plus the run's continuity model into the directive sent to
the video model. The directive always opens with the same style/genre clause
so every clip of a film starts from an identical anchor.
"""

from typing import Optional

import structlog

from pipeline.models import ContinuityModel, Scene

logger = structlog.get_logger(__name__)


# Defaults substituted for missing fields
DEFAULT_STYLE = "cinematic"
DEFAULT_GENRE = "adventure"
DEFAULT_DESCRIPTION = "A scene unfolds"
DEFAULT_CHARACTERS_PRESENT = "None"
DEFAULT_ENVIRONMENT = "Unspecified environment"
DEFAULT_ACTION = "No specific action"

MISSING_APPEARANCE = "No visual reference provided. Describe based on context from the story."

OPENING_CLAUSE_TEMPLATE = "In a {style} aesthetic, with the dramatic tone of a {genre}, "

FIRST_SCENE_LOCK = (
    "IMPORTANT: This is the FIRST SCENE.\n"
    "You MUST lock the exact appearance of all characters to their canonical descriptions from the Film Bible.\n"
    "In all following scenes, these locked designs MUST NOT change in any way."
)

FIRST_SCENE_NOTE = "This is the very first scene of the story. Set the tone and introduce the world."

FOLLOW_UP_NOTE_TEMPLATE = 'This scene directly follows a scene where: "{action}". Ensure a smooth transition.'


def _or_default(value: Optional[str], default: str) -> str:
    if value is None or not value.strip():
        return default
    return value.strip()


def _verbatim_or_default(value: Optional[str], default: str) -> str:
    """The value exactly as given; the default only when it is blank."""
    if value is None or not value.strip():
        return default
    return value


def opening_clause(style: str, genre: str) -> str:
    """
    The exact prefix every directive starts with.

    Example:
        >>> opening_clause("Anime", "Fairy tale")
        'In a Anime aesthetic, with the dramatic tone of a Fairy tale, '
    """
    return OPENING_CLAUSE_TEMPLATE.format(
        style=_verbatim_or_default(style, DEFAULT_STYLE),
        genre=_verbatim_or_default(genre, DEFAULT_GENRE),
    )


def render_character_block(model: ContinuityModel) -> str:
    """One line per bible character with its canonical appearance."""
    lines = [
        f"- **{c.name.strip()}**: {_or_default(c.locked_description, MISSING_APPEARANCE)}"
        for c in model.characters
    ]
    return "\n".join(lines) if lines else "- No named characters."


def render_environment_block(model: ContinuityModel) -> str:
    lines = [
        f"- {env.id}: {_or_default(env.description, DEFAULT_ENVIRONMENT)}"
        for env in model.environments
    ]
    return "\n".join(lines) if lines else f"- {DEFAULT_ENVIRONMENT}"


def continuity_note(prev_scene: Optional[Scene]) -> str:
    """
    Continuity note built from the previous scene's source action.

    Example:
        >>> continuity_note(None)
        'This is the very first scene of the story. Set the tone and introduce the world.'
    """
    if prev_scene is None:
        return FIRST_SCENE_NOTE
    return FOLLOW_UP_NOTE_TEMPLATE.format(action=_or_default(prev_scene.action, DEFAULT_ACTION))


def _environment_reference(scene: Scene, model: ContinuityModel) -> str:
    environment = _or_default(scene.environment, DEFAULT_ENVIRONMENT)
    trimmed = (scene.environment or "").strip()
    for env in model.environments:
        if env.description == trimmed:
            return f"{environment} ({env.id})"
    return environment


def compose_scene_prompt(
    scene: Scene,
    model: ContinuityModel,
    prev_scene: Optional[Scene] = None
) -> str:
    """
    Compose the generation directive for a scene.

    The result is deterministic for identical inputs and always begins with
    opening_clause(model.style, model.genre). For the first scene the
    character lock instructions follow the opening sentence directly.

    Args:
        scene: Scene to generate
        model: Continuity model of the run
        prev_scene: Scene directly before this one in run order, or None

    Returns:
        Directive string for the video model

    Example:
        >>> prompt = compose_scene_prompt(scene, model, None)
        >>> prompt.startswith(opening_clause(model.style, model.genre))
        True
    """
    style = _verbatim_or_default(model.style, DEFAULT_STYLE)
    genre = _verbatim_or_default(model.genre, DEFAULT_GENRE)

    description = _or_default(scene.description, DEFAULT_DESCRIPTION)
    if not description.endswith((".", "!", "?")):
        description = f"{description}."

    names = [name.strip() for name in scene.character_names if name and name.strip()]
    characters_present = ", ".join(names) if names else DEFAULT_CHARACTERS_PRESENT

    sections = [opening_clause(style, genre) + description]

    if prev_scene is None:
        sections.append(FIRST_SCENE_LOCK)

    sections.append(
        "CURRENT SCENE:\n"
        f"- Scene Description: {description}\n"
        f"- Characters Present: {characters_present}\n"
        f"- Environment: {_environment_reference(scene, model)}\n"
        f"- Core Action: {_or_default(scene.action, DEFAULT_ACTION)}\n"
        f"- Continuity Note from Previous Scene: {continuity_note(prev_scene)}"
    )

    sections.append(
        "FILM BIBLE:\n"
        f"Global Style: {style}\n"
        f"Narrative Genre: {genre}\n"
        "\n"
        "CANONICAL CHARACTER DESCRIPTIONS (NON-NEGOTIABLE):\n"
        f"{render_character_block(model)}\n"
        "\n"
        "ENVIRONMENT & STYLE RULES:\n"
        f'- The visual style MUST remain "{style}" throughout. '
        "It must never drift into realism, Disney, or generic anime archetypes.\n"
        "\n"
        "Key Environments:\n"
        f"{render_environment_block(model)}"
    )

    prompt = "\n\n".join(sections)

    logger.debug(
        "scene_prompt_composed",
        scene_id=scene.id,
        first_scene=prev_scene is None,
        prompt_length=len(prompt)
    )

    return prompt
