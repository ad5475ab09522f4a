"""
Continuity model builder.

Collects the characters, environments and style every scene prompt of a run
is built from, so that all clips share one canonical "film bible".
"""

from typing import Iterable, List

import structlog

from pipeline.models import Character, ContinuityModel, EnvironmentEntry, Scene

logger = structlog.get_logger(__name__)


def unique_environments(scenes: Iterable[Scene]) -> List[EnvironmentEntry]:
    """
    Deduplicate scene environments by their trimmed text.

    Ids are assigned as env_1, env_2, ... in order of first appearance.

    Example:
        >>> envs = unique_environments([
        ...     Scene(id="1", environment="Forest "),
        ...     Scene(id="2", environment="Cave"),
        ...     Scene(id="3", environment=" Forest"),
        ... ])
        >>> [(e.id, e.description) for e in envs]
        [('env_1', 'Forest'), ('env_2', 'Cave')]
    """
    seen = []
    for scene in scenes:
        environment = (scene.environment or "").strip()
        if environment not in seen:
            seen.append(environment)

    return [
        EnvironmentEntry(id=f"env_{index}", description=description)
        for index, description in enumerate(seen, 1)
    ]


def build_continuity_model(
    characters: Iterable[Character],
    scenes: Iterable[Scene],
    style: str,
    genre: str
) -> ContinuityModel:
    """
    Build the continuity model for a run.

    Characters without a name are left out. No network calls are made.

    Args:
        characters: Current characters (with any resolved locked descriptions)
        scenes: Current scene order
        style: Visual style, e.g. "Anime"
        genre: Narrative genre, e.g. "Fantasy novel"

    Returns:
        Frozen ContinuityModel
    """
    scenes = list(scenes)
    named = tuple(c for c in characters if c.has_name)
    environments = tuple(unique_environments(scenes))

    model = ContinuityModel(
        characters=named,
        environments=environments,
        style=style or "",
        genre=genre or "",
    )

    logger.debug(
        "continuity_model_built",
        num_characters=len(named),
        num_environments=len(environments),
        num_scenes=len(scenes),
        style=style,
        genre=genre
    )

    return model
