#!/usr/bin/env python3
"""
Generate a film from a YAML storyboard.

Usage:
    python scripts/run_film.py <storyboard.yaml> [--mock] [--order ID,ID,...] [--no-audio]

Storyboard format:
    style: Anime
    genre: Fairy tale
    characters:
      - name: Mira
        image: refs/mira.png        # optional, relative to the storyboard
        description: ...            # optional, skips the image analysis
    scenes:
      - id: opening                 # optional, defaults to scene_<n>
        description: Mira wakes up in the forest
        characters: [Mira]
        environment: Misty pine forest at dawn
        action: Mira stretches and looks around
        transition: dissolve        # fade, dissolve, wipeLeft, wipeRight, circleOpen

Example:
    python scripts/run_film.py storyboards/forest.yaml --mock
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Tuple

# Add backend directory to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import yaml

from config import settings
from logging_config import configure_logging
from pipeline.error_handler import PipelineError, ValidationError
from pipeline.models import Character, GenerationStatus, Scene
from pipeline.sequencer import PipelineSequencer
from pipeline.session import PipelineSession
from services.generation_backend import get_generation_backend
from services.reference_images import load_reference_image


def load_storyboard(path: str) -> Tuple[List[Scene], List[Character], str, str]:
    """
    Read a storyboard file.

    Returns:
        (scenes, characters, style, genre)

    Raises:
        ValidationError: If the file has no scenes or is malformed
    """
    storyboard_path = Path(path)
    with open(storyboard_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValidationError("Storyboard must be a mapping", field="storyboard")

    raw_scenes = data.get("scenes") or []
    if not raw_scenes:
        raise ValidationError("Storyboard has no scenes", field="scenes")

    characters = []
    for index, raw in enumerate(data.get("characters") or [], 1):
        image = None
        if raw.get("image"):
            image = load_reference_image(storyboard_path.parent / raw["image"])
        characters.append(Character(
            id=raw.get("id", index),
            name=raw.get("name", ""),
            reference_image=image,
            locked_description=raw.get("description"),
        ))

    scenes = []
    for index, raw in enumerate(raw_scenes, 1):
        try:
            scenes.append(Scene(
                id=raw.get("id", f"scene_{index}"),
                description=raw.get("description", ""),
                character_names=raw.get("characters") or [],
                environment=raw.get("environment", ""),
                action=raw.get("action", ""),
                transition_to_next=raw.get("transition"),
            ))
        except ValueError as e:
            raise ValidationError(f"Scene {index} is invalid: {e}", field="scenes") from e

    return scenes, characters, data.get("style", ""), data.get("genre", "")


def reorder_scenes(scenes: List[Scene], order: Optional[str]) -> Optional[List[Scene]]:
    """Scenes in the order given as comma-separated ids, or None when no order is given."""
    if not order:
        return None

    by_id = {scene.id: scene for scene in scenes}
    ids = [scene_id.strip() for scene_id in order.split(",") if scene_id.strip()]
    unknown = [scene_id for scene_id in ids if scene_id not in by_id]
    if unknown:
        raise ValidationError(f"Unknown scene ids in --order: {', '.join(unknown)}", field="order")
    return [by_id[scene_id] for scene_id in ids]


def print_status(status: GenerationStatus) -> None:
    line = f"  scene {status.scene_index + 1} ({status.scene_id}): {status.state.value}"
    if status.error_message:
        line += f" - {status.error_message}"
    print(line)


def print_progress(value: float) -> None:
    print(f"\r🎞️  Composing: {value:.0%}", end="", flush=True)
    if value >= 1.0:
        print()


async def run(args: argparse.Namespace) -> int:
    try:
        scenes, characters, style, genre = load_storyboard(args.storyboard)
        final_order = reorder_scenes(scenes, args.order)
    except PipelineError as e:
        print(f"❌ {e.message}")
        return 1

    backend_name = "mock" if args.mock else None
    if backend_name is None:
        try:
            settings.validate_generation_config()
        except ValueError as e:
            print(f"❌ {e}")
            return 1

    backend_kwargs = {"mock_dir": args.mock_dir} if args.mock and args.mock_dir else {}
    backend = get_generation_backend(backend_name, **backend_kwargs)

    overrides = {"include_audio": False} if args.no_audio else {}
    session = PipelineSession.from_settings(**overrides)
    sequencer = PipelineSequencer(backend, session, on_status=print_status)

    print(f"🎬 Generating {len(scenes)} scene(s) with the {backend.name} backend")
    film = await sequencer.run_film(
        scenes,
        characters,
        style,
        genre,
        final_order=final_order,
        on_progress=print_progress,
    )

    if film.run.error:
        print(f"❌ {film.run.error}")
        return 1
    if film.composition_error:
        print(f"❌ Composition failed: {film.composition_error}")
        for completed in film.run.completed:
            print(f"  clip {completed.scene_id}: {completed.artifact_ref}")
        return 1

    print(f"✅ Final movie: {film.final_video_path}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Generate a film from a storyboard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("storyboard", help="Path to the storyboard YAML file")
    parser.add_argument("--mock", action="store_true", default=settings.MOCK_VID_GENS,
                        help="Use the mock backend (no API credits consumed)")
    parser.add_argument("--mock-dir", help="Directory of .mp4 clips for the mock backend")
    parser.add_argument("--order", help="Comma-separated scene ids giving the final film order")
    parser.add_argument("--no-audio", action="store_true", default=not settings.INCLUDE_AUDIO,
                        help="Compose video only, without cross-fading audio tracks")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL, help="Log level (default: %(default)s)")

    args = parser.parse_args()

    configure_logging(args.log_level)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
