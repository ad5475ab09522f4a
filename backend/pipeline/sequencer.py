"""
Pipeline sequencer - drives a complete run.

Coordinates one film run:
1. Snapshot of the current scenes and characters
2. Character precheck (derive locked descriptions from reference images)
3. Continuity model for the run
4. Strictly sequential scene generation, stopping at the first failure
5. Composition of the completed clips (run_film only)

Scenes are generated one at a time because each prompt carries a
continuity note about the scene before it.
"""

import asyncio
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from pipeline.asset_manager import AssetManager
from pipeline.continuity import build_continuity_model
from pipeline.error_handler import (
    CompositionError,
    PrecheckError,
    RunCancelled,
    ValidationError,
)
from pipeline.job_driver import GenerationJobDriver, StatusObserver
from pipeline.models import (
    Character,
    CompletedScene,
    CompositionEntry,
    CompositionSpec,
    FilmResult,
    GenerationState,
    GenerationStatus,
    RunResult,
    Scene,
)
from pipeline.prompt_composer import compose_scene_prompt
from pipeline.session import PipelineSession
from pipeline.video_composer import CompositionEngine, ProgressCallback
from services.generation_backend import GenerationBackend

logger = structlog.get_logger(__name__)

RunEventObserver = Callable[[str, Dict[str, Any]], None]


def build_composition_spec(
    scenes: Iterable[Scene],
    statuses: Iterable[GenerationStatus]
) -> CompositionSpec:
    """
    Map completed clips onto a scene order.

    The order may differ from the one the clips were generated in, so
    clips are matched by scene id. Scenes without a completed clip are
    left out.

    Example:
        >>> spec = build_composition_spec(reordered_scenes, result.statuses)
        >>> spec.artifact_refs
        ['/tmp/film_runs/run-1/scenes/scene_001_b.mp4', ...]
    """
    completed = {
        status.scene_id: status.artifact_ref
        for status in statuses
        if status.state == GenerationState.COMPLETE and status.artifact_ref
    }

    return CompositionSpec(entries=[
        CompositionEntry(
            artifact_ref=completed[scene.id],
            transition_to_next=scene.transition_to_next,
        )
        for scene in scenes
        if scene.id in completed
    ])


class PipelineSequencer:
    """
    Runs the scenes of a film through the generation service in order.

    Example:
        >>> sequencer = PipelineSequencer(backend, session, on_status=print)
        >>> result = await sequencer.run(scenes, characters, "Anime", "Fairy tale")
        >>> [s.state.value for s in result.statuses]
        ['complete', 'error', 'pending']
    """

    def __init__(
        self,
        backend: GenerationBackend,
        session: Optional[PipelineSession] = None,
        on_status: Optional[StatusObserver] = None,
        on_run_event: Optional[RunEventObserver] = None,
    ):
        """
        Initialize sequencer.

        Args:
            backend: Remote generation service
            session: Run options (default: built from settings)
            on_status: Called synchronously after every scene state transition
            on_run_event: Called with (event_name, data) for run-level events
        """
        self.backend = backend
        self.session = session or PipelineSession.from_settings()
        self.on_status = on_status
        self.on_run_event = on_run_event
        self._cancel_requested = False
        self.logger = logger.bind(service="sequencer", backend=backend.name)

    def cancel(self) -> None:
        """Request the current run to stop before its next scene starts."""
        self._cancel_requested = True
        self.logger.info("run_cancel_requested")

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def _emit(self, event: str, **data) -> None:
        if self.on_run_event:
            self.on_run_event(event, data)

    async def precheck_characters(
        self,
        driver: GenerationJobDriver,
        characters: List[Character]
    ) -> List[Character]:
        """
        Resolve locked descriptions for characters that need one.

        Requests run concurrently, at most session.describe_concurrency at a
        time, and all finish before this returns.

        Raises:
            PrecheckError: First failure among the requests
        """
        pending = [index for index, c in enumerate(characters) if c.needs_description]
        if not pending:
            return characters

        self._emit("precheck_started", characters=[characters[i].name for i in pending])

        semaphore = asyncio.Semaphore(self.session.describe_concurrency)

        async def resolve(character: Character):
            async with semaphore:
                return await driver.resolve_character_description(character)

        resolved = await asyncio.gather(
            *(resolve(characters[i]) for i in pending),
            return_exceptions=True
        )

        for outcome in resolved:
            if isinstance(outcome, BaseException):
                raise outcome

        enriched = list(characters)
        for index, character in zip(pending, resolved):
            enriched[index] = character

        self._emit("precheck_completed", resolved=len(pending))
        return enriched

    async def run(
        self,
        scenes: Iterable[Scene],
        characters: Iterable[Character],
        style: str = "",
        genre: str = "",
        run_id: Optional[str] = None,
        asset_manager: Optional[AssetManager] = None,
    ) -> RunResult:
        """
        Generate every scene, in order.

        Args:
            scenes: Scene order for this run
            characters: Current characters
            style: Visual style
            genre: Narrative genre
            run_id: Run identifier (default: generated)
            asset_manager: Workspace for fetched clips (default: under session.work_dir)

        Returns:
            RunResult with one status per scene. Precheck failures,
            scene failures and cancellation are reported in it, not raised.
        """
        scenes = [scene.model_copy(deep=True) for scene in scenes]
        characters = [character.model_copy(deep=True) for character in characters]
        run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        self._cancel_requested = False

        log = self.logger.bind(run_id=run_id)
        driver = GenerationJobDriver(
            self.backend, self.session, observer=self.on_status, run_id=run_id
        )

        statuses = driver.create_statuses(scenes)
        result = RunResult(run_id=run_id, statuses=statuses, characters=characters)

        log.info("run_started", num_scenes=len(scenes), num_characters=len(characters))
        self._emit("run_started", run_id=run_id, num_scenes=len(scenes))

        if not scenes:
            error = ValidationError("At least one scene is required", field="scenes")
            error.log_error()
            result.error = error.message
            self._emit("run_completed", run_id=run_id, succeeded=False)
            return result

        try:
            characters = await self.precheck_characters(driver, characters)
        except PrecheckError as e:
            e.log_error()
            result.error = e.message
            self._emit("run_completed", run_id=run_id, succeeded=False)
            return result

        result.characters = characters
        model = build_continuity_model(characters, scenes, style, genre)
        result.continuity_model = model

        if asset_manager is None:
            asset_manager = AssetManager(run_id, self.session.work_dir)
        await asset_manager.create_run_directory()

        for index, scene in enumerate(scenes):
            if self._cancel_requested:
                cancelled = RunCancelled(details={"next_scene_id": scene.id})
                cancelled.log_error()
                result.cancelled = True
                result.error = cancelled.message
                break

            previous = scenes[index - 1] if index > 0 else None
            prompt = compose_scene_prompt(scene, model, previous)
            reference_images = model.reference_images_for(scene.character_names)

            self._emit("scene_started", scene_id=scene.id, scene_index=index)

            status = await driver.run_scene(statuses[index], prompt, reference_images, asset_manager)

            if status.state == GenerationState.ERROR:
                result.error = f"Scene {index + 1} failed: {status.error_message}"
                log.warning(
                    "run_stopped_at_failed_scene",
                    scene_id=scene.id,
                    scene_index=index,
                    remaining=len(scenes) - index - 1
                )
                break

            result.completed.append(
                CompletedScene(scene_id=scene.id, artifact_ref=status.artifact_ref)
            )

        log.info(
            "run_finished",
            completed=len(result.completed),
            total=len(scenes),
            cancelled=result.cancelled,
            error=result.error
        )
        self._emit("run_completed", run_id=run_id, succeeded=result.succeeded)
        return result

    async def run_film(
        self,
        scenes: Iterable[Scene],
        characters: Iterable[Character],
        style: str = "",
        genre: str = "",
        final_order: Optional[Iterable[Scene]] = None,
        on_progress: Optional[ProgressCallback] = None,
        run_id: Optional[str] = None,
    ) -> FilmResult:
        """
        Generate every scene and compose the final film.

        Composition only happens when every scene completed. A composition
        failure leaves the scene clips in place.

        Args:
            scenes: Scene order to generate in
            characters: Current characters
            style: Visual style
            genre: Narrative genre
            final_order: Scene order for the film (default: generation order)
            on_progress: Composition progress callback, 0.0 to 1.0
            run_id: Run identifier (default: generated)
        """
        scenes = list(scenes)
        run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        asset_manager = AssetManager(run_id, self.session.work_dir)

        run = await self.run(
            scenes, characters, style, genre, run_id=run_id, asset_manager=asset_manager
        )
        film = FilmResult(run=run)

        if not run.succeeded:
            self.logger.info("composition_skipped", run_id=run_id, reason=run.error)
            return film

        spec = build_composition_spec(
            list(final_order) if final_order is not None else scenes,
            run.statuses
        )

        self._emit("composition_started", run_id=run_id, num_clips=len(spec))
        engine = CompositionEngine(self.session)
        try:
            film.final_video_path = await engine.compose(
                spec, on_progress, output_path=asset_manager.final_output_path()
            )
        except CompositionError as e:
            e.log_error()
            film.composition_error = e.message
            self._emit("composition_completed", run_id=run_id, succeeded=False)
            return film

        self._emit("composition_completed", run_id=run_id, succeeded=True)
        self.logger.info(
            "film_assets_written",
            run_id=run_id,
            scene_files=len(await asset_manager.list_files("scenes")),
            disk_usage_bytes=await asset_manager.get_disk_usage()
        )

        # A single clip is returned as-is and lives in scenes/
        if not self.session.keep_intermediate_assets and film.final_video_path not in spec.artifact_refs:
            await asset_manager.cleanup(keep_final=True)

        return film
