"""
Generation job driver.

Runs one scene through the remote video service and records every state
change on the scene's GenerationStatus:

    pending -> generating -> polling -> complete
                    |            |
                    +--> error <-+

The driver is the only writer of GenerationStatus. Terminal statuses are
never touched again; trying to do so raises StateTransitionError.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Set

import structlog
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from pipeline.asset_manager import AssetManager
from pipeline.error_handler import (
    ArtifactFetchError,
    JobFailed,
    PipelineError,
    PollError,
    PrecheckError,
    StateTransitionError,
    SubmissionError,
    describe_exception,
    should_retry,
)
from pipeline.models import Character, GenerationState, GenerationStatus, ReferenceImage, Scene
from pipeline.session import PipelineSession
from services.generation_backend import GenerationBackend, PollResult

logger = structlog.get_logger(__name__)

StatusObserver = Callable[[GenerationStatus], None]

NO_VIDEO_RETURNED = "Video generation completed, but no video was returned."

# Legal transitions; terminal states have none
ALLOWED_TRANSITIONS: Dict[GenerationState, Set[GenerationState]] = {
    GenerationState.PENDING: {GenerationState.GENERATING},
    GenerationState.GENERATING: {GenerationState.POLLING, GenerationState.ERROR},
    GenerationState.POLLING: {GenerationState.COMPLETE, GenerationState.ERROR},
    GenerationState.COMPLETE: set(),
    GenerationState.ERROR: set(),
}


class GenerationJobDriver:
    """
    Drives generation jobs for the scenes of one run.

    Example:
        >>> driver = GenerationJobDriver(backend, session, observer=print)
        >>> statuses = driver.create_statuses(scenes)
        >>> await driver.run_scene(statuses[0], prompt, images, asset_manager)
        >>> statuses[0].state
        <GenerationState.COMPLETE: 'complete'>
    """

    def __init__(
        self,
        backend: GenerationBackend,
        session: Optional[PipelineSession] = None,
        observer: Optional[StatusObserver] = None,
        run_id: Optional[str] = None,
    ):
        """
        Initialize job driver.

        Args:
            backend: Remote generation service
            session: Polling options (default: built from settings)
            observer: Called synchronously with a copy of a status after each transition
            run_id: Run identifier used in log context
        """
        self.backend = backend
        self.session = session or PipelineSession.from_settings()
        self.observer = observer
        self.logger = logger.bind(service="job_driver", run_id=run_id)

    def create_statuses(self, scenes: Iterable[Scene]) -> List[GenerationStatus]:
        """Fresh Pending status for every scene, in scene order."""
        return [
            GenerationStatus(scene_id=scene.id, scene_index=index)
            for index, scene in enumerate(scenes)
        ]

    def transition(
        self,
        status: GenerationStatus,
        new_state: GenerationState,
        artifact_ref: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> GenerationStatus:
        """
        Move a status to a new state and notify the observer.

        Raises:
            StateTransitionError: If the status is terminal or the move is not allowed
        """
        if status.is_terminal:
            raise StateTransitionError(
                f"Scene {status.scene_id} is already {status.state.value}; "
                f"cannot move to {new_state.value}"
            )
        if new_state not in ALLOWED_TRANSITIONS[status.state]:
            raise StateTransitionError(
                f"Illegal transition for scene {status.scene_id}: "
                f"{status.state.value} -> {new_state.value}"
            )

        status.state = new_state
        status.history.append(new_state)
        if artifact_ref is not None:
            status.artifact_ref = artifact_ref
        if error_message is not None:
            status.error_message = error_message

        self.logger.info(
            "scene_state_changed",
            scene_id=status.scene_id,
            scene_index=status.scene_index,
            state=new_state.value
        )

        if self.observer:
            self.observer(status.model_copy(deep=True))

        return status

    def _fail(self, status: GenerationStatus, error: PipelineError) -> GenerationStatus:
        error.details.setdefault("scene_id", status.scene_id)
        error.log_error()
        return self.transition(status, GenerationState.ERROR, error_message=error.message)

    async def run_scene(
        self,
        status: GenerationStatus,
        prompt: str,
        reference_images: List[ReferenceImage],
        asset_manager: AssetManager,
    ) -> GenerationStatus:
        """
        Generate one scene clip and store it in the run workspace.

        Scene failures end in the Error state instead of raising; the
        caller inspects status.state.

        Args:
            status: Pending status of the scene
            prompt: Composed scene directive
            reference_images: Character reference images to send along
            asset_manager: Run workspace the fetched clip is written to

        Returns:
            The same status object, now terminal
        """
        log = self.logger.bind(scene_id=status.scene_id, scene_index=status.scene_index)

        self.transition(status, GenerationState.GENERATING)

        try:
            submitted = await self.backend.submit_job(prompt, reference_images)
        except Exception as e:
            return self._fail(status, SubmissionError(
                f"Failed to start video generation: {describe_exception(e)}",
                {"error_type": type(e).__name__}
            ))

        log.info("scene_job_submitted", operation=submitted.operation_handle, done=submitted.done)

        # Recorded even when the submission already reports done
        self.transition(status, GenerationState.POLLING)

        try:
            polled = await self._wait_for_completion(submitted.operation_handle, submitted.done)
        except PollError as e:
            return self._fail(status, e)

        if polled.error:
            return self._fail(status, JobFailed(
                polled.error, {"operation": submitted.operation_handle}
            ))
        if not polled.result:
            return self._fail(status, JobFailed(
                NO_VIDEO_RETURNED, {"operation": submitted.operation_handle}
            ))

        try:
            artifact = await self.backend.fetch_artifact(polled.result)
            local_path = await asset_manager.save_clip(
                artifact.data,
                scene_index=status.scene_index,
                scene_id=status.scene_id,
                content_type=artifact.content_type,
            )
        except Exception as e:
            return self._fail(status, ArtifactFetchError(
                f"Failed to fetch generated video: {describe_exception(e)}",
                {"artifact_ref": polled.result, "error_type": type(e).__name__}
            ))

        if not await asset_manager.validate_file(local_path, min_size=1):
            return self._fail(status, ArtifactFetchError(
                "Fetched video is empty",
                {"artifact_ref": polled.result, "path": local_path}
            ))

        log.info("scene_clip_saved", path=local_path)
        return self.transition(status, GenerationState.COMPLETE, artifact_ref=local_path)

    async def _wait_for_completion(self, operation_handle: str, already_done: bool) -> PollResult:
        """
        Poll an operation at a fixed interval until it reports done.

        Raises:
            PollError: On transport failure after retries or on timeout
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        interval = self.session.poll_interval_seconds
        timeout = self.session.poll_timeout_seconds

        if already_done:
            return await self._poll_once(operation_handle)

        while True:
            elapsed = loop.time() - started
            if timeout > 0 and elapsed >= timeout:
                raise PollError(
                    f"Timed out after {elapsed:.0f}s waiting for video generation",
                    {"operation": operation_handle, "timeout_seconds": timeout}
                )

            await asyncio.sleep(interval)

            polled = await self._poll_once(operation_handle)
            if polled.done:
                return polled

            self.logger.debug("scene_job_still_running", operation=operation_handle)

    async def _poll_once(self, operation_handle: str) -> PollResult:
        """Single poll, retrying transient transport errors."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.session.poll_max_retries),
                wait=wait_exponential(multiplier=self.session.poll_retry_wait_seconds, max=60),
                retry=retry_if_exception(should_retry),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    return await self.backend.poll_job(operation_handle)
        except Exception as e:
            raise PollError(
                f"Failed to check video generation status: {describe_exception(e)}",
                {"operation": operation_handle, "error_type": type(e).__name__}
            ) from e

    async def resolve_character_description(self, character: Character) -> Character:
        """
        Derive a locked description from the character's reference image.

        Characters without an image, or that already carry a description,
        are returned unchanged.

        Raises:
            PrecheckError: If the description request fails or returns nothing
        """
        if not character.needs_description:
            return character

        image = character.reference_image
        try:
            description = await self.backend.describe_character(
                character.name, image.data, image.mime_type
            )
        except Exception as e:
            raise PrecheckError(
                f"Failed to analyze reference image for {character.name}: {describe_exception(e)}",
                character_name=character.name,
                details={"error_type": type(e).__name__}
            ) from e

        description = (description or "").strip()
        if not description:
            raise PrecheckError(
                f"No description was returned for {character.name}",
                character_name=character.name
            )

        self.logger.info(
            "character_description_resolved",
            character=character.name,
            description_length=len(description)
        )
        return character.with_locked_description(description)
