"""
Mock generation backend for running the pipeline without consuming API credits.

When MOCK_VID_GENS is enabled, jobs complete after a configurable number of
polls and return pre-staged videos from MOCK_VIDEOS_DIR. Failures can be
scripted per job index, which is also how the pipeline tests drive every
branch of the scene state machine.
"""

import asyncio
import random
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from config import settings
from pipeline.models import ReferenceImage
from services.generation_backend import Artifact, GenerationBackend, PollResult, SubmitResult

logger = structlog.get_logger(__name__)


def list_available_mock_videos(mock_dir: Optional[str] = None) -> List[Path]:
    """
    List all available mock video files in the mock directory.

    Returns:
        Sorted list of MP4 paths available for mock responses.
    """
    directory = mock_dir or settings.MOCK_VIDEOS_DIR
    if not directory or not Path(directory).exists():
        return []
    return sorted(Path(directory).glob("*.mp4"))


class MockGenerationBackend(GenerationBackend):
    """
    Scripted stand-in for the remote video service.

    Jobs are numbered 0, 1, 2, ... in submission order.

    Example:
        >>> backend = MockGenerationBackend(
        ...     clip_bytes=b"fake-mp4",
        ...     job_failures={1: "blocked by safety filter"},
        ...     delay_range=(0, 0),
        ... )
    """

    name = "mock"

    def __init__(
        self,
        polls_until_done: int = 1,
        clip_bytes: Optional[bytes] = None,
        mock_dir: Optional[str] = None,
        submit_failures: Optional[Dict[int, str]] = None,
        job_failures: Optional[Dict[int, str]] = None,
        fetch_failures: Optional[Dict[int, str]] = None,
        poll_transport_failures: Optional[Dict[int, str]] = None,
        descriptions: Optional[Dict[str, str]] = None,
        describe_failures: Optional[Iterable[str]] = None,
        delay_range: Optional[Tuple[float, float]] = None,
    ):
        """
        Initialize mock backend.

        Args:
            polls_until_done: Polls that report "not done" before the job finishes.
                0 makes the submission itself return done.
            clip_bytes: Bytes returned for every artifact (skips the mock directory)
            mock_dir: Directory of pre-staged .mp4 clips (default: settings.MOCK_VIDEOS_DIR)
            submit_failures: job index -> error raised by submit_job
            job_failures: job index -> error reported by the finished operation
            fetch_failures: job index -> error raised by fetch_artifact
            poll_transport_failures: job index -> error raised by every poll_job call
            descriptions: character name -> description returned by describe_character
            describe_failures: character names whose description request fails
            delay_range: Simulated (min, max) latency per call in seconds
        """
        self.polls_until_done = polls_until_done
        self.clip_bytes = clip_bytes
        self.mock_dir = mock_dir
        self.submit_failures = submit_failures or {}
        self.job_failures = job_failures or {}
        self.fetch_failures = fetch_failures or {}
        self.poll_transport_failures = poll_transport_failures or {}
        self.descriptions = descriptions or {}
        self.describe_failures = set(describe_failures or [])
        self.delay_range = delay_range or (settings.MOCK_VIDEO_DELAY_MIN, settings.MOCK_VIDEO_DELAY_MAX)

        # Recorded traffic, inspected by tests and debug output
        self.submitted_prompts: List[str] = []
        self.submitted_reference_images: List[List[ReferenceImage]] = []
        self.described_characters: List[str] = []
        self.poll_counts: Dict[str, int] = {}

        self._jobs: Dict[str, int] = {}
        self._artifacts: Dict[str, int] = {}

        self.logger = logger.bind(service="mock_backend")

    async def _simulate_delay(self) -> None:
        low, high = self.delay_range
        if high > 0:
            await asyncio.sleep(random.uniform(low, high))

    def _finished_result(self, job_index: int, handle: str) -> PollResult:
        if job_index in self.job_failures:
            return PollResult(done=True, error=self.job_failures[job_index])
        ref = f"mock://{handle}/video.mp4"
        self._artifacts[ref] = job_index
        return PollResult(done=True, result=ref)

    async def submit_job(self, prompt: str, reference_images: List[ReferenceImage]) -> SubmitResult:
        job_index = len(self.submitted_prompts)
        self.submitted_prompts.append(prompt)
        self.submitted_reference_images.append(list(reference_images))

        await self._simulate_delay()

        if job_index in self.submit_failures:
            raise RuntimeError(self.submit_failures[job_index])

        handle = f"operations/mock-{job_index}-{uuid.uuid4().hex[:8]}"
        self._jobs[handle] = job_index
        self.poll_counts[handle] = 0

        self.logger.info("mock_job_submitted", job_index=job_index, operation=handle)

        return SubmitResult(operation_handle=handle, done=self.polls_until_done <= 0)

    async def poll_job(self, operation_handle: str) -> PollResult:
        if operation_handle not in self._jobs:
            raise KeyError(f"Unknown operation {operation_handle}")

        job_index = self._jobs[operation_handle]
        self.poll_counts[operation_handle] += 1

        if job_index in self.poll_transport_failures:
            raise ConnectionError(self.poll_transport_failures[job_index])

        if self.poll_counts[operation_handle] <= self.polls_until_done:
            return PollResult(done=False)

        return self._finished_result(job_index, operation_handle)

    async def fetch_artifact(self, artifact_ref: str) -> Artifact:
        if artifact_ref not in self._artifacts:
            raise FileNotFoundError(f"Unknown artifact {artifact_ref}")

        job_index = self._artifacts[artifact_ref]
        if job_index in self.fetch_failures:
            raise RuntimeError(self.fetch_failures[job_index])

        if self.clip_bytes is not None:
            return Artifact(ref=artifact_ref, data=self.clip_bytes)

        videos = list_available_mock_videos(self.mock_dir)
        if not videos:
            raise FileNotFoundError(
                "No mock videos found. Set MOCK_VIDEOS_DIR to a directory "
                "holding at least one .mp4 file to use mock mode."
            )

        source = videos[job_index % len(videos)]
        self.logger.info("mock_video_selected", job_index=job_index, source=str(source))
        return Artifact(ref=artifact_ref, data=source.read_bytes())

    async def describe_character(self, name: str, image_bytes: bytes, mime_type: str) -> str:
        self.described_characters.append(name)
        await self._simulate_delay()

        if name in self.describe_failures:
            raise RuntimeError(f"Mock description failure for {name}")

        return self.descriptions.get(
            name,
            f"{name} MUST ALWAYS appear exactly as in the reference image."
        )
