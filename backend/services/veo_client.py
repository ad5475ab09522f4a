"""
Veo / Gemini generation backend.

Wraps the google-genai SDK for the four calls the pipeline needs:
- submit a video generation job (Veo long-running operation)
- poll the operation by name
- download the generated video
- describe a character reference image (Gemini multimodal)

Transport failures (5xx, rate limits, network errors) are retried with
exponential backoff via tenacity. Terminal job failures are returned as
PollResult.error and never retried here.
"""

import asyncio
import logging
from typing import Dict, List, Optional

import httpx
import structlog
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import settings
from pipeline.error_handler import ErrorCode, PipelineError, describe_exception
from pipeline.models import ReferenceImage
from services.generation_backend import Artifact, GenerationBackend, PollResult, SubmitResult

logger = structlog.get_logger(__name__)


DESCRIBE_CHARACTER_PROMPT = """
You are an expert visual descriptor for animation continuity.
Analyze the character image and generate a precise, canonical description.

STRICT RULES:
- Lock hairstyle, hair color, eye color, clothing, props, and body proportions.
- Include outfit details, accessories, and distinctive traits.
- Use definitive language (MUST, ALWAYS) to enforce design lock.
- Do not invent lore, just describe visual appearance.
- This description will be reused for ALL scenes to keep consistency.

Return one paragraph only.
Character Name: {name}
"""

# Prefix for artifacts the service returned inline instead of by URI
INLINE_REF_PREFIX = "inline:"


def _is_transient(error: BaseException) -> bool:
    """True for failures worth repeating the same request for."""
    if isinstance(error, genai_errors.ServerError):
        return True
    if isinstance(error, genai_errors.ClientError):
        return getattr(error, "code", None) == 429
    return isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError))


def _transport_error(operation_name: str, error: BaseException) -> PipelineError:
    """Coded pipeline error for a transient failure that outlasted the retries."""
    if isinstance(error, genai_errors.ClientError):
        code = ErrorCode.API_RATE_LIMIT
    elif isinstance(error, (httpx.TimeoutException, TimeoutError)):
        code = ErrorCode.API_TIMEOUT
    else:
        code = ErrorCode.GEMINI_API_ERROR
    return PipelineError(
        code,
        f"Video service {operation_name} failed: {describe_exception(error)}",
        {"operation": operation_name, "error_type": type(error).__name__}
    )


def _format_operation_error(error) -> str:
    if isinstance(error, dict):
        message = error.get("message") or error.get("details")
        code = error.get("code")
        if message and code is not None:
            return f"{message} (code {code})"
        if message:
            return str(message)
    return str(error)


class VeoBackend(GenerationBackend):
    """
    Generation backend for Google Veo via the google-genai SDK.

    The SDK client is synchronous; every call is pushed to a worker thread so
    the pipeline's event loop keeps running during network round trips.

    Example:
        >>> backend = VeoBackend(api_key="...")
        >>> submitted = await backend.submit_job("In a Anime aesthetic, ...", [])
        >>> polled = await backend.poll_job(submitted.operation_handle)
    """

    name = "veo"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        describe_model: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        negative_prompt: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_wait_min: float = 2.0,
        retry_wait_max: float = 10.0,
        client=None,
    ):
        """
        Initialize Veo backend.

        Args:
            api_key: Gemini API key. If None, loads from settings
            model: Veo model name (default: settings.VEO_MODEL)
            describe_model: Gemini model for character descriptions
            aspect_ratio: Output aspect ratio (default: settings.VIDEO_ASPECT_RATIO)
            negative_prompt: Elements to keep out of every clip
            max_retries: Attempts per request on transient failures
            retry_wait_min: Minimum backoff between attempts, in seconds
            retry_wait_max: Maximum backoff between attempts, in seconds
            client: Pre-built genai.Client (used by tests)

        Raises:
            ValueError: If no API key is available and no client was given
        """
        self.api_key = api_key or settings.GEMINI_API_KEY
        if client is None and not self.api_key:
            raise ValueError(
                "GEMINI_API_KEY is not configured. "
                "Please set it in your .env file or environment variables."
            )

        self.client = client or genai.Client(api_key=self.api_key)
        self.model = model or settings.VEO_MODEL
        self.describe_model = describe_model or settings.DESCRIBE_MODEL
        self.aspect_ratio = aspect_ratio or settings.VIDEO_ASPECT_RATIO
        self.negative_prompt = negative_prompt if negative_prompt is not None else settings.VIDEO_NEGATIVE_PROMPT
        self.max_retries = max_retries or settings.POLL_MAX_RETRIES
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max

        # Videos returned as bytes (no download URI), keyed by artifact ref
        self._inline_videos: Dict[str, Artifact] = {}

        self.logger = logger.bind(service="veo_backend", model=self.model)
        self.logger.info(
            "veo_backend_initialized",
            describe_model=self.describe_model,
            aspect_ratio=self.aspect_ratio,
            max_retries=self.max_retries
        )

    async def _call(self, operation_name: str, fn, *args, **kwargs):
        """
        Run a blocking SDK call in a thread, retrying transient failures.

        Raises:
            PipelineError: With a transport error code once transient failures
                outlast the retries
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=wait_exponential(multiplier=1, min=self.retry_wait_min, max=self.retry_wait_max),
                retry=retry_if_exception(_is_transient),
                before_sleep=before_sleep_log(logger, logging.INFO),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        self.logger.info(
                            "retrying_veo_call",
                            operation=operation_name,
                            attempt=attempt.retry_state.attempt_number
                        )
                    return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as e:
            if _is_transient(e):
                raise _transport_error(operation_name, e) from e
            raise

    def _build_config(self, reference_images: List[ReferenceImage]) -> types.GenerateVideosConfig:
        config_kwargs = {
            "aspect_ratio": self.aspect_ratio,
            "number_of_videos": 1,
        }
        if self.negative_prompt:
            config_kwargs["negative_prompt"] = self.negative_prompt
        if reference_images:
            config_kwargs["reference_images"] = [
                types.VideoGenerationReferenceImage(
                    image=types.Image(image_bytes=image.data, mime_type=image.mime_type),
                    reference_type="asset",
                )
                for image in reference_images
            ]
        return types.GenerateVideosConfig(**config_kwargs)

    async def submit_job(self, prompt: str, reference_images: List[ReferenceImage]) -> SubmitResult:
        self.logger.info(
            "submitting_video_job",
            prompt_length=len(prompt),
            num_reference_images=len(reference_images)
        )

        operation = await self._call(
            "generate_videos",
            self.client.models.generate_videos,
            model=self.model,
            prompt=prompt,
            config=self._build_config(reference_images),
        )

        if not operation.name:
            raise RuntimeError("Video service did not return an operation handle")

        self.logger.info(
            "video_job_submitted",
            operation=operation.name,
            done=bool(operation.done)
        )

        return SubmitResult(operation_handle=operation.name, done=bool(operation.done))

    async def poll_job(self, operation_handle: str) -> PollResult:
        operation = await self._call(
            "get_operation",
            self.client.operations.get,
            types.GenerateVideosOperation(name=operation_handle),
        )

        if not operation.done:
            return PollResult(done=False)

        if operation.error:
            return PollResult(done=True, error=_format_operation_error(operation.error))

        response = operation.response or operation.result
        videos = response.generated_videos if response else None
        if not videos or videos[0].video is None:
            filtered = getattr(response, "rai_media_filtered_reasons", None) if response else None
            reason = f" Filtered: {'; '.join(filtered)}" if filtered else ""
            return PollResult(
                done=True,
                error=f"Video generation completed, but no video was returned.{reason}"
            )

        video = videos[0].video
        if video.uri:
            return PollResult(done=True, result=video.uri)

        if video.video_bytes:
            ref = f"{INLINE_REF_PREFIX}{operation_handle}"
            self._inline_videos[ref] = Artifact(
                ref=ref,
                data=video.video_bytes,
                content_type=video.mime_type or "video/mp4",
            )
            return PollResult(done=True, result=ref)

        return PollResult(
            done=True,
            error="Video generation completed, but no download link was found."
        )

    async def fetch_artifact(self, artifact_ref: str) -> Artifact:
        if artifact_ref in self._inline_videos:
            return self._inline_videos.pop(artifact_ref)

        self.logger.info("downloading_video", artifact_ref=artifact_ref)

        data = await self._call(
            "download",
            self.client.files.download,
            file=types.Video(uri=artifact_ref),
        )

        if not data:
            raise RuntimeError(f"Downloaded video from {artifact_ref} is empty")

        self.logger.info("video_downloaded", artifact_ref=artifact_ref, size_bytes=len(data))

        return Artifact(ref=artifact_ref, data=data, content_type="video/mp4")

    async def describe_character(self, name: str, image_bytes: bytes, mime_type: str) -> str:
        self.logger.info("describing_character", character=name, mime_type=mime_type)

        response = await self._call(
            "generate_content",
            self.client.models.generate_content,
            model=self.describe_model,
            contents=[
                types.Part.from_text(text=DESCRIBE_CHARACTER_PROMPT.format(name=name)),
                types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
            ],
        )

        text = (response.text or "").strip()
        self.logger.info("character_described", character=name, description_length=len(text))
        return text
