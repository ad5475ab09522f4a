"""
Generation service abstraction.

The video model is an opaque remote service reached by request/response plus
a polling handle. This module defines the interface the pipeline talks to and
the payloads exchanged with it.

Usage:
    >>> backend = get_generation_backend()
    >>> submitted = await backend.submit_job(prompt, reference_images)
    >>> polled = await backend.poll_job(submitted.operation_handle)
    >>> artifact = await backend.fetch_artifact(polled.result)
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel, Field

from pipeline.models import ReferenceImage


class SubmitResult(BaseModel):
    """Response to a generation job submission."""
    operation_handle: str = Field(..., description="Opaque reference to the long-running operation")
    done: bool = False


class PollResult(BaseModel):
    """State of a long-running operation."""
    done: bool = False
    result: Optional[str] = Field(None, description="Artifact reference, set when done with a result")
    error: Optional[str] = Field(None, description="Failure reported by the job, set when done with an error")


class Artifact(BaseModel):
    """Binary media produced by a completed generation job."""
    ref: str
    data: bytes
    content_type: str = "video/mp4"


class GenerationBackend(ABC):
    """
    Abstract interface for the external generative service.

    Implementations raise ordinary exceptions on transport failure; mapping
    them onto scene states is the job driver's concern.
    """

    name: str = "abstract"

    @abstractmethod
    async def submit_job(self, prompt: str, reference_images: List[ReferenceImage]) -> SubmitResult:
        """
        Start generating one clip.

        Args:
            prompt: Full directive for the video model
            reference_images: Character reference images to condition on

        Returns:
            SubmitResult with the operation handle
        """
        pass

    @abstractmethod
    async def poll_job(self, operation_handle: str) -> PollResult:
        """
        Refresh the state of a submitted operation.

        Args:
            operation_handle: Handle returned by submit_job

        Returns:
            PollResult; done=False while the job is still running
        """
        pass

    @abstractmethod
    async def fetch_artifact(self, artifact_ref: str) -> Artifact:
        """
        Download the media produced by a finished job.

        Args:
            artifact_ref: PollResult.result of the finished operation

        Returns:
            Artifact with raw bytes and content type
        """
        pass

    @abstractmethod
    async def describe_character(self, name: str, image_bytes: bytes, mime_type: str) -> str:
        """
        Derive a canonical appearance description from a reference image.

        Args:
            name: Character name
            image_bytes: Raw reference image
            mime_type: Image content type

        Returns:
            Plain-text description (one paragraph)
        """
        pass


def get_generation_backend(backend_name: Optional[str] = None, **kwargs) -> GenerationBackend:
    """
    Factory function to get the configured generation backend.

    Args:
        backend_name: 'veo' or 'mock'. Defaults to 'mock' when MOCK_VID_GENS
            is enabled, otherwise 'veo'.
        **kwargs: Passed to the backend constructor

    Returns:
        GenerationBackend instance

    Raises:
        ValueError: If backend_name is not recognized
    """
    from config import settings

    if backend_name is None:
        backend_name = "mock" if settings.MOCK_VID_GENS else "veo"

    if backend_name == "veo":
        from services.veo_client import VeoBackend
        return VeoBackend(**kwargs)
    elif backend_name == "mock":
        from services.mock_backend import MockGenerationBackend
        return MockGenerationBackend(**kwargs)
    else:
        raise ValueError(
            f"Unknown generation backend: {backend_name}. "
            f"Supported backends: 'veo', 'mock'"
        )
