"""
Services module for external generation backends
"""

from .generation_backend import (
    Artifact,
    GenerationBackend,
    PollResult,
    SubmitResult,
    get_generation_backend,
)
from .mock_backend import MockGenerationBackend

__all__ = [
    "Artifact",
    "GenerationBackend",
    "PollResult",
    "SubmitResult",
    "get_generation_backend",
    "MockGenerationBackend",
]
