"""
Film generation pipeline package.

This package contains the core components for generating continuity-aware films:
- Continuity model and scene prompt composition
- Generation job driving and scene sequencing (pipeline.job_driver, pipeline.sequencer)
- Composition of the finished clips into one film
- Error handling for robust pipeline execution
"""

__version__ = "0.1.0"

from .models import (
    Character,
    CompositionSpec,
    ContinuityModel,
    GenerationState,
    GenerationStatus,
    Scene,
    TransitionKind,
)
from .continuity import build_continuity_model
from .prompt_composer import compose_scene_prompt, opening_clause
from .asset_manager import AssetManager
from .error_handler import PipelineError, ErrorCode, should_retry

__all__ = [
    "Character",
    "CompositionSpec",
    "ContinuityModel",
    "GenerationState",
    "GenerationStatus",
    "Scene",
    "TransitionKind",
    "build_continuity_model",
    "compose_scene_prompt",
    "opening_clause",
    "AssetManager",
    "PipelineError",
    "ErrorCode",
    "should_retry",
]
