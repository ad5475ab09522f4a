"""
Pydantic models for the film generation pipeline.

Covers the user-editable inputs (characters, scenes), the continuity bible
built from them at run start, per-scene generation status, and the
composition spec handed to the composition engine.
"""

from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TransitionKind(str, Enum):
    """Transition effect applied on the edge between two adjacent scenes"""
    FADE = "fade"
    DISSOLVE = "dissolve"
    WIPE_LEFT = "wipeLeft"
    WIPE_RIGHT = "wipeRight"
    CIRCLE_OPEN = "circleOpen"

    @property
    def ffmpeg_name(self) -> str:
        """Name of the matching ffmpeg xfade transition."""
        return self.value.lower()

    @classmethod
    def parse(cls, value) -> "TransitionKind":
        """
        Parse a transition from its value or its ffmpeg name.

        Args:
            value: TransitionKind, "wipeLeft", "wipeleft", "WIPE_LEFT", ...

        Returns:
            Matching TransitionKind

        Raises:
            ValueError: If the value names no known transition
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.FADE

        normalized = str(value).strip().replace("_", "").lower()
        for kind in cls:
            if kind.ffmpeg_name == normalized:
                return kind

        raise ValueError(
            f"Unknown transition '{value}'. "
            f"Supported transitions: {', '.join(k.value for k in cls)}"
        )


class GenerationState(str, Enum):
    """Per-scene generation state"""
    PENDING = "pending"
    GENERATING = "generating"
    POLLING = "polling"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationState.COMPLETE, GenerationState.ERROR)


class ReferenceImage(BaseModel):
    """Character reference image sent along with generation requests"""
    model_config = ConfigDict(frozen=True)

    data: bytes = Field(..., description="Raw image bytes")
    mime_type: str = Field("image/jpeg", description="Image content type")


class Character(BaseModel):
    """A named character whose appearance must stay consistent across scenes"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    reference_image: Optional[ReferenceImage] = None
    locked_description: Optional[str] = Field(
        None, description="Canonical appearance derived from the reference image"
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value) if value is not None else value

    @property
    def has_name(self) -> bool:
        return bool(self.name and self.name.strip())

    @property
    def needs_description(self) -> bool:
        """True when a reference image exists but no description was derived yet."""
        return self.reference_image is not None and not self.locked_description

    def with_reference_image(self, image: Optional[ReferenceImage]) -> "Character":
        """
        Return a copy using a new reference image.

        The locked description is derived from the image, so it is dropped
        whenever the image actually changes.
        """
        if image == self.reference_image:
            return self
        return self.model_copy(update={"reference_image": image, "locked_description": None})

    def with_locked_description(self, description: str) -> "Character":
        return self.model_copy(update={"locked_description": description})


class Scene(BaseModel):
    """One narrative unit mapped to exactly one generated clip"""
    model_config = ConfigDict(frozen=True)

    id: str
    description: str = ""
    character_names: List[str] = Field(default_factory=list)
    environment: str = ""
    action: str = ""
    transition_to_next: TransitionKind = Field(
        TransitionKind.FADE,
        description="Transition into the next scene (ignored on the last scene)"
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value) if value is not None else value

    @field_validator("transition_to_next", mode="before")
    @classmethod
    def _parse_transition(cls, value):
        return TransitionKind.parse(value)


class EnvironmentEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    description: str


class ContinuityModel(BaseModel):
    """
    The continuity bible shared by every scene prompt of a run.

    Built once per run and never mutated afterwards.
    """
    model_config = ConfigDict(frozen=True)

    characters: Tuple[Character, ...] = ()
    environments: Tuple[EnvironmentEntry, ...] = ()
    style: str = ""
    genre: str = ""

    def reference_images_for(self, character_names: List[str]) -> List[ReferenceImage]:
        """
        Reference images to send along with a scene.

        Uses the characters named in the scene; when none of them match,
        falls back to every character that has an image.
        """
        wanted = {name.strip() for name in character_names if name and name.strip()}
        named = [c for c in self.characters if c.name.strip() in wanted]
        pool = named or list(self.characters)
        return [c.reference_image for c in pool if c.reference_image is not None]


class GenerationStatus(BaseModel):
    """
    Generation status of one scene within one run.

    Mutated only by the generation job driver.
    """
    scene_id: str
    scene_index: int
    state: GenerationState = GenerationState.PENDING
    artifact_ref: Optional[str] = Field(None, description="Local path of the fetched clip")
    error_message: Optional[str] = None
    history: List[GenerationState] = Field(
        default_factory=lambda: [GenerationState.PENDING],
        description="Every state this scene has been in, in order"
    )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class CompletedScene(BaseModel):
    scene_id: str
    artifact_ref: str


class CompositionEntry(BaseModel):
    artifact_ref: str
    transition_to_next: TransitionKind = TransitionKind.FADE


class CompositionSpec(BaseModel):
    """Ordered clips plus the transition on each edge"""
    entries: List[CompositionEntry] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def artifact_refs(self) -> List[str]:
        return [entry.artifact_ref for entry in self.entries]

    @property
    def transitions(self) -> List[TransitionKind]:
        """Transitions for the N-1 edges between adjacent clips."""
        return [entry.transition_to_next for entry in self.entries[:-1]]


class RunResult(BaseModel):
    """Outcome of a single pipeline run"""
    run_id: str
    statuses: List[GenerationStatus] = Field(default_factory=list)
    completed: List[CompletedScene] = Field(default_factory=list)
    continuity_model: Optional[ContinuityModel] = None
    characters: List[Character] = Field(
        default_factory=list, description="Characters with resolved locked descriptions"
    )
    error: Optional[str] = Field(None, description="Run-level error message")
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return (
            self.error is None
            and bool(self.statuses)
            and all(s.state == GenerationState.COMPLETE for s in self.statuses)
        )


class FilmResult(BaseModel):
    """Outcome of generation followed by composition"""
    run: RunResult
    final_video_path: Optional[str] = None
    composition_error: Optional[str] = None
