"""
Per-run pipeline session.

Everything a run needs to know besides its inputs: polling discipline,
precheck concurrency, composition timing and the workspace location. Built
from settings by default and passed explicitly into the sequencer, so two
runs in one process never share mutable state.
"""

from typing import Optional

from pydantic import BaseModel, Field

from config import settings


class PipelineSession(BaseModel):
    """Options for one pipeline run"""

    poll_interval_seconds: float = Field(10.0, ge=0, description="Spacing between poll attempts")
    poll_timeout_seconds: float = Field(
        0.0, ge=0, description="Give up polling after this long (0 = poll until terminal)"
    )
    poll_max_retries: int = Field(3, ge=1, description="Attempts per poll on transient transport errors")
    poll_retry_wait_seconds: float = Field(2.0, ge=0, description="Initial backoff between poll attempts")
    describe_concurrency: int = Field(4, ge=1, description="Parallel character description requests")
    clip_content_duration: float = Field(7.0, gt=0, description="Seconds of each clip before its transition")
    transition_duration: float = Field(1.0, gt=0, description="Seconds per transition")
    include_audio: bool = Field(True, description="Cross-fade audio tracks of clips that have one")
    work_dir: str = Field("/tmp/film_runs", description="Base directory for run workspaces")
    keep_intermediate_assets: bool = False
    ffmpeg_path: Optional[str] = None

    @classmethod
    def from_settings(cls, **overrides) -> "PipelineSession":
        """
        Build a session from application settings.

        Example:
            >>> session = PipelineSession.from_settings(poll_interval_seconds=0)
        """
        values = {
            "poll_interval_seconds": settings.POLL_INTERVAL_SECONDS,
            "poll_timeout_seconds": settings.POLL_TIMEOUT_SECONDS,
            "poll_max_retries": settings.POLL_MAX_RETRIES,
            "poll_retry_wait_seconds": settings.POLL_RETRY_WAIT_SECONDS,
            "describe_concurrency": settings.DESCRIBE_CONCURRENCY,
            "clip_content_duration": settings.CLIP_CONTENT_DURATION,
            "transition_duration": settings.TRANSITION_DURATION,
            "include_audio": settings.INCLUDE_AUDIO,
            "work_dir": settings.WORK_DIR,
            "keep_intermediate_assets": settings.KEEP_INTERMEDIATE_ASSETS,
            "ffmpeg_path": settings.FFMPEG_PATH,
        }
        values.update(overrides)
        return cls(**values)
