"""
Configuration management for the film generation pipeline
"""

import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings"""

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # API Keys
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")

    # Generative models
    VEO_MODEL: str = os.getenv("VEO_MODEL", "veo-3.0-generate-001")
    DESCRIBE_MODEL: str = os.getenv("DESCRIBE_MODEL", "gemini-2.5-flash")
    VIDEO_ASPECT_RATIO: str = os.getenv("VIDEO_ASPECT_RATIO", "16:9")
    VIDEO_NEGATIVE_PROMPT: Optional[str] = os.getenv("VIDEO_NEGATIVE_PROMPT", None)

    # Polling of long-running generation operations (in seconds)
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "10"))
    # 0 disables the timeout: poll until the operation is terminal
    POLL_TIMEOUT_SECONDS: float = float(os.getenv("POLL_TIMEOUT_SECONDS", "0"))
    POLL_MAX_RETRIES: int = int(os.getenv("POLL_MAX_RETRIES", "3"))
    # Initial backoff between attempts of one poll (doubles per attempt)
    POLL_RETRY_WAIT_SECONDS: float = float(os.getenv("POLL_RETRY_WAIT_SECONDS", "2"))

    # Character description precheck
    DESCRIBE_CONCURRENCY: int = int(os.getenv("DESCRIBE_CONCURRENCY", "4"))

    # Composition
    # Every clip is assumed to hold this much content before its transition starts
    CLIP_CONTENT_DURATION: float = float(os.getenv("CLIP_CONTENT_DURATION", "7"))
    TRANSITION_DURATION: float = float(os.getenv("TRANSITION_DURATION", "1"))
    # Cross-fade audio tracks; silent clips are padded with silence
    INCLUDE_AUDIO: bool = os.getenv("INCLUDE_AUDIO", "true").lower() == "true"
    FFMPEG_PATH: Optional[str] = os.getenv("FFMPEG_PATH", None)  # Optional path to ffmpeg executable

    # Run workspace
    WORK_DIR: str = os.getenv("WORK_DIR", "/tmp/film_runs")
    KEEP_INTERMEDIATE_ASSETS: bool = os.getenv("KEEP_INTERMEDIATE_ASSETS", "false").lower() == "true"

    # Mock video generation (no API credits consumed)
    MOCK_VID_GENS: bool = os.getenv("MOCK_VID_GENS", "false").lower() == "true"
    MOCK_VIDEO_DELAY_MIN: float = float(os.getenv("MOCK_VIDEO_DELAY_MIN", "0.5"))
    MOCK_VIDEO_DELAY_MAX: float = float(os.getenv("MOCK_VIDEO_DELAY_MAX", "1.5"))
    # Directory of pre-staged .mp4 clips returned by the mock backend
    MOCK_VIDEOS_DIR: str = os.getenv("MOCK_VIDEOS_DIR", "")

    def validate_generation_config(self) -> None:
        """
        Validate generation backend configuration at startup.
        Raises ValueError if the real backend lacks required credentials.
        """
        if not self.MOCK_VID_GENS and not self.GEMINI_API_KEY:
            raise ValueError(
                "GEMINI_API_KEY is required when MOCK_VID_GENS=false. "
                "Please set it in your .env file or environment variables."
            )


# Global settings instance
settings = Settings()
