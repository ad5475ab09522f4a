"""
Error handling for the film generation pipeline.

Provides structured error handling with:
- Categorized error codes for every failure in a run
- User-friendly error messages
- Retry logic determination for transport-level failures
- Detailed error context for debugging
"""

from enum import Enum
from typing import Optional, Dict, Any

import structlog

logger = structlog.get_logger(__name__)


class ErrorCode(Enum):
    """
    Enumeration of all possible error codes in the pipeline.

    Organized by category:
    - Input Errors: invalid scenes, characters or options
    - Run Errors: precheck and cancellation, surfaced once per run
    - Scene Errors: failures that stop the sequencer at one scene
    - Transport Errors: retryable failures talking to the generation service
    - Composition Errors: failures building the final film
    """

    # Input Errors
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"

    # Run Errors
    PRECHECK_FAILED = "PRECHECK_FAILED"
    RUN_CANCELLED = "RUN_CANCELLED"

    # Scene Errors
    SUBMISSION_FAILED = "SUBMISSION_FAILED"
    POLL_FAILED = "POLL_FAILED"
    JOB_FAILED = "JOB_FAILED"
    ARTIFACT_FETCH_FAILED = "ARTIFACT_FETCH_FAILED"

    # Transport Errors (retryable)
    GEMINI_API_ERROR = "GEMINI_API_ERROR"
    API_RATE_LIMIT = "API_RATE_LIMIT"
    API_TIMEOUT = "API_TIMEOUT"

    # Composition Errors
    COMPOSITION_FAILED = "COMPOSITION_FAILED"
    FFMPEG_ERROR = "FFMPEG_ERROR"


class PipelineError(Exception):
    """
    Base exception for pipeline errors.

    Provides structured error information including:
    - Error code for categorization
    - Detailed message for logging
    - Context dictionary for debugging
    - User-friendly message for callers

    Example:
        >>> raise PipelineError(
        ...     ErrorCode.INVALID_INPUT,
        ...     "Scene id is required",
        ...     {"field": "id"}
        ... )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None
    ):
        """
        Initialize pipeline error.

        Args:
            code: Error code from ErrorCode enum
            message: Detailed error message for logging
            details: Additional context (scene ids, operation handles, etc.)
            user_message: Optional override for user-friendly message
        """
        self.code = code
        self.message = message
        self.details = details or {}
        self._user_message = user_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for status reporting.

        Example:
            >>> error = PipelineError(ErrorCode.INVALID_INPUT, "Missing field")
            >>> print(error.to_dict())
            {
                "error_code": "INVALID_INPUT",
                "message": "Missing field",
                "details": {},
                "user_message": "Please check your input and try again."
            }
        """
        return {
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details,
            "user_message": self.get_user_friendly_message()
        }

    def get_user_friendly_message(self) -> str:
        """
        Returns user-friendly error message.

        If a custom user message was provided, returns that.
        Otherwise, returns a predefined friendly message based on error code.
        """
        if self._user_message:
            return self._user_message

        friendly_messages = {
            # Input Errors
            ErrorCode.INVALID_INPUT: "Please check your input and try again.",
            ErrorCode.MISSING_REQUIRED_FIELD: "Required field is missing. Please check your storyboard.",
            ErrorCode.UNSUPPORTED_FORMAT: "File format not supported. Please use PNG, JPG, or WebP.",

            # Run Errors
            ErrorCode.PRECHECK_FAILED: "Failed to analyze character images. Please review them and try again.",
            ErrorCode.RUN_CANCELLED: "Generation was cancelled.",

            # Scene Errors
            ErrorCode.SUBMISSION_FAILED: "Failed to start video generation for this scene. Please try again.",
            ErrorCode.POLL_FAILED: "Lost track of video generation for this scene. Please try again.",
            ErrorCode.JOB_FAILED: "The video service could not generate this scene. Try editing it and run again.",
            ErrorCode.ARTIFACT_FETCH_FAILED: "The scene video was generated but could not be downloaded.",

            # Transport Errors
            ErrorCode.GEMINI_API_ERROR: "Video generation service temporarily unavailable. Please try again.",
            ErrorCode.API_RATE_LIMIT: "Too many requests. Please wait a moment and try again.",
            ErrorCode.API_TIMEOUT: "Request timed out. Please try again.",

            # Composition Errors
            ErrorCode.COMPOSITION_FAILED: "Failed to create the final movie. Individual scene clips are still available.",
            ErrorCode.FFMPEG_ERROR: "Video processing error. Please try again.",
        }

        return friendly_messages.get(
            self.code,
            "An error occurred. Please try again."
        )

    def log_error(self) -> None:
        """
        Log error with appropriate level and context.

        - Input errors and cancellation: WARNING
        - Retryable errors: WARNING
        - Everything else: ERROR
        """
        log_data = {
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details
        }

        if self.code in [
            ErrorCode.INVALID_INPUT,
            ErrorCode.MISSING_REQUIRED_FIELD,
            ErrorCode.UNSUPPORTED_FORMAT,
            ErrorCode.RUN_CANCELLED,
        ]:
            logger.warning("client_error", **log_data)

        elif should_retry(self):
            logger.warning("retryable_error", **log_data)

        else:
            logger.error("pipeline_error", **log_data)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


def should_retry(error: Exception) -> bool:
    """
    Determines if an error is transient and the same request may be repeated.

    Only transport-level failures qualify. A job the remote service reported
    as failed is never retried automatically.

    Example:
        >>> should_retry(PipelineError(ErrorCode.API_TIMEOUT, "slow"))
        True
        >>> should_retry(JobFailed("blocked by safety filter"))
        False
    """
    transient_error_codes = [
        ErrorCode.GEMINI_API_ERROR,
        ErrorCode.API_RATE_LIMIT,
        ErrorCode.API_TIMEOUT,
    ]

    if isinstance(error, PipelineError):
        return error.code in transient_error_codes

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    return False


def describe_exception(error: BaseException) -> str:
    """Human-readable message for any exception, never empty."""
    if isinstance(error, PipelineError):
        return error.message
    message = str(error).strip()
    return message or type(error).__name__


class ValidationError(PipelineError):
    """Error for input validation failures."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict] = None):
        error_details = details or {}
        if field:
            error_details["field"] = field

        super().__init__(
            ErrorCode.INVALID_INPUT,
            message,
            error_details
        )


class SubmissionError(PipelineError):
    """A scene's generation job could not be started."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(ErrorCode.SUBMISSION_FAILED, message, details)


class PollError(PipelineError):
    """
    Transport or auth failure while polling an operation.

    Distinct from JobFailed, which is a terminal result reported by the job.
    """

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(ErrorCode.POLL_FAILED, message, details)


class JobFailed(PipelineError):
    """The remote service reported the generation job as failed."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(ErrorCode.JOB_FAILED, message, details)


class ArtifactFetchError(PipelineError):
    """The finished job's artifact could not be retrieved."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(ErrorCode.ARTIFACT_FETCH_FAILED, message, details)


class CompositionError(PipelineError):
    """Building or executing the composition filter graph failed."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(ErrorCode.COMPOSITION_FAILED, message, details)


class PrecheckError(PipelineError):
    """Character description resolution failed before any scene started."""

    def __init__(self, message: str, character_name: Optional[str] = None, details: Optional[Dict] = None):
        error_details = details or {}
        if character_name:
            error_details["character"] = character_name
        super().__init__(ErrorCode.PRECHECK_FAILED, message, error_details)


class RunCancelled(PipelineError):
    """The run was stopped between scenes at the caller's request."""

    def __init__(self, message: str = "Run cancelled before all scenes were generated", details: Optional[Dict] = None):
        super().__init__(ErrorCode.RUN_CANCELLED, message, details)


class StateTransitionError(Exception):
    """Raised on an illegal generation state transition (programming error)."""
    pass
