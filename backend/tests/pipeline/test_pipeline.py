"""
Test suite for pipeline core components.

Tests:
- Run workspace (asset manager) operations
- Error handling system
- Session defaults
"""

import asyncio
import pytest
from pathlib import Path
from pipeline.asset_manager import AssetManager, extension_for
from pipeline.error_handler import (
    PipelineError,
    ErrorCode,
    should_retry,
    ValidationError,
    JobFailed,
    PollError,
    PrecheckError,
    RunCancelled,
    describe_exception,
)
from pipeline.session import PipelineSession


# ============================================================================
# Asset Manager Tests
# ============================================================================

@pytest.mark.asyncio
async def test_asset_manager_create_directory(tmp_path):
    """Test directory creation."""
    am = AssetManager("test-run-123", base_path=str(tmp_path))

    await am.create_run_directory()

    # Check that all directories were created
    assert am.run_dir.exists()
    assert am.scenes_dir.exists()
    assert am.final_dir.exists()

    print("✓ Asset manager creates directories")


@pytest.mark.asyncio
async def test_asset_manager_cleanup(tmp_path):
    """Test cleanup functionality."""
    am = AssetManager("test-run-456", base_path=str(tmp_path))

    await am.create_run_directory()
    assert am.run_dir.exists()

    await am.cleanup()
    assert not am.run_dir.exists()

    # Cleaning twice is harmless
    await am.cleanup()

    print("✓ Asset manager cleanup works")


@pytest.mark.asyncio
async def test_asset_manager_cleanup_keep_final(tmp_path):
    """Test that keep_final removes only the scene clips."""
    am = AssetManager("test-run-keep", base_path=str(tmp_path))

    await am.save_clip(b"clip", scene_index=0, scene_id="s1")
    final = await am.save_file(b"film", "final_movie.mp4", "final")

    await am.cleanup(keep_final=True)

    assert not am.scenes_dir.exists()
    assert Path(final).exists()

    print("✓ Asset manager keeps the final film")


@pytest.mark.asyncio
async def test_asset_manager_save_clip(tmp_path):
    """Test saving a fetched clip."""
    am = AssetManager("test-run-789", base_path=str(tmp_path))

    content = b"test video data"
    path = await am.save_clip(content, scene_index=2, scene_id="forest/opening")

    # Check file exists, has correct content and a safe name
    file_path = Path(path)
    assert file_path.exists()
    assert file_path.read_bytes() == content
    assert file_path.parent == am.scenes_dir.resolve()
    assert file_path.name == "scene_002_forest_opening.mp4"

    print("✓ Asset manager saves clips")


def test_extension_for_content_type():
    """Test clip extensions from content types."""
    assert extension_for("video/mp4") == ".mp4"
    assert extension_for(None) == ".mp4"
    assert extension_for("application/x-unknown-thing") == ".mp4"

    print("✓ Extensions resolved")


@pytest.mark.asyncio
async def test_asset_manager_validate_file(tmp_path):
    """Test file validation."""
    am = AssetManager("test-run-validation", base_path=str(tmp_path))

    # Save test file
    content = b"x" * 1000  # 1000 bytes
    path = await am.save_file(content, "test.mp4", "scenes")

    # Should be valid (>= 100 bytes)
    assert await am.validate_file(path, min_size=100) == True

    # Should be invalid (< 2000 bytes)
    assert await am.validate_file(path, min_size=2000) == False

    # Non-existent file should be invalid
    assert await am.validate_file(str(am.scenes_dir / "nonexistent.mp4")) == False

    print("✓ Asset manager validates files")


@pytest.mark.asyncio
async def test_asset_manager_list_files_and_disk_usage(tmp_path):
    """Test listing files and disk usage."""
    am = AssetManager("test-run-list", base_path=str(tmp_path))

    await am.save_file(b"x" * 1000, "file1.mp4", "scenes")
    await am.save_file(b"x" * 2000, "file2.mp4", "scenes")
    await am.save_file(b"x" * 500, "final_movie.mp4", "final")

    assert len(await am.list_files("scenes")) == 2
    assert len(await am.list_files("final")) == 1
    assert await am.get_disk_usage() == 3500

    print("✓ Asset manager lists files")


def test_final_output_path(tmp_path):
    """Test the composed film location."""
    am = AssetManager("test-run-final", base_path=str(tmp_path))

    path = Path(am.final_output_path())

    assert path.name == "final_movie.mp4"
    assert path.parent.exists()

    print("✓ Final output path inside run directory")


@pytest.mark.asyncio
async def test_asset_manager_concurrent_operations(tmp_path):
    """Test concurrent asset manager operations."""
    managers = [AssetManager(f"test-run-concurrent-{i}", base_path=str(tmp_path)) for i in range(3)]

    # Create all directories concurrently
    await asyncio.gather(*[am.create_run_directory() for am in managers])

    # Verify all exist and are isolated
    assert all(am.run_dir.exists() for am in managers)
    assert len({am.run_dir for am in managers}) == 3

    print("✓ Concurrent operations work")


# ============================================================================
# Error Handler Tests
# ============================================================================

def test_pipeline_error_creation():
    """Test creating pipeline errors."""
    error = PipelineError(
        ErrorCode.INVALID_INPUT,
        "Test error message",
        {"field": "scenes"}
    )

    assert error.code == ErrorCode.INVALID_INPUT
    assert error.message == "Test error message"
    assert error.details["field"] == "scenes"
    assert str(error) == "INVALID_INPUT: Test error message"

    print("✓ PipelineError creation works")


def test_pipeline_error_to_dict():
    """Test error serialization."""
    error = PipelineError(
        ErrorCode.INVALID_INPUT,
        "Test error",
        {"field": "test"}
    )

    error_dict = error.to_dict()

    assert set(error_dict) == {"error_code", "message", "details", "user_message"}
    assert error_dict["error_code"] == "INVALID_INPUT"

    print("✓ Error serialization works")


def test_user_friendly_messages():
    """Test user-friendly error messages."""
    assert "cancelled" in RunCancelled().get_user_friendly_message().lower()
    assert "character" in PrecheckError("boom").get_user_friendly_message().lower()

    custom = PipelineError(ErrorCode.INVALID_INPUT, "bad", user_message="Fix the storyboard.")
    assert custom.get_user_friendly_message() == "Fix the storyboard."

    print("✓ User-friendly messages work")


def test_should_retry_logic():
    """Test retry logic determination."""
    # Transient errors should retry
    assert should_retry(PipelineError(ErrorCode.GEMINI_API_ERROR, "API down")) == True
    assert should_retry(PipelineError(ErrorCode.API_TIMEOUT, "Timeout")) == True

    # Terminal job results and client errors should not retry
    assert should_retry(JobFailed("blocked by safety filter")) == False
    assert should_retry(PollError("gave up")) == False
    assert should_retry(PipelineError(ErrorCode.INVALID_INPUT, "Bad input")) == False

    # Built-in exceptions
    assert should_retry(TimeoutError()) == True
    assert should_retry(ConnectionError()) == True
    assert should_retry(ValueError()) == False

    print("✓ Retry logic works correctly")


def test_validation_error():
    """Test ValidationError convenience class."""
    error = ValidationError("Storyboard has no scenes", field="scenes")

    assert error.code == ErrorCode.INVALID_INPUT
    assert error.details["field"] == "scenes"

    print("✓ ValidationError works")


def test_precheck_error():
    """Test PrecheckError carries the character."""
    error = PrecheckError("Failed to analyze reference image", character_name="Mira")

    assert error.code == ErrorCode.PRECHECK_FAILED
    assert error.details["character"] == "Mira"

    print("✓ PrecheckError works")


def test_describe_exception_never_empty():
    """Test that every error path produces a message."""
    assert describe_exception(RuntimeError()) == "RuntimeError"
    assert describe_exception(RuntimeError("quota exceeded")) == "quota exceeded"
    assert describe_exception(JobFailed("blocked")) == "blocked"

    print("✓ Exception messages never empty")


# ============================================================================
# Session Tests
# ============================================================================

def test_session_defaults():
    """Test default run options."""
    session = PipelineSession()

    assert session.poll_interval_seconds == 10
    assert session.poll_timeout_seconds == 0
    assert session.clip_content_duration == 7
    assert session.transition_duration == 1
    assert session.describe_concurrency == 4

    print("✓ Session defaults match the reference timing")


def test_session_from_settings_overrides(tmp_path):
    """Test overriding settings per run."""
    session = PipelineSession.from_settings(poll_interval_seconds=0, work_dir=str(tmp_path))

    assert session.poll_interval_seconds == 0
    assert session.work_dir == str(tmp_path)

    print("✓ Session overrides work")


def test_session_from_settings_reads_retry_wait_and_audio(monkeypatch):
    """Test that every session knob has a settings key."""
    monkeypatch.setattr("config.settings.POLL_RETRY_WAIT_SECONDS", 0.5)
    monkeypatch.setattr("config.settings.INCLUDE_AUDIO", False)

    session = PipelineSession.from_settings()

    assert session.poll_retry_wait_seconds == 0.5
    assert session.include_audio == False

    print("✓ Session reads retry wait and audio settings")
