"""
Unit tests for the generation job driver

Drives the scene state machine against the scripted mock backend.
"""

from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from pipeline.error_handler import ErrorCode, PipelineError, PrecheckError, StateTransitionError
from pipeline.job_driver import NO_VIDEO_RETURNED, GenerationJobDriver
from pipeline.models import Character, GenerationState, GenerationStatus
from services.generation_backend import GenerationBackend, PollResult, SubmitResult

from tests.conftest import FAKE_CLIP

P = GenerationState.PENDING
G = GenerationState.GENERATING
POLL = GenerationState.POLLING
C = GenerationState.COMPLETE
E = GenerationState.ERROR


@pytest.fixture
def observed():
    return []


@pytest.fixture
def make_driver(session, observed):
    def _make(backend):
        return GenerationJobDriver(backend, session, observer=observed.append, run_id="test-run")
    return _make


@pytest.fixture
def status():
    return GenerationStatus(scene_id="s1", scene_index=0)


class TestTransitions:
    """Test the state machine guard"""

    def test_create_statuses_all_pending(self, make_driver, mock_backend, scenes):
        statuses = make_driver(mock_backend).create_statuses(scenes)

        assert [s.scene_id for s in statuses] == ["s1", "s2", "s3"]
        assert [s.scene_index for s in statuses] == [0, 1, 2]
        assert all(s.state == P and s.history == [P] for s in statuses)

    def test_terminal_status_cannot_change(self, make_driver, mock_backend, status):
        driver = make_driver(mock_backend)
        driver.transition(status, G)
        driver.transition(status, E, error_message="boom")

        with pytest.raises(StateTransitionError):
            driver.transition(status, POLL)

        assert status.state == E
        assert status.history == [P, G, E]

    def test_polling_never_before_generating(self, make_driver, mock_backend, status):
        with pytest.raises(StateTransitionError):
            make_driver(mock_backend).transition(status, POLL)
        assert status.state == P

    def test_observer_receives_copies(self, make_driver, mock_backend, status, observed):
        driver = make_driver(mock_backend)
        driver.transition(status, G)

        assert len(observed) == 1
        assert observed[0].state == G
        assert observed[0] is not status

        driver.transition(status, POLL)
        assert observed[0].state == G


class TestRunScene:
    """Test one scene through the remote service"""

    @pytest.mark.asyncio
    async def test_success(self, make_driver, make_backend, status, asset_manager, observed):
        backend = make_backend(polls_until_done=2)
        driver = make_driver(backend)

        result = await driver.run_scene(status, "prompt", [], asset_manager)

        assert result is status
        assert status.state == C
        assert status.history == [P, G, POLL, C]
        assert [s.state for s in observed] == [G, POLL, C]
        assert Path(status.artifact_ref).read_bytes() == FAKE_CLIP
        assert Path(status.artifact_ref).parent == asset_manager.scenes_dir
        assert status.error_message is None

    @pytest.mark.asyncio
    async def test_polling_recorded_once(self, make_driver, make_backend, status, asset_manager):
        backend = make_backend(polls_until_done=5)

        await make_driver(backend).run_scene(status, "prompt", [], asset_manager)

        assert status.history.count(POLL) == 1
        assert list(backend.poll_counts.values()) == [6]

    @pytest.mark.asyncio
    async def test_done_at_submission_still_records_polling(
        self, make_driver, make_backend, status, asset_manager
    ):
        backend = make_backend(polls_until_done=0)

        await make_driver(backend).run_scene(status, "prompt", [], asset_manager)

        assert status.history == [P, G, POLL, C]

    @pytest.mark.asyncio
    async def test_sends_prompt_and_reference_images(
        self, make_driver, mock_backend, status, asset_manager, reference_image
    ):
        await make_driver(mock_backend).run_scene(status, "the prompt", [reference_image], asset_manager)

        assert mock_backend.submitted_prompts == ["the prompt"]
        assert mock_backend.submitted_reference_images == [[reference_image]]

    @pytest.mark.asyncio
    async def test_submission_failure(self, make_driver, make_backend, status, asset_manager):
        backend = make_backend(submit_failures={0: "quota exceeded"})

        await make_driver(backend).run_scene(status, "prompt", [], asset_manager)

        assert status.history == [P, G, E]
        assert "quota exceeded" in status.error_message

    @pytest.mark.asyncio
    async def test_job_failure(self, make_driver, make_backend, status, asset_manager):
        backend = make_backend(job_failures={0: "blocked by safety filter"})

        await make_driver(backend).run_scene(status, "prompt", [], asset_manager)

        assert status.history == [P, G, POLL, E]
        assert status.error_message == "blocked by safety filter"
        assert status.artifact_ref is None

    @pytest.mark.asyncio
    async def test_done_without_result(self, make_driver, status, asset_manager):
        backend = Mock(spec=GenerationBackend)
        backend.submit_job = AsyncMock(return_value=SubmitResult(operation_handle="op-1"))
        backend.poll_job = AsyncMock(return_value=PollResult(done=True))
        backend.fetch_artifact = AsyncMock()

        await make_driver(backend).run_scene(status, "prompt", [], asset_manager)

        assert status.state == E
        assert status.error_message == NO_VIDEO_RETURNED
        backend.fetch_artifact.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetch_failure(self, make_driver, make_backend, status, asset_manager):
        backend = make_backend(fetch_failures={0: "403 forbidden"})

        await make_driver(backend).run_scene(status, "prompt", [], asset_manager)

        assert status.history == [P, G, POLL, E]
        assert "403 forbidden" in status.error_message

    @pytest.mark.asyncio
    async def test_empty_artifact(self, make_driver, make_backend, status, asset_manager):
        backend = make_backend(clip_bytes=b"")

        await make_driver(backend).run_scene(status, "prompt", [], asset_manager)

        assert status.history == [P, G, POLL, E]
        assert status.error_message == "Fetched video is empty"

    @pytest.mark.asyncio
    async def test_transient_poll_error_is_retried(self, make_driver, status, asset_manager):
        backend = Mock(spec=GenerationBackend)
        backend.submit_job = AsyncMock(return_value=SubmitResult(operation_handle="op-1"))
        backend.poll_job = AsyncMock(side_effect=[
            ConnectionError("reset by peer"),
            PollResult(done=True, result="ref-1"),
        ])
        backend.fetch_artifact = AsyncMock(return_value=Mock(data=FAKE_CLIP, content_type="video/mp4"))

        await make_driver(backend).run_scene(status, "prompt", [], asset_manager)

        assert status.state == C
        assert backend.poll_job.await_count == 2

    @pytest.mark.asyncio
    async def test_coded_transport_error_is_retried(self, make_driver, status, asset_manager):
        backend = Mock(spec=GenerationBackend)
        backend.submit_job = AsyncMock(return_value=SubmitResult(operation_handle="op-1"))
        backend.poll_job = AsyncMock(side_effect=[
            PipelineError(ErrorCode.API_RATE_LIMIT, "Video service get_operation failed: quota"),
            PollResult(done=True, result="ref-1"),
        ])
        backend.fetch_artifact = AsyncMock(return_value=Mock(data=FAKE_CLIP, content_type="video/mp4"))

        await make_driver(backend).run_scene(status, "prompt", [], asset_manager)

        assert status.state == C
        assert backend.poll_job.await_count == 2

    @pytest.mark.asyncio
    async def test_poll_transport_failure_after_retries(
        self, make_driver, make_backend, status, asset_manager, session
    ):
        backend = make_backend(poll_transport_failures={0: "network unreachable"})

        await make_driver(backend).run_scene(status, "prompt", [], asset_manager)

        assert status.history == [P, G, POLL, E]
        assert "network unreachable" in status.error_message
        assert list(backend.poll_counts.values()) == [session.poll_max_retries]

    @pytest.mark.asyncio
    async def test_poll_timeout(self, make_backend, status, asset_manager, session):
        backend = make_backend(polls_until_done=10_000_000)
        timed = session.model_copy(update={"poll_timeout_seconds": 0.05})
        driver = GenerationJobDriver(backend, timed)

        await driver.run_scene(status, "prompt", [], asset_manager)

        assert status.state == E
        assert "Timed out" in status.error_message

    @pytest.mark.asyncio
    async def test_running_terminal_status_raises(self, make_driver, mock_backend, status, asset_manager):
        driver = make_driver(mock_backend)
        await driver.run_scene(status, "prompt", [], asset_manager)

        with pytest.raises(StateTransitionError):
            await driver.run_scene(status, "prompt", [], asset_manager)

        assert status.history == [P, G, POLL, C]


class TestResolveCharacterDescription:
    """Test the precheck request"""

    @pytest.mark.asyncio
    async def test_resolves_description(self, make_driver, make_backend, reference_image):
        backend = make_backend(descriptions={"Mira": "  Mira MUST ALWAYS have silver braids.  "})
        character = Character(id="1", name="Mira", reference_image=reference_image)

        resolved = await make_driver(backend).resolve_character_description(character)

        assert resolved.locked_description == "Mira MUST ALWAYS have silver braids."
        assert character.locked_description is None
        assert backend.described_characters == ["Mira"]

    @pytest.mark.asyncio
    async def test_existing_description_not_requested(self, make_driver, mock_backend, reference_image):
        character = Character(id="1", name="Mira", reference_image=reference_image, locked_description="desc")

        resolved = await make_driver(mock_backend).resolve_character_description(character)

        assert resolved is character
        assert mock_backend.described_characters == []

    @pytest.mark.asyncio
    async def test_failure_raises_precheck_error(self, make_driver, make_backend, reference_image):
        backend = make_backend(describe_failures=["Mira"])
        character = Character(id="1", name="Mira", reference_image=reference_image)

        with pytest.raises(PrecheckError) as exc_info:
            await make_driver(backend).resolve_character_description(character)

        assert exc_info.value.details["character"] == "Mira"

    @pytest.mark.asyncio
    async def test_empty_description_raises_precheck_error(self, make_driver, make_backend, reference_image):
        backend = make_backend(descriptions={"Mira": "   "})
        character = Character(id="1", name="Mira", reference_image=reference_image)

        with pytest.raises(PrecheckError, match="No description"):
            await make_driver(backend).resolve_character_description(character)
