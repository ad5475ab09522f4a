"""
Tests for the storyboard runner script

Covers storyboard parsing and an end-to-end mock run with composition mocked.
"""

import argparse
import io
from unittest.mock import AsyncMock, patch

import pytest
import yaml
from PIL import Image

from pipeline.error_handler import ValidationError
from pipeline.models import TransitionKind
from pipeline.session import PipelineSession
from pipeline.video_composer import CompositionEngine
from scripts.run_film import load_storyboard, reorder_scenes, run


@pytest.fixture
def storyboard(tmp_path):
    refs = tmp_path / "refs"
    refs.mkdir()
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4)).save(buffer, format="PNG")
    (refs / "mira.png").write_bytes(buffer.getvalue())

    path = tmp_path / "forest.yaml"
    path.write_text(yaml.safe_dump({
        "style": "Anime",
        "genre": "Fairy tale",
        "characters": [
            {"name": "Mira", "image": "refs/mira.png"},
            {"name": "Tobin", "description": "Tobin MUST ALWAYS wear a red scarf."},
        ],
        "scenes": [
            {"id": "opening", "description": "Mira wakes up", "characters": ["Mira"],
             "environment": "Forest", "action": "Mira stretches", "transition": "dissolve"},
            {"description": "Tobin arrives", "characters": ["Tobin"],
             "environment": "Bridge", "action": "Tobin waves"},
        ],
    }))
    return str(path)


class TestLoadStoryboard:
    """Test storyboard parsing"""

    def test_load(self, storyboard):
        scenes, characters, style, genre = load_storyboard(storyboard)

        assert (style, genre) == ("Anime", "Fairy tale")
        assert [s.id for s in scenes] == ["opening", "scene_2"]
        assert scenes[0].transition_to_next == TransitionKind.DISSOLVE
        assert scenes[1].transition_to_next == TransitionKind.FADE
        assert characters[0].reference_image.mime_type == "image/png"
        assert characters[0].needs_description
        assert characters[1].locked_description == "Tobin MUST ALWAYS wear a red scarf."

    def test_no_scenes(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("style: Anime\n")

        with pytest.raises(ValidationError, match="no scenes"):
            load_storyboard(str(path))

    def test_unknown_transition(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("scenes:\n  - description: x\n    transition: spiral\n")

        with pytest.raises(ValidationError, match="Scene 1"):
            load_storyboard(str(path))


class TestReorderScenes:
    """Test --order parsing"""

    def test_reorder(self, storyboard):
        scenes, _, _, _ = load_storyboard(storyboard)

        assert reorder_scenes(scenes, None) is None
        assert [s.id for s in reorder_scenes(scenes, "scene_2, opening")] == ["scene_2", "opening"]

    def test_unknown_id(self, storyboard):
        scenes, _, _, _ = load_storyboard(storyboard)

        with pytest.raises(ValidationError, match="nope"):
            reorder_scenes(scenes, "opening,nope")


class TestRun:
    """Test the script entry point with the mock backend"""

    @pytest.mark.asyncio
    async def test_mock_run(self, storyboard, tmp_path, monkeypatch, capsys):
        clips = tmp_path / "clips"
        clips.mkdir()
        (clips / "clip.mp4").write_bytes(b"\x00" * 512)
        monkeypatch.setattr("config.settings.WORK_DIR", str(tmp_path / "runs"))
        monkeypatch.setattr("config.settings.POLL_INTERVAL_SECONDS", 0)
        monkeypatch.setattr("config.settings.MOCK_VIDEO_DELAY_MAX", 0)

        args = argparse.Namespace(storyboard=storyboard, mock=True, mock_dir=str(clips), order=None, no_audio=False)

        with patch.object(CompositionEngine, "compose", new_callable=AsyncMock) as mock_compose:
            mock_compose.return_value = str(tmp_path / "final_movie.mp4")
            exit_code = await run(args)

        output = capsys.readouterr().out
        assert exit_code == 0
        assert "Final movie" in output
        assert "scene 2 (scene_2): complete" in output

    @pytest.mark.asyncio
    async def test_missing_storyboard_scenes(self, tmp_path, capsys):
        path = tmp_path / "empty.yaml"
        path.write_text("style: Anime\n")

        args = argparse.Namespace(storyboard=str(path), mock=True, mock_dir=None, order=None, no_audio=False)

        assert await run(args) == 1
        assert "no scenes" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_no_audio_flag_disables_audio(self, storyboard, tmp_path, monkeypatch):
        clips = tmp_path / "clips"
        clips.mkdir()
        (clips / "clip.mp4").write_bytes(b"\x00" * 512)
        monkeypatch.setattr("config.settings.WORK_DIR", str(tmp_path / "runs"))
        monkeypatch.setattr("config.settings.POLL_INTERVAL_SECONDS", 0)
        monkeypatch.setattr("config.settings.MOCK_VIDEO_DELAY_MAX", 0)

        args = argparse.Namespace(storyboard=storyboard, mock=True, mock_dir=str(clips), order=None, no_audio=True)

        with patch.object(PipelineSession, "from_settings", wraps=PipelineSession.from_settings) as mock_from_settings, \
             patch.object(CompositionEngine, "compose", new_callable=AsyncMock) as mock_compose:
            mock_compose.return_value = str(tmp_path / "final_movie.mp4")
            assert await run(args) == 0

        mock_from_settings.assert_called_once_with(include_audio=False)
