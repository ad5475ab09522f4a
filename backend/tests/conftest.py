"""
Shared pytest fixtures for pipeline and service tests.

Puts the backend directory on sys.path and provides a fast session, a
scripted mock backend and a small storyboard.
"""

import sys
from pathlib import Path

import pytest

# Add backend directory to Python path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from pipeline.asset_manager import AssetManager
from pipeline.models import Character, ReferenceImage, Scene
from pipeline.session import PipelineSession
from services.mock_backend import MockGenerationBackend


FAKE_CLIP = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 256


@pytest.fixture
def session(tmp_path):
    """Session with no waiting between polls or retries"""
    return PipelineSession(
        poll_interval_seconds=0,
        poll_timeout_seconds=0,
        poll_max_retries=3,
        poll_retry_wait_seconds=0,
        describe_concurrency=2,
        work_dir=str(tmp_path / "runs"),
        keep_intermediate_assets=True,
    )


@pytest.fixture
def make_backend():
    """Factory for mock backends returning a fake clip without delays"""
    def _make(**kwargs):
        kwargs.setdefault("clip_bytes", FAKE_CLIP)
        kwargs.setdefault("delay_range", (0, 0))
        return MockGenerationBackend(**kwargs)
    return _make


@pytest.fixture
def mock_backend(make_backend):
    return make_backend()


@pytest.fixture
def asset_manager(tmp_path):
    """Workspace for one run; directories are created on first write"""
    return AssetManager("test-run", base_path=str(tmp_path / "runs"))


@pytest.fixture
def reference_image():
    return ReferenceImage(data=b"fake-png-bytes", mime_type="image/png")


@pytest.fixture
def characters(reference_image):
    """Two named characters (one with an image) and one nameless draft"""
    return [
        Character(id="1", name="Mira", reference_image=reference_image),
        Character(id="2", name="Tobin", locked_description="Tobin MUST ALWAYS wear a red scarf."),
        Character(id="3", name="   "),
    ]


@pytest.fixture
def scenes():
    """Three-scene storyboard sharing one environment"""
    return [
        Scene(
            id="s1",
            description="Mira wakes up in the forest",
            character_names=["Mira"],
            environment="Misty pine forest",
            action="Mira stretches and looks around",
            transition_to_next="dissolve",
        ),
        Scene(
            id="s2",
            description="Tobin arrives with a lantern",
            character_names=["Tobin"],
            environment="Old stone bridge",
            action="Tobin raises the lantern",
            transition_to_next="wipeLeft",
        ),
        Scene(
            id="s3",
            description="They walk into the fog together",
            character_names=["Mira", "Tobin"],
            environment=" Misty pine forest ",
            action="Both disappear into the fog",
        ),
    ]
