"""
Run workspace for generated clips and the composed film.

Each run gets its own isolated directory structure:
    <work_dir>/<run_id>/
        scenes/     - Clips fetched from the generation service
        final/      - Composed film
"""

import asyncio
import mimetypes
import shutil
from pathlib import Path
from typing import List, Optional

import aiofiles
import structlog

logger = structlog.get_logger(__name__)


def extension_for(content_type: Optional[str]) -> str:
    """
    File extension for a media content type (defaults to .mp4).

    Example:
        >>> extension_for("video/webm")
        '.webm'
    """
    if content_type:
        guessed = mimetypes.guess_extension(content_type.split(";")[0].strip())
        if guessed:
            return guessed
    return ".mp4"


class AssetManager:
    """
    Manages files for one pipeline run.

    Example:
        >>> am = AssetManager("run-123")
        >>> await am.create_run_directory()
        >>> path = await am.save_clip(b"...", scene_index=0, scene_id="s1")
        >>> await am.cleanup()
    """

    def __init__(self, run_id: str, base_path: str = "/tmp/film_runs"):
        """
        Initialize asset manager for a specific run.

        Args:
            run_id: Unique identifier for this run
            base_path: Base directory for all runs (default: /tmp/film_runs)
        """
        self.run_id = run_id
        self.base_path = Path(base_path)
        self.run_dir = self.base_path / run_id

        self.scenes_dir = self.run_dir / "scenes"
        self.final_dir = self.run_dir / "final"

        self.logger = logger.bind(run_id=run_id)

    async def create_run_directory(self) -> None:
        """Create the run directory with its scenes/ and final/ subdirectories."""
        try:
            self.run_dir.mkdir(parents=True, exist_ok=True)
            self.scenes_dir.mkdir(exist_ok=True)
            self.final_dir.mkdir(exist_ok=True)

            self.logger.info("run_directory_created", path=str(self.run_dir))
        except Exception as e:
            self.logger.error("run_directory_creation_failed", error=str(e))
            raise

    async def save_file(
        self,
        content: bytes,
        filename: str,
        subdir: Optional[str] = None
    ) -> str:
        """
        Save binary content to file.

        Args:
            content: Binary content to save
            filename: Local filename to save as
            subdir: Optional subdirectory (scenes/final)

        Returns:
            Absolute path to saved file
        """
        target_dir = self._target_dir(subdir)
        target_dir.mkdir(parents=True, exist_ok=True)

        file_path = target_dir / filename

        async with aiofiles.open(file_path, 'wb') as f:
            await f.write(content)

        self.logger.info("file_saved", path=str(file_path), size_bytes=len(content))
        return str(file_path.resolve())

    async def save_clip(
        self,
        content: bytes,
        scene_index: int,
        scene_id: str,
        content_type: Optional[str] = "video/mp4"
    ) -> str:
        """
        Save a fetched scene clip into scenes/.

        Returns:
            Absolute path of the clip, used as the scene's artifact reference
        """
        safe_id = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in str(scene_id))
        filename = f"scene_{scene_index:03d}_{safe_id}{extension_for(content_type)}"
        return await self.save_file(content, filename, subdir="scenes")

    def final_output_path(self, filename: str = "final_movie.mp4") -> str:
        self.final_dir.mkdir(parents=True, exist_ok=True)
        return str((self.final_dir / filename).resolve())

    def _target_dir(self, subdir: Optional[str]) -> Path:
        if subdir == "scenes":
            return self.scenes_dir
        elif subdir == "final":
            return self.final_dir
        return self.run_dir

    async def list_files(self, subdir: Optional[str] = None) -> List[Path]:
        """List all files in the run directory or one of its subdirectories."""
        target_dir = self._target_dir(subdir)

        if not target_dir.exists():
            return []

        return sorted(f for f in target_dir.iterdir() if f.is_file())

    async def validate_file(self, path: str, min_size: int = 100) -> bool:
        """
        Validate that a file exists and meets size requirements.

        Args:
            path: File path
            min_size: Minimum file size in bytes (default: 100)
        """
        file_path = Path(path)

        if not file_path.exists():
            self.logger.warning("file_missing", path=str(file_path))
            return False

        file_size = file_path.stat().st_size
        if file_size < min_size:
            self.logger.warning("file_too_small", path=str(file_path), size_bytes=file_size)
            return False

        return True

    async def cleanup(self, keep_final: bool = False) -> None:
        """
        Remove temporary files for this run.

        Args:
            keep_final: Remove only scenes/ and leave the composed film in place
        """
        target = self.scenes_dir if keep_final else self.run_dir
        try:
            if target.exists():
                await asyncio.to_thread(shutil.rmtree, target)
                self.logger.info("run_files_cleaned", path=str(target))
            else:
                self.logger.info("nothing_to_clean", path=str(target))
        except Exception as e:
            self.logger.error("run_cleanup_failed", path=str(target), error=str(e))
            raise

    async def get_disk_usage(self) -> int:
        """Total size in bytes of everything under the run directory."""
        if not self.run_dir.exists():
            return 0

        return sum(path.stat().st_size for path in self.run_dir.rglob('*') if path.is_file())

    def __repr__(self) -> str:
        return f"AssetManager(run_id='{self.run_id}', path='{self.run_dir}')"
