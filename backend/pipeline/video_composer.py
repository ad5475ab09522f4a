"""
Composition engine.

Joins the ordered scene clips into one film with ffmpeg:
- one xfade transition per edge between adjacent clips
- audio tracks cross-faded alongside with acrossfade, silent clips padded
  with generated silence
- progress parsed from ffmpeg's -progress output, reported from 0.0 to 1.0

Every clip is assumed to carry the same amount of content before its
transition, so transition i starts at (i + 1) * content_duration on the
output timeline. Actual clip lengths are probed with moviepy and only
logged when they disagree.
"""

import asyncio
import shutil
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import imageio_ffmpeg
import structlog
from moviepy import VideoFileClip
from pydantic import BaseModel

from pipeline.error_handler import CompositionError, ErrorCode, PipelineError
from pipeline.models import CompositionSpec, TransitionKind
from pipeline.session import PipelineSession

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[float], None]

# Tolerance before a clip length mismatch is logged (seconds)
DURATION_TOLERANCE = 0.25

STDERR_TAIL_LINES = 20

SILENCE_SAMPLE_RATE = 48000


def _fmt(value: float) -> str:
    """Render a number for a filter argument: 7.0 -> '7', 7.5 -> '7.5'."""
    return f"{value:g}"


def transition_offset(index: int, content_duration: float = 7.0) -> float:
    """
    Output-timeline offset at which transition `index` starts.

    Example:
        >>> [transition_offset(i) for i in range(3)]
        [7.0, 14.0, 21.0]
    """
    return (index + 1) * float(content_duration)


class TransitionNode(BaseModel):
    """One edge of the composition: a video xfade plus an optional audio cross-fade"""
    index: int
    kind: TransitionKind
    offset: float
    duration: float
    video_inputs: Tuple[str, str]
    video_output: str
    audio_inputs: Optional[Tuple[str, str]] = None
    audio_output: Optional[str] = None

    @property
    def video_filter(self) -> str:
        left, right = self.video_inputs
        return (
            f"[{left}][{right}]xfade=transition={self.kind.ffmpeg_name}"
            f":duration={_fmt(self.duration)}:offset={_fmt(self.offset)}[{self.video_output}]"
        )

    @property
    def audio_filter(self) -> Optional[str]:
        if self.audio_inputs is None:
            return None
        left, right = self.audio_inputs
        return f"[{left}][{right}]acrossfade=d={_fmt(self.duration)}[{self.audio_output}]"


class FilterGraph(BaseModel):
    """Transition-aware ffmpeg filter graph for N >= 2 clips"""
    nodes: List[TransitionNode]
    video_output: str
    audio_output: Optional[str] = None
    expected_duration: float
    # Silence generators standing in for clips without an audio track
    audio_sources: List[str] = []

    @property
    def filter_complex(self) -> str:
        filters = list(self.audio_sources)
        for node in self.nodes:
            filters.append(node.video_filter)
            if node.audio_filter:
                filters.append(node.audio_filter)
        return ";".join(filters)


def silence_source(label: str, duration: float) -> str:
    """
    Silent stereo track of a fixed length, usable as an acrossfade input.

    Example:
        >>> silence_source("s1", 8)
        'anullsrc=channel_layout=stereo:sample_rate=48000,atrim=duration=8[s1]'
    """
    return (
        f"anullsrc=channel_layout=stereo:sample_rate={SILENCE_SAMPLE_RATE},"
        f"atrim=duration={_fmt(duration)}[{label}]"
    )


def build_filter_graph(
    spec: CompositionSpec,
    content_duration: float = 7.0,
    transition_duration: float = 1.0,
    include_audio: bool = True,
    audio_tracks: Optional[Sequence[bool]] = None
) -> FilterGraph:
    """
    Build the xfade chain for a composition.

    Input k of ffmpeg is clip k. The output of each transition is the left
    input of the next one.

    Audio is cross-faded alongside when include_audio is set and at least
    one clip has an audio track. Clips without one are padded with silence
    of the assumed clip length. audio_tracks holds one flag per clip; None
    means every clip has audio.

    Example:
        >>> graph = build_filter_graph(spec_with_three_clips)
        >>> graph.filter_complex.split(";")[0]
        '[0:v][1:v]xfade=transition=fade:duration=1:offset=7[v1]'

    Raises:
        CompositionError: If the spec holds fewer than two clips
    """
    if len(spec) < 2:
        raise CompositionError(
            f"A filter graph needs at least two clips, got {len(spec)}",
            {"num_clips": len(spec)}
        )

    if audio_tracks is None:
        audio_tracks = [True] * len(spec)
    elif len(audio_tracks) != len(spec):
        raise CompositionError(
            f"Expected {len(spec)} audio flags, got {len(audio_tracks)}",
            {"num_clips": len(spec), "num_audio_flags": len(audio_tracks)}
        )

    with_audio = include_audio and any(audio_tracks)

    audio_sources = []
    audio_labels = []
    for index, has_audio in enumerate(audio_tracks):
        if has_audio:
            audio_labels.append(f"{index}:a")
        else:
            label = f"s{index}"
            audio_sources.append(silence_source(label, content_duration + transition_duration))
            audio_labels.append(label)

    nodes = []
    video_left = "0:v"
    audio_left = audio_labels[0]

    for index, kind in enumerate(spec.transitions):
        right = index + 1
        video_out = f"v{right}"
        audio_out = f"a{right}" if with_audio else None

        nodes.append(TransitionNode(
            index=index,
            kind=kind,
            offset=transition_offset(index, content_duration),
            duration=transition_duration,
            video_inputs=(video_left, f"{right}:v"),
            video_output=video_out,
            audio_inputs=(audio_left, audio_labels[right]) if with_audio else None,
            audio_output=audio_out,
        ))

        video_left = video_out
        audio_left = audio_out

    return FilterGraph(
        nodes=nodes,
        video_output=video_left,
        audio_output=audio_left if with_audio else None,
        expected_duration=len(spec) * content_duration + transition_duration,
        audio_sources=audio_sources if with_audio else [],
    )


def resolve_ffmpeg_executable(configured: Optional[str] = None) -> str:
    """
    Locate the ffmpeg binary.

    Order: configured path, `ffmpeg` on PATH, the binary bundled with
    imageio-ffmpeg (installed with moviepy).

    Raises:
        CompositionError: If no ffmpeg binary can be found
    """
    if configured:
        if Path(configured).exists():
            return configured
        found = shutil.which(configured)
        if found:
            return found
        logger.warning("configured_ffmpeg_not_found", path=configured)

    found = shutil.which("ffmpeg")
    if found:
        return found

    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError as e:
        raise PipelineError(
            ErrorCode.FFMPEG_ERROR,
            f"ffmpeg executable not found: {e}",
            user_message="FFmpeg is not installed. Install it or set FFMPEG_PATH."
        ) from e


class ClipProbe(BaseModel):
    """What moviepy reports about one input clip"""
    duration: Optional[float] = None
    has_audio: bool = False


def probe_clip(path: str) -> ClipProbe:
    """Duration and audio presence of a clip, read with moviepy."""
    clip = VideoFileClip(path)
    try:
        return ClipProbe(duration=clip.duration, has_audio=clip.audio is not None)
    finally:
        clip.close()


class ProgressReporter:
    """
    Turns ffmpeg `-progress` lines into a monotonic 0.0-1.0 progress value.

    ffmpeg reports out_time_us (and the misnamed out_time_ms, also in
    microseconds) once per progress block.
    """

    def __init__(self, expected_duration: float, callback: Optional[ProgressCallback] = None):
        self.expected_duration = expected_duration
        self.callback = callback
        self.value = 0.0

    def report(self, value: float) -> None:
        value = min(1.0, max(0.0, value))
        if value <= self.value:
            return
        self.value = value
        if self.callback:
            self.callback(value)

    def feed_line(self, line: str) -> None:
        key, sep, raw = line.strip().partition("=")
        if not sep or key not in ("out_time_us", "out_time_ms"):
            return
        try:
            microseconds = int(raw)
        except ValueError:
            return
        if self.expected_duration > 0:
            self.report(microseconds / 1_000_000 / self.expected_duration)

    def finish(self) -> None:
        self.report(1.0)


class CompositionEngine:
    """
    Composes completed scene clips into one film.

    Example:
        >>> engine = CompositionEngine(session)
        >>> path = await engine.compose(spec, on_progress=lambda p: print(f"{p:.0%}"))
    """

    def __init__(self, session: Optional[PipelineSession] = None):
        self.session = session or PipelineSession.from_settings()
        self.logger = logger.bind(service="composition_engine")

    def build_command(
        self,
        ffmpeg: str,
        inputs: Sequence[str],
        graph: FilterGraph,
        output_path: str
    ) -> List[str]:
        cmd = [ffmpeg, "-y", "-hide_banner", "-nostats", "-loglevel", "error"]
        for path in inputs:
            cmd += ["-i", path]
        cmd += ["-filter_complex", graph.filter_complex, "-map", f"[{graph.video_output}]"]
        if graph.audio_output:
            cmd += ["-map", f"[{graph.audio_output}]", "-c:a", "aac"]
        cmd += [
            "-c:v", "libx264",
            "-pix_fmt", "yuv420p",
            "-fps_mode", "vfr",
            "-progress", "pipe:1",
            output_path,
        ]
        return cmd

    async def compose(
        self,
        spec: CompositionSpec,
        on_progress: Optional[ProgressCallback] = None,
        output_path: Optional[str] = None
    ) -> str:
        """
        Compose the clips of a spec, in order.

        Args:
            spec: Ordered clips and the transition on each edge
            on_progress: Called with increasing values from 0.0 to 1.0
            output_path: Target file (default: a new file under session.work_dir)

        Returns:
            Path of the composed film. A single clip is returned unchanged.

        Raises:
            CompositionError: If there is nothing to compose or ffmpeg fails
        """
        reporter = ProgressReporter(0.0, on_progress)

        if len(spec) == 0:
            raise CompositionError("No completed clips to compose")

        if len(spec) == 1:
            self.logger.info("single_clip_composition", path=spec.artifact_refs[0])
            reporter.finish()
            return spec.artifact_refs[0]

        inputs = spec.artifact_refs
        missing = [path for path in inputs if not Path(path).exists()]
        if missing:
            raise CompositionError(
                f"{len(missing)} clip(s) missing on disk",
                {"missing": missing}
            )

        audio_tracks = await self._probe_clips(inputs)

        graph = build_filter_graph(
            spec,
            content_duration=self.session.clip_content_duration,
            transition_duration=self.session.transition_duration,
            include_audio=self.session.include_audio,
            audio_tracks=audio_tracks,
        )
        reporter.expected_duration = graph.expected_duration

        if output_path is None:
            output_path = str(Path(self.session.work_dir) / f"film_{uuid.uuid4().hex[:8]}.mp4")
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            ffmpeg = resolve_ffmpeg_executable(self.session.ffmpeg_path)
        except PipelineError as e:
            raise CompositionError(e.message, {"error_code": e.code.value}) from e

        cmd = self.build_command(ffmpeg, inputs, graph, output_path)

        self.logger.info(
            "composition_started",
            num_clips=len(inputs),
            transitions=[kind.value for kind in spec.transitions],
            expected_duration=graph.expected_duration,
            output_path=output_path
        )

        await self._run_ffmpeg(cmd, output_path, reporter)
        reporter.finish()

        self.logger.info("composition_completed", output_path=output_path)
        return output_path

    async def _run_ffmpeg(self, cmd: List[str], output_path: str, reporter: ProgressReporter) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CompositionError(f"Failed to start ffmpeg: {e}", {"ffmpeg": cmd[0]}) from e

        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            async for raw_line in process.stdout:
                reporter.feed_line(raw_line.decode("utf-8", errors="replace"))
            stderr = await stderr_task
            returncode = await process.wait()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            Path(output_path).unlink(missing_ok=True)
            raise

        if returncode != 0:
            Path(output_path).unlink(missing_ok=True)
            lines = stderr.decode("utf-8", errors="replace").strip().splitlines()
            tail = "\n".join(lines[-STDERR_TAIL_LINES:])
            raise CompositionError(
                f"ffmpeg exited with code {returncode}: {tail or 'no error output'}",
                {"returncode": returncode, "stderr_tail": tail}
            )

    async def _probe_clips(self, inputs: Sequence[str]) -> List[bool]:
        """
        Probe every clip and return which ones carry an audio track.

        Clips whose length differs from the fixed timing the offsets assume
        are logged, never adjusted. A clip that cannot be probed is assumed
        to have audio so ffmpeg reports the real problem.
        """
        expected = self.session.clip_content_duration + self.session.transition_duration
        audio_tracks = []
        for index, path in enumerate(inputs):
            try:
                probe = await asyncio.to_thread(probe_clip, path)
            except Exception as e:
                self.logger.warning("clip_probe_failed", clip_index=index, path=path, error=str(e))
                audio_tracks.append(True)
                continue

            audio_tracks.append(probe.has_audio)
            if not probe.has_audio:
                self.logger.info("clip_without_audio", clip_index=index, path=path)

            if probe.duration is not None and abs(probe.duration - expected) > DURATION_TOLERANCE:
                self.logger.warning(
                    "clip_duration_mismatch",
                    clip_index=index,
                    path=path,
                    duration=probe.duration,
                    expected=expected
                )
        return audio_tracks
