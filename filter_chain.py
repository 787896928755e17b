# filter_chain.py
"""
Filter chain construction and render execution.

Video stage order is fixed:

    scale (fit) -> pad (center, black) -> [setpts] -> [eq, rotate, zoom, unsharp, boxblur]
        -> [subtitles | drawtext] -> [fade in]

Stages are kept as structured (name, options) pairs and only flattened into the
-vf/-af strings when the ffmpeg argv list is built. Values are escaped on the way
out, so callers never hand-escape filtergraph syntax.
"""

import asyncio
import logging
import os
import random
import shlex
import subprocess
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Union

from ffmpeg_runner import run_ffmpeg_async
from overlay_text import prepare_for_direct_draw
from render_errors import RenderError

logger = logging.getLogger("filter_chain")

TEMPO_MIN, TEMPO_MAX = 0.5, 2.0
ZOOM_MIN, ZOOM_MAX = 1.0, 1.1
ANGLE_MAX = 0.05  # radians
BRIGHTNESS_MAX = 0.1
CONTRAST_MIN, CONTRAST_MAX = 0.9, 1.1
SATURATION_MIN, SATURATION_MAX = 0.9, 1.2

STDERR_TAIL = 2000

OptionValue = Union[str, int, float]


# ----------------- escaping -----------------

def escape_option_value(value: str) -> str:
    """Escape for the filter option parser (key=value pairs split on ':')."""
    return "".join("\\" + ch if ch in "\\:'" else ch for ch in value)


def escape_graph_value(value: str) -> str:
    """Escape for the filtergraph parser (filters split on ',' and ';', pads in [])."""
    return "".join("\\" + ch if ch in "\\'[],;" else ch for ch in value)


def _fmt(value: OptionValue) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        text = f"{value:.4f}".rstrip("0").rstrip(".")
        return text if text not in ("", "-0") else "0"
    return str(value)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# ----------------- stages -----------------

@dataclass
class FilterStage:
    name: str
    options: Optional[Dict[str, OptionValue]] = None
    raw: Optional[str] = None

    def render(self) -> str:
        if self.raw is not None:
            return f"{self.name}={self.raw}"
        if not self.options:
            return self.name
        parts = [f"{k}={escape_graph_value(_fmt(v))}" for k, v in self.options.items()]
        return f"{self.name}=" + ":".join(parts)


def stage(name: str, **options: OptionValue) -> FilterStage:
    return FilterStage(name, OrderedDict(options))


def flatten(stages: List[FilterStage]) -> str:
    return ",".join(s.render() for s in stages)


def scale_to_fit(width: int, height: int) -> FilterStage:
    return stage("scale", w=width, h=height, force_original_aspect_ratio="decrease")


def pad_to_canvas(width: int, height: int, color: str = "black") -> FilterStage:
    return stage("pad", w=width, h=height, x="(ow-iw)/2", y="(oh-ih)/2", color=color)


def caption_stage(caption_path: str, fonts_dir: Optional[str] = None) -> FilterStage:
    opts: Dict[str, OptionValue] = OrderedDict(filename=escape_option_value(caption_path))
    if fonts_dir:
        opts["fontsdir"] = escape_option_value(fonts_dir)
    return FilterStage("subtitles", opts)


# renderer-evaluated positions; frame and text size are unknown until render time
def drawtext_position(anchor: str, offset: int):
    x = "(w-text_w)/2"
    if anchor == "top":
        return x, str(offset)
    if anchor == "bottom":
        return x, f"h-text_h-{offset}"
    return x, "(h-text_h)/2"


def drawtext_stage(text: str, font_file: str, font_size: int, color: str = "#FFFFFF",
                   anchor: str = "center", offset: int = 40) -> FilterStage:
    x, y = drawtext_position(anchor, offset)
    return stage(
        "drawtext",
        fontfile=escape_option_value(font_file),
        text=prepare_for_direct_draw(text),
        expansion="none",
        fontsize=font_size,
        fontcolor=color,
        borderw=3,
        bordercolor="black",
        x=x,
        y=y,
    )


# ----------------- randomized cosmetics -----------------

@dataclass(frozen=True)
class Jitter:
    zoom: float = 1.0
    angle: float = 0.0
    brightness: float = 0.0
    contrast: float = 1.0
    saturation: float = 1.0
    tempo: float = 1.0

    def clamped(self) -> "Jitter":
        return Jitter(
            zoom=clamp(self.zoom, ZOOM_MIN, ZOOM_MAX),
            angle=clamp(self.angle, -ANGLE_MAX, ANGLE_MAX),
            brightness=clamp(self.brightness, -BRIGHTNESS_MAX, BRIGHTNESS_MAX),
            contrast=clamp(self.contrast, CONTRAST_MIN, CONTRAST_MAX),
            saturation=clamp(self.saturation, SATURATION_MIN, SATURATION_MAX),
            tempo=clamp(self.tempo, TEMPO_MIN, TEMPO_MAX),
        )


def draw_jitter(rng: random.Random) -> Jitter:
    """Draw one set of cosmetic parameters. Pass a seeded Random for repeatable output."""
    return Jitter(
        zoom=rng.uniform(1.0, 1.08),
        angle=rng.uniform(-0.03, 0.03),
        brightness=rng.uniform(-0.04, 0.04),
        contrast=rng.uniform(0.96, 1.06),
        saturation=rng.uniform(0.95, 1.12),
        tempo=rng.uniform(0.97, 1.05),
    ).clamped()


def effective_tempo(speed: float = 1.0, jitter: Optional[Jitter] = None) -> float:
    tempo = speed * (jitter.tempo if jitter else 1.0)
    return clamp(tempo, TEMPO_MIN, TEMPO_MAX)


def cosmetic_stages(width: int, height: int, jitter: Optional[Jitter],
                    sharpen: bool = False, blur: bool = False) -> List[FilterStage]:
    stages: List[FilterStage] = []
    if jitter is not None:
        j = jitter.clamped()
        stages.append(stage("eq", brightness=j.brightness, contrast=j.contrast, saturation=j.saturation))
        if j.angle:
            stages.append(stage("rotate", a=j.angle, fillcolor="black"))
        if j.zoom > 1.0:
            # zoom in, then crop back to the canvas
            stages.append(stage("scale", w=f"trunc(iw*{_fmt(j.zoom)}/2)*2", h=-2))
            stages.append(stage("crop", w=width, h=height))
    if sharpen:
        stages.append(stage("unsharp", luma_msize_x=5, luma_msize_y=5, luma_amount=0.8))
    if blur:
        stages.append(stage("boxblur", luma_radius=1, luma_power=1))
    return stages


def build_video_filters(width: int, height: int,
                        overlay: Optional[FilterStage] = None,
                        jitter: Optional[Jitter] = None,
                        speed: float = 1.0,
                        fade_in: float = 0.0,
                        sharpen: bool = False,
                        blur: bool = False) -> List[FilterStage]:
    stages = [scale_to_fit(width, height), pad_to_canvas(width, height)]
    speed = clamp(speed, TEMPO_MIN, TEMPO_MAX)
    if abs(speed - 1.0) > 1e-6:
        stages.append(FilterStage("setpts", raw=f"PTS/{_fmt(speed)}"))
    stages.extend(cosmetic_stages(width, height, jitter, sharpen=sharpen, blur=blur))
    if overlay is not None:
        stages.append(overlay)
    if fade_in and fade_in > 0:
        stages.append(stage("fade", t="in", st=0, d=float(fade_in)))
    return stages


def build_audio_filters(tempo: float = 1.0) -> List[FilterStage]:
    tempo = clamp(tempo, TEMPO_MIN, TEMPO_MAX)
    if abs(tempo - 1.0) <= 1e-6:
        return []
    return [stage("atempo", tempo=tempo)]


# ----------------- render job -----------------

@dataclass
class CodecOptions:
    video_codec: str = "libx264"
    preset: str = "veryfast"
    crf: int = 22
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    frame_rate: int = 30
    faststart: bool = True

    def to_args(self) -> List[str]:
        args = [
            "-c:v", self.video_codec,
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-pix_fmt", "yuv420p",
            "-c:a", self.audio_codec,
            "-b:a", self.audio_bitrate,
            "-r", str(self.frame_rate),
        ]
        if self.faststart:
            args += ["-movflags", "+faststart"]
        return args


class JobState(str, Enum):
    CREATED = "created"
    INPUT_ACQUIRED = "input_acquired"
    PIPELINE_COMPOSED = "pipeline_composed"
    RENDER_RUNNING = "render_running"
    RENDER_SUCCEEDED = "render_succeeded"
    RENDER_FAILED = "render_failed"
    CLEANED_UP = "cleaned_up"


_TRANSITIONS = {
    JobState.CREATED: {JobState.INPUT_ACQUIRED},
    JobState.INPUT_ACQUIRED: {JobState.PIPELINE_COMPOSED},
    JobState.PIPELINE_COMPOSED: {JobState.RENDER_RUNNING},
    JobState.RENDER_RUNNING: {JobState.RENDER_SUCCEEDED, JobState.RENDER_FAILED},
}


@dataclass
class RenderJob:
    job_id: str
    output_path: str
    width: int = 1080
    height: int = 1920
    input_path: Optional[str] = None
    caption_path: Optional[str] = None
    video_filters: List[FilterStage] = field(default_factory=list)
    audio_filters: List[FilterStage] = field(default_factory=list)
    codec: CodecOptions = field(default_factory=CodecOptions)
    keep_output: bool = True
    state: JobState = JobState.CREATED

    @classmethod
    def create(cls, render_dir: Path, width: int = 1080, height: int = 1920,
               keep_output: bool = True) -> "RenderJob":
        job_id = uuid.uuid4().hex
        output_path = os.path.join(str(render_dir), f"out_{job_id}.mp4")
        return cls(job_id=job_id, output_path=output_path, width=width, height=height,
                   keep_output=keep_output)

    @property
    def file_name(self) -> str:
        return os.path.basename(self.output_path)

    def advance(self, new_state: JobState) -> None:
        if new_state is not JobState.CLEANED_UP and new_state not in _TRANSITIONS.get(self.state, ()):
            raise RuntimeError(f"job {self.job_id}: illegal transition {self.state.value} -> {new_state.value}")
        logger.debug("job %s: %s -> %s", self.job_id, self.state.value, new_state.value)
        self.state = new_state

    def compose(self, video_filters: List[FilterStage], audio_filters: Optional[List[FilterStage]] = None) -> None:
        self.video_filters = list(video_filters)
        self.audio_filters = list(audio_filters or [])
        self.advance(JobState.PIPELINE_COMPOSED)

    def cleanup(self) -> None:
        """Delete temp inputs; the output goes too unless the job succeeded and keeps it."""
        paths = [self.input_path, self.caption_path]
        if self.state is not JobState.RENDER_SUCCEEDED or not self.keep_output:
            paths.append(self.output_path)
        for p in paths:
            if p:
                remove_file_quietly(p)
        self.state = JobState.CLEANED_UP


def remove_file_quietly(path: str) -> None:
    try:
        if os.path.exists(path):
            os.remove(path)
            logger.info("removed temp file %s", path)
    except OSError as e:
        logger.warning("failed to remove temp file %s: %s", path, e)


def build_ffmpeg_command(job: RenderJob, ffmpeg_bin: str = "ffmpeg") -> List[str]:
    cmd = [ffmpeg_bin, "-y", "-hide_banner", "-i", job.input_path,
           "-map", "0:v:0", "-map", "0:a?"]
    if job.video_filters:
        cmd += ["-vf", flatten(job.video_filters)]
    if job.audio_filters:
        cmd += ["-af", flatten(job.audio_filters)]
    cmd += job.codec.to_args()
    cmd.append(job.output_path)
    return cmd


def _tail(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    return text[-STDERR_TAIL:]


Runner = Callable[..., Awaitable[subprocess.CompletedProcess]]


async def execute_render(job: RenderJob, runner: Runner = run_ffmpeg_async,
                         ffmpeg_bin: str = "ffmpeg", timeout: Optional[float] = None) -> RenderJob:
    """Run ffmpeg for a composed job. Failures become RenderError; no retry."""
    cmd = build_ffmpeg_command(job, ffmpeg_bin)
    job.advance(JobState.RENDER_RUNNING)
    logger.info("[FFMPEG] start: %s", " ".join(shlex.quote(str(c)) for c in cmd))
    try:
        await runner(cmd, timeout=timeout)
    except subprocess.CalledProcessError as e:
        job.advance(JobState.RENDER_FAILED)
        logger.error("[FFMPEG] ERROR rc=%s for job %s", e.returncode, job.job_id)
        if e.stderr:
            logger.error("[FFMPEG] stderr: %s", e.stderr)
        raise RenderError(f"ffmpeg exited with code {e.returncode}", details=_tail(e.stderr)) from e
    except subprocess.TimeoutExpired as e:
        job.advance(JobState.RENDER_FAILED)
        logger.error("[FFMPEG] timed out after %ss for job %s", e.timeout, job.job_id)
        raise RenderError(f"ffmpeg timed out after {e.timeout}s") from e
    except FileNotFoundError as e:
        job.advance(JobState.RENDER_FAILED)
        logger.error("[FFMPEG] binary not found: %s", ffmpeg_bin)
        raise RenderError(f"ffmpeg binary not found: {ffmpeg_bin}") from e
    except asyncio.CancelledError:
        job.advance(JobState.RENDER_FAILED)
        logger.warning("[FFMPEG] render cancelled for job %s", job.job_id)
        raise
    job.advance(JobState.RENDER_SUCCEEDED)
    logger.info("[FFMPEG] finished: %s", job.output_path)
    return job
