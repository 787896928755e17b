# render_config.py
"""
Configuration for the render service.

Two layers:
 - ServiceSettings: deployment settings read from the environment (.env is loaded
   by the server module)
 - RenderConfig: the small admin-editable document (resolution, font size, colour,
   vertical offset, default caption text, ...) persisted as flat JSON
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger("render_config")

DEFAULT_TEXT = "Link in Bio"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


@dataclass
class ServiceSettings:
    upload_dir: Path
    render_dir: Path
    caption_dir: Path
    config_path: Path
    admin_password: Optional[str] = None
    ffmpeg_bin: str = "ffmpeg"
    ffmpeg_timeout: int = 900
    download_timeout: int = 180
    max_download_bytes: int = 500 * 1024 * 1024
    fonts_dir: str = "/usr/share/fonts/truetype/dejavu"
    font_file: str = "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf"
    fallback_fonts_dir: str = "/usr/share/fonts"
    fallback_font_file: str = "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf"

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        tmp = Path(tempfile.gettempdir())
        return cls(
            upload_dir=Path(os.getenv("UPLOAD_DIR", str(tmp / "render_uploads"))),
            render_dir=Path(os.getenv("RENDER_DIR", "renders")),
            caption_dir=Path(os.getenv("CAPTION_DIR", str(tmp))),
            config_path=Path(os.getenv("CONFIG_PATH", "render_config.json")),
            admin_password=os.getenv("ADMIN_PASSWORD") or None,
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            ffmpeg_timeout=_env_int("FFMPEG_TIMEOUT", 900),
            download_timeout=_env_int("DOWNLOAD_TIMEOUT", 180),
            max_download_bytes=_env_int("MAX_DOWNLOAD_BYTES", 500 * 1024 * 1024),
            fonts_dir=os.getenv("FONTS_DIR", cls.fonts_dir),
            font_file=os.getenv("FONT_FILE", cls.font_file),
            fallback_fonts_dir=os.getenv("FALLBACK_FONTS_DIR", cls.fallback_fonts_dir),
            fallback_font_file=os.getenv("FALLBACK_FONT_FILE", cls.fallback_font_file),
        )

    def ensure_dirs(self) -> None:
        for d in (self.upload_dir, self.render_dir, self.caption_dir):
            d.mkdir(parents=True, exist_ok=True)


# ----------------- persisted render config -----------------

def parse_resolution(res: Optional[str]) -> Optional[Tuple[int, int]]:
    if not res:
        return None
    if isinstance(res, str) and "x" in res.lower():
        try:
            w_s, h_s = res.lower().split("x")
            w = int(w_s)
            h = int(h_s)
        except ValueError:
            raise ValueError(f"Invalid resolution format '{res}', expected WIDTHxHEIGHT")
        if w <= 0 or h <= 0:
            raise ValueError("width/height must be > 0")
        return (w, h)
    raise ValueError(f"Invalid resolution format '{res}', expected WIDTHxHEIGHT")


class RenderConfig(BaseModel):
    resolution: str = "1080x1920"
    font_size: Optional[int] = Field(default=None, ge=8, le=400)  # None -> sized from text length
    font_color: str = "#FFFFFF"
    margin_v: int = Field(default=40, ge=0)
    default_text: str = DEFAULT_TEXT
    anchor: Literal["bottom", "center", "top"] = "center"
    caption_mode: Literal["ass", "drawtext"] = "ass"
    max_line_chars: int = Field(default=28, ge=1)
    response_mode: Literal["url", "stream", "base64"] = "url"
    jitter: bool = False
    fade_in: float = Field(default=0.0, ge=0.0, le=10.0)
    sharpen: bool = False
    blur: bool = False

    @field_validator("resolution")
    @classmethod
    def _check_resolution(cls, v: str) -> str:
        parse_resolution(v)
        return v.lower()

    @field_validator("font_color")
    @classmethod
    def _check_color(cls, v: str) -> str:
        h = v.strip().lstrip("#")
        if len(h) != 6:
            raise ValueError("font_color must be #RRGGBB")
        int(h, 16)
        return "#" + h.upper()

    @property
    def size(self) -> Tuple[int, int]:
        return parse_resolution(self.resolution)


def load_config(path: Path) -> RenderConfig:
    """Read the persisted config; a missing or broken file yields defaults."""
    path = Path(path)
    if not path.exists():
        return RenderConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return RenderConfig.model_validate(data)
    except (OSError, ValueError, ValidationError) as e:
        logger.warning("Config %s unreadable, using defaults: %s", path, e)
        return RenderConfig()


def save_config(config: RenderConfig, path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".json.tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(config.model_dump(), f, indent=2)
        os.replace(tmp_path, path)
    except Exception:
        try: os.remove(tmp_path)
        except OSError: pass
        raise
    logger.info("Saved render config to %s", path)


# ----------------- font resolution -----------------

class FontKind(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"
    MISSING = "missing"


@dataclass(frozen=True)
class FontChoice:
    kind: FontKind
    path: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.kind is not FontKind.MISSING


def resolve_font(caption_mode: str, settings: ServiceSettings) -> FontChoice:
    """Pick the font resource for this job.

    ASS rendering needs a fonts directory, drawtext needs a font file.
    """
    if caption_mode == "drawtext":
        candidates = (settings.font_file, settings.fallback_font_file)
        exists = os.path.isfile
    else:
        candidates = (settings.fonts_dir, settings.fallback_fonts_dir)
        exists = os.path.isdir

    primary, fallback = candidates
    if primary and exists(primary):
        choice = FontChoice(FontKind.PRIMARY, primary)
    elif fallback and exists(fallback):
        logger.warning("Primary font %s not found, using fallback %s", primary, fallback)
        choice = FontChoice(FontKind.FALLBACK, fallback)
    else:
        logger.warning("No font found (%s, %s); overlay will be skipped", primary, fallback)
        choice = FontChoice(FontKind.MISSING)
    logger.info("Font for %s overlay: %s %s", caption_mode, choice.kind.value, choice.path or "")
    return choice
