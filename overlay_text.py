# overlay_text.py
"""
Overlay text preparation.

Turns user text into either
 - an ASS caption document (one style, one dialogue event) for the `subtitles` filter, or
 - an escaped literal for the `drawtext` filter.
"""

import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from render_config import DEFAULT_TEXT

logger = logging.getLogger("overlay_text")

ASS_LINE_BREAK = "\\N"
# far enough in the future to cover any upload
EVENT_END_SECONDS = 9 * 3600 + 59 * 60 + 59

ANCHOR_CODES = {"bottom": 2, "center": 5, "top": 8}

# (max text length, font size)
FONT_SIZE_STEPS = ((35, 72), (60, 64), (90, 56), (120, 48))
MIN_FONT_SIZE = 40


@dataclass
class OverlayRequest:
    source_text: str
    max_line_chars: Optional[int] = None
    target_font_size: Optional[int] = None  # None -> choose_font_size


@dataclass
class CaptionStyle:
    font_name: str = "DejaVu Sans"
    font_size: int = 48
    primary_colour: str = "&H00FFFFFF"
    secondary_colour: str = "&H000000FF"
    outline_colour: str = "&H7F000000"
    back_colour: str = "&H7F000000"
    bold: bool = True
    anchor: str = "center"
    margin_l: int = 40
    margin_r: int = 40
    margin_v: int = 40
    outline: int = 3
    shadow: int = 0

    @property
    def alignment(self) -> int:
        return ANCHOR_CODES.get(self.anchor, 5)


def with_default(text: Optional[str]) -> str:
    text = (text or "").strip()
    return text if text else DEFAULT_TEXT


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


# ----------------- wrapping -----------------

def wrap_lines(text: str, max_chars: int) -> List[str]:
    """Greedy word wrap. A word longer than max_chars gets a line of its own."""
    lines: List[str] = []
    current = ""
    for word in text.split():
        if not current:
            current = word
        elif len(current) + 1 + len(word) <= max_chars:
            current = f"{current} {word}"
        else:
            lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def wrap(text: str, max_chars: int) -> str:
    return ASS_LINE_BREAK.join(wrap_lines(text, max_chars))


# ----------------- escaping -----------------

def escape_ass_text(text: str) -> str:
    # backslash first so the escapes added below are not doubled
    return text.replace("\\", "\\\\").replace("{", "\\{").replace("}", "\\}")


def prepare_for_caption(text: Optional[str], max_line_chars: Optional[int] = None) -> str:
    """Escape (and optionally wrap) text for an ASS dialogue line.

    Embedded line breaks are kept as explicit breaks; with max_line_chars set each
    of those lines is additionally word-wrapped.
    """
    text = _normalize_newlines(with_default(text))
    lines: List[str] = []
    for paragraph in text.split("\n"):
        if max_line_chars and max_line_chars > 0:
            lines.extend(wrap_lines(paragraph, max_line_chars) or [""])
        else:
            lines.append(paragraph)
    return ASS_LINE_BREAK.join(escape_ass_text(line) for line in lines)


def prepare_for_direct_draw(text: Optional[str]) -> str:
    text = with_default(text)
    out = []
    for ch in text:
        if ch in "\\:'\"":
            out.append("\\")
        out.append(ch)
    return "".join(out)


# ----------------- font sizing -----------------

def choose_font_size(text: str) -> int:
    n = len(text)
    for limit, size in FONT_SIZE_STEPS:
        if n <= limit:
            return size
    return MIN_FONT_SIZE


def resolve_font_size(req: OverlayRequest) -> int:
    if req.target_font_size:
        return int(req.target_font_size)
    return choose_font_size(with_default(req.source_text))


# ----------------- ASS document -----------------

def seconds_to_ass_time(s: float) -> str:
    if s < 0: s = 0.0
    h = int(s // 3600)
    m = int((s % 3600) // 60)
    sec = int(s % 60)
    cs = int(round((s - math.floor(s)) * 100))
    return f"{h}:{m:02d}:{sec:02d}.{cs:02d}"


def hex_to_ass_colour(hex_color: str, alpha: int = 0) -> str:
    """'#RRGGBB' -> '&HAABBGGRR' (ASS stores blue first, alpha 00 = opaque)."""
    h = hex_color.strip().lstrip("#")
    if len(h) != 6:
        raise ValueError(f"expected #RRGGBB, got {hex_color!r}")
    r, g, b = h[0:2], h[2:4], h[4:6]
    return f"&H{alpha:02X}{b}{g}{r}".upper()


def build_caption_document(prepared_text: str, style: CaptionStyle,
                           width: int = 1080, height: int = 1920) -> str:
    """ASS document with exactly one style and one event spanning the whole video.

    prepared_text must already have gone through prepare_for_caption.
    """
    bold = -1 if style.bold else 0
    lines = [
        "[Script Info]",
        "ScriptType: v4.00+",
        f"PlayResX: {width}",
        f"PlayResY: {height}",
        "WrapStyle: 2",
        "ScaledBorderAndShadow: yes",
        "YCbCr Matrix: TV.709",
        "",
        "[V4+ Styles]",
        "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding",
        f"Style: Caption,{style.font_name},{style.font_size},{style.primary_colour},{style.secondary_colour},"
        f"{style.outline_colour},{style.back_colour},{bold},0,0,0,100,100,0,0,1,{style.outline},{style.shadow},"
        f"{style.alignment},{style.margin_l},{style.margin_r},{style.margin_v},1",
        "",
        "[Events]",
        "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text",
        f"Dialogue: 0,{seconds_to_ass_time(0)},{seconds_to_ass_time(EVENT_END_SECONDS)},Caption,,"
        f"0,0,{style.margin_v},,"
        f"{{\\an{style.alignment}\\bord{style.outline}\\shad{style.shadow}}}{prepared_text}",
    ]
    return "\n".join(lines) + "\n"


def write_caption_file(document: str, directory: Path, job_id: str) -> str:
    path = os.path.join(str(directory), f"ov_{job_id}.ass")
    with open(path, "w", encoding="utf-8") as f:
        f.write(document)
    logger.info("Wrote ASS file: %s", path)
    return path
