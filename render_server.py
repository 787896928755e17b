# render_server.py
"""
Vertical render server

Takes an uploaded (multipart) or remote (JSON) video, fits it onto a 1080x1920
canvas with ffmpeg (scale + black pad), burns in an optional text overlay and
returns the result.

Usage example (multipart):
  curl -F video=@in.mp4 -F text="Link in Bio" http://localhost:8000/render

Usage example (JSON):
{
  "videoUrl": "https://example.com/in.mp4",
  "text": "Link in Bio",
  "speed": 1.1,
  "response": "base64"
}

Requirements: ffmpeg on PATH (or FFMPEG_BIN), a font for the overlay (FONTS_DIR / FONT_FILE)
"""

import asyncio
import base64
import contextlib
import logging
import os
import random
import secrets
from html import escape as html_escape
from pathlib import Path
from typing import Optional

import requests
from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, ValidationError

from filter_chain import (
    JobState,
    RenderJob,
    build_audio_filters,
    build_video_filters,
    caption_stage,
    draw_jitter,
    drawtext_stage,
    effective_tempo,
    execute_render,
    remove_file_quietly,
)
from ffmpeg_runner import run_ffmpeg_async
from overlay_text import (
    CaptionStyle,
    OverlayRequest,
    build_caption_document,
    hex_to_ass_colour,
    prepare_for_caption,
    resolve_font_size,
    with_default,
    write_caption_file,
)
from render_config import (
    RenderConfig,
    ServiceSettings,
    load_config,
    save_config,
)
from render_config import resolve_font as resolve_font_choice
from render_errors import (
    AcquisitionError,
    InputError,
    ReadbackError,
    RenderServiceError,
)

load_dotenv()

# logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("render_server")

SETTINGS = ServiceSettings.from_env()

UPLOAD_CHUNK_SIZE = 1024 * 1024
DISCONNECT_POLL_SEC = 1.0
RESPONSE_MODES = ("url", "stream", "base64")

app = FastAPI(title="Vertical Render Server")


# ----------------- Request models -----------------
class RemoteRenderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    video_url: HttpUrl = Field(alias="videoUrl")
    text: Optional[str] = None
    speed: Optional[float] = Field(default=None, gt=0)
    response: Optional[str] = None


class RenderParams(BaseModel):
    text: Optional[str] = None
    speed: float = 1.0
    response: str = "url"


# ----------------- error envelope -----------------
@app.exception_handler(RenderServiceError)
async def render_error_handler(request: Request, exc: RenderServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# ----------------- input acquisition -----------------
async def save_upload(upload: UploadFile, dest: str) -> int:
    total = 0
    try:
        with open(dest, "wb") as f:
            while True:
                chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                f.write(chunk)
                total += len(chunk)
    except OSError as e:
        remove_file_quietly(dest)
        logger.exception("saving upload failed")
        raise AcquisitionError("Failed to save upload", details=str(e))
    if total == 0:
        remove_file_quietly(dest)
        raise InputError("Uploaded video is empty (field 'video').")
    logger.info("saved upload %s (%d bytes) -> %s", upload.filename, total, dest)
    return total


def _looks_like_html(first_bytes: bytes) -> bool:
    s = first_bytes.lstrip().lower()
    return s.startswith(b"<!doctype html") or s.startswith(b"<html") or b"<head" in s[:2000]


def download_video(url: str, dest: str, timeout: int, max_bytes: int) -> int:
    """Stream a remote video to dest. Runs in a worker thread."""
    total = 0
    try:
        with requests.get(url, stream=True, timeout=timeout, allow_redirects=True) as r:
            r.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in r.iter_content(chunk_size=UPLOAD_CHUNK_SIZE):
                    if not chunk:
                        continue
                    if total == 0 and _looks_like_html(chunk[:4096]):
                        raise AcquisitionError("Downloaded HTML instead of media", details=url)
                    total += len(chunk)
                    if total > max_bytes:
                        raise AcquisitionError("Remote video too large", details=f"limit {max_bytes} bytes")
                    f.write(chunk)
    except AcquisitionError:
        remove_file_quietly(dest)
        raise
    except (requests.RequestException, OSError) as e:
        remove_file_quietly(dest)
        logger.error("download failed for %s: %s", url, e)
        raise AcquisitionError("Download failed", details=str(e))
    if total == 0:
        remove_file_quietly(dest)
        raise AcquisitionError("Downloaded file is empty", details=url)
    logger.info("downloaded %s (%d bytes) -> %s", url, total, dest)
    return total


def _parse_speed(raw) -> float:
    if raw is None or raw == "":
        return 1.0
    try:
        speed = float(raw)
    except (TypeError, ValueError):
        raise InputError(f"Invalid speed '{raw}'")
    if speed <= 0:
        raise InputError("speed must be > 0")
    return speed


def _parse_response_mode(raw, config: RenderConfig) -> str:
    mode = (raw if isinstance(raw, str) and raw else config.response_mode).strip().lower()
    if mode not in RESPONSE_MODES:
        raise InputError(f"Invalid response mode '{raw}', expected one of {', '.join(RESPONSE_MODES)}")
    return mode


async def read_render_request(request: Request, job: RenderJob, config: RenderConfig) -> RenderParams:
    """Validate the request and put the source video at job.input_path."""
    content_type = request.headers.get("content-type", "")
    loop = asyncio.get_event_loop()

    if content_type.startswith("application/json"):
        try:
            body = RemoteRenderRequest.model_validate(await request.json())
        except (ValidationError, ValueError) as e:
            raise InputError("JSON body must contain a valid 'videoUrl'.", details=str(e))
        params = RenderParams(
            text=body.text,
            speed=_parse_speed(body.speed),
            response=_parse_response_mode(body.response, config),
        )
        job.input_path = os.path.join(str(SETTINGS.upload_dir), f"in_{job.job_id}")
        await loop.run_in_executor(
            None, download_video, str(body.video_url), job.input_path,
            SETTINGS.download_timeout, SETTINGS.max_download_bytes,
        )
        return params

    form = await request.form()
    upload = form.get("video")
    if upload is None or isinstance(upload, str) or not getattr(upload, "filename", None):
        raise InputError("No video file uploaded (field 'video').")
    text = form.get("text")
    params = RenderParams(
        text=text if isinstance(text, str) else None,
        speed=_parse_speed(form.get("speed")),
        response=_parse_response_mode(form.get("response"), config),
    )
    suffix = Path(upload.filename).suffix[:8]
    job.input_path = os.path.join(str(SETTINGS.upload_dir), f"in_{job.job_id}{suffix}")
    await save_upload(upload, job.input_path)
    return params


# ----------------- pipeline -----------------
def compose_job(job: RenderJob, config: RenderConfig, text: Optional[str], speed: float,
                rng: Optional[random.Random] = None) -> None:
    """Build the overlay for this job and set its filter lists."""
    overlay_req = OverlayRequest(
        source_text=text if text and text.strip() else config.default_text,
        max_line_chars=config.max_line_chars,
        target_font_size=config.font_size,
    )
    font_size = resolve_font_size(overlay_req)
    font = resolve_font_choice(config.caption_mode, SETTINGS)

    overlay = None
    if not font.available:
        logger.warning("job %s: rendering without overlay (no font)", job.job_id)
    elif config.caption_mode == "drawtext":
        overlay = drawtext_stage(
            with_default(overlay_req.source_text), font.path, font_size,
            color=config.font_color, anchor=config.anchor, offset=config.margin_v,
        )
    else:
        style = CaptionStyle(
            font_size=font_size,
            primary_colour=hex_to_ass_colour(config.font_color),
            anchor=config.anchor,
            margin_v=config.margin_v,
        )
        document = build_caption_document(
            prepare_for_caption(overlay_req.source_text, overlay_req.max_line_chars),
            style, job.width, job.height,
        )
        job.caption_path = write_caption_file(document, SETTINGS.caption_dir, job.job_id)
        overlay = caption_stage(job.caption_path, font.path)

    jitter = draw_jitter(rng or random.Random()) if config.jitter else None
    tempo = effective_tempo(speed, jitter)
    job.compose(
        build_video_filters(
            job.width, job.height, overlay=overlay, jitter=jitter, speed=tempo,
            fade_in=config.fade_in, sharpen=config.sharpen, blur=config.blur,
        ),
        build_audio_filters(tempo),
    )


async def render_until_disconnect(request: Request, job: RenderJob) -> None:
    """Run ffmpeg; terminate it if the client goes away first."""
    task = asyncio.ensure_future(execute_render(
        job, runner=run_ffmpeg_async, ffmpeg_bin=SETTINGS.ffmpeg_bin,
        timeout=SETTINGS.ffmpeg_timeout,
    ))
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SEC)
            if done:
                task.result()
                return
            if await request.is_disconnected():
                logger.warning("client disconnected; aborting job %s", job.job_id)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                raise HTTPException(status_code=499, detail="client disconnected")
    finally:
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


def _check_output(job: RenderJob) -> None:
    try:
        size = os.path.getsize(job.output_path)
    except OSError as e:
        raise ReadbackError("Render reported success but output is missing", details=str(e))
    if size == 0:
        raise ReadbackError("Render reported success but output is empty")


# ----------------- API endpoints -----------------
@app.post("/render")
async def render_endpoint(request: Request, background: BackgroundTasks):
    config = load_config(SETTINGS.config_path)
    SETTINGS.ensure_dirs()
    width, height = config.size
    job = RenderJob.create(SETTINGS.render_dir, width=width, height=height)

    try:
        params = await read_render_request(request, job, config)
        job.keep_output = params.response == "url"
        job.advance(JobState.INPUT_ACQUIRED)

        compose_job(job, config, params.text, params.speed)
        await render_until_disconnect(request, job)
        _check_output(job)

        if params.response == "url":
            url = str(request.url_for("get_render", name=job.file_name))
            return {"success": True, "url": url, "width": job.width, "height": job.height}

        if params.response == "base64":
            try:
                with open(job.output_path, "rb") as f:
                    data = f.read()
            except OSError as e:
                raise ReadbackError("Could not read rendered output", details=str(e))
            return {
                "status": "done",
                "fileBase64": base64.b64encode(data).decode("ascii"),
                "mimeType": "video/mp4",
            }

        # stream: the output is removed once the response has been sent
        job.keep_output = True
        background.add_task(remove_file_quietly, job.output_path)
        return FileResponse(job.output_path, media_type="video/mp4", filename=job.file_name)
    except RenderServiceError as e:
        job.keep_output = False
        logger.error("job %s failed in state %s: %s", job.job_id, job.state.value, e.message)
        raise
    except HTTPException:
        job.keep_output = False
        raise
    except Exception as e:
        job.keep_output = False
        logger.exception("job %s failed unexpectedly", job.job_id)
        raise RenderServiceError("Unexpected server error", details=str(e))
    finally:
        job.cleanup()


@app.get("/renders/{name}", name="get_render")
async def get_render(name: str):
    if name != os.path.basename(name) or not name.startswith("out_"):
        raise HTTPException(status_code=404, detail="not found")
    path = os.path.join(str(SETTINGS.render_dir), name)
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="not found")
    return FileResponse(path, media_type="video/mp4")


# ----------------- admin -----------------
def _check_token(token: Optional[str]) -> None:
    if not SETTINGS.admin_password:
        raise HTTPException(status_code=503, detail="ADMIN_PASSWORD not configured")
    if not token or not secrets.compare_digest(token.encode(), SETTINGS.admin_password.encode()):
        raise HTTPException(status_code=403, detail="invalid token")


def render_admin_page(config: RenderConfig, token: str, message: str = "") -> str:
    font_size = "auto" if config.font_size is None else str(config.font_size)

    def row(label, name, value):
        return (f'<label>{label} <input name="{name}" value="{html_escape(str(value))}"></label><br>')

    def select(label, name, value, options):
        opts = "".join(
            f'<option{" selected" if o == value else ""}>{o}</option>' for o in options
        )
        return f'<label>{label} <select name="{name}">{opts}</select></label><br>'

    def checkbox(label, name, value):
        return f'<label>{label} <input type="checkbox" name="{name}"{" checked" if value else ""}></label><br>'

    return "\n".join([
        "<!doctype html><html><head><title>Render settings</title></head><body>",
        "<h1>Render settings</h1>",
        f"<p>{html_escape(message)}</p>" if message else "",
        '<form method="post" action="/admin">',
        f'<input type="hidden" name="token" value="{html_escape(token)}">',
        row("Resolution", "resolution", config.resolution),
        row("Font size (number or auto)", "font_size", font_size),
        row("Font color", "font_color", config.font_color),
        row("Vertical offset", "margin_v", config.margin_v),
        row("Default text", "default_text", config.default_text),
        row("Max chars per line", "max_line_chars", config.max_line_chars),
        select("Anchor", "anchor", config.anchor, ("bottom", "center", "top")),
        select("Caption mode", "caption_mode", config.caption_mode, ("ass", "drawtext")),
        select("Response", "response_mode", config.response_mode, RESPONSE_MODES),
        row("Fade in (s)", "fade_in", config.fade_in),
        checkbox("Jitter", "jitter", config.jitter),
        checkbox("Sharpen", "sharpen", config.sharpen),
        checkbox("Blur", "blur", config.blur),
        '<button type="submit">Save</button>',
        "</form></body></html>",
    ])


@app.get("/admin", response_class=HTMLResponse)
async def admin_page(token: Optional[str] = None):
    _check_token(token)
    return HTMLResponse(render_admin_page(load_config(SETTINGS.config_path), token))


@app.post("/admin", response_class=HTMLResponse)
async def admin_save(request: Request):
    form = await request.form()
    token = form.get("token") or request.query_params.get("token")
    _check_token(token)

    data = {k: v for k, v in form.items() if k != "token" and isinstance(v, str)}
    if "font_size" in data and data["font_size"].strip().lower() in ("", "auto"):
        data["font_size"] = None
    for flag in ("jitter", "sharpen", "blur"):
        data[flag] = flag in form
    merged = {**load_config(SETTINGS.config_path).model_dump(), **data}
    try:
        config = RenderConfig.model_validate(merged)
    except ValidationError as e:
        logger.warning("rejected admin config update: %s", e)
        page = render_admin_page(load_config(SETTINGS.config_path), token, f"Invalid settings: {e}")
        return HTMLResponse(page, status_code=400)
    save_config(config, SETTINGS.config_path)
    return HTMLResponse(render_admin_page(config, token, "Saved."))


@app.get("/health")
async def health():
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
