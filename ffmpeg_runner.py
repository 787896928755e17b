# ffmpeg_runner.py
"""Run ffmpeg/ffprobe as child processes with timeout and cancellation handling."""

import asyncio
import contextlib
import json
import logging
import os
import shlex
import subprocess
import time
from typing import List, Optional, Tuple

logger = logging.getLogger("ffmpeg_runner")

KILL_GRACE_SEC = 5.0


async def _stop(process: asyncio.subprocess.Process, grace: float = KILL_GRACE_SEC) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.error("PID=%s did not exit in %.1fs; killing", process.pid, grace)
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


async def run_ffmpeg_async(args: List[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    """
    Spawn the command and wait for it.

    Raises CalledProcessError on non-zero exit (stderr attached), TimeoutExpired when
    `timeout` elapses and FileNotFoundError when the binary is missing. The child is
    terminated on timeout and when the awaiting task is cancelled.
    """
    base = os.path.basename(str(args[0])) if args else "ffmpeg"
    logger.debug("Run command: %s", " ".join(shlex.quote(str(c)) for c in args))

    t0 = time.monotonic()
    process = await asyncio.create_subprocess_exec(
        *[str(a) for a in args],
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    logger.debug("Spawned PID=%s for %s", process.pid, base)

    try:
        if timeout is not None and timeout > 0:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        else:
            stdout, stderr = await process.communicate()
    except asyncio.TimeoutError:
        logger.error("%s timed out after %.1fs (PID=%s); terminating", base, timeout, process.pid)
        await _stop(process)
        raise subprocess.TimeoutExpired(args, timeout)
    except asyncio.CancelledError:
        logger.warning("Cancelled while running %s (PID=%s); terminating", base, process.pid)
        await asyncio.shield(_stop(process, grace=3.0))
        raise

    out = stdout.decode(errors="ignore")
    err = stderr.decode(errors="ignore")
    rc = process.returncode if process.returncode is not None else 0
    logger.debug("%s finished rc=%s in %.2fs", base, rc, time.monotonic() - t0)

    if rc != 0:
        raise subprocess.CalledProcessError(rc, args, output=out, stderr=err)
    return subprocess.CompletedProcess(args, rc, out, err)


async def probe_dimensions(path: str, ffprobe_bin: str = "ffprobe") -> Tuple[int, int]:
    """Width and height of the first video stream."""
    cp = await run_ffmpeg_async([
        ffprobe_bin, "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=width,height",
        "-of", "json", path,
    ], timeout=30)
    streams = json.loads(cp.stdout or "{}").get("streams") or []
    if not streams:
        raise ValueError(f"no video stream in {path}")
    return int(streams[0]["width"]), int(streams[0]["height"])
