import logging
import os
import shutil
import subprocess
import threading
import time
from collections import deque
from pathlib import Path

from . import config
from .errors import EngineError, JobCancelled

logger = logging.getLogger("video-combine.engine")

FFMPEG_CANDIDATES = [
    "/opt/bin/ffmpeg",
    "/opt/ffmpeg",
    "/usr/bin/ffmpeg",
    "/usr/local/bin/ffmpeg",
]
FFPROBE_CANDIDATES = [
    "/opt/bin/ffprobe",
    "/opt/ffprobe",
    "/usr/bin/ffprobe",
    "/usr/local/bin/ffprobe",
]

OUTPUT_TAIL_LINES = 40
POLL_INTERVAL_SECONDS = 0.2


def _find_binary(configured: str | None, candidates: list[str], name: str) -> str | None:
    if configured:
        return configured
    for p in candidates:
        if os.path.isfile(p) and os.access(p, os.X_OK):
            return p
    return shutil.which(name)


def find_ffmpeg() -> str | None:
    return _find_binary(config.FFMPEG_PATH, FFMPEG_CANDIDATES, "ffmpeg")


def find_ffprobe() -> str | None:
    """Find ffprobe binary alongside ffmpeg layer if available."""
    return _find_binary(config.FFPROBE_PATH, FFPROBE_CANDIDATES, "ffprobe")


def format_command(cmd: list[str]) -> str:
    text = " ".join(cmd)
    if len(text) > 4000:
        return f"{text[:4000]}... [truncated]"
    return text


class EngineRunner:
    """Runs one ffmpeg invocation at a time with a timeout and a cancel switch."""

    def __init__(self, ffmpeg_path: str | None = None, timeout_seconds: int | None = None):
        self.ffmpeg_path = ffmpeg_path or find_ffmpeg()
        self.timeout_seconds = timeout_seconds or config.FFMPEG_TIMEOUT_SECONDS

    def build_command(self, inputs: list[list[str]], output_args: list[str], output_path: Path) -> list[str]:
        if not self.ffmpeg_path:
            raise EngineError("FFmpeg not available")
        cmd = [self.ffmpeg_path, "-y", "-hide_banner", "-nostdin"]
        for input_args in inputs:
            cmd += input_args
        cmd += output_args
        cmd.append(str(output_path))
        return cmd

    def run(
        self,
        inputs: list[list[str]],
        output_args: list[str],
        output_path: Path,
        cancel_event: threading.Event | None = None,
    ) -> Path:
        cmd = self.build_command(inputs, output_args, output_path)
        logger.info("FFmpeg command: %s", format_command(cmd))
        self.execute(cmd, cancel_event)
        return output_path

    def execute(self, cmd: list[str], cancel_event: threading.Event | None = None) -> None:
        tail: deque[str] = deque(maxlen=200)
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            raise EngineError(f"Failed to execute FFmpeg: {exc}") from exc

        def _drain() -> None:
            assert process.stderr is not None
            for line in process.stderr:
                line = line.rstrip()
                if line:
                    tail.append(line)

        reader = threading.Thread(target=_drain, daemon=True)
        reader.start()

        deadline = time.monotonic() + self.timeout_seconds
        timed_out = False
        cancelled = False
        while process.poll() is None:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                process.kill()
                break
            if time.monotonic() > deadline:
                timed_out = True
                process.kill()
                break
            time.sleep(POLL_INTERVAL_SECONDS)
        process.wait()
        reader.join(timeout=5)

        tail_text = "\n".join(list(tail)[-OUTPUT_TAIL_LINES:])
        if cancelled:
            raise JobCancelled("render cancelled")
        if timed_out:
            raise EngineError(
                f"FFmpeg timed out after {self.timeout_seconds}s",
                stderr_tail=tail_text,
                returncode=process.returncode,
            )
        if process.returncode != 0:
            raise EngineError(
                f"FFmpeg failed (code {process.returncode}): {tail_text}",
                stderr_tail=tail_text,
                returncode=process.returncode,
            )
        if tail_text:
            logger.debug("FFmpeg output (tail): %s", tail_text)
