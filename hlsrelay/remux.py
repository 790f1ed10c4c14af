"""Join decrypted transport-stream segments into one output file.

Every engine exposes ``remux(segment_paths, output_path) -> output_path``, so
the orchestrator does not care whether ffmpeg or a plain byte concatenation
does the work.
"""

import logging
import os
import shutil
import subprocess
from typing import List, Sequence

from hlsrelay.errors import RemuxFailure

LOG = logging.getLogger(__name__)


def _creation_flags() -> int:
    return subprocess.CREATE_NO_WINDOW if hasattr(subprocess, 'CREATE_NO_WINDOW') else 0


def _check_output(path: str) -> str:
    try:
        size = os.path.getsize(path)
    except OSError as e:
        raise RemuxFailure(f"Remuxer produced no output: {e}") from e
    if size == 0:
        raise RemuxFailure("Generated output file is empty")
    return path


class ConcatRemuxer:
    """Byte-level concatenation. MPEG-TS segments are self-delimiting, so the
    result is a playable .ts without any external tool."""

    extension = ".ts"

    def available(self) -> bool:
        return True

    def remux(self, segment_paths: Sequence[str], output_path: str) -> str:
        if not segment_paths:
            raise RemuxFailure("No segments to remux")
        try:
            with open(output_path, "wb") as out:
                for path in segment_paths:
                    with open(path, "rb") as f:
                        shutil.copyfileobj(f, out, 1024 * 1024)
        except OSError as e:
            raise RemuxFailure(f"Concatenation failed: {e}") from e
        return _check_output(output_path)


class FFmpegRemuxer:
    """ffmpeg concat demuxer: stream copy first, full re-encode if copy is rejected."""

    extension = ".mp4"

    COPY_ARGS = ["-c", "copy", "-bsf:a", "aac_adtstoasc", "-movflags", "+faststart"]
    REENCODE_ARGS = ["-c:v", "libx264", "-c:a", "aac", "-preset", "fast", "-crf", "23"]

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 3600):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.ffmpeg_path) is not None

    @staticmethod
    def write_concat_list(segment_paths: Sequence[str], list_path: str) -> str:
        lines = []
        for path in segment_paths:
            escaped = os.path.abspath(path).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        with open(list_path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines))
        return list_path

    def _run(self, list_path: str, output_path: str, codec_args: List[str]) -> bool:
        cmd = [
            self.ffmpeg_path,
            "-hide_banner", "-loglevel", "error", "-y",
            "-f", "concat",
            "-safe", "0",
            "-i", list_path,
            *codec_args,
            output_path,
        ]
        LOG.debug("Running %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                creationflags=_creation_flags(),
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            LOG.warning("ffmpeg failed to run: %s", e)
            return False
        if proc.returncode != 0:
            LOG.warning("ffmpeg exited with %s: %s", proc.returncode, (proc.stderr or "").strip()[-500:])
            return False
        return os.path.exists(output_path) and os.path.getsize(output_path) > 0

    def remux(self, segment_paths: Sequence[str], output_path: str) -> str:
        if not segment_paths:
            raise RemuxFailure("No segments to remux")
        if not self.available():
            raise RemuxFailure("ffmpeg not found in PATH. Remuxing impossible.")

        list_path = os.path.join(os.path.dirname(os.path.abspath(segment_paths[0])), "input.txt")
        self.write_concat_list(segment_paths, list_path)

        LOG.info("Converting %d decrypted segments to %s", len(segment_paths), os.path.basename(output_path))
        if self._run(list_path, output_path, self.COPY_ARGS):
            return _check_output(output_path)

        LOG.warning("Stream copy failed, trying re-encode...")
        if self._run(list_path, output_path, self.REENCODE_ARGS):
            LOG.info("Re-encode conversion completed")
            return _check_output(output_path)

        raise RemuxFailure("ffmpeg rejected both stream copy and re-encode")


def get_remuxer(config: dict):
    engine = str(config.get("remux_engine") or "ffmpeg").lower()
    if engine == "concat":
        return ConcatRemuxer()
    if engine == "ffmpeg":
        return FFmpegRemuxer()
    raise ValueError(f"Unknown remux engine: {engine}")
