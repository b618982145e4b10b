"""
Segment export: trim a decrypted recording to a [start, end) window and
transcode it for upload, using ffmpeg.
Tiny windows and the whole-recording sentinel pass through untouched.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional

from ..exceptions import ExportError

logger = logging.getLogger(__name__)

MIN_EXPORT_SECONDS = 2.0


async def _run(args: List[str], timeout: float) -> tuple:
    """Run a subprocess from an argument array; returns (returncode, stdout, stderr)."""
    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except BaseException:
        # timeout or cancellation: don't leave ffmpeg running
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return proc.returncode, stdout.decode(errors='replace'), stderr.decode(errors='replace')


class SegmentExporter:
    """Produces the audio artifact for one segment window."""

    def __init__(self,
                 temp_file_factory: Callable[[str, str], Path],
                 ffmpeg_path: str = "ffmpeg",
                 ffprobe_path: str = "ffprobe",
                 container: str = "m4a",
                 codec: str = "aac",
                 bitrate: str = "96k",
                 min_duration_seconds: float = MIN_EXPORT_SECONDS,
                 timeout_seconds: float = 300):
        """
        Args:
            temp_file_factory: ``(prefix, suffix) -> Path`` reserving a private temp file
            container: Output container/extension, also the upload MIME subtype
            min_duration_seconds: Windows shorter than this are not trimmed
        """
        self.temp_file_factory = temp_file_factory
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.container = container
        self.codec = codec
        self.bitrate = bitrate
        self.min_duration_seconds = min_duration_seconds
        self.timeout_seconds = timeout_seconds

    def needs_export(self, start_time: float, end_time: float) -> bool:
        if start_time == 0 and end_time == 0:
            return False
        return (end_time - start_time) >= self.min_duration_seconds

    async def export(self, source: Path, start_time: float, end_time: float) -> Path:
        """Return an artifact covering exactly ``[start_time, end_time)`` of ``source``.

        Returns ``source`` itself when no trimming is needed. Otherwise the
        caller owns the returned temp file and must remove it.

        Raises:
            ExportError: source unplayable or transcode failed
        """
        source = Path(source)
        if not self.needs_export(start_time, end_time):
            logger.debug(f"Export passthrough for window [{start_time}, {end_time})")
            return source

        if not source.is_file():
            raise ExportError(f"Source audio missing: {source.name}")

        output = self.temp_file_factory("trimmed", f".{self.container}")
        duration = end_time - start_time
        args = [
            self.ffmpeg_path,
            "-y",
            "-v", "error",
            "-i", str(source),
            "-ss", f"{start_time:.3f}",
            "-t", f"{duration:.3f}",
            "-vn",
            "-c:a", self.codec,
            "-b:a", self.bitrate,
            str(output),
        ]

        try:
            returncode, _, stderr = await _run(args, timeout=self.timeout_seconds)
        except FileNotFoundError as e:
            output.unlink(missing_ok=True)
            raise ExportError(f"ffmpeg not found: {self.ffmpeg_path}") from e
        except asyncio.TimeoutError as e:
            output.unlink(missing_ok=True)
            raise ExportError(f"ffmpeg timed out after {self.timeout_seconds}s") from e
        except asyncio.CancelledError:
            output.unlink(missing_ok=True)
            raise
        except OSError as e:
            output.unlink(missing_ok=True)
            raise ExportError(f"ffmpeg could not start: {e}") from e

        if returncode != 0:
            output.unlink(missing_ok=True)
            raise ExportError(f"ffmpeg failed (rc={returncode}): {stderr[:300]}")

        if not output.exists() or output.stat().st_size == 0:
            output.unlink(missing_ok=True)
            raise ExportError("ffmpeg produced no output")

        logger.info(f"Exported window [{start_time:.1f}, {end_time:.1f}) -> {output.name}")
        return output

    async def probe_duration(self, path: Path) -> float:
        """Get audio duration in seconds using ffprobe (0.0 when unknown)."""
        args = [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        try:
            returncode, stdout, _ = await _run(args, timeout=30)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"ffprobe unavailable: {e}")
            return 0.0

        if returncode != 0:
            return 0.0
        try:
            return float(stdout.strip())
        except ValueError:
            return 0.0

    @property
    def content_type(self) -> str:
        return f"audio/{self.container}"

    def content_type_for(self, path: Path) -> str:
        """MIME type for uploading ``path``; passthrough files keep the recording's format."""
        subtype = Path(path).suffix.lstrip(".").lower() or self.container
        return f"audio/{subtype}"


def build_segment_windows(duration: float, segment_seconds: Optional[float]) -> List[tuple]:
    """Split ``[0, duration)`` into consecutive windows.

    With no segment length (or a non-positive duration) the recording is a
    single window; an unknown duration yields the whole-recording sentinel.
    """
    if duration <= 0:
        return [(0.0, 0.0)]
    if not segment_seconds or segment_seconds <= 0 or segment_seconds >= duration:
        return [(0.0, float(duration))]

    windows = []
    start = 0.0
    while start < duration:
        end = min(start + segment_seconds, duration)
        windows.append((start, end))
        start = end
    return windows
