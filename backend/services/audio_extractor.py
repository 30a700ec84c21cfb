"""
Audio Extraction Service

Extracts the audio track of a YouTube video as MP3 into a reserved
artifact path. Two strategies are available, selected by EXTRACTION_METHOD:

- ``process``: runs the yt-dlp command-line program as a subprocess
- ``library``: drives the embedded yt_dlp package in a worker thread

Both use FFmpeg (through yt-dlp's FFmpegExtractAudio post-processor) for the
MP3 conversion.
"""

import asyncio
import json
import os
import shutil
import signal
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
import yt_dlp
from yt_dlp.utils import DownloadError

from backend.config import settings
from backend.errors import (
    ErrorCode,
    ExtractionError,
    classify_extraction_error,
    error_from_exception,
)
from backend.services.artifact_store import ArtifactReservation

logger = structlog.get_logger()

ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
AUDIO_FORMAT = "bestaudio/best"
READ_CHUNK_SIZE = 64 * 1024


@dataclass
class AudioMetadata:
    """Display metadata for a video."""
    title: str
    duration: Optional[int] = None
    channel: Optional[str] = None

    @classmethod
    def fallback(cls, video_id: str) -> "AudioMetadata":
        return cls(title=f"YouTube Audio {video_id}")

    @classmethod
    def from_info(cls, info: Dict[str, Any], video_id: str) -> "AudioMetadata":
        duration = info.get("duration")
        return cls(
            title=info.get("title") or f"YouTube Audio {video_id}",
            duration=int(duration) if duration is not None else None,
            channel=info.get("channel") or info.get("uploader"),
        )


class OutputLimitExceeded(Exception):
    """Raised when a subprocess writes more output than allowed"""
    pass


class _OutputBudget:
    """Combined stdout+stderr byte budget shared by both pipe readers."""

    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0

    def consume(self, size: int) -> None:
        self.used += size
        if self.used > self.limit:
            raise OutputLimitExceeded(
                f"yt-dlp output exceeded {self.limit // (1024 * 1024)}MB buffer limit"
            )


class AudioExtractor(ABC):
    """
    Base class for MP3 extraction strategies.

    Subclasses implement ``_run_extraction`` and ``_fetch_info``; this class
    adds the wall-clock timeout, output verification, error classification
    and the best-effort metadata fallback.

    Example:
        >>> extractor = get_audio_extractor()
        >>> reservation = store.put("dQw4w9WgXcQ")
        >>> path = await extractor.extract(url, reservation)
        >>> meta = await extractor.fetch_metadata(url, "dQw4w9WgXcQ")
    """

    method = "base"

    def __init__(
        self,
        timeout_seconds: float = 60.0,
        metadata_timeout_seconds: float = 10.0,
        audio_quality: str = "192",
        ffmpeg_path: Optional[str] = None,
        cookies_file: Optional[str] = None,
        user_agent: str = settings.USER_AGENT,
        accept_language: str = settings.ACCEPT_LANGUAGE,
    ):
        self.timeout_seconds = timeout_seconds
        self.metadata_timeout_seconds = metadata_timeout_seconds
        self.audio_quality = audio_quality
        self.ffmpeg_path = ffmpeg_path
        self.cookies_file = cookies_file
        self.user_agent = user_agent
        self.accept_language = accept_language
        self._check_ffmpeg()

    def _check_ffmpeg(self) -> None:
        """
        Check if FFmpeg is available for the MP3 post-processor.

        Sets self.ffmpeg_available flag instead of raising error; yt-dlp
        reports the missing binary itself when a conversion is attempted.
        """
        self.ffmpeg_available = False

        if self.ffmpeg_path:
            if Path(self.ffmpeg_path).exists():
                self.ffmpeg_available = True
                logger.info("ffmpeg_found_at_custom_path", path=self.ffmpeg_path)
                return

        ffmpeg_cmd = shutil.which("ffmpeg")
        ffprobe_cmd = shutil.which("ffprobe")

        if ffmpeg_cmd and ffprobe_cmd:
            self.ffmpeg_available = True
            logger.info("ffmpeg_found_in_path", ffmpeg=ffmpeg_cmd, ffprobe=ffprobe_cmd)
        else:
            logger.warning(
                "ffmpeg_not_found",
                message="FFmpeg not found. MP3 extraction will fail until FFmpeg is installed."
            )

    def http_headers(self) -> Dict[str, str]:
        """Browser-like request headers, reduces upstream blocking."""
        return {
            "User-Agent": self.user_agent,
            "Accept-Language": self.accept_language,
            "Accept": ACCEPT_HEADER,
        }

    async def extract(self, url: str, reservation: ArtifactReservation) -> Path:
        """
        Extract audio from a YouTube URL into ``reservation.path``.

        Partial files are left in place; the caller discards the reservation
        on failure.

        Returns:
            Path to the verified, non-empty MP3

        Raises:
            ExtractionError: On timeout, upstream failure or missing output
        """
        logger.info(
            "audio_extraction_started",
            url=url[:100],
            video_id=reservation.video_id,
            file_key=reservation.file_key,
            method=self.method
        )
        started = time.monotonic()

        try:
            await asyncio.wait_for(
                self._run_extraction(url, reservation),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise ExtractionError(
                ErrorCode.TIMEOUT,
                f"Extraction did not finish within {self.timeout_seconds:g} seconds"
            ) from e
        except ExtractionError:
            raise
        except Exception as e:
            raise error_from_exception(e) from e

        path = reservation.path
        if not path.exists() or path.stat().st_size == 0:
            raise ExtractionError(
                ErrorCode.EXTRACTION_FAILED,
                f"Audio file not found after extraction. Expected: {path.name}"
            )

        logger.info(
            "audio_extraction_completed",
            video_id=reservation.video_id,
            file_key=reservation.file_key,
            file_size_bytes=path.stat().st_size,
            elapsed=f"{time.monotonic() - started:.2f}s"
        )
        return path

    async def fetch_metadata(self, url: str, video_id: str) -> AudioMetadata:
        """
        Fetch title, duration and channel without downloading.

        Best effort: any failure or timeout returns fallback metadata.
        """
        try:
            info = await asyncio.wait_for(
                self._fetch_info(url),
                timeout=self.metadata_timeout_seconds
            )
        except Exception as e:
            logger.warning(
                "metadata_fetch_failed",
                video_id=video_id,
                error=str(e)[:200] or type(e).__name__
            )
            return AudioMetadata.fallback(video_id)

        metadata = AudioMetadata.from_info(info or {}, video_id)
        logger.info("metadata_fetched", video_id=video_id, title=metadata.title, duration=metadata.duration)
        return metadata

    @abstractmethod
    async def _run_extraction(self, url: str, reservation: ArtifactReservation) -> None:
        """Write the MP3 for ``url`` to ``reservation.path``."""
        pass

    @abstractmethod
    async def _fetch_info(self, url: str) -> Dict[str, Any]:
        """Return the yt-dlp info dict for ``url`` without downloading."""
        pass


class LibraryAudioExtractor(AudioExtractor):
    """
    Extraction through the embedded yt_dlp package.

    yt_dlp is blocking, so it runs in the default thread pool. A timed-out
    worker thread cannot be interrupted; whatever it writes afterwards is
    picked up by the artifact sweep.
    """

    method = "library"

    def _base_opts(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {
            "quiet": True,  # Suppress yt-dlp output
            "no_warnings": True,
            "noprogress": True,
            "noplaylist": True,  # Only download single video, not playlists
            "http_headers": self.http_headers(),
            "socket_timeout": 30,
        }
        if self.cookies_file:
            opts["cookiefile"] = self.cookies_file
        return opts

    def _download_opts(self, reservation: ArtifactReservation) -> Dict[str, Any]:
        opts = self._base_opts()
        opts.update({
            "format": AUDIO_FORMAT,
            "outtmpl": reservation.output_template,
            "postprocessors": [{
                "key": "FFmpegExtractAudio",
                "preferredcodec": "mp3",
                "preferredquality": self.audio_quality,
            }],
        })
        if self.ffmpeg_path:
            opts["ffmpeg_location"] = self.ffmpeg_path
        return opts

    async def _run_extraction(self, url: str, reservation: ArtifactReservation) -> None:
        opts = self._download_opts(reservation)
        try:
            await asyncio.to_thread(self._download_with_ytdlp, url, opts)
        except DownloadError as e:
            text = str(e)
            raise ExtractionError(classify_extraction_error(text), text) from e

    def _download_with_ytdlp(self, url: str, ydl_opts: Dict[str, Any]) -> None:
        """Download audio using yt-dlp (runs in thread pool)."""
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            ydl.download([url])

    async def _fetch_info(self, url: str) -> Dict[str, Any]:
        opts = self._base_opts()
        opts["skip_download"] = True

        def extract_info() -> Dict[str, Any]:
            with yt_dlp.YoutubeDL(opts) as ydl:
                return ydl.extract_info(url, download=False) or {}

        return await asyncio.to_thread(extract_info)


class ProcessAudioExtractor(AudioExtractor):
    """
    Extraction through the yt-dlp command-line program.

    The child is killed when the timeout fires, when the request is
    cancelled, or when its combined output exceeds ``max_output_bytes``.
    """

    method = "process"

    def __init__(
        self,
        binary: str = "yt-dlp",
        max_output_bytes: int = 50 * 1024 * 1024,
        **kwargs: Any,
    ):
        self.binary = binary
        self.max_output_bytes = max_output_bytes
        super().__init__(**kwargs)

    def _common_args(self) -> List[str]:
        args = [
            "--no-playlist",
            "--no-progress",
            "--user-agent", self.user_agent,
            "--add-header", f"Accept-Language:{self.accept_language}",
            "--add-header", f"Accept:{ACCEPT_HEADER}",
            "--socket-timeout", "30",
        ]
        if self.cookies_file:
            args.extend(["--cookies", self.cookies_file])
        return args

    def build_download_command(self, url: str, reservation: ArtifactReservation) -> List[str]:
        cmd = [
            self.binary,
            "-f", AUDIO_FORMAT,
            "-x",
            "--audio-format", "mp3",
            "--audio-quality", f"{self.audio_quality}K",
            "-o", reservation.output_template,
        ]
        cmd.extend(self._common_args())
        if self.ffmpeg_path:
            cmd.extend(["--ffmpeg-location", self.ffmpeg_path])
        cmd.extend(["--", url])
        return cmd

    def build_info_command(self, url: str) -> List[str]:
        cmd = [self.binary, "--dump-single-json", "--skip-download", "--no-warnings"]
        cmd.extend(self._common_args())
        cmd.extend(["--", url])
        return cmd

    async def _run_extraction(self, url: str, reservation: ArtifactReservation) -> None:
        cmd = self.build_download_command(url, reservation)
        logger.debug("ytdlp_command", command=" ".join(cmd))

        returncode, stdout, stderr = await self._run_process(cmd)

        if returncode != 0:
            output = stderr.decode(errors="ignore") or stdout.decode(errors="ignore")
            raise ExtractionError(
                classify_extraction_error(output),
                f"yt-dlp exited with code {returncode}",
                details=_error_lines(output)
            )

    async def _fetch_info(self, url: str) -> Dict[str, Any]:
        returncode, stdout, stderr = await self._run_process(self.build_info_command(url))
        if returncode != 0:
            raise RuntimeError(_error_lines(stderr.decode(errors="ignore")) or f"exit code {returncode}")
        return json.loads(stdout.decode(errors="ignore"))

    async def _run_process(self, cmd: List[str]) -> Tuple[int, bytes, bytes]:
        """
        Run a command, collecting its output under the buffer budget.

        Timeouts are applied by the caller via ``asyncio.wait_for``; the
        resulting cancellation kills the child here.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Own process group, so FFmpeg and other helpers die with it
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ExtractionError(
                ErrorCode.EXTRACTION_FAILED,
                f"yt-dlp binary not found: {self.binary}. Install yt-dlp or set YTDLP_BINARY."
            ) from e

        budget = _OutputBudget(self.max_output_bytes)
        try:
            stdout, stderr = await asyncio.gather(
                _drain(process.stdout, budget),
                _drain(process.stderr, budget),
            )
            returncode = await process.wait()
        except OutputLimitExceeded as e:
            await _kill(process)
            raise ExtractionError(ErrorCode.EXTRACTION_FAILED, str(e)) from e
        except asyncio.CancelledError:
            await _kill(process)
            raise

        return returncode, stdout, stderr


async def _drain(stream: asyncio.StreamReader, budget: _OutputBudget) -> bytes:
    chunks = []
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        budget.consume(len(chunk))
        chunks.append(chunk)
    return b"".join(chunks)


async def _kill(process: asyncio.subprocess.Process) -> None:
    """
    Kill yt-dlp and everything it spawned.

    Children holding the inherited pipes would otherwise keep
    ``process.wait()`` blocked until they exit.
    """
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
    await process.wait()
    logger.warning("ytdlp_process_killed", pid=process.pid)


def _error_lines(output: str) -> str:
    """Prefer yt-dlp's ERROR: lines over the full output."""
    lines = [line for line in output.splitlines() if line.startswith("ERROR")]
    return "\n".join(lines) if lines else output.strip()


_audio_extractor: Optional[AudioExtractor] = None


def create_audio_extractor(method: Optional[str] = None) -> AudioExtractor:
    """
    Build the extractor selected by EXTRACTION_METHOD.

    Raises:
        ValueError: If the method is unknown
    """
    method = (method or settings.EXTRACTION_METHOD).lower()
    common = dict(
        timeout_seconds=settings.EXTRACTION_TIMEOUT_SECONDS,
        metadata_timeout_seconds=settings.METADATA_TIMEOUT_SECONDS,
        audio_quality=settings.AUDIO_QUALITY,
        ffmpeg_path=settings.FFMPEG_PATH,
        cookies_file=settings.YTDLP_COOKIES_FILE,
        user_agent=settings.USER_AGENT,
        accept_language=settings.ACCEPT_LANGUAGE,
    )

    if method == "process":
        return ProcessAudioExtractor(
            binary=settings.YTDLP_BINARY,
            max_output_bytes=settings.MAX_OUTPUT_BUFFER_BYTES,
            **common
        )
    if method == "library":
        return LibraryAudioExtractor(**common)

    raise ValueError(f"Unknown extraction method: {method}")


def get_audio_extractor() -> AudioExtractor:
    """Return the process-wide extractor configured from settings."""
    global _audio_extractor
    if _audio_extractor is None:
        _audio_extractor = create_audio_extractor()
        logger.info("audio_extractor_initialized", method=_audio_extractor.method)
    return _audio_extractor
