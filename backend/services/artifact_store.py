"""
Temp Artifact Store

Directory-backed holding area for extracted MP3 files.

Files are named ``{prefix}_{video_id}_{timestamp}.mp3``; the
``{video_id}_{timestamp}`` part is the file key handed out in download URLs.
An in-memory index maps file keys to artifacts so lookups do not depend on
scanning the directory, with the directory scan kept as a fallback for files
the index has not seen (e.g. written before a restart).

Cleanup is best effort: deletion errors are logged, never raised.
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

import structlog

from backend.config import settings

logger = structlog.get_logger()

MP3_EXTENSION = ".mp3"


class ArtifactStoreError(Exception):
    """Raised when the holding directory cannot be used"""
    pass


@dataclass(frozen=True)
class ArtifactReservation:
    """A unique, not yet written artifact location."""
    video_id: str
    timestamp: int
    file_key: str
    stem: str
    path: Path

    @property
    def output_template(self) -> str:
        """yt-dlp output template; the extractor picks the extension."""
        return str(self.path.with_name(f"{self.stem}.%(ext)s"))


@dataclass
class ArtifactHandle:
    """A finished artifact on disk."""
    file_key: str
    video_id: str
    path: Path
    size_bytes: int
    created_at: float = field(default_factory=time.time)

    @property
    def size_mb(self) -> float:
        return round(self.size_bytes / (1024 * 1024), 2)


class ArtifactStore:
    """
    Holding directory for converted MP3s, keyed by video ID and timestamp.

    Example:
        >>> store = ArtifactStore("/tmp/ytmp3")
        >>> store.initialize()
        >>> reservation = store.put("dQw4w9WgXcQ")
        >>> # ... extractor writes reservation.path ...
        >>> handle = store.register(reservation)
        >>> store.find(handle.file_key).path == handle.path
        True
    """

    def __init__(
        self,
        base_dir: str,
        prefix: str = "ytmp3",
        max_age_hours: float = 1.0,
        delete_delay_seconds: float = 1.0,
    ):
        self.base_dir = Path(base_dir)
        self.prefix = prefix
        self.max_age_hours = max_age_hours
        self.delete_delay_seconds = delete_delay_seconds

        self._index: Dict[str, ArtifactHandle] = {}
        self._reserved: Set[str] = set()
        self._pending_deletes: Set[asyncio.Task] = set()

    def initialize(self) -> None:
        """
        Create the holding directory, check it is writable and index any
        artifacts already present.

        Raises:
            ArtifactStoreError: If the directory cannot be created or written
        """
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactStoreError(f"Cannot create temp directory {self.base_dir}: {e}") from e

        if not os.access(self.base_dir, os.W_OK):
            raise ArtifactStoreError(f"Temp directory {self.base_dir} is not writable")

        for path in self._iter_artifacts():
            handle = self._handle_from_path(path)
            if handle:
                self._index[handle.file_key] = handle

        logger.info(
            "artifact_store_initialized",
            base_dir=str(self.base_dir),
            indexed=len(self._index),
            max_age_hours=self.max_age_hours
        )

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def put(self, video_id: str, timestamp: Optional[int] = None) -> ArtifactReservation:
        """
        Reserve a unique artifact path for a video.

        The timestamp is milliseconds since the epoch; when the resulting key
        is already taken it is bumped until unique, so two conversions of the
        same video never share a file.
        """
        ts = int(timestamp if timestamp is not None else time.time() * 1000)
        file_key = f"{video_id}_{ts}"
        while file_key in self._reserved or file_key in self._index:
            ts += 1
            file_key = f"{video_id}_{ts}"

        self._reserved.add(file_key)
        stem = f"{self.prefix}_{file_key}"
        reservation = ArtifactReservation(
            video_id=video_id,
            timestamp=ts,
            file_key=file_key,
            stem=stem,
            path=self.base_dir / f"{stem}{MP3_EXTENSION}",
        )
        logger.debug("artifact_reserved", file_key=file_key, path=str(reservation.path))
        return reservation

    def register(self, reservation: ArtifactReservation) -> ArtifactHandle:
        """
        Record a finished artifact in the index.

        Raises:
            FileNotFoundError: If the reserved MP3 was not written
        """
        stat = reservation.path.stat()
        handle = ArtifactHandle(
            file_key=reservation.file_key,
            video_id=reservation.video_id,
            path=reservation.path,
            size_bytes=stat.st_size,
            created_at=stat.st_mtime,
        )
        self._index[handle.file_key] = handle
        self._reserved.discard(reservation.file_key)
        logger.info("artifact_registered", file_key=handle.file_key, file_size_bytes=handle.size_bytes)
        return handle

    def discard(self, reservation: ArtifactReservation) -> int:
        """
        Delete every file belonging to a reservation (partial downloads,
        intermediate formats, the MP3 itself) and release the key.

        Returns:
            Number of files removed
        """
        removed = 0
        self._reserved.discard(reservation.file_key)
        self._index.pop(reservation.file_key, None)

        try:
            candidates = list(self.base_dir.glob(f"{reservation.stem}.*"))
        except OSError as e:
            logger.error("artifact_discard_failed", file_key=reservation.file_key, error=str(e))
            return 0

        for path in candidates:
            if self._unlink(path):
                removed += 1

        if removed:
            logger.info("artifact_discarded", file_key=reservation.file_key, files_removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def find(self, file_key: str) -> Optional[ArtifactHandle]:
        """
        Look up an artifact by file key.

        Exact index hits are checked first; otherwise the directory is scanned
        for an MP3 whose name contains the key and the first match is indexed
        and returned.
        """
        if not file_key or "/" in file_key or "\\" in file_key or ".." in file_key:
            return None

        handle = self._index.get(file_key)
        if handle is not None:
            if handle.path.exists():
                return handle
            # Removed behind our back (sweep, manual cleanup)
            self._index.pop(file_key, None)

        for path in self._iter_artifacts():
            if file_key in path.name and not self._is_reserved(path):
                handle = self._handle_from_path(path)
                if handle is None:
                    continue
                self._index[handle.file_key] = handle
                return handle

        return None

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def delete(self, path: Path) -> bool:
        """Delete an artifact and drop it from the index."""
        path = Path(path)
        for key, handle in list(self._index.items()):
            if handle.path == path:
                self._index.pop(key, None)
        return self._unlink(path)

    def sweep_expired(self, max_age_hours: Optional[float] = None) -> int:
        """
        Delete artifacts whose modification time is older than the threshold.

        Leftover partial files from interrupted extractions are swept too.

        Returns:
            Number of files deleted
        """
        max_age = self.max_age_hours if max_age_hours is None else max_age_hours
        cutoff = time.time() - max_age * 3600
        deleted = 0

        for path in self._iter_artifacts(mp3_only=False):
            try:
                mtime = path.stat().st_mtime
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error("artifact_stat_failed", path=str(path), error=str(e))
                continue

            if mtime < cutoff and self.delete(path):
                deleted += 1
                logger.info("artifact_swept", path=str(path), age_seconds=int(time.time() - mtime))

        logger.info("artifact_sweep_completed", deleted=deleted, max_age_hours=max_age)
        return deleted

    def delete_after_serve(self, path: Path, delay: Optional[float] = None) -> asyncio.Task:
        """
        Schedule deletion of a served artifact after a short grace delay.

        Must be called from within the running event loop.
        """
        delay = self.delete_delay_seconds if delay is None else delay
        task = asyncio.get_running_loop().create_task(self._delete_later(Path(path), delay))
        self._pending_deletes.add(task)
        task.add_done_callback(self._pending_deletes.discard)
        return task

    async def _delete_later(self, path: Path, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.delete(path):
            logger.info("artifact_deleted_after_serve", path=str(path))

    async def run_periodic_sweep(self, interval_seconds: float) -> None:
        """Sweep expired artifacts forever, every ``interval_seconds``."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.error("artifact_sweep_failed", error=str(e), exc_info=True)

    def cancel_pending(self) -> None:
        """Cancel scheduled deletions (used on shutdown)."""
        for task in list(self._pending_deletes):
            task.cancel()
        self._pending_deletes.clear()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _iter_artifacts(self, mp3_only: bool = True) -> List[Path]:
        try:
            entries = list(self.base_dir.iterdir())
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.error("artifact_scan_failed", base_dir=str(self.base_dir), error=str(e))
            return []
        return [
            p for p in entries
            if p.is_file()
            and p.name.startswith(f"{self.prefix}_")
            and (not mp3_only or p.name.endswith(MP3_EXTENSION))
        ]

    def _handle_from_path(self, path: Path) -> Optional[ArtifactHandle]:
        # {prefix}_{video_id}_{timestamp}.mp3; video IDs may themselves contain "_"
        file_key = path.name[len(self.prefix) + 1:-len(MP3_EXTENSION)]
        video_id, sep, timestamp = file_key.rpartition("_")
        # Rejects intermediate names such as FFmpeg's "{stem}.temp.mp3"
        if not sep or not video_id or not timestamp.isdigit():
            return None
        try:
            stat = path.stat()
        except OSError:
            return None
        return ArtifactHandle(
            file_key=file_key,
            video_id=video_id,
            path=path,
            size_bytes=stat.st_size,
            created_at=stat.st_mtime,
        )

    def _is_reserved(self, path: Path) -> bool:
        """True for any file of an extraction still in progress."""
        return any(
            path.name.startswith(f"{self.prefix}_{key}.")
            for key in self._reserved
        )

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error("artifact_delete_failed", path=str(path), error=str(e))
            return False


_artifact_store: Optional[ArtifactStore] = None


def get_artifact_store() -> ArtifactStore:
    """
    Return the process-wide artifact store configured from settings.

    The directory is created lazily by ``initialize()``, which the
    application lifespan calls at startup.
    """
    global _artifact_store
    if _artifact_store is None:
        _artifact_store = ArtifactStore(
            base_dir=settings.TEMP_DIR,
            prefix=settings.ARTIFACT_PREFIX,
            max_age_hours=settings.MAX_ARTIFACT_AGE_HOURS,
            delete_delay_seconds=settings.DELETE_AFTER_SERVE_DELAY_SECONDS,
        )
    return _artifact_store
