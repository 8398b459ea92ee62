import asyncio
import contextlib
import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_TTL = 5 * 60.0
DEFAULT_SWEEP_INTERVAL = 60.0


@dataclass
class UploadedFile:
    file_id: str
    filename: str
    path: Path
    size: int
    mime_type: str
    created_at: float
    expires_at: float

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


class UploadLedger:
    """
    One-shot registry of uploaded files kept in a temp directory.

    An entry disappears when a job consumes it or when its TTL runs out,
    whichever comes first; both paths delete the backing file.
    """

    def __init__(
        self,
        upload_dir: str,
        ttl: float = DEFAULT_UPLOAD_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.upload_dir = Path(upload_dir)
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._files: Dict[str, UploadedFile] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def register(self, filename: str, content: bytes, mime_type: str = "application/octet-stream") -> UploadedFile:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        file_id = secrets.token_hex(16)
        path = self.upload_dir / file_id
        path.write_bytes(content)

        now = self.clock()
        entry = UploadedFile(
            file_id=file_id,
            filename=filename,
            path=path,
            size=len(content),
            mime_type=mime_type,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self._files[file_id] = entry
        logger.info("File uploaded: %s (%s, %d bytes)", file_id, filename, entry.size)
        return entry

    def get(self, file_id: str) -> UploadedFile | None:
        entry = self._files.get(file_id)
        if entry is None:
            logger.info("Upload not found: %s", file_id)
            return None
        if entry.expires_at < self.clock():
            logger.info("Upload expired: %s", file_id)
            self._release(file_id)
            return None
        if not entry.path.exists():
            logger.warning("Upload missing from disk: %s", file_id)
            self._files.pop(file_id, None)
            return None
        return entry

    def consume(self, file_id: str) -> UploadedFile | None:
        """Remove the entry and its backing file. A second call returns None."""
        entry = self._files.get(file_id)
        if entry is None:
            return None
        if entry.expires_at < self.clock():
            logger.info("Upload expired: %s", file_id)
            self._release(file_id)
            return None
        self._release(file_id)
        return entry

    def _release(self, file_id: str) -> None:
        entry = self._files.pop(file_id, None)
        if entry is None:
            return
        try:
            entry.path.unlink(missing_ok=True)
            logger.info("File cleaned up: %s", file_id)
        except OSError as e:
            logger.error("Failed to delete file %s: %s", file_id, e)

    def sweep(self) -> int:
        now = self.clock()
        expired = [fid for fid, f in self._files.items() if f.expires_at < now]
        for file_id in expired:
            self._release(file_id)
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        now = self.clock()
        active = [f for f in self._files.values() if f.expires_at >= now]
        total = sum(f.size for f in active)
        return {
            "active_files": len(active),
            "total_size": total,
            "total_size_mb": round(total / 1024 / 1024, 2),
        }

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def aclose(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        logger.info("Cleaning up all uploaded files...")
        for file_id in list(self._files):
            self._release(file_id)

    def __contains__(self, file_id: str) -> bool:
        return file_id in self._files
