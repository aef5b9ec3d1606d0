"""Scratch storage for produced media files.

Every path handed out or accepted by :class:`ArtifactStore` lives under a
single storage root. Caller-supplied paths are resolved and rejected when
they point anywhere else, including through symlinks.
"""
from __future__ import annotations

import asyncio
import glob
import logging
import mimetypes
import re
import time
from pathlib import Path
from typing import Dict, Optional, Union

from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from errors import ArtifactNotFoundError

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 120

PathLike = Union[str, Path]


def sanitize_filename(
    title: Optional[str],
    fallback: str = "download",
    max_length: Optional[int] = MAX_TITLE_LENGTH,
) -> str:
    """Turn a media title into a safe ASCII file stem, cut to ``max_length`` characters."""
    safe_title = (
        re.sub(r'[\\/*?:"<>|\x00-\x1f]', "", title or "")
        .replace("\n", " ")
        .replace("\r", " ")
    )
    safe_title = re.sub(r"\s+", " ", safe_title)
    # Force ASCII so the name is also usable in Content-Disposition headers
    safe_title = safe_title.encode("ascii", "ignore").decode("ascii")
    safe_title = safe_title.strip(" .")
    if max_length is not None:
        safe_title = safe_title[:max_length].strip(" .")
    return safe_title or fallback


class ArtifactStore:
    def __init__(self, root: PathLike) -> None:
        root_path = Path(root)
        root_path.mkdir(parents=True, exist_ok=True)
        self.root = root_path.resolve()
        self._timers: Dict[Path, asyncio.TimerHandle] = {}

    def path_for(self, stem: str, ext: str) -> Path:
        """Deterministic location for an artifact named ``stem``.``ext``."""
        return self.resolve(f"{sanitize_filename(stem, max_length=None)}.{ext}")

    def resolve(self, path: PathLike) -> Path:
        """Resolve ``path`` under the storage root or raise NotFound."""
        raw = str(path)
        if not raw or "\x00" in raw:
            raise ArtifactNotFoundError("File not found")
        candidate = (self.root / raw).resolve()
        if candidate == self.root or not candidate.is_relative_to(self.root):
            logger.warning("Rejected artifact path outside root path=%r root=%s", raw, self.root)
            raise ArtifactNotFoundError("File not found")
        return candidate

    def relative(self, path: Path) -> str:
        return path.resolve().relative_to(self.root).as_posix()

    def exists(self, path: PathLike, max_age: Optional[float] = None) -> bool:
        try:
            target = self.resolve(path)
            stat = target.stat()
        except (ArtifactNotFoundError, OSError):
            return False
        if not target.is_file():
            return False
        if max_age is not None and time.time() - stat.st_mtime > max_age:
            return False
        return True

    def serve(
        self,
        path: PathLike,
        filename: Optional[str] = None,
        background: Optional[BackgroundTask] = None,
    ) -> FileResponse:
        """Stream the artifact back as an attachment."""
        target = self.resolve(path)
        if not target.is_file():
            raise ArtifactNotFoundError("File not found")
        media_type = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
        return FileResponse(
            path=str(target),
            media_type=media_type,
            filename=filename or target.name,
            background=background,
        )

    def schedule_delete(self, path: PathLike, delay: float) -> None:
        """Delete ``path`` after ``delay`` seconds, replacing any earlier timer."""
        target = self.resolve(path)
        loop = asyncio.get_running_loop()
        previous = self._timers.pop(target, None)
        if previous is not None:
            previous.cancel()
        self._timers[target] = loop.call_later(delay, self._expire, target)
        logger.debug("Scheduled deletion path=%s delay=%.1fs", target, delay)

    def cancel_pending(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def pending_deletions(self) -> int:
        return len(self._timers)

    def _expire(self, path: Path) -> None:
        self._timers.pop(path, None)
        self.delete(path)

    def delete(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Failed to delete artifact path=%s error=%s", path, exc)
            return False
        logger.info("Deleted artifact path=%s", path)
        return True

    def discard(self, path: Path) -> None:
        """Remove an artifact together with any partial files yt-dlp left next to it."""
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()
        self.delete(path)
        for sibling in path.parent.glob(glob.escape(path.stem) + ".*"):
            if sibling.is_file():
                self.delete(sibling)
