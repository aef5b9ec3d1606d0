"""Title/duration/thumbnail lookup backed by yt-dlp, with a TTL cache."""
from __future__ import annotations

import asyncio
import functools
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

import yt_dlp
from cachetools import TTLCache

from errors import (
    MetadataTimeoutError,
    ProcessFailureError,
    UpstreamUnavailableError,
)
from matchers import FatalPatternMatcher
from runner import WATCH_URL
from settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_HTTP_HEADERS = {"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0 Safari/537.36"}

Extractor = Callable[[str, Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class MediaInfo:
    media_ref: str
    title: str
    duration: Optional[str]
    thumbnail: Optional[str]

    def as_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "duration": self.duration, "thumbnail": self.thumbnail}


def format_duration(seconds: Any) -> Optional[str]:
    """Render a duration in seconds as ``H:MM:SS`` or ``M:SS``."""
    if seconds is None:
        return None
    try:
        total = int(float(seconds))
    except (TypeError, ValueError):
        return None
    hours, rest = divmod(max(total, 0), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def retry(
    attempts: int,
    delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Retry a coroutine function up to ``attempts`` times, sleeping ``delay`` in between."""
    attempts = max(attempts, 1)

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if attempt >= attempts:
                        raise
                    logger.warning(
                        "Attempt %d/%d of %s failed: %s", attempt, attempts, func.__name__, exc
                    )
                    attempt += 1
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def _extract_with_ytdlp(url: str, options: Dict[str, Any]) -> Dict[str, Any]:
    with yt_dlp.YoutubeDL(options) as ydl:
        return ydl.extract_info(url, download=False)


def _clean_error(message: str) -> str:
    # yt-dlp prefixes messages with "ERROR: [youtube] <id>: "
    message = re.sub(r"^ERROR:\s*", "", message.strip())
    message = re.sub(r"^\[[^\]]+\]\s*[\w-]+:\s*", "", message)
    return message or "Failed to fetch video info"


class MetadataResolver:
    def __init__(
        self,
        settings: Settings,
        extractor: Optional[Extractor] = None,
        fatal_matcher: Optional[FatalPatternMatcher] = None,
    ) -> None:
        self.settings = settings
        self._extractor = extractor or _extract_with_ytdlp
        self._fatal = fatal_matcher or FatalPatternMatcher()
        self._cache: TTLCache = TTLCache(maxsize=settings.metadata_cache_size, ttl=settings.metadata_cache_ttl)
        self._cache_lock = threading.Lock()
        self._fetch = retry(
            settings.metadata_retry_attempts,
            settings.metadata_retry_delay,
            retry_on=(ProcessFailureError,),
        )(self._fetch_once)

    def cached(self, media_ref: str) -> Optional[MediaInfo]:
        with self._cache_lock:
            return self._cache.get(media_ref)

    async def resolve(self, media_ref: str) -> MediaInfo:
        cached = self.cached(media_ref)
        if cached is not None:
            logger.debug("Metadata cache hit id=%s", media_ref)
            return cached
        info = await self._fetch(media_ref)
        with self._cache_lock:
            self._cache[media_ref] = info
        return info

    def _options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
            "http_headers": DEFAULT_HTTP_HEADERS,
        }
        if self.settings.rate_limit:
            options["ratelimit"] = yt_dlp.utils.parse_bytes(self.settings.rate_limit)
        return options

    async def _fetch_once(self, media_ref: str) -> MediaInfo:
        url = WATCH_URL.format(media_ref=media_ref)
        try:
            info = await asyncio.wait_for(
                asyncio.to_thread(self._extractor, url, self._options()),
                timeout=self.settings.metadata_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Metadata lookup timed out id=%s", media_ref)
            raise MetadataTimeoutError("Timed out fetching video info") from exc
        except yt_dlp.utils.DownloadError as exc:
            message = str(exc)
            fatal = self._fatal.match(message)
            if fatal is not None:
                raise UpstreamUnavailableError(fatal[1]) from exc
            raise ProcessFailureError(_clean_error(message)) from exc

        info = info or {}
        return MediaInfo(
            media_ref=media_ref,
            title=info.get("title") or media_ref,
            duration=info.get("duration_string") or format_duration(info.get("duration")),
            thumbnail=info.get("thumbnail"),
        )
