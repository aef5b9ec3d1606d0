"""Download job lifecycle.

A :class:`Job` is one request's trip from admission to a terminal state.
:class:`JobManager` owns every in-flight job and is the only code that moves
jobs between states, so the admission slot taken by a job is handed back
exactly once whichever way the job ends:

- yt-dlp exits cleanly and the artifact is on disk (Succeeded)
- yt-dlp exits non-zero, prints a fatal error or runs out of time (Failed)
- the last client listening for the job goes away (Cancelled)
"""
from __future__ import annotations

import asyncio
import functools
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Sequence, Union

from admission import AdmissionController
from artifacts import ArtifactStore, sanitize_filename
from errors import ErrorKind, InvalidInputError, JobError, ServerBusyError
from matchers import FatalPatternMatcher, ProgressMatcher
from runner import ExitStatus, ProcessHandle, SubprocessRunner, build_fetch_command
from settings import Settings

logger = logging.getLogger(__name__)

MEDIA_REF_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")

QUALITY_TIERS = {
    "audio": ("best", "320", "256", "192", "128"),
    "video": ("best", "2160", "1440", "1080", "720", "480", "360"),
}
EXTENSIONS = {"audio": "mp3", "video": "mp4"}

STDERR_TAIL_LINES = 20
MAX_PARTIAL_LINE = 1024 * 64

CommandBuilder = Callable[[str, "Variant", Path, Settings], Sequence[str]]


class JobState(str, Enum):
    PENDING = "pending"
    ADMITTED = "admitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


TERMINAL_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED, JobState.REJECTED}
)

TRANSITIONS = {
    JobState.PENDING: {JobState.ADMITTED, JobState.REJECTED, JobState.SUCCEEDED},
    JobState.ADMITTED: {JobState.RUNNING, JobState.FAILED, JobState.CANCELLED},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED},
}


@dataclass(frozen=True)
class Variant:
    kind: str
    quality: str = "best"

    @classmethod
    def parse(cls, kind: Optional[str], quality: Optional[str] = None) -> "Variant":
        kind = (kind or "").strip().lower()
        if kind not in QUALITY_TIERS:
            raise InvalidInputError("Invalid format. Use one of: audio, video.")
        quality = (quality or "best").strip().lower().rstrip("pk") or "best"
        if quality not in QUALITY_TIERS[kind]:
            raise InvalidInputError(
                f"Invalid quality for {kind}. Use one of: {', '.join(QUALITY_TIERS[kind])}."
            )
        return cls(kind, quality)

    @property
    def ext(self) -> str:
        return EXTENSIONS[self.kind]

    @property
    def tag(self) -> str:
        return f"{self.kind}_{self.quality}"


@dataclass(frozen=True)
class ProgressEvent:
    percent: float


@dataclass(frozen=True)
class ErrorEvent:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class CompletedEvent:
    path: Path


@dataclass(frozen=True)
class CancelledEvent:
    pass


Event = Union[ProgressEvent, ErrorEvent, CompletedEvent, CancelledEvent]


def is_terminal_event(event: object) -> bool:
    return isinstance(event, (ErrorEvent, CompletedEvent, CancelledEvent))


def validate_media_ref(media_ref: Optional[str]) -> str:
    if not media_ref or not media_ref.strip():
        raise InvalidInputError("Video ID is required.")
    media_ref = media_ref.strip()
    if not MEDIA_REF_PATTERN.match(media_ref):
        raise InvalidInputError("Invalid video ID.")
    return media_ref


@dataclass(eq=False)
class Job:
    media_ref: str
    variant: Variant
    output_path: Path
    title: Optional[str] = None
    state: JobState = JobState.PENDING
    progress: float = 0.0
    error: Optional[ErrorEvent] = None
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    handle: Optional[ProcessHandle] = field(default=None, repr=False)
    task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)
    slot_held: bool = False
    stderr_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES), repr=False)
    subscribers: List["asyncio.Queue[Event]"] = field(default_factory=list, repr=False)
    _partial: Dict[str, str] = field(default_factory=dict, repr=False)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def id(self) -> str:
        return f"{self.media_ref}:{self.variant.kind}:{self.variant.quality}"

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: JobState) -> None:
        allowed = TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise RuntimeError(f"Illegal job transition {self.state.value} -> {new_state.value}")
        logger.info("Job %s %s -> %s", self.id, self.state.value, new_state.value)
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.finished_at = time.time()
            self._done.set()

    def terminal_event(self) -> Optional[Event]:
        if self.state is JobState.SUCCEEDED:
            return CompletedEvent(self.output_path)
        if self.state is JobState.FAILED:
            return self.error
        if self.state is JobState.CANCELLED:
            return CancelledEvent()
        return None

    def publish(self, event: Event) -> None:
        for queue in list(self.subscribers):
            queue.put_nowait(event)

    async def wait(self) -> None:
        await self._done.wait()


class JobManager:
    def __init__(
        self,
        settings: Settings,
        admission: AdmissionController,
        store: ArtifactStore,
        runner: Optional[SubprocessRunner] = None,
        command_builder: CommandBuilder = build_fetch_command,
        progress_matcher: Optional[ProgressMatcher] = None,
        fatal_matcher: Optional[FatalPatternMatcher] = None,
    ) -> None:
        self.settings = settings
        self.admission = admission
        self.store = store
        self.runner = runner or SubprocessRunner()
        self.command_builder = command_builder
        self.progress_matcher = progress_matcher or ProgressMatcher()
        self.fatal_matcher = fatal_matcher or FatalPatternMatcher()
        self._inflight: Dict[Path, Job] = {}

    def active_jobs(self) -> List[Job]:
        return list(self._inflight.values())

    def get(self, job_id: str) -> Optional[Job]:
        return next((job for job in self._inflight.values() if job.id == job_id), None)

    def output_path_for(self, media_ref: str, variant: Variant, title: Optional[str] = None) -> Path:
        # only the title is truncated; the variant tag always survives
        stem = sanitize_filename(title, fallback=media_ref) if title else media_ref
        return self.store.path_for(f"{stem}_{variant.tag}", variant.ext)

    def in_flight(self, path: Path) -> bool:
        """True if ``path`` is an unfinished job's artifact or one of its partial files."""
        for output_path in self._inflight:
            if path == output_path:
                return True
            if path.parent == output_path.parent and path.name.startswith(output_path.stem + "."):
                return True
        return False

    def servable(self, path: Path) -> bool:
        if path.suffix.lower().lstrip(".") not in EXTENSIONS.values():
            return False
        return not self.in_flight(path)

    def submit(self, media_ref: str, variant: Variant, title: Optional[str] = None) -> Job:
        """Start (or join) the job producing ``variant`` of ``media_ref``.

        Raises InvalidInputError for a malformed id and ServerBusyError when
        no admission slot is free. Must be called from the event loop.
        """
        media_ref = validate_media_ref(media_ref)
        if not isinstance(variant, Variant):
            raise InvalidInputError("Invalid format.")
        loop = asyncio.get_running_loop()
        output_path = self.output_path_for(media_ref, variant, title)

        existing = self._inflight.get(output_path)
        if existing is not None and not existing.is_terminal:
            logger.info("Joining in-flight job %s path=%s", existing.id, output_path.name)
            return existing

        job = Job(media_ref=media_ref, variant=variant, output_path=output_path, title=title)
        if self.store.exists(output_path, max_age=self.settings.artifact_max_age):
            job.progress = 100.0
            job.transition(JobState.SUCCEEDED)
            logger.info("Serving cached artifact for job %s path=%s", job.id, output_path.name)
            return job
        if self.store.exists(output_path):
            logger.info("Discarding stale artifact path=%s", output_path.name)
            self.store.discard(output_path)

        if not self.admission.try_admit():
            job.transition(JobState.REJECTED)
            raise ServerBusyError("Server busy")
        job.slot_held = True
        job.transition(JobState.ADMITTED)
        self._inflight[output_path] = job
        job.task = loop.create_task(self._run(job))
        return job

    def subscribe(self, job: Job) -> "asyncio.Queue[Event]":
        queue: "asyncio.Queue[Event]" = asyncio.Queue()
        if job.progress > 0:
            queue.put_nowait(ProgressEvent(job.progress))
        if job.is_terminal:
            event = job.terminal_event()
            if event is not None:
                queue.put_nowait(event)
        else:
            job.subscribers.append(queue)
        return queue

    def unsubscribe(self, job: Job, queue: "asyncio.Queue[Event]") -> None:
        """Detach a listener; an unfinished job with nobody left listening is cancelled."""
        if queue in job.subscribers:
            job.subscribers.remove(queue)
        if not job.is_terminal and not job.subscribers:
            logger.info("Last listener left job %s, cancelling", job.id)
            self.cancel(job)

    def cancel(self, job: Job) -> None:
        if job.is_terminal:
            return
        job.transition(JobState.CANCELLED)
        if job.handle is not None:
            job.handle.kill()
        self._release(job)
        job.publish(CancelledEvent())

    async def shutdown(self) -> None:
        jobs = self.active_jobs()
        for job in jobs:
            self.cancel(job)
        tasks = [job.task for job in jobs if job.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, job: Job) -> None:
        try:
            command = self.command_builder(job.media_ref, job.variant, job.output_path, self.settings)
            try:
                handle = await self.runner.spawn(
                    command,
                    functools.partial(self._on_output, job),
                    timeout=self.settings.job_timeout,
                )
            except JobError as exc:
                self._fail(job, exc.kind, exc.message)
                return
            job.handle = handle
            if job.is_terminal:
                # cancelled while the process was starting
                handle.kill()
            else:
                job.transition(JobState.RUNNING)
            status = await handle.wait()
            self._flush_output(job)
            if not job.is_terminal:
                self._classify_exit(job, status)
        except asyncio.CancelledError:
            self.cancel(job)
            raise
        except Exception:
            logger.exception("Job %s crashed", job.id)
            self._fail(job, ErrorKind.PROCESS_FAILURE, "Download failed")
        finally:
            self._finalize(job)

    def _classify_exit(self, job: Job, status: ExitStatus) -> None:
        if status.timed_out:
            self._fail(
                job,
                ErrorKind.TIMEOUT,
                f"Download timed out after {int(self.settings.job_timeout)} seconds",
            )
            return
        if status.returncode != 0:
            fatal = self.fatal_matcher.match("\n".join(job.stderr_tail))
            if fatal is not None:
                self._fail(job, *fatal)
                return
            detail = "\n".join(list(job.stderr_tail)[-6:]).strip() or f"yt-dlp exited with code {status.returncode}"
            self._fail(job, ErrorKind.PROCESS_FAILURE, detail)
            return
        if not self.store.exists(job.output_path):
            self._fail(job, ErrorKind.PROCESS_FAILURE, "Download finished but no file was produced")
            return
        if job.progress < 100.0:
            job.progress = 100.0
            job.publish(ProgressEvent(100.0))
        job.transition(JobState.SUCCEEDED)
        job.publish(CompletedEvent(job.output_path))

    def _fail(self, job: Job, kind: ErrorKind, message: str) -> None:
        if job.is_terminal:
            return
        logger.warning("Job %s failed kind=%s: %s", job.id, kind.value, message)
        job.error = ErrorEvent(kind, message)
        job.transition(JobState.FAILED)
        if job.handle is not None:
            job.handle.kill()
        self._release(job)
        job.publish(job.error)

    def _release(self, job: Job) -> None:
        if job.slot_held:
            job.slot_held = False
            self.admission.release()

    def _finalize(self, job: Job) -> None:
        if not job.is_terminal:
            self._fail(job, ErrorKind.PROCESS_FAILURE, "Download ended unexpectedly")
        self._release(job)
        if self._inflight.get(job.output_path) is job:
            del self._inflight[job.output_path]
        if job.state is JobState.SUCCEEDED:
            self.store.schedule_delete(job.output_path, self.settings.artifact_retention)
        else:
            self.store.discard(job.output_path)

    def _on_output(self, job: Job, stream: str, text: str) -> None:
        buffered = job._partial.get(stream, "") + text
        *lines, rest = re.split(r"[\r\n]", buffered)
        if len(rest) > MAX_PARTIAL_LINE:
            lines.append(rest)
            rest = ""
        job._partial[stream] = rest
        self._handle_lines(job, stream, [line for line in lines if line.strip()], rest)

    def _flush_output(self, job: Job) -> None:
        for stream, rest in list(job._partial.items()):
            job._partial[stream] = ""
            if rest.strip():
                self._handle_lines(job, stream, [rest], "")

    def _handle_lines(self, job: Job, stream: str, lines: List[str], partial: str) -> None:
        if job.is_terminal:
            return
        if lines:
            percent = self.progress_matcher.last_percent("\n".join(lines))
            if percent is not None:
                self._record_progress(job, percent)
        if stream != "stderr":
            return
        job.stderr_tail.extend(line.strip() for line in lines)
        fatal = self.fatal_matcher.match("\n".join(lines + [partial]))
        if fatal is not None:
            self._fail(job, *fatal)

    def _record_progress(self, job: Job, percent: float) -> None:
        percent = min(max(percent, 0.0), 100.0)
        if percent <= job.progress:
            return
        job.progress = percent
        job.publish(ProgressEvent(percent))
