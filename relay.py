"""Push a job's events to one client connection."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

from jobs import (
    CancelledEvent,
    CompletedEvent,
    ErrorEvent,
    Event,
    Job,
    JobManager,
    ProgressEvent,
    is_terminal_event,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Download cancelled"


class KeepAlive:
    """Marker yielded when nothing happened for a keep-alive interval."""


KEEPALIVE = KeepAlive()

DisconnectCheck = Callable[[], Awaitable[bool]]


class ProgressRelay:
    def __init__(
        self,
        manager: JobManager,
        job: Job,
        keepalive_interval: float = 15.0,
        is_disconnected: Optional[DisconnectCheck] = None,
        url_for: Optional[Callable[[Path], str]] = None,
    ) -> None:
        self.manager = manager
        self.job = job
        self.keepalive_interval = keepalive_interval
        self._is_disconnected = is_disconnected
        self._url_for = url_for or (lambda path: path.name)

    async def events(self) -> AsyncIterator[Union[Event, KeepAlive]]:
        """Yield job events until the terminal one, with keep-alives in between.

        Closing the iterator early, or cancelling the task consuming it,
        detaches this listener from the job; if it was the last one the job
        is cancelled and its process killed.
        """
        queue = self.manager.subscribe(self.job)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self.keepalive_interval)
                except asyncio.TimeoutError:
                    if self._is_disconnected is not None and await self._is_disconnected():
                        logger.info("Client went away while waiting on job %s", self.job.id)
                        return
                    yield KEEPALIVE
                    continue
                yield event
                if is_terminal_event(event):
                    return
        finally:
            self.manager.unsubscribe(self.job, queue)

    async def outcome(self) -> Optional[Event]:
        """Wait for the terminal event; None if the client disconnected first."""
        async with aclosing(self.events()) as events:
            async for event in events:
                if is_terminal_event(event):
                    return event
        return None

    async def outcome_unless(self, disconnected: Callable[[], Awaitable[object]]) -> Optional[Event]:
        """Like :meth:`outcome`, but give up as soon as ``disconnected()`` returns.

        Leaving early detaches this listener, which cancels the job if
        nobody else is waiting on it.
        """
        waiter = asyncio.ensure_future(self.outcome())
        watcher = asyncio.ensure_future(disconnected())
        try:
            await asyncio.wait({waiter, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (waiter, watcher):
                if not task.done():
                    task.cancel()
            await asyncio.gather(waiter, watcher, return_exceptions=True)
        if waiter.cancelled():
            logger.info("Client went away while waiting on job %s", self.job.id)
            # the waiter may have been cancelled before it ever subscribed
            if not self.job.is_terminal and not self.job.subscribers:
                self.manager.cancel(self.job)
            return None
        return waiter.result()

    async def sse(self) -> AsyncIterator[str]:
        async with aclosing(self.events()) as events:
            async for event in events:
                yield self.format(event)

    def format(self, event: Union[Event, KeepAlive]) -> str:
        if isinstance(event, KeepAlive):
            return ": keep-alive\n\n"
        if isinstance(event, ProgressEvent):
            payload = {"progress": round(event.percent, 1)}
        elif isinstance(event, ErrorEvent):
            payload = {"error": event.message}
        elif isinstance(event, CompletedEvent):
            payload = {"url": self._url_for(event.path)}
        elif isinstance(event, CancelledEvent):
            payload = {"error": CANCELLED_MESSAGE}
        else:
            raise TypeError(f"Unknown event {event!r}")
        return f"data: {json.dumps(payload)}\n\n"
