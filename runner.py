"""Child process plumbing for yt-dlp."""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from errors import ProcessFailureError
from settings import Settings

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 64
WATCH_URL = "https://www.youtube.com/watch?v={media_ref}"

OutputCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class ExitStatus:
    returncode: int
    signal: Optional[int] = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class ProcessHandle:
    """A running child process whose output is pushed to a callback.

    ``on_output(stream_name, text)`` is called from reader tasks as soon as
    decoded text is available on stdout or stderr.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        on_output: OutputCallback,
        timeout: Optional[float] = None,
    ) -> None:
        self.process = process
        self.pid = process.pid
        self.timed_out = False
        self._on_output = on_output
        self._killed = False
        loop = asyncio.get_running_loop()
        self._readers = [
            loop.create_task(self._pump("stdout", process.stdout)),
            loop.create_task(self._pump("stderr", process.stderr)),
        ]
        self._timer = loop.call_later(timeout, self._expire) if timeout else None

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def kill(self) -> None:
        """Kill the process (and its process group). Safe to call repeatedly."""
        if self._killed or self.process.returncode is not None:
            return
        self._killed = True
        logger.info("Killing process pid=%s", self.pid)
        try:
            if os.name != "nt":
                # yt-dlp spawns ffmpeg; take the whole session down with it
                os.killpg(self.pid, signal.SIGKILL)
            else:
                self.process.kill()
        except ProcessLookupError:
            pass

    async def wait(self) -> ExitStatus:
        try:
            returncode = await self.process.wait()
            await asyncio.gather(*self._readers)
        finally:
            if self._timer is not None:
                self._timer.cancel()
        return ExitStatus(
            returncode=returncode,
            signal=-returncode if returncode < 0 else None,
            timed_out=self.timed_out,
        )

    def _expire(self) -> None:
        if self.process.returncode is not None:
            return
        logger.warning("Process exceeded its time budget pid=%s", self.pid)
        self.timed_out = True
        self.kill()

    async def _pump(self, name: str, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                self._emit(name, text)
            if not chunk:
                break

    def _emit(self, name: str, text: str) -> None:
        try:
            self._on_output(name, text)
        except Exception:
            # A broken handler must not stop draining the pipe
            logger.exception("Output handler failed pid=%s stream=%s", self.pid, name)


class SubprocessRunner:
    async def spawn(
        self,
        command: Sequence[str],
        on_output: OutputCallback,
        timeout: Optional[float] = None,
    ) -> ProcessHandle:
        kwargs: Dict[str, Any] = {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
        }
        if os.name != "nt":
            kwargs["start_new_session"] = True
        try:
            process = await asyncio.create_subprocess_exec(*command, **kwargs)
        except FileNotFoundError as exc:
            raise ProcessFailureError(f"{command[0]} is not installed or not in PATH") from exc
        except OSError as exc:
            raise ProcessFailureError(f"Failed to start {command[0]}: {exc}") from exc
        logger.info("Spawned process pid=%s cmd=%s", process.pid, command[0])
        return ProcessHandle(process, on_output, timeout)


def build_fetch_command(media_ref: str, variant: Any, output_path: Path, settings: Settings) -> List[str]:
    """yt-dlp argv that downloads ``media_ref`` as ``variant`` into ``output_path``."""
    # The output template is expanded by yt-dlp, so literal percent signs must be doubled
    template = str(output_path.with_suffix("")).replace("%", "%%") + ".%(ext)s"
    cmd = [
        settings.ytdlp_binary,
        "--newline",
        "--progress",
        "--no-playlist",
        "--no-warnings",
        "-o",
        template,
    ]
    if settings.rate_limit:
        cmd.extend(["--limit-rate", settings.rate_limit])

    if variant.kind == "audio":
        cmd.extend(
            [
                "-f",
                "bestaudio/best",
                "--extract-audio",
                "--audio-format",
                "mp3",
                "--audio-quality",
                "0" if variant.quality == "best" else f"{variant.quality}K",
            ]
        )
    else:
        if variant.quality == "best":
            selector = "bestvideo+bestaudio/best"
        else:
            height = variant.quality
            selector = f"bestvideo[height<={height}]+bestaudio/best[height<={height}]"
        # single-file fallbacks are not merged, so remux those to mp4 as well
        cmd.extend(["-f", selector, "--merge-output-format", "mp4", "--remux-video", "mp4"])

    cmd.append(WATCH_URL.format(media_ref=media_ref))
    return cmd
