import os
import re
import sys
import glob
import signal
import asyncio
import subprocess
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence, Union

from ..models import log, YTDLP_BINARY, FORMAT_UNAVAILABLE_MESSAGE, new_id, to_file_locator
from ..errors import (
    AcquisitionExhausted, DownloaderError, FormatUnavailableError, ProcessControlError
)

PROGRESS_RE = re.compile(
    r'\[download\]\s*(?P<percent>[0-9.]+)%\s+of\s+~?\s*(?P<size>[0-9]+(?:\.[0-9]+)?)\s*(?P<unit>[KMGT]iB)'
)
# Every size is compared in MiB.
UNIT_TO_MIB = {"KiB": 1 / 1024, "MiB": 1.0, "GiB": 1024.0, "TiB": 1024.0 * 1024}
VIDEO_SELECTOR_HINTS = ('video', 'best[', 'b[', 'bc', 'wv')


@dataclass
class ProgressEvent:
    percent: float
    size: float
    unit: str

    @property
    def size_mib(self) -> float:
        return self.size * UNIT_TO_MIB[self.unit]


def parse_event(line: str):
    """Split a bracketed downloader line into (event_type, event_data)."""
    if not line.startswith('['):
        return None
    event_type = line.split(' ', 1)[0].strip('[]')
    event_data = line[line.index(' '):] if ' ' in line else ''
    return event_type, event_data


def parse_progress(line: str) -> Optional[ProgressEvent]:
    match = PROGRESS_RE.search(line)
    if not match:
        return None
    return ProgressEvent(
        percent=float(match.group('percent')),
        size=float(match.group('size')),
        unit=match.group('unit'),
    )


def extension_for_selector(selector: str) -> str:
    if selector == 'best' or any(hint in selector for hint in VIDEO_SELECTOR_HINTS):
        return '.mp4'
    return '.m4a'


def unique_target(work_dir: str, selector: str) -> str:
    extension = extension_for_selector(selector)
    while True:
        candidate = os.path.join(work_dir, new_id() + extension)
        if not os.path.exists(candidate):
            return candidate


def kill_process_tree(pid: int) -> None:
    """Kill the downloader and every helper it spawned."""
    try:
        if sys.platform == "win32":
            subprocess.run(["taskkill", "/pid", str(pid), "/T", "/F"], capture_output=True, check=False)
        else:
            # Spawned with start_new_session, so the group id is the pid.
            os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, OSError) as e:
        log.debug(f"Process tree kill for {pid} failed: {e}")


async def iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield non-empty output lines; progress output is separated by \\r as often as by \\n."""
    buffer = ""
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        buffer += chunk.decode("utf-8", errors="replace")
        *lines, buffer = re.split(r'[\r\n]', buffer)
        for line in lines:
            if line:
                yield line
    if buffer:
        yield buffer


class DownloadHandle:
    """A running downloader process that can be cancelled."""

    def __init__(self, process: asyncio.subprocess.Process):
        self.process = process
        self.cancelled = False

    @property
    def pid(self) -> int:
        return self.process.pid

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        kill_process_tree(self.process.pid)
        try:
            self.process.kill()
        except ProcessLookupError:
            pass


class MediaAcquirer:
    """
    Runs the external downloader over a cascade of format selectors.

    Selectors are tried in order. An attempt moves on to the next selector when
    the downloader reports the format as unavailable, when the process cannot be
    started, or when the announced size grows past the size cap. The last
    selector is never cut short by the cap unless strict_size_cap is set.
    """

    def __init__(self, binary: Union[str, Sequence[str]] = YTDLP_BINARY, strict_size_cap: bool = False):
        self.command = [binary] if isinstance(binary, str) else list(binary)
        self.strict_size_cap = strict_size_cap

    def build_command(self, source_url: str, selector: str, target: str) -> List[str]:
        return [*self.command, source_url, '-f', selector, '-o', target]

    async def start(self, source_url: str, selector: str, target: str) -> DownloadHandle:
        kwargs = {} if sys.platform == "win32" else {"start_new_session": True}
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(source_url, selector, target),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
        except OSError as e:
            raise ProcessControlError(None, process_error=e) from e
        return DownloadHandle(process)

    async def run_attempt(self, source_url: str, selector: str, target: str,
                          size_cap: Optional[float] = None, enforce_cap: bool = True) -> bool:
        """Run one download. Returns False when the size cap cancelled it."""
        handle = await self.start(source_url, selector, target)
        stderr_task = asyncio.create_task(handle.process.stderr.read())
        try:
            async for line in iter_lines(handle.process.stdout):
                event = parse_event(line)
                if not event or event[0] != 'download':
                    continue
                progress = parse_progress(line)
                if not progress:
                    continue
                log.debug(f"{selector}: {progress.percent:.1f}% of {progress.size}{progress.unit}")
                if size_cap and enforce_cap and not handle.cancelled and progress.size_mib > size_cap:
                    log.info(f"File too large ({progress.size}{progress.unit} > {size_cap}MiB), cancelling")
                    handle.cancel()
            code = await handle.process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
        except asyncio.CancelledError:
            handle.cancel()
            stderr_task.cancel()
            raise

        if handle.cancelled:
            return False
        if code != 0:
            if FORMAT_UNAVAILABLE_MESSAGE in stderr:
                raise FormatUnavailableError(code, stderr)
            raise DownloaderError(code, stderr)
        return True

    async def acquire(self, source_url: str, work_dir: str, formats: Sequence[str],
                      size_cap: Optional[float] = None) -> str:
        """Download source_url into work_dir and return a file:// locator for it."""
        if not formats:
            raise ValueError("At least one format selector is required")
        os.makedirs(work_dir, exist_ok=True)
        attempts = 0
        last_error: Optional[Exception] = None

        index = 0
        while index < len(formats):
            selector = formats[index]
            is_last = index + 1 == len(formats)
            target = unique_target(work_dir, selector)
            log.info(f"Try downloading media {source_url} as: {selector}")
            attempts += 1
            try:
                completed = await self.run_attempt(
                    source_url, selector, target, size_cap,
                    enforce_cap=self.strict_size_cap or not is_last
                )
            except (FormatUnavailableError, ProcessControlError) as e:
                log.info(f"Format not available: {selector}" if isinstance(e, FormatUnavailableError)
                         else f"Downloader could not be started: {e}")
                last_error = e
                self._discard(target)
                index += 1
                continue

            if completed:
                log.debug(f"Acquired {source_url} after {attempts} attempt(s)")
                return to_file_locator(target)
            last_error = None
            self._discard(target)
            index += 1

        raise AcquisitionExhausted(source_url, attempts) from last_error

    @staticmethod
    def _discard(target: str) -> None:
        for leftover in glob.glob(glob.escape(target) + '*'):
            try:
                os.remove(leftover)
            except OSError as e:
                log.debug(f"Could not remove {leftover}: {e}")
