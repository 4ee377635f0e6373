import logging
import os
import threading
from collections.abc import Callable
from enum import Enum
from typing import BinaryIO

from eximpilot.models import LogSource
from eximpilot.parser import log_source_for_path

logger = logging.getLogger("eximpilot.watcher")

LineSink = Callable[[str, LogSource], None]

_READ_SIZE = 65536


class FileState(Enum):
    IDLE = "idle"
    TAILING = "tailing"
    ROTATION_DETECTED = "rotation_detected"
    REOPENING = "reopening"
    STOPPED = "stopped"


class _TailedFile:
    """Book-keeping for one followed path."""

    def __init__(self, path: str, source: LogSource):
        self.path = path
        self.source = source
        self.state = FileState.IDLE
        self.handle: BinaryIO | None = None
        self.identity: tuple[int, int] | None = None
        self.position = 0
        self.buffer = b""
        self.open_failures = 0
        self.opened_once = False


class FileWatcher:
    """
    Follows Exim log files and hands every complete line to a sink.

    Each path gets its own worker thread. A worker polls its file every
    ``poll_interval`` seconds and emits only newline-terminated lines; a
    trailing partial line waits in a buffer until the rest is written.

    Rotation is noticed when the path now names a different file (device or
    inode changed) or the file shrank. The worker then drains what is left in
    the old handle and reopens the path from the beginning. A missing or
    unreadable file is retried every ``retry_interval`` seconds.
    """

    def __init__(
        self,
        paths: list[str],
        sink: LineSink,
        poll_interval: float = 0.5,
        retry_interval: float = 5.0,
        start_at_end: bool = True,
    ):
        self.sink = sink
        self.poll_interval = poll_interval
        self.retry_interval = retry_interval
        self.start_at_end = start_at_end
        self._files = [
            _TailedFile(path, log_source_for_path(path)) for path in paths
        ]
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            return
        self._stop_event.clear()
        for tailed in self._files:
            thread = threading.Thread(
                target=self._watch,
                args=(tailed,),
                name=f"watcher-{os.path.basename(tailed.path)}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Watching %d log files", len(self._files))

    def stop(self, timeout: float | None = None) -> None:
        """Ask every worker to finish its current line and exit."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Watcher thread %s did not stop in time", thread.name)
        self._threads = []

    def status(self) -> dict[str, FileState]:
        return {tailed.path: tailed.state for tailed in self._files}

    def _watch(self, tailed: _TailedFile) -> None:
        try:
            while not self._stop_event.is_set():
                if tailed.handle is None:
                    # A file that shows up after startup is read in full
                    at_end = (
                        self.start_at_end
                        and not tailed.opened_once
                        and tailed.open_failures == 0
                    )
                    if not self._open(tailed, at_end=at_end):
                        self._stop_event.wait(self.retry_interval)
                        continue

                try:
                    self._read_available(tailed)
                    rotated = self._rotated(tailed)
                except OSError as e:
                    logger.warning("Error reading %s: %s", tailed.path, e)
                    self._close(tailed)
                    self._stop_event.wait(self.retry_interval)
                    continue

                if rotated:
                    self._reopen_after_rotation(tailed)
                    continue

                self._stop_event.wait(self.poll_interval)
        finally:
            self._close(tailed)
            tailed.state = FileState.STOPPED

    def _open(self, tailed: _TailedFile, at_end: bool) -> bool:
        try:
            handle = open(tailed.path, "rb")
        except OSError as e:
            # Only the first failure of a streak is worth a warning
            log = logger.warning if tailed.open_failures == 0 else logger.debug
            log("Cannot open %s, retrying in %ss: %s", tailed.path, self.retry_interval, e)
            tailed.open_failures += 1
            tailed.state = FileState.REOPENING
            return False

        stat = os.fstat(handle.fileno())
        if at_end:
            handle.seek(0, os.SEEK_END)
        tailed.handle = handle
        tailed.identity = (stat.st_dev, stat.st_ino)
        tailed.position = handle.tell()
        tailed.buffer = b""
        tailed.open_failures = 0
        tailed.opened_once = True
        tailed.state = FileState.TAILING
        logger.info("Tailing %s from offset %d", tailed.path, tailed.position)
        return True

    def _close(self, tailed: _TailedFile) -> None:
        if tailed.handle is not None:
            tailed.handle.close()
        tailed.handle = None
        tailed.identity = None

    def _rotated(self, tailed: _TailedFile) -> bool:
        try:
            stat = os.stat(tailed.path)
        except FileNotFoundError:
            # Renamed away and not recreated yet; keep reading the old handle
            return False
        if (stat.st_dev, stat.st_ino) != tailed.identity:
            logger.info("Rotation detected for %s (file replaced)", tailed.path)
            return True
        if stat.st_size < tailed.position:
            logger.info("Rotation detected for %s (file truncated)", tailed.path)
            return True
        return False

    def _reopen_after_rotation(self, tailed: _TailedFile) -> None:
        tailed.state = FileState.ROTATION_DETECTED
        try:
            self._read_available(tailed)
        except OSError as e:
            logger.warning("Error draining rotated %s: %s", tailed.path, e)
        if tailed.buffer:
            logger.warning(
                "Discarding %d bytes of incomplete line from rotated %s",
                len(tailed.buffer),
                tailed.path,
            )
        self._close(tailed)
        tailed.state = FileState.REOPENING
        self._open(tailed, at_end=False)

    def _read_available(self, tailed: _TailedFile) -> None:
        while not self._stop_event.is_set():
            chunk = tailed.handle.read(_READ_SIZE)
            if not chunk:
                return
            tailed.position = tailed.handle.tell()
            tailed.buffer += chunk
            *lines, tailed.buffer = tailed.buffer.split(b"\n")
            for line in lines:
                if self._stop_event.is_set():
                    return
                self._emit(tailed, line)

    def _emit(self, tailed: _TailedFile, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").rstrip("\r")
        if not text:
            return
        try:
            self.sink(text, tailed.source)
        except Exception:
            logger.exception("Sink failed for line from %s", tailed.path)
