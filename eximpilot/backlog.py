import logging
import os
import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial

from eximpilot.config import BacklogConfig
from eximpilot.ingest import BatchWriter
from eximpilot.models import LogEvent
from eximpilot.parser import EximParser, log_source_for_path

logger = logging.getLogger("eximpilot.backlog")


@dataclass
class BacklogResult:
    """Outcome of processing one historical log file.

    Attributes:
        path: The file that was processed
        lines_processed: Lines read and handed to the writer
        error: Why processing stopped early, if it did
        batches_failed: Batches the writer had to drop
    """

    path: str
    lines_processed: int = 0
    error: str | None = None
    batches_failed: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.batches_failed == 0


def deduplicate_events(events: list[LogEvent]) -> list[LogEvent]:
    """Drop events whose raw line already appeared earlier in the batch."""
    seen: set[str] = set()
    unique = []
    for event in events:
        if event.raw_line in seen:
            continue
        seen.add(event.raw_line)
        unique.append(event)
    return unique


class BacklogProcessor:
    """
    Processes existing log files from the beginning.

    The file is read in ``chunk_size`` byte chunks and split into lines.
    Lines are parsed by a pool of ``workers`` threads, keeping file order,
    and every ``batch_size`` lines go through the shared ``BatchWriter``.
    """

    def __init__(
        self,
        writer: BatchWriter,
        parser: EximParser | None = None,
        chunk_size: int = 65536,
        workers: int = 4,
        batch_size: int = 1000,
        deduplicate: bool = False,
    ):
        self.writer = writer
        self.parser = parser or EximParser()
        self.chunk_size = chunk_size
        self.workers = workers
        self.batch_size = batch_size
        self.deduplicate = deduplicate
        self._cancel_event = threading.Event()

    @classmethod
    def from_config(
        cls,
        config: BacklogConfig,
        writer: BatchWriter,
        parser: EximParser | None = None,
    ) -> "BacklogProcessor":
        return cls(
            writer,
            parser=parser,
            chunk_size=config.chunk_size,
            workers=config.workers,
            batch_size=config.batch_size,
            deduplicate=config.deduplicate,
        )

    def cancel(self) -> None:
        """Stop after the batch currently being written."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def process_file_backlog(self, path: str) -> BacklogResult:
        """
        Parse and store every line of a log file.

        Args:
            path: Log file to read; its name decides the log source

        Returns:
            BacklogResult: Lines processed, and the error if processing stopped
        """
        result = BacklogResult(path=path)
        if not os.path.isfile(path):
            result.error = f"File not found: {path}"
            logger.warning(result.error)
            return result

        source = log_source_for_path(path)
        parse = partial(self.parser.parse_line, source=source)
        logger.info("Processing backlog of %s as %s log", path, source.value)

        try:
            with ThreadPoolExecutor(
                max_workers=self.workers, thread_name_prefix="backlog"
            ) as executor:
                for lines in self._read_batches(path):
                    if self._cancel_event.is_set():
                        result.error = "Cancelled"
                        logger.info("Backlog processing of %s cancelled", path)
                        break
                    events = list(executor.map(parse, lines))
                    if self.deduplicate:
                        events = deduplicate_events(events)
                    if not self.writer.write(events):
                        result.batches_failed += 1
                    result.lines_processed += len(lines)
        except OSError as e:
            result.error = f"Error reading {path}: {e}"
            logger.error(result.error)

        logger.info(
            "Backlog of %s: %d lines processed, %d batches failed",
            path,
            result.lines_processed,
            result.batches_failed,
        )
        return result

    def process_backlogs(self, paths: list[str]) -> dict[str, BacklogResult]:
        """Process several files one after another."""
        results = {}
        for path in paths:
            if self._cancel_event.is_set():
                results[path] = BacklogResult(path=path, error="Cancelled")
                continue
            results[path] = self.process_file_backlog(path)
        return results

    def _read_batches(self, path: str) -> Iterator[list[str]]:
        batch: list[str] = []
        for line in self._read_lines(path):
            batch.append(line)
            if len(batch) >= self.batch_size:
                yield batch
                batch = []
        if batch:
            yield batch

    def _read_lines(self, path: str) -> Iterator[str]:
        buffer = b""
        with open(path, "rb") as f:
            while True:
                chunk = f.read(self.chunk_size)
                if not chunk:
                    break
                buffer += chunk
                *lines, buffer = buffer.split(b"\n")
                for line in lines:
                    text = line.decode("utf-8", errors="replace").rstrip("\r")
                    if text:
                        yield text
        # A historical file may end without a newline
        if buffer.strip():
            yield buffer.decode("utf-8", errors="replace").rstrip("\r")
