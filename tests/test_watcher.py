"""Tests for eximpilot.watcher module."""

import os
import threading
import time

import pytest

from eximpilot.models import LogSource
from eximpilot.watcher import FileState, FileWatcher


class Collector:
    """Thread-safe sink that remembers every line."""

    def __init__(self):
        self.lines = []
        self._lock = threading.Lock()

    def __call__(self, line, source):
        with self._lock:
            self.lines.append((line, source))

    def texts(self):
        with self._lock:
            return [line for line, _ in self.lines]


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def append(path, text):
    with open(path, "a") as f:
        f.write(text)


@pytest.fixture
def collector():
    return Collector()


@pytest.fixture
def make_watcher(collector):
    watchers = []

    def factory(paths, **kwargs):
        kwargs.setdefault("poll_interval", 0.02)
        kwargs.setdefault("retry_interval", 0.05)
        watcher = FileWatcher([str(p) for p in paths], collector, **kwargs)
        watchers.append(watcher)
        watcher.start()
        return watcher

    yield factory
    for watcher in watchers:
        watcher.stop(timeout=2.0)


class TestTailing:
    """Tests for following a single file."""

    def test_starts_at_end(self, tmp_path, collector, make_watcher):
        """Existing content is skipped; new lines are emitted with the source."""
        path = tmp_path / "mainlog"
        path.write_text("old line\n")
        watcher = make_watcher([path])
        assert wait_for(lambda: watcher.status()[str(path)] is FileState.TAILING)

        append(path, "new line\n")
        assert wait_for(lambda: collector.texts() == ["new line"])
        assert collector.lines[0][1] is LogSource.MAIN

    def test_start_at_beginning(self, tmp_path, collector, make_watcher):
        """With start_at_end off, existing lines are read."""
        path = tmp_path / "rejectlog"
        path.write_text("first\nsecond\n")
        make_watcher([path], start_at_end=False)
        assert wait_for(lambda: collector.texts() == ["first", "second"])
        assert collector.lines[0][1] is LogSource.REJECT

    def test_partial_line_is_buffered(self, tmp_path, collector, make_watcher):
        """A line is only emitted once its newline arrives."""
        path = tmp_path / "mainlog"
        path.write_text("")
        watcher = make_watcher([path])
        assert wait_for(lambda: watcher.status()[str(path)] is FileState.TAILING)

        append(path, "half a li")
        time.sleep(0.2)
        assert collector.texts() == []
        append(path, "ne\n")
        assert wait_for(lambda: collector.texts() == ["half a line"])

    def test_sink_errors_do_not_stop_the_watcher(self, tmp_path, make_watcher):
        """A failing sink call is logged and tailing continues."""
        path = tmp_path / "mainlog"
        path.write_text("")
        seen = []

        def sink(line, source):
            seen.append(line)
            if line == "bad":
                raise RuntimeError("sink failed")

        watcher = FileWatcher([str(path)], sink, poll_interval=0.02)
        watcher.start()
        try:
            assert wait_for(lambda: watcher.status()[str(path)] is FileState.TAILING)
            append(path, "bad\ngood\n")
            assert wait_for(lambda: seen == ["bad", "good"])
        finally:
            watcher.stop(timeout=2.0)


class TestRotation:
    """Tests for log rotation."""

    def test_rename_and_recreate(self, tmp_path, collector, make_watcher):
        """Lines on both sides of a rename rotation are read exactly once."""
        path = tmp_path / "mainlog"
        path.write_text("")
        watcher = make_watcher([path])
        assert wait_for(lambda: watcher.status()[str(path)] is FileState.TAILING)

        append(path, "before\n")
        assert wait_for(lambda: collector.texts() == ["before"])
        append(path, "last old\n")
        os.rename(path, tmp_path / "mainlog.1")
        path.write_text("first new\n")

        assert wait_for(
            lambda: collector.texts() == ["before", "last old", "first new"]
        )
        time.sleep(0.2)
        assert collector.texts() == ["before", "last old", "first new"]

    def test_truncation(self, tmp_path, collector, make_watcher):
        """A truncated file is read again from the start."""
        path = tmp_path / "mainlog"
        path.write_text("")
        watcher = make_watcher([path])
        assert wait_for(lambda: watcher.status()[str(path)] is FileState.TAILING)

        append(path, "a fairly long line before truncation\n")
        assert wait_for(lambda: len(collector.texts()) == 1)
        with open(path, "w") as f:
            f.write("short\n")
        assert wait_for(lambda: collector.texts()[-1:] == ["short"])


class TestMissingFiles:
    """Tests for files that do not exist yet."""

    def test_missing_file_is_retried(self, tmp_path, collector, make_watcher):
        """A missing file is retried and read in full once it appears."""
        path = tmp_path / "paniclog"
        watcher = make_watcher([path])
        assert wait_for(lambda: watcher.status()[str(path)] is FileState.REOPENING)

        path.write_text("exim: panic: late\n")
        assert wait_for(lambda: collector.texts() == ["exim: panic: late"])
        assert collector.lines[0][1] is LogSource.PANIC

    def test_one_missing_file_does_not_block_others(
        self, tmp_path, collector, make_watcher
    ):
        """Other files are tailed while one is missing."""
        present = tmp_path / "mainlog"
        present.write_text("")
        watcher = make_watcher([tmp_path / "missing-rejectlog", present])
        assert wait_for(lambda: watcher.status()[str(present)] is FileState.TAILING)
        append(present, "still here\n")
        assert wait_for(lambda: collector.texts() == ["still here"])

    def test_stop(self, tmp_path, collector):
        """Stopped workers report the stopped state."""
        path = tmp_path / "mainlog"
        path.write_text("")
        watcher = FileWatcher([str(path)], collector, poll_interval=0.02)
        watcher.start()
        assert wait_for(lambda: watcher.status()[str(path)] is FileState.TAILING)
        watcher.stop(timeout=2.0)
        assert watcher.status()[str(path)] is FileState.STOPPED
