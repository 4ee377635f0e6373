"""Tests for eximpilot.backlog module."""

from unittest.mock import MagicMock

import pytest

from eximpilot.backlog import BacklogProcessor, deduplicate_events
from eximpilot.ingest import BatchWriter
from eximpilot.models import EventKind, LogSource
from eximpilot.parser import EximParser


@pytest.fixture
def writer(repository):
    return BatchWriter(repository, sleep=MagicMock())


class TestProcessFileBacklog:
    """Tests for process_file_backlog."""

    def test_processes_every_line_in_order(self, tmp_path, repository, writer, main_log_lines):
        """All lines are stored, in file order, even across small chunks."""
        path = tmp_path / "mainlog"
        path.write_text("\n".join(main_log_lines) + "\n")
        processor = BacklogProcessor(writer, chunk_size=16, workers=3, batch_size=3)

        result = processor.process_file_backlog(str(path))

        assert result.ok
        assert result.lines_processed == 4
        events = repository.get_events_for_message("1rABCD-123456-78")
        assert [e.kind for e in events] == [
            EventKind.ARRIVAL,
            EventKind.DEFER,
            EventKind.DELIVERY,
            EventKind.COMPLETED,
        ]

    def test_last_line_without_newline(self, tmp_path, repository, writer, main_log_lines):
        """A final line without a newline is still processed."""
        path = tmp_path / "mainlog"
        path.write_text("\n".join(main_log_lines))
        result = BacklogProcessor(writer).process_file_backlog(str(path))
        assert result.lines_processed == 4
        assert repository.count_events() == 4

    def test_source_from_file_name(self, tmp_path, repository, writer):
        """Reject log files are parsed with the reject rules."""
        path = tmp_path / "rejectlog"
        path.write_text(
            "2024-01-15 10:30:45 rejected connection from [192.168.1.100]: (tcp wrappers)\n"
        )
        BacklogProcessor(writer).process_file_backlog(str(path))
        (event,) = repository.get_events(source=LogSource.REJECT)
        assert event.kind is EventKind.REJECT

    def test_missing_file(self, tmp_path, writer):
        """A missing file is reported, not raised."""
        result = BacklogProcessor(writer).process_file_backlog(str(tmp_path / "nope"))
        assert result.lines_processed == 0
        assert "not found" in result.error

    def test_cancel(self, tmp_path, repository, writer, main_log_lines):
        """A cancelled processor stops before the next batch."""
        path = tmp_path / "mainlog"
        path.write_text("\n".join(main_log_lines) + "\n")
        processor = BacklogProcessor(writer, batch_size=1)
        processor.cancel()
        result = processor.process_file_backlog(str(path))
        assert result.error == "Cancelled"
        assert repository.count_events() == 0

    def test_failed_batches_are_counted(self, tmp_path, main_log_lines):
        """Dropped batches show up in the result."""
        path = tmp_path / "mainlog"
        path.write_text("\n".join(main_log_lines) + "\n")
        writer = MagicMock()
        writer.write.return_value = False
        result = BacklogProcessor(writer, batch_size=2).process_file_backlog(str(path))
        assert result.batches_failed == 2
        assert result.lines_processed == 4
        assert not result.ok


class TestDeduplicate:
    """Tests for in-batch deduplication."""

    def test_duplicates_dropped_when_enabled(self, tmp_path, repository, writer, main_log_lines):
        """Repeated lines in one batch are stored once."""
        path = tmp_path / "mainlog"
        path.write_text("\n".join(main_log_lines + main_log_lines) + "\n")
        BacklogProcessor(writer, deduplicate=True).process_file_backlog(str(path))
        assert repository.count_events() == 4

    def test_duplicates_kept_by_default(self, tmp_path, repository, writer, main_log_lines):
        """Without deduplication every line is stored."""
        path = tmp_path / "mainlog"
        path.write_text("\n".join(main_log_lines + main_log_lines) + "\n")
        BacklogProcessor(writer).process_file_backlog(str(path))
        assert repository.count_events() == 8

    def test_deduplicate_events_keeps_order(self, main_log_lines):
        """The first occurrence of each line wins."""
        parser = EximParser()
        events = [parser.parse_line(line, LogSource.MAIN) for line in main_log_lines[:2] * 2]
        assert [e.raw_line for e in deduplicate_events(events)] == main_log_lines[:2]


class TestProcessBacklogs:
    """Tests for processing several files."""

    def test_results_per_path(self, tmp_path, writer, main_log_lines):
        """Each path gets its own result."""
        path = tmp_path / "mainlog"
        path.write_text("\n".join(main_log_lines) + "\n")
        missing = str(tmp_path / "paniclog")
        results = BacklogProcessor(writer).process_backlogs([str(path), missing])
        assert results[str(path)].lines_processed == 4
        assert results[missing].error is not None
