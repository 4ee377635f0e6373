"""Tests for eximpilot.exim module."""

import subprocess

import pytest

from eximpilot.config import QueueConfig
from eximpilot.errors import EximError, ValidationError
from eximpilot.exim import (
    BODY_PREVIEW_CHARS,
    EximCommand,
    parse_queue_listing,
    parse_size,
    parse_spool_headers,
)
from eximpilot.models import MessageStatus
from eximpilot.validation import QueueOperation

QUEUE_OUTPUT = """\
25m  2.9K 1rABCD-123456-78 <sender@example.com>
          rcpt@example.net
        D done@example.net

 4h   512 1rEFGH-654321-90 <> *** frozen ***
          postmaster@example.org

"""

SPOOL_HEADERS = """\
1rABCD-123456-78-H
exim 101 101
<sender@example.com>
1705314645 0
-received_time_usec .123456
043P Received: from mail.example.com ([192.168.1.1])
\tby mx.example.net with esmtp
024F From: sender@example.com
018T To: rcpt@example.net
"""


class TestParsers:
    """Tests for the output parsers."""

    @pytest.mark.parametrize(
        "value,expected",
        [("512", 512), ("2.9K", 2969), ("1M", 1024**2), ("1.5G", int(1.5 * 1024**3))],
    )
    def test_parse_size(self, value, expected):
        assert parse_size(value) == expected

    def test_parse_queue_listing(self):
        """Messages, recipients and the frozen flag are read."""
        listing = parse_queue_listing(QUEUE_OUTPUT)

        assert listing.total == 2
        assert listing.frozen == 1
        first, second = listing.messages
        assert first.message_id == "1rABCD-123456-78"
        assert first.age_seconds == 25 * 60
        assert first.size == 2969
        assert first.recipients == ["rcpt@example.net"]
        assert first.delivered_recipients == ["done@example.net"]
        assert first.status is MessageStatus.QUEUED
        assert second.sender == ""
        assert second.frozen
        assert second.status is MessageStatus.FROZEN
        assert listing.oldest_message_age == 4 * 3600
        assert listing.get("1rEFGH-654321-90") is second
        assert listing.get("1rZZZZ-000000-00") is None

    def test_empty_queue(self):
        listing = parse_queue_listing("")
        assert listing.total == 0
        assert listing.oldest_message_age is None

    def test_parse_spool_headers(self):
        """Only header lines are kept, continuations joined."""
        headers = parse_spool_headers(SPOOL_HEADERS)
        assert headers == [
            "Received: from mail.example.com ([192.168.1.1])\n\tby mx.example.net with esmtp",
            "From: sender@example.com",
            "To: rcpt@example.net",
        ]


class TestRun:
    """Tests for running the binary."""

    def test_fixed_argv(self, exim, mock_run):
        """Arguments are a list and no shell is used."""
        result = exim.run_operation(QueueOperation.THAW, "1rABCD-123456-78")
        assert result.ok
        mock_run.assert_called_once()
        assert mock_run.call_args.args[0] == ["/usr/sbin/exim4", "-Mt", "1rABCD-123456-78"]
        assert mock_run.call_args.kwargs["shell"] is False
        assert mock_run.call_args.kwargs["timeout"] == 5.0

    def test_nonzero_exit(self, exim, mock_run, make_completed):
        mock_run.return_value = make_completed(2, stdout="out", stderr="err")
        result = exim.run("-bp")
        assert not result.ok
        assert result.returncode == 2
        assert result.output == "err\nout"

    def test_timeout(self, exim, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(
            cmd="exim", timeout=5.0, output=b"partial"
        )
        result = exim.run("-bp")
        assert result.timed_out
        assert not result.ok
        assert result.stdout == "partial"

    def test_os_error(self, exim, mock_run):
        mock_run.side_effect = PermissionError("Permission denied")
        result = exim.run("-bp")
        assert not result.ok
        assert "Permission denied" in result.error


class TestListQueue:
    """Tests for list_queue."""

    def test_list(self, exim, mock_run, make_completed):
        mock_run.return_value = make_completed(0, stdout=QUEUE_OUTPUT)
        assert exim.list_queue().total == 2
        assert mock_run.call_args.args[0] == ["/usr/sbin/exim4", "-bp"]

    def test_failure_raises(self, exim, mock_run, make_completed):
        mock_run.return_value = make_completed(1, stderr="exim: permission denied")
        with pytest.raises(EximError, match="permission denied"):
            exim.list_queue()


class TestInspectMessage:
    """Tests for inspect_message."""

    def test_inspect(self, exim, mock_run, make_completed):
        """Headers, a truncated body preview and the message log are read."""
        body = "x" * (BODY_PREVIEW_CHARS + 10)
        mock_run.side_effect = [
            make_completed(0, stdout=SPOOL_HEADERS),
            make_completed(0, stdout=body),
            make_completed(0, stdout="2024-01-15 10:31:00 == rcpt@example.net defer"),
        ]
        details = exim.inspect_message("1rABCD-123456-78")
        assert details.headers[1] == "From: sender@example.com"
        assert len(details.body_preview) == BODY_PREVIEW_CHARS
        assert details.body_truncated
        assert "defer" in details.message_log
        flags = [c.args[0][1] for c in mock_run.call_args_list]
        assert flags == ["-Mvh", "-Mvb", "-Mvl"]

    def test_missing_parts(self, exim, mock_run, make_completed):
        """A missing body or message log is not an error."""
        mock_run.side_effect = [
            make_completed(0, stdout=SPOOL_HEADERS),
            make_completed(1, stderr="no body"),
            make_completed(1, stderr="no log"),
        ]
        details = exim.inspect_message("1rABCD-123456-78")
        assert details.body_preview is None
        assert details.message_log is None

    def test_unknown_message(self, exim, mock_run, make_completed):
        mock_run.return_value = make_completed(1, stderr="spool file not found")
        with pytest.raises(EximError):
            exim.inspect_message("1rABCD-123456-78")

    def test_invalid_id(self, exim, mock_run):
        """Invalid ids never reach the binary."""
        with pytest.raises(ValidationError):
            exim.inspect_message("1rABCD;id")
        mock_run.assert_not_called()


class TestFromConfig:
    def test_from_config(self):
        exim = EximCommand.from_config(
            QueueConfig(exim_path="/usr/local/sbin/exim", command_timeout=7)
        )
        assert exim.exim_path == "/usr/local/sbin/exim"
        assert exim.timeout == 7
