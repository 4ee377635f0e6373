"""Tests for eximpilot.utils module."""

import datetime
import logging

import pytest

from eximpilot.utils import (
    backoff_delays,
    format_age,
    print_blue,
    print_red,
    time_range_to_timedelta,
    warn_if_root,
)


class TestTimeRangeToTimedelta:
    """Tests for time_range_to_timedelta function."""

    @pytest.mark.parametrize(
        "time_range,expected",
        [
            ("45s", datetime.timedelta(seconds=45)),
            ("25m", datetime.timedelta(minutes=25)),
            ("3h", datetime.timedelta(hours=3)),
            ("5d", datetime.timedelta(days=5)),
            (" 7m ", datetime.timedelta(minutes=7)),
        ],
    )
    def test_valid(self, time_range, expected):
        assert time_range_to_timedelta(time_range) == expected

    @pytest.mark.parametrize("time_range", ["", "10", "1x", "m5", "1.5h"])
    def test_invalid(self, time_range):
        """Malformed ages raise ValueError."""
        with pytest.raises(ValueError):
            time_range_to_timedelta(time_range)


class TestFormatAge:
    """Tests for format_age function."""

    @pytest.mark.parametrize(
        "seconds,expected",
        [
            (None, "-"),
            (0, "0s"),
            (59, "59s"),
            (60, "1m"),
            (7199, "119m"),
            (7200, "2h"),
            (2 * 86400, "2d"),
        ],
    )
    def test_format(self, seconds, expected):
        assert format_age(seconds) == expected


class TestBackoffDelays:
    """Tests for backoff_delays function."""

    def test_doubles(self):
        assert backoff_delays(0.1, 4) == [0.1, 0.2, 0.4]

    def test_single_attempt_has_no_delay(self):
        assert backoff_delays(0.1, 1) == []
        assert backoff_delays(0.1, 0) == []


class TestWarnIfRoot:
    """Tests for warn_if_root function."""

    def test_root(self, monkeypatch, caplog):
        """Running as root logs a warning."""
        monkeypatch.setattr("eximpilot.utils.os.geteuid", lambda: 0, raising=False)
        with caplog.at_level(logging.WARNING, logger="eximpilot"):
            assert warn_if_root() is True
        assert "root" in caplog.text

    def test_not_root(self, monkeypatch):
        monkeypatch.setattr("eximpilot.utils.os.geteuid", lambda: 1000, raising=False)
        assert warn_if_root() is False


class TestPrintFunctions:
    """Tests for print_blue and print_red functions."""

    def test_print_blue(self, capsys):
        """print_blue outputs text with blue ANSI codes."""
        print_blue("test message")
        captured = capsys.readouterr()
        assert captured.out == "\033[94mtest message\033[0m\n"

    def test_print_red(self, capsys):
        """print_red outputs text with red ANSI codes."""
        print_red("error message")
        captured = capsys.readouterr()
        assert captured.out == "\033[91merror message\033[0m\n"
