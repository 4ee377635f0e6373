import datetime
import logging
import os
import re

logger = logging.getLogger("eximpilot")

_AGE_RE = re.compile(r"^(\d+)([smhd])$")
_AGE_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def time_range_to_timedelta(time_range: str) -> datetime.timedelta:
    """
    Convert an age string such as Exim prints in ``exim -bp`` to a timedelta.

    Args:
        time_range: Age string in format [0-9]+[smhd] where:
                   - s = seconds
                   - m = minutes
                   - h = hours
                   - d = days

    Returns:
        datetime.timedelta object representing the age

    Raises:
        ValueError: If time_range format is invalid
    """

    match = _AGE_RE.match(time_range.strip())
    if not match:
        raise ValueError(f"Invalid time range: {time_range!r}")
    value, unit = match.groups()
    return datetime.timedelta(seconds=int(value) * _AGE_UNITS[unit])


def format_age(seconds: int | None) -> str:
    """Render a number of seconds the way ``exim -bp`` does."""
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 2 * 3600:
        return f"{seconds // 60}m"
    if seconds < 2 * 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def backoff_delays(base: float, retries: int) -> list[float]:
    """Delays between ``retries`` attempts, doubling from ``base``."""
    return [base * (2**attempt) for attempt in range(max(retries - 1, 0))]


def warn_if_root() -> bool:
    """
    Log a warning when running as root.

    Only the Exim invocation needs elevated rights; the rest of the process
    should run as an unprivileged user with sudo or group access to the
    spool. Returns True when the effective uid is 0.
    """
    geteuid = getattr(os, "geteuid", None)
    if geteuid is None or geteuid() != 0:
        return False
    logger.warning(
        "Running as root; consider an unprivileged user with access to the Exim binary"
    )
    return True


def print_blue(text: str):
    """
    Print text in blue color using ANSI escape codes.

    Args:
        text: The text to print in blue
    """

    print(f"\033[94m{text}\033[0m")


def print_red(text: str):
    """
    Print text in red color using ANSI escape codes.

    Args:
        text: The text to print in red
    """

    print(f"\033[91m{text}\033[0m")
