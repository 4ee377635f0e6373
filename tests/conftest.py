"""Shared test fixtures."""

import logging
import subprocess
from unittest.mock import MagicMock

import pytest

from eximpilot.audit import ActorContext, AuditRecorder
from eximpilot.exim import EximCommand
from eximpilot.store import SQLRepository


@pytest.fixture
def main_log_lines():
    """One message: arrival, a greylisting defer, delivery and completion."""
    return [
        "2024-01-15 10:30:45 1rABCD-123456-78 <= sender@example.com H=mail.example.com [192.168.1.1] P=esmtp S=1234",
        "2024-01-15 10:31:00 1rABCD-123456-78 == rcpt@example.net R=dnslookup T=remote_smtp defer (-44): SMTP error from remote mail server after RCPT TO:<rcpt@example.net>: 451 4.7.1 Greylisted",
        '2024-01-15 10:46:00 1rABCD-123456-78 => rcpt@example.net R=dnslookup T=remote_smtp H=mx.example.net [192.0.2.25] C="250 2.0.0 Ok: queued as 4F2A1"',
        "2024-01-15 10:46:01 1rABCD-123456-78 Completed",
    ]


@pytest.fixture
def repository():
    """In-memory SQLite repository, fresh for every test."""
    repo = SQLRepository("sqlite://")
    yield repo
    repo.close()


@pytest.fixture
def audit(repository):
    return AuditRecorder(repository)


@pytest.fixture
def actor():
    return ActorContext(user_id="alice", ip_address="198.51.100.7")


@pytest.fixture
def exim():
    return EximCommand("/usr/sbin/exim4", timeout=5.0)


def completed(returncode: int = 0, stdout: str = "", stderr: str = ""):
    """Build what ``subprocess.run`` returns."""
    return subprocess.CompletedProcess(
        args=[], returncode=returncode, stdout=stdout, stderr=stderr
    )


@pytest.fixture
def make_completed():
    return completed


@pytest.fixture
def mock_run(monkeypatch):
    """Replace ``subprocess.run`` as seen by the Exim wrapper."""
    run = MagicMock(return_value=completed())
    monkeypatch.setattr("eximpilot.exim.subprocess.run", run)
    return run


@pytest.fixture(autouse=True)
def restore_logging():
    """Undo handlers and propagation changes made by ``init_logger``."""
    names = ("eximpilot", "sqlalchemy.engine")
    saved = {}
    for name in names:
        log = logging.getLogger(name)
        saved[name] = (list(log.handlers), log.propagate, log.level)
    yield
    for name, (handlers, propagate, level) in saved.items():
        log = logging.getLogger(name)
        log.handlers[:] = handlers
        log.propagate = propagate
        log.setLevel(level)
