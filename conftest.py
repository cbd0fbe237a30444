import time

import pytest


@pytest.fixture
def set_timezone(monkeypatch):
    """Switch the process-local timezone (POSIX TZ string) for one test."""
    def apply(tz: str):
        monkeypatch.setenv("TZ", tz)
        time.tzset()

    yield apply
    monkeypatch.undo()
    time.tzset()


@pytest.fixture
def utc_timezone(set_timezone):
    set_timezone("UTC")
