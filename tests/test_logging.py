"""Tests for the run_id correlation processor."""

import pytest

from jobtracker.core.logging import add_correlation_id, set_correlation_id


@pytest.fixture(autouse=True)
def clear_correlation_id():
    yield
    set_correlation_id(None)


def test_run_id_added_when_set() -> None:
    set_correlation_id("run-123")

    event = add_correlation_id(None, "info", {"event": "pipeline_run_start"})

    assert event == {"event": "pipeline_run_start", "run_id": "run-123"}


def test_no_run_id_outside_a_run() -> None:
    event = add_correlation_id(None, "info", {"event": "startup"})

    assert "run_id" not in event
