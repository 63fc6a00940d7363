"""Pytest fixtures for tracker tests."""

from pathlib import Path

import pytest

from services.tracker.config import TrackerSettings
from services.tracker.tracker import Tracker
from testing_utils import FakeClock, MemorySink


@pytest.fixture
def log_path(tmp_path: Path) -> Path:
    """Path of a game log that does not exist yet."""
    return tmp_path / "UE_game.log"


@pytest.fixture
def settings(tmp_path: Path, log_path: Path) -> TrackerSettings:
    return TrackerSettings(
        log_path=log_path,
        data_dir=tmp_path / "data",
        poll_interval=0.01,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def tracker(settings: TrackerSettings, sink: MemorySink, clock: FakeClock) -> Tracker:
    return Tracker(settings, sink=sink, item_values={}, clock=clock)
