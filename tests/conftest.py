"""
pytest configuration for workpipe tests.

Adds src directory to Python path for imports and provides shared fixtures.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

from config import reset_config  # noqa: E402
from workpipe.common.store import InMemoryWorkStore  # noqa: E402


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return InMemoryWorkStore(clock=clock)


@pytest.fixture(autouse=True)
def _reset_global_config():
    yield
    reset_config()
