"""Pytest configuration for the route imagery backend test suite."""

import sys
from pathlib import Path

import pytest

# Ensure the backend package root is on the path so tests can import
# modules directly (e.g. `import route_images`) without a package prefix.
sys.path.insert(0, str(Path(__file__).parent.parent))


class FakeClock:
    """Stands in for asyncio.sleep and records simulated elapsed time."""

    def __init__(self):
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    @property
    def elapsed(self) -> float:
        return sum(self.sleeps)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
