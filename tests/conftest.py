import asyncio
import os
import sys

import pytest

# Ensure src/ is on sys.path so tests run without an editable install
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from shhsignal.bus import MemoryBus  # noqa: E402

FAST_ROOM_KEY_ITERATIONS = 1000


@pytest.fixture
def bus():
    return MemoryBus(room_key_iterations=FAST_ROOM_KEY_ITERATIONS)


@pytest.fixture
def make_bus():
    def factory(**kwargs):
        kwargs.setdefault("room_key_iterations", FAST_ROOM_KEY_ITERATIONS)
        return MemoryBus(**kwargs)

    return factory


@pytest.fixture
def pump():
    """Run the event loop for a number of turns so scheduled callbacks fire."""

    async def run(turns: int = 30):
        for _ in range(turns):
            await asyncio.sleep(0)

    return run
