"""
Test configuration: repo root on sys.path, development settings, shared
fixtures (fake clock, in-memory store, seeded establishment).
"""

import asyncio
import os
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Settings are cached on first use; pin them before anything imports tablecall.
os.environ["ENV_MODE"] = "development"
os.environ["DEBUG"] = "false"

from tablecall.services.store import InMemoryCallStore  # noqa: E402
from tests.fixtures import FakeClock  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryCallStore:
    return InMemoryCallStore()


@pytest.fixture
def establishment_id(store, clock) -> str:
    """An open establishment with default settings."""

    async def seed():
        est_id = await store.create_establishment("Pizzaria do Zé", "555-0101")
        await store.set_heartbeat(est_id, True, at=clock.now())
        return est_id

    return asyncio.run(seed())
