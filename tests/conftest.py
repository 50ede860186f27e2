"""
Shared fixtures: a fresh database per test in a temporary directory.
"""

import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from agentmafia.db import close_db, init_db
from agentmafia.store import ConversationStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest_asyncio.fixture
async def db(temp_dir):
    """Initialize the database in a temporary data directory."""
    data_dir = temp_dir / ".agentmafia"
    await init_db(data_dir)
    yield data_dir
    await close_db()


@pytest.fixture
def store(db):
    return ConversationStore()
