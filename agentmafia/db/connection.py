"""
Database Connection Manager
===========================

Handles the async connection to the SQLite database that backs the
Conversation Store.
"""

from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from agentmafia.db.models import Base

DB_FILENAME = "agentmafia.db"

# Global session maker
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
_engine: Optional[AsyncEngine] = None


async def init_db(data_dir: Path) -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and create tables if they don't exist.
    The database file is stored as agentmafia.db inside data_dir.
    """
    global _async_session_maker, _engine

    if _engine is not None:
        await _engine.dispose()

    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)

    db_path = data_dir / DB_FILENAME
    db_url = f"sqlite+aiosqlite:///{db_path}"

    # Concurrent branches write through separate connections; wait on locks
    _engine = create_async_engine(db_url, echo=False, connect_args={"timeout": 30})

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _async_session_maker = async_sessionmaker(_engine, expire_on_commit=False)

    return _async_session_maker


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the configured session maker."""
    if _async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_maker


async def close_db() -> None:
    """Dispose the engine and forget the session maker."""
    global _async_session_maker, _engine

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_maker = None
