"""Database storage for ledger records."""
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog
from sqlalchemy import Column, DateTime, String, Text, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from papertrade.core.config import database_config
from papertrade.core.errors import PersistenceError, PersistenceWriteError
from papertrade.storage.persistence import PersistenceAdapter

logger = structlog.get_logger(__name__)

Base = declarative_base()


class KeyValueModel(Base):
    """SQLAlchemy model for one persisted ledger document."""
    __tablename__ = 'kv_store'

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


def to_async_url(db_url: str) -> str:
    """Convert a SQLite URL to its aiosqlite form if needed."""
    if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
        return db_url.replace('sqlite:///', 'sqlite+aiosqlite:///', 1)
    return db_url


def sqlite_file_path(db_url: str) -> Optional[Path]:
    """Filesystem path of a file-backed SQLite URL, None otherwise."""
    prefix = "sqlite+aiosqlite:///"
    if not db_url.startswith(prefix):
        return None
    path = db_url[len(prefix):]
    if not path or path == ":memory:":
        return None
    return Path(path)


class SqlPersistence(PersistenceAdapter):
    """Async SQLAlchemy key/value store."""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        db_url = to_async_url(database_url or database_config.database_url)
        self.database_url = db_url
        self.engine: AsyncEngine = create_async_engine(
            db_url,
            echo=database_config.echo_sql if echo is None else echo,
        )
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession)

    async def initialize(self):
        """Create the database directory and tables."""
        db_path = sqlite_file_path(self.database_url)
        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=self.database_url)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    async def get(self, key: str) -> Optional[str]:
        try:
            async with self.session_maker() as session:
                row = await session.get(KeyValueModel, key)
                return row.value if row is not None else None
        except SQLAlchemyError as e:
            logger.error("database.read_error", key=key, error=str(e))
            raise PersistenceError(f"Failed to read {key}: {e}") from e

    async def set(self, key: str, value: str) -> None:
        try:
            async with self.session_maker() as session:
                row = await session.get(KeyValueModel, key)
                if row is None:
                    session.add(KeyValueModel(key=key, value=value))
                else:
                    row.value = value
                    row.updated_at = datetime.utcnow()
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("database.write_error", key=key, error=str(e))
            raise PersistenceWriteError(key, str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            async with self.session_maker() as session:
                await session.execute(delete(KeyValueModel).where(KeyValueModel.key == key))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("database.delete_error", key=key, error=str(e))
            raise PersistenceWriteError(key, str(e)) from e

