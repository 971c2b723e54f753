import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from genqueue.config.logging import get_logger
from genqueue.config.settings import Settings
from genqueue.v1.core.exceptions import StorageError

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on the way in and returns naive values; PostgreSQL keeps it.
    Values are normalised to UTC before binding and tagged UTC after loading.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Database:
    """Database connection and session management."""

    def __init__(self, settings: Settings):
        self.settings = settings
        engine_kwargs: dict = {"echo": settings.db_echo}
        if not settings.is_sqlite:
            engine_kwargs.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
            )
        self.engine = create_async_engine(settings.database_url, **engine_kwargs)
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        """Create all tables if they are missing. Safe to call repeatedly."""
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            # Import models so they are registered on Base.metadata
            from genqueue.infra import locks  # noqa: F401
            from genqueue.v1.jobs import models as job_models  # noqa: F401
            from genqueue.v1.polling import models as polling_models  # noqa: F401
            from genqueue.v1.tasks import models as task_models  # noqa: F401

            with storage_errors("ensure_schema"):
                async with self.engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
            self._schema_ready = True
            logger.info("Database schema ready", url=self.engine.url.render_as_string())

    def session(self) -> AsyncSession:
        """Open a new session; use as ``async with database.session() as session``."""
        return self.SessionLocal()

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


@contextmanager
def storage_errors(operation: str, **context) -> Iterator[None]:
    """Re-raise driver and ORM failures as StorageError so callers always see them."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(
            "Storage operation failed", operation=operation, error=str(e), **context
        )
        raise StorageError(
            f"Storage operation '{operation}' failed",
            details={"operation": operation, **context},
        ) from e

