"""
Advisory key/token/TTL locks used to keep scheduler ticks from overlapping.

A lock is acquired by atomically inserting a row (or map entry) for the key, or by taking
over an entry whose ``expires_at`` has passed. Release and extend only touch the entry when
the caller presents the token it acquired with, so a tick whose lock expired cannot clear a
lock that a later tick now holds.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import String, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from genqueue.config.logging import get_logger
from genqueue.infra.clock import Clock, utcnow
from genqueue.infra.database import Base, Database, UTCDateTime, storage_errors

logger = get_logger(__name__)


class JobLock(Base):
    """Lock row, one per key."""

    __tablename__ = "job_locks"

    key: Mapped[str] = mapped_column(String(191), primary_key=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


@dataclass(frozen=True)
class LockInfo:
    key: str
    token: str
    acquired_at: datetime
    expires_at: datetime
    is_expired: bool


class LockBackend(Protocol):
    async def acquire(self, key: str, token: str, now: datetime, expires_at: datetime) -> bool:
        ...

    async def release(self, key: str, token: str) -> bool:
        ...

    async def extend(self, key: str, token: str, now: datetime, expires_at: datetime) -> bool:
        ...

    async def get(self, key: str) -> tuple[str, datetime, datetime] | None:
        ...

    async def delete_expired(self, now: datetime) -> int:
        ...


class DatabaseLockBackend:
    """Locks stored in the ``job_locks`` table; shared by every process on the database."""

    def __init__(self, database: Database):
        self.database = database

    async def acquire(self, key: str, token: str, now: datetime, expires_at: datetime) -> bool:
        await self.database.ensure_schema()
        with storage_errors("lock_acquire", key=key):
            async with self.database.session() as session:
                session.add(
                    JobLock(key=key, token=token, acquired_at=now, expires_at=expires_at)
                )
                try:
                    await session.commit()
                    return True
                except IntegrityError:
                    await session.rollback()

                # Key exists; take it over only if the holder's lease ran out
                result = await session.execute(
                    update(JobLock)
                    .where(JobLock.key == key, JobLock.expires_at <= now)
                    .values(token=token, acquired_at=now, expires_at=expires_at)
                )
                await session.commit()
                return result.rowcount == 1

    async def release(self, key: str, token: str) -> bool:
        await self.database.ensure_schema()
        with storage_errors("lock_release", key=key):
            async with self.database.session() as session:
                result = await session.execute(
                    delete(JobLock).where(JobLock.key == key, JobLock.token == token)
                )
                await session.commit()
                return result.rowcount == 1

    async def extend(self, key: str, token: str, now: datetime, expires_at: datetime) -> bool:
        await self.database.ensure_schema()
        with storage_errors("lock_extend", key=key):
            async with self.database.session() as session:
                result = await session.execute(
                    update(JobLock)
                    .where(
                        JobLock.key == key,
                        JobLock.token == token,
                        JobLock.expires_at > now,
                    )
                    .values(expires_at=expires_at)
                )
                await session.commit()
                return result.rowcount == 1

    async def get(self, key: str) -> tuple[str, datetime, datetime] | None:
        await self.database.ensure_schema()
        with storage_errors("lock_get", key=key):
            async with self.database.session() as session:
                row = await session.scalar(select(JobLock).where(JobLock.key == key))
                if row is None:
                    return None
                return row.token, row.acquired_at, row.expires_at

    async def delete_expired(self, now: datetime) -> int:
        await self.database.ensure_schema()
        with storage_errors("lock_cleanup"):
            async with self.database.session() as session:
                result = await session.execute(
                    delete(JobLock).where(JobLock.expires_at <= now)
                )
                await session.commit()
                return result.rowcount or 0


class MemoryLockBackend:
    """Process-local locks for tests and single-process development."""

    def __init__(self):
        self._entries: dict[str, tuple[str, datetime, datetime]] = {}
        self._guard = asyncio.Lock()

    async def acquire(self, key: str, token: str, now: datetime, expires_at: datetime) -> bool:
        async with self._guard:
            current = self._entries.get(key)
            if current is not None and current[2] > now:
                return False
            self._entries[key] = (token, now, expires_at)
            return True

    async def release(self, key: str, token: str) -> bool:
        async with self._guard:
            current = self._entries.get(key)
            if current is None or current[0] != token:
                return False
            del self._entries[key]
            return True

    async def extend(self, key: str, token: str, now: datetime, expires_at: datetime) -> bool:
        async with self._guard:
            current = self._entries.get(key)
            if current is None or current[0] != token or current[2] <= now:
                return False
            self._entries[key] = (token, current[1], expires_at)
            return True

    async def get(self, key: str) -> tuple[str, datetime, datetime] | None:
        return self._entries.get(key)

    async def delete_expired(self, now: datetime) -> int:
        async with self._guard:
            expired = [key for key, entry in self._entries.items() if entry[2] <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)


class DistributedLock:
    """Compare-and-set lock facade over a backend."""

    def __init__(self, backend: LockBackend, clock: Clock = utcnow):
        self.backend = backend
        self.clock = clock

    @staticmethod
    def new_token() -> str:
        return uuid.uuid4().hex

    async def acquire(self, key: str, token: str, ttl_s: float) -> bool:
        """Acquire ``key`` for ``ttl_s`` seconds. Returns False while another holder's lease is live."""
        now = self.clock()
        acquired = await self.backend.acquire(key, token, now, now + timedelta(seconds=ttl_s))
        if acquired:
            logger.debug("Lock acquired", key=key, ttl_s=ttl_s)
        else:
            logger.debug("Lock busy", key=key)
        return acquired

    async def release(self, key: str, token: str) -> bool:
        """Release ``key`` if ``token`` still owns it. A foreign token leaves the lock untouched."""
        released = await self.backend.release(key, token)
        if not released:
            logger.warning("Lock release ignored, token does not own the lock", key=key)
        return released

    async def extend(self, key: str, token: str, ttl_s: float) -> bool:
        now = self.clock()
        return await self.backend.extend(key, token, now, now + timedelta(seconds=ttl_s))

    async def get_info(self, key: str) -> LockInfo | None:
        entry = await self.backend.get(key)
        if entry is None:
            return None
        token, acquired_at, expires_at = entry
        return LockInfo(
            key=key,
            token=token,
            acquired_at=acquired_at,
            expires_at=expires_at,
            is_expired=expires_at <= self.clock(),
        )

    async def is_locked(self, key: str) -> bool:
        info = await self.get_info(key)
        return info is not None and not info.is_expired

    async def cleanup_expired(self) -> int:
        removed = await self.backend.delete_expired(self.clock())
        if removed:
            logger.info("Removed expired locks", count=removed)
        return removed
