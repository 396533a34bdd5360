"""
PostgreSQL-backed Key-Value Store.

Each primitive is a single SQL statement so atomicity comes from the
database, not from the calling process:
- set_if_absent: INSERT ... ON CONFLICT DO UPDATE ... WHERE expired RETURNING
- compare_and_set: UPDATE ... WHERE value = :expected
- pop: DELETE ... RETURNING
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy import ColumnElement, delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from toolgate.db.models import KeyValueEntry
from toolgate.stores.kv import KeyValueStore


def _live(now: datetime) -> ColumnElement[bool]:
    return or_(KeyValueEntry.expires_at.is_(None), KeyValueEntry.expires_at > now)


def _expiry(now: datetime, ttl_seconds: float | None) -> datetime | None:
    return None if ttl_seconds is None else now + timedelta(seconds=ttl_seconds)


class DatabaseKeyValueStore(KeyValueStore):
    """Key-value store over the kv_entries table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> str | None:
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            stmt = select(KeyValueEntry.value).where(KeyValueEntry.key == key, _live(now))
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        now = datetime.now(UTC)
        stmt = insert(KeyValueEntry).values(
            key=key, value=value, expires_at=_expiry(now, ttl_seconds), updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[KeyValueEntry.key],
            set_={
                "value": stmt.excluded.value,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float | None = None) -> bool:
        now = datetime.now(UTC)
        stmt = insert(KeyValueEntry).values(
            key=key, value=value, expires_at=_expiry(now, ttl_seconds), updated_at=now
        )
        # An expired row still occupies the key; overwrite it, but only it.
        stmt = stmt.on_conflict_do_update(
            index_elements=[KeyValueEntry.key],
            set_={
                "value": stmt.excluded.value,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
            where=KeyValueEntry.expires_at <= now,
        ).returning(KeyValueEntry.key)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            written = result.scalar_one_or_none() is not None
            await session.commit()
            return written

    async def compare_and_set(
        self, key: str, expected: str, new: str, ttl_seconds: float | None = None
    ) -> bool:
        now = datetime.now(UTC)
        stmt = (
            update(KeyValueEntry)
            .where(KeyValueEntry.key == key, KeyValueEntry.value == expected, _live(now))
            .values(value=new, updated_at=now)
        )
        if ttl_seconds is not None:
            stmt = stmt.values(expires_at=_expiry(now, ttl_seconds))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1  # type: ignore[attr-defined]

    async def pop(self, key: str) -> str | None:
        now = datetime.now(UTC)
        stmt = (
            delete(KeyValueEntry)
            .where(KeyValueEntry.key == key)
            .returning(KeyValueEntry.value, KeyValueEntry.expires_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.one_or_none()
            await session.commit()
        if row is None:
            return None
        value, expires_at = row
        if expires_at is not None and expires_at <= now:
            return None
        return value

    async def delete(self, key: str) -> bool:
        now = datetime.now(UTC)
        stmt = (
            delete(KeyValueEntry)
            .where(KeyValueEntry.key == key)
            .returning(KeyValueEntry.expires_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.one_or_none()
            await session.commit()
        return row is not None and (row[0] is None or row[0] > now)

    async def scan(self, prefix: str) -> list[tuple[str, str]]:
        now = datetime.now(UTC)
        stmt = (
            select(KeyValueEntry.key, KeyValueEntry.value)
            .where(KeyValueEntry.key.startswith(prefix, autoescape=True), _live(now))
            .order_by(KeyValueEntry.key)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [(row.key, row.value) for row in result]

    async def purge_expired(self) -> int:
        now = datetime.now(UTC)
        stmt = delete(KeyValueEntry).where(KeyValueEntry.expires_at <= now)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0  # type: ignore[attr-defined]
