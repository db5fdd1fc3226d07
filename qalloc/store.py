"""Record store used by the task engines.

Wraps SQLModel sessions behind the five operations the engines rely on:
get, create (duplicate keys rejected), patch (partial fields), delete and
predicate queries with keyset pagination. Driver errors are translated into
the ``qalloc.errors`` taxonomy so task handlers never see SQLAlchemy types.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from qalloc.db.engine import get_engine, get_session_factory
from qalloc.db.models import utc_now
from qalloc.errors import ConflictError, DependencyNotFoundError, RemoteCallError
from qalloc.logging import get_logger

logger = get_logger(__name__)

M = TypeVar("M", bound=SQLModel)


@dataclass
class Page(Generic[M]):
    """One page of query results.

    ``cursor`` is opaque to callers; ``None`` means there are no more pages.
    """

    records: list[M] = field(default_factory=list)
    cursor: str | None = None


class RecordStore:
    """Async record store over a SQLModel session factory.

    Args:
        session_factory: Factory producing ``AsyncSession`` objects.
        serialize: Run one transaction at a time. Required for SQLite, which
            allows a single writer per database.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        serialize: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._lock = asyncio.Lock() if serialize else None

    @classmethod
    def for_engine(cls, engine: AsyncEngine | None = None) -> RecordStore:
        """Build a store for ``engine`` (the configured engine by default)."""
        engine = engine or get_engine()
        return cls(
            get_session_factory(engine),
            serialize=engine.dialect.name == "sqlite",
        )

    @asynccontextmanager
    async def _transaction(self, operation: str, table: str) -> AsyncGenerator[AsyncSession]:
        async with self._lock or nullcontext():
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    raise
                except SQLAlchemyError as exc:
                    await session.rollback()
                    logger.error("store_call_failed", operation=operation, table=table, error=str(exc))
                    raise RemoteCallError(f"{operation} on '{table}' failed: {exc}") from exc
                except Exception:
                    await session.rollback()
                    raise

    async def get(self, model: type[M], record_id: str | None) -> M | None:
        """Fetch a record by id, or ``None`` if absent."""
        if record_id is None:
            return None
        async with self._transaction("get", model.__tablename__) as session:
            return await session.get(model, record_id)

    async def require(self, model: type[M], record_id: str | None, kind: str | None = None) -> M:
        """Fetch a record by id, raising ``DependencyNotFoundError`` if absent."""
        record = await self.get(model, record_id)
        if record is None:
            raise DependencyNotFoundError(kind or model.__tablename__, record_id)
        return record

    async def create(self, record: M) -> M:
        """Persist a new record. A duplicate primary key raises ``ConflictError``."""
        table = type(record).__tablename__
        try:
            async with self._transaction("create", table) as session:
                session.add(record)
        except IntegrityError as exc:
            raise ConflictError(table, str(getattr(record, "id", ""))) from exc
        return record

    async def patch(self, model: type[M], record_id: str, **fields: Any) -> M:
        """Apply a partial update and return the updated record."""
        unknown = set(fields) - set(model.model_fields)
        if unknown:
            raise ValueError(f"Unknown fields for {model.__name__}: {sorted(unknown)}")
        if "updated_at" in model.model_fields:
            fields.setdefault("updated_at", utc_now())

        async with self._transaction("patch", model.__tablename__) as session:
            record = await session.get(model, record_id)
            if record is None:
                raise DependencyNotFoundError(model.__tablename__, record_id)
            for name, value in fields.items():
                setattr(record, name, value)
            session.add(record)
        return record

    async def delete(self, model: type[M], record_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""
        async with self._transaction("delete", model.__tablename__) as session:
            record = await session.get(model, record_id)
            if record is None:
                return False
            await session.delete(record)
        return True

    async def query(
        self,
        model: type[M],
        *criteria: Any,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Page[M]:
        """Query records matching all ``criteria``, ordered by id.

        With ``limit`` set, returns at most ``limit`` records and a cursor for
        the next page when the page came back full.
        """
        statement = select(model).order_by(model.id)
        if criteria:
            statement = statement.where(*criteria)
        if cursor is not None:
            statement = statement.where(model.id > cursor)
        if limit is not None:
            statement = statement.limit(limit)

        async with self._transaction("query", model.__tablename__) as session:
            result = await session.execute(statement)
            records = list(result.scalars().all())

        next_cursor = None
        if limit is not None and records and len(records) == limit:
            next_cursor = str(records[-1].id)
        return Page(records=records, cursor=next_cursor)

    async def query_all(self, model: type[M], *criteria: Any) -> list[M]:
        """Query every record matching ``criteria``, ordered by id."""
        page = await self.query(model, *criteria)
        return page.records
