"""
SQL rate limit store on top of the SQLAlchemy async engine.

Every write is one `INSERT ... ON CONFLICT (limit_key) DO UPDATE ...
RETURNING` statement. The database evaluates the window rollover or
token refill against the row it has locked, so concurrent increments
for the same key serialize without any read-then-write from Python.
The DO UPDATE carries a WHERE guard with the fit rule, so a write that
would overshoot the limit leaves the row untouched and returns nothing.

Supported dialects: SQLite (aiosqlite) and PostgreSQL (asyncpg).
"""

import time
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import AsyncIterator

import structlog
from sqlalchemy import BigInteger, Float, Index, Integer, String, case, delete, func, literal, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncAttrs,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from turnstile.core.errors import ConfigurationError, StoreUnavailableError
from turnstile.core.models import IncrementOptions, StoredRecord, StrategyType
from turnstile.core.storage.base import RateLimitStore, unconsumed_record
from turnstile.core.timing import fit_weight, record_expiry, window_bounds

logger = structlog.get_logger(__name__)


class Base(AsyncAttrs, DeclarativeBase):
    pass


class RateLimitRow(Base):
    __tablename__ = "rate_limits"
    __table_args__ = (
        Index("idx_rate_limits_expires", "expires_at"),
        Index("idx_rate_limits_user", "user_id"),
    )

    limit_key: Mapped[str] = mapped_column(String(500), primary_key=True)
    strategy: Mapped[str] = mapped_column(String(50))
    max_requests: Mapped[int] = mapped_column(Integer)
    window_ms: Mapped[int] = mapped_column(BigInteger)

    current_count: Mapped[int] = mapped_column(Integer, default=0)
    previous_count: Mapped[int] = mapped_column(Integer, default=0)
    window_start: Mapped[int] = mapped_column(BigInteger)
    window_end: Mapped[int] = mapped_column(BigInteger)
    expires_at: Mapped[int] = mapped_column(BigInteger)

    # Token bucket only
    tokens_remaining: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_refill: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[int] = mapped_column(BigInteger)


_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def _to_record(row) -> StoredRecord:
    return StoredRecord(
        key=row["limit_key"],
        count=row["current_count"],
        previous_count=row["previous_count"] or 0,
        max_requests=row["max_requests"],
        window_ms=row["window_ms"],
        window_start=row["window_start"],
        window_end=row["window_end"],
        strategy=StrategyType(row["strategy"]),
        tokens_remaining=row["tokens_remaining"],
        last_refill=row["last_refill"],
        expires_at=row["expires_at"],
        user_id=row["user_id"],
        tenant_id=row["tenant_id"],
        ip_address=row["ip_address"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SQLStore(RateLimitStore):
    """
    Durable store backed by a relational database.

    Example:
        >>> store = SQLStore.from_url("sqlite+aiosqlite:///./turnstile.db")
        >>> await store.initialize()
        >>> record = await store.increment("fixed-window:user:1", options)
    """

    name = "sql"

    def __init__(
        self,
        engine: AsyncEngine,
        auto_create: bool = True,
        owns_engine: bool = False,
    ) -> None:
        dialect = engine.dialect.name
        if dialect not in _INSERTS:
            raise ConfigurationError(
                code="unsupported_dialect",
                message=f"SQLStore does not support the '{dialect}' dialect",
                details={"supported": sorted(_INSERTS)},
            )
        self._engine = engine
        self._insert = _INSERTS[dialect]
        self._sessions = async_sessionmaker(bind=engine, expire_on_commit=False)
        self._auto_create = auto_create
        self._owns_engine = owns_engine
        self._closed = False

    @classmethod
    def from_url(cls, url: str, auto_create: bool = True) -> "SQLStore":
        return cls(create_async_engine(url), auto_create=auto_create, owns_engine=True)

    @asynccontextmanager
    async def _session(self, operation: str, key: str | None = None) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session, session.begin():
                yield session
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(
                code="store_unavailable",
                message=f"Rate limit store failed during {operation}",
                details={"key": key, "error": str(exc)},
            ) from exc

    async def initialize(self) -> None:
        if not self._auto_create:
            return
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(
                code="store_unavailable",
                message="Could not create rate limit tables",
                details={"error": str(exc)},
            ) from exc
        logger.info("rate_limit_store_initialized", dialect=self._engine.dialect.name)

    async def get(self, key: str, user_id: str | None = None) -> StoredRecord | None:
        async with self._session("get", key) as session:
            result = await session.execute(
                select(RateLimitRow.__table__).where(RateLimitRow.limit_key == key)
            )
            row = result.mappings().first()
        return _to_record(row) if row else None

    async def increment(self, key: str, options: IncrementOptions) -> StoredRecord:
        if options.amount > options.max_requests:
            # Never fits, not even in an empty window or a full bucket
            record = await self.get(key, options.user_id)
            return replace(record, applied=False) if record else unconsumed_record(key, options)

        if options.strategy == StrategyType.TOKEN_BUCKET:
            stmt = self._bucket_upsert(key, options)
        else:
            stmt = self._window_upsert(key, options)

        async with self._session("increment", key) as session:
            result = await session.execute(stmt)
            row = result.mappings().first()
            if row is None:
                # The conflict update was filtered out: nothing consumed
                current = await session.execute(
                    select(RateLimitRow.__table__).where(RateLimitRow.limit_key == key)
                )
                row = current.mappings().first()
                if row is None:
                    return unconsumed_record(key, options)
                return replace(_to_record(row), applied=False)
        return _to_record(row)

    async def clear(self, key: str, user_id: str | None = None) -> bool:
        async with self._session("clear", key) as session:
            result = await session.execute(
                delete(RateLimitRow).where(RateLimitRow.limit_key == key)
            )
            removed = result.rowcount or 0
        return removed > 0

    async def cleanup(self, now_ms: int | None = None) -> int:
        now = now_ms if now_ms is not None else int(time.time() * 1000)
        async with self._session("cleanup") as session:
            result = await session.execute(
                delete(RateLimitRow).where(RateLimitRow.expires_at < now)
            )
            removed = result.rowcount or 0
        return removed

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_engine:
            await self._engine.dispose()

    # =========================================================================
    # Upsert statements
    # =========================================================================

    def _base_values(self, key: str, options: IncrementOptions) -> dict:
        return {
            "limit_key": key,
            "strategy": options.strategy.value,
            "max_requests": options.max_requests,
            "window_ms": options.window_ms,
            "user_id": options.user_id,
            "tenant_id": options.tenant_id,
            "ip_address": options.ip_address,
            "created_at": options.now_ms,
            "updated_at": options.now_ms,
        }

    def _window_upsert(self, key: str, options: IncrementOptions):
        table = RateLimitRow.__table__
        now = options.now_ms
        window_start, window_end = window_bounds(now, options.window_ms)
        expires_at = record_expiry(options.strategy, window_end, options.window_ms)

        stmt = self._insert(table).values(
            **self._base_values(key, options),
            current_count=options.amount,
            previous_count=0,
            window_start=window_start,
            window_end=window_end,
            expires_at=expires_at,
        )

        same_window = table.c.window_start == window_start
        adjacent_window = table.c.window_start == window_start - options.window_ms
        weight = fit_weight(options.strategy, now, window_start, options.window_ms)

        # SET and WHERE expressions all read the pre-update row
        current_count = case(
            (same_window, table.c.current_count + options.amount),
            else_=options.amount,
        )
        previous_count = case(
            (same_window, table.c.previous_count),
            (adjacent_window, table.c.current_count),
            else_=0,
        )
        # Same arithmetic as window_fits()
        fits = current_count + previous_count * literal(weight, Float) - 1 < options.max_requests

        return stmt.on_conflict_do_update(
            index_elements=[table.c.limit_key],
            set_={
                "current_count": current_count,
                "previous_count": previous_count,
                "window_start": window_start,
                "window_end": window_end,
                "expires_at": expires_at,
                "max_requests": options.max_requests,
                "window_ms": options.window_ms,
                "strategy": options.strategy.value,
                "user_id": func.coalesce(stmt.excluded.user_id, table.c.user_id),
                "tenant_id": func.coalesce(stmt.excluded.tenant_id, table.c.tenant_id),
                "ip_address": func.coalesce(stmt.excluded.ip_address, table.c.ip_address),
                "updated_at": now,
            },
            where=fits,
        ).returning(*table.c)

    def _bucket_upsert(self, key: str, options: IncrementOptions):
        table = RateLimitRow.__table__
        now = options.now_ms
        capacity = literal(float(options.max_requests), Float)
        window = literal(float(options.window_ms), Float)
        window_end = now + options.window_ms
        expires_at = record_expiry(options.strategy, window_end, options.window_ms)

        stmt = self._insert(table).values(
            **self._base_values(key, options),
            current_count=options.amount,
            previous_count=0,
            window_start=now,
            window_end=window_end,
            expires_at=expires_at,
            tokens_remaining=float(options.max_requests - options.amount),
            last_refill=now,
        )

        elapsed = case(
            (table.c.last_refill < now, now - table.c.last_refill),
            else_=0,
        )
        # Same operation order as refill_tokens() so both stores round alike
        refilled = func.coalesce(
            table.c.tokens_remaining + elapsed * capacity / window, capacity
        )
        capped = case((refilled > capacity, capacity), else_=refilled)

        return stmt.on_conflict_do_update(
            index_elements=[table.c.limit_key],
            set_={
                "tokens_remaining": capped - options.amount,
                "current_count": table.c.current_count + options.amount,
                "last_refill": now,
                "window_start": now,
                "window_end": window_end,
                "expires_at": expires_at,
                "max_requests": options.max_requests,
                "window_ms": options.window_ms,
                "strategy": options.strategy.value,
                "user_id": func.coalesce(stmt.excluded.user_id, table.c.user_id),
                "tenant_id": func.coalesce(stmt.excluded.tenant_id, table.c.tenant_id),
                "ip_address": func.coalesce(stmt.excluded.ip_address, table.c.ip_address),
                "updated_at": now,
            },
            where=capped >= options.amount,
        ).returning(*table.c)
