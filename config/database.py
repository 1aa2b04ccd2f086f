"""
config/database.py
Async SQLAlchemy engine, session factory, and base model.
Uses asyncpg for PostgreSQL; SQLite (aiosqlite) is accepted for local runs and tests.

Idempotent writes go through insert_ignoring_conflicts / upsert, which emit
INSERT ... ON CONFLICT for the bound dialect so uniqueness constraints,
not application checks, decide who wins a concurrent insert.
"""

from typing import Any, AsyncGenerator, Iterable, Optional, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from config.settings import settings


def _engine_options() -> dict:
    if settings.is_sqlite:
        return {"echo": settings.DEBUG}
    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_timeout": settings.DATABASE_POOL_TIMEOUT,
        "pool_pre_ping": True,       # Detect stale connections
        "pool_recycle": 3600,        # Recycle connections every hour
        "echo": settings.DEBUG,      # Log SQL in debug mode
    }


# ── Engine ────────────────────────────────────────────────────
engine = create_async_engine(settings.DATABASE_URL, **_engine_options())

# ── Session Factory ───────────────────────────────────────────
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,      # Don't expire after commit (async-safe)
    autocommit=False,
    autoflush=False,
)


def create_task_session_factory() -> tuple[AsyncEngine, async_sessionmaker]:
    """
    Engine + session factory for Celery workers.
    Each task runs its own event loop via asyncio.run, so pooled
    connections must not outlive the task: NullPool.
    """
    task_engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    factory = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return task_engine, factory


# ── Base Model ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """All ORM models inherit from this."""
    pass


# ── Dependency ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: yields an async database session.
    Auto-commits on success, rolls back on error.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── Conflict-aware inserts ────────────────────────────────────

def _insert_for(db: AsyncSession, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"ON CONFLICT inserts are not supported on dialect '{dialect}'")


async def insert_ignoring_conflicts(
    db: AsyncSession,
    model,
    values: dict | Sequence[dict],
    returning: Optional[Any] = None,
) -> Any:
    """
    INSERT ... ON CONFLICT DO NOTHING.

    With `returning` set (single row only) returns that column of the new
    row, or None when a uniqueness constraint absorbed the insert.
    Without it returns the number of rows actually inserted.
    """
    stmt = _insert_for(db, model).values(values).on_conflict_do_nothing()
    if returning is not None:
        result = await db.execute(stmt.returning(returning))
        return result.scalar_one_or_none()
    result = await db.execute(stmt)
    return max(result.rowcount or 0, 0)


async def upsert(
    db: AsyncSession,
    model,
    values: dict,
    index_elements: Iterable[str],
    update_fields: Iterable[str],
) -> None:
    """INSERT ... ON CONFLICT (index_elements) DO UPDATE SET update_fields."""
    stmt = _insert_for(db, model).values(values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_={field: getattr(stmt.excluded, field) for field in update_fields},
    )
    await db.execute(stmt)


async def init_db() -> None:
    """Create all tables. Run during app startup."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose engine. Run during app shutdown."""
    await engine.dispose()
