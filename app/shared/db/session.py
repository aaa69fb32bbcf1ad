import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, AsyncGenerator, Dict

import structlog
from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Ensure ORM mappings are registered for workers that import the DB layer
# without importing `app/main.py`.
import app.models  # noqa: F401, E402


@dataclass(slots=True)
class _DBRuntime:
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _resolve_effective_url(settings_obj: Any) -> str:
    db_url = _normalize_db_url(str(settings_obj.DATABASE_URL or ""))
    if settings_obj.TESTING and "sqlite" not in db_url:
        # Tests never touch a real database.
        return "sqlite+aiosqlite:///:memory:"
    return db_url


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": settings_obj.DB_ECHO,
    }
    if "sqlite" in effective_url:
        pool_config["poolclass"] = StaticPool
        return pool_config

    pool_config.update(
        {
            "pool_size": settings_obj.DB_POOL_SIZE,
            "max_overflow": settings_obj.DB_MAX_OVERFLOW,
            "pool_timeout": settings_obj.DB_POOL_TIMEOUT,
            "pool_recycle": settings_obj.DB_POOL_RECYCLE,
        }
    )
    return pool_config


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    if not settings_obj.DATABASE_URL and not settings_obj.TESTING:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    effective_url = _resolve_effective_url(settings_obj)
    engine = create_async_engine(
        effective_url, **_build_pool_config(settings_obj, effective_url)
    )
    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", after_cursor_execute)
    if engine.dialect.name == "sqlite":
        enable_sqlite_savepoints(engine)

    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    logger.info("db_runtime_initialized", dialect=engine.dialect.name)
    return _DBRuntime(
        engine=engine,
        session_maker=session_maker,
        effective_url=effective_url,
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        if _db_runtime is None:
            _db_runtime = _build_db_runtime()
        return _db_runtime


async def dispose_db_runtime() -> None:
    """Dispose the engine; the next access rebuilds it from current settings."""
    global _db_runtime
    runtime = _db_runtime
    _db_runtime = None
    if runtime is None:
        return
    await runtime.engine.dispose()
    logger.info("db_engine_disposed")


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy own BEGIN on SQLite.

    The sqlite3 driver otherwise defers BEGIN until the first write, and a
    SAVEPOINT issued before it becomes the outer transaction, so releasing it
    commits and a later rollback undoes nothing.
    """

    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    def _on_begin(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN")

    event.listen(engine.sync_engine, "connect", _on_connect)
    event.listen(engine.sync_engine, "begin", _on_begin)


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def async_session_maker(*args: Any, **kwargs: Any) -> AsyncSession:
    """Return a new async session from the active session factory."""
    return _get_db_runtime().session_maker(*args, **kwargs)


def before_cursor_execute(
    conn: Connection,
    _cursor: Any,
    _statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Connection,
    _cursor: Any,
    statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Log slow queries."""
    started = conn.info.get("query_start_time")
    if not started:
        return
    total = time.perf_counter() - started.pop(-1)
    threshold = get_settings().DB_SLOW_QUERY_THRESHOLD_SECONDS
    if total > threshold:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            statement=statement[:200],
        )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session that is rolled back if left open."""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def health_check() -> Dict[str, Any]:
    """Database health check for monitoring."""
    start_time = time.perf_counter()
    try:
        db_engine = get_engine()
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))

        latency = (time.perf_counter() - start_time) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency, 2),
            "engine": db_engine.dialect.name,
        }
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return {
            "status": "down",
            "error": str(e),
            "latency_ms": (time.perf_counter() - start_time) * 1000,
        }
