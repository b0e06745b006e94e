"""Declarative base plus the process-wide async engine.

The engine and session factory are module globals set up once in the app
lifespan (or a script's ``main``). Services never import them directly;
they receive ``get_session_factory()`` through their constructor.
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from storefront.core.config import get_settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str, echo: bool) -> dict:
    options: dict = {"echo": echo}
    if make_url(url).get_backend_name() == "sqlite":
        # Concurrent writers wait on the file lock instead of failing fast
        options["connect_args"] = {"timeout": 15}
    else:
        options["pool_pre_ping"] = True
    return options


async def init_db(url: str | None = None, create_tables: bool = True) -> None:
    """Create the engine and session factory; no-op if already initialised.

    Args:
        url: Override for settings.database_url
        create_tables: Run ``create_all`` (dev/test). Deployed schemas come from Alembic.
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    db_url = url or settings.database_url

    _engine = create_async_engine(db_url, **_engine_options(db_url, settings.debug))
    # Loaded rows stay usable after commit; services return them to routes
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)

    import storefront.db.models  # noqa: F401

    if create_tables:
        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory. Raises RuntimeError before ``init_db``."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
