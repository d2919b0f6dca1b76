"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import Settings, get_settings
from billing_engine.database import init_db
from billing_engine.exporters import ExportSink, LocalDirectorySink
from billing_engine.sources import ActivitySource, build_activity_sources


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory shared by requests and background jobs."""
    _, factory = init_db()
    return factory


async def get_db_session(
    factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency. Routes commit explicitly."""
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_app_settings() -> Settings:
    return get_settings()


@lru_cache(maxsize=1)
def get_activity_sources() -> list[ActivitySource]:
    """Activity sources wired from configuration."""
    return build_activity_sources(get_settings())


def get_export_sink() -> ExportSink:
    return LocalDirectorySink(get_settings().export_directory)


async def get_actor(x_actor: Annotated[str | None, Header()] = None) -> str | None:
    """Operator identity recorded on audit events."""
    return x_actor


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
ActivitySources = Annotated[list[ActivitySource], Depends(get_activity_sources)]
Sink = Annotated[ExportSink, Depends(get_export_sink)]
Actor = Annotated[str | None, Depends(get_actor)]
