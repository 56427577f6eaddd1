from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from authgate.core.settings import settings


def _engine_options(database_url: str) -> dict[str, Any]:
    # SQLite (local runs, tests) has no server-side pool to probe.
    if make_url(database_url).get_backend_name() == "sqlite":
        return {}
    return {"pool_pre_ping": True}


engine = create_async_engine(settings.database_url, future=True, echo=False, **_engine_options(settings.database_url))
# Services keep using ORM rows after committing audit entries, so nothing expires on commit.
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session
