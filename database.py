"""Engines, session makers and the FastAPI session dependency."""
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import NullPool
from config import settings


def _engine_options(url: str) -> dict:
    options = {"echo": settings.environment == "development"}
    if not url.startswith("sqlite"):
        options["pool_pre_ping"] = True
    return options


# API and worker share the async driver; the CLI uses the sync one
async_engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))
sync_engine = create_engine(settings.database_url_sync, **_engine_options(settings.database_url_sync))

AsyncSessionLocal = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
SessionLocal = sessionmaker(sync_engine, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    """
    Request-scoped session.

    Services commit their own units of work; anything left pending is
    committed when the request succeeds and rolled back when it fails.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def create_job_sessionmaker():
    """
    Build an engine and session maker for a single RQ job.

    Each job runs in its own event loop, so pooled asyncpg connections
    cannot be shared between jobs.
    """
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def init_db() -> list:
    """Create missing tables. Returns the table names."""
    import models  # noqa: F401

    Base.metadata.create_all(bind=sync_engine)
    return sorted(Base.metadata.tables)
