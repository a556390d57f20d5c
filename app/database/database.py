from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool, StaticPool
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)


def engine_options(url: str) -> dict:
    """Pool settings for the configured backend."""
    if url.startswith("sqlite"):
        if ":memory:" in url:
            # In-memory SQLite must share a single connection
            return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        return {"poolclass": NullPool}
    if settings.ENVIRONMENT == "test":
        return {"pool_pre_ping": True, "poolclass": NullPool}
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
    }


# Async engine for application use
async_engine = create_async_engine(
    settings.async_database_url,
    echo=settings.DEBUG and settings.ENVIRONMENT == "development",
    **engine_options(settings.async_database_url)
)

# Async session for application
AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)

Base = declarative_base()


# Async dependency for application endpoints
async def get_async_db() -> AsyncSession:
    """Yield an async database session for request handlers."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception as e:
            logger.error(f"Database error: {e}")
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_tables():
    """Create all tables (development only; use migrations in production)."""
    # Import models so they register on Base.metadata
    import app.modules.labs.models  # noqa: F401
    import app.modules.subscriptions.models  # noqa: F401

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
