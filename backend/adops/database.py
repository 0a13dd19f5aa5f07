"""
Database engine and sessions.
PostgreSQL via asyncpg in deployment; any SQLAlchemy async URL works
(the tests run on sqlite+aiosqlite).
"""

import logging
import ssl
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from adops.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


class Base(DeclarativeBase):
    pass


def _needs_ssl(url: str) -> bool:
    return "rlwy.net" in url or "sslmode=require" in url


def _get_connect_args(url: str = None) -> dict:
    url = url or settings.database_url
    if not url.startswith("postgresql+asyncpg"):
        return {}
    args = {"timeout": 30}
    if _needs_ssl(url):
        # TLS proxies in front of hosted Postgres present self-signed certs
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        args["ssl"] = ctx
    return args


def build_engine(url: str):
    options = {"echo": False, "pool_pre_ping": True, "connect_args": _get_connect_args(url)}
    if not url.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10)
    return create_async_engine(url, **options)


engine = build_engine(settings.database_url)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:
    """Request-scoped session: committed when the handler returns, rolled back if it raises."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db():
    """
    Create any missing tables. Existing tables are left alone; column
    changes ship as Alembic revisions under backend/alembic.
    """
    import adops.models  # noqa: F401  (registers tables on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Schema ready: {', '.join(sorted(Base.metadata.tables))}")


async def check_db_connection() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
