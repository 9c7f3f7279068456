import ssl
from contextlib import asynccontextmanager
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from video_analyzer.models.orm import Base


def prepare_database_url(url: str) -> tuple[str, dict]:
    """
    Prepare database URL for asyncpg compatibility.
    asyncpg doesn't support 'sslmode' parameter, need to convert to 'ssl' context.
    """
    if not url:
        raise RuntimeError("DATABASE_URL not set in environment")
    if url.startswith("sqlite"):
        return url, {}

    parsed = urlparse(url)
    query_params = parse_qs(parsed.query)
    connect_args = {}

    sslmode = query_params.pop("sslmode", [None])[0]
    if sslmode == "require":
        # encrypted, certificate not verified
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl"] = ssl_context
    elif sslmode in ("verify-ca", "verify-full"):
        connect_args["ssl"] = ssl.create_default_context()
    elif sslmode == "disable":
        connect_args["ssl"] = False

    if parsed.scheme == "postgresql":
        parsed = parsed._replace(scheme="postgresql+asyncpg")

    cleaned_url = urlunparse(parsed._replace(query=urlencode(query_params, doseq=True)))
    return cleaned_url, connect_args


class Database:
    """Async engine + session factory for one process."""

    def __init__(self, db_url: str, echo: bool = False):
        cleaned_url, connect_args = prepare_database_url(db_url)
        engine_kwargs = {"echo": echo, "connect_args": connect_args}
        if not cleaned_url.startswith("sqlite"):
            engine_kwargs["pool_pre_ping"] = True
        self.engine = create_async_engine(cleaned_url, **engine_kwargs)
        self.session_factory = sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self):
        """Session that commits on success and rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self):
        async with self.session() as session:
            await session.execute(text("SELECT 1"))
        print("[DB] Database connection initialized successfully")

    async def create_all(self):
        """Create tables directly (tests / local dev; production uses alembic)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()
        print("[DB] Database connection closed")
