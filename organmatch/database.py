"""Async database engine and session factory."""
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

# asyncpg does not support libpq params like sslmode; strip them and use connect_args for SSL
ASYNCPG_UNSUPPORTED_QUERY_KEYS = frozenset({"sslmode", "ssl_mode"})


def _async_engine_url_and_connect_args(raw: str):
    if raw.startswith("postgres://"):
        raw = "postgresql+asyncpg://" + raw[len("postgres://"):]
    elif raw.startswith("postgresql://"):
        raw = "postgresql+asyncpg://" + raw[len("postgresql://"):]
    if not raw.startswith("postgresql+asyncpg://"):
        return raw, {}

    parsed = urlparse(raw)
    query = parse_qs(parsed.query, keep_blank_values=True)
    sslmode = None
    for key in list(query.keys()):
        if key.lower() in ASYNCPG_UNSUPPORTED_QUERY_KEYS:
            vals = query.pop(key)
            if vals and sslmode is None:
                sslmode = vals[0]
    new_query = urlencode(query, doseq=True)
    url = urlunparse(parsed._replace(query=new_query))
    connect_args = {}
    if sslmode and str(sslmode).lower() in ("require", "verify-ca", "verify-full"):
        connect_args["ssl"] = True
    return url, connect_args


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    url, connect_args = _async_engine_url_and_connect_args(database_url)
    kwargs = {"echo": echo}
    if connect_args:
        kwargs["connect_args"] = connect_args
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


class Base(DeclarativeBase):
    pass


async def init_db(engine: AsyncEngine) -> None:
    """Create tables if they do not exist."""
    from organmatch import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
