# bookstock/db/session.py
# 统一的异步会话工厂：把 DSN 归一到 psycopg3 与 aiosqlite
from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from bookstock.core.config import get_settings

log = logging.getLogger("bookstock.db")


def normalize_async_dsn(url: str) -> str:
    url = (url or "").strip()
    # 有些环境会把值写成 '"postgresql+psycopg://..."'，统一剥掉两侧引号
    if len(url) >= 2 and url[0] == url[-1] and url[0] in ("'", '"'):
        url = url[1:-1].strip()
    # sqlite:/// → sqlite+aiosqlite:///
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite://" + url[len("sqlite:///") - 1 :]
    # postgres/postgresql(+*) → postgresql+psycopg
    if url.startswith("postgresql+asyncpg://") or url.startswith("postgres+asyncpg://"):
        return re.sub(r"^postgres(?:ql)?\+asyncpg://", "postgresql+psycopg://", url)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def _connect_args_for(url_str: str) -> dict[str, Any]:
    """
    后端专属 connect_args：
    - PostgreSQL(psycopg): 无
    - SQLite: 仅 check_same_thread
    """
    backend = make_url(url_str).get_backend_name()
    if backend.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def create_engine_for(url: str, *, echo: bool = False, **kwargs: Any) -> AsyncEngine:
    dsn = normalize_async_dsn(url)
    opts: dict[str, Any] = {"echo": echo}
    if make_url(dsn).get_backend_name().startswith("postgresql"):
        opts["pool_pre_ping"] = True
    connect_args = _connect_args_for(dsn)
    if connect_args:
        opts["connect_args"] = connect_args
    opts.update(kwargs)
    log.debug("creating async engine for %s", make_url(dsn).render_as_string(hide_password=True))
    return create_async_engine(dsn, **opts)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


_engine: AsyncEngine | None = None
_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for(settings.DATABASE_URL, echo=settings.SQL_ECHO)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _factory
    if _factory is None:
        _factory = make_session_factory(get_engine())
    return _factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """宿主 FastAPI 依赖：yield 一个 AsyncSession。"""
    async with get_session_factory()() as session:
        yield session


async def close_engine() -> None:
    global _engine, _factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _factory = None
