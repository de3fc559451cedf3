# tests/conftest.py
from __future__ import annotations

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tests.helpers.catalog import NOW

from bookstock.core.clock import FixedClock
from bookstock.db.base import create_all
from bookstock.services.reservation_facade import ReservationFacade

# 测试统一用内存 SQLite；单连接（StaticPool）保证同一用例内看到同一个库
DATABASE_URL = "sqlite+aiosqlite://"


# =========================================
# 每用例独立 Engine + 建表
# =========================================
@pytest_asyncio.fixture(scope="function")
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_all(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def async_session_maker(async_engine: AsyncEngine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(async_session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    标准 Session（自动 commit / rollback）
    """
    async with async_session_maker() as sess:
        try:
            yield sess
            if sess.in_transaction():
                await sess.commit()
        except Exception:
            if sess.in_transaction():
                await sess.rollback()
            raise


@pytest.fixture(scope="function")
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture(scope="function")
def facade(clock: FixedClock) -> ReservationFacade:
    return ReservationFacade(clock)
