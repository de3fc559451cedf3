# bookstock/core/tx.py
from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


async def run_in_tx(session: AsyncSession, fn: Callable[[], Awaitable[T]]) -> T:
    """
    如果 session 已经在事务中，则直接执行 fn（由外层负责 commit / rollback）；
    否则使用 async with session.begin() 包裹 fn。
    """
    if session.in_transaction():
        return await fn()
    async with session.begin():
        return await fn()
