# bookstock/db/base.py
from __future__ import annotations

import importlib
import logging

from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import DeclarativeBase, configure_mappers

log = logging.getLogger("bookstock.models")


class Base(DeclarativeBase):
    """全局唯一 ORM Base"""

    pass


_INITIALIZED: bool = False

MODEL_MODULES = [
    "bookstock.models.resource",
    "bookstock.models.resource_relation",
    "bookstock.models.resource_price",
    "bookstock.models.stock_ledger",
    "bookstock.models.reservation_line",
]


def init_models(*, force: bool = False) -> None:
    """
    集中导入模型 + 固化关系映射（字符串关系目标类需先注册）。
    """
    global _INITIALIZED
    if _INITIALIZED and not force:
        log.debug("init_models() called again; already initialized, skipping.")
        return

    for mod in MODEL_MODULES:
        importlib.import_module(mod)

    configure_mappers()
    _INITIALIZED = True
    log.info("ORM models initialized & mappers configured (loaded %d modules)", len(MODEL_MODULES))


async def create_all(engine: AsyncEngine) -> None:
    """按模型建表（测试 / 本地）；线上 schema 由宿主系统的迁移负责。"""
    init_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
