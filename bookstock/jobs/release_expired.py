"""
过期 claim 清理 Job

  - 只处理 stock_ledger 中 kind='CLAIM' AND status='PENDING' AND window_end <= now
  - 可用量计算本身已惰性排除过期 claim，本 Job 只做 housekeeping

用法：
    python -m bookstock.jobs.release_expired
也可以由 scheduler 定期调用 main()。
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.pool import NullPool

from bookstock.core.clock import Clock, SystemClock
from bookstock.core.config import get_settings
from bookstock.core.logging import setup_logging
from bookstock.db.base import init_models
from bookstock.db.session import create_engine_for, make_session_factory
from bookstock.services.expired_claims_sweep import sweep_expired_claims

log = logging.getLogger("bookstock.jobs")


async def main(clock: Optional[Clock] = None) -> int:
    """
    独立运行入口：连接 DATABASE_URL，扫描并释放过期 claim，提交后返回处理数量。
    AUTO_RELEASE_EXPIRED=false 时直接跳过。
    """
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)

    if not settings.AUTO_RELEASE_EXPIRED:
        log.info("AUTO_RELEASE_EXPIRED disabled; nothing to do")
        return 0

    init_models()
    engine = create_engine_for(settings.DATABASE_URL, poolclass=NullPool)
    maker = make_session_factory(engine)
    batch_size = max(int(settings.EXPIRED_SWEEP_BATCH_SIZE), 1)

    try:
        async with maker() as session:
            processed = await sweep_expired_claims(
                session, clock=clock or SystemClock(), batch_size=batch_size
            )
            await session.commit()
            log.info("released %d expired claim(s) (batch_size=%d)", processed, batch_size)
            return processed
    finally:
        await engine.dispose()


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
