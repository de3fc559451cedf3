# bookstock/db/types.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.types import TypeDecorator

from bookstock.core.clock import as_utc


class UTCDateTime(TypeDecorator):
    """
    统一 UTC 的时间列。

    - PG: timestamptz 原样往返
    - SQLite: 存储时丢失时区，读回时补 UTC
    """

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return as_utc(value)
