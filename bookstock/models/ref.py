# bookstock/models/ref.py
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Ref:
    """
    多态引用（购物车行 / 订单 / 外部单据）。

    台账只保存 (ref_type, ref_id)，不依赖具体持久化类型。
    """

    ref_type: str
    ref_id: str

    @classmethod
    def of(cls, ref_type: str, ref_id: object) -> "Ref":
        return cls(str(ref_type), str(ref_id))

    def __str__(self) -> str:
        return f"{self.ref_type}:{self.ref_id}"
