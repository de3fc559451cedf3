"""
统一导出 ORM 模型。
"""

from importlib import import_module


def _export(module_name: str, class_name: str) -> None:
    module = import_module(module_name)
    globals()[class_name] = getattr(module, class_name)


MODEL_SPECS = [
    # -------- 资源 / 池 --------
    ("bookstock.models.resource", "Resource"),
    ("bookstock.models.resource_relation", "ResourceRelation"),
    ("bookstock.models.resource_price", "ResourcePrice"),
    # -------- 台账 --------
    ("bookstock.models.stock_ledger", "StockLedger"),
    # -------- 购物车行 --------
    ("bookstock.models.reservation_line", "ReservationLine"),
]

for _mod, _cls in MODEL_SPECS:
    _export(_mod, _cls)

__all__ = [cls for _, cls in MODEL_SPECS]
