"""
Schemas package

不做聚合导出；需要时从具体模块显式导入，例如：
    from bookstock.schemas.reservation import QuoteOut
"""

__all__: list[str] = []
