# bookstock/models/resource_relation.py
from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from bookstock.db.base import Base


class ResourceRelation(Base):
    """
    池成员关系（双向各一行）：

    - relation_type=SINGLE: resource_id=pool, related_id=single
    - relation_type=POOL:   resource_id=single, related_id=pool
    - position: pool → single 方向的声明顺序（AVERAGE 挑选顺序 / 同价 tie-break）
    """

    __tablename__ = "resource_relations"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    resource_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    related_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    relation_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    __table_args__ = (
        sa.UniqueConstraint(
            "resource_id", "related_id", "relation_type", name="uq_resource_relations_pair"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ResourceRelation {self.relation_type} {self.resource_id}->{self.related_id} "
            f"pos={self.position}>"
        )
