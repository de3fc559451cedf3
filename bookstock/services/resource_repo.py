# bookstock/services/resource_repo.py
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookstock.core.errors import ResourceNotFound
from bookstock.models.enums import RelationType
from bookstock.models.resource import Resource
from bookstock.models.resource_price import ResourcePrice
from bookstock.models.resource_relation import ResourceRelation


async def get_resource(session: AsyncSession, resource_id: int) -> Resource:
    obj = await session.get(Resource, int(resource_id))
    if obj is None:
        raise ResourceNotFound(resource_id)
    return obj


async def get_resource_for_update(session: AsyncSession, resource_id: int) -> Resource:
    """SELECT … FOR UPDATE 锁定资源行（SQLite 下忽略 FOR UPDATE）。"""
    stmt = (
        select(Resource)
        .where(Resource.id == int(resource_id))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    obj = (await session.execute(stmt)).scalars().first()
    if obj is None:
        raise ResourceNotFound(resource_id)
    return obj


async def lock_resources(session: AsyncSession, resource_ids: Iterable[int]) -> List[Resource]:
    """按 id 升序加锁，避免多资源加锁时死锁。"""
    ids = sorted({int(x) for x in resource_ids})
    if not ids:
        return []
    stmt = (
        select(Resource)
        .where(Resource.id.in_(ids))
        .order_by(Resource.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list((await session.execute(stmt)).scalars().all())


async def pool_members(session: AsyncSession, pool_id: int) -> List[Resource]:
    """pool → single 成员，按声明顺序（position, id）。"""
    stmt = (
        select(Resource)
        .join(ResourceRelation, ResourceRelation.related_id == Resource.id)
        .where(
            ResourceRelation.resource_id == int(pool_id),
            ResourceRelation.relation_type == RelationType.SINGLE.value,
        )
        .order_by(ResourceRelation.position.asc(), Resource.id.asc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def member_positions(session: AsyncSession, pool_id: int) -> dict[int, int]:
    stmt = select(ResourceRelation.related_id, ResourceRelation.position).where(
        ResourceRelation.resource_id == int(pool_id),
        ResourceRelation.relation_type == RelationType.SINGLE.value,
    )
    rows = (await session.execute(stmt)).all()
    return {int(r[0]): int(r[1]) for r in rows}


async def pools_of(session: AsyncSession, single_id: int) -> List[Resource]:
    """single → pool 反向关系。"""
    stmt = (
        select(Resource)
        .join(ResourceRelation, ResourceRelation.related_id == Resource.id)
        .where(
            ResourceRelation.resource_id == int(single_id),
            ResourceRelation.relation_type == RelationType.POOL.value,
        )
        .order_by(Resource.id.asc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def prices_for(
    session: AsyncSession, resource_id: int, *, currency: Optional[str] = None
) -> List[ResourcePrice]:
    stmt = select(ResourcePrice).where(ResourcePrice.resource_id == int(resource_id))
    if currency is not None:
        stmt = stmt.where(ResourcePrice.currency == currency)
    stmt = stmt.order_by(ResourcePrice.id.asc())
    return list((await session.execute(stmt)).scalars().all())


async def get_resources(session: AsyncSession, resource_ids: Sequence[int]) -> dict[int, Resource]:
    ids = {int(x) for x in resource_ids}
    if not ids:
        return {}
    rows = (await session.execute(select(Resource).where(Resource.id.in_(ids)))).scalars().all()
    return {r.id: r for r in rows}
