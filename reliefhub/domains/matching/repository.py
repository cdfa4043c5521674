"""
匹配数据访问层（SQLAlchemy）

职责: 数据库CRUD操作，无业务逻辑
每个操作使用独立会话；save() 在单个事务内写入全部实体。
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .locks import PairLock
from .models import EmergencyModel, MatchRecordModel, ResourceModel
from .schemas import (
    Emergency, EntityKind, Location, MatchRecord, Resource, ResourceNeed, enum_value,
)
from .store import Entity, MatchStore, entity_kind

logger = logging.getLogger(__name__)

_MODELS = {
    EntityKind.emergency: EmergencyModel,
    EntityKind.resource: ResourceModel,
    EntityKind.match: MatchRecordModel,
}


def _split_pair_key(key: str) -> tuple[str, str]:
    emergency_id, _, resource_id = key.partition(":")
    return emergency_id, resource_id


def _location(row: Any) -> Location:
    # 坐标在匹配计算时校验，这里不拦截历史脏数据
    return Location.model_construct(longitude=row.longitude, latitude=row.latitude)


def _to_match(row: MatchRecordModel) -> MatchRecord:
    return MatchRecord(
        emergency_id=row.emergency_id,
        resource_id=row.resource_id,
        status=row.status,
        match_score=row.match_score,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_emergency(row: EmergencyModel, matched_ids: List[str]) -> Emergency:
    return Emergency(
        id=row.id,
        title=row.title,
        type=row.type,
        status=row.status,
        urgency=row.urgency,
        location=_location(row),
        quantity=row.quantity,
        people_affected=row.people_affected,
        resources_needed=[ResourceNeed(**n) for n in (row.resources_needed or [])],
        owner_id=row.owner_id,
        assigned_to=row.assigned_to,
        matched_resource_ids=matched_ids,
    )


def _to_resource(row: ResourceModel, matched_ids: List[str]) -> Resource:
    return Resource(
        id=row.id,
        name=row.name,
        type=row.type,
        quantity=row.quantity,
        unit=row.unit,
        status=row.status,
        location=_location(row),
        owner_id=row.owner_id,
        assigned_to=row.assigned_to,
        matched_emergency_ids=matched_ids,
    )


def _to_row(entity: Entity) -> Any:
    now = datetime.utcnow()
    if isinstance(entity, Emergency):
        return EmergencyModel(
            id=entity.id,
            title=entity.title,
            type=enum_value(entity.type),
            status=enum_value(entity.status),
            urgency=enum_value(entity.urgency),
            longitude=entity.location.longitude,
            latitude=entity.location.latitude,
            quantity=entity.quantity,
            people_affected=entity.people_affected,
            resources_needed=[n.model_dump(mode="json") for n in entity.resources_needed],
            owner_id=entity.owner_id,
            assigned_to=entity.assigned_to,
            updated_at=now,
        )
    if isinstance(entity, Resource):
        return ResourceModel(
            id=entity.id,
            name=entity.name,
            type=enum_value(entity.type),
            quantity=entity.quantity,
            unit=entity.unit,
            status=enum_value(entity.status),
            longitude=entity.location.longitude,
            latitude=entity.location.latitude,
            owner_id=entity.owner_id,
            assigned_to=entity.assigned_to,
            updated_at=now,
        )
    return MatchRecordModel(
        emergency_id=entity.emergency_id,
        resource_id=entity.resource_id,
        status=enum_value(entity.status),
        match_score=entity.match_score,
        created_at=entity.created_at,
        updated_at=entity.updated_at,
    )


class SqlAlchemyMatchStore(MatchStore):
    """基于 SQLAlchemy 异步会话的匹配存储"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        pair_lock: Optional[PairLock] = None,
    ) -> None:
        super().__init__(pair_lock)
        if session_factory is None:
            from reliefhub.core.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    async def _matched_ids(
        self,
        session: AsyncSession,
        kind: EntityKind,
        ids: Iterable[str],
    ) -> Dict[str, List[str]]:
        """批量查询实体的匹配对方ID"""
        ids = list(ids)
        result: Dict[str, List[str]] = {i: [] for i in ids}
        if not ids:
            return result
        if kind == EntityKind.emergency:
            own, other = MatchRecordModel.emergency_id, MatchRecordModel.resource_id
        else:
            own, other = MatchRecordModel.resource_id, MatchRecordModel.emergency_id
        rows = await session.execute(
            select(own, other)
            .where(own.in_(ids))
            .order_by(MatchRecordModel.created_at, other)
        )
        for own_id, other_id in rows.all():
            result[own_id].append(other_id)
        return result

    async def _to_entities(self, session: AsyncSession, kind: EntityKind, rows: List[Any]) -> List[Entity]:
        if kind == EntityKind.match:
            return [_to_match(r) for r in rows]
        matched = await self._matched_ids(session, kind, [r.id for r in rows])
        convert = _to_emergency if kind == EntityKind.emergency else _to_resource
        return [convert(r, matched[r.id]) for r in rows]

    async def get(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        model = _MODELS[kind]
        ident: Any = _split_pair_key(entity_id) if kind == EntityKind.match else entity_id
        async with self._session_factory() as session:
            row = await session.get(model, ident)
            if row is None:
                return None
            return (await self._to_entities(session, kind, [row]))[0]

    async def query(self, kind: EntityKind, filters: Optional[Dict[str, Any]] = None) -> List[Entity]:
        """
        按等值条件查询

        Args:
            kind: 实体类别
            filters: {字段: 值}，值为列表时按 IN 查询

        Returns:
            实体列表（按创建时间排序）
        """
        model = _MODELS[kind]
        query = select(model)
        for field, expected in (filters or {}).items():
            column = getattr(model, field)
            if isinstance(expected, (list, tuple, set, frozenset)):
                query = query.where(column.in_([enum_value(v) for v in expected]))
            else:
                query = query.where(column == enum_value(expected))
        query = query.order_by(model.created_at)

        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return await self._to_entities(session, kind, list(rows))

    async def save(self, *entities: Entity) -> None:
        rows = []
        for entity in entities:
            entity_kind(entity)
            rows.append(_to_row(entity))

        async with self._session_factory() as session:
            async with session.begin():
                for row in rows:
                    await session.merge(row)

        logger.debug(f"保存实体: count={len(rows)}")

    async def delete(self, kind: EntityKind, entity_id: str) -> bool:
        model = _MODELS[kind]
        async with self._session_factory() as session:
            async with session.begin():
                if kind == EntityKind.match:
                    emergency_id, resource_id = _split_pair_key(entity_id)
                    result = await session.execute(
                        delete(MatchRecordModel).where(
                            MatchRecordModel.emergency_id == emergency_id,
                            MatchRecordModel.resource_id == resource_id,
                        )
                    )
                    return result.rowcount > 0

                row = await session.get(model, entity_id)
                if row is None:
                    return False
                column = (
                    MatchRecordModel.emergency_id
                    if kind == EntityKind.emergency
                    else MatchRecordModel.resource_id
                )
                cascaded = await session.execute(
                    delete(MatchRecordModel).where(column == entity_id)
                )
                await session.delete(row)

        logger.info(
            f"删除实体: kind={kind.value}, id={entity_id}, cascaded_matches={cascaded.rowcount}"
        )
        return True
