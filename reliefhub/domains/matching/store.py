"""
匹配存储抽象

职责: 实体读写与按键加锁，无业务逻辑

- save(*entities) 一次调用内的实体作为一个原子单元写入
- delete() 删除实体时级联删除其匹配记录
- 需求点/资源上的 matched_*_ids 由匹配记录投影得出
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from .locks import LocalPairLock, PairLock
from .schemas import (
    Emergency, EntityKind, MatchRecord, Resource, enum_value, pair_key,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Entity = Union[Emergency, Resource, MatchRecord]


def entity_kind(entity: Entity) -> EntityKind:
    if isinstance(entity, Emergency):
        return EntityKind.emergency
    if isinstance(entity, Resource):
        return EntityKind.resource
    if isinstance(entity, MatchRecord):
        return EntityKind.match
    raise TypeError(f"不支持的实体类型: {type(entity).__name__}")


def matches_filters(entity: Any, filters: Optional[Dict[str, Any]]) -> bool:
    """
    简单等值过滤

    值为 list/tuple/set 时按"属于"匹配，枚举按原始值比较
    """
    for field, expected in (filters or {}).items():
        actual = enum_value(getattr(entity, field, None))
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in {enum_value(v) for v in expected}:
                return False
        elif actual != enum_value(expected):
            return False
    return True


class MatchStore(ABC):
    """匹配存储抽象"""

    def __init__(self, pair_lock: Optional[PairLock] = None) -> None:
        self._pair_lock = pair_lock or LocalPairLock()

    @abstractmethod
    async def get(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        """按ID查询实体；匹配记录的ID为 pair_key"""

    @abstractmethod
    async def query(self, kind: EntityKind, filters: Optional[Dict[str, Any]] = None) -> List[Entity]:
        """按等值条件查询实体"""

    @abstractmethod
    async def save(self, *entities: Entity) -> None:
        """原子写入一组实体"""

    @abstractmethod
    async def delete(self, kind: EntityKind, entity_id: str) -> bool:
        """删除实体，返回是否存在"""

    def lock(self, key: str):
        """按键加锁（异步上下文管理器，等待超时抛 ContentionError）"""
        return self._pair_lock.acquire(key)

    async def with_lock(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.lock(key):
            return await fn()

    # ==================== 便捷查询 ====================

    async def get_emergency(self, emergency_id: str) -> Optional[Emergency]:
        return await self.get(EntityKind.emergency, emergency_id)

    async def get_resource(self, resource_id: str) -> Optional[Resource]:
        return await self.get(EntityKind.resource, resource_id)

    async def get_match(self, emergency_id: str, resource_id: str) -> Optional[MatchRecord]:
        return await self.get(EntityKind.match, pair_key(emergency_id, resource_id))

    async def matches_for_emergency(self, emergency_id: str) -> List[MatchRecord]:
        return await self.query(EntityKind.match, {"emergency_id": emergency_id})

    async def matches_for_resource(self, resource_id: str) -> List[MatchRecord]:
        return await self.query(EntityKind.match, {"resource_id": resource_id})


class InMemoryMatchStore(MatchStore):
    """
    内存存储

    读写均深拷贝，调用方持有的对象不会与存储共享状态。
    """

    def __init__(self, pair_lock: Optional[PairLock] = None) -> None:
        super().__init__(pair_lock)
        self._emergencies: Dict[str, Emergency] = {}
        self._resources: Dict[str, Resource] = {}
        self._matches: Dict[str, MatchRecord] = {}

    def _table(self, kind: EntityKind) -> Dict[str, Any]:
        if kind == EntityKind.emergency:
            return self._emergencies
        if kind == EntityKind.resource:
            return self._resources
        return self._matches

    def _project(self, entity: Entity) -> Entity:
        copy = entity.model_copy(deep=True)
        if isinstance(copy, Emergency):
            copy.matched_resource_ids = [
                m.resource_id for m in self._matches.values() if m.emergency_id == copy.id
            ]
        elif isinstance(copy, Resource):
            copy.matched_emergency_ids = [
                m.emergency_id for m in self._matches.values() if m.resource_id == copy.id
            ]
        return copy

    async def get(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        entity = self._table(kind).get(entity_id)
        return self._project(entity) if entity is not None else None

    async def query(self, kind: EntityKind, filters: Optional[Dict[str, Any]] = None) -> List[Entity]:
        return [
            self._project(e) for e in self._table(kind).values()
            if matches_filters(e, filters)
        ]

    async def save(self, *entities: Entity) -> None:
        # 先全部校验与拷贝，再一次性写入
        staged = [(entity_kind(e), e.model_copy(deep=True)) for e in entities]
        for kind, entity in staged:
            key = entity.key if kind == EntityKind.match else entity.id
            self._table(kind)[key] = entity

    async def delete(self, kind: EntityKind, entity_id: str) -> bool:
        table = self._table(kind)
        if entity_id not in table:
            return False
        del table[entity_id]
        if kind == EntityKind.emergency:
            field = "emergency_id"
        elif kind == EntityKind.resource:
            field = "resource_id"
        else:
            return True
        orphaned = [k for k, m in self._matches.items() if getattr(m, field) == entity_id]
        for k in orphaned:
            del self._matches[k]
        logger.info(f"删除实体: kind={kind.value}, id={entity_id}, cascaded_matches={len(orphaned)}")
        return True
