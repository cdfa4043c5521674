"""
匹配业务服务层

对外操作:
- 为需求点排序资源 / 为资源排序需求点（只读，不抛出"无匹配"）
- 排序并建立待定匹配记录
- 匹配状态迁移（授权判定后交给状态机）
- 匹配记录查询、附近可用资源与进行中需求点查询
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from reliefhub.core.exceptions import (
    DuplicateMatchError, InvalidCoordinatesError, InvalidTransitionError, NotFoundError,
    ValidationError,
)
from reliefhub.planning.algorithms.base import (
    AlgorithmStatus, haversine_distance, round_distance, validate_coordinate,
)
from reliefhub.planning.algorithms.matching import (
    MatchingConfig, ReliefMatchEngine, is_valid_radius,
)

from .notifications import NotificationSink
from .schemas import (
    Actor, ActorRole, Emergency, EmergencyRankingResponse, EmergencyStatus, EntityKind,
    Location, MatchAction, MatchRef, MatchTransitionResponse, NearbyEmergency, NearbyResource,
    ProposeSummary, RankedEmergency, RankedResource, RankingStatus, Resource,
    ResourceRankingResponse, ResourceStatus,
)
from .state_machine import MatchStateMachine
from .store import MatchStore

logger = logging.getLogger(__name__)

MatchPolicy = Callable[[Actor, Emergency, Resource], bool]

_RANKING_STATUS = {
    AlgorithmStatus.SUCCESS: RankingStatus.success,
    AlgorithmStatus.INFEASIBLE: RankingStatus.infeasible,
    AlgorithmStatus.ERROR: RankingStatus.error,
}


def default_match_policy(actor: Actor, emergency: Emergency, resource: Resource) -> bool:
    """资源提供者、被指派到任一方的人员或管理员可操作匹配"""
    if actor.role == ActorRole.admin:
        return True
    if resource.owner_id is not None and actor.actor_id == resource.owner_id:
        return True
    return actor.actor_id in {resource.assigned_to, emergency.assigned_to} - {None}


class MatchingService:
    """匹配服务"""

    def __init__(
        self,
        store: MatchStore,
        sink: Optional[NotificationSink] = None,
        config: Optional[MatchingConfig] = None,
        policy: Optional[MatchPolicy] = None,
    ) -> None:
        self.store = store
        self.config = config or MatchingConfig()
        self.engine = ReliefMatchEngine(self.config)
        self.state_machine = MatchStateMachine(store, sink)
        self.policy = policy or default_match_policy

    # ==================== 排序 ====================

    async def rank_resources_for_emergency(
        self,
        emergency_id: str,
        max_distance_km: Optional[float] = None,
    ) -> ResourceRankingResponse:
        """
        为需求点排序可用资源

        Raises:
            NotFoundError: 需求点不存在
        """
        emergency = await self._require_emergency(emergency_id)
        pool = await self.store.query(
            EntityKind.resource, {"status": ResourceStatus.available}
        )
        result = self.engine.rank_resources(emergency, pool, max_distance_km)
        return ResourceRankingResponse(
            emergency_id=emergency_id,
            items=[
                RankedResource(
                    resource_id=m.candidate_id,
                    distance_km=m.display_distance_km,
                    match_score=m.match_score,
                )
                for m in result.solution
            ],
            total=len(result.solution),
            status=_RANKING_STATUS[result.status],
            message=result.message,
        )

    async def rank_emergencies_for_resource(
        self,
        resource_id: str,
        max_distance_km: Optional[float] = None,
    ) -> EmergencyRankingResponse:
        """
        为资源排序进行中的需求点

        Raises:
            NotFoundError: 资源不存在
        """
        resource = await self._require_resource(resource_id)
        pool = await self.store.query(
            EntityKind.emergency, {"status": EmergencyStatus.active}
        )
        result = self.engine.rank_emergencies(resource, pool, max_distance_km)
        return EmergencyRankingResponse(
            resource_id=resource_id,
            items=[
                RankedEmergency(
                    emergency_id=m.candidate_id,
                    distance_km=m.display_distance_km,
                    match_score=m.match_score,
                )
                for m in result.solution
            ],
            total=len(result.solution),
            status=_RANKING_STATUS[result.status],
            message=result.message,
        )

    # ==================== 排序并建立匹配 ====================

    async def match_resources_for_emergency(
        self,
        emergency_id: str,
        actor: Optional[Actor] = None,
        max_distance_km: Optional[float] = None,
    ) -> ProposeSummary:
        """排序资源并为每个候选建立待定匹配，已有记录的匹配对跳过"""
        ranking = await self.rank_resources_for_emergency(emergency_id, max_distance_km)
        summary = ProposeSummary(created=[])
        for item in ranking.items:
            record = await self._propose_or_skip(
                emergency_id, item.resource_id, item.match_score, actor
            )
            if record is None:
                summary.skipped.append(item.resource_id)
            else:
                summary.created.append(record.ref_for_emergency())

        logger.info(
            f"[匹配服务] 需求点 {emergency_id} 建立匹配: "
            f"created={len(summary.created)}, skipped={len(summary.skipped)}"
        )
        return summary

    async def match_emergencies_for_resource(
        self,
        resource_id: str,
        actor: Optional[Actor] = None,
        max_distance_km: Optional[float] = None,
    ) -> ProposeSummary:
        """排序需求点并为每个候选建立待定匹配，已有记录的匹配对跳过"""
        ranking = await self.rank_emergencies_for_resource(resource_id, max_distance_km)
        summary = ProposeSummary(created=[])
        for item in ranking.items:
            record = await self._propose_or_skip(
                item.emergency_id, resource_id, item.match_score, actor
            )
            if record is None:
                summary.skipped.append(item.emergency_id)
            else:
                summary.created.append(record.ref_for_resource())

        logger.info(
            f"[匹配服务] 资源 {resource_id} 建立匹配: "
            f"created={len(summary.created)}, skipped={len(summary.skipped)}"
        )
        return summary

    async def _propose_or_skip(self, emergency_id, resource_id, score, actor):
        try:
            return await self.state_machine.propose(emergency_id, resource_id, score, actor)
        except (DuplicateMatchError, InvalidTransitionError) as e:
            logger.debug(f"[匹配服务] 跳过已存在的匹配: {e}")
            return None

    # ==================== 状态迁移 ====================

    async def transition_match(
        self,
        emergency_id: str,
        resource_id: str,
        action: MatchAction,
        actor: Actor,
    ) -> MatchTransitionResponse:
        """
        按动作推进匹配状态

        授权判定基于迁移前读取的实体；状态机在锁内重新读取并校验状态。

        Raises:
            NotFoundError: 需求点或资源不存在
            UnauthorizedError: 操作人无权操作该匹配
            InvalidTransitionError: 当前状态不允许该动作
            ContentionError: 锁等待超时，可重试
        """
        emergency = await self._require_emergency(emergency_id)
        resource = await self._require_resource(resource_id)
        authorized = self.policy(actor, emergency, resource)
        return await self.state_machine.transition(
            emergency_id, resource_id, MatchAction(action), actor, authorized
        )

    # ==================== 查询 ====================

    async def list_matches_for_emergency(self, emergency_id: str) -> List[MatchRef]:
        await self._require_emergency(emergency_id)
        records = await self.store.matches_for_emergency(emergency_id)
        return [r.ref_for_emergency() for r in records]

    async def list_matches_for_resource(self, resource_id: str) -> List[MatchRef]:
        await self._require_resource(resource_id)
        records = await self.store.matches_for_resource(resource_id)
        return [r.ref_for_resource() for r in records]

    async def nearby_resources(
        self,
        location: Location,
        radius_km: Optional[float] = None,
    ) -> List[NearbyResource]:
        """
        半径内的可用资源，由近到远

        Raises:
            InvalidCoordinatesError: 查询位置非法
            ValidationError: 半径不是有限正数
        """
        found = await self._within_radius(
            EntityKind.resource, {"status": ResourceStatus.available}, location, radius_km
        )
        return [NearbyResource(resource=r, distance_km=d) for r, d in found]

    async def nearby_emergencies(
        self,
        location: Location,
        radius_km: Optional[float] = None,
    ) -> List[NearbyEmergency]:
        """
        半径内进行中的需求点，由近到远

        Raises:
            InvalidCoordinatesError: 查询位置非法
            ValidationError: 半径不是有限正数
        """
        found = await self._within_radius(
            EntityKind.emergency, {"status": EmergencyStatus.active}, location, radius_km
        )
        return [NearbyEmergency(emergency=e, distance_km=d) for e, d in found]

    async def _within_radius(
        self,
        kind: EntityKind,
        filters: Dict[str, Any],
        location: Location,
        radius_km: Optional[float],
    ) -> List[Tuple[Any, float]]:
        """按条件查询半径内的实体，返回 (实体, 两位小数距离)，由近到远"""
        radius = self.config.max_distance_km if radius_km is None else radius_km
        if not is_valid_radius(radius):
            raise ValidationError(f"radius_km must be a finite positive number: {radius!r}")
        center = validate_coordinate(location)

        found: List[Tuple[Any, float]] = []
        for entity in await self.store.query(kind, filters):
            try:
                distance = haversine_distance(center, entity.location)
            except InvalidCoordinatesError as e:
                logger.warning(
                    f"[匹配服务] {kind.value} 坐标非法，已跳过: id={entity.id}, {e.message}"
                )
                continue
            if distance <= radius:
                found.append((entity, distance))

        found.sort(key=lambda item: (item[1], item[0].id))
        return [(entity, round_distance(distance)) for entity, distance in found]

    # ==================== 内部方法 ====================

    async def _require_emergency(self, emergency_id: str) -> Emergency:
        emergency = await self.store.get_emergency(emergency_id)
        if emergency is None:
            raise NotFoundError("Emergency", emergency_id)
        return emergency

    async def _require_resource(self, resource_id: str) -> Resource:
        resource = await self.store.get_resource(resource_id)
        if resource is None:
            raise NotFoundError("Resource", resource_id)
        return resource


async def create_matching_service(settings=None, session_factory=None) -> MatchingService:
    """
    按配置装配匹配服务

    Redis 可用时使用分布式锁与 Pub/Sub 通知，否则降级为进程内锁与日志通知。
    """
    from reliefhub.core.config import get_settings
    from reliefhub.core.redis import get_redis_client, redis_available

    from .locks import create_pair_lock
    from .notifications import LoggingNotificationSink, RedisNotificationSink
    from .repository import SqlAlchemyMatchStore

    settings = settings or get_settings()
    redis_client = await get_redis_client() if await redis_available() else None

    pair_lock = await create_pair_lock(settings, redis_client)
    if redis_client is not None:
        sink: NotificationSink = RedisNotificationSink(
            redis_client, settings.notification_channel_prefix
        )
    else:
        sink = LoggingNotificationSink()

    return MatchingService(
        store=SqlAlchemyMatchStore(session_factory, pair_lock),
        sink=sink,
        config=MatchingConfig.from_settings(settings),
    )
