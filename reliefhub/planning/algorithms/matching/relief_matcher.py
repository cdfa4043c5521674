"""
救灾资源匹配排序算法

业务逻辑:
=========
1. 为需求点排序资源（ResourceRanker）:
   - 资源类别与需求点未满足需求一致
   - 资源状态为 available
2. 为资源排序需求点（EmergencyRanker）:
   - 需求点状态为 active
   - 类别一致，且需求数量不超过资源数量

共同步骤:
=========
- 计算球面距离，超出最大距离的候选直接排除（不参与评分）
- 按方向公式评分（见 scoring.py）
- 排序: 分数降序 → 距离升序 → 候选ID升序，结果确定

单个锚点的贪心排序，不做全局最优分配：
两个需求点可以各自把同一个资源排在第一位。
纯函数，无共享可变状态，不同锚点可并行计算。
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from reliefhub.core.exceptions import InvalidCoordinatesError

from ..base import (
    AlgorithmBase, AlgorithmResult, AlgorithmStatus,
    haversine_distance, round_distance, validate_coordinate,
)
from .scoring import score_emergency_for_resource, score_resource_for_emergency

logger = logging.getLogger(__name__)

DEFAULT_MAX_DISTANCE_KM = 50.0


@dataclass(frozen=True)
class MatchingConfig:
    """匹配引擎配置（构造时注入，不读全局状态）"""
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM

    @classmethod
    def from_settings(cls, settings: Any) -> "MatchingConfig":
        return cls(
            max_distance_km=settings.matching_max_distance_km,
        )


@dataclass
class MatchCandidate:
    """排序结果项"""
    candidate: Any
    candidate_id: str
    distance_km: float  # 完整精度，仅用于比较
    match_score: int

    @property
    def display_distance_km(self) -> float:
        return round_distance(self.distance_km)


def is_valid_radius(value: Any) -> bool:
    """半径必须是有限正数（排除 bool 与 NaN）"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def _value(x: Any) -> Any:
    return getattr(x, "value", x)


def _sort_key(c: MatchCandidate) -> Tuple[int, float, str]:
    return (-c.match_score, c.distance_km, c.candidate_id)


class _RankerBase(AlgorithmBase):
    """两个方向共用的参数处理与结果封装"""

    anchor_key: str = ""
    pool_key: str = ""

    def get_default_params(self) -> Dict[str, Any]:
        return {"max_distance_km": DEFAULT_MAX_DISTANCE_KM}

    def validate_input(self, problem: Dict[str, Any]) -> Tuple[bool, str]:
        if problem.get(self.anchor_key) is None:
            return False, f"缺少 {self.anchor_key}"
        if self.pool_key not in problem:
            return False, f"缺少 {self.pool_key}"
        max_distance = self._max_distance(problem)
        if not is_valid_radius(max_distance):
            return False, f"max_distance_km 必须为有限正数: {max_distance!r}"
        return True, ""

    def _max_distance(self, problem: Dict[str, Any]) -> float:
        value = problem.get("max_distance_km")
        return self.params["max_distance_km"] if value is None else value

    def _distance_or_skip(self, anchor: Any, candidate: Any, stats: Dict[str, float]) -> Optional[float]:
        try:
            return haversine_distance(anchor, candidate.location)
        except InvalidCoordinatesError as e:
            stats["invalid_coordinates"] += 1
            self.logger.warning(f"候选坐标非法，已跳过: id={candidate.id}, {e.message}")
            return None

    def _result(self, matches: List[MatchCandidate], stats: Dict[str, float], anchor_id: str) -> AlgorithmResult:
        matches.sort(key=_sort_key)
        stats["matched"] = len(matches)
        if matches:
            status, message = AlgorithmStatus.SUCCESS, ""
        else:
            status, message = AlgorithmStatus.INFEASIBLE, "无符合条件的候选"
        self.logger.info(
            f"[匹配排序] anchor={anchor_id} pool={int(stats['pool'])} "
            f"matched={len(matches)} beyond_radius={int(stats['beyond_radius'])}"
        )
        return AlgorithmResult(
            status=status,
            solution=matches,
            metrics=stats,
            trace={"anchor_id": anchor_id},
            time_ms=0,
            message=message,
        )


class ResourceRanker(_RankerBase):
    """
    为需求点排序资源

    使用示例:
    ```python
    result = ResourceRanker().run({
        "emergency": emergency,
        "resources": resources,
        "max_distance_km": 50,
    })
    for m in result.solution:
        print(m.candidate_id, m.display_distance_km, m.match_score)
    ```
    """

    anchor_key = "emergency"
    pool_key = "resources"

    def solve(self, problem: Dict[str, Any]) -> AlgorithmResult:
        emergency = problem["emergency"]
        max_distance = float(self._max_distance(problem))
        anchor = validate_coordinate(emergency.location)

        stats: Dict[str, float] = {"pool": 0, "beyond_radius": 0, "invalid_coordinates": 0}
        matches: List[MatchCandidate] = []

        for resource in problem[self.pool_key] or []:
            stats["pool"] += 1
            if _value(resource.status) != "available":
                continue
            need = emergency.demand_for(resource.type)
            if need is None:
                continue

            distance = self._distance_or_skip(anchor, resource, stats)
            if distance is None:
                continue
            if distance > max_distance:
                stats["beyond_radius"] += 1
                continue

            score = score_resource_for_emergency(
                distance_km=distance,
                resource_quantity=resource.quantity,
                needed_quantity=need.quantity,
                max_distance_km=max_distance,
            )
            matches.append(MatchCandidate(
                candidate=resource,
                candidate_id=str(resource.id),
                distance_km=distance,
                match_score=score,
            ))

        return self._result(matches, stats, str(emergency.id))


class EmergencyRanker(_RankerBase):
    """为资源排序需求点"""

    anchor_key = "resource"
    pool_key = "emergencies"

    def solve(self, problem: Dict[str, Any]) -> AlgorithmResult:
        resource = problem["resource"]
        max_distance = float(self._max_distance(problem))
        anchor = validate_coordinate(resource.location)

        stats: Dict[str, float] = {"pool": 0, "beyond_radius": 0, "invalid_coordinates": 0}
        matches: List[MatchCandidate] = []

        for emergency in problem[self.pool_key] or []:
            stats["pool"] += 1
            if _value(emergency.status) != "active":
                continue
            need = emergency.demand_for(resource.type)
            if need is None or need.quantity > resource.quantity:
                continue

            distance = self._distance_or_skip(anchor, emergency, stats)
            if distance is None:
                continue
            if distance > max_distance:
                stats["beyond_radius"] += 1
                continue

            score = score_emergency_for_resource(
                distance_km=distance,
                urgency=emergency.urgency,
                needed_quantity=need.quantity,
                resource_quantity=resource.quantity,
                max_distance_km=max_distance,
            )
            matches.append(MatchCandidate(
                candidate=emergency,
                candidate_id=str(emergency.id),
                distance_km=distance,
                match_score=score,
            ))

        return self._result(matches, stats, str(resource.id))


class ReliefMatchEngine:
    """
    匹配引擎

    持有注入的 MatchingConfig，按方向调用排序算法。
    排序失败不抛异常，返回 ERROR 状态与空列表并记录日志。
    """

    def __init__(self, config: Optional[MatchingConfig] = None) -> None:
        self.config = config or MatchingConfig()
        params = {"max_distance_km": self.config.max_distance_km}
        self._resource_ranker = ResourceRanker(params)
        self._emergency_ranker = EmergencyRanker(params)

    def rank_resources(
        self,
        emergency: Any,
        resource_pool: Iterable[Any],
        max_distance_km: Optional[float] = None,
    ) -> AlgorithmResult:
        return self._resource_ranker.run({
            "emergency": emergency,
            "resources": list(resource_pool),
            "max_distance_km": max_distance_km,
        })

    def rank_emergencies(
        self,
        resource: Any,
        emergency_pool: Iterable[Any],
        max_distance_km: Optional[float] = None,
    ) -> AlgorithmResult:
        return self._emergency_ranker.run({
            "resource": resource,
            "emergencies": list(emergency_pool),
            "max_distance_km": max_distance_km,
        })


def rank_resources_for_emergency(
    emergency: Any,
    resource_pool: Iterable[Any],
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
) -> List[MatchCandidate]:
    """为需求点排序资源，失败或无候选时返回空列表"""
    return ReliefMatchEngine().rank_resources(emergency, resource_pool, max_distance_km).solution


def rank_emergencies_for_resource(
    resource: Any,
    emergency_pool: Iterable[Any],
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
) -> List[MatchCandidate]:
    """为资源排序需求点，失败或无候选时返回空列表"""
    return ReliefMatchEngine().rank_emergencies(resource, emergency_pool, max_distance_km).solution
