"""
匹配排序单元测试

覆盖:
- 类别/状态过滤
- 最大距离排除
- 分数降序、距离升序、ID升序的确定性排序
- 空结果(INFEASIBLE)与失败(ERROR)可区分
"""
from __future__ import annotations

from typing import List, Optional

import pytest

from reliefhub.domains.matching.schemas import (
    Emergency,
    EmergencyStatus,
    EmergencyType,
    Location,
    Resource,
    ResourceNeed,
    ResourceStatus,
    ResourceType,
    Urgency,
)
from reliefhub.planning.algorithms.base import AlgorithmStatus
from reliefhub.planning.algorithms.matching import (
    MatchingConfig,
    ReliefMatchEngine,
    rank_emergencies_for_resource,
    rank_resources_for_emergency,
)


def _emergency(
    id: str = "e1",
    lat: float = 0.0,
    needs: Optional[List[ResourceNeed]] = None,
    urgency: Urgency = Urgency.high,
    status: EmergencyStatus = EmergencyStatus.active,
    type: EmergencyType = EmergencyType.flood,
) -> Emergency:
    return Emergency(
        id=id,
        type=type,
        status=status,
        urgency=urgency,
        location=Location(longitude=0.0, latitude=lat),
        resources_needed=(
            needs if needs is not None
            else [ResourceNeed(type=ResourceType.water, quantity=10)]
        ),
    )


def _resource(
    id: str,
    lat: float = 0.09,
    quantity: int = 10,
    type: ResourceType = ResourceType.water,
    status: ResourceStatus = ResourceStatus.available,
) -> Resource:
    return Resource(
        id=id,
        type=type,
        quantity=quantity,
        status=status,
        location=Location(longitude=0.0, latitude=lat),
    )


def test_worked_example() -> None:
    """(0,0)需要10单位水，10km外有10单位水，得88分"""
    matches = rank_resources_for_emergency(_emergency(), [_resource("A")])
    assert len(matches) == 1
    assert matches[0].candidate_id == "A"
    assert matches[0].display_distance_km == 10.01
    assert matches[0].match_score == 88


def test_sorted_by_score_then_distance_then_id() -> None:
    pool = [
        _resource("far", lat=0.0905),   # 88分，稍远
        _resource("weak", lat=0.0, quantity=1),  # 0.6*100 + 0.4*10 = 64
        _resource("b", lat=0.09),
        _resource("a", lat=0.09),
    ]
    matches = rank_resources_for_emergency(_emergency(), pool)

    assert [m.candidate_id for m in matches] == ["a", "b", "far", "weak"]
    assert [m.match_score for m in matches] == [88, 88, 88, 64]
    assert matches[0].distance_km == matches[1].distance_km < matches[2].distance_km


def test_candidates_beyond_radius_never_appear() -> None:
    engine = ReliefMatchEngine(MatchingConfig(max_distance_km=50))
    result = engine.rank_resources(
        _emergency(),
        [_resource("near"), _resource("perfect_but_far", lat=0.5, quantity=1000)],
    )
    assert [m.candidate_id for m in result.solution] == ["near"]
    assert result.metrics["beyond_radius"] == 1

    widened = engine.rank_resources(
        _emergency(), [_resource("perfect_but_far", lat=0.5)], max_distance_km=100
    )
    assert [m.candidate_id for m in widened.solution] == ["perfect_but_far"]


def test_type_mismatch_and_unavailable_are_filtered() -> None:
    pool = [
        _resource("food", type=ResourceType.food),
        _resource("reserved", status=ResourceStatus.reserved),
        _resource("ok"),
    ]
    matches = rank_resources_for_emergency(_emergency(), pool)
    assert [m.candidate_id for m in matches] == ["ok"]


def test_fulfilled_need_is_not_ranked_again() -> None:
    emergency = _emergency(needs=[ResourceNeed(type=ResourceType.water, quantity=10, fulfilled=True)])
    assert rank_resources_for_emergency(emergency, [_resource("A")]) == []


def test_emergency_type_fallback_uses_headline_quantity() -> None:
    emergency = Emergency(
        id="e-water",
        type=EmergencyType.water,
        status=EmergencyStatus.active,
        location=Location(longitude=0.0, latitude=0.0),
        quantity=20,
    )
    matches = rank_resources_for_emergency(emergency, [_resource("A", quantity=10)])
    # 0.6*80 + 0.4*50 = 68
    assert matches[0].match_score == 68


def test_empty_result_is_infeasible_not_error() -> None:
    result = ReliefMatchEngine().rank_resources(_emergency(), [])
    assert result.status == AlgorithmStatus.INFEASIBLE
    assert result.solution == []


def test_invalid_candidate_is_skipped_without_failing_batch() -> None:
    broken = _resource("broken")
    broken.location = Location.model_construct(longitude=200.0, latitude=0.0)

    result = ReliefMatchEngine().rank_resources(_emergency(), [broken, _resource("ok")])

    assert result.status == AlgorithmStatus.SUCCESS
    assert [m.candidate_id for m in result.solution] == ["ok"]
    assert result.metrics["invalid_coordinates"] == 1


def test_invalid_anchor_fails_whole_ranking() -> None:
    emergency = _emergency()
    emergency.location = Location.model_construct(longitude=0.0, latitude=95.0)

    result = ReliefMatchEngine().rank_resources(emergency, [_resource("A")])

    assert result.status == AlgorithmStatus.ERROR
    assert result.solution == []


def test_non_positive_radius_is_an_error() -> None:
    result = ReliefMatchEngine().rank_resources(_emergency(), [_resource("A")], max_distance_km=0)
    assert result.status == AlgorithmStatus.ERROR


@pytest.mark.parametrize("radius", [float("nan"), float("inf"), True, "50"])
def test_non_finite_radius_is_an_error(radius) -> None:
    """NaN 半径会让距离比较恒为假，必须拒绝"""
    far = _resource("far", lat=60.0)
    result = ReliefMatchEngine().rank_resources(_emergency(), [far], max_distance_km=radius)
    assert result.status == AlgorithmStatus.ERROR
    assert result.solution == []
    assert rank_resources_for_emergency(_emergency(), [far], max_distance_km=radius) == []


def test_rank_emergencies_for_resource() -> None:
    resource = _resource("r1", lat=0.0, quantity=10)
    pool = [
        _emergency("high", lat=0.09, urgency=Urgency.high),
        _emergency("critical", lat=0.09, urgency=Urgency.critical),
        _emergency("pending", lat=0.09, status=EmergencyStatus.pending),
        _emergency("too_big", lat=0.09, needs=[ResourceNeed(type=ResourceType.water, quantity=11)]),
        _emergency("no_water", lat=0.09, needs=[ResourceNeed(type=ResourceType.food, quantity=1)]),
    ]

    matches = rank_emergencies_for_resource(resource, pool)

    assert [m.candidate_id for m in matches] == ["critical", "high"]
    # 0.4*80 + 0.4*100 + 0.2*100 = 92；0.4*80 + 0.4*75 + 0.2*100 = 82
    assert [m.match_score for m in matches] == [92, 82]


def test_same_resource_may_top_two_rankings() -> None:
    """逐锚点贪心排序，不做全局分配"""
    shared = _resource("shared")
    first = rank_resources_for_emergency(_emergency("e1"), [shared])
    second = rank_resources_for_emergency(_emergency("e2"), [shared])
    assert first[0].candidate_id == second[0].candidate_id == "shared"
