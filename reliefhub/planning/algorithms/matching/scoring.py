"""
匹配评分

两个方向各有一个固定权重公式，结果为[0,100]内的整数:

- 资源→需求（为一个需求点排序资源）:
    score = round(0.6 * 距离分 + 0.4 * 数量分)
    数量分 = 100 * 资源数量 / 需求数量

- 需求→资源（为一个资源排序需求点）:
    score = round(0.4 * 距离分 + 0.4 * 紧急度分 + 0.2 * 数量分)
    数量分 = 100 * 需求数量 / 资源数量

距离分 = 100 * (1 - 距离 / 最大距离)。各分项均裁剪到[0,100]，
数量比分母为0时该分项记0分。
"""
from __future__ import annotations

import math
from typing import Dict, Optional

SCORE_MIN = 0.0
SCORE_MAX = 100.0

# 资源→需求 权重
RESOURCE_DISTANCE_WEIGHT = 0.6
RESOURCE_QUANTITY_WEIGHT = 0.4

# 需求→资源 权重
EMERGENCY_DISTANCE_WEIGHT = 0.4
EMERGENCY_URGENCY_WEIGHT = 0.4
EMERGENCY_QUANTITY_WEIGHT = 0.2

URGENCY_SCORES: Dict[str, float] = {
    "critical": 100.0,
    "high": 75.0,
    "medium": 50.0,
    "low": 25.0,
}


def clamp(value: float, lower: float = SCORE_MIN, upper: float = SCORE_MAX) -> float:
    if math.isnan(value):
        return lower
    return max(lower, min(upper, value))


def round_half_up(value: float) -> int:
    """四舍五入（0.5向上），避免内置round的银行家舍入"""
    return int(math.floor(value + 0.5))


def distance_score(distance_km: float, max_distance_km: float) -> float:
    """距离越近分越高；d<=maxDistance 范围内单调不增"""
    if max_distance_km <= 0:
        return SCORE_MAX if distance_km <= 0 else SCORE_MIN
    return clamp(100.0 * (1.0 - distance_km / max_distance_km))


def quantity_score(numerator: float, denominator: float) -> float:
    if not denominator:
        return SCORE_MIN
    return clamp(100.0 * numerator / denominator)


def urgency_score(urgency: Optional[str]) -> float:
    if urgency is None:
        return SCORE_MIN
    key = getattr(urgency, "value", urgency)
    return URGENCY_SCORES.get(key, SCORE_MIN)


def score_resource_for_emergency(
    distance_km: float,
    resource_quantity: float,
    needed_quantity: float,
    max_distance_km: float,
) -> int:
    """资源→需求方向评分"""
    raw = (
        RESOURCE_DISTANCE_WEIGHT * distance_score(distance_km, max_distance_km)
        + RESOURCE_QUANTITY_WEIGHT * quantity_score(resource_quantity, needed_quantity)
    )
    return int(clamp(round_half_up(raw)))


def score_emergency_for_resource(
    distance_km: float,
    urgency: Optional[str],
    needed_quantity: float,
    resource_quantity: float,
    max_distance_km: float,
) -> int:
    """需求→资源方向评分"""
    raw = (
        EMERGENCY_DISTANCE_WEIGHT * distance_score(distance_km, max_distance_km)
        + EMERGENCY_URGENCY_WEIGHT * urgency_score(urgency)
        + EMERGENCY_QUANTITY_WEIGHT * quantity_score(needed_quantity, resource_quantity)
    )
    return int(clamp(round_half_up(raw)))
