"""
救灾资源协调系统 - 算法模块

模块结构:
- base.py      算法基类、坐标与球面距离
- matching/    匹配评分与排序
"""

from .base import (
    AlgorithmBase,
    AlgorithmResult,
    AlgorithmStatus,
    Coordinate,
    haversine_distance,
    validate_coordinate,
)

__all__ = [
    "AlgorithmBase",
    "AlgorithmResult",
    "AlgorithmStatus",
    "Coordinate",
    "haversine_distance",
    "validate_coordinate",
]
