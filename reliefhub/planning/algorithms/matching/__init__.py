"""
救灾资源匹配模块

功能:
1. 匹配评分 - 两个方向的加权评分公式
2. 匹配排序 - 过滤、评分、确定性排序
"""

from .relief_matcher import (
    MatchCandidate,
    MatchingConfig,
    ResourceRanker,
    is_valid_radius,
    EmergencyRanker,
    ReliefMatchEngine,
    rank_resources_for_emergency,
    rank_emergencies_for_resource,
)

__all__ = [
    "MatchCandidate",
    "MatchingConfig",
    "ResourceRanker",
    "is_valid_radius",
    "EmergencyRanker",
    "ReliefMatchEngine",
    "rank_resources_for_emergency",
    "rank_emergencies_for_resource",
]
