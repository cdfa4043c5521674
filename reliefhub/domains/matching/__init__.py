"""
匹配领域模块

包含:
- schemas: 需求点、资源、匹配记录与事件
- store / repository: 匹配存储（内存 / SQLAlchemy）
- locks: 匹配对互斥锁
- state_machine: 匹配状态机
- service: 对外匹配操作
"""

from .locks import LocalPairLock, PairLock, RedisPairLock
from .notifications import LoggingNotificationSink, NotificationSink, RedisNotificationSink
from .schemas import (
    Actor, ActorRole, Emergency, MatchAction, MatchEvent, MatchRecord, MatchRef,
    MatchStatus, Resource, ResourceNeed,
)
from .service import MatchingService, create_matching_service, default_match_policy
from .state_machine import MatchStateMachine
from .store import InMemoryMatchStore, MatchStore

__all__ = [
    "Actor",
    "ActorRole",
    "Emergency",
    "InMemoryMatchStore",
    "LocalPairLock",
    "LoggingNotificationSink",
    "MatchAction",
    "MatchEvent",
    "MatchRecord",
    "MatchRef",
    "MatchStateMachine",
    "MatchStatus",
    "MatchStore",
    "MatchingService",
    "NotificationSink",
    "PairLock",
    "RedisNotificationSink",
    "RedisPairLock",
    "Resource",
    "ResourceNeed",
    "create_matching_service",
    "default_match_policy",
]
