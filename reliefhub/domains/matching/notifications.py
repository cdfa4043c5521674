"""
匹配事件通知

状态机在迁移提交后发出 MatchEvent，由 NotificationSink 投递。
投递是尽力而为：失败只记录日志，不回滚已提交的迁移。
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, Optional

from redis.asyncio import Redis

from .schemas import (
    Actor, Emergency, MatchEvent, MatchEventType, MatchRecord, NotificationPriority,
    Resource, Urgency,
)

logger = logging.getLogger(__name__)


# 事件过期天数（未列出的类型不过期）
EVENT_EXPIRATION_DAYS: Dict[MatchEventType, int] = {
    MatchEventType.match_accepted: 30,
    MatchEventType.match_rejected: 7,
}

EVENT_TITLES: Dict[MatchEventType, str] = {
    MatchEventType.resource_matched: "Resource Matched",
    MatchEventType.match_accepted: "Resource Match Accepted",
    MatchEventType.match_rejected: "Resource Match Rejected",
    MatchEventType.resource_delivered: "Resource Delivered",
}


def event_priority(event_type: MatchEventType, emergency: Emergency) -> NotificationPriority:
    """接受匹配为高优先级；其余按需求点紧急度"""
    if event_type == MatchEventType.match_accepted:
        return NotificationPriority.high
    if emergency.urgency == Urgency.critical:
        return NotificationPriority.high
    return NotificationPriority.normal


def _event_message(event_type: MatchEventType, emergency: Emergency, resource: Resource) -> str:
    resource_name = resource.name or resource.id
    emergency_title = emergency.title or emergency.id
    if event_type == MatchEventType.resource_matched:
        return f'Your resource "{resource_name}" has been matched with emergency "{emergency_title}"'
    if event_type == MatchEventType.match_accepted:
        return f'Your resource "{resource_name}" has been accepted for emergency "{emergency_title}"'
    if event_type == MatchEventType.match_rejected:
        return f'Your resource "{resource_name}" was not accepted for emergency "{emergency_title}"'
    return f'Resource "{resource_name}" has been delivered to emergency "{emergency_title}"'


def build_match_event(
    event_type: MatchEventType,
    record: MatchRecord,
    emergency: Emergency,
    resource: Resource,
    actor: Optional[Actor] = None,
) -> MatchEvent:
    """
    构建匹配事件

    接收人: 送达事件发给需求点上报人，其余发给资源提供者
    """
    if event_type == MatchEventType.resource_delivered:
        recipient_id = emergency.owner_id
    else:
        recipient_id = resource.owner_id

    event = MatchEvent(
        event_type=event_type,
        recipient_id=recipient_id,
        emergency_id=record.emergency_id,
        resource_id=record.resource_id,
        match_status=record.status,
        match_score=record.match_score,
        title=EVENT_TITLES[event_type],
        message=_event_message(event_type, emergency, resource),
        priority=event_priority(event_type, emergency),
        actor_id=actor.actor_id if actor else None,
    )
    days = EVENT_EXPIRATION_DAYS.get(event_type)
    if days:
        event.expires_at = event.created_at + timedelta(days=days)
    return event


class NotificationSink(ABC):
    """通知投递抽象（fire-and-forget）"""

    @abstractmethod
    async def emit(self, event: MatchEvent) -> None:
        pass


class LoggingNotificationSink(NotificationSink):
    """仅记录日志，用于未接入消息通道的部署"""

    async def emit(self, event: MatchEvent) -> None:
        logger.info(
            f"[匹配通知] {event.event_type.value} -> {event.recipient_id} "
            f"emergency={event.emergency_id} resource={event.resource_id}"
        )


class RedisNotificationSink(NotificationSink):
    """
    Redis Pub/Sub 通知

    频道: {prefix}{recipient_id}，无接收人时发往 {prefix}broadcast
    """

    def __init__(self, client: Redis, channel_prefix: str = "reliefhub:notify:") -> None:
        self._client = client
        self._prefix = channel_prefix

    def channel_for(self, event: MatchEvent) -> str:
        return f"{self._prefix}{event.recipient_id or 'broadcast'}"

    async def emit(self, event: MatchEvent) -> None:
        payload = json.dumps(event.model_dump(mode="json"), ensure_ascii=False)
        receivers = await self._client.publish(self.channel_for(event), payload)
        logger.debug(f"[匹配通知] 已发布 {event.event_type.value}, receivers={receivers}")
