"""匹配事件构建与投递测试"""
from __future__ import annotations

import asyncio
import json
from typing import List, Tuple

from reliefhub.domains.matching.notifications import (
    LoggingNotificationSink,
    RedisNotificationSink,
    build_match_event,
)
from reliefhub.domains.matching.schemas import (
    Emergency,
    EmergencyType,
    Location,
    MatchEventType,
    MatchRecord,
    MatchStatus,
    NotificationPriority,
    Resource,
    ResourceType,
    Urgency,
)


def _pair(urgency: Urgency = Urgency.medium, owner_id: str = "donor"):
    emergency = Emergency(
        id="e1",
        title="Flooded school",
        type=EmergencyType.flood,
        urgency=urgency,
        location=Location(longitude=0.0, latitude=0.0),
        owner_id="reporter",
    )
    resource = Resource(
        id="r1",
        name="Blankets",
        type=ResourceType.clothing,
        quantity=40,
        location=Location(longitude=0.0, latitude=0.1),
        owner_id=owner_id,
    )
    record = MatchRecord(emergency_id="e1", resource_id="r1", match_score=77)
    return record, emergency, resource


def test_recipients_and_priorities() -> None:
    record, emergency, resource = _pair()

    matched = build_match_event(MatchEventType.resource_matched, record, emergency, resource)
    assert matched.recipient_id == "donor"
    assert matched.priority == NotificationPriority.normal
    assert matched.expires_at is None
    assert '"Blankets"' in matched.message and '"Flooded school"' in matched.message

    record.status = MatchStatus.delivered
    delivered = build_match_event(MatchEventType.resource_delivered, record, emergency, resource)
    assert delivered.recipient_id == "reporter"
    assert delivered.match_status == MatchStatus.delivered


def test_critical_emergency_raises_priority() -> None:
    record, emergency, resource = _pair(urgency=Urgency.critical)
    event = build_match_event(MatchEventType.match_rejected, record, emergency, resource)
    assert event.priority == NotificationPriority.high
    assert (event.expires_at - event.created_at).days == 7


class _FakeRedis:
    def __init__(self) -> None:
        self.published: List[Tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


def test_redis_sink_publishes_to_recipient_channel() -> None:
    client = _FakeRedis()
    sink = RedisNotificationSink(client, channel_prefix="test:")
    record, emergency, resource = _pair()
    event = build_match_event(MatchEventType.match_accepted, record, emergency, resource)

    asyncio.run(sink.emit(event))

    channel, payload = client.published[0]
    assert channel == "test:donor"
    body = json.loads(payload)
    assert body["event_type"] == "match_accepted"
    assert body["priority"] == "high"
    assert body["resource_id"] == "r1"


def test_event_without_recipient_is_broadcast() -> None:
    client = _FakeRedis()
    record, emergency, resource = _pair(owner_id=None)
    event = build_match_event(MatchEventType.resource_matched, record, emergency, resource)

    asyncio.run(RedisNotificationSink(client).emit(event))
    asyncio.run(LoggingNotificationSink().emit(event))

    assert client.published[0][0] == "reliefhub:notify:broadcast"
