"""
匹配状态机测试

覆盖:
- propose → accept → deliver 全流程，两侧投影一致
- 非法迁移无副作用
- 并发 accept 只有一个成功
- 锁等待超时、调用方取消、通知失败
"""
from __future__ import annotations

import asyncio
import logging
from typing import List, Tuple

import pytest

from reliefhub.core.exceptions import (
    ContentionError,
    DuplicateMatchError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from reliefhub.domains.matching.locks import LocalPairLock
from reliefhub.domains.matching.notifications import NotificationSink
from reliefhub.domains.matching.schemas import (
    Actor,
    Emergency,
    EmergencyStatus,
    EmergencyType,
    Location,
    MatchEvent,
    MatchEventType,
    MatchStatus,
    NotificationPriority,
    Resource,
    ResourceNeed,
    ResourceStatus,
    ResourceType,
    Urgency,
    pair_lock_key,
)
from reliefhub.domains.matching.state_machine import MatchStateMachine
from reliefhub.domains.matching.store import InMemoryMatchStore

DONOR = Actor(actor_id="donor")


class _RecordingSink(NotificationSink):
    def __init__(self) -> None:
        self.events: List[MatchEvent] = []

    async def emit(self, event: MatchEvent) -> None:
        self.events.append(event)


class _BrokenSink(NotificationSink):
    async def emit(self, event: MatchEvent) -> None:
        raise RuntimeError("notification channel down")


def _emergency(id: str = "e1") -> Emergency:
    return Emergency(
        id=id,
        title=f"flood {id}",
        type=EmergencyType.flood,
        status=EmergencyStatus.active,
        urgency=Urgency.high,
        location=Location(longitude=0.0, latitude=0.0),
        resources_needed=[
            ResourceNeed(type=ResourceType.food, quantity=5),
            ResourceNeed(type=ResourceType.water, quantity=10),
        ],
        owner_id="reporter",
    )


def _resource(id: str = "r1") -> Resource:
    return Resource(
        id=id,
        name="bottled water",
        type=ResourceType.water,
        quantity=10,
        location=Location(longitude=0.0, latitude=0.09),
        owner_id="donor",
    )


def _setup(
    sink: NotificationSink = None,
    wait_seconds: float = 1.0,
) -> Tuple[InMemoryMatchStore, MatchStateMachine]:
    store = InMemoryMatchStore(LocalPairLock(wait_seconds=wait_seconds))
    return store, MatchStateMachine(store, sink)


async def _seed(store: InMemoryMatchStore, *emergency_ids: str) -> None:
    for eid in emergency_ids or ("e1",):
        await store.save(_emergency(eid))
    await store.save(_resource())


def test_full_lifecycle_keeps_both_views_in_sync() -> None:
    sink = _RecordingSink()
    store, machine = _setup(sink)

    async def scenario():
        await _seed(store)
        await machine.propose("e1", "r1", 88, DONOR)
        accepted = await machine.accept("e1", "r1", DONOR, authorized=True)
        delivered = await machine.deliver("e1", "r1", DONOR, authorized=True)
        return (
            accepted,
            delivered,
            await store.get_emergency("e1"),
            await store.get_resource("r1"),
            await store.get_match("e1", "r1"),
        )

    accepted, delivered, emergency, resource, record = asyncio.run(scenario())

    assert accepted.status == MatchStatus.accepted
    assert accepted.resource_status == ResourceStatus.reserved

    assert delivered.emergency_ref.status == delivered.resource_ref.status == MatchStatus.delivered
    assert delivered.emergency_ref.match_score == delivered.resource_ref.match_score == 88
    assert delivered.fulfilled_need == ResourceType.water

    assert record.status == MatchStatus.delivered
    assert resource.status == ResourceStatus.delivered
    assert emergency.matched_resource_ids == ["r1"]
    assert resource.matched_emergency_ids == ["e1"]
    # 只满足同类别的第一条需求
    assert [n.fulfilled for n in emergency.resources_needed] == [False, True]

    assert [e.event_type for e in sink.events] == [
        MatchEventType.resource_matched,
        MatchEventType.match_accepted,
        MatchEventType.resource_delivered,
    ]
    assert [e.recipient_id for e in sink.events] == ["donor", "donor", "reporter"]
    assert sink.events[1].priority == NotificationPriority.high
    assert sink.events[1].expires_at is not None


def test_deliver_on_pending_fails_without_side_effects() -> None:
    sink = _RecordingSink()
    store, machine = _setup(sink)

    async def scenario():
        await _seed(store)
        await machine.propose("e1", "r1", 88)
        with pytest.raises(InvalidTransitionError) as exc:
            await machine.deliver("e1", "r1", DONOR, authorized=True)
        return exc.value, await store.get_emergency("e1"), await store.get_resource("r1")

    error, emergency, resource = asyncio.run(scenario())

    assert error.current == "pending"
    assert error.action == "deliver"
    assert resource.status == ResourceStatus.available
    assert not any(n.fulfilled for n in emergency.resources_needed)
    assert len(sink.events) == 1


def test_reject_is_terminal_and_leaves_resource_available() -> None:
    sink = _RecordingSink()
    store, machine = _setup(sink)

    async def scenario():
        await _seed(store)
        await machine.propose("e1", "r1", 70)
        response = await machine.reject("e1", "r1", DONOR, authorized=True)
        with pytest.raises(InvalidTransitionError):
            await machine.accept("e1", "r1", DONOR, authorized=True)
        with pytest.raises(InvalidTransitionError):
            await machine.propose("e1", "r1", 70)
        return response

    response = asyncio.run(scenario())

    assert response.status == MatchStatus.rejected
    assert response.resource_status == ResourceStatus.available
    assert sink.events[-1].event_type == MatchEventType.match_rejected
    assert (sink.events[-1].expires_at - sink.events[-1].created_at).days == 7


def test_repeating_a_transition_is_invalid() -> None:
    store, machine = _setup()

    async def scenario():
        await _seed(store)
        await machine.propose("e1", "r1", 88)
        await machine.accept("e1", "r1", DONOR, authorized=True)
        with pytest.raises(InvalidTransitionError):
            await machine.accept("e1", "r1", DONOR, authorized=True)

    asyncio.run(scenario())


def test_concurrent_accepts_resolve_to_exactly_one_success() -> None:
    store, machine = _setup()

    async def scenario():
        await _seed(store)
        await machine.propose("e1", "r1", 88)
        results = await asyncio.gather(
            machine.accept("e1", "r1", DONOR, authorized=True),
            machine.accept("e1", "r1", Actor(actor_id="admin", role="admin"), authorized=True),
            return_exceptions=True,
        )
        return results, await store.get_resource("r1")

    results, resource = asyncio.run(scenario())

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], (InvalidTransitionError, ContentionError))
    assert resource.status == ResourceStatus.reserved


def test_one_resource_cannot_be_reserved_by_two_matches() -> None:
    store, machine = _setup()

    async def scenario():
        await _seed(store, "e1", "e2")
        await machine.propose("e1", "r1", 88)
        await machine.propose("e2", "r1", 80)
        return await asyncio.gather(
            machine.accept("e1", "r1", DONOR, authorized=True),
            machine.accept("e2", "r1", DONOR, authorized=True),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())

    assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1
    assert sum(not isinstance(r, Exception) for r in results) == 1


def test_duplicate_propose_is_rejected() -> None:
    store, machine = _setup()

    async def scenario():
        await _seed(store)
        await machine.propose("e1", "r1", 88)
        with pytest.raises(DuplicateMatchError) as exc:
            await machine.propose("e1", "r1", 60)
        return exc.value, await store.get_match("e1", "r1")

    error, record = asyncio.run(scenario())

    assert error.status_code == 409
    assert record.match_score == 88


def test_propose_validates_inputs() -> None:
    store, machine = _setup()

    async def scenario():
        await _seed(store)
        with pytest.raises(ValidationError):
            await machine.propose("e1", "r1", 101)
        with pytest.raises(ValidationError):
            await machine.propose("e1", "r1", 50.5)
        with pytest.raises(NotFoundError):
            await machine.propose("missing", "r1", 50)
        with pytest.raises(NotFoundError):
            await machine.transition("e1", "r1", "accept", DONOR, True)

    asyncio.run(scenario())


def test_unauthorized_actor_changes_nothing() -> None:
    store, machine = _setup()

    async def scenario():
        await _seed(store)
        await machine.propose("e1", "r1", 88)
        with pytest.raises(UnauthorizedError) as exc:
            await machine.accept("e1", "r1", Actor(actor_id="stranger"), authorized=False)
        return exc.value, await store.get_match("e1", "r1")

    error, record = asyncio.run(scenario())

    assert error.status_code == 403
    assert record.status == MatchStatus.pending


def test_lock_timeout_surfaces_as_retryable_contention() -> None:
    store, machine = _setup(wait_seconds=0.05)

    async def scenario():
        await _seed(store)
        await machine.propose("e1", "r1", 88)
        async with store.lock(pair_lock_key("e1", "r1")):
            with pytest.raises(ContentionError) as exc:
                await machine.accept("e1", "r1", DONOR, authorized=True)
        return exc.value, await store.get_match("e1", "r1")

    error, record = asyncio.run(scenario())

    assert error.retryable is True
    assert error.status_code == 503
    assert record.status == MatchStatus.pending


def test_cancelled_caller_does_not_abort_transition() -> None:
    store, machine = _setup()

    async def scenario():
        await _seed(store)
        await machine.propose("e1", "r1", 88)
        task = asyncio.create_task(machine.accept("e1", "r1", DONOR, authorized=True))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.05)
        return await store.get_match("e1", "r1"), await store.get_resource("r1")

    record, resource = asyncio.run(scenario())

    assert record.status == MatchStatus.accepted
    assert resource.status == ResourceStatus.reserved


def test_cancelled_caller_failed_transition_is_logged(caplog) -> None:
    """调用方取消后迁移失败，异常由后台回调记录，不会无人接收"""
    store, machine = _setup()

    async def scenario():
        await _seed(store)
        await machine.propose("e1", "r1", 88)
        task = asyncio.create_task(machine.deliver("e1", "r1", DONOR, authorized=True))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.05)
        return await store.get_match("e1", "r1"), await store.get_resource("r1")

    with caplog.at_level(logging.WARNING, logger="reliefhub.domains.matching.state_machine"):
        record, resource = asyncio.run(scenario())

    assert record.status == MatchStatus.pending
    assert resource.status == ResourceStatus.available
    failures = [r for r in caplog.records if "后台操作失败" in r.getMessage()]
    assert len(failures) == 1
    assert "deliver e1:r1" in failures[0].getMessage()


def test_notification_failure_does_not_roll_back() -> None:
    store, machine = _setup(_BrokenSink())

    async def scenario():
        await _seed(store)
        await machine.propose("e1", "r1", 88)
        response = await machine.accept("e1", "r1", DONOR, authorized=True)
        return response, await store.get_resource("r1")

    response, resource = asyncio.run(scenario())

    assert response.status == MatchStatus.accepted
    assert resource.status == ResourceStatus.reserved
