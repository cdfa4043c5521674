"""
匹配状态机

状态:
    pending ──accept──▶ accepted ──deliver──▶ delivered
       └────reject────▶ rejected

rejected / delivered 为终态，记录不会从终态复活。

并发安全:
- 每次迁移先持有匹配对锁，再持有资源锁（固定顺序，不会死锁）
- 锁等待有上限，超时抛出可重试的 ContentionError
- 匹配记录、资源状态、需求满足标记在一次 save() 中原子写入
- 迁移一旦开始即运行到结束，调用方取消不会留下半完成的写入
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Dict, Optional, Set, Tuple, TypeVar

from reliefhub.core.exceptions import (
    DuplicateMatchError, InvalidTransitionError, NotFoundError, UnauthorizedError,
    ValidationError,
)

from .notifications import NotificationSink, build_match_event
from .schemas import (
    Actor, Emergency, MatchAction, MatchEvent, MatchEventType, MatchRecord, MatchStatus,
    MatchTransitionResponse, Resource, ResourceStatus, pair_key, pair_lock_key,
    resource_lock_key,
)
from .store import MatchStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


# 动作 -> (允许的起始状态, 目标状态)
TRANSITIONS: Dict[MatchAction, Tuple[Set[MatchStatus], MatchStatus]] = {
    MatchAction.accept: ({MatchStatus.pending}, MatchStatus.accepted),
    MatchAction.reject: ({MatchStatus.pending}, MatchStatus.rejected),
    MatchAction.deliver: ({MatchStatus.accepted}, MatchStatus.delivered),
}

TRANSITION_EVENTS: Dict[MatchAction, MatchEventType] = {
    MatchAction.accept: MatchEventType.match_accepted,
    MatchAction.reject: MatchEventType.match_rejected,
    MatchAction.deliver: MatchEventType.resource_delivered,
}


def _log_detached_outcome(label: str, task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning(f"[匹配状态机] 调用方已取消，后台操作失败: {label}, error={error}")
    else:
        logger.info(f"[匹配状态机] 调用方已取消，后台操作已完成: {label}")


async def _run_to_completion(coro: Awaitable[T], label: str) -> T:
    """
    操作一旦开始即运行到结束

    调用方被取消时操作继续执行，其结果由回调记录日志。
    """
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        task.add_done_callback(partial(_log_detached_outcome, label))
        raise


class MatchStateMachine:
    """
    匹配状态机

    授权由调用方判定后以 authorized 传入，本组件据此放行或拒绝。
    """

    def __init__(self, store: MatchStore, sink: Optional[NotificationSink] = None) -> None:
        self._store = store
        self._sink = sink

    # ==================== 创建 ====================

    async def propose(
        self,
        emergency_id: str,
        resource_id: str,
        score: int,
        actor: Optional[Actor] = None,
    ) -> MatchRecord:
        """
        创建待定匹配记录

        Raises:
            ValidationError: 分数不是[0,100]内的整数
            NotFoundError: 需求点或资源不存在
            DuplicateMatchError: 该匹配对已有未结束的记录
            InvalidTransitionError: 该匹配对已处于终态
        """
        if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
            raise ValidationError(f"match score must be an integer in [0,100]: {score!r}")

        record, emergency, resource = await _run_to_completion(
            self._locked_propose(emergency_id, resource_id, score),
            f"propose {pair_key(emergency_id, resource_id)}",
        )
        logger.info(f"[匹配状态机] 创建匹配: {record.key}, score={score}")
        await self._notify(build_match_event(
            MatchEventType.resource_matched, record, emergency, resource, actor
        ))
        return record

    async def _locked_propose(
        self, emergency_id: str, resource_id: str, score: int
    ) -> Tuple[MatchRecord, Emergency, Resource]:
        async with self._store.lock(pair_lock_key(emergency_id, resource_id)):
            existing = await self._store.get_match(emergency_id, resource_id)
            if existing is not None:
                if existing.status.is_terminal:
                    raise InvalidTransitionError(
                        existing.status.value, "propose", "match is closed"
                    )
                raise DuplicateMatchError(emergency_id, resource_id, existing.status.value)

            emergency, resource = await self._load_pair(emergency_id, resource_id)
            record = MatchRecord(
                emergency_id=emergency_id,
                resource_id=resource_id,
                match_score=score,
            )
            await self._store.save(record)
            return record, emergency, resource

    # ==================== 迁移 ====================

    async def accept(self, emergency_id: str, resource_id: str, actor: Actor, authorized: bool) -> MatchTransitionResponse:
        return await self.transition(emergency_id, resource_id, MatchAction.accept, actor, authorized)

    async def reject(self, emergency_id: str, resource_id: str, actor: Actor, authorized: bool) -> MatchTransitionResponse:
        return await self.transition(emergency_id, resource_id, MatchAction.reject, actor, authorized)

    async def deliver(self, emergency_id: str, resource_id: str, actor: Actor, authorized: bool) -> MatchTransitionResponse:
        return await self.transition(emergency_id, resource_id, MatchAction.deliver, actor, authorized)

    async def transition(
        self,
        emergency_id: str,
        resource_id: str,
        action: MatchAction,
        actor: Actor,
        authorized: bool,
    ) -> MatchTransitionResponse:
        """
        执行一次状态迁移

        Args:
            emergency_id: 需求点ID
            resource_id: 资源ID
            action: accept / reject / deliver
            actor: 操作人
            authorized: 调用方的授权判定结果

        Returns:
            迁移后的匹配对状态

        Raises:
            UnauthorizedError: 未授权
            NotFoundError: 匹配记录或实体不存在
            InvalidTransitionError: 当前状态不允许该动作（不可重试）
            ContentionError: 锁等待超时（可退避重试）
        """
        action = MatchAction(action)
        if not authorized:
            logger.warning(
                f"[匹配状态机] 拒绝未授权操作: actor={actor.actor_id}, action={action.value}, "
                f"pair={pair_key(emergency_id, resource_id)}"
            )
            raise UnauthorizedError(actor.actor_id, action.value)

        response, event = await _run_to_completion(
            self._locked_transition(emergency_id, resource_id, action, actor),
            f"{action.value} {pair_key(emergency_id, resource_id)}",
        )
        await self._notify(event)
        return response

    async def _locked_transition(
        self,
        emergency_id: str,
        resource_id: str,
        action: MatchAction,
        actor: Actor,
    ) -> Tuple[MatchTransitionResponse, MatchEvent]:
        async with self._store.lock(pair_lock_key(emergency_id, resource_id)):
            async with self._store.lock(resource_lock_key(resource_id)):
                record = await self._store.get_match(emergency_id, resource_id)
                if record is None:
                    raise NotFoundError("Match", pair_key(emergency_id, resource_id))
                emergency, resource = await self._load_pair(emergency_id, resource_id)

                allowed, target = TRANSITIONS[action]
                if record.status not in allowed:
                    raise InvalidTransitionError(record.status.value, action.value)

                changed = [record]
                fulfilled_need = None
                if action == MatchAction.accept:
                    if resource.status != ResourceStatus.available:
                        raise InvalidTransitionError(
                            record.status.value, action.value,
                            f"resource is {resource.status.value}",
                        )
                    resource.status = ResourceStatus.reserved
                    changed.append(resource)
                elif action == MatchAction.deliver:
                    resource.status = ResourceStatus.delivered
                    changed.append(resource)
                    need = emergency.fulfill_need(resource.type)
                    if need is not None:
                        fulfilled_need = need.type
                        changed.append(emergency)

                previous = record.status
                record.status = target
                record.updated_at = datetime.utcnow()
                await self._store.save(*changed)

        logger.info(
            f"[匹配状态机] {record.key}: {previous.value} -> {target.value}, "
            f"actor={actor.actor_id}, resource_status={resource.status.value}"
        )
        response = MatchTransitionResponse(
            emergency_id=emergency_id,
            resource_id=resource_id,
            status=record.status,
            match_score=record.match_score,
            resource_status=resource.status,
            emergency_ref=record.ref_for_emergency(),
            resource_ref=record.ref_for_resource(),
            fulfilled_need=fulfilled_need,
        )
        event = build_match_event(TRANSITION_EVENTS[action], record, emergency, resource, actor)
        return response, event

    # ==================== 内部方法 ====================

    async def _load_pair(self, emergency_id: str, resource_id: str) -> Tuple[Emergency, Resource]:
        emergency = await self._store.get_emergency(emergency_id)
        if emergency is None:
            raise NotFoundError("Emergency", emergency_id)
        resource = await self._store.get_resource(resource_id)
        if resource is None:
            raise NotFoundError("Resource", resource_id)
        return emergency, resource

    async def _notify(self, event: MatchEvent) -> None:
        if self._sink is None:
            return
        try:
            await self._sink.emit(event)
        except Exception as e:
            logger.warning(
                f"[匹配通知] 投递失败（不回滚迁移）: {event.event_type.value} "
                f"pair={pair_key(event.emergency_id, event.resource_id)}, error={e}"
            )
