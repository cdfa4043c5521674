"""
匹配对互斥锁

状态迁移需同时修改需求点与资源两个聚合，必须在按键(匹配对/资源)加锁的前提下执行。
所有锁获取都有等待上限，超时抛出可重试的 ContentionError。

- LocalPairLock: 进程内 asyncio.Lock，适用于单实例或测试
- RedisPairLock: Redis 分布式锁，适用于多实例部署
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from functools import partial
from typing import AsyncContextManager, AsyncIterator, Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from reliefhub.core.exceptions import ContentionError

logger = logging.getLogger(__name__)


class PairLock(ABC):
    """按键加锁的抽象"""

    def __init__(self, wait_seconds: float = 5.0) -> None:
        self.wait_seconds = wait_seconds

    @abstractmethod
    def acquire(self, key: str) -> AsyncContextManager[None]:
        """返回异步上下文管理器，进入即持有锁"""


def _release_if_acquired(lock: asyncio.Lock, waiter: "asyncio.Future[bool]") -> None:
    if not waiter.cancelled() and waiter.exception() is None:
        lock.release()


def abandon_acquire(lock: asyncio.Lock, waiter: "asyncio.Future[bool]") -> None:
    """
    放弃一次加锁等待

    超时与获取成功可能同时发生；若等待最终拿到了锁，立即释放。
    """
    waiter.cancel()
    waiter.add_done_callback(partial(_release_if_acquired, lock))


class LocalPairLock(PairLock):
    """进程内按键锁"""

    def __init__(self, wait_seconds: float = 5.0) -> None:
        super().__init__(wait_seconds)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            waiter = asyncio.ensure_future(lock.acquire())
            try:
                done, _ = await asyncio.wait({waiter}, timeout=self.wait_seconds)
            except asyncio.CancelledError:
                abandon_acquire(lock, waiter)
                raise
            if not done:
                abandon_acquire(lock, waiter)
                logger.warning(f"[匹配锁] 等待超时: key={key}, wait={self.wait_seconds}s")
                raise ContentionError(key, self.wait_seconds)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                # 无人持有或等待时回收
                self._holders.pop(key, None)
                self._locks.pop(key, None)


class RedisPairLock(PairLock):
    """
    Redis 分布式锁

    ttl_seconds 为锁自动过期时间，防止持有者崩溃后死锁。
    """

    KEY_PREFIX = "reliefhub:lock:"

    def __init__(
        self,
        client: Redis,
        wait_seconds: float = 5.0,
        ttl_seconds: float = 30.0,
    ) -> None:
        super().__init__(wait_seconds)
        self._client = client
        self.ttl_seconds = ttl_seconds

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._client.lock(
            f"{self.KEY_PREFIX}{key}",
            timeout=self.ttl_seconds,
            blocking_timeout=self.wait_seconds,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            logger.warning(f"[匹配锁] Redis加锁失败: key={key}, error={e}")
            raise ContentionError(key, self.wait_seconds) from e
        if not acquired:
            logger.warning(f"[匹配锁] 等待超时: key={key}, wait={self.wait_seconds}s")
            raise ContentionError(key, self.wait_seconds)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # 锁已过期被他人获取，迁移本身已完成
                logger.error(f"[匹配锁] 释放失败（可能已过期）: key={key}, error={e}")


async def create_pair_lock(settings, redis_client: Optional[Redis] = None) -> PairLock:
    """
    根据配置创建锁

    Redis 不可用时降级为进程内锁（仅保证单实例互斥）。
    """
    from reliefhub.core.redis import get_redis_client, redis_available

    if redis_client is None and await redis_available():
        redis_client = await get_redis_client()

    if redis_client is not None:
        logger.info("[匹配锁] 使用Redis分布式锁")
        return RedisPairLock(
            redis_client,
            wait_seconds=settings.match_lock_wait_seconds,
            ttl_seconds=settings.match_lock_ttl_seconds,
        )

    logger.warning("[匹配锁] Redis不可用，降级为进程内锁")
    return LocalPairLock(wait_seconds=settings.match_lock_wait_seconds)
