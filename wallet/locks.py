import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator

from redis.asyncio import Redis
from redis.exceptions import LockError

from core.exceptions import WalletBusyError


class WalletLocks(ABC):
    """
    Named mutual exclusion used to serialize per-wallet critical sections.
    """

    @abstractmethod
    def hold(self, key: str, wait_forever: bool = False) -> AbstractAsyncContextManager[None]:
        """
        Async context manager holding the lock named ``key``.

        Parameters
        ----------
        key : str
            Lock name
        wait_forever : bool
            Ignore the configured wait timeout and block until the lock is free

        Raises
        ------
        WalletBusyError
            If the lock is not acquired within the wait timeout
        """


class LocalWalletLocks(WalletLocks):
    """
    In-process asyncio locks, dropped once nobody holds or awaits them.

    Parameters
    ----------
    wait_timeout : float | None
        Seconds to wait for a lock; None waits forever
    """

    def __init__(self, wait_timeout: float | None = None):
        self.wait_timeout = wait_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str, wait_forever: bool = False) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), None if wait_forever else self.wait_timeout)
            except asyncio.TimeoutError as e:
                raise WalletBusyError(details={"lock": key}) from e
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class RedisWalletLocks(WalletLocks):
    """
    Cross-process locks built on redis-py ``Lock``.

    Parameters
    ----------
    redis_client : Redis
        Redis client instance
    logger : logging.Logger
        Logger instance
    wait_timeout : float
        Seconds to wait for a lock before raising ``WalletBusyError``
    lease : float
        Seconds after which an abandoned lock expires
    """

    def __init__(
        self,
        redis_client: Redis,
        logger: logging.Logger,
        wait_timeout: float = 10.0,
        lease: float = 120.0
    ):
        self.redis = redis_client
        self.logger = logger
        self.wait_timeout = wait_timeout
        self.lease = lease

    @asynccontextmanager
    async def hold(self, key: str, wait_forever: bool = False) -> AsyncIterator[None]:
        lock = self.redis.lock(
            f"wallet-lock:{key}",
            timeout=self.lease,
            blocking_timeout=None if wait_forever else self.wait_timeout,
        )
        if not await lock.acquire():
            raise WalletBusyError(details={"lock": key})
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                self.logger.warning(f"Lock {key} expired before release: {e}")
