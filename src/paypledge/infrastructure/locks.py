"""Per-escrow-account mutual exclusion.

Every deposit, release, refund and dispute against one account holds that
account's lock from the first read until the final commit, so two operations
on the same account never interleave around a gateway call.

Two backends:
    - LocalAccountLocks: asyncio.Lock per account id (single process).
    - RedisAccountLocks: redis-py distributed lock per account id.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Protocol

from redis.exceptions import LockError

from paypledge.domain.exceptions import ConcurrencyConflictError
from paypledge.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from contextlib import AbstractAsyncContextManager

    import redis.asyncio as aioredis

logger = get_logger(__name__)


class AccountLocks(Protocol):
    def hold(self, account_id: str) -> AbstractAsyncContextManager[None]:
        """Async context manager that holds the lock for ``account_id``."""
        ...


class LocalAccountLocks:
    """In-process locks, one asyncio.Lock per account id.

    A lock lives only while some caller holds or waits for it; ``len()`` is
    the number of accounts currently in use.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        self._users[account_id] = self._users.get(account_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[account_id] -= 1
            if not self._users[account_id]:
                del self._users[account_id]
                del self._locks[account_id]


class RedisAccountLocks:
    """Distributed locks stored under ``escrow-lock:<account_id>``.

    ``timeout`` bounds how long a crashed holder can block the account;
    ``blocking_timeout`` bounds how long a caller waits before giving up with
    ConcurrencyConflictError.
    """

    key_prefix = "escrow-lock:"

    def __init__(
        self,
        redis: aioredis.Redis,
        timeout: float = 30.0,
        blocking_timeout: float = 10.0,
    ) -> None:
        self._redis = redis
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{self.key_prefix}{account_id}",
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            logger.warning("lock.acquire_timeout", escrow_account_id=account_id)
            raise ConcurrencyConflictError(account_id, None)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Expired while held; the commit was still version-checked.
                logger.warning("lock.release_failed", escrow_account_id=account_id)
