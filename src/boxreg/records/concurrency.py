"""Per-key serialization and bounded storage calls."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from typing import TypeVar

import structlog

from boxreg.core.errors import StoreFailure
from boxreg.records.storage import DuplicateRecordError, StoreError

logger = structlog.get_logger()

T = TypeVar("T")


class KeyedLock:
    """One asyncio lock per key, created on demand.

    A lock is dropped once no task holds or waits for it, so the table only
    grows with the number of keys being worked on concurrently.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


async def bounded(call: Awaitable[T], timeout: float, operation: str) -> T:
    """Await a storage call, turning errors and timeouts into StoreFailure.

    ``DuplicateRecordError`` passes through untouched for callers that map it
    to a domain error.

    Args:
        call: The pending storage coroutine.
        timeout: Maximum seconds to wait.
        operation: Name used in logs and the error message.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except DuplicateRecordError:
        raise
    except TimeoutError as e:
        logger.error("Storage call timed out", operation=operation, timeout=timeout)
        raise StoreFailure(f"{operation}: storage timed out after {timeout}s") from e
    except StoreError as e:
        logger.error("Storage call failed", operation=operation, error=str(e))
        raise StoreFailure(f"{operation}: {e}") from e


def short_token(token: str) -> str:
    """Shortened token for log lines."""
    return token[:8]
