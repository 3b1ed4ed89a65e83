"""ResourceLockRegistry: exclusive, non-queueing locks per target key.

A second request for a held key is rejected immediately; callers retry.
One registry instance is shared by every session in the process.
"""

from __future__ import annotations

import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from src.infra.errors import Busy
from src.operations.models import LockToken

logger = structlog.get_logger()


class ResourceLockRegistry:
    """Atomic compare-and-set over a key -> LockToken map."""

    def __init__(self) -> None:
        self._tokens: dict[str, LockToken] = {}
        self._mutex = threading.Lock()

    def try_acquire(self, target_key: str, session_id: str) -> bool:
        return self._claim(target_key, session_id) is not None

    def _claim(self, target_key: str, session_id: str) -> LockToken | None:
        with self._mutex:
            if target_key in self._tokens:
                return None
            token = LockToken(target_key=target_key, holder_session_id=session_id)
            self._tokens[target_key] = token
        logger.info("lock_acquired", target_key=target_key, session_id=session_id)
        return token

    def release(self, target_key: str, session_id: str | None = None) -> bool:
        """Release target_key. Returns False if it was not held (or held by someone else).

        When session_id is given, only that holder may release.
        """
        with self._mutex:
            token = self._tokens.get(target_key)
            if token is None or (
                session_id is not None and token.holder_session_id != session_id
            ):
                released = False
            else:
                del self._tokens[target_key]
                released = True

        if released:
            logger.info("lock_released", target_key=target_key, session_id=session_id)
        else:
            logger.warning(
                "lock_release_ignored",
                target_key=target_key,
                session_id=session_id,
                holder=token.holder_session_id if token else None,
            )
        return released

    def holder(self, target_key: str) -> LockToken | None:
        with self._mutex:
            return self._tokens.get(target_key)

    def is_held(self, target_key: str) -> bool:
        return self.holder(target_key) is not None

    def held(self) -> list[LockToken]:
        with self._mutex:
            return list(self._tokens.values())

    @asynccontextmanager
    async def hold(self, target_key: str, session_id: str) -> AsyncIterator[LockToken]:
        """Scoped acquisition: raises Busy, or yields the token and releases on exit.

        A release performed inside the scope is not repeated.
        """
        token = self._claim(target_key, session_id)
        if token is None:
            current = self.holder(target_key)
            raise Busy(target_key, current.holder_session_id if current else None)
        try:
            yield token
        finally:
            if self.holder(target_key) is token:
                self.release(target_key, session_id)
