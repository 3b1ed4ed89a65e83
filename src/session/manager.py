from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog

from src.operations.locks import ResourceLockRegistry
from src.operations.models import LockToken, OperationRequest

if TYPE_CHECKING:
    from src.session.operation import OperationSession

logger = structlog.get_logger()


def new_session_id() -> str:
    return str(uuid.uuid4())


class SessionManager:
    """Index of in-flight operation sessions, keyed by session id and target key.

    Claims go through the ResourceLockRegistry so that at most one session
    holds a target key. The index is read by the stack reconciler (deploying
    state) and by the active-operations endpoint; it never takes locks itself.
    """

    def __init__(self, registry: ResourceLockRegistry | None = None) -> None:
        self._registry = registry or ResourceLockRegistry()
        self._requests: dict[str, OperationRequest] = {}  # target_key -> request
        self._sessions: dict[str, OperationSession] = {}  # session_id -> session

    @property
    def registry(self) -> ResourceLockRegistry:
        return self._registry

    @asynccontextmanager
    async def claim(
        self, request: OperationRequest, session_id: str,
    ) -> AsyncIterator[LockToken]:
        """Scoped claim of request.target_key.

        Raises Busy immediately when the key is held. The lock is released on
        every exit path; an earlier release() by the session is honoured.
        """
        async with self._registry.hold(request.target_key, session_id) as token:
            self._requests[token.target_key] = request
            try:
                yield token
            finally:
                self._forget(token)

    def release(self, token: LockToken) -> bool:
        """Release a claim before the scope ends. Returns False if already released."""
        current = self._registry.holder(token.target_key)
        if current is None or current.holder_session_id != token.holder_session_id:
            return False
        released = self._registry.release(token.target_key, token.holder_session_id)
        self._forget(token)
        return released

    def attach(self, session: OperationSession) -> None:
        self._sessions[session.session_id] = session

    def get(self, session_id: str) -> OperationSession | None:
        return self._sessions.get(session_id)

    def active_operation(self, target_key: str) -> OperationRequest | None:
        return self._requests.get(target_key)

    def active_sessions(self) -> list[OperationSession]:
        return list(self._sessions.values())

    async def cancel_all(self) -> None:
        """Terminate every in-flight subprocess (shutdown path)."""
        for session in self.active_sessions():
            logger.warning("operation_cancelled_on_shutdown", session_id=session.session_id)
            await session.cancel()

    def _forget(self, token: LockToken) -> None:
        request = self._requests.get(token.target_key)
        if request is not None and self._registry.holder(token.target_key) is None:
            self._requests.pop(token.target_key, None)
        self._sessions.pop(token.holder_session_id, None)
