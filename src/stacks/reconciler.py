"""Stack lifecycle: derived status and the background reconciliation loop.

Status is never stored. Every query recomputes it from live container counts,
whether a deploy session currently holds the stack, and whether the latest
deploy/start attempt failed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from src.constants import STACK_KEY_PREFIX
from src.infra.errors import StackError
from src.operations.models import OperationType

if TYPE_CHECKING:
    from src.session.manager import SessionManager
    from src.stacks.repository import StackDefinition, StackRepository
    from src.stacks.runtime import ContainerRuntime, StackContainer

logger = structlog.get_logger()


class StackStatus(StrEnum):
    active = "active"
    partial = "partial"
    stopped = "stopped"
    error = "error"
    deploying = "deploying"


def derive_stack_status(
    running_count: int,
    container_count: int,
    active_deploy_session_exists: bool,
    last_deploy_failed: bool,
) -> StackStatus:
    """Pure status function; precedence is deploying > error > active > partial > stopped."""
    if active_deploy_session_exists:
        return StackStatus.deploying
    if last_deploy_failed and running_count == 0:
        return StackStatus.error
    if container_count > 0 and running_count == container_count:
        return StackStatus.active
    if 0 < running_count < container_count:
        return StackStatus.partial
    return StackStatus.stopped


@dataclass(frozen=True)
class StackView:
    id: str
    name: str
    status: StackStatus
    container_count: int
    running_count: int
    containers: list[StackContainer] = field(default_factory=list)


class StackReconciler:
    """Computes StackView on demand and polls all stacks to log transitions."""

    def __init__(
        self,
        repository: StackRepository,
        runtime: ContainerRuntime,
        sessions: SessionManager,
        *,
        poll_interval_seconds: float = 15.0,
    ) -> None:
        self._repository = repository
        self._runtime = runtime
        self._sessions = sessions
        self._poll_interval = poll_interval_seconds
        self._last_status: dict[str, StackStatus] = {}

    def deploy_in_progress(self, stack_id: str) -> bool:
        request = self._sessions.active_operation(f"{STACK_KEY_PREFIX}{stack_id}")
        return request is not None and request.type is OperationType.stack_deploy

    async def status_of(self, stack: StackDefinition) -> StackView:
        try:
            containers = await self._runtime.list_containers(stack.name)
        except StackError:
            logger.warning("stack_runtime_query_failed", stack_id=stack.id, exc_info=True)
            containers = []

        running = sum(1 for c in containers if c.running)
        status = derive_stack_status(
            running_count=running,
            container_count=len(containers),
            active_deploy_session_exists=self.deploy_in_progress(stack.id),
            last_deploy_failed=stack.last_deploy_failed,
        )
        return StackView(
            id=stack.id,
            name=stack.name,
            status=status,
            container_count=len(containers),
            running_count=running,
            containers=containers,
        )

    async def get(self, stack_id: str) -> StackView | None:
        stack = await self._repository.get(stack_id)
        if stack is None:
            return None
        return await self.status_of(stack)

    async def reconcile_all(self) -> list[StackView]:
        views = []
        for stack in await self._repository.list_all():
            view = await self.status_of(stack)
            previous = self._last_status.get(stack.id)
            if previous is not view.status:
                logger.info(
                    "stack_status_changed",
                    stack_id=stack.id,
                    name=stack.name,
                    previous=previous.value if previous else None,
                    status=view.status.value,
                    running=view.running_count,
                    total=view.container_count,
                )
                self._last_status[stack.id] = view.status
            views.append(view)
        return views

    async def run(self) -> None:
        """Poll until cancelled. A failed pass is logged and retried next interval."""
        logger.info("stack_reconciler_started", interval_seconds=self._poll_interval)
        while True:
            try:
                await self.reconcile_all()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("stack_reconcile_failed")
            await asyncio.sleep(self._poll_interval)
