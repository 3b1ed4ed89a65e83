"""Core dispatch: authorize, validate, claim, run the session, release.

Kept independent of the WebSocket transport so that any channel able to send
SessionEvents can drive an operation. Rejections (UNAUTHORIZED,
INVALID_REQUEST, BUSY) propagate as GatewayError before any process starts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from src.audit.recorder import AuditRecorder
from src.config.settings import CommandSettings, GatewaySettings, ProgressSettings
from src.gateway.auth import Authorizer
from src.gateway.protocol import OperationParams
from src.infra.errors import InvalidRequest
from src.operations.classifier import classifier_for
from src.operations.commands import CommandPlan, build_plan
from src.operations.models import OperationRequest, OperationResult, OperationType
from src.operations.supervisor import SubprocessSupervisor
from src.session.manager import SessionManager, new_session_id
from src.session.operation import ClientChannel, OperationSession
from src.stacks.repository import (
    StackDefinition,
    StackRepository,
    validate_compose,
    validate_stack_name,
)

logger = structlog.get_logger()

# Package specs as dnf accepts them (name, name-version, globs, arch, provides paths).
# A leading '-' would be read as an option.
_PACKAGE_SPEC = re.compile(r"^[A-Za-z0-9_.+:@~*?\[\]/=<>-]+$")
_MAX_TARGETS = 200

# Operations whose outcome feeds the stack error state.
_DEPLOY_TRACKED = frozenset({
    OperationType.stack_deploy,
    OperationType.stack_start,
    OperationType.stack_restart,
})


@dataclass(frozen=True)
class PreparedOperation:
    request: OperationRequest
    plan: CommandPlan
    stack: StackDefinition | None = None


def parse_operation_type(value: str) -> OperationType:
    try:
        return OperationType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in OperationType)
        raise InvalidRequest(f"Unknown operation '{value}'. Expected one of: {allowed}") from None


def validate_targets(operation: OperationType, targets: list[str]) -> tuple[str, ...]:
    """Check target count and shape for operation. Raises InvalidRequest."""
    if operation.is_stack:
        if len(targets) != 1:
            raise InvalidRequest(f"{operation.value} requires exactly one stack id")
        return (validate_stack_name(targets[0], kind="stack id"),)

    if operation is OperationType.refresh and targets:
        raise InvalidRequest("refresh does not take targets")
    if operation.requires_targets and not targets:
        raise InvalidRequest(f"{operation.value} requires at least one package")
    if len(targets) > _MAX_TARGETS:
        raise InvalidRequest(f"Too many packages ({len(targets)} > {_MAX_TARGETS})")
    for name in targets:
        if name.startswith("-") or not _PACKAGE_SPEC.match(name):
            raise InvalidRequest(f"Invalid package name '{name}'")
    return tuple(dict.fromkeys(targets))


class OperationGateway:
    """Single entry point for privileged operations."""

    def __init__(
        self,
        *,
        authorizer: Authorizer,
        sessions: SessionManager,
        audit: AuditRecorder,
        stacks: StackRepository,
        commands: CommandSettings,
        progress: ProgressSettings,
        gateway: GatewaySettings,
    ) -> None:
        self._authorizer = authorizer
        self._sessions = sessions
        self._audit = audit
        self._stacks = stacks
        self._commands = commands
        self._progress = progress
        self._gateway = gateway

    async def prepare(self, token: str | None, params: OperationParams) -> PreparedOperation:
        """Authorize and validate without touching locks or processes.

        Raises Unauthorized or InvalidRequest.
        """
        principal = await self._authorizer.require_privileged(token)
        operation = parse_operation_type(params.operation)
        targets = validate_targets(operation, params.targets)
        request = OperationRequest(type=operation, targets=targets, requester=principal)

        stack = None
        if operation.is_stack:
            stack = await self._load_stack(targets[0])
            if operation is OperationType.stack_deploy:
                validate_compose(stack.compose_content)

        plan = build_plan(request, self._commands, stack=stack)
        logger.info(
            "operation_accepted",
            operation=operation.value,
            targets=list(targets),
            actor=principal.identity,
            target_key=request.target_key,
        )
        return PreparedOperation(request=request, plan=plan, stack=stack)

    async def run(self, prepared: PreparedOperation, channel: ClientChannel) -> OperationResult:
        """Claim the target key and run the session to its result.

        Raises Busy if the key is held. Never raises once the session has started.
        """
        request = prepared.request
        session_id = new_session_id()
        async with self._sessions.claim(request, session_id) as lock_token:
            supervisor = SubprocessSupervisor(
                prepared.plan,
                terminate_grace_seconds=self._gateway.terminate_grace_seconds,
            )
            session = OperationSession(
                session_id=session_id,
                request=request,
                supervisor=supervisor,
                classifier=classifier_for(
                    request, step=self._progress.step, cap=self._progress.cap,
                ),
                channel=channel,
                audit=self._audit,
                release_lock=lambda: self._sessions.release(lock_token),
                stall_window_seconds=self._gateway.stall_window_seconds,
                cancel_on_disconnect=self._gateway.cancel_on_disconnect,
                on_complete=self._record_stack_outcome if request.type in _DEPLOY_TRACKED else None,
            )
            self._sessions.attach(session)
            return await session.run()

    async def dispatch(
        self, token: str | None, params: OperationParams, channel: ClientChannel,
    ) -> OperationResult:
        prepared = await self.prepare(token, params)
        return await self.run(prepared, channel)

    async def _load_stack(self, stack_id: str) -> StackDefinition:
        stack = await self._stacks.get(stack_id)
        if stack is None:
            raise InvalidRequest(f"Stack '{stack_id}' not found")
        validate_stack_name(stack.name)
        return stack

    async def _record_stack_outcome(
        self, request: OperationRequest, result: OperationResult,
    ) -> None:
        await self._stacks.mark_deploy_result(request.targets[0], failed=not result.success)

