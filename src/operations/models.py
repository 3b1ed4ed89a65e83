"""Domain types for privileged operations.

Session output is a closed union: every consumer handles ProgressEvent and
OperationResult explicitly rather than string-matching a shared payload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from src.constants import PACKAGE_MANAGER_KEY, STACK_KEY_PREFIX


class OperationType(StrEnum):
    update = "update"
    install = "install"
    remove = "remove"
    refresh = "refresh"
    stack_deploy = "stack_deploy"
    stack_start = "stack_start"
    stack_stop = "stack_stop"
    stack_restart = "stack_restart"

    @property
    def is_stack(self) -> bool:
        return self.value.startswith("stack_")

    @property
    def requires_targets(self) -> bool:
        return self not in (OperationType.update, OperationType.refresh)

    @property
    def audit_action(self) -> str:
        """Dotted audit action name, e.g. ``package.install`` or ``stack.deploy``."""
        if self.is_stack:
            return f"stack.{self.value.removeprefix('stack_')}"
        return f"package.{self.value}"


class Phase(StrEnum):
    starting = "starting"
    checking = "checking"
    downloading = "downloading"
    installing = "installing"
    verifying = "verifying"
    cleaning = "cleaning"
    caching = "caching"
    complete = "complete"
    error = "error"


class EventKind(StrEnum):
    status = "status"
    output = "output"
    stalled = "stalled"


class Outcome(StrEnum):
    success = "success"
    failure = "failure"
    cancelled = "cancelled"


@dataclass(frozen=True)
class Principal:
    """Caller identity as resolved by the auth collaborator."""

    identity: str
    role: str
    privileged: bool
    groups: tuple[str, ...] = ()


@dataclass(frozen=True)
class OperationRequest:
    type: OperationType
    targets: tuple[str, ...]
    requester: Principal
    requested_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def target_key(self) -> str:
        """Lock scope: one host-wide key for packages, one key per stack."""
        if self.type.is_stack:
            return f"{STACK_KEY_PREFIX}{self.targets[0]}"
        return PACKAGE_MANAGER_KEY

    @property
    def audit_target(self) -> str:
        return ",".join(self.targets) if self.targets else "all"


@dataclass(frozen=True)
class LockToken:
    target_key: str
    holder_session_id: str
    acquired_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class ProgressDraft:
    """Classifier output before the session assigns sequence and timestamp."""

    kind: EventKind
    phase: Phase
    progress: int
    message: str


@dataclass(frozen=True)
class ProgressEvent:
    sequence: int
    kind: EventKind
    phase: Phase
    progress: int
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class OperationResult:
    success: bool
    outcome: Outcome
    message: str
    raw_output: str = ""
    exit_status: int | None = None
    packages: tuple[str, ...] = ()
    completed_at: datetime = field(default_factory=lambda: datetime.now(UTC))


SessionEvent = ProgressEvent | OperationResult


@dataclass(frozen=True)
class AuditEntry:
    actor: str
    action: str
    target: str
    success: bool
    detail: dict
    timestamp: datetime
    outcome: str = ""
    session_id: str = ""
