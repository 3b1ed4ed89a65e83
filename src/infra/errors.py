"""Custom exception hierarchy for the operations gateway.

All application-specific exceptions inherit from HostOpsError,
which carries an error code for WebSocket error frame mapping.
"""

from __future__ import annotations


class HostOpsError(Exception):
    """Base exception for all gateway errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class GatewayError(HostOpsError):
    """Errors in the Gateway / WebSocket layer."""

    def __init__(self, message: str, *, code: str = "GATEWAY_ERROR") -> None:
        super().__init__(message, code=code)


class Unauthorized(GatewayError):
    """Caller token is unknown or lacks the privilege the operation needs."""

    def __init__(self, message: str = "Not authorized for this operation") -> None:
        super().__init__(message, code="UNAUTHORIZED")


class InvalidRequest(GatewayError):
    """Malformed operation payload or unusable target."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_REQUEST")


class Busy(GatewayError):
    """Target key is already locked by another in-flight session."""

    def __init__(self, target_key: str, holder_session_id: str | None = None) -> None:
        super().__init__(
            f"Another operation is already running on '{target_key}'. Please try again.",
            code="BUSY",
        )
        self.target_key = target_key
        self.holder_session_id = holder_session_id


class SupervisorError(HostOpsError):
    """Errors while preparing or launching a privileged subprocess."""

    def __init__(self, message: str, *, code: str = "SUPERVISOR_ERROR") -> None:
        super().__init__(message, code=code)


class StackError(HostOpsError):
    """Errors talking to the container runtime or stack storage."""

    def __init__(self, message: str, *, code: str = "STACK_ERROR") -> None:
        super().__init__(message, code=code)
