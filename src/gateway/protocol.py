from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from src.infra.errors import HostOpsError, InvalidRequest
from src.operations.models import EventKind, OperationResult, Outcome, ProgressEvent, SessionEvent


class OperationParams(BaseModel):
    """First client message on /ws/operations."""

    operation: str
    targets: list[str] = Field(default_factory=list)

    @field_validator("operation", mode="before")
    @classmethod
    def _normalize_operation(cls, v: Any) -> str:
        if not isinstance(v, str):
            msg = f"operation must be a string (got {type(v).__name__})"
            raise ValueError(msg)
        return v.strip().lower()

    @field_validator("targets", mode="before")
    @classmethod
    def _normalize_targets(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split()
        if not isinstance(v, list):
            msg = f"targets must be a list of strings (got {type(v).__name__})"
            raise ValueError(msg)
        out = []
        for item in v:
            if not isinstance(item, str):
                msg = f"targets must be strings (got {type(item).__name__})"
                raise ValueError(msg)
            item = item.strip()
            if item:
                out.append(item)
        return out


class ProgressFrame(BaseModel):
    type: Literal["output", "status"]
    message: str
    phase: str
    progress: int
    sequence: int
    timestamp: str
    warning: str | None = None


class TerminalFrame(BaseModel):
    """Closes the stream. `complete` only on success; `error` otherwise."""

    type: Literal["complete", "error"]
    message: str
    success: bool
    outcome: str | None = None
    packages: list[str] | None = None
    exit_status: int | None = None
    code: str | None = None


Frame = ProgressFrame | TerminalFrame


def parse_operation_params(raw: str) -> OperationParams:
    """Parse the first client message.

    Raises InvalidRequest on invalid JSON or schema mismatch.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidRequest(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidRequest("Operation request must be a JSON object")
    try:
        return OperationParams.model_validate(data)
    except Exception as e:
        raise InvalidRequest(f"Invalid operation request: {e}") from e


def event_to_frame(event: SessionEvent) -> Frame:
    match event:
        case ProgressEvent():
            return ProgressFrame(
                type="output" if event.kind is EventKind.output else "status",
                message=event.message,
                phase=event.phase.value,
                progress=event.progress,
                sequence=event.sequence,
                timestamp=event.timestamp.isoformat(),
                warning="stalled" if event.kind is EventKind.stalled else None,
            )
        case OperationResult():
            return TerminalFrame(
                type="complete" if event.success else "error",
                message=event.message,
                success=event.success,
                outcome=event.outcome.value,
                packages=list(event.packages) if event.packages else None,
                exit_status=event.exit_status,
                code=None if event.success else _result_code(event.outcome),
            )
    raise TypeError(f"Unsupported session event: {type(event).__name__}")


def rejection_frame(error: HostOpsError) -> TerminalFrame:
    """Terminal frame for a request rejected before any session started."""
    return TerminalFrame(type="error", message=str(error), success=False, code=error.code)


def encode_frame(frame: Frame) -> str:
    return frame.model_dump_json(exclude_none=True)


def _result_code(outcome: Outcome) -> str:
    return "CANCELLED" if outcome is Outcome.cancelled else "OPERATION_FAILED"
