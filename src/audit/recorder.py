"""Append-only audit trail of terminated operation sessions."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.operations.models import AuditEntry, OperationRequest, OperationResult
from src.session.models import AuditRecord

logger = structlog.get_logger()

_DETAIL_OUTPUT_TAIL = 20


class AuditRecorder:
    """Persists one AuditEntry per terminated session (PostgreSQL)."""

    def __init__(self, db_session_factory: async_sessionmaker) -> None:
        self._db = db_session_factory

    async def record(
        self,
        request: OperationRequest,
        result: OperationResult,
        *,
        session_id: str,
    ) -> bool:
        """Append the session outcome. Failures are logged, never raised.

        Returns True when the row was written.
        """
        detail = {
            "operation": request.type.value,
            "targets": list(request.targets),
            "role": request.requester.role,
            "message": result.message,
            "exit_status": result.exit_status,
            "packages": list(result.packages),
            "output_tail": result.raw_output.splitlines()[-_DETAIL_OUTPUT_TAIL:],
            "requested_at": request.requested_at.isoformat(),
            "completed_at": result.completed_at.isoformat(),
        }
        try:
            async with self._db() as db_session:
                db_session.add(AuditRecord(
                    session_id=session_id,
                    actor=request.requester.identity,
                    action=request.type.audit_action,
                    target=request.audit_target,
                    success=result.success,
                    outcome=result.outcome.value,
                    detail=detail,
                ))
                await db_session.commit()
        except Exception:
            logger.exception(
                "audit_record_failed",
                session_id=session_id,
                action=request.type.audit_action,
                actor=request.requester.identity,
            )
            return False

        logger.info(
            "audit_recorded",
            session_id=session_id,
            action=request.type.audit_action,
            outcome=result.outcome.value,
        )
        return True

    async def list_entries(
        self,
        *,
        limit: int = 100,
        action_prefix: str | None = None,
        actor: str | None = None,
    ) -> list[AuditEntry]:
        """Newest first, optionally filtered by action prefix and actor."""
        stmt = select(AuditRecord).order_by(AuditRecord.created_at.desc(), AuditRecord.id.desc())
        if action_prefix:
            stmt = stmt.where(AuditRecord.action.startswith(action_prefix, autoescape=True))
        if actor:
            stmt = stmt.where(AuditRecord.actor == actor)
        stmt = stmt.limit(limit)

        async with self._db() as db_session:
            result = await db_session.execute(stmt)
            records = result.scalars().all()

        return [
            AuditEntry(
                actor=r.actor,
                action=r.action,
                target=r.target,
                success=r.success,
                detail=r.detail or {},
                timestamp=(
                    r.created_at if r.created_at.tzinfo else r.created_at.replace(tzinfo=UTC)
                ) if r.created_at else datetime.now(UTC),
                outcome=r.outcome,
                session_id=r.session_id,
            )
            for r in records
        ]
