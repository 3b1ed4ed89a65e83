"""OperationSession: drives one privileged operation from start to result.

Ordering per session: a monotonically increasing sequence of ProgressEvents,
then exactly one OperationResult. The resource lock is released exactly once
on every exit path. The client receives the result before the outcome is
handed to the audit recorder, so a slow database never delays it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

import structlog

from src.infra.errors import SupervisorError
from src.operations.classifier import PhaseClassifier, Verdict
from src.operations.models import (
    EventKind,
    OperationRequest,
    OperationResult,
    Outcome,
    Phase,
    ProgressDraft,
    ProgressEvent,
    SessionEvent,
)
from src.operations.supervisor import StepStarted, SubprocessSupervisor

logger = structlog.get_logger()


class ClientChannel(Protocol):
    """Transport side of a session. send() failing means the client is gone."""

    async def send(self, event: SessionEvent) -> None: ...

    async def wait_closed(self) -> None: ...


class AuditSink(Protocol):
    async def record(
        self, request: OperationRequest, result: OperationResult, *, session_id: str,
    ) -> bool: ...


OnComplete = Callable[[OperationRequest, OperationResult], Awaitable[None]]


class OperationSession:
    def __init__(
        self,
        *,
        session_id: str,
        request: OperationRequest,
        supervisor: SubprocessSupervisor,
        classifier: PhaseClassifier,
        channel: ClientChannel,
        audit: AuditSink,
        release_lock: Callable[[], object],
        stall_window_seconds: float = 60.0,
        cancel_on_disconnect: bool = True,
        on_complete: OnComplete | None = None,
    ) -> None:
        self.session_id = session_id
        self.request = request
        self._supervisor = supervisor
        self._classifier = classifier
        self._channel = channel
        self._audit = audit
        self._release_lock = release_lock
        self._stall_window = stall_window_seconds
        self._cancel_on_disconnect = cancel_on_disconnect
        self._on_complete = on_complete

        self._next_sequence = 0
        self._last_progress = 0
        self._lock_released = False
        self._cancelled = False
        self._disconnected = False
        self._result: OperationResult | None = None

    @property
    def result(self) -> OperationResult | None:
        return self._result

    @property
    def finished(self) -> bool:
        return self._result is not None

    @property
    def client_connected(self) -> bool:
        return not self._disconnected

    @property
    def last_sequence(self) -> int | None:
        return self._next_sequence - 1 if self._next_sequence else None

    async def run(self) -> OperationResult:
        """Run the plan to completion. Always returns the single OperationResult.

        Task cancellation terminates the subprocess, records a cancelled
        result, and re-raises.
        """
        if self._result is not None or self._next_sequence:
            raise SupervisorError("Operation session already ran")

        with structlog.contextvars.bound_contextvars(
            session_id=self.session_id,
            operation=self.request.type.value,
            actor=self.request.requester.identity,
        ):
            logger.info("operation_started", targets=list(self.request.targets))
            watcher = asyncio.create_task(self._watch_client(), name="client_watcher")
            verdict: Verdict | None = None
            exit_status: int | None = None
            try:
                await self._emit(self._classifier.begin(self.request))
                if not self._cancelled:
                    async with self._supervisor:
                        await self._pump()
                        exit_status = await self._supervisor.wait()
                verdict = self._verdict(exit_status)
            except SupervisorError as e:
                logger.error("operation_launch_failed", error=str(e))
                verdict = Verdict(
                    outcome=Outcome.failure,
                    message=f"Operation failed: {e}",
                    phase=Phase.error,
                )
            except asyncio.CancelledError:
                self._cancelled = True
                verdict = self._classifier.finish(exit_status, cancelled=True)
                raise
            except Exception:
                logger.exception("operation_session_failed")
                verdict = Verdict(
                    outcome=Outcome.failure,
                    message="Operation failed: internal error",
                    phase=Phase.error,
                )
            finally:
                watcher.cancel()
                if verdict is None:
                    verdict = self._classifier.finish(exit_status, cancelled=True)
                await self._finalize(verdict, exit_status)

        assert self._result is not None
        return self._result

    async def cancel(self) -> None:
        """Terminate the subprocess. The session still emits its result."""
        if self._result is not None:
            return
        self._cancelled = True
        logger.info("operation_cancel_requested", session_id=self.session_id)
        await self._supervisor.terminate()

    async def client_disconnected(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        logger.info(
            "operation_client_disconnected",
            session_id=self.session_id,
            cancel=self._cancel_on_disconnect,
        )
        if self._cancel_on_disconnect:
            await self.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _pump(self) -> None:
        silent_windows = 0
        while True:
            try:
                item = await self._supervisor.read(timeout=self._stall_window)
            except TimeoutError:
                silent_windows += 1
                await self._emit_stalled(silent_windows)
                continue
            if item is None:
                return
            silent_windows = 0
            if isinstance(item, StepStarted):
                await self._emit(self._classifier.step_started(item.step))
            else:
                for draft in self._classifier.classify(item.text):
                    await self._emit(draft)

    async def _emit_stalled(self, silent_windows: int) -> None:
        silent_for = int(self._stall_window * silent_windows)
        logger.warning("operation_stalled", silent_seconds=silent_for)
        await self._emit(ProgressDraft(
            kind=EventKind.stalled,
            phase=self._classifier.phase,
            progress=self._classifier.progress,
            message=f"No output for {silent_for}s; operation still running",
        ))

    def _verdict(self, exit_status: int | None) -> Verdict:
        # A plan that exited 0 before termination took effect still succeeded.
        cancelled = self._cancelled and exit_status != 0
        return self._classifier.finish(exit_status, cancelled=cancelled)

    async def _emit(self, draft: ProgressDraft) -> None:
        sequence = self._next_sequence
        self._next_sequence += 1
        self._last_progress = max(self._last_progress, draft.progress)
        await self._deliver(ProgressEvent(
            sequence=sequence,
            kind=draft.kind,
            phase=draft.phase,
            progress=self._last_progress,
            message=draft.message,
        ))

    async def _deliver(self, event: SessionEvent) -> None:
        if self._disconnected:
            return
        try:
            await self._channel.send(event)
        except Exception:
            logger.info("client_send_failed", exc_info=True)
            await self.client_disconnected()

    async def _watch_client(self) -> None:
        await self._channel.wait_closed()
        await self.client_disconnected()

    async def _finalize(self, verdict: Verdict, exit_status: int | None) -> None:
        result = OperationResult(
            success=verdict.success,
            outcome=verdict.outcome,
            message=verdict.message,
            raw_output=self._supervisor.raw_output,
            exit_status=exit_status,
            packages=verdict.packages,
        )
        self._result = result
        self._release()

        # The client hears the outcome before any database write is attempted.
        await self._emit(self._classifier.terminal_draft(verdict))
        await self._deliver(result)

        try:
            await self._audit.record(self.request, result, session_id=self.session_id)
        except Exception:
            logger.exception("audit_record_failed")
        if self._on_complete is not None:
            try:
                await self._on_complete(self.request, result)
            except Exception:
                logger.exception("operation_on_complete_failed")

        logger.info(
            "operation_finished",
            outcome=result.outcome.value,
            exit_status=exit_status,
            events=self._next_sequence,
            client_connected=not self._disconnected,
        )

    def _release(self) -> None:
        if self._lock_released:
            return
        self._lock_released = True
        try:
            self._release_lock()
        except Exception:
            logger.exception("lock_release_failed", target_key=self.request.target_key)
