"""SubprocessSupervisor: owns the lifetime of one operation's external commands.

Each step runs in its own process group with stdout and stderr merged. A
runner task pumps decoded lines into a queue so the consumer can read with a
timeout without cancelling the pipe reader. Every exit path reaps the child.
"""

from __future__ import annotations

import asyncio
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

import structlog

from src.infra.errors import SupervisorError
from src.operations.commands import CommandPlan, CommandStep

logger = structlog.get_logger()

_STREAM_LIMIT = 1024 * 1024
EXIT_SPAWN_FAILED = 127


@dataclass(frozen=True)
class StepStarted:
    index: int
    step: CommandStep


@dataclass(frozen=True)
class OutputLine:
    text: str
    step_index: int


SupervisorItem = StepStarted | OutputLine


def _write_files(files: tuple[tuple[Path, str], ...]) -> None:
    for path, content in files:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


class SubprocessSupervisor:
    """Run a CommandPlan and expose its combined output as a live line stream."""

    def __init__(self, plan: CommandPlan, *, terminate_grace_seconds: float = 10.0) -> None:
        if not plan.steps:
            raise SupervisorError("Command plan has no steps")
        self._plan = plan
        self._grace = terminate_grace_seconds
        self._queue: asyncio.Queue[SupervisorItem | None] = asyncio.Queue()
        self._runner: asyncio.Task[int] | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._terminated = False
        self._eof = False
        self._output: list[str] = []

    @property
    def started(self) -> bool:
        return self._runner is not None

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def raw_output(self) -> str:
        return "\n".join(self._output)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def start(self) -> None:
        """Write plan files and launch the step runner.

        Raises SupervisorError if already started or the plan files cannot be written.
        """
        if self._runner is not None:
            raise SupervisorError("Supervisor already started")
        if self._plan.files:
            try:
                await asyncio.to_thread(_write_files, self._plan.files)
            except OSError as e:
                raise SupervisorError(f"Failed to write command files: {e}") from e
        self._runner = asyncio.create_task(self._run_steps(), name="supervisor_runner")

    async def read(self, timeout: float | None = None) -> SupervisorItem | None:
        """Next item from the stream, or None once all steps have finished.

        Raises TimeoutError if nothing arrives within timeout seconds.
        """
        if self._eof:
            return None
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is None:
            self._eof = True
        return item

    async def wait(self) -> int:
        """Wait for the plan to finish and return the final exit status."""
        if self._runner is None:
            raise SupervisorError("Supervisor not started")
        return await asyncio.shield(self._runner)

    async def terminate(self) -> None:
        """SIGTERM the running step's process group, SIGKILL after the grace period.

        Remaining steps are skipped. Safe to call repeatedly or after exit.
        """
        self._terminated = True
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        await self._stop_process(proc)

    async def __aenter__(self) -> SubprocessSupervisor:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._runner is None:
            return
        if not self._runner.done():
            await self.terminate()
        try:
            await self._runner
        except asyncio.CancelledError:
            if exc_type is not asyncio.CancelledError:
                raise

    async def _run_steps(self) -> int:
        status = 0
        try:
            for index, step in enumerate(self._plan.steps):
                if self._terminated:
                    status = -signal.SIGTERM
                    break
                await self._queue.put(StepStarted(index=index, step=step))
                status = await self._run_step(index, step)
                if status != 0:
                    break
            return status
        finally:
            self._queue.put_nowait(None)

    async def _run_step(self, index: int, step: CommandStep) -> int:
        try:
            proc = await asyncio.create_subprocess_exec(
                *step.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(step.cwd) if step.cwd else None,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            logger.error("subprocess_spawn_failed", argv=list(step.argv), error=str(e))
            await self._emit(f"Error: failed to start {step.argv[0]}: {e}", index)
            return EXIT_SPAWN_FAILED

        self._process = proc
        logger.info("subprocess_started", pid=proc.pid, argv=list(step.argv), step=index)
        try:
            if self._terminated:
                await self._stop_process(proc)
            assert proc.stdout is not None
            while True:
                try:
                    raw = await proc.stdout.readline()
                except ValueError:
                    # Oversized line: the reader has already discarded it.
                    logger.warning("parse_anomaly", reason="line_too_long", pid=proc.pid)
                    continue
                if not raw:
                    break
                await self._emit(raw.decode("utf-8", errors="replace").rstrip("\r\n"), index)
            returncode = await proc.wait()
        finally:
            if proc.returncode is None:
                await self._stop_process(proc)
        logger.info("subprocess_exited", pid=proc.pid, returncode=returncode, step=index)
        return returncode

    async def _emit(self, text: str, index: int) -> None:
        self._output.append(text)
        await self._queue.put(OutputLine(text=text, step_index=index))

    async def _stop_process(self, proc: asyncio.subprocess.Process) -> None:
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), self._grace)
        except TimeoutError:
            logger.warning("subprocess_kill", pid=proc.pid, grace_seconds=self._grace)
            _signal_group(proc, signal.SIGKILL)
            await proc.wait()


def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        # Group may have changed credentials (setuid helpers); signal the leader only.
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass
