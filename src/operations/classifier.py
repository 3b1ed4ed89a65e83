"""Phase classification of raw subprocess output.

The heuristic lives behind PhaseClassifier so a tool with structured progress
output can replace it without touching the session or gateway. Progress is an
estimate: a fixed step per kept line, capped until the terminal signal.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import structlog

from src.operations.commands import CommandStep
from src.operations.models import (
    EventKind,
    OperationRequest,
    OperationType,
    Outcome,
    Phase,
    ProgressDraft,
)

logger = structlog.get_logger()

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_ERROR_MARKER = re.compile(
    r"^\s*(Error:|error:|ERROR\b|Error response|No match for argument|Problem( \d+)?:)"
)

_PHASE_MESSAGES: dict[Phase, str] = {
    Phase.starting: "Starting",
    Phase.checking: "Checking dependencies",
    Phase.downloading: "Downloading",
    Phase.installing: "Applying changes",
    Phase.verifying: "Verifying",
    Phase.cleaning: "Cleaning up",
    Phase.caching: "Building cache",
    Phase.complete: "Complete",
    Phase.error: "Error reported",
}


@dataclass(frozen=True)
class Rule:
    pattern: re.Pattern[str]
    phase: Phase


@dataclass(frozen=True)
class Vocabulary:
    """Ordered phase rules for one external tool. First match wins."""

    name: str
    rules: tuple[Rule, ...]
    summary_start: re.Pattern[str] | None = None
    summary_end: re.Pattern[str] | None = None


def _rule(pattern: str, phase: Phase) -> Rule:
    return Rule(re.compile(pattern), phase)


DNF_VOCABULARY = Vocabulary(
    name="dnf",
    rules=(
        _rule(r"Last metadata expiration check|Updating and loading repositories", Phase.checking),
        _rule(r"Dependencies resolved", Phase.downloading),
        _rule(r"Downloading Packages:?", Phase.downloading),
        _rule(r"Running transaction", Phase.installing),
        # Transaction lines are indented and carry a package. The unindented
        # "Installing:" / "Upgrading:" headers of the resolution table do not.
        _rule(
            r"^\s+(Installing|Upgrading|Downgrading|Reinstalling|Removing|Erasing"
            r"|Cleanup|Running scriptlet)\s*:\s+\S",
            Phase.installing,
        ),
        _rule(r"^\[\s*\d+/\d+\]\s+(Installing|Upgrading|Removing|Downgrading)\s+\S", Phase.installing),
        _rule(r"^\s*Verifying\b", Phase.verifying),
        _rule(r"\d+ files? removed|Cleaning (data|repos)", Phase.cleaning),
        _rule(r"Metadata cache created", Phase.caching),
    ),
    summary_start=re.compile(r"^(Installed|Upgraded|Removed|Reinstalled|Downgraded):\s*$"),
    summary_end=re.compile(r"^Complete!"),
)

COMPOSE_VOCABULARY = Vocabulary(
    name="compose",
    rules=(
        _rule(
            r"\b([Pp]ulling|Pull complete|Downloading|Download complete|Copying blob"
            r"|Writing manifest|Storing signatures)\b",
            Phase.downloading,
        ),
        _rule(r"\b(Stopping|Stopped|podman stop|Removing|podman rm)\b", Phase.cleaning),
        _rule(
            r"\b(Creating|Created|Recreating|Starting|Restarting"
            r"|podman (create|run|start|restart|pod create|network create|volume create))\b",
            Phase.installing,
        ),
        _rule(r"\b(Started|Running|Healthy|exit code: 0)\b", Phase.verifying),
    ),
)


@dataclass
class Verdict:
    """Terminal interpretation of a finished plan."""

    outcome: Outcome
    message: str
    packages: tuple[str, ...] = ()
    phase: Phase = Phase.complete

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.success


class PhaseClassifier(ABC):
    """Turns raw output lines into progress drafts for one session."""

    @property
    @abstractmethod
    def phase(self) -> Phase: ...

    @property
    @abstractmethod
    def progress(self) -> int: ...

    @abstractmethod
    def begin(self, request: OperationRequest) -> ProgressDraft:
        """Initial status draft, emitted before the first command starts."""
        ...

    @abstractmethod
    def step_started(self, step: CommandStep) -> ProgressDraft: ...

    @abstractmethod
    def classify(self, line: str) -> list[ProgressDraft]:
        """Zero or more drafts for one raw output line. Never raises."""
        ...

    @abstractmethod
    def finish(self, exit_status: int | None, *, cancelled: bool = False) -> Verdict: ...

    def terminal_draft(self, verdict: Verdict) -> ProgressDraft:
        return ProgressDraft(
            kind=EventKind.status,
            phase=verdict.phase,
            progress=100,
            message=verdict.message,
        )


@dataclass
class VocabularyClassifier(PhaseClassifier):
    vocabulary: Vocabulary
    request: OperationRequest
    step: int = 2
    cap: int = 90
    _phase: Phase = field(default=Phase.starting, init=False)
    _progress: int = field(default=0, init=False)
    _error_line: str | None = field(default=None, init=False)
    _packages: list[str] = field(default_factory=list, init=False)
    _in_summary: bool = field(default=False, init=False)

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def error_line(self) -> str | None:
        return self._error_line

    def begin(self, request: OperationRequest) -> ProgressDraft:
        self._phase = Phase.starting
        return ProgressDraft(
            kind=EventKind.status,
            phase=Phase.starting,
            progress=self._progress,
            message=_starting_message(request),
        )

    def step_started(self, step: CommandStep) -> ProgressDraft:
        self._phase = step.phase
        self._progress = min(self.cap, max(self._progress, step.progress_floor))
        return ProgressDraft(
            kind=EventKind.status,
            phase=self._phase,
            progress=self._progress,
            message=step.description,
        )

    def classify(self, line: str) -> list[ProgressDraft]:
        try:
            return self._classify(line)
        except Exception:
            logger.warning(
                "parse_anomaly", vocabulary=self.vocabulary.name, line=line[:200], exc_info=True,
            )
            return []

    def _classify(self, line: str) -> list[ProgressDraft]:
        text = _clean(line)
        if not text.strip():
            return []

        self._track_summary(text)

        new_phase = self._phase
        if _ERROR_MARKER.match(text):
            new_phase = Phase.error
            self._error_line = text.strip()
        else:
            for rule in self.vocabulary.rules:
                if rule.pattern.search(text):
                    new_phase = rule.phase
                    break

        self._progress = min(self.cap, self._progress + self.step)
        drafts: list[ProgressDraft] = []
        if new_phase != self._phase:
            self._phase = new_phase
            drafts.append(ProgressDraft(
                kind=EventKind.status,
                phase=new_phase,
                progress=self._progress,
                message=_PHASE_MESSAGES[new_phase],
            ))
        drafts.append(ProgressDraft(
            kind=EventKind.output,
            phase=self._phase,
            progress=self._progress,
            message=text,
        ))
        return drafts

    def _track_summary(self, text: str) -> None:
        start, end = self.vocabulary.summary_start, self.vocabulary.summary_end
        if start is None:
            return
        if start.match(text):
            self._in_summary = True
            return
        if end is not None and end.match(text):
            self._in_summary = False
            return
        if self._in_summary:
            if text.startswith((" ", "\t")):
                self._packages.extend(text.split())
            else:
                self._in_summary = False

    def finish(self, exit_status: int | None, *, cancelled: bool = False) -> Verdict:
        packages = tuple(self._packages)
        if cancelled:
            return Verdict(
                outcome=Outcome.cancelled,
                message="Operation cancelled: client disconnected",
                packages=packages,
                phase=Phase.error,
            )
        if exit_status == 0:
            return Verdict(
                outcome=Outcome.success,
                message=_success_message(self.request.type, packages),
                packages=packages,
            )
        detail = self._error_line or f"exited with status {exit_status}"
        return Verdict(
            outcome=Outcome.failure,
            message=f"Operation failed: {detail}",
            packages=packages,
            phase=Phase.error,
        )


def classifier_for(request: OperationRequest, *, step: int = 2, cap: int = 90) -> PhaseClassifier:
    vocabulary = COMPOSE_VOCABULARY if request.type.is_stack else DNF_VOCABULARY
    return VocabularyClassifier(vocabulary=vocabulary, request=request, step=step, cap=cap)


def _clean(line: str) -> str:
    """Strip ANSI escapes and keep only the last carriage-return redraw."""
    text = _ANSI_ESCAPE.sub("", line)
    if "\r" in text:
        segments = [s for s in text.split("\r") if s.strip()]
        text = segments[-1] if segments else ""
    return text.rstrip()


def _starting_message(request: OperationRequest) -> str:
    if request.type.is_stack:
        verb = request.type.value.removeprefix("stack_")
        return f"Starting stack {verb} for {request.targets[0]}..."
    return f"Starting {request.type.value} operation..."


_SUCCESS_VERBS: dict[OperationType, str] = {
    OperationType.update: "Updated",
    OperationType.install: "Installed",
    OperationType.remove: "Removed",
}

_STACK_MESSAGES: dict[OperationType, str] = {
    OperationType.stack_deploy: "Stack deployed successfully",
    OperationType.stack_start: "Stack started",
    OperationType.stack_stop: "Stack stopped",
    OperationType.stack_restart: "Stack restarted",
}


def _success_message(op: OperationType, packages: tuple[str, ...]) -> str:
    if op is OperationType.refresh:
        return "Metadata refreshed successfully"
    if op in _STACK_MESSAGES:
        return _STACK_MESSAGES[op]
    if not packages:
        return "No packages were modified"
    return f"{_SUCCESS_VERBS[op]} {len(packages)} package(s)"
