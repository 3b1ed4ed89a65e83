"""Map an accepted OperationRequest onto the external commands that perform it."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from src.constants import COMPOSE_FILENAME, ENV_FILENAME
from src.infra.errors import SupervisorError
from src.operations.models import OperationRequest, OperationType, Phase
from src.stacks.repository import validate_stack_name

if TYPE_CHECKING:
    from src.config.settings import CommandSettings
    from src.stacks.repository import StackDefinition

_PACKAGE_VERBS: dict[OperationType, str] = {
    OperationType.update: "update",
    OperationType.install: "install",
    OperationType.remove: "remove",
}

_COMPOSE_VERBS: dict[OperationType, list[str]] = {
    OperationType.stack_deploy: ["up", "-d"],
    OperationType.stack_start: ["start"],
    OperationType.stack_stop: ["stop"],
    OperationType.stack_restart: ["restart"],
}


@dataclass(frozen=True)
class CommandStep:
    argv: tuple[str, ...]
    phase: Phase
    description: str
    cwd: Path | None = None
    progress_floor: int = 0


@dataclass(frozen=True)
class CommandPlan:
    """Ordered steps plus files that must exist before the first step runs."""

    steps: tuple[CommandStep, ...]
    files: tuple[tuple[Path, str], ...] = field(default_factory=tuple)


def build_plan(
    request: OperationRequest,
    commands: CommandSettings,
    *,
    stack: StackDefinition | None = None,
) -> CommandPlan:
    """Build the command plan for request.

    Raises SupervisorError if a stack operation arrives without its stack, and
    InvalidRequest if the stack name is not a safe project name.
    """
    op = request.type
    if op in _PACKAGE_VERBS:
        pm = commands.package_manager_argv()
        verb = _PACKAGE_VERBS[op]
        return CommandPlan(steps=(
            CommandStep(
                argv=(*pm, verb, "-y", *request.targets),
                phase=Phase.checking,
                description=f"Resolving dependencies for {verb}",
            ),
        ))

    if op is OperationType.refresh:
        pm = commands.package_manager_argv()
        return CommandPlan(steps=(
            CommandStep(
                argv=(*pm, "clean", "metadata"),
                phase=Phase.cleaning,
                description="Cleaning metadata...",
            ),
            CommandStep(
                argv=(*pm, "makecache"),
                phase=Phase.caching,
                description="Building cache...",
                progress_floor=50,
            ),
        ))

    if stack is None:
        raise SupervisorError(f"Operation {op.value} requires a stack definition")

    project = validate_stack_name(stack.name)
    directory = stack.directory
    compose_file = directory / COMPOSE_FILENAME
    argv = (
        *commands.compose_argv(),
        "-f", str(compose_file),
        "-p", project,
        *_COMPOSE_VERBS[op],
    )
    files: tuple[tuple[Path, str], ...] = ()
    if op is OperationType.stack_deploy:
        files = ((compose_file, stack.compose_content),)
        if stack.env_content:
            files += ((directory / ENV_FILENAME, stack.env_content),)

    return CommandPlan(
        steps=(
            CommandStep(
                argv=argv,
                phase=Phase.checking,
                description=f"Running compose {' '.join(_COMPOSE_VERBS[op])} for {stack.name}",
                cwd=directory,
            ),
        ),
        files=files,
    )
