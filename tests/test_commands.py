"""Tests for build_plan: operation to external command steps."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.config.settings import CommandSettings
from src.infra.errors import InvalidRequest, SupervisorError
from src.operations.commands import build_plan
from src.operations.models import OperationRequest, OperationType, Phase, Principal
from src.stacks.repository import StackDefinition

_ADMIN = Principal(identity="alice", role="admin", privileged=True)

_COMPOSE = "services:\n  web:\n    image: nginx\n"


def _request(op: OperationType, *targets: str) -> OperationRequest:
    return OperationRequest(type=op, targets=targets, requester=_ADMIN)


def _stack(tmp_path: Path, *, env: str = "", path: str = "") -> StackDefinition:
    return StackDefinition(
        id="st-1",
        name="web",
        compose_content=_COMPOSE,
        env_content=env,
        path=path,
        base_dir=tmp_path,
    )


class TestPackagePlans:
    def test_install(self) -> None:
        plan = build_plan(_request(OperationType.install, "htop", "vim"), CommandSettings())
        assert len(plan.steps) == 1
        step = plan.steps[0]
        assert step.argv == ("dnf", "install", "-y", "htop", "vim")
        assert step.phase is Phase.checking
        assert plan.files == ()

    def test_update_all(self) -> None:
        plan = build_plan(_request(OperationType.update), CommandSettings())
        assert plan.steps[0].argv == ("dnf", "update", "-y")

    def test_remove(self) -> None:
        plan = build_plan(_request(OperationType.remove, "vim"), CommandSettings())
        assert plan.steps[0].argv == ("dnf", "remove", "-y", "vim")

    def test_refresh_two_steps(self) -> None:
        plan = build_plan(_request(OperationType.refresh), CommandSettings())
        assert [s.argv for s in plan.steps] == [
            ("dnf", "clean", "metadata"),
            ("dnf", "makecache"),
        ]
        assert [s.phase for s in plan.steps] == [Phase.cleaning, Phase.caching]
        assert plan.steps[1].progress_floor == 50

    def test_privilege_prefix_and_custom_tool(self) -> None:
        commands = CommandSettings(package_manager="dnf5", privilege_prefix="sudo -n")
        plan = build_plan(_request(OperationType.install, "htop"), commands)
        assert plan.steps[0].argv == ("sudo", "-n", "dnf5", "install", "-y", "htop")


class TestStackPlans:
    def test_deploy_writes_compose_file(self, tmp_path: Path) -> None:
        stack = _stack(tmp_path)
        plan = build_plan(
            _request(OperationType.stack_deploy, "st-1"), CommandSettings(), stack=stack,
        )
        compose_file = tmp_path / "web" / "docker-compose.yml"
        assert plan.steps[0].argv == (
            "podman-compose", "-f", str(compose_file), "-p", "web", "up", "-d",
        )
        assert plan.steps[0].cwd == tmp_path / "web"
        assert plan.files == ((compose_file, _COMPOSE),)

    def test_deploy_writes_env_when_present(self, tmp_path: Path) -> None:
        stack = _stack(tmp_path, env="PORT=8080\n")
        plan = build_plan(
            _request(OperationType.stack_deploy, "st-1"), CommandSettings(), stack=stack,
        )
        assert (tmp_path / "web" / ".env", "PORT=8080\n") in plan.files

    def test_explicit_path_wins(self, tmp_path: Path) -> None:
        stack = _stack(tmp_path, path=str(tmp_path / "custom"))
        plan = build_plan(
            _request(OperationType.stack_start, "st-1"), CommandSettings(), stack=stack,
        )
        assert plan.steps[0].cwd == tmp_path / "custom"

    @pytest.mark.parametrize(("op", "verbs"), [
        (OperationType.stack_start, ("start",)),
        (OperationType.stack_stop, ("stop",)),
        (OperationType.stack_restart, ("restart",)),
    ])
    def test_lifecycle_verbs_write_nothing(
        self, tmp_path: Path, op: OperationType, verbs: tuple[str, ...],
    ) -> None:
        plan = build_plan(_request(op, "st-1"), CommandSettings(), stack=_stack(tmp_path))
        assert plan.steps[0].argv[-len(verbs):] == verbs
        assert plan.files == ()

    def test_missing_stack_raises(self) -> None:
        with pytest.raises(SupervisorError):
            build_plan(_request(OperationType.stack_stop, "st-1"), CommandSettings())

    @pytest.mark.parametrize("name", ["../../etc", "web project", "--verbose", ""])
    def test_unsafe_project_name_rejected(self, tmp_path: Path, name: str) -> None:
        stack = StackDefinition(
            id="st-1", name=name, compose_content=_COMPOSE, env_content="",
            path=str(tmp_path / "custom"), base_dir=tmp_path,
        )
        with pytest.raises(InvalidRequest, match="Invalid stack name"):
            build_plan(_request(OperationType.stack_start, "st-1"), CommandSettings(), stack=stack)
