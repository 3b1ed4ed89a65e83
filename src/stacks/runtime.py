"""Container runtime collaborator: read-only view of a stack's containers."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.infra.errors import StackError

logger = structlog.get_logger()

_PROJECT_LABEL = "com.docker.compose.project"
_SERVICE_LABEL = "com.docker.compose.service"


@dataclass(frozen=True)
class StackContainer:
    service: str
    container_name: str
    image: str
    status: str
    ports: list[str] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.status == "running"


class ContainerRuntime(ABC):
    @abstractmethod
    async def list_containers(self, project_name: str) -> list[StackContainer]:
        """Containers labelled with the compose project. Raises StackError on failure."""
        ...


class PodmanRuntime(ContainerRuntime):
    """Queries `podman ps -a --format json` filtered by compose project label."""

    def __init__(self, binary: str = "podman", *, timeout_seconds: float = 15.0) -> None:
        self._binary = binary
        self._timeout = timeout_seconds

    async def list_containers(self, project_name: str) -> list[StackContainer]:
        argv = [
            self._binary, "ps", "-a", "--format", "json",
            "--filter", f"label={_PROJECT_LABEL}={project_name}",
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise StackError(f"Failed to run {self._binary}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self._timeout)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise StackError(f"{self._binary} ps timed out after {self._timeout}s") from e

        if proc.returncode != 0:
            msg = stderr.decode("utf-8", errors="replace").strip() or f"exit {proc.returncode}"
            raise StackError(f"{self._binary} ps failed: {msg}")
        return parse_podman_ps(stdout.decode("utf-8", errors="replace"))


def parse_podman_ps(output: str) -> list[StackContainer]:
    """Parse podman's JSON array output into StackContainer projections."""
    output = output.strip()
    if not output:
        return []
    try:
        raw = json.loads(output)
    except json.JSONDecodeError as e:
        raise StackError(f"Failed to parse container list: {e}") from e
    if isinstance(raw, dict):
        raw = [raw]
    return [_to_container(c) for c in raw if isinstance(c, dict)]


def _to_container(c: dict[str, Any]) -> StackContainer:
    names = c.get("Names") or []
    name = names[0] if isinstance(names, list) and names else str(names or "")
    labels = c.get("Labels") or {}
    ports = [
        _format_port(p) for p in (c.get("Ports") or []) if isinstance(p, dict)
    ]
    return StackContainer(
        service=labels.get(_SERVICE_LABEL, ""),
        container_name=name,
        image=c.get("Image", ""),
        status=_map_state(c.get("State", "")),
        ports=ports,
    )


def _map_state(state: Any) -> str:
    value = str(state).lower()
    if value in {"running", "paused", "exited", "created", "stopped", "dead", "restarting"}:
        return "stopped" if value == "exited" else value
    return "unknown"


def _format_port(p: dict[str, Any]) -> str:
    host_ip = p.get("host_ip") or p.get("hostIP") or ""
    host_port = p.get("host_port") or p.get("hostPort") or ""
    container_port = p.get("container_port") or p.get("containerPort") or ""
    protocol = p.get("protocol") or "tcp"
    host = f"{host_ip}:{host_port}" if host_ip else f"{host_port}"
    return f"{host}->{container_port}/{protocol}"
