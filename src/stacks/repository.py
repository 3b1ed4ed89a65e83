"""Stack definitions: lookup, compose validation and deploy outcome tracking.

Stack text blobs are owned by the console's configuration store; this module
only reads them and records whether the latest deploy/start attempt failed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
import yaml
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.infra.errors import InvalidRequest
from src.stacks.models import StackRecord

logger = structlog.get_logger()

# Stack ids and names become path segments and compose project names.
STACK_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")


def validate_stack_name(name: str, *, kind: str = "stack name") -> str:
    """Return name unchanged. Raises InvalidRequest unless it is a safe single path segment."""
    if not STACK_NAME_PATTERN.match(name or ""):
        raise InvalidRequest(f"Invalid {kind} '{name}'")
    return name


@dataclass(frozen=True)
class StackDefinition:
    id: str
    name: str
    compose_content: str
    env_content: str
    path: str
    last_deploy_failed: bool = False
    base_dir: Path | None = None

    @property
    def directory(self) -> Path:
        """Working directory for compose commands; defaults to <base_dir>/<name>."""
        if self.path:
            return Path(self.path)
        if self.base_dir is None:
            msg = f"Stack {self.id} has no path and no base directory"
            raise InvalidRequest(msg)
        return self.base_dir / validate_stack_name(self.name)


def validate_compose(content: str) -> dict[str, Any]:
    """Parse a compose document and check its minimal shape.

    Raises InvalidRequest when the YAML is malformed, has no services, or a
    service declares neither image nor build.
    """
    if not content or not content.strip():
        raise InvalidRequest("Compose definition is empty")
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise InvalidRequest(f"Compose definition is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise InvalidRequest("Compose definition must be a mapping")
    services = data.get("services")
    if not isinstance(services, dict) or not services:
        raise InvalidRequest("Compose definition must declare at least one service")
    for name, service in services.items():
        if not isinstance(service, dict):
            raise InvalidRequest(f"Service '{name}' must be a mapping")
        if "image" not in service and "build" not in service:
            raise InvalidRequest(f"Service '{name}' must declare 'image' or 'build'")
    return data


class StackRepository:
    """Read stack definitions and persist deploy outcomes (PostgreSQL)."""

    def __init__(self, db_session_factory: async_sessionmaker, *, base_dir: Path) -> None:
        self._db = db_session_factory
        self._base_dir = base_dir

    async def get(self, stack_id: str) -> StackDefinition | None:
        async with self._db() as db_session:
            result = await db_session.execute(
                select(StackRecord).where(StackRecord.id == stack_id)
            )
            record = result.scalar_one_or_none()
        return self._to_definition(record) if record is not None else None

    async def list_all(self) -> list[StackDefinition]:
        async with self._db() as db_session:
            result = await db_session.execute(select(StackRecord).order_by(StackRecord.name))
            records = result.scalars().all()
        return [self._to_definition(r) for r in records]

    async def mark_deploy_result(self, stack_id: str, *, failed: bool) -> None:
        async with self._db() as db_session:
            await db_session.execute(
                update(StackRecord)
                .where(StackRecord.id == stack_id)
                .values(last_deploy_failed=failed)
            )
            await db_session.commit()
        logger.info("stack_deploy_result_recorded", stack_id=stack_id, failed=failed)

    def _to_definition(self, record: StackRecord) -> StackDefinition:
        return StackDefinition(
            id=record.id,
            name=record.name,
            compose_content=record.compose_content,
            env_content=record.env_content or "",
            path=record.path or "",
            last_deploy_failed=bool(record.last_deploy_failed),
            base_dir=self._base_dir,
        )
