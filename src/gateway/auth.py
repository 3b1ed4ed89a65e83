"""Authorization collaborator.

The console's session service resolves a token to an identity with a role and
group memberships. Here a static token table from settings stands in for it.
"""

from __future__ import annotations

import secrets
from abc import ABC, abstractmethod
from collections.abc import Iterable

import structlog

from src.config.settings import AuthSettings, TokenGrant
from src.infra.errors import Unauthorized
from src.operations.models import Principal

logger = structlog.get_logger()

ROOT_IDENTITY = "root"


class Authorizer(ABC):
    @abstractmethod
    async def authenticate(self, token: str | None) -> Principal:
        """Resolve token to a Principal. Raises Unauthorized for unknown tokens."""
        ...

    async def require_privileged(self, token: str | None) -> Principal:
        principal = await self.authenticate(token)
        if not principal.privileged:
            logger.warning("privilege_denied", identity=principal.identity, role=principal.role)
            raise Unauthorized(f"User '{principal.identity}' is not allowed to run host operations")
        return principal


class StaticTokenAuthorizer(Authorizer):
    def __init__(
        self,
        tokens: dict[str, TokenGrant],
        *,
        privileged_roles: Iterable[str] = ("admin",),
        privileged_groups: Iterable[str] = ("wheel", "root"),
    ) -> None:
        self._tokens = dict(tokens)
        self._privileged_roles = frozenset(privileged_roles)
        self._privileged_groups = frozenset(privileged_groups)

    @classmethod
    def from_settings(cls, settings: AuthSettings) -> StaticTokenAuthorizer:
        return cls(
            settings.tokens,
            privileged_roles=settings.privileged_roles,
            privileged_groups=settings.privileged_groups,
        )

    async def authenticate(self, token: str | None) -> Principal:
        grant = self._lookup(token) if token else None
        if grant is None:
            logger.warning("auth_token_rejected")
            raise Unauthorized("Invalid or missing token")

        groups = tuple(grant.groups)
        privileged = (
            grant.identity == ROOT_IDENTITY
            or grant.role in self._privileged_roles
            or bool(self._privileged_groups.intersection(groups))
        )
        return Principal(
            identity=grant.identity,
            role=grant.role,
            privileged=privileged,
            groups=groups,
        )

    def _lookup(self, token: str) -> TokenGrant | None:
        match = None
        for candidate, grant in self._tokens.items():
            if secrets.compare_digest(candidate.encode(), token.encode()):
                match = grant
        return match
