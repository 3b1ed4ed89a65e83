from __future__ import annotations

import shlex
from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.constants import DB_SCHEMA

# Load .env once at module import; all BaseSettings subclasses will see the env vars
load_dotenv()


class DatabaseSettings(BaseSettings):
    """PostgreSQL connection settings. Env vars prefixed with DATABASE_."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    name: str = "hostops"
    schema_: str = Field(DB_SCHEMA, validation_alias="DATABASE_SCHEMA")

    @field_validator("schema_")
    @classmethod
    def _validate_schema(cls, v: str) -> str:
        if v != DB_SCHEMA:
            msg = f"DATABASE_SCHEMA must be '{DB_SCHEMA}' (got '{v}')"
            raise ValueError(msg)
        return v


class GatewaySettings(BaseSettings):
    """Gateway server and session behaviour. Env vars prefixed with GATEWAY_."""

    model_config = SettingsConfigDict(env_prefix="GATEWAY_")

    host: str = "0.0.0.0"
    port: int = 19790
    stall_window_seconds: float = Field(60.0, gt=0)
    terminate_grace_seconds: float = Field(10.0, gt=0, le=300)
    # Terminate the subprocess when the client goes away mid-operation.
    cancel_on_disconnect: bool = True


class CommandSettings(BaseSettings):
    """External tool invocation. Env vars prefixed with COMMANDS_."""

    model_config = SettingsConfigDict(env_prefix="COMMANDS_")

    package_manager: str = "dnf"
    compose: str = "podman-compose"
    privilege_prefix: str = ""  # e.g. "sudo -n" when the gateway is not root

    @field_validator("package_manager", "compose")
    @classmethod
    def _validate_not_empty(cls, v: str) -> str:
        if not shlex.split(v):
            raise ValueError("COMMANDS_PACKAGE_MANAGER and COMMANDS_COMPOSE must not be empty")
        return v

    def package_manager_argv(self) -> list[str]:
        return [*shlex.split(self.privilege_prefix), *shlex.split(self.package_manager)]

    def compose_argv(self) -> list[str]:
        return [*shlex.split(self.privilege_prefix), *shlex.split(self.compose)]


class ProgressSettings(BaseSettings):
    """Progress estimate tuning. Env vars prefixed with PROGRESS_."""

    model_config = SettingsConfigDict(env_prefix="PROGRESS_")

    step: int = 2
    cap: int = 90

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if not (0 < self.step < 100):
            raise ValueError(f"PROGRESS_STEP must be in (0, 100), got {self.step}")
        if not (0 < self.cap < 100):
            raise ValueError(f"PROGRESS_CAP must be in (0, 100), got {self.cap}")
        return self


class StackSettings(BaseSettings):
    """Stack storage and reconciliation. Env vars prefixed with STACKS_."""

    model_config = SettingsConfigDict(env_prefix="STACKS_")

    base_dir: Path = Path("/var/lib/stardeck/stacks")
    poll_interval_seconds: float = Field(15.0, gt=0)
    runtime: str = "podman"
    runtime_timeout_seconds: float = Field(15.0, gt=0)


class TokenGrant(BaseModel):
    """Identity issued for a static API token."""

    identity: str
    role: str = "viewer"
    groups: list[str] = Field(default_factory=list)


class AuthSettings(BaseSettings):
    """Static token table standing in for the session/realm service.

    AUTH_TOKENS is a JSON object: {"<token>": {"identity": ..., "role": ..., "groups": [...]}}.
    """

    model_config = SettingsConfigDict(env_prefix="AUTH_")

    tokens: dict[str, TokenGrant] = Field(default_factory=dict)
    privileged_roles: list[str] = Field(default_factory=lambda: ["admin"])
    privileged_groups: list[str] = Field(default_factory=lambda: ["wheel", "root"])


class LoggingSettings(BaseSettings):
    """Log rendering. Env vars prefixed with LOG_."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    json_output: bool = False
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            msg = f"LOG_LEVEL must be one of {sorted(allowed)} (got '{v}')"
            raise ValueError(msg)
        return v.upper()


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    commands: CommandSettings = Field(default_factory=CommandSettings)
    progress: ProgressSettings = Field(default_factory=ProgressSettings)
    stacks: StackSettings = Field(default_factory=StackSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
