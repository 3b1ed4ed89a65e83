"""Project-wide constants shared by runtime code, migrations and tests."""

from __future__ import annotations

DB_SCHEMA = "hostops"

# Lock key for the host-wide package database.
PACKAGE_MANAGER_KEY = "package-manager"
STACK_KEY_PREFIX = "stack:"

COMPOSE_FILENAME = "docker-compose.yml"
ENV_FILENAME = ".env"
