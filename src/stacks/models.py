"""SQLAlchemy model for compose stack definitions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint, false, func
from sqlalchemy.orm import Mapped, mapped_column

from src.constants import DB_SCHEMA
from src.session.models import Base


class StackRecord(Base):
    """Stack definition as text blobs.

    Status is never stored: it is derived from live containers on every query.
    last_deploy_failed records the outcome of the latest deploy/start attempt.
    """

    __tablename__ = "stacks"
    __table_args__ = (
        UniqueConstraint("name", name="uq_stacks_name"),
        {"schema": DB_SCHEMA},
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(64))
    description: Mapped[str] = mapped_column(Text, default="")
    compose_content: Mapped[str] = mapped_column(Text)
    env_content: Mapped[str] = mapped_column(Text, default="")
    path: Mapped[str] = mapped_column(Text, default="")
    last_deploy_failed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false()
    )
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
