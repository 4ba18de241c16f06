"""Credential persistence model.

One row per (user_id, service_id). The unique constraint backs the
upsert-on-conflict writes in the repository, which is what guarantees at
most one active credential per user and service.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.crm_connect.core.database import Base


class CredentialRecordModel(Base):
    """Encrypted OAuth tokens and push channel metadata for one connection."""

    __tablename__ = "credential_records"
    __table_args__ = (
        UniqueConstraint("user_id", "service_id", name="uq_credential_user_service"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    service_id: Mapped[str] = mapped_column(String(50), nullable=False)
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scopes: Mapped[str] = mapped_column(Text, default="", server_default=text("''"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    webhook_channel_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    webhook_resource_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    webhook_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
