"""
SQLAlchemy models for provider integrations and number bindings.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Index, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from trunkline.shared.database import Base


def _new_id() -> str:
    return str(uuid4())


class TelephonyIntegration(Base):
    """Encrypted provider credentials plus cached provider-side resource ids."""

    __tablename__ = "telephony_integrations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    encrypted_credential: Mapped[str] = mapped_column(String(4096), nullable=False)
    credential_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    provider_resources: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        # Not unique: re-creating an integration after a key rotation reuses the fingerprint.
        Index("ix_telephony_integrations_provider_fingerprint", "provider", "credential_fingerprint"),
    )

    def __repr__(self) -> str:
        return f"<TelephonyIntegration(id={self.id}, provider={self.provider}, status={self.status})>"


class TelephonyBinding(Base):
    """A DID routed to an agent."""

    __tablename__ = "telephony_bindings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    integration_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_number_id: Mapped[str] = mapped_column(String(255), nullable=False)
    e164: Mapped[str] = mapped_column(String(20), nullable=False)
    agent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    agent_config: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index(
            "uq_telephony_bindings_live_e164",
            "e164",
            unique=True,
            postgresql_where=text("enabled AND deleted_at IS NULL"),
            sqlite_where=text("enabled AND deleted_at IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        return f"<TelephonyBinding(id={self.id}, e164={self.e164}, enabled={self.enabled})>"
