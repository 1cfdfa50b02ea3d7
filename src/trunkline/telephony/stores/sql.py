"""
SQLAlchemy-backed integration and binding stores.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from trunkline.shared.database import DatabaseManager
from trunkline.shared.logging import get_logger
from trunkline.telephony.e164 import normalize_e164
from trunkline.telephony.entities import (
    CreateIntegrationInput,
    IntegrationStatus,
    ProviderType,
    StoredBinding,
    StoredIntegration,
    UpsertBindingInput,
)
from trunkline.telephony.models import TelephonyBinding, TelephonyIntegration

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_integration(row: TelephonyIntegration) -> StoredIntegration:
    return StoredIntegration(
        id=row.id,
        provider=ProviderType(row.provider),
        name=row.name,
        encrypted_credential=row.encrypted_credential,
        credential_fingerprint=row.credential_fingerprint,
        status=IntegrationStatus(row.status),
        provider_resources=dict(row.provider_resources or {}),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        deleted_at=_aware(row.deleted_at),
    )


def _to_binding(row: TelephonyBinding) -> StoredBinding:
    return StoredBinding(
        id=row.id,
        integration_id=row.integration_id,
        provider=ProviderType(row.provider),
        provider_number_id=row.provider_number_id,
        e164=row.e164,
        agent_id=row.agent_id,
        agent_config=row.agent_config,
        enabled=row.enabled,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        deleted_at=_aware(row.deleted_at),
    )


class SqlAlchemyIntegrationStore:
    """Integration store over the ``telephony_integrations`` table."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def create(self, data: CreateIntegrationInput) -> StoredIntegration:
        now = _now()
        row = TelephonyIntegration(
            provider=data.provider.value,
            name=data.name,
            encrypted_credential=data.encrypted_credential,
            credential_fingerprint=data.credential_fingerprint,
            status=IntegrationStatus.ACTIVE.value,
            provider_resources={},
            created_at=now,
            updated_at=now,
        )
        async with self._db.session() as session:
            session.add(row)
            await session.flush()
            return _to_integration(row)

    async def get_by_id(self, integration_id: str) -> StoredIntegration | None:
        async with self._db.session() as session:
            row = await self._get_live(session, integration_id)
            return _to_integration(row) if row is not None else None

    async def update_provider_resources(
        self, integration_id: str, resources: dict[str, Any]
    ) -> StoredIntegration | None:
        async with self._db.session() as session:
            row = await self._get_live(session, integration_id, for_update=True)
            if row is None:
                return None
            # Reassign so the JSON column is flagged dirty.
            row.provider_resources = {**(row.provider_resources or {}), **resources}
            row.updated_at = _now()
            await session.flush()
            return _to_integration(row)

    async def disable(self, integration_id: str) -> bool:
        return await self._set(integration_id, status=IntegrationStatus.DISABLED.value)

    async def delete_by_id(self, integration_id: str) -> bool:
        return await self._set(
            integration_id,
            status=IntegrationStatus.DISABLED.value,
            deleted_at=_now(),
        )

    async def list_by_provider(self, provider: ProviderType) -> list[StoredIntegration]:
        stmt = (
            select(TelephonyIntegration)
            .where(
                TelephonyIntegration.provider == provider.value,
                TelephonyIntegration.deleted_at.is_(None),
                TelephonyIntegration.status == IntegrationStatus.ACTIVE.value,
            )
            .order_by(TelephonyIntegration.updated_at.desc())
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return [_to_integration(r) for r in result.scalars().all()]

    async def _get_live(
        self, session, integration_id: str, for_update: bool = False
    ) -> TelephonyIntegration | None:
        stmt = select(TelephonyIntegration).where(
            TelephonyIntegration.id == integration_id,
            TelephonyIntegration.deleted_at.is_(None),
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _set(self, integration_id: str, **values: Any) -> bool:
        stmt = (
            update(TelephonyIntegration)
            .where(
                TelephonyIntegration.id == integration_id,
                TelephonyIntegration.deleted_at.is_(None),
            )
            .values(updated_at=_now(), **values)
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return result.rowcount > 0


class SqlAlchemyBindingStore:
    """Binding store over ``telephony_bindings``.

    The partial unique index on ``e164`` (enabled, not deleted) is the final
    guard against two concurrent connects for the same number.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def upsert_binding(self, data: UpsertBindingInput) -> StoredBinding:
        try:
            return await self._upsert_once(data)
        except IntegrityError:
            # A concurrent connect inserted the same e164 first; converge onto its row.
            logger.info(
                "Binding upsert raced; retrying as update",
                extra={"event": "telephony.binding.upsert_retry", "e164": data.e164},
            )
            return await self._upsert_once(data)

    async def _upsert_once(self, data: UpsertBindingInput) -> StoredBinding:
        e164 = normalize_e164(data.e164)
        now = _now()
        async with self._db.session() as session:
            stmt = (
                select(TelephonyBinding)
                .where(TelephonyBinding.e164 == e164, TelephonyBinding.deleted_at.is_(None))
                .with_for_update()
            )
            row = (await session.execute(stmt)).scalars().first()
            if row is None:
                row = TelephonyBinding(e164=e164, created_at=now)
                session.add(row)

            row.integration_id = data.integration_id
            row.provider = data.provider.value
            row.provider_number_id = data.provider_number_id
            row.agent_id = data.agent_id
            row.agent_config = data.agent_config
            row.enabled = True
            row.updated_at = now
            await session.flush()
            return _to_binding(row)

    async def get_binding_by_e164(self, e164: str) -> StoredBinding | None:
        stmt = select(TelephonyBinding).where(
            TelephonyBinding.e164 == normalize_e164(e164),
            TelephonyBinding.enabled.is_(True),
            TelephonyBinding.deleted_at.is_(None),
        )
        async with self._db.session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _to_binding(row) if row is not None else None

    async def get_binding_by_id(self, binding_id: str) -> StoredBinding | None:
        stmt = select(TelephonyBinding).where(
            TelephonyBinding.id == binding_id,
            TelephonyBinding.deleted_at.is_(None),
        )
        async with self._db.session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_binding(row) if row is not None else None

    async def list_bindings(self) -> list[StoredBinding]:
        stmt = (
            select(TelephonyBinding)
            .where(TelephonyBinding.deleted_at.is_(None))
            .order_by(TelephonyBinding.updated_at.desc())
        )
        async with self._db.session() as session:
            return [_to_binding(r) for r in (await session.execute(stmt)).scalars().all()]

    async def list_bindings_by_integration_id(self, integration_id: str) -> list[StoredBinding]:
        stmt = (
            select(TelephonyBinding)
            .where(
                TelephonyBinding.integration_id == integration_id,
                TelephonyBinding.deleted_at.is_(None),
            )
            .order_by(TelephonyBinding.updated_at.desc())
        )
        async with self._db.session() as session:
            return [_to_binding(r) for r in (await session.execute(stmt)).scalars().all()]

    async def disable_binding(self, binding_id: str) -> bool:
        return await self._set(binding_id, enabled=False)

    async def delete_binding(self, binding_id: str) -> bool:
        return await self._set(binding_id, enabled=False, deleted_at=_now())

    async def _set(self, binding_id: str, **values: Any) -> bool:
        stmt = (
            update(TelephonyBinding)
            .where(TelephonyBinding.id == binding_id, TelephonyBinding.deleted_at.is_(None))
            .values(updated_at=_now(), **values)
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return result.rowcount > 0
