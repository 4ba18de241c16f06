"""Credential repository -- async persistence for OAuth credential records.

Uses the session_factory callable pattern shared by the other repositories.
Every read goes to the database; nothing is cached in memory because tokens
and channel metadata are mutated by independent request and scheduler paths.

Tokens are encrypted with TokenCipher on write and returned as SecretStr on
read. Writes that create or re-activate a credential go through PostgreSQL
INSERT ... ON CONFLICT (user_id, service_id) DO UPDATE so that at most one
row, and therefore at most one active credential, exists per pair.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from pydantic import SecretStr
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_connect.integrations.credentials.encryption import TokenCipher, mask_token
from src.crm_connect.integrations.credentials.models import CredentialRecordModel
from src.crm_connect.integrations.credentials.schemas import (
    CredentialRecord,
    ServiceId,
    WebhookChannel,
)

logger = structlog.get_logger(__name__)


class CredentialRepository:
    """Async CRUD for credential records.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        cipher: TokenCipher used to encrypt/decrypt tokens at rest.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        cipher: TokenCipher,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher

    def _to_record(self, model: CredentialRecordModel) -> CredentialRecord:
        refresh_token = None
        if model.refresh_token_encrypted:
            refresh_token = SecretStr(self._cipher.decrypt(model.refresh_token_encrypted))
        return CredentialRecord(
            id=model.id,
            user_id=model.user_id,
            service_id=ServiceId(model.service_id),
            access_token=SecretStr(self._cipher.decrypt(model.access_token_encrypted)),
            refresh_token=refresh_token,
            expires_at=model.expires_at,
            scopes=model.scopes or "",
            is_active=model.is_active,
            webhook_channel_id=model.webhook_channel_id,
            webhook_resource_id=model.webhook_resource_id,
            webhook_expires_at=model.webhook_expires_at,
            last_synced_at=model.last_synced_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get(self, user_id: str, service: ServiceId) -> CredentialRecord | None:
        """Get the credential for a user and service, active or not."""
        async for session in self._session_factory():
            result = await session.execute(
                select(CredentialRecordModel).where(
                    CredentialRecordModel.user_id == user_id,
                    CredentialRecordModel.service_id == service.value,
                )
            )
            model = result.scalar_one_or_none()
            return self._to_record(model) if model is not None else None

    async def list_active(self, service: ServiceId) -> list[CredentialRecord]:
        """All active credentials for a service, oldest first."""
        async for session in self._session_factory():
            result = await session.execute(
                select(CredentialRecordModel)
                .where(
                    CredentialRecordModel.service_id == service.value,
                    CredentialRecordModel.is_active == True,  # noqa: E712
                )
                .order_by(CredentialRecordModel.created_at)
            )
            return [self._to_record(m) for m in result.scalars().all()]

    # ── Writes ────────────────────────────────────────────────────────────

    async def upsert_tokens(
        self,
        user_id: str,
        service: ServiceId,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
        scopes: str = "",
    ) -> CredentialRecord:
        """Create or re-activate the credential after a successful OAuth flow.

        A missing refresh_token keeps the stored one (providers only issue
        it on first consent unless prompt=consent is honoured).
        """
        encrypted_refresh = self._cipher.encrypt(refresh_token) if refresh_token else None
        stmt = insert(CredentialRecordModel).values(
            user_id=user_id,
            service_id=service.value,
            access_token_encrypted=self._cipher.encrypt(access_token),
            refresh_token_encrypted=encrypted_refresh,
            expires_at=expires_at,
            scopes=scopes,
            is_active=True,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[CredentialRecordModel.user_id, CredentialRecordModel.service_id],
            set_={
                "access_token_encrypted": stmt.excluded.access_token_encrypted,
                "refresh_token_encrypted": func.coalesce(
                    stmt.excluded.refresh_token_encrypted,
                    CredentialRecordModel.refresh_token_encrypted,
                ),
                "expires_at": stmt.excluded.expires_at,
                "scopes": stmt.excluded.scopes,
                "is_active": True,
                "updated_at": func.now(),
            },
        ).returning(CredentialRecordModel)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            model = result.scalar_one()
            await session.commit()
            logger.info(
                "credentials.stored",
                user_id=user_id,
                service=service.value,
                access_token=mask_token(access_token),
                has_refresh_token=model.refresh_token_encrypted is not None,
            )
            return self._to_record(model)

    async def update_access_token(
        self,
        user_id: str,
        service: ServiceId,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """Persist a refreshed access token; rotates the refresh token if given."""
        values: dict = {
            "access_token_encrypted": self._cipher.encrypt(access_token),
            "expires_at": expires_at,
        }
        if refresh_token:
            values["refresh_token_encrypted"] = self._cipher.encrypt(refresh_token)
        await self._update(user_id, service, values)
        logger.info(
            "credentials.refreshed",
            user_id=user_id,
            service=service.value,
            access_token=mask_token(access_token),
            expires_at=expires_at.isoformat(),
        )

    async def set_webhook(
        self, user_id: str, service: ServiceId, channel: WebhookChannel
    ) -> None:
        """Store the webhook triple in one statement (never partially)."""
        await self._update(
            user_id,
            service,
            {
                "webhook_channel_id": channel.channel_id,
                "webhook_resource_id": channel.resource_id,
                "webhook_expires_at": channel.expires_at,
            },
        )

    async def clear_webhook(self, user_id: str, service: ServiceId) -> None:
        await self._update(
            user_id,
            service,
            {
                "webhook_channel_id": None,
                "webhook_resource_id": None,
                "webhook_expires_at": None,
            },
        )

    async def deactivate(self, user_id: str, service: ServiceId) -> bool:
        """Soft-disable a credential. Returns False when no row exists."""
        return await self._update(user_id, service, {"is_active": False})

    async def mark_synced(
        self, user_id: str, service: ServiceId, synced_at: datetime | None = None
    ) -> None:
        await self._update(
            user_id,
            service,
            {"last_synced_at": synced_at or datetime.now(timezone.utc)},
        )

    async def _update(self, user_id: str, service: ServiceId, values: dict) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                update(CredentialRecordModel)
                .where(
                    CredentialRecordModel.user_id == user_id,
                    CredentialRecordModel.service_id == service.value,
                )
                .values(**values)
            )
            await session.commit()
            return result.rowcount > 0
        return False
