"""Credential store for external integrations.

Exports:
    CredentialRecord: In-process view of one user/service connection.
    CredentialRecordModel: SQLAlchemy table model (encrypted tokens).
    CredentialRepository: Async persistence with upsert-on-conflict writes.
    CredentialStatus: Connection status returned to the front end.
    ServiceId: Supported external services.
    TokenCipher: Fernet encryption of tokens at rest.
    WebhookChannel: Push channel triple (id, resource id, expiry).
    mask_token: Diagnostic form of a token.
"""

from src.crm_connect.integrations.credentials.encryption import TokenCipher, mask_token
from src.crm_connect.integrations.credentials.models import CredentialRecordModel
from src.crm_connect.integrations.credentials.repository import CredentialRepository
from src.crm_connect.integrations.credentials.schemas import (
    CredentialRecord,
    CredentialStatus,
    ServiceId,
    WebhookChannel,
)

__all__ = [
    "CredentialRecord",
    "CredentialRecordModel",
    "CredentialRepository",
    "CredentialStatus",
    "ServiceId",
    "TokenCipher",
    "WebhookChannel",
    "mask_token",
]
