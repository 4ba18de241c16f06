"""OAuth 2.0 authorization-code flow for Google services.

Exports:
    OAuthExchangeClient: Consent URL, code exchange, token refresh.
    TokenSet: Token endpoint response.
    OAuthStateSigner: Signed, short-lived ``state`` values.
    CredentialTokenManager: Valid-token resolution with refresh-and-persist.
    RedisCodeLedger / InMemoryCodeLedger: Single-use code enforcement.
    get_provider_config: Per-service client configuration.
"""

from src.crm_connect.integrations.oauth.client import OAuthExchangeClient, TokenSet
from src.crm_connect.integrations.oauth.ledger import InMemoryCodeLedger, RedisCodeLedger
from src.crm_connect.integrations.oauth.providers import (
    REDIRECT_FLAG_PREFIX,
    ProviderConfig,
    get_provider_config,
)
from src.crm_connect.integrations.oauth.state import OAuthStateSigner
from src.crm_connect.integrations.oauth.tokens import CredentialTokenManager

__all__ = [
    "CredentialTokenManager",
    "InMemoryCodeLedger",
    "OAuthExchangeClient",
    "OAuthStateSigner",
    "ProviderConfig",
    "REDIRECT_FLAG_PREFIX",
    "RedisCodeLedger",
    "TokenSet",
    "get_provider_config",
]
