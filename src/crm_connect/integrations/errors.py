"""Error taxonomy for external integrations.

Every error carries a stable ``code`` that endpoints use verbatim as the
redirect error flag (browser-facing) or the ``error`` field of a structured
JSON body (API-facing). Messages never contain token material.
"""

from __future__ import annotations


class IntegrationError(Exception):
    """Base class for all integration lifecycle failures."""

    code = "integration_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    def to_detail(self) -> dict:
        """Structured error body for API responses."""
        return {"error": self.code, "message": str(self)}


class ConfigurationError(IntegrationError):
    """Client id, secret, or redirect URI missing or invalid. Not retried."""

    code = "configuration_error"


class TokenExchangeError(IntegrationError):
    """The provider rejected an authorization code (expired, reused, mismatch)."""

    code = "token_exchange_failed"

    def __init__(
        self,
        message: str,
        *,
        provider_error: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.provider_error = provider_error


class RefreshError(IntegrationError):
    """A refresh token was revoked, expired, or is missing.

    Terminal for the credential: surfaces as "reconnect required" and is
    never retried.
    """

    code = "reconnect_required"
    reconnect_required = True

    def __init__(self, message: str, *, provider_error: str | None = None) -> None:
        super().__init__(message)
        self.provider_error = provider_error


class TransientNetworkError(IntegrationError):
    """Transport-level or 5xx failure. Retried with bounded attempts."""

    code = "network_error"


class WebhookRegistrationError(IntegrationError):
    """Push channel registration failed. The next scheduled pass may retry."""

    code = "webhook_registration_failed"


class AttributionError(IntegrationError):
    """A callback or notification cannot be matched to a known user."""

    code = "attribution_failed"


class NotConnectedError(IntegrationError):
    """No active credential exists for the user and service."""

    code = "not_connected"
