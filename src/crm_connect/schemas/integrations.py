"""Pydantic schemas for integration API endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from src.crm_connect.integrations.google_calendar.webhooks import RenewalReport


class AuthorizationUrlResponse(BaseModel):
    """Consent URL returned instead of a redirect (``?format=json``)."""

    url: str


class DisconnectResponse(BaseModel):
    success: bool = True


class RenewWebhookRequest(BaseModel):
    """Renewal trigger body. Omit ``user_id`` to renew every user."""

    user_id: str | None = Field(default=None, description="Renew only this user's channel")


class RenewWebhookResponse(BaseModel):
    success: bool
    renewed: bool
    outcome: str
    message: str


class RenewAllResponse(BaseModel):
    success: bool
    total: int
    successful: int
    renewed: int
    results: list[RenewalReport]


class SyncResponse(BaseModel):
    """Result of a user-triggered two-way calendar sync."""

    success: bool
    created: int
    updated: int
    imported: int
    failed: int = 0
