"""Pydantic schemas for Garmin integration endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field


class IntegrationConnect(BaseModel):
    """Tokens from a completed Garmin OAuth flow."""

    provider_user_id: str = Field(description="Garmin user ID (the userId in pushes)")
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = Field(
        default=None, ge=0, description="Access token lifetime in seconds"
    )
    refresh_token_expires_in: int | None = Field(
        default=None, ge=0, description="Refresh token lifetime in seconds"
    )


class IntegrationStatus(BaseModel):
    """Connection state of a user's Garmin integration."""

    user_id: str
    provider_user_id: str | None
    is_active: bool
    token_expires_at: datetime | None
    last_synced_at: datetime | None = None
    reconnect_required: bool


class AccessTokenResponse(BaseModel):
    """A Garmin access token valid beyond the refresh threshold."""

    user_id: str
    access_token: str
    expires_at: datetime | None = None
