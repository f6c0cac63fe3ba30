"""Integration model for storing Garmin OAuth connections."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from garmin_sync_server.models.base import Base, TimestampMixin, UserScopedMixin, generate_uuid

GARMIN_PROVIDER = "garmin"


class Integration(Base, UserScopedMixin, TimestampMixin):
    """A user's connected Garmin account.

    One row per (user, provider). Tokens are encrypted at rest. The
    ``refresh_lock_until`` column is a lease: whoever sets it through a
    conditional UPDATE owns the next token refresh until it expires.
    """

    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_integrations_user_provider"),
        UniqueConstraint(
            "provider", "provider_user_id", name="uq_integrations_provider_user"
        ),
        {"comment": "Connected third-party fitness accounts"},
    )

    # Primary key
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
    )

    provider: Mapped[str] = mapped_column(String(32), nullable=False, default=GARMIN_PROVIDER)

    # Garmin user ID (from the user permissions endpoint after OAuth)
    provider_user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # OAuth tokens (encrypted at rest)
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refresh_token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Refresh lease and terminal auth state
    refresh_lock_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refresh_token_invalid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Connection status
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<Integration(user_id={self.user_id}, provider={self.provider}, "
            f"refresh_token_invalid={self.refresh_token_invalid})>"
        )
