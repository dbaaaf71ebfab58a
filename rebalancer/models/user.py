"""User model: an automation participant and its custodial wallet."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class User(SQLModel, table=True):
    __tablename__ = "user"

    id: int | None = Field(default=None, primary_key=True)
    telegram_id: int = Field(unique=True, index=True)
    username: str | None = None
    wallet_address: str = Field(unique=True, index=True)
    wallet_secret_encrypted: str = ""  # Fernet-encrypted base58 secret key
    is_monitoring: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
