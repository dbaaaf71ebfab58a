"""UserStats model: aggregate results per user, rebuilt after each settlement."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class UserStats(SQLModel, table=True):
    __tablename__ = "user_stats"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True, index=True)
    total_positions: int = 0  # Closed positions
    active_positions: int = 0
    total_base_fees: float = 0.0
    total_quote_fees: float = 0.0
    total_pnl_usd: float = 0.0
    repositions: int = 0
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
