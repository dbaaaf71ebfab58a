"""Position model: one liquidity deposit, open or closed."""

from datetime import datetime, timezone

from sqlalchemy import CheckConstraint
from sqlmodel import SQLModel, Field


class Position(SQLModel, table=True):
    __tablename__ = "position"
    __table_args__ = (
        CheckConstraint(
            "(is_active AND closed_at IS NULL) OR (NOT is_active AND closed_at IS NOT NULL)",
            name="ck_position_closed_consistency",
        ),
        CheckConstraint("base_amount >= 0 AND quote_amount >= 0", name="ck_position_amounts"),
    )

    id: int | None = Field(default=None, primary_key=True)
    position_address: str = Field(unique=True, index=True)  # On-chain position account
    user_id: int = Field(foreign_key="user.id", index=True)
    pool_address: str
    base_amount: float = 0.0
    quote_amount: float = 0.0
    entry_price: float
    entry_bin: int
    is_active: bool = Field(default=True, index=True)
    last_checked: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Populated once, on close
    exit_price: float | None = None
    exit_bin: int | None = None
    base_returned: float | None = None
    quote_returned: float | None = None
    base_fees: float | None = None
    quote_fees: float | None = None
    pnl_usd: float | None = None
    pnl_percent: float | None = None
    closed_at: datetime | None = None
