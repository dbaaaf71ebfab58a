"""ScanLog model: per-position scan outcome."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class ScanLog(SQLModel, table=True):
    __tablename__ = "scan_log"

    id: int | None = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    user_id: int | None = Field(default=None, index=True)
    position_address: str | None = Field(default=None, index=True)
    status: str  # "success", "error", "skipped", "warning"
    action: str | None = None  # see OUTCOME_* in utils.constants
    active_bin: int | None = None
    min_bin: int | None = None
    max_bin: int | None = None
    distance: int | None = None
    message: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
