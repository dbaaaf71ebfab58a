"""Typed payloads at the remote access-control boundary."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _RemoteModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LinkedAccount(_RemoteModel):
    is_linked: bool = Field(default=False, alias="isLinked")
    wallet_address: str | None = Field(default=None, alias="walletAddress")

    @property
    def address(self) -> str | None:
        if self.is_linked and self.wallet_address:
            return self.wallet_address
        return None


class SubscriptionStatus(_RemoteModel):
    is_active: bool = Field(default=False, alias="isActive")
    tier: str | None = None
    expires_at: datetime | None = Field(default=None, alias="expiresAt")


class CreditBalance(_RemoteModel):
    balance: float = 0.0


class AutomationSettings(_RemoteModel):
    auto_reposition_enabled: bool = Field(default=True, alias="autoRepositionEnabled")
    urgency_threshold: str = Field(default="medium", alias="urgencyThreshold")
    max_gas_cost_sol: float | None = Field(default=None, alias="maxGasCostSol")


class ExecutionRecord(_RemoteModel):
    wallet_address: str = Field(alias="walletAddress")
    position_address: str = Field(alias="positionAddress")
    success: bool
    gas_cost_sol: float = Field(default=0.0, ge=0, alias="gasCostSol")  # estimate only
    mode: Literal["subscription", "credits"] = Field(alias="executionMode")
    error: str | None = None
