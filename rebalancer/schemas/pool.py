"""Typed payloads at the pool gateway boundary.

Gateway JSON is validated here and converted into these models before it
reaches the engine. Amounts are UI units (already divided by decimals).
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _GatewayModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class ActiveBin(_GatewayModel):
    bin_id: int = Field(alias="binId")
    price: float

    @field_validator("price")
    @classmethod
    def _positive_price(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class PositionBin(_GatewayModel):
    bin_id: int = Field(alias="binId")
    base_amount: float = Field(default=0.0, alias="positionXAmount", ge=0)
    quote_amount: float = Field(default=0.0, alias="positionYAmount", ge=0)


class PositionSnapshot(_GatewayModel):
    address: str
    bins: tuple[PositionBin, ...] = Field(default=(), alias="positionBinData")

    @property
    def min_bin(self) -> int:
        return min(b.bin_id for b in self.bins)

    @property
    def max_bin(self) -> int:
        return max(b.bin_id for b in self.bins)

    @property
    def base_total(self) -> float:
        return sum(b.base_amount for b in self.bins)

    @property
    def quote_total(self) -> float:
        return sum(b.quote_amount for b in self.bins)

    @property
    def total_liquidity(self) -> float:
        return self.base_total + self.quote_total


class RemoveLiquidityResponse(_GatewayModel):
    transactions: list[str] = Field(min_length=1)  # base64 unsigned transactions


class AddLiquidityResponse(_GatewayModel):
    transaction: str  # base64 unsigned transaction


class CreatedPosition(BaseModel):
    address: str
    signature: str
    min_bin: int
    max_bin: int
    base_amount: float
    quote_amount: float = 0.0


class WalletBalance(BaseModel):
    base: float = Field(ge=0)
    quote: float = Field(ge=0)
