from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Package(BaseModel):
    """Static catalog entry for a purchasable bundle of points."""

    id: str
    name: str
    points: int = Field(gt=0)
    price_cents: int = Field(ge=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    price_ref: Optional[str] = Field(
        default=None,
        description="Payment provider price id used at checkout.",
    )
    is_active: bool = True

    model_config = ConfigDict(frozen=True)

    @property
    def points_per_dollar(self) -> float:
        if self.price_cents == 0:
            return float(self.points)
        return round(self.points / self.price_cents * 100, 2)
